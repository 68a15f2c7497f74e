"""Storage contract shared by the problem/history stores."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from ..models import Problem, Schedule


@dataclass
class HistoryRecord:
    """Summary of one saved schedule."""

    id: int
    created_at: datetime
    cost: float | None = None
    assignments: int = 0
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "cost": self.cost,
            "assignments": self.assignments,
            "meta": dict(self.meta),
        }


@runtime_checkable
class ScheduleStore(Protocol):
    """Where problems come from and where solved schedules go."""

    def load_problem(self) -> Problem:
        """Read the problem definition."""
        ...

    def save_schedule(self, schedule: Schedule, meta: dict[str, Any] | None = None) -> int:
        """Store a schedule as a new history record and return its id."""
        ...

    def load_schedule(self, history_id: int) -> Schedule:
        """Read a stored schedule, raising HistoryNotFoundError if it is missing."""
        ...

    def list_history(self) -> list[HistoryRecord]:
        """Saved schedules, oldest first."""
        ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def meta_cost(meta: dict[str, Any] | None) -> float | None:
    """The ``cost`` entry of history metadata, if any."""
    if not meta or meta.get("cost") is None:
        return None
    return float(meta["cost"])
