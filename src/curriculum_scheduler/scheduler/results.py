"""Solver result variants, statistics and run state."""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..exceptions import SolverStateError
from ..models import Schedule
from .cost import CostBreakdown
from .cost_cache import CacheStats


class SolverStatus(str, Enum):
    """Lifecycle of a solver instance."""

    IDLE = "idle"
    LOADING = "loading"
    SEARCHING = "searching"
    IMPROVING = "improving"
    DONE = "done"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[SolverStatus, set[SolverStatus]] = {
    SolverStatus.IDLE: {SolverStatus.LOADING},
    SolverStatus.LOADING: {SolverStatus.SEARCHING, SolverStatus.FAILED},
    SolverStatus.SEARCHING: {SolverStatus.SEARCHING, SolverStatus.IMPROVING, SolverStatus.DONE},
    SolverStatus.IMPROVING: {SolverStatus.IMPROVING, SolverStatus.DONE},
    SolverStatus.DONE: set(),
    SolverStatus.FAILED: set(),
}


def check_transition(current: SolverStatus, requested: SolverStatus) -> None:
    """Raise SolverStateError unless ``current -> requested`` is allowed."""
    if requested not in ALLOWED_TRANSITIONS[current]:
        raise SolverStateError(current.value, requested.value)


class InfeasibleReason(str, Enum):
    """Why no schedule was returned."""

    FIXED_COURSE_CONFLICT = "fixed_course_conflict"
    DOMAIN_WIPEOUT = "domain_wipeout"
    EXHAUSTED = "exhausted"
    TIMEOUT = "timeout"


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a solver."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class SolverStatistics:
    """Counters collected during a solve."""

    nodes: int = 0
    backtracks: int = 0
    restarts: int = 0
    dead_end_hits: int = 0
    bound_prunes: int = 0
    forward_check_wipeouts: int = 0
    solutions_found: int = 0
    elapsed_seconds: float = 0.0
    best_cost_history: list[float] = field(default_factory=list)
    cache: CacheStats | None = None
    seed: int | None = None
    cancelled: bool = False
    optimal: bool = False
    stop_reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "nodes": self.nodes,
            "backtracks": self.backtracks,
            "restarts": self.restarts,
            "dead_end_hits": self.dead_end_hits,
            "bound_prunes": self.bound_prunes,
            "forward_check_wipeouts": self.forward_check_wipeouts,
            "solutions_found": self.solutions_found,
            "elapsed_seconds": self.elapsed_seconds,
            "best_cost_history": list(self.best_cost_history),
            "cache": self.cache.to_dict() if self.cache else None,
            "seed": self.seed,
            "cancelled": self.cancelled,
            "optimal": self.optimal,
            "stop_reason": self.stop_reason,
        }


class SolveResult:
    """Common interface of the result variants."""

    kind = "result"

    @property
    def is_success(self) -> bool:
        return False

    def to_dict(self) -> dict[str, Any]:
        raise NotImplementedError


@dataclass
class Success(SolveResult):
    """A complete schedule satisfying every hard constraint."""

    kind = "success"

    schedule: Schedule
    cost: float
    breakdown: CostBreakdown | None = None
    statistics: SolverStatistics = field(default_factory=SolverStatistics)

    @property
    def is_success(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "result": self.kind,
            "cost": self.cost,
            "breakdown": self.breakdown.to_dict() if self.breakdown else None,
            "schedule": self.schedule.to_dict(),
            "statistics": self.statistics.to_dict(),
        }


@dataclass
class PartialSuccess(SolveResult):
    """The deepest partial schedule found when the budget ran out."""

    kind = "partial_success"

    schedule: Schedule
    cost: float
    unmet_curricula: list[Any] = field(default_factory=list)
    statistics: SolverStatistics = field(default_factory=SolverStatistics)

    def to_dict(self) -> dict[str, Any]:
        return {
            "result": self.kind,
            "cost": self.cost,
            "unmet_curricula": list(self.unmet_curricula),
            "schedule": self.schedule.to_dict(),
            "statistics": self.statistics.to_dict(),
        }


@dataclass
class Infeasible(SolveResult):
    """No schedule could be produced."""

    kind = "infeasible"

    reason: InfeasibleReason
    details: list[str] = field(default_factory=list)
    statistics: SolverStatistics = field(default_factory=SolverStatistics)

    def to_dict(self) -> dict[str, Any]:
        return {
            "result": self.kind,
            "reason": self.reason.value,
            "details": list(self.details),
            "statistics": self.statistics.to_dict(),
        }


@dataclass
class Cancelled(SolveResult):
    """The caller cancelled before a complete schedule was found."""

    kind = "cancelled"

    statistics: SolverStatistics = field(default_factory=SolverStatistics)

    def to_dict(self) -> dict[str, Any]:
        return {"result": self.kind, "statistics": self.statistics.to_dict()}
