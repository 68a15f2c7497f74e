"""In-process store used by tests and embedding applications."""

import logging
from typing import Any

from ..exceptions import HistoryNotFoundError
from ..models import Problem, Schedule
from .base import HistoryRecord, meta_cost, utc_now

logger = logging.getLogger(__name__)


class InMemoryStore:
    """Keeps the problem and every saved schedule in memory."""

    def __init__(self, problem: Problem):
        self.problem = problem
        self._schedules: dict[int, Schedule] = {}
        self._records: list[HistoryRecord] = []

    def load_problem(self) -> Problem:
        return self.problem

    def save_schedule(self, schedule: Schedule, meta: dict[str, Any] | None = None) -> int:
        history_id = len(self._records) + 1
        self._schedules[history_id] = schedule
        self._records.append(
            HistoryRecord(
                id=history_id,
                created_at=utc_now(),
                cost=meta_cost(meta),
                assignments=len(schedule),
                meta=dict(meta or {}),
            )
        )
        logger.debug(f"Stored schedule {history_id} in memory")
        return history_id

    def load_schedule(self, history_id: int) -> Schedule:
        if history_id not in self._schedules:
            raise HistoryNotFoundError(history_id)
        return self._schedules[history_id]

    def list_history(self) -> list[HistoryRecord]:
        return list(self._records)
