"""Problem and schedule history kept as JSON files on disk."""

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from ..exceptions import DataIntegrityError, HistoryNotFoundError
from ..models import Problem, Schedule
from ..serialization import load_problem_file, schedule_from_dict, schedule_to_dict
from .base import HistoryRecord, meta_cost, utc_now

logger = logging.getLogger(__name__)

HISTORY_FILE_PATTERN = re.compile(r"^schedule-(\d+)\.json$")


class JsonStore:
    """Reads the problem from one JSON file and writes each schedule to its own file.

    Args:
        problem_path: Problem JSON document
        history_dir: Directory holding ``schedule-<id>.json`` history files
    """

    def __init__(self, problem_path: Path | str, history_dir: Path | str):
        self.problem_path = Path(problem_path)
        self.history_dir = Path(history_dir)
        self._problem: Problem | None = None

    def load_problem(self) -> Problem:
        if self._problem is None:
            logger.info(f"Loading problem from {self.problem_path}")
            self._problem = load_problem_file(self.problem_path)
        return self._problem

    def save_schedule(self, schedule: Schedule, meta: dict[str, Any] | None = None) -> int:
        self.history_dir.mkdir(parents=True, exist_ok=True)
        history_id = max(self._history_ids(), default=0) + 1
        record = HistoryRecord(
            id=history_id,
            created_at=utc_now(),
            cost=meta_cost(meta),
            assignments=len(schedule),
            meta=dict(meta or {}),
        )
        problem = self._problem
        if problem is None and self.problem_path.exists():
            problem = self.load_problem()

        document = schedule_to_dict(schedule, problem)
        document["history"] = record.to_dict()
        path = self._path(history_id)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(document, f, ensure_ascii=False, indent=2)

        logger.info(f"Saved schedule {history_id} to {path}")
        return history_id

    def load_schedule(self, history_id: int) -> Schedule:
        return schedule_from_dict(self._read(history_id))

    def list_history(self) -> list[HistoryRecord]:
        records = []
        for history_id in sorted(self._history_ids()):
            data = self._read(history_id).get("history") or {}
            created_at = data.get("created_at")
            records.append(
                HistoryRecord(
                    id=history_id,
                    created_at=datetime.fromisoformat(created_at) if created_at else utc_now(),
                    cost=data.get("cost"),
                    assignments=int(data.get("assignments", 0)),
                    meta=data.get("meta") or {},
                )
            )
        return records

    def _path(self, history_id: int) -> Path:
        return self.history_dir / f"schedule-{history_id:06d}.json"

    def _history_ids(self) -> list[int]:
        if not self.history_dir.is_dir():
            return []
        ids = []
        for path in self.history_dir.iterdir():
            match = HISTORY_FILE_PATTERN.match(path.name)
            if match:
                ids.append(int(match.group(1)))
        return ids

    def _read(self, history_id: int) -> dict[str, Any]:
        path = self._path(int(history_id))
        if not path.is_file():
            raise HistoryNotFoundError(history_id)
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise DataIntegrityError(f"history file {path.name} is not valid JSON: {e}") from e
