"""Problem and schedule history stores."""

from .base import HistoryRecord, ScheduleStore
from .json_store import JsonStore
from .memory import InMemoryStore
from .sql import SqlStore

__all__ = [
    "HistoryRecord",
    "ScheduleStore",
    "InMemoryStore",
    "JsonStore",
    "SqlStore",
]
