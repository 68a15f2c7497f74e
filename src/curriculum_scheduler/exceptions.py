"""Custom exceptions for the curriculum scheduler."""

from typing import Any


class SchedulerError(Exception):
    """Base exception for scheduler errors."""

    pass


class ConfigurationError(SchedulerError):
    """Solver configuration is invalid."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Invalid configuration value for '{field}': {message}")


class DataIntegrityError(SchedulerError):
    """Problem data references unknown entities or contradicts itself."""

    def __init__(self, message: str, ids: list[Any] | None = None):
        self.ids = list(ids or [])
        text = f"Data integrity error: {message}"
        if self.ids:
            text += f" (offending ids: {', '.join(str(i) for i in self.ids)})"
        super().__init__(text)


class SolverStateError(SchedulerError):
    """Solver was driven through an invalid state transition."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid solver transition: {current} -> {requested}")


class HistoryNotFoundError(SchedulerError):
    """Requested schedule history record does not exist."""

    def __init__(self, history_id: int | str):
        self.history_id = history_id
        super().__init__(f"Schedule history record '{history_id}' not found")
