"""Solver configuration."""

import json
import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from .constants import (
    DEFAULT_COST_CACHE_CAPACITY,
    DEFAULT_DAYS_PER_WEEK,
    DEFAULT_DEAD_END_MEMO_LIMIT,
    DEFAULT_MAX_RESTARTS,
    DEFAULT_MAX_SWAP_CHAIN,
    DEFAULT_NODE_BUDGET_PER_RESTART,
    DEFAULT_PERIODS_PER_DAY,
    DEFAULT_SWAP_FRONTIER_LIMIT,
    DEFAULT_WALL_CLOCK_BUDGET_MS,
    MAX_MASK_BITS,
    MAX_SWAP_CHAIN_LIMIT,
    SOFT_CONSTRAINT_WEIGHTS,
)
from .exceptions import ConfigurationError
from .timegrid import TimeGrid

logger = logging.getLogger(__name__)

WEIGHT_PREFIX = "weight."


@dataclass(frozen=True)
class SolverConfig:
    """Recognized solver options.

    Weights are keyed by soft cost component name. When loading from a
    mapping, both dotted keys (``"weight.teacher_spread"``) and a nested
    ``"weight"`` object are accepted.
    """

    days_per_week: int = DEFAULT_DAYS_PER_WEEK
    periods_per_day: int = DEFAULT_PERIODS_PER_DAY
    weights: dict[str, float] = field(default_factory=lambda: dict(SOFT_CONSTRAINT_WEIGHTS))
    node_budget_per_restart: int = DEFAULT_NODE_BUDGET_PER_RESTART
    max_restarts: int = DEFAULT_MAX_RESTARTS
    wall_clock_budget_ms: int = DEFAULT_WALL_CLOCK_BUDGET_MS
    cost_cache_capacity: int = DEFAULT_COST_CACHE_CAPACITY
    swap_frontier_limit: int = DEFAULT_SWAP_FRONTIER_LIMIT
    max_swap_chain: int = DEFAULT_MAX_SWAP_CHAIN
    allow_same_day_same_subject: bool = False
    rng_seed: int | None = None
    cost_epsilon: float = 0.0
    dead_end_memo_limit: int = DEFAULT_DEAD_END_MEMO_LIMIT
    allow_partial: bool = False
    max_slots: int = MAX_MASK_BITS

    @property
    def grid(self) -> TimeGrid:
        return TimeGrid(self.days_per_week, self.periods_per_day)

    def weight(self, component: str) -> float:
        return self.weights.get(component, 0.0)

    def with_overrides(self, **overrides: Any) -> "SolverConfig":
        """Return a validated copy with some options replaced."""
        updated = replace(self, **{k: v for k, v in overrides.items() if v is not None})
        updated.validate()
        return updated

    def validate(self) -> None:
        """Validate option values, raising ConfigurationError on the first problem."""
        if not 1 <= self.days_per_week <= 30:
            raise ConfigurationError("days_per_week", f"must be between 1 and 30, got {self.days_per_week}")
        if not 1 <= self.periods_per_day <= 12:
            raise ConfigurationError(
                "periods_per_day", f"must be between 1 and 12, got {self.periods_per_day}"
            )
        slots = self.days_per_week * self.periods_per_day
        if slots > self.max_slots:
            raise ConfigurationError(
                "days_per_week",
                f"{self.days_per_week} x {self.periods_per_day} = {slots} slots "
                f"exceeds the {self.max_slots}-bit forbidden mask",
            )
        for name, value in self.weights.items():
            if name not in SOFT_CONSTRAINT_WEIGHTS:
                raise ConfigurationError(f"{WEIGHT_PREFIX}{name}", "unknown cost component")
            if value < 0:
                raise ConfigurationError(f"{WEIGHT_PREFIX}{name}", f"must be >= 0, got {value}")
        if self.node_budget_per_restart <= 0:
            raise ConfigurationError("node_budget_per_restart", "must be greater than 0")
        if self.max_restarts < 0:
            raise ConfigurationError("max_restarts", "must be >= 0")
        if self.wall_clock_budget_ms <= 0:
            raise ConfigurationError("wall_clock_budget_ms", "must be greater than 0")
        if self.cost_cache_capacity < 0:
            raise ConfigurationError("cost_cache_capacity", "must be >= 0")
        if self.swap_frontier_limit <= 0:
            raise ConfigurationError("swap_frontier_limit", "must be greater than 0")
        if not 1 <= self.max_swap_chain <= MAX_SWAP_CHAIN_LIMIT:
            raise ConfigurationError(
                "max_swap_chain", f"must be between 1 and {MAX_SWAP_CHAIN_LIMIT}, got {self.max_swap_chain}"
            )
        if self.cost_epsilon < 0:
            raise ConfigurationError("cost_epsilon", "must be >= 0")
        if self.dead_end_memo_limit < 0:
            raise ConfigurationError("dead_end_memo_limit", "must be >= 0")

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SolverConfig":
        """Create a validated SolverConfig from a dictionary."""
        data = dict(data or {})
        known = {f.name for f in fields(cls)} - {"weights"}

        weights = dict(SOFT_CONSTRAINT_WEIGHTS)
        nested = data.pop("weight", None) or data.pop("weights", None) or {}
        for name, value in nested.items():
            weights[name] = _as_float(f"{WEIGHT_PREFIX}{name}", value)

        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key.startswith(WEIGHT_PREFIX):
                name = key[len(WEIGHT_PREFIX):]
                weights[name] = _as_float(key, value)
            elif key in known:
                kwargs[key] = value
            else:
                logger.warning(f"Ignoring unknown configuration option '{key}'")

        for key in (
            "days_per_week",
            "periods_per_day",
            "node_budget_per_restart",
            "max_restarts",
            "wall_clock_budget_ms",
            "cost_cache_capacity",
            "swap_frontier_limit",
            "max_swap_chain",
            "dead_end_memo_limit",
            "max_slots",
        ):
            if key in kwargs:
                kwargs[key] = _as_int(key, kwargs[key])
        if kwargs.get("rng_seed") is not None:
            kwargs["rng_seed"] = _as_int("rng_seed", kwargs["rng_seed"])
        if "cost_epsilon" in kwargs:
            kwargs["cost_epsilon"] = _as_float("cost_epsilon", kwargs["cost_epsilon"])
        for key in ("allow_same_day_same_subject", "allow_partial"):
            if key in kwargs:
                kwargs[key] = _as_bool(key, kwargs[key])

        config = cls(weights=weights, **kwargs)
        config.validate()
        return config

    def to_dict(self) -> dict[str, Any]:
        """Convert to a flat dictionary with dotted weight keys."""
        result: dict[str, Any] = {}
        for f in fields(self):
            if f.name == "weights":
                continue
            result[f.name] = getattr(self, f.name)
        for name, value in sorted(self.weights.items()):
            result[f"{WEIGHT_PREFIX}{name}"] = value
        return result


def load_config(path: Path | str) -> SolverConfig:
    """Load solver configuration from a JSON file."""
    with open(path, encoding="utf-8") as f:
        return SolverConfig.from_dict(json.load(f))


def _as_int(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(key, f"expected an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(key, f"expected an integer, got {value!r}") from e


def _as_float(key: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(key, f"expected a number, got {value!r}") from e


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, str)) and str(value).lower() in ("1", "true", "yes"):
        return True
    if isinstance(value, (int, str)) and str(value).lower() in ("0", "false", "no"):
        return False
    raise ConfigurationError(key, f"expected a boolean, got {value!r}")
