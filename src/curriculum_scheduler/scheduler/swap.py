"""Local repair suggestions for a single schedule change.

Given a schedule and a requested change (insert, remove or move one
session), ``SwapSuggester`` searches breadth-first for short chains of
relocations that make the change feasible again. Only sessions that block
the current state are moved, each session moves at most once, and fixed
courses and the changed session stay where they are.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..config import SolverConfig
from ..exceptions import DataIntegrityError
from ..models import Assignment, Problem, Schedule
from ..validators import validate_problem
from .conflicts import ConflictDetector, Conflicts
from .cost import CostModel
from .cost_cache import CostCache
from .domain import ProblemState
from .results import CancellationToken
from .schedule_hash import assignment_tag, schedule_hash

logger = logging.getLogger(__name__)

Key = tuple[Any, int]


@dataclass(frozen=True)
class InsertAssignment:
    """Add a new session to the schedule."""

    assignment: Assignment


@dataclass(frozen=True)
class RemoveAssignment:
    """Take a session out of the schedule."""

    key: Key


@dataclass(frozen=True)
class MoveAssignment:
    """Move a session to another slot (and venue)."""

    key: Key
    slot: int
    venue_id: Any = None


class SwapKind(str, Enum):
    """Shape of a repair chain."""

    SIMPLE = "simple"
    SWAP = "swap"
    CHAIN = "chain"


@dataclass(frozen=True)
class SwapMove:
    """Relocation of one session. ``before``/``after`` are None for inserts/removals."""

    key: Key
    before: Assignment | None
    after: Assignment | None


@dataclass
class SwapChain:
    """A requested change plus the relocations that make it feasible."""

    change: SwapMove
    moves: list[SwapMove] = field(default_factory=list)
    cost_delta: float = 0.0
    resulting_schedule: Schedule = field(default_factory=Schedule)
    description: str = ""

    @property
    def length(self) -> int:
        """Sessions relocated, counting the requested change."""
        return 1 + len(self.moves)

    @property
    def kind(self) -> SwapKind:
        if not self.moves:
            return SwapKind.SIMPLE
        if len(self.moves) == 1:
            return SwapKind.SWAP
        return SwapKind.CHAIN

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "length": self.length,
            "cost_delta": self.cost_delta,
            "description": self.description,
            "moves": [_move_to_dict(m) for m in [self.change] + self.moves],
        }


def _move_to_dict(move: SwapMove) -> dict[str, Any]:
    return {
        "curriculum_id": move.key[0],
        "session_index": move.key[1],
        "from": move.before.to_dict() if move.before else None,
        "to": move.after.to_dict() if move.after else None,
    }


@dataclass(frozen=True)
class _Node:
    # (key, new placement) in application order; the requested change first
    changes: tuple[tuple[Key, Assignment | None], ...]
    relocations: int
    state_hash: int


class SwapSuggester:
    """Bounded breadth-first search for repair chains.

    Args:
        problem: Problem the schedule belongs to
        schedule: Current schedule
        config: Options overriding ``problem.config``
        cost_cache: Shared cost cache (a private one is created if omitted)
        cancel_token: Token polled at every expansion
    """

    def __init__(
        self,
        problem: Problem,
        schedule: Schedule,
        config: SolverConfig | None = None,
        cost_cache: CostCache | None = None,
        cancel_token: CancellationToken | None = None,
    ):
        if config is not None and config is not problem.config:
            problem = problem.with_config(config)
        problem.config.validate()
        validate_problem(problem)
        self.problem = problem
        self.config = problem.config
        self.schedule = schedule
        self.cost_cache = cost_cache if cost_cache is not None else CostCache(self.config.cost_cache_capacity)
        self.cancel_token = cancel_token or CancellationToken()

        self.state = ProblemState(problem)
        self.detector = ConflictDetector(self.state)
        self.cost_model = CostModel(problem)
        self.base: dict[Key, Assignment] = {}
        for assignment in schedule:
            if assignment.curriculum_id not in problem.curricula_by_id:
                raise DataIntegrityError("schedule references unknown curricula", [assignment.curriculum_id])
            self.base[assignment.key] = assignment
            self.state.place(assignment)
        self.base_hash = schedule_hash(schedule)
        self.base_cost = self._cost(self.base_hash, schedule)
        self.fixed_keys = set(self.state.fixed_by_key)
        self._ordered_keys = sorted(self.base, key=str)
        self._domain_sets = {cid: set(values) for cid, values in self.state.curriculum_domain.items()}

    def suggest(self, change) -> list[SwapChain]:
        """Find repair chains for a requested change, best first.

        Args:
            change: InsertAssignment, RemoveAssignment or MoveAssignment

        Returns:
            Chains ranked by (length, cost delta, description); a change that
            is feasible on its own yields a single chain without moves, and
            an empty list means no chain within the configured limits exists
        """
        target_key, target = self._resolve(change)
        if target is None and target_key in self.fixed_keys:
            logger.info(f"Session {target_key} is a fixed course and cannot be removed")
            return []
        frozen = self.fixed_keys | {target_key}
        root = self._make_node(((target_key, target),), 1)

        queue = deque([root])
        visited = {root.state_hash}
        goals: list[_Node] = []
        deadline = time.monotonic() + self.config.wall_clock_budget_ms / 1000.0
        expansions = 0

        while queue:
            if self.cancel_token.is_cancelled or time.monotonic() >= deadline:
                logger.info("Swap search stopped early")
                break
            node = queue.popleft()
            conflicts = self._node_conflicts(node)
            if conflicts is None:
                continue
            if not conflicts:
                goals.append(node)
                continue
            if node.relocations >= self.config.max_swap_chain:
                continue
            expansions += 1

            moved = {key for key, _ in node.changes}
            blockers = [key for key in conflicts.blocking_keys() if key not in frozen and key not in moved]
            for child in self._expand(node, blockers, moved | frozen):
                if child.state_hash in visited:
                    continue
                if len(visited) >= self.config.swap_frontier_limit:
                    break
                visited.add(child.state_hash)
                queue.append(child)

        logger.debug(f"Swap search: {expansions} expansions, {len(visited)} states, {len(goals)} chains")
        chains = [self._to_chain(node) for node in goals]
        chains.sort(key=lambda c: (c.length, c.cost_delta, c.description))
        return chains

    def _resolve(self, change) -> tuple[Key, Assignment | None]:
        if isinstance(change, InsertAssignment):
            assignment = change.assignment
            if assignment.curriculum_id not in self.problem.curricula_by_id:
                raise DataIntegrityError("insert references an unknown curriculum", [assignment.curriculum_id])
            if assignment.key in self.base:
                raise DataIntegrityError("session is already scheduled", [assignment.key])
            self._check_slot(assignment.slot)
            return assignment.key, assignment
        if isinstance(change, RemoveAssignment):
            if change.key not in self.base:
                raise DataIntegrityError("session is not scheduled", [change.key])
            return change.key, None
        if isinstance(change, MoveAssignment):
            current = self.base.get(change.key)
            if current is None:
                raise DataIntegrityError("session is not scheduled", [change.key])
            self._check_slot(change.slot)
            return change.key, current.moved(change.slot, change.venue_id)
        raise TypeError(f"Unsupported change: {change!r}")

    def _check_slot(self, slot: int) -> None:
        if not self.problem.grid.contains(slot):
            raise DataIntegrityError(f"slot outside 0..{self.problem.grid.size - 1}", [slot])

    def _make_node(self, changes: tuple, relocations: int) -> _Node:
        value = self.base_hash
        for key, new in changes:
            old = self.base.get(key)
            if old is not None:
                value ^= assignment_tag(old)
            if new is not None:
                value ^= assignment_tag(new)
        return _Node(changes, relocations, value)

    def _apply(self, node: _Node) -> None:
        for key, _ in node.changes:
            if key in self.base:
                self.state.remove(self.base[key])
        for _, new in node.changes:
            if new is not None:
                self.state.place(new)

    def _revert(self, node: _Node) -> None:
        for _, new in node.changes:
            if new is not None:
                self.state.remove(new)
        for key, _ in node.changes:
            if key in self.base:
                self.state.place(self.base[key])

    def _node_conflicts(self, node: _Node) -> Conflicts | None:
        """Conflicts of the sessions touched by a node, or None if they cannot be repaired."""
        self._apply(node)
        try:
            found = []
            for _, new in node.changes:
                if new is None:
                    continue
                conflicts = self.detector.check(new)
                if conflicts.has_unmovable():
                    return None
                found.extend(conflicts)
            return Conflicts(found)
        finally:
            self._revert(node)

    def _current(self, node: _Node, key: Key) -> Assignment | None:
        for changed_key, new in node.changes:
            if changed_key == key:
                return new
        return self.base.get(key)

    def _expand(self, node: _Node, blockers: list[Key], locked: set[Key]):
        """Children relocating one blocker, or exchanging it with another session."""
        for key in blockers:
            current = self._current(node, key)
            if current is None:
                continue
            for slot, venue_id in self.state.curriculum_domain[key[0]]:
                if (slot, venue_id) == (current.slot, current.venue_id):
                    continue
                yield self._make_node(node.changes + ((key, current.moved(slot, venue_id)),), node.relocations + 1)

            if node.relocations + 2 > self.config.max_swap_chain:
                continue
            domain = self._domain_sets[key[0]]
            for other_key in self._ordered_keys:
                if other_key == key or other_key in locked:
                    continue
                other = self.base[other_key]
                if (other.slot, other.venue_id) not in domain:
                    continue
                if (current.slot, current.venue_id) not in self._domain_sets[other_key[0]]:
                    continue
                if (other.slot, other.venue_id) == (current.slot, current.venue_id):
                    continue
                exchange = (
                    (key, current.moved(other.slot, other.venue_id)),
                    (other_key, other.moved(current.slot, current.venue_id)),
                )
                yield self._make_node(node.changes + exchange, node.relocations + 2)

    def _to_chain(self, node: _Node) -> SwapChain:
        moves = []
        for key, new in node.changes:
            moves.append(SwapMove(key, self.base.get(key), new))
        removed = [m.before for m in moves if m.before is not None]
        added = [m.after for m in moves if m.after is not None]
        resulting = self.schedule.replace(removed, added)
        cost = self._cost(node.state_hash, resulting)
        return SwapChain(
            change=moves[0],
            moves=moves[1:],
            cost_delta=cost - self.base_cost,
            resulting_schedule=resulting,
            description=self._describe(moves),
        )

    def _cost(self, state_hash: int, schedule: Schedule) -> float:
        return self.cost_cache.get_or_compute(state_hash, lambda: self.cost_model.total(schedule))

    def _describe(self, moves: list[SwapMove]) -> str:
        grid = self.problem.grid
        parts = []
        for move in moves:
            label = f"{move.key[0]}#{move.key[1]}"
            if move.before is None:
                parts.append(f"insert {label} at {grid.describe(move.after.slot)}")
            elif move.after is None:
                parts.append(f"remove {label} from {grid.describe(move.before.slot)}")
            else:
                parts.append(
                    f"move {label} from {grid.describe(move.before.slot)} to {grid.describe(move.after.slot)}"
                    + (f" ({move.after.venue_id})" if move.after.venue_id is not None else "")
                )
        return "; ".join(parts)
