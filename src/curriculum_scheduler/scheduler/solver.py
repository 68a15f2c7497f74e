"""Backtracking search for curriculum schedules.

Variables are the free sessions ``(curriculum_id, session_index)`` left after
fixed courses are placed; values are ``(slot, venue_id)`` pairs. The search
is an explicit-stack depth-first search with:

- MRV variable ordering, ties broken by degree and a seeded random key
- least-constraining-value ordering, ties broken by soft cost delta
- forward checking with an undo trail
- a bounded memo of partial states proven to have no completion
- bound pruning against the best complete schedule
- restarts with a fresh random stream after a node budget without improvement

Free sessions of one curriculum are interchangeable, so they are assigned
in index order at strictly increasing slots.
"""

import hashlib
import logging
import random
import time
from dataclasses import dataclass
from typing import Any

from ..config import SolverConfig
from ..exceptions import SchedulerError
from ..models import Assignment, Problem, Schedule
from ..validators import validate_problem
from .conflicts import ConflictDetector
from .cost import CostModel, CostTracker
from .cost_cache import CostCache
from .domain import ProblemState, Value
from .results import (
    CancellationToken,
    Cancelled,
    Infeasible,
    InfeasibleReason,
    PartialSuccess,
    SolveResult,
    SolverStatistics,
    SolverStatus,
    Success,
    check_transition,
)
from .schedule_hash import assignment_tag, problem_fingerprint

logger = logging.getLogger(__name__)

# Absolute tolerance for comparing float costs
COST_TOLERANCE = 1e-9

Var = tuple[Any, int]

# Search outcomes
EXHAUSTED = "exhausted"
OPTIMAL = "optimal"
BUDGET = "budget"
TIMEOUT = "timeout"
CANCELLED = "cancelled"


def derive_seed(seed: int, restart_index: int) -> int:
    """Seed of the random stream used by one restart."""
    digest = hashlib.blake2b(f"{seed}:{restart_index}".encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big")


class VariableDomain:
    """Remaining values of one variable, indexed by slot."""

    def __init__(self, grid_size: int, values: list[Value]) -> None:
        self.at_slot: list[dict] = [{} for _ in range(grid_size)]
        self.size = 0
        for slot, venue_id in values:
            self.at_slot[slot][venue_id] = None
            self.size += 1

    def __len__(self) -> int:
        return self.size

    def __contains__(self, value: Value) -> bool:
        slot, venue_id = value
        return venue_id in self.at_slot[slot]

    def values(self) -> list[Value]:
        """Values in canonical (slot, venue) order."""
        result = []
        for slot, venues in enumerate(self.at_slot):
            for venue_id in sorted(venues, key=str):
                result.append((slot, venue_id))
        return result

    def count_at(self, slot: int) -> int:
        return len(self.at_slot[slot])

    def remove(self, slot: int, venue_id) -> None:
        del self.at_slot[slot][venue_id]
        self.size -= 1

    def restore(self, slot: int, venue_id) -> None:
        self.at_slot[slot][venue_id] = None
        self.size += 1


@dataclass
class _Frame:
    """One decision level of the explicit search stack."""

    var: Var
    values: list[Value]
    mark: int
    index: int = 0
    placed: Assignment | None = None
    # Set when the subtree was cut by the bound or held a solution, so
    # exhausting it proves nothing about the parent state
    tainted: bool = False


@dataclass(frozen=True)
class _Relation:
    busy: bool
    venue: bool
    same_day: bool


class BacktrackingSolver:
    """Single-threaded schedule search.

    Args:
        problem: Problem to solve
        config: Options overriding ``problem.config``
        cost_cache: Shared cost cache (a private one is created if omitted)
        cancel_token: Token polled at every decision node
        best_cell: Optional shared cell receiving every improved schedule
        worker_index: Index of this solver within a parallel run
    """

    def __init__(
        self,
        problem: Problem,
        config: SolverConfig | None = None,
        cost_cache: CostCache | None = None,
        cancel_token: CancellationToken | None = None,
        best_cell=None,
        worker_index: int = 0,
    ):
        if config is not None and config is not problem.config:
            problem = problem.with_config(config)
        problem.config.validate()
        self.problem = problem
        self.config = problem.config
        self.cost_cache = cost_cache if cost_cache is not None else CostCache(self.config.cost_cache_capacity)
        self.cancel_token = cancel_token or CancellationToken()
        self.best_cell = best_cell
        self.worker_index = worker_index
        self.status = SolverStatus.IDLE
        self.statistics = SolverStatistics()
        self.seed = self.config.rng_seed if self.config.rng_seed is not None else problem_fingerprint(problem)
        self.statistics.seed = self.seed

        self.best_cost: float | None = None
        self.best_schedule: Schedule | None = None
        self.root_lower_bound = 0.0
        self._deepest: tuple[int, Schedule] | None = None
        self._dead_ends: dict[int, None] = {}
        self._relations: dict[tuple, _Relation] = {}

    def _transition(self, status: SolverStatus) -> None:
        check_transition(self.status, status)
        if status != self.status:
            logger.debug(f"Solver {self.worker_index}: {self.status.value} -> {status.value}")
        self.status = status

    def solve(self) -> SolveResult:
        """Run the search and return its result variant."""
        self._transition(SolverStatus.LOADING)
        self._started = time.monotonic()
        try:
            validate_problem(self.problem)
            self._load()
        except SchedulerError:
            self._transition(SolverStatus.FAILED)
            raise

        fixed_conflicts = self._place_fixed()
        if fixed_conflicts:
            for detail in fixed_conflicts:
                logger.warning(f"Fixed course conflict: {detail}")
            self._transition(SolverStatus.FAILED)
            return Infeasible(InfeasibleReason.FIXED_COURSE_CONFLICT, fixed_conflicts, self._final_statistics())

        wiped = self._init_domains()
        if wiped:
            details = [f"curriculum {cid} session {index} has no feasible slot" for cid, index in wiped]
            for detail in details:
                logger.warning(f"Domain wipeout: {detail}")
            self._transition(SolverStatus.FAILED)
            return Infeasible(InfeasibleReason.DOMAIN_WIPEOUT, details, self._final_statistics())

        self._transition(SolverStatus.SEARCHING)
        logger.info(
            f"Searching {len(self.variables)} free sessions of {len(self.problem.curricula)} curricula "
            f"(seed {self.seed}, {self.config.wall_clock_budget_ms} ms budget)"
        )
        outcome = self._run()
        return self._finish(outcome)

    def _load(self) -> None:
        self.state = ProblemState(self.problem)
        self.detector = ConflictDetector(self.state)
        self.cost_model = CostModel(self.problem)
        min_penalties = {
            cid: self.cost_model.min_assignment_penalty(cid, [slot for slot, _ in domain])
            for cid, domain in self.state.curriculum_domain.items()
        }
        self.tracker = CostTracker(self.cost_model, min_penalties)

        self.targets = {c.id: c.target_sessions for c in self.problem.curricula}
        self.next_index = {c.id: self.state.fixed_count.get(c.id, 0) for c in self.problem.curricula}
        self.degree = {cid: len(peers) for cid, peers in self.state.peers.items()}
        self.variables: list[Var] = []
        for curriculum in self.problem.curricula:
            for index in range(self.next_index[curriculum.id], curriculum.target_sessions):
                self.variables.append((curriculum.id, index))
        self.domains: dict[Var, VariableDomain] = {}
        self.trail: list[tuple[Var, int, Any]] = []
        self.free_placed = 0

    def _place_fixed(self) -> list[str]:
        """Place fixed courses verbatim, returning descriptions of any conflicts."""
        details = []
        fixed = sorted(self.state.fixed_assignments.items(), key=lambda item: item[0])
        for fixed_id, assignment in fixed:
            for conflict in self.detector.check(assignment, ignore=()):
                details.append(f"fixed course {fixed_id}: {conflict.describe()}")
            self.state.place(assignment)
            self.tracker.push(assignment)
        self.root_lower_bound = self.tracker.lower_bound()
        return details

    def _init_domains(self) -> list[Var]:
        """Build variable domains against the fixed courses; return wiped-out variables."""
        grid_size = self.state.grid.size
        wiped = []
        feasible_values: dict[Any, list[Value]] = {}
        for cid, index in self.variables:
            if cid not in feasible_values:
                feasible_values[cid] = [
                    (slot, venue_id)
                    for slot, venue_id in self.state.curriculum_domain[cid]
                    if self.detector.is_feasible(Assignment(cid, index, slot, venue_id))
                ]
            domain = VariableDomain(grid_size, feasible_values[cid])
            self.domains[(cid, index)] = domain
            if not domain.size:
                wiped.append((cid, index))
        return wiped

    def _run(self) -> str:
        deadline = self._started + self.config.wall_clock_budget_ms / 1000.0
        restart_index = 0
        while True:
            rng = random.Random(derive_seed(self.seed, restart_index))
            outcome = self._search(rng, deadline)
            if outcome != BUDGET:
                return outcome
            if restart_index >= self.config.max_restarts:
                return BUDGET
            restart_index += 1
            self.statistics.restarts += 1
            self._transition(self.status)
            logger.debug(
                f"Solver {self.worker_index}: restart {restart_index} after "
                f"{self.config.node_budget_per_restart} nodes without improvement"
            )

    def _search(self, rng: random.Random, deadline: float) -> str:
        tiebreak = {var: rng.random() for var in self.variables}
        stack: list[_Frame] = []
        nodes_since_improvement = 0
        budget = self.config.node_budget_per_restart
        stats = self.statistics

        root = self._open_frame(rng, tiebreak)
        if root is None:
            self._record_solution()
            return EXHAUSTED
        stack.append(root)

        try:
            while stack:
                if self.cancel_token.is_cancelled:
                    return CANCELLED
                if time.monotonic() >= deadline:
                    return TIMEOUT
                if nodes_since_improvement >= budget:
                    return BUDGET

                frame = stack[-1]
                if frame.placed is not None:
                    self._unplace(frame)

                if frame.index >= len(frame.values):
                    stack.pop()
                    stats.backtracks += 1
                    if frame.tainted:
                        if stack:
                            stack[-1].tainted = True
                    else:
                        self._remember_dead_end(self.state.hash)
                    continue

                slot, venue_id = frame.values[frame.index]
                frame.index += 1
                assignment = Assignment(frame.var[0], frame.var[1], slot, venue_id)
                stats.nodes += 1
                nodes_since_improvement += 1
                self._place(frame, assignment)

                if self.state.hash in self._dead_ends:
                    stats.dead_end_hits += 1
                    continue
                if self.best_cost is not None and (
                    self.tracker.lower_bound() >= self.best_cost - COST_TOLERANCE
                ):
                    stats.bound_prunes += 1
                    frame.tainted = True
                    continue
                if not self._forward_check(frame.var, assignment):
                    stats.forward_check_wipeouts += 1
                    self._remember_dead_end(self.state.hash)
                    continue

                if self._deepest is None or self.free_placed > self._deepest[0]:
                    self._deepest = (self.free_placed, self.state.snapshot())

                child = self._open_frame(rng, tiebreak)
                if child is None:
                    frame.tainted = True
                    if self._record_solution():
                        nodes_since_improvement = 0
                    if self._good_enough():
                        return OPTIMAL
                    continue
                stack.append(child)
            return EXHAUSTED
        finally:
            while stack:
                frame = stack.pop()
                if frame.placed is not None:
                    self._unplace(frame)

    def _open_frame(self, rng: random.Random, tiebreak: dict[Var, float]) -> _Frame | None:
        """Pick the next variable (MRV, degree, random) and order its values."""
        best_var = None
        best_key = None
        for cid, index in self.next_index.items():
            if index >= self.targets[cid]:
                continue
            var = (cid, index)
            key = (self.domains[var].size, -self.degree[cid], tiebreak[var])
            if best_key is None or key < best_key:
                best_var, best_key = var, key
        if best_var is None:
            return None
        return _Frame(var=best_var, values=self._order_values(best_var, rng), mark=len(self.trail))

    def _place(self, frame: _Frame, assignment: Assignment) -> None:
        self.state.place(assignment)
        self.tracker.push(assignment)
        self.next_index[assignment.curriculum_id] += 1
        self.free_placed += 1
        frame.placed = assignment

    def _unplace(self, frame: _Frame) -> None:
        assignment = frame.placed
        while len(self.trail) > frame.mark:
            var, slot, venue_id = self.trail.pop()
            self.domains[var].restore(slot, venue_id)
        self.tracker.pop(assignment)
        self.state.remove(assignment)
        self.next_index[assignment.curriculum_id] -= 1
        self.free_placed -= 1
        frame.placed = None

    def _unassigned(self, cid) -> range:
        return range(self.next_index[cid], self.targets[cid])

    def _forward_check(self, var: Var, assignment: Assignment) -> bool:
        """Remove values made infeasible by ``assignment`` from unassigned peers.

        Every hard constraint involves sessions in the same slot or on the
        same day, so only values on the assignment's day need checking. Later
        sessions of the same curriculum also lose every slot up to this one.

        Returns:
            False if some domain became empty
        """
        cid = var[0]
        grid = self.state.grid
        day_slots = grid.day_slots(grid.day_of(assignment.slot))
        trail = self.trail

        for index in self._unassigned(cid):
            other = (cid, index)
            domain = self.domains[other]
            for slot in range(assignment.slot + 1):
                for venue_id in list(domain.at_slot[slot]):
                    domain.remove(slot, venue_id)
                    trail.append((other, slot, venue_id))
            self._filter_day(cid, index, domain, [s for s in day_slots if s > assignment.slot])
            if not domain.size:
                return False

        for peer in self.state.peers[cid]:
            verdicts: dict[Value, bool] = {}
            for index in self._unassigned(peer):
                domain = self.domains[(peer, index)]
                self._filter_day(peer, index, domain, day_slots, verdicts)
                if not domain.size:
                    return False
        return True

    def _filter_day(self, cid, index: int, domain: VariableDomain, slots, verdicts: dict | None = None) -> None:
        var = (cid, index)
        for slot in slots:
            venues = domain.at_slot[slot]
            if not venues:
                continue
            for venue_id in list(venues):
                value = (slot, venue_id)
                feasible = verdicts.get(value) if verdicts is not None else None
                if feasible is None:
                    feasible = self.detector.is_feasible(Assignment(cid, index, slot, venue_id))
                    if verdicts is not None:
                        verdicts[value] = feasible
                if not feasible:
                    domain.remove(slot, venue_id)
                    self.trail.append((var, slot, venue_id))

    def _relation(self, cid, other) -> _Relation:
        key = (cid, other)
        relation = self._relations.get(key)
        if relation is None:
            state = self.state
            overlap = state.weeks_overlap(cid, other)
            teacher, other_teacher = state.teacher_of[cid], state.teacher_of[other]
            partners = {p for p, _ in state.partners.get(teacher, ())}
            shared_class = bool(set(state.class_ids[cid]) & set(state.class_ids[other]))
            busy = overlap and (teacher == other_teacher or shared_class or other_teacher in partners)
            venues = {v for v in state.venue_options[cid] if v is not None}
            venue = overlap and bool(venues & set(state.venue_options[other]))
            same_day = (
                overlap
                and shared_class
                and state.subject_of[cid] == state.subject_of[other]
                and not state.same_day_allowed[other]
            )
            relation = _Relation(busy=busy, venue=venue, same_day=same_day)
            self._relations[key] = relation
        return relation

    def _impact(self, var: Var, value: Value) -> int:
        """Number of peer values a placement would remove (least-constraining value)."""
        cid = var[0]
        slot, venue_id = value
        grid = self.state.grid
        day_slots = grid.day_slots(grid.day_of(slot))
        impact = 0

        for index in range(var[1] + 1, self.targets[cid]):
            domain = self.domains[(cid, index)]
            impact += sum(domain.count_at(s) for s in range(slot + 1))
            if not self.state.same_day_allowed[cid]:
                impact += sum(domain.count_at(s) for s in day_slots if s > slot)

        venue_full = False
        if venue_id is not None:
            load = self.state.venue_load.get((venue_id, slot), (0, 0))
            capacity = self.state.venue_capacity.get(venue_id, 0)
            venue_full = any(load[w] + 1 >= capacity for w in self.state.weeks[cid])

        for peer in self.state.peers[cid]:
            relation = self._relation(cid, peer)
            for index in self._unassigned(peer):
                domain = self.domains[(peer, index)]
                if relation.busy:
                    impact += domain.count_at(slot)
                elif relation.venue and venue_full and venue_id in domain.at_slot[slot]:
                    impact += 1
                if relation.same_day:
                    impact += sum(domain.count_at(s) for s in day_slots if s != slot)
        return impact

    def _cost_delta(self, assignment: Assignment) -> float:
        current = self.tracker.total
        new_hash = self.state.hash ^ assignment_tag(assignment)
        cached = self.cost_cache.get(new_hash)
        if cached is not None:
            return cached - current
        delta = self.tracker.delta(assignment)
        self.cost_cache.put(new_hash, current + delta)
        return delta

    def _order_values(self, var: Var, rng: random.Random) -> list[Value]:
        keyed = []
        for value in self.domains[var].values():
            assignment = Assignment(var[0], var[1], value[0], value[1])
            keyed.append((self._impact(var, value), self._cost_delta(assignment), rng.random(), value))
        keyed.sort(key=lambda item: item[:3])
        return [item[3] for item in keyed]

    def _remember_dead_end(self, state_hash: int) -> None:
        limit = self.config.dead_end_memo_limit
        if limit <= 0:
            return
        if len(self._dead_ends) >= limit:
            del self._dead_ends[next(iter(self._dead_ends))]
        self._dead_ends[state_hash] = None

    def _record_solution(self) -> bool:
        """Record the current complete schedule; return True if it improves the best."""
        cost = self.tracker.total
        self.cost_cache.put(self.state.hash, cost)
        self.statistics.solutions_found += 1
        if self.best_cost is not None and cost >= self.best_cost - COST_TOLERANCE:
            return False

        self.best_cost = cost
        self.best_schedule = self.state.snapshot()
        self.statistics.best_cost_history.append(cost)
        if self.status == SolverStatus.SEARCHING:
            self._transition(SolverStatus.IMPROVING)
        if self.best_cell is not None:
            self.best_cell.offer(cost, self.worker_index, self.best_schedule)
        logger.debug(f"Solver {self.worker_index}: new best cost {cost:.2f} after {self.statistics.nodes} nodes")
        return True

    def _good_enough(self) -> bool:
        return self.best_cost is not None and (
            self.best_cost <= self.root_lower_bound + self.config.cost_epsilon + COST_TOLERANCE
        )

    def _final_statistics(self) -> SolverStatistics:
        self.statistics.elapsed_seconds = time.monotonic() - self._started
        self.statistics.cache = self.cost_cache.stats()
        return self.statistics

    def _finish(self, outcome: str) -> SolveResult:
        stats = self._final_statistics()
        stats.stop_reason = outcome
        stats.cancelled = outcome == CANCELLED
        stats.optimal = self.best_schedule is not None and outcome in (EXHAUSTED, OPTIMAL)
        self._transition(SolverStatus.DONE)

        if self.best_schedule is not None:
            breakdown = self.cost_model.evaluate(self.best_schedule)
            logger.info(
                f"Found schedule with cost {self.best_cost:.2f} "
                f"({stats.nodes} nodes, {stats.restarts} restarts, {stats.elapsed_seconds:.2f}s, {outcome})"
            )
            return Success(self.best_schedule, self.best_cost, breakdown, stats)

        if outcome == CANCELLED:
            logger.info("Solve cancelled before a complete schedule was found")
            return Cancelled(stats)

        if outcome == EXHAUSTED:
            logger.warning("Search space exhausted without a complete schedule")
            return Infeasible(InfeasibleReason.EXHAUSTED, ["no assignment satisfies every hard constraint"], stats)

        unmet = self._unmet_curricula()
        if self.config.allow_partial and self._deepest is not None:
            partial = self._deepest[1]
            logger.warning(f"Budget exhausted; returning partial schedule missing {len(unmet)} curricula")
            return PartialSuccess(partial, self.cost_model.total(partial), unmet, stats)

        logger.warning(f"Budget exhausted ({outcome}) without a complete schedule")
        return Infeasible(
            InfeasibleReason.TIMEOUT,
            [f"no complete schedule within the budget; curricula never fully placed: {unmet}"],
            stats,
        )

    def _unmet_curricula(self) -> list:
        placed: dict[Any, int] = {}
        partial = self._deepest[1] if self._deepest is not None else Schedule(
            tuple(self.state.fixed_assignments.values())
        )
        for assignment in partial:
            placed[assignment.curriculum_id] = placed.get(assignment.curriculum_id, 0) + 1
        return [c.id for c in self.problem.curricula if placed.get(c.id, 0) < c.target_sessions]


def solve(problem: Problem, config: SolverConfig | None = None, **kwargs) -> SolveResult:
    """Solve a problem with a fresh BacktrackingSolver."""
    return BacktrackingSolver(problem, config=config, **kwargs).solve()
