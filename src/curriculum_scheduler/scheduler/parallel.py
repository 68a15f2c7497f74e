"""Independent restart workers running on a thread pool."""

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

from ..config import SolverConfig
from ..models import Problem, Schedule
from .cost_cache import CostCache
from .results import CancellationToken, Cancelled, Infeasible, PartialSuccess, SolveResult, Success
from .schedule_hash import problem_fingerprint
from .solver import BacktrackingSolver

logger = logging.getLogger(__name__)


class BestScheduleCell:
    """Lock-protected holder of the best complete schedule across workers.

    Lower cost wins; equal costs go to the lower worker index so the merged
    result does not depend on thread timing.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._best: tuple[float, int, Schedule] | None = None

    def offer(self, cost: float, worker_index: int, schedule: Schedule) -> bool:
        """Offer a schedule; return True if it became the best."""
        with self._lock:
            if self._best is not None and (cost, worker_index) >= self._best[:2]:
                return False
            self._best = (cost, worker_index, schedule)
            return True

    def get(self) -> tuple[float, int, Schedule] | None:
        with self._lock:
            return self._best


class ParallelSolver:
    """Run several seeded BacktrackingSolvers and keep the best result.

    Worker ``i`` uses seed ``rng_seed + i``. The workers share the cost cache
    and a BestScheduleCell; each keeps its own search state.
    """

    def __init__(
        self,
        problem: Problem,
        workers: int | None = None,
        config: SolverConfig | None = None,
        cost_cache: CostCache | None = None,
        cancel_token: CancellationToken | None = None,
    ):
        self.problem = problem
        self.config = config or problem.config
        self.config.validate()
        self.workers = workers or min(4, os.cpu_count() or 1)
        self.cost_cache = cost_cache if cost_cache is not None else CostCache(self.config.cost_cache_capacity)
        self.cancel_token = cancel_token or CancellationToken()
        self.best_cell = BestScheduleCell()

    def solve(self) -> SolveResult:
        base_seed = self.config.rng_seed
        if base_seed is None:
            base_seed = problem_fingerprint(self.problem)

        solvers = [
            BacktrackingSolver(
                self.problem,
                config=replace(self.config, rng_seed=base_seed + index),
                cost_cache=self.cost_cache,
                cancel_token=self.cancel_token,
                best_cell=self.best_cell,
                worker_index=index,
            )
            for index in range(self.workers)
        ]
        logger.info(f"Starting {self.workers} solver workers (base seed {base_seed})")

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = [executor.submit(solver.solve) for solver in solvers]
            results = [future.result() for future in futures]

        return self._merge(results)

    def _merge(self, results: list[SolveResult]) -> SolveResult:
        successes = [(r.cost, index, r) for index, r in enumerate(results) if isinstance(r, Success)]
        if successes:
            cost, index, best = min(successes, key=lambda item: item[:2])
            best.statistics.restarts = sum(r.statistics.restarts for r in results)
            logger.info(f"Best schedule from worker {index} with cost {cost:.2f}")
            return best

        partials = [(len(r.unmet_curricula), index, r) for index, r in enumerate(results) if isinstance(r, PartialSuccess)]
        if partials:
            return min(partials, key=lambda item: item[:2])[2]

        for result in results:
            if isinstance(result, Infeasible):
                return result
        cancelled = [r for r in results if isinstance(r, Cancelled)]
        return cancelled[0] if cancelled else results[0]
