"""Curriculum timetable search.

This package places every weekly session of every curriculum into the
day/period grid without violating hard constraints, while minimising the
weighted soft-constraint cost. It also checks existing schedules and
suggests short repair chains when a single session is inserted, moved or
removed.

Main classes:
- BacktrackingSolver: Single-threaded search with restarts
- ParallelSolver: Several seeded solvers sharing one cost cache
- SwapSuggester: Breadth-first repair chains for one change
- ConflictDetector: Hard-constraint checks and slot reports against a ProblemState

Usage:
    from curriculum_scheduler.scheduler import BacktrackingSolver

    result = BacktrackingSolver(problem).solve()
    if result.is_success:
        print(result.cost)
"""

from .conflicts import (
    ClassBusy,
    Conflict,
    ConflictDetector,
    Conflicts,
    DoubleSession,
    FixedCourseOverwrite,
    ForbiddenSlot,
    SameDaySameSubject,
    SessionCountMismatch,
    SlotSeverity,
    SlotStatus,
    TeacherBusy,
    TeacherDailyLimit,
    TeacherMutuallyExclusive,
    VenueFull,
    WeekParityClash,
    slot_report,
    validate_schedule,
)
from .cost import CostBreakdown, CostModel, CostTracker
from .cost_cache import CacheStats, CostCache
from .domain import ForbiddenReason, ProblemState
from .parallel import BestScheduleCell, ParallelSolver
from .results import (
    CancellationToken,
    Cancelled,
    Infeasible,
    InfeasibleReason,
    PartialSuccess,
    SolverStatistics,
    SolverStatus,
    SolveResult,
    Success,
)
from .schedule_hash import ScheduleHasher, assignment_tag, problem_fingerprint, schedule_hash
from .solver import BacktrackingSolver, solve
from .swap import (
    InsertAssignment,
    MoveAssignment,
    RemoveAssignment,
    SwapChain,
    SwapKind,
    SwapMove,
    SwapSuggester,
)

__all__ = [
    # Solvers
    "BacktrackingSolver",
    "ParallelSolver",
    "BestScheduleCell",
    "solve",
    # Repair suggestions
    "SwapSuggester",
    "SwapChain",
    "SwapKind",
    "SwapMove",
    "InsertAssignment",
    "MoveAssignment",
    "RemoveAssignment",
    # Conflicts
    "Conflict",
    "Conflicts",
    "ConflictDetector",
    "ClassBusy",
    "DoubleSession",
    "FixedCourseOverwrite",
    "ForbiddenSlot",
    "SameDaySameSubject",
    "SessionCountMismatch",
    "TeacherBusy",
    "TeacherDailyLimit",
    "TeacherMutuallyExclusive",
    "VenueFull",
    "WeekParityClash",
    "validate_schedule",
    "SlotSeverity",
    "SlotStatus",
    "slot_report",
    # Cost
    "CostBreakdown",
    "CostModel",
    "CostTracker",
    "CacheStats",
    "CostCache",
    # State
    "ForbiddenReason",
    "ProblemState",
    # Results
    "CancellationToken",
    "Cancelled",
    "Infeasible",
    "InfeasibleReason",
    "PartialSuccess",
    "SolverStatistics",
    "SolverStatus",
    "SolveResult",
    "Success",
    # Hashing
    "ScheduleHasher",
    "assignment_tag",
    "problem_fingerprint",
    "schedule_hash",
]
