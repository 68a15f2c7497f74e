"""Curriculum Scheduler - weekly school timetable solver.

This package assigns the weekly sessions of (class, subject, teacher)
curricula to day/period slots and venues. Hard constraints (teacher, class
and venue exclusivity, forbidden slots, fixed courses, week parity) are
never violated; a weighted soft cost is minimised within a time budget.

Example usage:
    from curriculum_scheduler import BacktrackingSolver, load_problem_file

    problem = load_problem_file("problem.json")
    result = BacktrackingSolver(problem).solve()

    if result.is_success:
        print(f"Cost: {result.cost:.2f}")
        for assignment in result.schedule:
            print(problem.grid.describe(assignment.slot), assignment.curriculum_id)
"""

from .config import SolverConfig, load_config
from .exceptions import (
    ConfigurationError,
    DataIntegrityError,
    HistoryNotFoundError,
    SchedulerError,
    SolverStateError,
)
from .models import (
    Assignment,
    Curriculum,
    Exclusion,
    ExclusionKind,
    FixedCourse,
    Problem,
    Schedule,
    SchoolClass,
    Subject,
    Teacher,
    TeacherMutualExclusion,
    TimeBias,
    Venue,
    WeekType,
)
from .scheduler import (
    BacktrackingSolver,
    Cancelled,
    Infeasible,
    InfeasibleReason,
    ParallelSolver,
    PartialSuccess,
    Success,
    SwapSuggester,
    validate_schedule,
)
from .serialization import export_schedule_json, load_problem_file, load_schedule_file
from .timegrid import TimeGrid

__version__ = "0.1.0"

__all__ = [
    # Solvers
    "BacktrackingSolver",
    "ParallelSolver",
    "SwapSuggester",
    "validate_schedule",
    # Results
    "Success",
    "PartialSuccess",
    "Infeasible",
    "InfeasibleReason",
    "Cancelled",
    # Models
    "Assignment",
    "Curriculum",
    "Exclusion",
    "ExclusionKind",
    "FixedCourse",
    "Problem",
    "Schedule",
    "SchoolClass",
    "Subject",
    "Teacher",
    "TeacherMutualExclusion",
    "TimeBias",
    "Venue",
    "WeekType",
    "TimeGrid",
    # Configuration
    "SolverConfig",
    "load_config",
    # Serialization
    "export_schedule_json",
    "load_problem_file",
    "load_schedule_file",
    # Exceptions
    "SchedulerError",
    "ConfigurationError",
    "DataIntegrityError",
    "SolverStateError",
    "HistoryNotFoundError",
]
