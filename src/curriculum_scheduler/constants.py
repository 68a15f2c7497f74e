"""Constants for curriculum scheduling."""

# Time grid defaults
DEFAULT_DAYS_PER_WEEK = 5
DEFAULT_PERIODS_PER_DAY = 8

# Width of the persisted forbidden-slot integer column
MAX_MASK_BITS = 64

# Soft constraint weights, keyed by cost component name
SOFT_CONSTRAINT_WEIGHTS = {
    "teacher_spread": 1.0,
    "class_continuity": 2.0,
    "subject_spacing": 3.0,
    "preferred_period": 1.0,
    "teacher_preference": 1.0,
    "major_consecutive": 1.0,
    "progress_consistency": 1.0,
}

# Teacher preference penalties
PREFERRED_SLOT_MISS_PENALTY = 10
TIME_BIAS_PENALTY = 50

# Major subjects: each period of a back-to-back run beyond the second
MAJOR_RUN_ALLOWANCE = 2
MAJOR_RUN_PENALTY = 30

# Progress consistency: each day of a teacher's subject spread beyond the allowance
PROGRESS_SPREAD_ALLOWANCE = 2
PROGRESS_SPREAD_PENALTY = 20

# Search limits
DEFAULT_NODE_BUDGET_PER_RESTART = 200_000
DEFAULT_MAX_RESTARTS = 8
DEFAULT_WALL_CLOCK_BUDGET_MS = 30_000
DEFAULT_DEAD_END_MEMO_LIMIT = 1 << 18

# Cost cache
DEFAULT_COST_CACHE_CAPACITY = 1 << 16

# Swap suggester limits
DEFAULT_SWAP_FRONTIER_LIMIT = 10_000
DEFAULT_MAX_SWAP_CHAIN = 3
MAX_SWAP_CHAIN_LIMIT = 5

# Parity weeks used for occupancy counting
ODD_WEEK = 0
EVEN_WEEK = 1
TEACHING_WEEKS = (ODD_WEEK, EVEN_WEEK)

DAY_NAMES = [
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
]


def get_day_name(day: int) -> str:
    """Get a readable day name (e.g., 0 -> 'monday', 9 -> 'day 10')."""
    if 0 <= day < len(DAY_NAMES):
        return DAY_NAMES[day]
    return f"day {day + 1}"
