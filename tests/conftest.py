"""Test fixtures for curriculum scheduler tests."""

import pytest

from curriculum_scheduler.config import SolverConfig
from curriculum_scheduler.models import (
    Curriculum,
    Exclusion,
    ExclusionKind,
    FixedCourse,
    Problem,
    SchoolClass,
    Subject,
    Teacher,
    Venue,
    WeekType,
)

MONDAY_MASK = 0b1111


@pytest.fixture
def small_config():
    """5 days x 4 periods with a fixed seed and a bounded search."""
    return SolverConfig(
        days_per_week=5,
        periods_per_day=4,
        rng_seed=7,
        node_budget_per_restart=2000,
        max_restarts=1,
        wall_clock_budget_ms=30_000,
    )


@pytest.fixture
def two_subject_problem(small_config):
    """One class, math and chinese with their own teachers, one venue."""
    return Problem(
        classes=[SchoolClass(1, "1A")],
        teachers=[Teacher(1, "Teacher 1"), Teacher(2, "Teacher 2")],
        subjects=[Subject("math", "Math"), Subject("chinese", "Chinese")],
        venues=[Venue("v1", "Room 1", capacity=1)],
        curricula=[
            Curriculum(1, class_id=1, subject_id="math", teacher_id=1, target_sessions=2),
            Curriculum(2, class_id=1, subject_id="chinese", teacher_id=2, target_sessions=2),
        ],
        config=small_config,
    )


@pytest.fixture
def monday_blocked_problem(small_config):
    """A teacher unavailable on Monday teaching three sessions."""
    return Problem(
        classes=[SchoolClass(1, "1A")],
        teachers=[Teacher(1, "Teacher 1", forbidden_mask=MONDAY_MASK)],
        subjects=[Subject("math", "Math")],
        curricula=[Curriculum(1, class_id=1, subject_id="math", teacher_id=1, target_sessions=3)],
        config=small_config,
    )


@pytest.fixture
def combined_lab_problem(small_config):
    """Two combined-class curricula for classes 1 and 2 sharing one lab."""
    return Problem(
        classes=[SchoolClass(1, "1A"), SchoolClass(2, "1B")],
        teachers=[Teacher(1, "Teacher 1"), Teacher(2, "Teacher 2")],
        subjects=[
            Subject("physics_lab", "Physics Lab", venue_id="lab"),
            Subject("chemistry_lab", "Chemistry Lab", venue_id="lab"),
        ],
        venues=[Venue("lab", "Lab", capacity=1)],
        curricula=[
            Curriculum(
                1,
                class_id=1,
                subject_id="physics_lab",
                teacher_id=1,
                target_sessions=2,
                is_combined_class=True,
                combined_class_ids=(1, 2),
            ),
            Curriculum(
                2,
                class_id=1,
                subject_id="chemistry_lab",
                teacher_id=2,
                target_sessions=2,
                is_combined_class=True,
                combined_class_ids=(1, 2),
            ),
        ],
        config=small_config,
    )


@pytest.fixture
def parity_problem(small_config):
    """Odd-week and even-week math for the same class and teacher."""
    return Problem(
        classes=[SchoolClass(1, "1A")],
        teachers=[Teacher(1, "Teacher 1")],
        subjects=[Subject("math", "Math")],
        curricula=[
            Curriculum(1, class_id=1, subject_id="math", teacher_id=1, target_sessions=1, week_type=WeekType.ODD),
            Curriculum(2, class_id=1, subject_id="math", teacher_id=1, target_sessions=1, week_type=WeekType.EVEN),
        ],
        config=small_config,
    )


@pytest.fixture
def fixed_clash_problem(small_config):
    """Two fixed courses pinning one teacher to the same slot."""
    return Problem(
        classes=[SchoolClass(1, "1A"), SchoolClass(2, "1B")],
        teachers=[Teacher(1, "Teacher 1")],
        subjects=[Subject("math", "Math")],
        curricula=[
            Curriculum(1, class_id=1, subject_id="math", teacher_id=1, target_sessions=2),
            Curriculum(2, class_id=2, subject_id="math", teacher_id=1, target_sessions=2),
        ],
        fixed_courses=[
            FixedCourse(1, curriculum_id=1, slot=0),
            FixedCourse(2, curriculum_id=2, slot=0),
        ],
        config=small_config,
    )


@pytest.fixture
def school_problem(small_config):
    """Two classes, three teachers, a gym, a fixed course, exclusions and parity."""
    return Problem(
        classes=[SchoolClass(1, "1A"), SchoolClass(2, "1B")],
        teachers=[
            Teacher(1, "Teacher 1", forbidden_mask=0xF << 16),
            Teacher(2, "Teacher 2"),
            Teacher(3, "Teacher 3"),
        ],
        subjects=[
            Subject("math", "Math"),
            Subject("chinese", "Chinese"),
            Subject("pe", "PE", venue_id="gym"),
            Subject("art", "Art"),
        ],
        venues=[Venue("room", "Room", capacity=2), Venue("gym", "Gym", capacity=1)],
        curricula=[
            Curriculum(1, class_id=1, subject_id="math", teacher_id=1, target_sessions=3),
            Curriculum(2, class_id=2, subject_id="math", teacher_id=1, target_sessions=3),
            Curriculum(3, class_id=1, subject_id="chinese", teacher_id=2, target_sessions=3),
            Curriculum(4, class_id=2, subject_id="chinese", teacher_id=2, target_sessions=3),
            Curriculum(
                5,
                class_id=1,
                subject_id="pe",
                teacher_id=3,
                target_sessions=2,
                is_combined_class=True,
                combined_class_ids=(1, 2),
            ),
            Curriculum(6, class_id=1, subject_id="art", teacher_id=3, target_sessions=1, week_type=WeekType.ODD),
            Curriculum(7, class_id=2, subject_id="art", teacher_id=3, target_sessions=1, week_type=WeekType.EVEN),
        ],
        fixed_courses=[FixedCourse(1, curriculum_id=1, slot=0, venue_id="room")],
        exclusions=[
            Exclusion(1, ExclusionKind.TEACHER, entity_id=2, slot=1),
            Exclusion(2, ExclusionKind.CLASS, entity_id=2, slot=19),
        ],
        config=small_config,
    )


@pytest.fixture
def school_problem_dict():
    """JSON document of a small problem using the persisted encodings."""
    return {
        "config": {"days_per_week": 5, "periods_per_day": 4, "rng_seed": 3, "weight.subject_spacing": 2.5},
        "classes": [{"id": 1, "name": "1A"}, {"id": 2, "name": "1B"}],
        "teachers": [
            {"id": 1, "name": "Teacher 1", "forbidden_mask": "15"},
            {"id": 2, "name": "Teacher 2", "forbidden_mask": 0},
        ],
        "subject_configs": [
            {"id_text": "math", "name": "Math", "forbidden_mask": "0"},
            {"id_text": "pe", "name": "PE", "venue_id": "gym"},
        ],
        "venues": [{"id": "gym", "name": "Gym", "capacity": 1}],
        "curriculums": [
            {
                "id": 1,
                "class_id": 1,
                "subject_id": "math",
                "teacher_id": 1,
                "target_sessions": 2,
                "is_combined_class": 0,
                "combined_class_ids_json": "[]",
                "week_type": "Every",
            },
            {
                "id": 2,
                "class_id": 1,
                "subject_id": "pe",
                "teacher_id": 2,
                "target_sessions": 1,
                "is_combined_class": 1,
                "combined_class_ids_json": "[1, 2]",
                "week_type": "Odd",
            },
        ],
        "fixed_courses": [{"id": 1, "curriculum_id": 2, "slot": 6, "venue_id": "gym"}],
        "exclusions": [{"id": 1, "kind": "class", "entity_id": 2, "slot": 19}],
    }
