"""Tests for ConflictDetector and schedule audits."""

import pytest

from curriculum_scheduler.config import SolverConfig
from curriculum_scheduler.exceptions import DataIntegrityError
from curriculum_scheduler.models import (
    Assignment,
    Curriculum,
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
from curriculum_scheduler.scheduler import (
    ClassBusy,
    ConflictDetector,
    Conflicts,
    DoubleSession,
    FixedCourseOverwrite,
    ForbiddenReason,
    ForbiddenSlot,
    ProblemState,
    SameDaySameSubject,
    SessionCountMismatch,
    SlotSeverity,
    TeacherBusy,
    TeacherDailyLimit,
    TeacherMutuallyExclusive,
    VenueFull,
    WeekParityClash,
    slot_report,
    validate_schedule,
)

GRID = SolverConfig(days_per_week=5, periods_per_day=4)


def make_problem(curricula, teachers=None, subjects=None, venues=None, **kwargs):
    """Two classes and two teachers unless given."""
    return Problem(
        classes=[SchoolClass(1, "1A"), SchoolClass(2, "1B")],
        teachers=teachers or [Teacher(1, "Teacher 1"), Teacher(2, "Teacher 2")],
        subjects=subjects or [Subject("math", "Math"), Subject("chinese", "Chinese")],
        venues=venues or [],
        curricula=curricula,
        config=GRID,
        **kwargs,
    )


def detector_with(problem, *placed):
    state = ProblemState(problem)
    for assignment in placed:
        state.place(assignment)
    return ConflictDetector(state)


class TestResourceConflicts:
    """Tests for conflicts with sessions in the same slot."""

    def test_empty_state_is_feasible(self):
        problem = make_problem([Curriculum(1, 1, "math", 1, 1)])
        detector = detector_with(problem)
        assert detector.check(Assignment(1, 0, 0)).is_empty
        assert detector.is_feasible(Assignment(1, 0, 0))

    def test_teacher_busy(self):
        problem = make_problem([Curriculum(1, 1, "math", 1, 1), Curriculum(2, 2, "math", 1, 1)])
        detector = detector_with(problem, Assignment(1, 0, 5))

        conflicts = detector.check(Assignment(2, 0, 5))
        assert conflicts.kinds() == {"teacher_busy"}
        assert conflicts[0] == TeacherBusy(1, 5)
        assert conflicts.blocking_keys() == [(1, 0)]
        assert not detector.is_feasible(Assignment(2, 0, 5))

    def test_class_busy(self):
        problem = make_problem([Curriculum(1, 1, "math", 1, 1), Curriculum(2, 1, "chinese", 2, 1)])
        detector = detector_with(problem, Assignment(1, 0, 5))

        conflicts = detector.check(Assignment(2, 0, 5))
        assert conflicts.of_kind(ClassBusy) == [ClassBusy(1, 5)]

    def test_combined_class_blocks_each_member(self):
        combined = Curriculum(1, 1, "math", 1, 1, is_combined_class=True, combined_class_ids=(1, 2))
        problem = make_problem([combined, Curriculum(2, 2, "chinese", 2, 1)])
        detector = detector_with(problem, Assignment(1, 0, 3))

        assert detector.check(Assignment(2, 0, 3)).of_kind(ClassBusy) == [ClassBusy(2, 3)]

    def test_venue_full(self):
        problem = make_problem(
            [Curriculum(1, 1, "lab", 1, 1), Curriculum(2, 2, "lab", 2, 1)],
            subjects=[Subject("lab", "Lab", venue_id="lab")],
            venues=[Venue("lab", "Lab", capacity=1)],
        )
        detector = detector_with(problem, Assignment(1, 0, 0, "lab"))

        conflicts = detector.check(Assignment(2, 0, 0, "lab"))
        assert conflicts.kinds() == {"venue_full"}
        assert conflicts[0] == VenueFull("lab", 0)
        assert conflicts.blocking_keys() == [(1, 0)]

    def test_venue_with_spare_capacity(self):
        problem = make_problem(
            [Curriculum(1, 1, "lab", 1, 1), Curriculum(2, 2, "lab", 2, 1)],
            subjects=[Subject("lab", "Lab", venue_id="lab")],
            venues=[Venue("lab", "Lab", capacity=2)],
        )
        detector = detector_with(problem, Assignment(1, 0, 0, "lab"))
        assert detector.is_feasible(Assignment(2, 0, 0, "lab"))

    def test_mutually_exclusive_teachers(self):
        problem = make_problem(
            [Curriculum(1, 1, "math", 1, 1), Curriculum(2, 2, "chinese", 2, 1)],
            mutual_exclusions=[TeacherMutualExclusion(1, 2)],
        )
        detector = detector_with(problem, Assignment(1, 0, 0))

        conflicts = detector.check(Assignment(2, 0, 0))
        assert conflicts.of_kind(TeacherMutuallyExclusive) == [TeacherMutuallyExclusive(2, 1, 0)]
        assert detector.is_feasible(Assignment(2, 0, 1))

    def test_mutual_exclusion_limited_to_mask(self):
        problem = make_problem(
            [Curriculum(1, 1, "math", 1, 1), Curriculum(2, 2, "chinese", 2, 1)],
            mutual_exclusions=[TeacherMutualExclusion(1, 2, slots_mask=0b10)],
        )
        detector = detector_with(problem, Assignment(1, 0, 0))
        assert detector.is_feasible(Assignment(2, 0, 0))


class TestWeekParity:
    """Tests for Odd/Even/Every occupancy."""

    def test_odd_and_even_share_a_slot(self):
        problem = make_problem(
            [
                Curriculum(1, 1, "math", 1, 1, week_type=WeekType.ODD),
                Curriculum(2, 1, "chinese", 1, 1, week_type=WeekType.EVEN),
            ]
        )
        detector = detector_with(problem, Assignment(1, 0, 0))
        assert detector.check(Assignment(2, 0, 0)).is_empty

    def test_every_against_odd(self):
        problem = make_problem(
            [
                Curriculum(1, 1, "math", 1, 1, week_type=WeekType.ODD),
                Curriculum(2, 1, "chinese", 2, 1),
            ]
        )
        detector = detector_with(problem, Assignment(1, 0, 0))

        conflicts = detector.check(Assignment(2, 0, 0))
        assert conflicts.kinds() == {"class_busy", "week_parity_clash"}
        assert conflicts.of_kind(WeekParityClash)[0].other_assignment_id == (1, 0)

    def test_same_parity_clashes_without_parity_conflict(self):
        problem = make_problem(
            [
                Curriculum(1, 1, "math", 1, 1, week_type=WeekType.ODD),
                Curriculum(2, 2, "chinese", 1, 1, week_type=WeekType.ODD),
            ]
        )
        detector = detector_with(problem, Assignment(1, 0, 0))
        assert detector.check(Assignment(2, 0, 0)).kinds() == {"teacher_busy"}


class TestForbiddenSlots:
    """Tests for forbidden masks and exclusions."""

    def test_teacher_forbidden(self):
        problem = make_problem(
            [Curriculum(1, 1, "math", 1, 1)],
            teachers=[Teacher(1, "Teacher 1", forbidden_mask=0b1), Teacher(2, "Teacher 2")],
        )
        conflicts = detector_with(problem).check(Assignment(1, 0, 0))
        assert conflicts.of_kind(ForbiddenSlot) == [ForbiddenSlot(ForbiddenReason.TEACHER, 0)]
        assert conflicts.has_unmovable()

    def test_subject_forbidden(self):
        problem = make_problem(
            [Curriculum(1, 1, "math", 1, 1)],
            subjects=[Subject("math", "Math", forbidden_mask=0b100)],
        )
        conflicts = detector_with(problem).check(Assignment(1, 0, 2))
        assert conflicts[0].reason == ForbiddenReason.SUBJECT

    def test_venue_forbidden(self):
        problem = make_problem(
            [Curriculum(1, 1, "lab", 1, 1)],
            subjects=[Subject("lab", "Lab", venue_id="lab")],
            venues=[Venue("lab", "Lab", forbidden_mask=0b1)],
        )
        conflicts = detector_with(problem).check(Assignment(1, 0, 0, "lab"))
        assert conflicts[0] == ForbiddenSlot(ForbiddenReason.VENUE, 0)

    def test_exclusion(self, school_problem):
        detector = detector_with(school_problem)
        conflicts = detector.check(Assignment(3, 0, 1, "room"))
        assert conflicts[0] == ForbiddenSlot(ForbiddenReason.EXCLUSION, 1)


class TestDayConflicts:
    """Tests for constraints spanning a day."""

    def test_same_day_same_subject(self):
        problem = make_problem([Curriculum(1, 1, "math", 1, 2)])
        detector = detector_with(problem, Assignment(1, 0, 0))

        conflicts = detector.check(Assignment(1, 1, 2))
        assert conflicts.of_kind(SameDaySameSubject) == [SameDaySameSubject(1, "math", 0)]
        assert conflicts.blocking_keys() == [(1, 0)]
        assert detector.is_feasible(Assignment(1, 1, 4))

    def test_same_day_allowed_by_subject(self):
        problem = make_problem(
            [Curriculum(1, 1, "math", 1, 2)],
            subjects=[Subject("math", "Math", allow_same_day=True)],
        )
        detector = detector_with(problem, Assignment(1, 0, 0))
        assert detector.is_feasible(Assignment(1, 1, 2))

    def test_same_day_allowed_globally(self):
        problem = make_problem([Curriculum(1, 1, "math", 1, 2)])
        problem = problem.with_config(SolverConfig(days_per_week=5, periods_per_day=4, allow_same_day_same_subject=True))
        detector = detector_with(problem, Assignment(1, 0, 0))
        assert detector.is_feasible(Assignment(1, 1, 2))

    def test_moving_a_session_within_its_day(self):
        problem = make_problem([Curriculum(1, 1, "math", 1, 2)])
        detector = detector_with(problem, Assignment(1, 0, 0))
        # The session's own placement is ignored by default
        assert detector.is_feasible(Assignment(1, 0, 3))

    def test_double_session(self):
        problem = make_problem(
            [Curriculum(1, 1, "math", 1, 2)],
            subjects=[Subject("math", "Math", allow_same_day=True, allow_double_session=False)],
        )
        detector = detector_with(problem, Assignment(1, 0, 0))

        assert detector.check(Assignment(1, 1, 1)).of_kind(DoubleSession) == [DoubleSession(1, "math", 1)]
        assert detector.is_feasible(Assignment(1, 1, 2))

    def test_double_session_does_not_cross_days(self):
        problem = make_problem(
            [Curriculum(1, 1, "math", 1, 2)],
            subjects=[Subject("math", "Math", allow_double_session=False)],
        )
        detector = detector_with(problem, Assignment(1, 0, 3))
        assert detector.is_feasible(Assignment(1, 1, 4))

    def test_teacher_daily_limit(self):
        problem = make_problem(
            [Curriculum(1, 1, "math", 1, 1), Curriculum(2, 2, "math", 1, 1)],
            teachers=[Teacher(1, "Teacher 1", max_sessions_per_day=1)],
        )
        detector = detector_with(problem, Assignment(1, 0, 0))

        conflicts = detector.check(Assignment(2, 0, 1))
        assert conflicts.of_kind(TeacherDailyLimit) == [TeacherDailyLimit(1, 0)]
        assert conflicts.blocking_keys() == [(1, 0)]
        assert detector.is_feasible(Assignment(2, 0, 4))


class TestFixedCourses:
    """Tests for fixed course protection."""

    @pytest.fixture
    def problem(self):
        return make_problem(
            [Curriculum(1, 1, "math", 1, 2), Curriculum(2, 1, "chinese", 2, 1)],
            fixed_courses=[FixedCourse(7, curriculum_id=1, slot=0)],
        )

    def test_moving_a_fixed_session(self, problem):
        detector = detector_with(problem, Assignment(1, 0, 0))

        conflicts = detector.check(Assignment(1, 0, 8))
        assert conflicts.of_kind(FixedCourseOverwrite) == [FixedCourseOverwrite(7)]
        assert conflicts.has_unmovable()

    def test_clashing_with_a_fixed_session(self, problem):
        detector = detector_with(problem, Assignment(1, 0, 0))

        conflicts = detector.check(Assignment(2, 0, 0))
        assert conflicts.kinds() == {"class_busy", "fixed_course_overwrite"}
        assert not conflicts.has_unmovable()


class TestConflicts:
    """Tests for the Conflicts report."""

    def test_blocking_keys_are_unique_and_ordered(self):
        conflicts = Conflicts(
            [
                TeacherBusy(1, 0, ((2, 0),)),
                ClassBusy(1, 0, ((2, 0),)),
                VenueFull("v", 0, ((3, 1), (2, 0))),
            ]
        )
        assert conflicts.blocking_keys() == [(2, 0), (3, 1)]
        assert len(conflicts) == 3
        assert bool(conflicts)

    def test_to_dict_and_describe(self):
        conflict = ForbiddenSlot(ForbiddenReason.CLASS, 4)
        assert conflict.to_dict() == {"kind": "forbidden_slot", "reason": "class", "slot": 4}
        assert "forbidden" in conflict.describe()

    def test_blockers_ignored_in_equality(self):
        assert TeacherBusy(1, 0, ((2, 0),)) == TeacherBusy(1, 0)


class TestValidateSchedule:
    """Tests for validate_schedule."""

    def test_valid_schedule(self):
        problem = make_problem([Curriculum(1, 1, "math", 1, 2), Curriculum(2, 1, "chinese", 2, 1)])
        schedule = Schedule((Assignment(1, 0, 0), Assignment(1, 1, 4), Assignment(2, 0, 1)))
        assert validate_schedule(problem, schedule) == []

    def test_reports_clash_and_counts(self):
        problem = make_problem([Curriculum(1, 1, "math", 1, 2), Curriculum(2, 1, "chinese", 2, 1)])
        schedule = Schedule((Assignment(1, 0, 0), Assignment(2, 0, 0)))

        conflicts = validate_schedule(problem, schedule)
        assert ClassBusy(1, 0) in conflicts
        assert SessionCountMismatch(1, 2, 1) in conflicts

    def test_missing_fixed_course(self):
        problem = make_problem(
            [Curriculum(1, 1, "math", 1, 1)],
            fixed_courses=[FixedCourse(7, curriculum_id=1, slot=0)],
        )
        conflicts = validate_schedule(problem, Schedule((Assignment(1, 0, 5),)))
        assert conflicts == [FixedCourseOverwrite(7)]

    def test_unknown_curriculum(self):
        problem = make_problem([Curriculum(1, 1, "math", 1, 1)])
        with pytest.raises(DataIntegrityError):
            validate_schedule(problem, Schedule((Assignment(9, 0, 0),)))

    def test_slot_outside_grid(self):
        problem = make_problem([Curriculum(1, 1, "math", 1, 1)])
        with pytest.raises(DataIntegrityError):
            validate_schedule(problem, Schedule((Assignment(1, 0, 20),)))


class TestSlotReport:
    """Tests for per-slot blocked/warning/available reports."""

    @pytest.fixture
    def major_problem(self):
        subjects = [
            Subject("math", "Math", allow_same_day=True, is_major=True),
            Subject("chinese", "Chinese"),
        ]
        return make_problem([Curriculum(1, 1, "math", 1, 3)], subjects=subjects)

    def test_every_slot_reported(self, major_problem):
        report = detector_with(major_problem).slot_report(1)
        assert sorted(report) == list(GRID.grid.slots())
        assert all(status.severity == SlotSeverity.AVAILABLE for status in report.values())

    def test_forbidden_slot_is_blocked(self):
        problem = make_problem(
            [Curriculum(1, 1, "math", 1, 1)],
            teachers=[Teacher(1, "Teacher 1", forbidden_mask=0b1), Teacher(2, "Teacher 2")],
        )
        report = detector_with(problem).slot_report(1)

        assert report[0].severity == SlotSeverity.BLOCKED
        assert report[0].conflicts[0] == ForbiddenSlot(ForbiddenReason.TEACHER, 0)
        assert report[0].reasons[0] == "slot 0 is forbidden (teacher)"
        assert report[1].severity == SlotSeverity.AVAILABLE

    def test_busy_teacher_is_blocked_with_blockers(self):
        problem = make_problem([Curriculum(1, 1, "math", 1, 1), Curriculum(2, 2, "math", 1, 1)])
        report = detector_with(problem, Assignment(1, 0, 5)).slot_report(2)

        status = report[5]
        assert status.severity == SlotSeverity.BLOCKED
        assert status.conflicts[0] == TeacherBusy(1, 5)
        assert status.conflicts[0].blockers == ((1, 0),)

    def test_time_bias_is_a_warning(self):
        problem = make_problem(
            [Curriculum(1, 1, "math", 1, 1)],
            teachers=[Teacher(1, "Teacher 1", time_bias=TimeBias.AVOID_FIRST), Teacher(2, "Teacher 2")],
        )
        report = detector_with(problem).slot_report(1)

        assert report[0].severity == SlotSeverity.WARNING
        assert report[0].warnings == ("teacher_preference",)
        assert report[4].severity == SlotSeverity.WARNING
        assert report[1].severity == SlotSeverity.AVAILABLE

    def test_third_major_period_in_a_row_is_a_warning(self, major_problem):
        detector = detector_with(major_problem, Assignment(1, 0, 0), Assignment(1, 1, 1))
        report = detector.slot_report(1)

        assert report[0].severity == SlotSeverity.BLOCKED
        assert report[2].severity == SlotSeverity.WARNING
        assert report[2].warnings == ("major_consecutive",)
        assert report[3].severity == SlotSeverity.AVAILABLE
        assert report[5].severity == SlotSeverity.AVAILABLE

    def test_spread_out_teacher_subject_is_a_warning(self, major_problem):
        detector = detector_with(major_problem, Assignment(1, 0, 0), Assignment(1, 1, 1))
        report = detector.slot_report(1)

        # day 3 is three days after the first math session
        assert report[12].warnings == ("progress_consistency",)
        assert report[8].severity == SlotSeverity.AVAILABLE

    def test_moving_session_ignores_itself(self):
        problem = make_problem([Curriculum(1, 1, "math", 1, 1), Curriculum(2, 2, "math", 1, 1)])
        detector = detector_with(problem, Assignment(1, 0, 0), Assignment(2, 0, 5))
        report = detector.slot_report(1, session_index=0)

        assert report[0].severity == SlotSeverity.AVAILABLE
        assert report[5].severity == SlotSeverity.BLOCKED
        assert report[5].conflicts[0].blockers == ((2, 0),)

    def test_venue_is_chosen_for_free_slots(self):
        problem = make_problem(
            [Curriculum(1, 1, "lab", 1, 1)],
            subjects=[Subject("lab", "Lab", venue_id="lab")],
            venues=[Venue("lab", "Lab", forbidden_mask=0b1)],
        )
        report = detector_with(problem).slot_report(1)

        assert report[0].conflicts[0] == ForbiddenSlot(ForbiddenReason.VENUE, 0)
        assert report[1].venue_id == "lab"
        assert report[1].to_dict() == {
            "slot": 1,
            "severity": "available",
            "venue_id": "lab",
            "conflicts": [],
            "warnings": [],
        }

    def test_report_against_a_schedule(self):
        problem = make_problem([Curriculum(1, 1, "math", 1, 1), Curriculum(2, 1, "chinese", 2, 1)])
        schedule = Schedule((Assignment(1, 0, 0), Assignment(2, 0, 1)))

        report = slot_report(problem, schedule, 2, session_index=0)
        assert report[0].conflicts[0] == ClassBusy(1, 0)
        assert report[1].severity == SlotSeverity.AVAILABLE

    def test_report_rejects_unknown_curriculum(self):
        problem = make_problem([Curriculum(1, 1, "math", 1, 1)])
        with pytest.raises(DataIntegrityError):
            slot_report(problem, Schedule(()), 9)

    def test_report_rejects_unscheduled_session(self):
        problem = make_problem([Curriculum(1, 1, "math", 1, 1)])
        with pytest.raises(DataIntegrityError):
            slot_report(problem, Schedule(()), 1, session_index=0)
