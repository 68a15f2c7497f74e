"""Tests for BacktrackingSolver."""

import random

import pytest

from curriculum_scheduler.config import SolverConfig
from curriculum_scheduler.exceptions import ConfigurationError, DataIntegrityError, SolverStateError
from curriculum_scheduler.models import (
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
from curriculum_scheduler.scheduler import (
    BacktrackingSolver,
    CancellationToken,
    Cancelled,
    ConflictDetector,
    CostModel,
    Infeasible,
    InfeasibleReason,
    PartialSuccess,
    ProblemState,
    SolverStatus,
    Success,
    problem_fingerprint,
    schedule_hash,
    solve,
    validate_schedule,
)
from curriculum_scheduler.scheduler.solver import derive_seed

FULL_GRID = (1 << 20) - 1


def assert_valid_success(problem, result):
    """Common checks for a complete schedule."""
    assert isinstance(result, Success), result
    assert validate_schedule(problem, result.schedule) == []
    assert len(result.schedule) == problem.total_sessions()
    assert result.cost == pytest.approx(CostModel(problem).total(result.schedule))
    assert result.breakdown.total == pytest.approx(result.cost)


@pytest.fixture
def quick_school(school_problem):
    """School problem with a short search budget."""
    config = school_problem.config.with_overrides(node_budget_per_restart=300, max_restarts=0)
    return school_problem.with_config(config)


@pytest.fixture
def overfull_problem(small_config):
    """Twenty-one sessions of one curriculum on a twenty-slot grid."""
    config = small_config.with_overrides(
        node_budget_per_restart=200,
        max_restarts=0,
        allow_same_day_same_subject=True,
    )
    return Problem(
        classes=[SchoolClass(1, "1A")],
        teachers=[Teacher(1, "Teacher 1")],
        subjects=[Subject("math", "Math")],
        curricula=[Curriculum(1, 1, "math", 1, 21)],
        config=config,
    )


class TestScenarios:
    """End-to-end solves of small problems."""

    def test_two_subjects(self, two_subject_problem):
        result = BacktrackingSolver(two_subject_problem).solve()
        assert_valid_success(two_subject_problem, result)

    def test_teacher_blocked_on_monday(self, monday_blocked_problem):
        result = BacktrackingSolver(monday_blocked_problem).solve()
        assert_valid_success(monday_blocked_problem, result)

        grid = monday_blocked_problem.grid
        days = [grid.day_of(a.slot) for a in result.schedule]
        assert 0 not in days
        assert len(set(days)) == 3

    def test_combined_classes_share_one_lab(self, combined_lab_problem):
        result = BacktrackingSolver(combined_lab_problem).solve()
        assert_valid_success(combined_lab_problem, result)

        slots = [a.slot for a in result.schedule]
        assert len(set(slots)) == 4
        assert all(a.venue_id == "lab" for a in result.schedule)

    def test_odd_and_even_weeks(self, parity_problem):
        result = BacktrackingSolver(parity_problem).solve()
        assert_valid_success(parity_problem, result)

    def test_fixed_courses_clash(self, fixed_clash_problem):
        result = BacktrackingSolver(fixed_clash_problem).solve()

        assert isinstance(result, Infeasible)
        assert result.reason == InfeasibleReason.FIXED_COURSE_CONFLICT
        assert any("fixed course 2" in detail for detail in result.details)

    def test_school(self, quick_school):
        result = BacktrackingSolver(quick_school).solve()
        assert_valid_success(quick_school, result)
        assert Assignment(1, 0, 0, "room") in result.schedule

    def test_solve_helper(self, two_subject_problem):
        result = solve(two_subject_problem)
        assert result.is_success
        assert result.to_dict()["result"] == "success"


class TestDeterminism:
    """Tests for seeded reproducibility."""

    def test_same_seed_same_schedule(self, quick_school):
        first = BacktrackingSolver(quick_school).solve()
        second = BacktrackingSolver(quick_school).solve()

        assert first.schedule == second.schedule
        assert first.cost == second.cost

    def test_default_seed_is_problem_fingerprint(self, two_subject_problem):
        problem = two_subject_problem.with_config(SolverConfig(days_per_week=5, periods_per_day=4))
        solver = BacktrackingSolver(problem)
        assert solver.seed == problem_fingerprint(problem)

    def test_derive_seed(self):
        assert derive_seed(7, 0) == derive_seed(7, 0)
        assert derive_seed(7, 0) != derive_seed(7, 1)
        assert derive_seed(7, 0) != derive_seed(8, 0)


class TestStatistics:
    """Tests for solver statistics."""

    def test_counters(self, two_subject_problem):
        result = BacktrackingSolver(two_subject_problem).solve()
        stats = result.statistics

        assert stats.nodes > 0
        assert stats.solutions_found >= 1
        assert stats.seed == 7
        assert stats.cache is not None
        assert stats.best_cost_history[-1] == result.cost
        assert stats.best_cost_history == sorted(stats.best_cost_history, reverse=True)

    def test_restarts_are_counted(self, overfull_problem):
        problem = overfull_problem.with_config(overfull_problem.config.with_overrides(max_restarts=2))
        result = BacktrackingSolver(problem).solve()
        assert result.statistics.restarts == 2


class TestInfeasible:
    """Tests for the failure result variants."""

    def test_domain_wipeout(self, small_config):
        problem = Problem(
            classes=[SchoolClass(1, "1A")],
            teachers=[Teacher(1, "Teacher 1", forbidden_mask=FULL_GRID)],
            subjects=[Subject("math", "Math")],
            curricula=[Curriculum(1, 1, "math", 1, 1)],
            config=small_config,
        )
        result = BacktrackingSolver(problem).solve()

        assert isinstance(result, Infeasible)
        assert result.reason == InfeasibleReason.DOMAIN_WIPEOUT
        assert "curriculum 1 session 0" in result.details[0]

    def test_exhausted(self, small_config):
        problem = Problem(
            classes=[SchoolClass(1, "1A", forbidden_mask=FULL_GRID & ~1)],
            teachers=[Teacher(1, "Teacher 1"), Teacher(2, "Teacher 2")],
            subjects=[Subject("math", "Math"), Subject("chinese", "Chinese")],
            curricula=[Curriculum(1, 1, "math", 1, 1), Curriculum(2, 1, "chinese", 2, 1)],
            config=small_config,
        )
        result = BacktrackingSolver(problem).solve()

        assert isinstance(result, Infeasible)
        assert result.reason == InfeasibleReason.EXHAUSTED
        assert result.to_dict()["reason"] == "exhausted"

    def test_budget_without_schedule(self, overfull_problem):
        result = BacktrackingSolver(overfull_problem).solve()

        assert isinstance(result, Infeasible)
        assert result.reason == InfeasibleReason.TIMEOUT

    def test_partial_schedule(self, overfull_problem):
        config = overfull_problem.config.with_overrides(allow_partial=True)
        result = BacktrackingSolver(overfull_problem, config=config).solve()

        assert isinstance(result, PartialSuccess)
        assert result.unmet_curricula == [1]
        assert 0 < len(result.schedule) < 21
        assert result.cost == pytest.approx(CostModel(overfull_problem).total(result.schedule))


class TestBudgetExhaustion:
    """Tests for searches stopped by the node budget."""

    def test_complete_schedule_found_before_budget_is_success(self, small_config):
        """Two math sessions confined to Monday always leave a gap in the class day."""
        config = small_config.with_overrides(node_budget_per_restart=2, max_restarts=0)
        problem = Problem(
            classes=[SchoolClass(1, "1A")],
            teachers=[Teacher(1, "Teacher 1", forbidden_mask=FULL_GRID & ~0b1111)],
            subjects=[Subject("math", "Math", allow_same_day=True, allow_double_session=False)],
            curricula=[Curriculum(1, 1, "math", 1, 2)],
            config=config,
        )
        result = BacktrackingSolver(problem).solve()

        assert_valid_success(problem, result)
        assert result.statistics.stop_reason == "budget"
        assert not result.statistics.optimal
        assert [a.slot for a in result.schedule] == [0, 2]


class TestLifecycle:
    """Tests for cancellation, state transitions and input errors."""

    def test_cancelled_before_start(self, two_subject_problem):
        token = CancellationToken()
        token.cancel()
        result = BacktrackingSolver(two_subject_problem, cancel_token=token).solve()

        assert isinstance(result, Cancelled)
        assert result.statistics.cancelled

    def test_status_after_solve(self, two_subject_problem):
        solver = BacktrackingSolver(two_subject_problem)
        assert solver.status == SolverStatus.IDLE
        solver.solve()
        assert solver.status == SolverStatus.DONE

    def test_second_solve_rejected(self, two_subject_problem):
        solver = BacktrackingSolver(two_subject_problem)
        solver.solve()
        with pytest.raises(SolverStateError):
            solver.solve()

    def test_invalid_config(self, two_subject_problem):
        with pytest.raises(ConfigurationError):
            BacktrackingSolver(two_subject_problem, config=SolverConfig(periods_per_day=0))

    def test_integrity_error(self, small_config):
        problem = Problem(
            classes=[SchoolClass(1, "1A")],
            teachers=[Teacher(1, "Teacher 1")],
            subjects=[Subject("math", "Math")],
            curricula=[Curriculum(1, 1, "math", 42, 1)],
            config=small_config,
        )
        solver = BacktrackingSolver(problem)
        with pytest.raises(DataIntegrityError):
            solver.solve()
        assert solver.status == SolverStatus.FAILED


def random_problem(seed, days=3, periods=3, max_sessions=5, with_fixed=False):
    """Two classes and two teachers with random masks, parities and preferences."""
    rng = random.Random(seed)
    size = days * periods

    def sparse_mask():
        return rng.getrandbits(size) & rng.getrandbits(size) & rng.getrandbits(size)

    venues = []
    if rng.random() < 0.4:
        venues = [Venue("room", "Room", capacity=rng.randint(1, 2), forbidden_mask=sparse_mask())]
    teachers = [
        Teacher(
            teacher_id,
            f"Teacher {teacher_id}",
            forbidden_mask=sparse_mask(),
            max_sessions_per_day=rng.choice([None, None, 2]),
            preferred_mask=rng.choice([0, rng.getrandbits(size)]),
            time_bias=rng.choice(list(TimeBias)),
        )
        for teacher_id in (1, 2)
    ]
    subjects = [
        Subject(
            subject_id,
            subject_id.title(),
            forbidden_mask=sparse_mask(),
            allow_same_day=rng.choice([None, True]),
            allow_double_session=rng.random() < 0.7,
            preferred_periods=tuple(sorted(rng.sample(range(periods), rng.randint(0, 2)))),
            is_major=rng.random() < 0.5,
        )
        for subject_id in ("math", "chinese")
    ]

    curricula = []
    remaining = rng.randint(1, max_sessions)
    while remaining:
        target = rng.randint(1, min(2, remaining))
        combined = rng.random() < 0.15
        curricula.append(
            Curriculum(
                len(curricula) + 1,
                class_id=rng.choice((1, 2)),
                subject_id=rng.choice(("math", "chinese")),
                teacher_id=rng.choice((1, 2)),
                target_sessions=target,
                is_combined_class=combined,
                combined_class_ids=(1, 2) if combined else (),
                week_type=rng.choice(list(WeekType)),
            )
        )
        remaining -= target

    fixed_courses = []
    if with_fixed:
        venue_id = venues[0].id if venues else None
        fixed_courses = [FixedCourse(1, curriculum_id=1, slot=rng.randrange(size), venue_id=venue_id)]

    config = SolverConfig(
        days_per_week=days,
        periods_per_day=periods,
        rng_seed=seed,
        node_budget_per_restart=1_000_000,
        max_restarts=0,
        wall_clock_budget_ms=600_000,
        allow_same_day_same_subject=rng.random() < 0.5,
    )
    return Problem(
        classes=[SchoolClass(1, "1A", forbidden_mask=sparse_mask()), SchoolClass(2, "1B")],
        teachers=teachers,
        subjects=subjects,
        venues=venues,
        curricula=curricula,
        fixed_courses=fixed_courses,
        exclusions=[Exclusion(1, ExclusionKind.TEACHER, entity_id=rng.choice((1, 2)), slot=rng.randrange(size))],
        mutual_exclusions=[TeacherMutualExclusion(1, 2)] if rng.random() < 0.2 else [],
        config=config,
    )


def cheapest_schedule(problem):
    """Enumerate every valid schedule and return (cost, schedule) of the cheapest, or None.

    Sessions of one curriculum are interchangeable, so they are enumerated at
    increasing slots.
    """
    state = ProblemState(problem)
    detector = ConflictDetector(state)
    model = CostModel(problem)
    sessions = [(c.id, index) for c in problem.curricula for index in range(c.target_sessions)]
    best = None

    def place(depth, previous_slot):
        nonlocal best
        if depth == len(sessions):
            schedule = state.snapshot()
            cost = model.total(schedule)
            if best is None or cost < best[0] - 1e-9:
                best = (cost, schedule)
            return
        cid, index = sessions[depth]
        for slot in problem.grid.slots():
            if index > 0 and slot <= previous_slot:
                continue
            for venue_id in state.venue_options[cid]:
                assignment = Assignment(cid, index, slot, venue_id)
                if not detector.is_feasible(assignment, ignore=()):
                    continue
                state.place(assignment)
                place(depth + 1, slot)
                state.remove(assignment)

    place(0, -1)
    return best


def forbidden_mask_of(problem, assignment):
    """Union of every mask that forbids slots to an assignment."""
    curriculum = problem.curricula_by_id[assignment.curriculum_id]
    mask = problem.teachers_by_id[curriculum.teacher_id].forbidden_mask
    mask |= problem.subjects_by_id[curriculum.subject_id].forbidden_mask
    for class_id in curriculum.class_ids:
        mask |= problem.classes_by_id[class_id].forbidden_mask
    if assignment.venue_id is not None:
        mask |= problem.venues_by_id[assignment.venue_id].forbidden_mask
    for exclusion in problem.exclusions:
        applies = (
            (exclusion.kind == ExclusionKind.TEACHER and exclusion.entity_id == curriculum.teacher_id)
            or (exclusion.kind == ExclusionKind.CLASS and exclusion.entity_id in curriculum.class_ids)
            or (exclusion.kind == ExclusionKind.VENUE and exclusion.entity_id == assignment.venue_id)
        )
        if applies:
            mask |= 1 << exclusion.slot
    return mask


class TestOptimality:
    """Tests comparing exhaustive search results with enumeration on tiny problems."""

    @pytest.mark.parametrize("seed", range(40))
    def test_cost_matches_cheapest_valid_schedule(self, seed):
        problem = random_problem(seed)
        cheapest = cheapest_schedule(problem)
        result = BacktrackingSolver(problem).solve()

        if cheapest is None:
            assert isinstance(result, Infeasible), result
            return
        assert validate_schedule(problem, cheapest[1]) == []
        assert_valid_success(problem, result)
        assert result.cost == pytest.approx(cheapest[0])
        assert result.statistics.optimal


class TestScheduleProperties:
    """Hard-constraint properties of schedules solved from random problems."""

    @pytest.fixture(params=range(20))
    def solved(self, request):
        problem = random_problem(request.param, days=5, periods=4, max_sessions=10, with_fixed=True)
        config = problem.config.with_overrides(node_budget_per_restart=2000, max_restarts=1)
        problem = problem.with_config(config)
        result = BacktrackingSolver(problem).solve()
        if not isinstance(result, Success):
            pytest.skip(f"no schedule for seed {request.param}: {result}")
        return problem, result.schedule

    def test_session_counts(self, solved):
        problem, schedule = solved
        for curriculum in problem.curricula:
            placed = [a for a in schedule if a.curriculum_id == curriculum.id]
            assert len(placed) == curriculum.target_sessions

    def test_teachers_and_classes_never_double_booked(self, solved):
        problem, schedule = solved
        assignments = list(schedule)
        for i, a in enumerate(assignments):
            for b in assignments[i + 1:]:
                ca = problem.curricula_by_id[a.curriculum_id]
                cb = problem.curricula_by_id[b.curriculum_id]
                if a.slot != b.slot or not ca.week_type.overlaps(cb.week_type):
                    continue
                assert ca.teacher_id != cb.teacher_id
                assert not set(ca.class_ids) & set(cb.class_ids)

    def test_venue_capacity(self, solved):
        problem, schedule = solved
        load = {}
        for a in schedule:
            if a.venue_id is None:
                continue
            for week in problem.curricula_by_id[a.curriculum_id].week_type.weeks:
                key = (a.slot, a.venue_id, week)
                load[key] = load.get(key, 0) + 1
        for (slot, venue_id, week), count in load.items():
            assert count <= problem.venues_by_id[venue_id].capacity

    def test_forbidden_slots_unused(self, solved):
        problem, schedule = solved
        for a in schedule:
            assert not (forbidden_mask_of(problem, a) >> a.slot) & 1

    def test_fixed_courses_kept(self, solved):
        problem, schedule = solved
        placed = {(a.curriculum_id, a.slot, a.venue_id) for a in schedule}
        for fixed in problem.fixed_courses:
            assert (fixed.curriculum_id, fixed.slot, fixed.venue_id) in placed

    def test_hash_ignores_order(self, solved):
        _, schedule = solved
        shuffled = list(schedule)
        random.Random(0).shuffle(shuffled)
        assert schedule_hash(shuffled) == schedule_hash(reversed(list(schedule)))
        assert schedule_hash(Schedule(tuple(shuffled))) == schedule_hash(schedule)
