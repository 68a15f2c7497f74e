"""Soft cost model.

Costs are counted per teaching week: an ``Every`` session takes part in both
the odd and the even week, an ``Odd`` or ``Even`` session in one of them, and
per-week penalties are halved into the total. A schedule where every
curriculum is ``Every`` therefore costs the same as a single-week count.

Components (raw values, weighted by ``SolverConfig.weights``):

- teacher_spread: sum of squared per-day session counts of each teacher minus
  the smallest possible sum for the same load
- class_continuity: empty periods between the first and last lesson of a
  class's day
- subject_spacing: pairs of sessions of one (class, subject) on consecutive
  days, same-day pairs counting double
- preferred_period: sessions outside the subject's preferred period band
- teacher_preference: missed preferred slots and time-bias hits
- major_consecutive: back-to-back runs of three or more periods of a major
  subject in one class's day, per period beyond the second
- progress_consistency: days between the first and last session a teacher
  gives in one subject, per day beyond two
"""

from dataclasses import dataclass, field
from typing import Any, Iterable

from ..constants import (
    MAJOR_RUN_ALLOWANCE,
    MAJOR_RUN_PENALTY,
    PREFERRED_SLOT_MISS_PENALTY,
    PROGRESS_SPREAD_ALLOWANCE,
    PROGRESS_SPREAD_PENALTY,
    SOFT_CONSTRAINT_WEIGHTS,
    TIME_BIAS_PENALTY,
)
from ..models import Assignment, Problem, TimeBias

COMPONENTS = tuple(SOFT_CONSTRAINT_WEIGHTS)

WEEK_SHARE = 0.5


def balanced_square_sum(sessions: int, days: int) -> int:
    """Smallest sum of squared per-day counts for ``sessions`` spread over ``days``."""
    q, r = divmod(sessions, days)
    return (days - r) * q * q + r * (q + 1) * (q + 1)


def gap_count(mask: int) -> int:
    """Empty periods between the first and last set bit of a day mask."""
    if mask == 0:
        return 0
    low = (mask & -mask).bit_length() - 1
    high = mask.bit_length() - 1
    return (high - low + 1) - bin(mask).count("1")


def run_excess(mask: int, allowance: int = MAJOR_RUN_ALLOWANCE) -> int:
    """Periods beyond ``allowance`` in each run of consecutive set bits."""
    excess = 0
    while mask:
        mask >>= (mask & -mask).bit_length() - 1
        length = (~mask & (mask + 1)).bit_length() - 1
        excess += max(length - allowance, 0)
        mask >>= length
    return excess


def progress_excess(day_counts: list[int], allowance: int = PROGRESS_SPREAD_ALLOWANCE) -> int:
    """Days beyond ``allowance`` between the first and last busy day."""
    busy = [day for day, count in enumerate(day_counts) if count > 0]
    if len(busy) < 2:
        return 0
    return max(busy[-1] - busy[0] - allowance, 0)


@dataclass
class CostBreakdown:
    """Raw and weighted soft cost components of a schedule."""

    components: dict[str, float] = field(default_factory=dict)
    weights: dict[str, float] = field(default_factory=dict)

    @property
    def weighted(self) -> dict[str, float]:
        return {name: self.components.get(name, 0.0) * self.weights.get(name, 0.0) for name in COMPONENTS}

    @property
    def total(self) -> float:
        return sum(self.weighted.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "components": dict(self.components),
            "weighted": self.weighted,
            "total": self.total,
        }


@dataclass(frozen=True)
class _CurriculumInfo:
    teacher_id: Any
    class_ids: tuple
    subject_id: str
    weeks: tuple[int, ...]
    is_major: bool = False


class CostModel:
    """Weighted soft cost of assignments for one problem."""

    def __init__(self, problem: Problem) -> None:
        self.problem = problem
        self.grid = problem.grid
        self.weights = {name: problem.config.weight(name) for name in COMPONENTS}
        self._info: dict[Any, _CurriculumInfo] = {}
        self.final_loads: dict[tuple, int] = {}

        for curriculum in problem.curricula:
            weeks = curriculum.week_type.weeks
            subject = problem.subjects_by_id.get(curriculum.subject_id)
            self._info[curriculum.id] = _CurriculumInfo(
                teacher_id=curriculum.teacher_id,
                class_ids=curriculum.class_ids,
                subject_id=curriculum.subject_id,
                weeks=weeks,
                is_major=subject is not None and subject.is_major,
            )
            for week in weeks:
                key = (curriculum.teacher_id, week)
                self.final_loads[key] = self.final_loads.get(key, 0) + curriculum.target_sessions

        self._penalties: dict[tuple, tuple[float, float]] = {}

    def info(self, curriculum_id) -> _CurriculumInfo:
        return self._info[curriculum_id]

    def static_penalties(self, curriculum_id, slot: int) -> tuple[float, float]:
        """Raw (preferred_period, teacher_preference) penalties of one placement."""
        key = (curriculum_id, slot)
        cached = self._penalties.get(key)
        if cached is not None:
            return cached

        curriculum = self.problem.curricula_by_id[curriculum_id]
        period = self.grid.period_of(slot)

        preferred = 0.0
        subject = self.problem.subjects_by_id.get(curriculum.subject_id)
        if subject is not None and subject.preferred_periods and period not in subject.preferred_periods:
            preferred = 1.0

        teacher_cost = 0.0
        teacher = self.problem.teachers_by_id.get(curriculum.teacher_id)
        if teacher is not None:
            if teacher.preferred_mask and not (teacher.preferred_mask >> slot) & 1:
                teacher_cost += PREFERRED_SLOT_MISS_PENALTY * teacher.preference_weight
            if teacher.time_bias == TimeBias.AVOID_FIRST and period == 0:
                teacher_cost += TIME_BIAS_PENALTY
            elif teacher.time_bias == TimeBias.AVOID_LAST and period == self.grid.periods - 1:
                teacher_cost += TIME_BIAS_PENALTY

        self._penalties[key] = (preferred, teacher_cost)
        return preferred, teacher_cost

    def assignment_penalty(self, curriculum_id, slot: int) -> float:
        """Weighted static penalty of placing a session of a curriculum in a slot."""
        preferred, teacher_cost = self.static_penalties(curriculum_id, slot)
        return (
            preferred * self.weights["preferred_period"]
            + teacher_cost * self.weights["teacher_preference"]
        )

    def min_assignment_penalty(self, curriculum_id, slots: Iterable[int] | None = None) -> float:
        """Smallest weighted static penalty over candidate slots (all slots by default)."""
        candidates = list(self.grid.slots() if slots is None else slots)
        if not candidates:
            return 0.0
        return min(self.assignment_penalty(curriculum_id, slot) for slot in candidates)

    def evaluate(self, assignments: Iterable[Assignment]) -> CostBreakdown:
        """Evaluate the soft cost of an assignment set from scratch."""
        tracker = CostTracker(self)
        for assignment in assignments:
            tracker.push(assignment)
        return tracker.breakdown()

    def total(self, assignments: Iterable[Assignment]) -> float:
        return self.evaluate(assignments).total


class CostTracker:
    """Incrementally maintained soft cost of a changing assignment set.

    ``push`` and ``pop`` must be balanced; ``delta`` previews a push without
    changing anything. ``lower_bound`` never exceeds the cost of any complete
    schedule extending the current one.
    """

    def __init__(self, model: CostModel, min_penalties: dict | None = None) -> None:
        self.model = model
        self.days = model.grid.days
        self.periods = model.grid.periods
        self.weights = model.weights
        self.raw = {name: 0.0 for name in COMPONENTS}

        self._teacher_days: dict[tuple, list[int]] = {}
        self._teacher_sq: dict[tuple, int] = {}
        self._teacher_n: dict[tuple, int] = {}
        self._class_counts: dict[tuple, list[int]] = {}
        self._class_mask: dict[tuple, int] = {}
        self._subject_days: dict[tuple, list[int]] = {}
        self._major_counts: dict[tuple, list[int]] = {}
        self._major_mask: dict[tuple, int] = {}
        self._progress_days: dict[tuple, list[int]] = {}

        if min_penalties is None:
            min_penalties = {cid: model.min_assignment_penalty(cid) for cid in model.problem.curricula_by_id}
        self._min_penalties = min_penalties
        self._pending = sum(
            c.target_sessions * min_penalties.get(c.id, 0.0) for c in model.problem.curricula
        )

        # Lower bound share of the teacher spread, kept per (teacher, week)
        self._spread_bound: dict[tuple, float] = {}
        for key, load in model.final_loads.items():
            self._spread_bound[key] = self._spread_term(key, 0, 0)
        self._spread_bound_sum = sum(self._spread_bound.values())

    @property
    def total(self) -> float:
        return sum(self.raw[name] * self.weights[name] for name in COMPONENTS)

    def breakdown(self) -> CostBreakdown:
        return CostBreakdown(components=dict(self.raw), weights=dict(self.weights))

    def delta(self, assignment: Assignment) -> float:
        """Weighted cost change of pushing ``assignment``."""
        changes = self.component_delta(assignment)
        return sum(changes[name] * self.weights[name] for name in COMPONENTS)

    def component_delta(self, assignment: Assignment) -> dict[str, float]:
        """Raw per-component change of pushing ``assignment``."""
        return self._change(assignment, 1, commit=False)

    def push(self, assignment: Assignment) -> None:
        changes = self._change(assignment, 1, commit=True)
        for name in COMPONENTS:
            self.raw[name] += changes[name]
        self._pending -= self._min_penalties.get(assignment.curriculum_id, 0.0)

    def pop(self, assignment: Assignment) -> None:
        changes = self._change(assignment, -1, commit=True)
        for name in COMPONENTS:
            self.raw[name] += changes[name]
        self._pending += self._min_penalties.get(assignment.curriculum_id, 0.0)

    def lower_bound(self) -> float:
        """Lower bound on the cost of any completion of the current assignments.

        Teacher spread only grows as sessions are added, as do subject
        spacing, major runs and progress spreads; the static penalties of
        unplaced sessions are bounded by their per-curriculum minimum. Class
        gaps can still be filled, so they add nothing.
        """
        return (
            self._spread_bound_sum * self.weights["teacher_spread"]
            + self.raw["subject_spacing"] * self.weights["subject_spacing"]
            + self.raw["preferred_period"] * self.weights["preferred_period"]
            + self.raw["teacher_preference"] * self.weights["teacher_preference"]
            + self.raw["major_consecutive"] * self.weights["major_consecutive"]
            + self.raw["progress_consistency"] * self.weights["progress_consistency"]
            + self._pending
        )

    def _spread_term(self, key: tuple, sq: int, placed: int) -> float:
        final = self.model.final_loads.get(key, placed)
        remaining = max(final - placed, 0)
        best = balanced_square_sum(max(final, placed), self.days)
        return (max(sq + remaining, best) - best) * WEEK_SHARE

    def _change(self, assignment: Assignment, sign: int, commit: bool) -> dict[str, float]:
        info = self.model.info(assignment.curriculum_id)
        day, period = divmod(assignment.slot, self.periods)
        changes = dict.fromkeys(COMPONENTS, 0.0)

        for week in info.weeks:
            # teacher spread
            key = (info.teacher_id, week)
            counts = self._teacher_days.get(key)
            if counts is None:
                counts = [0] * self.days
                if commit:
                    self._teacher_days[key] = counts
            old_count = counts[day]
            new_count = old_count + sign
            sq = self._teacher_sq.get(key, 0)
            n = self._teacher_n.get(key, 0)
            new_sq = sq + new_count * new_count - old_count * old_count
            new_n = n + sign
            old_value = sq - balanced_square_sum(n, self.days)
            new_value = new_sq - balanced_square_sum(new_n, self.days)
            changes["teacher_spread"] += (new_value - old_value) * WEEK_SHARE
            if commit:
                counts[day] = new_count
                self._teacher_sq[key] = new_sq
                self._teacher_n[key] = new_n
                term = self._spread_term(key, new_sq, new_n)
                self._spread_bound_sum += term - self._spread_bound.get(key, 0.0)
                self._spread_bound[key] = term

            # progress consistency
            pkey = (info.teacher_id, info.subject_id, week)
            progress_days = self._progress_days.get(pkey)
            if progress_days is None:
                progress_days = [0] * self.days
                if commit:
                    self._progress_days[pkey] = progress_days
            old_excess = progress_excess(progress_days)
            progress_days[day] += sign
            new_excess = progress_excess(progress_days)
            if not commit:
                progress_days[day] -= sign
            changes["progress_consistency"] += (new_excess - old_excess) * PROGRESS_SPREAD_PENALTY * WEEK_SHARE

            for class_id in info.class_ids:
                # class continuity
                ckey = (class_id, week, day)
                period_counts = self._class_counts.get(ckey)
                if period_counts is None:
                    period_counts = [0] * self.periods
                    if commit:
                        self._class_counts[ckey] = period_counts
                mask = self._class_mask.get(ckey, 0)
                new_period_count = period_counts[period] + sign
                if new_period_count > 0:
                    new_mask = mask | (1 << period)
                else:
                    new_mask = mask & ~(1 << period)
                changes["class_continuity"] += (gap_count(new_mask) - gap_count(mask)) * WEEK_SHARE
                if commit:
                    period_counts[period] = new_period_count
                    self._class_mask[ckey] = new_mask

                # subject spacing
                skey = (class_id, info.subject_id, week)
                subject_days = self._subject_days.get(skey)
                if subject_days is None:
                    subject_days = [0] * self.days
                    if commit:
                        self._subject_days[skey] = subject_days
                same_day = subject_days[day] if sign > 0 else subject_days[day] - 1
                neighbours = 0
                if day > 0:
                    neighbours += subject_days[day - 1]
                if day < self.days - 1:
                    neighbours += subject_days[day + 1]
                changes["subject_spacing"] += sign * (2 * same_day + neighbours) * WEEK_SHARE
                if commit:
                    subject_days[day] += sign

                if info.is_major:
                    # major subject runs
                    mkey = (class_id, info.subject_id, week, day)
                    major_counts = self._major_counts.get(mkey)
                    if major_counts is None:
                        major_counts = [0] * self.periods
                        if commit:
                            self._major_counts[mkey] = major_counts
                    major_mask = self._major_mask.get(mkey, 0)
                    if major_counts[period] + sign > 0:
                        new_major_mask = major_mask | (1 << period)
                    else:
                        new_major_mask = major_mask & ~(1 << period)
                    excess = run_excess(new_major_mask) - run_excess(major_mask)
                    changes["major_consecutive"] += excess * MAJOR_RUN_PENALTY * WEEK_SHARE
                    if commit:
                        major_counts[period] += sign
                        self._major_mask[mkey] = new_major_mask

        preferred, teacher_cost = self.model.static_penalties(assignment.curriculum_id, assignment.slot)
        changes["preferred_period"] += sign * preferred
        changes["teacher_preference"] += sign * teacher_cost
        return changes
