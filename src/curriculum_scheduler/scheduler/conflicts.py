"""Hard constraint checks for proposed assignments.

``ConflictDetector.check`` reports every hard constraint a placement would
violate against the current ``ProblemState``. Each conflict records the keys
of the placed sessions that cause it (``blockers``) so callers can decide
what to move.

``ConflictDetector.slot_report`` classifies every slot of the grid for one
session as blocked, warning or available, for shading an editing grid.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Iterable, Iterator

from ..exceptions import DataIntegrityError
from ..models import Assignment, Problem, Schedule
from ..validators import validate_problem
from .cost import CostModel, CostTracker
from .domain import ForbiddenReason, ProblemState

logger = logging.getLogger(__name__)

Key = tuple[Any, int]

# Soft cost components that mark an otherwise free slot as a warning
SLOT_WARNINGS = ("teacher_preference", "preferred_period", "major_consecutive", "progress_consistency")


@dataclass(frozen=True)
class Conflict:
    """Base of all conflict kinds."""

    kind: ClassVar[str] = "conflict"

    def describe(self) -> str:
        return self.kind

    def to_dict(self) -> dict[str, Any]:
        data = {"kind": self.kind}
        for name, value in self.__dict__.items():
            if name == "blockers":
                continue
            data[name] = value.value if isinstance(value, ForbiddenReason) else value
        return data


@dataclass(frozen=True)
class TeacherBusy(Conflict):
    kind: ClassVar[str] = "teacher_busy"

    teacher_id: Any
    slot: int
    blockers: tuple[Key, ...] = field(default=(), compare=False)

    def describe(self) -> str:
        return f"teacher {self.teacher_id} already teaches in slot {self.slot}"


@dataclass(frozen=True)
class ClassBusy(Conflict):
    kind: ClassVar[str] = "class_busy"

    class_id: Any
    slot: int
    blockers: tuple[Key, ...] = field(default=(), compare=False)

    def describe(self) -> str:
        return f"class {self.class_id} already has a lesson in slot {self.slot}"


@dataclass(frozen=True)
class VenueFull(Conflict):
    kind: ClassVar[str] = "venue_full"

    venue_id: Any
    slot: int
    blockers: tuple[Key, ...] = field(default=(), compare=False)

    def describe(self) -> str:
        return f"venue {self.venue_id} is full in slot {self.slot}"


@dataclass(frozen=True)
class ForbiddenSlot(Conflict):
    kind: ClassVar[str] = "forbidden_slot"

    reason: ForbiddenReason
    slot: int
    blockers: tuple[Key, ...] = field(default=(), compare=False)

    def describe(self) -> str:
        return f"slot {self.slot} is forbidden ({self.reason.value})"


@dataclass(frozen=True)
class SameDaySameSubject(Conflict):
    kind: ClassVar[str] = "same_day_same_subject"

    class_id: Any
    subject_id: str
    day: int
    blockers: tuple[Key, ...] = field(default=(), compare=False)

    def describe(self) -> str:
        return f"class {self.class_id} already has {self.subject_id} on day {self.day}"


@dataclass(frozen=True)
class WeekParityClash(Conflict):
    """Occupant with a different but overlapping week type (Every against Odd/Even)."""

    kind: ClassVar[str] = "week_parity_clash"

    other_assignment_id: Key
    slot: int
    blockers: tuple[Key, ...] = field(default=(), compare=False)

    def describe(self) -> str:
        return f"week type overlaps with session {self.other_assignment_id} in slot {self.slot}"


@dataclass(frozen=True)
class FixedCourseOverwrite(Conflict):
    kind: ClassVar[str] = "fixed_course_overwrite"

    fixed_course_id: Any
    blockers: tuple[Key, ...] = field(default=(), compare=False)

    def describe(self) -> str:
        return f"would overwrite fixed course {self.fixed_course_id}"


@dataclass(frozen=True)
class TeacherMutuallyExclusive(Conflict):
    kind: ClassVar[str] = "teacher_mutually_exclusive"

    teacher_id: Any
    other_teacher_id: Any
    slot: int
    blockers: tuple[Key, ...] = field(default=(), compare=False)

    def describe(self) -> str:
        return f"teacher {self.teacher_id} may not teach with teacher {self.other_teacher_id} in slot {self.slot}"


@dataclass(frozen=True)
class DoubleSession(Conflict):
    kind: ClassVar[str] = "double_session"

    class_id: Any
    subject_id: str
    slot: int
    blockers: tuple[Key, ...] = field(default=(), compare=False)

    def describe(self) -> str:
        return f"{self.subject_id} for class {self.class_id} would run back to back at slot {self.slot}"


@dataclass(frozen=True)
class TeacherDailyLimit(Conflict):
    kind: ClassVar[str] = "teacher_daily_limit"

    teacher_id: Any
    day: int
    blockers: tuple[Key, ...] = field(default=(), compare=False)

    def describe(self) -> str:
        return f"teacher {self.teacher_id} would exceed the daily session limit on day {self.day}"


@dataclass(frozen=True)
class SessionCountMismatch(Conflict):
    kind: ClassVar[str] = "session_count_mismatch"

    curriculum_id: Any
    expected: int
    actual: int

    def describe(self) -> str:
        return f"curriculum {self.curriculum_id} has {self.actual} sessions, expected {self.expected}"


class Conflicts:
    """Ordered report of the conflicts of one proposed assignment."""

    def __init__(self, items: Iterable[Conflict] = ()) -> None:
        self._items = list(items)

    def __iter__(self) -> Iterator[Conflict]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index: int) -> Conflict:
        return self._items[index]

    def __bool__(self) -> bool:
        return bool(self._items)

    def __repr__(self) -> str:
        return f"Conflicts({self._items!r})"

    @property
    def is_empty(self) -> bool:
        return not self._items

    def kinds(self) -> set[str]:
        return {c.kind for c in self._items}

    def of_kind(self, conflict_type: type) -> list[Conflict]:
        return [c for c in self._items if isinstance(c, conflict_type)]

    def blocking_keys(self) -> list[Key]:
        """Keys of placed sessions that cause a conflict, in first-seen order."""
        keys: list[Key] = []
        for conflict in self._items:
            for key in getattr(conflict, "blockers", ()):
                if key not in keys:
                    keys.append(key)
        return keys

    def has_unmovable(self) -> bool:
        """Check for conflicts that no relocation of other sessions can fix."""
        return any(
            isinstance(c, (ForbiddenSlot, SessionCountMismatch))
            or (isinstance(c, FixedCourseOverwrite) and not c.blockers)
            for c in self._items
        )


class SlotSeverity(str, Enum):
    """Outlook of a slot for one session."""

    BLOCKED = "blocked"
    WARNING = "warning"
    AVAILABLE = "available"


@dataclass(frozen=True)
class SlotStatus:
    """One cell of a slot report.

    ``conflicts`` holds the hard conflicts of a blocked slot. ``warnings``
    names the soft cost components a placement in the slot would raise.
    ``venue_id`` is the venue a placement would take, if any.
    """

    slot: int
    severity: SlotSeverity
    venue_id: Any = None
    conflicts: tuple[Conflict, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def reasons(self) -> list[str]:
        if self.conflicts:
            return [c.describe() for c in self.conflicts]
        return list(self.warnings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "slot": self.slot,
            "severity": self.severity.value,
            "venue_id": self.venue_id,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "warnings": list(self.warnings),
        }


class ConflictDetector:
    """Pure hard-constraint checks against a ProblemState."""

    def __init__(self, state: ProblemState) -> None:
        self.state = state

    def check(self, assignment: Assignment, ignore: Iterable[Key] | None = None) -> Conflicts:
        """Report every hard constraint ``assignment`` would violate.

        Args:
            assignment: Proposed placement
            ignore: Keys of placed sessions to treat as absent; defaults to
                    the assignment's own key so a placed session can be
                    checked at a new position

        Returns:
            Conflicts, empty when the placement is feasible
        """
        return Conflicts(self._iter_conflicts(assignment, self._ignored(assignment, ignore)))

    def is_feasible(self, assignment: Assignment, ignore: Iterable[Key] | None = None) -> bool:
        """Check feasibility, stopping at the first violation."""
        for _ in self._iter_conflicts(assignment, self._ignored(assignment, ignore)):
            return False
        return True

    def _ignored(self, assignment: Assignment, ignore: Iterable[Key] | None) -> set[Key]:
        if ignore is None:
            return {assignment.key}
        return set(ignore)

    def _iter_conflicts(self, a: Assignment, ignore: set[Key]) -> Iterator[Conflict]:
        state = self.state
        cid = a.curriculum_id
        slot = a.slot
        bit = 1 << slot

        fixed_id = state.fixed_by_key.get(a.key)
        if fixed_id is not None:
            pinned = state.fixed_assignments[fixed_id]
            if (pinned.slot, pinned.venue_id) != (slot, a.venue_id):
                yield FixedCourseOverwrite(fixed_id)

        for reason, mask in state.forbidden_reasons[cid]:
            if mask & bit:
                yield ForbiddenSlot(reason, slot)
        if a.venue_id is not None:
            for reason, mask in state.venue_forbidden_reasons.get(a.venue_id, ()):
                if mask & bit:
                    yield ForbiddenSlot(reason, slot)

        if not self._slot_clear(a):
            yield from self._occupant_conflicts(a, ignore)

        yield from self._day_conflicts(a, ignore)

    def _slot_clear(self, a: Assignment) -> bool:
        """Fast test that no session in the slot can clash with ``a``."""
        state = self.state
        cid = a.curriculum_id
        bit = 1 << a.slot
        teacher_id = state.teacher_of[cid]
        for week in state.weeks[cid]:
            if state.teacher_busy.get(teacher_id, (0, 0))[week] & bit:
                return False
            for class_id in state.class_ids[cid]:
                if state.class_busy.get(class_id, (0, 0))[week] & bit:
                    return False
            for other, _ in state.partners.get(teacher_id, ()):
                if state.teacher_busy.get(other, (0, 0))[week] & bit:
                    return False
            if a.venue_id is not None:
                load = state.venue_load.get((a.venue_id, a.slot), (0, 0))[week]
                if load >= state.venue_capacity.get(a.venue_id, 0):
                    return False
        return True

    def _occupant_conflicts(self, a: Assignment, ignore: set[Key]) -> Iterator[Conflict]:
        state = self.state
        cid = a.curriculum_id
        slot = a.slot
        teacher_id = state.teacher_of[cid]
        classes = set(state.class_ids[cid])
        weeks = state.weeks[cid]
        partners = state.partners.get(teacher_id, ())
        venue_users: dict[int, list[Key]] = {week: [] for week in weeks}

        for other in state.occupants[slot]:
            if other.key in ignore:
                continue
            ocid = other.curriculum_id
            overlap = [w for w in state.weeks[ocid] if w in weeks]
            if not overlap:
                continue
            if a.venue_id is not None and other.venue_id == a.venue_id:
                for week in overlap:
                    venue_users[week].append(other.key)

            clashes = []
            other_teacher = state.teacher_of[ocid]
            if other_teacher == teacher_id:
                clashes.append(TeacherBusy(teacher_id, slot, (other.key,)))
            for class_id in state.class_ids[ocid]:
                if class_id in classes:
                    clashes.append(ClassBusy(class_id, slot, (other.key,)))
            for partner, mask in partners:
                if partner == other_teacher and (mask is None or (mask >> slot) & 1):
                    clashes.append(TeacherMutuallyExclusive(teacher_id, partner, slot, (other.key,)))
            if not clashes:
                continue
            yield from clashes
            if state.weeks[ocid] != weeks:
                yield WeekParityClash(other.key, slot, (other.key,))
            fixed_id = state.fixed_by_key.get(other.key)
            if fixed_id is not None and state.assigned.get(other.key) == state.fixed_assignments[fixed_id]:
                yield FixedCourseOverwrite(fixed_id, (other.key,))

        if a.venue_id is not None:
            capacity = state.venue_capacity.get(a.venue_id, 0)
            for week in weeks:
                users = venue_users[week]
                if len(users) + 1 > capacity:
                    yield VenueFull(a.venue_id, slot, tuple(dict.fromkeys(users)))
                    break

    def _day_conflicts(self, a: Assignment, ignore: set[Key]) -> Iterator[Conflict]:
        state = self.state
        cid = a.curriculum_id
        grid = state.grid
        day = grid.day_of(a.slot)
        subject_id = state.subject_of[cid]
        teacher_id = state.teacher_of[cid]
        weeks = state.weeks[cid]
        ignored = [state.assigned[k] for k in ignore if k in state.assigned]

        if not state.same_day_allowed[cid]:
            for class_id in state.class_ids[cid]:
                for week in weeks:
                    count = state.subject_day_count.get((class_id, subject_id, week, day), 0)
                    count -= sum(
                        1
                        for other in ignored
                        if grid.day_of(other.slot) == day
                        and week in state.weeks[other.curriculum_id]
                        and state.subject_of[other.curriculum_id] == subject_id
                        and class_id in state.class_ids[other.curriculum_id]
                    )
                    if count > 0:
                        blockers = self._day_blockers(a, ignore, class_id=class_id, subject_id=subject_id)
                        yield SameDaySameSubject(class_id, subject_id, day, blockers)
                        break

        if not state.double_allowed[cid]:
            for neighbour in (a.slot - 1, a.slot + 1):
                if not 0 <= neighbour < grid.size or grid.day_of(neighbour) != day:
                    continue
                for other in state.occupants[neighbour]:
                    ocid = other.curriculum_id
                    if other.key in ignore or state.subject_of[ocid] != subject_id:
                        continue
                    if not state.weeks_overlap(cid, ocid):
                        continue
                    shared = [c for c in state.class_ids[cid] if c in state.class_ids[ocid]]
                    if shared:
                        yield DoubleSession(shared[0], subject_id, a.slot, (other.key,))

        cap = state.teacher_caps.get(teacher_id)
        if cap is not None:
            for week in weeks:
                count = state.teacher_day_count.get((teacher_id, week, day), 0)
                count -= sum(
                    1
                    for other in ignored
                    if grid.day_of(other.slot) == day
                    and week in state.weeks[other.curriculum_id]
                    and state.teacher_of[other.curriculum_id] == teacher_id
                )
                if count + 1 > cap:
                    blockers = self._day_blockers(a, ignore, teacher_id=teacher_id)
                    yield TeacherDailyLimit(teacher_id, day, blockers)
                    break

    def _day_blockers(self, a: Assignment, ignore: set[Key], class_id=None, subject_id=None, teacher_id=None):
        state = self.state
        day = state.grid.day_of(a.slot)
        blockers = []
        for slot in state.grid.day_slots(day):
            for other in state.occupants[slot]:
                ocid = other.curriculum_id
                if other.key in ignore or not state.weeks_overlap(a.curriculum_id, ocid):
                    continue
                if teacher_id is not None and state.teacher_of[ocid] == teacher_id:
                    blockers.append(other.key)
                elif (
                    class_id is not None
                    and state.subject_of[ocid] == subject_id
                    and class_id in state.class_ids[ocid]
                ):
                    blockers.append(other.key)
        return tuple(blockers)

    def slot_report(
        self,
        curriculum_id,
        session_index: int | None = None,
        cost_model: CostModel | None = None,
    ) -> dict[int, SlotStatus]:
        """Classify every slot of the grid for one session of a curriculum.

        With ``session_index`` the placed session is treated as moving and its
        own placement is ignored. Without it the report is for one more
        session of the curriculum.

        A slot is blocked when every venue option has a hard conflict; the
        conflicts of the first option are reported. Otherwise it is a warning
        when the placement would raise one of ``SLOT_WARNINGS``.
        """
        state = self.state
        if cost_model is None:
            cost_model = CostModel(state.problem)

        if session_index is None:
            index = state.fixed_count.get(curriculum_id, 0)
            while (curriculum_id, index) in state.assigned:
                index += 1
            ignore: set[Key] = set()
        else:
            index = session_index
            ignore = {(curriculum_id, index)}
        key = (curriculum_id, index)

        tracker = CostTracker(cost_model, min_penalties={})
        for assignment in state.assignments():
            if assignment.key != key:
                tracker.push(assignment)

        venues = state.venue_options[curriculum_id]
        report: dict[int, SlotStatus] = {}
        for slot in state.grid.slots():
            placed = None
            first = None
            for venue_id in venues:
                candidate = Assignment(curriculum_id, index, slot, venue_id)
                conflicts = self.check(candidate, ignore=ignore)
                if not conflicts:
                    placed = candidate
                    break
                if first is None:
                    first = conflicts
            if placed is None:
                report[slot] = SlotStatus(slot, SlotSeverity.BLOCKED, conflicts=tuple(first or ()))
                continue
            changes = tracker.component_delta(placed)
            warnings = tuple(name for name in SLOT_WARNINGS if changes.get(name, 0.0) > 0)
            severity = SlotSeverity.WARNING if warnings else SlotSeverity.AVAILABLE
            report[slot] = SlotStatus(slot, severity, venue_id=placed.venue_id, warnings=warnings)

        blocked = sum(1 for status in report.values() if status.severity is SlotSeverity.BLOCKED)
        logger.debug(f"Slot report for curriculum {curriculum_id}: {blocked} of {len(report)} slots blocked")
        return report


def _check_references(problem: Problem, schedule: Schedule) -> None:
    unknown = [a.curriculum_id for a in schedule if a.curriculum_id not in problem.curricula_by_id]
    if unknown:
        raise DataIntegrityError("schedule references unknown curricula", unknown)
    outside = [a.key for a in schedule if not problem.grid.contains(a.slot)]
    if outside:
        raise DataIntegrityError("schedule has slots outside the time grid", outside)


def validate_schedule(problem: Problem, schedule: Schedule) -> list[Conflict]:
    """Audit a complete schedule against every hard constraint.

    Args:
        problem: Problem the schedule was built for
        schedule: Schedule to audit

    Returns:
        List of conflicts, empty when the schedule is valid

    Raises:
        DataIntegrityError: If the problem is inconsistent, or an assignment
                            references an unknown curriculum or a slot
                            outside the grid
    """
    validate_problem(problem)
    _check_references(problem, schedule)

    state = ProblemState(problem)
    detector = ConflictDetector(state)
    conflicts: list[Conflict] = []

    for assignment in schedule:
        for conflict in detector.check(assignment, ignore=()):
            if isinstance(conflict, FixedCourseOverwrite) and conflict.blockers:
                continue
            if conflict not in conflicts:
                conflicts.append(conflict)
        state.place(assignment)

    for fixed_id, pinned in state.fixed_assignments.items():
        if pinned not in schedule:
            conflict = FixedCourseOverwrite(fixed_id)
            if conflict not in conflicts:
                conflicts.append(conflict)

    counts = {c.id: 0 for c in problem.curricula}
    for assignment in schedule:
        counts[assignment.curriculum_id] += 1
    for curriculum in problem.curricula:
        if counts[curriculum.id] != curriculum.target_sessions:
            conflicts.append(SessionCountMismatch(curriculum.id, curriculum.target_sessions, counts[curriculum.id]))

    if conflicts:
        logger.warning(f"Schedule audit found {len(conflicts)} conflict(s)")
    return conflicts


def slot_report(
    problem: Problem,
    schedule: Schedule,
    curriculum_id,
    session_index: int | None = None,
) -> dict[int, SlotStatus]:
    """Slot report for one session of ``curriculum_id`` against ``schedule``.

    Raises:
        DataIntegrityError: If the problem is inconsistent, the curriculum is
                            unknown, or ``session_index`` is not scheduled
    """
    validate_problem(problem)
    if curriculum_id not in problem.curricula_by_id:
        raise DataIntegrityError("unknown curriculum", [curriculum_id])
    _check_references(problem, schedule)
    if session_index is not None and (curriculum_id, session_index) not in {a.key for a in schedule}:
        raise DataIntegrityError("session is not scheduled", [(curriculum_id, session_index)])

    state = ProblemState(problem)
    state.load(schedule)
    return ConflictDetector(state).slot_report(curriculum_id, session_index)
