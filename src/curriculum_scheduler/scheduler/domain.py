"""Derived solve-time structures built once from a validated problem.

``ProblemState`` holds the static per-curriculum data (forbidden masks,
candidate values, peers) and the occupancy of the current partial
schedule. Occupancy is tracked per teaching week (odd = 0, even = 1); an
``Every`` session occupies both.
"""

import logging
from enum import Enum
from typing import Any, Iterable

from ..models import Assignment, ExclusionKind, Problem, Schedule
from ..timegrid import iter_slots
from .schedule_hash import ScheduleHasher

logger = logging.getLogger(__name__)

Value = tuple[int, Any]  # (slot, venue_id)


class ForbiddenReason(str, Enum):
    """Source of a forbidden slot."""

    TEACHER = "teacher"
    SUBJECT = "subject"
    CLASS = "class"
    EXCLUSION = "exclusion"
    VENUE = "venue"


class ProblemState:
    """Static domains plus the occupancy of a partial schedule."""

    def __init__(self, problem: Problem) -> None:
        self.problem = problem
        self.config = problem.config
        self.grid = problem.grid
        self.curricula = problem.curricula_by_id

        self.weeks: dict[Any, tuple[int, ...]] = {}
        self.class_ids: dict[Any, tuple] = {}
        self.teacher_of: dict[Any, Any] = {}
        self.subject_of: dict[Any, str] = {}
        self.same_day_allowed: dict[Any, bool] = {}
        self.double_allowed: dict[Any, bool] = {}
        self.teacher_caps = {t.id: t.max_sessions_per_day for t in problem.teachers}
        self.venue_capacity = {v.id: v.capacity for v in problem.venues}

        for curriculum in problem.curricula:
            cid = curriculum.id
            subject = problem.subjects_by_id[curriculum.subject_id]
            self.weeks[cid] = curriculum.week_type.weeks
            self.class_ids[cid] = curriculum.class_ids
            self.teacher_of[cid] = curriculum.teacher_id
            self.subject_of[cid] = curriculum.subject_id
            if subject.allow_same_day is None:
                self.same_day_allowed[cid] = self.config.allow_same_day_same_subject
            else:
                self.same_day_allowed[cid] = subject.allow_same_day
            self.double_allowed[cid] = subject.allow_double_session

        self.partners: dict[Any, list[tuple[Any, int | None]]] = {}
        for exclusion in problem.mutual_exclusions:
            self.partners.setdefault(exclusion.teacher_a_id, []).append(
                (exclusion.teacher_b_id, exclusion.slots_mask)
            )
            self.partners.setdefault(exclusion.teacher_b_id, []).append(
                (exclusion.teacher_a_id, exclusion.slots_mask)
            )

        self._build_forbidden_masks()
        self._build_domains()
        self._build_fixed()
        self._build_peers()

        # Occupancy of the current partial schedule
        self.teacher_busy: dict[Any, list[int]] = {}
        self.class_busy: dict[Any, list[int]] = {}
        self.venue_load: dict[tuple, list[int]] = {}
        self._teacher_slot_count: dict[tuple, int] = {}
        self._class_slot_count: dict[tuple, int] = {}
        self.teacher_day_count: dict[tuple, int] = {}
        self.subject_day_count: dict[tuple, int] = {}
        self.occupants: list[list[Assignment]] = [[] for _ in range(self.grid.size)]
        self.assigned: dict[tuple, Assignment] = {}
        self.hasher = ScheduleHasher()

    def _build_forbidden_masks(self) -> None:
        problem = self.problem
        exclusion_masks: dict[tuple, int] = {}
        for exclusion in problem.exclusions:
            key = (exclusion.kind, exclusion.entity_id)
            exclusion_masks[key] = exclusion_masks.get(key, 0) | (1 << exclusion.slot)

        full = self.grid.full_mask
        self.forbidden_reasons: dict[Any, list[tuple[ForbiddenReason, int]]] = {}
        self.static_forbidden: dict[Any, int] = {}
        for curriculum in problem.curricula:
            teacher = problem.teachers_by_id[curriculum.teacher_id]
            subject = problem.subjects_by_id[curriculum.subject_id]
            class_mask = 0
            excluded = exclusion_masks.get((ExclusionKind.TEACHER, curriculum.teacher_id), 0)
            for class_id in curriculum.class_ids:
                class_mask |= problem.classes_by_id[class_id].forbidden_mask
                excluded |= exclusion_masks.get((ExclusionKind.CLASS, class_id), 0)
            reasons = [
                (ForbiddenReason.TEACHER, teacher.forbidden_mask & full),
                (ForbiddenReason.SUBJECT, subject.forbidden_mask & full),
                (ForbiddenReason.CLASS, class_mask & full),
                (ForbiddenReason.EXCLUSION, excluded & full),
            ]
            self.forbidden_reasons[curriculum.id] = [(r, m) for r, m in reasons if m]
            union = 0
            for _, mask in reasons:
                union |= mask
            self.static_forbidden[curriculum.id] = union

        self.venue_forbidden_reasons: dict[Any, list[tuple[ForbiddenReason, int]]] = {}
        self.venue_forbidden: dict[Any, int] = {}
        for venue in problem.venues:
            reasons = [
                (ForbiddenReason.VENUE, venue.forbidden_mask & full),
                (ForbiddenReason.EXCLUSION, exclusion_masks.get((ExclusionKind.VENUE, venue.id), 0) & full),
            ]
            self.venue_forbidden_reasons[venue.id] = [(r, m) for r, m in reasons if m]
            self.venue_forbidden[venue.id] = reasons[0][1] | reasons[1][1]

    def _build_domains(self) -> None:
        """Candidate (slot, venue) values per curriculum, slot-major."""
        problem = self.problem
        all_venues = [v.id for v in problem.venues if v.capacity >= 1]
        self.venue_options: dict[Any, list[Any]] = {}
        self.curriculum_domain: dict[Any, list[Value]] = {}

        for curriculum in problem.curricula:
            subject = problem.subjects_by_id[curriculum.subject_id]
            if subject.venue_id is not None:
                options = [subject.venue_id] if subject.venue_id in all_venues else []
            elif problem.venues:
                options = list(all_venues)
            else:
                options = [None]
            self.venue_options[curriculum.id] = options

            allowed = self.grid.full_mask & ~self.static_forbidden[curriculum.id]
            domain: list[Value] = []
            for slot in iter_slots(allowed):
                for venue_id in options:
                    if venue_id is not None and (self.venue_forbidden[venue_id] >> slot) & 1:
                        continue
                    domain.append((slot, venue_id))
            self.curriculum_domain[curriculum.id] = domain

    def _build_fixed(self) -> None:
        """Fixed courses take the first session indices of their curriculum."""
        self.fixed_assignments: dict[Any, Assignment] = self.problem.fixed_assignments()
        self.fixed_by_key: dict[tuple, Any] = {a.key: fid for fid, a in self.fixed_assignments.items()}
        self.fixed_count: dict[Any, int] = {}
        for assignment in self.fixed_assignments.values():
            cid = assignment.curriculum_id
            self.fixed_count[cid] = self.fixed_count.get(cid, 0) + 1

    def _build_peers(self) -> None:
        """Curricula that can constrain each other through teacher, class or venue."""
        by_teacher: dict[Any, set] = {}
        by_class: dict[Any, set] = {}
        by_venue: dict[Any, set] = {}
        for cid in self.curricula:
            by_teacher.setdefault(self.teacher_of[cid], set()).add(cid)
            for class_id in self.class_ids[cid]:
                by_class.setdefault(class_id, set()).add(cid)
            for venue_id in self.venue_options[cid]:
                if venue_id is not None:
                    by_venue.setdefault(venue_id, set()).add(cid)

        self.peers: dict[Any, frozenset] = {}
        for cid in self.curricula:
            peers = set(by_teacher[self.teacher_of[cid]])
            for other_teacher, _ in self.partners.get(self.teacher_of[cid], []):
                peers |= by_teacher.get(other_teacher, set())
            for class_id in self.class_ids[cid]:
                peers |= by_class[class_id]
            for venue_id in self.venue_options[cid]:
                if venue_id is not None:
                    peers |= by_venue[venue_id]
            peers.discard(cid)
            self.peers[cid] = frozenset(peers)

    @property
    def hash(self) -> int:
        return self.hasher.value

    def is_placed(self, key: tuple) -> bool:
        return key in self.assigned

    def place(self, assignment: Assignment) -> None:
        """Add an assignment to the partial schedule."""
        self._update(assignment, 1)
        self.assigned[assignment.key] = assignment
        self.occupants[assignment.slot].append(assignment)
        self.hasher.add(assignment)

    def remove(self, assignment: Assignment) -> None:
        """Take a placed assignment out of the partial schedule."""
        self._update(assignment, -1)
        del self.assigned[assignment.key]
        self.occupants[assignment.slot].remove(assignment)
        self.hasher.remove(assignment)

    def _update(self, assignment: Assignment, sign: int) -> None:
        cid = assignment.curriculum_id
        slot = assignment.slot
        bit = 1 << slot
        day = self.grid.day_of(slot)
        teacher_id = self.teacher_of[cid]
        subject_id = self.subject_of[cid]

        for week in self.weeks[cid]:
            key = (teacher_id, week, slot)
            count = self._teacher_slot_count.get(key, 0) + sign
            self._teacher_slot_count[key] = count
            masks = self.teacher_busy.setdefault(teacher_id, [0, 0])
            masks[week] = masks[week] | bit if count > 0 else masks[week] & ~bit

            day_key = (teacher_id, week, day)
            self.teacher_day_count[day_key] = self.teacher_day_count.get(day_key, 0) + sign

            for class_id in self.class_ids[cid]:
                key = (class_id, week, slot)
                count = self._class_slot_count.get(key, 0) + sign
                self._class_slot_count[key] = count
                masks = self.class_busy.setdefault(class_id, [0, 0])
                masks[week] = masks[week] | bit if count > 0 else masks[week] & ~bit

                subject_key = (class_id, subject_id, week, day)
                self.subject_day_count[subject_key] = self.subject_day_count.get(subject_key, 0) + sign

            if assignment.venue_id is not None:
                load = self.venue_load.setdefault((assignment.venue_id, slot), [0, 0])
                load[week] += sign

    def clear(self) -> None:
        """Remove every placed assignment."""
        for assignment in list(self.assigned.values()):
            self.remove(assignment)

    def assignments(self) -> list[Assignment]:
        return list(self.assigned.values())

    def snapshot(self) -> Schedule:
        """Current partial schedule as an immutable Schedule."""
        return Schedule(tuple(self.assigned.values()))

    def load(self, assignments: Iterable[Assignment]) -> None:
        for assignment in assignments:
            self.place(assignment)

    def placed_count(self, curriculum_id) -> int:
        return sum(1 for key in self.assigned if key[0] == curriculum_id)

    def shares_resources(self, a: Assignment, b: Assignment) -> bool:
        """Check if two sessions share a teacher or a class."""
        ca, cb = a.curriculum_id, b.curriculum_id
        if self.teacher_of[ca] == self.teacher_of[cb]:
            return True
        return bool(set(self.class_ids[ca]) & set(self.class_ids[cb]))

    def weeks_overlap(self, a_cid, b_cid) -> bool:
        return bool(set(self.weeks[a_cid]) & set(self.weeks[b_cid]))
