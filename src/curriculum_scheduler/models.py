"""Data models for the curriculum scheduling system."""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import SolverConfig
from .constants import EVEN_WEEK, ODD_WEEK, TEACHING_WEEKS
from .timegrid import TimeGrid, parse_mask


class WeekType(str, Enum):
    """Week type of a curriculum (every week, odd weeks or even weeks)."""

    EVERY = "Every"
    ODD = "Odd"
    EVEN = "Even"

    @property
    def weeks(self) -> tuple[int, ...]:
        """Teaching weeks in which a session of this type takes place."""
        if self == WeekType.ODD:
            return (ODD_WEEK,)
        if self == WeekType.EVEN:
            return (EVEN_WEEK,)
        return TEACHING_WEEKS

    def overlaps(self, other: "WeekType") -> bool:
        """Check if sessions of the two week types can co-occur."""
        return bool(set(self.weeks) & set(other.weeks))

    @classmethod
    def parse(cls, value: "str | WeekType | None") -> "WeekType":
        """Parse a week type string case-insensitively ('both' is read as Every)."""
        if isinstance(value, WeekType):
            return value
        if value is None or value == "":
            return cls.EVERY
        text = str(value).strip().lower()
        if text in ("every", "both", "all"):
            return cls.EVERY
        if text == "odd":
            return cls.ODD
        if text == "even":
            return cls.EVEN
        raise ValueError(f"Unknown week type: {value!r}")


class TimeBias(str, Enum):
    """Time of day a teacher prefers to avoid."""

    NONE = "none"
    AVOID_FIRST = "avoid_first"
    AVOID_LAST = "avoid_last"

    @classmethod
    def parse(cls, value: "str | int | TimeBias | None") -> "TimeBias":
        """Parse a bias value. Integer codes 0/1/2 map to none/first/last."""
        if isinstance(value, TimeBias):
            return value
        if value is None or value == "":
            return cls.NONE
        if isinstance(value, int):
            return [cls.NONE, cls.AVOID_FIRST, cls.AVOID_LAST][value]
        return cls(str(value).lower())


class ExclusionKind(str, Enum):
    """Entity type an exclusion record applies to."""

    TEACHER = "teacher"
    CLASS = "class"
    VENUE = "venue"


@dataclass(frozen=True)
class SchoolClass:
    """A class (group of students) taught as one unit."""

    id: int
    name: str
    forbidden_mask: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SchoolClass":
        return cls(
            id=data["id"],
            name=data.get("name", str(data["id"])),
            forbidden_mask=parse_mask(data.get("forbidden_mask", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "forbidden_mask": self.forbidden_mask}


@dataclass(frozen=True)
class Teacher:
    """A teacher with availability and scheduling preferences."""

    id: int
    name: str
    forbidden_mask: int = 0
    max_sessions_per_day: int | None = None
    preferred_mask: int = 0
    time_bias: TimeBias = TimeBias.NONE
    preference_weight: float = 1.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Teacher":
        """Create a Teacher from a dictionary."""
        return cls(
            id=data["id"],
            name=data.get("name", str(data["id"])),
            forbidden_mask=parse_mask(data.get("forbidden_mask", 0)),
            max_sessions_per_day=data.get("max_sessions_per_day"),
            preferred_mask=parse_mask(data.get("preferred_mask", 0)),
            time_bias=TimeBias.parse(data.get("time_bias")),
            preference_weight=float(data.get("preference_weight", 1.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "forbidden_mask": self.forbidden_mask,
            "max_sessions_per_day": self.max_sessions_per_day,
            "preferred_mask": self.preferred_mask,
            "time_bias": self.time_bias.value,
            "preference_weight": self.preference_weight,
        }


@dataclass(frozen=True)
class Subject:
    """Subject configuration.

    ``allow_same_day`` overrides the global same-day policy when set.
    ``preferred_periods`` is the band of periods (0-based) the subject should
    land in; an empty band means no preference.
    Runs of three or more back-to-back periods of a major subject are penalised.
    """

    id: str
    name: str
    forbidden_mask: int = 0
    venue_id: str | None = None
    allow_same_day: bool | None = None
    allow_double_session: bool = True
    preferred_periods: tuple[int, ...] = ()
    is_major: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Subject":
        """Create a Subject from a dictionary (``id_text`` is accepted for ``id``)."""
        subject_id = data.get("id", data.get("id_text"))
        allow_same_day = data.get("allow_same_day")
        return cls(
            id=str(subject_id),
            name=data.get("name", str(subject_id)),
            forbidden_mask=parse_mask(data.get("forbidden_mask", 0)),
            venue_id=data.get("venue_id"),
            allow_same_day=None if allow_same_day is None else bool(allow_same_day),
            allow_double_session=bool(data.get("allow_double_session", True)),
            preferred_periods=tuple(data.get("preferred_periods", ())),
            is_major=bool(data.get("is_major", data.get("is_major_subject", False))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "forbidden_mask": self.forbidden_mask,
            "venue_id": self.venue_id,
            "allow_same_day": self.allow_same_day,
            "allow_double_session": self.allow_double_session,
            "preferred_periods": list(self.preferred_periods),
            "is_major": self.is_major,
        }


@dataclass(frozen=True)
class Venue:
    """A room that can host ``capacity`` sessions at the same time."""

    id: str
    name: str
    capacity: int = 1
    forbidden_mask: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Venue":
        return cls(
            id=data["id"],
            name=data.get("name", str(data["id"])),
            capacity=int(data.get("capacity", 1)),
            forbidden_mask=parse_mask(data.get("forbidden_mask", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "capacity": self.capacity,
            "forbidden_mask": self.forbidden_mask,
        }


@dataclass(frozen=True)
class Curriculum:
    """Requirement that ``target_sessions`` sessions of (class, subject, teacher) are taught per week."""

    id: int
    class_id: int
    subject_id: str
    teacher_id: int
    target_sessions: int
    is_combined_class: bool = False
    combined_class_ids: tuple[int, ...] = ()
    week_type: WeekType = WeekType.EVERY

    @property
    def class_ids(self) -> tuple[int, ...]:
        """Every class attending a session of this curriculum."""
        if not self.is_combined_class:
            return (self.class_id,)
        others = tuple(c for c in self.combined_class_ids if c != self.class_id)
        return (self.class_id,) + others

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Curriculum":
        """Create a Curriculum from a dictionary.

        Combined class ids may be given as a list or as a JSON array string
        (``combined_class_ids_json``, the persisted encoding).
        """
        combined = data.get("combined_class_ids", data.get("combined_class_ids_json", []))
        if isinstance(combined, str):
            combined = json.loads(combined) if combined.strip() else []
        return cls(
            id=data["id"],
            class_id=data["class_id"],
            subject_id=str(data["subject_id"]),
            teacher_id=data["teacher_id"],
            target_sessions=int(data["target_sessions"]),
            is_combined_class=bool(data.get("is_combined_class", False)),
            combined_class_ids=tuple(combined or ()),
            week_type=WeekType.parse(data.get("week_type")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "class_id": self.class_id,
            "subject_id": self.subject_id,
            "teacher_id": self.teacher_id,
            "target_sessions": self.target_sessions,
            "is_combined_class": self.is_combined_class,
            "combined_class_ids": list(self.combined_class_ids) if self.is_combined_class else [],
            "week_type": self.week_type.value,
        }


@dataclass(frozen=True)
class FixedCourse:
    """A session pinned to a slot and venue before solving."""

    id: int
    curriculum_id: int
    slot: int
    venue_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FixedCourse":
        return cls(
            id=data["id"],
            curriculum_id=data["curriculum_id"],
            slot=int(data["slot"]),
            venue_id=data.get("venue_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "curriculum_id": self.curriculum_id,
            "slot": self.slot,
            "venue_id": self.venue_id,
        }


@dataclass(frozen=True)
class Exclusion:
    """An unavailable (teacher | class | venue, slot) pair."""

    id: int
    kind: ExclusionKind
    entity_id: Any
    slot: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Exclusion":
        return cls(
            id=data["id"],
            kind=ExclusionKind(str(data["kind"]).lower()),
            entity_id=data["entity_id"],
            slot=int(data["slot"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "entity_id": self.entity_id,
            "slot": self.slot,
        }


@dataclass(frozen=True)
class TeacherMutualExclusion:
    """Two teachers that may not teach at the same time.

    ``slots_mask`` limits the exclusion to some slots; None means every slot.
    """

    teacher_a_id: int
    teacher_b_id: int
    slots_mask: int | None = None
    id: int | None = None

    def applies_to(self, slot: int) -> bool:
        return self.slots_mask is None or (self.slots_mask >> slot) & 1 == 1

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TeacherMutualExclusion":
        slots_mask = data.get("slots_mask")
        return cls(
            teacher_a_id=data["teacher_a_id"],
            teacher_b_id=data["teacher_b_id"],
            slots_mask=None if slots_mask is None else parse_mask(slots_mask),
            id=data.get("id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "teacher_a_id": self.teacher_a_id,
            "teacher_b_id": self.teacher_b_id,
            "slots_mask": self.slots_mask,
        }


@dataclass(frozen=True)
class Assignment:
    """Placement of one session of a curriculum into a (slot, venue)."""

    curriculum_id: int
    session_index: int
    slot: int
    venue_id: str | None = None

    @property
    def key(self) -> tuple[int, int]:
        """Identity of the session regardless of where it is placed."""
        return (self.curriculum_id, self.session_index)

    def moved(self, slot: int, venue_id: str | None) -> "Assignment":
        """Copy of this assignment placed at another slot and venue."""
        return Assignment(self.curriculum_id, self.session_index, slot, venue_id)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Assignment":
        return cls(
            curriculum_id=data["curriculum_id"],
            session_index=int(data.get("session_index", 0)),
            slot=int(data["slot"]),
            venue_id=data.get("venue_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "curriculum_id": self.curriculum_id,
            "session_index": self.session_index,
            "slot": self.slot,
            "venue_id": self.venue_id,
        }


def _assignment_order(assignment: Assignment) -> tuple:
    return (assignment.slot, assignment.curriculum_id, assignment.session_index, str(assignment.venue_id))


@dataclass(frozen=True)
class Schedule:
    """A set of assignments, kept in canonical (slot, curriculum, session) order."""

    assignments: tuple[Assignment, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "assignments", tuple(sorted(self.assignments, key=_assignment_order)))

    def __len__(self) -> int:
        return len(self.assignments)

    def __iter__(self):
        return iter(self.assignments)

    def __contains__(self, assignment: object) -> bool:
        return assignment in self.assignments

    def by_curriculum(self) -> dict[int, list[Assignment]]:
        """Group assignments by curriculum id."""
        result: dict[int, list[Assignment]] = {}
        for assignment in self.assignments:
            result.setdefault(assignment.curriculum_id, []).append(assignment)
        return result

    def get(self, key: tuple[int, int]) -> Assignment | None:
        """Find the assignment of a (curriculum_id, session_index) key."""
        for assignment in self.assignments:
            if assignment.key == key:
                return assignment
        return None

    def replace(self, removed: list[Assignment], added: list[Assignment]) -> "Schedule":
        """Return a new schedule with some assignments swapped out."""
        kept = [a for a in self.assignments if a not in removed]
        return Schedule(tuple(kept) + tuple(added))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Schedule":
        return cls(tuple(Assignment.from_dict(a) for a in data.get("assignments", [])))

    def to_dict(self) -> dict[str, Any]:
        return {"assignments": [a.to_dict() for a in self.assignments]}


@dataclass
class Problem:
    """Everything the solver needs: entities, constraints and configuration.

    Lookup tables by id are built on creation. Entities reference each other
    by id only.
    """

    classes: list[SchoolClass] = field(default_factory=list)
    teachers: list[Teacher] = field(default_factory=list)
    subjects: list[Subject] = field(default_factory=list)
    venues: list[Venue] = field(default_factory=list)
    curricula: list[Curriculum] = field(default_factory=list)
    fixed_courses: list[FixedCourse] = field(default_factory=list)
    exclusions: list[Exclusion] = field(default_factory=list)
    mutual_exclusions: list[TeacherMutualExclusion] = field(default_factory=list)
    config: SolverConfig = field(default_factory=SolverConfig)

    def __post_init__(self) -> None:
        self.classes_by_id = {c.id: c for c in self.classes}
        self.teachers_by_id = {t.id: t for t in self.teachers}
        self.subjects_by_id = {s.id: s for s in self.subjects}
        self.venues_by_id = {v.id: v for v in self.venues}
        self.curricula_by_id = {c.id: c for c in self.curricula}

    @property
    def grid(self) -> TimeGrid:
        return self.config.grid

    def fixed_courses_for(self, curriculum_id: int) -> list[FixedCourse]:
        """Fixed courses of one curriculum, ordered by id."""
        courses = [f for f in self.fixed_courses if f.curriculum_id == curriculum_id]
        return sorted(courses, key=lambda f: f.id)

    def fixed_assignments(self) -> dict[int, Assignment]:
        """Assignments implied by fixed courses, keyed by fixed course id.

        Fixed courses of a curriculum take its first session indices.
        """
        result: dict[int, Assignment] = {}
        for curriculum in self.curricula:
            for index, course in enumerate(self.fixed_courses_for(curriculum.id)):
                result[course.id] = Assignment(curriculum.id, index, course.slot, course.venue_id)
        return result

    def total_sessions(self) -> int:
        return sum(c.target_sessions for c in self.curricula)

    def with_config(self, config: SolverConfig) -> "Problem":
        """Copy of this problem with another configuration."""
        return Problem(
            classes=list(self.classes),
            teachers=list(self.teachers),
            subjects=list(self.subjects),
            venues=list(self.venues),
            curricula=list(self.curricula),
            fixed_courses=list(self.fixed_courses),
            exclusions=list(self.exclusions),
            mutual_exclusions=list(self.mutual_exclusions),
            config=config,
        )
