"""Relational store backed by SQLAlchemy.

Tables follow the persisted schema of the timetable database: forbidden
masks are string-encoded integers, combined classes a JSON array and week
types the strings ``Every``/``Odd``/``Even``.
"""

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Engine, Float, Integer, String, Text, create_engine, delete, select
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from ..exceptions import HistoryNotFoundError
from ..models import ExclusionKind, Problem, Schedule
from ..serialization import encode_combined_class_ids, problem_from_dict, schedule_from_dict, schedule_to_dict
from ..timegrid import encode_mask
from .base import HistoryRecord, meta_cost, utc_now

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class TeacherRow(Base):
    __tablename__ = "teachers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    forbidden_mask: Mapped[str] = mapped_column(String(32), nullable=False, default="0")
    max_sessions_per_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    preferred_mask: Mapped[str] = mapped_column(String(32), nullable=False, default="0")
    time_bias: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    preference_weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)


class ClassRow(Base):
    __tablename__ = "classes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    forbidden_mask: Mapped[str] = mapped_column(String(32), nullable=False, default="0")


class SubjectConfigRow(Base):
    __tablename__ = "subject_configs"

    id_text: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    forbidden_mask: Mapped[str] = mapped_column(String(32), nullable=False, default="0")
    venue_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    allow_same_day: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    allow_double_session: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    preferred_periods_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    is_major_subject: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class VenueRow(Base):
    __tablename__ = "venues"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    forbidden_mask: Mapped[str] = mapped_column(String(32), nullable=False, default="0")


class CurriculumRow(Base):
    __tablename__ = "curriculums"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    class_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    teacher_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    target_sessions: Mapped[int] = mapped_column(Integer, nullable=False)
    is_combined_class: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    combined_class_ids_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    week_type: Mapped[str] = mapped_column(String(8), nullable=False, default="Every")


class FixedCourseRow(Base):
    __tablename__ = "fixed_courses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    curriculum_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    slot: Mapped[int] = mapped_column(Integer, nullable=False)
    venue_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class ExclusionRow(Base):
    __tablename__ = "exclusions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    slot: Mapped[int] = mapped_column(Integer, nullable=False)


class TeacherMutualExclusionRow(Base):
    __tablename__ = "teacher_mutual_exclusions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    teacher_a_id: Mapped[int] = mapped_column(Integer, nullable=False)
    teacher_b_id: Mapped[int] = mapped_column(Integer, nullable=False)
    slots_mask: Mapped[str | None] = mapped_column(String(32), nullable=True)


class SolverSettingRow(Base):
    __tablename__ = "solver_settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


class ScheduleHistoryRow(Base):
    __tablename__ = "schedule_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    schedule_json: Mapped[str] = mapped_column(Text, nullable=False)
    meta_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")


# Problem tables, cleared and refilled by import_problem
PROBLEM_TABLES = (
    TeacherRow,
    ClassRow,
    SubjectConfigRow,
    VenueRow,
    CurriculumRow,
    FixedCourseRow,
    ExclusionRow,
    TeacherMutualExclusionRow,
    SolverSettingRow,
)


def make_engine(url: str) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across sessions."""
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database in (None, "", ":memory:"):
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url)


class SqlStore:
    """Problem and schedule history in a relational database.

    Args:
        url: SQLAlchemy database URL (``sqlite://`` for an in-memory database)
        engine: Existing engine to use instead of creating one from ``url``
    """

    def __init__(self, url: str = "sqlite://", engine: Engine | None = None):
        self.engine = engine if engine is not None else make_engine(url)
        self._sessions = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    def create_schema(self) -> None:
        """Create any missing tables."""
        Base.metadata.create_all(bind=self.engine)

    def import_problem(self, problem: Problem) -> None:
        """Replace the stored problem definition with ``problem``.

        Schedule history is kept.
        """
        with self._sessions() as session, session.begin():
            for table in PROBLEM_TABLES:
                session.execute(delete(table))
            session.add_all(_problem_rows(problem))
        logger.info(
            f"Imported problem: {len(problem.curricula)} curricula, "
            f"{len(problem.teachers)} teachers, {len(problem.classes)} classes"
        )

    def load_problem(self) -> Problem:
        with self._sessions() as session:
            classes = [_class_dict(r) for r in _all(session, ClassRow, ClassRow.id)]
            teachers = [_teacher_dict(r) for r in _all(session, TeacherRow, TeacherRow.id)]
            entity_ids = {
                ExclusionKind.CLASS.value: {str(c["id"]): c["id"] for c in classes},
                ExclusionKind.TEACHER.value: {str(t["id"]): t["id"] for t in teachers},
            }
            document = {
                "classes": classes,
                "teachers": teachers,
                "subjects": [_subject_dict(r) for r in _all(session, SubjectConfigRow, SubjectConfigRow.id_text)],
                "venues": [_venue_dict(r) for r in _all(session, VenueRow, VenueRow.id)],
                "curricula": [_curriculum_dict(r) for r in _all(session, CurriculumRow, CurriculumRow.id)],
                "fixed_courses": [_fixed_course_dict(r) for r in _all(session, FixedCourseRow, FixedCourseRow.id)],
                "exclusions": [
                    _exclusion_dict(r, entity_ids) for r in _all(session, ExclusionRow, ExclusionRow.id)
                ],
                "mutual_exclusions": [
                    _mutual_exclusion_dict(r)
                    for r in _all(session, TeacherMutualExclusionRow, TeacherMutualExclusionRow.id)
                ],
                "config": {r.key: json.loads(r.value) for r in _all(session, SolverSettingRow, SolverSettingRow.key)},
            }
        return problem_from_dict(document)

    def save_schedule(self, schedule: Schedule, meta: dict[str, Any] | None = None) -> int:
        row = ScheduleHistoryRow(
            created_at=utc_now(),
            cost=meta_cost(meta),
            schedule_json=json.dumps(schedule_to_dict(schedule), ensure_ascii=False),
            meta_json=json.dumps(meta or {}, ensure_ascii=False, default=str),
        )
        with self._sessions() as session, session.begin():
            session.add(row)
            session.flush()
            history_id = row.id
        logger.info(f"Saved schedule history record {history_id}")
        return history_id

    def load_schedule(self, history_id: int) -> Schedule:
        with self._sessions() as session:
            row = session.get(ScheduleHistoryRow, history_id)
            if row is None:
                raise HistoryNotFoundError(history_id)
            return schedule_from_dict(json.loads(row.schedule_json))

    def list_history(self) -> list[HistoryRecord]:
        with self._sessions() as session:
            rows = _all(session, ScheduleHistoryRow, ScheduleHistoryRow.id)
            return [
                HistoryRecord(
                    id=row.id,
                    created_at=row.created_at,
                    cost=row.cost,
                    assignments=len(json.loads(row.schedule_json).get("assignments", [])),
                    meta=json.loads(row.meta_json or "{}"),
                )
                for row in rows
            ]


def _all(session: Session, table, order_by) -> list:
    return list(session.scalars(select(table).order_by(order_by)))


def _problem_rows(problem: Problem) -> list[Base]:
    rows: list[Base] = []
    for c in problem.classes:
        rows.append(ClassRow(id=c.id, name=c.name, forbidden_mask=encode_mask(c.forbidden_mask)))
    for t in problem.teachers:
        rows.append(
            TeacherRow(
                id=t.id,
                name=t.name,
                forbidden_mask=encode_mask(t.forbidden_mask),
                max_sessions_per_day=t.max_sessions_per_day,
                preferred_mask=encode_mask(t.preferred_mask),
                time_bias=t.time_bias.value,
                preference_weight=t.preference_weight,
            )
        )
    for s in problem.subjects:
        rows.append(
            SubjectConfigRow(
                id_text=s.id,
                name=s.name,
                forbidden_mask=encode_mask(s.forbidden_mask),
                venue_id=s.venue_id,
                allow_same_day=s.allow_same_day,
                allow_double_session=s.allow_double_session,
                preferred_periods_json=json.dumps(list(s.preferred_periods)),
                is_major_subject=s.is_major,
            )
        )
    for v in problem.venues:
        rows.append(VenueRow(id=v.id, name=v.name, capacity=v.capacity, forbidden_mask=encode_mask(v.forbidden_mask)))
    for c in problem.curricula:
        rows.append(
            CurriculumRow(
                id=c.id,
                class_id=c.class_id,
                subject_id=c.subject_id,
                teacher_id=c.teacher_id,
                target_sessions=c.target_sessions,
                is_combined_class=1 if c.is_combined_class else 0,
                combined_class_ids_json=encode_combined_class_ids(c),
                week_type=c.week_type.value,
            )
        )
    for f in problem.fixed_courses:
        rows.append(FixedCourseRow(id=f.id, curriculum_id=f.curriculum_id, slot=f.slot, venue_id=f.venue_id))
    for e in problem.exclusions:
        rows.append(ExclusionRow(id=e.id, kind=e.kind.value, entity_id=str(e.entity_id), slot=e.slot))
    for m in problem.mutual_exclusions:
        rows.append(
            TeacherMutualExclusionRow(
                id=m.id,
                teacher_a_id=m.teacher_a_id,
                teacher_b_id=m.teacher_b_id,
                slots_mask=None if m.slots_mask is None else encode_mask(m.slots_mask),
            )
        )
    for key, value in problem.config.to_dict().items():
        rows.append(SolverSettingRow(key=key, value=json.dumps(value)))
    return rows


def _class_dict(row: ClassRow) -> dict[str, Any]:
    return {"id": row.id, "name": row.name, "forbidden_mask": row.forbidden_mask}


def _teacher_dict(row: TeacherRow) -> dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "forbidden_mask": row.forbidden_mask,
        "max_sessions_per_day": row.max_sessions_per_day,
        "preferred_mask": row.preferred_mask,
        "time_bias": row.time_bias,
        "preference_weight": row.preference_weight,
    }


def _subject_dict(row: SubjectConfigRow) -> dict[str, Any]:
    return {
        "id_text": row.id_text,
        "name": row.name,
        "forbidden_mask": row.forbidden_mask,
        "venue_id": row.venue_id,
        "allow_same_day": row.allow_same_day,
        "allow_double_session": row.allow_double_session,
        "preferred_periods": json.loads(row.preferred_periods_json or "[]"),
        "is_major_subject": row.is_major_subject,
    }


def _venue_dict(row: VenueRow) -> dict[str, Any]:
    return {"id": row.id, "name": row.name, "capacity": row.capacity, "forbidden_mask": row.forbidden_mask}


def _curriculum_dict(row: CurriculumRow) -> dict[str, Any]:
    return {
        "id": row.id,
        "class_id": row.class_id,
        "subject_id": row.subject_id,
        "teacher_id": row.teacher_id,
        "target_sessions": row.target_sessions,
        "is_combined_class": bool(row.is_combined_class),
        "combined_class_ids_json": row.combined_class_ids_json,
        "week_type": row.week_type,
    }


def _fixed_course_dict(row: FixedCourseRow) -> dict[str, Any]:
    return {"id": row.id, "curriculum_id": row.curriculum_id, "slot": row.slot, "venue_id": row.venue_id}


def _exclusion_dict(row: ExclusionRow, entity_ids: dict[str, dict[str, Any]]) -> dict[str, Any]:
    # entity_id is stored as text; map it back to the id of the stored entity
    entity_id = entity_ids.get(row.kind, {}).get(row.entity_id, row.entity_id)
    return {"id": row.id, "kind": row.kind, "entity_id": entity_id, "slot": row.slot}


def _mutual_exclusion_dict(row: TeacherMutualExclusionRow) -> dict[str, Any]:
    return {
        "id": row.id,
        "teacher_a_id": row.teacher_a_id,
        "teacher_b_id": row.teacher_b_id,
        "slots_mask": row.slots_mask,
    }
