"""Reading and writing problems and schedules as JSON documents."""

import json
from pathlib import Path
from typing import Any

from .config import SolverConfig
from .exceptions import DataIntegrityError
from .models import (
    Curriculum,
    Exclusion,
    FixedCourse,
    Problem,
    Schedule,
    SchoolClass,
    Subject,
    Teacher,
    TeacherMutualExclusion,
    Venue,
)

# Section name -> (record type, accepted aliases)
PROBLEM_SECTIONS: dict[str, tuple[type, tuple[str, ...]]] = {
    "classes": (SchoolClass, ()),
    "teachers": (Teacher, ()),
    "subjects": (Subject, ("subject_configs",)),
    "venues": (Venue, ()),
    "curricula": (Curriculum, ("curriculums",)),
    "fixed_courses": (FixedCourse, ()),
    "exclusions": (Exclusion, ()),
    "mutual_exclusions": (TeacherMutualExclusion, ("teacher_mutual_exclusions",)),
}


def problem_from_dict(data: dict[str, Any]) -> Problem:
    """Build a Problem from its JSON document.

    Args:
        data: Dictionary with one list per entity section and an optional
              ``config`` object

    Returns:
        Problem with a validated configuration

    Raises:
        DataIntegrityError: If a record is missing fields or has bad values
        ConfigurationError: If the configuration is invalid
    """
    sections: dict[str, list] = {}
    for name, (record_type, aliases) in PROBLEM_SECTIONS.items():
        records = data.get(name)
        for alias in aliases:
            if records is None:
                records = data.get(alias)
        sections[name] = [_decode_record(name, record_type, r) for r in records or []]

    config = SolverConfig.from_dict(data.get("config"))
    return Problem(config=config, **sections)


def problem_to_dict(problem: Problem) -> dict[str, Any]:
    """Convert a Problem to its JSON document."""
    result: dict[str, Any] = {"config": problem.config.to_dict()}
    for name in PROBLEM_SECTIONS:
        result[name] = [record.to_dict() for record in getattr(problem, name)]
    return result


def _decode_record(section: str, record_type: type, record: dict[str, Any]):
    try:
        return record_type.from_dict(record)
    except (KeyError, ValueError, TypeError, IndexError) as e:
        record_id = record.get("id") if isinstance(record, dict) else None
        raise DataIntegrityError(
            f"malformed record in '{section}': {e}",
            ids=[record_id] if record_id is not None else None,
        ) from e


def load_problem_file(input_path: Path | str) -> Problem:
    """Load a problem from a JSON file.

    Args:
        input_path: Path to problem JSON file

    Returns:
        Decoded Problem
    """
    with open(input_path, encoding="utf-8") as f:
        return problem_from_dict(json.load(f))


def save_problem_file(problem: Problem, output_path: Path | str) -> None:
    """Write a problem to a JSON file."""
    output = Path(output_path)
    output.parent.mkdir(parents=True, exist_ok=True)

    with open(output, "w", encoding="utf-8") as f:
        json.dump(problem_to_dict(problem), f, ensure_ascii=False, indent=2)


def schedule_to_dict(
    schedule: Schedule, problem: Problem | None = None, meta: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Convert a schedule to a JSON document.

    When the problem is given, each assignment also carries readable day,
    period, class, subject and teacher fields.
    """
    assignments = []
    for assignment in schedule:
        item = assignment.to_dict()
        if problem is not None:
            curriculum = problem.curricula_by_id.get(assignment.curriculum_id)
            day, period = problem.grid.split(assignment.slot)
            item["day"] = day
            item["period"] = period
            item["when"] = problem.grid.describe(assignment.slot)
            if curriculum is not None:
                item["class_ids"] = list(curriculum.class_ids)
                item["subject_id"] = curriculum.subject_id
                item["teacher_id"] = curriculum.teacher_id
                item["week_type"] = curriculum.week_type.value
        assignments.append(item)

    result: dict[str, Any] = {"assignments": assignments}
    if meta:
        result["meta"] = meta
    return result


def schedule_from_dict(data: dict[str, Any]) -> Schedule:
    """Decode a schedule document, ignoring the readable extra fields."""
    try:
        return Schedule.from_dict(data)
    except (KeyError, ValueError, TypeError) as e:
        raise DataIntegrityError(f"malformed schedule document: {e}") from e


def export_schedule_json(
    schedule: Schedule,
    output_path: Path | str,
    problem: Problem | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """Export a schedule to a JSON file.

    Args:
        schedule: Schedule to export
        output_path: Path to output JSON file
        problem: Problem used to add readable fields
        meta: Extra metadata stored under ``meta``
    """
    output = Path(output_path)
    output.parent.mkdir(parents=True, exist_ok=True)

    with open(output, "w", encoding="utf-8") as f:
        json.dump(schedule_to_dict(schedule, problem, meta), f, ensure_ascii=False, indent=2)


def load_schedule_file(input_path: Path | str) -> Schedule:
    """Load a schedule from a JSON file."""
    with open(input_path, encoding="utf-8") as f:
        return schedule_from_dict(json.load(f))


def encode_combined_class_ids(curriculum: Curriculum) -> str:
    """Persisted JSON array of combined class ids (empty when not combined)."""
    if not curriculum.is_combined_class:
        return "[]"
    return json.dumps(list(curriculum.combined_class_ids))
