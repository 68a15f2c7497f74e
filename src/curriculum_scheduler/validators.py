"""Integrity checks run on a problem before solving."""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from .exceptions import DataIntegrityError
from .models import ExclusionKind, Problem

logger = logging.getLogger(__name__)


@dataclass
class IntegrityIssue:
    """One integrity problem with the ids that caused it."""

    message: str
    ids: list[Any] = field(default_factory=list)

    def __str__(self) -> str:
        if not self.ids:
            return self.message
        return f"{self.message} (offending ids: {', '.join(str(i) for i in self.ids)})"


def find_integrity_issues(problem: Problem) -> list[IntegrityIssue]:
    """Collect every integrity problem of a problem definition.

    Args:
        problem: Problem to check

    Returns:
        List of issues, empty when the problem is consistent
    """
    issues: list[IntegrityIssue] = []
    issues.extend(_check_duplicate_ids(problem))
    issues.extend(_check_entities(problem))
    issues.extend(_check_curricula(problem))
    issues.extend(_check_fixed_courses(problem))
    issues.extend(_check_exclusions(problem))
    issues.extend(_check_mutual_exclusions(problem))
    return issues


def validate_problem(problem: Problem) -> None:
    """Raise DataIntegrityError for the first integrity problem found."""
    issues = find_integrity_issues(problem)
    for issue in issues[1:]:
        logger.warning(f"Integrity issue: {issue}")
    if issues:
        raise DataIntegrityError(issues[0].message, issues[0].ids)


def _check_duplicate_ids(problem: Problem) -> list[IntegrityIssue]:
    issues = []
    sections = {
        "class": problem.classes,
        "teacher": problem.teachers,
        "subject": problem.subjects,
        "venue": problem.venues,
        "curriculum": problem.curricula,
        "fixed course": problem.fixed_courses,
        "exclusion": problem.exclusions,
    }
    for name, records in sections.items():
        counts = Counter(record.id for record in records)
        duplicates = [record_id for record_id, count in counts.items() if count > 1]
        if duplicates:
            issues.append(IntegrityIssue(f"duplicate {name} ids", duplicates))
    return issues


def _check_entities(problem: Problem) -> list[IntegrityIssue]:
    issues = []
    periods = problem.grid.periods

    bad_capacity = [v.id for v in problem.venues if v.capacity < 1]
    if bad_capacity:
        issues.append(IntegrityIssue("venue capacity must be at least 1", bad_capacity))

    bad_caps = [
        t.id for t in problem.teachers if t.max_sessions_per_day is not None and t.max_sessions_per_day < 0
    ]
    if bad_caps:
        issues.append(IntegrityIssue("teacher max_sessions_per_day must be >= 0", bad_caps))

    bad_weights = [t.id for t in problem.teachers if t.preference_weight < 0]
    if bad_weights:
        issues.append(IntegrityIssue("teacher preference_weight must be >= 0", bad_weights))

    unknown_venue = [s.id for s in problem.subjects if s.venue_id is not None and s.venue_id not in problem.venues_by_id]
    if unknown_venue:
        issues.append(IntegrityIssue("subject references an unknown venue", unknown_venue))

    bad_band = [s.id for s in problem.subjects if any(not 0 <= p < periods for p in s.preferred_periods)]
    if bad_band:
        issues.append(IntegrityIssue(f"preferred periods outside 0..{periods - 1}", bad_band))
    return issues


def _check_curricula(problem: Problem) -> list[IntegrityIssue]:
    issues = []
    unknown_class = []
    unknown_subject = []
    unknown_teacher = []
    bad_target = []
    bad_combined = []

    for curriculum in problem.curricula:
        if any(c not in problem.classes_by_id for c in curriculum.class_ids):
            unknown_class.append(curriculum.id)
        if curriculum.subject_id not in problem.subjects_by_id:
            unknown_subject.append(curriculum.id)
        if curriculum.teacher_id not in problem.teachers_by_id:
            unknown_teacher.append(curriculum.id)
        if curriculum.target_sessions < 0:
            bad_target.append(curriculum.id)
        if not curriculum.is_combined_class and curriculum.combined_class_ids:
            bad_combined.append(curriculum.id)

    if unknown_class:
        issues.append(IntegrityIssue("curriculum references an unknown class", unknown_class))
    if unknown_subject:
        issues.append(IntegrityIssue("curriculum references an unknown subject", unknown_subject))
    if unknown_teacher:
        issues.append(IntegrityIssue("curriculum references an unknown teacher", unknown_teacher))
    if bad_target:
        issues.append(IntegrityIssue("target_sessions must be >= 0", bad_target))
    if bad_combined:
        issues.append(IntegrityIssue("combined class ids listed on a curriculum that is not combined", bad_combined))
    return issues


def _check_fixed_courses(problem: Problem) -> list[IntegrityIssue]:
    issues = []
    grid = problem.grid
    unknown_curriculum = [f.id for f in problem.fixed_courses if f.curriculum_id not in problem.curricula_by_id]
    if unknown_curriculum:
        issues.append(IntegrityIssue("fixed course references an unknown curriculum", unknown_curriculum))

    out_of_range = [f.id for f in problem.fixed_courses if not grid.contains(f.slot)]
    if out_of_range:
        issues.append(IntegrityIssue(f"fixed course slot outside 0..{grid.size - 1}", out_of_range))

    unknown_venue = [
        f.id for f in problem.fixed_courses if f.venue_id is not None and f.venue_id not in problem.venues_by_id
    ]
    if unknown_venue:
        issues.append(IntegrityIssue("fixed course references an unknown venue", unknown_venue))

    counts = Counter(f.curriculum_id for f in problem.fixed_courses)
    too_many = [
        curriculum_id
        for curriculum_id, count in counts.items()
        if curriculum_id in problem.curricula_by_id
        and count > problem.curricula_by_id[curriculum_id].target_sessions
    ]
    if too_many:
        issues.append(IntegrityIssue("more fixed courses than target sessions", too_many))
    return issues


def _check_exclusions(problem: Problem) -> list[IntegrityIssue]:
    issues = []
    grid = problem.grid
    lookups = {
        ExclusionKind.TEACHER: problem.teachers_by_id,
        ExclusionKind.CLASS: problem.classes_by_id,
        ExclusionKind.VENUE: problem.venues_by_id,
    }
    unknown = [e.id for e in problem.exclusions if e.entity_id not in lookups[e.kind]]
    if unknown:
        issues.append(IntegrityIssue("exclusion references an unknown entity", unknown))

    out_of_range = [e.id for e in problem.exclusions if not grid.contains(e.slot)]
    if out_of_range:
        issues.append(IntegrityIssue(f"exclusion slot outside 0..{grid.size - 1}", out_of_range))
    return issues


def _check_mutual_exclusions(problem: Problem) -> list[IntegrityIssue]:
    unknown = []
    for exclusion in problem.mutual_exclusions:
        for teacher_id in (exclusion.teacher_a_id, exclusion.teacher_b_id):
            if teacher_id not in problem.teachers_by_id and teacher_id not in unknown:
                unknown.append(teacher_id)
    if unknown:
        return [IntegrityIssue("teacher mutual exclusion references an unknown teacher", unknown)]
    return []
