"""Order-independent schedule fingerprints.

Every assignment gets a 128-bit tag and a schedule hashes to the XOR of the
tags of its assignments, so adding or removing one assignment updates the
hash in O(1) and the empty schedule hashes to 0.
"""

import hashlib
import json
from functools import lru_cache
from typing import Iterable

from ..models import Assignment, Problem
from ..serialization import PROBLEM_SECTIONS, problem_to_dict

TAG_BYTES = 16


@lru_cache(maxsize=1 << 16)
def _tag(curriculum_id, session_index: int, slot: int, venue_id) -> int:
    key = f"{curriculum_id!r}|{session_index}|{slot}|{venue_id!r}".encode("utf-8")
    return int.from_bytes(hashlib.blake2b(key, digest_size=TAG_BYTES).digest(), "big")


def assignment_tag(assignment: Assignment) -> int:
    """128-bit Zobrist key of one assignment."""
    return _tag(assignment.curriculum_id, assignment.session_index, assignment.slot, assignment.venue_id)


def schedule_hash(assignments: Iterable[Assignment]) -> int:
    """XOR of the tags of a set of assignments."""
    value = 0
    for assignment in assignments:
        value ^= assignment_tag(assignment)
    return value


class ScheduleHasher:
    """Running hash of a changing assignment set."""

    def __init__(self, assignments: Iterable[Assignment] = ()) -> None:
        self._value = schedule_hash(assignments)

    @property
    def value(self) -> int:
        return self._value

    def add(self, assignment: Assignment) -> int:
        self._value ^= assignment_tag(assignment)
        return self._value

    def remove(self, assignment: Assignment) -> int:
        self._value ^= assignment_tag(assignment)
        return self._value

    # XOR is its own inverse
    toggle = add

    def peek(self, assignment: Assignment) -> int:
        """Hash the set would have with ``assignment`` toggled, without changing it."""
        return self._value ^ assignment_tag(assignment)


def problem_fingerprint(problem: Problem) -> int:
    """Stable 64-bit fingerprint of the problem entities.

    Used to derive the default RNG seed so that a solve is reproducible
    without an explicit seed. Solver options are not part of the fingerprint.
    """
    document = problem_to_dict(problem)
    canonical = {name: document[name] for name in PROBLEM_SECTIONS}
    payload = json.dumps(canonical, sort_keys=True, default=str).encode("utf-8")
    return int.from_bytes(hashlib.blake2b(payload, digest_size=8).digest(), "big")
