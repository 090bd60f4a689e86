"""
Face Matcher
============
Nearest-neighbour matching of one observed embedding against the roster.

A student may carry several reference embeddings; their distance to the
observed face is the minimum over those references. The closest student wins
if that distance is strictly below the threshold. Ties keep the first student
in roster order.
"""

import logging
from typing import Optional, Sequence

import numpy as np
from pydantic import BaseModel

from .database.models import descriptor_to_array
from .database.student_service import RosterEntry
from .errors import ModelNotReady

logger = logging.getLogger(__name__)

DEFAULT_MATCH_THRESHOLD = 0.6


class FaceMatch(BaseModel):
    student_id: str
    student_code: str
    student_name: str
    distance: float
    matched: bool


def euclidean_distance(embedding1: np.ndarray, embedding2: np.ndarray) -> float:
    """Euclidean distance between two embeddings of equal length."""
    return float(np.linalg.norm(embedding1 - embedding2))


def find_best_match(
    query_embedding,
    roster: Sequence[RosterEntry],
    threshold: float = DEFAULT_MATCH_THRESHOLD
) -> Optional[FaceMatch]:
    """
    Find the closest student to `query_embedding`.

    Returns None for an empty roster. Otherwise returns the closest student,
    with `matched` False when the distance is not below `threshold`.
    """
    candidates = [entry for entry in roster if entry.descriptors]
    if not candidates:
        return None

    dim = len(candidates[0].descriptors[0])
    query = descriptor_to_array(query_embedding, dim)

    best_entry = None
    best_distance = float("inf")

    for entry in candidates:
        references = np.vstack(entry.descriptors)
        distance = float(np.min(np.linalg.norm(references - query, axis=1)))
        # Strict comparison keeps the earlier student on ties
        if distance < best_distance:
            best_distance = distance
            best_entry = entry

    return FaceMatch(
        student_id=best_entry.id,
        student_code=best_entry.student_code,
        student_name=best_entry.name,
        distance=best_distance,
        matched=best_distance < threshold
    )


class FaceMatcher:
    """
    Matcher bound to an embedding engine.
    Refuses to match until the engine has finished loading, since embeddings
    from any other source would not share its space.
    """

    def __init__(self, engine, threshold: float = DEFAULT_MATCH_THRESHOLD):
        self.engine = engine
        self.threshold = threshold

    def match(self, query_embedding, roster: Sequence[RosterEntry]) -> Optional[FaceMatch]:
        if self.engine is None or not self.engine.is_ready:
            raise ModelNotReady()

        result = find_best_match(query_embedding, roster, self.threshold)
        if result is None:
            logger.debug("No enrolled faces to match against")
        elif result.matched:
            logger.info(f"Face matched: {result.student_name} (distance {result.distance:.3f})")
        else:
            logger.info(f"Closest face {result.student_name} rejected (distance {result.distance:.3f})")
        return result

    def match_student(self, query_embedding, roster: Sequence[RosterEntry]) -> Optional[str]:
        """ID of the matched student, or None for no match."""
        result = self.match(query_embedding, roster)
        return result.student_id if result and result.matched else None
