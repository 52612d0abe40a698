"""
Similarity engine for comparing face encodings.

Encodings are fixed-length vectors produced by an external encoder. Scores are
cosine similarity rescaled from [-1, 1] to [0, 1].
"""

import json
import logging
from typing import Any, Optional, Sequence, Tuple

import numpy as np

from security_engine.config import settings
from security_engine.exceptions import EncodingShapeMismatch, InvalidEncodingFormat

logger = logging.getLogger(__name__)


class SimilarityEngine:
    """Numeric comparison of face templates into a calibrated confidence score."""

    def __init__(self, default_threshold: Optional[float] = None):
        self.default_threshold = default_threshold if default_threshold is not None else settings.face_match_threshold

    def parse_encoding(self, value: Any) -> np.ndarray:
        """
        Convert a caller-supplied encoding into a 1-D float64 vector.

        Accepts lists, tuples, numpy arrays, or a JSON string of numbers.

        Raises:
            InvalidEncodingFormat: If the value is empty, non-numeric, not
                one-dimensional, or contains NaN or infinite values
        """
        if isinstance(value, (str, bytes)):
            try:
                value = json.loads(value)
            except (json.JSONDecodeError, UnicodeDecodeError):
                raise InvalidEncodingFormat("Face encoding string is not valid JSON")

        if value is None or isinstance(value, (dict, bool)):
            raise InvalidEncodingFormat()

        try:
            vector = np.asarray(value, dtype=np.float64)
        except (TypeError, ValueError):
            raise InvalidEncodingFormat()

        if vector.ndim != 1 or vector.size == 0:
            raise InvalidEncodingFormat()

        if not np.isfinite(vector).all():
            raise InvalidEncodingFormat("Face encoding contains NaN or infinite values")

        return vector

    def compare(self, vector_a: np.ndarray, vector_b: np.ndarray) -> float:
        """
        Compare two encodings.

        Args:
            vector_a: First encoding
            vector_b: Second encoding

        Returns:
            float: Similarity in [0, 1]; 0.0 when either vector has zero norm

        Raises:
            EncodingShapeMismatch: If the vectors differ in length or are empty
        """
        vector_a = np.asarray(vector_a, dtype=np.float64)
        vector_b = np.asarray(vector_b, dtype=np.float64)

        if vector_a.shape != vector_b.shape or vector_a.size == 0:
            raise EncodingShapeMismatch(
                f"Face encoding dimensions don't match: {vector_a.shape} vs {vector_b.shape}"
            )

        norm_a = np.linalg.norm(vector_a)
        norm_b = np.linalg.norm(vector_b)
        if norm_a == 0 or norm_b == 0:
            return 0.0

        cosine = float(np.clip(np.dot(vector_a, vector_b) / (norm_a * norm_b), -1.0, 1.0))
        score = (cosine + 1.0) / 2.0

        logger.debug(f"Computed similarity: cosine={cosine:.4f}, score={score:.4f}")
        return score

    def best_match(self, stored_angles: Sequence[np.ndarray], candidate: np.ndarray) -> Tuple[float, int]:
        """
        Compare a candidate against every stored angle independently.

        Returns:
            tuple: (maximum score, index of the angle that produced it)
        """
        if not stored_angles:
            raise EncodingShapeMismatch("No stored angles to compare against")

        scores = [self.compare(angle, candidate) for angle in stored_angles]
        best_index = int(np.argmax(scores))
        return scores[best_index], best_index

    def is_match(self, score: float, threshold: Optional[float] = None) -> bool:
        """Convert a score to an accept/reject decision."""
        threshold = self.default_threshold if threshold is None else threshold
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Threshold must be between 0.0 and 1.0, got: {threshold}")
        return score >= threshold


# Global instance for reuse across requests
_similarity_engine: Optional[SimilarityEngine] = None


def get_similarity_engine() -> SimilarityEngine:
    """
    Get the global similarity engine instance.

    Returns:
        SimilarityEngine: The global similarity engine instance
    """
    global _similarity_engine
    if _similarity_engine is None:
        _similarity_engine = SimilarityEngine()
    return _similarity_engine
