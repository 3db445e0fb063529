"""
Vector math and bounded top-K ranking.

Vectors at rest are unit-normalized, so similarity is a plain dot product.
Everything here is pure Python; no numeric library is required.
"""

import heapq
import math
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from ingest.core.exceptions import DimensionMismatchError, ValidationError


NORM_TOLERANCE = 1e-4


def dot_product(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """
    Compute the dot product of two equal-length vectors.

    Raises:
        DimensionMismatchError: If the vectors differ in length
    """
    if len(vec_a) != len(vec_b):
        raise DimensionMismatchError(
            f"Vector dimensions must match: {len(vec_a)} != {len(vec_b)}",
            {"expected_dims": len(vec_a), "actual_dims": len(vec_b)},
        )
    return math.fsum(a * b for a, b in zip(vec_a, vec_b))


def l2_norm(vector: Sequence[float]) -> float:
    """Euclidean length of a vector."""
    return math.sqrt(math.fsum(x * x for x in vector))


def is_unit(vector: Sequence[float], tolerance: float = NORM_TOLERANCE) -> bool:
    """True if the vector's L2 norm is within ``tolerance`` of 1.0."""
    return abs(l2_norm(vector) - 1.0) < tolerance


def normalize(vector: Sequence[float]) -> List[float]:
    """
    Scale a vector to unit L2 norm.

    Raises:
        ValidationError: If the vector is empty, zero, or has non-finite entries
    """
    if not vector:
        raise ValidationError("Cannot normalize an empty vector")
    values = [float(x) for x in vector]
    if not all(math.isfinite(x) for x in values):
        raise ValidationError("Vector contains non-finite values")
    norm = l2_norm(values)
    if norm == 0.0:
        raise ValidationError("Cannot normalize a zero vector")
    return [x / norm for x in values]


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """
    Compute cosine similarity between two vectors.

    Args:
        vec_a: First vector
        vec_b: Second vector

    Returns:
        Cosine similarity score between -1 and 1 (0.0 if either is a zero vector)

    Raises:
        DimensionMismatchError: If vectors have different dimensions
    """
    dot = dot_product(vec_a, vec_b)
    magnitude_a = l2_norm(vec_a)
    magnitude_b = l2_norm(vec_b)

    if magnitude_a == 0 or magnitude_b == 0:
        return 0.0

    return dot / (magnitude_a * magnitude_b)


class _HeapEntry:
    """
    Heap entry ordered so the *worst* result sorts first.

    Worse means a lower score, or an equal score with a larger id.
    """

    __slots__ = ("score", "id", "item")

    def __init__(self, score: float, id: str, item: Any):
        self.score = score
        self.id = id
        self.item = item

    def __lt__(self, other: "_HeapEntry") -> bool:
        if self.score != other.score:
            return self.score < other.score
        return self.id > other.id


class TopK:
    """
    Bounded top-K collector.

    Keeps at most ``k`` entries in a min-heap keyed on "worst first", so each
    push is O(log k) and a scan of n candidates costs O(n log k).

    Example:
        >>> top = TopK(2)
        >>> for id, score in [("a", 0.9), ("b", 0.95), ("c", 0.8)]:
        ...     top.push(score, id)
        >>> [id for id, _, _ in top.results()]
        ['b', 'a']
    """

    def __init__(self, k: int):
        if k < 1:
            raise ValidationError(f"k must be >= 1, got {k}")
        self.k = k
        self._heap: List[_HeapEntry] = []

    def push(self, score: float, id: str, item: Any = None) -> bool:
        """
        Offer a candidate.

        Returns:
            True if the candidate is currently within the top K
        """
        entry = _HeapEntry(score, id, item)
        if len(self._heap) < self.k:
            heapq.heappush(self._heap, entry)
            return True
        if self._heap[0] < entry:
            heapq.heapreplace(self._heap, entry)
            return True
        return False

    def extend(self, candidates: Iterable[Tuple[float, str, Any]]) -> None:
        for score, id, item in candidates:
            self.push(score, id, item)

    def results(self, threshold: Optional[float] = None) -> List[Tuple[str, float, Any]]:
        """
        Return (id, score, item) sorted by score desc, id asc.

        Args:
            threshold: Drop entries scoring below this value
        """
        ordered = sorted(self._heap, key=lambda e: (-e.score, e.id))
        return [
            (e.id, e.score, e.item)
            for e in ordered
            if threshold is None or e.score >= threshold
        ]

    def __len__(self) -> int:
        return len(self._heap)
