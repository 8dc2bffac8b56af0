"""
Embedding-similarity lookup over cached entries.

Candidates are an exact brute-force scan of one firm's live entries for one
operation type, which is fine at per-firm cache sizes. A miss here only
costs a real model call; a wrong hit serves a wrong answer, so thresholds
should be conservative.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

import numpy as np

from ai_cost_control.storage.models import CacheEntry

from .cache_store import CacheStore


@dataclass(frozen=True)
class SimilarMatch:
    """Best candidate found by similarity search."""
    entry: CacheEntry
    score: float


class SimilarityMatcher:
    """Nearest cached prompt by cosine similarity, within one firm."""

    def __init__(self, cache_store: CacheStore):
        self.cache_store = cache_store

    def lookup_similar(
        self,
        firm_id: str,
        operation_type: str,
        embedding: Sequence[float],
        threshold: float,
        now: Optional[datetime] = None
    ) -> Optional[SimilarMatch]:
        """Find the most similar live entry scoring at least ``threshold``.

        Args:
            firm_id: Tenant whose entries may be considered
            operation_type: Operation type whose entries may be considered
            embedding: Query embedding
            threshold: Minimum cosine similarity, in (0, 1]
            now: Evaluation time (defaults to the store's clock)

        Returns:
            SimilarMatch for the best candidate, or None on a miss.
            Equal scores resolve to the most recently created entry.

        Raises:
            ValueError: If threshold is out of range
        """
        if not 0 < threshold <= 1:
            raise ValueError("threshold must be in (0, 1]")

        query = _unit_vector(embedding)
        if query is None:
            return None

        candidates = [
            entry for entry in self.cache_store.candidates(firm_id, operation_type, now)
            # The query already filters by firm; re-check so no row can leak across tenants
            if entry.firm_id == firm_id
            and entry.operation_type == operation_type
            and entry.embedding is not None
            and len(entry.embedding) == query.shape[0]
        ]
        if not candidates:
            return None

        matrix = np.asarray([entry.embedding for entry in candidates], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1)
        valid = norms > 0
        if not valid.any():
            return None

        scores = np.full(len(candidates), -np.inf)
        scores[valid] = (matrix[valid] @ query) / norms[valid]

        best: Optional[SimilarMatch] = None
        for entry, score in zip(candidates, scores):
            if not np.isfinite(score):
                continue
            score = float(score)
            if best is None or score > best.score or (
                score == best.score and entry.created_at > best.entry.created_at
            ):
                best = SimilarMatch(entry=entry, score=score)

        if best is None or best.score < threshold:
            return None
        return best


def _unit_vector(embedding: Sequence[float]) -> Optional[np.ndarray]:
    vector = np.asarray(list(embedding), dtype=np.float64)
    if vector.ndim != 1 or vector.size == 0:
        return None
    norm = np.linalg.norm(vector)
    if norm == 0 or not np.isfinite(norm):
        return None
    return vector / norm

