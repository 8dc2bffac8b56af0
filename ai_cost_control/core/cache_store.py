"""
Firm-scoped response cache.

Entries are keyed by the prompt hash within a firm and operation type and
expire by TTL only; there is no LRU eviction.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ai_cost_control.storage.db import DEFAULT_DB_PATH, to_utc, utcnow
from ai_cost_control.storage.models import CacheEntry
from ai_cost_control.storage.repository import CacheRepository

logger = logging.getLogger(__name__)


class CacheStore:
    """Exact-match cache over the ``ai_cache_entry`` table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, clock: Optional[Callable[[], datetime]] = None):
        self.repository = CacheRepository(db_path)
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return to_utc(self._clock())

    def lookup_exact(
        self,
        firm_id: str,
        operation_type: str,
        prompt_hash: str,
        now: Optional[datetime] = None
    ) -> Optional[CacheEntry]:
        """Return the live entry for the key, or None on a miss."""
        return self.repository.find_live(firm_id, operation_type, prompt_hash, now or self.now())

    def put(self, entry: CacheEntry) -> None:
        """Store a new entry.

        Raises:
            DuplicateKey: If an unexpired entry with the same key exists;
                callers treat this as a successful population
        """
        self.repository.insert(entry, self.now())
        logger.debug(
            "Cached %s response for %s/%s until %s",
            entry.model_used, entry.firm_id, entry.operation_type, entry.expires_at.isoformat()
        )

    def record_hit(self, entry: CacheEntry) -> CacheEntry:
        """Count a hit on ``entry`` and return it with the new count.

        The increment happens in SQL, so concurrent hits never lose updates.
        """
        count = self.repository.increment_hit_count(entry.firm_id, entry.operation_type, entry.prompt_hash)
        if count is None:
            # Swept between lookup and increment; the answer is still valid to serve
            return entry
        return _with_hit_count(entry, count)

    def candidates(
        self,
        firm_id: str,
        operation_type: str,
        now: Optional[datetime] = None
    ) -> List[CacheEntry]:
        """Live entries with embeddings for one firm and operation type."""
        return self.repository.find_live_with_embeddings(firm_id, operation_type, now or self.now())

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Physically delete expired entries and return how many were removed."""
        removed = self.repository.delete_expired(now or self.now())
        if removed:
            logger.info("Swept %d expired cache entries", removed)
        return removed

    def build_entry(
        self,
        firm_id: str,
        operation_type: str,
        prompt_hash: str,
        prompt_text: str,
        response: str,
        model_used: str,
        ttl_hours: float,
        embedding: Optional[List[float]] = None
    ) -> CacheEntry:
        created_at = self.now()
        return CacheEntry(
            prompt_hash=prompt_hash,
            prompt_text=prompt_text,
            response=response,
            model_used=model_used,
            operation_type=operation_type,
            firm_id=firm_id,
            created_at=created_at,
            expires_at=created_at + timedelta(hours=ttl_hours),
            embedding=list(embedding) if embedding is not None else None
        )


def _with_hit_count(entry: CacheEntry, count: int) -> CacheEntry:
    return CacheEntry(
        prompt_hash=entry.prompt_hash,
        prompt_text=entry.prompt_text,
        response=entry.response,
        model_used=entry.model_used,
        operation_type=entry.operation_type,
        firm_id=entry.firm_id,
        created_at=entry.created_at,
        expires_at=entry.expires_at,
        embedding=entry.embedding,
        hit_count=count
    )
