"""
Control-plane facade.

The single entry point for the AI invocation layer:

1. ``resolve`` answers from cache when it can and otherwise tells the caller
   whether it may invoke the model.
2. ``record`` appends the call's cost to the ledger, then caches the answer.

Cache hits are served even when a firm is paused, because they cost nothing.
Cache writes are best-effort; ledger writes are not.
"""

import logging
import math
import numbers
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto
from typing import Callable, List, Optional, Sequence

from ai_cost_control.config.loader import ControlPlaneConfig
from ai_cost_control.storage.db import DEFAULT_DB_PATH, to_utc, utcnow
from ai_cost_control.storage.models import CacheEntry, UsageRecord

from .cache_store import CacheStore
from .errors import CacheWriteFailed, DuplicateKey, InvalidContext
from .governor import BudgetDecision, BudgetGovernor, Notifier
from .hashing import prompt_hash
from .inflight import InflightKey, InflightRegistry
from .ledger import UsageLedger
from .pricing import PRICING_TABLE, calculate_cost_cents
from .similarity import SimilarityMatcher
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

MATCH_EXACT = "exact"
MATCH_SIMILAR = "similar"


class Outcome(Enum):
    """What the caller must do next."""
    CACHE_HIT = auto()    # Serve the cached response
    MUST_INVOKE = auto()  # Call the model, then ``record`` the result
    BLOCKED = auto()      # Budget paused and nothing cached


@dataclass(frozen=True)
class InvocationUsage:
    """What the caller observed when it invoked the model.

    ``cost_cents`` is priced from the model table when omitted.
    """
    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int
    cost_cents: Optional[float] = None

    @property
    def token_usage(self) -> TokenUsage:
        return TokenUsage(input_tokens=self.input_tokens, output_tokens=self.output_tokens)


@dataclass(frozen=True)
class ResolveResult:
    """Answer to ``resolve``."""
    outcome: Outcome
    decision: BudgetDecision
    prompt_hash: str
    entry: Optional[CacheEntry] = None
    match: Optional[str] = None
    score: Optional[float] = None
    usage_record: Optional[UsageRecord] = None

    @property
    def response(self) -> Optional[str]:
        return self.entry.response if self.entry is not None else None

    @property
    def alert_threshold(self) -> Optional[str]:
        """Threshold this request crossed, for the caller to surface to the firm."""
        return self.decision.threshold


@dataclass(frozen=True)
class RecordResult:
    """Answer to ``record``."""
    usage_record: UsageRecord
    cache_populated: bool
    decision: BudgetDecision

    @property
    def alert_threshold(self) -> Optional[str]:
        return self.decision.threshold


class ControlPlane:
    """Semantic cache, usage ledger and budget governor behind one facade."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        config: Optional[ControlPlaneConfig] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or ControlPlaneConfig.default()
        self._clock = clock or utcnow
        self.cache_store = CacheStore(db_path, clock=self._clock)
        self.matcher = SimilarityMatcher(self.cache_store)
        self.ledger = UsageLedger(db_path)
        self.governor = BudgetGovernor(
            db_path,
            ledger=self.ledger,
            defaults=self.config.budget,
            notifier=notifier,
            clock=self._clock
        )
        self.inflight = InflightRegistry(self.config.inflight.marker_ttl_seconds)

    def now(self) -> datetime:
        return to_utc(self._clock())

    def resolve(
        self,
        prompt: str,
        embedding: Optional[Sequence[float]],
        firm_id: str,
        operation_type: str,
        user_id: Optional[str] = None,
        case_id: Optional[str] = None
    ) -> ResolveResult:
        """Serve a cached answer or decide whether the model may be called.

        Raises:
            InvalidContext: If firm, operation type or prompt is missing,
                or the embedding is not a sequence of numbers
            LedgerWriteFailed: If a cache hit could not be recorded
        """
        _validate_context(firm_id, operation_type, prompt, embedding)
        decision = self.governor.evaluate(firm_id)
        key_hash = prompt_hash(prompt, operation_type, firm_id)

        hit = self._probe(firm_id, operation_type, key_hash, embedding)
        if hit is not None:
            return self._serve_hit(hit, decision, key_hash, user_id, case_id)

        if decision.blocks_model_calls:
            return self._blocked(firm_id, operation_type, decision, key_hash)

        key = (firm_id, operation_type, key_hash)
        if not self.inflight.acquire(key):
            logger.debug("Waiting on in-flight call for %s/%s", firm_id, operation_type)
            self.inflight.wait(key, self.config.inflight.wait_seconds)
            entry = self._lookup_exact(firm_id, operation_type, key_hash)
            if entry is not None:
                return self._serve_hit((entry, MATCH_EXACT, 1.0), decision, key_hash, user_id, case_id)
            # Spend may have moved while we waited
            decision = self.governor.evaluate(firm_id)
            if decision.blocks_model_calls:
                return self._blocked(firm_id, operation_type, decision, key_hash)
            # First caller failed or is slow; fall back to our own call
            self.inflight.acquire(key)

        return ResolveResult(outcome=Outcome.MUST_INVOKE, decision=decision, prompt_hash=key_hash)

    def record(
        self,
        firm_id: str,
        operation_type: str,
        prompt: str,
        embedding: Optional[Sequence[float]],
        response: str,
        usage: InvocationUsage,
        user_id: Optional[str] = None,
        case_id: Optional[str] = None
    ) -> RecordResult:
        """Append a model answer's cost to the ledger, then cache the answer.

        Raises:
            InvalidContext: If context is missing or the cost cannot be priced
            LedgerWriteFailed: If the usage record was not committed
        """
        _validate_context(firm_id, operation_type, prompt, embedding)
        key_hash = prompt_hash(prompt, operation_type, firm_id)
        key: InflightKey = (firm_id, operation_type, key_hash)

        try:
            token_usage = _token_usage(usage)
            cost_cents = self._price(usage, token_usage)

            # An answer is only cached once its cost is in the ledger
            usage_record = self.ledger.record(UsageRecord(
                firm_id=firm_id,
                operation_type=operation_type,
                model_used=usage.model,
                input_tokens=token_usage.input_tokens,
                output_tokens=token_usage.output_tokens,
                total_tokens=token_usage.total_tokens,
                cost_cents=cost_cents,
                latency_ms=usage.latency_ms,
                cached=False,
                created_at=self.now(),
                user_id=user_id,
                case_id=case_id
            ))

            try:
                self._write_cache_entry(firm_id, operation_type, key_hash, prompt, embedding, response, usage.model)
                cache_populated = True
            except CacheWriteFailed as e:
                logger.warning("Continuing without cache entry: %s", e, exc_info=e.__cause__)
                cache_populated = False
        finally:
            self.inflight.release(key)

        decision = self.governor.evaluate(firm_id)
        return RecordResult(usage_record=usage_record, cache_populated=cache_populated, decision=decision)

    def release(self, firm_id: str, operation_type: str, prompt: str) -> None:
        """Give up a pending call so waiting requests make their own."""
        _validate_context(firm_id, operation_type, prompt)
        self.inflight.release((firm_id, operation_type, prompt_hash(prompt, operation_type, firm_id)))

    def _blocked(self, firm_id: str, operation_type: str, decision: BudgetDecision, key_hash: str) -> ResolveResult:
        logger.warning(
            "Blocked model call for firm %s (%s): budget paused at %.2f of %d cents",
            firm_id, operation_type, decision.spend_cents, decision.budget_cents
        )
        return ResolveResult(outcome=Outcome.BLOCKED, decision=decision, prompt_hash=key_hash)

    def _probe(self, firm_id, operation_type, key_hash, embedding):
        entry = self._lookup_exact(firm_id, operation_type, key_hash)
        if entry is not None:
            return entry, MATCH_EXACT, 1.0

        threshold = self.config.similarity_threshold(operation_type)
        if threshold is None or embedding is None:
            return None
        try:
            match = self.matcher.lookup_similar(firm_id, operation_type, embedding, threshold)
        except sqlite3.Error:
            logger.warning("Similarity lookup failed for %s/%s; treating as miss", firm_id, operation_type, exc_info=True)
            return None
        if match is None:
            return None
        return match.entry, MATCH_SIMILAR, match.score

    def _lookup_exact(self, firm_id: str, operation_type: str, key_hash: str) -> Optional[CacheEntry]:
        try:
            return self.cache_store.lookup_exact(firm_id, operation_type, key_hash)
        except sqlite3.Error:
            logger.warning("Cache lookup failed for %s/%s; treating as miss", firm_id, operation_type, exc_info=True)
            return None

    def _serve_hit(self, hit, decision, key_hash, user_id, case_id) -> ResolveResult:
        entry, match, score = hit
        try:
            entry = self.cache_store.record_hit(entry)
        except sqlite3.Error:
            logger.warning("Could not count cache hit for %s/%s", entry.firm_id, entry.operation_type, exc_info=True)

        usage_record = None
        if self.config.cache.record_cache_hits:
            usage_record = self.ledger.record(UsageRecord(
                firm_id=entry.firm_id,
                operation_type=entry.operation_type,
                model_used=entry.model_used,
                input_tokens=0,
                output_tokens=0,
                total_tokens=0,
                cost_cents=0.0,
                latency_ms=0,
                cached=True,
                created_at=self.now(),
                user_id=user_id,
                case_id=case_id
            ))

        logger.debug("Cache %s hit for %s/%s (score %.4f)", match, entry.firm_id, entry.operation_type, score)
        return ResolveResult(
            outcome=Outcome.CACHE_HIT,
            decision=decision,
            prompt_hash=key_hash,
            entry=entry,
            match=match,
            score=score,
            usage_record=usage_record
        )

    def _price(self, usage: InvocationUsage, token_usage: TokenUsage) -> float:
        if usage.cost_cents is not None:
            if usage.cost_cents < 0:
                raise InvalidContext("cost_cents cannot be negative")
            return float(usage.cost_cents)
        if not PRICING_TABLE.supports(usage.model):
            raise InvalidContext(f"No price for model {usage.model}; report cost_cents explicitly")
        return calculate_cost_cents(usage.model, token_usage)

    def _write_cache_entry(
        self,
        firm_id: str,
        operation_type: str,
        key_hash: str,
        prompt: str,
        embedding: Optional[Sequence[float]],
        response: str,
        model: str
    ) -> None:
        try:
            vector: Optional[List[float]] = (
                [float(value) for value in embedding] if embedding is not None else None
            )
            entry = self.cache_store.build_entry(
                firm_id=firm_id,
                operation_type=operation_type,
                prompt_hash=key_hash,
                prompt_text=prompt,
                response=response,
                model_used=model,
                ttl_hours=self.config.cache_ttl_hours(operation_type),
                embedding=vector
            )
            self.cache_store.put(entry)
        except DuplicateKey:
            # Another request populated it first; the cache is in the desired state
            return
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise CacheWriteFailed(f"Cache write failed for {firm_id}/{operation_type}: {e}") from e


def _validate_context(
    firm_id: str,
    operation_type: str,
    prompt: str,
    embedding: Optional[Sequence[float]] = None
) -> None:
    if not firm_id or not str(firm_id).strip():
        raise InvalidContext("firm_id is required")
    if not operation_type or not str(operation_type).strip():
        raise InvalidContext("operation_type is required")
    if prompt is None or not str(prompt).strip():
        raise InvalidContext("prompt is required and cannot be empty")
    if embedding is not None:
        if isinstance(embedding, (str, bytes)):
            raise InvalidContext("embedding must be a sequence of numbers")
        try:
            values = list(embedding)
        except TypeError:
            raise InvalidContext("embedding must be a sequence of numbers")
        if not values or any(isinstance(v, bool) or not isinstance(v, numbers.Real) for v in values):
            raise InvalidContext("embedding must be a non-empty sequence of numbers")
        if not all(math.isfinite(v) for v in values):
            raise InvalidContext("embedding values must be finite")


def _token_usage(usage: InvocationUsage) -> TokenUsage:
    if usage.latency_ms is None or usage.latency_ms < 0:
        raise InvalidContext("latency_ms cannot be negative")
    try:
        return usage.token_usage
    except ValueError as e:
        raise InvalidContext(str(e)) from e
