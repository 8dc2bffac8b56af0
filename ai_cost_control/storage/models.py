"""
Data models for storage layer.

Defines the three durable record types of the control plane.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, List, Optional


@dataclass(frozen=True)
class CacheEntry:
    """Cached model response scoped to one firm and operation type.

    ``prompt_hash`` is derived from the normalized prompt together with the
    firm and operation type, so identical text from two firms never shares
    an entry.
    """
    prompt_hash: str
    prompt_text: str
    response: str
    model_used: str
    operation_type: str
    firm_id: str
    created_at: datetime
    expires_at: datetime
    embedding: Optional[List[float]] = None
    hit_count: int = 0

    def is_expired(self, now: datetime) -> bool:
        """An entry is logically dead once ``now`` is past ``expires_at``."""
        return now > self.expires_at


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one model invocation or cache hit.

    Append-only events that create an auditable ledger of AI costs.
    Once written, these records must never be modified.
    """
    firm_id: str
    operation_type: str
    model_used: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost_cents: float
    latency_ms: int
    cached: bool
    created_at: datetime
    user_id: Optional[str] = None
    case_id: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class BudgetSettings:
    """Per-firm monthly budget and the alert tags already fired this month."""
    firm_id: str
    monthly_budget_cents: int
    alert_at_75: bool
    alert_at_90: bool
    auto_pause_at_100: bool
    last_alert_reset_at: datetime
    updated_at: datetime
    alerts_sent_this_month: FrozenSet[str] = field(default_factory=frozenset)
