"""
Per-firm usage ledger.

Every model invocation and every cache hit is appended once and never
modified. Aggregations feed the budget governor and usage reports.
"""

import calendar
import logging
import math
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple

from ai_cost_control.storage.db import DEFAULT_DB_PATH, to_utc, utcnow
from ai_cost_control.storage.models import UsageRecord
from ai_cost_control.storage.repository import UsageRepository

from .errors import LedgerWriteFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageOverview:
    """Usage statistics for one firm over a window."""
    total_cost_cents: float
    total_tokens: int
    total_calls: int
    cached_calls: int
    cache_hit_rate: float  # percent of calls served from cache
    average_latency_ms: float  # over uncached calls only
    average_daily_cost_cents: float
    projected_month_end_cents: float


@dataclass(frozen=True)
class CostBreakdown:
    """Cost attributed to one operation type, user or model."""
    key: str
    cost_cents: float
    tokens: int
    calls: int
    percent_of_total: float


@dataclass(frozen=True)
class DailyCost:
    """One UTC day of a firm's usage trend."""
    day: date
    cost_cents: float
    tokens: int
    calls: int
    cached_calls: int


def month_window(now: datetime) -> Tuple[datetime, datetime]:
    """Start of the calendar month containing ``now`` and start of the next (UTC)."""
    now = to_utc(now)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


class UsageLedger:
    """Append-only usage ledger backed by ``ai_usage_record``."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.repository = UsageRepository(db_path)

    def record(self, usage: UsageRecord) -> UsageRecord:
        """Append a usage record atomically.

        Returns:
            The record as stored, with its id assigned

        Raises:
            LedgerWriteFailed: If the record could not be committed
        """
        try:
            record_id = self.repository.insert(usage)
        except sqlite3.Error as e:
            logger.error("Ledger write failed for firm %s: %s", usage.firm_id, e)
            raise LedgerWriteFailed(
                f"Failed to record usage for firm {usage.firm_id} ({usage.operation_type})"
            ) from e
        return UsageRecord(
            id=record_id,
            firm_id=usage.firm_id,
            operation_type=usage.operation_type,
            model_used=usage.model_used,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            cost_cents=usage.cost_cents,
            latency_ms=usage.latency_ms,
            cached=usage.cached,
            created_at=usage.created_at,
            user_id=usage.user_id,
            case_id=usage.case_id
        )

    def sum_spend(self, firm_id: str, start: datetime, end: datetime) -> float:
        """Total cost in cents for ``start <= created_at < end``."""
        return self.repository.sum_cost(firm_id, start, end)

    def month_to_date_spend(self, firm_id: str, now: Optional[datetime] = None) -> float:
        start, end = month_window(now or utcnow())
        return self.sum_spend(firm_id, start, end)

    def overview(
        self,
        firm_id: str,
        start: datetime,
        end: datetime,
        now: Optional[datetime] = None
    ) -> UsageOverview:
        """Summarize usage over a window, projecting spend to month end.

        The projection adds the window's average daily cost for each day
        left in the current month.
        """
        now = to_utc(now or utcnow())
        totals = self.repository.totals(firm_id, start, end)

        total_calls = totals["total_calls"]
        cached_calls = totals["cached_calls"]
        uncached_calls = total_calls - cached_calls
        total_cost = totals["total_cost_cents"]

        elapsed_days = max(1, math.ceil((min(to_utc(end), now) - to_utc(start)) / timedelta(days=1)))
        average_daily = total_cost / elapsed_days

        last_day = calendar.monthrange(now.year, now.month)[1]
        days_remaining = max(0, last_day - now.day)

        return UsageOverview(
            total_cost_cents=total_cost,
            total_tokens=totals["total_tokens"],
            total_calls=total_calls,
            cached_calls=cached_calls,
            cache_hit_rate=(cached_calls / total_calls * 100) if total_calls else 0.0,
            average_latency_ms=(totals["uncached_latency_ms"] / uncached_calls) if uncached_calls else 0.0,
            average_daily_cost_cents=average_daily,
            projected_month_end_cents=total_cost + average_daily * days_remaining
        )

    def costs_by_operation(self, firm_id: str, start: datetime, end: datetime) -> List[CostBreakdown]:
        return self._breakdown(firm_id, start, end, "operation_type")

    def costs_by_user(self, firm_id: str, start: datetime, end: datetime) -> List[CostBreakdown]:
        """Per-user costs; records without a user are reported as ``batch``."""
        return self._breakdown(firm_id, start, end, "user_id")

    def costs_by_model(self, firm_id: str, start: datetime, end: datetime) -> List[CostBreakdown]:
        return self._breakdown(firm_id, start, end, "model_used")

    def daily_costs(self, firm_id: str, start: datetime, end: datetime) -> List[DailyCost]:
        """Per-day trend over a window; days without usage are omitted."""
        return [
            DailyCost(
                day=date.fromisoformat(row["day"]),
                cost_cents=row["cost_cents"],
                tokens=row["tokens"],
                calls=row["calls"],
                cached_calls=row["cached_calls"]
            )
            for row in self.repository.daily_costs(firm_id, start, end)
        ]

    def recent(self, firm_id: str, limit: int = 100) -> List[UsageRecord]:
        return self.repository.fetch_recent(firm_id, limit)

    def _breakdown(self, firm_id: str, start: datetime, end: datetime, column: str) -> List[CostBreakdown]:
        rows = self.repository.grouped_costs(firm_id, start, end, column)
        total = sum(row["cost_cents"] for row in rows)
        return [
            CostBreakdown(
                key=row["key"] if row["key"] is not None else "batch",
                cost_cents=row["cost_cents"],
                tokens=row["tokens"],
                calls=row["calls"],
                percent_of_total=(row["cost_cents"] / total * 100) if total > 0 else 0.0
            )
            for row in rows
        ]
