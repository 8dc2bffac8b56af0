"""
Budget governor.

Compares each firm's month-to-date spend with its monthly budget and decides
whether new model invocations may proceed.

Evaluation Order:
1. Month rollover - clears last month's alert markers exactly once
2. Auto-pause at 100% - blocks new model calls until the month ends
3. 90% alert
4. 75% alert

Only the highest enabled threshold crossed is considered, so a single jump
from 60% to 101% emits the auto-pause alert alone. Each alert fires at most
once per firm per month; the marker is set with an atomic check-and-set
before the alert is handed to the notifier.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto
from typing import Callable, FrozenSet, Optional, Tuple

from ai_cost_control.config.loader import BudgetDefaults
from ai_cost_control.storage.db import DEFAULT_DB_PATH, to_utc, utcnow
from ai_cost_control.storage.models import BudgetSettings
from ai_cost_control.storage.repository import BudgetRepository

from .errors import BudgetEvaluationUnavailable
from .ledger import UsageLedger, month_window

logger = logging.getLogger(__name__)

THRESHOLD_75 = "75"
THRESHOLD_90 = "90"
THRESHOLD_100 = "100"


class Verdict(Enum):
    """Governor verdicts in order of severity."""
    ALLOW = auto()             # Model call may proceed
    ALLOW_WITH_ALERT = auto()  # May proceed; this request crossed an alert threshold
    BLOCK = auto()             # New model calls refused; cache hits still served


class BudgetState(Enum):
    """Where a firm stands against its monthly budget."""
    NORMAL = "normal"
    WARNED_75 = "warned_75"
    WARNED_90 = "warned_90"
    PAUSED = "paused"


@dataclass(frozen=True)
class AlertEvent:
    """Outbound alert for the notification dispatcher."""
    firm_id: str
    threshold: str
    month_year: str
    spend_cents: float
    budget_cents: int


@dataclass(frozen=True)
class BudgetDecision:
    """Outcome of one governor evaluation.

    ``evaluated`` is False when budget state could not be read and the
    governor failed open.
    """
    verdict: Verdict
    state: BudgetState
    spend_cents: float
    budget_cents: int
    threshold: Optional[str] = None
    alert: Optional[AlertEvent] = None
    evaluated: bool = True

    @property
    def blocks_model_calls(self) -> bool:
        return self.verdict == Verdict.BLOCK

    @property
    def percent_used(self) -> float:
        if self.budget_cents <= 0:
            return 0.0
        return self.spend_cents / self.budget_cents * 100


Notifier = Callable[[AlertEvent], None]


class BudgetGovernor:
    """Per-firm budget state machine over BudgetSettings and the usage ledger."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        ledger: Optional[UsageLedger] = None,
        defaults: Optional[BudgetDefaults] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.repository = BudgetRepository(db_path)
        self.ledger = ledger or UsageLedger(db_path)
        self.defaults = defaults or BudgetDefaults()
        self.notifier = notifier
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return to_utc(self._clock())

    def settings(self, firm_id: str) -> BudgetSettings:
        """Current settings for a firm, creating them from defaults on first use."""
        existing = self.repository.get(firm_id)
        if existing is not None:
            return existing
        return self.repository.create_if_missing(
            firm_id,
            monthly_budget_cents=self.defaults.monthly_budget_cents,
            alert_at_75=self.defaults.alert_at_75,
            alert_at_90=self.defaults.alert_at_90,
            auto_pause_at_100=self.defaults.auto_pause_at_100,
            now=self.now()
        )

    def update_settings(
        self,
        firm_id: str,
        monthly_budget_cents: Optional[int] = None,
        alert_at_75: Optional[bool] = None,
        alert_at_90: Optional[bool] = None,
        auto_pause_at_100: Optional[bool] = None
    ) -> BudgetSettings:
        """Change a firm's budget configuration; None leaves a value untouched.

        Raises:
            ValueError: If monthly_budget_cents is not positive
        """
        if monthly_budget_cents is not None and monthly_budget_cents <= 0:
            raise ValueError("monthly_budget_cents must be > 0")
        changes = {
            key: value for key, value in (
                ("monthly_budget_cents", monthly_budget_cents),
                ("alert_at_75", alert_at_75),
                ("alert_at_90", alert_at_90),
                ("auto_pause_at_100", auto_pause_at_100),
            ) if value is not None
        }
        self.settings(firm_id)
        self.repository.update(firm_id, changes, self.now())
        return self.repository.get(firm_id)

    def evaluate(self, firm_id: str, now: Optional[datetime] = None) -> BudgetDecision:
        """Evaluate the firm's budget for a new request.

        Fails open: if settings or spend cannot be read, the request is
        allowed and the decision is marked as not evaluated.
        """
        now = to_utc(now or self.now())
        try:
            settings, spend = self._load(firm_id, now)
        except BudgetEvaluationUnavailable as e:
            logger.error("Budget evaluation unavailable for firm %s; allowing request", firm_id, exc_info=e)
            return BudgetDecision(
                verdict=Verdict.ALLOW,
                state=BudgetState.NORMAL,
                spend_cents=0.0,
                budget_cents=0,
                evaluated=False
            )

        budget = settings.monthly_budget_cents
        ratio = spend / budget
        sent = settings.alerts_sent_this_month
        target = _highest_crossed(settings, ratio)

        fired = None
        alert = None
        if target is not None and target not in sent:
            if self._mark_sent(firm_id, target, now):
                fired = target
                alert = AlertEvent(
                    firm_id=firm_id,
                    threshold=target,
                    month_year=now.strftime("%Y-%m"),
                    spend_cents=spend,
                    budget_cents=budget
                )
                logger.info(
                    "Firm %s crossed %s%% of its AI budget (%.2f of %d cents)",
                    firm_id, target, spend, budget
                )
                self._dispatch(alert)
            sent = sent | {target}

        paused = settings.auto_pause_at_100 and ratio >= 1.0
        if paused:
            verdict = Verdict.BLOCK
        elif fired is not None:
            verdict = Verdict.ALLOW_WITH_ALERT
        else:
            verdict = Verdict.ALLOW

        return BudgetDecision(
            verdict=verdict,
            state=_state_for(paused, sent),
            spend_cents=spend,
            budget_cents=budget,
            threshold=fired,
            alert=alert
        )

    def state(self, firm_id: str, now: Optional[datetime] = None) -> BudgetState:
        """Inspect a firm's state without resetting or firing anything."""
        now = to_utc(now or self.now())
        settings = self.settings(firm_id)
        month_start, month_end = month_window(now)
        sent = settings.alerts_sent_this_month
        if settings.last_alert_reset_at < month_start:
            sent = frozenset()
        spend = self.ledger.sum_spend(firm_id, month_start, month_end)
        paused = settings.auto_pause_at_100 and spend / settings.monthly_budget_cents >= 1.0
        return _state_for(paused, sent)

    def _load(self, firm_id: str, now: datetime) -> Tuple[BudgetSettings, float]:
        month_start, month_end = month_window(now)
        try:
            settings = self.settings(firm_id)
            if settings.last_alert_reset_at < month_start:
                if self.repository.reset_month(firm_id, month_start, now):
                    logger.info("Reset budget alerts for firm %s for %s", firm_id, now.strftime("%Y-%m"))
                settings = self.repository.get(firm_id)
            spend = self.ledger.sum_spend(firm_id, month_start, month_end)
        except sqlite3.Error as e:
            raise BudgetEvaluationUnavailable(f"Cannot read budget state for firm {firm_id}") from e
        return settings, spend

    def _mark_sent(self, firm_id: str, threshold: str, now: datetime) -> bool:
        month_start, _ = month_window(now)
        try:
            return self.repository.mark_alert_sent(firm_id, threshold, month_start, now)
        except sqlite3.Error:
            logger.exception("Could not mark %s%% alert as sent for firm %s", threshold, firm_id)
            return False

    def _dispatch(self, alert: AlertEvent) -> None:
        # At-most-once: the sent marker stays set even if delivery fails
        if self.notifier is None:
            return
        try:
            self.notifier(alert)
        except Exception:
            logger.exception("Alert delivery failed for firm %s at %s%%", alert.firm_id, alert.threshold)


def _highest_crossed(settings: BudgetSettings, ratio: float) -> Optional[str]:
    if settings.auto_pause_at_100 and ratio >= 1.0:
        return THRESHOLD_100
    if settings.alert_at_90 and ratio >= 0.90:
        return THRESHOLD_90
    if settings.alert_at_75 and ratio >= 0.75:
        return THRESHOLD_75
    return None


def _state_for(paused: bool, sent: FrozenSet[str]) -> BudgetState:
    if paused:
        return BudgetState.PAUSED
    if THRESHOLD_100 in sent or THRESHOLD_90 in sent:
        return BudgetState.WARNED_90
    if THRESHOLD_75 in sent:
        return BudgetState.WARNED_75
    return BudgetState.NORMAL
