"""
Tests for the budget governor state machine.
"""

import os
import sqlite3
import tempfile
import threading
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest

from ai_cost_control.config.loader import BudgetDefaults
from ai_cost_control.core.governor import (
    BudgetGovernor,
    BudgetState,
    Verdict,
    THRESHOLD_75,
    THRESHOLD_90,
    THRESHOLD_100
)
from ai_cost_control.core.ledger import UsageLedger
from ai_cost_control.storage.models import UsageRecord
from ai_cost_control.storage.repository import initialize_schema

OCT_10 = datetime(2026, 10, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now):
        self.current = now

    def __call__(self):
        return self.current


class TestBudgetGovernor:
    """Test thresholds, alert de-duplication, pausing and rollover."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.clock = FakeClock(OCT_10)
        self.ledger = UsageLedger(self.db_path)
        self.notifier = Mock()
        self.governor = BudgetGovernor(
            self.db_path,
            ledger=self.ledger,
            defaults=BudgetDefaults(),
            notifier=self.notifier,
            clock=self.clock
        )

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def spend(self, cents, firm_id="firm-a", at=None):
        """Append an uncached ledger row costing ``cents``."""
        self.ledger.record(UsageRecord(
            firm_id=firm_id,
            operation_type="summarization",
            model_used="gpt-4o",
            input_tokens=1000,
            output_tokens=200,
            total_tokens=1200,
            cost_cents=cents,
            latency_ms=900,
            cached=False,
            created_at=at or self.clock.current
        ))

    def test_defaults_applied_on_first_use(self):
        settings = self.governor.settings("firm-a")

        assert settings.monthly_budget_cents == 10000
        assert settings.alert_at_75 is True
        assert settings.alert_at_90 is True
        assert settings.auto_pause_at_100 is False

    def test_under_budget_allows(self):
        self.spend(5000)

        decision = self.governor.evaluate("firm-a")

        assert decision.verdict == Verdict.ALLOW
        assert decision.state == BudgetState.NORMAL
        assert decision.spend_cents == 5000
        assert decision.percent_used == 50.0
        self.notifier.assert_not_called()

    def test_budget_scenario(self):
        """75% alerts once, stays quiet at 76.5%, then pauses past 100%."""
        self.governor.update_settings("firm-a", auto_pause_at_100=True)

        self.spend(7600)
        decision = self.governor.evaluate("firm-a")
        assert decision.verdict == Verdict.ALLOW_WITH_ALERT
        assert decision.threshold == THRESHOLD_75
        assert decision.state == BudgetState.WARNED_75

        self.spend(50)
        decision = self.governor.evaluate("firm-a")
        assert decision.verdict == Verdict.ALLOW
        assert decision.threshold is None

        self.spend(2400)
        decision = self.governor.evaluate("firm-a")
        assert decision.verdict == Verdict.BLOCK
        assert decision.threshold == THRESHOLD_100
        assert decision.state == BudgetState.PAUSED
        assert decision.blocks_model_calls

        decision = self.governor.evaluate("firm-a")
        assert decision.verdict == Verdict.BLOCK
        assert decision.threshold is None

        fired = [call.args[0].threshold for call in self.notifier.call_args_list]
        assert fired == [THRESHOLD_75, THRESHOLD_100]

    def test_alert_event_contents(self):
        self.spend(9100)

        self.governor.evaluate("firm-a")

        alert = self.notifier.call_args.args[0]
        assert alert.firm_id == "firm-a"
        assert alert.threshold == THRESHOLD_90
        assert alert.month_year == "2026-10"
        assert alert.spend_cents == 9100
        assert alert.budget_cents == 10000

    def test_jump_past_all_thresholds_fires_only_auto_pause(self):
        """60% to 101% in one step emits the auto-pause alert alone."""
        self.governor.update_settings("firm-a", auto_pause_at_100=True)
        self.spend(6000)
        assert self.governor.evaluate("firm-a").verdict == Verdict.ALLOW

        self.spend(4100)
        decision = self.governor.evaluate("firm-a")

        assert decision.verdict == Verdict.BLOCK
        assert decision.threshold == THRESHOLD_100
        assert self.notifier.call_count == 1
        assert self.governor.settings("firm-a").alerts_sent_this_month == frozenset({THRESHOLD_100})

    def test_skipped_lower_threshold_never_fires_later(self):
        self.spend(9100)
        assert self.governor.evaluate("firm-a").threshold == THRESHOLD_90

        self.spend(100)
        decision = self.governor.evaluate("firm-a")

        assert decision.verdict == Verdict.ALLOW
        assert self.notifier.call_count == 1

    def test_over_budget_without_auto_pause_is_not_blocked(self):
        self.spend(12000)

        decision = self.governor.evaluate("firm-a")

        assert decision.verdict == Verdict.ALLOW_WITH_ALERT
        assert decision.threshold == THRESHOLD_90
        assert decision.state == BudgetState.WARNED_90

    def test_disabled_alerts_do_not_fire(self):
        self.governor.update_settings("firm-a", alert_at_75=False, alert_at_90=False)
        self.spend(9500)

        decision = self.governor.evaluate("firm-a")

        assert decision.verdict == Verdict.ALLOW
        assert decision.state == BudgetState.NORMAL
        self.notifier.assert_not_called()

    def test_ninety_percent_alert_at_most_once_under_concurrency(self):
        self.spend(9200)
        evaluators = 10
        barrier = threading.Barrier(evaluators)
        decisions = []

        def evaluate():
            barrier.wait()
            decisions.append(self.governor.evaluate("firm-a"))

        threads = [threading.Thread(target=evaluate) for _ in range(evaluators)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        alerted = [d for d in decisions if d.verdict == Verdict.ALLOW_WITH_ALERT]
        assert len(alerted) == 1
        assert alerted[0].threshold == THRESHOLD_90
        assert self.notifier.call_count == 1

    def test_ninety_percent_alert_once_while_spend_oscillates_across_it(self):
        """Repeated evaluations around 90% never re-fire in the same month."""
        self.spend(9000)
        self.governor.evaluate("firm-a")
        for _ in range(5):
            self.spend(10)
            self.governor.evaluate("firm-a")

        assert self.notifier.call_count == 1

    def test_month_rollover_resets_alerts(self):
        self.spend(8000)
        assert self.governor.evaluate("firm-a").threshold == THRESHOLD_75

        self.clock.current = datetime(2026, 11, 2, 8, 0, tzinfo=timezone.utc)
        decision = self.governor.evaluate("firm-a")

        assert decision.verdict == Verdict.ALLOW
        assert decision.spend_cents == 0
        assert decision.state == BudgetState.NORMAL
        settings = self.governor.settings("firm-a")
        assert settings.alerts_sent_this_month == frozenset()
        assert settings.last_alert_reset_at == self.clock.current

        self.spend(8000)
        assert self.governor.evaluate("firm-a").threshold == THRESHOLD_75

    def test_rollover_from_previous_month_reset_marker(self):
        """Settings last reset in September are cleared by October's first request."""
        september = datetime(2026, 9, 15, tzinfo=timezone.utc)
        self.governor.repository.create_if_missing("firm-a", 10000, True, True, False, september)
        self.governor.repository.mark_alert_sent(
            "firm-a", THRESHOLD_90, datetime(2026, 9, 1, tzinfo=timezone.utc), september
        )
        self.spend(9500)

        decision = self.governor.evaluate("firm-a")

        assert decision.threshold == THRESHOLD_90
        assert self.governor.settings("firm-a").alerts_sent_this_month == frozenset({THRESHOLD_90})

    def test_paused_state_lifts_when_budget_raised(self):
        self.governor.update_settings("firm-a", auto_pause_at_100=True)
        self.spend(10000)
        assert self.governor.evaluate("firm-a").verdict == Verdict.BLOCK

        self.governor.update_settings("firm-a", monthly_budget_cents=20000)

        assert self.governor.evaluate("firm-a").verdict != Verdict.BLOCK

    def test_fails_open_when_spend_unavailable(self):
        with patch.object(self.ledger, "sum_spend", side_effect=sqlite3.OperationalError("database is locked")):
            decision = self.governor.evaluate("firm-a")

        assert decision.verdict == Verdict.ALLOW
        assert decision.evaluated is False

    def test_notifier_failure_keeps_marker(self):
        """Alerting is at-most-once: a failed delivery is not retried."""
        self.notifier.side_effect = RuntimeError("webhook down")
        self.spend(7600)

        first = self.governor.evaluate("firm-a")
        second = self.governor.evaluate("firm-a")

        assert first.verdict == Verdict.ALLOW_WITH_ALERT
        assert second.verdict == Verdict.ALLOW
        assert self.notifier.call_count == 1

    def test_firms_are_independent(self):
        self.spend(9500, firm_id="firm-a")

        assert self.governor.evaluate("firm-b").verdict == Verdict.ALLOW
        assert self.governor.evaluate("firm-a").threshold == THRESHOLD_90

    def test_state_is_read_only(self):
        self.spend(8000)

        assert self.governor.state("firm-a") == BudgetState.NORMAL
        self.notifier.assert_not_called()

        self.governor.evaluate("firm-a")
        assert self.governor.state("firm-a") == BudgetState.WARNED_75

    def test_update_settings_rejects_non_positive_budget(self):
        with pytest.raises(ValueError, match="monthly_budget_cents must be > 0"):
            self.governor.update_settings("firm-a", monthly_budget_cents=0)
