"""
Tests for the CLI interface.
"""
import os
import tempfile

import pytest
from typer.testing import CliRunner

from ai_cost_control.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from ai_cost_control.core.ledger import UsageLedger
from ai_cost_control.storage.db import utcnow
from ai_cost_control.storage.models import UsageRecord

runner = CliRunner()


@pytest.fixture
def db_path():
    """Path to a fresh database file in a temporary directory."""
    temp_dir = tempfile.mkdtemp()
    yield os.path.join(temp_dir, "cli.db")
    import shutil
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def initialized_db(db_path):
    result = runner.invoke(app, ["--db", db_path, "init"])
    assert result.exit_code == EXIT_CODE_PASS
    return db_path


def _record(db_path, operation_type, cost_cents, cached=False):
    UsageLedger(db_path).record(UsageRecord(
        firm_id="firm-a",
        operation_type=operation_type,
        model_used="gpt-4o",
        input_tokens=0 if cached else 1000,
        output_tokens=0 if cached else 200,
        total_tokens=0 if cached else 1200,
        cost_cents=cost_cents,
        latency_ms=0 if cached else 800,
        cached=cached,
        created_at=utcnow()
    ))


class TestCLI:
    """Test CLI commands."""

    def test_init_command(self, db_path):
        result = runner.invoke(app, ["--db", db_path, "init"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert os.path.exists(db_path)

    def test_no_command_prints_hint(self, db_path):
        result = runner.invoke(app, ["--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_budget_set_and_show(self, initialized_db):
        result = runner.invoke(app, [
            "--db", initialized_db, "budget", "set", "firm-a", "--monthly-cents", "50000", "--auto-pause"
        ])
        assert result.exit_code == EXIT_CODE_PASS
        assert "$500.00" in result.output
        assert "auto-pause on" in result.output

        _record(initialized_db, "summarization", 40000)
        result = runner.invoke(app, ["--db", initialized_db, "budget", "show", "firm-a"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "$500.00" in result.output
        assert "$400.00" in result.output
        assert "80.0%" in result.output

    def test_budget_show_uses_config_defaults(self, initialized_db):
        config_path = os.path.join(os.path.dirname(initialized_db), "config.yaml")
        with open(config_path, "w") as f:
            f.write("budget:\n  monthly_budget_cents: 25000\n")

        result = runner.invoke(app, ["--db", initialized_db, "-c", config_path, "budget", "show", "firm-new"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "$250.00" in result.output

    def test_budget_set_rejects_zero_budget(self, initialized_db):
        result = runner.invoke(app, ["--db", initialized_db, "budget", "set", "firm-a", "-m", "0"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "monthly_budget_cents must be > 0" in result.output

    def test_usage_report(self, initialized_db):
        _record(initialized_db, "summarization", 300.0)
        _record(initialized_db, "drafting", 100.0)
        _record(initialized_db, "summarization", 0.0, cached=True)

        result = runner.invoke(app, ["--db", initialized_db, "usage", "firm-a"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "AI Usage for firm-a" in result.output
        assert "Total cost: $4.00" in result.output
        assert "summarization" in result.output
        assert "drafting" in result.output
        assert "75.0%" in result.output

    def test_usage_report_shows_daily_trend(self, initialized_db):
        _record(initialized_db, "summarization", 250.0)
        _record(initialized_db, "summarization", 0.0, cached=True)

        result = runner.invoke(app, ["--db", initialized_db, "usage", "firm-a"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Daily cost" in result.output
        assert utcnow().date().isoformat() in result.output
        assert "$2.50" in result.output

    def test_usage_with_days_and_no_data(self, initialized_db):
        result = runner.invoke(app, ["--db", initialized_db, "usage", "firm-a", "--days", "7"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage recorded in this period" in result.output

    def test_usage_before_init(self, db_path):
        result = runner.invoke(app, ["--db", db_path, "usage", "firm-a"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No AI usage data found" in result.output

    def test_sweep(self, initialized_db):
        result = runner.invoke(app, ["--db", initialized_db, "sweep"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Removed 0 expired cache entries" in result.output

    def test_status_lists_operations(self, db_path):
        config_path = os.path.join(os.path.dirname(db_path), "config.yaml")
        with open(config_path, "w") as f:
            f.write(
                "operations:\n"
                "  summarization:\n"
                "    similarity_threshold: 0.95\n"
                "    cache_ttl_hours: 48\n"
            )

        result = runner.invoke(app, ["--db", db_path, "--config", config_path, "status"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "summarization: similarity 0.95, ttl 48h" in result.output

    def test_invalid_config_fails(self, db_path):
        config_path = os.path.join(os.path.dirname(db_path), "config.yaml")
        with open(config_path, "w") as f:
            f.write("unknown_section: true\n")

        result = runner.invoke(app, ["--db", db_path, "--config", config_path, "status"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid configuration" in result.output
