"""
CLI interface for AI Cost Control.

Operator commands for the schema, per-firm budgets, usage reports and
cache maintenance.
"""

import logging
import sqlite3
import sys
from datetime import timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_cost_control.config.loader import ControlPlaneConfig, load_control_plane_config
from ai_cost_control.core.cache_store import CacheStore
from ai_cost_control.core.governor import BudgetGovernor
from ai_cost_control.core.ledger import UsageLedger, month_window
from ai_cost_control.storage.db import DEFAULT_DB_PATH, utcnow
from ai_cost_control.storage.repository import initialize_schema

app = typer.Typer()
budget_app = typer.Typer(help="Show or change a firm's monthly AI budget.")
app.add_typer(budget_app, name="budget")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


class _State:
    db_path: str = DEFAULT_DB_PATH
    config: ControlPlaneConfig = ControlPlaneConfig.default()


state = _State()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """AI Cost Control CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    state.db_path = db
    if config:
        try:
            state.config = load_control_plane_config(config)
        except (FileNotFoundError, ValueError) as e:
            console.print(f"[red]Invalid configuration:[/] {e}")
            sys.exit(EXIT_CODE_FAIL)
    else:
        state.config = ControlPlaneConfig.default()
    if ctx.invoked_subcommand is None:
        console.print("AI Cost Control - Use --help to see available commands")


@app.command()
def init():
    """Initialize the AI Cost Control database."""
    try:
        initialize_schema(state.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status():
    """Show database and configuration status."""
    console.print(f"Database: {state.db_path}")
    budget = state.config.budget
    console.print(
        f"Default budget: {_format_cents(budget.monthly_budget_cents)} "
        f"(75%: {_on_off(budget.alert_at_75)}, 90%: {_on_off(budget.alert_at_90)}, "
        f"auto-pause: {_on_off(budget.auto_pause_at_100)})"
    )
    if not state.config.operations:
        console.print("[dim]No operation types configured; similarity matching is off.[/]")
    for name, operation in sorted(state.config.operations.items()):
        threshold = operation.similarity_threshold
        console.print(
            f"  {name}: similarity {threshold if threshold is not None else 'off'}, "
            f"ttl {state.config.cache_ttl_hours(name):g}h"
        )


@budget_app.command("show")
def budget_show(firm_id: str = typer.Argument(..., help="Firm identifier")):
    """Show a firm's budget settings and month-to-date spend."""
    try:
        governor = _governor()
        settings = governor.settings(firm_id)
        start, end = month_window(utcnow())
        spend = governor.ledger.sum_spend(firm_id, start, end)
        current = governor.state(firm_id)
    except sqlite3.Error as e:
        _fail(e)

    percent = spend / settings.monthly_budget_cents * 100
    table = Table(title=f"AI budget for {firm_id}")
    table.add_column("Setting")
    table.add_column("Value", justify="right")
    table.add_row("Monthly budget", _format_cents(settings.monthly_budget_cents))
    table.add_row("Spent this month", _format_cents(spend))
    table.add_row("Used", f"{percent:,.1f}%")
    table.add_row("State", current.value)
    table.add_row("Alert at 75%", _on_off(settings.alert_at_75))
    table.add_row("Alert at 90%", _on_off(settings.alert_at_90))
    table.add_row("Auto-pause at 100%", _on_off(settings.auto_pause_at_100))
    table.add_row("Alerts sent", ", ".join(sorted(settings.alerts_sent_this_month, key=int)) or "-")
    console.print(table)


@budget_app.command("set")
def budget_set(
    firm_id: str = typer.Argument(..., help="Firm identifier"),
    monthly_cents: Optional[int] = typer.Option(None, "--monthly-cents", "-m", help="Monthly budget in cents"),
    alert_75: Optional[bool] = typer.Option(None, "--alert-75/--no-alert-75", help="Alert at 75% of budget"),
    alert_90: Optional[bool] = typer.Option(None, "--alert-90/--no-alert-90", help="Alert at 90% of budget"),
    auto_pause: Optional[bool] = typer.Option(None, "--auto-pause/--no-auto-pause", help="Block new model calls at 100%")
):
    """Change a firm's budget settings."""
    try:
        settings = _governor().update_settings(
            firm_id,
            monthly_budget_cents=monthly_cents,
            alert_at_75=alert_75,
            alert_at_90=alert_90,
            auto_pause_at_100=auto_pause
        )
    except (sqlite3.Error, ValueError) as e:
        _fail(e)
    console.print(
        f"[green]✓[/] Budget for {firm_id}: {_format_cents(settings.monthly_budget_cents)}, "
        f"auto-pause {_on_off(settings.auto_pause_at_100)}"
    )


@app.command()
def usage(
    firm_id: str = typer.Argument(..., help="Firm identifier"),
    days: Optional[int] = typer.Option(
        None, "--days", "-d", help="Look back this many days instead of the current month"
    )
):
    """Report a firm's AI usage, cost by operation type and daily trend."""
    now = utcnow()
    if days is not None:
        start, end = now - timedelta(days=days), now + timedelta(microseconds=1)
    else:
        start, end = month_window(now)

    try:
        ledger = UsageLedger(state.db_path)
        overview = ledger.overview(firm_id, start, end, now=now)
        breakdown = ledger.costs_by_operation(firm_id, start, end)
        daily = ledger.daily_costs(firm_id, start, end)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]No AI usage data found[/]")
            console.print("Run `ai-cost-control init` to initialize the database\n")
            sys.exit(EXIT_CODE_PASS)
        _fail(e)

    console.print(f"\n[bold]AI Usage for {firm_id}[/bold]")
    console.print("-" * 40)
    console.print(f"Total cost: {_format_cents(overview.total_cost_cents)}")
    console.print(f"Calls: {overview.total_calls:,} ({overview.cached_calls:,} from cache, "
                  f"{overview.cache_hit_rate:.1f}% hit rate)")
    console.print(f"Tokens: {overview.total_tokens:,}")
    console.print(f"Average latency: {overview.average_latency_ms:,.0f} ms")
    console.print(f"Projected month end: {_format_cents(overview.projected_month_end_cents)}")

    if not breakdown:
        console.print("\n[dim]No usage recorded in this period.[/]")
        return

    table = Table(title="Cost by operation type")
    table.add_column("Operation")
    table.add_column("Cost", justify="right")
    table.add_column("Calls", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Share", justify="right")
    for row in breakdown:
        table.add_row(
            row.key,
            _format_cents(row.cost_cents),
            f"{row.calls:,}",
            f"{row.tokens:,}",
            f"{row.percent_of_total:.1f}%"
        )
    console.print(table)

    trend = Table(title="Daily cost")
    trend.add_column("Day")
    trend.add_column("Cost", justify="right")
    trend.add_column("Calls", justify="right")
    trend.add_column("Cached", justify="right")
    trend.add_column("Tokens", justify="right")
    for day in daily:
        trend.add_row(
            day.day.isoformat(),
            _format_cents(day.cost_cents),
            f"{day.calls:,}",
            f"{day.cached_calls:,}",
            f"{day.tokens:,}"
        )
    console.print(trend)


@app.command()
def sweep():
    """Delete expired cache entries."""
    try:
        removed = CacheStore(state.db_path).sweep_expired()
    except sqlite3.Error as e:
        _fail(e)
    console.print(f"[green]✓[/] Removed {removed} expired cache entries")


def _governor() -> BudgetGovernor:
    return BudgetGovernor(state.db_path, defaults=state.config.budget)


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/] {str(error)}")
    sys.exit(EXIT_CODE_FAIL)


def _format_cents(cents: float) -> str:
    """Format a cent amount as dollars."""
    return f"${cents / 100:,.2f}"


def _on_off(flag: bool) -> str:
    return "on" if flag else "off"


if __name__ == "__main__":
    app()
