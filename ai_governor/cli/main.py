"""
CLI interface for AI Governor.

Inspects the usage ledger, quotas and response cache stored in a SQLite
database, and validates configuration files.
"""

import logging
import sys
from datetime import date
from decimal import Decimal
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_governor.config.loader import GovernorConfig, load_governor_config
from ai_governor.core.cache import ResponseCache
from ai_governor.core.errors import GovernorError
from ai_governor.core.ledger import CostLedger
from ai_governor.storage.db import DEFAULT_DB_PATH
from ai_governor.storage.repository import SQLiteUsageRepository, initialize_schema
from ai_governor.storage.store import SQLiteStore

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database")


def _ledger(db_path: str) -> CostLedger:
    return CostLedger(SQLiteUsageRepository(db_path))


def _format_currency(amount) -> str:
    """Format currency with up to six decimals, as costs are stored."""
    return f"${Decimal(amount):,.6f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
):
    """AI Governor CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        console.print("AI Governor - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the AI Governor database."""
    try:
        initialize_schema(db)
        SQLiteStore(db)
        console.print(f"[green]✓[/] Database initialized at {db}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(
    db: str = DB_OPTION,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Governor YAML config"),
):
    """Show today's spend against the daily budget."""
    try:
        settings = load_governor_config(config) if config else GovernorConfig()
        today = _ledger(db).get_daily_usage()
    except (GovernorError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    budget = Decimal(str(settings.daily_budget_usd))
    percent = (today.total_cost / budget * 100) if budget else Decimal("0")

    table = Table(title=f"AI usage for {today.date.isoformat()}")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Requests", str(today.request_count))
    table.add_row("Tokens", f"{today.total_tokens:,}")
    table.add_row("Spend", _format_currency(today.total_cost))
    table.add_row("Daily budget", _format_currency(budget))
    table.add_row("Budget used", f"{percent:.1f}%")
    table.add_row("Cache hits", str(today.cache_hits))
    table.add_row("Failed requests", str(today.failed_requests))
    console.print(table)


@app.command()
def usage(
    db: str = DB_OPTION,
    day: Optional[str] = typer.Option(None, "--date", "-d", help="UTC day, YYYY-MM-DD (default: today)"),
):
    """Show aggregated usage for one day."""
    try:
        target = date.fromisoformat(day) if day else None
    except ValueError:
        console.print(f"[red]Error:[/] Invalid date: {day}")
        sys.exit(EXIT_CODE_FAIL)

    summary = _ledger(db).get_daily_usage(target)
    console.print(f"\n[bold]Daily usage {summary.date.isoformat()}[/bold]")
    console.print("-" * 40)
    console.print(f"Requests: {summary.request_count}")
    console.print(f"Tokens: {summary.total_tokens:,}")
    console.print(f"Cost: {_format_currency(summary.total_cost)}")
    console.print(f"Cache hits: {summary.cache_hits}")
    console.print(f"Cache misses: {summary.cache_misses}")


@app.command("user-usage")
def user_usage(
    user_id: str = typer.Argument(..., help="User to report on"),
    days: int = typer.Option(7, "--days", help="Trailing window in days"),
    db: str = DB_OPTION,
):
    """Show one user's usage with a per-day breakdown."""
    if days <= 0:
        console.print("[red]Error:[/] --days must be positive")
        sys.exit(EXIT_CODE_FAIL)

    report = _ledger(db).get_user_usage(user_id, days)
    table = Table(title=f"Usage for {user_id} (last {days} days)")
    table.add_column("Date")
    table.add_column("Requests", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    for row in report.daily_breakdown:
        table.add_row(
            row.date.isoformat(),
            str(row.request_count),
            f"{row.total_tokens:,}",
            _format_currency(row.total_cost),
        )
    console.print(table)
    console.print(
        f"Total: {report.request_count} requests, {report.total_tokens:,} tokens, "
        f"{_format_currency(report.total_cost)}"
    )


@app.command()
def savings(
    days: int = typer.Option(7, "--days", help="Trailing window in days"),
    db: str = DB_OPTION,
):
    """Estimate what the response cache saved."""
    result = _ledger(db).get_cache_savings(days)
    console.print(f"\n[bold]Cache savings (last {days} days)[/bold]")
    console.print("-" * 40)
    console.print(f"Tokens saved: {result.tokens_saved:,}")
    console.print(f"Cost saved: {_format_currency(result.cost_saved)}")
    console.print(f"Hit rate: {result.cache_hit_rate:.1%}")


@app.command("check-config")
def check_config(path: str = typer.Argument(..., help="Governor YAML config")):
    """Validate a configuration file and print the effective settings."""
    try:
        settings = load_governor_config(path)
    except (GovernorError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Effective configuration")
    table.add_column("Key")
    table.add_column("Value")
    for key, value in vars(settings).items():
        table.add_row(key, str(value))
    table.add_row("effective_user_daily_token_limit", str(settings.effective_user_daily_token_limit))
    console.print(table)
    console.print("[green]✓[/] Configuration is valid")


@app.command("sweep-cache")
def sweep_cache(
    older_than: Optional[int] = typer.Option(
        None, "--older-than", help="Also remove entries older than N seconds (0 clears all)"
    ),
    db: str = DB_OPTION,
):
    """Remove expired response cache entries."""
    if older_than is not None and older_than < 0:
        console.print("[red]Error:[/] --older-than cannot be negative")
        sys.exit(EXIT_CODE_FAIL)

    cache = ResponseCache(SQLiteStore(db))
    removed = cache.clear_expired(older_than_seconds=older_than)
    console.print(f"[green]✓[/] Removed {removed} cache entries")


if __name__ == "__main__":
    app()
