"""
CLI interface for AI Credit Ledger.

Operator access to accounts and the credit ledger.
"""

import sqlite3
import sys
from datetime import datetime, timezone
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_credit_ledger.config.loader import load_config_or_default
from ai_credit_ledger.core.errors import CreditLedgerError
from ai_credit_ledger.core.ledger import LedgerEngine
from ai_credit_ledger.storage.db import DEFAULT_DB_PATH
from ai_credit_ledger.storage.models import AccountTier
from ai_credit_ledger.storage.repository import LedgerRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the ledger database")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to ledger YAML configuration")

# Failures reported as a red message and exit code 1
HANDLED_ERRORS = (CreditLedgerError, ValueError, sqlite3.Error)


def _engine(db: str, config: Optional[str] = None) -> LedgerEngine:
    return LedgerEngine(LedgerRepository(db), load_config_or_default(config))


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/] {str(error)}")
    sys.exit(EXIT_CODE_FAIL)


def _format_usd(amount: Optional[float]) -> str:
    if amount is None:
        return "-"
    if amount == float("inf"):
        return "unlimited"
    return f"${amount:,.2f}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """AI Credit Ledger CLI."""
    if ctx.invoked_subcommand is None:
        console.print("AI Credit Ledger - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the ledger database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("create-account")
def create_account(
    account_id: str = typer.Argument(..., help="Account identifier"),
    db: str = DB_OPTION,
):
    """Create an account (no-op if it already exists)."""
    try:
        account = _engine(db).ensure_account(account_id)
        console.print(f"[green]✓[/] Account {account.account_id} (balance {account.balance})")
        sys.exit(EXIT_CODE_OK)
    except HANDLED_ERRORS as e:
        _fail(e)


@app.command()
def grant(
    account_id: str = typer.Argument(..., help="Account identifier"),
    amount: int = typer.Argument(..., help="Credits to add"),
    reason: str = typer.Option("manual_grant", "--reason", "-r", help="Reason recorded on the ledger"),
    db: str = DB_OPTION,
):
    """Add credits to an account."""
    try:
        result = _engine(db).grant(account_id, amount, reason)
        console.print(f"[green]✓[/] Granted {amount} credits, new balance {result.new_balance}")
        sys.exit(EXIT_CODE_OK)
    except HANDLED_ERRORS as e:
        _fail(e)


@app.command()
def balance(
    account_id: str = typer.Argument(..., help="Account identifier"),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
):
    """Show an account's balance and today's spend."""
    try:
        engine = _engine(db, config)
        account = engine.get_account(account_id)
        if account is None:
            _fail(ValueError(f"Account not found: {account_id}"))

        table = Table(title=f"Account {account.account_id}")
        table.add_column("Field")
        table.add_column("Value", justify="right")
        table.add_row("Balance (credits)", str(account.balance))
        table.add_row("Tier", account.tier.value)
        table.add_row("Spent today", _format_usd(account.daily_spend))
        table.add_row("Daily limit", _format_usd(engine.daily_limit(account)))
        console.print(table)
        sys.exit(EXIT_CODE_OK)
    except HANDLED_ERRORS as e:
        _fail(e)


@app.command()
def history(
    account_id: str = typer.Argument(..., help="Account identifier"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries to show"),
    db: str = DB_OPTION,
):
    """Show the most recent ledger entries of an account."""
    try:
        entries = _engine(db).credit_history(account_id, limit=limit)
        if not entries:
            console.print("\n[dim]No ledger entries found.[/]")
            sys.exit(EXIT_CODE_OK)

        table = Table(title=f"Credit history for {account_id}")
        table.add_column("Time")
        table.add_column("Kind")
        table.add_column("Delta", justify="right")
        table.add_column("Generation")
        table.add_column("Model")
        table.add_column("Cost", justify="right")
        table.add_column("Reason")
        for entry in entries:
            delta_style = "green" if entry.delta > 0 else "red" if entry.delta < 0 else "dim"
            table.add_row(
                entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                entry.kind.value,
                f"[{delta_style}]{entry.delta:+d}[/]",
                entry.generation_id or "-",
                entry.model_id or "-",
                _format_usd(entry.cost_usd),
                entry.reason or "-",
            )
        console.print(table)
        sys.exit(EXIT_CODE_OK)
    except HANDLED_ERRORS as e:
        _fail(e)


@app.command()
def release(
    account_id: str = typer.Argument(..., help="Account identifier"),
    generation_id: str = typer.Argument(..., help="Generation whose reservation to release"),
    db: str = DB_OPTION,
):
    """Release an outstanding reservation (e.g. after a crash)."""
    try:
        result = _engine(db).release(account_id, generation_id)
        if result.already_released:
            console.print(f"[yellow]Nothing to release for {generation_id}[/]")
        else:
            console.print(
                f"[green]✓[/] Released {result.released} credits, new balance {result.new_balance}"
            )
        sys.exit(EXIT_CODE_OK)
    except HANDLED_ERRORS as e:
        _fail(e)


@app.command("set-tier")
def set_tier(
    account_id: str = typer.Argument(..., help="Account identifier"),
    tier: AccountTier = typer.Argument(..., help="New tier"),
    db: str = DB_OPTION,
):
    """Change an account's tier."""
    try:
        account = _engine(db).set_tier(account_id, tier)
        console.print(f"[green]✓[/] Account {account.account_id} is now {account.tier.value}")
        sys.exit(EXIT_CODE_OK)
    except HANDLED_ERRORS as e:
        _fail(e)


@app.command("set-daily-limit")
def set_daily_limit(
    account_id: str = typer.Argument(..., help="Account identifier"),
    limit: Optional[float] = typer.Argument(None, help="Limit in USD; omit to restore the default"),
    db: str = DB_OPTION,
):
    """Override an account's daily spend limit."""
    try:
        account = _engine(db).set_daily_limit(account_id, limit)
        shown = _format_usd(account.daily_spend_limit) if account.daily_spend_limit else "default"
        console.print(f"[green]✓[/] Daily limit for {account.account_id}: {shown}")
        sys.exit(EXIT_CODE_OK)
    except HANDLED_ERRORS as e:
        _fail(e)


@app.command("bypass-report")
def bypass_report(
    day: Optional[datetime] = typer.Option(
        None,
        "--day",
        "-d",
        formats=["%Y-%m-%d"],
        help="UTC day to report (default: today)"
    ),
    db: str = DB_OPTION,
):
    """Report unlimited-tier usage for one UTC day."""
    try:
        report = _engine(db).bypass_report(day.replace(tzinfo=timezone.utc) if day else None)
        console.print(f"\n[bold]Unlimited-tier usage on {report.day_start:%Y-%m-%d}[/bold]")
        console.print("-" * 40)
        console.print(f"Requests: {report.request_count}")
        console.print(f"Provider cost: {_format_usd(report.total_cost_usd)}")
        sys.exit(EXIT_CODE_OK)
    except HANDLED_ERRORS as e:
        _fail(e)


if __name__ == "__main__":
    app()
