"""
CLI interface for memo-guard.

Operator access to migrations, reconciliation, ledger history, quota windows,
tier assignment and upstream key management.
"""

import logging
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from memo_guard.config.loader import Settings, load_settings
from memo_guard.core.calendar import isoformat, utc_now
from memo_guard.core.guardrails import QuotaGate
from memo_guard.core.ledger import LedgerService
from memo_guard.core.secrets import encrypt_api_key
from memo_guard.core.tiers import TIER_TABLE
from memo_guard.storage.ledger_repository import LedgerRepository
from memo_guard.storage.migrations import MIGRATIONS, apply_migrations, current_version
from memo_guard.storage.repository import UsageRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_config_path: Optional[str] = None


def _settings() -> Settings:
    return load_settings(_config_path)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML config (defaults to $MEMO_GUARD_CONFIG)"
    )
):
    """memo-guard CLI."""
    global _config_path
    _config_path = config
    if ctx.invoked_subcommand is None:
        console.print("memo-guard - Use --help to see available commands")


@app.command()
def init():
    """Apply pending schema migrations."""
    try:
        settings = _settings()
        applied = apply_migrations(settings.db_path)
    except Exception as e:
        _fail(f"initializing database: {e}")
    if applied:
        console.print(f"[green]✓[/] Applied migrations {applied} to {settings.db_path}")
    else:
        console.print(f"[green]✓[/] Database {settings.db_path} is up to date")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status():
    """Show the applied schema version."""
    try:
        settings = _settings()
        version = current_version(settings.db_path)
    except Exception as e:
        _fail(str(e))
    latest = MIGRATIONS[-1][0]
    if version >= latest:
        console.print(f"[green]✓[/] Schema version {version} (latest)")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[yellow]![/] Schema version {version}, latest is {latest}. Run `memo-guard init`.")
    sys.exit(EXIT_CODE_FAIL)


@app.command("sync-balance")
def sync_balance(wallet: str = typer.Argument(..., help="Wallet address")):
    """Recompute a wallet's cached balance from its ledger."""
    try:
        result = LedgerService(_settings().db_path).reconcile_balance(wallet)
    except Exception as e:
        _fail(str(e))
    console.print(
        f"Balance for [bold]{wallet}[/]: {result.previous} -> {result.new} "
        f"(delta {result.delta:+d})"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def history(
    wallet: str = typer.Argument(..., help="Wallet address"),
    limit: int = typer.Option(50, "--limit", "-l", help="Entries per page (1-200)"),
    offset: int = typer.Option(0, "--offset", "-o", help="Entries to skip")
):
    """Show a wallet's ledger entries, newest first."""
    try:
        page = LedgerService(_settings().db_path).get_history(wallet, limit=limit, offset=offset)
    except Exception as e:
        _fail(str(e))

    if not page.entries:
        console.print(f"\n[dim]No ledger entries for {wallet}.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Ledger for {wallet} ({page.total} total)")
    table.add_column("Created")
    table.add_column("Type")
    table.add_column("Amount", justify="right")
    table.add_column("Reference")
    table.add_column("Description")
    for entry in page.entries:
        table.add_row(
            entry.created_at,
            entry.type,
            f"{entry.amount:+d}",
            entry.reference_id or "",
            entry.description
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def quota(wallet: str = typer.Argument(..., help="Wallet address")):
    """Show a wallet's daily and monthly token windows."""
    try:
        settings = _settings()
        snapshot = QuotaGate(settings.quota, settings.db_path).snapshot(wallet)
    except Exception as e:
        _fail(str(e))
    console.print(f"\n[bold]AI quota for {wallet}[/bold]")
    console.print("-" * 40)
    console.print(f"Daily ({snapshot.stat_date}): {snapshot.displayed_daily_used:,} / {snapshot.daily_limit:,}")
    console.print(f"Monthly ({snapshot.stat_month}): {snapshot.monthly_used:,} / {snapshot.monthly_limit:,}")
    sys.exit(EXIT_CODE_PASS)


@app.command("set-tier")
def set_tier(
    wallet: str = typer.Argument(..., help="Wallet address"),
    level: int = typer.Argument(..., help="Tier level (1-5)")
):
    """Assign a membership tier, creating the account if needed."""
    if level not in TIER_TABLE.tiers:
        _fail(f"Unknown tier level {level}, expected one of {sorted(TIER_TABLE.tiers)}")
    tier = TIER_TABLE.get_tier(level)
    try:
        LedgerRepository(_settings().db_path).set_tier(wallet, level, isoformat(utc_now()))
    except Exception as e:
        _fail(str(e))
    console.print(f"[green]✓[/] {wallet} is now tier {level} ({tier.name}, x{tier.multiplier})")
    sys.exit(EXIT_CODE_PASS)


def _read_secret(settings: Settings) -> str:
    if not settings.encryption_key:
        _fail("ENCRYPTION_KEY is not set")
    return settings.encryption_key


@app.command("encrypt-key")
def encrypt_key(api_key: str = typer.Option(..., prompt=True, hide_input=True, help="Upstream API key")):
    """Encrypt an upstream API key with ENCRYPTION_KEY and print the stored form."""
    settings = _settings()
    secret = _read_secret(settings)
    try:
        print(encrypt_api_key(api_key, secret))
    except ValueError as e:
        _fail(str(e))
    sys.exit(EXIT_CODE_PASS)


@app.command("add-key")
def add_key(
    api_key: str = typer.Option(..., prompt=True, hide_input=True, help="Upstream API key"),
    name: str = typer.Option("", "--name", "-n", help="Label for the key"),
    endpoint_url: Optional[str] = typer.Option(None, "--endpoint-url", help="Override provider endpoint"),
    service: Optional[str] = typer.Option(None, "--service", help="Service name (defaults to provider.service)")
):
    """Encrypt an upstream API key and store it as the active primary key."""
    settings = _settings()
    secret = _read_secret(settings)
    service = service or settings.provider.service
    try:
        encrypted = encrypt_api_key(api_key, secret)
        UsageRepository(settings.db_path).add_api_key(
            service, encrypted, isoformat(utc_now()), name=name, endpoint_url=endpoint_url
        )
    except Exception as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Stored primary key for {service}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port")
):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from memo_guard.api.app import create_app

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    uvicorn.run(create_app(_settings()), host=host, port=port)


if __name__ == "__main__":
    app()
