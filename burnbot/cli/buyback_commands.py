"""
burnbot/cli/buyback_commands.py

Operator commands for the buyback core. The CLI acts as the local
operator, so signature auth is not required here.

Command structure:
    burnbot buyback config
    burnbot buyback set FIELD=VALUE [FIELD=VALUE ...]
    burnbot buyback run
    burnbot buyback pause
    burnbot buyback resume
    burnbot buyback events [--limit N] [--csv PATH]
    burnbot buyback stats
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from burnbot.utils.logging import get_logger

logger = get_logger(__name__)
console = Console()

buyback_app = typer.Typer(name="buyback", help="Inspect and control the buyback bot.")


@dataclass
class Services:
    """Wired components shared by the CLI and the daemon."""

    db: Any
    ledger: Any
    configs: Any
    events: Any
    board: Any
    executor: Any
    operator: Any


def build_services(database: Optional[Path] = None, with_board: bool = True) -> Services:
    """Open storage, connect the ledger and wire the executor + operator service."""
    from burnbot.execution.executor import BuybackExecutor
    from burnbot.ledger.funds import FundLedger
    from burnbot.ledger.rpc import SolanaLedger
    from burnbot.service.operator import OperatorService
    from burnbot.store import ConfigStore, Database, EventStore, StatusBoard

    db = Database(database)
    configs = ConfigStore(db)
    configs.ensure_default()
    events = EventStore(db)
    ledger = SolanaLedger()
    funds = FundLedger(ledger)
    board = StatusBoard().connect() if with_board else None
    executor = BuybackExecutor(configs, events, ledger, fund_ledger=funds, status_board=board)
    operator = OperatorService(executor, configs, events, fund_ledger=funds, require_auth=False)
    return Services(db, ledger, configs, events, board, executor, operator)


def _fail(payload: dict) -> None:
    console.print(f"[red]Error: {payload.get('error', 'unknown error')}[/red]")
    raise typer.Exit(1)


def _parse_assignments(pairs: list[str]) -> dict[str, str]:
    updates: dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise typer.BadParameter(f"Expected FIELD=VALUE, got {pair!r}")
        key, value = pair.split("=", 1)
        updates[key.strip()] = value.strip()
    return updates


def _print_config(config: dict) -> None:
    table = Table(title="Buyback config", show_header=True, header_style="bold cyan")
    table.add_column("Field", style="dim")
    table.add_column("Value", justify="right")
    for key in (
        "execution_mode", "token_mint", "curve_mint", "target_mint",
        "max_spend_per_interval", "interval_seconds", "slippage_bps",
        "is_active", "dry_run", "last_run_at", "updated_at",
    ):
        value = config.get(key)
        if key == "is_active":
            shown = "[green]yes[/green]" if value else "[yellow]no[/yellow]"
        elif key == "dry_run":
            shown = "[yellow]yes[/yellow]" if value else "[red]LIVE[/red]"
        else:
            shown = "-" if value in (None, "") else str(value)
        table.add_row(key, shown)
    console.print(table)


# ---------------------------------------------------------------------------
# burnbot buyback config / set
# ---------------------------------------------------------------------------

@buyback_app.command("config")
def show_config(
    database: Optional[Path] = typer.Option(None, "--db", help="SQLite path (default from settings)."),
) -> None:
    """Show the current buyback config."""
    svc = build_services(database, with_board=False)
    payload = svc.operator.get_config()
    if not payload["success"]:
        _fail(payload)
    _print_config(payload["data"])


@buyback_app.command("set")
def set_fields(
    assignments: list[str] = typer.Argument(..., help="FIELD=VALUE pairs, e.g. slippage_bps=300"),
    database: Optional[Path] = typer.Option(None, "--db", help="SQLite path (default from settings)."),
) -> None:
    """Update config fields (allow-listed)."""
    updates = _parse_assignments(assignments)
    svc = build_services(database, with_board=False)
    payload = svc.operator.update_config(updates)
    if not payload["success"]:
        _fail(payload)
    console.print(f"[green]✓ Updated:[/green] {', '.join(sorted(updates))}")
    _print_config(payload["data"])


# ---------------------------------------------------------------------------
# burnbot buyback run / pause / resume
# ---------------------------------------------------------------------------

@buyback_app.command("run")
def run_now(
    database: Optional[Path] = typer.Option(None, "--db", help="SQLite path (default from settings)."),
) -> None:
    """Trigger one buyback now (manual spacing still applies)."""
    svc = build_services(database)
    payload = asyncio.run(svc.operator.run_now())
    if "error" in payload:
        _fail(payload)

    result = payload["data"]
    colour = "green" if result["success"] else "yellow" if result["outcome"] in ("skipped", "busy") else "red"
    console.print(f"[{colour}]{result['outcome'].upper()}[/{colour}] {result['message']}")
    if result.get("purchase_tx"):
        console.print(f"  Purchase tx : {result['purchase_tx']}")
    if result.get("burn_tx"):
        console.print(f"  Burn tx     : {result['burn_tx']}")
    if result.get("spend_lamports"):
        console.print(f"  Spent       : {result['sol_spent']:.6f} SOL")
    if not result["success"] and result["outcome"] not in ("skipped", "busy"):
        raise typer.Exit(1)


@buyback_app.command("pause")
def pause(
    database: Optional[Path] = typer.Option(None, "--db", help="SQLite path (default from settings)."),
) -> None:
    """Deactivate buybacks."""
    payload = build_services(database, with_board=False).operator.pause()
    if not payload["success"]:
        _fail(payload)
    console.print(f"[yellow]{payload['message']}[/yellow]")


@buyback_app.command("resume")
def resume(
    database: Optional[Path] = typer.Option(None, "--db", help="SQLite path (default from settings)."),
) -> None:
    """Activate buybacks."""
    payload = build_services(database, with_board=False).operator.resume()
    if not payload["success"]:
        _fail(payload)
    console.print(f"[green]{payload['message']}[/green]")


# ---------------------------------------------------------------------------
# burnbot buyback events / stats
# ---------------------------------------------------------------------------

@buyback_app.command("events")
def events(
    limit: int = typer.Option(50, "--limit", "-n", help="Number of recent events."),
    csv: Optional[Path] = typer.Option(None, "--csv", help="Also export events to this CSV file."),
    database: Optional[Path] = typer.Option(None, "--db", help="SQLite path (default from settings)."),
) -> None:
    """List recent buyback events, newest first."""
    svc = build_services(database, with_board=False)
    rows = svc.operator.events(limit)["data"]

    if not rows:
        console.print("[yellow]No buyback events recorded yet.[/yellow]")
    else:
        table = Table(title=f"Last {len(rows)} buyback events", show_header=True, header_style="bold cyan")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Time (UTC)")
        table.add_column("Mode")
        table.add_column("Status")
        table.add_column("SOL", justify="right")
        table.add_column("Units", justify="right")
        table.add_column("Purchase tx")
        table.add_column("Burn")
        for e in rows:
            if e["status"] == "failed":
                status = "[red]failed[/red]"
            elif e["simulated"]:
                status = "[cyan]dry-run[/cyan]"
            else:
                status = "[green]success[/green]"
            burn = "[green]✓[/green]" if e["burn_tx"] else ("[red]✗[/red]" if e["burn_error"] else "-")
            table.add_row(
                str(e["id"]),
                e["timestamp"][:19].replace("T", " "),
                e["execution_mode"],
                status,
                f"{e['sol']:.6f}",
                f"{e['units_acquired']:,}",
                (e["purchase_tx"] or e["error_message"] or "-")[:44],
                burn,
            )
        console.print(table)

    if csv is not None:
        df = svc.events.to_frame(limit)
        csv.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(csv)
        console.print(f"[green]✓ Exported {len(df)} events to {csv}[/green]")


@buyback_app.command("stats")
def stats(
    database: Optional[Path] = typer.Option(None, "--db", help="SQLite path (default from settings)."),
) -> None:
    """Aggregate buyback statistics."""
    data = build_services(database, with_board=False).operator.stats()["data"]
    table = Table(title="Buyback statistics", show_header=False)
    table.add_column("Metric", style="dim")
    table.add_column("Value", justify="right")
    table.add_row("Total events", str(data["total_events"]))
    table.add_row("Successful", f"[green]{data['successful']}[/green]")
    table.add_row("Failed", f"[red]{data['failed']}[/red]")
    table.add_row("Dry runs", str(data["simulated"]))
    table.add_row("SOL spent", f"{data['total_sol_spent']:.6f}")
    table.add_row("Units acquired", f"{data['total_units_acquired']:,}")
    table.add_row("Units burned", f"{data['total_units_burned']:,}")
    pending = data["pending_burns"]
    table.add_row("Pending burns", f"[red]{pending}[/red]" if pending else "0")
    table.add_row("Last run", data["last_run_at"] or "-")
    console.print(table)
