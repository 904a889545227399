"""
burnbot/cli/main.py

Main CLI entry point. All burnbot commands registered here.

    burnbot version
    burnbot status
    burnbot daemon
    burnbot buyback ...   (see buyback_commands.py)
"""
from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from burnbot.cli.buyback_commands import build_services, buyback_app
from burnbot.utils.logging import get_logger

logger = get_logger(__name__)

app = typer.Typer(
    name="burnbot",
    help="burnbot: treasury buyback-and-burn bot",
    no_args_is_help=True,
)
console = Console()

# Register sub-applications
app.add_typer(buyback_app, name="buyback")


@app.command()
def version() -> None:
    """Show burnbot version."""
    from burnbot import __version__
    console.print(f"burnbot [bold]{__version__}[/bold]")


@app.command()
def status(
    database: Optional[Path] = typer.Option(None, "--db", help="SQLite path (default from settings)."),
) -> None:
    """Show bot status: mode, eligibility, funds, Redis connection."""
    from burnbot.utils.config import settings

    svc = build_services(database)
    payload = svc.operator.status()
    if not payload["success"]:
        console.print(f"[red]Error: {payload['error']}[/red]")
        raise typer.Exit(1)
    data = payload["data"]
    config = data["config"]

    dry_colour = "yellow" if config["dry_run"] else "red"
    console.print(f"  Mode         : [bold]{config['execution_mode']}[/bold]")
    console.print(f"  Target mint  : {config['target_mint'] or '-'}")
    console.print(f"  Active       : {'[green]yes[/green]' if config['is_active'] else '[yellow]no[/yellow]'}")
    console.print(f"  Dry run      : [{dry_colour}]{'yes' if config['dry_run'] else 'NO (live)'}[/{dry_colour}]")
    can_colour = "green" if data["can_run"] else "yellow"
    console.print(f"  Can run      : [{can_colour}]{data['can_run']}[/{can_colour}] ({data['reason']})")

    funds = data.get("funds")
    if funds:
        console.print(f"  Vault        : {funds['vault_balance']:.6f} SOL (excess {funds['vault_excess']:.6f})")
        console.print(f"  Treasury     : {funds['treasury_balance']:.6f} SOL (spendable {funds['treasury_spendable']:.6f})")
        console.print(f"  Available    : [bold]{funds['total_available']:.6f} SOL[/bold]")
    else:
        console.print(f"  Funds        : [red]unavailable[/red] ({settings.rpc_url})")

    authority = "[green]loaded[/green]" if svc.ledger.has_authority else "[yellow]missing[/yellow]"
    console.print(f"  Authority    : {authority}")

    board = svc.board
    redis_colour = "green" if board.connected else "red"
    console.print(f"  Redis        : [{redis_colour}]{'connected' if board.connected else 'offline'}[/{redis_colour}]")

    stats = data["stats"]
    console.print(
        f"  Events       : {stats['total_events']} "
        f"([green]{stats['successful']} ok[/green], [red]{stats['failed']} failed[/red], "
        f"{stats['pending_burns']} pending burns)"
    )


@app.command()
def daemon(
    database: Optional[Path] = typer.Option(None, "--db", help="SQLite path (default from settings)."),
    grace: Optional[float] = typer.Option(None, "--grace", help="Shutdown grace period in seconds."),
) -> None:
    """Run the scheduler until interrupted (Ctrl+C / SIGTERM)."""
    from burnbot.scheduler import start_scheduler, stop_scheduler

    svc = build_services(database)

    async def _run() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

        handle = start_scheduler(svc.executor, svc.configs)
        console.print(f"[green]burnbot daemon running[/green] ({handle.mode}). Ctrl+C to stop.")
        await stop.wait()
        console.print("[yellow]Shutting down...[/yellow]")
        await stop_scheduler(handle, grace)

    try:
        asyncio.run(_run())
    finally:
        if svc.board is not None:
            svc.board.disconnect()
        svc.db.close()
    console.print("[bold]Stopped.[/bold]")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
