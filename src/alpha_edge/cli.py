"""Typer CLI: alpha-edge status, kill-switch, mode, settings, audit, keys, performance."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from alpha_edge.config import get_settings

app = typer.Typer(
    name="alpha-edge",
    help="Risk-gated alpha decisions for prediction markets",
    no_args_is_help=True,
)
keys_app = typer.Typer(help="Idempotency key maintenance", no_args_is_help=True)
app.add_typer(keys_app, name="keys")
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    level = "DEBUG" if verbose else get_settings().log_level
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


async def _load_machine():
    from alpha_edge.risk.machine import RiskStateMachine
    from alpha_edge.risk.store import RiskStateStore

    machine = RiskStateMachine(store=RiskStateStore())
    await machine.load()
    return machine


def _print_result(ok: bool, message: str) -> None:
    if ok:
        console.print(f"[green]{message}[/green]")
    else:
        console.print(f"[red]{message}[/red]")


@app.command()
def status() -> None:
    """Show the risk dashboard."""

    async def _run() -> None:
        machine = await _load_machine()
        d = machine.dashboard()

        table = Table(title="Risk Dashboard", show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")

        ks = d["kill_switch"]
        table.add_row("Mode", d["mode"].upper())
        table.add_row(
            "Kill switch",
            f"[red]ACTIVE[/red] ({ks['reason']})" if ks["active"] else "[green]off[/green]",
        )
        daily = d["daily"]
        table.add_row("Date", daily["date"])
        table.add_row("Daily P&L", f"{daily['pnl']:+.2f} USDC")
        table.add_row(
            "Trades",
            f"{daily['trades']} ({daily['wins']}W / {daily['losses']}L, {daily['win_rate']:.0f}%)",
        )
        intraday = d["intraday"]
        table.add_row("High-water mark", f"{intraday['high_water_mark']:.2f}")
        table.add_row(
            "Drawdown", f"{intraday['drawdown']:.2f} / {intraday['drawdown_limit']:.2f} USDC",
        )
        table.add_row("Losing streak", str(intraday["consecutive_losses"]))
        if intraday["cooldown_until"] is not None:
            table.add_row("Cooldown until", intraday["cooldown_until"].isoformat())
        pos = d["positions"]
        table.add_row(
            "Positions", f"{pos['open']}/{pos['max']} ({pos['total_exposure']:.2f} USDC)",
        )
        table.add_row("Loss budget left", f"{d['limits']['daily_loss_remaining']:.2f} USDC")
        gate = d["can_trade"]
        table.add_row(
            "Can trade",
            f"[green]yes[/green] ({gate['reason']})" if gate["allowed"] else f"[red]no[/red] ({gate['reason']})",
        )
        console.print(table)

    asyncio.run(_run())


@app.command(name="kill-switch")
def kill_switch(
    state: str = typer.Argument(help="on or off"),
    reason: str = typer.Option("Manually activated", "--reason", "-r", help="Why trading is halted"),
) -> None:
    """Activate or deactivate the kill switch."""
    from alpha_edge.risk.models import Actor

    if state not in ("on", "off"):
        console.print("[red]State must be 'on' or 'off'[/red]")
        raise typer.Exit(code=2)

    async def _run() -> None:
        machine = await _load_machine()
        if state == "on":
            changed = await machine.activate_kill_switch(reason, Actor.CLI)
            _print_result(True, "Kill switch activated" if changed else "Kill switch already active")
        else:
            changed = await machine.deactivate_kill_switch(Actor.CLI)
            _print_result(True, "Kill switch deactivated" if changed else "Kill switch was not active")

    asyncio.run(_run())


@app.command()
def mode(
    new_mode: Optional[str] = typer.Argument(None, help="paper, shadow or live"),
) -> None:
    """Show or change the execution mode."""
    from alpha_edge.risk.models import Actor, ExecutionMode

    async def _run() -> None:
        machine = await _load_machine()
        if new_mode is None:
            console.print(f"Execution mode: [bold]{machine.execution_mode.value}[/bold]")
            return
        try:
            target = ExecutionMode(new_mode.lower())
        except ValueError:
            console.print(f"[red]Unknown mode: {new_mode}[/red]")
            raise typer.Exit(code=2)
        result = await machine.set_execution_mode(target, Actor.CLI)
        _print_result(result.success, result.message)
        if not result.success:
            raise typer.Exit(code=1)

    asyncio.run(_run())


@app.command(name="reset-daily")
def reset_daily() -> None:
    """Zero the daily counters now (the kill switch is not touched)."""
    from alpha_edge.risk.models import Actor

    async def _run() -> None:
        machine = await _load_machine()
        await machine.reset_daily(Actor.CLI)
        console.print("[green]Daily counters reset[/green]")
        if machine.kill_switch_active:
            console.print("[yellow]Kill switch is still active[/yellow]")

    asyncio.run(_run())


def _parse_changes(pairs: list[str]) -> dict[str, str]:
    changes: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got {pair!r}")
        changes[key.strip()] = value.strip()
    return changes


@app.command()
def settings(
    set_: Optional[list[str]] = typer.Option(
        None, "--set", "-s", help="Change a limit, e.g. --set max_daily_loss=50",
    ),
) -> None:
    """Show or update the runtime risk limits."""
    from alpha_edge.errors import ConfigurationError
    from alpha_edge.risk.models import Actor

    changes = _parse_changes(set_ or [])

    async def _run() -> None:
        machine = await _load_machine()
        if changes:
            try:
                await machine.update_settings(Actor.CLI, **changes)
            except ConfigurationError as exc:
                console.print(f"[red]{exc}[/red]")
                raise typer.Exit(code=1)
            console.print("[green]Settings updated[/green]")

        table = Table(title="Risk Settings")
        table.add_column("Setting", style="bold")
        table.add_column("Value", justify="right")
        for key, value in machine.state.settings.model_dump().items():
            if key == "schema_version":
                continue
            table.add_row(key, str(value))
        console.print(table)

    asyncio.run(_run())


@app.command()
def audit(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries"),
) -> None:
    """Show the most recent audit log entries."""

    async def _run() -> None:
        from alpha_edge.risk.store import RiskStateStore

        entries = await RiskStateStore().recent_audit(limit)
        if not entries:
            console.print("[yellow]Audit log is empty.[/yellow]")
            return

        table = Table(title="Audit Log")
        table.add_column("Time", width=20)
        table.add_column("Event", no_wrap=True)
        table.add_column("Actor", no_wrap=True)
        table.add_column("Action")
        table.add_column("P&L", justify="right")
        for e in entries:
            table.add_row(
                e.created_at.strftime("%Y-%m-%d %H:%M:%S") if e.created_at else "",
                e.event_type.value,
                e.actor.value,
                e.action,
                f"{e.pnl_impact:+.2f}" if e.pnl_impact is not None else "",
            )
        console.print(table)

    asyncio.run(_run())


@keys_app.command(name="pending")
def keys_pending() -> None:
    """List pending idempotency keys left over from earlier runs."""

    async def _run() -> None:
        from alpha_edge.execution.idempotency import IdempotencyService

        service = IdempotencyService()
        pending = await service.get_pending_keys()
        if not pending:
            console.print("[green]No pending keys.[/green]")
            return

        table = Table(title="Pending Orders")
        table.add_column("Key")
        table.add_column("Size", justify="right")
        table.add_column("Created")
        table.add_column("Expires")
        for record in pending:
            table.add_row(
                record.key,
                f"{record.size_usdc:.2f}",
                record.created_at.strftime("%Y-%m-%d %H:%M"),
                record.expires_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)

    asyncio.run(_run())


@keys_app.command(name="sweep")
def keys_sweep(
    mark_only: bool = typer.Option(
        False, "--mark-only", help="Mark expired keys instead of deleting them",
    ),
) -> None:
    """Remove (or mark) expired idempotency keys."""

    async def _run() -> None:
        from alpha_edge.execution.idempotency import IdempotencyService

        service = IdempotencyService()
        count = await service.cleanup(delete=not mark_only)
        console.print(f"Swept {count} expired key(s)")
        stats = await service.get_stats()
        console.print(
            f"  pending={stats['pending']} completed={stats['completed']} "
            f"failed={stats['failed']} expired={stats['expired']}"
        )

    asyncio.run(_run())


@app.command()
def combiner() -> None:
    """Show the meta-combiner's trust weights and strongest coefficients."""

    async def _run() -> None:
        from alpha_edge.signals.combiner import MetaCombiner
        from alpha_edge.signals.combiner_store import CombinerStateStore

        meta = MetaCombiner(store=CombinerStateStore())
        await meta.load()
        s = meta.stats()

        console.print("[bold]Meta-Combiner[/bold]")
        console.print(f"  Trained on:  {s['training_count']} outcomes")
        for origin, weight in s["weights"].items():
            console.print(f"  Weight {origin}: {weight:.1%}")
        console.print("  Top coefficients:")
        for coef in s["top_coefficients"]:
            console.print(f"    {coef['name']}: {coef['value']:+.4f}")

    asyncio.run(_run())


@app.command()
def performance() -> None:
    """Show decision performance statistics."""

    async def _run() -> None:
        from alpha_edge.signals.tracker import DecisionTracker

        summary = await DecisionTracker().get_performance_summary()

        console.print("[bold]Decision Performance Summary[/bold]")
        console.print(f"  Signals logged:    {summary['total_signals']}")
        for action, count in sorted(summary["decisions"].items()):
            console.print(f"  {action:<17}  {count}")
        console.print(f"  Resolved outcomes: {summary['resolved']}")
        if summary["win_rate"] is not None:
            console.print(f"  Win rate:          {summary['win_rate']:.1%}")
        else:
            console.print("  Win rate:          N/A (no resolved outcomes)")
        console.print(f"  Realized P&L:      {summary['total_pnl']:+.2f} USDC")
        if summary["brier_score"] is not None:
            console.print(f"  Brier score:       {summary['brier_score']:.4f}")

    asyncio.run(_run())


@app.command(name="sync-positions")
def sync_positions() -> None:
    """Replace stored positions with the venue's open positions."""
    from alpha_edge.risk.models import Actor

    async def _run() -> None:
        from alpha_edge.execution.positions import VenuePositionClient, sync_positions_from_venue

        machine = await _load_machine()
        result = await sync_positions_from_venue(machine, VenuePositionClient(), Actor.CLI)
        if not result.synced:
            console.print(f"[red]Sync failed: {result.reason}[/red]")
            raise typer.Exit(code=1)

        console.print(
            f"[green]Synced {result.open_positions} position(s), "
            f"{result.total_exposure:.2f} USDC exposure[/green]"
        )
        for market_id, exposure in sorted(result.positions_per_market.items()):
            console.print(f"  {market_id}: {exposure:.2f}")

    asyncio.run(_run())


if __name__ == "__main__":
    app()
