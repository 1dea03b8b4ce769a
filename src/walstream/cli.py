"""Typer CLI for walstream."""

from __future__ import annotations

import asyncio
import signal
from enum import StrEnum
from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.table import Table

from walstream.config.loader import load_engine_config
from walstream.config.models import EngineConfig
from walstream.dispatch.dispatcher import ChangeHandler
from walstream.dispatch.sinks import JsonLinesSink, LogSink
from walstream.observability.logging import configure_logging
from walstream.wal.errors import ReceiveError, StartupError, WalStreamError
from walstream.wal.lsn import format_lsn
from walstream.wal.reader import WalReader
from walstream.wal.slot_manager import SlotManager

logger = structlog.get_logger()
console = Console(stderr=True)
app = typer.Typer(name="walstream", help="Stream PostgreSQL WAL changes as events")


class OutputFormat(StrEnum):
    LOG = "log"
    JSON = "json"


def _load(config_path: str | None) -> EngineConfig:
    if config_path is not None and not Path(config_path).exists():
        console.print(f"[red]Config file not found: {config_path}[/red]")
        raise typer.Exit(1)
    try:
        return load_engine_config(config_path)
    except ValueError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(1) from exc


@app.command()
def validate(
    config_path: str = typer.Argument(..., help="Path to engine YAML"),
) -> None:
    """Validate an engine configuration file."""
    config = _load(config_path)
    conn = config.connection
    console.print("[green]Valid[/green]")
    console.print(f"  source:    {conn.username}@{conn.host}:{conn.port}/{conn.database}")
    if config.slot.create:
        console.print(f"  slot:      {config.slot.prefix}_<random> (managed)")
    else:
        console.print(f"  slot:      {config.slot.name} (external)")
    console.print(f"  plugin:    {config.slot.plugin} {config.stream.plugin_options}")
    console.print(
        f"  keepalive: {config.stream.keepalive_interval_seconds}s, "
        f"receive timeout: {config.stream.receive_timeout_seconds}s"
    )
    console.print(f"  dispatch:  {config.dispatch.mode}")


@app.command()
def run(
    config_path: str | None = typer.Argument(None, help="Path to engine YAML"),
    output: OutputFormat = typer.Option(
        OutputFormat.LOG, "--format", help="How change events are emitted"
    ),
    log_level: str = typer.Option("INFO", "--log-level", help="Log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Render logs as JSON"),
) -> None:
    """Stream changes until interrupted (Ctrl-C / SIGTERM)."""
    configure_logging(log_level, json_output=json_logs)
    config = _load(config_path)
    handler: ChangeHandler = JsonLinesSink() if output is OutputFormat.JSON else LogSink()

    async def _run() -> None:
        reader = WalReader(config, handler)
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, reader.stop)
        try:
            await reader.run()
        finally:
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(signum)

    console.print("[yellow]Starting CDC stream[/yellow]")
    try:
        asyncio.run(_run())
    except StartupError as exc:
        console.print(f"[red]Startup failed:[/red] {exc}")
        raise typer.Exit(1) from exc
    except ReceiveError as exc:
        console.print(f"[red]Replication session lost:[/red] {exc}")
        raise typer.Exit(1) from exc
    except WalStreamError as exc:
        console.print(f"[red]Stream aborted:[/red] {exc}")
        raise typer.Exit(1) from exc
    console.print("[green]Stream stopped[/green]")


@app.command()
def slots(
    config_path: str | None = typer.Argument(None, help="Path to engine YAML"),
    show_all: bool = typer.Option(
        False, "--all", help="Show every logical slot, not just this prefix"
    ),
) -> None:
    """List logical replication slots (find orphans left by killed runs)."""
    config = _load(config_path)
    manager = SlotManager(config.connection.conninfo(), config.slot)
    prefix = None if show_all else f"{config.slot.prefix}_"
    try:
        rows = asyncio.run(manager.list_slots(prefix))
    except Exception as exc:
        console.print(f"[red]Failed to list slots:[/red] {exc}")
        raise typer.Exit(1) from exc

    table = Table(title="Logical Replication Slots")
    table.add_column("Slot", style="cyan")
    table.add_column("Plugin")
    table.add_column("Database")
    table.add_column("Active")
    table.add_column("Confirmed flush")
    for row in rows:
        style = "green" if row.active else "yellow"
        table.add_row(
            row.slot_name,
            row.plugin or "",
            row.database or "",
            f"[{style}]{row.active}[/{style}]",
            format_lsn(row.confirmed_flush_lsn) if row.confirmed_flush_lsn else "",
        )
    Console().print(table)


@app.command("drop-slot")
def drop_slot(
    name: str = typer.Argument(..., help="Slot to drop"),
    config_path: str | None = typer.Option(None, "--config", help="Engine YAML"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Drop a replication slot by name."""
    config = _load(config_path)
    if not yes:
        confirm = typer.confirm(f"Drop replication slot '{name}'?")
        if not confirm:
            console.print("[yellow]Cancelled[/yellow]")
            raise typer.Exit(0)
    manager = SlotManager(config.connection.conninfo(), config.slot)
    if not asyncio.run(manager.drop_slot(name)):
        console.print(f"[red]Failed to drop slot '{name}'[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Dropped slot '{name}'[/green]")
