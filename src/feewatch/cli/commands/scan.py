"""
Scan commands: single cycle, continuous scanning, progress reset.
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console
from rich.table import Table

from ..bootstrap import bootstrap

if TYPE_CHECKING:
    from feewatch.core.config import AppConfig, SourceConfig
    from feewatch.core.orchestrator import ScanOrchestrator

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    help="Run and reset scanners",
    no_args_is_help=True,
)

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to app.yaml",
)


def _resolve_source(config: AppConfig, source_id: str | None) -> SourceConfig:
    """Look up a configured source by id, exiting with a hint on failure."""
    try:
        return config.get_source(source_id)
    except KeyError:
        err_console.print(f"[red]Source not found:[/red] {source_id}")
        available = [s.source_id for s in config.sources]
        if available:
            err_console.print(f"[dim]Available: {', '.join(available)}[/dim]")
        raise typer.Exit(1)


@app.command("once")
def scan_once(
    source: Optional[str] = typer.Option(
        None,
        "--source",
        "-s",
        help="Source to scan (default: first configured)",
    ),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Run a single scan cycle and print the result.

    Examples:
        feewatch scan once
        feewatch scan once --source polygon
    """
    from feewatch.core.orchestrator import build_orchestrator

    config = bootstrap(config_path)
    source_config = _resolve_source(config, source)
    orchestrator = build_orchestrator(config, source_config)

    async def _run():
        try:
            return await orchestrator.scan_once()
        finally:
            await orchestrator.close()

    try:
        result = asyncio.run(_run())
    except Exception as e:
        err_console.print(f"[red]Scan failed for {source_config.source_id}:[/red] {e}")
        raise typer.Exit(1)

    if result.scanned == 0:
        console.print(f"[dim]{source_config.source_id}: already caught up[/dim]")
        return

    table = Table(title=f"Scan Result: {source_config.source_id}")
    table.add_column("From", justify="right")
    table.add_column("To", justify="right")
    table.add_column("Blocks", justify="right")
    table.add_column("New Events", justify="right", style="green")
    table.add_column("Behind", justify="right")
    table.add_row(
        str(result.from_height),
        str(result.to_height),
        str(result.scanned),
        str(result.new_events),
        str(result.blocks_behind),
    )
    console.print(table)


@app.command("run")
def scan_run(
    sources: Optional[list[str]] = typer.Option(
        None,
        "--source",
        "-s",
        help="Source(s) to scan (default: all enabled)",
    ),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Scan continuously until interrupted (Ctrl+C).

    Each source runs its own scanner; an interrupt lets any cycle in
    flight finish before exiting.
    """
    from feewatch.core.orchestrator import build_orchestrator

    config = bootstrap(config_path)

    if sources:
        selected = [_resolve_source(config, source_id) for source_id in sources]
    else:
        selected = [s for s in config.sources if s.enabled]

    if not selected:
        err_console.print("[red]No enabled sources configured[/red]")
        raise typer.Exit(1)

    orchestrators = [build_orchestrator(config, s) for s in selected]

    console.print(
        f"[bold]Scanning {len(orchestrators)} source(s):[/bold] "
        f"{', '.join(s.source_id for s in selected)}"
    )
    console.print("[dim]Press Ctrl+C to stop[/dim]")

    try:
        asyncio.run(_run_until_stopped(orchestrators))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        err_console.print(f"[red]Scanning aborted:[/red] {e}")
        raise typer.Exit(1)

    console.print("[green]OK[/green] Scanners stopped")


async def _run_until_stopped(orchestrators: list[ScanOrchestrator]) -> None:
    loop = asyncio.get_running_loop()

    def stop_all() -> None:
        for orchestrator in orchestrators:
            orchestrator.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_all)
        except (NotImplementedError, RuntimeError):
            # Not supported on Windows event loops
            pass

    try:
        for orchestrator in orchestrators:
            await orchestrator.source.validate_connection()
        for orchestrator in orchestrators:
            orchestrator.start()
        await asyncio.gather(*(o.wait_stopped() for o in orchestrators))
    finally:
        stop_all()
        for orchestrator in orchestrators:
            await orchestrator.close()


@app.command("reset")
def scan_reset(
    source: str = typer.Option(
        ...,
        "--source",
        "-s",
        help="Source whose progress to reset",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip confirmation",
    ),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Reset a source's progress to its floor height.

    Stored events are kept; rescanning skips what is already stored.
    """
    from feewatch.persistence.db import get_session
    from feewatch.persistence.repo import ProgressRepository

    config = bootstrap(config_path)
    source_config = _resolve_source(config, source)

    if not yes and not typer.confirm(
        f"Reset '{source_config.source_id}' to height {source_config.floor_height - 1}?",
        default=False,
    ):
        raise typer.Abort()

    with get_session() as session:
        progress = ProgressRepository(session).reset(
            source_config.source_id,
            source_config.floor_height,
        )

    console.print(
        f"[green]OK[/green] {source_config.source_id} reset to height "
        f"{progress.last_scanned_height}"
    )
