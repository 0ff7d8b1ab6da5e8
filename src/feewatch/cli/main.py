"""
FeeWatch CLI - Main entry point.

A terminal-first indexer for FeesCollected events with persistent,
gap-free scanning progress.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.traceback import install as install_rich_traceback

from feewatch import __app_name__, __version__

load_dotenv()

install_rich_traceback(show_locals=False, width=120)

# Windows consoles default to a legacy code page
if sys.platform == "win32":
    os.environ.setdefault("PYTHONIOENCODING", "utf-8")
    if hasattr(sys.stdout, "reconfigure"):
        try:
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        except (AttributeError, OSError):
            pass

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name=__app_name__,
    help="Fee event indexer with persistent scanning progress",
    rich_markup_mode="rich",
    no_args_is_help=True,
    pretty_exceptions_show_locals=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]{__app_name__}[/bold cyan] version [green]{__version__}[/green]")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """FeeWatch - FeesCollected event indexer."""
    pass


# =============================================================================
# Import and register subcommand modules
# =============================================================================

from .commands import db, events, scan  # noqa: E402

app.add_typer(scan.app, name="scan", help="Run and reset scanners")
app.add_typer(events.app, name="events", help="Query stored events")
app.add_typer(db.app, name="db", help="Database operations")


# =============================================================================
# Init Command
# =============================================================================


@app.command()
def init(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite existing configuration",
    ),
) -> None:
    """Initialize FeeWatch database and configuration.

    Creates required directories, the default configuration file,
    and the database schema.
    """
    from rich.progress import Progress, SpinnerColumn, TextColumn

    from feewatch.persistence.db import init_db

    from .bootstrap import load_config_or_exit
    from .commands.db import stamp_head

    app_config_path = Path("configs/app.yaml")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Creating directories...", total=None)

        for dir_path in (Path("configs"), Path("data"), Path("logs")):
            dir_path.mkdir(parents=True, exist_ok=True)

        progress.update(task, description="Creating default configuration...")

        if not app_config_path.exists() or force:
            _create_default_app_config(app_config_path)

        progress.update(task, description="Initializing database...")

        config = load_config_or_exit(app_config_path)
        init_db(config.database)
        stamp_head(config.database.url)

        progress.update(task, description="Done!")

    console.print()
    console.print(Panel.fit(
        "[bold green]OK - FeeWatch initialized successfully![/bold green]\n\n"
        "Created:\n"
        "  - [cyan]configs/app.yaml[/cyan] - Application configuration\n"
        "  - [cyan]data/[/cyan] - Database storage\n"
        "  - [cyan]logs/[/cyan] - Log files\n\n"
        "Next steps:\n"
        "  1. Set the RPC endpoint: [yellow]export FEEWATCH_RPC_URL=...[/yellow]\n"
        "  2. Scan one batch: [yellow]feewatch scan once[/yellow]\n"
        "  3. Keep scanning: [yellow]feewatch scan run[/yellow]",
        title="[bold]Initialization Complete[/bold]",
        border_style="green",
    ))


def _create_default_app_config(path: Path) -> None:
    """Create default app.yaml configuration."""
    default_config = """\
# FeeWatch Configuration
#
# FEEWATCH_DATABASE_URL, FEEWATCH_RPC_URL, FEEWATCH_CONTRACT_ADDRESS,
# FEEWATCH_BATCH_SIZE, FEEWATCH_SCAN_INTERVAL_MS and FEEWATCH_LOG_LEVEL
# override the values below when set.

data_dir: data

# Database settings
database:
  url: sqlite:///data/feewatch.db
  echo: false

# Logging settings
logging:
  level: INFO
  file: logs/feewatch.log
  json_format: true
  rich_console: true

# Chain access (shared by all sources unless overridden)
chain:
  rpc_url: https://polygon-rpc.com
  contract_address: "0xbD6C7B0d2f68c2b7805d88388319cfB6EcB50eA9"
  request_timeout_seconds: 30

# Scan pacing
scanner:
  batch_size: 10000
  maintenance_interval_ms: 60000
  catch_up_pacing_ms: 2000

# Upstream retries
retry:
  max_retries: 3
  base_delay_ms: 1000
  max_delay_ms: 300000
  exponential: true

# One scanner per source
sources:
  - source_id: polygon
    floor_height: 77000000
"""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(default_config, encoding="utf-8")


# =============================================================================
# Validate Command
# =============================================================================


@app.command()
def validate(
    config_path: Path = typer.Argument(
        Path("configs/app.yaml"),
        help="Configuration file to validate",
    ),
) -> None:
    """Validate a configuration file without running anything."""
    from feewatch.core.config import validate_app_config_file

    errors = validate_app_config_file(config_path)
    if errors:
        err_console.print(f"[red]Invalid configuration:[/red] {config_path}")
        for error in errors:
            err_console.print(f"  - {error}")
        raise typer.Exit(1)

    console.print(f"[green]OK[/green] {config_path} is valid")


# =============================================================================
# Status Command
# =============================================================================


@app.command()
def status(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to app.yaml",
    ),
) -> None:
    """Show scanning progress per source."""
    from rich.table import Table
    from sqlalchemy.exc import OperationalError

    from feewatch.persistence.db import get_session, schema_ready
    from feewatch.persistence.repo import EventRepository, ProgressRepository

    from .bootstrap import bootstrap

    config = bootstrap(config_path)

    if not schema_ready():
        err_console.print("[red]Database not initialized. Run:[/red] feewatch init")
        raise typer.Exit(1)

    console.print()
    console.print("[bold]FeeWatch Status[/bold]")
    console.print()

    try:
        with get_session() as session:
            progress_repo = ProgressRepository(session)
            event_repo = EventRepository(session)

            table = Table(title="Sources", show_header=True, header_style="bold magenta")
            table.add_column("Source", style="cyan")
            table.add_column("Status", justify="center")
            table.add_column("Last Scanned", justify="right")
            table.add_column("Head", justify="right")
            table.add_column("Behind", justify="right")
            table.add_column("Events", justify="right")
            table.add_column("Last Scan", justify="right")
            table.add_column("Error", max_width=40)

            for source in config.sources:
                progress = progress_repo.find(source.source_id)
                events_count = event_repo.count(source_id=source.source_id)

                if progress is None:
                    table.add_row(
                        source.source_id,
                        "[dim]new[/dim]",
                        str(source.floor_height - 1),
                        "[dim]-[/dim]",
                        "[dim]-[/dim]",
                        str(events_count),
                        "Never",
                        "",
                    )
                    continue

                status_style = {
                    "idle": "green",
                    "scanning": "yellow",
                    "error": "red",
                }.get(progress.status, "white")
                behind = progress.blocks_behind

                table.add_row(
                    source.source_id,
                    f"[{status_style}]{progress.status}[/{status_style}]",
                    str(progress.last_scanned_height),
                    str(progress.known_head_height) if progress.known_head_height is not None else "[dim]-[/dim]",
                    str(behind) if behind is not None else "[dim]-[/dim]",
                    str(events_count),
                    progress.last_scan_time.strftime("%Y-%m-%d %H:%M"),
                    progress.last_error or "",
                )
    except OperationalError as e:
        err_console.print(f"[red]Database error:[/red] {e}")
        raise typer.Exit(1)

    console.print(table)


# =============================================================================
# Entry Point
# =============================================================================


def run() -> None:
    """Run the CLI application."""
    app()


if __name__ == "__main__":
    run()
