"""
Database commands: schema creation and Alembic migrations.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from alembic import command
from alembic.config import Config
from rich.console import Console

from ..bootstrap import bootstrap

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    help="Database operations",
    no_args_is_help=True,
)

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "persistence" / "migrations"

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to app.yaml",
)


def alembic_config(database_url: str) -> Config:
    """Alembic config pointing at the packaged migrations (no alembic.ini)."""
    cfg = Config()
    cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    # ConfigParser interpolation: a literal % must be doubled
    cfg.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))
    return cfg


def _run_with_engine(database_url: str, operation, *args, **kwargs) -> None:
    """Run an Alembic command over a connection from the bound engine."""
    from feewatch.persistence.db import get_engine

    cfg = alembic_config(database_url)
    with get_engine().begin() as connection:
        cfg.attributes["connection"] = connection
        operation(cfg, *args, **kwargs)


def stamp_head(database_url: str) -> None:
    """Record the newest migration as applied to a freshly created schema."""
    _run_with_engine(database_url, command.stamp, "head")


@app.command("init")
def init_database(
    drop_existing: bool = typer.Option(
        False,
        "--drop",
        help="Drop existing tables (and all stored events) first",
    ),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Create the schema and mark it as current for migrations."""
    from feewatch.persistence.db import drop_db, init_db

    config = bootstrap(config_path)

    if drop_existing:
        if not typer.confirm("This will DELETE ALL stored events and progress. Continue?", default=False):
            raise typer.Abort()
        console.print("[yellow]Dropping existing tables...[/yellow]")
        drop_db(config.database)

    console.print("Creating database schema...")
    init_db(config.database)
    stamp_head(config.database.url)

    console.print("[green]OK[/green] Database initialized at revision head")


@app.command("migrate")
def run_migrations(
    revision: str = typer.Option(
        "head",
        "--revision",
        "-r",
        help="Target revision",
    ),
    sql: bool = typer.Option(
        False,
        "--sql",
        help="Print the SQL instead of executing it",
    ),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Upgrade the schema to a revision."""
    config = bootstrap(config_path)

    if sql:
        command.upgrade(alembic_config(config.database.url), revision, sql=True)
        return

    console.print(f"Migrating to: {revision}")
    try:
        _run_with_engine(config.database.url, command.upgrade, revision)
    except Exception as e:
        err_console.print(f"[red]Migration failed:[/red] {e}")
        raise typer.Exit(1)
    console.print("[green]OK[/green] Migrations complete")


@app.command("current")
def show_current(config_path: Optional[Path] = ConfigOption) -> None:
    """Show the schema revision recorded in the database."""
    config = bootstrap(config_path)

    console.print("[bold]Current database revision:[/bold]")
    _run_with_engine(config.database.url, command.current, verbose=True)
