"""
Shared startup for CLI commands: configuration, logging, database engine.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from feewatch.core.config import AppConfig, ConfigError, load_app_config
from feewatch.core.logging import setup_logging
from feewatch.persistence.db import configure_database

err_console = Console(stderr=True)


def load_config_or_exit(config_path: Path | None = None) -> AppConfig:
    """Load app config, printing the error and exiting on failure."""
    try:
        return load_app_config(config_path)
    except ConfigError as e:
        err_console.print(f"[red]Error loading config:[/red] {e}")
        if e.details:
            err_console.print(f"[dim]{e.details}[/dim]")
        raise typer.Exit(1)


def bootstrap(
    config_path: Path | None = None,
    *,
    log_level: str | None = None,
) -> AppConfig:
    """Load config, configure logging and bind the database engine."""
    config = load_config_or_exit(config_path)
    config.ensure_directories()

    setup_logging(
        level=log_level or config.logging.level,
        log_file=config.logging.file,
        json_format=config.logging.json_format,
        rich_console=config.logging.rich_console,
    )

    configure_database(config.database)
    return config
