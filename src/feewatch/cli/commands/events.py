"""
Stored event query commands.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ..bootstrap import bootstrap

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    help="Query stored events",
    no_args_is_help=True,
)


def _short(value: str, keep: int = 10) -> str:
    if len(value) <= keep * 2:
        return value
    return f"{value[:keep]}...{value[-4:]}"


@app.command("list")
def list_events(
    source: Optional[str] = typer.Option(
        None,
        "--source",
        "-s",
        help="Filter by source",
    ),
    integrator: Optional[str] = typer.Option(
        None,
        "--integrator",
        "-i",
        help="Filter by integrator address",
    ),
    token: Optional[str] = typer.Option(
        None,
        "--token",
        "-t",
        help="Filter by token address",
    ),
    from_height: Optional[int] = typer.Option(
        None,
        "--from",
        help="Lowest block height (inclusive)",
    ),
    to_height: Optional[int] = typer.Option(
        None,
        "--to",
        help="Highest block height (inclusive)",
    ),
    limit: int = typer.Option(
        20,
        "--limit",
        "-n",
        help="Maximum results to show",
    ),
    offset: int = typer.Option(
        0,
        "--offset",
        help="Results to skip",
    ),
    format: str = typer.Option(
        "table",
        "--format",
        "-f",
        help="Output format (table, json)",
    ),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to app.yaml",
    ),
) -> None:
    """List stored events, oldest first.

    Examples:
        feewatch events list --integrator 0xabc... --limit 50
        feewatch events list --from 77000000 --to 77010000 --format json
    """
    from feewatch.persistence.db import get_session
    from feewatch.persistence.repo import EventRepository

    bootstrap(config_path)

    filters = {
        "source_id": source,
        "integrator": integrator,
        "token": token,
        "from_height": from_height,
        "to_height": to_height,
    }

    with get_session() as session:
        repo = EventRepository(session)
        total = repo.count(**filters)
        events = repo.list_events(**filters, limit=limit, offset=offset)

    if not events:
        console.print("[dim]No events found matching criteria.[/dim]")
        return

    if format == "json":
        import json
        data = [
            {
                "source_id": e.source_id,
                "token": e.token,
                "integrator": e.integrator,
                "integrator_fee": e.integrator_fee,
                "protocol_fee": e.protocol_fee,
                "block_height": e.block_height,
                "tx_hash": e.tx_hash,
                "log_index": e.log_index,
                "block_timestamp": e.block_timestamp.isoformat(),
            }
            for e in events
        ]
        console.print_json(json.dumps(data))
        return

    table = Table(
        title=f"Events ({len(events)} of {total} shown)",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Block", justify="right")
    table.add_column("Time", style="dim")
    table.add_column("Integrator", style="cyan")
    table.add_column("Token")
    table.add_column("Integrator Fee", justify="right", style="green")
    table.add_column("Protocol Fee", justify="right")
    table.add_column("Tx", style="dim")

    for event in events:
        table.add_row(
            str(event.block_height),
            event.block_timestamp.strftime("%Y-%m-%d %H:%M"),
            _short(event.integrator),
            _short(event.token),
            event.integrator_fee,
            event.protocol_fee,
            f"{_short(event.tx_hash)}:{event.log_index}",
        )

    console.print(table)
