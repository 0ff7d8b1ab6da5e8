"""
Logging setup for FeeWatch.

Console output goes through rich with a ``[source from-to]`` prefix; the
optional log file receives JSON lines carrying the scan context fields
(source, block range, head, retry delay) so a long-running scanner can be
followed with ordinary JSON tooling.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any

import orjson
from rich.markup import escape

if TYPE_CHECKING:
    from rich.console import Console

ROOT_LOGGER = "feewatch"

# Extra record attributes copied into JSON log lines
CONTEXT_FIELDS = (
    "source",
    "from_height",
    "to_height",
    "head_height",
    "last_scanned_height",
    "new_events",
    "attempt",
    "retry_delay_ms",
    "retry_minutes",
)

# Third-party loggers that log every JSON-RPC request at INFO/DEBUG
NOISY_LOGGERS = ("web3", "aiohttp", "urllib3", "asyncio")

PLAIN_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

_LEVEL_STYLES = {
    logging.DEBUG: "dim",
    logging.INFO: "default",
    logging.WARNING: "yellow",
    logging.ERROR: "red",
    logging.CRITICAL: "bold red",
}


def json_dumps(obj: Any) -> str:
    return orjson.dumps(obj, default=str).decode("utf-8")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, timestamped when the record was made."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (field, getattr(record, field))
            for field in CONTEXT_FIELDS
            if hasattr(record, field)
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json_dumps(payload)


def _context_prefix(record: logging.LogRecord) -> str:
    source = getattr(record, "source", None)
    if source is None:
        return ""
    from_height = getattr(record, "from_height", None)
    to_height = getattr(record, "to_height", None)
    if from_height is not None and to_height is not None:
        label = f"[{source} {from_height}-{to_height}]"
    else:
        label = f"[{source}]"
    return f"[cyan]{escape(label)}[/cyan] "


class RichConsoleHandler(logging.Handler):
    """Renders records on a rich console, coloured by level."""

    def __init__(self, console: "Console | None" = None, level: int = logging.INFO):
        super().__init__(level)
        if console is None:
            from rich.console import Console

            console = Console(stderr=True)
        self.console = console

    def emit(self, record: logging.LogRecord) -> None:
        try:
            style = _LEVEL_STYLES.get(record.levelno, "default")
            self.console.print(
                f"{_context_prefix(record)}[{style}]{escape(self.format(record))}[/{style}]",
                highlight=False,
            )
            if record.exc_info:
                self.console.print_exception()
        except Exception:
            self.handleError(record)


def setup_logging(
    level: str = "INFO",
    log_file: Path | str | None = None,
    json_format: bool = True,
    rich_console: bool = True,
) -> logging.Logger:
    """Configure the ``feewatch`` logger tree.

    Args:
        level: Console log level name
        log_file: Rotating log file; receives every level down to DEBUG
        json_format: Write the file as JSON lines instead of plain text
        rich_console: Use rich for the console handler

    Returns:
        The ``feewatch`` logger
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    console_handler: logging.Handler
    if rich_console:
        console_handler = RichConsoleHandler(level=numeric_level)
        console_handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(logging.Formatter(PLAIN_FORMAT))
        console_handler.setLevel(numeric_level)
    logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(PLAIN_FORMAT))
        logger.addHandler(file_handler)

    # File output wants DEBUG even when the console is quieter
    logger.setLevel(logging.DEBUG if log_file else numeric_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Logger under the ``feewatch.`` namespace."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}" if name else ROOT_LOGGER)


class ContextualLogger(logging.LoggerAdapter):
    """Adapter stamping the scanned source onto every record.

    The adapter's source overrides any ``source`` passed in ``extra``.
    """

    def __init__(self, logger: logging.Logger, source: str | None = None):
        super().__init__(logger, {})
        self.source = source

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        extra = dict(kwargs.get("extra") or {})
        if self.source:
            extra["source"] = self.source
        kwargs["extra"] = extra
        return msg, kwargs

    def with_context(self, source: str | None = None) -> "ContextualLogger":
        return ContextualLogger(self.logger, source=source or self.source)


def get_contextual_logger(name: str | None = None, source: str | None = None) -> ContextualLogger:
    return ContextualLogger(get_logger(name), source=source)
