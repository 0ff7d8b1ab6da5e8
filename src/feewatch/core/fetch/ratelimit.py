"""
Upstream failure classification.

Maps an opaque upstream failure (exception, string, JSON-RPC error mapping)
onto a RateLimitInfo, and recognises failures that mean the transport itself
is no longer usable.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping

import orjson

logger = logging.getLogger(__name__)


DEFAULT_RETRY_DELAY_MS = 5 * 60 * 1000


# Delay signatures in priority order; the first match wins.
_DELAY_PATTERNS: list[tuple[re.Pattern[str], Callable[[re.Match[str]], int]]] = [
    # "retry in 10m0s", "retry in 5m30s"
    (
        re.compile(r"retry in (\d+)m(\d+)s", re.IGNORECASE),
        lambda m: (int(m.group(1)) * 60 + int(m.group(2))) * 1000,
    ),
    # "retry in 5m"
    (
        re.compile(r"retry in (\d+)m", re.IGNORECASE),
        lambda m: int(m.group(1)) * 60 * 1000,
    ),
    # "retry in 30s"
    (
        re.compile(r"retry in (\d+)s", re.IGNORECASE),
        lambda m: int(m.group(1)) * 1000,
    ),
    # "retry after 300 seconds"
    (
        re.compile(r"retry after (\d+) seconds?", re.IGNORECASE),
        lambda m: int(m.group(1)) * 1000,
    ),
    # Retry-After header echoed into the message
    (
        re.compile(r"retry-after:\s*(\d+)", re.IGNORECASE),
        lambda m: int(m.group(1)) * 1000,
    ),
]

_RATE_LIMIT_PATTERNS = [
    re.compile(r"rate limit", re.IGNORECASE),
    re.compile(r"too many requests", re.IGNORECASE),
    re.compile(r"throttle", re.IGNORECASE),
    re.compile(r"quota exceeded", re.IGNORECASE),
    re.compile(r"429"),  # HTTP 429 Too Many Requests
    re.compile(r"code.*-32090", re.IGNORECASE),  # JSON-RPC rate limit error code
]

_CONNECTION_LOST_PATTERNS = [
    re.compile(r"connection (reset|refused|closed|aborted)", re.IGNORECASE),
    re.compile(r"server disconnected", re.IGNORECASE),
    re.compile(r"session is closed", re.IGNORECASE),
    re.compile(r"broken pipe", re.IGNORECASE),
]


@dataclass(frozen=True)
class RateLimitInfo:
    """Outcome of classifying one failure. Never persisted."""

    is_rate_limit: bool
    retry_delay_ms: int | None = None

    @property
    def retry_minutes(self) -> int | None:
        """Retry delay rounded up to whole minutes."""
        if self.retry_delay_ms is None:
            return None
        return math.ceil(self.retry_delay_ms / 60_000)


NOT_RATE_LIMITED = RateLimitInfo(is_rate_limit=False)


def extract_error_message(error: Any) -> str:
    """Best-effort text representation of an arbitrary failure.

    An exception raised with a JSON-RPC error mapping as its first argument
    is read through that mapping: its ``message``, followed by its ``code``
    when present.
    """
    if isinstance(error, BaseException):
        payload = error.args[0] if error.args else None
        if isinstance(payload, Mapping) and payload.get("message"):
            message = str(payload["message"])
            if payload.get("code") is not None:
                message = f"{message} (code: {payload['code']})"
            return message
        message = str(error)
        return message or type(error).__name__
    if isinstance(error, str):
        return error
    if isinstance(error, Mapping):
        if error.get("message"):
            return str(error["message"])
        if error.get("reason"):
            return str(error["reason"])
        try:
            return orjson.dumps(error, default=str).decode("utf-8")
        except TypeError:
            return str(error)
    if error is not None:
        for attr in ("message", "reason"):
            value = getattr(error, attr, None)
            if value:
                return str(value)
    return str(error)


class RateLimitClassifier:
    """Classifies upstream failures into rate-limited / not rate-limited.

    Pure apart from the warning emitted when a rate limit is recognised
    but carries no parseable delay.
    """

    def __init__(self, default_delay_ms: int = DEFAULT_RETRY_DELAY_MS) -> None:
        self.default_delay_ms = default_delay_ms

    def analyze(self, error: Any) -> RateLimitInfo:
        """Classify a failure.

        Args:
            error: Exception, message string, or error mapping

        Returns:
            RateLimitInfo; the delay is always set when rate-limited
        """
        message = extract_error_message(error)

        if not self.is_rate_limit_message(message):
            return NOT_RATE_LIMITED

        delay_ms = self.parse_retry_delay(message)
        if delay_ms is None:
            logger.warning(
                "Could not parse retry delay from rate limit error, using default",
                extra={"retry_delay_ms": self.default_delay_ms},
            )
            delay_ms = self.default_delay_ms

        return RateLimitInfo(is_rate_limit=True, retry_delay_ms=delay_ms)

    @staticmethod
    def is_rate_limit_message(message: str) -> bool:
        return any(pattern.search(message) for pattern in _RATE_LIMIT_PATTERNS)

    @staticmethod
    def parse_retry_delay(message: str) -> int | None:
        """Return the delay in milliseconds named by the message, if any."""
        for pattern, to_ms in _DELAY_PATTERNS:
            match = pattern.search(message)
            if match:
                return to_ms(match)
        return None

    @staticmethod
    def is_connection_lost(error: Any) -> bool:
        """True when the failure means the transport must be rebuilt."""
        if isinstance(error, ConnectionError):
            return True
        message = extract_error_message(error)
        return any(pattern.search(message) for pattern in _CONNECTION_LOST_PATTERNS)

    def log_rate_limit(self, info: RateLimitInfo, **context: Any) -> None:
        """Emit the observability record for a detected rate limit."""
        if not info.is_rate_limit:
            return

        logger.warning(
            "Rate limit reached, waiting %s minute(s) before retrying",
            info.retry_minutes,
            extra={
                "retry_delay_ms": info.retry_delay_ms,
                "retry_minutes": info.retry_minutes,
                **context,
            },
        )
