"""
Retry utilities with tenacity.

Provides the backoff policy and the bounded retry loop wrapped around
every network-facing upstream call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt

from .ratelimit import RateLimitClassifier

if TYPE_CHECKING:
    from feewatch.core.config.models import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]
ReconnectFunc = Callable[[], Awaitable[None]]


# Default retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 5 * 60 * 1000


class BackoffPolicy:
    """Retry delay and retry budget, independent of failure classification.

    Attempts are zero-indexed.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
        exponential: bool = True,
    ):
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.exponential = exponential

    @classmethod
    def from_config(cls, config: "RetryConfig") -> "BackoffPolicy":
        return cls(
            max_retries=config.max_retries,
            base_delay_ms=config.base_delay_ms,
            max_delay_ms=config.max_delay_ms,
            exponential=config.exponential,
        )

    def delay_ms(self, attempt: int) -> int:
        """Delay before retrying after the given attempt failed."""
        if not self.exponential:
            return self.base_delay_ms
        return min(self.max_delay_ms, self.base_delay_ms * 2 ** attempt)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries


@dataclass
class _CallState:
    """Per-call bookkeeping for one retried upstream operation."""

    next_delay_ms: int = 0
    reconnect_used: bool = False
    reconnect_pending: bool = False


class UpstreamRetrier:
    """Bounded classify/sleep/reconnect loop for upstream calls.

    - rate limited: sleep the classified delay and retry
    - transport unusable: rebuild the transport once per call, back off, retry
    - anything else, or budget exhausted: re-raise the original failure
    """

    def __init__(
        self,
        policy: BackoffPolicy | None = None,
        classifier: RateLimitClassifier | None = None,
        *,
        reconnect: ReconnectFunc | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.policy = policy or BackoffPolicy()
        self.classifier = classifier or RateLimitClassifier()
        self._reconnect = reconnect
        self._sleep = sleep

    async def call(
        self,
        operation: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Run ``func`` under the retry rules.

        Args:
            operation: Name used in log records
            func: Coroutine function performing the upstream call

        Returns:
            Whatever ``func`` returns on its first successful attempt
        """
        state = _CallState()

        def should_retry(retry_state: RetryCallState) -> bool:
            outcome = retry_state.outcome
            if outcome is None or not outcome.failed:
                return False

            attempt = retry_state.attempt_number - 1
            if not self.policy.should_retry(attempt):
                return False

            error = outcome.exception()
            info = self.classifier.analyze(error)
            if info.is_rate_limit:
                self.classifier.log_rate_limit(info, attempt=attempt)
                state.next_delay_ms = info.retry_delay_ms or self.policy.delay_ms(attempt)
                return True

            if (
                self._reconnect is not None
                and not state.reconnect_used
                and self.classifier.is_connection_lost(error)
            ):
                state.reconnect_used = True
                state.reconnect_pending = True
                state.next_delay_ms = self.policy.delay_ms(attempt)
                return True

            return False

        def wait(retry_state: RetryCallState) -> float:
            return state.next_delay_ms / 1000

        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "%s failed (%s), retrying in %d ms",
                operation,
                error,
                state.next_delay_ms,
                extra={
                    "attempt": retry_state.attempt_number,
                    "retry_delay_ms": state.next_delay_ms,
                },
            )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_retries + 1),
            wait=wait,
            retry=should_retry,
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                if state.reconnect_pending:
                    state.reconnect_pending = False
                    logger.info("Rebuilding upstream connection before retrying %s", operation)
                    assert self._reconnect is not None
                    await self._reconnect()
                return await func(*args, **kwargs)

        raise RuntimeError(f"retry loop for {operation} exited without a result")
