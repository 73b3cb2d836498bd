"""Bounded retry primitives built on tenacity.

Two separate needs:
- BackoffPolicy: transport retry inside the system clients. A 429 is
  retried with exponential backoff up to a fixed attempt ceiling, then the
  last RateLimitError is re-raised.
- ConsistencyWait: lookup retry inside the synchronizers. A counterpart record
  written by a concurrent webhook is polled a small fixed number of times; if
  it never appears the caller gets ``None`` and records a skip.

Both accept an injectable ``sleep`` coroutine so tests can run them without
real delays.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from src.crmsync.config import Settings
from src.crmsync.sync.errors import RateLimitError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]

# Failures where the server never acted on the request
SAFE_RETRY_ERRORS: tuple[type[BaseException], ...] = (
    RateLimitError,
    httpx.ConnectError,
)

# A timeout may hide a write that went through; only repeatable methods retry it
RETRYABLE_TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    *SAFE_RETRY_ERRORS,
    httpx.TimeoutException,
)

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})


def _log_backoff(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "retry.transport_backoff",
        attempt=retry_state.attempt_number,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(exc) if exc else None,
    )


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff for rate-limited and transient transport failures.

    Delay before retry n is ``base_delay * 2 ** (n - 1)`` capped at
    ``max_delay``; with the defaults: 5s, 10s, 20s, 40s, then give up.
    """

    max_attempts: int = 5
    base_delay: float = 5.0
    max_delay: float = 80.0

    @classmethod
    def from_settings(cls, settings: Settings) -> BackoffPolicy:
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
        )

    def retrying(self, sleep: Sleep = asyncio.sleep, *, idempotent: bool = True) -> AsyncRetrying:
        """Retry loop for one request; non-idempotent requests skip timeouts."""
        errors = RETRYABLE_TRANSPORT_ERRORS if idempotent else SAFE_RETRY_ERRORS
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception_type(errors),
            before_sleep=_log_backoff,
            sleep=sleep,
            reraise=True,
        )


class ConsistencyWait:
    """Poll a lookup until it returns something other than ``None``.

    Args:
        attempts: Total number of lookups, including the first.
        delay: Fixed seconds between lookups.
        sleep: Coroutine used to wait; injectable for tests.
    """

    def __init__(self, attempts: int = 3, delay: float = 3.0, sleep: Sleep = asyncio.sleep) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.attempts = attempts
        self.delay = delay
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, sleep: Sleep = asyncio.sleep) -> ConsistencyWait:
        return cls(
            attempts=settings.CONSISTENCY_WAIT_ATTEMPTS,
            delay=settings.CONSISTENCY_WAIT_DELAY_SECONDS,
            sleep=sleep,
        )

    async def wait_for(
        self,
        lookup: Callable[[], Awaitable[T | None]],
        *,
        description: str,
        **context: Any,
    ) -> T | None:
        """Run ``lookup`` up to ``attempts`` times.

        Returns:
            The first non-None result, or None when every attempt came back
            empty. Exceptions raised by ``lookup`` propagate immediately.
        """

        def _before_sleep(retry_state: RetryCallState) -> None:
            logger.info(
                "retry.waiting_for_counterpart",
                waiting_for=description,
                attempt=retry_state.attempt_number,
                max_attempts=self.attempts,
                **context,
            )

        def _give_up(retry_state: RetryCallState) -> None:
            logger.info(
                "retry.counterpart_not_found",
                waiting_for=description,
                attempts=retry_state.attempt_number,
                **context,
            )
            return None

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_fixed(self.delay),
            retry=retry_if_result(lambda result: result is None),
            before_sleep=_before_sleep,
            retry_error_callback=_give_up,
            sleep=self._sleep,
        )
        return await retrying(lookup)
