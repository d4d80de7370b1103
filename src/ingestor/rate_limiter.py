"""Shared pacing and retry wrapper for outbound exchange calls.

One RateLimiter instance is created at startup and handed to every exchange
client, so all calls in the process share a single pacing floor.

Each call through ``execute`` first waits until at least
``min_interval_between_calls_ms`` has passed since the last *successful* call,
then runs the operation. Failures are classified:

- rate-limited (error text mentions "rate limit", "too many requests",
  "quota exceeded" or "429"): exponential backoff from
  ``rate_limit_delay_ms``, capped at ``max_delay_ms``; raises
  RateLimitExceeded once ``max_retries`` attempts have failed.
- transient (connection, timeout, socket and ccxt network errors):
  exponential backoff from ``base_delay_ms``, uncapped; the original
  exception is re-raised once ``max_retries`` attempts have failed.
- anything else: re-raised immediately.

Pacing is a soft hint, not a token bucket. The last-call timestamp is read
under a lock but the wait happens outside it, so two callers arriving
together can both see the same timestamp and both proceed after the same
wait.
"""

import asyncio
import socket
import threading
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

import ccxt.async_support as ccxt_async

from ingestor.config import RateLimiterSettings
from ingestor.exceptions import (
    OperationCancelled,
    RateLimitExceeded,
    RateLimiterInvariantError,
)
from ingestor.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "quota exceeded", "429")

RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    socket.timeout,
    socket.gaierror,
    ccxt_async.NetworkError,
)


def is_rate_limit_error(exc: BaseException) -> bool:
    """Return True if the error text looks like an exchange rate-limit response."""
    message = str(exc).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def is_retryable_error(exc: BaseException) -> bool:
    """Return True for network, timeout and socket failures."""
    return isinstance(exc, RETRYABLE_EXCEPTIONS)


async def cancellable_sleep(seconds: float, cancel_event: asyncio.Event | None) -> None:
    """Sleep for ``seconds``, raising OperationCancelled if ``cancel_event`` is set."""
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return

    if cancel_event.is_set():
        raise OperationCancelled("Shutdown requested before wait")
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise OperationCancelled("Shutdown requested during wait")


class RateLimiter:
    """Process-wide call throttle with failure-class-specific retry.

    Safe to share between coroutines and threads: the only mutable state is
    the last-call timestamp, and the lock around it is never held across an
    await.

    Args:
        settings: Retry and pacing policy.
    """

    def __init__(self, settings: RateLimiterSettings) -> None:
        self._settings = settings
        self._last_call: float | None = None  # time.monotonic(), None until first success
        self._lock = threading.Lock()

    @property
    def settings(self) -> RateLimiterSettings:
        return self._settings

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
        cancel_event: asyncio.Event | None = None,
    ) -> T:
        """Run ``operation`` with pacing and retry.

        Args:
            operation: Zero-argument callable returning a fresh awaitable on
                every call (e.g. ``lambda: exchange.fetch_ohlcv(...)``).
            operation_name: Label used in logs and in RateLimitExceeded.
            cancel_event: Shutdown signal; every wait aborts with
                OperationCancelled once it is set.

        Returns:
            Whatever the operation returned on its first successful attempt.

        Raises:
            RateLimitExceeded: All attempts failed with rate-limit errors.
            OperationCancelled: ``cancel_event`` was set during a wait.
            Exception: The original transient error after the final attempt,
                or any other error immediately.
        """
        max_retries = self._settings.max_retries
        attempt = 0

        while attempt < max_retries:
            await self._enforce_min_interval(cancel_event)

            logger.debug(
                "rate_limited_call_attempt",
                operation=operation_name,
                attempt=attempt + 1,
            )

            try:
                result = await operation()
            except Exception as e:
                if is_rate_limit_error(e):
                    attempt += 1
                    if attempt >= max_retries:
                        logger.error(
                            "rate_limit_retries_exhausted",
                            operation=operation_name,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise RateLimitExceeded(operation_name, e) from e

                    delay_ms = min(
                        self._settings.max_delay_ms,
                        self._settings.rate_limit_delay_ms * 2 ** (attempt - 1),
                    )
                    logger.warning(
                        "rate_limit_hit",
                        operation=operation_name,
                        attempt=attempt,
                        max_retries=max_retries,
                        delay_ms=delay_ms,
                    )
                    await cancellable_sleep(delay_ms / 1000, cancel_event)
                    continue

                if is_retryable_error(e):
                    attempt += 1
                    if attempt >= max_retries:
                        logger.error(
                            "retryable_error_retries_exhausted",
                            operation=operation_name,
                            attempts=attempt,
                            exc_info=True,
                        )
                        raise

                    delay_ms = self._settings.base_delay_ms * 2 ** (attempt - 1)
                    logger.warning(
                        "retryable_error",
                        operation=operation_name,
                        attempt=attempt,
                        max_retries=max_retries,
                        delay_ms=delay_ms,
                        error=str(e),
                    )
                    await cancellable_sleep(delay_ms / 1000, cancel_event)
                    continue

                logger.error(
                    "non_retryable_error",
                    operation=operation_name,
                    exc_info=True,
                )
                raise

            with self._lock:
                self._last_call = time.monotonic()

            if attempt > 0:
                logger.info(
                    "rate_limited_call_succeeded_after_retries",
                    operation=operation_name,
                    attempts=attempt + 1,
                )
            return result

        raise RateLimiterInvariantError(
            f"Retry loop for {operation_name} ended without a result"
        )

    async def _enforce_min_interval(self, cancel_event: asyncio.Event | None) -> None:
        """Wait out the rest of the pacing interval, if any.

        The delay is computed under the lock; the wait happens after releasing it.
        """
        delay: float | None = None
        with self._lock:
            if self._last_call is not None:
                elapsed = time.monotonic() - self._last_call
                min_interval = self._settings.min_interval_between_calls_ms / 1000
                if elapsed < min_interval:
                    delay = min_interval - elapsed

        if delay is not None:
            logger.debug("enforcing_min_interval", delay_ms=round(delay * 1000, 1))
            await cancellable_sleep(delay, cancel_event)
