"""Bounded retries with exponential backoff and a global deadline."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

_JITTER_RANDOM = secrets.SystemRandom()

T = TypeVar("T")


class RetryError(RuntimeError):
    """Raised when every attempt failed or the global deadline passed."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        last_error: BaseException | None,
        timed_out: bool = False,
    ) -> None:
        """Record how many attempts ran and the final underlying error."""
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
        self.timed_out = timed_out


@dataclass(frozen=True, slots=True)
class RetryOptions:
    """Configuration for retry behavior.

    The delay before attempt ``n + 1`` is
    ``initial_delay_seconds * backoff_multiplier ** (n - 1)``, capped at
    ``max_delay_seconds``, plus up to ``jitter_seconds`` of random jitter.
    ``global_timeout_seconds`` bounds all attempts and waits combined.
    """

    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    backoff_multiplier: float = 2.0
    jitter_seconds: float = 0.5
    global_timeout_seconds: float | None = None


def compute_backoff_delay(attempt: int, options: RetryOptions) -> float:
    """Return the base delay (without jitter) after the 1-based `attempt`."""
    exponent = max(attempt - 1, 0)
    delay = options.initial_delay_seconds * (options.backoff_multiplier**exponent)
    return min(delay, options.max_delay_seconds)


async def wait_before_retry(
    attempt: int,
    options: RetryOptions,
    *,
    remaining_seconds: float | None = None,
) -> None:
    """Sleep for the backoff delay, never past the remaining global budget."""
    base = compute_backoff_delay(attempt, options)
    jitter = _JITTER_RANDOM.random() * options.jitter_seconds
    delay = min(options.max_delay_seconds, base + jitter)
    if remaining_seconds is not None:
        delay = min(delay, max(remaining_seconds, 0.0))
    if delay > 0:
        await asyncio.sleep(delay)


def _always_retry(_error: BaseException) -> bool:
    return True


async def with_retry(
    operation: Callable[[int], Awaitable[T]],
    *,
    options: RetryOptions | None = None,
    should_retry: Callable[[BaseException], bool] | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    log_context: str = "",
) -> T:
    """Run `operation` until it succeeds, retries run out, or time is up.

    Args:
        operation: Coroutine factory receiving the 1-based attempt number.
        options: Retry configuration.
        should_retry: Predicate deciding whether a caught error is retryable.
            Non-retryable errors propagate unchanged.
        retry_on: Exception classes considered at all.
        log_context: Label included in retry log lines.

    Returns:
        The first successful result.

    Raises:
        RetryError: When all attempts failed or the global deadline passed.

    """
    retry_options = options or RetryOptions()
    predicate = should_retry or _always_retry
    context_suffix = f" for {log_context}" if log_context else ""
    started_at = time.monotonic()
    deadline = (
        started_at + retry_options.global_timeout_seconds
        if retry_options.global_timeout_seconds is not None
        else None
    )
    last_error: BaseException | None = None
    attempts_made = 0

    for attempt in range(1, retry_options.max_attempts + 1):
        remaining = None if deadline is None else deadline - time.monotonic()
        if remaining is not None and remaining <= 0:
            message = (
                f"Global timeout of {retry_options.global_timeout_seconds}s "
                f"exceeded after {attempts_made} attempt(s){context_suffix}"
            )
            raise RetryError(
                message,
                attempts=attempts_made,
                last_error=last_error,
                timed_out=True,
            )

        attempts_made = attempt
        try:
            if remaining is None:
                return await operation(attempt)
            async with asyncio.timeout(remaining):
                return await operation(attempt)
        except retry_on as exc:
            last_error = exc
            if not predicate(exc):
                raise
            if attempt >= retry_options.max_attempts:
                break
            logger.warning(
                "Transient error%s, retrying (%s/%s): %s",
                context_suffix,
                attempt,
                retry_options.max_attempts,
                exc,
            )
            remaining = None if deadline is None else deadline - time.monotonic()
            await wait_before_retry(
                attempt,
                retry_options,
                remaining_seconds=remaining,
            )

    message = f"All {attempts_made} attempt(s) failed{context_suffix}"
    raise RetryError(message, attempts=attempts_made, last_error=last_error)
