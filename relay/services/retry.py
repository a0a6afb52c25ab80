"""Retry and polling helpers built on Tenacity."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

import httpx
from botocore.exceptions import (
    ConnectTimeoutError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from tenacity import (
    AsyncRetrying,
    after_log,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
    wait_none,
)

from relay.utils.logger import log

T = TypeVar("T")

NETWORK_ERRORS = (
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


# === Retry Decorators ===


def retry_once_inline():
    """One immediate extra attempt on network errors, no backoff.

    Use for: media download and media upload during transcription.
    """
    return retry(
        stop=stop_after_attempt(2),
        wait=wait_none(),
        retry=retry_if_exception_type(NETWORK_ERRORS),
        before_sleep=before_sleep_log(log, logging.WARNING),
        reraise=True,
    )


def retry_on_network_error(max_attempts: int = 3):
    """Retry decorator for network/connection errors with exponential backoff.

    Use for: history reads/writes, backend-independent HTTP calls.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type(NETWORK_ERRORS),
        before_sleep=before_sleep_log(log, logging.WARNING),
        after=after_log(log, logging.DEBUG),
        reraise=True,
    )


# === Polling ===


@dataclass
class PollResult(Generic[T]):
    value: T
    attempts: int
    terminal: bool


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    is_terminal: Callable[[T], bool],
    interval: float,
    max_attempts: int,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> PollResult[T]:
    """Call ``fetch`` every ``interval`` seconds until ``is_terminal`` holds.

    Stops after ``max_attempts`` calls whatever the outcome, so the total
    wait is bounded by ``interval * (max_attempts - 1)`` plus the fetch time.
    Exceptions raised by ``fetch`` abort polling and propagate.

    Returns:
        PollResult with the last observed value, the number of fetches made
        and whether that value was terminal.
    """
    attempts = 0

    async def observe() -> T:
        nonlocal attempts
        attempts += 1
        return await fetch()

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(interval),
        retry=retry_if_result(lambda value: not is_terminal(value)),
        retry_error_callback=lambda state: state.outcome.result(),
        sleep=sleep,
    )
    value = await retrying(observe)
    return PollResult(value=value, attempts=attempts, terminal=is_terminal(value))
