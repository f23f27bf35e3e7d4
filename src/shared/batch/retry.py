"""Retry helpers for network operations with exponential backoff."""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, TypeVar

import httpcore
import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_NETWORK_ERRORS = (
    httpx.ConnectError,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
    httpx.LocalProtocolError,
    httpx.RemoteProtocolError,
    httpcore.LocalProtocolError,
    httpcore.RemoteProtocolError,
    ConnectionError,
    TimeoutError,
)


def is_network_error(exc: BaseException) -> bool:
    """Return True when ``exc`` is a connection/protocol/timeout failure."""
    return isinstance(exc, RETRYABLE_NETWORK_ERRORS)


def compute_backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    rng: Optional[random.Random] = None,
) -> float:
    """Exponential backoff with jitter.

    The delay is ``base_delay * 2 ** attempt`` plus a random jitter of up to one
    ``base_delay``, capped at ``max_delay``. For a fixed base the result never
    decreases as ``attempt`` grows, except that jitter is absorbed by the cap.

    Args:
        attempt: Retry attempt number, starting at 0
        base_delay: Base delay in seconds
        max_delay: Upper bound in seconds
        rng: Optional random source (tests pass a seeded one)

    Returns:
        Delay in seconds
    """
    if attempt < 0:
        attempt = 0
    rng = rng or random
    exponential = base_delay * (2 ** attempt)
    # Cap before adding jitter so huge attempt numbers cannot overflow the jitter window
    if exponential >= max_delay:
        return float(max_delay)
    jitter = rng.uniform(0, base_delay)
    # Jitter never exceeds one base unit and the next exponential step is at least
    # two base units higher, so consecutive delays stay ordered.
    return float(min(exponential + jitter, max_delay))


def retry_on_network_error(
    func: Callable[[], T],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Retry a function on network/protocol errors with exponential backoff.

    Args:
        func: Callable to retry (should take no arguments)
        max_retries: Maximum number of attempts
        initial_delay: Initial delay in seconds (doubles each retry)
        sleep: Sleep function, injectable for tests

    Returns:
        Function result

    Raises:
        Exception: Last exception if all retries fail

    Example:
        result = retry_on_network_error(
            lambda: client.table("collection_checkpoints").select("*").execute(),
            max_retries=3,
        )
    """
    delay = initial_delay

    for attempt in range(max_retries):
        try:
            return func()
        except RETRYABLE_NETWORK_ERRORS as e:
            if attempt < max_retries - 1:
                logger.warning(
                    "Network error (attempt %d/%d): %s. Retrying in %.1fs...",
                    attempt + 1,
                    max_retries,
                    e,
                    delay,
                )
                sleep(delay)
                delay *= 2
            else:
                logger.error("Network error after %d attempts: %s", max_retries, e)
                raise

    raise RuntimeError("Retry loop completed without result or exception")
