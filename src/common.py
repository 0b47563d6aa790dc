"""Common utilities for provider calls: bounded polling and retry with backoff."""

import logging
import time
from typing import Callable, Iterator, Optional, TypeVar

from errors import TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def backoff_delays(base: float, cap: float, attempts: int) -> Iterator[float]:
    """Yield exponential backoff delays (base, 2*base, 4*base, ...) capped at cap.

    Yields attempts - 1 delays: one between each pair of attempts.
    """
    delay = base
    for _ in range(max(attempts - 1, 0)):
        yield min(delay, cap)
        delay *= 2


def retry_transient(
    fn: Callable[[], T],
    max_attempts: int = 5,
    base: float = 0.5,
    cap: float = 20.0,
    label: str = '',
    sleep: Callable[[float], None] = time.sleep,
) -> tuple[T, int]:
    """Call fn, retrying on TransientProviderError with exponential backoff.

    Args:
        fn: Zero-argument callable performing one provider call
        max_attempts: Total attempts including the first
        base: First retry delay in seconds
        cap: Max retry delay in seconds
        label: Prefix for log messages
        sleep: Sleep function (injectable for tests)

    Returns:
        (result, attempts) tuple

    Raises:
        TransientProviderError: If every attempt failed transiently
    """
    delays = backoff_delays(base, cap, max_attempts)
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn(), attempt
        except TransientProviderError as e:
            delay = next(delays, None)
            if delay is None:
                logger.error(f"{label}giving up after {attempt} attempt(s): {e}")
                raise
            logger.warning(f"{label}transient error ({e.code}), retrying in {delay:.1f}s "
                           f"(attempt {attempt}/{max_attempts})")
            sleep(delay)


def wait_for(
    check: Callable[[], Optional[T]],
    timeout: float = 600.0,
    interval: float = 2.0,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[T]:
    """Poll check() until it returns a non-None value or timeout elapses.

    The first check runs immediately.

    Returns:
        The first non-None value, or None on timeout
    """
    start = clock()
    while True:
        value = check()
        if value is not None:
            return value
        elapsed = clock() - start
        if elapsed >= timeout:
            return None
        sleep(min(interval, max(timeout - elapsed, 0)))
