"""Bounded retries with a per-attempt timeout for blocking remote calls."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_timeout(fn: Callable[[], T], timeout: float | None) -> T:
    """Run ``fn`` and give up after ``timeout`` seconds.

    The worker thread is abandoned on timeout; the caller treats the step as
    failed and moves on.

    Raises:
        TimeoutError: If ``fn`` did not finish in time.
    """
    if timeout is None or timeout <= 0:
        return fn()
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as e:
        future.cancel()
        raise TimeoutError(f"call did not finish within {timeout:.0f}s") from e
    finally:
        executor.shutdown(wait=False)


def with_retries(
    fn: Callable[[], T],
    max_retries: int,
    timeout: float | None = None,
    delay: float = 0.5,
    label: str = "call",
) -> T:
    """Call ``fn`` up to ``max_retries + 1`` times.

    Args:
        fn: Zero-argument callable performing the remote call.
        max_retries: Number of retries after the first attempt.
        timeout: Seconds allowed per attempt (None for no limit).
        delay: Base back-off in seconds, doubled after each failure.
        label: Name used in log messages.

    Returns:
        Result of the first successful attempt.

    Raises:
        Exception: The error of the last attempt.
    """
    attempts = max(0, max_retries) + 1
    for attempt in range(1, attempts + 1):
        try:
            return call_with_timeout(fn, timeout)
        except Exception as e:
            if attempt == attempts:
                raise
            logger.warning(f"{label} failed on attempt {attempt}/{attempts}: {e}")
            if delay > 0:
                time.sleep(delay * 2 ** (attempt - 1))
    raise RuntimeError("unreachable")
