"""Backoff harness for eventual-consistency polling.

Remote mutations on EKS are asynchronous: the API accepts a request and the
change only becomes visible to reads later. ``wait_for_with_retryable``
turns that into a synchronous contract for the caller by polling a
condition on an exponential schedule.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass

from .errors import WaitTimeoutError, error_code, is_retryable_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Backoff:
    """Exponential backoff schedule.

    ``steps`` bounds the number of condition calls and ``max_elapsed_seconds``
    bounds the wall-clock time; whichever is hit first ends the wait.
    """

    initial_seconds: float = 1.0
    factor: float = 1.5
    jitter: float = 0.1
    steps: int = 40
    cap_seconds: float = 30.0
    max_elapsed_seconds: float = 600.0

    def delays(self) -> Iterator[float]:
        """Yield the sleep between consecutive attempts (``steps - 1`` values)."""
        delay = self.initial_seconds
        for _ in range(self.steps - 1):
            current = min(delay, self.cap_seconds)
            if self.jitter > 0:
                current += random.uniform(0, current * self.jitter)
            yield current
            delay *= self.factor


async def wait_for_with_retryable(
    backoff: Backoff,
    condition: Callable[[], Awaitable[bool]],
    retryable_codes: Iterable[str] = (),
    operation: str = "wait",
) -> int:
    """Poll ``condition`` until it reports done.

    Args:
        backoff: Schedule of delays between attempts.
        condition: Coroutine function returning True once the wait is over.
        retryable_codes: AWS error codes that mean "not yet", on top of the
            transient errors recognised by ``is_retryable_error``.
        operation: Name used in logs and in the timeout error.

    Returns:
        Number of times ``condition`` was invoked.

    Raises:
        WaitTimeoutError: If the schedule is exhausted first.
        Exception: Any non-retryable error raised by ``condition``.
    """
    retryable = frozenset(retryable_codes)
    delays = backoff.delays()
    start = time.monotonic()
    attempts = 0

    while True:
        attempts += 1
        try:
            if await condition():
                return attempts
        except Exception as e:
            if error_code(e) not in retryable and not is_retryable_error(e):
                raise
            logger.debug(
                "Retryable error while waiting",
                extra={
                    "operation": operation,
                    "attempt": attempts,
                    "error_code": error_code(e),
                    "error": str(e),
                },
            )

        elapsed = time.monotonic() - start
        delay = next(delays, None)
        if delay is None or elapsed + delay > backoff.max_elapsed_seconds:
            raise WaitTimeoutError(operation, elapsed, attempts)

        # asyncio.sleep is a cancellation point
        await asyncio.sleep(delay)
