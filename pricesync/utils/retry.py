"""Bounded retry with exponential backoff, shared by every external call."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    """Raised when every attempt failed; wraps the last exception."""

    def __init__(self, name: str, attempts: int, last_exc: BaseException | None):
        super().__init__(f"{name}: failed after {attempts} attempts: {last_exc}")
        self.attempts = attempts
        self.last_exc = last_exc


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 2.0,
    timeout: Optional[float] = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    give_up_on: tuple[type[BaseException], ...] = (),
    name: str = "call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await ``fn()`` until it succeeds or attempts run out.

    Delay before attempt ``n + 1`` is ``base_delay * 2 ** (n - 1)``, so with the
    defaults a call is tried at 0s, +2s and +4s. Each attempt is bounded by
    ``timeout`` when given; a timeout counts as a failed attempt.

    Args:
        fn: Zero-argument coroutine factory (called once per attempt)
        max_attempts: Total attempts including the first one (>= 1)
        base_delay: Delay in seconds after the first failure
        timeout: Per-attempt timeout in seconds
        retry_on: Exception types that trigger another attempt
        give_up_on: Exception types re-raised immediately
        name: Label used in log messages
        sleep: Sleep coroutine (injectable for tests)

    Returns:
        Result of the first successful attempt

    Raises:
        RetryExhaustedError: If all attempts failed
        Any exception in ``give_up_on`` or outside ``retry_on``
    """
    attempts = max(1, max_attempts)
    last_exc: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            if timeout is not None:
                return await asyncio.wait_for(fn(), timeout=timeout)
            return await fn()
        except give_up_on:
            raise
        except asyncio.TimeoutError as e:
            last_exc = e
            reason = f"timed out after {timeout}s"
        except retry_on as e:
            last_exc = e
            reason = f"{type(e).__name__}: {e}"

        if attempt < attempts:
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                f"{name}: {reason}, retrying in {delay:.1f}s "
                f"(attempt {attempt}/{attempts})"
            )
            await sleep(delay)

    raise RetryExhaustedError(name, attempts, last_exc) from last_exc
