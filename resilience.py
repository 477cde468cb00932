"""
Retry-with-backoff wrapper applied to every outbound network call.

Each call-site builds its own ResilientExecutor with a name (used in log
lines), a result classifier, and optionally a hook that releases results
which are about to be retried (eg closing a streamed httpx response).
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

import httpx

log = logging.getLogger(__name__)

T = TypeVar('T')


## default knobs
DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_BASE_DELAY_SECONDS = 2.0
DEFAULT_MAX_DELAY_SECONDS = 30.0


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS
    jitter: bool = True

    def delay_for(self, attempt: int, rng: Callable[[float, float], float] = random.uniform) -> float:
        """
        Returns the sleep before retrying after failed `attempt` (1-based).
        Exponential from `base_delay`, capped at `max_delay`; jitter spreads it by +/-25% and re-applies the cap.
        """
        delay: float = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay = min(delay * rng(0.75, 1.25), self.max_delay)
        return delay


@dataclass(frozen=True)
class RetryEvent:
    """
    Reported to the observability callback before each backoff sleep.
    Exactly one of `exception` / `status_code` is set.
    """

    operation: str
    attempt: int
    delay: float
    exception: BaseException | None = None
    status_code: int | None = None


def log_retry_event(event: RetryEvent) -> None:
    if event.exception is not None:
        log.error(
            f'{event.operation} failed on attempt {event.attempt}; retrying in {event.delay:.1f}s',
            exc_info=event.exception,
        )
    else:
        log.error(
            f'{event.operation} failed on attempt {event.attempt} with StatusCode = {event.status_code}; '
            f'retrying in {event.delay:.1f}s'
        )


def _status_of(result: object) -> int | None:
    return getattr(result, 'status_code', None)


class ResilientExecutor(Generic[T]):
    """
    Runs an async operation, retrying transport failures and retryable results.
    - Retries when the operation raises one of `retry_exceptions`.
    - Retries when `should_retry(result)` is true; anything else returns immediately.
    - Reports every retry to `on_retry` before sleeping.
    - Never exceeds `policy.max_attempts` attempts in total.
    - After the last attempt, re-raises the last exception or returns the last result unchanged.
    """

    def __init__(
        self,
        operation: str,
        *,
        policy: RetryPolicy | None = None,
        should_retry: Callable[[T], bool] | None = None,
        retry_exceptions: tuple[type[BaseException], ...] = (httpx.TransportError,),
        discard: Callable[[T], Awaitable[None]] | None = None,
        on_retry: Callable[[RetryEvent], None] = log_retry_event,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.operation: str = operation
        self.policy: RetryPolicy = policy or RetryPolicy()
        self.should_retry: Callable[[T], bool] = should_retry or (lambda _result: False)
        self.retry_exceptions: tuple[type[BaseException], ...] = retry_exceptions
        self.discard: Callable[[T], Awaitable[None]] | None = discard
        self.on_retry: Callable[[RetryEvent], None] = on_retry
        self.sleep: Callable[[float], Awaitable[None]] = sleep
        self.rng: Callable[[float, float], float] = rng

    async def execute(self, call: Callable[[], Awaitable[T]]) -> T:
        max_attempts: int = max(1, self.policy.max_attempts)
        for attempt in range(1, max_attempts + 1):
            is_last: bool = attempt == max_attempts
            try:
                result: T = await call()
            except self.retry_exceptions as exc:
                if is_last:
                    raise
                delay: float = self.policy.delay_for(attempt, self.rng)
                self.on_retry(RetryEvent(self.operation, attempt, delay, exception=exc))
                await self.sleep(delay)
                continue
            if is_last or not self.should_retry(result):
                return result
            delay = self.policy.delay_for(attempt, self.rng)
            self.on_retry(RetryEvent(self.operation, attempt, delay, status_code=_status_of(result)))
            if self.discard is not None:
                await self.discard(result)
            await self.sleep(delay)
        raise AssertionError('unreachable; the final attempt always returns or raises')
