"""Request budget, retry policy and cancellation primitives for the fetcher.

The rate limiter is the only process-wide mutable state the fetcher shares
between worker threads. It keeps the timestamps of requests admitted in the
trailing window and admits a new request only while that count is below the
budget.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from loguru import logger

from curtailment_ledger.errors import FetchCancelled, UpstreamError

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation signal with an optional deadline."""

    def __init__(
        self,
        deadline: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._event = threading.Event()
        self._deadline = deadline
        self._clock = clock

    @classmethod
    def with_timeout(cls, seconds: float) -> CancellationToken:
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and self._clock() >= self._deadline

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise FetchCancelled("Fetch cancelled or deadline exceeded")

    def sleep(self, seconds: float) -> None:
        """Sleep up to ``seconds``, waking early and raising on cancellation."""
        if self._deadline is not None:
            seconds = min(seconds, max(0.0, self._deadline - self._clock()))
        self._event.wait(seconds)
        self.raise_if_cancelled()


class SlidingWindowRateLimiter:
    """Admit at most ``max_requests`` in any trailing ``window_seconds``."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = 60.0,
        check_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests <= 0:
            raise ValueError(f"max_requests must be > 0, got {max_requests}")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.check_interval = check_interval
        self._clock = clock
        self._timestamps: deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    def in_window(self) -> int:
        """Number of requests admitted in the trailing window."""
        with self._lock:
            self._prune(self._clock())
            return len(self._timestamps)

    def try_acquire(self) -> bool:
        """Admit one request if the budget allows it."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._timestamps) < self.max_requests:
                self._timestamps.append(now)
                return True
            return False

    def acquire(self, cancel: CancellationToken | None = None) -> float:
        """Block until a request is admitted.

        Returns:
            Seconds spent waiting for budget.
        """
        started = self._clock()
        throttled = False
        while True:
            if cancel is not None:
                cancel.raise_if_cancelled()
            if self.try_acquire():
                waited = self._clock() - started
                if throttled:
                    logger.debug("Rate limit released after {:.2f}s", waited)
                return waited
            if not throttled:
                logger.info(
                    "Rate limit reached ({} requests / {:.0f}s), waiting",
                    self.max_requests,
                    self.window_seconds,
                )
                throttled = True
            if cancel is not None:
                cancel.sleep(self.check_interval)
            else:
                time.sleep(self.check_interval)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``base_delay * multiplier**(n-1)`` capped at ``max_delay``.

    Attributes:
        max_attempts: Total attempts including the first call.
        base_delay: Delay before the second attempt (seconds).
        max_delay: Upper bound on any single delay (seconds).
        multiplier: Growth factor between successive delays.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based)."""
        return min(self.base_delay * self.multiplier ** (retry_number - 1), self.max_delay)

    def delays(self) -> list[float]:
        """Every delay this policy would wait for a call that always fails."""
        return [self.delay_for(n) for n in range(1, self.max_attempts)]

    def call(
        self,
        fn: Callable[[], T],
        *,
        retry_on: tuple[type[BaseException], ...] = (UpstreamError,),
        cancel: CancellationToken | None = None,
        sleep: Callable[[float], None] | None = None,
        label: str = "",
    ) -> T:
        """Run ``fn`` until it succeeds or attempts are exhausted.

        The last retryable error is re-raised after the final attempt;
        non-retryable errors propagate immediately.
        """
        if sleep is None:
            sleep = cancel.sleep if cancel is not None else time.sleep

        for attempt in range(1, self.max_attempts + 1):
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                return fn()
            except retry_on as exc:
                if attempt >= self.max_attempts:
                    logger.error(
                        "{}Giving up after {} attempts: {}", label, attempt, exc
                    )
                    raise
                wait = self.delay_for(attempt)
                logger.warning(
                    "{}Attempt {}/{} failed: {}. Retrying in {:.1f}s",
                    label,
                    attempt,
                    self.max_attempts,
                    exc,
                    wait,
                )
                sleep(wait)
        raise AssertionError("unreachable")
