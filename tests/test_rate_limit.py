"""Tests for the rate limiter, retry policy and cancellation token."""

import threading
import time

import pytest

from curtailment_ledger.errors import FetchCancelled, UpstreamError, UpstreamFatalError
from curtailment_ledger.ingestion import CancellationToken, RetryPolicy, SlidingWindowRateLimiter


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestSlidingWindowRateLimiter:
    """Tests for SlidingWindowRateLimiter."""

    def test_admits_up_to_budget(self) -> None:
        """Test the budget is enforced within one window."""
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(max_requests=3, window_seconds=10.0, clock=clock)

        assert [limiter.try_acquire() for _ in range(4)] == [True, True, True, False]
        assert limiter.in_window() == 3

    def test_window_slides(self) -> None:
        """Test capacity returns as old requests leave the window."""
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=10.0, clock=clock)
        limiter.try_acquire()
        clock.advance(4.0)
        limiter.try_acquire()

        clock.advance(5.9)
        assert not limiter.try_acquire()

        clock.advance(0.1)
        assert limiter.try_acquire()
        assert limiter.in_window() == 2

    def test_bound_holds_under_concurrent_load(self) -> None:
        """Test many threads together never exceed the budget per window."""
        window = 0.3
        budget = 5
        limiter = SlidingWindowRateLimiter(
            max_requests=budget, window_seconds=window, check_interval=0.005
        )
        peak = 0
        stop = threading.Event()

        def monitor() -> None:
            nonlocal peak
            while not stop.is_set():
                peak = max(peak, limiter.in_window())
                time.sleep(0.001)

        def worker() -> None:
            for _ in range(2):
                limiter.acquire()

        watcher = threading.Thread(target=monitor)
        watcher.start()
        started = time.monotonic()
        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        elapsed = time.monotonic() - started
        stop.set()
        watcher.join()

        # 16 requests at 5 per window need at least three full windows.
        assert elapsed >= 3 * window - 0.02
        assert peak <= budget

    def test_acquire_honours_cancellation(self) -> None:
        """Test a throttled caller gives up once cancelled."""
        limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60.0, check_interval=0.01)
        limiter.acquire()
        token = CancellationToken.with_timeout(0.05)

        with pytest.raises(FetchCancelled):
            limiter.acquire(token)

    def test_rejects_zero_budget(self) -> None:
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(max_requests=0)


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_delays_monotonic_and_capped(self) -> None:
        """Test delays double per attempt up to the cap."""
        policy = RetryPolicy(max_attempts=8, base_delay=1.0, max_delay=10.0)

        delays = policy.delays()

        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0, 10.0]
        assert all(a <= b for a, b in zip(delays, delays[1:]))
        assert max(delays) <= policy.max_delay

    def test_retries_then_succeeds(self) -> None:
        """Test transient failures are retried with backoff."""
        policy = RetryPolicy(max_attempts=5, base_delay=0.5, max_delay=30.0)
        waits: list[float] = []
        outcomes = [UpstreamError("503"), UpstreamError("503"), "ok"]

        def flaky() -> str:
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        assert policy.call(flaky, sleep=waits.append) == "ok"
        assert waits == [0.5, 1.0]

    def test_exhaustion_raises_last_error(self) -> None:
        """Test the final transient error surfaces after the last attempt."""
        policy = RetryPolicy(max_attempts=3, base_delay=0.1)
        attempts: list[int] = []

        def always_fails() -> None:
            attempts.append(len(attempts) + 1)
            raise UpstreamError(f"attempt {len(attempts)}", status_code=503)

        with pytest.raises(UpstreamError, match="attempt 3") as excinfo:
            policy.call(always_fails, sleep=lambda _: None)

        assert attempts == [1, 2, 3]
        assert excinfo.value.status_code == 503

    def test_permanent_errors_not_retried(self) -> None:
        """Test non-retryable errors propagate on the first attempt."""
        policy = RetryPolicy(max_attempts=5, base_delay=0.1)
        calls = 0

        def broken() -> None:
            nonlocal calls
            calls += 1
            raise UpstreamFatalError("schema violation")

        with pytest.raises(UpstreamFatalError):
            policy.call(broken, sleep=lambda _: None)

        assert calls == 1

    def test_cancelled_before_first_attempt(self) -> None:
        token = CancellationToken()
        token.cancel()

        with pytest.raises(FetchCancelled):
            RetryPolicy().call(lambda: "never", cancel=token)

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_attempts": 0}, {"base_delay": -1.0}, {"multiplier": 0.5}],
    )
    def test_invalid_policy(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestCancellationToken:
    def test_deadline(self) -> None:
        """Test a token expires at its deadline."""
        clock = FakeClock()
        token = CancellationToken(deadline=clock.now + 5.0, clock=clock)

        assert not token.cancelled
        clock.advance(5.0)
        assert token.cancelled

    def test_sleep_wakes_on_cancel(self) -> None:
        """Test a sleeping caller wakes promptly when cancelled."""
        token = CancellationToken()
        threading.Timer(0.05, token.cancel).start()
        started = time.monotonic()

        with pytest.raises(FetchCancelled):
            token.sleep(5.0)

        assert time.monotonic() - started < 2.0
