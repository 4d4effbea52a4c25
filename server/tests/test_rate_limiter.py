# ─────────────────────────────────────────────────────────────────────────────
# Tests: Sliding-window generation limiter
# ─────────────────────────────────────────────────────────────────────────────

import pytest

from worldgen.services.rate_limiter import SlidingWindowRateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(max_requests=5, window_seconds=3600, clock=clock)


class TestAdmit:
    def test_admits_up_to_limit(self, limiter: SlidingWindowRateLimiter) -> None:
        decisions = [limiter.admit("user-1") for _ in range(5)]
        assert all(d.allowed for d in decisions)
        assert [d.remaining for d in decisions] == [4, 3, 2, 1, 0]

    def test_sixth_request_denied_with_retry_after(
        self, limiter: SlidingWindowRateLimiter, clock: FakeClock
    ) -> None:
        for _ in range(5):
            limiter.admit("user-1")
            clock.advance(60)
        decision = limiter.admit("user-1")
        assert decision.allowed is False
        # Oldest admitted at t=1000, now t=1300 → 3300s until it leaves the window.
        assert decision.retry_after == 3300

    def test_denied_request_is_not_recorded(self, limiter: SlidingWindowRateLimiter) -> None:
        for _ in range(5):
            limiter.admit("user-1")
        limiter.admit("user-1")
        limiter.admit("user-1")
        assert limiter.usage("user-1") == 5

    def test_window_slides(self, limiter: SlidingWindowRateLimiter, clock: FakeClock) -> None:
        for _ in range(5):
            limiter.admit("user-1")
        clock.advance(3600)
        assert limiter.admit("user-1").allowed is True
        assert limiter.usage("user-1") == 1

    def test_retry_after_is_at_least_one_second(
        self, limiter: SlidingWindowRateLimiter, clock: FakeClock
    ) -> None:
        for _ in range(5):
            limiter.admit("user-1")
        clock.advance(3599.9)
        decision = limiter.admit("user-1")
        assert decision.allowed is False
        assert decision.retry_after == 1

    def test_keys_are_independent(self, limiter: SlidingWindowRateLimiter) -> None:
        for _ in range(5):
            limiter.admit("user-1")
        assert limiter.admit("user-1").allowed is False
        assert limiter.admit("user-2").allowed is True


class TestPrivileged:
    def test_privileged_never_denied(self, limiter: SlidingWindowRateLimiter) -> None:
        assert all(limiter.admit("admin", privileged=True).allowed for _ in range(50))

    def test_privileged_consumes_no_quota(self, limiter: SlidingWindowRateLimiter) -> None:
        for _ in range(10):
            limiter.admit("admin", privileged=True)
        assert limiter.usage("admin") == 0
        assert limiter.admit("admin").allowed is True


class TestSweep:
    def test_expired_keys_are_dropped(
        self, limiter: SlidingWindowRateLimiter, clock: FakeClock
    ) -> None:
        limiter.admit("user-1")
        limiter.admit("user-2")
        assert len(limiter) == 2
        clock.advance(3601)
        limiter.admit("user-3")
        assert len(limiter) == 1


class TestSmallWindow:
    def test_two_per_hour(self, clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=3600, clock=clock)
        assert limiter.admit("user-1").allowed
        assert limiter.admit("user-1").allowed

        third = limiter.admit("user-1")
        assert third.allowed is False
        assert third.retry_after > 0

        clock.advance(3600)
        assert limiter.admit("user-1").allowed

    def test_hundred_privileged_requests(self, clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=3600, clock=clock)
        assert all(limiter.admit("admin", privileged=True).allowed for _ in range(100))
        assert len(limiter) == 0
