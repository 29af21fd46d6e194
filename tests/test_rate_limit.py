"""Tests for the token-bucket and fixed-window rate limiters."""

from authledger.service.rate_limit import RateLimitDecision, RateLimiter
from helpers import FakeClock


class RecordingBackend:
    def __init__(self, result=(True, 4, 0)):
        self.result = result
        self.calls = []

    async def check_rate_limit(self, key, limit, window_seconds, *, cost=1):
        self.calls.append((key, limit, window_seconds, cost))
        return self.result

    async def check_window_limit(self, key, limit, window_seconds):
        self.calls.append((key, limit, window_seconds))
        return self.result


class TestLocalBuckets:
    async def test_bucket_exhausts_and_refills(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)

        for expected_remaining in (2, 1, 0):
            decision = await limiter.check("reset:alice", 3, 3600)
            assert decision.allowed is True
            assert decision.remaining == expected_remaining

        blocked = await limiter.check("reset:alice", 3, 3600)
        assert blocked.allowed is False
        assert blocked.reset_seconds > 0

        clock.advance(hours=1)
        assert (await limiter.check("reset:alice", 3, 3600)).allowed is True

    async def test_keys_are_independent(self):
        limiter = RateLimiter(clock=FakeClock())
        assert (await limiter.check("a", 1, 60)).allowed is True
        assert (await limiter.check("a", 1, 60)).allowed is False
        assert (await limiter.check("b", 1, 60)).allowed is True

    async def test_non_positive_limit_disables_checks(self):
        limiter = RateLimiter(clock=FakeClock())
        for _ in range(10):
            assert (await limiter.check("k", 0, 60)).allowed is True
            assert (await limiter.check_window("k", 0, 60)).allowed is True

    async def test_reset_clears_buckets(self):
        limiter = RateLimiter(clock=FakeClock())
        await limiter.check("k", 1, 60)
        await limiter.check_window("k", 1, 60)
        limiter.reset()
        assert (await limiter.check("k", 1, 60)).allowed is True
        assert (await limiter.check_window("k", 1, 60)).allowed is True


class TestLocalWindows:
    async def test_window_holds_until_it_elapses(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)

        for expected_remaining in (2, 1, 0):
            decision = await limiter.check_window("reset:alice", 3, 3600)
            assert decision.allowed is True
            assert decision.remaining == expected_remaining
            clock.advance(minutes=5)

        # A refilling bucket would have let one through by now
        clock.advance(minutes=30)
        blocked = await limiter.check_window("reset:alice", 3, 3600)
        assert blocked.allowed is False
        assert blocked.reset_seconds == 15 * 60

        clock.advance(minutes=15)
        assert (await limiter.check_window("reset:alice", 3, 3600)).allowed is True

    async def test_rejections_do_not_extend_the_window(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        assert (await limiter.check_window("k", 1, 60)).allowed is True
        for _ in range(5):
            clock.advance(seconds=10)
            assert (await limiter.check_window("k", 1, 60)).allowed is False
        clock.advance(seconds=10)
        assert (await limiter.check_window("k", 1, 60)).allowed is True


class TestSharedBackend:
    async def test_backend_is_consulted(self):
        backend = RecordingBackend(result=(False, 0, 17))
        limiter = RateLimiter(backend, clock=FakeClock())

        decision = await limiter.check("login:member:1.2.3.4", 20, 60)

        assert backend.calls == [("login:member:1.2.3.4", 20, 60, 1)]
        assert decision.allowed is False
        assert decision.reset_seconds == 17

    async def test_backend_window_is_consulted(self):
        backend = RecordingBackend(result=(False, 0, 1200))
        limiter = RateLimiter(backend, clock=FakeClock())

        decision = await limiter.check_window("password_reset:member:a@b.co", 3, 3600)

        assert backend.calls == [("password_reset:member:a@b.co", 3, 3600)]
        assert decision == RateLimitDecision(False, 0, 1200)

    async def test_invalid_window_falls_back_to_a_minute(self):
        backend = RecordingBackend()
        limiter = RateLimiter(backend, clock=FakeClock())
        await limiter.check("k", 5, 0)
        await limiter.check_window("k", 5, -1)
        assert backend.calls[0][2] == 60
        assert backend.calls[1][2] == 60
