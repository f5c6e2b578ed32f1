"""Tests for the sliding-window rate limiter."""
from unittest.mock import patch

import pytest

from trustcore.service.errors import RateLimitedError
from trustcore.service.rate_limit import RateLimiter, RateLimitRule


class FakeClock:
    def __init__(self, now: int = 5_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock)


class TestSlidingWindow:
    """Hits inside the trailing window are counted per key."""

    async def test_allows_up_to_limit(self, limiter):
        results = [await limiter.check("k", 3, 60) for _ in range(3)]
        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == [2, 1, 0]

    async def test_blocks_over_limit_with_retry_after(self, limiter, clock):
        for _ in range(3):
            await limiter.check("k", 3, 60)
        clock.now += 20_000
        result = await limiter.check("k", 3, 60)
        assert result.limited
        assert result.remaining == 0
        assert result.retry_after_seconds == 40

    async def test_window_slides(self, limiter, clock):
        for _ in range(3):
            await limiter.check("k", 3, 60)
        clock.now += 60_001
        result = await limiter.check("k", 3, 60)
        assert result.allowed

    async def test_keys_are_independent(self, limiter):
        for _ in range(3):
            await limiter.check("a", 3, 60)
        assert (await limiter.check("a", 3, 60)).limited
        assert (await limiter.check("b", 3, 60)).allowed

    async def test_blocked_attempts_are_not_counted(self, limiter, clock):
        start = clock.now
        for _ in range(2):
            await limiter.check("k", 2, 60)
        for _ in range(5):
            await limiter.check("k", 2, 60)
        clock.now = start + 60_001
        assert (await limiter.check("k", 2, 60)).allowed

    async def test_peek_does_not_record(self, limiter):
        await limiter.peek("k", 1, 60)
        await limiter.peek("k", 1, 60)
        assert (await limiter.check("k", 1, 60)).allowed

    async def test_zero_limit_passes(self, limiter):
        result = await limiter.check("k", 0, 60)
        assert result.allowed

    async def test_invalid_window_defaults(self, limiter):
        with patch("trustcore.service.rate_limit.logger") as mock_logger:
            await limiter.check("k", 5, 0)
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "rate_limit_invalid_window"

    async def test_reset_clears_key(self, limiter):
        await limiter.check("k", 1, 60)
        assert (await limiter.check("k", 1, 60)).limited
        await limiter.reset("k")
        assert (await limiter.check("k", 1, 60)).allowed


class TestEnforce:
    async def test_enforce_raises_rate_limited(self, limiter):
        rule = RateLimitRule("login", 2, 900)
        await limiter.enforce(rule, "198.51.100.1")
        await limiter.enforce(rule, "198.51.100.1")
        with pytest.raises(RateLimitedError) as excinfo:
            await limiter.enforce(rule, "198.51.100.1")
        assert excinfo.value.status_code == 429
        assert excinfo.value.headers["Retry-After"] == str(excinfo.value.retry_after_seconds)
        assert excinfo.value.retry_after_seconds >= 1

    def test_rule_key_prefixes_subject(self):
        rule = RateLimitRule("register", 3, 3600)
        assert rule.key("10.0.0.1") == "register:10.0.0.1"
        assert rule.key("") == "register:unknown"
