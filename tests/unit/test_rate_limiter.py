"""
Unit tests for RateLimiter.

Tests Redis-backed sliding window rate limiting:
- Rate limit checking (within/exceeded)
- Increment operations
- Wait with exponential backoff

Run tests:
    pytest tests/unit/test_rate_limiter.py -v
"""

import pytest
from unittest.mock import AsyncMock, patch
from datetime import datetime

from app.modules.email.rate_limiter import (
    RateLimiter,
    RateLimitExceeded,
)


# Test fixtures

@pytest.fixture
def mock_redis():
    """Create a mock Redis client."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value="0")
    redis.incrby = AsyncMock()
    redis.expire = AsyncMock()
    return redis


@pytest.fixture
def rate_limiter(mock_redis):
    """Create a RateLimiter with mocked Redis."""
    limiter = RateLimiter(emails_per_minute=10)
    limiter._redis = mock_redis
    return limiter


class TestRateLimiterInit:
    """Test RateLimiter initialization."""

    def test_init_with_defaults(self):
        limiter = RateLimiter()
        assert limiter.emails_per_minute == 60
        assert limiter.quota_units_per_minute == 300  # 60 emails * 5 units

    def test_init_with_custom_emails_per_minute(self):
        limiter = RateLimiter(emails_per_minute=20)
        assert limiter.quota_units_per_minute == 100

    def test_window_key_is_per_account(self):
        limiter = RateLimiter()
        window_start = datetime(2024, 11, 5, 14, 30, 0)
        key = limiter._get_window_key("account-123", window_start)
        assert key == "rate_limit:account-123:2024-11-05T14:30:00"


class TestCheckRateLimit:
    @pytest.mark.asyncio
    async def test_within_limit_returns_true(self, rate_limiter, mock_redis):
        # current window, then previous window
        mock_redis.get.side_effect = ["45", "0"]
        assert await rate_limiter.check_rate_limit("account-123", quota_units=5)

    @pytest.mark.asyncio
    async def test_exceeded_returns_false(self, rate_limiter, mock_redis):
        mock_redis.get.side_effect = ["50", "0"]
        assert not await rate_limiter.check_rate_limit("account-123", quota_units=5)

    @pytest.mark.asyncio
    async def test_large_call_rejected_on_empty_window(self, rate_limiter):
        # A send costs 100 units; the budget is 50
        assert not await rate_limiter.check_rate_limit("account-123", quota_units=100)


class TestCheckAndIncrement:
    @pytest.mark.asyncio
    async def test_increments_current_window(self, rate_limiter, mock_redis):
        await rate_limiter.check_and_increment("account-123", quota_units=5)

        key = mock_redis.incrby.await_args.args[0]
        assert key.startswith("rate_limit:account-123:")
        assert mock_redis.incrby.await_args.args[1] == 5
        mock_redis.expire.assert_awaited_once_with(key, 120)

    @pytest.mark.asyncio
    async def test_raises_when_exceeded(self, rate_limiter, mock_redis):
        mock_redis.get.side_effect = ["50", "0"]
        with pytest.raises(RateLimitExceeded, match="10 emails/min"):
            await rate_limiter.check_and_increment("account-123")
        mock_redis.incrby.assert_not_awaited()


class TestWaitForRateLimit:
    @pytest.mark.asyncio
    async def test_waits_then_proceeds(self, rate_limiter):
        rate_limiter.check_rate_limit = AsyncMock(side_effect=[False, False, True])
        rate_limiter.increment = AsyncMock()

        with patch("app.modules.email.rate_limiter.asyncio.sleep", AsyncMock()) as mock_sleep:
            await rate_limiter.wait_for_rate_limit("account-123")

        assert [c.args[0] for c in mock_sleep.await_args_list] == [1, 2]
        rate_limiter.increment.assert_awaited_once_with("account-123", 5)

    @pytest.mark.asyncio
    async def test_timeout(self, rate_limiter):
        rate_limiter.check_rate_limit = AsyncMock(return_value=False)

        with pytest.raises(RateLimitExceeded, match="wait timeout"):
            await rate_limiter.wait_for_rate_limit("account-123", max_wait_seconds=0)
