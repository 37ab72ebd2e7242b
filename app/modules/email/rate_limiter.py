"""
Per-account rate limiter for mail provider API calls (Redis sliding window).

Gmail quota costs:
- messages.get / modify / drafts.get = 5 units
- messages.send / drafts.create = 100 units
- Per-user quota: 250 units per second; we stay far below it

The window key is the email account id, so one noisy account cannot starve
others sharing the worker.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Optional

import redis.asyncio as redis

from app.core.config import settings

logger = logging.getLogger(__name__)


class RateLimitExceeded(Exception):
    """Raised when an account exceeds its per-minute budget."""
    pass


class RateLimiter:
    """
    Redis-backed sliding window rate limiter.

    Usage:
        limiter = await get_rate_limiter()
        await limiter.check_and_increment(account_id, quota_units=5)
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        emails_per_minute: Optional[int] = None
    ):
        self.redis_url = redis_url or settings.REDIS_URL
        self.emails_per_minute = emails_per_minute or settings.RATE_LIMIT_EMAILS_PER_MIN
        self._redis: Optional[redis.Redis] = None

        # One email operation = 5 quota units
        self.quota_units_per_minute = self.emails_per_minute * 5

    async def _get_redis(self) -> redis.Redis:
        if not self._redis:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
        return self._redis

    def _get_window_key(self, account_id: str, window_start: datetime) -> str:
        """e.g. rate_limit:<account_id>:2024-11-05T14:30:00"""
        return f"rate_limit:{account_id}:{window_start.strftime('%Y-%m-%dT%H:%M:00')}"

    async def _weighted_count(self, account_id: str) -> float:
        redis_client = await self._get_redis()
        now = datetime.utcnow()

        current_window = now.replace(second=0, microsecond=0)
        previous_window = current_window - timedelta(minutes=1)

        current_count = int(await redis_client.get(self._get_window_key(account_id, current_window)) or 0)
        previous_count = int(await redis_client.get(self._get_window_key(account_id, previous_window)) or 0)

        # count = previous_minute * (1 - elapsed fraction) + current_minute
        weight = now.second / 60.0
        return (previous_count * (1 - weight)) + current_count

    async def check_rate_limit(self, account_id: str, quota_units: int = 5) -> bool:
        """Return True if the call fits in the current window (non-blocking)."""
        weighted_count = await self._weighted_count(account_id)

        if weighted_count + quota_units > self.quota_units_per_minute:
            logger.warning(
                f"Rate limit check failed for account {account_id}",
                extra={
                    "email_account_id": account_id,
                    "current_count": weighted_count,
                    "quota_units": quota_units,
                    "limit": self.quota_units_per_minute
                }
            )
            return False

        return True

    async def increment(self, account_id: str, quota_units: int = 5):
        redis_client = await self._get_redis()
        current_window = datetime.utcnow().replace(second=0, microsecond=0)
        key = self._get_window_key(account_id, current_window)

        await redis_client.incrby(key, quota_units)
        await redis_client.expire(key, 120)  # covers the sliding window

    async def check_and_increment(self, account_id: str, quota_units: int = 5):
        """
        Raises:
            RateLimitExceeded: If the call would exceed the budget
        """
        if not await self.check_rate_limit(account_id, quota_units):
            raise RateLimitExceeded(
                f"Rate limit exceeded for account {account_id}. "
                f"Limit: {self.emails_per_minute} emails/min"
            )
        await self.increment(account_id, quota_units)

    async def wait_for_rate_limit(
        self,
        account_id: str,
        quota_units: int = 5,
        max_wait_seconds: int = 60
    ):
        """
        Block (with exponential backoff) until the call fits, then count it.

        Raises:
            RateLimitExceeded: If max_wait_seconds elapses first
        """
        start_time = time.time()
        wait_time = 1

        while True:
            if await self.check_rate_limit(account_id, quota_units):
                await self.increment(account_id, quota_units)
                return

            elapsed = time.time() - start_time
            if elapsed >= max_wait_seconds:
                raise RateLimitExceeded(
                    f"Rate limit wait timeout for account {account_id} after {max_wait_seconds}s"
                )

            logger.info(
                f"Rate limit hit for account {account_id}, waiting {wait_time}s",
                extra={"email_account_id": account_id, "wait_time": wait_time, "elapsed": elapsed}
            )
            await asyncio.sleep(wait_time)
            wait_time = min(wait_time * 2, 16)

    async def close(self):
        if self._redis:
            await self._redis.close()


_global_limiter: Optional[RateLimiter] = None


async def get_rate_limiter() -> RateLimiter:
    """Process-wide rate limiter (singleton)."""
    global _global_limiter
    if not _global_limiter:
        _global_limiter = RateLimiter()
    return _global_limiter
