from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Protocol, Sequence, Tuple

from cobaltauth.config import Settings
from cobaltauth.logging import get_logger
from cobaltauth.service.errors import CacheError
from cobaltauth.storage.redis_cache import CounterCheck, CounterTier

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60
CHAT_MINUTE_WINDOW_SECONDS = 60
CHAT_DAILY_WINDOW_SECONDS = 86400


class CounterCache(Protocol):
    async def check_counters(self, tiers: Sequence[CounterTier]) -> CounterCheck: ...

    async def get_counter(self, key: str) -> Tuple[int, int]: ...

    async def reset_counters(self, *keys: str) -> int: ...


def login_key(origin: str) -> str:
    return f"ratelimit:login:{origin}"


def chat_minute_key(user_id: str) -> str:
    return f"ratelimit:chat:user:{user_id}:minute"


def chat_daily_key(user_id: str) -> str:
    return f"quota:chat:user:{user_id}:daily"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    current_count: int
    limit: int
    retry_after_seconds: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current_count)

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.retry_after_seconds),
        }


@dataclass(frozen=True)
class ChatLimitResult:
    """Outcome of the two-tier chat check.

    ``limit_type`` names the tier that refused (``per_minute`` or ``daily``);
    when allowed it names the tier with the least headroom, which is what
    the response headers report.
    """

    allowed: bool
    limit_type: str
    current: int
    limit: int
    retry_after_seconds: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current)

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.retry_after_seconds),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class RateLimiter:
    """Fixed-window counters for login attempts and chat usage.

    Windows are anchored to the first request: the counter is created with
    the window as its TTL and later increments leave the TTL alone. A
    refused request consumes nothing. Cache failures raise
    :class:`CacheError` so callers deny rather than admit.
    """

    def __init__(self, cache: CounterCache, settings: Settings) -> None:
        self.cache = cache
        self.settings = settings

    async def _check(self, tiers: Sequence[CounterTier]) -> CounterCheck:
        try:
            return await self.cache.check_counters(tiers)
        except Exception as exc:
            logger.error(
                "rate_limit_check_failed",
                keys=[key for key, _, _ in tiers],
                error=str(exc),
            )
            raise CacheError() from exc

    @staticmethod
    def _window(key: str, window_seconds: int) -> int:
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            return DEFAULT_WINDOW_SECONDS
        return window_seconds

    async def check_and_increment(
        self, key: str, window_seconds: int, limit: int
    ) -> RateLimitResult:
        if limit <= 0:
            return RateLimitResult(True, 0, limit, 0)
        window = self._window(key, window_seconds)
        check = await self._check([(key, limit, window)])
        current = check.counts[0] if check.counts else 0
        if not check.allowed:
            logger.info("rate_limit_exceeded", key=key, limit=limit, retry_after=check.retry_after)
            # A refused key always has time left on its window
            return RateLimitResult(False, current, limit, max(1, check.retry_after))
        return RateLimitResult(True, current, limit, check.retry_after)

    async def check_login(self, origin: str) -> RateLimitResult:
        return await self.check_and_increment(
            login_key(origin),
            self.settings.login_rate_limit_window_seconds,
            self.settings.login_rate_limit_max_attempts,
        )

    async def reset_login(self, origin: str) -> bool:
        return await self._reset(login_key(origin)) > 0

    async def check_chat(self, user_id: str) -> ChatLimitResult:
        """Check the per-minute tier then the daily tier, incrementing both only if both pass."""
        per_minute = self.settings.chat_rate_limit_per_minute
        daily = self.settings.chat_daily_message_quota
        tiers: list[CounterTier] = [
            (chat_minute_key(user_id), per_minute, CHAT_MINUTE_WINDOW_SECONDS),
            (chat_daily_key(user_id), daily, CHAT_DAILY_WINDOW_SECONDS),
        ]
        check = await self._check(tiers)
        if not check.allowed:
            limit_type = "per_minute" if check.tier_index == 1 else "daily"
            _, limit, _ = tiers[check.tier_index - 1]
            current = check.counts[0] if check.counts else limit
            logger.info(
                "chat_rate_limit_exceeded",
                user_id=user_id,
                limit_type=limit_type,
                retry_after=check.retry_after,
            )
            return ChatLimitResult(False, limit_type, current, limit, max(1, check.retry_after))

        minute_count, daily_count = check.counts
        minute_headroom = per_minute - minute_count
        daily_headroom = daily - daily_count
        if daily_headroom < minute_headroom:
            _, daily_ttl = await self._get(chat_daily_key(user_id))
            return ChatLimitResult(True, "daily", daily_count, daily, daily_ttl)
        return ChatLimitResult(True, "per_minute", minute_count, per_minute, check.retry_after)

    async def chat_usage(self, user_id: str) -> Dict[str, Dict[str, int]]:
        minute_count, minute_ttl = await self._get(chat_minute_key(user_id))
        daily_count, daily_ttl = await self._get(chat_daily_key(user_id))
        per_minute = self.settings.chat_rate_limit_per_minute
        daily = self.settings.chat_daily_message_quota
        return {
            "per_minute": {
                "used": minute_count,
                "limit": per_minute,
                "remaining": max(0, per_minute - minute_count),
                "reset_seconds": minute_ttl,
            },
            "daily": {
                "used": daily_count,
                "limit": daily,
                "remaining": max(0, daily - daily_count),
                "reset_seconds": daily_ttl,
            },
        }

    async def reset_chat(self, user_id: str, *, daily: bool = True) -> int:
        keys = [chat_minute_key(user_id)]
        if daily:
            keys.append(chat_daily_key(user_id))
        return await self._reset(*keys)

    async def _get(self, key: str) -> Tuple[int, int]:
        try:
            return await self.cache.get_counter(key)
        except Exception as exc:
            logger.error("rate_limit_read_failed", key=key, error=str(exc))
            raise CacheError() from exc

    async def _reset(self, *keys: str) -> int:
        try:
            removed = await self.cache.reset_counters(*keys)
        except Exception as exc:
            logger.error("rate_limit_reset_failed", keys=list(keys), error=str(exc))
            raise CacheError() from exc
        logger.info("rate_limit_reset", keys=list(keys), removed=removed)
        return removed
