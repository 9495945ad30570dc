from __future__ import annotations

import hashlib
from typing import List, NamedTuple, Sequence, Tuple

import redis.asyncio as aioredis
from redis import Redis

# (key, limit, window_seconds)
CounterTier = Tuple[str, int, int]


class CounterCheck(NamedTuple):
    """``(allowed, tier_index, retry_after, counts)`` from a counter check.

    ``tier_index`` is the 1-based tier that refused the request (0 when
    allowed). ``counts`` holds the post-increment values of every tier when
    allowed, or the refusing tier's current value when not.
    """

    allowed: bool
    tier_index: int
    retry_after: int
    counts: List[int]


def blacklist_key(token: str) -> str:
    # Keys carry a digest of the bearer token, never the token itself
    return f"blacklist:{hashlib.sha256(token.encode()).hexdigest()}"


class RedisCache:
    """Redis-backed access-token blacklist and fixed-window counters."""

    # Fixed-window check-then-increment over one or more tiers. Every tier is
    # checked in order before any is touched, so a refused request consumes
    # nothing. First use of a counter creates it with the window as TTL; later
    # increments leave the TTL alone.
    _COUNTER_SCRIPT = """
local n = #KEYS
local counts = {}
for i = 1, n do
  local current = tonumber(redis.call('GET', KEYS[i]) or '0')
  local limit = tonumber(ARGV[(i - 1) * 2 + 1])
  local window = tonumber(ARGV[(i - 1) * 2 + 2])
  if current >= limit then
    local ttl = redis.call('TTL', KEYS[i])
    if ttl < 0 then
      redis.call('EXPIRE', KEYS[i], window)
      ttl = window
    end
    return {0, i, ttl, current}
  end
  counts[i] = current
end
local result = {1, 0, 0}
for i = 1, n do
  local window = tonumber(ARGV[(i - 1) * 2 + 2])
  if counts[i] == 0 then
    redis.call('SET', KEYS[i], 1, 'EX', window)
  else
    redis.call('INCR', KEYS[i])
    if redis.call('TTL', KEYS[i]) < 0 then
      redis.call('EXPIRE', KEYS[i], window)
    end
  end
  result[i + 3] = counts[i] + 1
end
result[3] = redis.call('TTL', KEYS[1])
return result
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._counter_script = self.client.register_script(self._COUNTER_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off the startup loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    # blacklist
    async def blacklist_add(self, token: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(blacklist_key(token), "1", ex=ttl_seconds)

    async def blacklist_contains(self, token: str) -> bool:
        return bool(await self.client.exists(blacklist_key(token)))

    # counters
    async def check_counters(self, tiers: Sequence[CounterTier]) -> CounterCheck:
        keys = [key for key, _, _ in tiers]
        args: list[int] = []
        for _, limit, window in tiers:
            args.extend([int(limit), int(window)])
        raw = await self._counter_script(keys=keys, args=args)
        allowed, tier_index, retry_after, *counts = raw
        return CounterCheck(
            bool(int(allowed)),
            int(tier_index),
            max(0, int(retry_after)),
            [int(count) for count in counts],
        )

    async def get_counter(self, key: str) -> Tuple[int, int]:
        """Return ``(count, ttl_seconds)``; ``(0, 0)`` when the key is absent."""
        pipe = self.client.pipeline()
        pipe.get(key)
        pipe.ttl(key)
        value, ttl = await pipe.execute()
        if value is None:
            return 0, 0
        return int(value), max(0, int(ttl))

    async def reset_counters(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

