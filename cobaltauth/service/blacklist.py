from __future__ import annotations

from typing import Optional, Protocol

from cobaltauth.logging import get_logger
from cobaltauth.service.errors import CacheError, from_cache_error
from cobaltauth.service.tokens import AccessClaims

logger = get_logger(__name__)


class RevocationCache(Protocol):
    async def blacklist_add(self, token: str, ttl_seconds: int) -> None: ...

    async def blacklist_contains(self, token: str) -> bool: ...


def remaining_ttl(claims: AccessClaims, now: Optional[float] = None) -> int:
    """Seconds until ``claims`` would expire on their own."""
    return claims.remaining_seconds(now)


class TokenBlacklist:
    """Denylist for access tokens revoked before their natural expiry.

    Entries live exactly as long as the token would have, so nothing ever
    needs deleting. Lookups fail closed: if the cache can't answer,
    :class:`CacheError` is raised and the caller denies access.
    """

    def __init__(self, cache: RevocationCache) -> None:
        self.cache = cache

    async def add(self, token: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        try:
            await self.cache.blacklist_add(token, ttl_seconds)
        except Exception as exc:
            logger.error("blacklist_add_failed", ttl_seconds=ttl_seconds, error=str(exc))
            raise from_cache_error(exc) from exc

    async def add_claims(
        self, token: str, claims: AccessClaims, *, now: Optional[float] = None
    ) -> int:
        ttl = remaining_ttl(claims, now)
        await self.add(token, ttl)
        return ttl

    async def contains(self, token: str) -> bool:
        try:
            return await self.cache.blacklist_contains(token)
        except Exception as exc:
            logger.error("blacklist_lookup_failed", error=str(exc))
            raise CacheError() from exc

