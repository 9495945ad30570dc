from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, Response

from cobaltauth.logging import get_logger
from cobaltauth.service.auth import Identity
from cobaltauth.service.errors import InvalidToken
from cobaltauth.service.rate_limit import ChatLimitResult
from cobaltauth.service.runtime import get_runtime

logger = get_logger(__name__)


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _require_bearer(authorization: Optional[str]) -> str:
    token = _extract_bearer(authorization)
    if not token:
        raise InvalidToken("Authentication required")
    return token


async def require_identity(authorization: Optional[str] = Header(None)) -> Identity:
    runtime = get_runtime()
    return await runtime.auth.authorize(_require_bearer(authorization))


async def require_verified_identity(
    authorization: Optional[str] = Header(None),
) -> Identity:
    runtime = get_runtime()
    return await runtime.auth.authorize(
        _require_bearer(authorization), require_verified=True
    )


async def require_admin(authorization: Optional[str] = Header(None)) -> Identity:
    runtime = get_runtime()
    return await runtime.auth.authorize(_require_bearer(authorization), require_admin=True)


async def enforce_chat_quota(
    response: Response, identity: Identity = Depends(require_identity)
) -> ChatLimitResult:
    """Count one chat message against the caller's quota and set the X-RateLimit headers."""
    runtime = get_runtime()
    result = await runtime.auth.check_chat_quota(identity.user_id)
    for name, value in result.headers().items():
        response.headers[name] = value
    return result
