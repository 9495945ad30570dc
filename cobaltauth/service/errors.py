from __future__ import annotations

from typing import Optional

import psycopg
import psycopg_pool
import redis.exceptions

from cobaltauth.storage.errors import ConstraintViolation


class AuthError(Exception):
    """Base class for every error the auth layer lets escape.

    Each subclass is one stable kind: its ``status_code`` and ``error_code``
    are what clients see, and ``message`` is safe to show them. Anything
    more specific belongs in the server log, not in ``message``.
    """

    status_code: int = 500
    error_code: str = "internal_error"
    default_message: str = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.detail = detail or {}


class InvalidCredentials(AuthError):
    status_code = 401
    error_code = "invalid_credentials"
    default_message = "Invalid credentials"


class UserAlreadyExists(AuthError):
    status_code = 409
    error_code = "user_already_exists"
    default_message = "User already exists"


class UserNotFound(AuthError):
    status_code = 404
    error_code = "user_not_found"
    default_message = "User not found"


class TokenExpired(AuthError):
    status_code = 401
    error_code = "token_expired"
    default_message = "Token expired"


class InvalidToken(AuthError):
    status_code = 401
    error_code = "invalid_token"
    default_message = "Invalid token"


class TokenBlacklisted(AuthError):
    status_code = 401
    error_code = "token_revoked"
    default_message = "Token has been revoked"


class RateLimitExceeded(AuthError):
    """Too many attempts; ``retry_after`` is the backoff hint in seconds."""

    status_code = 429
    error_code = "rate_limited"
    default_message = "Too many requests"

    def __init__(
        self,
        retry_after: int,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        self.retry_after = max(0, int(retry_after))
        merged = {"retry_after": self.retry_after, **(detail or {})}
        super().__init__(
            message or f"Too many requests, retry after {self.retry_after} seconds",
            detail=merged,
        )


class EmailNotVerified(AuthError):
    status_code = 403
    error_code = "email_not_verified"
    default_message = "Email address has not been verified"


class Forbidden(AuthError):
    """Authenticated but not allowed: disabled account or missing role."""

    status_code = 403
    error_code = "forbidden"
    default_message = "Forbidden"


class WeakPassword(AuthError):
    status_code = 400
    error_code = "weak_password"
    default_message = "Password does not meet security requirements"


class InvalidInput(AuthError):
    status_code = 400
    error_code = "invalid_input"
    default_message = "Invalid input"


class DatabaseError(AuthError):
    status_code = 500
    error_code = "database_error"
    default_message = "Database operation failed"


class CacheError(AuthError):
    status_code = 500
    error_code = "cache_error"
    default_message = "Cache operation failed"


class HashingError(AuthError):
    status_code = 500
    error_code = "hashing_error"
    default_message = "Password hashing failed"


class InternalError(AuthError):
    status_code = 500
    error_code = "internal_error"
    default_message = "Internal server error"


_STORE_ERRORS = (psycopg.Error, psycopg_pool.PoolTimeout, psycopg_pool.PoolClosed)
_CACHE_ERRORS = (redis.exceptions.RedisError, OSError)


def from_store_error(exc: BaseException) -> AuthError:
    """Convert a persistence-layer exception into an outward error kind."""
    if isinstance(exc, AuthError):
        return exc
    if isinstance(exc, ConstraintViolation):
        field = exc.detail.get("field")
        if field in {"username", "email"}:
            return UserAlreadyExists(detail={"field": field})
        return DatabaseError()
    if isinstance(exc, _STORE_ERRORS):
        return DatabaseError()
    return InternalError()


def from_cache_error(exc: BaseException) -> AuthError:
    """Convert a cache-layer exception into an outward error kind."""
    if isinstance(exc, AuthError):
        return exc
    if isinstance(exc, _CACHE_ERRORS):
        return CacheError()
    return InternalError()


__all__ = [
    "AuthError",
    "InvalidCredentials",
    "UserAlreadyExists",
    "UserNotFound",
    "TokenExpired",
    "InvalidToken",
    "TokenBlacklisted",
    "RateLimitExceeded",
    "EmailNotVerified",
    "Forbidden",
    "WeakPassword",
    "InvalidInput",
    "DatabaseError",
    "CacheError",
    "HashingError",
    "InternalError",
    "from_store_error",
    "from_cache_error",
]
