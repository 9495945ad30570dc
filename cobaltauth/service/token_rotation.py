from __future__ import annotations

import hmac
from datetime import timedelta
from typing import Optional, Protocol

from cobaltauth.logging import get_logger
from cobaltauth.service.errors import (
    AuthError,
    InvalidToken,
    TokenBlacklisted,
    TokenExpired,
    from_store_error,
)
from cobaltauth.service.tokens import hash_token
from cobaltauth.storage.models import RefreshTokenRecord, utcnow

logger = get_logger(__name__)


class RefreshTokenRepository(Protocol):
    def insert_refresh_token(self, record: RefreshTokenRecord) -> None: ...

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(self, jti: str) -> bool: ...

    def rotate_refresh_token(
        self, old_jti: str, new_record: RefreshTokenRecord
    ) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...

    def delete_expired_refresh_tokens(self, before) -> int: ...


class RefreshTokenService:
    """Server-side bookkeeping for refresh tokens.

    Every issued refresh token has exactly one record keyed by its jti and
    holding only the SHA-256 of the token. A record moves one way: issued,
    then revoked (by rotation or logout) or expired. Store failures come out
    as :class:`DatabaseError`, never as a successful lookup.
    """

    def __init__(self, repository: RefreshTokenRepository) -> None:
        self.repository = repository

    def store(self, user_id: str, token: str, jti: str, ttl_days: int) -> RefreshTokenRecord:
        record = RefreshTokenRecord.new(jti, user_id, hash_token(token), ttl_days)
        try:
            self.repository.insert_refresh_token(record)
        except Exception as exc:
            logger.error("refresh_token_store_failed", user_id=user_id, error=str(exc))
            raise from_store_error(exc) from exc
        return record

    def _load(self, jti: str) -> Optional[RefreshTokenRecord]:
        try:
            return self.repository.get_refresh_token(jti)
        except Exception as exc:
            logger.error("refresh_token_lookup_failed", jti=jti, error=str(exc))
            raise from_store_error(exc) from exc

    def validate(self, token: str, jti: str) -> str:
        """Return the owning user id of a usable refresh token.

        Raises:
            InvalidToken: unknown jti, or the token does not match its record.
            TokenBlacklisted: the record was revoked (checked before expiry).
            TokenExpired: the record is past ``expires_at``.
        """
        record = self._load(jti)
        if record is None or not hmac.compare_digest(record.token_hash, hash_token(token)):
            raise InvalidToken()
        if record.is_revoked:
            logger.warning("refresh_token_reuse_detected", jti=jti, user_id=record.user_id)
            raise TokenBlacklisted()
        if record.is_expired():
            raise TokenExpired()
        return record.user_id

    def revoke(self, jti: str) -> bool:
        try:
            revoked = self.repository.revoke_refresh_token(jti)
        except Exception as exc:
            logger.error("refresh_token_revoke_failed", jti=jti, error=str(exc))
            raise from_store_error(exc) from exc
        if revoked:
            logger.info("refresh_token_revoked", jti=jti)
        return revoked

    def rotate(
        self,
        old_jti: str,
        new_token: str,
        new_jti: str,
        user_id: str,
        ttl_days: int,
    ) -> RefreshTokenRecord:
        """Revoke ``old_jti`` and record ``new_jti`` as one unit.

        If another request already rotated or revoked ``old_jti`` the store
        refuses and nothing is written; that caller gets
        :class:`TokenBlacklisted`. A failed insert leaves the old token usable.
        """
        record = RefreshTokenRecord.new(new_jti, user_id, hash_token(new_token), ttl_days)
        try:
            rotated = self.repository.rotate_refresh_token(old_jti, record)
        except AuthError:
            raise
        except Exception as exc:
            logger.error(
                "refresh_token_rotate_failed", jti=old_jti, user_id=user_id, error=str(exc)
            )
            raise from_store_error(exc) from exc
        if not rotated:
            logger.warning("refresh_token_rotation_conflict", jti=old_jti, user_id=user_id)
            raise TokenBlacklisted()
        logger.info("refresh_token_rotated", old_jti=old_jti, new_jti=new_jti, user_id=user_id)
        return record

    def revoke_all(self, user_id: str) -> int:
        try:
            count = self.repository.revoke_user_refresh_tokens(user_id)
        except Exception as exc:
            logger.error("refresh_token_revoke_all_failed", user_id=user_id, error=str(exc))
            raise from_store_error(exc) from exc
        logger.info("refresh_tokens_revoked_for_user", user_id=user_id, count=count)
        return count

    def cleanup(self, retention_days: int) -> int:
        """Delete records that expired more than ``retention_days`` ago."""
        cutoff = utcnow() - timedelta(days=retention_days)
        try:
            deleted = self.repository.delete_expired_refresh_tokens(cutoff)
        except Exception as exc:
            logger.error("refresh_token_cleanup_failed", error=str(exc))
            raise from_store_error(exc) from exc
        logger.info("refresh_token_cleanup", deleted=deleted, retention_days=retention_days)
        return deleted
