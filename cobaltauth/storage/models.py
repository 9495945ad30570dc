from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: Optional[str] = None
    email_verified: bool = False
    role: str = "user"
    disabled_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_disabled(self) -> bool:
        return self.disabled_at is not None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class RefreshTokenRecord:
    """Server-side half of an issued refresh token.

    ``id`` equals the token's ``jti`` claim; only the SHA-256 of the token
    string is kept. Once ``revoked_at`` is set the record never becomes
    usable again, and rotation always writes a fresh record instead of
    touching ``token_hash`` or ``expires_at``.
    """

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, jti: str, user_id: str, token_hash: str, ttl_days: int
    ) -> "RefreshTokenRecord":
        now = utcnow()
        return cls(
            id=jti,
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + timedelta(days=ttl_days),
            created_at=now,
        )

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class EmailVerificationRecord:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, token_hash: str, ttl_hours: int) -> "EmailVerificationRecord":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + timedelta(hours=ttl_hours),
            created_at=now,
        )

    @property
    def is_consumed(self) -> bool:
        return self.verified_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())
