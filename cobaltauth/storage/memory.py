from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from cobaltauth.logging import get_logger
from cobaltauth.storage.errors import ConstraintViolation
from cobaltauth.storage.models import (
    EmailVerificationRecord,
    RefreshTokenRecord,
    User,
    utcnow,
)


class MemoryStore:
    """In-process store for tests and single-node development.

    Records are copied on the way in and out so callers can't mutate
    stored state behind the lock. When ``fs_root`` is given the state is
    mirrored to ``state/memory_store.json`` after every write.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.email_verifications: Dict[str, EmailVerificationRecord] = {}
        # RLock so compound operations can call the single-record helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # users
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: Optional[str] = None,
        *,
        role: str = "user",
        email_verified: bool = False,
    ) -> User:
        with self._data_lock:
            if any(u.username == username for u in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if any(u.email == email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                role=role,
                email_verified=email_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == username), None)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        disabled: Optional[bool] = None,
        email_verified: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[User]:
        with self._data_lock:
            results = [
                u
                for u in self.users.values()
                if (role is None or u.role == role)
                and (disabled is None or u.is_disabled == disabled)
                and (email_verified is None or u.email_verified == email_verified)
            ]
            results.sort(key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in results[offset : offset + limit]]

    def count_users(self) -> Dict[str, int]:
        with self._data_lock:
            users = list(self.users.values())
            return {
                "total": len(users),
                "verified": sum(1 for u in users if u.email_verified),
                "admins": sum(1 for u in users if u.is_admin),
                "disabled": sum(1 for u in users if u.is_disabled),
            }

    def _update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, updated_at=utcnow(), **changes)
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def update_last_login(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, last_login_at=utcnow())

    def set_user_disabled(self, user_id: str, disabled: bool) -> Optional[User]:
        return self._update_user(user_id, disabled_at=utcnow() if disabled else None)

    def set_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(user_id, role=role)

    def set_password_hash(self, user_id: str, password_hash: str) -> Optional[User]:
        return self._update_user(user_id, password_hash=password_hash)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, email_verified=True)

    # refresh tokens
    def insert_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("refresh token user missing", {"user_id": record.user_id})
            if record.id in self.refresh_tokens:
                raise ConstraintViolation("refresh token id already exists", {"field": "id"})
            self.refresh_tokens[record.id] = replace(record)
            self._persist_state()

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(jti)
            return replace(record) if record else None

    def revoke_refresh_token(self, jti: str) -> bool:
        """Mark ``jti`` revoked; False when it is unknown or already revoked."""
        with self._data_lock:
            record = self.refresh_tokens.get(jti)
            if not record or record.revoked_at is not None:
                return False
            record.revoked_at = utcnow()
            self._persist_state()
            return True

    def rotate_refresh_token(self, old_jti: str, new_record: RefreshTokenRecord) -> bool:
        with self._data_lock:
            old = self.refresh_tokens.get(old_jti)
            if not old or old.revoked_at is not None:
                return False
            if new_record.user_id not in self.users:
                raise ConstraintViolation(
                    "refresh token user missing", {"user_id": new_record.user_id}
                )
            if new_record.id in self.refresh_tokens:
                raise ConstraintViolation("refresh token id already exists", {"field": "id"})
            old.revoked_at = utcnow()
            self.refresh_tokens[new_record.id] = replace(new_record)
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            now = utcnow()
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and record.revoked_at is None:
                    record.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def delete_expired_refresh_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [jti for jti, r in self.refresh_tokens.items() if r.expires_at < before]
            for jti in stale:
                self.refresh_tokens.pop(jti, None)
            if stale:
                self._persist_state()
            return len(stale)

    # email verification
    def insert_email_verification(self, record: EmailVerificationRecord) -> None:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("verification user missing", {"user_id": record.user_id})
            self.email_verifications[record.id] = replace(record)
            self._persist_state()

    def get_email_verification_by_hash(self, token_hash: str) -> Optional[EmailVerificationRecord]:
        with self._data_lock:
            record = next(
                (r for r in self.email_verifications.values() if r.token_hash == token_hash),
                None,
            )
            return replace(record) if record else None

    def consume_email_verification(self, verification_id: str) -> bool:
        """Set ``verified_at`` and flag the user verified, once."""
        with self._data_lock:
            record = self.email_verifications.get(verification_id)
            if not record or record.verified_at is not None:
                return False
            user = self.users.get(record.user_id)
            if not user:
                return False
            now = utcnow()
            record.verified_at = now
            self.users[user.id] = replace(user, email_verified=True, updated_at=now)
            self._persist_state()
            return True

    def delete_expired_email_verifications(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                vid for vid, r in self.email_verifications.items() if r.expires_at < before
            ]
            for vid in stale:
                self.email_verifications.pop(vid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "email_verified": user.email_verified,
            "role": user.role,
            "disabled_at": self._serialize_datetime(user.disabled_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            username=data["username"],
            email=data["email"],
            password_hash=data.get("password_hash"),
            email_verified=bool(data.get("email_verified", False)),
            role=data.get("role", "user"),
            disabled_at=self._deserialize_datetime(data.get("disabled_at")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_token(self, record: RefreshTokenRecord | EmailVerificationRecord) -> dict:
        data = {
            "id": record.id,
            "user_id": record.user_id,
            "token_hash": record.token_hash,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
        }
        if isinstance(record, RefreshTokenRecord):
            data["revoked_at"] = self._serialize_datetime(record.revoked_at)
        else:
            data["verified_at"] = self._serialize_datetime(record.verified_at)
        return data

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [self._serialize_token(r) for r in self.refresh_tokens.values()],
            "email_verifications": [
                self._serialize_token(r) for r in self.email_verifications.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", path=str(path), error=str(exc))
            raise

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            r["id"]: RefreshTokenRecord(
                id=r["id"],
                user_id=r["user_id"],
                token_hash=r["token_hash"],
                expires_at=self._deserialize_datetime(r["expires_at"]),
                revoked_at=self._deserialize_datetime(r.get("revoked_at")),
                created_at=self._deserialize_datetime(r.get("created_at")) or utcnow(),
            )
            for r in data.get("refresh_tokens", [])
        }
        self.email_verifications = {
            r["id"]: EmailVerificationRecord(
                id=r["id"],
                user_id=r["user_id"],
                token_hash=r["token_hash"],
                expires_at=self._deserialize_datetime(r["expires_at"]),
                verified_at=self._deserialize_datetime(r.get("verified_at")),
                created_at=self._deserialize_datetime(r.get("created_at")) or utcnow(),
            )
            for r in data.get("email_verifications", [])
        }
        return True
