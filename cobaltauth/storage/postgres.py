from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from cobaltauth.logging import get_logger
from cobaltauth.storage.errors import ConstraintViolation
from cobaltauth.storage.models import (
    EmailVerificationRecord,
    RefreshTokenRecord,
    User,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id UUID PRIMARY KEY,
    username VARCHAR(255) NOT NULL,
    email VARCHAR(255) NOT NULL,
    password_hash VARCHAR(255),
    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    role VARCHAR(16) NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
    disabled_at TIMESTAMPTZ,
    last_login_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT users_username_key UNIQUE (username),
    CONSTRAINT users_email_key UNIQUE (email)
);

CREATE TABLE IF NOT EXISTS refresh_tokens (
    id UUID PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    token_hash VARCHAR(64) NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    revoked_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_refresh_tokens_user_id ON refresh_tokens (user_id);
CREATE INDEX IF NOT EXISTS idx_refresh_tokens_expires_at ON refresh_tokens (expires_at);

CREATE TABLE IF NOT EXISTS email_verifications (
    id UUID PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    token_hash VARCHAR(64) NOT NULL UNIQUE,
    expires_at TIMESTAMPTZ NOT NULL,
    verified_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_email_verifications_user_id ON email_verifications (user_id);
"""

REQUIRED_TABLES = ("users", "refresh_tokens", "email_verifications")


class PostgresStore:
    """Postgres-backed users, refresh tokens and email verifications.

    Each public method runs in exactly one pooled connection; leaving the
    ``with self._connect()`` block commits, an exception inside it rolls
    the whole block back.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 5.0,
        statement_timeout_ms: int = 10_000,
        create_schema: bool = False,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(statement_timeout_ms)}",
            },
        )
        if create_schema:
            self.ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Start with create_schema=True or apply SCHEMA_SQL.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row.get("password_hash"),
            email_verified=bool(row.get("email_verified", False)),
            role=row.get("role", "user"),
            disabled_at=row.get("disabled_at"),
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _verification_from_row(row: Dict[str, Any]) -> EmailVerificationRecord:
        return EmailVerificationRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            verified_at=row.get("verified_at"),
            created_at=row["created_at"],
        )

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, username, email, password_hash, role, email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, username, email, password_hash, role, email_verified),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "username" if "username" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE username = %s", (username,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = %s", (email,)).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        disabled: Optional[bool] = None,
        email_verified: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[User]:
        clauses: list[str] = []
        params: list[Any] = []
        if role is not None:
            clauses.append("role = %s")
            params.append(role)
        if disabled is not None:
            clauses.append("disabled_at IS NOT NULL" if disabled else "disabled_at IS NULL")
        if email_verified is not None:
            clauses.append("email_verified = %s")
            params.append(email_verified)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM users {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                params,
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def count_users(self) -> Dict[str, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    count(*) AS total,
                    count(*) FILTER (WHERE email_verified) AS verified,
                    count(*) FILTER (WHERE role = 'admin') AS admins,
                    count(*) FILTER (WHERE disabled_at IS NOT NULL) AS disabled
                FROM users
                """
            ).fetchone()
        return {key: int(row[key]) for key in ("total", "verified", "admins", "disabled")}

    def _update_user(self, assignments: str, params: tuple, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE users SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*params, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_last_login(self, user_id: str) -> Optional[User]:
        return self._update_user("last_login_at = now()", (), user_id)

    def set_user_disabled(self, user_id: str, disabled: bool) -> Optional[User]:
        if disabled:
            return self._update_user("disabled_at = now()", (), user_id)
        return self._update_user("disabled_at = NULL", (), user_id)

    def set_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user("role = %s", (role,), user_id)

    def set_password_hash(self, user_id: str, password_hash: str) -> Optional[User]:
        return self._update_user("password_hash = %s", (password_hash,), user_id)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user("email_verified = TRUE", (), user_id)

    # refresh tokens
    def insert_refresh_token(self, record: RefreshTokenRecord) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_tokens (id, user_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (record.id, record.user_id, record.token_hash, record.expires_at, record.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": record.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token id already exists", {"field": "id"})

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE id = %s", (jti,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def revoke_refresh_token(self, jti: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_tokens SET revoked_at = now()
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (jti,),
            ).fetchone()
        return row is not None

    def rotate_refresh_token(self, old_jti: str, new_record: RefreshTokenRecord) -> bool:
        """Revoke ``old_jti`` and insert ``new_record`` in one transaction.

        The conditional UPDATE takes the row lock, so of two concurrent
        rotations of the same token only one sees ``revoked_at IS NULL``.
        If the INSERT fails the revoke is rolled back with it.
        """
        try:
            with self._connect() as conn:
                revoked = conn.execute(
                    """
                    UPDATE refresh_tokens SET revoked_at = now()
                    WHERE id = %s AND revoked_at IS NULL
                    RETURNING id
                    """,
                    (old_jti,),
                ).fetchone()
                if revoked is None:
                    return False
                conn.execute(
                    """
                    INSERT INTO refresh_tokens (id, user_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        new_record.id,
                        new_record.user_id,
                        new_record.token_hash,
                        new_record.expires_at,
                        new_record.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "refresh token user missing", {"user_id": new_record.user_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token id already exists", {"field": "id"})
        return True

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_tokens SET revoked_at = now() WHERE user_id = %s AND revoked_at IS NULL",
                (user_id,),
            )
            return result.rowcount

    def delete_expired_refresh_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_tokens WHERE expires_at < %s", (before,)
            )
            return result.rowcount

    # email verification
    def insert_email_verification(self, record: EmailVerificationRecord) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO email_verifications (id, user_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (record.id, record.user_id, record.token_hash, record.expires_at, record.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("verification user missing", {"user_id": record.user_id})

    def get_email_verification_by_hash(self, token_hash: str) -> Optional[EmailVerificationRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_verifications WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._verification_from_row(row) if row else None

    def consume_email_verification(self, verification_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE email_verifications SET verified_at = now()
                WHERE id = %s AND verified_at IS NULL
                RETURNING user_id
                """,
                (verification_id,),
            ).fetchone()
            if row is None:
                return False
            conn.execute(
                "UPDATE users SET email_verified = TRUE, updated_at = now() WHERE id = %s",
                (row["user_id"],),
            )
        return True

    def delete_expired_email_verifications(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM email_verifications WHERE expires_at < %s", (before,)
            )
            return result.rowcount
