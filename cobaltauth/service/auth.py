from __future__ import annotations

import asyncio
import contextlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Protocol, Tuple

from cobaltauth.config import Settings, TokenConfig
from cobaltauth.logging import get_logger
from cobaltauth.service.blacklist import RevocationCache, TokenBlacklist
from cobaltauth.service.email import EmailService
from cobaltauth.service.errors import (
    AuthError,
    EmailNotVerified,
    Forbidden,
    InvalidCredentials,
    InvalidInput,
    InvalidToken,
    RateLimitExceeded,
    TokenBlacklisted,
    TokenExpired,
    UserNotFound,
    from_store_error,
)
from cobaltauth.service.passwords import PasswordHasherService, check_password_strength
from cobaltauth.service.rate_limit import ChatLimitResult, CounterCache, RateLimiter
from cobaltauth.service.token_rotation import RefreshTokenRepository, RefreshTokenService
from cobaltauth.service.tokens import (
    hash_token,
    issue_access,
    issue_refresh,
    verify_access,
    verify_refresh,
)
from cobaltauth.storage.models import EmailVerificationRecord, User, utcnow

logger = get_logger(__name__)

ROLES = ("user", "admin")
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50


class AuthStore(RefreshTokenRepository, Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: Optional[str] = None,
        *,
        role: str = "user",
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        disabled: Optional[bool] = None,
        email_verified: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[User]: ...

    def count_users(self) -> Dict[str, int]: ...

    def update_last_login(self, user_id: str) -> Optional[User]: ...

    def set_user_disabled(self, user_id: str, disabled: bool) -> Optional[User]: ...

    def set_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> Optional[User]: ...

    def insert_email_verification(self, record: EmailVerificationRecord) -> None: ...

    def get_email_verification_by_hash(
        self, token_hash: str
    ) -> Optional[EmailVerificationRecord]: ...

    def consume_email_verification(self, verification_id: str) -> bool: ...

    def delete_expired_email_verifications(self, before: datetime) -> int: ...


class AuthCache(RevocationCache, CounterCache, Protocol):
    pass


@dataclass(frozen=True)
class Identity:
    """Who a verified access token belongs to, as of the current request."""

    user_id: str
    username: str
    email: str
    role: str
    email_verified: bool

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @classmethod
    def from_user(cls, user: User) -> "Identity":
        return cls(
            user_id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            email_verified=user.email_verified,
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    token_type: str = "Bearer"


class AuthService:
    """Register, log in, refresh, log out and gate requests.

    Tokens are verified against ``token_config``; refresh tokens are
    tracked in the store, access tokens can only be revoked through the
    blacklist. Authorization re-reads the user row on every call so a
    disable or role change applies to tokens that are already out.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: AuthCache,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasherService] = None,
        email_service: Optional[EmailService] = None,
        token_config: Optional[TokenConfig] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.token_config = token_config or TokenConfig.from_settings(settings)
        self.hasher = hasher or PasswordHasherService()
        self.email = email_service or EmailService.from_settings(settings)
        self.refresh_tokens = RefreshTokenService(store)
        self.blacklist = TokenBlacklist(cache)
        self.rate_limiter = RateLimiter(cache, settings)
        self.logger = logger

    @contextlib.contextmanager
    def _store_errors(self, operation: str, **context) -> Iterator[None]:
        """Log a failed store call in full and re-raise it as an outward kind."""
        try:
            yield
        except AuthError:
            raise
        except Exception as exc:
            self.logger.error(
                "auth_store_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
                **context,
            )
            raise from_store_error(exc) from exc

    def _require_user(self, user_id: str) -> User:
        with self._store_errors("get_user", user_id=user_id):
            user = self.store.get_user(user_id)
        if not user:
            raise UserNotFound()
        return user

    # input validation
    @staticmethod
    def _validate_registration(username: str, email: str, password: str) -> Tuple[str, str]:
        username = (username or "").strip()
        email = (email or "").strip()
        if not username:
            raise InvalidInput("Username cannot be empty")
        if not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
            raise InvalidInput(
                f"Username must be between {USERNAME_MIN_LENGTH} and {USERNAME_MAX_LENGTH} characters"
            )
        if not email:
            raise InvalidInput("Email cannot be empty")
        if "@" not in email:
            raise InvalidInput("Invalid email format")
        check_password_strength(password)
        return username, email.lower()

    # token issuance
    def _issue_pair(self, user: User) -> TokenPair:
        config = self.token_config
        access_token = issue_access(user.id, user.username, config)
        refresh_token, jti = issue_refresh(user.id, config)
        self.refresh_tokens.store(user.id, refresh_token, jti, config.refresh_ttl_days)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=config.access_ttl_seconds,
            refresh_expires_in=config.refresh_ttl_seconds,
        )

    async def register(self, username: str, email: str, password: str) -> Tuple[User, TokenPair]:
        """Create an unverified account and log it straight in.

        Input is validated before anything is written. A verification email
        is sent afterwards; if that step fails the account still stands.
        """
        username, email = self._validate_registration(username, email, password)
        password_hash = self.hasher.hash(password)
        with self._store_errors("create_user"):
            user = self.store.create_user(username, email, password_hash)
        tokens = self._issue_pair(user)
        self.logger.info("user_registered", user_id=user.id)
        try:
            await self.send_verification(user.id)
        except AuthError as exc:
            self.logger.warning(
                "registration_verification_failed",
                user_id=user.id,
                error_code=exc.error_code,
            )
        return user, tokens

    async def login(self, username: str, password: str, *, origin: str) -> Tuple[User, TokenPair]:
        """Exchange a username and password for a token pair.

        Every attempt from ``origin`` counts against the login window, so once
        it is spent even a correct password gets :class:`RateLimitExceeded`.
        Unknown users and wrong passwords are both :class:`InvalidCredentials`.
        """
        if not username:
            raise InvalidInput("Username cannot be empty")
        if not password:
            raise InvalidInput("Password cannot be empty")

        limit = await self.rate_limiter.check_login(origin)
        if not limit.allowed:
            self.logger.warning("login_rate_limited", retry_after=limit.retry_after_seconds)
            raise RateLimitExceeded(limit.retry_after_seconds)

        with self._store_errors("get_user_by_username"):
            user = self.store.get_user_by_username(username)
        if not user or not user.password_hash:
            self.hasher.verify_dummy(password)
            self.logger.info("login_failed", reason="unknown_user")
            raise InvalidCredentials()
        if not self.hasher.verify(password, user.password_hash):
            self.logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise InvalidCredentials()
        if user.is_disabled:
            self.logger.warning("login_blocked_disabled_account", user_id=user.id)
            raise Forbidden("Account is disabled")

        if self.hasher.needs_rehash(user.password_hash):
            with self._store_errors("set_password_hash", user_id=user.id):
                self.store.set_password_hash(user.id, self.hasher.hash(password))
        with self._store_errors("update_last_login", user_id=user.id):
            user = self.store.update_last_login(user.id) or user
        tokens = self._issue_pair(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, tokens

    async def refresh(
        self, refresh_token: str, *, access_token: Optional[str] = None
    ) -> TokenPair:
        """Rotate ``refresh_token`` into a new pair.

        The presented token is unusable as soon as this returns; presenting
        it again yields :class:`TokenBlacklisted`. When
        ``blacklist_access_on_refresh`` is on, ``access_token`` (the pair's
        outgoing access token) is blacklisted for the rest of its life.
        """
        config = self.token_config
        claims = verify_refresh(refresh_token, config)
        user_id = self.refresh_tokens.validate(refresh_token, claims.jti)
        if user_id != claims.sub:
            self.logger.warning("refresh_token_subject_mismatch", jti=claims.jti)
            raise InvalidToken()
        user = self._require_user(user_id)
        if user.is_disabled:
            raise Forbidden("Account is disabled")

        new_access = issue_access(user.id, user.username, config)
        new_refresh, new_jti = issue_refresh(user.id, config)
        self.refresh_tokens.rotate(claims.jti, new_refresh, new_jti, user.id, config.refresh_ttl_days)

        if access_token and self.settings.blacklist_access_on_refresh:
            await self._blacklist_access(access_token, user.id)
        return TokenPair(
            access_token=new_access,
            refresh_token=new_refresh,
            expires_in=config.access_ttl_seconds,
            refresh_expires_in=config.refresh_ttl_seconds,
        )

    async def _blacklist_access(self, access_token: str, user_id: str) -> int:
        try:
            claims = verify_access(access_token, self.token_config)
        except TokenExpired:
            return 0
        except InvalidToken:
            self.logger.info("blacklist_skipped_invalid_access_token", user_id=user_id)
            return 0
        if claims.sub != user_id:
            self.logger.warning("blacklist_skipped_foreign_access_token", user_id=user_id)
            return 0
        ttl = await self.blacklist.add_claims(access_token, claims)
        self.logger.info("access_token_blacklisted", user_id=user_id, ttl_seconds=ttl)
        return ttl

    async def logout(self, refresh_token: str, access_token: Optional[str] = None) -> None:
        """Revoke ``refresh_token`` and blacklist its paired access token.

        A refresh token that is already revoked, expired or unknown is
        :class:`InvalidToken` and nothing is changed.
        """
        try:
            claims = verify_refresh(refresh_token, self.token_config)
        except TokenExpired:
            raise InvalidToken() from None
        with self._store_errors("get_refresh_token", jti=claims.jti):
            record = self.store.get_refresh_token(claims.jti)
        if record is None or not hmac.compare_digest(record.token_hash, hash_token(refresh_token)):
            raise InvalidToken()
        if not self.refresh_tokens.revoke(claims.jti):
            raise InvalidToken()
        if access_token:
            await self._blacklist_access(access_token, record.user_id)
        self.logger.info("logout", user_id=record.user_id)

    async def authorize(
        self,
        access_token: str,
        *,
        require_admin: bool = False,
        require_verified: bool = False,
    ) -> Identity:
        """Gate a protected request.

        Checks run in order: signature and expiry, blacklist (a cache
        failure denies with :class:`CacheError`), then a fresh read of the
        user row for existence, disabled state, role and verification.
        """
        claims = verify_access(access_token, self.token_config)
        if await self.blacklist.contains(access_token):
            raise TokenBlacklisted()
        with self._store_errors("get_user", user_id=claims.sub):
            user = self.store.get_user(claims.sub)
        if not user:
            self.logger.warning("authorize_unknown_subject", user_id=claims.sub)
            raise InvalidToken()
        if user.is_disabled:
            raise Forbidden("Account is disabled")
        if require_admin and not user.is_admin:
            self.logger.warning("admin_access_denied", user_id=user.id)
            raise Forbidden("Admin privileges required")
        if require_verified and not user.email_verified:
            raise EmailNotVerified()
        return Identity.from_user(user)

    # email verification
    async def send_verification(self, user_id: str) -> str:
        """Issue a one-time verification token for ``user_id`` and mail it.

        SMTP delivery runs in a worker thread so a slow mail server does not
        hold up the event loop.
        """
        user = self._require_user(user_id)
        if user.email_verified:
            raise InvalidInput("Email already verified")
        token = secrets.token_hex(32)
        record = EmailVerificationRecord.new(
            user.id, hash_token(token), self.settings.email_verification_ttl_hours
        )
        with self._store_errors("insert_email_verification", user_id=user.id):
            self.store.insert_email_verification(record)
        delivered = await asyncio.to_thread(
            self.email.send_email_verification, user.email, user.username, token
        )
        if not delivered:
            self.logger.warning("verification_email_not_delivered", user_id=user.id)
        self.logger.info("email_verification_requested", user_id=user.id)
        return token

    def verify_email(self, token: str) -> User:
        if not token:
            raise InvalidInput("Verification failed: token is required")
        with self._store_errors("get_email_verification_by_hash"):
            record = self.store.get_email_verification_by_hash(hash_token(token))
        if record is None:
            self.logger.warning("email_verification_invalid_token")
            raise InvalidInput("Verification failed: invalid token")
        if record.is_consumed:
            raise InvalidInput("Verification failed: token already used")
        if record.is_expired():
            raise InvalidInput("Verification failed: token expired")
        with self._store_errors("consume_email_verification", user_id=record.user_id):
            consumed = self.store.consume_email_verification(record.id)
        if not consumed:
            raise InvalidInput("Verification failed: token already used")
        self.logger.info("email_verified", user_id=record.user_id)
        return self._require_user(record.user_id)

    # administration
    async def disable_user(self, user_id: str) -> User:
        """Disable an account and revoke every refresh token it holds."""
        user = self._require_user(user_id)
        if user.is_disabled:
            raise InvalidInput("User already disabled")
        with self._store_errors("set_user_disabled", user_id=user_id):
            user = self.store.set_user_disabled(user_id, True) or user
        revoked = self.refresh_tokens.revoke_all(user_id)
        self.logger.info("user_disabled", user_id=user_id, revoked_refresh_tokens=revoked)
        return user

    async def enable_user(self, user_id: str) -> User:
        user = self._require_user(user_id)
        if not user.is_disabled:
            raise InvalidInput("User is not disabled")
        with self._store_errors("set_user_disabled", user_id=user_id):
            user = self.store.set_user_disabled(user_id, False) or user
        self.logger.info("user_enabled", user_id=user_id)
        return user

    async def set_role(self, user_id: str, role: str) -> User:
        if role not in ROLES:
            raise InvalidInput(f"Role must be one of: {', '.join(ROLES)}")
        self._require_user(user_id)
        with self._store_errors("set_user_role", user_id=user_id):
            user = self.store.set_user_role(user_id, role)
        if not user:
            raise UserNotFound()
        self.logger.info("user_role_changed", user_id=user_id, role=role)
        return user

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        disabled: Optional[bool] = None,
        email_verified: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[User]:
        if role is not None and role not in ROLES:
            raise InvalidInput(f"Role must be one of: {', '.join(ROLES)}")
        if limit <= 0 or offset < 0:
            raise InvalidInput("limit must be positive and offset non-negative")
        with self._store_errors("list_users"):
            return self.store.list_users(
                role=role,
                disabled=disabled,
                email_verified=email_verified,
                limit=min(limit, 500),
                offset=offset,
            )

    def get_stats(self) -> Dict[str, int]:
        with self._store_errors("count_users"):
            return self.store.count_users()

    # maintenance and quotas
    def cleanup_expired_tokens(self, retention_days: Optional[int] = None) -> Dict[str, int]:
        """Purge refresh and verification records expired beyond retention."""
        days = retention_days if retention_days is not None else self.settings.refresh_token_retention_days
        if days < 0:
            raise InvalidInput("retention_days cannot be negative")
        refresh_deleted = self.refresh_tokens.cleanup(days)
        with self._store_errors("delete_expired_email_verifications"):
            verification_deleted = self.store.delete_expired_email_verifications(utcnow())
        return {
            "refresh_tokens": refresh_deleted,
            "email_verifications": verification_deleted,
        }

    async def check_chat_quota(self, user_id: str) -> ChatLimitResult:
        result = await self.rate_limiter.check_chat(user_id)
        if not result.allowed:
            raise RateLimitExceeded(
                result.retry_after_seconds,
                f"You have exceeded the {result.limit_type} rate limit. "
                f"Please try again in {result.retry_after_seconds} seconds.",
                detail={
                    "limit_type": result.limit_type,
                    "limit": result.limit,
                    "current": result.current,
                },
            )
        return result

    async def chat_usage(self, user_id: str) -> Dict[str, Dict[str, int]]:
        return await self.rate_limiter.chat_usage(user_id)

    async def reset_login_limit(self, origin: str) -> bool:
        cleared = await self.rate_limiter.reset_login(origin)
        self.logger.info("login_rate_limit_reset", origin=origin, cleared=cleared)
        return cleared

    async def reset_chat_limit(self, user_id: str) -> int:
        return await self.rate_limiter.reset_chat(user_id)
