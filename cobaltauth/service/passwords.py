from __future__ import annotations

import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError as Argon2HashingError
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from cobaltauth.logging import get_logger
from cobaltauth.service.errors import HashingError, InvalidCredentials, WeakPassword

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


def check_password_strength(password: str) -> None:
    if not isinstance(password, str):
        raise WeakPassword("Password must be a string")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise WeakPassword(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        )
    if len(password) > MAX_PASSWORD_LENGTH:
        raise WeakPassword(
            f"Password must be at most {MAX_PASSWORD_LENGTH} characters"
        )


class PasswordHasherService:
    """Argon2id password hashing with a fresh salt per call."""

    algorithm = "argon2id"

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: str | None = None

    def hash(self, password: str) -> str:
        check_password_strength(password)
        try:
            return self._pwd_hasher.hash(password)
        except Argon2HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise HashingError() from exc

    def verify(self, password: str, password_hash: str) -> bool:
        """Return whether ``password`` matches ``password_hash``.

        A mismatch is ``False``. A stored hash that cannot be parsed raises
        :class:`InvalidCredentials` so callers can tell "could not check"
        apart from "did not match".
        """
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except InvalidHash as exc:
            logger.warning("password_hash_malformed", error=str(exc))
            raise InvalidCredentials() from exc
        except VerificationError as exc:
            logger.warning("password_verification_failed", error=str(exc))
            return False

    def verify_dummy(self, password: str) -> None:
        """Spend one verify on a throwaway hash.

        Login calls this when there is no stored hash to check, so an unknown
        username costs the same time as a wrong password.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_hex(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return False
