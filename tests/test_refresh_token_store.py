"""Tests for refresh token bookkeeping: validate, revoke, rotate, cleanup."""

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import psycopg
import pytest

from cobaltauth.service.errors import (
    DatabaseError,
    InvalidToken,
    TokenBlacklisted,
    TokenExpired,
)
from cobaltauth.service.token_rotation import RefreshTokenService
from cobaltauth.service.tokens import hash_token, issue_refresh
from cobaltauth.storage.errors import ConstraintViolation
from cobaltauth.storage.models import RefreshTokenRecord, utcnow


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("alice", "alice@example.com", "hash")


@pytest.fixture
def service(memory_store):
    return RefreshTokenService(memory_store)


@pytest.fixture
def issued(service, user, token_config):
    token, jti = issue_refresh(user.id, token_config)
    service.store(user.id, token, jti, token_config.refresh_ttl_days)
    return token, jti


class TestStoreAndValidate:
    def test_only_the_hash_is_stored(self, memory_store, issued):
        token, jti = issued
        record = memory_store.get_refresh_token(jti)

        assert record.token_hash == hash_token(token)
        assert token not in record.token_hash

    def test_validate_returns_owner(self, service, issued, user):
        token, jti = issued
        assert service.validate(token, jti) == user.id

    def test_unknown_jti_is_invalid(self, service, issued):
        token, _ = issued
        with pytest.raises(InvalidToken):
            service.validate(token, "no-such-jti")

    def test_hash_mismatch_is_invalid(self, service, issued, user, token_config):
        """The wrong token for a real jti looks exactly like an unknown token."""
        _, jti = issued
        other_token, _ = issue_refresh(user.id, token_config)
        with pytest.raises(InvalidToken):
            service.validate(other_token, jti)

    def test_revoked_reports_blacklisted(self, service, issued):
        token, jti = issued
        assert service.revoke(jti) is True
        with pytest.raises(TokenBlacklisted):
            service.validate(token, jti)

    def test_expired_reports_expired(self, service, memory_store, issued):
        token, jti = issued
        memory_store.refresh_tokens[jti].expires_at = utcnow() - timedelta(seconds=1)
        with pytest.raises(TokenExpired):
            service.validate(token, jti)

    def test_revocation_is_checked_before_expiry(self, service, memory_store, issued):
        token, jti = issued
        service.revoke(jti)
        memory_store.refresh_tokens[jti].expires_at = utcnow() - timedelta(days=1)
        with pytest.raises(TokenBlacklisted):
            service.validate(token, jti)

    def test_store_for_missing_user_is_database_error(self, service, token_config):
        token, jti = issue_refresh("ghost", token_config)
        with pytest.raises(DatabaseError):
            service.store("ghost", token, jti, 7)


class TestRevocation:
    def test_revocation_is_terminal(self, service, issued):
        """Once revoked, no later validate succeeds and revoke reports no change."""
        token, jti = issued
        service.revoke(jti)
        assert service.revoke(jti) is False
        for _ in range(3):
            with pytest.raises(TokenBlacklisted):
                service.validate(token, jti)

    def test_revoke_all(self, service, memory_store, user, token_config):
        tokens = []
        for _ in range(3):
            token, jti = issue_refresh(user.id, token_config)
            service.store(user.id, token, jti, 7)
            tokens.append((token, jti))

        assert service.revoke_all(user.id) == 3
        assert service.revoke_all(user.id) == 0
        for token, jti in tokens:
            with pytest.raises(TokenBlacklisted):
                service.validate(token, jti)


class TestRotation:
    def test_rotation_invalidates_predecessor(self, service, issued, user, token_config):
        old_token, old_jti = issued
        new_token, new_jti = issue_refresh(user.id, token_config)
        service.rotate(old_jti, new_token, new_jti, user.id, 7)

        with pytest.raises(TokenBlacklisted):
            service.validate(old_token, old_jti)
        assert service.validate(new_token, new_jti) == user.id

    def test_second_rotation_of_same_token_fails(self, service, issued, user, token_config):
        _, old_jti = issued
        first, first_jti = issue_refresh(user.id, token_config)
        second, second_jti = issue_refresh(user.id, token_config)
        service.rotate(old_jti, first, first_jti, user.id, 7)

        with pytest.raises(TokenBlacklisted):
            service.rotate(old_jti, second, second_jti, user.id, 7)
        with pytest.raises(InvalidToken):
            service.validate(second, second_jti)

    def test_concurrent_replay_succeeds_at_most_once(
        self, service, memory_store, issued, user, token_config
    ):
        """Racing rotations of one token produce exactly one winner."""
        _, old_jti = issued
        candidates = [issue_refresh(user.id, token_config) for _ in range(8)]
        outcomes = []
        barrier = threading.Barrier(len(candidates))

        def attempt(token, jti):
            barrier.wait()
            try:
                service.rotate(old_jti, token, jti, user.id, 7)
                outcomes.append("ok")
            except TokenBlacklisted:
                outcomes.append("rejected")

        threads = [threading.Thread(target=attempt, args=c) for c in candidates]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("rejected") == len(candidates) - 1
        live = [r for r in memory_store.refresh_tokens.values() if not r.is_revoked]
        assert len(live) == 1

    def test_failed_insert_keeps_old_token_usable(self, issued, user, memory_store):
        """If the new record can't be written the old token still works."""
        old_token, old_jti = issued
        repo = MagicMock(wraps=memory_store)
        repo.rotate_refresh_token.side_effect = psycopg.OperationalError("connection lost")
        service = RefreshTokenService(repo)

        with pytest.raises(DatabaseError):
            service.rotate(old_jti, "new-token", "new-jti", user.id, 7)
        assert RefreshTokenService(memory_store).validate(old_token, old_jti) == user.id

    def test_store_rejects_rotation_into_existing_jti(self, memory_store, issued, user):
        """The in-memory rotation checks the insert before revoking."""
        _, old_jti = issued
        clash = RefreshTokenRecord.new(old_jti, user.id, "h", 7)
        with pytest.raises(ConstraintViolation):
            memory_store.rotate_refresh_token(old_jti, clash)
        assert memory_store.get_refresh_token(old_jti).is_revoked is False


class TestCleanup:
    def test_cleanup_respects_retention(self, service, memory_store, user):
        now = utcnow()
        for jti, age_days in (("fresh", -1), ("recent", 5), ("stale", 45)):
            record = RefreshTokenRecord.new(jti, user.id, hash_token(jti), 7)
            record.expires_at = now - timedelta(days=age_days)
            memory_store.insert_refresh_token(record)

        assert service.cleanup(30) == 1
        assert memory_store.get_refresh_token("stale") is None
        assert memory_store.get_refresh_token("recent") is not None
        assert memory_store.get_refresh_token("fresh") is not None

    def test_lookup_failure_is_database_error(self):
        repo = MagicMock()
        repo.get_refresh_token.side_effect = psycopg.OperationalError("timeout")
        with pytest.raises(DatabaseError):
            RefreshTokenService(repo).validate("token", "jti")
