"""Tests for the operational scripts (admin bootstrap and token cleanup)."""

import asyncio
import importlib.util
from datetime import timedelta
from pathlib import Path

import pytest

from cobaltauth.service.runtime import get_runtime
from cobaltauth.storage.models import RefreshTokenRecord, utcnow

SCRIPTS_DIR = Path(__file__).resolve().parent.parent / "scripts"


def _load_script(name):
    spec = importlib.util.spec_from_file_location(f"scripts_{name}", SCRIPTS_DIR / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def bootstrap():
    return _load_script("bootstrap_admin")


@pytest.fixture
def cleanup():
    return _load_script("cleanup_tokens")


class TestBootstrapAdmin:
    def test_creates_verified_admin(self, bootstrap):
        result = bootstrap.bootstrap_admin("root", "Root@Example.com", "SecurePass123!")

        assert result["status"] == "created"
        user = get_runtime().store.get_user(result["user_id"])
        assert user.role == "admin"
        assert user.email_verified is True
        assert user.email == "root@example.com"

    def test_created_admin_can_log_in(self, bootstrap):
        bootstrap.bootstrap_admin("root", "root@example.com", "SecurePass123!")
        auth = get_runtime().auth

        _, tokens = asyncio.run(auth.login("root", "SecurePass123!", origin="127.0.0.1"))
        identity = asyncio.run(auth.authorize(tokens.access_token, require_admin=True))
        assert identity.is_admin is True

    def test_promotes_existing_user(self, bootstrap):
        store = get_runtime().store
        user = store.create_user("alice", "alice@example.com", "hash")

        result = bootstrap.bootstrap_admin("alice", "other@example.com", "SecurePass123!")

        assert result["status"] == "promoted"
        promoted = store.get_user(user.id)
        assert promoted.role == "admin"
        assert promoted.email_verified is True

    def test_already_admin_is_a_no_op(self, bootstrap):
        bootstrap.bootstrap_admin("root", "root@example.com", "SecurePass123!")
        result = bootstrap.bootstrap_admin("root", "root@example.com", "SecurePass123!")
        assert result["status"] == "already_admin"

    def test_dry_run_changes_nothing(self, bootstrap):
        result = bootstrap.bootstrap_admin(
            "root", "root@example.com", "SecurePass123!", dry_run=True
        )
        assert result["status"] == "dry_run"
        assert get_runtime().store.get_user_by_username("root") is None

    def test_main_requires_email(self, bootstrap, monkeypatch, capsys):
        monkeypatch.delenv("ADMIN_EMAIL", raising=False)
        monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
        with pytest.raises(SystemExit) as exc_info:
            bootstrap.main(["--username", "root"])
        assert exc_info.value.code == 1
        assert "ADMIN_EMAIL" in capsys.readouterr().out

    def test_main_rejects_weak_password(self, bootstrap, capsys):
        with pytest.raises(SystemExit):
            bootstrap.main(["--email", "root@example.com", "--password", "short"])
        assert "Error:" in capsys.readouterr().out


class TestCleanupTokens:
    def test_purges_old_refresh_tokens(self, cleanup):
        store = get_runtime().store
        user = store.create_user("alice", "alice@example.com", "hash")
        stale = RefreshTokenRecord.new("stale", user.id, "a" * 64, 7)
        stale.expires_at = utcnow() - timedelta(days=40)
        store.insert_refresh_token(stale)
        store.insert_refresh_token(RefreshTokenRecord.new("live", user.id, "b" * 64, 7))

        result = cleanup.cleanup_tokens(30)

        assert result == {"refresh_tokens": 1, "email_verifications": 0}
        assert store.get_refresh_token("live") is not None

    def test_main_reports_counts(self, cleanup, capsys):
        cleanup.main(["--retention-days", "30"])
        assert "Deleted 0 refresh token(s)" in capsys.readouterr().out

    def test_main_rejects_negative_retention(self, cleanup):
        with pytest.raises(SystemExit):
            cleanup.main(["--retention-days", "-1"])
