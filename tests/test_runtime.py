"""Runtime wiring: store and cache selection, singleton behavior."""

import pytest

from cobaltauth.service import runtime as runtime_module
from cobaltauth.service.runtime import (
    Runtime,
    _mask_url_password,
    get_runtime,
    reset_runtime_for_tests,
)
from cobaltauth.storage.memory import MemoryStore
from cobaltauth.storage.memory_cache import MemoryCache


def test_test_mode_uses_memory_backends():
    runtime = get_runtime()
    assert isinstance(runtime.store, MemoryStore)
    assert isinstance(runtime.cache, MemoryCache)
    assert runtime.store.fs_root is None
    assert runtime.rate_limiter is runtime.auth.rate_limiter


def test_get_runtime_is_a_singleton():
    assert get_runtime() is get_runtime()


def test_reset_builds_a_fresh_runtime():
    first = get_runtime()
    second = reset_runtime_for_tests()
    assert second is not first
    assert get_runtime() is second


def test_unreachable_redis_falls_back_under_test_mode(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:1/0")
    monkeypatch.setenv("REDIS_SOCKET_TIMEOUT", "0.2")
    runtime = reset_runtime_for_tests()
    assert isinstance(runtime.cache, MemoryCache)


def test_missing_redis_is_fatal_outside_fallback(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
    monkeypatch.setenv("REDIS_URL", "")
    runtime_module.reset_settings_cache()
    with pytest.raises(RuntimeError, match="Redis is required"):
        Runtime()
    runtime_module.reset_settings_cache()


def test_reset_refused_outside_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    with pytest.raises(RuntimeError, match="TEST_MODE"):
        reset_runtime_for_tests()


async def test_close_releases_cache():
    runtime = get_runtime()
    await runtime.cache.blacklist_add("tok", 60)
    await runtime.close()
    assert await runtime.cache.blacklist_contains("tok") is False


@pytest.mark.parametrize(
    "url,expected",
    [
        ("redis://:hunter2@cache:6379/0", "redis://:***@cache:6379/0"),
        ("postgresql://app:pw@db/auth", "postgresql://app:***@db/auth"),
        ("redis://cache:6379/0", "redis://cache:6379/0"),
        (None, None),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected
