"""Tests for the HS256 access/refresh token codec."""

import base64
import json
import time
from dataclasses import replace

import pytest

from cobaltauth.config import TokenConfig
from cobaltauth.service.errors import InvalidToken, TokenExpired
from cobaltauth.service.tokens import (
    hash_token,
    issue_access,
    issue_refresh,
    verify_access,
    verify_refresh,
)

NOW = 1_700_000_000


def _segment(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestAccessTokens:
    def test_round_trip(self, token_config):
        """verify_access(issue_access(...)).sub is the user id."""
        token = issue_access("user-1", "alice", token_config, now=NOW)
        claims = verify_access(token, token_config, now=NOW + 1)

        assert claims.sub == "user-1"
        assert claims.username == "alice"
        assert claims.iat == NOW
        assert claims.exp == NOW + token_config.access_ttl_seconds

    def test_default_lifetime_is_thirty_minutes(self):
        config = TokenConfig(secret="s" * 32)
        token = issue_access("user-1", "alice", config, now=NOW)
        assert _payload(token)["exp"] - NOW == 30 * 60

    def test_claims_carry_issuer_audience_and_type(self, token_config):
        payload = _payload(issue_access("user-1", "alice", token_config, now=NOW))

        assert payload["iss"] == token_config.issuer
        assert payload["aud"] == token_config.audience
        assert payload["token_type"] == "access"
        assert payload["jti"]

    def test_expired_token_raises_token_expired(self, token_config):
        """Expiry is its own error kind, distinct from InvalidToken."""
        token = issue_access("user-1", "alice", token_config, now=NOW)
        with pytest.raises(TokenExpired):
            verify_access(token, token_config, now=NOW + token_config.access_ttl_seconds)

    def test_leeway_tolerates_small_skew(self, token_config):
        lenient = replace(token_config, leeway_seconds=30)
        token = issue_access("user-1", "alice", lenient, now=NOW)
        claims = verify_access(token, lenient, now=NOW + lenient.access_ttl_seconds + 10)
        assert claims.sub == "user-1"

    def test_wrong_secret_is_invalid(self, token_config):
        token = issue_access("user-1", "alice", token_config, now=NOW)
        other = replace(token_config, secret="another-secret-that-is-long-enough!!")
        with pytest.raises(InvalidToken):
            verify_access(token, other, now=NOW)

    def test_expired_token_with_bad_signature_is_invalid(self, token_config):
        """A forged token never reports TokenExpired."""
        token = issue_access("user-1", "alice", token_config, now=NOW)
        other = replace(token_config, secret="another-secret-that-is-long-enough!!")
        with pytest.raises(InvalidToken):
            verify_access(token, other, now=NOW + 10 ** 6)

    def test_tampered_payload_is_invalid(self, token_config):
        token = issue_access("user-1", "alice", token_config, now=NOW)
        header, _, signature = token.split(".")
        forged_payload = _payload(token)
        forged_payload["sub"] = "user-2"
        forged = f"{header}.{_segment(forged_payload)}.{signature}"
        with pytest.raises(InvalidToken):
            verify_access(forged, token_config, now=NOW)

    def test_alg_none_is_rejected(self, token_config):
        token = issue_access("user-1", "alice", token_config, now=NOW)
        _, payload, signature = token.split(".")
        forged = f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{payload}.{signature}"
        with pytest.raises(InvalidToken):
            verify_access(forged, token_config, now=NOW)

    def test_wrong_audience_is_invalid(self, token_config):
        token = issue_access("user-1", "alice", token_config, now=NOW)
        with pytest.raises(InvalidToken):
            verify_access(token, replace(token_config, audience="someone-else"), now=NOW)

    @pytest.mark.parametrize(
        "garbage", ["", "abc", "a.b", "a.b.c.d", "###.###.###", "h.p.é", "é.é.é"]
    )
    def test_malformed_tokens_are_invalid(self, token_config, garbage):
        with pytest.raises(InvalidToken):
            verify_access(garbage, token_config, now=NOW)

    @pytest.mark.parametrize("signature", ["é", "sigÿ", "\udcff"])
    def test_non_ascii_signature_is_invalid(self, token_config, signature):
        access = issue_access("user-1", "alice", token_config, now=NOW)
        refresh, _ = issue_refresh("user-1", token_config, now=NOW)

        with pytest.raises(InvalidToken):
            verify_access(access.rsplit(".", 1)[0] + "." + signature, token_config, now=NOW)
        with pytest.raises(InvalidToken):
            verify_refresh(refresh.rsplit(".", 1)[0] + "." + signature, token_config, now=NOW)

    def test_refresh_token_is_not_an_access_token(self, token_config):
        token, _ = issue_refresh("user-1", token_config, now=NOW)
        with pytest.raises(InvalidToken):
            verify_access(token, token_config, now=NOW)

    def test_remaining_seconds(self, token_config):
        token = issue_access("user-1", "alice", token_config, now=NOW)
        claims = verify_access(token, token_config, now=NOW)
        assert claims.remaining_seconds(NOW + 100) == token_config.access_ttl_seconds - 100
        assert claims.remaining_seconds(NOW + 10 ** 6) == 0

    def test_uses_wall_clock_by_default(self, token_config):
        token = issue_access("user-1", "alice", token_config)
        claims = verify_access(token, token_config)
        assert abs(claims.iat - time.time()) < 5


class TestRefreshTokens:
    def test_round_trip_returns_matching_jti(self, token_config):
        token, jti = issue_refresh("user-1", token_config, now=NOW)
        claims = verify_refresh(token, token_config, now=NOW)

        assert claims.sub == "user-1"
        assert claims.jti == jti
        assert claims.exp == NOW + 7 * 24 * 60 * 60

    def test_each_issuance_gets_a_fresh_jti(self, token_config):
        jtis = {issue_refresh("user-1", token_config, now=NOW)[1] for _ in range(20)}
        assert len(jtis) == 20

    def test_access_token_is_not_a_refresh_token(self, token_config):
        token = issue_access("user-1", "alice", token_config, now=NOW)
        with pytest.raises(InvalidToken):
            verify_refresh(token, token_config, now=NOW)

    def test_expired_refresh_token(self, token_config):
        token, _ = issue_refresh("user-1", token_config, now=NOW)
        with pytest.raises(TokenExpired):
            verify_refresh(token, token_config, now=NOW + token_config.refresh_ttl_seconds + 1)


class TestHashToken:
    def test_sha256_hex(self):
        digest = hash_token("abc")
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
