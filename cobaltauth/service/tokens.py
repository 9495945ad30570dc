from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from cobaltauth.config import TokenConfig
from cobaltauth.logging import get_logger
from cobaltauth.service.errors import InvalidToken, TokenExpired

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    username: str
    jti: str
    iat: int
    exp: int

    def remaining_seconds(self, now: Optional[float] = None) -> int:
        current = time.time() if now is None else now
        return max(0, int(self.exp - current))


@dataclass(frozen=True)
class RefreshClaims:
    sub: str
    jti: str
    iat: int
    exp: int


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a token string; the only form tokens are stored in."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(signing_input: str, secret: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


def _encode_jwt(payload: dict[str, Any], config: TokenConfig) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(signing_input, config.secret)}"


def _decode_jwt(
    token: str, config: TokenConfig, expected_type: str, now: Optional[float]
) -> dict[str, Any]:
    if not isinstance(token, str) or not token:
        raise InvalidToken()
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
    except ValueError:
        raise InvalidToken() from None

    # Pin the algorithm so a forged header can't downgrade verification
    try:
        header = json.loads(_decode_segment(header_b64))
    except (ValueError, TypeError):
        logger.warning("jwt_header_decode_failed")
        raise InvalidToken() from None
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        logger.warning(
            "jwt_invalid_algorithm",
            alg=header.get("alg") if isinstance(header, dict) else None,
        )
        raise InvalidToken()

    expected_sig = _sign(f"{header_b64}.{payload_b64}", config.secret)
    # compare_digest refuses non-ASCII str, so compare the raw bytes
    if not hmac.compare_digest(
        expected_sig.encode(), sig_b64.encode("utf-8", "surrogateescape")
    ):
        raise InvalidToken()
    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, TypeError) as exc:
        logger.warning("jwt_payload_decode_failed", error=str(exc))
        raise InvalidToken() from None
    if not isinstance(payload, dict):
        raise InvalidToken()

    if payload.get("iss") != config.issuer:
        raise InvalidToken()
    aud = payload.get("aud")
    if isinstance(aud, str):
        valid_aud = aud == config.audience
    elif isinstance(aud, list):
        valid_aud = config.audience in aud
    else:
        valid_aud = False
    if not valid_aud:
        raise InvalidToken()
    if payload.get("token_type") != expected_type:
        raise InvalidToken()
    if not payload.get("sub") or not payload.get("jti"):
        raise InvalidToken()

    try:
        exp_ts = int(payload["exp"])
        int(payload.get("iat", 0))
    except (KeyError, TypeError, ValueError):
        raise InvalidToken() from None
    current = time.time() if now is None else now
    # Signature is already trusted here, so expiry can be reported precisely
    if exp_ts <= current - config.leeway_seconds:
        raise TokenExpired()
    return payload


def issue_access(
    user_id: str,
    username: str,
    config: TokenConfig,
    *,
    now: Optional[float] = None,
) -> str:
    issued_at = int(time.time() if now is None else now)
    payload = {
        "iss": config.issuer,
        "aud": config.audience,
        "sub": user_id,
        "username": username,
        "token_type": ACCESS_TOKEN_TYPE,
        "jti": str(uuid.uuid4()),
        "iat": issued_at,
        "exp": issued_at + config.access_ttl_seconds,
    }
    return _encode_jwt(payload, config)


def issue_refresh(
    user_id: str,
    config: TokenConfig,
    *,
    now: Optional[float] = None,
) -> Tuple[str, str]:
    """Return ``(token, jti)``; the jti keys the server-side refresh record."""
    issued_at = int(time.time() if now is None else now)
    jti = str(uuid.uuid4())
    payload = {
        "iss": config.issuer,
        "aud": config.audience,
        "sub": user_id,
        "token_type": REFRESH_TOKEN_TYPE,
        "jti": jti,
        "iat": issued_at,
        "exp": issued_at + config.refresh_ttl_seconds,
    }
    return _encode_jwt(payload, config), jti


def verify_access(
    token: str, config: TokenConfig, *, now: Optional[float] = None
) -> AccessClaims:
    """Check signature, audience and expiry of an access token.

    Raises:
        TokenExpired: the signature is valid but ``exp`` has passed.
        InvalidToken: anything else, including a refresh token presented here.
    """
    payload = _decode_jwt(token, config, ACCESS_TOKEN_TYPE, now)
    username = payload.get("username")
    if not isinstance(username, str):
        raise InvalidToken()
    return AccessClaims(
        sub=str(payload["sub"]),
        username=username,
        jti=str(payload["jti"]),
        iat=int(payload.get("iat", 0)),
        exp=int(payload["exp"]),
    )


def verify_refresh(
    token: str, config: TokenConfig, *, now: Optional[float] = None
) -> RefreshClaims:
    payload = _decode_jwt(token, config, REFRESH_TOKEN_TYPE, now)
    return RefreshClaims(
        sub=str(payload["sub"]),
        jti=str(payload["jti"]),
        iat=int(payload.get("iat", 0)),
        exp=int(payload["exp"]),
    )
