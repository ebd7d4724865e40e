from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Tuple

from aegis.config import Settings
from aegis.logging import get_logger
from aegis.service.errors import TokenExpiredError, TokenFailure, TokenInvalidError

logger = get_logger(__name__)

_ALGORITHM = "HS256"


@dataclass(frozen=True)
class TokenConfig:
    """Signing parameters, fixed for the lifetime of a TokenIssuer."""

    secret: str
    issuer: str
    audience: Tuple[str, ...]
    access_ttl: timedelta = timedelta(minutes=15)
    refresh_ttl: timedelta = timedelta(days=7)
    leeway: timedelta = timedelta(0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenConfig":
        return cls(
            secret=settings.resolved_jwt_secret(),
            issuer=settings.jwt_issuer,
            audience=settings.audiences,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            leeway=timedelta(seconds=settings.clock_skew_leeway_seconds),
        )


@dataclass(frozen=True)
class TokenPayload:
    """Identity and authorization data to embed in an access token."""

    account_id: str
    email: str
    username: str
    account_type: str
    permissions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AccessClaims:
    account_id: str
    email: str
    username: str
    account_type: str
    permissions: List[str]
    issued_at: datetime
    not_before: datetime
    expires_at: datetime
    token_id: str
    issuer: str
    audience: List[str] = field(default_factory=list)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _ts(value: datetime) -> int:
    return int(value.timestamp())


def _from_ts(value: Any) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class TokenIssuer:
    """Mints and verifies HS256 access tokens."""

    def __init__(self, config: TokenConfig) -> None:
        if not config.secret:
            raise ValueError("token signing secret must not be empty")
        self.config = config
        self._key = config.secret.encode("utf-8")

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_access(self, payload: TokenPayload, now: datetime) -> Tuple[str, datetime]:
        """Return the signed token and its expiry instant."""
        expires_at = now + self.config.access_ttl
        claims = {
            "sub": payload.account_id,
            "uid": payload.account_id,
            "email": payload.email,
            "username": payload.username,
            "account_type": payload.account_type,
            "permissions": list(payload.permissions),
            "iss": self.config.issuer,
            "aud": list(self.config.audience),
            "iat": _ts(now),
            "nbf": _ts(now),
            "exp": _ts(expires_at),
            "jti": str(uuid.uuid4()),
        }
        return self._encode(claims), _from_ts(claims["exp"])

    def validate_access(self, token: str, now: datetime) -> AccessClaims:
        """Verify signature, algorithm, issuer, audience and time bounds.

        Expiry is only reported once the signature has been verified, so a
        forged token never learns anything beyond "invalid".
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenInvalidError(TokenFailure.MALFORMED)

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError(TokenFailure.MALFORMED)
        if not isinstance(header, dict):
            raise TokenInvalidError(TokenFailure.MALFORMED)
        if header.get("alg") != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenInvalidError(TokenFailure.SIGNATURE_INVALID)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalidError(TokenFailure.SIGNATURE_INVALID)

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError(TokenFailure.MALFORMED)
        if not isinstance(payload, dict):
            raise TokenInvalidError(TokenFailure.MALFORMED)

        try:
            issued_at = _from_ts(payload["iat"])
            not_before = _from_ts(payload.get("nbf", payload["iat"]))
            expires_at = _from_ts(payload["exp"])
            account_id = str(payload["sub"])
        except (KeyError, TypeError, ValueError, OverflowError):
            raise TokenInvalidError(TokenFailure.MALFORMED)

        if payload.get("iss") != self.config.issuer:
            raise TokenInvalidError(TokenFailure.WRONG_ISSUER)
        aud = payload.get("aud")
        audiences = [aud] if isinstance(aud, str) else aud if isinstance(aud, list) else []
        if not any(a in self.config.audience for a in audiences):
            raise TokenInvalidError(TokenFailure.WRONG_AUDIENCE)

        leeway = self.config.leeway
        if now >= expires_at + leeway:
            raise TokenExpiredError()
        if now + leeway < not_before:
            raise TokenInvalidError(TokenFailure.NOT_YET_VALID)

        permissions = payload.get("permissions") or []
        if not isinstance(permissions, list):
            raise TokenInvalidError(TokenFailure.MALFORMED)

        return AccessClaims(
            account_id=account_id,
            email=str(payload.get("email", "")),
            username=str(payload.get("username", "")),
            account_type=str(payload.get("account_type", "")),
            permissions=[str(p) for p in permissions],
            issued_at=issued_at,
            not_before=not_before,
            expires_at=expires_at,
            token_id=str(payload.get("jti", "")),
            issuer=str(payload["iss"]),
            audience=audiences,
        )
