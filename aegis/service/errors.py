from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries a stable ``error_code`` that clients can branch on
    and an HTTP ``status_code`` used by the transport:
    - invalid_credential (401)
    - unauthorized (401)
    - token_expired (401)
    - forbidden (403)
    - not_found (404)
    - already_exists / conflict / version_mismatch (409)
    - invalid_status_transition (422)
    - validation_error (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def kind(self) -> str:
        """Machine-readable discriminator, identical to the public error code."""
        return self.error_code


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def as_dict(self) -> dict:
        return {"field": self.field, "message": self.message}


class ValidationError(ServiceError):
    """Request validation failed (400).

    Collects every offending field instead of stopping at the first one.
    """

    status_code = 400
    error_code = "validation_error"

    def __init__(
        self,
        message: str = "validation failed",
        *,
        fields: Optional[Iterable[FieldError]] = None,
        detail: Optional[dict] = None,
    ) -> None:
        self.fields = list(fields or [])
        merged = dict(detail or {})
        if self.fields:
            merged["fields"] = [f.as_dict() for f in self.fields]
        super().__init__(message, detail=merged)

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(f"{field}: {message}", fields=[FieldError(field, message)])


class PasswordRule(str, Enum):
    TOO_SHORT = "too_short"
    TOO_LONG = "too_long"
    MISSING_UPPER = "missing_upper"
    MISSING_LOWER = "missing_lower"
    MISSING_DIGIT = "missing_digit"


_RULE_MESSAGES = {
    PasswordRule.TOO_SHORT: "password must be at least 8 characters",
    PasswordRule.TOO_LONG: "password must be at most 72 characters",
    PasswordRule.MISSING_UPPER: "password must contain an uppercase letter",
    PasswordRule.MISSING_LOWER: "password must contain a lowercase letter",
    PasswordRule.MISSING_DIGIT: "password must contain a digit",
}


class PasswordStrengthError(ValidationError):
    """Password rejected by the strength policy (400)."""

    def __init__(self, rule: PasswordRule) -> None:
        self.rule = rule
        message = _RULE_MESSAGES[rule]
        super().__init__(
            message,
            fields=[FieldError("password", message)],
            detail={"rule": rule.value},
        )


class PasswordFailure(str, Enum):
    EMPTY = "empty"
    HASHING_FAILED = "hashing_failed"
    MISMATCH = "mismatch"


class PasswordError(ServiceError):
    """Hashing or verification of a password failed."""

    status_code = 401
    error_code = "invalid_credential"

    def __init__(self, reason: PasswordFailure, message: Optional[str] = None) -> None:
        self.reason = reason
        if reason is PasswordFailure.HASHING_FAILED:
            self.status_code = 500
            self.error_code = "server_error"
        elif reason is PasswordFailure.EMPTY:
            self.status_code = 400
            self.error_code = "validation_error"
        super().__init__(message or f"password {reason.value.replace('_', ' ')}")


class InvalidCredentialError(ServiceError):
    """Unknown account, wrong password or unknown refresh token (401)."""

    status_code = 401
    error_code = "invalid_credential"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""

    status_code = 401
    error_code = "unauthorized"


class TokenFailure(str, Enum):
    MALFORMED = "malformed"
    SIGNATURE_INVALID = "signature_invalid"
    NOT_YET_VALID = "not_yet_valid"
    WRONG_ISSUER = "wrong_issuer"
    WRONG_AUDIENCE = "wrong_audience"


class TokenInvalidError(AuthenticationError):
    """Access token failed structural or cryptographic checks (401)."""

    def __init__(self, reason: TokenFailure) -> None:
        self.reason = reason
        super().__init__("invalid token", detail={"reason": reason.value})


class TokenExpiredError(AuthenticationError):
    """Access or refresh token is past its expiry (401)."""

    error_code = "token_expired"

    def __init__(self, message: str = "token expired") -> None:
        super().__init__(message)


class TokenReusedError(InvalidCredentialError):
    """A revoked refresh token was presented again.

    Reported to clients as a plain invalid credential; every session of the
    owning account has already been revoked when this is raised.
    """

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__()

    @property
    def kind(self) -> str:
        return "token_reused"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""

    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource is still referenced or otherwise in use (409)."""

    status_code = 409
    error_code = "conflict"


class AlreadyExistsError(ConflictError):
    """Uniqueness constraint violated (409)."""

    error_code = "already_exists"


class VersionMismatchError(ConflictError):
    """Optimistic concurrency check failed; the caller's snapshot is stale (409)."""

    error_code = "version_mismatch"

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            "account was modified concurrently",
            detail={"expected_version": expected, "actual_version": actual},
        )


class InvalidStatusTransitionError(ServiceError):
    """Requested account status change is not an allowed edge (422)."""

    status_code = 422
    error_code = "invalid_status_transition"

    def __init__(self, source: str, target: str) -> None:
        self.source = source
        self.target = target
        super().__init__(
            f"cannot transition account status from {source} to {target}",
            detail={"from": source, "to": target},
        )


class ServerError(ServiceError):
    """Internal server error (500)."""

    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "FieldError",
    "ValidationError",
    "PasswordRule",
    "PasswordStrengthError",
    "PasswordFailure",
    "PasswordError",
    "InvalidCredentialError",
    "AuthenticationError",
    "TokenFailure",
    "TokenInvalidError",
    "TokenExpiredError",
    "TokenReusedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "AlreadyExistsError",
    "VersionMismatchError",
    "InvalidStatusTransitionError",
    "ServerError",
]
