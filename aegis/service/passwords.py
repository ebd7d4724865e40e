from __future__ import annotations

import base64
import hashlib
import os

from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError, InvalidHash, VerificationError, VerifyMismatchError

from aegis.logging import get_logger
from aegis.service.errors import (
    PasswordError,
    PasswordFailure,
    PasswordRule,
    PasswordStrengthError,
)

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 72
REFRESH_TOKEN_BYTES = 32

_pwd_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> str:
    """Return an encoded argon2id hash; salt and cost travel inside the string."""
    if not password:
        raise PasswordError(PasswordFailure.EMPTY)
    try:
        return _pwd_hasher.hash(password)
    except HashingError as exc:
        logger.error("password_hashing_failed", error=str(exc))
        raise PasswordError(PasswordFailure.HASHING_FAILED) from exc


def verify_password(password: str, encoded_hash: str) -> None:
    """Raise ``PasswordError(MISMATCH)`` unless ``password`` matches ``encoded_hash``."""
    if not password or not encoded_hash:
        raise PasswordError(PasswordFailure.MISMATCH)
    try:
        _pwd_hasher.verify(encoded_hash, password)
    except VerifyMismatchError as exc:
        raise PasswordError(PasswordFailure.MISMATCH) from exc
    except (InvalidHash, VerificationError) as exc:
        logger.warning("password_hash_unreadable", error=str(exc))
        raise PasswordError(PasswordFailure.MISMATCH) from exc


def needs_rehash(encoded_hash: str) -> bool:
    try:
        return _pwd_hasher.check_needs_rehash(encoded_hash)
    except InvalidHash:
        return True


def _has(password: str, lo: str, hi: str) -> bool:
    return any(lo <= ch <= hi for ch in password)


def check_strength(password: str) -> None:
    """Apply the password policy, raising on the first rule that fails.

    Rules are evaluated in a fixed order: length bounds first, then
    uppercase, lowercase and digit presence (ASCII classes).
    """
    if len(password) < MIN_PASSWORD_LENGTH:
        raise PasswordStrengthError(PasswordRule.TOO_SHORT)
    if len(password) > MAX_PASSWORD_LENGTH:
        raise PasswordStrengthError(PasswordRule.TOO_LONG)
    if not _has(password, "A", "Z"):
        raise PasswordStrengthError(PasswordRule.MISSING_UPPER)
    if not _has(password, "a", "z"):
        raise PasswordStrengthError(PasswordRule.MISSING_LOWER)
    if not _has(password, "0", "9"):
        raise PasswordStrengthError(PasswordRule.MISSING_DIGIT)


def generate_refresh_token() -> str:
    return base64.urlsafe_b64encode(os.urandom(REFRESH_TOKEN_BYTES)).decode().rstrip("=")


def hash_refresh_token(raw: str) -> str:
    """One-way digest used as the lookup key for stored refresh tokens."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


__all__ = [
    "hash_password",
    "verify_password",
    "needs_rehash",
    "check_strength",
    "generate_refresh_token",
    "hash_refresh_token",
]
