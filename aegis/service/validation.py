"""Field checks for account data.

Each ``check_*`` returns an error message or ``None`` so callers can collect
every problem before raising a single ``ValidationError``.
"""

from __future__ import annotations

import re
import unicodedata
from typing import List, Optional

from aegis.service.errors import FieldError, ValidationError

USERNAME_MIN = 3
USERNAME_MAX = 50
FULL_NAME_MAX = 200
PHONE_MIN_DIGITS = 7

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
_PHONE_PATTERN = re.compile(r"^\+?[\d\s\-()]+$")


def normalize_email(value: str) -> str:
    return unicodedata.normalize("NFKC", (value or "").strip().lower())


def check_email(email: str) -> Optional[str]:
    if not email:
        return "required"
    if len(email) > 254:
        return "email address too long"
    local, sep, domain = email.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        return "invalid format"
    if not _EMAIL_LOCAL_PART.match(local):
        return "invalid format"
    labels = domain.split(".")
    if len(labels) < 2:
        return "invalid format"
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            return "invalid format"
    return None


def check_username(username: str) -> Optional[str]:
    if not username:
        return "required"
    if len(username) < USERNAME_MIN or len(username) > USERNAME_MAX:
        return f"must be {USERNAME_MIN}-{USERNAME_MAX} characters"
    if not _USERNAME_PATTERN.match(username):
        return "can only contain letters, numbers, underscores, and hyphens"
    return None


def check_full_name(full_name: str) -> Optional[str]:
    if not full_name:
        return "required"
    if len(full_name) > FULL_NAME_MAX:
        return f"must be at most {FULL_NAME_MAX} characters"
    return None


def check_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    if not _PHONE_PATTERN.match(phone):
        return "invalid phone format"
    if sum(ch.isdigit() for ch in phone) < PHONE_MIN_DIGITS:
        return "invalid phone format"
    return None


class FieldErrors:
    """Accumulator for per-field validation failures."""

    def __init__(self) -> None:
        self.errors: List[FieldError] = []

    def check(self, field: str, message: Optional[str]) -> None:
        if message:
            self.errors.append(FieldError(field, message))

    def add(self, field: str, message: str) -> None:
        self.errors.append(FieldError(field, message))

    def raise_if_any(self) -> None:
        if not self.errors:
            return
        if len(self.errors) == 1:
            only = self.errors[0]
            raise ValidationError(f"{only.field}: {only.message}", fields=self.errors)
        raise ValidationError("validation failed", fields=self.errors)
