from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from aegis.storage.models import AccountStatus, AccountType

MAX_STRING_LENGTH = 1024

_VALID_ERROR_CODES = {
    "invalid_credential",
    "unauthorized",
    "token_expired",
    "forbidden",
    "not_found",
    "already_exists",
    "conflict",
    "version_mismatch",
    "invalid_status_transition",
    "validation_error",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# requests -------------------------------------------------------------------


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_STRING_LENGTH)
    username: str = Field(..., max_length=MAX_STRING_LENGTH)
    full_name: Optional[str] = Field(None, max_length=MAX_STRING_LENGTH)
    phone: Optional[str] = Field(None, max_length=64)
    account_type: AccountType = AccountType.CUSTOMER


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_STRING_LENGTH)


class RefreshRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    refresh_token: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)


class LogoutRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    refresh_token: str = Field(..., max_length=MAX_STRING_LENGTH)


class StatusChangeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: AccountStatus
    reason: Optional[str] = Field(None, max_length=500)
    expected_version: Optional[int] = Field(None, ge=1)


class RoleCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., max_length=MAX_STRING_LENGTH)
    description: str = Field("", max_length=MAX_STRING_LENGTH)


class PermissionCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    resource: str = Field(..., max_length=MAX_STRING_LENGTH)
    action: str = Field(..., max_length=MAX_STRING_LENGTH)
    description: str = Field("", max_length=MAX_STRING_LENGTH)


# responses ------------------------------------------------------------------


class AccountResponse(BaseModel):
    id: str
    email: str
    username: str
    full_name: str
    phone: Optional[str] = None
    account_type: str
    status: str
    email_verified: bool
    phone_verified: bool
    version: Optional[int] = None
    created_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int
    account: AccountResponse


class ClaimsResponse(BaseModel):
    account_id: str
    email: str
    username: str
    account_type: str
    permissions: List[str]
    expires_at: datetime
    token_id: str


class PermissionResponse(BaseModel):
    id: str
    resource: str
    action: str
    description: str = ""


class RoleResponse(BaseModel):
    id: str
    name: str
    description: str = ""
    permissions: List[PermissionResponse] = Field(default_factory=list)


class AccountListResponse(BaseModel):
    items: List[AccountResponse]
    total: int
    offset: int
    limit: int
