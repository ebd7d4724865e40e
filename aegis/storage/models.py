from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class AccountStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class AccountType(str, Enum):
    ADMIN = "admin"
    CUSTOMER = "customer"
    PARTNER = "partner"


@dataclass
class Account:
    id: str
    email: str
    username: str
    password_hash: str
    full_name: str
    phone: Optional[str] = None
    account_type: AccountType = AccountType.CUSTOMER
    status: AccountStatus = AccountStatus.PENDING
    email_verified: bool = False
    phone_verified: bool = False
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class Permission:
    id: str
    resource: str
    action: str
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)

    @property
    def claim(self) -> str:
        return f"{self.resource}:{self.action}"


@dataclass
class Role:
    id: str
    name: str
    description: str = ""
    permissions: List[Permission] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    id: str
    account_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None
    replaced_by_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_valid(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)


@dataclass
class AccountFilter:
    status: Optional[AccountStatus] = None
    account_type: Optional[AccountType] = None
    search: Optional[str] = None
    offset: int = 0
    limit: int = 20

    MAX_LIMIT = 100

    def normalized(self) -> "AccountFilter":
        limit = self.limit if self.limit > 0 else 20
        return AccountFilter(
            status=self.status,
            account_type=self.account_type,
            search=(self.search or "").strip().lower() or None,
            offset=max(self.offset, 0),
            limit=min(limit, self.MAX_LIMIT),
        )
