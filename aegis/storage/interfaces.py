from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from aegis.storage.models import (
    Account,
    AccountFilter,
    Permission,
    RefreshToken,
    Role,
)


class AccountStore(Protocol):
    def create_account(self, account: Account) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_username(self, username: str) -> Optional[Account]: ...

    def update_account(self, account: Account) -> Optional[Account]:
        """Persist ``account`` only if the stored version equals ``account.version``.

        Returns the stored copy with its version incremented, or ``None`` when
        the record is missing, deleted, or was changed in the meantime.
        """
        ...

    def list_accounts(self, filters: AccountFilter) -> Tuple[List[Account], int]: ...


class PermissionStore(Protocol):
    def create_permission(self, permission: Permission) -> Permission: ...

    def get_permission(self, permission_id: str) -> Optional[Permission]: ...

    def get_permission_by_pair(self, resource: str, action: str) -> Optional[Permission]: ...

    def list_permissions(self) -> List[Permission]: ...

    def delete_permission(self, permission_id: str) -> bool: ...

    def add_permission_to_role(self, role_id: str, permission_id: str) -> None: ...

    def remove_permission_from_role(self, role_id: str, permission_id: str) -> None: ...


class RoleStore(Protocol):
    def create_role(self, role: Role) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def update_role(self, role: Role) -> Optional[Role]: ...

    def delete_role(self, role_id: str) -> bool: ...

    def list_roles(self) -> List[Role]: ...

    def list_account_roles(self, account_id: str) -> List[Role]: ...

    def assign_role(self, account_id: str, role_id: str) -> None: ...

    def unassign_role(self, account_id: str, role_id: str) -> None: ...


class RefreshTokenStore(Protocol):
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token_id: str, now: datetime) -> bool: ...

    def rotate_refresh_token(
        self, current_id: str, successor: RefreshToken, now: datetime
    ) -> bool:
        """Atomically revoke ``current_id`` and insert ``successor``.

        Returns ``False`` without writing anything when ``current_id`` was
        already revoked.
        """
        ...

    def revoke_account_refresh_tokens(self, account_id: str, now: datetime) -> int: ...

    def delete_expired_refresh_tokens(self, before: datetime) -> int: ...

    def list_account_refresh_tokens(self, account_id: str) -> List[RefreshToken]: ...


class Store(AccountStore, PermissionStore, RoleStore, RefreshTokenStore, Protocol):
    """Everything the services need from a single backing store."""

    def seed_defaults(self) -> None: ...
