from __future__ import annotations

import copy
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from aegis.logging import get_logger
from aegis.storage.defaults import DEFAULT_PERMISSIONS, DEFAULT_ROLE_GRANTS, DEFAULT_ROLES
from aegis.storage.errors import ConstraintViolation
from aegis.storage.models import (
    Account,
    AccountFilter,
    Permission,
    RefreshToken,
    Role,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-process backing store used for tests and single-node development.

    Every public method takes ``_data_lock`` so conditional writes
    (``update_account``, ``rotate_refresh_token``) check and mutate atomically.
    Callers always receive copies; stored records are never shared.
    """

    def __init__(self, *, seed: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.permissions: Dict[str, Permission] = {}
        self.roles: Dict[str, Role] = {}
        self.role_permissions: Dict[str, Set[str]] = {}
        self.account_roles: Dict[str, Set[str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._tokens_by_hash: Dict[str, str] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        if seed:
            self.seed_defaults()

    def seed_defaults(self) -> None:
        with self._data_lock:
            for resource, action, description in DEFAULT_PERMISSIONS:
                if self._find_permission(resource, action) is None:
                    perm = Permission(
                        id=new_id(), resource=resource, action=action, description=description
                    )
                    self.permissions[perm.id] = perm
            for name, description in DEFAULT_ROLES:
                role = self._find_role(name)
                if role is None:
                    role = Role(id=new_id(), name=name, description=description)
                    self.roles[role.id] = role
                    self.role_permissions[role.id] = set()
                grants = DEFAULT_ROLE_GRANTS.get(name, [])
                for perm in self.permissions.values():
                    if "*" in grants or perm.claim in grants:
                        self.role_permissions[role.id].add(perm.id)
            self.logger.debug("store_defaults_seeded", roles=len(self.roles), permissions=len(self.permissions))

    # accounts -----------------------------------------------------------

    def _unique_conflict(self, account: Account) -> Optional[str]:
        for existing in self.accounts.values():
            if existing.id == account.id or existing.is_deleted:
                continue
            if existing.email.lower() == account.email.lower():
                return "email"
            if existing.username.lower() == account.username.lower():
                return "username"
        return None

    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            conflict = self._unique_conflict(account)
            if conflict:
                raise ConstraintViolation(f"{conflict} already exists", {"field": conflict})
            stored = copy.deepcopy(account)
            self.accounts[stored.id] = stored
            self.account_roles.setdefault(stored.id, set())
            return copy.deepcopy(stored)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.is_deleted:
                return None
            return copy.deepcopy(account)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        needle = email.lower()
        with self._data_lock:
            for account in self.accounts.values():
                if not account.is_deleted and account.email.lower() == needle:
                    return copy.deepcopy(account)
            return None

    def get_account_by_username(self, username: str) -> Optional[Account]:
        needle = username.lower()
        with self._data_lock:
            for account in self.accounts.values():
                if not account.is_deleted and account.username.lower() == needle:
                    return copy.deepcopy(account)
            return None

    def update_account(self, account: Account) -> Optional[Account]:
        with self._data_lock:
            stored = self.accounts.get(account.id)
            if not stored or stored.is_deleted or stored.version != account.version:
                return None
            conflict = self._unique_conflict(account)
            if conflict:
                raise ConstraintViolation(f"{conflict} already exists", {"field": conflict})
            updated = copy.deepcopy(account)
            updated.version = stored.version + 1
            updated.updated_at = utcnow()
            updated.created_at = stored.created_at
            self.accounts[account.id] = updated
            return copy.deepcopy(updated)

    def list_accounts(self, filters: AccountFilter) -> Tuple[List[Account], int]:
        f = filters.normalized()
        with self._data_lock:
            matches = []
            for account in self.accounts.values():
                if account.is_deleted:
                    continue
                if f.status and account.status != f.status:
                    continue
                if f.account_type and account.account_type != f.account_type:
                    continue
                if f.search and not any(
                    f.search in value.lower()
                    for value in (account.email, account.username, account.full_name)
                ):
                    continue
                matches.append(account)
            matches.sort(key=lambda a: a.created_at, reverse=True)
            page = matches[f.offset : f.offset + f.limit]
            return [copy.deepcopy(a) for a in page], len(matches)

    # permissions --------------------------------------------------------

    def _find_permission(self, resource: str, action: str) -> Optional[Permission]:
        for perm in self.permissions.values():
            if perm.resource == resource and perm.action == action:
                return perm
        return None

    def create_permission(self, permission: Permission) -> Permission:
        with self._data_lock:
            if self._find_permission(permission.resource, permission.action):
                raise ConstraintViolation("permission already exists", {"field": "permission"})
            self.permissions[permission.id] = copy.deepcopy(permission)
            return copy.deepcopy(permission)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            perm = self.permissions.get(permission_id)
            return copy.deepcopy(perm) if perm else None

    def get_permission_by_pair(self, resource: str, action: str) -> Optional[Permission]:
        with self._data_lock:
            perm = self._find_permission(resource, action)
            return copy.deepcopy(perm) if perm else None

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            perms = sorted(self.permissions.values(), key=lambda p: (p.resource, p.action))
            return [copy.deepcopy(p) for p in perms]

    def delete_permission(self, permission_id: str) -> bool:
        with self._data_lock:
            if permission_id not in self.permissions:
                return False
            if any(permission_id in perms for perms in self.role_permissions.values()):
                raise ConstraintViolation(
                    "permission is granted to roles", {"reason": "in_use"}
                )
            del self.permissions[permission_id]
            return True

    def add_permission_to_role(self, role_id: str, permission_id: str) -> None:
        with self._data_lock:
            if role_id not in self.roles or permission_id not in self.permissions:
                raise ConstraintViolation(
                    "role or permission does not exist", {"reason": "missing_reference"}
                )
            self.role_permissions.setdefault(role_id, set()).add(permission_id)

    def remove_permission_from_role(self, role_id: str, permission_id: str) -> None:
        with self._data_lock:
            self.role_permissions.get(role_id, set()).discard(permission_id)

    # roles --------------------------------------------------------------

    def _find_role(self, name: str) -> Optional[Role]:
        for role in self.roles.values():
            if role.name == name:
                return role
        return None

    def _hydrate_role(self, role: Role) -> Role:
        hydrated = copy.deepcopy(role)
        perms = [
            copy.deepcopy(self.permissions[pid])
            for pid in self.role_permissions.get(role.id, set())
            if pid in self.permissions
        ]
        hydrated.permissions = sorted(perms, key=lambda p: (p.resource, p.action))
        return hydrated

    def create_role(self, role: Role) -> Role:
        with self._data_lock:
            if self._find_role(role.name):
                raise ConstraintViolation("role already exists", {"field": "name"})
            stored = replace(role, permissions=[])
            self.roles[stored.id] = stored
            self.role_permissions[stored.id] = {
                p.id for p in role.permissions if p.id in self.permissions
            }
            return self._hydrate_role(stored)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return self._hydrate_role(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = self._find_role(name)
            return self._hydrate_role(role) if role else None

    def update_role(self, role: Role) -> Optional[Role]:
        with self._data_lock:
            stored = self.roles.get(role.id)
            if not stored:
                return None
            other = self._find_role(role.name)
            if other and other.id != role.id:
                raise ConstraintViolation("role already exists", {"field": "name"})
            stored.name = role.name
            stored.description = role.description
            stored.updated_at = utcnow()
            return self._hydrate_role(stored)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if role_id not in self.roles:
                return False
            if any(role_id in roles for roles in self.account_roles.values()):
                raise ConstraintViolation("role is assigned to accounts", {"reason": "in_use"})
            del self.roles[role_id]
            self.role_permissions.pop(role_id, None)
            return True

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            roles = sorted(self.roles.values(), key=lambda r: r.name)
            return [self._hydrate_role(r) for r in roles]

    def list_account_roles(self, account_id: str) -> List[Role]:
        with self._data_lock:
            role_ids = self.account_roles.get(account_id, set())
            roles = sorted(
                (self.roles[rid] for rid in role_ids if rid in self.roles),
                key=lambda r: r.name,
            )
            return [self._hydrate_role(r) for r in roles]

    def assign_role(self, account_id: str, role_id: str) -> None:
        with self._data_lock:
            if account_id not in self.accounts or role_id not in self.roles:
                raise ConstraintViolation(
                    "account or role does not exist", {"reason": "missing_reference"}
                )
            self.account_roles.setdefault(account_id, set()).add(role_id)

    def unassign_role(self, account_id: str, role_id: str) -> None:
        with self._data_lock:
            self.account_roles.get(account_id, set()).discard(role_id)

    # refresh tokens -----------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token_hash in self._tokens_by_hash:
                raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
            self.refresh_tokens[token.id] = replace(token)
            self._tokens_by_hash[token.token_hash] = token.id
            return replace(token)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._tokens_by_hash.get(token_hash)
            if token_id is None:
                return None
            token = self.refresh_tokens.get(token_id)
            return replace(token) if token else None

    def revoke_refresh_token(self, token_id: str, now: datetime) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if not token or token.is_revoked:
                return False
            token.revoked_at = now
            return True

    def rotate_refresh_token(
        self, current_id: str, successor: RefreshToken, now: datetime
    ) -> bool:
        with self._data_lock:
            current = self.refresh_tokens.get(current_id)
            if not current or current.is_revoked:
                return False
            if successor.token_hash in self._tokens_by_hash:
                raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
            current.revoked_at = now
            current.replaced_by_id = successor.id
            self.refresh_tokens[successor.id] = replace(successor)
            self._tokens_by_hash[successor.token_hash] = successor.id
            return True

    def revoke_account_refresh_tokens(self, account_id: str, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for token in self.refresh_tokens.values():
                if token.account_id == account_id and not token.is_revoked:
                    token.revoked_at = now
                    count += 1
            return count

    def delete_expired_refresh_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [t for t in self.refresh_tokens.values() if t.expires_at < before]
            for token in stale:
                self.refresh_tokens.pop(token.id, None)
                self._tokens_by_hash.pop(token.token_hash, None)
            return len(stale)

    def list_account_refresh_tokens(self, account_id: str) -> List[RefreshToken]:
        with self._data_lock:
            tokens = [t for t in self.refresh_tokens.values() if t.account_id == account_id]
            tokens.sort(key=lambda t: t.created_at)
            return [replace(t) for t in tokens]
