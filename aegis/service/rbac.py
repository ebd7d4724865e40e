from __future__ import annotations

from dataclasses import replace
from typing import List, Optional

from aegis.logging import get_logger
from aegis.service import events
from aegis.service.errors import AlreadyExistsError, ConflictError, NotFoundError
from aegis.service.events import DomainEvent, EventSink, NullEventSink, publish_safely
from aegis.service.permissions import MAX_PART_LENGTH, PermissionSet, normalize_part, resolve
from aegis.service.validation import FieldErrors
from aegis.storage.errors import ConstraintViolation
from aegis.storage.interfaces import Store
from aegis.storage.models import Permission, Role, new_id, utcnow

logger = get_logger(__name__)

ROLE_NAME_MAX = 50


def _check_part(value: str) -> Optional[str]:
    if not value:
        return "required"
    if len(value) > MAX_PART_LENGTH:
        return f"must be at most {MAX_PART_LENGTH} characters"
    if ":" in value:
        return "must not contain ':'"
    return None


def _check_role_name(name: str) -> Optional[str]:
    if not name:
        return "required"
    if len(name) > ROLE_NAME_MAX:
        return f"must be at most {ROLE_NAME_MAX} characters"
    return None


class RBACService:
    """Role and permission administration plus stored-role permission checks."""

    def __init__(self, store: Store, *, sink: Optional[EventSink] = None) -> None:
        self.store = store
        self.sink = sink or NullEventSink()

    # roles --------------------------------------------------------------

    def _require_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return role

    async def create_role(self, name: str, description: str = "") -> Role:
        name = normalize_part(name)
        errors = FieldErrors()
        errors.check("name", _check_role_name(name))
        errors.raise_if_any()
        now = utcnow()
        try:
            role = self.store.create_role(
                Role(id=new_id(), name=name, description=description or "", created_at=now, updated_at=now)
            )
        except ConstraintViolation as exc:
            raise AlreadyExistsError("role already exists", detail={"field": "name"}) from exc
        logger.info("role_created", role_id=role.id, name=role.name)
        return role

    async def get_role(self, role_id: str) -> Role:
        return self._require_role(role_id)

    async def get_role_by_name(self, name: str) -> Role:
        role = self.store.get_role_by_name(normalize_part(name))
        if not role:
            raise NotFoundError("role not found", detail={"name": name})
        return role

    async def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    async def update_role(
        self, role_id: str, *, name: Optional[str] = None, description: Optional[str] = None
    ) -> Role:
        role = self._require_role(role_id)
        changes: dict = {}
        if name is not None:
            changes["name"] = normalize_part(name)
            errors = FieldErrors()
            errors.check("name", _check_role_name(changes["name"]))
            errors.raise_if_any()
        if description is not None:
            changes["description"] = description
        if not changes:
            return role
        try:
            updated = self.store.update_role(replace(role, **changes))
        except ConstraintViolation as exc:
            raise AlreadyExistsError("role already exists", detail={"field": "name"}) from exc
        if updated is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return updated

    async def delete_role(self, role_id: str) -> None:
        self._require_role(role_id)
        try:
            self.store.delete_role(role_id)
        except ConstraintViolation as exc:
            raise ConflictError("role is still assigned to accounts", detail={"role_id": role_id}) from exc
        logger.info("role_deleted", role_id=role_id)

    # permissions --------------------------------------------------------

    def _require_permission(self, permission_id: str) -> Permission:
        perm = self.store.get_permission(permission_id)
        if not perm:
            raise NotFoundError("permission not found", detail={"permission_id": permission_id})
        return perm

    async def create_permission(self, resource: str, action: str, description: str = "") -> Permission:
        resource = normalize_part(resource)
        action = normalize_part(action)
        errors = FieldErrors()
        errors.check("resource", _check_part(resource))
        errors.check("action", _check_part(action))
        errors.raise_if_any()
        try:
            perm = self.store.create_permission(
                Permission(id=new_id(), resource=resource, action=action, description=description or "")
            )
        except ConstraintViolation as exc:
            raise AlreadyExistsError(
                "permission already exists", detail={"resource": resource, "action": action}
            ) from exc
        logger.info("permission_created", permission_id=perm.id, claim=perm.claim)
        return perm

    async def get_permission(self, permission_id: str) -> Permission:
        return self._require_permission(permission_id)

    async def list_permissions(self) -> List[Permission]:
        return self.store.list_permissions()

    async def delete_permission(self, permission_id: str) -> None:
        self._require_permission(permission_id)
        try:
            self.store.delete_permission(permission_id)
        except ConstraintViolation as exc:
            raise ConflictError(
                "permission is still granted to roles", detail={"permission_id": permission_id}
            ) from exc

    async def add_permission_to_role(self, role_id: str, permission_id: str) -> Role:
        self._require_role(role_id)
        self._require_permission(permission_id)
        self.store.add_permission_to_role(role_id, permission_id)
        return self._require_role(role_id)

    async def remove_permission_from_role(self, role_id: str, permission_id: str) -> Role:
        self._require_role(role_id)
        self.store.remove_permission_from_role(role_id, permission_id)
        return self._require_role(role_id)

    # assignment ---------------------------------------------------------

    async def assign_role(self, account_id: str, role_id: str) -> None:
        if not self.store.get_account(account_id):
            raise NotFoundError("account not found", detail={"account_id": account_id})
        role = self._require_role(role_id)
        self.store.assign_role(account_id, role_id)
        publish_safely(
            self.sink,
            DomainEvent(events.USER_ROLE_ASSIGNED, account_id, {"role": role.name}),
        )

    async def remove_role(self, account_id: str, role_id: str) -> None:
        role = self._require_role(role_id)
        self.store.unassign_role(account_id, role_id)
        publish_safely(
            self.sink,
            DomainEvent(events.USER_ROLE_REMOVED, account_id, {"role": role.name}),
        )

    async def account_roles(self, account_id: str) -> List[Role]:
        return self.store.list_account_roles(account_id)

    def permission_set(self, account_id: str) -> PermissionSet:
        return resolve(self.store.list_account_roles(account_id))

    async def check_permission(self, account_id: str, resource: str, action: str) -> bool:
        """Evaluate against the account's stored roles rather than token claims."""
        return self.permission_set(account_id).grants(resource, action)
