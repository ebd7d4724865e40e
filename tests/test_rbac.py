"""Tests for role and permission administration."""

import pytest

from aegis.service import events
from aegis.service.accounts import AccountService
from aegis.service.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from aegis.service.rbac import RBACService
from aegis.storage.memory import MemoryStore

PASSWORD = "Password123"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def rbac(store, sink):
    return RBACService(store, sink=sink)


@pytest.fixture
def accounts(store):
    return AccountService(store)


class TestDefaults:
    async def test_seeded_roles_and_grants(self, rbac):
        names = [r.name for r in await rbac.list_roles()]
        assert names == ["admin", "moderator", "user"]

        admin = await rbac.get_role_by_name("admin")
        user = await rbac.get_role_by_name("user")
        moderator = await rbac.get_role_by_name("moderator")

        assert len(admin.permissions) == 9
        assert [p.claim for p in user.permissions] == ["users:read"]
        assert moderator.permissions == []

    async def test_seeding_twice_is_idempotent(self, store, rbac):
        store.seed_defaults()

        assert len(await rbac.list_roles()) == 3
        assert len(await rbac.list_permissions()) == 9


class TestRoles:
    async def test_create_role_normalizes_name(self, rbac):
        role = await rbac.create_role("  Support ", "Support staff")

        assert role.name == "support"
        assert (await rbac.get_role(role.id)).description == "Support staff"

    async def test_duplicate_role_name(self, rbac):
        await rbac.create_role("support")

        with pytest.raises(AlreadyExistsError):
            await rbac.create_role("SUPPORT")

    async def test_role_name_validation(self, rbac):
        with pytest.raises(ValidationError):
            await rbac.create_role("")
        with pytest.raises(ValidationError):
            await rbac.create_role("x" * 51)

    async def test_update_role(self, rbac):
        role = await rbac.create_role("support")

        updated = await rbac.update_role(role.id, name="helpdesk", description="Help desk")

        assert updated.name == "helpdesk"
        assert updated.description == "Help desk"

    async def test_update_role_to_existing_name(self, rbac):
        role = await rbac.create_role("support")

        with pytest.raises(AlreadyExistsError):
            await rbac.update_role(role.id, name="admin")

    async def test_missing_role(self, rbac):
        with pytest.raises(NotFoundError):
            await rbac.get_role("missing")
        with pytest.raises(NotFoundError):
            await rbac.get_role_by_name("missing")

    async def test_delete_unassigned_role(self, rbac):
        role = await rbac.create_role("support")

        await rbac.delete_role(role.id)

        with pytest.raises(NotFoundError):
            await rbac.get_role(role.id)

    async def test_delete_assigned_role_conflicts(self, rbac, accounts):
        account = await accounts.register("alice@example.com", PASSWORD, "alice")
        role = await rbac.get_role_by_name("user")

        with pytest.raises(ConflictError) as excinfo:
            await rbac.delete_role(role.id)

        assert excinfo.value.error_code == "conflict"
        assert [r.name for r in await rbac.account_roles(account.id)] == ["user"]


class TestPermissions:
    async def test_create_and_grant_permission(self, rbac):
        perm = await rbac.create_permission("Invoices", "Read", "Read invoices")
        role = await rbac.create_role("billing")

        updated = await rbac.add_permission_to_role(role.id, perm.id)

        assert perm.claim == "invoices:read"
        assert [p.claim for p in updated.permissions] == ["invoices:read"]

    async def test_wildcard_permission_parts_are_allowed(self, rbac):
        perm = await rbac.create_permission("invoices", "*")

        assert perm.claim == "invoices:*"

    async def test_duplicate_permission(self, rbac):
        with pytest.raises(AlreadyExistsError):
            await rbac.create_permission("users", "read")

    @pytest.mark.parametrize(
        "resource,action",
        [("", "read"), ("users", ""), ("a:b", "read"), ("users", "x" * 51)],
    )
    async def test_permission_validation(self, rbac, resource, action):
        with pytest.raises(ValidationError):
            await rbac.create_permission(resource, action)

    async def test_delete_granted_permission_conflicts(self, rbac):
        perm = await rbac.create_permission("invoices", "read")
        role = await rbac.create_role("billing")
        await rbac.add_permission_to_role(role.id, perm.id)

        with pytest.raises(ConflictError):
            await rbac.delete_permission(perm.id)

        await rbac.remove_permission_from_role(role.id, perm.id)
        await rbac.delete_permission(perm.id)
        with pytest.raises(NotFoundError):
            await rbac.get_permission(perm.id)

    async def test_grant_requires_existing_records(self, rbac):
        role = await rbac.create_role("billing")

        with pytest.raises(NotFoundError):
            await rbac.add_permission_to_role(role.id, "missing")
        with pytest.raises(NotFoundError):
            await rbac.add_permission_to_role("missing", "missing")


class TestAssignment:
    async def test_assign_and_remove_role(self, rbac, accounts, sink):
        account = await accounts.register("alice@example.com", PASSWORD, "alice")
        admin = await rbac.get_role_by_name("admin")

        await rbac.assign_role(account.id, admin.id)
        assert sorted(r.name for r in await rbac.account_roles(account.id)) == ["admin", "user"]

        await rbac.remove_role(account.id, admin.id)
        assert [r.name for r in await rbac.account_roles(account.id)] == ["user"]
        assert sink.types() == [events.USER_ROLE_ASSIGNED, events.USER_ROLE_REMOVED]

    async def test_assign_is_idempotent(self, rbac, accounts):
        account = await accounts.register("alice@example.com", PASSWORD, "alice")
        user = await rbac.get_role_by_name("user")

        await rbac.assign_role(account.id, user.id)

        assert len(await rbac.account_roles(account.id)) == 1

    async def test_assign_to_missing_account(self, rbac):
        admin = await rbac.get_role_by_name("admin")

        with pytest.raises(NotFoundError):
            await rbac.assign_role("missing", admin.id)

    async def test_check_permission_uses_stored_roles(self, rbac, accounts):
        account = await accounts.register("alice@example.com", PASSWORD, "alice")

        assert await rbac.check_permission(account.id, "users", "read")
        assert not await rbac.check_permission(account.id, "roles", "write")

        admin = await rbac.get_role_by_name("admin")
        await rbac.assign_role(account.id, admin.id)

        assert await rbac.check_permission(account.id, "roles", "write")
        assert await rbac.check_permission(account.id, "anything", "else")
