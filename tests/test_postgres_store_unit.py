import contextlib
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from aegis.logging import get_logger
from aegis.storage.errors import ConstraintViolation
from aegis.storage.models import Account, AccountFilter, AccountStatus, RefreshToken
from aegis.storage.postgres import PostgresStore, _unique_violation

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows, rowcount):
        self._rows = rows
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Replays scripted results in order and records every statement."""

    def __init__(self, script):
        self.script = list(script)
        self.executed = []
        self.transactions = 0

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        result = self.script.pop(0) if self.script else ([], 0)
        if isinstance(result, Exception):
            raise result
        rows, rowcount = result
        return FakeCursor(rows, rowcount)

    @contextlib.contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


def _store(*script):
    conn = FakeConnection(script)
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store.logger = get_logger("test")
    return store, conn


def _account_row(**overrides):
    row = {
        "id": "acct-1",
        "email": "alice@example.com",
        "username": "alice",
        "password_hash": "hash",
        "full_name": "Alice",
        "phone": None,
        "account_type": "customer",
        "status": "pending",
        "email_verified": False,
        "phone_verified": False,
        "version": 1,
        "created_at": NOW,
        "updated_at": NOW,
        "deleted_at": None,
    }
    row.update(overrides)
    return row


def _account():
    return Account(
        id="acct-1",
        email="alice@example.com",
        username="alice",
        password_hash="hash",
        full_name="Alice",
    )


def _token(token_id="tok-2"):
    return RefreshToken(
        id=token_id,
        account_id="acct-1",
        token_hash="digest",
        expires_at=NOW + timedelta(days=7),
        created_at=NOW,
    )


def test_unique_violation_maps_constraint_to_field():
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name="account_email_live_uq"))

    violation = _unique_violation(exc)

    assert violation.detail == {"field": "email"}


def test_unique_violation_with_unknown_constraint():
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name=None))

    assert _unique_violation(exc).detail == {"field": "unknown"}


def test_create_account_translates_unique_violation():
    store, _ = _store(errors.UniqueViolation("duplicate key"))

    with pytest.raises(ConstraintViolation):
        store.create_account(_account())


def test_update_account_is_conditional_on_version():
    store, conn = _store(([_account_row(version=2, status="active")], 1))
    account = _account()
    account.status = AccountStatus.ACTIVE

    updated = store.update_account(account)

    sql, params = conn.executed[0]
    assert "WHERE id = %s AND version = %s AND deleted_at IS NULL" in sql
    assert "version = version + 1" in sql
    assert params[-2:] == ("acct-1", 1)
    assert updated.version == 2
    assert updated.status is AccountStatus.ACTIVE


def test_update_account_returns_none_when_version_is_stale():
    store, _ = _store(([], 0))

    assert store.update_account(_account()) is None


def test_list_accounts_builds_filters_and_pagination():
    store, conn = _store(([{"total": 3}], 1), ([_account_row()], 1))

    accounts, total = store.list_accounts(
        AccountFilter(status=AccountStatus.PENDING, search=" Ali ", offset=2, limit=500)
    )

    count_sql, count_params = conn.executed[0]
    page_sql, page_params = conn.executed[1]
    assert "status = %s" in count_sql
    assert count_params == ["pending", "%ali%", "%ali%", "%ali%"]
    assert "LIMIT %s OFFSET %s" in page_sql
    assert page_params[-2:] == [100, 2]
    assert total == 3
    assert [a.id for a in accounts] == ["acct-1"]


def test_rotate_refresh_token_claims_inside_transaction():
    store, conn = _store(([{"id": "tok-1"}], 1), ([], 1), ([], 1))

    assert store.rotate_refresh_token("tok-1", _token(), NOW) is True

    assert conn.transactions == 1
    claim_sql, claim_params = conn.executed[0]
    assert "revoked_at IS NULL" in claim_sql
    assert claim_params == (NOW, "tok-1")
    assert conn.executed[2][1] == ("tok-2", "tok-1")


def test_rotate_refresh_token_loses_when_already_revoked():
    store, conn = _store(([], 0))

    assert store.rotate_refresh_token("tok-1", _token(), NOW) is False
    assert len(conn.executed) == 1


def test_delete_role_in_use_raises_constraint_violation():
    store, _ = _store(errors.ForeignKeyViolation("still referenced"))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.delete_role("role-1")

    assert excinfo.value.detail == {"reason": "in_use"}


def test_bulk_revocation_and_purge_report_row_counts():
    store, _ = _store(([], 3), ([], 5))

    assert store.revoke_account_refresh_tokens("acct-1", NOW) == 3
    assert store.delete_expired_refresh_tokens(NOW) == 5


def _malformed_id():
    return errors.InvalidTextRepresentation('invalid input syntax for type uuid: "not-a-uuid"')


def test_malformed_ids_read_as_missing():
    store, _ = _store(*[_malformed_id() for _ in range(8)])

    assert store.get_account("not-a-uuid") is None
    assert store.get_role("not-a-uuid") is None
    assert store.get_permission("not-a-uuid") is None
    assert store.list_account_roles("not-a-uuid") == []
    assert store.delete_role("not-a-uuid") is False
    assert store.delete_permission("not-a-uuid") is False
    assert store.revoke_account_refresh_tokens("not-a-uuid", NOW) == 0
    assert store.list_account_refresh_tokens("not-a-uuid") == []


def test_malformed_id_update_reports_no_row():
    store, _ = _store(_malformed_id())
    account = _account()
    account.id = "not-a-uuid"

    assert store.update_account(account) is None


@pytest.mark.parametrize("method", ["assign_role", "add_permission_to_role"])
def test_malformed_id_references_are_missing(method):
    store, _ = _store(_malformed_id())

    with pytest.raises(ConstraintViolation) as excinfo:
        getattr(store, method)("not-a-uuid", "also-not-a-uuid")

    assert excinfo.value.detail == {"reason": "missing_reference"}


def test_malformed_id_removals_are_noops():
    store, _ = _store(_malformed_id(), _malformed_id())

    store.unassign_role("not-a-uuid", "role-1")
    store.remove_permission_from_role("role-1", "not-a-uuid")


def test_search_escapes_like_wildcards():
    store, conn = _store(([{"total": 0}], 1), ([], 0))

    store.list_accounts(AccountFilter(search="50%_off\\"))

    count_sql, count_params = conn.executed[0]
    assert "ESCAPE '\\'" in count_sql
    assert count_params == ["%50\\%\\_off\\\\%"] * 3
