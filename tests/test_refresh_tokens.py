"""Unit tests for refresh token rotation, reuse detection and purging."""

from datetime import datetime, timedelta, timezone

import pytest

from aegis.service.errors import InvalidCredentialError, TokenExpiredError, TokenReusedError
from aegis.service.passwords import hash_refresh_token
from aegis.service.refresh_tokens import ClientInfo, RefreshTokenLedger
from aegis.storage.memory import MemoryStore

NOW = datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)
TTL = timedelta(days=7)


@pytest.fixture
def store():
    return MemoryStore(seed=False)


@pytest.fixture
def ledger(store):
    return RefreshTokenLedger(store, TTL)


class TestIssue:
    def test_only_the_digest_is_stored(self, store, ledger):
        issued = ledger.issue("acct-1", ClientInfo("10.0.0.1", "pytest"), NOW)

        record = store.get_refresh_token_by_hash(hash_refresh_token(issued.raw))
        assert record is not None
        assert record.token_hash != issued.raw
        assert record.expires_at == NOW + TTL
        assert record.ip_address == "10.0.0.1"
        assert record.user_agent == "pytest"
        assert issued.expires_at == NOW + TTL


class TestRotate:
    def test_rotation_revokes_and_links_the_presented_token(self, store, ledger):
        first = ledger.issue("acct-1", now=NOW)

        second = ledger.rotate(first.raw, now=NOW + timedelta(minutes=5))

        old = store.get_refresh_token_by_hash(hash_refresh_token(first.raw))
        assert old.is_revoked
        assert old.replaced_by_id == second.record.id
        assert second.raw != first.raw
        assert second.record.account_id == "acct-1"
        assert second.expires_at == NOW + timedelta(minutes=5) + TTL

    def test_successor_can_itself_be_rotated(self, ledger):
        first = ledger.issue("acct-1", now=NOW)
        second = ledger.rotate(first.raw, now=NOW)

        third = ledger.rotate(second.raw, now=NOW)

        assert third.record.account_id == "acct-1"

    def test_reuse_revokes_every_token_of_the_account(self, store, ledger):
        first = ledger.issue("acct-1", now=NOW)
        other_session = ledger.issue("acct-1", now=NOW)
        unrelated = ledger.issue("acct-2", now=NOW)
        second = ledger.rotate(first.raw, now=NOW)

        with pytest.raises(TokenReusedError) as excinfo:
            ledger.rotate(first.raw, now=NOW)

        assert excinfo.value.account_id == "acct-1"
        assert excinfo.value.error_code == "invalid_credential"
        assert excinfo.value.kind == "token_reused"
        tokens = store.list_account_refresh_tokens("acct-1")
        assert tokens and all(t.is_revoked for t in tokens)
        with pytest.raises(TokenReusedError):
            ledger.rotate(second.raw, now=NOW)
        with pytest.raises(TokenReusedError):
            ledger.rotate(other_session.raw, now=NOW)
        assert not store.list_account_refresh_tokens("acct-2")[0].is_revoked
        ledger.rotate(unrelated.raw, now=NOW)

    def test_reuse_is_reported_as_invalid_credential(self, ledger):
        first = ledger.issue("acct-1", now=NOW)
        ledger.rotate(first.raw, now=NOW)

        with pytest.raises(InvalidCredentialError):
            ledger.rotate(first.raw, now=NOW)

    def test_unknown_and_empty_tokens(self, ledger):
        with pytest.raises(InvalidCredentialError):
            ledger.rotate("never-issued", now=NOW)
        with pytest.raises(InvalidCredentialError):
            ledger.rotate("", now=NOW)

    def test_expired_token_cannot_be_rotated(self, store, ledger):
        issued = ledger.issue("acct-1", now=NOW)

        with pytest.raises(TokenExpiredError):
            ledger.rotate(issued.raw, now=NOW + TTL)

        record = store.get_refresh_token_by_hash(hash_refresh_token(issued.raw))
        assert not record.is_revoked

    def test_revoked_and_expired_token_fails_as_expired(self, store, ledger):
        old = ledger.issue("acct-1", now=NOW)
        ledger.rotate(old.raw, now=NOW)
        live = ledger.issue("acct-1", now=NOW + timedelta(days=6))

        with pytest.raises(TokenExpiredError):
            ledger.rotate(old.raw, now=NOW + timedelta(days=8))

        record = store.get_refresh_token_by_hash(hash_refresh_token(live.raw))
        assert not record.is_revoked
        ledger.rotate(live.raw, now=NOW + timedelta(days=8))

    def test_lost_rotation_race_is_treated_as_reuse(self, store, ledger):
        issued = ledger.issue("acct-1", now=NOW)

        original = store.rotate_refresh_token

        def _rotated_elsewhere(current_id, successor, now):
            store.revoke_refresh_token(current_id, now)
            return original(current_id, successor, now)

        store.rotate_refresh_token = _rotated_elsewhere

        with pytest.raises(TokenReusedError):
            ledger.rotate(issued.raw, now=NOW)

        assert all(t.is_revoked for t in store.list_account_refresh_tokens("acct-1"))


class TestRevoke:
    def test_revoke_raw_is_idempotent_and_ignores_unknown(self, store, ledger):
        issued = ledger.issue("acct-1", now=NOW)

        assert ledger.revoke_raw(issued.raw, NOW).account_id == "acct-1"
        assert ledger.revoke_raw(issued.raw, NOW) is not None
        assert ledger.revoke_raw("unknown", NOW) is None
        assert ledger.revoke_raw("", NOW) is None

    def test_revoke_all_counts_only_live_tokens(self, ledger):
        first = ledger.issue("acct-1", now=NOW)
        ledger.issue("acct-1", now=NOW)
        ledger.revoke_raw(first.raw, NOW)

        assert ledger.revoke_all_for_account("acct-1", NOW) == 1
        assert ledger.revoke_all_for_account("acct-1", NOW) == 0


class TestPurge:
    def test_purge_respects_retention(self, store, ledger):
        old = ledger.issue("acct-1", now=NOW - TTL - timedelta(days=10))
        recent = ledger.issue("acct-1", now=NOW - TTL - timedelta(days=1))
        live = ledger.issue("acct-1", now=NOW)

        purged = ledger.purge_expired(NOW, retention=timedelta(days=7))

        assert purged == 1
        assert store.get_refresh_token_by_hash(hash_refresh_token(old.raw)) is None
        assert store.get_refresh_token_by_hash(hash_refresh_token(recent.raw)) is not None
        assert store.get_refresh_token_by_hash(hash_refresh_token(live.raw)) is not None

    def test_purged_token_becomes_unknown(self, ledger):
        old = ledger.issue("acct-1", now=NOW - timedelta(days=30))
        ledger.purge_expired(NOW, retention=timedelta(0))

        with pytest.raises(InvalidCredentialError) as excinfo:
            ledger.rotate(old.raw, now=NOW)

        assert not isinstance(excinfo.value, TokenReusedError)
