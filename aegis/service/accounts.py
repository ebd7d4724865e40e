from __future__ import annotations

from dataclasses import replace
from typing import Dict, FrozenSet, List, Optional, Tuple

from aegis.logging import get_logger
from aegis.service import events
from aegis.service.errors import (
    AlreadyExistsError,
    InvalidCredentialError,
    InvalidStatusTransitionError,
    NotFoundError,
    PasswordError,
    ValidationError,
    VersionMismatchError,
)
from aegis.service.events import DomainEvent, EventSink, NullEventSink, publish_safely
from aegis.service.passwords import check_strength, hash_password, verify_password
from aegis.service.refresh_tokens import RefreshTokenLedger
from aegis.service.validation import (
    FieldErrors,
    check_email,
    check_full_name,
    check_phone,
    check_username,
    normalize_email,
)
from aegis.storage.errors import ConstraintViolation
from aegis.storage.interfaces import Store
from aegis.storage.models import (
    Account,
    AccountFilter,
    AccountStatus,
    AccountType,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

_TRANSITIONS: Dict[AccountStatus, FrozenSet[AccountStatus]] = {
    AccountStatus.PENDING: frozenset({AccountStatus.ACTIVE, AccountStatus.INACTIVE}),
    AccountStatus.ACTIVE: frozenset({AccountStatus.INACTIVE, AccountStatus.SUSPENDED}),
    AccountStatus.INACTIVE: frozenset({AccountStatus.ACTIVE, AccountStatus.SUSPENDED}),
    AccountStatus.SUSPENDED: frozenset({AccountStatus.ACTIVE, AccountStatus.INACTIVE}),
}

# statuses allowed to obtain tokens
SIGN_IN_STATUSES = frozenset({AccountStatus.PENDING, AccountStatus.ACTIVE})

_STATUS_EVENTS = {
    AccountStatus.ACTIVE: events.USER_ACTIVATED,
    AccountStatus.SUSPENDED: events.USER_SUSPENDED,
    AccountStatus.INACTIVE: events.USER_DEACTIVATED,
}


def can_transition(source: AccountStatus, target: AccountStatus) -> bool:
    return source == target or target in _TRANSITIONS.get(source, frozenset())


def transition(account: Account, target: AccountStatus) -> Account:
    """Return a copy of ``account`` moved to ``target``.

    Repeating the current status returns the account unchanged.
    """
    target = AccountStatus(target)
    if account.status == target:
        return account
    if not can_transition(account.status, target):
        raise InvalidStatusTransitionError(account.status.value, target.value)
    return replace(account, status=target)


def activate(account: Account) -> Account:
    return transition(account, AccountStatus.ACTIVE)


def suspend(account: Account) -> Account:
    return transition(account, AccountStatus.SUSPENDED)


def deactivate(account: Account) -> Account:
    return transition(account, AccountStatus.INACTIVE)


def can_sign_in(account: Optional[Account]) -> bool:
    return bool(account) and not account.is_deleted and account.status in SIGN_IN_STATUSES


class AccountService:
    """Account lifecycle: registration, profile, password and status changes.

    Every mutation reads the current record, applies the change to a copy and
    commits it through ``store.update_account``, which only succeeds when the
    stored version still equals the one read.
    """

    def __init__(
        self,
        store: Store,
        *,
        ledger: Optional[RefreshTokenLedger] = None,
        sink: Optional[EventSink] = None,
        default_role: str = "user",
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.sink = sink or NullEventSink()
        self.default_role = default_role

    # reads --------------------------------------------------------------

    def _require(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        return account

    async def get(self, account_id: str) -> Account:
        return self._require(account_id)

    async def get_by_email(self, email: str) -> Account:
        account = self.store.get_account_by_email(normalize_email(email))
        if not account:
            raise NotFoundError("account not found")
        return account

    async def get_by_username(self, username: str) -> Account:
        account = self.store.get_account_by_username((username or "").strip())
        if not account:
            raise NotFoundError("account not found")
        return account

    async def list_accounts(self, filters: Optional[AccountFilter] = None) -> Tuple[List[Account], int]:
        return self.store.list_accounts(filters or AccountFilter())

    # registration -------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        username: str,
        full_name: Optional[str] = None,
        *,
        phone: Optional[str] = None,
        account_type: AccountType = AccountType.CUSTOMER,
    ) -> Account:
        email = normalize_email(email)
        username = (username or "").strip()
        full_name = (full_name or "").strip() or username
        phone = (phone or "").strip() or None

        errors = FieldErrors()
        errors.check("email", check_email(email))
        errors.check("username", check_username(username))
        errors.check("full_name", check_full_name(full_name))
        errors.check("phone", check_phone(phone))
        try:
            check_strength(password or "")
        except ValidationError as exc:
            errors.add("password", exc.message)
        errors.raise_if_any()

        now = utcnow()
        account = Account(
            id=new_id(),
            email=email,
            username=username,
            password_hash=hash_password(password),
            full_name=full_name,
            phone=phone,
            account_type=AccountType(account_type),
            status=AccountStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        try:
            created = self.store.create_account(account)
        except ConstraintViolation as exc:
            field = exc.detail.get("field", "email")
            logger.info("account_register_duplicate", field=field)
            raise ValidationError.for_field(field, "already taken") from exc

        role = self.store.get_role_by_name(self.default_role)
        if role:
            self.store.assign_role(created.id, role.id)
        else:
            logger.warning("default_role_missing", role=self.default_role)

        logger.info("account_registered", account_id=created.id)
        publish_safely(
            self.sink,
            DomainEvent(
                events.USER_CREATED,
                created.id,
                {"username": created.username, "account_type": created.account_type.value},
            ),
        )
        return created

    # mutations ----------------------------------------------------------

    def _commit(self, account: Account) -> Account:
        try:
            updated = self.store.update_account(account)
        except ConstraintViolation as exc:
            field = exc.detail.get("field", "unknown")
            raise AlreadyExistsError(f"{field} already taken", detail={"field": field}) from exc
        if updated is not None:
            return updated
        current = self.store.get_account(account.id)
        if current is None:
            raise NotFoundError("account not found", detail={"account_id": account.id})
        logger.info(
            "account_version_conflict",
            account_id=account.id,
            expected=account.version,
            actual=current.version,
        )
        raise VersionMismatchError(account.version, current.version)

    def _load_for_update(self, account_id: str, expected_version: Optional[int]) -> Account:
        account = self._require(account_id)
        if expected_version is not None and expected_version != account.version:
            raise VersionMismatchError(expected_version, account.version)
        return account

    def _revoke_sessions(self, account_id: str, reason: str) -> None:
        if self.ledger is None:
            return
        revoked = self.ledger.revoke_all_for_account(account_id)
        if revoked:
            logger.info("account_sessions_revoked", account_id=account_id, count=revoked, reason=reason)

    async def update_profile(
        self,
        account_id: str,
        *,
        full_name: Optional[str] = None,
        username: Optional[str] = None,
        phone: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Account:
        account = self._load_for_update(account_id, expected_version)
        changes: dict = {}
        errors = FieldErrors()
        if full_name is not None:
            changes["full_name"] = full_name.strip()
            errors.check("full_name", check_full_name(changes["full_name"]))
        if username is not None:
            changes["username"] = username.strip()
            errors.check("username", check_username(changes["username"]))
        if phone is not None:
            cleaned = phone.strip() or None
            errors.check("phone", check_phone(cleaned))
            if cleaned != account.phone:
                changes["phone"] = cleaned
                changes["phone_verified"] = False
        errors.raise_if_any()
        if not changes:
            return account
        try:
            updated = self._commit(replace(account, **changes))
        except AlreadyExistsError as exc:
            raise ValidationError.for_field(exc.detail.get("field", "username"), "already taken") from exc
        publish_safely(
            self.sink,
            DomainEvent(events.USER_UPDATED, updated.id, {"fields": sorted(changes)}),
        )
        return updated

    async def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        *,
        expected_version: Optional[int] = None,
    ) -> Account:
        account = self._load_for_update(account_id, expected_version)
        try:
            verify_password(current_password, account.password_hash)
        except PasswordError as exc:
            logger.warning("password_change_rejected", account_id=account_id)
            raise InvalidCredentialError() from exc
        try:
            check_strength(new_password or "")
        except ValidationError as exc:
            raise ValidationError.for_field("new_password", exc.message) from exc
        updated = self._commit(replace(account, password_hash=hash_password(new_password)))
        self._revoke_sessions(account_id, "password_changed")
        publish_safely(self.sink, DomainEvent(events.USER_PASSWORD_CHANGED, account_id))
        return updated

    async def change_status(
        self,
        account_id: str,
        target: AccountStatus,
        *,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Account:
        account = self._load_for_update(account_id, expected_version)
        moved = transition(account, AccountStatus(target))
        if moved is account:
            return account
        updated = self._commit(moved)
        logger.info(
            "account_status_changed",
            account_id=account_id,
            source=account.status.value,
            target=updated.status.value,
        )
        if updated.status not in SIGN_IN_STATUSES:
            self._revoke_sessions(account_id, updated.status.value)
        data = {"from": account.status.value, "to": updated.status.value}
        if reason:
            data["reason"] = reason
        publish_safely(self.sink, DomainEvent(_STATUS_EVENTS[updated.status], account_id, data))
        return updated

    async def activate(self, account_id: str, *, expected_version: Optional[int] = None) -> Account:
        return await self.change_status(
            account_id, AccountStatus.ACTIVE, expected_version=expected_version
        )

    async def suspend(
        self,
        account_id: str,
        reason: Optional[str] = None,
        *,
        expected_version: Optional[int] = None,
    ) -> Account:
        return await self.change_status(
            account_id, AccountStatus.SUSPENDED, reason=reason, expected_version=expected_version
        )

    async def deactivate(self, account_id: str, *, expected_version: Optional[int] = None) -> Account:
        return await self.change_status(
            account_id, AccountStatus.INACTIVE, expected_version=expected_version
        )

    async def verify_email(self, account_id: str, *, expected_version: Optional[int] = None) -> Account:
        account = self._load_for_update(account_id, expected_version)
        if account.email_verified:
            return account
        updated = self._commit(replace(account, email_verified=True))
        publish_safely(self.sink, DomainEvent(events.USER_EMAIL_VERIFIED, account_id))
        return updated

    async def verify_phone(self, account_id: str, *, expected_version: Optional[int] = None) -> Account:
        account = self._load_for_update(account_id, expected_version)
        if not account.phone:
            raise ValidationError.for_field("phone", "no phone number on file")
        if account.phone_verified:
            return account
        updated = self._commit(replace(account, phone_verified=True))
        publish_safely(self.sink, DomainEvent(events.USER_PHONE_VERIFIED, account_id))
        return updated

    async def delete(self, account_id: str, *, expected_version: Optional[int] = None) -> None:
        """Soft delete: the record stays but every lookup treats it as absent."""
        account = self._load_for_update(account_id, expected_version)
        self._commit(replace(account, deleted_at=utcnow()))
        self._revoke_sessions(account_id, "deleted")
        logger.info("account_deleted", account_id=account_id)
        publish_safely(self.sink, DomainEvent(events.USER_DELETED, account_id))
