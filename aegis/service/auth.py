from __future__ import annotations

import contextlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from aegis.logging import get_logger
from aegis.service import events
from aegis.service.accounts import can_sign_in
from aegis.service.errors import (
    AuthenticationError,
    InvalidCredentialError,
    PasswordError,
    TokenReusedError,
)
from aegis.service.events import DomainEvent, EventSink, NullEventSink, publish_safely
from aegis.service.passwords import hash_password, verify_password
from aegis.service.permissions import PermissionSet, resolve
from aegis.service.refresh_tokens import (
    DEFAULT_PURGE_RETENTION,
    ClientInfo,
    IssuedRefreshToken,
    RefreshTokenLedger,
)
from aegis.service.tokens import AccessClaims, TokenIssuer, TokenPayload
from aegis.service.validation import normalize_email
from aegis.storage.interfaces import Store
from aegis.storage.models import Account

logger = get_logger(__name__)


@dataclass(frozen=True)
class AccountSummary:
    id: str
    email: str
    username: str
    full_name: str
    account_type: str
    status: str
    email_verified: bool
    phone_verified: bool

    @classmethod
    def from_account(cls, account: Account) -> "AccountSummary":
        return cls(
            id=account.id,
            email=account.email,
            username=account.username,
            full_name=account.full_name,
            account_type=account.account_type.value,
            status=account.status.value,
            email_verified=account.email_verified,
            phone_verified=account.phone_verified,
        )


@dataclass(frozen=True)
class AuthResult:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    account: AccountSummary
    token_type: str = "bearer"


class AuthService:
    """Login, refresh, logout and token validation.

    Store calls are synchronous and each state change is a single atomic
    store operation, so cancelling a request between awaits never leaves a
    half-applied rotation behind.
    """

    def __init__(
        self,
        store: Store,
        issuer: TokenIssuer,
        ledger: RefreshTokenLedger,
        *,
        sink: Optional[EventSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.ledger = ledger
        self.sink = sink or NullEventSink()
        self._clock = clock
        self.logger = logger
        # verified for unknown emails so both failure paths cost one hash check
        self._dummy_hash = hash_password("aegis-timing-equalizer")

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def _permissions_for(self, account_id: str) -> PermissionSet:
        return resolve(self.store.list_account_roles(account_id))

    def _issue(self, account: Account, refresh: IssuedRefreshToken, now: datetime) -> AuthResult:
        payload = TokenPayload(
            account_id=account.id,
            email=account.email,
            username=account.username,
            account_type=account.account_type.value,
            permissions=tuple(self._permissions_for(account.id).to_claims()),
        )
        access_token, _ = self.issuer.issue_access(payload, now)
        return AuthResult(
            access_token=access_token,
            refresh_token=refresh.raw,
            expires_in=int(self.issuer.config.access_ttl.total_seconds()),
            refresh_expires_in=int(self.ledger.refresh_ttl.total_seconds()),
            account=AccountSummary.from_account(account),
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        now = self._now()
        account = self.store.get_account_by_email(normalize_email(email))
        if account is None:
            with contextlib.suppress(PasswordError):
                verify_password(password or "", self._dummy_hash)
            self.logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentialError()
        try:
            verify_password(password or "", account.password_hash)
        except PasswordError as exc:
            self.logger.warning("password_verification_failed", account_id=account.id)
            raise InvalidCredentialError() from exc
        if not can_sign_in(account):
            self.logger.warning(
                "login_rejected_status", account_id=account.id, status=account.status.value
            )
            raise AuthenticationError("account is not allowed to sign in")

        client = ClientInfo(ip_address=ip_address, user_agent=user_agent)
        refresh = self.ledger.issue(account.id, client, now)
        result = self._issue(account, refresh, now)
        self.logger.info("login_succeeded", account_id=account.id)
        publish_safely(
            self.sink,
            DomainEvent(
                events.USER_LOGGED_IN,
                account.id,
                {"ip_address": ip_address, "user_agent": user_agent},
            ),
        )
        return result

    async def refresh_session(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        now = self._now()
        client = ClientInfo(ip_address=ip_address, user_agent=user_agent)
        try:
            successor = self.ledger.rotate(refresh_token, client, now)
        except TokenReusedError as exc:
            publish_safely(
                self.sink,
                DomainEvent(events.USER_TOKEN_REUSE_DETECTED, exc.account_id, {"ip_address": ip_address}),
            )
            raise
        account = self.store.get_account(successor.record.account_id)
        if not can_sign_in(account):
            self.ledger.revoke(successor.record.id, now)
            self.logger.warning(
                "refresh_rejected_status",
                account_id=successor.record.account_id,
                status=account.status.value if account else "deleted",
            )
            raise AuthenticationError("account is not allowed to sign in")
        return self._issue(account, successor, now)

    async def logout(self, refresh_token: str) -> None:
        """Revoke one refresh token; unknown tokens are silently ignored."""
        record = self.ledger.revoke_raw(refresh_token, self._now())
        if record is None:
            return
        self.logger.info("logout", account_id=record.account_id)
        publish_safely(self.sink, DomainEvent(events.USER_LOGGED_OUT, record.account_id))

    async def logout_everywhere(self, account_id: str) -> int:
        revoked = self.ledger.revoke_all_for_account(account_id, self._now())
        self.logger.info("logout_everywhere", account_id=account_id, revoked=revoked)
        publish_safely(
            self.sink,
            DomainEvent(events.USER_LOGGED_OUT, account_id, {"all_sessions": True, "revoked": revoked}),
        )
        return revoked

    async def validate_access_token(self, token: str) -> AccessClaims:
        return self.issuer.validate_access(token, self._now())

    def check_permission(self, claims: AccessClaims, resource: str, action: str) -> bool:
        return PermissionSet.from_claims(claims.permissions).grants(resource, action)

    async def purge_expired_tokens(self, retention: timedelta = DEFAULT_PURGE_RETENTION) -> int:
        return self.ledger.purge_expired(self._now(), retention)
