from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from aegis.logging import get_logger
from aegis.service.errors import InvalidCredentialError, TokenExpiredError, TokenReusedError
from aegis.service.passwords import generate_refresh_token, hash_refresh_token
from aegis.storage.errors import ConstraintViolation
from aegis.storage.interfaces import RefreshTokenStore
from aegis.storage.models import RefreshToken, new_id, utcnow

logger = get_logger(__name__)

DEFAULT_PURGE_RETENTION = timedelta(days=7)
_MAX_HASH_COLLISION_RETRIES = 3


@dataclass(frozen=True)
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class IssuedRefreshToken:
    """A freshly minted refresh token; ``raw`` is shown to the client once."""

    raw: str
    record: RefreshToken

    @property
    def expires_at(self) -> datetime:
        return self.record.expires_at


class RefreshTokenLedger:
    """Issue, rotate and revoke opaque refresh tokens.

    Only the SHA-256 digest of a token is persisted. Rotation revokes the
    presented token and links it to its successor in one atomic store call.
    Presenting a token that was already revoked is treated as theft: every
    token of the owning account is revoked before ``TokenReusedError`` is
    raised.
    """

    def __init__(self, store: RefreshTokenStore, refresh_ttl: timedelta) -> None:
        self.store = store
        self.refresh_ttl = refresh_ttl

    def _mint(self, account_id: str, client: ClientInfo, now: datetime) -> IssuedRefreshToken:
        raw = generate_refresh_token()
        record = RefreshToken(
            id=new_id(),
            account_id=account_id,
            token_hash=hash_refresh_token(raw),
            expires_at=now + self.refresh_ttl,
            created_at=now,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        return IssuedRefreshToken(raw=raw, record=record)

    def issue(
        self,
        account_id: str,
        client: Optional[ClientInfo] = None,
        now: Optional[datetime] = None,
    ) -> IssuedRefreshToken:
        now = now or utcnow()
        client = client or ClientInfo()
        for attempt in range(_MAX_HASH_COLLISION_RETRIES):
            issued = self._mint(account_id, client, now)
            try:
                stored = self.store.create_refresh_token(issued.record)
            except ConstraintViolation:
                logger.warning("refresh_token_hash_collision", attempt=attempt)
                continue
            return IssuedRefreshToken(raw=issued.raw, record=stored)
        raise RuntimeError("unable to mint a unique refresh token")

    def _handle_reuse(self, record: RefreshToken, now: datetime) -> TokenReusedError:
        revoked = self.store.revoke_account_refresh_tokens(record.account_id, now)
        logger.warning(
            "refresh_token_reuse_detected",
            account_id=record.account_id,
            token_id=record.id,
            revoked=revoked,
        )
        return TokenReusedError(record.account_id)

    def rotate(
        self,
        raw: str,
        client: Optional[ClientInfo] = None,
        now: Optional[datetime] = None,
    ) -> IssuedRefreshToken:
        now = now or utcnow()
        client = client or ClientInfo()
        if not raw:
            raise InvalidCredentialError()
        record = self.store.get_refresh_token_by_hash(hash_refresh_token(raw))
        if record is None:
            raise InvalidCredentialError()
        if record.is_expired(now):
            raise TokenExpiredError("refresh token expired")
        if record.is_revoked:
            raise self._handle_reuse(record, now)

        successor = self._mint(record.account_id, client, now)
        if not self.store.rotate_refresh_token(record.id, successor.record, now):
            # lost the race to a concurrent rotation of the same token
            raise self._handle_reuse(record, now)
        logger.info(
            "refresh_token_rotated",
            account_id=record.account_id,
            token_id=record.id,
            successor_id=successor.record.id,
        )
        return successor

    def revoke(self, token_id: str, now: Optional[datetime] = None) -> bool:
        return self.store.revoke_refresh_token(token_id, now or utcnow())

    def revoke_raw(self, raw: str, now: Optional[datetime] = None) -> Optional[RefreshToken]:
        """Revoke by raw value; unknown tokens are ignored and return ``None``."""
        if not raw:
            return None
        record = self.store.get_refresh_token_by_hash(hash_refresh_token(raw))
        if record is None:
            return None
        self.store.revoke_refresh_token(record.id, now or utcnow())
        return record

    def revoke_all_for_account(self, account_id: str, now: Optional[datetime] = None) -> int:
        return self.store.revoke_account_refresh_tokens(account_id, now or utcnow())

    def purge_expired(
        self,
        now: Optional[datetime] = None,
        retention: timedelta = DEFAULT_PURGE_RETENTION,
    ) -> int:
        """Delete records that expired more than ``retention`` ago."""
        cutoff = (now or utcnow()) - retention
        return self.store.delete_expired_refresh_tokens(cutoff)
