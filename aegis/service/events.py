from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from aegis.logging import get_logger
from aegis.storage.models import new_id, utcnow

logger = get_logger(__name__)

USER_CREATED = "user.created"
USER_UPDATED = "user.updated"
USER_DELETED = "user.deleted"
USER_ACTIVATED = "user.activated"
USER_SUSPENDED = "user.suspended"
USER_DEACTIVATED = "user.deactivated"
USER_EMAIL_VERIFIED = "user.email_verified"
USER_PHONE_VERIFIED = "user.phone_verified"
USER_LOGGED_IN = "user.logged_in"
USER_LOGGED_OUT = "user.logged_out"
USER_ROLE_ASSIGNED = "user.role_assigned"
USER_ROLE_REMOVED = "user.role_removed"
USER_PASSWORD_CHANGED = "user.password_changed"
USER_TOKEN_REUSE_DETECTED = "user.token_reuse_detected"


@dataclass(frozen=True)
class DomainEvent:
    type: str
    account_id: Optional[str]
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)


class EventSink(Protocol):
    def publish(self, event: DomainEvent) -> None: ...


class LoggingEventSink:
    """Writes every event to the structured log."""

    def __init__(self) -> None:
        self.logger = get_logger("aegis.events")

    def publish(self, event: DomainEvent) -> None:
        self.logger.info(
            "event_published",
            event_id=event.id,
            event_type=event.type,
            account_id=event.account_id,
            data=event.data,
        )


class NullEventSink:
    def publish(self, event: DomainEvent) -> None:
        return None


def publish_safely(sink: EventSink, event: DomainEvent) -> None:
    """Publish ``event``; a failing sink is logged and never breaks the caller."""
    try:
        sink.publish(event)
    except Exception as exc:
        logger.error(
            "event_publish_failed",
            event_type=event.type,
            account_id=event.account_id,
            error=str(exc),
        )
