"""
Audit log facade.

``record`` only builds an event; it is persisted by the store in the same
batch as the state change it describes. Reads go straight to the store.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from shared.logging import get_logger
from .events import AuditEvent, EventData, dump_event_data
from ..domain.models import AuditEventView, SubscriptionStatus


class AuditLog:
    """Builds and queries audit events."""

    def __init__(self, store):
        self.store = store
        self.logger = get_logger("ledger.audit")

    def record(self, data: EventData, now: datetime,
               account_id: Optional[str] = None,
               email: Optional[str] = None,
               subscription_status: Optional[SubscriptionStatus] = None,
               provider_event_id: Optional[str] = None,
               error_message: Optional[str] = None) -> AuditEvent:
        """Build an event ready to be appended to a write batch."""
        event = AuditEvent(
            id=str(uuid.uuid4()),
            data=data,
            timestamp=now,
            account_id=account_id,
            email=email,
            subscription_status=subscription_status.value if subscription_status else None,
            provider_event_id=provider_event_id,
            error_message=error_message,
        )
        self.logger.debug("Audit event built",
                          event_type=event.event_type,
                          account_id=account_id,
                          provider_event_id=provider_event_id)
        return event

    async def for_account(self, account_id: str) -> List[AuditEvent]:
        return await self.store.events_for_account(account_id)

    async def for_email(self, email: str) -> List[AuditEvent]:
        return await self.store.events_for_email(email)

    async def by_provider_event(self, event_id: str) -> Optional[AuditEvent]:
        return await self.store.get_event_by_provider_id(event_id)


def to_view(event: AuditEvent) -> AuditEventView:
    """Public representation of an audit event."""
    return AuditEventView(
        id=event.id,
        account_id=event.account_id,
        email=event.email,
        event_type=event.event_type,
        event_data=dump_event_data(event.data),
        subscription_status=event.subscription_status,
        provider_event_id=event.provider_event_id,
        error_message=event.error_message,
        timestamp=event.timestamp,
    )
