"""
Webhook idempotency gate.

Payment providers deliver each event at least once. The gate applies an
event only if no audit entry carries its id yet; the audit append and the
account change commit together, and the store's unique constraint on
provider event ids decides between concurrent deliveries.
"""

from datetime import datetime
from typing import Callable, Iterable, Optional

from shared.errors import DuplicateEventError, NotFoundError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tracing import trace_operation
from ..audit.events import SubscriptionUpdated, SubscriptionUpdateFailed
from ..audit.log import AuditLog
from ..domain.models import ProviderEventPayload, ProviderEventResult, SubscriptionStatus, utc_now
from ..domain.state_machine import map_provider_status, resolve_provider_transition
from ..persistence.base import LedgerStore, WriteBatch
from ..persistence.guard import ConflictRetrier


class WebhookGate:
    """Applies payment-provider events exactly once."""

    def __init__(self, store: LedgerStore, audit: AuditLog, apps: Iterable[str],
                 retrier: Optional[ConflictRetrier] = None,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.audit = audit
        self.apps = set(apps)
        self.retrier = retrier or ConflictRetrier(metrics=metrics)
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("ledger.webhooks")

    async def apply_provider_event(self, event_id: str, payload: ProviderEventPayload) -> ProviderEventResult:
        """Apply one provider event; repeats report ``applied=False``."""
        if not event_id:
            raise ValidationError("Provider event id is required")
        if payload.entitled_apps is not None:
            unknown = sorted(set(payload.entitled_apps) - self.apps)
            if unknown:
                raise ValidationError("Unknown apps", {"apps": unknown})
        requested = map_provider_status(payload.subscription_status)

        with trace_operation("webhook.provider_event", event_id=event_id):
            try:
                result = await self.retrier.run("provider_event", self._apply_once, event_id, payload, requested)
            except NotFoundError:
                self._record_outcome("account_not_found")
                raise

        self._record_outcome("applied" if result.applied else "duplicate")
        return result

    async def _apply_once(self, event_id: str, payload: ProviderEventPayload,
                          requested: SubscriptionStatus) -> ProviderEventResult:
        existing = await self.store.get_event_by_provider_id(event_id)
        if existing is not None:
            self.logger.info("Duplicate provider event ignored", event_id=event_id)
            return ProviderEventResult(applied=False, account_id=existing.account_id)

        now = self.clock()
        account = await self.store.get_account_by_email(payload.email)

        if account is None:
            await self._record_failure(event_id, payload, requested.value, now)
            raise NotFoundError("Account not found", {"email": payload.email, "event_id": event_id})

        previous = account.subscription_status
        account.subscription_status = resolve_provider_transition(previous, requested)
        if payload.customer_ref:
            account.payment_customer_ref = payload.customer_ref
        if payload.subscription_ref:
            account.payment_subscription_ref = payload.subscription_ref
        if payload.subscription_ends_at:
            account.subscription_ends_at = payload.subscription_ends_at
        if payload.billing_interval:
            account.billing_interval = payload.billing_interval
        if payload.entitled_apps is not None:
            account.entitled_apps = set(payload.entitled_apps)

        preserved = account.subscription_status != requested
        event = self.audit.record(
            SubscriptionUpdated(
                previous_status=previous.value,
                new_status=account.subscription_status.value,
                requested_status=requested.value,
                status_preserved=preserved,
                customer_ref=payload.customer_ref,
                subscription_ref=payload.subscription_ref,
                subscription_ends_at=payload.subscription_ends_at,
                billing_interval=payload.billing_interval.value if payload.billing_interval else None,
                entitled_apps=sorted(payload.entitled_apps) if payload.entitled_apps is not None else None,
            ),
            now,
            account_id=account.id,
            email=account.email,
            subscription_status=account.subscription_status,
            provider_event_id=event_id,
        )

        try:
            await self.store.commit(WriteBatch().update_account(account).append_event(event))
        except DuplicateEventError:
            self.logger.info("Concurrent delivery already applied", event_id=event_id)
            return ProviderEventResult(applied=False, account_id=account.id)

        self.logger.info("Provider event applied",
                         event_id=event_id,
                         account_id=account.id,
                         previous_status=previous.value,
                         new_status=account.subscription_status.value,
                         status_preserved=preserved)
        return ProviderEventResult(applied=True, account_id=account.id)

    async def _record_failure(self, event_id: str, payload: ProviderEventPayload, requested: str, now: datetime):
        event = self.audit.record(
            SubscriptionUpdateFailed(email=payload.email, requested_status=requested, error="Account not found"),
            now,
            email=payload.email,
            provider_event_id=event_id,
            error_message="Account not found",
        )
        try:
            await self.store.commit(WriteBatch().append_event(event))
        except DuplicateEventError:
            self.logger.info("Failure already recorded by a concurrent delivery", event_id=event_id)
            return
        self.logger.warning("Provider event for unknown account", event_id=event_id, email=payload.email)

    def _record_outcome(self, outcome: str):
        if self.metrics is not None:
            self.metrics.increment_counter("provider_events_total", outcome=outcome)
