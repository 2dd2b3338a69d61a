"""
Account ledger.

Owns every account-level command. Each write runs as a read-validate-commit
cycle against the row version and is retried when another writer got
there first; reads never lock. Coupon redemption and provider events are
delegated to their engines but routed through here so change listeners
(the decision cache) hear about every committed write.
"""

import uuid
from contextlib import nullcontext
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

from shared.config import BaseConfig
from shared.errors import AlreadyExistsError, ConcurrencyConflict, NotFoundError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tracing import trace_operation
from ..audit.events import (
    AccountDeleted, AppsChanged, EntitlementGranted, EntitlementRevoked, TrialStarted,
)
from ..audit.log import AuditLog, to_view
from ..auth.credentials import ADMIN_SCOPE, CredentialAuthority
from ..coupons.engine import CouponEngine
from ..domain import resolver
from ..domain.models import (
    AccessDecision, Account, AccountCreated, AccountSummary, AccountView, AppSyncRecord,
    AppSyncRequest, AppsChangeResult, AuditEventView, ConfirmAppsChangeRequest,
    CreateAccountRequest, DashboardResponse, DeleteResult, EntitlementChange, GrantResult,
    ProfileUpdateRequest, ProviderEventPayload, ProviderEventResult, RedeemResult,
    SubscriptionStatus, utc_now,
)
from ..domain.state_machine import effective_status, next_decision_boundary
from ..persistence.base import LedgerStore, WriteBatch
from ..persistence.guard import ConflictRetrier
from ..webhooks.gate import WebhookGate


ChangeListener = Callable[[str], Awaitable[None]]


def to_account_view(account: Account, now: datetime) -> AccountView:
    """Public view of an account with its effective status."""
    return AccountView(
        id=account.id,
        email=account.email,
        name=account.name,
        subscription_status=effective_status(account, now),
        stored_status=account.subscription_status,
        trial_started_at=account.trial_started_at,
        trial_expires_at=account.trial_expires_at,
        subscription_ends_at=account.subscription_ends_at,
        billing_interval=account.billing_interval,
        entitled_apps=sorted(account.entitled_apps),
        onboarding_completed=dict(account.onboarding_completed),
        payment_customer_ref=account.payment_customer_ref,
        payment_subscription_ref=account.payment_subscription_ref,
        coupon_code=account.coupon_code,
        coupon_redeemed_at=account.coupon_redeemed_at,
        created_at=account.created_at,
        last_login_at=account.last_login_at,
    )


class AccountLedger:
    """Authoritative store of accounts and their entitlements."""

    def __init__(self, store: LedgerStore, credentials: CredentialAuthority,
                 apps: Iterable[str] = ("safetunes", "safetube", "safereads"),
                 trial_days: int = 7,
                 grace_period_days: int = 3,
                 legacy_codes: Iterable[str] = (),
                 conflict_retry_attempts: int = 5,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.credentials = credentials
        self.apps = list(apps)
        self.trial_period = timedelta(days=trial_days)
        self.grace_period = timedelta(days=grace_period_days)
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("ledger.accounts")

        self.audit = AuditLog(store)
        self.retrier = ConflictRetrier(conflict_retry_attempts, metrics)
        self.coupons = CouponEngine(store, self.audit, self.apps, legacy_codes,
                                    retrier=self.retrier, metrics=metrics, clock=clock)
        self.webhooks = WebhookGate(store, self.audit, self.apps,
                                    retrier=self.retrier, metrics=metrics, clock=clock)
        self._listeners: List[ChangeListener] = []

    @classmethod
    def from_config(cls, store: LedgerStore, config: BaseConfig,
                    metrics: Optional[MetricsCollector] = None,
                    clock: Callable[[], datetime] = utc_now) -> "AccountLedger":
        credentials = CredentialAuthority(
            config.admin_key.get_secret_value(),
            issuer=config.service_token_issuer,
            default_ttl_seconds=config.service_token_ttl_seconds,
        )
        return cls(
            store,
            credentials,
            apps=config.apps,
            trial_days=config.trial_days,
            grace_period_days=config.grace_period_days,
            legacy_codes=config.legacy_lifetime_codes,
            conflict_retry_attempts=config.conflict_retry_attempts,
            metrics=metrics,
            clock=clock,
        )

    def add_change_listener(self, listener: ChangeListener):
        """Register a coroutine called with an account's email after each committed write."""
        self._listeners.append(listener)

    async def _notify(self, email: str):
        for listener in self._listeners:
            await listener(email)

    # Signup

    async def create_account(self, request: CreateAccountRequest) -> AccountCreated:
        """Create a trial account, or a lifetime one when a lifetime coupon is given."""
        email = request.email
        if not email.strip():
            raise ValidationError("Email must not be blank")
        selected = self._check_apps(request.selected_apps)

        with trace_operation("ledger.create_account"):
            account = await self.retrier.run("create_account", self._create_once, request, selected)

        await self._notify(account.email)
        self.logger.info("Account created",
                         account_id=account.id,
                         status=account.subscription_status.value,
                         coupon=account.coupon_code)
        return AccountCreated(
            user_id=account.id,
            email=account.email,
            status=account.subscription_status,
            entitled_apps=sorted(account.entitled_apps),
            trial_expires_at=account.trial_expires_at,
        )

    async def _create_once(self, request: CreateAccountRequest, selected: set) -> Account:
        now = self.clock()
        if await self.store.get_account_by_email(request.email) is not None:
            raise AlreadyExistsError("Account already exists with this email", {"email": request.email})

        account = Account(
            id=str(uuid.uuid4()),
            email=request.email,
            name=request.name,
            subscription_status=SubscriptionStatus.TRIAL,
            created_at=now,
            trial_started_at=now,
            trial_expires_at=now + self.trial_period,
            entitled_apps=set(selected),
            onboarding_completed={app: False for app in self.apps},
            last_login_at=now,
        )

        batch = WriteBatch()
        if request.coupon_code:
            coupon, legacy = await self.coupons.check(request.coupon_code, now)
            self.coupons.apply(account, coupon, legacy, now, batch, at_signup=True)
        else:
            batch.append_event(self.audit.record(
                TrialStarted(selected_apps=sorted(selected), trial_expires_at=account.trial_expires_at),
                now,
                account_id=account.id,
                email=account.email,
                subscription_status=account.subscription_status,
            ))

        batch.insert_account(account)
        await self.store.commit(batch)
        return account

    # Reads

    async def get_account(self, account_id: str) -> Optional[AccountView]:
        account = await self.store.get_account(account_id)
        return to_account_view(account, self.clock()) if account else None

    async def get_account_by_email(self, email: str) -> Optional[AccountView]:
        account = await self.store.get_account_by_email(email)
        return to_account_view(account, self.clock()) if account else None

    async def check_access(self, email: str, app: str) -> AccessDecision:
        """May the account with ``email`` use ``app`` right now."""
        decision, _ = await self.evaluate_access(email, app)
        return decision

    async def evaluate_access(self, email: str, app: str) -> Tuple[AccessDecision, Optional[datetime]]:
        """Access decision plus the instant it may next change on its own."""
        timer = self.metrics.time_operation("access_check_duration_seconds") if self.metrics else nullcontext()
        with timer:
            now = self.clock()
            account = await self.store.get_account_by_email(email)
            decision = resolver.check_access(account, app, now, self.grace_period)
            boundary = next_decision_boundary(account, now, self.grace_period) if account else None

        if self.metrics is not None:
            self.metrics.increment_counter("access_checks_total", reason=decision.reason.value)
        self.logger.debug("Access checked", app=app, has_access=decision.has_access, reason=decision.reason.value)
        return decision, boundary

    # Entitlements

    async def add_app(self, account_id: str, app: str) -> EntitlementChange:
        """Entitle the account to ``app``; no-op if already entitled."""
        self._check_apps([app])
        account, change = await self.retrier.run("add_app", self._add_app_once, account_id, app)
        if not change.already_entitled:
            await self._notify(account.email)
            self.logger.info("App entitlement granted", account_id=account_id, app=app)
        return change

    async def _add_app_once(self, account_id: str, app: str):
        now = self.clock()
        account = await self._require(account_id)
        if app in account.entitled_apps:
            return account, EntitlementChange(entitled_apps=sorted(account.entitled_apps), already_entitled=True)

        account.entitled_apps.add(app)
        event = self.audit.record(
            EntitlementGranted(app=app, entitled_apps=sorted(account.entitled_apps)),
            now, account_id=account.id, email=account.email,
            subscription_status=account.subscription_status,
        )
        await self.store.commit(WriteBatch().update_account(account).append_event(event))
        return account, EntitlementChange(entitled_apps=sorted(account.entitled_apps))

    async def remove_app(self, account_id: str, app: str) -> EntitlementChange:
        """Revoke ``app``; no-op if the account was not entitled."""
        self._check_apps([app])
        account, change = await self.retrier.run("remove_app", self._remove_app_once, account_id, app)
        if not change.was_not_entitled:
            await self._notify(account.email)
            self.logger.info("App entitlement revoked", account_id=account_id, app=app)
        return change

    async def _remove_app_once(self, account_id: str, app: str):
        now = self.clock()
        account = await self._require(account_id)
        if app not in account.entitled_apps:
            return account, EntitlementChange(entitled_apps=sorted(account.entitled_apps), was_not_entitled=True)

        account.entitled_apps.discard(app)
        event = self.audit.record(
            EntitlementRevoked(app=app, entitled_apps=sorted(account.entitled_apps)),
            now, account_id=account.id, email=account.email,
            subscription_status=account.subscription_status,
        )
        await self.store.commit(WriteBatch().update_account(account).append_event(event))
        return account, EntitlementChange(entitled_apps=sorted(account.entitled_apps))

    async def grant_lifetime(self, email: str, apps: Optional[List[str]], credential: Optional[str]) -> GrantResult:
        """Administrative lifetime grant; creates the account when missing."""
        self.credentials.authorize(credential, ADMIN_SCOPE)
        granted = self._check_apps(apps) if apps is not None else set(self.apps)

        with trace_operation("ledger.grant_lifetime"):
            result = await self.retrier.run("grant_lifetime", self._grant_once, email, granted)

        await self._notify(email)
        self.logger.info("Lifetime access granted", account_id=result.user_id, created=result.created)
        return result

    async def _grant_once(self, email: str, granted: set) -> GrantResult:
        now = self.clock()
        account = await self.store.get_account_by_email(email)
        batch = WriteBatch()

        if account is None:
            account = Account(
                id=str(uuid.uuid4()),
                email=email,
                subscription_status=SubscriptionStatus.LIFETIME,
                created_at=now,
                entitled_apps=set(granted),
                onboarding_completed={app: False for app in self.apps},
            )
            previous = None
            batch.insert_account(account)
        else:
            previous = account.subscription_status
            account.subscription_status = SubscriptionStatus.LIFETIME
            account.entitled_apps = set(granted)
            account.trial_started_at = None
            account.trial_expires_at = None
            batch.update_account(account)

        batch.append_event(self.audit.record(
            EntitlementGranted(
                lifetime_grant=True,
                previous_status=previous.value if previous else None,
                entitled_apps=sorted(granted),
                created_account=previous is None,
            ),
            now, account_id=account.id, email=email,
            subscription_status=SubscriptionStatus.LIFETIME,
        ))

        try:
            await self.store.commit(batch)
        except AlreadyExistsError as e:
            # Someone created the account between our read and commit.
            raise ConcurrencyConflict("Account created concurrently", {"email": email}) from e
        return GrantResult(user_id=account.id, created=previous is None)

    # Lifecycle

    async def delete_account(self, account_id: str, reason: Optional[str] = None) -> DeleteResult:
        """Record the terminal audit event, then remove the row and its sync records."""
        with trace_operation("ledger.delete_account", account_id=account_id):
            account, deleted_at = await self.retrier.run(
                "delete_account", self._delete_once, account_id, reason)

        await self._notify(account.email)
        self.logger.info("Account deleted", account_id=account_id)
        return DeleteResult(deleted_at=deleted_at)

    async def _delete_once(self, account_id: str, reason: Optional[str]):
        now = self.clock()
        account = await self._require(account_id)
        event = self.audit.record(
            AccountDeleted(
                reason=reason,
                subscription_status=account.subscription_status.value,
                entitled_apps=sorted(account.entitled_apps),
                account_age_days=max(0, (now - account.created_at).days),
            ),
            now, account_id=account.id, email=account.email,
            subscription_status=account.subscription_status,
        )
        await self.store.commit(WriteBatch().append_event(event).delete_account(account))
        return account, now

    async def update_profile(self, account_id: str, request: ProfileUpdateRequest) -> AccountView:
        """Change the display name or one app's onboarding flag."""
        if (request.onboarding_app is None) != (request.onboarding_completed is None):
            raise ValidationError("onboarding_app and onboarding_completed go together")
        if request.onboarding_app is not None:
            self._check_apps([request.onboarding_app])

        account = await self.retrier.run("update_profile", self._update_profile_once, account_id, request)
        await self._notify(account.email)
        return to_account_view(account, self.clock())

    async def _update_profile_once(self, account_id: str, request: ProfileUpdateRequest) -> Account:
        account = await self._require(account_id)
        if request.name is None and request.onboarding_app is None:
            return account

        if request.name is not None:
            account.name = request.name
        if request.onboarding_app is not None:
            account.onboarding_completed[request.onboarding_app] = request.onboarding_completed

        await self.store.commit(WriteBatch().update_account(account))
        return account

    async def record_login(self, account_id: str) -> AccountView:
        account = await self.retrier.run("record_login", self._login_once, account_id)
        return to_account_view(account, self.clock())

    async def _login_once(self, account_id: str) -> Account:
        account = await self._require(account_id)
        account.last_login_at = self.clock()
        await self.store.commit(WriteBatch().update_account(account))
        return account

    # App set changes tied to billing

    async def prepare_apps_change(self, account_id: str, new_apps: List[str]) -> AppsChangeResult:
        """Start an app-set change.

        Trial accounts without a provider subscription switch immediately.
        Otherwise the provider subscription reference is returned so the
        caller can update billing and then call ``confirm_apps_change``.
        """
        apps = self._check_apps(new_apps)
        account, result = await self.retrier.run(
            "prepare_apps_change", self._prepare_once, account_id, apps)
        if result.applied:
            await self._notify(account.email)
            self.logger.info("Trial apps changed", account_id=account_id, apps=result.new_apps)
        return result

    async def _prepare_once(self, account_id: str, apps: set):
        now = self.clock()
        account = await self._require(account_id)
        status = account.subscription_status
        if status not in (SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE):
            raise ValidationError("Cannot modify apps: subscription is not active",
                                  {"status": status.value})

        previous = sorted(account.entitled_apps)
        if account.payment_subscription_ref:
            return account, AppsChangeResult(
                applied=False,
                previous_apps=previous,
                new_apps=sorted(apps),
                payment_subscription_ref=account.payment_subscription_ref,
                billing_interval=account.billing_interval,
            )

        if status != SubscriptionStatus.TRIAL:
            raise ValidationError("No payment subscription found for this account")

        account.entitled_apps = set(apps)
        event = self.audit.record(
            AppsChanged(previous_apps=previous, new_apps=sorted(apps), during_trial=True),
            now, account_id=account.id, email=account.email, subscription_status=status,
        )
        await self.store.commit(WriteBatch().update_account(account).append_event(event))
        return account, AppsChangeResult(applied=True, trial_change=True,
                                         previous_apps=previous, new_apps=sorted(apps))

    async def confirm_apps_change(self, account_id: str, request: ConfirmAppsChangeRequest) -> AppsChangeResult:
        """Apply an app-set change after the provider accepted the billing update."""
        apps = self._check_apps(request.new_apps)
        account, result = await self.retrier.run(
            "confirm_apps_change", self._confirm_once, account_id, apps, request)
        await self._notify(account.email)
        self.logger.info("Subscription apps changed", account_id=account_id, apps=result.new_apps,
                         price_changed=request.price_changed)
        return result

    async def _confirm_once(self, account_id: str, apps: set, request: ConfirmAppsChangeRequest):
        now = self.clock()
        account = await self._require(account_id)
        previous = sorted(account.entitled_apps)
        account.entitled_apps = set(apps)
        event = self.audit.record(
            AppsChanged(previous_apps=previous, new_apps=sorted(apps),
                        price_changed=request.price_changed, new_price_ref=request.new_price_ref),
            now, account_id=account.id, email=account.email,
            subscription_status=account.subscription_status,
        )
        await self.store.commit(WriteBatch().update_account(account).append_event(event))
        return account, AppsChangeResult(
            applied=True,
            previous_apps=previous,
            new_apps=sorted(apps),
            payment_subscription_ref=account.payment_subscription_ref,
            billing_interval=account.billing_interval,
        )

    async def record_app_sync(self, account_id: str, app: str, request: AppSyncRequest) -> AppSyncRecord:
        """Store a consumer app's report on its copy of the account."""
        self._check_apps([app])
        await self._require(account_id)
        record = AppSyncRecord(
            account_id=account_id,
            app=app,
            sync_status=request.sync_status,
            last_synced_at=self.clock(),
            app_user_id=request.app_user_id,
            last_error=request.error,
        )
        await self.store.commit(WriteBatch().upsert_sync(record))
        return record

    async def sync_status(self, account_id: str) -> List[AppSyncRecord]:
        await self._require(account_id)
        return await self.store.sync_records(account_id)

    # Coupons and provider events

    async def redeem_coupon(self, code: str, account_id: Optional[str]) -> RedeemResult:
        result = await self.coupons.redeem(code, account_id)
        account = await self.store.get_account(account_id)
        if account is not None:
            await self._notify(account.email)
        return result

    async def apply_provider_event(self, event_id: str, payload: ProviderEventPayload) -> ProviderEventResult:
        result = await self.webhooks.apply_provider_event(event_id, payload)
        if result.applied:
            await self._notify(payload.email)
        return result

    # Administration

    async def dashboard(self) -> DashboardResponse:
        """Account totals by effective status with per-account summaries."""
        now = self.clock()
        accounts = await self.store.list_accounts()
        by_status = {status.value: 0 for status in SubscriptionStatus}
        summaries = []
        for account in accounts:
            status = effective_status(account, now)
            by_status[status.value] += 1
            summaries.append(AccountSummary(
                id=account.id,
                email=account.email,
                name=account.name,
                status=status,
                entitled_apps=sorted(account.entitled_apps),
                created_at=account.created_at,
                trial_expires_at=account.trial_expires_at,
            ))
        return DashboardResponse(total_accounts=len(accounts), by_status=by_status, accounts=summaries)

    async def audit_trail(self, account_id: Optional[str] = None,
                          email: Optional[str] = None) -> List[AuditEventView]:
        if account_id:
            events = await self.audit.for_account(account_id)
        elif email:
            events = await self.audit.for_email(email)
        else:
            raise ValidationError("account_id or email is required")
        return [to_view(event) for event in events]

    # Helpers

    async def _require(self, account_id: str) -> Account:
        account = await self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("Account not found", {"account_id": account_id})
        return account

    def _check_apps(self, apps: Iterable[str]) -> set:
        requested = set(apps)
        if not requested:
            raise ValidationError("At least one app must be selected")
        unknown = sorted(requested - set(self.apps))
        if unknown:
            raise ValidationError("Unknown apps", {"apps": unknown})
        return requested
