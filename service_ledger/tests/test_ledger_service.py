"""
Unit tests for the account ledger.
"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from shared.errors import (
    AlreadyExistsError, AuthorizationError, InvalidCouponError, NotFoundError, ValidationError,
)
from shared.metrics import MetricsCollector
from service_ledger.app.auth.credentials import CredentialAuthority
from service_ledger.app.domain.models import (
    AccessReason, AppSyncRequest, ConfirmAppsChangeRequest, CouponType, CreateAccountRequest,
    ProfileUpdateRequest, ProviderEventPayload, SeedCouponRequest, SubscriptionStatus, SyncStatus,
)
from service_ledger.app.ledger.service import AccountLedger
from service_ledger.app.persistence.base import WriteBatch
from service_ledger.app.persistence.memory import MemoryLedgerStore
from shared.test_helpers import ALL_APPS, TEST_ADMIN_KEY, ManualClock


class TestAccountLedger:
    """Test cases for AccountLedger."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def store(self):
        return MemoryLedgerStore()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("ledger")

    @pytest.fixture
    def ledger(self, store, clock, metrics):
        return AccountLedger(store, CredentialAuthority(TEST_ADMIN_KEY), apps=ALL_APPS,
                             legacy_codes=["DAWSFRIEND"], metrics=metrics, clock=clock)

    def _signup(self, email="parent@example.com", apps=None, coupon_code=None):
        return CreateAccountRequest(email=email, name="Pat",
                                    selected_apps=apps or ["safetunes"], coupon_code=coupon_code)

    # Signup

    @pytest.mark.asyncio
    async def test_create_trial_account(self, ledger, store, clock):
        created = await ledger.create_account(self._signup(apps=["safetunes", "safetunes"]))

        assert created.status == SubscriptionStatus.TRIAL
        assert created.entitled_apps == ["safetunes"]
        assert created.trial_expires_at == clock.now + timedelta(days=7)

        stored = await store.get_account(created.user_id)
        assert stored.trial_started_at == clock.now
        assert stored.last_login_at == clock.now
        assert stored.onboarding_completed == {app: False for app in ALL_APPS}

        events = await store.events_for_account(created.user_id)
        assert [e.event_type for e in events] == ["trial.started"]

    @pytest.mark.asyncio
    async def test_create_requires_apps(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.create_account(CreateAccountRequest(email="a@example.com", selected_apps=[]))

    @pytest.mark.asyncio
    async def test_create_rejects_unknown_app(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.create_account(self._signup(apps=["safetunes", "notanapp"]))

    @pytest.mark.asyncio
    async def test_duplicate_email(self, ledger):
        await ledger.create_account(self._signup())

        with pytest.raises(AlreadyExistsError):
            await ledger.create_account(self._signup())

    @pytest.mark.asyncio
    async def test_email_is_case_sensitive(self, ledger):
        await ledger.create_account(self._signup(email="parent@example.com"))
        created = await ledger.create_account(self._signup(email="Parent@example.com"))

        assert created.email == "Parent@example.com"

    @pytest.mark.asyncio
    async def test_create_with_lifetime_coupon(self, ledger, store):
        await ledger.coupons.seed_coupon(SeedCouponRequest(
            code="FAMILY", type=CouponType.LIFETIME, usage_limit=3, granted_apps=["safetube"]))

        created = await ledger.create_account(self._signup(coupon_code="family"))

        assert created.status == SubscriptionStatus.LIFETIME
        assert created.entitled_apps == ["safetube"]
        assert created.trial_expires_at is None
        assert (await store.get_coupon("FAMILY")).usage_count == 1

        events = await store.events_for_account(created.user_id)
        assert [e.event_type for e in events] == ["coupon.applied"]
        assert events[0].data.at_signup is True

    @pytest.mark.asyncio
    async def test_create_with_invalid_coupon_creates_nothing(self, ledger, store):
        with pytest.raises(InvalidCouponError):
            await ledger.create_account(self._signup(coupon_code="NOPE"))

        assert await store.get_account_by_email("parent@example.com") is None

    @pytest.mark.asyncio
    async def test_create_with_trial_extension(self, ledger, clock):
        await ledger.coupons.seed_coupon(SeedCouponRequest(
            code="LONGER", type=CouponType.TRIAL_EXTENSION, trial_days=7))

        created = await ledger.create_account(self._signup(coupon_code="LONGER"))

        assert created.status == SubscriptionStatus.TRIAL
        assert created.trial_expires_at == clock.now + timedelta(days=14)

    # Reads and access

    @pytest.mark.asyncio
    async def test_views_use_effective_status(self, ledger, clock):
        created = await ledger.create_account(self._signup())
        clock.advance(days=8)

        view = await ledger.get_account(created.user_id)

        assert view.subscription_status == SubscriptionStatus.EXPIRED
        assert view.stored_status == SubscriptionStatus.TRIAL
        assert (await ledger.get_account_by_email("parent@example.com")).id == created.user_id
        assert await ledger.get_account("missing") is None

    @pytest.mark.asyncio
    async def test_check_access_follows_clock(self, ledger, clock, metrics):
        await ledger.create_account(self._signup())

        allowed = await ledger.check_access("parent@example.com", "safetunes")
        clock.advance(days=7, seconds=1)
        denied = await ledger.check_access("parent@example.com", "safetunes")

        assert allowed.reason == AccessReason.TRIAL_ACTIVE
        assert denied.reason == AccessReason.TRIAL_EXPIRED
        assert metrics.registry.get_sample_value(
            "access_checks_total", {"reason": "trial_expired"}) == 1

    @pytest.mark.asyncio
    async def test_check_access_unknown_email(self, ledger):
        decision = await ledger.check_access("nobody@example.com", "safetunes")

        assert decision.reason == AccessReason.ACCOUNT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_evaluate_access_returns_boundary(self, ledger):
        created = await ledger.create_account(self._signup())

        decision, boundary = await ledger.evaluate_access("parent@example.com", "safetunes")

        assert decision.has_access is True
        assert boundary == created.trial_expires_at

    # Entitlement edits

    @pytest.mark.asyncio
    async def test_add_app_is_idempotent(self, ledger, store):
        created = await ledger.create_account(self._signup())

        first = await ledger.add_app(created.user_id, "safereads")
        second = await ledger.add_app(created.user_id, "safereads")

        assert first.already_entitled is False
        assert second.already_entitled is True
        assert second.entitled_apps == ["safereads", "safetunes"]
        types = [e.event_type for e in await store.events_for_account(created.user_id)]
        assert types.count("entitlement.granted") == 1

    @pytest.mark.asyncio
    async def test_remove_app_is_idempotent(self, ledger, store):
        created = await ledger.create_account(self._signup(apps=["safetunes", "safetube"]))

        first = await ledger.remove_app(created.user_id, "safetube")
        second = await ledger.remove_app(created.user_id, "safetube")

        assert first.was_not_entitled is False
        assert second.was_not_entitled is True
        assert second.entitled_apps == ["safetunes"]
        types = [e.event_type for e in await store.events_for_account(created.user_id)]
        assert types.count("entitlement.revoked") == 1

    @pytest.mark.asyncio
    async def test_edit_missing_account(self, ledger):
        with pytest.raises(NotFoundError):
            await ledger.add_app("missing", "safetunes")

    # Lifetime grants

    @pytest.mark.asyncio
    async def test_grant_lifetime_to_existing(self, ledger, store):
        created = await ledger.create_account(self._signup())

        result = await ledger.grant_lifetime("parent@example.com", None, TEST_ADMIN_KEY)

        stored = await store.get_account(created.user_id)
        assert result.created is False
        assert stored.subscription_status == SubscriptionStatus.LIFETIME
        assert stored.entitled_apps == set(ALL_APPS)
        assert stored.trial_expires_at is None
        event = (await store.events_for_account(created.user_id))[-1]
        assert event.data.lifetime_grant is True
        assert event.data.previous_status == "trial"

    @pytest.mark.asyncio
    async def test_grant_lifetime_creates_account(self, ledger, store):
        result = await ledger.grant_lifetime("new@example.com", ["safereads"], TEST_ADMIN_KEY)

        stored = await store.get_account(result.user_id)
        assert result.created is True
        assert stored.email == "new@example.com"
        assert stored.entitled_apps == {"safereads"}

    @pytest.mark.asyncio
    async def test_grant_lifetime_checks_credential(self, ledger, store):
        with pytest.raises(AuthorizationError) as exc_info:
            await ledger.grant_lifetime("new@example.com", None, "wrong-key")

        assert exc_info.value.message == "Unauthorized"
        assert await store.get_account_by_email("new@example.com") is None

    # Deletion

    @pytest.mark.asyncio
    async def test_delete_account(self, ledger, store, clock):
        created = await ledger.create_account(self._signup())
        await ledger.record_app_sync(created.user_id, "safetunes", AppSyncRequest(sync_status=SyncStatus.SYNCED))
        clock.advance(days=3)

        result = await ledger.delete_account(created.user_id, reason="no longer needed")

        assert result.deleted_at == clock.now
        assert await store.get_account(created.user_id) is None
        assert await store.sync_records(created.user_id) == []
        event = (await store.events_for_account(created.user_id))[-1]
        assert event.event_type == "account.deleted"
        assert event.data.account_age_days == 3
        assert event.data.reason == "no longer needed"

    @pytest.mark.asyncio
    async def test_delete_missing_account(self, ledger):
        with pytest.raises(NotFoundError):
            await ledger.delete_account("missing")

    # Profile

    @pytest.mark.asyncio
    async def test_update_profile(self, ledger):
        created = await ledger.create_account(self._signup())

        view = await ledger.update_profile(created.user_id, ProfileUpdateRequest(
            name="Robin", onboarding_app="safetunes", onboarding_completed=True))

        assert view.name == "Robin"
        assert view.onboarding_completed["safetunes"] is True
        assert view.onboarding_completed["safetube"] is False

    @pytest.mark.asyncio
    async def test_update_profile_requires_paired_onboarding_fields(self, ledger):
        created = await ledger.create_account(self._signup())

        with pytest.raises(ValidationError):
            await ledger.update_profile(created.user_id, ProfileUpdateRequest(onboarding_app="safetunes"))

    @pytest.mark.asyncio
    async def test_record_login(self, ledger, clock):
        created = await ledger.create_account(self._signup())
        clock.advance(hours=5)

        view = await ledger.record_login(created.user_id)

        assert view.last_login_at == clock.now

    # App set changes

    @pytest.mark.asyncio
    async def test_trial_apps_change_applies_immediately(self, ledger, store):
        created = await ledger.create_account(self._signup())

        result = await ledger.prepare_apps_change(created.user_id, ["safetube", "safereads"])

        assert result.applied is True
        assert result.trial_change is True
        assert result.previous_apps == ["safetunes"]
        assert (await store.get_account(created.user_id)).entitled_apps == {"safetube", "safereads"}
        event = (await store.events_for_account(created.user_id))[-1]
        assert event.event_type == "subscription.apps_changed"
        assert event.data.during_trial is True

    @pytest.mark.asyncio
    async def test_paid_apps_change_needs_confirmation(self, ledger, store):
        created = await ledger.create_account(self._signup())
        await ledger.apply_provider_event("evt_paid", ProviderEventPayload(
            email="parent@example.com", subscription_status="active",
            subscription_ref="sub_123", billing_interval="monthly"))

        prepared = await ledger.prepare_apps_change(created.user_id, ["safetube"])

        assert prepared.applied is False
        assert prepared.payment_subscription_ref == "sub_123"
        assert (await store.get_account(created.user_id)).entitled_apps == {"safetunes"}

        confirmed = await ledger.confirm_apps_change(created.user_id, ConfirmAppsChangeRequest(
            new_apps=["safetube"], price_changed=True, new_price_ref="price_2"))

        assert confirmed.applied is True
        assert (await store.get_account(created.user_id)).entitled_apps == {"safetube"}

    @pytest.mark.asyncio
    async def test_active_without_subscription_ref_cannot_change(self, ledger):
        created = await ledger.create_account(self._signup())
        await ledger.apply_provider_event("evt_a", ProviderEventPayload(
            email="parent@example.com", subscription_status="active"))

        with pytest.raises(ValidationError):
            await ledger.prepare_apps_change(created.user_id, ["safetube"])

    @pytest.mark.asyncio
    async def test_inactive_subscription_cannot_change_apps(self, ledger):
        created = await ledger.create_account(self._signup())
        await ledger.apply_provider_event("evt_c", ProviderEventPayload(
            email="parent@example.com", subscription_status="canceled"))

        with pytest.raises(ValidationError):
            await ledger.prepare_apps_change(created.user_id, ["safetube"])

    @pytest.mark.asyncio
    async def test_empty_app_change_rejected(self, ledger):
        created = await ledger.create_account(self._signup())

        with pytest.raises(ValidationError):
            await ledger.prepare_apps_change(created.user_id, [])

    # Sync records

    @pytest.mark.asyncio
    async def test_record_app_sync(self, ledger):
        created = await ledger.create_account(self._signup())

        await ledger.record_app_sync(created.user_id, "safetunes",
                                     AppSyncRequest(sync_status=SyncStatus.FAILED, error="timeout"))
        records = await ledger.sync_status(created.user_id)

        assert len(records) == 1
        assert records[0].last_error == "timeout"

    # Change notifications

    @pytest.mark.asyncio
    async def test_listeners_hear_committed_writes(self, ledger):
        listener = AsyncMock()
        ledger.add_change_listener(listener)

        created = await ledger.create_account(self._signup())
        await ledger.add_app(created.user_id, "safetunes")
        await ledger.add_app(created.user_id, "safetube")

        assert listener.await_count == 2
        listener.assert_awaited_with("parent@example.com")

    @pytest.mark.asyncio
    async def test_duplicate_provider_event_does_not_notify(self, ledger):
        await ledger.create_account(self._signup())
        listener = AsyncMock()
        ledger.add_change_listener(listener)
        payload = ProviderEventPayload(email="parent@example.com", subscription_status="active")

        await ledger.apply_provider_event("evt_d", payload)
        await ledger.apply_provider_event("evt_d", payload)

        assert listener.await_count == 1

    # Administration

    @pytest.mark.asyncio
    async def test_dashboard_counts_effective_status(self, ledger, store, clock):
        await ledger.create_account(self._signup(email="a@example.com"))
        clock.advance(days=8)
        await ledger.create_account(self._signup(email="b@example.com"))
        await ledger.grant_lifetime("c@example.com", None, TEST_ADMIN_KEY)

        dashboard = await ledger.dashboard()

        assert dashboard.total_accounts == 3
        assert dashboard.by_status["expired"] == 1
        assert dashboard.by_status["trial"] == 1
        assert dashboard.by_status["lifetime"] == 1
        assert [a.email for a in dashboard.accounts] == ["a@example.com", "b@example.com", "c@example.com"]

    @pytest.mark.asyncio
    async def test_audit_trail(self, ledger):
        created = await ledger.create_account(self._signup())
        await ledger.add_app(created.user_id, "safetube")

        by_id = await ledger.audit_trail(account_id=created.user_id)
        by_email = await ledger.audit_trail(email="parent@example.com")

        assert [e.event_type for e in by_id] == ["trial.started", "entitlement.granted"]
        assert len(by_email) == 2
        with pytest.raises(ValidationError):
            await ledger.audit_trail()

    @pytest.mark.asyncio
    async def test_write_retried_after_conflict(self, ledger, store, metrics):
        created = await ledger.create_account(self._signup())
        real_commit = store.commit

        async def commit_after_rival(batch):
            store.commit = real_commit
            rival = await store.get_account(created.user_id)
            rival.name = "Rival"
            await real_commit(WriteBatch().update_account(rival))
            await real_commit(batch)

        store.commit = commit_after_rival

        change = await ledger.add_app(created.user_id, "safereads")

        stored = await store.get_account(created.user_id)
        assert change.entitled_apps == ["safereads", "safetunes"]
        assert stored.name == "Rival"
        assert stored.version == 3
        assert metrics.registry.get_sample_value(
            "concurrency_conflicts_total", {"operation": "add_app"}) == 1
