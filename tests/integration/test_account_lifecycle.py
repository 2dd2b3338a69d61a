"""
Integration tests for the account lifecycle across the ledger's HTTP surface.
"""

import pytest
from fastapi.testclient import TestClient

from shared.config import get_config
from service_ledger.app.main import LedgerService
from shared.test_helpers import TEST_ADMIN_KEY, ManualClock, TestDataFactory


ADMIN = {"x-admin-key": TEST_ADMIN_KEY}


class TestAccountLifecycle:
    """End-to-end account flows."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def client(self, clock):
        config = get_config("ledger", 8011, admin_key=TEST_ADMIN_KEY, storage_backend="memory")
        with TestClient(LedgerService(config, clock=clock).app) as client:
            yield client

    def _access(self, client, app="safetunes", email="parent@example.com"):
        return client.get("/access/check", params={"email": email, "app": app}).json()

    def test_trial_to_lifetime(self, client, clock):
        created = client.post("/accounts", json=TestDataFactory.signup_request(apps=["safetunes"])).json()
        account_id = created["user_id"]

        decision = self._access(client)
        assert decision["has_access"] is True
        assert decision["reason"] == "trial_active"
        assert self._access(client, app="safetube")["reason"] == "app_not_entitled"

        clock.advance(days=8)
        assert self._access(client)["reason"] == "trial_expired"

        redeemed = client.post("/coupons/redeem", json={"code": "DAWSFRIEND"},
                               headers={"x-account-id": account_id})
        assert redeemed.status_code == 200
        assert redeemed.json()["status"] == "lifetime"

        for app in ("safetunes", "safetube", "safereads"):
            decision = self._access(client, app=app)
            assert decision["has_access"] is True
            assert decision["reason"] == "lifetime"

        # Provider traffic cannot demote a lifetime account.
        client.post("/webhooks/provider", headers=ADMIN,
                    json=TestDataFactory.provider_event(status="canceled", event_id="evt_late"))
        assert self._access(client)["reason"] == "lifetime"

        trail = client.get("/admin/audit", headers=ADMIN, params={"account_id": account_id}).json()
        assert [e["event_type"] for e in trail] == [
            "trial.started", "coupon.applied", "subscription.updated"]
        assert trail[2]["event_data"]["status_preserved"] is True

    def test_paid_subscription_through_grace_and_cancellation(self, client, clock):
        client.post("/accounts", json=TestDataFactory.signup_request())

        ends = clock.now.isoformat()
        client.post("/webhooks/provider", headers=ADMIN, json=TestDataFactory.provider_event(
            status="active", event_id="evt_paid", subscription_ref="sub_1", subscription_ends_at=ends))
        assert self._access(client)["reason"] == "active"

        client.post("/webhooks/provider", headers=ADMIN, json=TestDataFactory.provider_event(
            status="past_due", event_id="evt_late"))
        clock.advance(days=2)
        assert self._access(client)["reason"] == "past_due_grace_period"
        clock.advance(days=2)
        assert self._access(client)["reason"] == "payment_failed"

        client.post("/webhooks/provider", headers=ADMIN, json=TestDataFactory.provider_event(
            status="active", event_id="evt_recovered",
            subscription_ends_at=clock.now.replace(year=clock.now.year + 1).isoformat()))
        client.post("/webhooks/provider", headers=ADMIN, json=TestDataFactory.provider_event(
            status="canceled", event_id="evt_cancel"))
        assert self._access(client)["reason"] == "canceled_but_active"

    def test_coupon_with_single_use_is_consumed_once(self, client):
        client.post("/admin/coupons", headers=ADMIN, json={"code": "ONCE", "type": "lifetime", "usage_limit": 1})
        first = client.post("/accounts", json=TestDataFactory.signup_request(email="a@example.com")).json()
        second = client.post("/accounts", json=TestDataFactory.signup_request(email="b@example.com")).json()

        ok = client.post("/coupons/redeem", json={"code": "ONCE"}, headers={"x-account-id": first["user_id"]})
        spent = client.post("/coupons/redeem", json={"code": "ONCE"}, headers={"x-account-id": second["user_id"]})

        assert ok.status_code == 200
        assert spent.status_code == 400
        assert spent.json()["details"]["reason"] == "usage_limit_reached"

    def test_deleted_account_loses_access(self, client):
        created = client.post("/accounts", json=TestDataFactory.signup_request()).json()

        client.delete(f"/accounts/{created['user_id']}")

        assert self._access(client)["reason"] == "account_not_found"
        trail = client.get("/admin/audit", headers=ADMIN, params={"email": "parent@example.com"}).json()
        assert trail[-1]["event_type"] == "account.deleted"
