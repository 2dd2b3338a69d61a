"""
Accounts Ledger service.
"""

import hmac
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import Query, Request
from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import AuthenticationError, NotFoundError, ServiceError
from shared.observability import get_observability_manager

from .auth.credentials import ADMIN_SCOPE, WEBHOOK_SCOPE
from .cache.redis_cache import DecisionCache
from .domain.models import (
    AccessDecision, AccountCreated, AccountView, AppsChangeRequest, AppsChangeResult,
    AppSyncRequest, AuditEventView, ConfirmAppsChangeRequest, CouponActiveRequest,
    CouponValidation, CreateAccountRequest, DashboardResponse, DeleteResult, EntitlementChange,
    GrantLifetimeRequest, GrantResult, ProfileUpdateRequest, ProviderEventRequest,
    ProviderEventResult, RedeemRequest, RedeemResult, SeedCouponRequest, SeedCouponResult,
    TokenRequest, TokenResponse, utc_now,
)
from .ledger.service import AccountLedger
from .persistence.base import LedgerStore
from .persistence.memory import MemoryLedgerStore
from .persistence.postgres import PostgresLedgerStore


SERVICE_NAME = "ledger"
SERVICE_PORT = 8011


def _credential(request: Request) -> Optional[str]:
    """Administrative credential from ``x-admin-key`` or a bearer token."""
    key = request.headers.get("x-admin-key")
    if key:
        return key
    authorization = request.headers.get("authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token:
        return token.strip()
    return None


class LedgerService(BaseService):
    """Accounts Ledger service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None,
                 store: Optional[LedgerStore] = None,
                 cache: Optional[DecisionCache] = None,
                 clock: Callable[[], datetime] = utc_now):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config)

        # Initialize observability
        self.observability = get_observability_manager(
            SERVICE_NAME,
            log_level=self.config.log_level,
            otel_exporter=self.config.otel_exporter,
            enable_console=self.config.enable_console_tracing,
            enable_tracing=self.config.enable_tracing,
            metrics=self.metrics,
        )

        # Initialize components
        self.store = store or self._create_store()
        self.ledger = AccountLedger.from_config(self.store, self.config, self.metrics, clock)
        self.cache = cache
        if self.cache is None and self.config.decision_cache_enabled:
            self.cache = DecisionCache(self.config.redis_url,
                                       self.config.decision_cache_ttl_seconds,
                                       self.metrics)
        if self.cache is not None:
            self.ledger.add_change_listener(self.cache.invalidate_email)

        self._setup_ledger_routes()

    def _create_store(self) -> LedgerStore:
        backend = self.config.storage_backend.lower()
        if backend == "postgres":
            return PostgresLedgerStore(self.config.postgres_dsn)
        if backend == "memory":
            return MemoryLedgerStore()
        raise ServiceError("Unknown storage backend", {"storage_backend": backend})

    def _authorize(self, request: Request, scope: str = ADMIN_SCOPE):
        self.ledger.credentials.authorize(_credential(request), scope)

    async def check_access(self, email: str, app: str) -> AccessDecision:
        """Access decision, served from the decision cache when enabled."""
        if self.cache is None:
            decision, _ = await self.ledger.evaluate_access(email, app)
            return decision

        cached = await self.cache.get_decision(email, app)
        if cached is not None:
            return cached

        generation = await self.cache.generation(email)
        decision, boundary = await self.ledger.evaluate_access(email, app)
        await self.cache.set_decision(email, app, decision, generation, self.ledger.clock(), boundary)
        return decision

    def _check_app_key(self, request: Request):
        expected = self.config.app_api_key
        if expected is None or not expected.get_secret_value():
            return
        presented = request.headers.get("x-app-key", "")
        if not hmac.compare_digest(presented.encode(), expected.get_secret_value().encode()):
            raise AuthenticationError("Invalid app key")

    def _setup_ledger_routes(self):
        """Set up ledger-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Accounts Ledger",
                "version": "1.0.0",
                "apps": self.ledger.apps,
                "capabilities": ["entitlements", "coupons", "provider_webhooks", "audit"]
            }

        # Accounts

        @self.app.post("/accounts", response_model=AccountCreated, status_code=201)
        async def create_account(body: CreateAccountRequest):
            """Sign up a new account."""
            created = await self.ledger.create_account(body)
            self.observability.log_business_event(
                "account_created",
                account_id=created.user_id,
                status=created.status.value
            )
            return created

        @self.app.get("/accounts", response_model=AccountView)
        async def get_account_by_email(request: Request, email: str = Query(..., min_length=1)):
            """Look an account up by exact email."""
            self._authorize(request)
            account = await self.ledger.get_account_by_email(email)
            if account is None:
                raise NotFoundError("Account not found")
            return account

        @self.app.get("/accounts/{account_id}", response_model=AccountView)
        async def get_account(account_id: str):
            """Get account by id."""
            self.observability.trace_request(account_id=account_id)
            account = await self.ledger.get_account(account_id)
            if account is None:
                raise NotFoundError("Account not found", {"account_id": account_id})
            return account

        @self.app.patch("/accounts/{account_id}", response_model=AccountView)
        async def update_profile(account_id: str, body: ProfileUpdateRequest):
            """Update name or onboarding progress."""
            self.observability.trace_request(account_id=account_id)
            return await self.ledger.update_profile(account_id, body)

        @self.app.post("/accounts/{account_id}/login", response_model=AccountView)
        async def record_login(account_id: str):
            """Stamp the last login time."""
            self.observability.trace_request(account_id=account_id)
            return await self.ledger.record_login(account_id)

        @self.app.delete("/accounts/{account_id}", response_model=DeleteResult)
        async def delete_account(account_id: str, reason: Optional[str] = Query(None)):
            """Delete an account after writing its terminal audit entry."""
            self.observability.trace_request(account_id=account_id)
            result = await self.ledger.delete_account(account_id, reason)
            self.observability.log_business_event("account_deleted", account_id=account_id)
            return result

        # Registered before the single-app routes so "prepare" and "confirm"
        # are not taken as app names.
        @self.app.post("/accounts/{account_id}/apps/prepare", response_model=AppsChangeResult)
        async def prepare_apps_change(account_id: str, body: AppsChangeRequest):
            """Begin changing the entitled app set."""
            self.observability.trace_request(account_id=account_id)
            return await self.ledger.prepare_apps_change(account_id, body.new_apps)

        @self.app.post("/accounts/{account_id}/apps/confirm", response_model=AppsChangeResult)
        async def confirm_apps_change(account_id: str, body: ConfirmAppsChangeRequest):
            """Finish an app change after billing was updated."""
            self.observability.trace_request(account_id=account_id)
            return await self.ledger.confirm_apps_change(account_id, body)

        @self.app.post("/accounts/{account_id}/apps/{app}", response_model=EntitlementChange)
        async def add_app(account_id: str, app: str):
            """Entitle an account to one app."""
            self.observability.trace_request(account_id=account_id)
            return await self.ledger.add_app(account_id, app)

        @self.app.delete("/accounts/{account_id}/apps/{app}", response_model=EntitlementChange)
        async def remove_app(account_id: str, app: str):
            """Revoke one app."""
            self.observability.trace_request(account_id=account_id)
            return await self.ledger.remove_app(account_id, app)

        @self.app.post("/accounts/{account_id}/apps/{app}/sync")
        async def record_app_sync(account_id: str, app: str, body: AppSyncRequest):
            """Record how a consumer app's copy of the account looks."""
            record = await self.ledger.record_app_sync(account_id, app, body)
            return {
                "account_id": record.account_id,
                "app": record.app,
                "sync_status": record.sync_status.value,
                "last_synced_at": record.last_synced_at.isoformat(),
                "app_user_id": record.app_user_id,
                "last_error": record.last_error,
            }

        @self.app.get("/accounts/{account_id}/sync")
        async def get_sync_status(account_id: str):
            """Per-app sync records for an account."""
            records = await self.ledger.sync_status(account_id)
            return {
                "account_id": account_id,
                "apps": {
                    r.app: {
                        "sync_status": r.sync_status.value,
                        "last_synced_at": r.last_synced_at.isoformat(),
                        "app_user_id": r.app_user_id,
                        "last_error": r.last_error,
                    }
                    for r in records
                }
            }

        # Access

        @self.app.get("/access/check", response_model=AccessDecision)
        async def check_access(request: Request,
                               email: str = Query(..., min_length=1),
                               app: str = Query(..., min_length=1)):
            """Decide whether a user may use an app right now."""
            self._check_app_key(request)
            return await self.check_access(email, app)

        # Coupons

        @self.app.post("/coupons/redeem", response_model=RedeemResult)
        async def redeem_coupon(request: Request, body: RedeemRequest):
            """Redeem a coupon for the calling account."""
            account_id = request.headers.get("x-account-id")
            self.observability.trace_request(account_id=account_id)
            result = await self.ledger.redeem_coupon(body.code, account_id)
            self.observability.log_business_event(
                "coupon_redeemed",
                account_id=account_id,
                status=result.status.value
            )
            return result

        @self.app.get("/coupons/{code}/validate", response_model=CouponValidation)
        async def validate_coupon(code: str):
            """Preview a coupon without redeeming it."""
            return await self.ledger.coupons.validate(code)

        # Administration

        @self.app.post("/admin/coupons", response_model=SeedCouponResult)
        async def seed_coupon(request: Request, body: SeedCouponRequest):
            """Create a coupon if it does not exist yet."""
            self._authorize(request)
            return await self.ledger.coupons.seed_coupon(body)

        @self.app.post("/admin/coupons/{code}/active")
        async def set_coupon_active(request: Request, code: str, body: CouponActiveRequest):
            """Enable or disable a coupon."""
            self._authorize(request)
            coupon = await self.ledger.coupons.set_active(code, body.active)
            return {
                "code": coupon.code,
                "active": coupon.active,
                "usage_count": coupon.usage_count,
                "usage_limit": coupon.usage_limit,
            }

        @self.app.post("/admin/lifetime", response_model=GrantResult)
        async def grant_lifetime(request: Request, body: GrantLifetimeRequest):
            """Grant lifetime access, creating the account if needed."""
            result = await self.ledger.grant_lifetime(body.email, body.apps, _credential(request))
            self.observability.log_business_event(
                "lifetime_granted",
                account_id=result.user_id,
                created=result.created
            )
            return result

        @self.app.post("/admin/tokens", response_model=TokenResponse)
        async def issue_token(request: Request, body: TokenRequest):
            """Issue a scoped service token."""
            self._authorize(request)
            token, expires_at = self.ledger.credentials.issue_token(body.scope, body.ttl_seconds)
            return TokenResponse(token=token, scope=body.scope, expires_at=expires_at)

        @self.app.get("/admin/dashboard", response_model=DashboardResponse)
        async def dashboard(request: Request):
            """Account totals and summaries."""
            self._authorize(request)
            return await self.ledger.dashboard()

        @self.app.get("/admin/audit", response_model=List[AuditEventView])
        async def audit_trail(request: Request,
                              account_id: Optional[str] = Query(None),
                              email: Optional[str] = Query(None)):
            """Audit history for an account or email."""
            self._authorize(request)
            return await self.ledger.audit_trail(account_id=account_id, email=email)

        # Provider webhooks

        @self.app.post("/webhooks/provider", response_model=ProviderEventResult)
        async def provider_event(request: Request, body: ProviderEventRequest):
            """Apply a payment-provider event exactly once."""
            self._authorize(request, WEBHOOK_SCOPE)
            result = await self.ledger.apply_provider_event(body.event_id, body.payload)
            self.observability.log_business_event(
                "provider_event",
                event_id=body.event_id,
                applied=result.applied
            )
            return result

    async def _check_dependencies(self):
        """Check ledger service dependencies."""
        dependencies = {}

        if not await self.store.health_check():
            raise ServiceError("Ledger store unavailable")
        dependencies["store"] = "ok"

        if self.cache is not None:
            dependencies["redis"] = "ok" if await self.cache.health_check() else "error"

        return dependencies

    async def start(self):
        """Start ledger service components."""
        await self.store.start()
        if self.cache is not None:
            await self.cache.start()
        self.logger.info("Ledger service started",
                         storage_backend=self.config.storage_backend,
                         decision_cache=self.cache is not None)

    async def stop(self):
        """Stop ledger service components."""
        await self.store.stop()
        if self.cache is not None:
            await self.cache.stop()
        self.logger.info("Ledger service stopped")


def create_app(config: Optional[ServiceConfig] = None, **kwargs):
    """Create ledger service application."""
    service = LedgerService(config or get_config(SERVICE_NAME, SERVICE_PORT), **kwargs)
    return service.app


if __name__ == "__main__":
    service = LedgerService()
    service.run()
