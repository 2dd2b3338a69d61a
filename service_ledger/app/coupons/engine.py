"""
Coupon redemption engine.

A redemption reads the coupon and the account, validates, then commits
the usage claim, the account change and the ``coupon.applied`` event in
one batch. The claim is guarded by the usage count that was read, so two
concurrent redemptions of the last slot cannot both succeed: the loser
re-reads and fails validation with ``usage_limit_reached``.
"""

from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple

from shared.errors import (
    AlreadyExistsError, AuthenticationError, InvalidCouponError, NotFoundError, ValidationError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tracing import trace_operation
from ..audit.events import CouponApplied
from ..audit.log import AuditLog
from ..domain.models import (
    Account, Coupon, CouponType, CouponValidation, RedeemResult, SeedCouponRequest,
    SeedCouponResult, SubscriptionStatus, normalize_coupon_code, utc_now,
)
from ..persistence.base import LedgerStore, WriteBatch
from ..persistence.guard import ConflictRetrier


_MESSAGES = {
    "not_found": "Invalid coupon code",
    "inactive": "This coupon is no longer active",
    "expired": "This coupon has expired",
    "usage_limit_reached": "This coupon has reached its usage limit",
    "not_applicable": "This coupon cannot be applied to this account",
}


def _invalid(reason: str, code: str) -> InvalidCouponError:
    return InvalidCouponError(reason, _MESSAGES[reason], {"code": code})


class CouponEngine:
    """Validates and redeems promotional codes."""

    def __init__(self, store: LedgerStore, audit: AuditLog, apps: Iterable[str],
                 legacy_codes: Iterable[str] = (),
                 retrier: Optional[ConflictRetrier] = None,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.audit = audit
        self.apps = list(apps)
        self.legacy_codes = {normalize_coupon_code(c) for c in legacy_codes}
        self.retrier = retrier or ConflictRetrier(metrics=metrics)
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("ledger.coupons")

    async def check(self, code: str, now: datetime) -> Tuple[Coupon, bool]:
        """Resolve ``code`` to a redeemable coupon.

        Returns the coupon and whether it is a legacy hardcoded code.
        Checks run in order (exists, active, not expired, usage left) and
        the first failure is raised.
        """
        normalized = normalize_coupon_code(code or "")
        coupon = await self.store.get_coupon(normalized) if normalized else None

        if coupon is None:
            # Registry rows always win over the hardcoded list.
            if normalized in self.legacy_codes:
                return Coupon(code=normalized, type=CouponType.LIFETIME, created_at=now), True
            raise _invalid("not_found", normalized)

        if not coupon.active:
            raise _invalid("inactive", normalized)

        if coupon.expires_at is not None and now > coupon.expires_at:
            raise _invalid("expired", normalized)

        if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
            raise _invalid("usage_limit_reached", normalized)

        return coupon, False

    def apply(self, account: Account, coupon: Coupon, legacy: bool, now: datetime,
              batch: WriteBatch, at_signup: bool = False) -> Account:
        """Apply a validated coupon to ``account`` and stage the claim and audit entry."""
        previous_status = account.subscription_status

        if coupon.type == CouponType.LIFETIME:
            account.subscription_status = SubscriptionStatus.LIFETIME
            account.entitled_apps = set(coupon.granted_apps) if coupon.granted_apps else set(self.apps)
            account.trial_started_at = None
            account.trial_expires_at = None
        else:
            if account.subscription_status != SubscriptionStatus.TRIAL:
                raise _invalid("not_applicable", coupon.code)
            base = max(now, account.trial_expires_at) if account.trial_expires_at else now
            account.trial_expires_at = base + timedelta(days=coupon.trial_days or 0)

        account.coupon_code = coupon.code
        account.coupon_redeemed_at = now

        if not legacy:
            batch.claim_coupon(coupon.code, coupon.usage_count)

        batch.append_event(self.audit.record(
            CouponApplied(
                code=coupon.code,
                coupon_type=coupon.type.value,
                previous_status=None if at_signup else previous_status.value,
                entitled_apps=sorted(account.entitled_apps),
                legacy=legacy,
                at_signup=at_signup,
                trial_expires_at=account.trial_expires_at,
            ),
            now,
            account_id=account.id,
            email=account.email,
            subscription_status=account.subscription_status,
        ))
        return account

    async def redeem(self, code: str, account_id: Optional[str]) -> RedeemResult:
        """Redeem ``code`` for an existing account."""
        if not account_id:
            raise AuthenticationError("Account identity required to redeem a coupon")

        with trace_operation("coupon.redeem", account_id=account_id):
            try:
                result = await self.retrier.run("coupon.redeem", self._redeem_once, code, account_id)
            except InvalidCouponError as e:
                self._record_outcome(e.reason)
                self.logger.info("Coupon rejected", account_id=account_id, reason=e.reason)
                raise

        self._record_outcome("success")
        self.logger.info("Coupon redeemed", account_id=account_id, status=result.status.value)
        return result

    async def _redeem_once(self, code: str, account_id: str) -> RedeemResult:
        now = self.clock()
        account = await self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("Account not found", {"account_id": account_id})

        coupon, legacy = await self.check(code, now)

        batch = WriteBatch()
        self.apply(account, coupon, legacy, now, batch)
        batch.update_account(account)
        await self.store.commit(batch)

        return RedeemResult(
            status=account.subscription_status,
            entitled_apps=sorted(account.entitled_apps),
            trial_expires_at=account.trial_expires_at,
        )

    async def validate(self, code: str) -> CouponValidation:
        """Read-only preview of whether ``code`` would redeem right now."""
        try:
            coupon, _ = await self.check(code, self.clock())
        except InvalidCouponError as e:
            return CouponValidation(valid=False, reason=e.reason, message=e.message)

        granted = sorted(coupon.granted_apps) if coupon.granted_apps else sorted(self.apps)
        return CouponValidation(valid=True, type=coupon.type, granted_apps=granted)

    async def seed_coupon(self, request: SeedCouponRequest) -> SeedCouponResult:
        """Create a coupon unless one with the same code exists."""
        code = normalize_coupon_code(request.code)
        if not code:
            raise ValidationError("Coupon code must not be blank")
        if request.type == CouponType.TRIAL_EXTENSION and not request.trial_days:
            raise ValidationError("trial_extension coupons need trial_days", {"code": code})
        granted = self._check_apps(request.granted_apps)

        if await self.store.get_coupon(code) is not None:
            return SeedCouponResult(code=code, created=False)

        coupon = Coupon(
            code=code,
            type=request.type,
            created_at=self.clock(),
            expires_at=request.expires_at,
            usage_limit=request.usage_limit,
            granted_apps=granted,
            trial_days=request.trial_days,
            description=request.description,
        )
        try:
            await self.store.commit(WriteBatch().insert_coupon(coupon))
        except AlreadyExistsError:
            return SeedCouponResult(code=code, created=False)

        self.logger.info("Coupon seeded", code=code, type=coupon.type.value, usage_limit=coupon.usage_limit)
        return SeedCouponResult(code=code, created=True)

    async def set_active(self, code: str, active: bool) -> Coupon:
        """Enable or disable a coupon."""
        normalized = normalize_coupon_code(code)
        if await self.store.get_coupon(normalized) is None:
            raise NotFoundError("Coupon not found", {"code": normalized})

        await self.store.commit(WriteBatch().set_coupon_active(normalized, active))
        self.logger.info("Coupon toggled", code=normalized, active=active)
        return await self.store.get_coupon(normalized)

    def _check_apps(self, apps: Optional[List[str]]):
        if apps is None:
            return None
        unknown = sorted(set(apps) - set(self.apps))
        if unknown:
            raise ValidationError("Unknown apps", {"apps": unknown})
        if not apps:
            raise ValidationError("granted_apps must not be empty")
        return set(apps)

    def _record_outcome(self, outcome: str):
        if self.metrics is not None:
            self.metrics.increment_counter("coupon_redemptions_total", outcome=outcome)
