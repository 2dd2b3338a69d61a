"""
Entitlement resolver.

Pure function from (account, app, clock) to an access decision; safe to
call at any read concurrency.
"""

from datetime import datetime, timedelta
from typing import Optional

from .models import Account, AccessDecision, AccessReason, SubscriptionStatus
from .state_machine import DEFAULT_GRACE_PERIOD, effective_status


def check_access(account: Optional[Account], app: str, now: datetime,
                 grace_period: timedelta = DEFAULT_GRACE_PERIOD) -> AccessDecision:
    """Decide whether ``account`` may use ``app`` at ``now``."""
    if account is None:
        return AccessDecision(has_access=False, reason=AccessReason.ACCOUNT_NOT_FOUND)

    status = effective_status(account, now)
    has_access, reason = _decide(account, app, status, now, grace_period)

    return AccessDecision(
        has_access=has_access,
        reason=reason,
        subscription_status=status,
        trial_expires_at=account.trial_expires_at,
        subscription_ends_at=account.subscription_ends_at,
        entitled_apps=sorted(account.entitled_apps),
        onboarding_completed=account.onboarding_completed.get(app, False),
        user_id=account.id,
        user_name=account.name,
    )


def _decide(account: Account, app: str, status: SubscriptionStatus,
            now: datetime, grace_period: timedelta):
    # Wrong app is denied whatever the status.
    if app not in account.entitled_apps:
        return False, AccessReason.APP_NOT_ENTITLED

    if status == SubscriptionStatus.TRIAL:
        return True, AccessReason.TRIAL_ACTIVE

    if status == SubscriptionStatus.ACTIVE:
        return True, AccessReason.ACTIVE

    if status == SubscriptionStatus.LIFETIME:
        return True, AccessReason.LIFETIME

    if status == SubscriptionStatus.EXPIRED:
        return False, AccessReason.TRIAL_EXPIRED

    if status == SubscriptionStatus.CANCELED:
        if account.subscription_ends_at is not None and account.subscription_ends_at > now:
            return True, AccessReason.CANCELED_BUT_ACTIVE
        return False, AccessReason.SUBSCRIPTION_CANCELED

    if status == SubscriptionStatus.PAST_DUE:
        if account.subscription_ends_at is not None and now - account.subscription_ends_at < grace_period:
            return True, AccessReason.PAST_DUE_GRACE_PERIOD
        return False, AccessReason.PAYMENT_FAILED

    return False, AccessReason.SUBSCRIPTION_INACTIVE
