"""
Subscription state machine.

Effective status is derived from the stored status and the clock on every
read. Nothing here writes; stored status only changes through explicit
ledger commands.
"""

from datetime import datetime, timedelta
from typing import Optional

from shared.errors import ValidationError
from .models import Account, SubscriptionStatus


DEFAULT_GRACE_PERIOD = timedelta(days=3)

# Provider-native subscription states that do not share a ledger name.
_PROVIDER_STATUS_MAP = {
    "trialing": SubscriptionStatus.ACTIVE,
    "unpaid": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "paused": SubscriptionStatus.INCOMPLETE,
}


def effective_status(account: Account, now: datetime) -> SubscriptionStatus:
    """Status that access decisions are made on."""
    if (
        account.subscription_status == SubscriptionStatus.TRIAL
        and account.trial_expires_at is not None
        and now > account.trial_expires_at
    ):
        return SubscriptionStatus.EXPIRED
    return account.subscription_status


def map_provider_status(raw: str) -> SubscriptionStatus:
    """Translate a payment-provider status string into a ledger status."""
    value = raw.strip().lower()
    if value in _PROVIDER_STATUS_MAP:
        return _PROVIDER_STATUS_MAP[value]
    try:
        return SubscriptionStatus(value)
    except ValueError:
        raise ValidationError("Unknown subscription status", {"subscription_status": raw}) from None


def resolve_provider_transition(current: SubscriptionStatus,
                                requested: SubscriptionStatus) -> SubscriptionStatus:
    """Stored status after a provider event requests ``requested``.

    Lifetime is terminal for provider traffic; every other request is
    taken at face value.
    """
    if current == SubscriptionStatus.LIFETIME:
        return SubscriptionStatus.LIFETIME
    return requested


def next_decision_boundary(account: Account, now: datetime,
                           grace_period: timedelta = DEFAULT_GRACE_PERIOD) -> Optional[datetime]:
    """Next instant at which the access decision can flip with no write."""
    status = effective_status(account, now)

    if status == SubscriptionStatus.TRIAL and account.trial_expires_at is not None:
        return account.trial_expires_at

    if status == SubscriptionStatus.CANCELED and account.subscription_ends_at is not None:
        if account.subscription_ends_at > now:
            return account.subscription_ends_at
        return None

    if status == SubscriptionStatus.PAST_DUE and account.subscription_ends_at is not None:
        grace_ends = account.subscription_ends_at + grace_period
        if grace_ends > now:
            return grace_ends

    return None
