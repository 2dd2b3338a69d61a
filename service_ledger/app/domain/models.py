"""
Ledger data models.

Dataclasses hold stored rows; pydantic models describe the request and
response shapes of the public operations.
"""

from typing import Dict, Any, Optional, List, Set
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class SubscriptionStatus(str, Enum):
    """Stored subscription status."""
    TRIAL = "trial"
    ACTIVE = "active"
    LIFETIME = "lifetime"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    EXPIRED = "expired"


class BillingInterval(str, Enum):
    """Billing interval of a paid subscription."""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class CouponType(str, Enum):
    """Coupon reward types."""
    LIFETIME = "lifetime"
    TRIAL_EXTENSION = "trial_extension"


class AccessReason(str, Enum):
    """Reason codes returned with every access decision."""
    ACCOUNT_NOT_FOUND = "account_not_found"
    APP_NOT_ENTITLED = "app_not_entitled"
    TRIAL_ACTIVE = "trial_active"
    ACTIVE = "active"
    LIFETIME = "lifetime"
    TRIAL_EXPIRED = "trial_expired"
    CANCELED_BUT_ACTIVE = "canceled_but_active"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAST_DUE_GRACE_PERIOD = "past_due_grace_period"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"


class SyncStatus(str, Enum):
    """Per-app sync state."""
    SYNCED = "synced"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class Account:
    """Ledger row for one user."""
    id: str
    email: str
    subscription_status: SubscriptionStatus
    created_at: datetime
    name: Optional[str] = None
    trial_started_at: Optional[datetime] = None
    trial_expires_at: Optional[datetime] = None
    subscription_ends_at: Optional[datetime] = None
    billing_interval: Optional[BillingInterval] = None
    entitled_apps: Set[str] = field(default_factory=set)
    onboarding_completed: Dict[str, bool] = field(default_factory=dict)
    payment_customer_ref: Optional[str] = None
    payment_subscription_ref: Optional[str] = None
    coupon_code: Optional[str] = None
    coupon_redeemed_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    version: int = 1


@dataclass
class Coupon:
    """Promotional code in the coupon registry."""
    code: str
    type: CouponType
    created_at: datetime
    active: bool = True
    expires_at: Optional[datetime] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    granted_apps: Optional[Set[str]] = None
    trial_days: Optional[int] = None
    description: Optional[str] = None


@dataclass
class AppSyncRecord:
    """Bookkeeping for an account's copy inside one consumer app."""
    account_id: str
    app: str
    sync_status: SyncStatus
    last_synced_at: datetime
    app_user_id: Optional[str] = None
    last_error: Optional[str] = None


def normalize_coupon_code(code: str) -> str:
    """Coupon codes are stored trimmed and uppercased."""
    return code.strip().upper()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps without an offset are read as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CreateAccountRequest(BaseModel):
    """Signup request."""
    email: str = Field(..., min_length=1, description="Account email, matched exactly")
    name: Optional[str] = Field(None, description="Display name")
    selected_apps: List[str] = Field(default_factory=list, description="Apps chosen at signup")
    coupon_code: Optional[str] = Field(None, description="Coupon entered at signup")


class AccountCreated(BaseModel):
    """Response for a created account."""
    user_id: str
    email: str
    status: SubscriptionStatus
    entitled_apps: List[str]
    trial_expires_at: Optional[datetime] = None


class AccountView(BaseModel):
    """Account as seen by consumers, with effective status."""
    id: str
    email: str
    name: Optional[str] = None
    subscription_status: SubscriptionStatus
    stored_status: SubscriptionStatus
    trial_started_at: Optional[datetime] = None
    trial_expires_at: Optional[datetime] = None
    subscription_ends_at: Optional[datetime] = None
    billing_interval: Optional[BillingInterval] = None
    entitled_apps: List[str] = Field(default_factory=list)
    onboarding_completed: Dict[str, bool] = Field(default_factory=dict)
    payment_customer_ref: Optional[str] = None
    payment_subscription_ref: Optional[str] = None
    coupon_code: Optional[str] = None
    coupon_redeemed_at: Optional[datetime] = None
    created_at: datetime
    last_login_at: Optional[datetime] = None


class AccessDecision(BaseModel):
    """Answer to "may this user use this app right now"."""
    has_access: bool
    reason: AccessReason
    subscription_status: Optional[SubscriptionStatus] = None
    trial_expires_at: Optional[datetime] = None
    subscription_ends_at: Optional[datetime] = None
    entitled_apps: List[str] = Field(default_factory=list)
    onboarding_completed: bool = False
    user_id: Optional[str] = None
    user_name: Optional[str] = None


class ProfileUpdateRequest(BaseModel):
    """Non-subscription account fields."""
    name: Optional[str] = None
    onboarding_app: Optional[str] = None
    onboarding_completed: Optional[bool] = None


class EntitlementChange(BaseModel):
    """Result of a single-app entitlement edit."""
    entitled_apps: List[str]
    already_entitled: bool = False
    was_not_entitled: bool = False


class AppsChangeRequest(BaseModel):
    """Replace the entitled app set."""
    new_apps: List[str]


class ConfirmAppsChangeRequest(BaseModel):
    """Confirm an app change after billing was updated."""
    new_apps: List[str]
    price_changed: bool = False
    new_price_ref: Optional[str] = None


class AppsChangeResult(BaseModel):
    """Outcome of preparing or confirming an app change."""
    applied: bool
    trial_change: bool = False
    previous_apps: List[str] = Field(default_factory=list)
    new_apps: List[str] = Field(default_factory=list)
    payment_subscription_ref: Optional[str] = None
    billing_interval: Optional[BillingInterval] = None


class DeleteResult(BaseModel):
    """Account deletion receipt."""
    deleted_at: datetime


class RedeemRequest(BaseModel):
    """Coupon redemption request."""
    code: str = Field(..., min_length=1)


class RedeemResult(BaseModel):
    """State after a successful redemption."""
    status: SubscriptionStatus
    entitled_apps: List[str]
    trial_expires_at: Optional[datetime] = None


class CouponValidation(BaseModel):
    """Read-only coupon preview."""
    valid: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    type: Optional[CouponType] = None
    granted_apps: List[str] = Field(default_factory=list)


class SeedCouponRequest(BaseModel):
    """Create a coupon if it does not exist yet."""
    code: str = Field(..., min_length=1)
    type: CouponType
    usage_limit: Optional[int] = Field(None, ge=0)
    granted_apps: Optional[List[str]] = None
    trial_days: Optional[int] = Field(None, ge=1)
    expires_at: Optional[datetime] = None
    description: Optional[str] = None

    @field_validator("expires_at")
    @classmethod
    def expires_at_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class SeedCouponResult(BaseModel):
    """Seeding outcome."""
    code: str
    created: bool


class CouponActiveRequest(BaseModel):
    """Toggle a coupon."""
    active: bool


class GrantLifetimeRequest(BaseModel):
    """Administrative lifetime grant."""
    email: str = Field(..., min_length=1)
    apps: Optional[List[str]] = None


class GrantResult(BaseModel):
    """Administrative grant outcome."""
    user_id: str
    created: bool


class ProviderEventPayload(BaseModel):
    """Status payload relayed from the payment provider."""
    email: str = Field(..., min_length=1)
    subscription_status: str = Field(..., description="Ledger or provider-native status")
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    subscription_ends_at: Optional[datetime] = None
    billing_interval: Optional[BillingInterval] = None
    entitled_apps: Optional[List[str]] = None

    @field_validator("subscription_ends_at")
    @classmethod
    def ends_at_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class ProviderEventRequest(BaseModel):
    """Webhook envelope."""
    event_id: str = Field(..., min_length=1)
    payload: ProviderEventPayload


class ProviderEventResult(BaseModel):
    """Webhook application outcome."""
    applied: bool
    account_id: Optional[str] = None


class AppSyncRequest(BaseModel):
    """Consumer app reports the state of its copy of an account."""
    sync_status: SyncStatus
    app_user_id: Optional[str] = None
    error: Optional[str] = None


class AccountSummary(BaseModel):
    """Dashboard row."""
    id: str
    email: str
    name: Optional[str] = None
    status: SubscriptionStatus
    entitled_apps: List[str]
    created_at: datetime
    trial_expires_at: Optional[datetime] = None


class DashboardResponse(BaseModel):
    """Administrative overview."""
    total_accounts: int
    by_status: Dict[str, int]
    accounts: List[AccountSummary]


class TokenRequest(BaseModel):
    """Service token issuance request."""
    scope: str
    ttl_seconds: Optional[int] = Field(None, ge=1)


class TokenResponse(BaseModel):
    """Issued service token."""
    token: str
    scope: str
    expires_at: datetime
    token_type: str = "Bearer"


class AuditEventView(BaseModel):
    """Audit entry as returned to support tooling."""
    id: str
    account_id: Optional[str] = None
    email: Optional[str] = None
    event_type: str
    event_data: Dict[str, Any]
    subscription_status: Optional[str] = None
    provider_event_id: Optional[str] = None
    error_message: Optional[str] = None
    timestamp: datetime


def utc_now() -> datetime:
    """Default ledger clock."""
    return datetime.now(timezone.utc)
