"""
Audit event payloads.

Each event type carries its own payload model; ``event_data`` is a
discriminated union on ``event_type`` so stored JSON loads back into the
right model.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class EventPayload(BaseModel):
    model_config = ConfigDict(frozen=True)


class TrialStarted(EventPayload):
    event_type: Literal["trial.started"] = "trial.started"
    selected_apps: List[str]
    trial_expires_at: datetime


class CouponApplied(EventPayload):
    event_type: Literal["coupon.applied"] = "coupon.applied"
    code: str
    coupon_type: str
    previous_status: Optional[str] = None
    entitled_apps: List[str] = Field(default_factory=list)
    legacy: bool = False
    at_signup: bool = False
    trial_expires_at: Optional[datetime] = None


class SubscriptionUpdated(EventPayload):
    event_type: Literal["subscription.updated"] = "subscription.updated"
    previous_status: str
    new_status: str
    requested_status: str
    status_preserved: bool = False
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    subscription_ends_at: Optional[datetime] = None
    billing_interval: Optional[str] = None
    entitled_apps: Optional[List[str]] = None


class SubscriptionUpdateFailed(EventPayload):
    event_type: Literal["subscription.update_failed"] = "subscription.update_failed"
    email: str
    requested_status: str
    error: str


class EntitlementGranted(EventPayload):
    event_type: Literal["entitlement.granted"] = "entitlement.granted"
    app: Optional[str] = None
    lifetime_grant: bool = False
    previous_status: Optional[str] = None
    entitled_apps: List[str] = Field(default_factory=list)
    created_account: bool = False


class EntitlementRevoked(EventPayload):
    event_type: Literal["entitlement.revoked"] = "entitlement.revoked"
    app: str
    entitled_apps: List[str] = Field(default_factory=list)


class AppsChanged(EventPayload):
    event_type: Literal["subscription.apps_changed"] = "subscription.apps_changed"
    previous_apps: List[str]
    new_apps: List[str]
    during_trial: bool = False
    price_changed: bool = False
    new_price_ref: Optional[str] = None


class AccountDeleted(EventPayload):
    event_type: Literal["account.deleted"] = "account.deleted"
    reason: Optional[str] = None
    subscription_status: str
    entitled_apps: List[str]
    account_age_days: int


EventData = Annotated[
    Union[
        TrialStarted,
        CouponApplied,
        SubscriptionUpdated,
        SubscriptionUpdateFailed,
        EntitlementGranted,
        EntitlementRevoked,
        AppsChanged,
        AccountDeleted,
    ],
    Field(discriminator="event_type"),
]

_event_data_adapter = TypeAdapter(EventData)


def load_event_data(raw: Dict[str, Any]) -> EventData:
    """Rebuild a payload model from its stored JSON form."""
    return _event_data_adapter.validate_python(raw)


def dump_event_data(data: EventData) -> Dict[str, Any]:
    """JSON-safe dict for storage."""
    return data.model_dump(mode="json")


@dataclass(frozen=True)
class AuditEvent:
    """One immutable audit log entry."""
    id: str
    data: EventData
    timestamp: datetime
    account_id: Optional[str] = None
    email: Optional[str] = None
    subscription_status: Optional[str] = None
    provider_event_id: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def event_type(self) -> str:
        return self.data.event_type
