"""Domain models for stored subscriptions and billing events."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..paymentprovider.models import SubscriptionStatus

ItemT = TypeVar("ItemT")

_GOOD_STANDING_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})
_CANCELLED_STATUSES = frozenset({SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionOrder(str, Enum):
    """Sort orders accepted when listing subscriptions."""

    CREATED_AT_ASC = "created_at_asc"
    CREATED_AT_DESC = "created_at_desc"
    UPDATED_AT_ASC = "updated_at_asc"
    UPDATED_AT_DESC = "updated_at_desc"


class BillingEventOrder(str, Enum):
    """Sort orders accepted when listing billing events."""

    CREATED_AT_ASC = "created_at_asc"
    CREATED_AT_DESC = "created_at_desc"
    UPDATED_AT_ASC = "updated_at_asc"
    UPDATED_AT_DESC = "updated_at_desc"
    EVENT_TIME_ASC = "event_time_asc"
    EVENT_TIME_DESC = "event_time_desc"


class Subscription(BaseModel):
    """Subscription state reconciled from provider webhooks.

    ``user_id`` is empty while the subscription is orphaned, that is while its
    customer email has not been matched to a user.
    """

    id: str = ""
    user_id: str = ""
    email: str = ""
    status: str
    integrator: str
    integrator_subscription_id: str
    integrator_customer_id: str = ""
    plan_name: str = ""
    plan_id: str = ""
    amount: int = 0
    currency: str = ""
    billing_interval: str = ""
    next_billing_date: Optional[datetime] = None
    available_until_date: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    provider_created_at: Optional[datetime] = None
    provider_updated_at: Optional[datetime] = None
    cancel_url: str = ""
    update_url: str = ""
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def is_active(self) -> bool:
        return self.status in _GOOD_STANDING_STATUSES

    @property
    def is_cancelled(self) -> bool:
        return self.status in _CANCELLED_STATUSES

    @property
    def is_in_good_standing(self) -> bool:
        return self.status in _GOOD_STANDING_STATUSES

    @property
    def is_orphaned(self) -> bool:
        return not self.user_id

    def days_until_next_billing(self, now: Optional[datetime] = None) -> Optional[int]:
        """Return whole days until the next billing date, or ``None`` when unknown."""

        if self.next_billing_date is None:
            return None
        current = now or _utc_now()
        return (self.next_billing_date - current).days


class SubscriptionUpdate(BaseModel):
    """Partial update applied to a stored subscription; ``None`` leaves a field unchanged."""

    status: Optional[str] = None
    plan_name: Optional[str] = None
    plan_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    billing_interval: Optional[str] = None
    next_billing_date: Optional[datetime] = None
    available_until_date: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    provider_updated_at: Optional[datetime] = None
    cancel_url: Optional[str] = None
    update_url: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None

    model_config = ConfigDict(frozen=True)

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class BillingEvent(BaseModel):
    """Append-only record of a processed provider event."""

    id: str = ""
    subscription_id: str = ""
    user_id: str = ""
    event_type: str
    integrator: str
    integrator_event_id: str
    integrator_subscription_id: str = ""
    status: str = ""
    amount: int = 0
    currency: str = ""
    plan_name: str = ""
    receipt_url: str = ""
    raw_payload: str = ""
    event_time: datetime = Field(default_factory=_utc_now)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class SubscriptionFilter(BaseModel):
    """Criteria for listing and counting subscriptions; empty fields do not filter."""

    user_ids: Tuple[str, ...] = ()
    emails: Tuple[str, ...] = ()
    integrator: str = ""
    integrator_subscription_id: str = ""
    integrator_customer_id: str = ""
    statuses: Tuple[str, ...] = ()
    currency: str = ""
    billing_interval: str = ""
    plan_name_contains: str = ""
    created_at_from: Optional[datetime] = None
    created_at_to: Optional[datetime] = None
    next_billing_date_from: Optional[datetime] = None
    next_billing_date_to: Optional[datetime] = None
    unassociated_only: bool = False

    model_config = ConfigDict(frozen=True)

    @field_validator("emails")
    @classmethod
    def _lower_emails(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        return tuple(email.strip().lower() for email in value if email and email.strip())

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class BillingEventFilter(BaseModel):
    """Criteria for listing and counting billing events."""

    user_ids: Tuple[str, ...] = ()
    integrator: str = ""
    integrator_subscription_id: str = ""
    integrator_subscription_ids: Tuple[str, ...] = ()
    subscription_id: str = ""
    event_types: Tuple[str, ...] = ()
    statuses: Tuple[str, ...] = ()
    plan_name_contains: str = ""
    event_time_from: Optional[datetime] = None
    event_time_to: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class PageResult(BaseModel, Generic[ItemT]):
    """One page of a listing together with its pagination counters."""

    items: List[ItemT] = Field(default_factory=list)
    total: int = 0
    total_pages: int = 0
    page: int = 1
    per_page: int = 25

    model_config = ConfigDict(frozen=True)

    def meta(self) -> Dict[str, int]:
        return {
            "resources_per_page": self.per_page,
            "total_resources": self.total,
            "total_pages": self.total_pages,
            "page": self.page,
        }


__all__ = [
    "BillingEvent",
    "BillingEventFilter",
    "BillingEventOrder",
    "PageResult",
    "Subscription",
    "SubscriptionFilter",
    "SubscriptionOrder",
    "SubscriptionUpdate",
]
