"""Normalized models shared by every payment provider adapter."""
from __future__ import annotations

from enum import Enum
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventType(str, Enum):
    """Normalized webhook event types."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_CREATED_DONATION = "subscription.created.donation"
    SUBSCRIPTION_UPDATED_DONATION = "subscription.updated.donation"
    SUBSCRIPTION_CANCELLED_DONATION = "subscription.cancelled.donation"
    SUBSCRIPTION_PAUSED_DONATION = "subscription.paused.donation"
    SUBSCRIPTION_RESUMED_DONATION = "subscription.resumed.donation"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_ACTION_REQUIRED = "payment.action_required"
    CUSTOMER_UPDATED = "customer.updated"
    TRIAL_WILL_END = "trial.will_end"
    TRIAL_ENDED = "trial.ended"


class PaymentType(str, Enum):
    """What kind of purchase a webhook describes."""

    SUBSCRIPTION = "subscription"
    DONATION = "donation"
    SHOP_ORDER = "shop_order"
    COMMISSION = "commission"


class SubscriptionStatus(str, Enum):
    """Normalized subscription statuses."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    EXPIRED = "expired"
    INCOMPLETE = "incomplete"
    UNPAID = "unpaid"


class WebhookRequest(BaseModel):
    """Raw inbound webhook as received over HTTP."""

    body: bytes = b""
    headers: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @field_validator("headers", mode="before")
    @classmethod
    def _lower_header_names(cls, value: Optional[Mapping[str, str]]) -> Dict[str, str]:
        if not value:
            return {}
        return {str(name).lower(): str(header) for name, header in value.items()}

    def header(self, name: str) -> str:
        """Return a header value by case-insensitive name, or ``""``."""

        return self.headers.get(name.lower(), "")

    @property
    def content_type(self) -> str:
        return self.header("content-type")

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class WebhookPayload(BaseModel):
    """Vendor agnostic representation of a verified webhook event."""

    event_type: str
    event_id: str = ""
    event_time: str = ""
    payment_type: str = PaymentType.SUBSCRIPTION.value
    is_one_off: bool = False
    subscription_id: str = ""
    transaction_id: str = ""
    customer_id: str = ""
    customer_email: str = ""
    customer_name: str = ""
    status: str = ""
    plan_name: str = ""
    amount: int = 0
    currency: str = ""
    is_first_subscription_payment: bool = False
    next_billing_date: str = ""
    available_until_date: str = ""
    cancel_url: str = ""
    update_url: str = ""
    receipt_url: str = ""
    raw_payload: str = ""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def is_subscription(self) -> bool:
        return self.payment_type == PaymentType.SUBSCRIPTION


class SubscriptionInfo(BaseModel):
    """Subscription details fetched live from a provider API."""

    subscription_id: str
    customer_id: str = ""
    status: str = ""
    plan_name: str = ""
    plan_id: str = ""
    amount: int = 0
    currency: str = ""
    billing_interval: str = ""
    next_billing_date: str = ""
    current_period_start: str = ""
    current_period_end: str = ""
    cancelled_at: str = ""
    cancel_url: str = ""
    update_url: str = ""
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


__all__ = [
    "EventType",
    "PaymentType",
    "SubscriptionInfo",
    "SubscriptionStatus",
    "WebhookPayload",
    "WebhookRequest",
]
