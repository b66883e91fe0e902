"""Read models and audit records produced by the billing manager."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..paymentprovider.models import WebhookPayload

AUDIT_ACTOR_SYSTEM = "SYSTEM"
AUDIT_ACTION_BILLING_WEBHOOK_PROCESSED = "BILLING_WEBHOOK_PROCESSED"
AUDIT_TARGET_TYPE_WEBHOOK = "WEBHOOK"
AUDIT_DOMAIN = "billingmanager"


class DirectoryUser(BaseModel):
    """User as seen by the billing manager."""

    id: str
    email: str = ""
    is_admin: bool = False

    model_config = ConfigDict(frozen=True)


class SubscriptionStatusView(BaseModel):
    """Flattened view of a user's most recent subscription."""

    has_subscription: bool
    status: str
    plan_name: str = ""
    provider: str = ""
    amount: int = 0
    currency: str = ""
    next_billing_date: Optional[datetime] = None
    available_until_date: Optional[datetime] = None
    cancel_url: str = ""
    update_url: str = ""
    is_active: bool = False
    is_in_good_standing: bool = False

    model_config = ConfigDict(frozen=True)


class BillingDetail(BaseModel):
    """Plan, status and a human readable summary of a user's subscription."""

    has_subscription: bool
    provider: str = ""
    plan: str = ""
    status: str = ""
    summary: str
    cancel_url: str = ""
    update_url: str = ""

    model_config = ConfigDict(frozen=True)


class EventSummary(BaseModel):
    """Compact projection of a billing event for billing history screens."""

    event_id: str
    event_type: str
    event_time: datetime
    amount: int = 0
    currency: str = ""
    plan_name: str = ""
    status: str = ""
    receipt_url: str = ""
    description: str

    model_config = ConfigDict(frozen=True)


class AuditEvent(BaseModel):
    """Details recorded for every processed webhook.

    A replayed event counts as successfully created and is flagged with
    ``billing_event_duplicate``. ``provider_payload`` is only present when the
    billing event could not be written.
    """

    event_type: str
    user_id: str = ""
    details: str
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    provider: str
    billing_event_successfully_created: bool
    billing_event_duplicate: bool = False
    billing_subscription_id: str = ""
    provider_payload: Optional[WebhookPayload] = None

    model_config = ConfigDict(frozen=True)


class AuditEntry(BaseModel):
    """Envelope handed to the audit sink."""

    actor_id: str = AUDIT_ACTOR_SYSTEM
    action: str = AUDIT_ACTION_BILLING_WEBHOOK_PROCESSED
    target_id: str
    target_type: str = AUDIT_TARGET_TYPE_WEBHOOK
    domain: str = AUDIT_DOMAIN
    details: AuditEvent

    model_config = ConfigDict(frozen=True)


class WebhookOutcome(BaseModel):
    """What processing a single webhook resolved and wrote."""

    provider: str
    event_id: str
    event_type: str
    user_id: str = ""
    subscription_id: str = ""
    billing_event_created: bool = False
    duplicate: bool = False

    model_config = ConfigDict(frozen=True)


__all__ = [
    "AUDIT_ACTION_BILLING_WEBHOOK_PROCESSED",
    "AUDIT_ACTOR_SYSTEM",
    "AUDIT_DOMAIN",
    "AUDIT_TARGET_TYPE_WEBHOOK",
    "AuditEntry",
    "AuditEvent",
    "BillingDetail",
    "DirectoryUser",
    "EventSummary",
    "SubscriptionStatusView",
    "WebhookOutcome",
]
