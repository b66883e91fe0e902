"""Billing manager reconciling provider webhooks into subscription state."""

from .exceptions import BillingManagerError
from .formatting import format_event_description, generate_subscription_summary, parse_time_or_none
from .models import (
    AuditEntry,
    AuditEvent,
    BillingDetail,
    DirectoryUser,
    EventSummary,
    SubscriptionStatusView,
    WebhookOutcome,
)
from .service import AuditSink, BillingManagerService, UserDirectory, WebhookVerifier

__all__ = [
    "AuditEntry",
    "AuditEvent",
    "AuditSink",
    "BillingDetail",
    "BillingManagerError",
    "BillingManagerService",
    "DirectoryUser",
    "EventSummary",
    "SubscriptionStatusView",
    "UserDirectory",
    "WebhookOutcome",
    "WebhookVerifier",
    "format_event_description",
    "generate_subscription_summary",
    "parse_time_or_none",
]
