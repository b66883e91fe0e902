"""Date parsing and human readable text for billing records."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from ..billing.models import Subscription
from ..paymentprovider.models import EventType, SubscriptionStatus

SUMMARY_DATE_FORMAT = "%d %B, %Y"
_FALLBACK_TIME_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d")


def parse_time_or_none(value: Optional[str]) -> Optional[datetime]:
    """Parse RFC3339, ``YYYY-MM-DD HH:MM:SS`` or ``YYYY-MM-DD`` into an aware datetime.

    Values without an offset are taken as UTC. Anything else yields ``None``.
    """

    if not value:
        return None
    text = value.strip()

    if "T" in text:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    for time_format in _FALLBACK_TIME_FORMATS:
        try:
            return datetime.strptime(text, time_format).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def format_event_description(event_type: str, plan_name: str, status: str) -> str:
    if event_type == EventType.PAYMENT_SUCCEEDED.value:
        if status == SubscriptionStatus.TRIALING.value:
            return f"Trial started for {plan_name}"
        return f"Payment successful for {plan_name}"
    if event_type == EventType.PAYMENT_FAILED.value:
        return f"Payment failed for {plan_name}"
    if event_type == EventType.PAYMENT_REFUNDED.value:
        return f"Payment refunded for {plan_name}"
    if event_type == EventType.SUBSCRIPTION_CREATED.value:
        return f"Subscription created: {plan_name}"
    if event_type == EventType.SUBSCRIPTION_CANCELLED.value:
        return f"Subscription cancelled: {plan_name}"
    if event_type == EventType.SUBSCRIPTION_UPDATED.value:
        return f"Subscription updated: {plan_name}"
    return f"{event_type} - {plan_name}"


def _format_amount(amount: int) -> str:
    return f"{amount / 100:.2f}"


def generate_subscription_summary(subscription: Subscription) -> str:
    """Describe a subscription's state in a sentence suitable for end users."""

    status = subscription.status
    if status == SubscriptionStatus.ACTIVE.value:
        if subscription.next_billing_date is not None:
            return (
                f"Your {subscription.plan_name} plan will automatically renew on "
                f"{subscription.next_billing_date.strftime(SUMMARY_DATE_FORMAT)} for "
                f"{_format_amount(subscription.amount)} {subscription.currency}"
            )
        return f"Your {subscription.plan_name} plan is active"

    if status == SubscriptionStatus.TRIALING.value:
        if subscription.next_billing_date is not None:
            return (
                f"Your trial will end on {subscription.next_billing_date.strftime(SUMMARY_DATE_FORMAT)}. "
                f"You'll then be charged {_format_amount(subscription.amount)} {subscription.currency} "
                f"for {subscription.plan_name}"
            )
        return f"You're on a trial of {subscription.plan_name}"

    if status == SubscriptionStatus.PAST_DUE.value:
        return "Your subscription payment is past due. Please update your payment method."

    if status == SubscriptionStatus.CANCELLED.value:
        if subscription.available_until_date is not None:
            return (
                "Your subscription was cancelled and will expire on "
                f"{subscription.available_until_date.strftime(SUMMARY_DATE_FORMAT)}"
            )
        return "Your subscription has been cancelled"

    return f"Subscription status: {status}"


__all__ = [
    "SUMMARY_DATE_FORMAT",
    "format_event_description",
    "generate_subscription_summary",
    "parse_time_or_none",
]
