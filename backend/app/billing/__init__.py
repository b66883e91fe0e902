"""Billing domain package storing subscriptions and billing events."""

from .exceptions import BillingError
from .memory import InMemoryBillingRepository
from .models import (
    BillingEvent,
    BillingEventFilter,
    BillingEventOrder,
    PageResult,
    Subscription,
    SubscriptionFilter,
    SubscriptionOrder,
    SubscriptionUpdate,
)
from .service import BillingRepository, BillingStore

__all__ = [
    "BillingError",
    "BillingEvent",
    "BillingEventFilter",
    "BillingEventOrder",
    "BillingRepository",
    "BillingStore",
    "InMemoryBillingRepository",
    "PageResult",
    "Subscription",
    "SubscriptionFilter",
    "SubscriptionOrder",
    "SubscriptionUpdate",
]
