"""In-process billing repository for tests and local development."""
from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from .exceptions import EVENT_ALREADY_PROCESSED, SUBSCRIPTION_ALREADY_EXISTS, BillingError
from .models import (
    BillingEvent,
    BillingEventFilter,
    BillingEventOrder,
    Subscription,
    SubscriptionFilter,
    SubscriptionOrder,
)

RecordT = TypeVar("RecordT", Subscription, BillingEvent)

_UPDATABLE_SUBSCRIPTION_FIELDS = frozenset(Subscription.model_fields) - {
    "id",
    "integrator",
    "integrator_subscription_id",
    "created_at",
}


def _within(value: Optional[datetime], start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is None and end is None:
        return True
    if value is None:
        return False
    if start is not None and value < start:
        return False
    if end is not None and value > end:
        return False
    return True


def _contains(haystack: str, needle: str) -> bool:
    return not needle or needle.lower() in haystack.lower()


def matches_subscription(subscription: Subscription, criteria: SubscriptionFilter) -> bool:
    if criteria.user_ids and subscription.user_id not in criteria.user_ids:
        return False
    if criteria.emails and subscription.email not in criteria.emails:
        return False
    if criteria.integrator and subscription.integrator != criteria.integrator:
        return False
    if criteria.integrator_subscription_id and subscription.integrator_subscription_id != criteria.integrator_subscription_id:
        return False
    if criteria.integrator_customer_id and subscription.integrator_customer_id != criteria.integrator_customer_id:
        return False
    if criteria.statuses and subscription.status not in criteria.statuses:
        return False
    if criteria.currency and subscription.currency != criteria.currency:
        return False
    if criteria.billing_interval and subscription.billing_interval != criteria.billing_interval:
        return False
    if not _contains(subscription.plan_name, criteria.plan_name_contains):
        return False
    if not _within(subscription.created_at, criteria.created_at_from, criteria.created_at_to):
        return False
    if not _within(subscription.next_billing_date, criteria.next_billing_date_from, criteria.next_billing_date_to):
        return False
    if criteria.unassociated_only and subscription.user_id:
        return False
    return True


def matches_billing_event(event: BillingEvent, criteria: BillingEventFilter) -> bool:
    if criteria.user_ids and event.user_id not in criteria.user_ids:
        return False
    if criteria.integrator and event.integrator != criteria.integrator:
        return False
    if criteria.integrator_subscription_id and event.integrator_subscription_id != criteria.integrator_subscription_id:
        return False
    if criteria.integrator_subscription_ids and event.integrator_subscription_id not in criteria.integrator_subscription_ids:
        return False
    if criteria.subscription_id and event.subscription_id != criteria.subscription_id:
        return False
    if criteria.event_types and event.event_type not in criteria.event_types:
        return False
    if criteria.statuses and event.status not in criteria.statuses:
        return False
    if not _contains(event.plan_name, criteria.plan_name_contains):
        return False
    return _within(event.event_time, criteria.event_time_from, criteria.event_time_to)


def _sort_key(field: str) -> Callable[[RecordT], Tuple[datetime, str]]:
    def key(record: RecordT) -> Tuple[datetime, str]:
        return getattr(record, field), record.id

    return key


def _sorted(records: List[RecordT], order_value: str) -> List[RecordT]:
    field, _, direction = order_value.rpartition("_")
    return sorted(records, key=_sort_key(field), reverse=direction == "desc")


class InMemoryBillingRepository:
    """Dictionary backed repository enforcing the same uniqueness keys as PostgreSQL."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Subscription] = {}
        self._events: Dict[str, BillingEvent] = {}

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        with self._lock:
            for existing in self._subscriptions.values():
                if (
                    existing.integrator == subscription.integrator
                    and existing.integrator_subscription_id == subscription.integrator_subscription_id
                ):
                    raise BillingError(SUBSCRIPTION_ALREADY_EXISTS)
            self._subscriptions[subscription.id] = subscription
            return subscription

    def update_subscription_fields(self, subscription_id: str, changes: Dict[str, Any]) -> Optional[Subscription]:
        unknown = set(changes) - _UPDATABLE_SUBSCRIPTION_FIELDS
        if unknown:
            raise ValueError(f"Unsupported subscription fields: {sorted(unknown)}")
        with self._lock:
            current = self._subscriptions.get(subscription_id)
            if current is None:
                return None
            updated = current.model_copy(update=changes)
            self._subscriptions[subscription_id] = updated
            return updated

    def delete_subscription(self, subscription_id: str) -> bool:
        with self._lock:
            return self._subscriptions.pop(subscription_id, None) is not None

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def get_subscription_by_integrator_id(self, integrator: str, integrator_subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            for subscription in self._subscriptions.values():
                if subscription.integrator == integrator and subscription.integrator_subscription_id == integrator_subscription_id:
                    return subscription
            return None

    def list_subscriptions(
        self,
        criteria: SubscriptionFilter,
        *,
        order: SubscriptionOrder,
        limit: int,
        offset: int,
    ) -> List[Subscription]:
        with self._lock:
            matching = [item for item in self._subscriptions.values() if matches_subscription(item, criteria)]
        return _sorted(matching, order.value)[offset : offset + limit]

    def count_subscriptions(self, criteria: SubscriptionFilter) -> int:
        with self._lock:
            return sum(1 for item in self._subscriptions.values() if matches_subscription(item, criteria))

    def associate_subscriptions(self, user_id: str, email: str, *, updated_at: datetime) -> int:
        with self._lock:
            associated = 0
            for subscription_id, subscription in list(self._subscriptions.items()):
                if subscription.email == email and not subscription.user_id:
                    self._subscriptions[subscription_id] = subscription.model_copy(
                        update={"user_id": user_id, "updated_at": updated_at}
                    )
                    associated += 1
            return associated

    def associate_billing_events(self, user_id: str, *, updated_at: datetime) -> int:
        with self._lock:
            owned = {item.id for item in self._subscriptions.values() if item.user_id == user_id}
            associated = 0
            for event_id, event in list(self._events.items()):
                if not event.user_id and event.subscription_id in owned:
                    self._events[event_id] = event.model_copy(update={"user_id": user_id, "updated_at": updated_at})
                    associated += 1
            return associated

    def insert_billing_event(self, event: BillingEvent) -> BillingEvent:
        with self._lock:
            for existing in self._events.values():
                if existing.integrator == event.integrator and existing.integrator_event_id == event.integrator_event_id:
                    raise BillingError(EVENT_ALREADY_PROCESSED)
            self._events[event.id] = event
            return event

    def get_billing_event(self, event_id: str) -> Optional[BillingEvent]:
        with self._lock:
            return self._events.get(event_id)

    def list_billing_events(
        self,
        criteria: BillingEventFilter,
        *,
        order: BillingEventOrder,
        limit: int,
        offset: int,
    ) -> List[BillingEvent]:
        with self._lock:
            matching = [item for item in self._events.values() if matches_billing_event(item, criteria)]
        return _sorted(matching, order.value)[offset : offset + limit]

    def count_billing_events(self, criteria: BillingEventFilter) -> int:
        with self._lock:
            return sum(1 for item in self._events.values() if matches_billing_event(item, criteria))

    def get_first_successful_billing_event_with_plan_name(
        self, integrator: str, integrator_subscription_id: str
    ) -> Optional[BillingEvent]:
        with self._lock:
            candidates = [
                event
                for event in self._events.values()
                if event.integrator == integrator
                and event.integrator_subscription_id == integrator_subscription_id
                and event.status == "active"
                and event.plan_name
            ]
        if not candidates:
            return None
        return min(candidates, key=_sort_key("created_at"))


__all__ = ["InMemoryBillingRepository", "matches_billing_event", "matches_subscription"]
