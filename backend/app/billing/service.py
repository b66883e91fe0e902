"""Billing store coordinating validation, paging and persistence of billing records."""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol
from uuid import uuid4

from .exceptions import (
    EVENT_NOT_FOUND,
    INVALID_EMAIL,
    INVALID_INTEGRATOR,
    INVALID_ORDER,
    INVALID_SUBSCRIPTION_ID,
    INVALID_USER_ID,
    MISSING_REQUIRED_FIELD,
    SUBSCRIPTION_NOT_FOUND,
    BillingError,
)
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
from .pagination import build_page, check_page_in_range, normalize_paging, offset_for

logger = logging.getLogger(__name__)


class BillingRepository(Protocol):
    """Persistence operations required by the billing store."""

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        ...

    def update_subscription_fields(self, subscription_id: str, changes: Dict[str, Any]) -> Optional[Subscription]:
        ...

    def delete_subscription(self, subscription_id: str) -> bool:
        ...

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def get_subscription_by_integrator_id(self, integrator: str, integrator_subscription_id: str) -> Optional[Subscription]:
        ...

    def list_subscriptions(
        self,
        criteria: SubscriptionFilter,
        *,
        order: SubscriptionOrder,
        limit: int,
        offset: int,
    ) -> List[Subscription]:
        ...

    def count_subscriptions(self, criteria: SubscriptionFilter) -> int:
        ...

    def associate_subscriptions(self, user_id: str, email: str, *, updated_at: datetime) -> int:
        ...

    def associate_billing_events(self, user_id: str, *, updated_at: datetime) -> int:
        ...

    def insert_billing_event(self, event: BillingEvent) -> BillingEvent:
        ...

    def get_billing_event(self, event_id: str) -> Optional[BillingEvent]:
        ...

    def list_billing_events(
        self,
        criteria: BillingEventFilter,
        *,
        order: BillingEventOrder,
        limit: int,
        offset: int,
    ) -> List[BillingEvent]:
        ...

    def count_billing_events(self, criteria: BillingEventFilter) -> int:
        ...

    def get_first_successful_billing_event_with_plan_name(
        self, integrator: str, integrator_subscription_id: str
    ) -> Optional[BillingEvent]:
        ...


# ``slots`` support for ``dataclass`` arrived in Python 3.10; older interpreters
# fall back to a regular dataclass.
_dataclass_kwargs = {"slots": True} if sys.version_info >= (3, 10) else {}


def _parse_subscription_order(order: Optional[str]) -> SubscriptionOrder:
    try:
        return SubscriptionOrder(order or SubscriptionOrder.CREATED_AT_DESC.value)
    except ValueError as exc:
        raise BillingError(INVALID_ORDER) from exc


def _parse_billing_event_order(order: Optional[str]) -> BillingEventOrder:
    try:
        return BillingEventOrder(order or BillingEventOrder.CREATED_AT_DESC.value)
    except ValueError as exc:
        raise BillingError(INVALID_ORDER) from exc


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass(**_dataclass_kwargs)
class BillingStore:
    """Validates and persists subscriptions and billing events.

    Internal ids and timestamps are assigned here so repositories only store
    what they are given. Emails are lower-cased on every write.
    """

    repository: BillingRepository
    clock: Optional[Callable[[], datetime]] = None

    def _now(self) -> datetime:
        if self.clock is not None:
            return self.clock()
        return datetime.now(timezone.utc)

    # Subscriptions

    def create_subscription(self, subscription: Subscription) -> Subscription:
        if not subscription.integrator:
            raise BillingError(INVALID_INTEGRATOR)
        if not subscription.integrator_subscription_id:
            raise BillingError(INVALID_SUBSCRIPTION_ID)
        if not subscription.email and not subscription.user_id:
            raise BillingError(MISSING_REQUIRED_FIELD)

        now = self._now()
        candidate = subscription.model_copy(
            update={
                "id": str(uuid4()),
                "email": _normalize_email(subscription.email),
                "created_at": now,
                "updated_at": now,
            }
        )
        created = self.repository.insert_subscription(candidate)
        logger.debug(
            "Created subscription",
            extra={"subscription_id": created.id, "integrator": created.integrator},
        )
        return created

    def update_subscription(self, subscription_id: str, changes: SubscriptionUpdate) -> Subscription:
        """Apply the non-empty fields of ``changes`` and bump ``updated_at``.

        Only the named columns are written, so a concurrent association or
        admin edit of another field survives.
        """

        update = changes.changes()
        if "currency" in update:
            update["currency"] = update["currency"].upper()
        return self._write_fields(subscription_id, update)

    def cancel_subscription(
        self,
        subscription_id: str,
        *,
        status: str = "cancelled",
        cancelled_at: Optional[datetime] = None,
    ) -> Subscription:
        """Mark a subscription cancelled outside the webhook flow.

        An existing ``cancelled_at`` is kept unless an explicit one is given.
        """

        if not status:
            raise BillingError(MISSING_REQUIRED_FIELD)
        current = self.get_subscription_by_id(subscription_id)
        update: Dict[str, Any] = {"status": status}
        if cancelled_at is not None:
            update["cancelled_at"] = cancelled_at
        elif current.cancelled_at is None:
            update["cancelled_at"] = self._now()
        cancelled = self._write_fields(subscription_id, update)
        logger.info("Cancelled subscription", extra={"subscription_id": subscription_id, "status": status})
        return cancelled

    def _write_fields(self, subscription_id: str, update: Dict[str, Any]) -> Subscription:
        update["updated_at"] = self._now()
        saved = self.repository.update_subscription_fields(subscription_id, update)
        if saved is None:
            raise BillingError(SUBSCRIPTION_NOT_FOUND)
        return saved

    def delete_subscription(self, subscription_id: str) -> None:
        if not self.repository.delete_subscription(subscription_id):
            raise BillingError(SUBSCRIPTION_NOT_FOUND)
        logger.info("Deleted subscription", extra={"subscription_id": subscription_id})

    def get_subscription_by_id(self, subscription_id: str) -> Subscription:
        subscription = self.repository.get_subscription(subscription_id)
        if subscription is None:
            raise BillingError(SUBSCRIPTION_NOT_FOUND)
        return subscription

    def get_subscription_by_integrator_id(self, integrator: str, integrator_subscription_id: str) -> Subscription:
        subscription = self.repository.get_subscription_by_integrator_id(integrator, integrator_subscription_id)
        if subscription is None:
            raise BillingError(SUBSCRIPTION_NOT_FOUND)
        return subscription

    def get_subscriptions(
        self,
        criteria: Optional[SubscriptionFilter] = None,
        *,
        page: Optional[int] = None,
        per_page: Optional[int] = None,
        order: Optional[str] = None,
    ) -> PageResult[Subscription]:
        criteria = criteria or SubscriptionFilter()
        resolved_order = _parse_subscription_order(order)
        page, per_page = normalize_paging(page, per_page)

        total = self.repository.count_subscriptions(criteria)
        check_page_in_range(total=total, page=page, per_page=per_page)
        items = self.repository.list_subscriptions(
            criteria,
            order=resolved_order,
            limit=per_page,
            offset=offset_for(page, per_page),
        )
        return build_page(items, total=total, page=page, per_page=per_page)

    def get_total_subscriptions(self, criteria: Optional[SubscriptionFilter] = None) -> int:
        return self.repository.count_subscriptions(criteria or SubscriptionFilter())

    def get_subscriptions_by_email(self, email: str) -> List[Subscription]:
        normalized = _normalize_email(email)
        if not normalized:
            raise BillingError(INVALID_EMAIL)
        criteria = SubscriptionFilter(emails=(normalized,))
        total = self.repository.count_subscriptions(criteria)
        if total == 0:
            return []
        return self.repository.list_subscriptions(
            criteria,
            order=SubscriptionOrder.CREATED_AT_DESC,
            limit=total,
            offset=0,
        )

    def associate_subscriptions_with_user(self, user_id: str, email: str) -> int:
        """Attach every orphaned subscription for ``email`` to ``user_id``."""

        if not user_id:
            raise BillingError(INVALID_USER_ID)
        normalized = _normalize_email(email)
        if not normalized:
            raise BillingError(INVALID_EMAIL)

        now = self._now()
        associated = self.repository.associate_subscriptions(user_id, normalized, updated_at=now)
        # Events recorded while their subscription was orphaned follow it to the user.
        events = self.repository.associate_billing_events(user_id, updated_at=now)
        logger.info(
            "Associated orphaned subscriptions with user",
            extra={"user_id": user_id, "associated_count": associated, "associated_events": events},
        )
        return associated

    def get_unassociated_subscriptions(
        self,
        *,
        page: Optional[int] = None,
        per_page: Optional[int] = None,
    ) -> PageResult[Subscription]:
        return self.get_subscriptions(
            SubscriptionFilter(unassociated_only=True),
            page=page,
            per_page=per_page,
            order=SubscriptionOrder.CREATED_AT_ASC.value,
        )

    def update_subscription_user_id(self, subscription_id: str, user_id: str) -> Subscription:
        if not user_id:
            raise BillingError(INVALID_USER_ID)
        return self._write_fields(subscription_id, {"user_id": user_id})

    # Billing events

    def create_billing_event(self, event: BillingEvent) -> BillingEvent:
        if not event.integrator:
            raise BillingError(INVALID_INTEGRATOR)
        if not event.integrator_event_id or not event.event_type:
            raise BillingError(MISSING_REQUIRED_FIELD)

        now = self._now()
        candidate = event.model_copy(update={"id": str(uuid4()), "created_at": now, "updated_at": now})
        return self.repository.insert_billing_event(candidate)

    def get_billing_event_by_id(self, event_id: str) -> BillingEvent:
        event = self.repository.get_billing_event(event_id)
        if event is None:
            raise BillingError(EVENT_NOT_FOUND)
        return event

    def get_billing_events(
        self,
        criteria: Optional[BillingEventFilter] = None,
        *,
        page: Optional[int] = None,
        per_page: Optional[int] = None,
        order: Optional[str] = None,
    ) -> PageResult[BillingEvent]:
        criteria = criteria or BillingEventFilter()
        resolved_order = _parse_billing_event_order(order)
        page, per_page = normalize_paging(page, per_page)

        total = self.repository.count_billing_events(criteria)
        check_page_in_range(total=total, page=page, per_page=per_page)
        items = self.repository.list_billing_events(
            criteria,
            order=resolved_order,
            limit=per_page,
            offset=offset_for(page, per_page),
        )
        return build_page(items, total=total, page=page, per_page=per_page)

    def get_total_billing_events(self, criteria: Optional[BillingEventFilter] = None) -> int:
        return self.repository.count_billing_events(criteria or BillingEventFilter())

    def get_billing_events_by_email(self, email: str) -> List[BillingEvent]:
        """Every billing event for the provider subscriptions paid for with ``email``, oldest first."""

        subscriptions = self.get_subscriptions_by_email(email)
        if not subscriptions:
            return []
        criteria = BillingEventFilter(
            integrator_subscription_ids=tuple(item.integrator_subscription_id for item in subscriptions)
        )
        total = self.repository.count_billing_events(criteria)
        if total == 0:
            return []
        return self.repository.list_billing_events(
            criteria,
            order=BillingEventOrder.EVENT_TIME_ASC,
            limit=total,
            offset=0,
        )

    def get_first_successful_billing_event_with_plan_name(
        self, integrator: str, integrator_subscription_id: str
    ) -> BillingEvent:
        event = self.repository.get_first_successful_billing_event_with_plan_name(integrator, integrator_subscription_id)
        if event is None:
            raise BillingError(EVENT_NOT_FOUND)
        return event


__all__ = ["BillingRepository", "BillingStore"]
