"""Webhook reconciliation engine and per-user billing queries."""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from ..billing.exceptions import (
    EVENT_ALREADY_PROCESSED,
    SUBSCRIPTION_ALREADY_EXISTS,
    SUBSCRIPTION_NOT_FOUND,
    BillingError,
)
from ..billing.models import (
    BillingEvent,
    BillingEventFilter,
    PageResult,
    Subscription,
    SubscriptionFilter,
    SubscriptionOrder,
    SubscriptionUpdate,
)
from ..billing.service import BillingStore
from ..errors import ManifestError
from ..paymentprovider.models import EventType, WebhookPayload, WebhookRequest
from .exceptions import (
    NO_USER_IDENTIFYING_INFORMATION_IN_PAYLOAD,
    REQUIRES_USER_ID_IS_MISSING,
    UNABLE_TO_RESOLVE_USER_ID,
    USER_UNAUTHORISED_TO_CARRY_OUT_OPERATION,
    BillingManagerError,
)
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

logger = logging.getLogger(__name__)

NO_SUBSCRIPTION_STATUS = "none"
NO_SUBSCRIPTION_SUMMARY = "No active subscription found"


class WebhookVerifier(Protocol):
    """Resolves a provider by name, verifies and normalizes a webhook."""

    def verify_and_parse(self, name: str, request: WebhookRequest) -> WebhookPayload:
        ...


class UserDirectory(Protocol):
    """Looks up users of the host application. Returns ``None`` when absent."""

    def get_user_by_id(self, user_id: str) -> Optional[DirectoryUser]:
        ...

    def get_user_by_email(self, email: str) -> Optional[DirectoryUser]:
        ...


class AuditSink(Protocol):
    def log(self, entry: AuditEntry) -> None:
        ...


_dataclass_kwargs = {"slots": True} if sys.version_info >= (3, 10) else {}


@dataclass(**_dataclass_kwargs)
class _Reconciliation:
    payload: WebhookPayload
    user_id: str = ""
    subscription_id: str = ""
    billing_event_created: bool = False
    duplicate: bool = False
    record_failed: bool = False


@dataclass(**_dataclass_kwargs)
class BillingManagerService:
    """Turns verified provider webhooks into subscription state and billing history.

    Each webhook runs through five phases: resolve the owning user, find or
    create the subscription, apply the payload to it, record a billing event and
    emit an audit entry. Replaying a webhook leaves the stored state unchanged
    because billing events are unique per provider event id.
    """

    registry: WebhookVerifier
    store: BillingStore
    user_directory: Optional[UserDirectory] = None
    audit_sink: Optional[AuditSink] = None
    clock: Optional[Callable[[], datetime]] = None

    def _now(self) -> datetime:
        if self.clock is not None:
            return self.clock()
        return datetime.now(timezone.utc)

    # Webhook ingestion

    def process_billing_provider_webhook(self, provider_name: str, request: WebhookRequest) -> WebhookOutcome:
        """Verify, parse and reconcile a single provider webhook.

        Verification, user resolution and subscription writes raise. A failure
        to record the billing event is logged and reported in the audit entry
        but does not fail the webhook.
        """

        payload = self.registry.verify_and_parse(provider_name, request)
        state = _Reconciliation(payload=payload)
        try:
            state.user_id = self._resolve_user_id(provider_name, payload)
            if payload.is_subscription:
                subscription = self._find_or_create_subscription(provider_name, payload, state.user_id)
                subscription = self._apply_payload(subscription, payload)
                state.subscription_id = subscription.id
        except ManifestError as exc:
            logger.error("Failed to reconcile %s event %s: %s", provider_name, payload.event_id, exc.key)
            raise

        self._record_billing_event(provider_name, state)
        self._emit_audit(provider_name, state)

        logger.info(
            "Processed %s webhook event=%s type=%s subscription=%s",
            provider_name,
            payload.event_id,
            payload.event_type,
            state.subscription_id or "-",
        )
        return WebhookOutcome(
            provider=provider_name,
            event_id=payload.event_id,
            event_type=payload.event_type,
            user_id=state.user_id,
            subscription_id=state.subscription_id,
            billing_event_created=state.billing_event_created,
            duplicate=state.duplicate,
        )

    def _resolve_user_id(self, provider_name: str, payload: WebhookPayload) -> str:
        """Return the owning user id, or ``""`` when the customer has no account yet."""

        existing: Optional[Subscription] = None
        if payload.subscription_id:
            existing = self._find_subscription(provider_name, payload.subscription_id)
            if existing is not None and existing.user_id:
                return existing.user_id

        email = payload.customer_email.strip().lower()
        if not email:
            if existing is not None:
                raise BillingManagerError(UNABLE_TO_RESOLVE_USER_ID)
            raise BillingManagerError(NO_USER_IDENTIFYING_INFORMATION_IN_PAYLOAD)

        if self.user_directory is not None:
            user = self.user_directory.get_user_by_email(email)
            if user is not None and user.id:
                return user.id

        logger.debug("No account for %s customer yet, subscription stays orphaned", provider_name)
        return ""

    def _find_subscription(self, provider_name: str, integrator_subscription_id: str) -> Optional[Subscription]:
        try:
            return self.store.get_subscription_by_integrator_id(provider_name, integrator_subscription_id)
        except BillingError as exc:
            if exc.key != SUBSCRIPTION_NOT_FOUND:
                raise
        return None

    def _find_or_create_subscription(self, provider_name: str, payload: WebhookPayload, user_id: str) -> Subscription:
        existing = self._find_subscription(provider_name, payload.subscription_id)
        # Orphans stay orphaned until associate_subscriptions_with_user runs.
        if existing is not None:
            return existing

        candidate = Subscription(
            user_id=user_id,
            email=payload.customer_email,
            status=payload.status,
            integrator=provider_name,
            integrator_subscription_id=payload.subscription_id,
            integrator_customer_id=payload.customer_id,
            plan_name=payload.plan_name,
            amount=payload.amount,
            currency=payload.currency,
            next_billing_date=parse_time_or_none(payload.next_billing_date),
            available_until_date=parse_time_or_none(payload.available_until_date),
            provider_created_at=parse_time_or_none(payload.event_time),
            cancel_url=payload.cancel_url,
            update_url=payload.update_url,
        )
        try:
            created = self.store.create_subscription(candidate)
        except BillingError as exc:
            if exc.key != SUBSCRIPTION_ALREADY_EXISTS:
                raise
            # A concurrent delivery created it first.
            return self.store.get_subscription_by_integrator_id(provider_name, payload.subscription_id)

        logger.info(
            "Created %s subscription %s for user %s",
            provider_name,
            created.id,
            created.user_id or "<unassociated>",
        )
        return created

    def _apply_payload(self, subscription: Subscription, payload: WebhookPayload) -> Subscription:
        """Overwrite subscription fields the payload carries; empty values never clear."""

        changes = {"status": payload.status or subscription.status}

        next_billing = parse_time_or_none(payload.next_billing_date)
        if next_billing is not None:
            changes["next_billing_date"] = next_billing
            logger.debug("Subscription %s next billing date %s", subscription.id, next_billing.isoformat())

        available_until = parse_time_or_none(payload.available_until_date)
        if available_until is not None:
            changes["available_until_date"] = available_until
            logger.debug("Subscription %s available until %s", subscription.id, available_until.isoformat())

        for field_name in ("plan_name", "cancel_url", "update_url"):
            value = getattr(payload, field_name)
            if value:
                changes[field_name] = value
                logger.debug("Subscription %s %s updated", subscription.id, field_name)

        event_time = parse_time_or_none(payload.event_time)
        if event_time is not None:
            changes["provider_updated_at"] = event_time

        if payload.event_type == EventType.SUBSCRIPTION_CANCELLED.value and subscription.cancelled_at is None:
            changes["cancelled_at"] = self._now()
            logger.info("Subscription %s cancelled via %s", subscription.id, subscription.integrator)

        return self.store.update_subscription(subscription.id, SubscriptionUpdate(**changes))

    def _record_billing_event(self, provider_name: str, state: _Reconciliation) -> None:
        payload = state.payload
        event = BillingEvent(
            subscription_id=state.subscription_id,
            user_id=state.user_id,
            event_type=payload.event_type,
            event_time=parse_time_or_none(payload.event_time) or self._now(),
            integrator=provider_name,
            integrator_event_id=payload.event_id,
            integrator_subscription_id=payload.subscription_id,
            status=payload.status,
            amount=payload.amount,
            currency=payload.currency,
            plan_name=payload.plan_name,
            receipt_url=payload.receipt_url,
            raw_payload=payload.raw_payload,
        )
        try:
            self.store.create_billing_event(event)
        except BillingError as exc:
            if exc.key == EVENT_ALREADY_PROCESSED:
                logger.info("Ignoring replayed %s event %s", provider_name, payload.event_id)
                state.duplicate = True
                return
            logger.warning("Failed to record %s billing event %s: %s", provider_name, payload.event_id, exc.key)
            state.record_failed = True
            return
        except Exception:
            logger.warning("Failed to record %s billing event %s", provider_name, payload.event_id, exc_info=True)
            state.record_failed = True
            return
        state.billing_event_created = True

    def _emit_audit(self, provider_name: str, state: _Reconciliation) -> None:
        if self.audit_sink is None:
            return

        payload = state.payload
        if state.subscription_id:
            details = f"Processed {provider_name} webhook for subscription {payload.subscription_id}"
        else:
            details = f"Processed {provider_name} webhook for non-subscription event"

        entry = AuditEntry(
            target_id=payload.event_id,
            details=AuditEvent(
                event_type=payload.event_type,
                user_id=state.user_id,
                details=details,
                occurred_at=self._now(),
                provider=provider_name,
                billing_event_successfully_created=state.billing_event_created or state.duplicate,
                billing_event_duplicate=state.duplicate,
                billing_subscription_id=state.subscription_id,
                provider_payload=payload if state.record_failed else None,
            ),
        )
        try:
            self.audit_sink.log(entry)
        except Exception:
            logger.exception("Failed to write audit entry for %s event %s", provider_name, payload.event_id)

    # Queries

    def _authorize(self, user_id: str, requesting_user_id: str) -> None:
        """Allow the subject, internal callers with no requester, and admins."""

        if not user_id:
            raise BillingManagerError(REQUIRES_USER_ID_IS_MISSING)
        if not requesting_user_id or requesting_user_id == user_id:
            return
        if self.user_directory is None:
            raise BillingManagerError(USER_UNAUTHORISED_TO_CARRY_OUT_OPERATION)

        requester = self.user_directory.get_user_by_id(requesting_user_id)
        if requester is None:
            raise BillingManagerError(REQUIRES_USER_ID_IS_MISSING)
        if not requester.is_admin:
            raise BillingManagerError(USER_UNAUTHORISED_TO_CARRY_OUT_OPERATION)

    def _latest_subscription(self, user_id: str) -> Optional[Subscription]:
        result = self.store.get_subscriptions(
            SubscriptionFilter(user_ids=(user_id,)),
            page=1,
            per_page=1,
            order=SubscriptionOrder.CREATED_AT_DESC.value,
        )
        return result.items[0] if result.items else None

    def _claim_orphaned_subscriptions(self, user_id: str) -> bool:
        """Attach subscriptions paid for with the user's email before they signed up."""

        if self.user_directory is None:
            return False
        user = self.user_directory.get_user_by_id(user_id)
        if user is None or not user.email:
            return False
        if not self.store.get_subscriptions_by_email(user.email):
            return False
        return self.store.associate_subscriptions_with_user(user_id, user.email) > 0

    def get_user_subscription_status(self, user_id: str, requesting_user_id: str) -> SubscriptionStatusView:
        self._authorize(user_id, requesting_user_id)

        subscription = self._latest_subscription(user_id)
        if subscription is None and self._claim_orphaned_subscriptions(user_id):
            subscription = self._latest_subscription(user_id)
        if subscription is None:
            return SubscriptionStatusView(has_subscription=False, status=NO_SUBSCRIPTION_STATUS)

        return SubscriptionStatusView(
            has_subscription=True,
            status=subscription.status,
            plan_name=subscription.plan_name,
            provider=subscription.integrator,
            amount=subscription.amount,
            currency=subscription.currency,
            next_billing_date=subscription.next_billing_date,
            available_until_date=subscription.available_until_date,
            cancel_url=subscription.cancel_url,
            update_url=subscription.update_url,
            is_active=subscription.is_active,
            is_in_good_standing=subscription.is_in_good_standing,
        )

    def get_user_billing_events(
        self,
        user_id: str,
        requesting_user_id: str,
        *,
        page: Optional[int] = None,
        per_page: Optional[int] = None,
        order: Optional[str] = None,
    ) -> PageResult[EventSummary]:
        self._authorize(user_id, requesting_user_id)

        events = self.store.get_billing_events(
            BillingEventFilter(user_ids=(user_id,)),
            page=page,
            per_page=per_page,
            order=order,
        )
        summaries = [
            EventSummary(
                event_id=event.id,
                event_type=event.event_type,
                event_time=event.event_time,
                amount=event.amount,
                currency=event.currency,
                plan_name=event.plan_name,
                status=event.status,
                receipt_url=event.receipt_url,
                description=format_event_description(event.event_type, event.plan_name, event.status),
            )
            for event in events.items
        ]
        return PageResult(
            items=summaries,
            total=events.total,
            total_pages=events.total_pages,
            page=events.page,
            per_page=events.per_page,
        )

    def get_user_billing_detail(self, user_id: str, requesting_user_id: str) -> BillingDetail:
        self._authorize(user_id, requesting_user_id)

        subscription = self._latest_subscription(user_id)
        if subscription is None:
            return BillingDetail(has_subscription=False, summary=NO_SUBSCRIPTION_SUMMARY)

        return BillingDetail(
            has_subscription=True,
            provider=subscription.integrator,
            plan=subscription.plan_name,
            status=subscription.status,
            summary=generate_subscription_summary(subscription),
            cancel_url=subscription.cancel_url,
            update_url=subscription.update_url,
        )


__all__ = [
    "AuditSink",
    "BillingManagerService",
    "NO_SUBSCRIPTION_STATUS",
    "NO_SUBSCRIPTION_SUMMARY",
    "UserDirectory",
    "WebhookVerifier",
]
