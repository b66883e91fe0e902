"""Stripe webhook adapter."""
from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .base import PaymentProvider, format_unix_timestamp, load_json_object, secure_compare
from .exceptions import (
    INVALID_WEBHOOK_SIGNATURE,
    MISSING_PAYLOAD_CUSTOMER_EMAIL,
    MISSING_REQUIRED_FIELD,
    MISSING_SIGNATURE,
    WEBHOOK_TIMESTAMP_TOO_OLD,
    PaymentProviderError,
)
from .models import EventType, PaymentType, SubscriptionInfo, SubscriptionStatus, WebhookPayload, WebhookRequest

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"
WEBHOOK_TOLERANCE_SECONDS = 300

STRIPE_EVENT_TYPES: Dict[str, EventType] = {
    "customer.subscription.created": EventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventType.SUBSCRIPTION_CANCELLED,
    "customer.subscription.paused": EventType.SUBSCRIPTION_PAUSED,
    "customer.subscription.resumed": EventType.SUBSCRIPTION_RESUMED,
    "customer.subscription.trial_will_end": EventType.TRIAL_WILL_END,
    "invoice.payment_succeeded": EventType.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": EventType.PAYMENT_FAILED,
    "invoice.payment_action_required": EventType.PAYMENT_ACTION_REQUIRED,
    "charge.refunded": EventType.PAYMENT_REFUNDED,
}

STRIPE_STATUSES: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "paused": SubscriptionStatus.PAUSED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "unpaid": SubscriptionStatus.UNPAID,
}

# Invoices and charges carry payment states rather than subscription states.
_PAYMENT_EVENT_STATUSES: Dict[str, SubscriptionStatus] = {
    EventType.PAYMENT_SUCCEEDED.value: SubscriptionStatus.ACTIVE,
    EventType.PAYMENT_FAILED.value: SubscriptionStatus.PAST_DUE,
    EventType.PAYMENT_ACTION_REQUIRED.value: SubscriptionStatus.INCOMPLETE,
}


def stripe_event_to_standard(event_type: str) -> str:
    """Map a Stripe event type; unknown types pass through unchanged."""

    mapped = STRIPE_EVENT_TYPES.get(event_type)
    return mapped.value if mapped else event_type


def stripe_status_to_standard(status: str) -> str:
    normalized = (status or "").strip().lower()
    mapped = STRIPE_STATUSES.get(normalized)
    return mapped.value if mapped else normalized


def parse_signature_header(header: str) -> Tuple[int, List[str]]:
    """Split a ``t=<unix>,v1=<hex>`` header into its timestamp and signatures."""

    timestamp: Optional[str] = None
    signatures: List[str] = []
    for chunk in header.split(","):
        key, sep, value = chunk.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value.strip()
        elif key == "v1":
            signatures.append(value.strip())

    if not timestamp or not signatures:
        raise PaymentProviderError(INVALID_WEBHOOK_SIGNATURE)
    try:
        return int(timestamp), signatures
    except ValueError as exc:
        raise PaymentProviderError(INVALID_WEBHOOK_SIGNATURE) from exc


def compute_signature(secret: str, timestamp: int, body: bytes) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def _first_item(container: Any) -> Dict[str, Any]:
    if isinstance(container, Mapping):
        data = container.get("data")
        if isinstance(data, list) and data and isinstance(data[0], dict):
            return data[0]
    return {}


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _identifier(value: Any) -> str:
    """Return the id of an expandable Stripe field, expanded or not."""

    if isinstance(value, dict):
        return str(value.get("id") or "")
    return str(value or "")


def _to_int(value: Any, default: int = 0) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class StripeProvider(PaymentProvider):
    """Verifies ``Stripe-Signature`` headers and normalizes Stripe events."""

    name = "stripe"
    default_api_base_url = "https://api.stripe.com"

    def verify(self, request: WebhookRequest) -> None:
        header = request.header(SIGNATURE_HEADER)
        if not header:
            logger.warning("Stripe webhook missing signature header")
            raise PaymentProviderError(MISSING_SIGNATURE)

        timestamp, signatures = parse_signature_header(header)

        age = int(self.clock().timestamp()) - timestamp
        if age > WEBHOOK_TOLERANCE_SECONDS:
            logger.warning("Stripe webhook timestamp outside tolerance", extra={"webhook_age_seconds": age})
            raise PaymentProviderError(WEBHOOK_TIMESTAMP_TOO_OLD)

        expected = compute_signature(self.config.webhook_secret, timestamp, request.body)
        if not any(secure_compare(expected, candidate) for candidate in signatures):
            logger.warning("Stripe webhook signature mismatch")
            raise PaymentProviderError(INVALID_WEBHOOK_SIGNATURE)

    def parse(self, request: WebhookRequest) -> WebhookPayload:
        event = load_json_object(request.body)
        raw_type = str(event.get("type") or "")
        data = event.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not raw_type or not isinstance(obj, dict):
            raise PaymentProviderError(MISSING_REQUIRED_FIELD)

        event_type = stripe_event_to_standard(raw_type)
        kind = obj.get("object") or ""
        if kind == "subscription" or raw_type.startswith("customer.subscription."):
            fields = self._subscription_fields(obj)
        elif kind == "invoice":
            fields = self._invoice_fields(obj, event_type)
        else:
            fields = self._one_off_fields(obj, event_type)

        customer_id = fields.pop("customer_id")
        email, customer_name = self._resolve_customer(customer_id, fields.pop("customer_email"))

        return WebhookPayload(
            event_type=event_type,
            event_id=str(event.get("id") or ""),
            event_time=format_unix_timestamp(event.get("created")),
            customer_id=customer_id,
            customer_email=email,
            customer_name=customer_name,
            raw_payload=request.text,
            **fields,
        )

    def lookup_subscription(self, subscription_id: str) -> SubscriptionInfo:
        document = self._get_json(f"/v1/subscriptions/{subscription_id}")
        item = _first_item(document.get("items"))
        plan = _as_dict(item.get("plan"))
        price = _as_dict(item.get("price"))
        quantity = _to_int(item.get("quantity"), default=1) or 1
        unit_amount = _to_int(price.get("unit_amount", plan.get("amount")))
        product_id = _identifier(plan.get("product") or price.get("product"))
        interval = plan.get("interval") or _as_dict(price.get("recurring")).get("interval") or ""
        period_end = document.get("current_period_end") or item.get("current_period_end")

        metadata: Dict[str, str] = {}
        if plan.get("usage_type"):
            metadata["plan_usage_type"] = str(plan["usage_type"])
        if plan.get("interval_count"):
            metadata["plan_interval_count"] = str(plan["interval_count"])

        return SubscriptionInfo(
            subscription_id=str(document.get("id") or subscription_id),
            customer_id=_identifier(document.get("customer")),
            status=stripe_status_to_standard(str(document.get("status") or "")),
            plan_name=self._product_name(product_id),
            plan_id=str(plan.get("id") or price.get("id") or ""),
            amount=unit_amount * quantity,
            currency=str(price.get("currency") or plan.get("currency") or ""),
            billing_interval=str(interval),
            next_billing_date=format_unix_timestamp(period_end),
            current_period_start=format_unix_timestamp(
                document.get("current_period_start") or item.get("current_period_start")
            ),
            current_period_end=format_unix_timestamp(period_end),
            cancelled_at=format_unix_timestamp(document.get("canceled_at")),
            metadata=metadata,
        )

    def _subscription_fields(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        item = _first_item(obj.get("items"))
        plan = _as_dict(item.get("plan"))
        price = _as_dict(item.get("price"))
        quantity = _to_int(item.get("quantity"), default=1)
        product_id = _identifier(plan.get("product") or price.get("product"))
        period_end = format_unix_timestamp(obj.get("current_period_end") or item.get("current_period_end"))

        return {
            "payment_type": PaymentType.SUBSCRIPTION.value,
            "subscription_id": str(obj.get("id") or ""),
            "customer_id": _identifier(obj.get("customer")),
            "customer_email": "",
            "status": stripe_status_to_standard(str(obj.get("status") or "")),
            "plan_name": self._product_name(product_id),
            "amount": _to_int(price.get("unit_amount", plan.get("amount"))) * quantity,
            "currency": str(price.get("currency") or plan.get("currency") or obj.get("currency") or ""),
            "next_billing_date": period_end,
            "available_until_date": period_end,
        }

    def _invoice_fields(self, obj: Dict[str, Any], event_type: str) -> Dict[str, Any]:
        line = _first_item(obj.get("lines"))
        price = _as_dict(line.get("price"))
        plan = _as_dict(line.get("plan"))
        product_id = _identifier(price.get("product") or plan.get("product"))
        period_end = format_unix_timestamp(_as_dict(line.get("period")).get("end"))
        paid = event_type == EventType.PAYMENT_SUCCEEDED
        status = _PAYMENT_EVENT_STATUSES.get(event_type, SubscriptionStatus.ACTIVE)

        return {
            "payment_type": PaymentType.SUBSCRIPTION.value,
            "subscription_id": _identifier(obj.get("subscription")),
            "transaction_id": str(obj.get("id") or ""),
            "customer_id": _identifier(obj.get("customer")),
            "customer_email": str(obj.get("customer_email") or ""),
            "status": status.value,
            "plan_name": self._product_name(product_id),
            "amount": _to_int(obj.get("amount_paid") if paid else obj.get("amount_due")),
            "currency": str(obj.get("currency") or ""),
            "next_billing_date": period_end,
            "available_until_date": period_end,
            "receipt_url": str(obj.get("hosted_invoice_url") or ""),
        }

    def _one_off_fields(self, obj: Dict[str, Any], event_type: str) -> Dict[str, Any]:
        kind = obj.get("object") or ""
        customer_id = str(obj.get("id") or "") if kind == "customer" else _identifier(obj.get("customer"))
        billing_details = _as_dict(obj.get("billing_details"))
        email = obj.get("email") or billing_details.get("email") or obj.get("receipt_email") or ""
        amount = obj.get("amount_refunded") if event_type == EventType.PAYMENT_REFUNDED else obj.get("amount")
        status = _PAYMENT_EVENT_STATUSES.get(event_type, SubscriptionStatus.ACTIVE)

        return {
            "payment_type": PaymentType.SHOP_ORDER.value,
            "is_one_off": True,
            "transaction_id": str(obj.get("id") or ""),
            "customer_id": customer_id,
            "customer_email": str(email),
            "status": status.value,
            "amount": _to_int(amount),
            "currency": str(obj.get("currency") or ""),
            "receipt_url": str(obj.get("receipt_url") or ""),
        }

    def _resolve_customer(self, customer_id: str, email: str) -> Tuple[str, str]:
        if email:
            return email, ""
        if not customer_id:
            raise PaymentProviderError(MISSING_PAYLOAD_CUSTOMER_EMAIL)

        customer = self._get_json(f"/v1/customers/{customer_id}")
        resolved = str(customer.get("email") or "")
        if not resolved:
            logger.warning("Stripe customer has no email", extra={"stripe_customer_id": customer_id})
            raise PaymentProviderError(MISSING_PAYLOAD_CUSTOMER_EMAIL)
        return resolved, str(customer.get("name") or "")

    def _product_name(self, product_id: str) -> str:
        if not product_id:
            return ""
        product = self._get_json(f"/v1/products/{product_id}")
        return str(product.get("name") or "")


__all__ = [
    "STRIPE_EVENT_TYPES",
    "STRIPE_STATUSES",
    "StripeProvider",
    "WEBHOOK_TOLERANCE_SECONDS",
    "compute_signature",
    "parse_signature_header",
    "stripe_event_to_standard",
    "stripe_status_to_standard",
]
