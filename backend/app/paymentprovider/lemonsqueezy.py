"""Lemon Squeezy webhook adapter.

Lemon Squeezy signs the raw body with HMAC-SHA-256 and sends the hex digest in
``X-Signature``. The signed document carries no timestamp, so replay protection
relies on the billing event idempotency key.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Dict, Mapping, Optional

from .base import PaymentProvider, load_json_object, secure_compare
from .exceptions import (
    API_RESPONSE_INVALID,
    INVALID_EVENT_TYPE,
    INVALID_WEBHOOK_SIGNATURE,
    MISSING_REQUIRED_FIELD,
    MISSING_SIGNATURE,
    PaymentProviderError,
)
from .models import EventType, PaymentType, SubscriptionInfo, SubscriptionStatus, WebhookPayload, WebhookRequest

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"
JSON_API_CONTENT_TYPE = "application/vnd.api+json"
DEFAULT_CURRENCY = "USD"
INFINITE_TIER = "inf"

LEMONSQUEEZY_EVENT_TYPES: Dict[str, EventType] = {
    "subscription_created": EventType.SUBSCRIPTION_CREATED,
    "subscription_updated": EventType.SUBSCRIPTION_UPDATED,
    "subscription_cancelled": EventType.SUBSCRIPTION_CANCELLED,
    "subscription_resumed": EventType.SUBSCRIPTION_RESUMED,
    "subscription_expired": EventType.SUBSCRIPTION_CANCELLED,
    "subscription_paused": EventType.SUBSCRIPTION_PAUSED,
    "subscription_unpaused": EventType.SUBSCRIPTION_RESUMED,
    "subscription_payment_success": EventType.PAYMENT_SUCCEEDED,
    "subscription_payment_failed": EventType.PAYMENT_FAILED,
    "subscription_payment_recovered": EventType.PAYMENT_SUCCEEDED,
    "subscription_payment_refunded": EventType.PAYMENT_REFUNDED,
}

LEMONSQUEEZY_STATUSES: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "on_trial": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "cancelled": SubscriptionStatus.CANCELLED,
    "expired": SubscriptionStatus.EXPIRED,
    "paused": SubscriptionStatus.PAUSED,
    "unpaid": SubscriptionStatus.UNPAID,
}

# Invoice payloads describe a payment, not the subscription's own state.
_INVOICE_EVENT_STATUSES: Dict[str, SubscriptionStatus] = {
    EventType.PAYMENT_SUCCEEDED.value: SubscriptionStatus.ACTIVE,
    EventType.PAYMENT_FAILED.value: SubscriptionStatus.PAST_DUE,
}


def lemonsqueezy_event_to_standard(event_name: str) -> str:
    mapped = LEMONSQUEEZY_EVENT_TYPES.get(event_name)
    if mapped is None:
        raise PaymentProviderError(INVALID_EVENT_TYPE)
    return mapped.value


def lemonsqueezy_status_to_standard(status: str) -> str:
    normalized = (status or "").strip().lower()
    mapped = LEMONSQUEEZY_STATUSES.get(normalized)
    return mapped.value if mapped else normalized


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _to_int(value: Any, default: int = 0) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _tier_limit(tier: Mapping[str, Any]) -> Optional[int]:
    """Return a tier's ``last_unit`` as an int, or ``None`` for the open-ended tier."""

    last_unit = tier.get("last_unit")
    if last_unit is None or last_unit == INFINITE_TIER:
        return None
    return _to_int(last_unit)


def calculate_unit_price(attributes: Mapping[str, Any], quantity: int) -> int:
    """Price ``quantity`` units according to a Lemon Squeezy price's scheme.

    ``standard`` charges ``unit_price``. ``package`` charges
    ``unit_price * package_size * quantity``. ``graduated`` walks the tiers in
    order, charging each tier for the units that fall inside it plus its fixed
    fee. ``volume`` charges every unit at the first tier able to hold the whole
    quantity, plus that tier's fixed fee.
    """

    scheme = str(attributes.get("scheme") or "")
    unit_price = _to_int(attributes.get("unit_price"))
    tiers = [tier for tier in attributes.get("tiers") or [] if isinstance(tier, Mapping)]

    if scheme == "standard":
        return unit_price
    if scheme == "package":
        return unit_price * _to_int(attributes.get("package_size"), default=1) * quantity

    if scheme == "graduated":
        total = 0
        consumed = 0
        for tier in tiers:
            remaining = quantity - consumed
            if remaining <= 0:
                break
            limit = _tier_limit(tier)
            units = remaining if limit is None else min(remaining, max(limit - consumed, 0))
            if units <= 0:
                continue
            total += units * _to_int(tier.get("unit_price")) + _to_int(tier.get("fixed_fee"))
            consumed += units
        return total

    if scheme == "volume":
        for tier in tiers:
            limit = _tier_limit(tier)
            if limit is None or quantity <= limit:
                return quantity * _to_int(tier.get("unit_price")) + _to_int(tier.get("fixed_fee"))
        return 0

    return unit_price


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _plan_name(attributes: Mapping[str, Any]) -> str:
    product = str(attributes.get("product_name") or "")
    variant = str(attributes.get("variant_name") or "")
    if variant:
        return f"{product} - {variant}"
    return product


class LemonSqueezyProvider(PaymentProvider):
    """Verifies ``X-Signature`` digests and normalizes Lemon Squeezy events."""

    name = "lemonsqueezy"
    default_api_base_url = "https://api.lemonsqueezy.com"

    def verify(self, request: WebhookRequest) -> None:
        signature = request.header(SIGNATURE_HEADER)
        if not signature:
            logger.warning("Lemon Squeezy webhook missing signature header")
            raise PaymentProviderError(MISSING_SIGNATURE)

        expected = compute_signature(self.config.webhook_secret, request.body)
        if not secure_compare(expected, signature.strip()):
            logger.warning("Lemon Squeezy webhook signature mismatch")
            raise PaymentProviderError(INVALID_WEBHOOK_SIGNATURE)

    def parse(self, request: WebhookRequest) -> WebhookPayload:
        document = load_json_object(request.body)
        meta = _as_dict(document.get("meta"))
        data = _as_dict(document.get("data"))
        event_name = str(meta.get("event_name") or "")
        attributes = data.get("attributes")
        if not event_name or not data.get("id") or not isinstance(attributes, dict):
            raise PaymentProviderError(MISSING_REQUIRED_FIELD)

        event_type = lemonsqueezy_event_to_standard(event_name)
        resource_type = str(data.get("type") or "subscriptions")
        resource_id = str(data["id"])
        updated_at = str(attributes.get("updated_at") or "")

        if resource_type == "subscription-invoices":
            fields = self._invoice_fields(attributes, event_type)
        else:
            fields = self._subscription_fields(resource_id, attributes, event_type)

        return WebhookPayload(
            event_type=event_type,
            # The resource id repeats across deliveries for the same subscription.
            event_id=f"{resource_type}:{resource_id}:{event_name}:{updated_at}",
            event_time=updated_at,
            payment_type=PaymentType.SUBSCRIPTION.value,
            is_one_off=False,
            customer_id=str(attributes.get("customer_id") or ""),
            customer_email=str(attributes.get("user_email") or ""),
            customer_name=str(attributes.get("user_name") or ""),
            raw_payload=request.text,
            **fields,
        )

    def lookup_subscription(self, subscription_id: str) -> SubscriptionInfo:
        document = self._get_json(f"/v1/subscriptions/{subscription_id}")
        data = _as_dict(document.get("data"))
        attributes = _as_dict(data.get("attributes"))
        urls = _as_dict(attributes.get("urls"))
        status = lemonsqueezy_status_to_standard(str(attributes.get("status") or ""))

        return SubscriptionInfo(
            subscription_id=str(data.get("id") or subscription_id),
            customer_id=str(attributes.get("customer_id") or ""),
            status=status,
            plan_name=_plan_name(attributes),
            plan_id=str(attributes.get("variant_id") or ""),
            next_billing_date=str(attributes.get("renews_at") or ""),
            current_period_end=str(attributes.get("ends_at") or attributes.get("renews_at") or ""),
            cancelled_at=str(attributes.get("ends_at") or "") if status == SubscriptionStatus.CANCELLED.value else "",
            cancel_url=str(urls.get("customer_portal") or ""),
            update_url=str(urls.get("update_payment_method") or ""),
            metadata={"product_id": str(attributes.get("product_id") or "")},
        )

    def _api_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Accept": JSON_API_CONTENT_TYPE,
            "Content-Type": JSON_API_CONTENT_TYPE,
        }

    def _subscription_fields(self, resource_id: str, attributes: Mapping[str, Any], event_type: str) -> Dict[str, Any]:
        urls = _as_dict(attributes.get("urls"))
        renews_at = str(attributes.get("renews_at") or "")
        ends_at = str(attributes.get("ends_at") or "")

        return {
            "subscription_id": resource_id,
            "status": lemonsqueezy_status_to_standard(str(attributes.get("status") or "")),
            "plan_name": _plan_name(attributes),
            "amount": self._resolve_amount(attributes, event_type),
            "currency": DEFAULT_CURRENCY,
            "is_first_subscription_payment": event_type == EventType.SUBSCRIPTION_CREATED.value,
            "next_billing_date": renews_at,
            "available_until_date": ends_at or renews_at,
            "cancel_url": str(urls.get("customer_portal") or ""),
            "update_url": str(urls.get("update_payment_method") or ""),
        }

    def _invoice_fields(self, attributes: Mapping[str, Any], event_type: str) -> Dict[str, Any]:
        urls = _as_dict(attributes.get("urls"))
        subscription_id = str(attributes.get("subscription_id") or "")
        if not subscription_id:
            raise PaymentProviderError(MISSING_REQUIRED_FIELD)

        status = _INVOICE_EVENT_STATUSES.get(event_type, SubscriptionStatus.ACTIVE)
        return {
            "subscription_id": subscription_id,
            "transaction_id": str(attributes.get("order_id") or ""),
            "status": status.value,
            "amount": _to_int(attributes.get("total")),
            "currency": str(attributes.get("currency") or DEFAULT_CURRENCY),
            "receipt_url": str(urls.get("invoice_url") or ""),
        }

    def _resolve_amount(self, attributes: Mapping[str, Any], event_type: str) -> int:
        item = _as_dict(attributes.get("first_subscription_item"))
        price_id = item.get("price_id")
        order_item_id = attributes.get("order_item_id")

        try:
            if price_id:
                quantity = _to_int(item.get("quantity"), default=1) or 1
                document = self._get_json(f"/v1/prices/{price_id}")
                price_attributes = _as_dict(_as_dict(document.get("data")).get("attributes"))
                amount = calculate_unit_price(price_attributes, quantity)
                logger.debug(
                    "Resolved Lemon Squeezy price",
                    extra={"price_id": price_id, "scheme": price_attributes.get("scheme"), "amount": amount},
                )
                return amount

            if order_item_id:
                document = self._get_json(f"/v1/order-items/{order_item_id}")
                item_attributes = _as_dict(_as_dict(document.get("data")).get("attributes"))
                return _to_int(item_attributes.get("price")) * _to_int(item_attributes.get("quantity"), default=1)
        except PaymentProviderError as exc:
            logger.error(
                "Failed to resolve Lemon Squeezy price",
                extra={"event_type": event_type, "price_id": price_id, "order_item_id": order_item_id, "error": exc.key},
            )
            raise PaymentProviderError(API_RESPONSE_INVALID) from exc

        return 0


__all__ = [
    "LemonSqueezyProvider",
    "calculate_unit_price",
    "compute_signature",
    "lemonsqueezy_event_to_standard",
    "lemonsqueezy_status_to_standard",
]
