"""Ko-fi webhook adapter.

Ko-fi posts ``application/x-www-form-urlencoded`` bodies whose single ``data``
field holds a JSON document. There is no signature header; the document carries
the verification token configured on the Ko-fi dashboard instead.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, DecimalException
from typing import Any, Dict, Tuple
from urllib import parse as urllib_parse

from .base import PaymentProvider, format_rfc3339, secure_compare
from .exceptions import (
    INVALID_PAYLOAD,
    INVALID_WEBHOOK_SIGNATURE,
    KOFI_NO_SUBSCRIPTION_API,
    PAYLOAD_PARSING,
    PaymentProviderError,
)
from .models import EventType, PaymentType, SubscriptionInfo, SubscriptionStatus, WebhookPayload, WebhookRequest

logger = logging.getLogger(__name__)

CUSTOMER_ID_KEY = b"kofi-customer-id"
BILLING_PERIOD = timedelta(days=30)
GRACE_PERIOD = timedelta(hours=48)


def compute_kofi_customer_id(email: str) -> str:
    """Derive a stable customer id from an email address."""

    if not email:
        return ""
    digest = hmac.new(CUSTOMER_ID_KEY, email.encode("utf-8"), hashlib.sha256).hexdigest()
    return digest[:16]


def kofi_type_to_standard(kofi_type: str, *, is_subscription: bool, is_first: bool) -> Tuple[str, str, bool]:
    """Return ``(payment_type, event_type, is_one_off)`` for a Ko-fi payment."""

    if kofi_type == "Subscription":
        if is_first:
            return PaymentType.SUBSCRIPTION.value, EventType.SUBSCRIPTION_CREATED.value, False
        return PaymentType.SUBSCRIPTION.value, EventType.PAYMENT_SUCCEEDED.value, False
    if kofi_type == "Donation":
        if is_subscription:
            if is_first:
                return PaymentType.SUBSCRIPTION.value, EventType.SUBSCRIPTION_CREATED_DONATION.value, False
            return PaymentType.SUBSCRIPTION.value, EventType.PAYMENT_SUCCEEDED.value, False
        return PaymentType.DONATION.value, EventType.PAYMENT_SUCCEEDED.value, True
    if kofi_type == "Commission":
        return PaymentType.COMMISSION.value, EventType.PAYMENT_SUCCEEDED.value, True
    if kofi_type == "Shop Order":
        return PaymentType.SHOP_ORDER.value, EventType.PAYMENT_SUCCEEDED.value, True
    return PaymentType.DONATION.value, EventType.PAYMENT_SUCCEEDED.value, True


def kofi_plan_name(document: Dict[str, Any]) -> str:
    kofi_type = str(document.get("type") or "")
    if kofi_type == "Donation":
        suffix = "(Monthly)" if document.get("is_subscription_payment") else "(One-Time)"
        return f"Ko-fi Supporter {suffix}"
    if kofi_type == "Subscription":
        return str(document.get("tier_name") or "") or "Ko-fi Subscription"
    if kofi_type == "Commission":
        return "Ko-fi Commission"
    if kofi_type == "Shop Order":
        return "Ko-fi Shop Order"
    return f"Ko-fi {kofi_type.title()}".rstrip()


def amount_to_minor_units(raw_amount: Any) -> int:
    """Convert Ko-fi's decimal string amount (``"3.00"``) to cents."""

    try:
        value = Decimal(str(raw_amount).strip())
        if not value.is_finite():
            return 0
        return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (DecimalException, ValueError):
        return 0


class KofiProvider(PaymentProvider):
    """Authenticates Ko-fi webhooks by their verification token."""

    name = "kofi"

    def verify(self, request: WebhookRequest) -> None:
        data_field = self._form_data(request)
        try:
            document = json.loads(data_field)
        except json.JSONDecodeError as exc:
            raise PaymentProviderError(INVALID_PAYLOAD) from exc
        if not isinstance(document, dict):
            raise PaymentProviderError(INVALID_PAYLOAD)

        token = str(document.get("verification_token") or "")
        if not secure_compare(self.config.webhook_secret, token):
            logger.warning("Ko-fi webhook verification token mismatch")
            raise PaymentProviderError(INVALID_WEBHOOK_SIGNATURE)

    def parse(self, request: WebhookRequest) -> WebhookPayload:
        data_field = self._form_data(request)
        try:
            document = json.loads(data_field)
        except json.JSONDecodeError as exc:
            raise PaymentProviderError(PAYLOAD_PARSING) from exc
        if not isinstance(document, dict):
            raise PaymentProviderError(PAYLOAD_PARSING)

        is_subscription = bool(document.get("is_subscription_payment"))
        is_first = bool(document.get("is_first_subscription_payment"))
        payment_type, event_type, is_one_off = kofi_type_to_standard(
            str(document.get("type") or ""),
            is_subscription=is_subscription,
            is_first=is_first,
        )

        email = str(document.get("email") or "")
        customer_id = compute_kofi_customer_id(email)
        transaction_id = str(document.get("kofi_transaction_id") or "")
        timestamp = str(document.get("timestamp") or "")

        subscription_id = ""
        next_billing_date = ""
        available_until_date = ""
        if payment_type == PaymentType.SUBSCRIPTION.value:
            # Each renewal carries a fresh transaction id, so subscriptions are keyed by supporter.
            subscription_id = f"kofi_{customer_id}" if customer_id else transaction_id
            paid_at = self._parse_timestamp(timestamp)
            next_billing_date = format_rfc3339(paid_at + BILLING_PERIOD)
            available_until_date = format_rfc3339(paid_at + BILLING_PERIOD + GRACE_PERIOD)

        return WebhookPayload(
            event_type=event_type,
            event_id=str(document.get("message_id") or ""),
            event_time=timestamp,
            payment_type=payment_type,
            is_one_off=is_one_off,
            subscription_id=subscription_id,
            transaction_id=transaction_id,
            customer_id=customer_id,
            customer_email=email,
            customer_name=str(document.get("from_name") or ""),
            status=SubscriptionStatus.ACTIVE.value,
            plan_name=kofi_plan_name(document),
            amount=amount_to_minor_units(document.get("amount")),
            currency=str(document.get("currency") or ""),
            is_first_subscription_payment=is_first,
            next_billing_date=next_billing_date,
            available_until_date=available_until_date,
            receipt_url=str(document.get("url") or ""),
            raw_payload=data_field,
        )

    def lookup_subscription(self, subscription_id: str) -> SubscriptionInfo:
        logger.warning("Ko-fi has no subscription API", extra={"subscription_id": subscription_id})
        raise PaymentProviderError(KOFI_NO_SUBSCRIPTION_API)

    def _form_data(self, request: WebhookRequest) -> str:
        try:
            form = urllib_parse.parse_qs(request.body.decode("utf-8"), strict_parsing=False)
        except UnicodeDecodeError as exc:
            raise PaymentProviderError(INVALID_PAYLOAD) from exc

        values = form.get("data") or []
        if not values or not values[0]:
            logger.warning("Ko-fi webhook missing data field")
            raise PaymentProviderError(INVALID_PAYLOAD)
        return values[0]

    def _parse_timestamp(self, timestamp: str) -> datetime:
        try:
            parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        except ValueError:
            return self.clock()
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed


__all__ = [
    "KofiProvider",
    "amount_to_minor_units",
    "compute_kofi_customer_id",
    "kofi_plan_name",
    "kofi_type_to_standard",
]
