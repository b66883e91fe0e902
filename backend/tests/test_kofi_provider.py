"""Tests for the Ko-fi webhook adapter."""
from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timezone
from urllib.parse import urlencode

import pytest

from backend.app.paymentprovider import KofiProvider, PaymentProviderError, ProviderConfig, WebhookRequest
from backend.app.paymentprovider import exceptions as pp_errors
from backend.app.paymentprovider.kofi import amount_to_minor_units, compute_kofi_customer_id, kofi_plan_name

TOKEN = "kofi-verification-token"
NOW = datetime(2025, 1, 10, tzinfo=timezone.utc)


@pytest.fixture
def provider():
    return KofiProvider(ProviderConfig(provider_name="kofi", webhook_secret=TOKEN), clock=lambda: NOW)


def _form_request(**overrides) -> WebhookRequest:
    document = {
        "verification_token": TOKEN,
        "message_id": "msg-1",
        "timestamp": "2025-01-01T00:00:00Z",
        "type": "Subscription",
        "is_public": True,
        "from_name": "Bob",
        "amount": "5.00",
        "url": "https://ko-fi.com/Home/CoffeeShop?txid=tx-1",
        "email": "bob@example.com",
        "currency": "USD",
        "is_subscription_payment": True,
        "is_first_subscription_payment": True,
        "kofi_transaction_id": "tx-1",
        "tier_name": "Gold",
    }
    document.update(overrides)
    body = urlencode({"data": json.dumps(document)}).encode("utf-8")
    return WebhookRequest(body=body, headers={"Content-Type": "application/x-www-form-urlencoded"})


def test_verify_accepts_matching_token(provider):
    provider.verify(_form_request())


def test_verify_rejects_wrong_token(provider):
    with pytest.raises(PaymentProviderError) as excinfo:
        provider.verify(_form_request(verification_token="nope"))

    assert excinfo.value.key == pp_errors.INVALID_WEBHOOK_SIGNATURE


def test_verify_rejects_missing_data_field(provider):
    with pytest.raises(PaymentProviderError) as excinfo:
        provider.verify(WebhookRequest(body=b"other=1"))
    assert excinfo.value.key == pp_errors.INVALID_PAYLOAD

    with pytest.raises(PaymentProviderError) as excinfo:
        provider.verify(WebhookRequest(body=urlencode({"data": "{not json"}).encode("utf-8")))
    assert excinfo.value.key == pp_errors.INVALID_PAYLOAD


def test_parse_first_subscription_payment(provider):
    payload = provider.parse(_form_request())

    expected_customer = hmac.new(b"kofi-customer-id", b"bob@example.com", hashlib.sha256).hexdigest()[:16]
    assert payload.customer_id == expected_customer
    assert payload.subscription_id == f"kofi_{expected_customer}"
    assert payload.event_type == "subscription.created"
    assert payload.event_id == "msg-1"
    assert payload.payment_type == "subscription"
    assert payload.is_one_off is False
    assert payload.is_first_subscription_payment is True
    assert payload.amount == 500
    assert payload.currency == "USD"
    assert payload.plan_name == "Gold"
    assert payload.status == "active"
    assert payload.customer_email == "bob@example.com"
    assert payload.customer_name == "Bob"
    assert payload.transaction_id == "tx-1"
    assert payload.next_billing_date == "2025-01-31T00:00:00Z"
    assert payload.available_until_date == "2025-02-02T00:00:00Z"
    assert json.loads(payload.raw_payload)["message_id"] == "msg-1"


def test_parse_renewal_keeps_subscription_id(provider):
    first = provider.parse(_form_request())
    renewal = provider.parse(
        _form_request(message_id="msg-2", kofi_transaction_id="tx-2", is_first_subscription_payment=False)
    )

    assert renewal.event_type == "payment.succeeded"
    assert renewal.subscription_id == first.subscription_id
    assert renewal.transaction_id == "tx-2"


def test_parse_one_time_donation(provider):
    payload = provider.parse(
        _form_request(type="Donation", is_subscription_payment=False, is_first_subscription_payment=False, tier_name=None)
    )

    assert payload.payment_type == "donation"
    assert payload.is_one_off is True
    assert payload.subscription_id == ""
    assert payload.next_billing_date == ""
    assert payload.plan_name == "Ko-fi Supporter (One-Time)"


def test_parse_monthly_donation_is_subscription(provider):
    payload = provider.parse(_form_request(type="Donation", tier_name=None))

    assert payload.event_type == "subscription.created.donation"
    assert payload.payment_type == "subscription"
    assert payload.plan_name == "Ko-fi Supporter (Monthly)"


def test_parse_shop_order(provider):
    payload = provider.parse(_form_request(type="Shop Order", is_subscription_payment=False))

    assert payload.payment_type == "shop_order"
    assert payload.is_one_off is True
    assert payload.plan_name == "Ko-fi Shop Order"


def test_parse_falls_back_to_clock_for_bad_timestamp(provider):
    payload = provider.parse(_form_request(timestamp="yesterday"))

    assert payload.next_billing_date == "2025-02-09T00:00:00Z"


@pytest.mark.parametrize("amount", ["NaN", "Infinity"])
def test_parse_non_finite_amount_is_zero(provider, amount):
    payload = provider.parse(_form_request(amount=amount))

    assert payload.amount == 0
    assert payload.plan_name == "Gold"


def test_lookup_subscription_is_not_supported(provider):
    with pytest.raises(PaymentProviderError) as excinfo:
        provider.lookup_subscription("kofi_abc")

    assert excinfo.value.key == pp_errors.KOFI_NO_SUBSCRIPTION_API


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("5.00", 500),
        ("3", 300),
        ("0.005", 1),
        ("12.345", 1235),
        ("", 0),
        ("abc", 0),
        (None, 0),
        ("NaN", 0),
        ("sNaN", 0),
        ("Infinity", 0),
        ("-inf", 0),
        ("1e999999", 0),
    ],
)
def test_amount_to_minor_units(raw, expected):
    assert amount_to_minor_units(raw) == expected


def test_customer_id_is_deterministic():
    assert compute_kofi_customer_id("bob@example.com") == compute_kofi_customer_id("bob@example.com")
    assert compute_kofi_customer_id("bob@example.com") != compute_kofi_customer_id("carol@example.com")
    assert len(compute_kofi_customer_id("bob@example.com")) == 16
    assert compute_kofi_customer_id("") == ""


def test_plan_names():
    assert kofi_plan_name({"type": "Subscription"}) == "Ko-fi Subscription"
    assert kofi_plan_name({"type": "Commission"}) == "Ko-fi Commission"
