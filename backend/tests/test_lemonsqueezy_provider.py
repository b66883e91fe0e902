"""Tests for the Lemon Squeezy webhook adapter."""
from __future__ import annotations

import json
from typing import Dict, List, Mapping, Tuple

import pytest

from backend.app.paymentprovider import HTTPResponse, LemonSqueezyProvider, PaymentProviderError, ProviderConfig, WebhookRequest
from backend.app.paymentprovider import exceptions as pp_errors
from backend.app.paymentprovider.lemonsqueezy import (
    calculate_unit_price,
    compute_signature,
    lemonsqueezy_event_to_standard,
    lemonsqueezy_status_to_standard,
)

SECRET = "ls-signing-secret"
API = "https://api.lemonsqueezy.com"

GRADUATED_TIERS = [
    {"last_unit": 2, "unit_price": 10000, "fixed_fee": 1000},
    {"last_unit": "inf", "unit_price": 1000, "fixed_fee": 1000},
]


class FakeHTTPClient:
    def __init__(self, responses: Dict[str, Tuple[int, object]]) -> None:
        self.responses = responses
        self.requests: List[Tuple[str, Dict[str, str]]] = []

    def get(self, url: str, *, headers: Mapping[str, str]) -> HTTPResponse:
        self.requests.append((url, dict(headers)))
        if url not in self.responses:
            return HTTPResponse(status_code=404, body=b"{}")
        status_code, document = self.responses[url]
        return HTTPResponse(status_code=status_code, body=json.dumps(document).encode("utf-8"))


def _provider(responses: Dict[str, Tuple[int, object]]) -> Tuple[FakeHTTPClient, LemonSqueezyProvider]:
    http_client = FakeHTTPClient(responses)
    provider = LemonSqueezyProvider(
        ProviderConfig(provider_name="lemonsqueezy", webhook_secret=SECRET, api_key="ls-key"),
        http_client=http_client,
    )
    return http_client, provider


def _subscription_body(event_name: str = "subscription_created", **attribute_overrides) -> bytes:
    attributes = {
        "customer_id": 4242,
        "user_email": "dana@example.com",
        "user_name": "Dana",
        "status": "active",
        "product_name": "Team",
        "variant_name": "Monthly",
        "renews_at": "2025-02-01T00:00:00Z",
        "ends_at": None,
        "updated_at": "2025-01-01T12:00:00Z",
        "first_subscription_item": {"price_id": 77, "quantity": 5},
        "urls": {
            "customer_portal": "https://shop.test/portal",
            "update_payment_method": "https://shop.test/update",
        },
    }
    attributes.update(attribute_overrides)
    document = {
        "meta": {"event_name": event_name},
        "data": {"type": "subscriptions", "id": "ls_sub_1", "attributes": attributes},
    }
    return json.dumps(document).encode("utf-8")


def _price_response(**attributes) -> Tuple[int, object]:
    return 200, {"data": {"id": "77", "attributes": attributes}}


def test_verify_accepts_matching_signature():
    _, provider = _provider({})
    body = _subscription_body()

    provider.verify(WebhookRequest(body=body, headers={"X-Signature": compute_signature(SECRET, body)}))


def test_verify_rejects_missing_and_mismatched_signature():
    _, provider = _provider({})
    body = _subscription_body()

    with pytest.raises(PaymentProviderError) as excinfo:
        provider.verify(WebhookRequest(body=body))
    assert excinfo.value.key == pp_errors.MISSING_SIGNATURE

    with pytest.raises(PaymentProviderError) as excinfo:
        provider.verify(WebhookRequest(body=body, headers={"x-signature": compute_signature("other", body)}))
    assert excinfo.value.key == pp_errors.INVALID_WEBHOOK_SIGNATURE


def test_parse_subscription_created_with_graduated_pricing():
    http_client, provider = _provider(
        {f"{API}/v1/prices/77": _price_response(scheme="graduated", tiers=GRADUATED_TIERS)}
    )
    body = _subscription_body()

    payload = provider.parse(WebhookRequest(body=body))

    assert payload.amount == 25000
    assert payload.event_type == "subscription.created"
    assert payload.event_id == "subscriptions:ls_sub_1:subscription_created:2025-01-01T12:00:00Z"
    assert payload.event_time == "2025-01-01T12:00:00Z"
    assert payload.subscription_id == "ls_sub_1"
    assert payload.customer_id == "4242"
    assert payload.customer_email == "dana@example.com"
    assert payload.customer_name == "Dana"
    assert payload.plan_name == "Team - Monthly"
    assert payload.currency == "USD"
    assert payload.is_first_subscription_payment is True
    assert payload.next_billing_date == "2025-02-01T00:00:00Z"
    assert payload.available_until_date == "2025-02-01T00:00:00Z"
    assert payload.cancel_url == "https://shop.test/portal"
    assert payload.update_url == "https://shop.test/update"
    assert http_client.requests[0][1]["Accept"] == "application/vnd.api+json"


def test_parse_cancelled_subscription_keeps_access_until_end():
    _, provider = _provider({f"{API}/v1/prices/77": _price_response(scheme="standard", unit_price=1500)})
    body = _subscription_body("subscription_cancelled", status="cancelled", ends_at="2025-02-01T00:00:00Z")

    payload = provider.parse(WebhookRequest(body=body))

    assert payload.event_type == "subscription.cancelled"
    assert payload.status == "cancelled"
    assert payload.amount == 1500
    assert payload.is_first_subscription_payment is False
    assert payload.available_until_date == "2025-02-01T00:00:00Z"


def test_parse_uses_order_item_when_no_price_id():
    http_client, provider = _provider(
        {f"{API}/v1/order-items/900": (200, {"data": {"attributes": {"price": 1200, "quantity": 2}}})}
    )
    body = _subscription_body(first_subscription_item=None, order_item_id=900)

    payload = provider.parse(WebhookRequest(body=body))

    assert payload.amount == 2400
    assert [url for url, _ in http_client.requests] == [f"{API}/v1/order-items/900"]


def test_parse_wraps_price_lookup_failures():
    _, provider = _provider({})

    with pytest.raises(PaymentProviderError) as excinfo:
        provider.parse(WebhookRequest(body=_subscription_body()))

    assert excinfo.value.key == pp_errors.API_RESPONSE_INVALID


def test_parse_subscription_invoice():
    _, provider = _provider({})
    document = {
        "meta": {"event_name": "subscription_payment_failed"},
        "data": {
            "type": "subscription-invoices",
            "id": "inv_9",
            "attributes": {
                "subscription_id": 321,
                "order_id": 555,
                "customer_id": 4242,
                "user_email": "dana@example.com",
                "total": 4999,
                "currency": "eur",
                "updated_at": "2025-01-05T00:00:00Z",
                "urls": {"invoice_url": "https://shop.test/invoice/inv_9"},
            },
        },
    }

    payload = provider.parse(WebhookRequest(body=json.dumps(document).encode("utf-8")))

    assert payload.event_type == "payment.failed"
    assert payload.event_id == "subscription-invoices:inv_9:subscription_payment_failed:2025-01-05T00:00:00Z"
    assert payload.subscription_id == "321"
    assert payload.transaction_id == "555"
    assert payload.status == "past_due"
    assert payload.amount == 4999
    assert payload.currency == "EUR"
    assert payload.receipt_url == "https://shop.test/invoice/inv_9"


def test_parse_rejects_unknown_events_and_missing_fields():
    _, provider = _provider({})

    with pytest.raises(PaymentProviderError) as excinfo:
        provider.parse(WebhookRequest(body=_subscription_body("order_created")))
    assert excinfo.value.key == pp_errors.INVALID_EVENT_TYPE

    with pytest.raises(PaymentProviderError) as excinfo:
        provider.parse(WebhookRequest(body=b'{"meta": {"event_name": "subscription_created"}, "data": {}}'))
    assert excinfo.value.key == pp_errors.MISSING_REQUIRED_FIELD


@pytest.mark.parametrize(
    ("attributes", "quantity", "expected"),
    [
        ({"scheme": "standard", "unit_price": 999}, 4, 999),
        ({"scheme": "package", "unit_price": 500, "package_size": 10}, 3, 15000),
        ({"scheme": "graduated", "tiers": GRADUATED_TIERS}, 5, 25000),
        ({"scheme": "graduated", "tiers": GRADUATED_TIERS}, 1, 11000),
        ({"scheme": "volume", "tiers": GRADUATED_TIERS}, 2, 21000),
        ({"scheme": "volume", "tiers": GRADUATED_TIERS}, 5, 6000),
        ({"scheme": "volume", "tiers": [{"last_unit": 2, "unit_price": 100}]}, 5, 0),
    ],
)
def test_calculate_unit_price(attributes, quantity, expected):
    assert calculate_unit_price(attributes, quantity) == expected


def test_lookup_subscription():
    _, provider = _provider(
        {
            f"{API}/v1/subscriptions/ls_sub_1": (
                200,
                {
                    "data": {
                        "id": "ls_sub_1",
                        "attributes": {
                            "customer_id": 4242,
                            "status": "cancelled",
                            "product_name": "Team",
                            "variant_name": "",
                            "variant_id": 88,
                            "product_id": 12,
                            "renews_at": "2025-02-01T00:00:00Z",
                            "ends_at": "2025-02-01T00:00:00Z",
                            "urls": {"customer_portal": "https://shop.test/portal"},
                        },
                    }
                },
            )
        }
    )

    info = provider.lookup_subscription("ls_sub_1")

    assert info.status == "cancelled"
    assert info.plan_name == "Team"
    assert info.plan_id == "88"
    assert info.cancelled_at == "2025-02-01T00:00:00Z"
    assert info.cancel_url == "https://shop.test/portal"
    assert info.metadata == {"product_id": "12"}


def test_event_and_status_mapping():
    assert lemonsqueezy_event_to_standard("subscription_expired") == "subscription.cancelled"
    assert lemonsqueezy_event_to_standard("subscription_payment_recovered") == "payment.succeeded"
    assert lemonsqueezy_status_to_standard("on_trial") == "trialing"
    assert lemonsqueezy_status_to_standard("ACTIVE") == "active"
