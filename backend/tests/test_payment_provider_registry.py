"""Tests for provider configuration loading and the provider registry."""
from __future__ import annotations

import pytest

from backend.app.paymentprovider import (
    KofiProvider,
    LemonSqueezyProvider,
    MockProvider,
    PaymentProviderError,
    ProviderConfig,
    ProviderRegistry,
    StripeProvider,
    WebhookPayload,
    WebhookRequest,
    create_provider_from_config,
    create_registry_from_configs,
    load_payments_config,
    load_provider_configs,
)
from backend.app.paymentprovider import exceptions as pp_errors
from backend.app.paymentprovider.config import load_provider_config


def test_load_provider_config_reads_prefixed_variables():
    env = {
        "LEMONSQUEEZY_WEBHOOK_SECRET": "ls-secret",
        "LEMONSQUEEZY_API_KEY": "ls-key",
        "LEMONSQUEEZY_ENVIRONMENT": "Sandbox",
        "LEMONSQUEEZY_API_BASE_URL": "https://ls.test/",
    }

    config = load_provider_config(" LemonSqueezy ", env)

    assert config.provider_name == "lemonsqueezy"
    assert config.webhook_secret == "ls-secret"
    assert config.api_key == "ls-key"
    assert config.environment == "sandbox"
    assert config.is_sandbox is True
    assert config.api_base_url == "https://ls.test"


def test_load_provider_configs_deduplicates_names():
    env = {
        "PAYMENT_PROVIDERS": "stripe, kofi,STRIPE,,",
        "STRIPE_WEBHOOK_SECRET": "whsec",
        "KOFI_WEBHOOK_SECRET": "token",
    }

    configs = load_provider_configs(env)

    assert [config.provider_name for config in configs] == ["stripe", "kofi"]


def test_load_payments_config_timeout_defaults_and_floor():
    assert load_payments_config({}).http_timeout_seconds == 10.0
    assert load_payments_config({"PAYMENT_PROVIDER_HTTP_TIMEOUT": "0"}).http_timeout_seconds == 0.1
    assert load_payments_config({"PAYMENT_PROVIDER_HTTP_TIMEOUT": "2.5"}).http_timeout_seconds == 2.5

    with pytest.raises(ValueError):
        load_payments_config({"PAYMENT_PROVIDER_HTTP_TIMEOUT": "soon"})


@pytest.mark.parametrize(
    ("config", "expected_key"),
    [
        (ProviderConfig(provider_name="", webhook_secret="secret"), pp_errors.MISSING_CONFIGURATION),
        (ProviderConfig(provider_name="stripe", webhook_secret=""), pp_errors.REQUIRED_WEBHOOK_SECRET_IS_MISSING),
        (ProviderConfig(provider_name="stripe", webhook_secret="   "), pp_errors.INVALID_CONFIG_WEBHOOK_SECRET),
    ],
)
def test_provider_config_validation_errors(config, expected_key):
    with pytest.raises(PaymentProviderError) as excinfo:
        config.validate()

    assert excinfo.value.key == expected_key
    assert excinfo.value.status_code == 500


def test_adapter_construction_validates_config():
    with pytest.raises(PaymentProviderError) as excinfo:
        StripeProvider(ProviderConfig(provider_name="stripe", webhook_secret=""))

    assert excinfo.value.key == pp_errors.REQUIRED_WEBHOOK_SECRET_IS_MISSING


def test_create_provider_from_config_builds_each_variant():
    stripe = create_provider_from_config(ProviderConfig(provider_name="stripe", webhook_secret="a"))
    lemonsqueezy = create_provider_from_config(ProviderConfig(provider_name="lemonsqueezy", webhook_secret="b"))
    kofi = create_provider_from_config(ProviderConfig(provider_name="kofi", webhook_secret="c"))

    assert isinstance(stripe, StripeProvider)
    assert isinstance(lemonsqueezy, LemonSqueezyProvider)
    assert isinstance(kofi, KofiProvider)
    assert stripe.api_base_url == "https://api.stripe.com"


def test_create_provider_from_config_rejects_unknown_provider():
    with pytest.raises(PaymentProviderError) as excinfo:
        create_provider_from_config(ProviderConfig(provider_name="paypal", webhook_secret="x"))

    assert excinfo.value.key == pp_errors.UNSUPPORTED_PROVIDER
    assert excinfo.value.status_code == 400


def test_create_registry_from_configs_registers_by_name():
    registry = create_registry_from_configs(
        [
            ProviderConfig(provider_name="stripe", webhook_secret="a"),
            ProviderConfig(provider_name="kofi", webhook_secret="b"),
        ]
    )

    assert registry.list() == ["kofi", "stripe"]
    assert registry.has("stripe")
    assert not registry.has("lemonsqueezy")


def test_registry_get_unknown_provider_raises_not_found():
    registry = ProviderRegistry()

    with pytest.raises(PaymentProviderError) as excinfo:
        registry.get("stripe")

    assert excinfo.value.key == pp_errors.NOT_FOUND


def test_registry_register_replaces_existing_adapter():
    registry = ProviderRegistry()
    first = MockProvider("stripe")
    second = MockProvider("stripe")

    registry.register(first)
    registry.register(second)

    assert registry.get("mock-stripe") is second
    assert registry.list() == ["mock-stripe"]


def test_verify_and_parse_verifies_before_parsing():
    payload = WebhookPayload(event_type="payment.succeeded", event_id="evt_1")
    provider = MockProvider("kofi", payload=payload)
    registry = ProviderRegistry()
    registry.register(provider)
    request = WebhookRequest(body=b'{"hello": "world"}')

    parsed = registry.verify_and_parse("mock-kofi", request)

    assert [call[0] for call in provider.calls] == ["verify", "parse"]
    assert parsed.event_id == "evt_1"
    assert parsed.raw_payload == '{"hello": "world"}'


def test_verify_and_parse_stops_when_verification_fails():
    provider = MockProvider("stripe", should_fail=True)
    registry = ProviderRegistry()
    registry.register(provider)

    with pytest.raises(PaymentProviderError) as excinfo:
        registry.verify_and_parse("mock-stripe", WebhookRequest(body=b"{}"))

    assert excinfo.value.key == pp_errors.INVALID_WEBHOOK_SIGNATURE
    assert [call[0] for call in provider.calls] == ["verify"]


def test_mock_provider_defaults_and_failures():
    provider = MockProvider("lemonsqueezy")

    assert provider.name == "mock-lemonsqueezy"
    assert provider.parse(WebhookRequest(body=b"raw")).event_type == "subscription.created"
    assert provider.lookup_subscription("sub_1").subscription_id == "sub_1"

    failing = MockProvider("lemonsqueezy", should_fail=True)
    with pytest.raises(PaymentProviderError) as excinfo:
        failing.parse(WebhookRequest())
    assert excinfo.value.key == pp_errors.PAYLOAD_PARSING
    with pytest.raises(PaymentProviderError) as excinfo:
        failing.lookup_subscription("sub_1")
    assert excinfo.value.key == pp_errors.SUBSCRIPTION_NOT_FOUND


def test_webhook_request_headers_are_case_insensitive():
    request = WebhookRequest(body=b"x", headers={"Stripe-Signature": "t=1,v1=abc", "Content-Type": "application/json"})

    assert request.header("stripe-signature") == "t=1,v1=abc"
    assert request.header("STRIPE-SIGNATURE") == "t=1,v1=abc"
    assert request.content_type == "application/json"
    assert request.header("x-missing") == ""


def test_payment_provider_error_payload_shape():
    error = PaymentProviderError(pp_errors.WEBHOOK_TIMESTAMP_TOO_OLD)

    http_error = error.to_http_exception()

    assert http_error.status_code == 400
    assert http_error.detail == {
        "key": pp_errors.WEBHOOK_TIMESTAMP_TOO_OLD,
        "title": "Bad Request",
        "detail": "Webhook is too old",
        "code": "PP00-015",
    }


def test_unknown_error_key_reports_internal_error():
    error = PaymentProviderError("SomethingNobodyRegistered")

    assert error.status_code == 500
    assert "code" not in error.payload
