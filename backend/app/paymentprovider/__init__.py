"""Payment provider adapters and the registry that dispatches to them."""

from .base import PaymentProvider, secure_compare
from .config import PaymentsConfig, ProviderConfig, load_payments_config, load_provider_configs
from .exceptions import PaymentProviderError
from .http import HTTPClient, HTTPResponse, UrllibHTTPClient
from .kofi import KofiProvider
from .lemonsqueezy import LemonSqueezyProvider
from .mock import MockProvider
from .models import EventType, PaymentType, SubscriptionInfo, SubscriptionStatus, WebhookPayload, WebhookRequest
from .registry import Provider, ProviderRegistry, create_provider_from_config, create_registry_from_configs
from .stripe import StripeProvider

__all__ = [
    "EventType",
    "HTTPClient",
    "HTTPResponse",
    "KofiProvider",
    "LemonSqueezyProvider",
    "MockProvider",
    "PaymentProvider",
    "PaymentProviderError",
    "PaymentType",
    "PaymentsConfig",
    "Provider",
    "ProviderConfig",
    "ProviderRegistry",
    "StripeProvider",
    "SubscriptionInfo",
    "SubscriptionStatus",
    "UrllibHTTPClient",
    "WebhookPayload",
    "WebhookRequest",
    "create_provider_from_config",
    "create_registry_from_configs",
    "load_payments_config",
    "load_provider_configs",
]
