"""Registry dispatching webhooks to the adapter registered under a name."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Protocol

from .base import Clock
from .config import ProviderConfig
from .exceptions import NOT_FOUND, UNSUPPORTED_PROVIDER, PaymentProviderError
from .http import HTTPClient
from .kofi import KofiProvider
from .lemonsqueezy import LemonSqueezyProvider
from .models import SubscriptionInfo, WebhookPayload, WebhookRequest
from .stripe import StripeProvider

logger = logging.getLogger(__name__)


class Provider(Protocol):
    """Capabilities every registered adapter offers."""

    name: str

    def verify(self, request: WebhookRequest) -> None:
        ...

    def parse(self, request: WebhookRequest) -> WebhookPayload:
        ...

    def lookup_subscription(self, subscription_id: str) -> SubscriptionInfo:
        ...


PROVIDER_CLASSES = {
    StripeProvider.name: StripeProvider,
    LemonSqueezyProvider.name: LemonSqueezyProvider,
    KofiProvider.name: KofiProvider,
}


class ProviderRegistry:
    """Named provider adapters.

    Registration is meant to happen while the application is wired; afterwards
    the registry is only read.
    """

    def __init__(self) -> None:
        self._providers: Dict[str, Provider] = {}

    def register(self, provider: Provider) -> None:
        if provider.name in self._providers:
            logger.info("Replacing registered payment provider", extra={"payment_provider": provider.name})
        self._providers[provider.name] = provider

    def get(self, name: str) -> Provider:
        try:
            return self._providers[name]
        except KeyError as exc:
            raise PaymentProviderError(NOT_FOUND) from exc

    def has(self, name: str) -> bool:
        return name in self._providers

    def list(self) -> List[str]:
        return sorted(self._providers)

    def verify_and_parse(self, name: str, request: WebhookRequest) -> WebhookPayload:
        provider = self.get(name)
        provider.verify(request)
        return provider.parse(request)


def create_provider_from_config(
    config: ProviderConfig,
    *,
    http_client: Optional[HTTPClient] = None,
    clock: Optional[Clock] = None,
) -> Provider:
    config.validate()
    provider_class = PROVIDER_CLASSES.get(config.provider_name)
    if provider_class is None:
        logger.error("Unsupported payment provider configured", extra={"payment_provider": config.provider_name})
        raise PaymentProviderError(UNSUPPORTED_PROVIDER)
    return provider_class(config, http_client=http_client, clock=clock)


def create_registry_from_configs(
    configs: Iterable[ProviderConfig],
    *,
    http_client: Optional[HTTPClient] = None,
    clock: Optional[Clock] = None,
) -> ProviderRegistry:
    """Build a registry holding one adapter per configuration."""

    registry = ProviderRegistry()
    for config in configs:
        registry.register(create_provider_from_config(config, http_client=http_client, clock=clock))
    return registry


__all__ = [
    "PROVIDER_CLASSES",
    "Provider",
    "ProviderRegistry",
    "create_provider_from_config",
    "create_registry_from_configs",
]
