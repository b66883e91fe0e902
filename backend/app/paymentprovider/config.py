"""Payment provider configuration helpers."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from .exceptions import (
    INVALID_CONFIG_WEBHOOK_SECRET,
    MISSING_CONFIGURATION,
    REQUIRED_WEBHOOK_SECRET_IS_MISSING,
    PaymentProviderError,
)


@dataclass(frozen=True)
class ProviderConfig:
    """Credentials and endpoints for a single payment provider."""

    provider_name: str
    webhook_secret: str
    api_key: str = ""
    api_secret: str = ""
    vendor_id: str = ""
    environment: str = "production"
    api_base_url: str = ""

    def validate(self) -> None:
        if not self.provider_name:
            raise PaymentProviderError(MISSING_CONFIGURATION)
        if not self.webhook_secret:
            raise PaymentProviderError(REQUIRED_WEBHOOK_SECRET_IS_MISSING)
        if not self.webhook_secret.strip():
            raise PaymentProviderError(INVALID_CONFIG_WEBHOOK_SECRET)

    @property
    def is_sandbox(self) -> bool:
        return self.environment in {"sandbox", "test"}


@dataclass(frozen=True)
class PaymentsConfig:
    """Configuration for webhook ingestion."""

    providers: Tuple[ProviderConfig, ...]
    http_timeout_seconds: float


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _env_prefix(provider_name: str) -> str:
    return provider_name.upper().replace("-", "_")


def load_provider_config(provider_name: str, env: Optional[Mapping[str, str]] = None) -> ProviderConfig:
    """Load the :class:`ProviderConfig` for ``provider_name`` from environment variables.

    Variables are prefixed with the upper-cased provider name, for example
    ``STRIPE_WEBHOOK_SECRET`` or ``LEMONSQUEEZY_API_KEY``.
    """

    env_mapping = os.environ if env is None else env
    name = provider_name.strip().lower()
    prefix = _env_prefix(name)

    return ProviderConfig(
        provider_name=name,
        webhook_secret=env_mapping.get(f"{prefix}_WEBHOOK_SECRET", ""),
        api_key=env_mapping.get(f"{prefix}_API_KEY", ""),
        api_secret=env_mapping.get(f"{prefix}_API_SECRET", ""),
        vendor_id=env_mapping.get(f"{prefix}_VENDOR_ID", ""),
        environment=(env_mapping.get(f"{prefix}_ENVIRONMENT") or "production").strip().lower(),
        api_base_url=(env_mapping.get(f"{prefix}_API_BASE_URL") or "").rstrip("/"),
    )


def load_provider_configs(env: Optional[Mapping[str, str]] = None) -> Tuple[ProviderConfig, ...]:
    """Load every provider listed in ``PAYMENT_PROVIDERS`` (comma separated)."""

    env_mapping = os.environ if env is None else env
    raw_names = env_mapping.get("PAYMENT_PROVIDERS", "")
    names = []
    for raw_name in raw_names.split(","):
        name = raw_name.strip().lower()
        if name and name not in names:
            names.append(name)
    return tuple(load_provider_config(name, env_mapping) for name in names)


def load_payments_config(env: Optional[Mapping[str, str]] = None) -> PaymentsConfig:
    """Load :class:`PaymentsConfig` from environment variables."""

    env_mapping = os.environ if env is None else env
    timeout = max(0.1, _to_float(env_mapping.get("PAYMENT_PROVIDER_HTTP_TIMEOUT"), default=10.0))
    return PaymentsConfig(
        providers=load_provider_configs(env_mapping),
        http_timeout_seconds=timeout,
    )


__all__ = [
    "PaymentsConfig",
    "ProviderConfig",
    "load_payments_config",
    "load_provider_config",
    "load_provider_configs",
]
