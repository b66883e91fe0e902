"""Base class and helpers shared by payment provider adapters."""
from __future__ import annotations

import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from .config import ProviderConfig
from .exceptions import (
    API_REQUEST_FAILED,
    API_RESPONSE_INVALID,
    PAYLOAD_PARSING,
    SUBSCRIPTION_NOT_FOUND,
    PaymentProviderError,
)
from .http import HTTPClient, UrllibHTTPClient
from .models import SubscriptionInfo, WebhookPayload, WebhookRequest

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

RFC3339_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def secure_compare(expected: str, provided: str) -> bool:
    """Compare two secrets in constant time."""

    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def format_rfc3339(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(RFC3339_FORMAT)


def format_unix_timestamp(value: Any) -> str:
    """Format a unix timestamp as RFC3339, returning ``""`` for missing values."""

    if value is None or isinstance(value, bool):
        return ""
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return ""
    return format_rfc3339(datetime.fromtimestamp(seconds, tz=timezone.utc))


def load_json_object(body: bytes) -> Dict[str, Any]:
    """Decode a webhook body that must contain a JSON object."""

    try:
        document = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise PaymentProviderError(PAYLOAD_PARSING) from exc
    if not isinstance(document, dict):
        raise PaymentProviderError(PAYLOAD_PARSING)
    return document


class PaymentProvider:
    """Base adapter turning a vendor webhook into a :class:`WebhookPayload`."""

    name = "base"
    default_api_base_url = ""

    def __init__(
        self,
        config: ProviderConfig,
        *,
        http_client: Optional[HTTPClient] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        config.validate()
        self.config = config
        self.http_client = http_client or UrllibHTTPClient()
        self.clock = clock or utc_now

    def verify(self, request: WebhookRequest) -> None:
        """Authenticate ``request``; raise :class:`PaymentProviderError` on failure."""

        raise NotImplementedError

    def parse(self, request: WebhookRequest) -> WebhookPayload:
        raise NotImplementedError

    def lookup_subscription(self, subscription_id: str) -> SubscriptionInfo:
        raise NotImplementedError

    @property
    def api_base_url(self) -> str:
        return (self.config.api_base_url or self.default_api_base_url).rstrip("/")

    def _api_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}", "Accept": "application/json"}

    def _get_json(self, path: str, *, headers: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        """GET ``path`` on the provider API and decode the JSON object it returns."""

        url = f"{self.api_base_url}{path}"
        try:
            response = self.http_client.get(url, headers=headers or self._api_headers())
        except OSError as exc:
            logger.error(
                "Provider API request failed",
                extra={"payment_provider": self.name, "api_url": url, "error": str(exc)},
            )
            raise PaymentProviderError(API_REQUEST_FAILED) from exc

        if response.status_code != 200:
            logger.warning(
                "Provider API returned unexpected status",
                extra={"payment_provider": self.name, "api_url": url, "status_code": response.status_code},
            )
            raise PaymentProviderError(SUBSCRIPTION_NOT_FOUND)

        try:
            document = json.loads(response.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise PaymentProviderError(API_RESPONSE_INVALID) from exc
        if not isinstance(document, dict):
            raise PaymentProviderError(API_RESPONSE_INVALID)
        return document


__all__ = [
    "Clock",
    "PaymentProvider",
    "RFC3339_FORMAT",
    "format_rfc3339",
    "format_unix_timestamp",
    "load_json_object",
    "secure_compare",
    "utc_now",
]
