"""In-process provider used by tests and local development."""
from __future__ import annotations

from typing import List, Optional, Tuple

from .exceptions import (
    INVALID_WEBHOOK_SIGNATURE,
    PAYLOAD_PARSING,
    SUBSCRIPTION_NOT_FOUND,
    PaymentProviderError,
)
from .models import EventType, SubscriptionInfo, WebhookPayload, WebhookRequest


class MockProvider:
    """Provider returning preset payloads, optionally failing on demand.

    The instance registers as ``mock-<wrapped_name>`` and keeps a record of the
    calls it receives so tests can assert on them.
    """

    def __init__(
        self,
        wrapped_name: str,
        *,
        payload: Optional[WebhookPayload] = None,
        info: Optional[SubscriptionInfo] = None,
        should_fail: bool = False,
    ) -> None:
        self.name = f"mock-{wrapped_name}"
        self.payload = payload
        self.info = info
        self.should_fail = should_fail
        self.calls: List[Tuple[str, object]] = []

    def verify(self, request: WebhookRequest) -> None:
        self.calls.append(("verify", request))
        if self.should_fail:
            raise PaymentProviderError(INVALID_WEBHOOK_SIGNATURE)

    def parse(self, request: WebhookRequest) -> WebhookPayload:
        self.calls.append(("parse", request))
        if self.should_fail:
            raise PaymentProviderError(PAYLOAD_PARSING)
        if self.payload is None:
            return WebhookPayload(event_type=EventType.SUBSCRIPTION_CREATED.value, raw_payload=request.text)
        return self.payload.model_copy(update={"raw_payload": request.text})

    def lookup_subscription(self, subscription_id: str) -> SubscriptionInfo:
        self.calls.append(("lookup_subscription", subscription_id))
        if self.should_fail:
            raise PaymentProviderError(SUBSCRIPTION_NOT_FOUND)
        if self.info is None:
            return SubscriptionInfo(subscription_id=subscription_id)
        return self.info


__all__ = ["MockProvider"]
