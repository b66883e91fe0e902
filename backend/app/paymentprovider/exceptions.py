"""Errors raised by payment provider adapters and the provider registry."""
from __future__ import annotations

from typing import Dict

from ..errors import ErrorDetail, ManifestError

MISSING_CONFIGURATION = "PaymentProviderMissingConfiguration"
REQUIRED_WEBHOOK_SECRET_IS_MISSING = "PaymentProviderRequiredWebhookSecretIsMissing"
INVALID_CONFIG_WEBHOOK_SECRET = "PaymentProviderInvalidConfigWebhookSecret"
INVALID_CONFIGURATION = "PaymentProviderInvalidConfiguration"
INVALID_WEBHOOK_SIGNATURE = "PaymentProviderInvalidWebhookSignature"
MISSING_SIGNATURE = "PaymentProviderMissingSignature"
INVALID_PAYLOAD = "PaymentProviderInvalidPayload"
UNSUPPORTED_PROVIDER = "PaymentProviderUnsupportedProvider"
PAYLOAD_PARSING = "PaymentProviderPayloadParsing"
MISSING_REQUIRED_FIELD = "PaymentProviderMissingRequiredField"
INVALID_EVENT_TYPE = "PaymentProviderInvalidEventType"
API_REQUEST_FAILED = "PaymentProviderAPIRequestFailed"
API_RESPONSE_INVALID = "PaymentProviderAPIResponseInvalid"
SUBSCRIPTION_NOT_FOUND = "PaymentProviderSubscriptionNotFound"
KOFI_NO_SUBSCRIPTION_API = "PaymentProviderKofiNoSubscriptionAPI"
WEBHOOK_TIMESTAMP_TOO_OLD = "PaymentProviderWebhookTimestampTooOld"
MISSING_PAYLOAD_CUSTOMER_EMAIL = "PaymentProviderMissingPayloadCustomerEmail"
NOT_FOUND = "PaymentProviderNotFound"


_BAD_REQUEST = "Bad Request"
_INTERNAL = "Internal Server Error"

PAYMENT_PROVIDER_ERRORS: Dict[str, ErrorDetail] = {
    MISSING_CONFIGURATION: ErrorDetail(_INTERNAL, "Provider name is required in configuration", 500, "PP00-001"),
    REQUIRED_WEBHOOK_SECRET_IS_MISSING: ErrorDetail(_INTERNAL, "Webhook secret is required in configuration", 500, "PP00-002"),
    INVALID_CONFIG_WEBHOOK_SECRET: ErrorDetail(_INTERNAL, "Webhook secret in configuration is invalid", 500, "PP00-003"),
    INVALID_CONFIGURATION: ErrorDetail(_BAD_REQUEST, "Provider configuration is invalid", 400, "PP00-003"),
    INVALID_WEBHOOK_SIGNATURE: ErrorDetail(_BAD_REQUEST, "Webhook signature verification failed", 400, "PP00-004"),
    MISSING_SIGNATURE: ErrorDetail(_BAD_REQUEST, "Webhook signature is missing", 400, "PP00-005"),
    INVALID_PAYLOAD: ErrorDetail(_BAD_REQUEST, "Webhook payload is invalid or malformed", 400, "PP00-006"),
    UNSUPPORTED_PROVIDER: ErrorDetail(_BAD_REQUEST, "Payment provider is not supported", 400, "PP00-007"),
    PAYLOAD_PARSING: ErrorDetail(_BAD_REQUEST, "Failed to parse webhook payload", 400, "PP00-008"),
    MISSING_REQUIRED_FIELD: ErrorDetail(_BAD_REQUEST, "Required field missing from webhook payload", 400, "PP00-009"),
    INVALID_EVENT_TYPE: ErrorDetail(_BAD_REQUEST, "Event type is not recognised", 400, "PP00-010"),
    API_REQUEST_FAILED: ErrorDetail(_INTERNAL, "Failed to make API request to provider", 500, "PP00-011"),
    API_RESPONSE_INVALID: ErrorDetail(_INTERNAL, "Provider API returned invalid response", 500, "PP00-012"),
    SUBSCRIPTION_NOT_FOUND: ErrorDetail("Not Found", "Subscription not found", 404, "PP00-013"),
    KOFI_NO_SUBSCRIPTION_API: ErrorDetail("Not Implemented", "Ko-fi does not provide a subscription API", 501, "PP00-014"),
    WEBHOOK_TIMESTAMP_TOO_OLD: ErrorDetail(_BAD_REQUEST, "Webhook is too old", 400, "PP00-015"),
    MISSING_PAYLOAD_CUSTOMER_EMAIL: ErrorDetail(_BAD_REQUEST, "Customer email is missing from webhook payload", 400, "PP00-016"),
    NOT_FOUND: ErrorDetail(_INTERNAL, "Payment provider not found in registry", 500, "PP00-017"),
}


class PaymentProviderError(ManifestError):
    """Verification, parsing, enrichment or configuration failure of a provider."""

    manifest = PAYMENT_PROVIDER_ERRORS


__all__ = [
    "API_REQUEST_FAILED",
    "API_RESPONSE_INVALID",
    "INVALID_CONFIGURATION",
    "INVALID_CONFIG_WEBHOOK_SECRET",
    "INVALID_EVENT_TYPE",
    "INVALID_PAYLOAD",
    "INVALID_WEBHOOK_SIGNATURE",
    "KOFI_NO_SUBSCRIPTION_API",
    "MISSING_CONFIGURATION",
    "MISSING_PAYLOAD_CUSTOMER_EMAIL",
    "MISSING_REQUIRED_FIELD",
    "MISSING_SIGNATURE",
    "NOT_FOUND",
    "PAYLOAD_PARSING",
    "PAYMENT_PROVIDER_ERRORS",
    "PaymentProviderError",
    "REQUIRED_WEBHOOK_SECRET_IS_MISSING",
    "SUBSCRIPTION_NOT_FOUND",
    "UNSUPPORTED_PROVIDER",
    "WEBHOOK_TIMESTAMP_TOO_OLD",
]
