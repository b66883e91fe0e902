"""Errors raised while reconciling webhooks and answering billing queries."""
from __future__ import annotations

from typing import Dict

from ..errors import ErrorDetail, ManifestError

UNABLE_TO_GET_PROVIDER_NAME_FROM_URI = "BillingManagerUnableToGetProviderNameFromURI"
UNABLE_TO_IDENTIFY_USER = "BillingManagerUnableToIdentifyUser"
UNABLE_TO_GET_USER_ID_FROM_URI = "BillingManagerUnableToGetUserIdFromURI"
INVALID_REQUEST_PAYLOAD = "InvalidBillingManagerRequestPayload"
FAILED_WEBHOOK_VERIFICATION = "BillingManagerFailedWebhookVerification"
FAILED_TO_PROCESS_EVENT = "BillingManagerFailedToProcessEvent"
FAILED_TO_RETRIEVE_SUBSCRIPTION_STATUS = "BillingManagerFailedToRetrieveSubscriptionStatus"
FAILED_TO_RETRIEVE_BILLING_EVENTS = "BillingManagerFailedToRetrieveBillingEvents"
UNABLE_TO_RESOLVE_USER_ID = "BillingManagerUnableToResolveUserId"
REQUIRES_USER_ID_IS_MISSING = "BillingManagerRequiresUserIdIsMissing"
USER_UNAUTHORISED_TO_CARRY_OUT_OPERATION = "BillingManagerUserUnauthorisedToCarryOutOperation"
NO_USER_IDENTIFYING_INFORMATION_IN_PAYLOAD = "BillingManagerNoUserIdentifyingInformationInPayload"

_BAD_REQUEST = "Bad Request"
_INTERNAL = "Internal Server Error"

BILLING_MANAGER_ERRORS: Dict[str, ErrorDetail] = {
    UNABLE_TO_GET_PROVIDER_NAME_FROM_URI: ErrorDetail(_BAD_REQUEST, "Unable to get provider name from URI", 400, "BM00-001"),
    UNABLE_TO_IDENTIFY_USER: ErrorDetail("Unauthorized", "Unable to identify user making the request", 401, "BM00-002"),
    UNABLE_TO_GET_USER_ID_FROM_URI: ErrorDetail(_BAD_REQUEST, "Unable to get user ID from URI", 400, "BM00-003"),
    INVALID_REQUEST_PAYLOAD: ErrorDetail(_BAD_REQUEST, "Invalid billing manager request payload", 400, "BM00-004"),
    FAILED_WEBHOOK_VERIFICATION: ErrorDetail(_INTERNAL, "Failed to verify webhook", 500, "BM00-005"),
    FAILED_TO_PROCESS_EVENT: ErrorDetail(_INTERNAL, "Failed to process billing event", 500, "BM00-006"),
    FAILED_TO_RETRIEVE_SUBSCRIPTION_STATUS: ErrorDetail(_INTERNAL, "Failed to retrieve subscription status", 500, "BM00-007"),
    FAILED_TO_RETRIEVE_BILLING_EVENTS: ErrorDetail(_INTERNAL, "Failed to retrieve billing events", 500, "BM00-008"),
    UNABLE_TO_RESOLVE_USER_ID: ErrorDetail("Not Found", "Unable to resolve user ID from payload", 404, "BM00-009"),
    REQUIRES_USER_ID_IS_MISSING: ErrorDetail(_BAD_REQUEST, "User ID is required", 400, "BM00-010"),
    USER_UNAUTHORISED_TO_CARRY_OUT_OPERATION: ErrorDetail("Forbidden", "User not authorised to carry out operation", 403, "BM00-011"),
    NO_USER_IDENTIFYING_INFORMATION_IN_PAYLOAD: ErrorDetail("Not Found", "Webhook payload carries no information identifying a user", 404, "BM00-012"),
}


class BillingManagerError(ManifestError):
    """Resolution or authorization failure of the billing manager."""

    manifest = BILLING_MANAGER_ERRORS


__all__ = [
    "BILLING_MANAGER_ERRORS",
    "BillingManagerError",
    "FAILED_TO_PROCESS_EVENT",
    "FAILED_TO_RETRIEVE_BILLING_EVENTS",
    "FAILED_TO_RETRIEVE_SUBSCRIPTION_STATUS",
    "FAILED_WEBHOOK_VERIFICATION",
    "INVALID_REQUEST_PAYLOAD",
    "NO_USER_IDENTIFYING_INFORMATION_IN_PAYLOAD",
    "REQUIRES_USER_ID_IS_MISSING",
    "UNABLE_TO_GET_PROVIDER_NAME_FROM_URI",
    "UNABLE_TO_GET_USER_ID_FROM_URI",
    "UNABLE_TO_IDENTIFY_USER",
    "UNABLE_TO_RESOLVE_USER_ID",
    "USER_UNAUTHORISED_TO_CARRY_OUT_OPERATION",
]
