"""Errors raised by the billing store."""
from __future__ import annotations

from typing import Dict

from ..errors import ErrorDetail, ManifestError

SUBSCRIPTION_NOT_FOUND = "BillingSubscriptionNotFound"
EVENT_NOT_FOUND = "BillingEventNotFound"
INVALID_SUBSCRIPTION_ID = "BillingInvalidSubscriptionID"
INVALID_USER_ID = "BillingInvalidUserID"
INVALID_EMAIL = "BillingInvalidEmail"
MISSING_REQUIRED_FIELD = "BillingMissingRequiredField"
INVALID_INTEGRATOR = "BillingInvalidIntegrator"
SUBSCRIPTION_ALREADY_EXISTS = "BillingSubscriptionAlreadyExists"
EVENT_ALREADY_PROCESSED = "BillingEventAlreadyProcessed"
INVALID_ORDER = "BillingInvalidOrder"
PAGE_OUT_OF_RANGE = "BillingPageOutOfRange"

_BAD_REQUEST = "Bad Request"
_CONFLICT = "Conflict"
_NOT_FOUND = "Not Found"

BILLING_ERRORS: Dict[str, ErrorDetail] = {
    SUBSCRIPTION_NOT_FOUND: ErrorDetail(_NOT_FOUND, "Subscription not found", 404, "BIL00-001"),
    EVENT_NOT_FOUND: ErrorDetail(_NOT_FOUND, "Billing event not found", 404, "BIL00-002"),
    INVALID_SUBSCRIPTION_ID: ErrorDetail(_BAD_REQUEST, "Invalid subscription ID", 400, "BIL00-003"),
    INVALID_USER_ID: ErrorDetail(_BAD_REQUEST, "Invalid user ID", 400, "BIL00-004"),
    INVALID_EMAIL: ErrorDetail(_BAD_REQUEST, "Invalid email address", 400, "BIL00-005"),
    MISSING_REQUIRED_FIELD: ErrorDetail(_BAD_REQUEST, "Missing required field", 400, "BIL00-007"),
    INVALID_INTEGRATOR: ErrorDetail(_BAD_REQUEST, "Invalid payment provider integrator", 400, "BIL00-008"),
    SUBSCRIPTION_ALREADY_EXISTS: ErrorDetail(_CONFLICT, "Subscription already exists for this integrator", 409, "BIL00-011"),
    EVENT_ALREADY_PROCESSED: ErrorDetail(_CONFLICT, "Billing event already processed", 409, "BIL00-012"),
    INVALID_ORDER: ErrorDetail(_BAD_REQUEST, "Requested sort order is not supported", 400, "BIL00-027"),
    PAGE_OUT_OF_RANGE: ErrorDetail(_BAD_REQUEST, "Requested page is out of range", 400, "BIL00-028"),
}


class BillingError(ManifestError):
    """Lookup, validation, conflict or paging failure of the billing store."""

    manifest = BILLING_ERRORS


__all__ = [
    "BILLING_ERRORS",
    "BillingError",
    "EVENT_ALREADY_PROCESSED",
    "EVENT_NOT_FOUND",
    "INVALID_EMAIL",
    "INVALID_INTEGRATOR",
    "INVALID_ORDER",
    "INVALID_SUBSCRIPTION_ID",
    "INVALID_USER_ID",
    "MISSING_REQUIRED_FIELD",
    "PAGE_OUT_OF_RANGE",
    "SUBSCRIPTION_ALREADY_EXISTS",
    "SUBSCRIPTION_NOT_FOUND",
]
