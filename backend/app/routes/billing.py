"""API routes for provider webhooks and per-user billing queries."""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Callable, Optional

from fastapi import APIRouter, Cookie, Depends, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool

from ..billingmanager import BillingManagerError
from ..billingmanager.exceptions import (
    FAILED_TO_PROCESS_EVENT,
    FAILED_TO_RETRIEVE_BILLING_EVENTS,
    FAILED_TO_RETRIEVE_SUBSCRIPTION_STATUS,
    UNABLE_TO_GET_PROVIDER_NAME_FROM_URI,
    UNABLE_TO_GET_USER_ID_FROM_URI,
    UNABLE_TO_IDENTIFY_USER,
    USER_UNAUTHORISED_TO_CARRY_OUT_OPERATION,
)
from ..errors import ManifestError
from ..paymentprovider import WebhookRequest
from ..schemas.billing import BillingDetailResponse, BillingEventListResponse, SubscriptionStatusResponse
from ..services.billing import SITE_ADMIN_ROLES, get_billing_manager_service

logger = logging.getLogger(__name__)


def _resolve_get_current_user() -> Callable[..., Any]:  # pragma: no cover
    try:
        from backend.main import get_current_user as resolved
    except ModuleNotFoundError as exc:
        if exc.name != "backend":
            raise
        from ...main import get_current_user as resolved  # type: ignore[no-redef]
    return resolved


@lru_cache(maxsize=1)
def _get_current_user_callable() -> Callable[..., Any]:
    return _resolve_get_current_user()


_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    resolved = _get_current_user_callable()
    return resolved(session_token=session_token)


router = APIRouter(prefix="/api/v1/bms", tags=["billing"])


def _requester_id(current_user: Any) -> str:
    user_id = getattr(current_user, "id", None)
    if user_id is None or str(user_id) == "":
        raise BillingManagerError(UNABLE_TO_IDENTIFY_USER).to_http_exception()
    return str(user_id)


def _target_id(user_id: str) -> str:
    target = (user_id or "").strip()
    if not target:
        raise BillingManagerError(UNABLE_TO_GET_USER_ID_FROM_URI).to_http_exception()
    return target


def _require_admin(current_user: Any) -> None:
    if getattr(current_user, "role", None) not in SITE_ADMIN_ROLES:
        raise BillingManagerError(USER_UNAUTHORISED_TO_CARRY_OUT_OPERATION).to_http_exception()


def _process_webhook(provider_name: str, webhook: WebhookRequest) -> None:
    service = get_billing_manager_service()
    try:
        service.process_billing_provider_webhook(provider_name, webhook)
    except ManifestError as exc:
        raise exc.to_http_exception() from exc
    except Exception as exc:
        logger.exception("Unexpected failure processing %s webhook", provider_name)
        raise BillingManagerError(FAILED_TO_PROCESS_EVENT).to_http_exception() from exc


@router.post("/billings/{provider_name}/webhooks", status_code=status.HTTP_200_OK)
async def receive_provider_webhook(provider_name: str, request: Request) -> Response:
    name = provider_name.strip().lower()
    if not name:
        raise BillingManagerError(UNABLE_TO_GET_PROVIDER_NAME_FROM_URI).to_http_exception()

    webhook = WebhookRequest(body=await request.body(), headers=dict(request.headers))
    await run_in_threadpool(_process_webhook, name, webhook)
    return Response(status_code=status.HTTP_200_OK)


def _list_billing_events(
    target: str,
    requester: str,
    *,
    order: Optional[str],
    per_page: int,
    page: int,
    meta: bool,
) -> BillingEventListResponse:
    service = get_billing_manager_service()
    try:
        events = service.get_user_billing_events(target, requester, page=page, per_page=per_page, order=order)
    except ManifestError as exc:
        raise exc.to_http_exception() from exc
    except Exception as exc:
        logger.exception("Unexpected failure listing billing events for user %s", target)
        raise BillingManagerError(FAILED_TO_RETRIEVE_BILLING_EVENTS).to_http_exception() from exc
    return BillingEventListResponse.from_page(events, include_meta=meta)


def _subscription_status(target: str, requester: str) -> SubscriptionStatusResponse:
    service = get_billing_manager_service()
    try:
        view = service.get_user_subscription_status(target, requester)
    except ManifestError as exc:
        raise exc.to_http_exception() from exc
    except Exception as exc:
        logger.exception("Unexpected failure reading subscription status for user %s", target)
        raise BillingManagerError(FAILED_TO_RETRIEVE_SUBSCRIPTION_STATUS).to_http_exception() from exc
    return SubscriptionStatusResponse(data=view)


def _billing_detail(target: str, requester: str) -> BillingDetailResponse:
    service = get_billing_manager_service()
    try:
        detail = service.get_user_billing_detail(target, requester)
    except ManifestError as exc:
        raise exc.to_http_exception() from exc
    except Exception as exc:
        logger.exception("Unexpected failure reading billing detail for user %s", target)
        raise BillingManagerError(FAILED_TO_RETRIEVE_SUBSCRIPTION_STATUS).to_http_exception() from exc
    return BillingDetailResponse(data=detail)


@router.get(
    "/billings/users/{user_id}/events",
    response_model=BillingEventListResponse,
    response_model_exclude_none=True,
)
def list_user_billing_events(
    user_id: str,
    order: Optional[str] = Query(None),
    per_page: int = Query(25),
    page: int = Query(1, ge=1),
    meta: bool = Query(False),
    *,
    current_user=Depends(_get_current_user),
) -> BillingEventListResponse:
    return _list_billing_events(
        _target_id(user_id),
        _requester_id(current_user),
        order=order,
        per_page=per_page,
        page=page,
        meta=meta,
    )


@router.get("/users/{user_id}/details/subscription", response_model=SubscriptionStatusResponse)
def get_user_subscription_status(
    user_id: str,
    *,
    current_user=Depends(_get_current_user),
) -> SubscriptionStatusResponse:
    return _subscription_status(_target_id(user_id), _requester_id(current_user))


@router.get("/users/{user_id}/details/billing", response_model=BillingDetailResponse)
def get_user_billing_detail(
    user_id: str,
    *,
    current_user=Depends(_get_current_user),
) -> BillingDetailResponse:
    return _billing_detail(_target_id(user_id), _requester_id(current_user))


@router.get(
    "/admin/billings/users/{user_id}/events",
    response_model=BillingEventListResponse,
    response_model_exclude_none=True,
)
def admin_list_user_billing_events(
    user_id: str,
    order: Optional[str] = Query(None),
    per_page: int = Query(25),
    page: int = Query(1, ge=1),
    meta: bool = Query(False),
    *,
    current_user=Depends(_get_current_user),
) -> BillingEventListResponse:
    _require_admin(current_user)
    return _list_billing_events(
        _target_id(user_id),
        _requester_id(current_user),
        order=order,
        per_page=per_page,
        page=page,
        meta=meta,
    )


@router.get("/admin/users/{user_id}/details/subscription", response_model=SubscriptionStatusResponse)
def admin_get_user_subscription_status(
    user_id: str,
    *,
    current_user=Depends(_get_current_user),
) -> SubscriptionStatusResponse:
    _require_admin(current_user)
    return _subscription_status(_target_id(user_id), _requester_id(current_user))


@router.get("/admin/users/{user_id}/details/billing", response_model=BillingDetailResponse)
def admin_get_user_billing_detail(
    user_id: str,
    *,
    current_user=Depends(_get_current_user),
) -> BillingDetailResponse:
    _require_admin(current_user)
    return _billing_detail(_target_id(user_id), _requester_id(current_user))


__all__ = ["router"]
