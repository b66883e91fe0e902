"""Tests for per-user billing queries and billing text formatting."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import pytest

from backend.app.billing import BillingError, BillingEvent, BillingStore, InMemoryBillingRepository, Subscription
from backend.app.billing import exceptions as billing_errors
from backend.app.billingmanager import (
    BillingManagerError,
    BillingManagerService,
    DirectoryUser,
    UserDirectory,
    format_event_description,
    generate_subscription_summary,
    parse_time_or_none,
)
from backend.app.billingmanager import exceptions as bm_errors
from backend.app.paymentprovider import ProviderRegistry

START = datetime(2025, 1, 1, tzinfo=timezone.utc)


class TickingClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


class FakeUserDirectory(UserDirectory):
    def __init__(self) -> None:
        self.users: Dict[str, DirectoryUser] = {}

    def add(self, user_id: str, email: str = "", *, is_admin: bool = False) -> None:
        self.users[user_id] = DirectoryUser(id=user_id, email=email, is_admin=is_admin)

    def get_user_by_id(self, user_id: str) -> Optional[DirectoryUser]:
        return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[DirectoryUser]:
        return next((user for user in self.users.values() if user.email == email), None)


@pytest.fixture
def query_components():
    store = BillingStore(repository=InMemoryBillingRepository(), clock=TickingClock(START))
    directory = FakeUserDirectory()
    directory.add("u-alice", "alice@example.com")
    directory.add("u-bob", "bob@example.com")
    directory.add("u-admin", "admin@example.com", is_admin=True)
    service = BillingManagerService(registry=ProviderRegistry(), store=store, user_directory=directory)
    return store, directory, service


def _subscription(**overrides) -> Subscription:
    values = {
        "user_id": "u-alice",
        "email": "alice@example.com",
        "status": "active",
        "integrator": "stripe",
        "integrator_subscription_id": "sub_1",
        "plan_name": "Pro",
        "amount": 2999,
        "currency": "USD",
        "next_billing_date": datetime(2025, 1, 1, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return Subscription(**values)


def _event(**overrides) -> BillingEvent:
    values = {
        "user_id": "u-alice",
        "event_type": "payment.succeeded",
        "integrator": "stripe",
        "integrator_event_id": "evt_1",
        "integrator_subscription_id": "sub_1",
        "status": "active",
        "plan_name": "Pro",
        "amount": 2999,
        "currency": "USD",
        "event_time": START,
    }
    values.update(overrides)
    return BillingEvent(**values)


@pytest.mark.parametrize(
    ("user_id", "requester", "expected_key"),
    [
        ("", "u-alice", bm_errors.REQUIRES_USER_ID_IS_MISSING),
        ("u-alice", "u-bob", bm_errors.USER_UNAUTHORISED_TO_CARRY_OUT_OPERATION),
        ("u-alice", "u-ghost", bm_errors.REQUIRES_USER_ID_IS_MISSING),
    ],
)
def test_authorization_rejections(query_components, user_id, requester, expected_key):
    *_, service = query_components

    for query in (service.get_user_subscription_status, service.get_user_billing_events, service.get_user_billing_detail):
        with pytest.raises(BillingManagerError) as excinfo:
            query(user_id, requester)
        assert excinfo.value.key == expected_key


@pytest.mark.parametrize("requester", ["u-alice", "u-admin", ""])
def test_authorization_allows_self_admin_and_internal_calls(query_components, requester):
    *_, service = query_components

    status = service.get_user_subscription_status("u-alice", requester)

    assert status.has_subscription is False


def test_other_requester_needs_a_directory():
    service = BillingManagerService(
        registry=ProviderRegistry(),
        store=BillingStore(repository=InMemoryBillingRepository()),
    )

    with pytest.raises(BillingManagerError) as excinfo:
        service.get_user_billing_detail("u-alice", "u-admin")

    assert excinfo.value.key == bm_errors.USER_UNAUTHORISED_TO_CARRY_OUT_OPERATION
    assert excinfo.value.status_code == 403


def test_subscription_status_without_subscription(query_components):
    *_, service = query_components

    status = service.get_user_subscription_status("u-alice", "u-alice")

    assert status.has_subscription is False
    assert status.status == "none"
    assert status.plan_name == ""


def test_subscription_status_reports_latest_subscription(query_components):
    store, _, service = query_components
    store.create_subscription(_subscription(status="cancelled"))
    store.create_subscription(_subscription(integrator="kofi", integrator_subscription_id="kofi_1", plan_name="Gold"))

    status = service.get_user_subscription_status("u-alice", "u-alice")

    assert status.has_subscription is True
    assert status.provider == "kofi"
    assert status.plan_name == "Gold"
    assert status.status == "active"
    assert status.is_active is True
    assert status.is_in_good_standing is True


def test_subscription_status_claims_orphans_by_email(query_components):
    store, _, service = query_components
    orphan = store.create_subscription(_subscription(user_id="", status="trialing"))

    status = service.get_user_subscription_status("u-alice", "u-alice")

    assert status.has_subscription is True
    assert status.status == "trialing"
    assert store.get_subscription_by_id(orphan.id).user_id == "u-alice"


def test_subscription_status_does_not_claim_other_emails(query_components):
    store, _, service = query_components
    store.create_subscription(_subscription(user_id="", email="someone@example.com"))

    status = service.get_user_subscription_status("u-alice", "u-alice")

    assert status.has_subscription is False
    assert store.get_total_subscriptions() == 1


def test_billing_events_page_with_descriptions(query_components):
    store, _, service = query_components
    store.create_billing_event(_event())
    store.create_billing_event(_event(integrator_event_id="evt_2", event_type="payment.failed", status="past_due"))
    store.create_billing_event(_event(integrator_event_id="evt_3", user_id="u-bob"))

    page = service.get_user_billing_events("u-alice", "u-admin", per_page=1, page=1)
    everything = service.get_user_billing_events("u-alice", "u-alice", order="created_at_asc")

    assert page.total == 2
    assert page.total_pages == 2
    assert page.items[0].description == "Payment failed for Pro"
    assert [summary.description for summary in everything.items] == [
        "Payment successful for Pro",
        "Payment failed for Pro",
    ]
    assert everything.items[0].amount == 2999


def test_billing_events_reject_bad_paging_and_order(query_components):
    store, _, service = query_components
    store.create_billing_event(_event())

    with pytest.raises(BillingError) as excinfo:
        service.get_user_billing_events("u-alice", "u-alice", page=5)
    assert excinfo.value.key == billing_errors.PAGE_OUT_OF_RANGE

    with pytest.raises(BillingError) as excinfo:
        service.get_user_billing_events("u-alice", "u-alice", order="plan_asc")
    assert excinfo.value.key == billing_errors.INVALID_ORDER


def test_billing_detail_without_subscription(query_components):
    *_, service = query_components

    detail = service.get_user_billing_detail("u-bob", "u-bob")

    assert detail.has_subscription is False
    assert detail.summary == "No active subscription found"


def test_billing_detail_for_active_subscription(query_components):
    store, _, service = query_components
    store.create_subscription(_subscription(cancel_url="https://billing.test/cancel"))

    detail = service.get_user_billing_detail("u-alice", "u-alice")

    assert detail.has_subscription is True
    assert detail.provider == "stripe"
    assert detail.plan == "Pro"
    assert detail.status == "active"
    assert detail.cancel_url == "https://billing.test/cancel"
    assert detail.summary == "Your Pro plan will automatically renew on 01 January, 2025 for 29.99 USD"


@pytest.mark.parametrize(
    ("overrides", "expected"),
    [
        ({"next_billing_date": None}, "Your Pro plan is active"),
        (
            {"status": "trialing"},
            "Your trial will end on 01 January, 2025. You'll then be charged 29.99 USD for Pro",
        ),
        ({"status": "trialing", "next_billing_date": None}, "You're on a trial of Pro"),
        ({"status": "past_due"}, "Your subscription payment is past due. Please update your payment method."),
        (
            {"status": "cancelled", "available_until_date": datetime(2025, 3, 15, tzinfo=timezone.utc)},
            "Your subscription was cancelled and will expire on 15 March, 2025",
        ),
        ({"status": "cancelled"}, "Your subscription has been cancelled"),
        ({"status": "paused"}, "Subscription status: paused"),
    ],
)
def test_generate_subscription_summary(overrides, expected):
    assert generate_subscription_summary(_subscription(**overrides)) == expected


@pytest.mark.parametrize(
    ("event_type", "status", "expected"),
    [
        ("payment.succeeded", "active", "Payment successful for Pro"),
        ("payment.succeeded", "trialing", "Trial started for Pro"),
        ("payment.refunded", "active", "Payment refunded for Pro"),
        ("subscription.created", "active", "Subscription created: Pro"),
        ("subscription.cancelled", "cancelled", "Subscription cancelled: Pro"),
        ("subscription.updated", "active", "Subscription updated: Pro"),
        ("trial.will_end", "trialing", "trial.will_end - Pro"),
    ],
)
def test_format_event_description(event_type, status, expected):
    assert format_event_description(event_type, "Pro", status) == expected


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("2025-01-01T00:00:00Z", datetime(2025, 1, 1, tzinfo=timezone.utc)),
        ("2025-01-01T02:00:00+02:00", datetime(2025, 1, 1, tzinfo=timezone.utc)),
        ("2025-01-01T00:00:00", datetime(2025, 1, 1, tzinfo=timezone.utc)),
        ("2025-01-01 08:30:00", datetime(2025, 1, 1, 8, 30, tzinfo=timezone.utc)),
        ("2025-01-01", datetime(2025, 1, 1, tzinfo=timezone.utc)),
        ("", None),
        (None, None),
        ("next tuesday", None),
        ("2025-13-01T00:00:00Z", None),
    ],
)
def test_parse_time_or_none(raw, expected):
    assert parse_time_or_none(raw) == expected
