"""Tests for the PostgreSQL billing repository against a scripted connection."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import psycopg2.errors
import pytest

from backend.app.billing import (
    BillingError,
    BillingEvent,
    BillingEventFilter,
    Subscription,
    SubscriptionFilter,
    SubscriptionOrder,
)
from backend.app.billing import exceptions as billing_errors
from backend.app.billing.repository import (
    SCHEMA_STATEMENTS,
    PostgresBillingRepository,
    _billing_event_conditions,
    _row_to_subscription,
    _subscription_conditions,
    ensure_schema,
)

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, connection: "FakeConnection") -> None:
        self.connection = connection
        self.rowcount = 0
        self.closed = False

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def execute(self, sql: str, params: Any = None) -> None:
        self.connection.executed.append((" ".join(sql.split()), params))
        if self.connection.error is not None:
            raise self.connection.error
        self.rowcount = self.connection.rowcount

    def fetchone(self) -> Optional[dict]:
        return self.connection.rows[0] if self.connection.rows else None

    def fetchall(self) -> List[dict]:
        return list(self.connection.rows)

    def close(self) -> None:
        self.closed = True


class FakeConnection:
    def __init__(self, rows: Optional[List[dict]] = None, *, rowcount: int = 0, error: Optional[Exception] = None) -> None:
        self.rows = rows or []
        self.rowcount = rowcount
        self.error = error
        self.executed: List[Tuple[str, Any]] = []

    def cursor(self, cursor_factory=None) -> FakeCursor:
        return FakeCursor(self)


def _subscription_row(**overrides) -> dict:
    row = {
        "id": "s-1",
        "user_id": "",
        "email": "alice@example.com",
        "status": "active",
        "integrator": "stripe",
        "integrator_subscription_id": "sub_1",
        "integrator_customer_id": "cus_1",
        "plan_name": "Pro",
        "plan_id": "",
        "amount": 2999,
        "currency": "USD",
        "billing_interval": "",
        "next_billing_date": NOW,
        "available_until_date": None,
        "trial_ends_at": None,
        "cancelled_at": None,
        "provider_created_at": None,
        "provider_updated_at": None,
        "cancel_url": "",
        "update_url": "",
        "metadata": {},
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_ensure_schema_runs_every_statement():
    connection = FakeConnection()

    ensure_schema(connection)

    assert len(connection.executed) == len(SCHEMA_STATEMENTS)
    assert "UNIQUE (integrator, integrator_subscription_id)" in connection.executed[0][0]


def test_row_to_subscription_defaults_metadata_and_amount():
    subscription = _row_to_subscription(_subscription_row(amount=None, metadata=None))

    assert subscription.metadata == {}
    assert subscription.amount == 0
    assert subscription.is_orphaned is True


def test_subscription_conditions():
    where, params = _subscription_conditions(
        SubscriptionFilter(user_ids=("u-1",), emails=("A@B.com",), plan_name_contains="pro", unassociated_only=True)
    )

    assert where == (
        "WHERE user_id = ANY(%(user_ids)s) AND email = ANY(%(emails)s) "
        "AND plan_name ILIKE %(plan_name_pattern)s AND user_id = ''"
    )
    assert params == {"user_ids": ["u-1"], "emails": ["a@b.com"], "plan_name_pattern": "%pro%"}
    assert _subscription_conditions(SubscriptionFilter()) == ("", {})


def test_billing_event_conditions():
    where, params = _billing_event_conditions(BillingEventFilter(integrator="kofi", event_time_from=NOW))

    assert where == "WHERE integrator = %(integrator)s AND event_time >= %(event_time_from)s"
    assert params == {"integrator": "kofi", "event_time_from": NOW}


def test_insert_subscription_maps_unique_violation():
    repository = PostgresBillingRepository(conn=FakeConnection(error=psycopg2.errors.UniqueViolation()))

    with pytest.raises(BillingError) as excinfo:
        repository.insert_subscription(Subscription(**_subscription_row()))

    assert excinfo.value.key == billing_errors.SUBSCRIPTION_ALREADY_EXISTS


def test_insert_subscription_returns_stored_row():
    connection = FakeConnection(rows=[_subscription_row(metadata={"source": "webhook"})])
    repository = PostgresBillingRepository(conn=connection)

    stored = repository.insert_subscription(Subscription(**_subscription_row()))

    sql, params = connection.executed[0]
    assert sql.startswith("INSERT INTO billing_subscriptions")
    assert params["integrator_subscription_id"] == "sub_1"
    assert stored.metadata == {"source": "webhook"}


def test_update_subscription_fields_sets_only_named_columns():
    connection = FakeConnection(rows=[_subscription_row(user_id="u-carol", status="past_due")])
    repository = PostgresBillingRepository(conn=connection)

    updated = repository.update_subscription_fields(
        "s-1", {"status": "past_due", "metadata": {"plan": "pro"}, "updated_at": NOW}
    )

    sql, params = connection.executed[0]
    assert sql == (
        "UPDATE billing_subscriptions SET status = %(status)s, metadata = %(metadata)s, "
        "updated_at = %(updated_at)s WHERE id = %(id)s RETURNING *"
    )
    assert "user_id" not in params
    assert params["id"] == "s-1"
    assert params["metadata"].adapted == {"plan": "pro"}
    assert updated.user_id == "u-carol"


def test_update_subscription_fields_rejects_identity_columns():
    repository = PostgresBillingRepository(conn=FakeConnection())

    with pytest.raises(ValueError):
        repository.update_subscription_fields("s-1", {"integrator_subscription_id": "sub_2"})


def test_associate_billing_events_targets_orphan_events_of_owned_subscriptions():
    connection = FakeConnection(rowcount=3)
    repository = PostgresBillingRepository(conn=connection)

    assert repository.associate_billing_events("u-1", updated_at=NOW) == 3

    sql, params = connection.executed[0]
    assert "WHERE user_id = '' AND subscription_id IN ( SELECT id FROM billing_subscriptions WHERE user_id = %s )" in sql
    assert params == ("u-1", NOW, "u-1")


def test_list_subscriptions_orders_and_pages():
    connection = FakeConnection(rows=[_subscription_row(), _subscription_row(id="s-2", integrator_subscription_id="sub_2")])
    repository = PostgresBillingRepository(conn=connection)

    items = repository.list_subscriptions(
        SubscriptionFilter(integrator="stripe"),
        order=SubscriptionOrder.CREATED_AT_ASC,
        limit=10,
        offset=20,
    )

    sql, params = connection.executed[0]
    assert [item.id for item in items] == ["s-1", "s-2"]
    assert "ORDER BY created_at ASC, id ASC" in sql
    assert params == {"integrator": "stripe", "limit": 10, "offset": 20}


def test_count_and_associate():
    repository = PostgresBillingRepository(conn=FakeConnection(rows=[{"total": 4}], rowcount=2))

    assert repository.count_subscriptions(SubscriptionFilter()) == 4
    assert repository.associate_subscriptions("u-1", "alice@example.com", updated_at=NOW) == 2


def test_insert_billing_event_maps_unique_violation():
    repository = PostgresBillingRepository(conn=FakeConnection(error=psycopg2.errors.UniqueViolation()))
    event = BillingEvent(event_type="payment.succeeded", integrator="stripe", integrator_event_id="evt_1")

    with pytest.raises(BillingError) as excinfo:
        repository.insert_billing_event(event)

    assert excinfo.value.key == billing_errors.EVENT_ALREADY_PROCESSED


def test_missing_rows_return_none():
    repository = PostgresBillingRepository(conn=FakeConnection())

    assert repository.get_subscription("missing") is None
    assert repository.get_subscription_by_integrator_id("stripe", "missing") is None
    assert repository.get_billing_event("missing") is None
    assert repository.get_first_successful_billing_event_with_plan_name("stripe", "sub_1") is None
    assert repository.update_subscription_fields("missing", {"status": "cancelled"}) is None
    assert repository.delete_subscription("missing") is False
