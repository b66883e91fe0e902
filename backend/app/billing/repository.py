"""Persistence layer for subscriptions and billing events."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .exceptions import EVENT_ALREADY_PROCESSED, SUBSCRIPTION_ALREADY_EXISTS, BillingError
from .models import (
    BillingEvent,
    BillingEventFilter,
    BillingEventOrder,
    Subscription,
    SubscriptionFilter,
    SubscriptionOrder,
)

try:  # pragma: no cover - resolve connection helper when imported from FastAPI app
    from backend.app_context import get_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "backend":
        raise
    from ...app_context import get_conn  # type: ignore[no-redef]

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS: Tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS billing_subscriptions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL DEFAULT '',
        email TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL,
        integrator TEXT NOT NULL,
        integrator_subscription_id TEXT NOT NULL,
        integrator_customer_id TEXT NOT NULL DEFAULT '',
        plan_name TEXT NOT NULL DEFAULT '',
        plan_id TEXT NOT NULL DEFAULT '',
        amount BIGINT NOT NULL DEFAULT 0,
        currency TEXT NOT NULL DEFAULT '',
        billing_interval TEXT NOT NULL DEFAULT '',
        next_billing_date TIMESTAMPTZ,
        available_until_date TIMESTAMPTZ,
        trial_ends_at TIMESTAMPTZ,
        cancelled_at TIMESTAMPTZ,
        provider_created_at TIMESTAMPTZ,
        provider_updated_at TIMESTAMPTZ,
        cancel_url TEXT NOT NULL DEFAULT '',
        update_url TEXT NOT NULL DEFAULT '',
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT billing_subscriptions_integrator_key UNIQUE (integrator, integrator_subscription_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS billing_subscriptions_email_idx ON billing_subscriptions (email)",
    "CREATE INDEX IF NOT EXISTS billing_subscriptions_user_id_idx ON billing_subscriptions (user_id)",
    """
    CREATE TABLE IF NOT EXISTS billing_events (
        id TEXT PRIMARY KEY,
        subscription_id TEXT NOT NULL DEFAULT '',
        user_id TEXT NOT NULL DEFAULT '',
        event_type TEXT NOT NULL,
        integrator TEXT NOT NULL,
        integrator_event_id TEXT NOT NULL,
        integrator_subscription_id TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT '',
        amount BIGINT NOT NULL DEFAULT 0,
        currency TEXT NOT NULL DEFAULT '',
        plan_name TEXT NOT NULL DEFAULT '',
        receipt_url TEXT NOT NULL DEFAULT '',
        raw_payload TEXT NOT NULL DEFAULT '',
        event_time TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT billing_events_integrator_key UNIQUE (integrator, integrator_event_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS billing_events_user_id_idx ON billing_events (user_id)",
    """
    CREATE INDEX IF NOT EXISTS billing_events_subscription_idx
        ON billing_events (integrator, integrator_subscription_id)
    """,
)

_SUBSCRIPTION_ORDER_SQL: Dict[SubscriptionOrder, str] = {
    SubscriptionOrder.CREATED_AT_ASC: "created_at ASC, id ASC",
    SubscriptionOrder.CREATED_AT_DESC: "created_at DESC, id DESC",
    SubscriptionOrder.UPDATED_AT_ASC: "updated_at ASC, id ASC",
    SubscriptionOrder.UPDATED_AT_DESC: "updated_at DESC, id DESC",
}

_BILLING_EVENT_ORDER_SQL: Dict[BillingEventOrder, str] = {
    BillingEventOrder.CREATED_AT_ASC: "created_at ASC, id ASC",
    BillingEventOrder.CREATED_AT_DESC: "created_at DESC, id DESC",
    BillingEventOrder.UPDATED_AT_ASC: "updated_at ASC, id ASC",
    BillingEventOrder.UPDATED_AT_DESC: "updated_at DESC, id DESC",
    BillingEventOrder.EVENT_TIME_ASC: "event_time ASC, id ASC",
    BillingEventOrder.EVENT_TIME_DESC: "event_time DESC, id DESC",
}

_SUBSCRIPTION_COLUMNS = (
    "id",
    "user_id",
    "email",
    "status",
    "integrator",
    "integrator_subscription_id",
    "integrator_customer_id",
    "plan_name",
    "plan_id",
    "amount",
    "currency",
    "billing_interval",
    "next_billing_date",
    "available_until_date",
    "trial_ends_at",
    "cancelled_at",
    "provider_created_at",
    "provider_updated_at",
    "cancel_url",
    "update_url",
    "metadata",
    "created_at",
    "updated_at",
)

_UPDATABLE_SUBSCRIPTION_COLUMNS = frozenset(
    set(_SUBSCRIPTION_COLUMNS) - {"id", "integrator", "integrator_subscription_id", "created_at"}
)

_BILLING_EVENT_COLUMNS = (
    "id",
    "subscription_id",
    "user_id",
    "event_type",
    "integrator",
    "integrator_event_id",
    "integrator_subscription_id",
    "status",
    "amount",
    "currency",
    "plan_name",
    "receipt_url",
    "raw_payload",
    "event_time",
    "created_at",
    "updated_at",
)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def ensure_schema(conn: Optional[PgConnection] = None) -> None:
    """Create the billing tables and indexes when they do not exist yet."""

    with managed_connection(conn) as (connection, _managed):
        with connection.cursor() as cursor:
            try:
                for statement in SCHEMA_STATEMENTS:
                    cursor.execute(statement)
            except psycopg2.Error:
                logger.exception("Failed to initialise billing schema")
                raise
    logger.info("Billing schema initialised")


def _row_to_subscription(row: dict) -> Subscription:
    values = {column: row.get(column) for column in _SUBSCRIPTION_COLUMNS}
    values["metadata"] = row.get("metadata") or {}
    values["amount"] = int(row.get("amount") or 0)
    return Subscription(**values)


def _row_to_billing_event(row: dict) -> BillingEvent:
    values = {column: row.get(column) for column in _BILLING_EVENT_COLUMNS}
    values["amount"] = int(row.get("amount") or 0)
    return BillingEvent(**values)


def _subscription_params(subscription: Subscription) -> Dict[str, Any]:
    params = subscription.model_dump(include=set(_SUBSCRIPTION_COLUMNS))
    params["metadata"] = psycopg2.extras.Json(subscription.metadata)
    return params


def _subscription_conditions(criteria: SubscriptionFilter) -> Tuple[str, Dict[str, Any]]:
    clauses: List[str] = []
    params: Dict[str, Any] = {}

    if criteria.user_ids:
        clauses.append("user_id = ANY(%(user_ids)s)")
        params["user_ids"] = list(criteria.user_ids)
    if criteria.emails:
        clauses.append("email = ANY(%(emails)s)")
        params["emails"] = list(criteria.emails)
    if criteria.integrator:
        clauses.append("integrator = %(integrator)s")
        params["integrator"] = criteria.integrator
    if criteria.integrator_subscription_id:
        clauses.append("integrator_subscription_id = %(integrator_subscription_id)s")
        params["integrator_subscription_id"] = criteria.integrator_subscription_id
    if criteria.integrator_customer_id:
        clauses.append("integrator_customer_id = %(integrator_customer_id)s")
        params["integrator_customer_id"] = criteria.integrator_customer_id
    if criteria.statuses:
        clauses.append("status = ANY(%(statuses)s)")
        params["statuses"] = list(criteria.statuses)
    if criteria.currency:
        clauses.append("currency = %(currency)s")
        params["currency"] = criteria.currency
    if criteria.billing_interval:
        clauses.append("billing_interval = %(billing_interval)s")
        params["billing_interval"] = criteria.billing_interval
    if criteria.plan_name_contains:
        clauses.append("plan_name ILIKE %(plan_name_pattern)s")
        params["plan_name_pattern"] = f"%{criteria.plan_name_contains}%"
    if criteria.created_at_from is not None:
        clauses.append("created_at >= %(created_at_from)s")
        params["created_at_from"] = criteria.created_at_from
    if criteria.created_at_to is not None:
        clauses.append("created_at <= %(created_at_to)s")
        params["created_at_to"] = criteria.created_at_to
    if criteria.next_billing_date_from is not None:
        clauses.append("next_billing_date >= %(next_billing_date_from)s")
        params["next_billing_date_from"] = criteria.next_billing_date_from
    if criteria.next_billing_date_to is not None:
        clauses.append("next_billing_date <= %(next_billing_date_to)s")
        params["next_billing_date_to"] = criteria.next_billing_date_to
    if criteria.unassociated_only:
        clauses.append("user_id = ''")

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


def _billing_event_conditions(criteria: BillingEventFilter) -> Tuple[str, Dict[str, Any]]:
    clauses: List[str] = []
    params: Dict[str, Any] = {}

    if criteria.user_ids:
        clauses.append("user_id = ANY(%(user_ids)s)")
        params["user_ids"] = list(criteria.user_ids)
    if criteria.integrator:
        clauses.append("integrator = %(integrator)s")
        params["integrator"] = criteria.integrator
    if criteria.integrator_subscription_id:
        clauses.append("integrator_subscription_id = %(integrator_subscription_id)s")
        params["integrator_subscription_id"] = criteria.integrator_subscription_id
    if criteria.integrator_subscription_ids:
        clauses.append("integrator_subscription_id = ANY(%(integrator_subscription_ids)s)")
        params["integrator_subscription_ids"] = list(criteria.integrator_subscription_ids)
    if criteria.subscription_id:
        clauses.append("subscription_id = %(subscription_id)s")
        params["subscription_id"] = criteria.subscription_id
    if criteria.event_types:
        clauses.append("event_type = ANY(%(event_types)s)")
        params["event_types"] = list(criteria.event_types)
    if criteria.statuses:
        clauses.append("status = ANY(%(statuses)s)")
        params["statuses"] = list(criteria.statuses)
    if criteria.plan_name_contains:
        clauses.append("plan_name ILIKE %(plan_name_pattern)s")
        params["plan_name_pattern"] = f"%{criteria.plan_name_contains}%"
    if criteria.event_time_from is not None:
        clauses.append("event_time >= %(event_time_from)s")
        params["event_time_from"] = criteria.event_time_from
    if criteria.event_time_to is not None:
        clauses.append("event_time <= %(event_time_to)s")
        params["event_time_to"] = criteria.event_time_to

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


class PostgresBillingRepository:
    """Concrete repository persisting subscriptions and billing events in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        columns = ", ".join(_SUBSCRIPTION_COLUMNS)
        placeholders = ", ".join(f"%({column})s" for column in _SUBSCRIPTION_COLUMNS)
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    f"INSERT INTO billing_subscriptions ({columns}) VALUES ({placeholders}) RETURNING *",
                    _subscription_params(subscription),
                )
                row = cursor.fetchone()
        except psycopg2.errors.UniqueViolation as exc:
            raise BillingError(SUBSCRIPTION_ALREADY_EXISTS) from exc
        if not row:
            raise RuntimeError("Failed to persist subscription")
        return _row_to_subscription(row)

    def update_subscription_fields(self, subscription_id: str, changes: Dict[str, Any]) -> Optional[Subscription]:
        """Set only the given columns on ``subscription_id``; ``None`` when it does not exist."""

        unknown = set(changes) - _UPDATABLE_SUBSCRIPTION_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported subscription columns: {sorted(unknown)}")
        if not changes:
            return self.get_subscription(subscription_id)

        columns = [column for column in _SUBSCRIPTION_COLUMNS if column in changes]
        assignments = ", ".join(f"{column} = %({column})s" for column in columns)
        params: Dict[str, Any] = {column: changes[column] for column in columns}
        if "metadata" in params:
            params["metadata"] = psycopg2.extras.Json(params["metadata"])
        params["id"] = subscription_id
        with self._cursor() as cursor:
            cursor.execute(
                f"UPDATE billing_subscriptions SET {assignments} WHERE id = %(id)s RETURNING *",
                params,
            )
            row = cursor.fetchone()
        return _row_to_subscription(row) if row else None

    def delete_subscription(self, subscription_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM billing_subscriptions WHERE id = %s", (subscription_id,))
            return cursor.rowcount > 0

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE id = %s
                LIMIT 1
                """,
                (subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_subscription_by_integrator_id(self, integrator: str, integrator_subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE integrator = %s AND integrator_subscription_id = %s
                LIMIT 1
                """,
                (integrator, integrator_subscription_id),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def list_subscriptions(
        self,
        criteria: SubscriptionFilter,
        *,
        order: SubscriptionOrder,
        limit: int,
        offset: int,
    ) -> List[Subscription]:
        where, params = _subscription_conditions(criteria)
        params.update({"limit": limit, "offset": offset})
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM billing_subscriptions
                {where}
                ORDER BY {_SUBSCRIPTION_ORDER_SQL[order]}
                LIMIT %(limit)s OFFSET %(offset)s
                """,
                params,
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]

    def count_subscriptions(self, criteria: SubscriptionFilter) -> int:
        where, params = _subscription_conditions(criteria)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) AS total FROM billing_subscriptions {where}", params)
            row = cursor.fetchone()
            return int(row["total"]) if row else 0

    def associate_subscriptions(self, user_id: str, email: str, *, updated_at: datetime) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET user_id = %s, updated_at = %s
                WHERE email = %s AND user_id = ''
                """,
                (user_id, updated_at, email),
            )
            return cursor.rowcount

    def associate_billing_events(self, user_id: str, *, updated_at: datetime) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_events
                SET user_id = %s, updated_at = %s
                WHERE user_id = ''
                  AND subscription_id IN (
                      SELECT id FROM billing_subscriptions WHERE user_id = %s
                  )
                """,
                (user_id, updated_at, user_id),
            )
            return cursor.rowcount

    def insert_billing_event(self, event: BillingEvent) -> BillingEvent:
        columns = ", ".join(_BILLING_EVENT_COLUMNS)
        placeholders = ", ".join(f"%({column})s" for column in _BILLING_EVENT_COLUMNS)
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    f"INSERT INTO billing_events ({columns}) VALUES ({placeholders}) RETURNING *",
                    event.model_dump(include=set(_BILLING_EVENT_COLUMNS)),
                )
                row = cursor.fetchone()
        except psycopg2.errors.UniqueViolation as exc:
            raise BillingError(EVENT_ALREADY_PROCESSED) from exc
        if not row:
            raise RuntimeError("Failed to persist billing event")
        return _row_to_billing_event(row)

    def get_billing_event(self, event_id: str) -> Optional[BillingEvent]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_events
                WHERE id = %s
                LIMIT 1
                """,
                (event_id,),
            )
            row = cursor.fetchone()
            return _row_to_billing_event(row) if row else None

    def list_billing_events(
        self,
        criteria: BillingEventFilter,
        *,
        order: BillingEventOrder,
        limit: int,
        offset: int,
    ) -> List[BillingEvent]:
        where, params = _billing_event_conditions(criteria)
        params.update({"limit": limit, "offset": offset})
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM billing_events
                {where}
                ORDER BY {_BILLING_EVENT_ORDER_SQL[order]}
                LIMIT %(limit)s OFFSET %(offset)s
                """,
                params,
            )
            rows = cursor.fetchall() or []
            return [_row_to_billing_event(row) for row in rows]

    def count_billing_events(self, criteria: BillingEventFilter) -> int:
        where, params = _billing_event_conditions(criteria)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) AS total FROM billing_events {where}", params)
            row = cursor.fetchone()
            return int(row["total"]) if row else 0

    def get_first_successful_billing_event_with_plan_name(
        self, integrator: str, integrator_subscription_id: str
    ) -> Optional[BillingEvent]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_events
                WHERE integrator = %s
                  AND integrator_subscription_id = %s
                  AND status = 'active'
                  AND plan_name <> ''
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                """,
                (integrator, integrator_subscription_id),
            )
            row = cursor.fetchone()
            return _row_to_billing_event(row) if row else None


__all__ = ["PostgresBillingRepository", "SCHEMA_STATEMENTS", "ensure_schema", "managed_connection"]
