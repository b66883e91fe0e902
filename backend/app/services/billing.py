"""Application wiring for webhook ingestion and billing queries."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from functools import lru_cache
from typing import Iterable, Mapping, Optional

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..billing import BillingStore
from ..billing.repository import PostgresBillingRepository, managed_connection
from ..billingmanager import AuditEntry, AuditSink, BillingManagerService, DirectoryUser, UserDirectory
from ..paymentprovider import ProviderRegistry, UrllibHTTPClient, create_registry_from_configs, load_payments_config


logger = logging.getLogger("billing")
audit_logger = logging.getLogger("billing.audit")

SITE_ADMIN_ROLES = frozenset({"admin"})


class LoggingAuditSink(AuditSink):
    """Audit sink writing processed webhooks to the ``billing.audit`` logger."""

    def log(self, entry: AuditEntry) -> None:
        details = entry.details
        audit_logger.info(
            "%s %s target=%s provider=%s user=%s subscription=%s event_created=%s duplicate=%s",
            entry.action,
            details.event_type,
            entry.target_id,
            details.provider,
            details.user_id or "-",
            details.billing_subscription_id or "-",
            details.billing_event_successfully_created,
            details.billing_event_duplicate,
            extra={"audit": entry.model_dump(mode="json", exclude_none=True)},
        )


def _row_to_directory_user(row: Optional[Mapping[str, object]]) -> Optional[DirectoryUser]:
    if not row:
        return None
    return DirectoryUser(
        id=str(row["id"]),
        email=str(row.get("email") or ""),
        is_admin=row.get("role") in SITE_ADMIN_ROLES,
    )


class PostgresUserDirectory(UserDirectory):
    """Looks billing customers up in the application's ``users`` table."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    def get_user_by_id(self, user_id: str) -> Optional[DirectoryUser]:
        try:
            uid = int(user_id)
        except (TypeError, ValueError):
            return None
        with self._cursor() as cursor:
            cursor.execute("SELECT id, email, role FROM users WHERE id = %s", (uid,))
            return _row_to_directory_user(cursor.fetchone())

    def get_user_by_email(self, email: str) -> Optional[DirectoryUser]:
        if not email:
            return None
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT id, email, role FROM users WHERE LOWER(email) = LOWER(%s)",
                (email.strip(),),
            )
            return _row_to_directory_user(cursor.fetchone())


@lru_cache(maxsize=1)
def get_provider_registry() -> ProviderRegistry:
    config = load_payments_config()
    registry = create_registry_from_configs(
        config.providers,
        http_client=UrllibHTTPClient(timeout=config.http_timeout_seconds),
    )
    logger.info("Payment providers enabled: %s", ", ".join(registry.list()) or "none")
    return registry


@lru_cache(maxsize=1)
def get_billing_store() -> BillingStore:
    return BillingStore(repository=PostgresBillingRepository())


@lru_cache(maxsize=1)
def get_billing_manager_service() -> BillingManagerService:
    return BillingManagerService(
        registry=get_provider_registry(),
        store=get_billing_store(),
        user_directory=PostgresUserDirectory(),
        audit_sink=LoggingAuditSink(),
    )


__all__ = [
    "LoggingAuditSink",
    "PostgresUserDirectory",
    "get_billing_manager_service",
    "get_billing_store",
    "get_provider_registry",
]
