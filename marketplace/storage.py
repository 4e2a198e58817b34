"""PostgreSQL storage client shared by the engine repositories."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from psycopg2.extensions import connection as PgConnection
from psycopg2.pool import ThreadedConnectionPool

from .config import DatabaseConfig

logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account_entitlements (
        account_id TEXT PRIMARY KEY,
        role TEXT NOT NULL,
        external_customer_ref TEXT UNIQUE,
        external_subscription_ref TEXT UNIQUE,
        plan_id TEXT,
        status TEXT NOT NULL DEFAULT 'none',
        current_period_start TIMESTAMPTZ,
        current_period_end TIMESTAMPTZ,
        cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
        canceled_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_subscription_history (
        id BIGSERIAL PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account_entitlements (account_id),
        external_subscription_ref TEXT,
        plan_id TEXT,
        status TEXT NOT NULL,
        current_period_start TIMESTAMPTZ,
        current_period_end TIMESTAMPTZ,
        cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
        canceled_at TIMESTAMPTZ,
        archived_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        listing_id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        title TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'draft',
        is_featured BOOLEAN NOT NULL DEFAULT FALSE,
        feature_expiration TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS services (
        listing_id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        title TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'draft',
        is_featured BOOLEAN NOT NULL DEFAULT FALSE,
        feature_expiration TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS products_featured_idx ON products (feature_expiration) WHERE is_featured",
    "CREATE INDEX IF NOT EXISTS services_featured_idx ON services (feature_expiration) WHERE is_featured",
    """
    CREATE TABLE IF NOT EXISTS payment_transactions (
        transaction_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        listing_id TEXT,
        listing_kind TEXT,
        amount_cents INTEGER NOT NULL CHECK (amount_cents >= 0),
        currency TEXT NOT NULL,
        kind TEXT NOT NULL,
        status TEXT NOT NULL,
        external_payment_ref TEXT NOT NULL UNIQUE,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS payment_transactions_account_idx ON payment_transactions (account_id)",
    """
    CREATE TABLE IF NOT EXISTS processor_webhook_events (
        event_id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        payload JSONB NOT NULL,
        received_at TIMESTAMPTZ NOT NULL,
        processed_at TIMESTAMPTZ
    )
    """,
)


class StorageClient:
    """Owns the connection pool used by every repository.

    The client is opened once at process start and closed at shutdown; the
    repositories receive it explicitly instead of reaching for a cached
    module-level connection.
    """

    def __init__(self, config: DatabaseConfig) -> None:
        self._config = config
        self._pool: Optional[ThreadedConnectionPool] = None

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    def open(self) -> None:
        if self._pool is not None:
            return
        self._pool = ThreadedConnectionPool(
            self._config.pool_min,
            self._config.pool_max,
            **self._config.dsn_kwargs(),
        )
        logger.info(
            "Opened storage pool host=%s db=%s size=%s..%s",
            self._config.host,
            self._config.dbname,
            self._config.pool_min,
            self._config.pool_max,
        )

    def close(self) -> None:
        if self._pool is None:
            return
        self._pool.closeall()
        self._pool = None
        logger.info("Closed storage pool")

    @contextmanager
    def transaction(self) -> Iterator[PgConnection]:
        """Yield a pooled connection and commit or roll back on exit."""

        if self._pool is None:
            raise RuntimeError("Storage client has not been opened")
        connection = self._pool.getconn()
        try:
            yield connection
            connection.commit()
        except Exception:
            connection.rollback()
            raise
        finally:
            self._pool.putconn(connection)

    def ensure_schema(self) -> None:
        with self.transaction() as connection:
            with connection.cursor() as cursor:
                for statement in SCHEMA_STATEMENTS:
                    cursor.execute(statement)
        logger.info("Ensured engine schema (%s statements)", len(SCHEMA_STATEMENTS))


@contextmanager
def managed_connection(storage: StorageClient, conn: Optional[PgConnection] = None):
    """Reuse a caller supplied connection or open a managed transaction."""

    if conn is not None:
        yield conn
        return

    with storage.transaction() as connection:
        yield connection


__all__ = ["SCHEMA_STATEMENTS", "StorageClient", "managed_connection"]
