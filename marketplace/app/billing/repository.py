"""PostgreSQL persistence for entitlement records, payment transactions and webhooks."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Tuple

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...storage import StorageClient, managed_connection
from ..entitlements.models import AccountEntitlementRecord, AccountRole, SubscriptionStatus
from ..listings.models import ListingKind
from .errors import RecordNotFound, StaleEvent
from .models import (
    ApplyOutcome,
    NormalizedSubscriptionState,
    PaymentTransaction,
    ProcessorWebhookEvent,
    TransactionKind,
    TransactionStatus,
)


def _row_to_account(row: dict) -> AccountEntitlementRecord:
    return AccountEntitlementRecord(
        account_id=row["account_id"],
        role=AccountRole(row["role"]),
        external_customer_ref=row.get("external_customer_ref"),
        external_subscription_ref=row.get("external_subscription_ref"),
        plan_id=row.get("plan_id"),
        status=SubscriptionStatus(row["status"]),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        canceled_at=row.get("canceled_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_history(row: dict) -> AccountEntitlementRecord:
    return AccountEntitlementRecord(
        account_id=row["account_id"],
        role=AccountRole(row["role"]),
        external_subscription_ref=row.get("external_subscription_ref"),
        plan_id=row.get("plan_id"),
        status=SubscriptionStatus(row["status"]),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        canceled_at=row.get("canceled_at"),
        created_at=row["archived_at"],
        updated_at=row["archived_at"],
    )


def _row_to_transaction(row: dict) -> PaymentTransaction:
    listing_kind = row.get("listing_kind")
    return PaymentTransaction(
        transaction_id=row["transaction_id"],
        account_id=row["account_id"],
        listing_id=row.get("listing_id"),
        listing_kind=ListingKind(listing_kind) if listing_kind else None,
        amount_cents=int(row["amount_cents"]),
        currency=row["currency"],
        kind=TransactionKind(row["kind"]),
        status=TransactionStatus(row["status"]),
        external_payment_ref=row["external_payment_ref"],
        metadata=row.get("metadata") or {},
        expires_at=row.get("expires_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _state_params(state: NormalizedSubscriptionState) -> dict:
    return {
        "subscription_ref": state.external_subscription_ref,
        "customer_ref": state.external_customer_ref,
        "plan_id": state.plan_id,
        "status": state.status.value,
        "period_start": state.current_period_start,
        "period_end": state.current_period_end,
        "cancel_at_period_end": state.cancel_at_period_end,
        "canceled_at": state.canceled_at,
    }


class _PostgresRepository:
    def __init__(self, storage: StorageClient) -> None:
        self._storage = storage

    @contextmanager
    def _cursor(self, conn: Optional[PgConnection] = None) -> Iterator[PgCursor]:
        with managed_connection(self._storage, conn) as connection:
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()


class PostgresAccountRepository(_PostgresRepository):
    """Account entitlement records with conditional, monotonic updates."""

    def get(self, account_id: str) -> Optional[AccountEntitlementRecord]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM account_entitlements WHERE account_id = %s", (account_id,))
            row = cursor.fetchone()
            return _row_to_account(row) if row else None

    def get_by_customer_ref(self, customer_ref: str) -> Optional[AccountEntitlementRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM account_entitlements WHERE external_customer_ref = %s LIMIT 1",
                (customer_ref,),
            )
            row = cursor.fetchone()
            return _row_to_account(row) if row else None

    def get_by_subscription_ref(self, subscription_ref: str) -> Optional[AccountEntitlementRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM account_entitlements WHERE external_subscription_ref = %s LIMIT 1",
                (subscription_ref,),
            )
            row = cursor.fetchone()
            return _row_to_account(row) if row else None

    def create_if_missing(self, account_id: str, role: AccountRole) -> AccountEntitlementRecord:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO account_entitlements (account_id, role, status)
                VALUES (%s, %s, %s)
                ON CONFLICT (account_id) DO NOTHING
                """,
                (account_id, role.value, SubscriptionStatus.NONE.value),
            )
            cursor.execute("SELECT * FROM account_entitlements WHERE account_id = %s", (account_id,))
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist account entitlement record")
            return _row_to_account(row)

    def set_customer_ref(self, account_id: str, customer_ref: str) -> AccountEntitlementRecord:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE account_entitlements
                SET external_customer_ref = COALESCE(external_customer_ref, %s),
                    updated_at = NOW()
                WHERE account_id = %s
                RETURNING *
                """,
                (customer_ref, account_id),
            )
            row = cursor.fetchone()
            if not row:
                raise RecordNotFound(f"No entitlement record for account {account_id}")
            return _row_to_account(row)

    def apply_subscription_state(
        self, state: NormalizedSubscriptionState
    ) -> Tuple[ApplyOutcome, Optional[AccountEntitlementRecord]]:
        params = _state_params(state)
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE account_entitlements
                SET status = %(status)s,
                    plan_id = COALESCE(%(plan_id)s, plan_id),
                    current_period_start = COALESCE(%(period_start)s, current_period_start),
                    current_period_end = COALESCE(%(period_end)s, current_period_end),
                    cancel_at_period_end = %(cancel_at_period_end)s,
                    canceled_at = %(canceled_at)s,
                    updated_at = NOW()
                WHERE external_subscription_ref = %(subscription_ref)s
                  AND (
                      current_period_end IS NULL
                      OR %(period_end)s IS NULL
                      OR current_period_end <= %(period_end)s
                  )
                  AND NOT (
                      current_period_end IS NOT DISTINCT FROM COALESCE(%(period_end)s, current_period_end)
                      AND status = %(status)s
                      AND cancel_at_period_end = %(cancel_at_period_end)s
                  )
                RETURNING *
                """,
                params,
            )
            row = cursor.fetchone()
            if row:
                return ApplyOutcome.APPLIED, _row_to_account(row)

            cursor.execute(
                "SELECT * FROM account_entitlements WHERE external_subscription_ref = %s",
                (state.external_subscription_ref,),
            )
            existing = cursor.fetchone()
            if not existing:
                return ApplyOutcome.UNKNOWN_SUBSCRIPTION, None

            stored = _row_to_account(existing)
            if (
                stored.current_period_end is not None
                and state.current_period_end is not None
                and stored.current_period_end > state.current_period_end
            ):
                raise StaleEvent(
                    state.external_subscription_ref,
                    stored_period_end=stored.current_period_end,
                    event_period_end=state.current_period_end,
                )
            return ApplyOutcome.DUPLICATE, stored

    def _archive_lineage(
        self,
        cursor: PgCursor,
        account_id: str,
        *,
        status: Optional[SubscriptionStatus] = None,
        canceled_at: Optional[datetime] = None,
        unless_ref: Optional[str] = None,
    ) -> None:
        cursor.execute(
            """
            INSERT INTO account_subscription_history (
                account_id,
                external_subscription_ref,
                plan_id,
                status,
                current_period_start,
                current_period_end,
                cancel_at_period_end,
                canceled_at
            )
            SELECT account_id,
                   external_subscription_ref,
                   plan_id,
                   COALESCE(%(status)s, status),
                   current_period_start,
                   current_period_end,
                   cancel_at_period_end,
                   COALESCE(%(canceled_at)s, canceled_at)
            FROM account_entitlements
            WHERE account_id = %(account_id)s
              AND external_subscription_ref IS NOT NULL
              AND external_subscription_ref IS DISTINCT FROM %(unless_ref)s
            """,
            {
                "account_id": account_id,
                "status": status.value if status else None,
                "canceled_at": canceled_at,
                "unless_ref": unless_ref,
            },
        )

    def attach_subscription(
        self, account_id: str, state: NormalizedSubscriptionState
    ) -> AccountEntitlementRecord:
        params = _state_params(state)
        params["account_id"] = account_id
        with self._cursor() as cursor:
            self._archive_lineage(cursor, account_id, unless_ref=state.external_subscription_ref)
            cursor.execute(
                """
                UPDATE account_entitlements
                SET external_subscription_ref = %(subscription_ref)s,
                    external_customer_ref = COALESCE(external_customer_ref, %(customer_ref)s),
                    plan_id = COALESCE(%(plan_id)s, plan_id),
                    status = %(status)s,
                    current_period_start = %(period_start)s,
                    current_period_end = %(period_end)s,
                    cancel_at_period_end = %(cancel_at_period_end)s,
                    canceled_at = %(canceled_at)s,
                    updated_at = NOW()
                WHERE account_id = %(account_id)s
                RETURNING *
                """,
                params,
            )
            row = cursor.fetchone()
            if not row:
                raise RecordNotFound(f"No entitlement record for account {account_id}")
            return _row_to_account(row)

    def overwrite_subscription_state(
        self, account_id: str, state: NormalizedSubscriptionState
    ) -> AccountEntitlementRecord:
        params = _state_params(state)
        params["account_id"] = account_id
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE account_entitlements
                SET status = %(status)s,
                    plan_id = COALESCE(%(plan_id)s, plan_id),
                    current_period_start = %(period_start)s,
                    current_period_end = %(period_end)s,
                    cancel_at_period_end = %(cancel_at_period_end)s,
                    canceled_at = %(canceled_at)s,
                    updated_at = NOW()
                WHERE account_id = %(account_id)s
                  AND external_subscription_ref = %(subscription_ref)s
                RETURNING *
                """,
                params,
            )
            row = cursor.fetchone()
            if not row:
                raise RecordNotFound(
                    f"No entitlement record for account {account_id} with subscription {state.external_subscription_ref}"
                )
            return _row_to_account(row)

    def mark_canceled(self, account_id: str, *, canceled_at: datetime) -> AccountEntitlementRecord:
        with self._cursor() as cursor:
            self._archive_lineage(
                cursor,
                account_id,
                status=SubscriptionStatus.CANCELED,
                canceled_at=canceled_at,
            )
            cursor.execute(
                """
                UPDATE account_entitlements
                SET status = %s,
                    canceled_at = %s,
                    cancel_at_period_end = FALSE,
                    external_subscription_ref = NULL,
                    updated_at = NOW()
                WHERE account_id = %s
                RETURNING *
                """,
                (SubscriptionStatus.CANCELED.value, canceled_at, account_id),
            )
            row = cursor.fetchone()
            if not row:
                raise RecordNotFound(f"No entitlement record for account {account_id}")
            return _row_to_account(row)

    def set_cancel_at_period_end(self, account_id: str, cancel_at_period_end: bool) -> AccountEntitlementRecord:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE account_entitlements
                SET cancel_at_period_end = %s, updated_at = NOW()
                WHERE account_id = %s
                RETURNING *
                """,
                (cancel_at_period_end, account_id),
            )
            row = cursor.fetchone()
            if not row:
                raise RecordNotFound(f"No entitlement record for account {account_id}")
            return _row_to_account(row)

    def clear_subscription(self, account_id: str) -> AccountEntitlementRecord:
        with self._cursor() as cursor:
            self._archive_lineage(cursor, account_id)
            cursor.execute(
                """
                UPDATE account_entitlements
                SET status = %s,
                    external_subscription_ref = NULL,
                    cancel_at_period_end = FALSE,
                    updated_at = NOW()
                WHERE account_id = %s
                RETURNING *
                """,
                (SubscriptionStatus.NONE.value, account_id),
            )
            row = cursor.fetchone()
            if not row:
                raise RecordNotFound(f"No entitlement record for account {account_id}")
            return _row_to_account(row)

    def list_history(self, account_id: str, *, limit: int = 20) -> List[AccountEntitlementRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT hist.*, acct.role
                FROM account_subscription_history AS hist
                JOIN account_entitlements AS acct ON acct.account_id = hist.account_id
                WHERE hist.account_id = %s
                ORDER BY hist.archived_at DESC, hist.id DESC
                LIMIT %s
                """,
                (account_id, limit),
            )
            rows = cursor.fetchall() or []
            return [_row_to_history(row) for row in rows]

    def has_archived_subscription(self, account_id: str, subscription_ref: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT 1
                FROM account_subscription_history
                WHERE account_id = %s AND external_subscription_ref = %s
                LIMIT 1
                """,
                (account_id, subscription_ref),
            )
            return cursor.fetchone() is not None

    def list_records(
        self,
        *,
        status: Optional[SubscriptionStatus] = None,
        updated_since: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[AccountEntitlementRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM account_entitlements
                WHERE (%(status)s IS NULL OR status = %(status)s)
                  AND (%(updated_since)s IS NULL OR updated_at >= %(updated_since)s)
                ORDER BY updated_at DESC, account_id
                LIMIT %(limit)s OFFSET %(offset)s
                """,
                {
                    "status": status.value if status else None,
                    "updated_since": updated_since,
                    "limit": limit,
                    "offset": offset,
                },
            )
            rows = cursor.fetchall() or []
            return [_row_to_account(row) for row in rows]


class PostgresTransactionRepository(_PostgresRepository):
    """Payment transaction ledger with status transitions guarded in SQL."""

    def create(self, transaction: PaymentTransaction) -> PaymentTransaction:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO payment_transactions (
                    transaction_id,
                    account_id,
                    listing_id,
                    listing_kind,
                    amount_cents,
                    currency,
                    kind,
                    status,
                    external_payment_ref,
                    metadata,
                    expires_at
                )
                VALUES (%(transaction_id)s, %(account_id)s, %(listing_id)s, %(listing_kind)s,
                        %(amount_cents)s, %(currency)s, %(kind)s, %(status)s,
                        %(external_payment_ref)s, %(metadata)s, %(expires_at)s)
                RETURNING *
                """,
                {
                    "transaction_id": transaction.transaction_id,
                    "account_id": transaction.account_id,
                    "listing_id": transaction.listing_id,
                    "listing_kind": transaction.listing_kind.value if transaction.listing_kind else None,
                    "amount_cents": transaction.amount_cents,
                    "currency": transaction.currency,
                    "kind": transaction.kind.value,
                    "status": transaction.status.value,
                    "external_payment_ref": transaction.external_payment_ref,
                    "metadata": psycopg2.extras.Json(transaction.metadata),
                    "expires_at": transaction.expires_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist payment transaction")
            return _row_to_transaction(row)

    def get_by_payment_ref(
        self, payment_ref: str, *, conn: Optional[PgConnection] = None
    ) -> Optional[PaymentTransaction]:
        with self._cursor(conn) as cursor:
            cursor.execute(
                "SELECT * FROM payment_transactions WHERE external_payment_ref = %s LIMIT 1",
                (payment_ref,),
            )
            row = cursor.fetchone()
            return _row_to_transaction(row) if row else None

    def transition(
        self,
        payment_ref: str,
        *,
        from_status: TransactionStatus,
        to_status: TransactionStatus,
        conn: Optional[PgConnection] = None,
    ) -> Optional[PaymentTransaction]:
        with self._cursor(conn) as cursor:
            cursor.execute(
                """
                UPDATE payment_transactions
                SET status = %s, updated_at = NOW()
                WHERE external_payment_ref = %s AND status = %s
                RETURNING *
                """,
                (to_status.value, payment_ref, from_status.value),
            )
            row = cursor.fetchone()
            return _row_to_transaction(row) if row else None


class PostgresWebhookEventRepository(_PostgresRepository):
    """Records processor deliveries so re-deliveries are not dispatched twice."""

    def record_webhook_event(self, event: ProcessorWebhookEvent) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO processor_webhook_events (event_id, event_type, payload, received_at, processed_at)
                VALUES (%s, %s, %s, %s, NOW())
                ON CONFLICT (event_id) DO NOTHING
                """,
                (
                    event.event_id,
                    event.event_type,
                    psycopg2.extras.Json(event.data),
                    event.received_at,
                ),
            )
            return cursor.rowcount > 0

    def forget_webhook_event(self, event_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM processor_webhook_events WHERE event_id = %s", (event_id,))


__all__ = [
    "PostgresAccountRepository",
    "PostgresTransactionRepository",
    "PostgresWebhookEventRepository",
]
