"""PostgreSQL persistence for the featured state of product and service listings."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence

import psycopg2.extras
from psycopg2 import sql
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...storage import StorageClient, managed_connection
from .models import LISTING_MODELS, Listing, ListingKind, ListingStatus

_TABLES: Dict[ListingKind, str] = {
    ListingKind.PRODUCT: "products",
    ListingKind.SERVICE: "services",
}


def _row_to_listing(kind: ListingKind, row: dict) -> Listing:
    model = LISTING_MODELS[kind]
    return model(
        listing_id=row["listing_id"],
        owner_id=row["owner_id"],
        title=row["title"],
        status=ListingStatus(row["status"]),
        is_featured=bool(row["is_featured"]),
        feature_expiration=row.get("feature_expiration"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresListingRepository:
    """Both listing kinds share one column layout, so queries differ only by table."""

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

    @staticmethod
    def _query(kind: ListingKind, template: str) -> sql.Composed:
        return sql.SQL(template).format(table=sql.Identifier(_TABLES[kind]))

    def get(self, kind: ListingKind, listing_id: str, *, conn: Optional[PgConnection] = None) -> Optional[Listing]:
        with self._cursor(conn) as cursor:
            cursor.execute(
                self._query(kind, "SELECT * FROM {table} WHERE listing_id = %s"),
                (listing_id,),
            )
            row = cursor.fetchone()
            return _row_to_listing(kind, row) if row else None

    def grant_feature(
        self,
        kind: ListingKind,
        listing_id: str,
        expiration: datetime,
        *,
        conn: Optional[PgConnection] = None,
    ) -> Optional[Listing]:
        with self._cursor(conn) as cursor:
            cursor.execute(
                self._query(
                    kind,
                    """
                    UPDATE {table}
                    SET is_featured = TRUE, feature_expiration = %s, updated_at = NOW()
                    WHERE listing_id = %s
                    RETURNING *
                    """,
                ),
                (expiration, listing_id),
            )
            row = cursor.fetchone()
            return _row_to_listing(kind, row) if row else None

    def force_feature(
        self,
        kind: ListingKind,
        listing_id: str,
        *,
        is_featured: bool,
        expiration: Optional[datetime],
    ) -> Optional[Listing]:
        with self._cursor() as cursor:
            cursor.execute(
                self._query(
                    kind,
                    """
                    UPDATE {table}
                    SET is_featured = %s,
                        feature_expiration = COALESCE(%s, feature_expiration),
                        updated_at = NOW()
                    WHERE listing_id = %s
                    RETURNING *
                    """,
                ),
                (is_featured, expiration, listing_id),
            )
            row = cursor.fetchone()
            return _row_to_listing(kind, row) if row else None

    def revoke_feature_window(
        self,
        kind: ListingKind,
        listing_id: str,
        expiration: datetime,
        *,
        conn: Optional[PgConnection] = None,
    ) -> bool:
        with self._cursor(conn) as cursor:
            cursor.execute(
                self._query(
                    kind,
                    """
                    UPDATE {table}
                    SET is_featured = FALSE, updated_at = NOW()
                    WHERE listing_id = %s AND is_featured AND feature_expiration = %s
                    """,
                ),
                (listing_id, expiration),
            )
            return cursor.rowcount > 0

    def select_expired(self, kind: ListingKind, now: datetime, *, limit: int) -> List[str]:
        with self._cursor() as cursor:
            cursor.execute(
                self._query(
                    kind,
                    """
                    SELECT listing_id
                    FROM {table}
                    WHERE is_featured AND feature_expiration < %s
                    ORDER BY feature_expiration
                    LIMIT %s
                    """,
                ),
                (now, limit),
            )
            rows = cursor.fetchall() or []
            return [row["listing_id"] for row in rows]

    def demote_if_expired(self, kind: ListingKind, listing_ids: Sequence[str], now: datetime) -> List[str]:
        if not listing_ids:
            return []
        with self._cursor() as cursor:
            # The predicate is evaluated again here; a grant committed after selection wins.
            cursor.execute(
                self._query(
                    kind,
                    """
                    UPDATE {table}
                    SET is_featured = FALSE, updated_at = NOW()
                    WHERE listing_id = ANY(%s) AND is_featured AND feature_expiration < %s
                    RETURNING listing_id
                    """,
                ),
                (list(listing_ids), now),
            )
            rows = cursor.fetchall() or []
            return [row["listing_id"] for row in rows]

    def set_status(self, kind: ListingKind, listing_id: str, status: ListingStatus) -> Optional[Listing]:
        with self._cursor() as cursor:
            cursor.execute(
                self._query(
                    kind,
                    "UPDATE {table} SET status = %s, updated_at = NOW() WHERE listing_id = %s RETURNING *",
                ),
                (status.value, listing_id),
            )
            row = cursor.fetchone()
            return _row_to_listing(kind, row) if row else None


__all__ = ["PostgresListingRepository"]
