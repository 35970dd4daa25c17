"""Persistence helpers and offer storage for the billing domain."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .models import Offer


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


@contextmanager
def dict_cursor(conn: Optional[PgConnection] = None) -> Iterator[PgCursor]:
    with managed_connection(conn) as (connection, managed):
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


def _row_to_offer(row: dict) -> Offer:
    return Offer(
        id=row["id"],
        name=row["name"],
        external_coupon_id=row.get("stripe_coupon_id"),
        tier_id=row.get("product_id"),
    )


class PostgresOfferRepository:
    """Reads offers and records their redemptions in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    def get_by_external_coupon_id(self, coupon_id: str) -> Optional[Offer]:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                SELECT id, name, stripe_coupon_id, product_id
                FROM offers
                WHERE stripe_coupon_id = %s
                LIMIT 1
                """,
                (coupon_id,),
            )
            row = cursor.fetchone()
            return _row_to_offer(row) if row else None

    def get_by_id(self, offer_id: str) -> Optional[Offer]:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                SELECT id, name, stripe_coupon_id, product_id
                FROM offers
                WHERE id = %s
                LIMIT 1
                """,
                (offer_id,),
            )
            row = cursor.fetchone()
            return _row_to_offer(row) if row else None

    def record_redemption(self, *, offer_id: str, member_id: str, subscription_id: str) -> None:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                INSERT INTO offer_redemptions (offer_id, member_id, subscription_id)
                VALUES (%s, %s, %s)
                ON CONFLICT (offer_id, subscription_id) DO NOTHING
                """,
                (offer_id, member_id, subscription_id),
            )


__all__ = ["PostgresOfferRepository", "dict_cursor", "managed_connection"]
