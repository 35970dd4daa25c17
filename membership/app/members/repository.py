"""PostgreSQL implementation of the membership store."""
from __future__ import annotations

from contextlib import contextmanager
from itertools import count
from typing import Any, Callable, Iterator, List, Optional, Sequence

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection

from ...app_context import get_conn
from ..billing.models import ExternalCustomer, Subscription, SubscriptionStatus
from ..billing.repository import dict_cursor
from ..billing.status import MemberStatus
from ..errors import DuplicateRecordError, StoreIntegrityError
from .models import Member


def _row_to_member(row: dict) -> Member:
    return Member(
        id=row["id"],
        email=row["email"],
        name=row.get("name"),
        note=row.get("note"),
        status=MemberStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_customer(row: dict) -> ExternalCustomer:
    return ExternalCustomer(
        customer_id=row["customer_id"],
        member_id=row["member_id"],
        name=row.get("name"),
        email=row.get("email"),
        created_at=row["created_at"],
    )


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        id=row["id"],
        subscription_id=row["subscription_id"],
        member_id=row["member_id"],
        customer_id=row["customer_id"],
        product_id=row.get("product_id"),
        price_id=row["stripe_price_id"],
        status=SubscriptionStatus(row["status"]),
        cancel_at_period_end=bool(row["cancel_at_period_end"]),
        cancellation_reason=row.get("cancellation_reason"),
        current_period_end=row.get("current_period_end"),
        start_date=row.get("start_date"),
        trial_start_at=row.get("trial_start_at"),
        trial_end_at=row.get("trial_end_at"),
        default_payment_card_last4=row.get("default_payment_card_last4"),
        plan_nickname=row.get("plan_nickname"),
        plan_interval=row.get("plan_interval"),
        plan_amount=int(row.get("plan_amount") or 0),
        plan_currency=row.get("plan_currency") or "usd",
        mrr=int(row.get("mrr") or 0),
        offer_id=row.get("offer_id"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresMembershipStore:
    """Opens one PostgreSQL transaction per unit of work."""

    def __init__(self, *, connect: Optional[Callable[[], PgConnection]] = None) -> None:
        self._connect = connect or get_conn

    @contextmanager
    def transaction(self) -> Iterator["PostgresTransaction"]:
        connection = self._connect()
        transaction = PostgresTransaction(connection)
        try:
            yield transaction
            connection.commit()
        except BaseException:
            connection.rollback()
            transaction._run_callbacks(committed=False)
            raise
        finally:
            connection.close()
        transaction._run_callbacks(committed=True)


class PostgresTransaction:
    def __init__(self, connection: PgConnection) -> None:
        self._connection = connection
        self._cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        self._savepoints = count(1)
        self._on_commit: List[Callable[[], None]] = []
        self._on_rollback: List[Callable[[], None]] = []

    def on_commit(self, callback: Callable[[], None]) -> None:
        self._on_commit.append(callback)

    def on_rollback(self, callback: Callable[[], None]) -> None:
        self._on_rollback.append(callback)

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        name = f"sp_{next(self._savepoints)}"
        self._cursor.execute(f"SAVEPOINT {name}")
        try:
            yield
        except BaseException:
            self._cursor.execute(f"ROLLBACK TO SAVEPOINT {name}")
            raise
        self._cursor.execute(f"RELEASE SAVEPOINT {name}")

    def lock_member(self, member_id: str) -> Optional[Member]:
        row = self._fetchone("SELECT * FROM members WHERE id = %s FOR UPDATE", (member_id,))
        return _row_to_member(row) if row else None

    def get_member(self, *, member_id: Optional[str] = None, email: Optional[str] = None) -> Optional[Member]:
        if member_id is not None:
            row = self._fetchone("SELECT * FROM members WHERE id = %s", (member_id,))
        elif email is not None:
            row = self._fetchone("SELECT * FROM members WHERE lower(email) = lower(%s)", (email,))
        else:
            return None
        return _row_to_member(row) if row else None

    def get_member_by_customer_id(self, customer_id: str) -> Optional[Member]:
        row = self._fetchone(
            """
            SELECT m.*
            FROM members AS m
            JOIN members_stripe_customers AS c ON c.member_id = m.id
            WHERE c.customer_id = %s
            LIMIT 1
            """,
            (customer_id,),
        )
        return _row_to_member(row) if row else None

    def insert_member(self, member: Member) -> Member:
        row = self._fetchone(
            """
            INSERT INTO members (id, email, name, note, status, created_at, updated_at)
            VALUES (%(id)s, %(email)s, %(name)s, %(note)s, %(status)s, %(created_at)s, %(updated_at)s)
            RETURNING *
            """,
            {
                "id": member.id,
                "email": member.email,
                "name": member.name,
                "note": member.note,
                "status": member.status.value,
                "created_at": member.created_at,
                "updated_at": member.updated_at,
            },
        )
        if not row:
            raise RuntimeError("Failed to persist member")
        return _row_to_member(row)

    def update_member(self, member: Member) -> Member:
        row = self._fetchone(
            """
            UPDATE members
            SET email = %(email)s,
                name = %(name)s,
                note = %(note)s,
                status = %(status)s,
                updated_at = NOW()
            WHERE id = %(id)s
            RETURNING *
            """,
            {
                "id": member.id,
                "email": member.email,
                "name": member.name,
                "note": member.note,
                "status": member.status.value,
            },
        )
        if not row:
            raise LookupError(f"Member {member.id} not found")
        return _row_to_member(row)

    def delete_member(self, member_id: str) -> None:
        # Owned relations cascade through foreign keys.
        self._execute("DELETE FROM members WHERE id = %s", (member_id,))

    def get_customer(self, customer_id: str) -> Optional[ExternalCustomer]:
        row = self._fetchone("SELECT * FROM members_stripe_customers WHERE customer_id = %s", (customer_id,))
        return _row_to_customer(row) if row else None

    def list_customers(self, member_id: str) -> List[ExternalCustomer]:
        rows = self._fetchall(
            "SELECT * FROM members_stripe_customers WHERE member_id = %s ORDER BY created_at ASC",
            (member_id,),
        )
        return [_row_to_customer(row) for row in rows]

    def insert_customer(self, customer: ExternalCustomer) -> ExternalCustomer:
        row = self._fetchone(
            """
            INSERT INTO members_stripe_customers (customer_id, member_id, name, email)
            VALUES (%s, %s, %s, %s)
            RETURNING *
            """,
            (customer.customer_id, customer.member_id, customer.name, customer.email),
        )
        return _row_to_customer(row)

    def upsert_customer(self, customer: ExternalCustomer) -> ExternalCustomer:
        row = self._fetchone(
            """
            INSERT INTO members_stripe_customers (customer_id, member_id, name, email)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (customer_id) DO UPDATE SET
                member_id = EXCLUDED.member_id,
                name = EXCLUDED.name,
                email = EXCLUDED.email,
                updated_at = NOW()
            RETURNING *
            """,
            (customer.customer_id, customer.member_id, customer.name, customer.email),
        )
        return _row_to_customer(row)

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        row = self._fetchone(
            "SELECT * FROM members_stripe_customers_subscriptions WHERE subscription_id = %s",
            (subscription_id,),
        )
        return _row_to_subscription(row) if row else None

    def get_subscription_by_id(self, id: str) -> Optional[Subscription]:
        row = self._fetchone("SELECT * FROM members_stripe_customers_subscriptions WHERE id = %s", (id,))
        return _row_to_subscription(row) if row else None

    def list_subscriptions(self, member_id: str) -> List[Subscription]:
        rows = self._fetchall(
            """
            SELECT *
            FROM members_stripe_customers_subscriptions
            WHERE member_id = %s
            ORDER BY created_at ASC
            """,
            (member_id,),
        )
        return [_row_to_subscription(row) for row in rows]

    def upsert_subscription(self, subscription: Subscription) -> Subscription:
        row = self._fetchone(
            """
            INSERT INTO members_stripe_customers_subscriptions (
                id,
                subscription_id,
                member_id,
                customer_id,
                product_id,
                stripe_price_id,
                status,
                cancel_at_period_end,
                cancellation_reason,
                current_period_end,
                start_date,
                trial_start_at,
                trial_end_at,
                default_payment_card_last4,
                plan_nickname,
                plan_interval,
                plan_amount,
                plan_currency,
                mrr,
                offer_id
            )
            VALUES (%(id)s, %(subscription_id)s, %(member_id)s, %(customer_id)s, %(product_id)s,
                    %(price_id)s, %(status)s, %(cancel_at_period_end)s, %(cancellation_reason)s,
                    %(current_period_end)s, %(start_date)s, %(trial_start_at)s, %(trial_end_at)s,
                    %(default_payment_card_last4)s, %(plan_nickname)s, %(plan_interval)s,
                    %(plan_amount)s, %(plan_currency)s, %(mrr)s, %(offer_id)s)
            ON CONFLICT (subscription_id) DO UPDATE SET
                member_id = EXCLUDED.member_id,
                customer_id = EXCLUDED.customer_id,
                product_id = EXCLUDED.product_id,
                stripe_price_id = EXCLUDED.stripe_price_id,
                status = EXCLUDED.status,
                cancel_at_period_end = EXCLUDED.cancel_at_period_end,
                cancellation_reason = EXCLUDED.cancellation_reason,
                current_period_end = EXCLUDED.current_period_end,
                start_date = EXCLUDED.start_date,
                trial_start_at = EXCLUDED.trial_start_at,
                trial_end_at = EXCLUDED.trial_end_at,
                default_payment_card_last4 = EXCLUDED.default_payment_card_last4,
                plan_nickname = EXCLUDED.plan_nickname,
                plan_interval = EXCLUDED.plan_interval,
                plan_amount = EXCLUDED.plan_amount,
                plan_currency = EXCLUDED.plan_currency,
                mrr = EXCLUDED.mrr,
                offer_id = COALESCE(EXCLUDED.offer_id, members_stripe_customers_subscriptions.offer_id),
                updated_at = NOW()
            RETURNING *
            """,
            {
                "id": subscription.id,
                "subscription_id": subscription.subscription_id,
                "member_id": subscription.member_id,
                "customer_id": subscription.customer_id,
                "product_id": subscription.product_id,
                "price_id": subscription.price_id,
                "status": subscription.status.value,
                "cancel_at_period_end": subscription.cancel_at_period_end,
                "cancellation_reason": subscription.cancellation_reason,
                "current_period_end": subscription.current_period_end,
                "start_date": subscription.start_date,
                "trial_start_at": subscription.trial_start_at,
                "trial_end_at": subscription.trial_end_at,
                "default_payment_card_last4": subscription.default_payment_card_last4,
                "plan_nickname": subscription.plan_nickname,
                "plan_interval": subscription.plan_interval,
                "plan_amount": subscription.plan_amount,
                "plan_currency": subscription.plan_currency,
                "mrr": subscription.mrr,
                "offer_id": subscription.offer_id,
            },
        )
        if not row:
            raise RuntimeError("Failed to persist subscription")
        return _row_to_subscription(row)

    def list_product_ids(self, member_id: str) -> List[str]:
        rows = self._fetchall(
            "SELECT product_id FROM members_products WHERE member_id = %s ORDER BY sort_order ASC",
            (member_id,),
        )
        return [row["product_id"] for row in rows]

    def set_product_ids(self, member_id: str, product_ids: Sequence[str]) -> None:
        self._execute("DELETE FROM members_products WHERE member_id = %s", (member_id,))
        for index, product_id in enumerate(product_ids):
            self._execute(
                "INSERT INTO members_products (member_id, product_id, sort_order) VALUES (%s, %s, %s)",
                (member_id, product_id, index),
            )

    def list_newsletter_ids(self, member_id: str) -> List[str]:
        rows = self._fetchall(
            "SELECT newsletter_id FROM members_newsletters WHERE member_id = %s ORDER BY newsletter_id ASC",
            (member_id,),
        )
        return [row["newsletter_id"] for row in rows]

    def set_newsletter_ids(self, member_id: str, newsletter_ids: Sequence[str]) -> None:
        self._execute("DELETE FROM members_newsletters WHERE member_id = %s", (member_id,))
        for newsletter_id in newsletter_ids:
            self._execute(
                "INSERT INTO members_newsletters (member_id, newsletter_id) VALUES (%s, %s)",
                (member_id, newsletter_id),
            )

    def _execute(self, query: str, params: Any = None) -> None:
        try:
            self._cursor.execute(query, params)
        except psycopg2.errors.UniqueViolation as exc:
            raise DuplicateRecordError(str(exc)) from exc
        except psycopg2.IntegrityError as exc:
            raise StoreIntegrityError(str(exc)) from exc

    def _fetchone(self, query: str, params: Any = None) -> Optional[dict]:
        self._execute(query, params)
        return self._cursor.fetchone()

    def _fetchall(self, query: str, params: Any = None) -> List[dict]:
        self._execute(query, params)
        return list(self._cursor.fetchall() or [])

    def _run_callbacks(self, *, committed: bool) -> None:
        self._cursor.close()
        for callback in self._on_commit if committed else self._on_rollback:
            callback()


class PostgresNewsletterDirectory:
    """Resolves the newsletters new members are subscribed to by default."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    def default_newsletter_ids(self) -> List[str]:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                SELECT id
                FROM newsletters
                WHERE status = 'active'
                  AND subscribe_on_signup = TRUE
                  AND visibility = 'members'
                ORDER BY sort_order ASC
                """
            )
            return [row["id"] for row in cursor.fetchall() or []]


__all__ = ["PostgresMembershipStore", "PostgresNewsletterDirectory", "PostgresTransaction"]
