from __future__ import annotations

from datetime import datetime, timezone

import psycopg2.errors
import psycopg2.extras
import pytest

from membership.app.billing import ExternalCustomer, MemberStatus, Subscription, SubscriptionStatus
from membership.app.billing.repository import PostgresOfferRepository
from membership.app.entitlements import ProductPrice, ProductSelector
from membership.app.entitlements.repository import PostgresProductRepository
from membership.app.errors import DuplicateRecordError, StoreIntegrityError
from membership.app.members.repository import PostgresMembershipStore, PostgresNewsletterDirectory

NOW = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, *, fetchone_result=None, fetchall_result=None, error=None):
        self.fetchone_result = fetchone_result
        self.fetchall_result = list(fetchall_result or [])
        self.error = error
        self.execute_calls = []
        self.closed = False

    def execute(self, query, params=None):
        self.execute_calls.append((" ".join(query.split()), params))
        if self.error is not None:
            raise self.error

    def fetchone(self):
        return self.fetchone_result

    def fetchall(self):
        return list(self.fetchall_result)

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed = True
        return False


class FakeConnection:
    def __init__(self, *cursors, log=None):
        self._cursors = list(cursors)
        self.cursor_calls = []
        self.log = log if log is not None else []

    def cursor(self, *args, **kwargs):
        self.cursor_calls.append((args, kwargs))
        if not self._cursors:
            raise AssertionError("No cursors configured")
        return self._cursors.pop(0)

    def commit(self):
        self.log.append("commit")

    def rollback(self):
        self.log.append("rollback")

    def close(self):
        self.log.append("close")


def _member_row(**overrides):
    row = {
        "id": "mem-1",
        "email": "reader@example.com",
        "name": "Reader",
        "note": None,
        "status": "paid",
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def _subscription_row(**overrides):
    row = {
        "id": "sub_row_1",
        "subscription_id": "sub_1",
        "member_id": "mem-1",
        "customer_id": "cus_1",
        "product_id": "tier-gold",
        "stripe_price_id": "price_gold_month",
        "status": "active",
        "cancel_at_period_end": False,
        "cancellation_reason": None,
        "current_period_end": None,
        "start_date": NOW,
        "trial_start_at": None,
        "trial_end_at": None,
        "default_payment_card_last4": "4242",
        "plan_nickname": "Monthly",
        "plan_interval": "month",
        "plan_amount": 500,
        "plan_currency": "usd",
        "mrr": 500,
        "offer_id": "offer-half",
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def _store(cursor, log=None):
    conn = FakeConnection(cursor, log=log)
    return PostgresMembershipStore(connect=lambda: conn), conn


def test_lock_member_selects_for_update():
    cursor = FakeCursor(fetchone_result=_member_row())
    store, conn = _store(cursor)

    with store.transaction() as transaction:
        member = transaction.lock_member("mem-1")

    assert member.status == MemberStatus.PAID
    assert cursor.execute_calls == [("SELECT * FROM members WHERE id = %s FOR UPDATE", ("mem-1",))]
    assert conn.cursor_calls[0][1]["cursor_factory"] is psycopg2.extras.RealDictCursor
    assert conn.log == ["commit", "close"]
    assert cursor.closed


def test_get_member_by_email_is_case_insensitive():
    cursor = FakeCursor(fetchone_result=None)
    store, _ = _store(cursor)

    with store.transaction() as transaction:
        assert transaction.get_member(email="Reader@Example.com") is None

    assert cursor.execute_calls == [
        ("SELECT * FROM members WHERE lower(email) = lower(%s)", ("Reader@Example.com",))
    ]


def test_upsert_subscription_keeps_existing_offer():
    cursor = FakeCursor(fetchone_result=_subscription_row())
    store, _ = _store(cursor)
    subscription = Subscription(
        id="sub_row_1",
        subscription_id="sub_1",
        member_id="mem-1",
        customer_id="cus_1",
        product_id="tier-gold",
        price_id="price_gold_month",
        status=SubscriptionStatus.ACTIVE,
        mrr=500,
    )

    with store.transaction() as transaction:
        stored = transaction.upsert_subscription(subscription)

    query, params = cursor.execute_calls[0]
    assert "ON CONFLICT (subscription_id) DO UPDATE SET" in query
    assert "offer_id = COALESCE(EXCLUDED.offer_id, members_stripe_customers_subscriptions.offer_id)" in query
    assert params["price_id"] == "price_gold_month"
    assert params["status"] == "active"
    assert params["offer_id"] is None
    assert stored.offer_id == "offer-half"
    assert stored.price_id == "price_gold_month"


def test_set_product_ids_rewrites_ordered_rows():
    cursor = FakeCursor()
    store, _ = _store(cursor)

    with store.transaction() as transaction:
        transaction.set_product_ids("mem-1", ["tier-gold", "tier-silver"])

    assert cursor.execute_calls == [
        ("DELETE FROM members_products WHERE member_id = %s", ("mem-1",)),
        (
            "INSERT INTO members_products (member_id, product_id, sort_order) VALUES (%s, %s, %s)",
            ("mem-1", "tier-gold", 0),
        ),
        (
            "INSERT INTO members_products (member_id, product_id, sort_order) VALUES (%s, %s, %s)",
            ("mem-1", "tier-silver", 1),
        ),
    ]


def test_list_product_ids_preserves_sort_order():
    cursor = FakeCursor(fetchall_result=[{"product_id": "tier-gold"}, {"product_id": "tier-silver"}])
    store, _ = _store(cursor)

    with store.transaction() as transaction:
        assert transaction.list_product_ids("mem-1") == ["tier-gold", "tier-silver"]

    assert "ORDER BY sort_order ASC" in cursor.execute_calls[0][0]


def test_unique_violation_becomes_duplicate_record():
    cursor = FakeCursor(error=psycopg2.errors.UniqueViolation("duplicate key value"))
    log = []
    store, _ = _store(cursor, log=log)

    with pytest.raises(DuplicateRecordError):
        with store.transaction() as transaction:
            transaction.insert_customer(ExternalCustomer(customer_id="cus_1", member_id="mem-1"))

    assert log == ["rollback", "close"]


def test_other_integrity_errors_become_store_integrity_errors():
    cursor = FakeCursor(error=psycopg2.errors.ForeignKeyViolation("missing product"))
    store, _ = _store(cursor)

    with pytest.raises(StoreIntegrityError) as excinfo:
        with store.transaction() as transaction:
            transaction.set_product_ids("mem-1", ["tier-ghost"])

    assert not isinstance(excinfo.value, DuplicateRecordError)


def test_callbacks_run_after_commit():
    log = []
    store, _ = _store(FakeCursor(), log=log)

    with store.transaction() as transaction:
        transaction.on_commit(lambda: log.append("committed-callback"))
        transaction.on_rollback(lambda: log.append("rollback-callback"))

    assert log == ["commit", "close", "committed-callback"]


def test_rollback_runs_rollback_callbacks_and_reraises():
    log = []
    store, _ = _store(FakeCursor(), log=log)

    with pytest.raises(RuntimeError):
        with store.transaction() as transaction:
            transaction.on_commit(lambda: log.append("committed-callback"))
            transaction.on_rollback(lambda: log.append("rollback-callback"))
            raise RuntimeError("boom")

    assert log == ["rollback", "rollback-callback", "close"]


def test_savepoint_rolls_back_only_its_block():
    cursor = FakeCursor()
    store, _ = _store(cursor)

    with store.transaction() as transaction:
        with pytest.raises(StoreIntegrityError):
            with transaction.savepoint():
                raise StoreIntegrityError("rejected")
        with transaction.savepoint():
            pass

    assert [query for query, _ in cursor.execute_calls] == [
        "SAVEPOINT sp_1",
        "ROLLBACK TO SAVEPOINT sp_1",
        "SAVEPOINT sp_2",
        "RELEASE SAVEPOINT sp_2",
    ]


def test_get_member_by_customer_joins_customers():
    cursor = FakeCursor(fetchone_result=_member_row())
    store, _ = _store(cursor)

    with store.transaction() as transaction:
        member = transaction.get_member_by_customer_id("cus_1")

    assert member.id == "mem-1"
    query, params = cursor.execute_calls[0]
    assert "JOIN members_stripe_customers AS c ON c.member_id = m.id" in query
    assert params == ("cus_1",)


def test_offer_repository_reads_by_coupon():
    cursor = FakeCursor(
        fetchone_result={"id": "offer-half", "name": "Half", "stripe_coupon_id": "coupon_half", "product_id": "tier-gold"}
    )
    repository = PostgresOfferRepository(conn=FakeConnection(cursor))

    offer = repository.get_by_external_coupon_id("coupon_half")

    assert offer.id == "offer-half"
    assert offer.tier_id == "tier-gold"
    assert "WHERE stripe_coupon_id = %s" in cursor.execute_calls[0][0]
    assert cursor.closed


def test_offer_repository_records_redemption_once():
    cursor = FakeCursor()
    repository = PostgresOfferRepository(conn=FakeConnection(cursor))

    repository.record_redemption(offer_id="offer-half", member_id="mem-1", subscription_id="sub_row_1")

    query, params = cursor.execute_calls[0]
    assert "ON CONFLICT (offer_id, subscription_id) DO NOTHING" in query
    assert params == ("offer-half", "mem-1", "sub_row_1")


def _product_row():
    return {
        "id": "tier-gold",
        "name": "Gold",
        "type": "paid",
        "active": True,
        "stripe_product_id": "prod_gold",
        "created_at": NOW,
    }


def _price_row(**overrides):
    row = {
        "product_id": "tier-gold",
        "stripe_price_id": "price_gold_month",
        "stripe_product_id": "prod_gold",
        "nickname": "Monthly",
        "currency": "usd",
        "amount": 500,
        "interval": "month",
        "active": True,
        "type": "recurring",
    }
    row.update(overrides)
    return row


def test_product_repository_get_by_external_product():
    cursor = FakeCursor(fetchone_result=_product_row(), fetchall_result=[_price_row()])
    repository = PostgresProductRepository(conn=FakeConnection(cursor))

    product = repository.get(ProductSelector(external_product_id="prod_gold"))

    assert product.id == "tier-gold"
    assert [price.external_price_id for price in product.prices] == ["price_gold_month"]
    assert "WHERE p.stripe_product_id = %s" in cursor.execute_calls[0][0]
    assert cursor.execute_calls[1][1] == (["tier-gold"],)


def test_product_repository_links_prices():
    cursor = FakeCursor(
        fetchone_result=_product_row(),
        fetchall_result=[_price_row(), _price_row(stripe_price_id="price_comp", amount=0, nickname="Complimentary")],
    )
    repository = PostgresProductRepository(conn=FakeConnection(cursor))

    product = repository.update(
        "tier-gold",
        prices=[ProductPrice(external_price_id="price_comp", external_product_id="prod_gold", amount=0)],
    )

    insert_query, insert_params = cursor.execute_calls[0]
    assert "ON CONFLICT (stripe_price_id) DO UPDATE SET" in insert_query
    assert insert_params["product_id"] == "tier-gold"
    assert "SET stripe_product_id = COALESCE(stripe_product_id, %s)" in cursor.execute_calls[1][0]
    assert product.zero_value_price("usd").external_price_id == "price_comp"


def test_newsletter_directory_lists_signup_newsletters():
    cursor = FakeCursor(fetchall_result=[{"id": "news-weekly"}, {"id": "news-daily"}])
    directory = PostgresNewsletterDirectory(conn=FakeConnection(cursor))

    assert directory.default_newsletter_ids() == ["news-weekly", "news-daily"]
    assert "subscribe_on_signup = TRUE" in cursor.execute_calls[0][0]
