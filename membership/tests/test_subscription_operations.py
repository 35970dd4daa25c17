from __future__ import annotations

import logging
from datetime import datetime, timezone

import pytest

from membership.app.billing import BillingInterval, MemberStatus, SubscriptionEventType, SubscriptionStatus
from membership.app.entitlements import Product, ProductPrice
from membership.app.errors import BadRequestError, ConflictError, NotFoundError
from membership.app.members import SubscriptionCancelledEvent, SubscriptionUpdatedEvent
from membership.tests.fakes import START, build_harness, make_price, make_snapshot

SILVER = make_price("price_silver_month", product="prod_silver", amount=300)
COMP = make_price("price_comp_usd", amount=0, interval=BillingInterval.YEAR, nickname="Complimentary")


@pytest.fixture
def harness():
    harness = build_harness()
    harness.add_member()
    return harness


@pytest.fixture
def linked(harness):
    harness.link(make_snapshot())
    harness.bus.clear()
    return harness


def test_lookups_by_internal_and_provider_id(linked):
    stored = linked.service.get_subscription_by_external_id("sub_1")

    assert stored is not None
    assert linked.service.get_subscription_by_id(stored.id) == stored
    assert linked.service.get_subscription_by_id("sub_missing") is None
    assert linked.service.get_subscription("sub_1", email="READER@example.com") == stored


def test_get_subscription_is_scoped_to_the_member(linked):
    linked.add_member("other@example.com", member_id="mem-2", customer_id="cus_2")

    with pytest.raises(NotFoundError) as excinfo:
        linked.service.get_subscription("sub_1", member_id="mem-2")

    assert excinfo.value.code == "subscription_not_found"


def test_get_subscription_requires_billing():
    harness = build_harness(configured=False)

    with pytest.raises(BadRequestError) as excinfo:
        harness.service.get_subscription("sub_1", member_id="mem-1")

    assert excinfo.value.code == "billing_not_configured"


def test_cancel_subscription_expires_and_emits_cancellation(linked):
    result = linked.service.cancel_subscription("sub_1", member_id="mem-1")

    assert "cancel_subscription:sub_1" in linked.provider.calls
    assert result.subscription.status == SubscriptionStatus.CANCELED
    assert result.member.status == MemberStatus.FREE
    assert linked.event_names() == [
        "SubscriptionUpdatedEvent",
        "MemberProductChangedEvent",
        "MemberStatusChangedEvent",
        "SubscriptionCancelledEvent",
    ]
    cancelled = linked.bus.of_type(SubscriptionCancelledEvent)[0]
    assert cancelled.occurred_at == datetime(2024, 6, 1, tzinfo=timezone.utc)
    assert cancelled.tier_id == "tier-gold"
    assert cancelled.subscription_id == result.subscription.id


def test_cancel_unknown_subscription_never_reaches_provider(linked):
    with pytest.raises(NotFoundError) as excinfo:
        linked.service.cancel_subscription("sub_missing", member_id="mem-1")

    assert excinfo.value.code == "subscription_not_found"
    assert not any(call.startswith("cancel_subscription") for call in linked.provider.calls)


def test_update_subscription_changes_price_and_drops_coupon(linked):
    linked.provider.prices[SILVER.id] = SILVER

    result = linked.service.update_subscription("sub_1", member_id="mem-1", price_id=SILVER.id)

    assert linked.provider.calls[-2:] == ["update_price:sub_1:price_silver_month", "remove_coupon:sub_1"]
    assert result.subscription.price_id == SILVER.id
    assert linked.store.member_products["mem-1"] == ("tier-silver",)


def test_update_subscription_without_changes_returns_none(linked):
    assert linked.service.update_subscription("sub_1", member_id="mem-1", price_id="price_gold_month") is None
    assert linked.service.update_subscription("sub_1", member_id="mem-1") is None
    assert linked.bus.history == []


def test_update_subscription_schedules_cancellation_with_reason(linked):
    result = linked.service.update_subscription(
        "sub_1",
        member_id="mem-1",
        cancel_at_period_end=True,
        cancellation_reason="Too expensive",
    )

    assert result.subscription.cancel_at_period_end is True
    assert result.subscription.cancellation_reason == "Too expensive"
    assert result.member.status == MemberStatus.PAID
    assert linked.event_names() == ["SubscriptionUpdatedEvent", "SubscriptionCancelledEvent"]
    assert linked.bus.history[0].type == SubscriptionEventType.CANCELED
    assert linked.bus.history[1].reason == "Too expensive"


def test_update_subscription_continues_a_scheduled_cancellation(linked):
    linked.service.update_subscription("sub_1", member_id="mem-1", cancel_at_period_end=True)
    linked.bus.clear()

    result = linked.service.update_subscription("sub_1", member_id="mem-1", cancel_at_period_end=False)

    assert result.subscription.cancel_at_period_end is False
    assert result.subscription.mrr == 500
    assert linked.event_names() == ["SubscriptionUpdatedEvent"]
    assert linked.bus.history[0].type == SubscriptionEventType.REACTIVATED


def test_create_subscription_reuses_linked_customer(harness):
    harness.provider.prices["price_gold_month"] = make_price()

    result = harness.service.create_subscription("mem-1", "price_gold_month")

    assert result.created is True
    assert result.subscription.customer_id == "cus_1"
    assert result.member.status == MemberStatus.PAID
    assert not any(call.startswith("create_customer") for call in harness.provider.calls)


def test_create_subscription_creates_customer_when_missing():
    harness = build_harness()
    harness.add_member(customer_id=None)
    harness.provider.prices["price_gold_month"] = make_price()

    result = harness.service.create_subscription("mem-1", "price_gold_month")

    assert result.subscription.customer_id == "cus_new_1"
    assert harness.store.customers["cus_new_1"].member_id == "mem-1"
    assert harness.store.member_products["mem-1"] == ("tier-gold",)


def test_create_subscription_for_unknown_member(harness):
    with pytest.raises(NotFoundError) as excinfo:
        harness.service.create_subscription("mem-missing", "price_gold_month")

    assert excinfo.value.code == "member_not_found"


def test_link_external_customer_links_its_subscriptions():
    harness = build_harness()
    harness.add_member(customer_id=None)
    harness.provider.add_customer("cus_9", email="reader@example.com")
    harness.provider.put(make_snapshot("sub_9", customer="cus_9"))

    results = harness.service.link_external_customer("mem-1", "cus_9")

    assert [r.subscription.subscription_id for r in results] == ["sub_9"]
    assert harness.store.customers["cus_9"].member_id == "mem-1"
    assert harness.store.members["mem-1"].status == MemberStatus.PAID


def test_link_external_customer_missing_at_provider(harness):
    assert harness.service.link_external_customer("mem-1", "cus_gone") == []
    assert "cus_gone" not in harness.store.customers


def test_link_external_customer_owned_by_another_member(harness):
    harness.add_member("other@example.com", member_id="mem-2", customer_id="cus_2")

    with pytest.raises(ConflictError) as excinfo:
        harness.service.link_external_customer("mem-1", "cus_2")

    assert excinfo.value.code == "customer_already_linked"
    assert harness.store.customers["cus_2"].member_id == "mem-2"


def test_set_complimentary_creates_customer_price_and_subscription():
    harness = build_harness()
    harness.add_member(customer_id=None)

    results = harness.service.set_complimentary_subscription("mem-1")

    assert harness.provider.calls == [
        "create_customer:cus_new_1",
        "create_price:price_new_2",
        "create_subscription:sub_new_3",
    ]
    assert len(results) == 1
    assert results[0].member.status == MemberStatus.COMPED
    assert results[0].subscription.plan_nickname == "Complimentary"
    assert harness.store.customers["cus_new_1"].member_id == "mem-1"
    assert harness.store.member_products["mem-1"] == ("tier-gold",)
    gold = harness.products.products["tier-gold"]
    assert gold.zero_value_price("usd").external_price_id == "price_new_2"


def test_set_complimentary_reuses_existing_zero_value_price():
    gold = Product(
        id="tier-gold",
        name="Gold",
        external_product_id="prod_gold",
        prices=(
            ProductPrice(
                external_price_id=COMP.id,
                external_product_id="prod_gold",
                nickname="Complimentary",
                amount=0,
                interval="year",
            ),
        ),
        created_at=START,
    )
    harness = build_harness(products=[gold])
    harness.add_member(customer_id=None)
    harness.provider.prices[COMP.id] = COMP

    results = harness.service.set_complimentary_subscription("mem-1")

    assert not any(call.startswith("create_price") for call in harness.provider.calls)
    assert results[0].subscription.price_id == COMP.id


def test_set_complimentary_moves_active_subscriptions_to_zero_price(linked):
    results = linked.service.set_complimentary_subscription("mem-1")

    assert len(results) == 1
    assert results[0].subscription.subscription_id == "sub_1"
    assert results[0].subscription.mrr == 0
    assert results[0].member.status == MemberStatus.COMPED
    updated = linked.bus.of_type(SubscriptionUpdatedEvent)[0]
    assert updated.mrr_delta == -500
    assert not any(call.startswith("create_customer") for call in linked.provider.calls)


def test_set_complimentary_without_paid_product():
    harness = build_harness(products=[])
    harness.add_member()

    with pytest.raises(NotFoundError) as excinfo:
        harness.service.set_complimentary_subscription("mem-1")

    assert excinfo.value.code == "product_not_found"


def test_set_complimentary_requires_a_linked_product():
    harness = build_harness(products=[Product(id="tier-local", name="Local", created_at=START)])
    harness.add_member(customer_id=None)

    with pytest.raises(BadRequestError) as excinfo:
        harness.service.set_complimentary_subscription("mem-1")

    assert excinfo.value.code == "product_not_linked"


def test_cancel_complimentary_cancels_live_subscriptions(harness):
    harness.link(make_snapshot(price=COMP))

    results = harness.service.cancel_complimentary_subscription("mem-1")

    assert len(results) == 1
    assert results[0].subscription.status == SubscriptionStatus.CANCELED
    assert results[0].member.status == MemberStatus.FREE


def test_cancel_complimentary_skips_canceled_and_isolates_failures(harness, caplog):
    harness.link(make_snapshot(price=COMP))
    harness.link(make_snapshot("sub_2", price=SILVER))
    harness.link(make_snapshot("sub_3", price=SILVER, status=SubscriptionStatus.CANCELED))
    harness.provider.failing_cancellations.add("sub_1")

    with caplog.at_level(logging.ERROR):
        results = harness.service.cancel_complimentary_subscription("mem-1")

    assert [r.subscription.subscription_id for r in results] == ["sub_2"]
    assert "There was an error cancelling subscription sub_1" in caplog.text
    assert "cancel_subscription:sub_3" not in harness.provider.calls
    assert harness.store.subscriptions["sub_1"].status == SubscriptionStatus.ACTIVE
