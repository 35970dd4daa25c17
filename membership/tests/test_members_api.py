from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from membership.app.billing import BillingProviderError, MemberStatus, SubscriptionSnapshot
from membership.app.members import EventSource
from membership.app.routes import members as members_routes
from membership.app.schemas.members import (
    CustomerLinkRequest,
    MemberCreateRequest,
    MemberResponse,
    MemberUpdateRequest,
    SubscriptionLinkResponse,
    SubscriptionUpdateRequest,
    SubscriptionWebhookPayload,
)
from membership.app.services import members as members_service
from membership.tests.fakes import build_harness, make_snapshot

RAW_SUBSCRIPTION = {
    "id": "sub_1",
    "customer": "cus_1",
    "status": "active",
    "start_date": 1704067200,
    "items": {
        "data": [
            {
                "id": "si_1",
                "price": {
                    "id": "price_gold_month",
                    "product": "prod_gold",
                    "nickname": "Monthly",
                    "currency": "usd",
                    "unit_amount": 500,
                    "recurring": {"interval": "month"},
                },
            }
        ]
    },
}


@pytest.fixture
def harness(monkeypatch):
    harness = build_harness()
    monkeypatch.setattr(members_service, "get_member_service", lambda: harness.service)
    return harness


def test_source_is_resolved_from_api_key_header():
    assert members_routes._resolve_source("key-123") == EventSource.API
    assert members_routes._resolve_source(None) == EventSource.ADMIN


def test_create_member_returns_details(harness):
    payload = MemberCreateRequest(email="new@example.com", name="New Reader", newsletterIds=["news-daily"])

    response = members_routes.create_member(payload, source=EventSource.ADMIN)

    assert isinstance(response, MemberResponse)
    assert response.status == MemberStatus.FREE
    assert response.newsletter_ids == ["news-daily"]
    assert {event.source for event in harness.bus.history} == {EventSource.ADMIN}


def test_create_member_links_customer_from_payload(harness):
    harness.provider.add_customer("cus_5", email="new@example.com")
    harness.provider.put(make_snapshot("sub_5", customer="cus_5"))

    response = members_routes.create_member(
        MemberCreateRequest(email="new@example.com", stripeCustomerId="cus_5"),
        source=EventSource.API,
    )

    assert response.status == MemberStatus.PAID
    assert [s.subscription_id for s in response.subscriptions] == ["sub_5"]
    assert response.product_ids == ["tier-gold"]


def test_create_member_conflict_is_409(harness):
    harness.add_member()

    with pytest.raises(HTTPException) as excinfo:
        members_routes.create_member(MemberCreateRequest(email="reader@example.com"), source=EventSource.ADMIN)

    assert excinfo.value.status_code == 409
    assert excinfo.value.detail["error"] == "member_exists"


def test_get_missing_member_is_404(harness):
    with pytest.raises(HTTPException) as excinfo:
        members_routes.get_member("mem-missing")

    assert excinfo.value.status_code == 404
    assert excinfo.value.detail["error"] == "member_not_found"


def test_update_member_applies_partial_update(harness):
    harness.add_member()

    response = members_routes.update_member(
        "mem-1", MemberUpdateRequest(name="Renamed", productIds=["tier-silver"]), source=EventSource.ADMIN
    )

    assert response.name == "Renamed"
    assert response.status == MemberStatus.COMPED
    assert response.product_ids == ["tier-silver"]


def test_delete_member(harness):
    harness.add_member()

    response = members_routes.delete_member("mem-1", cancel=False, source=EventSource.ADMIN)

    assert response.status_code == 204
    with pytest.raises(HTTPException) as excinfo:
        members_routes.delete_member("mem-1", cancel=False, source=EventSource.ADMIN)
    assert excinfo.value.status_code == 404


def test_subscription_lookups(harness):
    harness.add_member()
    result = harness.link(make_snapshot())

    by_id = members_routes.get_subscription_by_id(result.subscription.id)
    by_external = members_routes.get_subscription_by_external_id("sub_1")
    scoped = members_routes.get_member_subscription("mem-1", "sub_1")

    assert by_id.subscription_id == by_external.subscription_id == scoped.subscription_id == "sub_1"
    assert by_id.mrr == 500
    with pytest.raises(HTTPException) as excinfo:
        members_routes.get_subscription_by_external_id("sub_missing")
    assert excinfo.value.status_code == 404


def test_update_subscription_without_changes_returns_none(harness):
    harness.add_member()
    harness.link(make_snapshot())

    response = members_routes.update_subscription(
        "mem-1", "sub_1", SubscriptionUpdateRequest(priceId="price_gold_month"), source=EventSource.ADMIN
    )

    assert response is None


def test_cancel_subscription_route(harness):
    harness.add_member()
    harness.link(make_snapshot())

    response = members_routes.cancel_subscription("mem-1", "sub_1", source=EventSource.ADMIN)

    assert isinstance(response, SubscriptionLinkResponse)
    assert response.member_status == MemberStatus.FREE
    assert response.subscription.status == "canceled"


def test_link_customer_route(harness):
    harness.add_member(customer_id=None)
    harness.provider.add_customer("cus_9")
    harness.provider.put(make_snapshot("sub_9", customer="cus_9"))

    response = members_routes.link_customer("mem-1", CustomerLinkRequest(customerId="cus_9"), source=EventSource.ADMIN)

    assert [r.subscription.subscription_id for r in response.results] == ["sub_9"]


def test_complimentary_routes(harness):
    harness.add_member(customer_id=None)

    created = members_routes.set_complimentary_subscription("mem-1", source=EventSource.ADMIN)
    cancelled = members_routes.cancel_complimentary_subscription("mem-1", source=EventSource.ADMIN)

    assert created.results[0].member_status == MemberStatus.COMPED
    assert cancelled.results[0].member_status == MemberStatus.FREE


def test_webhook_reconciles_subscription(harness):
    harness.add_member()
    harness.provider.put(SubscriptionSnapshot.from_provider(RAW_SUBSCRIPTION))

    response = members_routes.receive_subscription_webhook(
        SubscriptionWebhookPayload(subscription=RAW_SUBSCRIPTION, attribution={"referrer_source": "email"})
    )

    assert response.created is True
    assert response.member_status == MemberStatus.PAID
    assert [c.product_id for c in response.changes] == ["tier-gold"]
    assert {event.source for event in harness.bus.history} == {EventSource.SYSTEM}


def test_webhook_for_unknown_customer_is_404(harness):
    with pytest.raises(HTTPException) as excinfo:
        members_routes.receive_subscription_webhook(SubscriptionWebhookPayload(subscription=RAW_SUBSCRIPTION))

    assert excinfo.value.status_code == 404


def test_malformed_webhook_is_400(harness):
    with pytest.raises(HTTPException) as excinfo:
        members_routes.receive_subscription_webhook(SubscriptionWebhookPayload(subscription={"status": "active"}))

    assert excinfo.value.status_code == 400


def test_provider_failure_is_502(monkeypatch):
    def failing_cancel(subscription_id, **kwargs):
        raise BillingProviderError("Stripe is unavailable")

    monkeypatch.setattr(
        members_service,
        "get_member_service",
        lambda: SimpleNamespace(cancel_subscription=failing_cancel),
    )

    with pytest.raises(HTTPException) as excinfo:
        members_routes.cancel_subscription("mem-1", "sub_1", source=EventSource.ADMIN)

    assert excinfo.value.status_code == 502
    assert excinfo.value.detail == "Stripe is unavailable"
