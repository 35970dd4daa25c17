"""API routes exposing member lifecycle and subscription reconciliation."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status

from ..billing import BillingProviderError, SubscriptionSnapshot
from ..errors import MembershipError
from ..members import EventSource
from ..schemas.members import (
    CustomerLinkRequest,
    MemberCreateRequest,
    MemberResponse,
    MemberUpdateRequest,
    SubscriptionCreateRequest,
    SubscriptionLinkListResponse,
    SubscriptionLinkResponse,
    SubscriptionResponse,
    SubscriptionUpdateRequest,
    SubscriptionWebhookPayload,
)
from ..services import members as members_service


def _resolve_source(x_api_key: Optional[str] = Header(None, alias="X-Api-Key")) -> EventSource:
    return EventSource.API if x_api_key else EventSource.ADMIN


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except MembershipError as exc:
        raise exc.to_http_exception() from exc
    except BillingProviderError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


router = APIRouter(prefix="/api/members", tags=["members"])


@router.post("", response_model=MemberResponse, status_code=status.HTTP_201_CREATED)
def create_member(
    payload: MemberCreateRequest,
    *,
    source: EventSource = Depends(_resolve_source),
) -> MemberResponse:
    service = members_service.get_member_service()
    with _domain_errors():
        details = service.create_member(payload.to_domain(), source=source)
        if payload.stripe_customer_id:
            service.link_external_customer(details.member.id, payload.stripe_customer_id, source=source)
            details = service.get_member_details(details.member.id)
    return MemberResponse.from_details(details)


@router.get("/{member_id}", response_model=MemberResponse)
def get_member(member_id: str) -> MemberResponse:
    service = members_service.get_member_service()
    with _domain_errors():
        details = service.get_member_details(member_id)
    return MemberResponse.from_details(details)


@router.put("/{member_id}", response_model=MemberResponse)
def update_member(
    member_id: str,
    payload: MemberUpdateRequest,
    *,
    source: EventSource = Depends(_resolve_source),
) -> MemberResponse:
    service = members_service.get_member_service()
    with _domain_errors():
        details = service.update_member(member_id, payload.to_domain(), source=source)
    return MemberResponse.from_details(details)


@router.delete("/{member_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_member(
    member_id: str,
    cancel: bool = Query(False),
    *,
    source: EventSource = Depends(_resolve_source),
) -> Response:
    service = members_service.get_member_service()
    with _domain_errors():
        deleted = service.destroy_member(member_id, cancel_subscriptions=cancel, source=source)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Member {member_id} not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/subscriptions/{id}", response_model=SubscriptionResponse)
def get_subscription_by_id(id: str) -> SubscriptionResponse:
    subscription = members_service.get_member_service().get_subscription_by_id(id)
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Subscription {id} not found")
    return SubscriptionResponse.from_subscription(subscription)


@router.get("/subscriptions/external/{subscription_id}", response_model=SubscriptionResponse)
def get_subscription_by_external_id(subscription_id: str) -> SubscriptionResponse:
    subscription = members_service.get_member_service().get_subscription_by_external_id(subscription_id)
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Subscription {subscription_id} not found")
    return SubscriptionResponse.from_subscription(subscription)


@router.get("/{member_id}/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
def get_member_subscription(member_id: str, subscription_id: str) -> SubscriptionResponse:
    service = members_service.get_member_service()
    with _domain_errors():
        subscription = service.get_subscription(subscription_id, member_id=member_id)
    return SubscriptionResponse.from_subscription(subscription)


@router.post(
    "/{member_id}/subscriptions",
    response_model=SubscriptionLinkResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_subscription(
    member_id: str,
    payload: SubscriptionCreateRequest,
    *,
    source: EventSource = Depends(_resolve_source),
) -> SubscriptionLinkResponse:
    service = members_service.get_member_service()
    with _domain_errors():
        result = service.create_subscription(member_id, payload.price_id, source=source)
    return SubscriptionLinkResponse.from_result(result)


@router.put("/{member_id}/subscriptions/{subscription_id}", response_model=Optional[SubscriptionLinkResponse])
def update_subscription(
    member_id: str,
    subscription_id: str,
    payload: SubscriptionUpdateRequest,
    *,
    source: EventSource = Depends(_resolve_source),
) -> Optional[SubscriptionLinkResponse]:
    service = members_service.get_member_service()
    with _domain_errors():
        result = service.update_subscription(
            subscription_id,
            member_id=member_id,
            price_id=payload.price_id,
            cancel_at_period_end=payload.cancel_at_period_end,
            cancellation_reason=payload.cancellation_reason,
            source=source,
        )
    return SubscriptionLinkResponse.from_result(result) if result is not None else None


@router.delete("/{member_id}/subscriptions/{subscription_id}", response_model=SubscriptionLinkResponse)
def cancel_subscription(
    member_id: str,
    subscription_id: str,
    *,
    source: EventSource = Depends(_resolve_source),
) -> SubscriptionLinkResponse:
    service = members_service.get_member_service()
    with _domain_errors():
        result = service.cancel_subscription(subscription_id, member_id=member_id, source=source)
    return SubscriptionLinkResponse.from_result(result)


@router.post("/{member_id}/complimentary", response_model=SubscriptionLinkListResponse)
def set_complimentary_subscription(
    member_id: str,
    *,
    source: EventSource = Depends(_resolve_source),
) -> SubscriptionLinkListResponse:
    service = members_service.get_member_service()
    with _domain_errors():
        results = service.set_complimentary_subscription(member_id, source=source)
    return SubscriptionLinkListResponse(results=[SubscriptionLinkResponse.from_result(r) for r in results])


@router.delete("/{member_id}/complimentary", response_model=SubscriptionLinkListResponse)
def cancel_complimentary_subscription(
    member_id: str,
    *,
    source: EventSource = Depends(_resolve_source),
) -> SubscriptionLinkListResponse:
    service = members_service.get_member_service()
    with _domain_errors():
        results = service.cancel_complimentary_subscription(member_id, source=source)
    return SubscriptionLinkListResponse(results=[SubscriptionLinkResponse.from_result(r) for r in results])


@router.post("/{member_id}/customers", response_model=SubscriptionLinkListResponse)
def link_customer(
    member_id: str,
    payload: CustomerLinkRequest,
    *,
    source: EventSource = Depends(_resolve_source),
) -> SubscriptionLinkListResponse:
    service = members_service.get_member_service()
    with _domain_errors():
        results = service.link_external_customer(member_id, payload.customer_id, source=source)
    return SubscriptionLinkListResponse(results=[SubscriptionLinkResponse.from_result(r) for r in results])


@router.post("/webhooks/subscription", response_model=SubscriptionLinkResponse)
def receive_subscription_webhook(payload: SubscriptionWebhookPayload) -> SubscriptionLinkResponse:
    service = members_service.get_member_service()
    try:
        snapshot = SubscriptionSnapshot.from_provider(payload.subscription)
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    member = service.get_member_by_customer_id(snapshot.customer)
    if member is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No member is linked to customer {snapshot.customer}",
        )
    with _domain_errors():
        result = service.link_subscription(
            member.id,
            snapshot,
            offer_id=payload.offer_id,
            attribution=payload.attribution,
            source=EventSource.SYSTEM,
        )
    return SubscriptionLinkResponse.from_result(result)
