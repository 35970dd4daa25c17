"""API schemas for member and subscription endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from ..billing import MemberStatus, Subscription, SubscriptionStatus
from ..entitlements import EntitlementAction
from ..members import MemberCreate, MemberDetails, MemberUpdate, SubscriptionLinkResult


class MemberCreateRequest(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    note: Optional[str] = None
    subscribed: Optional[bool] = None
    newsletter_ids: Optional[List[str]] = Field(alias="newsletterIds", default=None)
    product_ids: List[str] = Field(alias="productIds", default_factory=list)
    created_at: Optional[datetime] = Field(alias="createdAt", default=None)
    stripe_customer_id: Optional[str] = Field(alias="stripeCustomerId", default=None)

    model_config = ConfigDict(populate_by_name=True)

    def to_domain(self) -> MemberCreate:
        return MemberCreate(
            email=str(self.email),
            name=self.name,
            note=self.note,
            subscribed=self.subscribed,
            newsletter_ids=self.newsletter_ids,
            product_ids=tuple(self.product_ids),
            created_at=self.created_at,
        )


class MemberUpdateRequest(BaseModel):
    email: Optional[EmailStr] = None
    name: Optional[str] = None
    note: Optional[str] = None
    subscribed: Optional[bool] = None
    newsletter_ids: Optional[List[str]] = Field(alias="newsletterIds", default=None)
    product_ids: Optional[List[str]] = Field(alias="productIds", default=None)

    model_config = ConfigDict(populate_by_name=True)

    def to_domain(self) -> MemberUpdate:
        return MemberUpdate(
            email=str(self.email) if self.email is not None else None,
            name=self.name,
            note=self.note,
            subscribed=self.subscribed,
            newsletter_ids=self.newsletter_ids,
            product_ids=self.product_ids,
        )


class SubscriptionResponse(BaseModel):
    id: str
    subscription_id: str = Field(alias="subscriptionId")
    customer_id: str = Field(alias="customerId")
    product_id: Optional[str] = Field(alias="productId", default=None)
    price_id: str = Field(alias="priceId")
    status: SubscriptionStatus
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd")
    cancellation_reason: Optional[str] = Field(alias="cancellationReason", default=None)
    current_period_end: Optional[datetime] = Field(alias="currentPeriodEnd", default=None)
    start_date: Optional[datetime] = Field(alias="startDate", default=None)
    trial_start_at: Optional[datetime] = Field(alias="trialStartAt", default=None)
    trial_end_at: Optional[datetime] = Field(alias="trialEndAt", default=None)
    default_payment_card_last4: Optional[str] = Field(alias="defaultPaymentCardLast4", default=None)
    plan_nickname: Optional[str] = Field(alias="planNickname", default=None)
    plan_interval: Optional[str] = Field(alias="planInterval", default=None)
    plan_amount: int = Field(alias="planAmount")
    plan_currency: str = Field(alias="planCurrency")
    mrr: int
    offer_id: Optional[str] = Field(alias="offerId", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls.model_validate(subscription.model_dump())


class MemberResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    note: Optional[str] = None
    status: MemberStatus
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")
    product_ids: List[str] = Field(alias="productIds", default_factory=list)
    newsletter_ids: List[str] = Field(alias="newsletterIds", default_factory=list)
    subscriptions: List[SubscriptionResponse] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_details(cls, details: MemberDetails) -> "MemberResponse":
        member = details.member
        return cls(
            id=member.id,
            email=member.email,
            name=member.name,
            note=member.note,
            status=member.status,
            created_at=member.created_at,
            updated_at=member.updated_at,
            product_ids=list(details.product_ids),
            newsletter_ids=list(details.newsletter_ids),
            subscriptions=[SubscriptionResponse.from_subscription(s) for s in details.subscriptions],
        )


class SubscriptionCreateRequest(BaseModel):
    price_id: str = Field(alias="priceId")

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionUpdateRequest(BaseModel):
    price_id: Optional[str] = Field(alias="priceId", default=None)
    cancel_at_period_end: Optional[bool] = Field(alias="cancelAtPeriodEnd", default=None)
    cancellation_reason: Optional[str] = Field(alias="cancellationReason", default=None)

    model_config = ConfigDict(populate_by_name=True)


class CustomerLinkRequest(BaseModel):
    customer_id: str = Field(alias="customerId")

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionWebhookPayload(BaseModel):
    """A provider subscription object delivered by the webhook transport."""

    subscription: Dict[str, Any]
    offer_id: Optional[str] = Field(alias="offerId", default=None)
    attribution: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class EntitlementChangeResponse(BaseModel):
    product_id: str = Field(alias="productId")
    action: EntitlementAction

    model_config = ConfigDict(populate_by_name=True)


class DegradationResponse(BaseModel):
    code: str
    message: str

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionLinkResponse(BaseModel):
    subscription: SubscriptionResponse
    member_status: MemberStatus = Field(alias="memberStatus")
    created: bool = False
    changes: List[EntitlementChangeResponse] = Field(default_factory=list)
    degradations: List[DegradationResponse] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: SubscriptionLinkResult) -> "SubscriptionLinkResponse":
        return cls(
            subscription=SubscriptionResponse.from_subscription(result.subscription),
            member_status=result.member.status,
            created=result.created,
            changes=[
                EntitlementChangeResponse(product_id=change.product_id, action=change.action)
                for change in result.changes
            ],
            degradations=[DegradationResponse(code=d.code, message=d.message) for d in result.degradations],
        )


class SubscriptionLinkListResponse(BaseModel):
    results: List[SubscriptionLinkResponse] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)
