"""Domain models for the billing side of membership reconciliation."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing", "unpaid", "past_due"})
COMPLIMENTARY_NICKNAME = "complimentary"


class SubscriptionStatus(str, Enum):
    """Lifecycle status strings reported by the billing provider."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"

    @property
    def is_active(self) -> bool:
        return self.value in ACTIVE_SUBSCRIPTION_STATUSES


class BillingInterval(str, Enum):
    """Recurring intervals a provider price can bill on."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class CouponDuration(str, Enum):
    FOREVER = "forever"
    ONCE = "once"
    REPEATING = "repeating"


class Coupon(BaseModel):
    id: str
    duration: CouponDuration = CouponDuration.ONCE
    amount_off: Optional[int] = None
    percent_off: Optional[float] = None

    model_config = ConfigDict(frozen=True)


class Discount(BaseModel):
    """A coupon applied to a subscription; ``end`` is null for open-ended discounts."""

    coupon: Coupon
    end: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_forever(self) -> bool:
        return self.end is None and self.coupon.duration == CouponDuration.FOREVER


class Price(BaseModel):
    """Provider price attached to the first subscription item."""

    id: str
    product: str = Field(description="Provider product identifier")
    nickname: Optional[str] = None
    currency: str = "usd"
    unit_amount: int = Field(default=0, ge=0)
    interval: Optional[BillingInterval] = None
    active: bool = True
    type: str = "recurring"

    model_config = ConfigDict(frozen=True)

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.lower()


class SubscriptionItem(BaseModel):
    id: str
    price: Price

    model_config = ConfigDict(frozen=True)


class PaymentMethod(BaseModel):
    id: str
    card_last4: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class SubscriptionSnapshot(BaseModel):
    """Normalized view of a provider subscription at one point in time."""

    id: str
    customer: str
    status: SubscriptionStatus
    cancel_at_period_end: bool = False
    items: Sequence[SubscriptionItem] = Field(default_factory=tuple)
    discount: Optional[Discount] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    start_date: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    default_payment_method: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def item(self) -> SubscriptionItem:
        if not self.items:
            raise ValueError(f"Subscription {self.id} has no items")
        return self.items[0]

    @property
    def price(self) -> Price:
        return self.item.price

    @property
    def coupon_id(self) -> Optional[str]:
        if self.discount is None:
            return None
        return self.discount.coupon.id

    @property
    def cancellation_reason(self) -> Optional[str]:
        return self.metadata.get("cancellation_reason") or None

    @property
    def is_complimentary(self) -> bool:
        nickname = self.price.nickname
        return bool(nickname) and nickname.lower() == COMPLIMENTARY_NICKNAME

    @classmethod
    def from_provider(cls, payload: Mapping[str, object]) -> "SubscriptionSnapshot":
        """Build a snapshot from a raw provider subscription payload.

        Accepts the provider's nested list envelopes (``items.data``), price
        ``recurring.interval`` and epoch-second timestamps.
        """

        raw_items = payload.get("items") or ()
        if isinstance(raw_items, Mapping):
            raw_items = raw_items.get("data") or ()
        items = [_item_from_payload(item) for item in raw_items]  # type: ignore[union-attr]

        discount = payload.get("discount")
        payment_method = payload.get("default_payment_method")
        if isinstance(payment_method, Mapping):
            payment_method = payment_method.get("id")

        customer = payload.get("customer")
        if isinstance(customer, Mapping):
            customer = customer.get("id")

        return cls(
            id=str(payload["id"]),
            customer=str(customer),
            status=SubscriptionStatus(str(payload.get("status"))),
            cancel_at_period_end=bool(payload.get("cancel_at_period_end") or False),
            items=tuple(items),
            discount=_discount_from_payload(discount) if isinstance(discount, Mapping) else None,
            current_period_start=_parse_timestamp(payload.get("current_period_start")),
            current_period_end=_parse_timestamp(payload.get("current_period_end")),
            start_date=_parse_timestamp(payload.get("start_date")),
            trial_start=_parse_timestamp(payload.get("trial_start")),
            trial_end=_parse_timestamp(payload.get("trial_end")),
            canceled_at=_parse_timestamp(payload.get("canceled_at")),
            default_payment_method=str(payment_method) if payment_method else None,
            metadata=_safe_metadata(payload.get("metadata")),
        )


class CustomerSnapshot(BaseModel):
    """Provider customer together with the subscriptions it owns."""

    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    subscriptions: Sequence[SubscriptionSnapshot] = Field(default_factory=tuple)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_provider(cls, payload: Mapping[str, object]) -> "CustomerSnapshot":
        raw_subscriptions = payload.get("subscriptions") or ()
        if isinstance(raw_subscriptions, Mapping):
            raw_subscriptions = raw_subscriptions.get("data") or ()
        return cls(
            id=str(payload["id"]),
            email=payload.get("email") and str(payload.get("email")),
            name=payload.get("name") and str(payload.get("name")),
            subscriptions=tuple(
                SubscriptionSnapshot.from_provider(item) for item in raw_subscriptions  # type: ignore[union-attr]
            ),
        )


class ExternalCustomer(BaseModel):
    """Link between a member and a billing provider customer."""

    customer_id: str
    member_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)


class Subscription(BaseModel):
    """Internal record mirroring one provider subscription."""

    id: str
    subscription_id: str
    member_id: str
    customer_id: str
    product_id: Optional[str] = None
    price_id: str
    status: SubscriptionStatus
    cancel_at_period_end: bool = False
    cancellation_reason: Optional[str] = None
    current_period_end: Optional[datetime] = None
    start_date: Optional[datetime] = None
    trial_start_at: Optional[datetime] = None
    trial_end_at: Optional[datetime] = None
    default_payment_card_last4: Optional[str] = None
    plan_nickname: Optional[str] = None
    plan_interval: Optional[str] = None
    plan_amount: int = 0
    plan_currency: str = "usd"
    mrr: int = 0
    offer_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def is_complimentary(self) -> bool:
        return bool(self.plan_nickname) and self.plan_nickname.lower() == COMPLIMENTARY_NICKNAME

    def differs_from(self, other: "Subscription") -> bool:
        """Return ``True`` when a change is worth a lifecycle event."""

        return (
            self.mrr != other.mrr
            or self.price_id != other.price_id
            or self.status != other.status
            or self.cancel_at_period_end != other.cancel_at_period_end
        )


class Offer(BaseModel):
    id: str
    name: str
    external_coupon_id: Optional[str] = None
    tier_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


def _item_from_payload(payload: Mapping[str, object]) -> SubscriptionItem:
    price = payload.get("price") or payload.get("plan") or {}
    if not isinstance(price, Mapping):
        raise ValueError("subscription item is missing its price")
    recurring = price.get("recurring")
    interval = price.get("interval")
    if isinstance(recurring, Mapping):
        interval = recurring.get("interval", interval)
    return SubscriptionItem(
        id=str(payload["id"]),
        price=Price(
            id=str(price["id"]),
            product=str(price.get("product")),
            nickname=price.get("nickname") and str(price.get("nickname")),
            currency=str(price.get("currency") or "usd"),
            unit_amount=int(price.get("unit_amount") or price.get("amount") or 0),
            interval=BillingInterval(str(interval)) if interval else None,
            active=bool(price.get("active", True)),
            type=str(price.get("type") or "recurring"),
        ),
    )


def _discount_from_payload(payload: Mapping[str, object]) -> Discount:
    coupon = payload.get("coupon")
    if not isinstance(coupon, Mapping):
        raise ValueError("discount payload is missing its coupon")
    return Discount(
        coupon=Coupon(
            id=str(coupon["id"]),
            duration=CouponDuration(str(coupon.get("duration") or CouponDuration.ONCE.value)),
            amount_off=coupon.get("amount_off"),
            percent_off=coupon.get("percent_off"),
        ),
        end=_parse_timestamp(payload.get("end")),
    )


def _parse_timestamp(value: object) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError("Unsupported datetime value")


def _safe_metadata(value: object) -> Dict[str, str]:
    if isinstance(value, Mapping):
        return {str(k): str(v) for k, v in value.items() if v is not None}
    return {}
