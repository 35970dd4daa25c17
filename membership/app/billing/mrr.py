"""Monthly recurring revenue normalization."""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from .models import BillingInterval, Discount, SubscriptionStatus

ZERO_MRR_STATUSES = frozenset(
    {
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.INCOMPLETE,
        SubscriptionStatus.INCOMPLETE_EXPIRED,
        SubscriptionStatus.CANCELED,
    }
)


def compute_mrr(
    interval: Union[BillingInterval, str, None],
    amount: int,
    status: Union[SubscriptionStatus, str, None] = None,
    cancel_at_period_end: bool = False,
    discount: Optional[Discount] = None,
) -> int:
    """Return the monthly recurring revenue, in minor units, of a subscription.

    Subscriptions that are trialing, incomplete, canceled or scheduled to lapse
    contribute nothing. Only open-ended ``forever`` discounts are applied since
    temporary ones do not affect steady-state revenue.
    """

    if status is not None and SubscriptionStatus(status) in ZERO_MRR_STATUSES:
        return 0
    if cancel_at_period_end:
        return 0

    try:
        normalized_interval = BillingInterval(interval)
    except ValueError as exc:
        raise ValueError(f"Unsupported billing interval: {interval!r}") from exc

    discounted = apply_discount(amount, discount)

    if normalized_interval == BillingInterval.YEAR:
        return discounted // 12
    if normalized_interval == BillingInterval.MONTH:
        return discounted
    if normalized_interval == BillingInterval.WEEK:
        return discounted * 4
    return discounted * 30


def apply_discount(amount: int, discount: Optional[Discount]) -> int:
    if discount is None or not discount.is_forever:
        return amount

    coupon = discount.coupon
    if coupon.amount_off is not None:
        return max(0, amount - coupon.amount_off)
    if coupon.percent_off is None:
        return amount

    remaining = Decimal(amount) * (Decimal(100) - Decimal(str(coupon.percent_off))) / Decimal(100)
    return int(remaining.quantize(Decimal(1), rounding=ROUND_HALF_UP))


__all__ = ["ZERO_MRR_STATUSES", "apply_discount", "compute_mrr"]
