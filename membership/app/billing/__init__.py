"""Billing domain package: provider snapshots, MRR and lifecycle classification."""

from .models import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    BillingInterval,
    Coupon,
    CouponDuration,
    CustomerSnapshot,
    Discount,
    ExternalCustomer,
    Offer,
    PaymentMethod,
    Price,
    Subscription,
    SubscriptionItem,
    SubscriptionSnapshot,
    SubscriptionStatus,
)
from .mrr import compute_mrr
from .provider import (
    BillingProvider,
    BillingProviderError,
    ProviderNotFoundError,
    StripeBillingProvider,
    TransientProviderError,
)
from .status import (
    LifecycleLabel,
    MemberStatus,
    SubscriptionEventType,
    classify_transition,
    is_active_status,
    is_complimentary,
    lifecycle_label,
    resolve_member_status,
)

__all__ = [
    "ACTIVE_SUBSCRIPTION_STATUSES",
    "BillingInterval",
    "BillingProvider",
    "BillingProviderError",
    "Coupon",
    "CouponDuration",
    "CustomerSnapshot",
    "Discount",
    "ExternalCustomer",
    "LifecycleLabel",
    "MemberStatus",
    "Offer",
    "PaymentMethod",
    "Price",
    "ProviderNotFoundError",
    "StripeBillingProvider",
    "Subscription",
    "SubscriptionEventType",
    "SubscriptionItem",
    "SubscriptionSnapshot",
    "SubscriptionStatus",
    "TransientProviderError",
    "classify_transition",
    "compute_mrr",
    "is_active_status",
    "is_complimentary",
    "lifecycle_label",
    "resolve_member_status",
]
