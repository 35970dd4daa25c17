"""Pure classification of subscription lifecycle and member status."""
from __future__ import annotations

from enum import Enum
from typing import Optional, Union

from .models import COMPLIMENTARY_NICKNAME, SubscriptionStatus


class LifecycleLabel(str, Enum):
    """Coarse classification of a subscription independent of provider status."""

    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"
    INACTIVE = "inactive"


class SubscriptionEventType(str, Enum):
    """Subtype carried by subscription lifecycle events."""

    CREATED = "created"
    UPDATED = "updated"
    REACTIVATED = "reactivated"
    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"
    INACTIVE = "inactive"


class MemberStatus(str, Enum):
    FREE = "free"
    COMPED = "comped"
    PAID = "paid"


def is_active_status(status: Union[SubscriptionStatus, str]) -> bool:
    return SubscriptionStatus(status).is_active


def is_complimentary(nickname: Optional[str]) -> bool:
    return bool(nickname) and nickname.lower() == COMPLIMENTARY_NICKNAME


def lifecycle_label(status: Union[SubscriptionStatus, str], cancel_at_period_end: bool) -> LifecycleLabel:
    if SubscriptionStatus(status) == SubscriptionStatus.CANCELED:
        return LifecycleLabel.EXPIRED
    if cancel_at_period_end:
        return LifecycleLabel.CANCELED
    if is_active_status(status):
        return LifecycleLabel.ACTIVE
    return LifecycleLabel.INACTIVE


def classify_transition(previous: LifecycleLabel, current: LifecycleLabel) -> SubscriptionEventType:
    """Return the event subtype for a move between two lifecycle labels."""

    if previous == current:
        return SubscriptionEventType.UPDATED
    if previous in {LifecycleLabel.CANCELED, LifecycleLabel.EXPIRED} and current == LifecycleLabel.ACTIVE:
        return SubscriptionEventType.REACTIVATED
    return SubscriptionEventType(current.value)


def resolve_member_status(
    *,
    active: bool,
    complimentary: bool,
    entitlement_count: int,
    other_active_count: int = 0,
) -> MemberStatus:
    """Derive the member status after a reconciliation pass.

    ``active`` reflects the reconciled subscription's provider status and
    ``other_active_count`` the number of *other* active subscriptions the
    member holds. A member left without entitlements is always free.
    """

    if active:
        return MemberStatus.COMPED if complimentary else MemberStatus.PAID
    if entitlement_count == 0:
        return MemberStatus.FREE
    return MemberStatus.PAID if other_active_count > 0 else MemberStatus.COMPED


__all__ = [
    "LifecycleLabel",
    "MemberStatus",
    "SubscriptionEventType",
    "classify_transition",
    "is_active_status",
    "is_complimentary",
    "lifecycle_label",
    "resolve_member_status",
]
