"""Members domain: lifecycle operations and subscription reconciliation."""

from .config import MembershipConfig, load_membership_config
from .events import (
    DomainEvent,
    DomainEventBus,
    EventEmitter,
    InMemoryEventBus,
    MemberCreatedEvent,
    MemberEmailChangedEvent,
    MemberProductChangedEvent,
    MemberStatusChangedEvent,
    MemberSubscribeEvent,
    SubscriptionCancelledEvent,
    SubscriptionCreatedEvent,
    SubscriptionEvent,
    SubscriptionUpdatedEvent,
)
from .models import EventSource, Member, MemberCreate, MemberDetails, MemberUpdate
from .service import MemberService, NewsletterDirectory, OfferRepository, SubscriptionLinkResult, UnitOfWork
from .store import InMemoryMembershipStore, MembershipStore, MembershipTransaction

__all__ = [
    "DomainEvent",
    "DomainEventBus",
    "EventEmitter",
    "EventSource",
    "InMemoryEventBus",
    "InMemoryMembershipStore",
    "Member",
    "MemberCreate",
    "MemberCreatedEvent",
    "MemberDetails",
    "MemberEmailChangedEvent",
    "MemberProductChangedEvent",
    "MemberService",
    "MemberStatusChangedEvent",
    "MemberSubscribeEvent",
    "MemberUpdate",
    "MembershipConfig",
    "MembershipStore",
    "MembershipTransaction",
    "NewsletterDirectory",
    "OfferRepository",
    "SubscriptionCancelledEvent",
    "SubscriptionCreatedEvent",
    "SubscriptionEvent",
    "SubscriptionLinkResult",
    "SubscriptionUpdatedEvent",
    "UnitOfWork",
    "load_membership_config",
]
