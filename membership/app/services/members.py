"""Application wiring for the member service."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from ..billing.provider import StripeBillingProvider
from ..billing.repository import PostgresOfferRepository
from ..entitlements.repository import PostgresProductRepository
from ..members import (
    DomainEvent,
    InMemoryEventBus,
    MemberService,
    OfferRepository,
    SubscriptionCreatedEvent,
    load_membership_config,
)
from ..members.config import MembershipConfig
from ..members.repository import PostgresMembershipStore, PostgresNewsletterDirectory


logger = logging.getLogger("membership")


class LoggingEventBus(InMemoryEventBus):
    """Event bus that records every committed domain event to the application logger."""

    def __init__(self) -> None:
        super().__init__(keep_history=False)

    def dispatch(self, event: DomainEvent) -> None:
        logger.info(
            "Domain event %s id=%s member=%s source=%s",
            event.name,
            event.event_id,
            event.member_id,
            event.source.value,
        )
        super().dispatch(event)


class OfferRedemptionRecorder:
    """Records an offer redemption whenever a subscription is created through an offer."""

    def __init__(self, offers: OfferRepository) -> None:
        self._offers = offers

    def __call__(self, event: DomainEvent) -> None:
        if not isinstance(event, SubscriptionCreatedEvent) or not event.offer_id:
            return
        self._offers.record_redemption(
            offer_id=event.offer_id,
            member_id=event.member_id,
            subscription_id=event.subscription_id,
        )
        logger.info("Recorded redemption of offer %s by member %s", event.offer_id, event.member_id)


def build_member_service(config: Optional[MembershipConfig] = None) -> MemberService:
    config = config or load_membership_config()
    offers = PostgresOfferRepository()
    event_bus = LoggingEventBus()
    event_bus.subscribe(SubscriptionCreatedEvent, OfferRedemptionRecorder(offers))
    provider = StripeBillingProvider(
        config.stripe_secret_key,
        api_version=config.stripe_api_version,
        max_network_retries=config.stripe_max_network_retries,
    )
    if not provider.configured:
        logger.warning("STRIPE_SECRET_KEY is not set; subscription operations are disabled")
    return MemberService(
        store=PostgresMembershipStore(),
        provider=provider,
        products=PostgresProductRepository(),
        offers=offers,
        newsletters=PostgresNewsletterDirectory(),
        event_bus=event_bus,
        entitlement_mode=config.entitlement_mode,
        complimentary_currency=config.complimentary_currency,
    )


@lru_cache(maxsize=1)
def get_member_service() -> MemberService:
    return build_member_service()


__all__ = ["LoggingEventBus", "OfferRedemptionRecorder", "build_member_service", "get_member_service"]
