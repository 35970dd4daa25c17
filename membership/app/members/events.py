"""Domain events and the transaction-bound emitter that dispatches them."""
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, DefaultDict, Dict, List, Optional, Protocol, Type
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from ..billing.status import MemberStatus, SubscriptionEventType
from ..entitlements.models import EntitlementAction
from .models import EventSource

logger = logging.getLogger(__name__)


class DomainEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: f"evt_{uuid4().hex}")
    member_id: str
    source: EventSource = EventSource.SYSTEM
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @property
    def name(self) -> str:
        return type(self).__name__


class MemberCreatedEvent(DomainEvent):
    attribution: Dict[str, str] = Field(default_factory=dict)


class MemberSubscribeEvent(DomainEvent):
    newsletter_id: str
    subscribed: bool


class MemberEmailChangedEvent(DomainEvent):
    from_email: str
    to_email: str


class MemberStatusChangedEvent(DomainEvent):
    from_status: Optional[MemberStatus] = None
    to_status: MemberStatus


class MemberProductChangedEvent(DomainEvent):
    product_id: str
    action: EntitlementAction


class SubscriptionEvent(DomainEvent):
    """Paid-subscription lifecycle change with its MRR delta."""

    subscription_id: str
    type: SubscriptionEventType
    from_price_id: Optional[str] = None
    to_price_id: Optional[str] = None
    currency: Optional[str] = None
    mrr_delta: int = 0


class SubscriptionCreatedEvent(SubscriptionEvent):
    type: SubscriptionEventType = SubscriptionEventType.CREATED
    tier_id: Optional[str] = None
    offer_id: Optional[str] = None
    attribution: Dict[str, str] = Field(default_factory=dict)


class SubscriptionUpdatedEvent(SubscriptionEvent):
    pass


class SubscriptionCancelledEvent(DomainEvent):
    subscription_id: str
    tier_id: Optional[str] = None
    reason: Optional[str] = None


class DomainEventBus(Protocol):
    """Fire-and-forget delivery of committed domain events."""

    def dispatch(self, event: DomainEvent) -> None:
        ...


EventHandler = Callable[[DomainEvent], None]


class InMemoryEventBus:
    """Synchronous bus delivering events to subscribers registered by type."""

    def __init__(self, *, keep_history: bool = True) -> None:
        self._handlers: DefaultDict[Type[DomainEvent], List[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()
        self._keep_history = keep_history
        self.history: List[DomainEvent] = []

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def dispatch(self, event: DomainEvent) -> None:
        if self._keep_history:
            with self._lock:
                self.history.append(event)
        for event_type, handlers in list(self._handlers.items()):
            if not isinstance(event, event_type):
                continue
            for handler in handlers:
                try:
                    handler(event)
                except Exception:
                    logger.exception("Handler %r failed for %s %s", handler, event.name, event.event_id)

    def of_type(self, event_type: Type[DomainEvent]) -> List[DomainEvent]:
        return [event for event in self.history if isinstance(event, event_type)]

    def clear(self) -> None:
        with self._lock:
            self.history.clear()


class EventEmitter:
    """Buffers the events of one unit of work until its transaction commits.

    A deferred emitter dispatches only from :meth:`commit`, which the owner of
    the transaction boundary invokes after the data is durable; :meth:`discard`
    drops everything on rollback. A non-deferred emitter dispatches each event
    as soon as it is buffered.
    """

    def __init__(self, bus: DomainEventBus, *, deferred: bool = True) -> None:
        self._bus = bus
        self._deferred = deferred
        self._pending: List[DomainEvent] = []

    @property
    def deferred(self) -> bool:
        return self._deferred

    @property
    def pending(self) -> List[DomainEvent]:
        return list(self._pending)

    def buffer(self, event: DomainEvent) -> None:
        if not self._deferred:
            self._bus.dispatch(event)
            return
        self._pending.append(event)

    def commit(self) -> None:
        events, self._pending = self._pending, []
        for event in events:
            self._bus.dispatch(event)

    def discard(self) -> None:
        if self._pending:
            logger.debug("Discarding %d buffered events", len(self._pending))
        self._pending = []


__all__ = [
    "DomainEvent",
    "DomainEventBus",
    "EventEmitter",
    "InMemoryEventBus",
    "MemberCreatedEvent",
    "MemberEmailChangedEvent",
    "MemberProductChangedEvent",
    "MemberStatusChangedEvent",
    "MemberSubscribeEvent",
    "SubscriptionCancelledEvent",
    "SubscriptionCreatedEvent",
    "SubscriptionEvent",
    "SubscriptionUpdatedEvent",
]
