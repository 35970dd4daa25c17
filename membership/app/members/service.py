"""Member lifecycle and subscription reconciliation."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence, Tuple, TypeVar
from uuid import uuid4

from ..billing.models import (
    CustomerSnapshot,
    ExternalCustomer,
    Offer,
    PaymentMethod,
    Price,
    Subscription,
    SubscriptionSnapshot,
    SubscriptionStatus,
)
from ..billing.mrr import compute_mrr
from ..billing.provider import BillingProvider, BillingProviderError, ProviderNotFoundError
from ..billing.status import MemberStatus, classify_transition, lifecycle_label, resolve_member_status
from ..entitlements.models import (
    EntitlementAction,
    EntitlementChange,
    EntitlementMode,
    Product,
    ProductPrice,
    ProductSelector,
)
from ..entitlements.service import EntitlementReconciler, ProductRepository
from ..errors import (
    BadRequestError,
    ConflictError,
    DuplicateRecordError,
    NotFoundError,
    RecoverableDegradation,
    StoreIntegrityError,
)
from .events import (
    DomainEventBus,
    EventEmitter,
    MemberCreatedEvent,
    MemberEmailChangedEvent,
    MemberProductChangedEvent,
    MemberStatusChangedEvent,
    MemberSubscribeEvent,
    SubscriptionCancelledEvent,
    SubscriptionCreatedEvent,
    SubscriptionUpdatedEvent,
)
from .models import EventSource, Member, MemberCreate, MemberDetails, MemberUpdate
from .store import MembershipStore, MembershipTransaction

logger = logging.getLogger(__name__)

T = TypeVar("T")

COMPLIMENTARY_PRICE_NICKNAME = "Complimentary"
COMPLIMENTARY_PRICE_INTERVAL = "year"


class OfferRepository(Protocol):
    """Read access to offers plus redemption bookkeeping."""

    def get_by_external_coupon_id(self, coupon_id: str) -> Optional[Offer]:
        ...

    def get_by_id(self, offer_id: str) -> Optional[Offer]:
        ...

    def record_redemption(self, *, offer_id: str, member_id: str, subscription_id: str) -> None:
        ...


class NewsletterDirectory(Protocol):
    def default_newsletter_ids(self) -> Sequence[str]:
        """Newsletters a new member is subscribed to unless they opt out."""


@dataclass
class UnitOfWork:
    """One store transaction and the emitter whose events it gates."""

    transaction: MembershipTransaction
    events: EventEmitter


@dataclass(frozen=True)
class SubscriptionLinkResult:
    subscription: Subscription
    member: Member
    created: bool
    changes: Tuple[EntitlementChange, ...] = ()
    degradations: Tuple[RecoverableDegradation, ...] = ()


@dataclass(frozen=True)
class _PrefetchedSubscription:
    subscription: SubscriptionSnapshot
    payment_method: Optional[PaymentMethod]
    degradations: Tuple[RecoverableDegradation, ...] = ()


@dataclass
class MemberService:
    """Keeps members, their entitlements and their provider subscriptions consistent."""

    store: MembershipStore
    provider: BillingProvider
    products: ProductRepository
    offers: OfferRepository
    newsletters: NewsletterDirectory
    event_bus: DomainEventBus
    entitlement_mode: EntitlementMode = EntitlementMode.UNION
    complimentary_currency: str = "usd"
    reconciler: EntitlementReconciler = field(init=False)

    def __post_init__(self) -> None:
        self.reconciler = EntitlementReconciler(self.products, mode=self.entitlement_mode)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @contextmanager
    def unit_of_work(self, uow: Optional[UnitOfWork] = None) -> Iterator[UnitOfWork]:
        """Join ``uow`` when given, otherwise open a transaction with a deferred emitter."""

        if uow is not None:
            yield uow
            return

        with self.store.transaction() as transaction:
            emitter = EventEmitter(self.event_bus)
            transaction.on_commit(emitter.commit)
            transaction.on_rollback(emitter.discard)
            yield UnitOfWork(transaction=transaction, events=emitter)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_member(self, *, member_id: Optional[str] = None, email: Optional[str] = None) -> Optional[Member]:
        with self.store.transaction() as transaction:
            return transaction.get_member(member_id=member_id, email=email)

    def get_member_by_customer_id(self, customer_id: str) -> Optional[Member]:
        with self.store.transaction() as transaction:
            return transaction.get_member_by_customer_id(customer_id)

    def get_member_details(self, member_id: str) -> MemberDetails:
        with self.store.transaction() as transaction:
            if transaction.get_member(member_id=member_id) is None:
                raise NotFoundError(f"Member {member_id} not found", code="member_not_found")
            return self._details(transaction, member_id)

    def get_subscription(
        self,
        subscription_id: str,
        *,
        member_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Subscription:
        """Return the member's subscription with the given provider id."""

        self._require_billing("get subscription")
        with self.store.transaction() as transaction:
            return self._member_subscription(transaction, subscription_id, member_id=member_id, email=email)

    def get_subscription_by_external_id(self, subscription_id: str) -> Optional[Subscription]:
        with self.store.transaction() as transaction:
            return transaction.get_subscription(subscription_id)

    def get_subscription_by_id(self, id: str) -> Optional[Subscription]:
        with self.store.transaction() as transaction:
            return transaction.get_subscription_by_id(id)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    def link_subscription(
        self,
        member_id: str,
        snapshot: SubscriptionSnapshot,
        *,
        offer_id: Optional[str] = None,
        attribution: Optional[Dict[str, str]] = None,
        source: EventSource = EventSource.SYSTEM,
        uow: Optional[UnitOfWork] = None,
    ) -> SubscriptionLinkResult:
        """Reconcile the member with the provider's current view of ``snapshot``.

        The subscription is re-read from the provider so stale or out-of-order
        deliveries converge on the latest state. Provider reads happen before
        the member row is locked.
        """

        self._require_billing("link subscription")
        prefetched = self._prefetch(snapshot, refresh=True)
        with self.unit_of_work(uow) as work:
            return self._link(work, member_id, prefetched, offer_id=offer_id, attribution=attribution, source=source)

    def _prefetch(self, snapshot: SubscriptionSnapshot, *, refresh: bool) -> _PrefetchedSubscription:
        subscription = snapshot
        if refresh:
            subscription = self._provider_call(lambda: self.provider.get_subscription(snapshot.id))

        if not subscription.default_payment_method:
            return _PrefetchedSubscription(subscription=subscription, payment_method=None)

        try:
            payment_method = self.provider.get_card_payment_method(subscription.default_payment_method)
        except BillingProviderError as exc:
            degradation = RecoverableDegradation(
                f"Payment method {subscription.default_payment_method} could not be resolved",
                code="payment_method_unavailable",
                detail={"subscription_id": subscription.id},
            )
            logger.warning("%s for subscription %s: %s", degradation.message, subscription.id, exc)
            return _PrefetchedSubscription(subscription=subscription, payment_method=None, degradations=(degradation,))
        return _PrefetchedSubscription(subscription=subscription, payment_method=payment_method)

    def _link(
        self,
        work: UnitOfWork,
        member_id: str,
        prefetched: _PrefetchedSubscription,
        *,
        offer_id: Optional[str] = None,
        attribution: Optional[Dict[str, str]] = None,
        source: EventSource = EventSource.SYSTEM,
    ) -> SubscriptionLinkResult:
        transaction = work.transaction
        snapshot = prefetched.subscription
        degradations: List[RecoverableDegradation] = list(prefetched.degradations)

        member = transaction.lock_member(member_id)
        if member is None:
            raise NotFoundError(f"Member {member_id} not found", code="member_not_found")

        customer = transaction.get_customer(snapshot.customer)
        if customer is None or customer.member_id != member.id:
            raise NotFoundError(
                f"No linked customer {snapshot.customer} for subscription {snapshot.id}",
                code="customer_not_linked",
                detail={"member_id": member.id, "customer_id": snapshot.customer},
            )

        price = snapshot.price
        product, product_degradations = self._link_product(snapshot.id, price)
        degradations.extend(product_degradations)

        resolved_offer_id = self._resolve_offer(snapshot, offer_id)

        previous = transaction.get_subscription(snapshot.id)
        stored = transaction.upsert_subscription(
            self._subscription_record(
                member.id,
                snapshot,
                previous=previous,
                product=product,
                payment_method=prefetched.payment_method,
                offer_id=resolved_offer_id,
            )
        )

        created = previous is None
        occurred_at = self._now()
        if created:
            occurred_at = snapshot.start_date or occurred_at
            work.events.buffer(
                SubscriptionCreatedEvent(
                    member_id=member.id,
                    source=source,
                    occurred_at=occurred_at,
                    subscription_id=stored.id,
                    to_price_id=stored.price_id,
                    currency=stored.plan_currency,
                    mrr_delta=stored.mrr,
                    tier_id=stored.product_id,
                    offer_id=stored.offer_id,
                    attribution=dict(attribution or {}),
                )
            )
        elif stored.differs_from(previous):
            work.events.buffer(
                SubscriptionUpdatedEvent(
                    member_id=member.id,
                    source=source,
                    subscription_id=stored.id,
                    type=classify_transition(
                        lifecycle_label(previous.status, previous.cancel_at_period_end),
                        lifecycle_label(stored.status, stored.cancel_at_period_end),
                    ),
                    from_price_id=previous.price_id,
                    to_price_id=None if stored.status == SubscriptionStatus.CANCELED else stored.price_id,
                    currency=stored.plan_currency,
                    mrr_delta=stored.mrr - previous.mrr,
                )
            )

        current_product_ids = transaction.list_product_ids(member.id)
        others = [s for s in transaction.list_subscriptions(member.id) if s.subscription_id != stored.subscription_id]
        reconciliation = self.reconciler.reconcile(
            current_product_ids,
            subscription=stored,
            previous=previous,
            others=others,
        )

        status = resolve_member_status(
            active=stored.is_active,
            complimentary=stored.is_complimentary,
            entitlement_count=len(reconciliation.product_ids),
            other_active_count=sum(1 for s in others if s.is_active),
        )

        changes: Tuple[EntitlementChange, ...] = reconciliation.changes
        updated_member = member
        products_changed = list(reconciliation.product_ids) != list(current_product_ids)
        if products_changed or status != member.status:
            try:
                with transaction.savepoint():
                    if products_changed:
                        transaction.set_product_ids(member.id, reconciliation.product_ids)
                    updated_member = transaction.update_member(member.model_copy(update={"status": status}))
            except StoreIntegrityError as exc:
                degradation = RecoverableDegradation(
                    f"Failed to update member {member.id} with related products",
                    code="entitlements_not_written",
                    detail={"product_ids": list(reconciliation.product_ids)},
                )
                logger.warning("%s: %s", degradation.message, exc)
                degradations.append(degradation)
                changes = ()
                updated_member = member
                if status != member.status:
                    updated_member = transaction.update_member(member.model_copy(update={"status": status}))

        for change in changes:
            work.events.buffer(
                MemberProductChangedEvent(
                    member_id=member.id,
                    source=source,
                    product_id=change.product_id,
                    action=change.action,
                )
            )

        if updated_member.status != member.status:
            work.events.buffer(
                MemberStatusChangedEvent(
                    member_id=member.id,
                    source=source,
                    occurred_at=occurred_at,
                    from_status=member.status,
                    to_status=updated_member.status,
                )
            )

        return SubscriptionLinkResult(
            subscription=stored,
            member=updated_member,
            created=created,
            changes=changes,
            degradations=tuple(degradations),
        )

    def _link_product(
        self, subscription_id: str, price: Price
    ) -> Tuple[Optional[Product], List[RecoverableDegradation]]:
        degradations: List[RecoverableDegradation] = []
        try:
            product, degradation = self.reconciler.resolve_product(price)
        except Exception:
            logger.exception("Failed to resolve product for subscription %s", subscription_id)
            return None, [
                RecoverableDegradation(
                    f"Product for price {price.id} could not be resolved",
                    code="product_link_failed",
                    detail={"subscription_id": subscription_id, "price_id": price.id},
                )
            ]

        if degradation is not None:
            logger.warning("%s (subscription %s)", degradation.message, subscription_id)
            degradations.append(degradation)
        if product is None:
            return None, degradations

        try:
            self.products.update(
                product.id,
                prices=[
                    ProductPrice(
                        external_price_id=price.id,
                        external_product_id=price.product,
                        nickname=price.nickname,
                        currency=price.currency,
                        amount=price.unit_amount,
                        interval=price.interval.value if price.interval else None,
                        active=price.active,
                        type=price.type,
                    )
                ],
            )
        except Exception:
            logger.exception("Failed to link price %s to product %s", price.id, product.id)
            degradations.append(
                RecoverableDegradation(
                    f"Price {price.id} could not be linked to product {product.id}",
                    code="product_link_failed",
                    detail={"subscription_id": subscription_id, "price_id": price.id},
                )
            )
        return product, degradations

    def _resolve_offer(self, snapshot: SubscriptionSnapshot, offer_id: Optional[str]) -> Optional[str]:
        coupon_id = snapshot.coupon_id
        if coupon_id:
            offer = self.offers.get_by_external_coupon_id(coupon_id)
            if offer is not None:
                return offer.id
            logger.error("Received an unknown coupon id %s for subscription %s", coupon_id, snapshot.id)

        # Trial offers carry no coupon; the caller passes the offer id instead.
        if offer_id:
            offer = self.offers.get_by_id(offer_id)
            if offer is not None:
                return offer.id
            logger.warning("Offer %s for subscription %s does not exist", offer_id, snapshot.id)
        return None

    def _subscription_record(
        self,
        member_id: str,
        snapshot: SubscriptionSnapshot,
        *,
        previous: Optional[Subscription],
        product: Optional[Product],
        payment_method: Optional[PaymentMethod],
        offer_id: Optional[str],
    ) -> Subscription:
        price = snapshot.price
        interval = price.interval.value if price.interval else None
        now = self._now()
        return Subscription(
            id=previous.id if previous else f"sub_{uuid4().hex}",
            subscription_id=snapshot.id,
            member_id=member_id,
            customer_id=snapshot.customer,
            product_id=product.id if product else None,
            price_id=price.id,
            status=snapshot.status,
            cancel_at_period_end=snapshot.cancel_at_period_end,
            cancellation_reason=snapshot.cancellation_reason,
            current_period_end=snapshot.current_period_end,
            start_date=snapshot.start_date,
            trial_start_at=snapshot.trial_start,
            trial_end_at=snapshot.trial_end,
            default_payment_card_last4=payment_method.card_last4 if payment_method else None,
            plan_nickname=price.nickname or interval,
            plan_interval=interval,
            plan_amount=price.unit_amount,
            plan_currency=price.currency,
            mrr=compute_mrr(
                interval,
                price.unit_amount,
                snapshot.status,
                snapshot.cancel_at_period_end,
                snapshot.discount,
            ),
            offer_id=offer_id or (previous.offer_id if previous else None),
            created_at=previous.created_at if previous else now,
            updated_at=now,
        )

    # ------------------------------------------------------------------
    # Provider-driven subscription changes
    # ------------------------------------------------------------------
    def cancel_subscription(
        self,
        subscription_id: str,
        *,
        member_id: Optional[str] = None,
        email: Optional[str] = None,
        source: EventSource = EventSource.SYSTEM,
    ) -> SubscriptionLinkResult:
        """Cancel the subscription immediately at the provider and reconcile."""

        existing = self.get_subscription(subscription_id, member_id=member_id, email=email)
        updated = self._provider_call(lambda: self.provider.cancel_subscription(subscription_id))
        prefetched = self._prefetch(updated, refresh=False)

        with self.unit_of_work() as work:
            result = self._link(work, existing.member_id, prefetched, source=source)
            self._buffer_cancellation(work, result, updated, source)
        logger.info("Cancelled subscription %s for member %s", subscription_id, existing.member_id)
        return result

    def update_subscription(
        self,
        subscription_id: str,
        *,
        member_id: Optional[str] = None,
        email: Optional[str] = None,
        price_id: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
        cancellation_reason: Optional[str] = None,
        source: EventSource = EventSource.SYSTEM,
    ) -> Optional[SubscriptionLinkResult]:
        """Change the price and/or the scheduled cancellation of a subscription.

        Returns ``None`` when nothing had to change at the provider.
        """

        existing = self.get_subscription(subscription_id, member_id=member_id, email=email)

        updated: Optional[SubscriptionSnapshot] = None
        if price_id is not None:
            current = self._provider_call(lambda: self.provider.get_subscription(subscription_id))
            if price_id != current.price.id:
                self._provider_call(
                    lambda: self.provider.update_subscription_item_price(current.id, current.item.id, price_id)
                )
                # A price change drops any offer discount tied to the old price.
                updated = self._provider_call(lambda: self.provider.remove_coupon_from_subscription(current.id))

        if cancel_at_period_end is not None:
            if cancel_at_period_end:
                updated = self._provider_call(
                    lambda: self.provider.cancel_subscription_at_period_end(subscription_id, cancellation_reason)
                )
            else:
                updated = self._provider_call(lambda: self.provider.continue_subscription_at_period_end(subscription_id))

        if updated is None:
            return None

        prefetched = self._prefetch(updated, refresh=False)
        with self.unit_of_work() as work:
            result = self._link(work, existing.member_id, prefetched, source=source)
            if cancel_at_period_end:
                self._buffer_cancellation(work, result, updated, source)
        return result

    def create_subscription(
        self,
        member_id: str,
        price_id: str,
        *,
        source: EventSource = EventSource.SYSTEM,
    ) -> SubscriptionLinkResult:
        """Create a provider subscription for the member, reusing a linked customer when possible."""

        self._require_billing("create subscription")
        with self.store.transaction() as transaction:
            member = transaction.get_member(member_id=member_id)
            if member is None:
                raise NotFoundError(f"Member {member_id} not found", code="member_not_found")
            linked = transaction.list_customers(member_id)

        customer: Optional[CustomerSnapshot] = None
        for link in linked:
            try:
                fetched = self.provider.get_customer(link.customer_id)
            except BillingProviderError:
                logger.info("Ignoring error fetching customer %s for member %s", link.customer_id, member_id)
                continue
            if fetched is not None:
                customer = fetched

        new_customer = customer is None
        if customer is None:
            customer = self._provider_call(lambda: self.provider.create_customer(email=member.email, name=member.name))

        customer_id = customer.id
        snapshot = self._provider_call(lambda: self.provider.create_subscription(customer_id, price_id))
        prefetched = self._prefetch(snapshot, refresh=False)

        with self.unit_of_work() as work:
            if new_customer:
                work.transaction.insert_customer(
                    ExternalCustomer(
                        customer_id=customer.id,
                        member_id=member.id,
                        name=customer.name,
                        email=customer.email,
                    )
                )
            return self._link(work, member.id, prefetched, source=source)

    def link_external_customer(
        self,
        member_id: str,
        customer_id: str,
        *,
        source: EventSource = EventSource.SYSTEM,
    ) -> List[SubscriptionLinkResult]:
        """Attach an existing provider customer to the member and link its subscriptions."""

        self._require_billing("link customer")
        customer = self._provider_call(lambda: self.provider.get_customer(customer_id))
        if customer is None:
            logger.info("Customer %s no longer exists at the provider", customer_id)
            return []

        prefetched = [self._prefetch(snapshot, refresh=False) for snapshot in customer.subscriptions]
        with self.unit_of_work() as work:
            transaction = work.transaction
            if transaction.get_member(member_id=member_id) is None:
                raise NotFoundError(f"Member {member_id} not found", code="member_not_found")
            try:
                # Insert rather than upsert so a customer owned by another member is never moved.
                transaction.insert_customer(
                    ExternalCustomer(
                        customer_id=customer.id,
                        member_id=member_id,
                        name=customer.name,
                        email=customer.email,
                    )
                )
            except DuplicateRecordError as exc:
                raise ConflictError(
                    f"Customer {customer_id} is already linked",
                    code="customer_already_linked",
                ) from exc
            return [self._link(work, member_id, item, source=source) for item in prefetched]

    def set_complimentary_subscription(
        self,
        member_id: str,
        *,
        source: EventSource = EventSource.SYSTEM,
    ) -> List[SubscriptionLinkResult]:
        """Move active subscriptions to a zero-value price, or create a comped one."""

        self._require_billing("create complimentary subscription")
        with self.store.transaction() as transaction:
            member = transaction.get_member(member_id=member_id)
            if member is None:
                raise NotFoundError(f"Member {member_id} not found", code="member_not_found")
            active = [s for s in transaction.list_subscriptions(member_id) if s.is_active]

        default_product = self.reconciler.default_paid_product()
        if default_product is None:
            raise NotFoundError("No paid product exists", code="product_not_found")
        zero_value_prices = list(default_product.zero_value_prices())

        snapshots: List[SubscriptionSnapshot] = []
        new_customer: Optional[CustomerSnapshot] = None
        if active:
            for subscription in active:
                zero_value_price = self._zero_value_price(default_product, zero_value_prices, subscription.plan_currency)
                current = self._provider_call(lambda: self.provider.get_subscription(subscription.subscription_id))
                snapshots.append(
                    self._provider_call(
                        lambda: self.provider.update_subscription_item_price(
                            current.id, current.item.id, zero_value_price.external_price_id
                        )
                    )
                )
        else:
            new_customer = self._provider_call(
                lambda: self.provider.create_customer(email=member.email, name=member.name)
            )
            zero_value_price = (
                zero_value_prices[0]
                if zero_value_prices
                else self._create_zero_value_price(default_product, zero_value_prices, self.complimentary_currency)
            )
            customer_id = new_customer.id
            snapshots.append(
                self._provider_call(
                    lambda: self.provider.create_subscription(customer_id, zero_value_price.external_price_id)
                )
            )

        prefetched = [self._prefetch(snapshot, refresh=False) for snapshot in snapshots]
        with self.unit_of_work() as work:
            if new_customer is not None:
                work.transaction.upsert_customer(
                    ExternalCustomer(
                        customer_id=new_customer.id,
                        member_id=member.id,
                        name=new_customer.name,
                        email=new_customer.email,
                    )
                )
            return [self._link(work, member.id, item, source=source) for item in prefetched]

    def cancel_complimentary_subscription(
        self,
        member_id: str,
        *,
        source: EventSource = EventSource.SYSTEM,
    ) -> List[SubscriptionLinkResult]:
        """Cancel every live subscription of the member; failures are logged per subscription."""

        self._require_billing("cancel complimentary subscription")
        with self.store.transaction() as transaction:
            if transaction.get_member(member_id=member_id) is None:
                raise NotFoundError(f"Member {member_id} not found", code="member_not_found")
            subscriptions = transaction.list_subscriptions(member_id)

        results: List[SubscriptionLinkResult] = []
        for subscription in subscriptions:
            if subscription.status == SubscriptionStatus.CANCELED:
                continue
            try:
                updated = self.provider.cancel_subscription(subscription.subscription_id)
                prefetched = self._prefetch(updated, refresh=False)
                with self.unit_of_work() as work:
                    results.append(self._link(work, member_id, prefetched, source=source))
            except (BillingProviderError, NotFoundError):
                logger.exception("There was an error cancelling subscription %s", subscription.subscription_id)
        return results

    def _zero_value_price(self, product: Product, known: List[ProductPrice], currency: str) -> ProductPrice:
        for price in known:
            if price.currency.lower() == currency.lower():
                return price
        return self._create_zero_value_price(product, known, currency)

    def _create_zero_value_price(self, product: Product, known: List[ProductPrice], currency: str) -> ProductPrice:
        if not product.external_product_id:
            raise BadRequestError(
                f"Product {product.id} is not linked to the billing provider",
                code="product_not_linked",
            )
        external_product_id = product.external_product_id
        price = self._provider_call(
            lambda: self.provider.create_price(
                product_id=external_product_id,
                currency=currency,
                amount=0,
                interval=COMPLIMENTARY_PRICE_INTERVAL,
                nickname=COMPLIMENTARY_PRICE_NICKNAME,
            )
        )
        link = ProductPrice(
            external_price_id=price.id,
            external_product_id=external_product_id,
            nickname=price.nickname,
            currency=price.currency,
            amount=0,
            interval=COMPLIMENTARY_PRICE_INTERVAL,
            active=price.active,
            type="recurring",
        )
        self.products.update(product.id, prices=[link])
        known.append(link)
        logger.info("Created %s complimentary price %s for product %s", currency, price.id, product.id)
        return link

    def _buffer_cancellation(
        self,
        work: UnitOfWork,
        result: SubscriptionLinkResult,
        snapshot: SubscriptionSnapshot,
        source: EventSource,
    ) -> None:
        work.events.buffer(
            SubscriptionCancelledEvent(
                member_id=result.member.id,
                source=source,
                occurred_at=snapshot.canceled_at or self._now(),
                subscription_id=result.subscription.id,
                tier_id=result.subscription.product_id,
                reason=result.subscription.cancellation_reason,
            )
        )

    # ------------------------------------------------------------------
    # Member lifecycle
    # ------------------------------------------------------------------
    def create_member(
        self,
        data: MemberCreate,
        *,
        customer: Optional[CustomerSnapshot] = None,
        offer_id: Optional[str] = None,
        attribution: Optional[Dict[str, str]] = None,
        source: EventSource = EventSource.SYSTEM,
    ) -> MemberDetails:
        """Create a member, optionally linking a provider customer and its subscriptions."""

        product_ids = _unique(data.product_ids)
        if len(product_ids) > 1:
            raise BadRequestError("A member can only be given one product", code="more_than_one_product")
        for product_id in product_ids:
            self._require_active_product(product_id)

        newsletter_ids = data.newsletter_ids
        if newsletter_ids is None and data.subscribed is not False:
            newsletter_ids = self.newsletters.default_newsletter_ids()
        newsletter_ids = _unique(newsletter_ids or ())

        prefetched: List[_PrefetchedSubscription] = []
        if customer is not None:
            self._require_billing("link customer")
            prefetched = [self._prefetch(snapshot, refresh=True) for snapshot in customer.subscriptions]

        created_at = data.created_at or self._now()
        member = Member(
            id=f"mem_{uuid4().hex}",
            email=data.email,
            name=data.name,
            note=data.note,
            status=MemberStatus.COMPED if product_ids else MemberStatus.FREE,
            created_at=created_at,
            updated_at=created_at,
        )

        with self.unit_of_work() as work:
            transaction = work.transaction
            try:
                member = transaction.insert_member(member)
            except DuplicateRecordError as exc:
                raise ConflictError(f"Member {data.email} already exists", code="member_exists") from exc

            if product_ids:
                transaction.set_product_ids(member.id, product_ids)
            if newsletter_ids:
                transaction.set_newsletter_ids(member.id, newsletter_ids)

            for product_id in product_ids:
                work.events.buffer(
                    MemberProductChangedEvent(
                        member_id=member.id,
                        source=source,
                        occurred_at=created_at,
                        product_id=product_id,
                        action=EntitlementAction.ADDED,
                    )
                )
            work.events.buffer(
                MemberStatusChangedEvent(
                    member_id=member.id,
                    source=source,
                    occurred_at=created_at,
                    from_status=None,
                    to_status=member.status,
                )
            )
            for newsletter_id in newsletter_ids:
                work.events.buffer(
                    MemberSubscribeEvent(
                        member_id=member.id,
                        source=source,
                        occurred_at=created_at,
                        newsletter_id=newsletter_id,
                        subscribed=True,
                    )
                )

            if customer is not None:
                transaction.upsert_customer(
                    ExternalCustomer(
                        customer_id=customer.id,
                        member_id=member.id,
                        name=customer.name,
                        email=customer.email,
                    )
                )
                for item in prefetched:
                    try:
                        self._link(work, member.id, item, offer_id=offer_id, attribution=attribution, source=source)
                    except DuplicateRecordError as exc:
                        raise ConflictError(
                            f"Subscription {item.subscription.id} is already linked",
                            code="subscription_exists",
                        ) from exc

            work.events.buffer(
                MemberCreatedEvent(
                    member_id=member.id,
                    source=source,
                    occurred_at=created_at,
                    attribution=dict(attribution or {}),
                )
            )
            details = self._details(transaction, member.id)

        logger.info("Created member %s status=%s", details.member.id, details.member.status.value)
        return details

    def update_member(
        self,
        member_id: str,
        data: MemberUpdate,
        *,
        source: EventSource = EventSource.SYSTEM,
    ) -> MemberDetails:
        """Apply a partial update; product and newsletter lists are diffed into events."""

        with self.unit_of_work() as work:
            transaction = work.transaction
            member = transaction.lock_member(member_id)
            if member is None:
                raise NotFoundError(f"Member {member_id} not found", code="member_not_found")

            status = member.status
            products_added: List[str] = []
            products_removed: List[str] = []
            if data.product_ids is not None:
                existing = transaction.list_product_ids(member.id)
                incoming = _unique(data.product_ids)
                if len(incoming) > 1 and len(incoming) > len(existing):
                    raise BadRequestError("A member can only be given one product", code="more_than_one_product")

                products_added = [pid for pid in incoming if pid not in existing]
                products_removed = [pid for pid in existing if pid not in incoming]
                if products_added or products_removed:
                    active = [s for s in transaction.list_subscriptions(member.id) if s.is_active]
                    if products_removed:
                        protected = {self.reconciler.product_id_for(s) for s in active}
                        if any(pid in protected for pid in products_removed):
                            raise BadRequestError(
                                "Products backed by an active subscription must be cancelled through it",
                                code="product_has_active_subscription",
                            )
                        if not incoming:
                            status = MemberStatus.FREE
                    if products_added:
                        if active:
                            raise BadRequestError(
                                "Cannot add a complimentary product while an active subscription exists",
                                code="active_subscription_exists",
                            )
                        status = MemberStatus.COMPED
                    for product_id in products_added:
                        self._require_active_product(product_id)
                    transaction.set_product_ids(member.id, incoming)

            subscribed: List[str] = []
            unsubscribed: List[str] = []
            if data.newsletter_ids is not None or data.subscribed is not None:
                existing_newsletters = transaction.list_newsletter_ids(member.id)
                newsletter_ids = data.newsletter_ids
                if newsletter_ids is None:
                    if data.subscribed is False:
                        newsletter_ids = []
                    elif data.subscribed is True and not existing_newsletters:
                        newsletter_ids = self.newsletters.default_newsletter_ids()
                if newsletter_ids is not None:
                    incoming_newsletters = _unique(newsletter_ids)
                    subscribed = [nid for nid in incoming_newsletters if nid not in existing_newsletters]
                    unsubscribed = [nid for nid in existing_newsletters if nid not in incoming_newsletters]
                    if subscribed or unsubscribed:
                        transaction.set_newsletter_ids(member.id, incoming_newsletters)

            candidate = Member.model_validate({**member.model_dump(), **data.member_fields(), "status": status})
            try:
                updated = transaction.update_member(candidate)
            except DuplicateRecordError as exc:
                raise ConflictError(f"Member {candidate.email} already exists", code="member_exists") from exc

            for product_id in products_added:
                work.events.buffer(
                    MemberProductChangedEvent(
                        member_id=member.id, source=source, product_id=product_id, action=EntitlementAction.ADDED
                    )
                )
            for product_id in products_removed:
                work.events.buffer(
                    MemberProductChangedEvent(
                        member_id=member.id, source=source, product_id=product_id, action=EntitlementAction.REMOVED
                    )
                )
            for newsletter_id in subscribed:
                work.events.buffer(
                    MemberSubscribeEvent(member_id=member.id, source=source, newsletter_id=newsletter_id, subscribed=True)
                )
            for newsletter_id in unsubscribed:
                work.events.buffer(
                    MemberSubscribeEvent(member_id=member.id, source=source, newsletter_id=newsletter_id, subscribed=False)
                )

            email_changed = updated.email != member.email
            if email_changed:
                work.events.buffer(
                    MemberEmailChangedEvent(
                        member_id=member.id, source=source, from_email=member.email, to_email=updated.email
                    )
                )
            if updated.status != member.status:
                work.events.buffer(
                    MemberStatusChangedEvent(
                        member_id=member.id, source=source, from_status=member.status, to_status=updated.status
                    )
                )
            details = self._details(transaction, member.id)

        if email_changed and self.provider.configured:
            self._sync_customer_email(details.customers, updated.email)
        return details

    def destroy_member(
        self,
        member_id: str,
        *,
        cancel_subscriptions: bool = False,
        source: EventSource = EventSource.SYSTEM,
    ) -> bool:
        """Delete the member and everything it owns; returns ``False`` when it does not exist."""

        cancelled: List[Tuple[Subscription, SubscriptionSnapshot]] = []
        if cancel_subscriptions and self.provider.configured:
            with self.store.transaction() as transaction:
                subscriptions = transaction.list_subscriptions(member_id)
            for subscription in subscriptions:
                if subscription.status == SubscriptionStatus.CANCELED:
                    continue
                updated = self._provider_call(lambda: self.provider.cancel_subscription(subscription.subscription_id))
                cancelled.append((subscription, updated))

        with self.unit_of_work() as work:
            transaction = work.transaction
            member = transaction.lock_member(member_id)
            if member is None:
                return False

            for subscription, updated in cancelled:
                stored = transaction.upsert_subscription(
                    subscription.model_copy(update={"status": updated.status, "mrr": 0})
                )
                work.events.buffer(
                    SubscriptionUpdatedEvent(
                        member_id=member.id,
                        source=source,
                        subscription_id=subscription.id,
                        type=classify_transition(
                            lifecycle_label(subscription.status, subscription.cancel_at_period_end),
                            lifecycle_label(stored.status, stored.cancel_at_period_end),
                        ),
                        from_price_id=subscription.price_id,
                        to_price_id=None,
                        currency=subscription.plan_currency,
                        mrr_delta=-subscription.mrr,
                    )
                )
            transaction.delete_member(member.id)

        logger.info("Deleted member %s cancelled_subscriptions=%s", member_id, len(cancelled))
        return True

    def _sync_customer_email(self, customers: Iterable[ExternalCustomer], email: str) -> None:
        for customer in customers:
            try:
                self.provider.update_customer_email(customer.customer_id, email)
            except BillingProviderError:
                logger.warning("Failed to sync email to customer %s", customer.customer_id, exc_info=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_billing(self, action: str) -> None:
        if not self.provider.configured:
            raise BadRequestError(
                f"Cannot {action}: the billing provider is not configured",
                code="billing_not_configured",
            )

    def _require_active_product(self, product_id: str) -> Product:
        product = self.products.get(ProductSelector(id=product_id))
        if product is None:
            raise NotFoundError(f"Product {product_id} not found", code="product_not_found")
        if not product.active:
            raise BadRequestError(f"Product {product_id} is archived", code="product_archived")
        return product

    def _member_subscription(
        self,
        transaction: MembershipTransaction,
        subscription_id: str,
        *,
        member_id: Optional[str],
        email: Optional[str],
    ) -> Subscription:
        if member_id is None and email is None:
            raise NotFoundError(f"Subscription {subscription_id} not found", code="subscription_not_found")
        member = transaction.get_member(member_id=member_id, email=email)
        if member is None:
            raise NotFoundError(f"Member {member_id or email} not found", code="member_not_found")
        subscription = transaction.get_subscription(subscription_id)
        if subscription is None or subscription.member_id != member.id:
            raise NotFoundError(f"Subscription {subscription_id} not found", code="subscription_not_found")
        return subscription

    def _details(self, transaction: MembershipTransaction, member_id: str) -> MemberDetails:
        member = transaction.get_member(member_id=member_id)
        if member is None:
            raise NotFoundError(f"Member {member_id} not found", code="member_not_found")
        return MemberDetails(
            member=member,
            product_ids=tuple(transaction.list_product_ids(member_id)),
            newsletter_ids=tuple(transaction.list_newsletter_ids(member_id)),
            customers=tuple(transaction.list_customers(member_id)),
            subscriptions=tuple(transaction.list_subscriptions(member_id)),
        )

    def _provider_call(self, request: Callable[[], T]) -> T:
        try:
            return request()
        except ProviderNotFoundError as exc:
            raise NotFoundError(str(exc), code="provider_resource_missing") from exc


def _unique(values: Iterable[str]) -> List[str]:
    seen = set()
    ordered: List[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


__all__ = [
    "MemberService",
    "NewsletterDirectory",
    "OfferRepository",
    "SubscriptionLinkResult",
    "UnitOfWork",
]
