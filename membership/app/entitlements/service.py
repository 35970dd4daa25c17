"""Entitlement set reconciliation for members holding provider subscriptions."""
from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from ..billing.models import Price, Subscription
from ..errors import RecoverableDegradation
from .models import (
    EntitlementAction,
    EntitlementChange,
    EntitlementMode,
    EntitlementReconciliation,
    Product,
    ProductPrice,
    ProductSelector,
    ProductType,
)

logger = logging.getLogger(__name__)


class ProductRepository(Protocol):
    """Data access layer for products (tiers) and their linked prices."""

    def get(self, selector: ProductSelector) -> Optional[Product]:
        ...

    def update(self, product_id: str, *, prices: Sequence[ProductPrice]) -> Product:
        """Link (or refresh) the given prices on the product and return it."""

    def list(self, *, product_type: Optional[ProductType] = None, limit: int = 50) -> Sequence[Product]:
        ...


class EntitlementReconciler:
    """Computes the product set a member should hold after a subscription change."""

    def __init__(self, products: ProductRepository, *, mode: EntitlementMode = EntitlementMode.UNION) -> None:
        self._products = products
        self.mode = mode

    def default_paid_product(self) -> Optional[Product]:
        page = self._products.list(product_type=ProductType.PAID, limit=1)
        return page[0] if page else None

    def resolve_product(self, price: Price) -> Tuple[Optional[Product], Optional[RecoverableDegradation]]:
        """Find the internal product for a provider price.

        Falls back to the first paid product when no mapping exists.
        """

        product = self._products.get(ProductSelector(external_product_id=price.product))
        if product is not None:
            return product, None

        fallback = self.default_paid_product()
        if fallback is None:
            return None, RecoverableDegradation(
                f"No products exist to link price {price.id}",
                code="product_missing",
                detail={"price_id": price.id},
            )
        return fallback, RecoverableDegradation(
            f"Price {price.id} has no linked product; defaulted to {fallback.id}",
            code="product_defaulted",
            detail={"price_id": price.id, "product_id": fallback.id},
        )

    def reconcile(
        self,
        current_product_ids: Sequence[str],
        *,
        subscription: Subscription,
        previous: Optional[Subscription] = None,
        others: Iterable[Subscription] = (),
    ) -> EntitlementReconciliation:
        """Return the next entitlement set and its diff against ``current_product_ids``.

        ``others`` are the member's remaining subscriptions; an active one that
        grants a product keeps that product in the set.
        """

        current = _unique(current_product_ids)
        granted = self._granted_by(others)
        product_id = subscription.product_id
        previous_product_id = self._previous_product_id(previous, subscription)
        target: List[str] = list(current)

        if subscription.is_active:
            if self.mode == EntitlementMode.REPLACE:
                if product_id:
                    target = [product_id]
            else:
                if product_id:
                    target.append(product_id)
                if previous_product_id and previous_product_id != product_id and previous_product_id not in granted:
                    target = [pid for pid in target if pid != previous_product_id]
        else:
            for candidate in (product_id, previous_product_id):
                if candidate and candidate not in granted:
                    target = [pid for pid in target if pid != candidate]

        target = _unique(target)
        changes = [EntitlementChange(product_id=pid, action=EntitlementAction.ADDED) for pid in target if pid not in current]
        changes.extend(
            EntitlementChange(product_id=pid, action=EntitlementAction.REMOVED) for pid in current if pid not in target
        )
        return EntitlementReconciliation(product_ids=tuple(target), changes=tuple(changes))

    def _previous_product_id(self, previous: Optional[Subscription], subscription: Subscription) -> Optional[str]:
        if previous is None or previous.price_id == subscription.price_id:
            return None
        return self.product_id_for(previous)

    def _granted_by(self, subscriptions: Iterable[Subscription]) -> Set[str]:
        granted: Set[str] = set()
        for other in subscriptions:
            if not other.is_active:
                continue
            product_id = self.product_id_for(other)
            if product_id:
                granted.add(product_id)
        return granted

    def product_id_for(self, subscription: Subscription) -> Optional[str]:
        if subscription.product_id:
            return subscription.product_id
        try:
            product = self._products.get(ProductSelector(external_price_id=subscription.price_id))
        except Exception:
            logger.exception("Failed to resolve product for subscription %s", subscription.subscription_id)
            return None
        return product.id if product else None


def _unique(product_ids: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    ordered: List[str] = []
    for product_id in product_ids:
        if product_id in seen:
            continue
        seen.add(product_id)
        ordered.append(product_id)
    return ordered


__all__ = ["EntitlementReconciler", "ProductRepository"]
