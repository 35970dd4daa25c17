"""Domain models for products (tiers) and member entitlements."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ProductType(str, Enum):
    FREE = "free"
    PAID = "paid"


class EntitlementMode(str, Enum):
    """Policy for combining products granted by several active subscriptions.

    ``replace`` keeps one entitlement per active plan; ``union`` lets products
    from separate subscriptions stack.
    """

    REPLACE = "replace"
    UNION = "union"


class EntitlementAction(str, Enum):
    ADDED = "added"
    REMOVED = "removed"


class ProductPrice(BaseModel):
    """A provider price linked to an internal product."""

    external_price_id: str
    external_product_id: str
    nickname: Optional[str] = None
    currency: str = "usd"
    amount: int = 0
    interval: Optional[str] = None
    active: bool = True
    type: str = "recurring"

    model_config = ConfigDict(frozen=True)


class Product(BaseModel):
    """Internal product (tier) a member can be entitled to."""

    id: str
    name: str
    type: ProductType = ProductType.PAID
    active: bool = True
    external_product_id: Optional[str] = None
    prices: Tuple[ProductPrice, ...] = Field(default_factory=tuple)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    def zero_value_price(self, currency: str) -> Optional[ProductPrice]:
        for price in self.prices:
            if price.amount == 0 and price.currency.lower() == currency.lower():
                return price
        return None

    def zero_value_prices(self) -> Sequence[ProductPrice]:
        return [price for price in self.prices if price.amount == 0]


class ProductSelector(BaseModel):
    """Identifies a product by exactly one of its keys."""

    id: Optional[str] = None
    external_product_id: Optional[str] = None
    external_price_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _exactly_one_key(self) -> "ProductSelector":
        keys = [value for value in (self.id, self.external_product_id, self.external_price_id) if value]
        if len(keys) != 1:
            raise ValueError("exactly one of id, external_product_id or external_price_id is required")
        return self


class EntitlementChange(BaseModel):
    product_id: str
    action: EntitlementAction

    model_config = ConfigDict(frozen=True)


class EntitlementReconciliation(BaseModel):
    """Target entitlement set and the ordered diff against the previous set."""

    product_ids: Tuple[str, ...]
    changes: Tuple[EntitlementChange, ...] = Field(default_factory=tuple)

    model_config = ConfigDict(frozen=True)

    @property
    def added(self) -> Tuple[str, ...]:
        return tuple(c.product_id for c in self.changes if c.action == EntitlementAction.ADDED)

    @property
    def removed(self) -> Tuple[str, ...]:
        return tuple(c.product_id for c in self.changes if c.action == EntitlementAction.REMOVED)
