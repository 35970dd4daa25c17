"""Entitlements domain models and reconciliation."""

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
from .service import EntitlementReconciler, ProductRepository

__all__ = [
    "EntitlementAction",
    "EntitlementChange",
    "EntitlementMode",
    "EntitlementReconciler",
    "EntitlementReconciliation",
    "Product",
    "ProductPrice",
    "ProductRepository",
    "ProductSelector",
    "ProductType",
]
