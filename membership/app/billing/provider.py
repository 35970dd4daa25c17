"""Billing provider integration used by the reconciliation engine."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Protocol

import stripe

from .models import CustomerSnapshot, PaymentMethod, Price, SubscriptionSnapshot

logger = logging.getLogger(__name__)


class BillingProviderError(Exception):
    """Base error raised by billing provider adapters."""


class TransientProviderError(BillingProviderError):
    """Network or rate-limit failure; the call may be retried."""


class ProviderNotFoundError(BillingProviderError):
    """The requested provider resource does not exist."""


class BillingProvider(Protocol):
    """Subscription, customer and price operations offered by the provider."""

    @property
    def configured(self) -> bool:
        ...

    def get_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        ...

    def get_customer(self, customer_id: str) -> Optional[CustomerSnapshot]:
        ...

    def create_customer(self, *, email: str, name: Optional[str] = None) -> CustomerSnapshot:
        ...

    def update_customer_email(self, customer_id: str, email: str) -> None:
        ...

    def create_subscription(self, customer_id: str, price_id: str) -> SubscriptionSnapshot:
        ...

    def cancel_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        ...

    def cancel_subscription_at_period_end(
        self, subscription_id: str, reason: Optional[str] = None
    ) -> SubscriptionSnapshot:
        ...

    def continue_subscription_at_period_end(self, subscription_id: str) -> SubscriptionSnapshot:
        ...

    def update_subscription_item_price(
        self, subscription_id: str, item_id: str, price_id: str
    ) -> SubscriptionSnapshot:
        ...

    def remove_coupon_from_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        ...

    def get_card_payment_method(self, payment_method_id: str) -> Optional[PaymentMethod]:
        ...

    def create_price(
        self,
        *,
        product_id: str,
        currency: str,
        amount: int,
        interval: str,
        nickname: str,
    ) -> Price:
        ...


class StripeBillingProvider:
    """:class:`BillingProvider` backed by the Stripe API."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        api_version: Optional[str] = None,
        max_network_retries: int = 2,
    ) -> None:
        self._api_key = api_key
        self._request_options: Dict[str, Any] = {"api_key": api_key} if api_key else {}
        if api_version:
            self._request_options["stripe_version"] = api_version
        stripe.max_network_retries = max_network_retries

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def get_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        payload = self._call(
            lambda: stripe.Subscription.retrieve(
                subscription_id,
                expand=["default_payment_method"],
                **self._request_options,
            )
        )
        return SubscriptionSnapshot.from_provider(payload)

    def get_customer(self, customer_id: str) -> Optional[CustomerSnapshot]:
        payload = self._call(
            lambda: stripe.Customer.retrieve(
                customer_id,
                expand=["subscriptions"],
                **self._request_options,
            )
        )
        if payload.get("deleted"):
            return None
        return CustomerSnapshot.from_provider(payload)

    def create_customer(self, *, email: str, name: Optional[str] = None) -> CustomerSnapshot:
        params: Dict[str, Any] = {"email": email}
        if name:
            params["name"] = name
        payload = self._call(lambda: stripe.Customer.create(**params, **self._request_options))
        return CustomerSnapshot.from_provider(payload)

    def update_customer_email(self, customer_id: str, email: str) -> None:
        self._call(lambda: stripe.Customer.modify(customer_id, email=email, **self._request_options))

    def create_subscription(self, customer_id: str, price_id: str) -> SubscriptionSnapshot:
        payload = self._call(
            lambda: stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                **self._request_options,
            )
        )
        return SubscriptionSnapshot.from_provider(payload)

    def cancel_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        payload = self._call(lambda: stripe.Subscription.cancel(subscription_id, **self._request_options))
        return SubscriptionSnapshot.from_provider(payload)

    def cancel_subscription_at_period_end(
        self, subscription_id: str, reason: Optional[str] = None
    ) -> SubscriptionSnapshot:
        payload = self._call(
            lambda: stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=True,
                metadata={"cancellation_reason": reason or ""},
                **self._request_options,
            )
        )
        return SubscriptionSnapshot.from_provider(payload)

    def continue_subscription_at_period_end(self, subscription_id: str) -> SubscriptionSnapshot:
        payload = self._call(
            lambda: stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=False,
                metadata={"cancellation_reason": ""},
                **self._request_options,
            )
        )
        return SubscriptionSnapshot.from_provider(payload)

    def update_subscription_item_price(
        self, subscription_id: str, item_id: str, price_id: str
    ) -> SubscriptionSnapshot:
        payload = self._call(
            lambda: stripe.Subscription.modify(
                subscription_id,
                items=[{"id": item_id, "price": price_id}],
                cancel_at_period_end=False,
                proration_behavior="always_invoice",
                **self._request_options,
            )
        )
        return SubscriptionSnapshot.from_provider(payload)

    def remove_coupon_from_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        payload = self._call(
            lambda: stripe.Subscription.modify(subscription_id, coupon="", **self._request_options)
        )
        return SubscriptionSnapshot.from_provider(payload)

    def get_card_payment_method(self, payment_method_id: str) -> Optional[PaymentMethod]:
        payload = self._call(lambda: stripe.PaymentMethod.retrieve(payment_method_id, **self._request_options))
        if payload.get("type") != "card":
            return None
        card = payload.get("card") or {}
        return PaymentMethod(id=str(payload["id"]), card_last4=card.get("last4"))

    def create_price(
        self,
        *,
        product_id: str,
        currency: str,
        amount: int,
        interval: str,
        nickname: str,
    ) -> Price:
        payload = self._call(
            lambda: stripe.Price.create(
                product=product_id,
                currency=currency.lower(),
                unit_amount=amount,
                recurring={"interval": interval},
                nickname=nickname,
                **self._request_options,
            )
        )
        return Price(
            id=str(payload["id"]),
            product=product_id,
            nickname=nickname,
            currency=currency,
            unit_amount=amount,
            interval=interval,
            active=bool(payload.get("active", True)),
        )

    def _call(self, request: Callable[[], Any]) -> Dict[str, Any]:
        if not self.configured:
            raise BillingProviderError("Stripe is not configured")
        try:
            return _to_dict(request())
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
            logger.warning("Transient Stripe failure: %s", exc)
            raise TransientProviderError(str(exc)) from exc
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                raise ProviderNotFoundError(str(exc)) from exc
            raise BillingProviderError(str(exc)) from exc
        except stripe.StripeError as exc:
            raise BillingProviderError(str(exc)) from exc


def _to_dict(payload: Any) -> Dict[str, Any]:
    """Convert a Stripe response object into plain dictionaries for the snapshot parsers."""

    if payload is None:
        return {}
    to_dict = getattr(payload, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    to_dict_recursive = getattr(payload, "to_dict_recursive", None)
    if callable(to_dict_recursive):
        return to_dict_recursive()
    return dict(payload)


__all__ = [
    "BillingProvider",
    "BillingProviderError",
    "ProviderNotFoundError",
    "StripeBillingProvider",
    "TransientProviderError",
]
