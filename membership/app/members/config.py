"""Membership configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os

from ..entitlements.models import EntitlementMode

# Last API version that still exposes `subscription.discount` and the `coupon` update parameter.
DEFAULT_STRIPE_API_VERSION = "2024-06-20"


@dataclass(frozen=True)
class DatabaseConfig:
    host: str
    port: int
    name: str
    user: str
    password: Optional[str]

    def dsn_kwargs(self) -> dict:
        kwargs = {"host": self.host, "port": self.port, "dbname": self.name, "user": self.user}
        if self.password:
            kwargs["password"] = self.password
        return kwargs


@dataclass(frozen=True)
class MembershipConfig:
    """Configuration for subscription reconciliation and its collaborators."""

    entitlement_mode: EntitlementMode
    stripe_secret_key: Optional[str]
    stripe_api_version: str
    stripe_max_network_retries: int
    complimentary_currency: str
    database: DatabaseConfig

    @property
    def billing_configured(self) -> bool:
        return bool(self.stripe_secret_key)


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_mode(value: Optional[str]) -> EntitlementMode:
    if value is None or not value.strip():
        return EntitlementMode.UNION
    lowered = value.strip().lower()
    try:
        return EntitlementMode(lowered)
    except ValueError as exc:
        raise ValueError(f"Unsupported entitlement mode {value!r}; expected 'union' or 'replace'") from exc


def load_membership_config(env: Optional[Mapping[str, str]] = None) -> MembershipConfig:
    """Load :class:`MembershipConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    entitlement_mode = _to_mode(env_mapping.get("MEMBERSHIP_ENTITLEMENT_MODE"))
    # Kept for deployments that toggled replace mode with a boolean flag.
    if _to_bool(env_mapping.get("MEMBERSHIP_COMP_EXPIRING"), default=False):
        entitlement_mode = EntitlementMode.REPLACE

    stripe_secret_key = (env_mapping.get("STRIPE_SECRET_KEY") or "").strip() or None
    stripe_api_version = (env_mapping.get("STRIPE_API_VERSION") or "").strip() or DEFAULT_STRIPE_API_VERSION
    stripe_max_network_retries = max(0, _to_int(env_mapping.get("STRIPE_MAX_NETWORK_RETRIES"), default=2))

    complimentary_currency = (env_mapping.get("MEMBERSHIP_COMPLIMENTARY_CURRENCY") or "usd").strip().lower() or "usd"

    database = DatabaseConfig(
        host=env_mapping.get("DB_HOST", "localhost"),
        port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        name=env_mapping.get("DB_NAME", "membership"),
        user=env_mapping.get("DB_USER", "postgres"),
        password=env_mapping.get("DB_PASSWORD") or None,
    )

    return MembershipConfig(
        entitlement_mode=entitlement_mode,
        stripe_secret_key=stripe_secret_key,
        stripe_api_version=stripe_api_version,
        stripe_max_network_retries=stripe_max_network_retries,
        complimentary_currency=complimentary_currency,
        database=database,
    )


__all__ = ["DEFAULT_STRIPE_API_VERSION", "DatabaseConfig", "MembershipConfig", "load_membership_config"]
