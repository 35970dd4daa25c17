from __future__ import annotations

import pytest

from membership.app.entitlements import EntitlementMode
from membership.app.members.config import DEFAULT_STRIPE_API_VERSION, load_membership_config


def test_defaults_when_environment_is_empty():
    config = load_membership_config({})

    assert config.entitlement_mode == EntitlementMode.UNION
    assert config.stripe_secret_key is None
    assert config.billing_configured is False
    assert config.stripe_api_version == DEFAULT_STRIPE_API_VERSION == "2024-06-20"
    assert config.stripe_max_network_retries == 2
    assert config.complimentary_currency == "usd"
    assert config.database.dsn_kwargs() == {
        "host": "localhost",
        "port": 5432,
        "dbname": "membership",
        "user": "postgres",
    }


def test_values_are_read_from_environment():
    config = load_membership_config(
        {
            "MEMBERSHIP_ENTITLEMENT_MODE": " Replace ",
            "STRIPE_SECRET_KEY": "sk_test_123",
            "STRIPE_API_VERSION": "2023-10-16",
            "STRIPE_MAX_NETWORK_RETRIES": "5",
            "MEMBERSHIP_COMPLIMENTARY_CURRENCY": "EUR",
            "DB_HOST": "db",
            "DB_PORT": "6543",
            "DB_NAME": "members",
            "DB_USER": "app",
            "DB_PASSWORD": "secret",
        }
    )

    assert config.entitlement_mode == EntitlementMode.REPLACE
    assert config.billing_configured is True
    assert config.stripe_api_version == "2023-10-16"
    assert config.stripe_max_network_retries == 5
    assert config.complimentary_currency == "eur"
    assert config.database.dsn_kwargs() == {
        "host": "db",
        "port": 6543,
        "dbname": "members",
        "user": "app",
        "password": "secret",
    }


@pytest.mark.parametrize("flag", ["true", "1", "yes", "on"])
def test_legacy_flag_selects_replace_mode(flag):
    config = load_membership_config({"MEMBERSHIP_COMP_EXPIRING": flag})

    assert config.entitlement_mode == EntitlementMode.REPLACE


def test_unrecognized_legacy_flag_is_ignored():
    config = load_membership_config({"MEMBERSHIP_COMP_EXPIRING": "maybe"})

    assert config.entitlement_mode == EntitlementMode.UNION


def test_invalid_entitlement_mode_is_rejected():
    with pytest.raises(ValueError, match="Unsupported entitlement mode"):
        load_membership_config({"MEMBERSHIP_ENTITLEMENT_MODE": "stack"})


def test_invalid_integer_is_rejected():
    with pytest.raises(ValueError, match="Expected integer value"):
        load_membership_config({"DB_PORT": "five"})


def test_negative_retries_are_clamped():
    config = load_membership_config({"STRIPE_MAX_NETWORK_RETRIES": "-3"})

    assert config.stripe_max_network_retries == 0


def test_blank_secret_key_means_unconfigured():
    config = load_membership_config({"STRIPE_SECRET_KEY": "   "})

    assert config.stripe_secret_key is None
    assert config.billing_configured is False
