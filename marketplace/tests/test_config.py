from __future__ import annotations

import pytest

from marketplace.config import load_database_config, load_engine_config


def test_defaults_use_sandbox_processor():
    config = load_engine_config({})

    assert config.payment_provider == "sandbox"
    assert config.plan_price_refs == {}
    assert config.feature_base_price_cents == 1000
    assert config.feature_base_duration_days == 30
    assert config.feature_max_duration_days == 365
    assert config.sweep_batch_size == 500
    assert config.sweep_interval_seconds == 0
    assert config.entitlement_reconcile_cooldown_seconds == 300
    assert config.cron_secret_token is None
    assert config.database.auto_create_schema is False


def test_stripe_settings_are_loaded():
    config = load_engine_config(
        {
            "PAYMENT_PROVIDER": "Stripe",
            "STRIPE_SECRET_KEY": "sk_test_1",
            "STRIPE_WEBHOOK_SECRET": "whsec_1",
            "STRIPE_PRICE_PROVIDER": "price_provider",
            "STRIPE_PRICE_PRODUCT_SELLER": "price_seller",
            "APP_BASE_URL": "https://market.example/",
            "FEATURE_CURRENCY": "eur",
            "LOG_LEVEL": "debug",
        }
    )

    assert config.payment_provider == "stripe"
    assert config.plan_price_refs == {"provider": "price_provider", "product_seller": "price_seller"}
    assert config.app_base_url == "https://market.example"
    assert config.feature_currency == "EUR"
    assert config.log_level == "DEBUG"


def test_stripe_requires_secret_key():
    with pytest.raises(ValueError):
        load_engine_config({"PAYMENT_PROVIDER": "stripe"})


def test_unknown_provider_is_rejected():
    with pytest.raises(ValueError):
        load_engine_config({"PAYMENT_PROVIDER": "paypal"})


def test_numeric_settings_are_clamped():
    config = load_engine_config(
        {
            "FEATURE_BASE_DURATION_DAYS": "60",
            "FEATURE_MAX_DURATION_DAYS": "10",
            "SWEEP_BATCH_SIZE": "0",
            "SWEEP_INTERVAL_SECONDS": "-5",
            "ENTITLEMENT_RECONCILE_COOLDOWN_SECONDS": "-1",
            "STRIPE_TIMEOUT_SECONDS": "0.2",
        }
    )

    assert config.feature_max_duration_days == 60
    assert config.sweep_batch_size == 1
    assert config.sweep_interval_seconds == 0
    assert config.entitlement_reconcile_cooldown_seconds == 0
    assert config.stripe_timeout_seconds == 1.0


def test_database_config_parsing():
    config = load_database_config(
        {"DB_PORT": "6543", "DB_CONNECT_TIMEOUT": "2.5", "DB_POOL_MIN": "3", "DB_POOL_MAX": "2", "DB_AUTO_CREATE_SCHEMA": "yes"}
    )

    assert config.port == 6543
    assert config.connect_timeout == 3
    assert config.pool_min == 3
    assert config.pool_max == 3
    assert config.auto_create_schema is True
    assert config.dsn_kwargs()["port"] == 6543


@pytest.mark.parametrize("env", [{"DB_PORT": "not-a-port"}, {"DB_CONNECT_TIMEOUT": "-1"}])
def test_invalid_database_settings_raise(env):
    with pytest.raises(ValueError):
        load_database_config(env)
