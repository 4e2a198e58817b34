"""Engine configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional
import math
import os


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the PostgreSQL storage client."""

    host: str
    port: int
    dbname: str
    user: str
    password: str
    connect_timeout: int
    pool_min: int
    pool_max: int
    auto_create_schema: bool

    def dsn_kwargs(self) -> Dict[str, object]:
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.dbname,
            "user": self.user,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True)
class EngineConfig:
    """Configuration for the entitlement and feature engine."""

    database: DatabaseConfig
    payment_provider: str
    stripe_secret_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    stripe_timeout_seconds: float
    plan_price_refs: Dict[str, str] = field(default_factory=dict)
    app_base_url: str = "http://localhost:3000"
    cron_secret_token: Optional[str] = None
    feature_base_price_cents: int = 1000
    feature_base_duration_days: int = 30
    feature_max_duration_days: int = 365
    feature_currency: str = "USD"
    sweep_batch_size: int = 500
    sweep_interval_seconds: int = 0
    entitlement_reconcile_cooldown_seconds: int = 300
    log_level: str = "INFO"


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


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _parse_connect_timeout(raw_value: Optional[str]) -> int:
    timeout = _to_float(raw_value, default=5.0)
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


def load_database_config(env: Optional[Mapping[str, str]] = None) -> DatabaseConfig:
    """Load :class:`DatabaseConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    pool_min = max(1, _to_int(env_mapping.get("DB_POOL_MIN"), default=1))
    pool_max = max(pool_min, _to_int(env_mapping.get("DB_POOL_MAX"), default=10))

    return DatabaseConfig(
        host=env_mapping.get("DB_HOST", "127.0.0.1"),
        port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        dbname=env_mapping.get("DB_NAME", "marketplace_db"),
        user=env_mapping.get("DB_USER", "marketplace_user"),
        password=env_mapping.get("DB_PASSWORD", "marketplace_pass"),
        connect_timeout=_parse_connect_timeout(env_mapping.get("DB_CONNECT_TIMEOUT")),
        pool_min=pool_min,
        pool_max=pool_max,
        auto_create_schema=_to_bool(env_mapping.get("DB_AUTO_CREATE_SCHEMA"), default=False),
    )


def load_engine_config(env: Optional[Mapping[str, str]] = None) -> EngineConfig:
    """Load :class:`EngineConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    payment_provider = (env_mapping.get("PAYMENT_PROVIDER") or "sandbox").strip().lower() or "sandbox"
    if payment_provider not in {"stripe", "sandbox"}:
        raise ValueError(f"Unsupported PAYMENT_PROVIDER {payment_provider!r}")

    stripe_secret_key = env_mapping.get("STRIPE_SECRET_KEY") or None
    if payment_provider == "stripe" and not stripe_secret_key:
        raise ValueError("STRIPE_SECRET_KEY is required when PAYMENT_PROVIDER=stripe")

    plan_price_refs = {
        plan_id: price_ref
        for plan_id, price_ref in (
            ("provider", env_mapping.get("STRIPE_PRICE_PROVIDER")),
            ("product_seller", env_mapping.get("STRIPE_PRICE_PRODUCT_SELLER")),
        )
        if price_ref
    }

    base_duration = max(1, _to_int(env_mapping.get("FEATURE_BASE_DURATION_DAYS"), default=30))
    max_duration = max(base_duration, _to_int(env_mapping.get("FEATURE_MAX_DURATION_DAYS"), default=365))

    return EngineConfig(
        database=load_database_config(env_mapping),
        payment_provider=payment_provider,
        stripe_secret_key=stripe_secret_key,
        stripe_webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET") or None,
        stripe_timeout_seconds=max(1.0, _to_float(env_mapping.get("STRIPE_TIMEOUT_SECONDS"), default=10.0)),
        plan_price_refs=plan_price_refs,
        app_base_url=env_mapping.get("APP_BASE_URL", "http://localhost:3000").rstrip("/"),
        cron_secret_token=env_mapping.get("CRON_SECRET_TOKEN") or None,
        feature_base_price_cents=max(0, _to_int(env_mapping.get("FEATURE_BASE_PRICE_CENTS"), default=1000)),
        feature_base_duration_days=base_duration,
        feature_max_duration_days=max_duration,
        feature_currency=(env_mapping.get("FEATURE_CURRENCY") or "USD").upper(),
        sweep_batch_size=max(1, _to_int(env_mapping.get("SWEEP_BATCH_SIZE"), default=500)),
        sweep_interval_seconds=max(0, _to_int(env_mapping.get("SWEEP_INTERVAL_SECONDS"), default=0)),
        entitlement_reconcile_cooldown_seconds=max(
            0, _to_int(env_mapping.get("ENTITLEMENT_RECONCILE_COOLDOWN_SECONDS"), default=300)
        ),
        log_level=(env_mapping.get("LOG_LEVEL") or "INFO").upper(),
    )
