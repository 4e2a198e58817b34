"""Application wiring for the entitlement and feature engine."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Dict, Optional
from uuid import uuid4

from fastapi import Request

from ...config import EngineConfig
from ...storage import StorageClient
from ..billing import (
    AccountRepository,
    BillingAuditEvent,
    BillingEventLogger,
    CheckoutHandle,
    ListingRepository,
    NormalizedSubscriptionState,
    PaymentProcessorAdapter,
    ProcessorWebhookEvent,
    ReconciliationService,
    SubscriptionLifecycleManager,
    TransactionRepository,
    WebhookEventRepository,
    WebhookSignatureInvalid,
)
from ..billing.repository import (
    PostgresAccountRepository,
    PostgresTransactionRepository,
    PostgresWebhookEventRepository,
)
from ..billing.stripe_adapter import StripePaymentAdapter
from ..billing.webhooks import ProcessorWebhookDispatcher
from ..entitlements.models import AccountEntitlementRecord, SubscriptionStatus
from ..entitlements.service import EntitlementService
from ..featuring import ExpirationSweeper, FeatureGrantManager
from ..listings.repository import PostgresListingRepository

logger = logging.getLogger("billing")


class LoggingBillingEventLogger(BillingEventLogger):
    """Event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s account=%s subscription=%s listing=%s metadata=%s",
            event.event_type.value,
            event.account_id,
            event.subscription_ref,
            event.listing_id,
            event.metadata,
        )


class LocalSandboxPaymentAdapter(PaymentProcessorAdapter):
    """In-process processor for local development and tests.

    Subscriptions exist only once registered through ``activate``; webhook
    payloads are plain JSON, signed with an HMAC-SHA256 hex digest when a
    secret is configured.
    """

    def __init__(self, *, webhook_secret: Optional[str] = None, base_url: str = "https://billing.local") -> None:
        self._webhook_secret = webhook_secret
        self._base_url = base_url.rstrip("/")
        self._subscriptions: Dict[str, NormalizedSubscriptionState] = {}
        self._lock = Lock()

    def create_customer(self, account: AccountEntitlementRecord, *, email: Optional[str] = None) -> str:
        return f"cus_{uuid4().hex[:14]}"

    def _checkout(self, path: str) -> CheckoutHandle:
        session_ref = f"cs_{uuid4().hex}"
        return CheckoutHandle(
            redirect_url=f"{self._base_url}/{path}/{session_ref}",
            session_ref=session_ref,
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=30),
        )

    def create_subscription_checkout(self, customer_ref, plan_id, *, metadata=None) -> CheckoutHandle:
        return self._checkout("checkout/subscription")

    def create_one_time_checkout(
        self, account_id, listing_id, amount_cents, duration_days, *, metadata=None
    ) -> CheckoutHandle:
        return self._checkout("checkout/feature")

    def activate(self, state: NormalizedSubscriptionState) -> None:
        with self._lock:
            self._subscriptions[state.external_subscription_ref] = state

    def cancel_subscription(self, subscription_ref: str, *, at_period_end: bool) -> None:
        with self._lock:
            state = self._subscriptions.get(subscription_ref)
            if state is None:
                return
            if at_period_end:
                updated = state.model_copy(update={"cancel_at_period_end": True})
            else:
                updated = state.model_copy(
                    update={
                        "status": SubscriptionStatus.CANCELED,
                        "canceled_at": datetime.now(timezone.utc),
                    }
                )
            self._subscriptions[subscription_ref] = updated

    def set_auto_renew(self, subscription_ref: str, enabled: bool) -> None:
        with self._lock:
            state = self._subscriptions.get(subscription_ref)
            if state is not None:
                self._subscriptions[subscription_ref] = state.model_copy(
                    update={"cancel_at_period_end": not enabled}
                )

    def fetch_subscription(self, ref: str) -> Optional[NormalizedSubscriptionState]:
        with self._lock:
            if ref in self._subscriptions:
                return self._subscriptions[ref]
            owned = [state for state in self._subscriptions.values() if state.external_customer_ref == ref]
        if not owned:
            return None
        return max(owned, key=lambda state: state.current_period_end or datetime.min.replace(tzinfo=timezone.utc))

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> ProcessorWebhookEvent:
        if self._webhook_secret:
            expected = hmac.new(self._webhook_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
            if not signature or not hmac.compare_digest(expected, signature):
                raise WebhookSignatureInvalid("Webhook signature verification failed")
        try:
            raw = json.loads(payload)
            return ProcessorWebhookEvent(
                event_id=str(raw["id"]),
                event_type=str(raw["type"]),
                data=dict((raw.get("data") or {}).get("object") or {}),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise WebhookSignatureInvalid("Webhook payload is malformed") from exc


@dataclass
class BillingEngine:
    """Every engine collaborator, built once per process around one storage client."""

    config: EngineConfig
    storage: StorageClient
    adapter: PaymentProcessorAdapter
    event_logger: BillingEventLogger
    accounts: AccountRepository
    transactions: TransactionRepository
    listings: ListingRepository
    webhook_events: WebhookEventRepository
    subscriptions: SubscriptionLifecycleManager
    reconciler: ReconciliationService
    entitlements: EntitlementService
    features: FeatureGrantManager
    sweeper: ExpirationSweeper
    webhooks: ProcessorWebhookDispatcher


def build_adapter(config: EngineConfig) -> PaymentProcessorAdapter:
    if config.payment_provider == "stripe":
        return StripePaymentAdapter(
            secret_key=config.stripe_secret_key or "",
            webhook_secret=config.stripe_webhook_secret,
            plan_price_refs=config.plan_price_refs,
            app_base_url=config.app_base_url,
            currency=config.feature_currency,
            timeout_seconds=config.stripe_timeout_seconds,
        )
    logger.warning("Using the local sandbox payment adapter; no real payments are taken")
    return LocalSandboxPaymentAdapter(webhook_secret=config.stripe_webhook_secret)


def build_engine(
    config: EngineConfig,
    storage: StorageClient,
    *,
    adapter: Optional[PaymentProcessorAdapter] = None,
    event_logger: Optional[BillingEventLogger] = None,
) -> BillingEngine:
    adapter = adapter or build_adapter(config)
    event_logger = event_logger or LoggingBillingEventLogger()

    accounts = PostgresAccountRepository(storage)
    transactions = PostgresTransactionRepository(storage)
    listings = PostgresListingRepository(storage)
    webhook_events = PostgresWebhookEventRepository(storage)

    subscriptions = SubscriptionLifecycleManager(
        accounts=accounts,
        transactions=transactions,
        adapter=adapter,
        event_logger=event_logger,
    )
    reconciler = ReconciliationService(accounts=accounts, adapter=adapter, event_logger=event_logger)
    entitlements = EntitlementService(
        accounts,
        reconciler=reconciler,
        reconcile_cooldown_seconds=config.entitlement_reconcile_cooldown_seconds,
    )
    features = FeatureGrantManager(
        listings=listings,
        transactions=transactions,
        adapter=adapter,
        event_logger=event_logger,
        storage=storage,
        base_price_cents=config.feature_base_price_cents,
        base_duration_days=config.feature_base_duration_days,
        max_duration_days=config.feature_max_duration_days,
        currency=config.feature_currency,
    )
    sweeper = ExpirationSweeper(listings=listings, event_logger=event_logger, batch_size=config.sweep_batch_size)
    webhooks = ProcessorWebhookDispatcher(
        events=webhook_events,
        subscriptions=subscriptions,
        features=features,
        adapter=adapter,
        plan_by_price={price: plan for plan, price in config.plan_price_refs.items()},
    )
    return BillingEngine(
        config=config,
        storage=storage,
        adapter=adapter,
        event_logger=event_logger,
        accounts=accounts,
        transactions=transactions,
        listings=listings,
        webhook_events=webhook_events,
        subscriptions=subscriptions,
        reconciler=reconciler,
        entitlements=entitlements,
        features=features,
        sweeper=sweeper,
        webhooks=webhooks,
    )


def get_engine(request: Request) -> BillingEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise RuntimeError("Billing engine has not been started")
    return engine


__all__ = [
    "BillingEngine",
    "LocalSandboxPaymentAdapter",
    "LoggingBillingEventLogger",
    "build_adapter",
    "build_engine",
    "get_engine",
]
