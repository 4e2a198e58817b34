from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone

import pytest

from marketplace.app.billing import NormalizedSubscriptionState, WebhookSignatureInvalid
from marketplace.app.entitlements import AccountEntitlementRecord, AccountRole, SubscriptionStatus
from marketplace.app.billing.stripe_adapter import StripePaymentAdapter
from marketplace.app.services.billing import LocalSandboxPaymentAdapter, build_adapter
from marketplace.config import load_engine_config

PERIOD_END = datetime(2025, 4, 1, tzinfo=timezone.utc)


def _state(ref: str, customer_ref: str = "cus_1", period_end: datetime = PERIOD_END) -> NormalizedSubscriptionState:
    return NormalizedSubscriptionState(
        external_subscription_ref=ref,
        external_customer_ref=customer_ref,
        status=SubscriptionStatus.ACTIVE,
        current_period_start=period_end - timedelta(days=30),
        current_period_end=period_end,
    )


def test_checkout_handles_are_unique():
    adapter = LocalSandboxPaymentAdapter()
    account = AccountEntitlementRecord.new("seller-1", AccountRole.SELLER)

    customer_ref = adapter.create_customer(account)
    first = adapter.create_subscription_checkout(customer_ref, "product_seller")
    second = adapter.create_one_time_checkout("seller-1", "prod-1", 1000, 30)

    assert customer_ref.startswith("cus_")
    assert first.session_ref != second.session_ref
    assert first.redirect_url.startswith("https://billing.local/checkout/subscription/")
    assert second.expires_at is not None


def test_cancel_and_auto_renew_update_registered_subscription():
    adapter = LocalSandboxPaymentAdapter()
    adapter.activate(_state("sub_1"))

    adapter.set_auto_renew("sub_1", False)
    assert adapter.fetch_subscription("sub_1").cancel_at_period_end is True

    adapter.cancel_subscription("sub_1", at_period_end=False)
    state = adapter.fetch_subscription("sub_1")
    assert state.status == SubscriptionStatus.CANCELED
    assert state.canceled_at is not None

    adapter.cancel_subscription("sub_unknown", at_period_end=True)
    assert adapter.fetch_subscription("sub_unknown") is None


def test_fetch_by_customer_returns_latest_period():
    adapter = LocalSandboxPaymentAdapter()
    adapter.activate(_state("sub_old"))
    adapter.activate(_state("sub_new", period_end=PERIOD_END + timedelta(days=30)))

    assert adapter.fetch_subscription("cus_1").external_subscription_ref == "sub_new"


def test_signed_webhooks_are_verified():
    adapter = LocalSandboxPaymentAdapter(webhook_secret="local-secret")
    payload = json.dumps({"id": "evt_1", "type": "invoice.payment_succeeded", "data": {"object": {"id": "in_1"}}}).encode()
    signature = hmac.new(b"local-secret", payload, hashlib.sha256).hexdigest()

    event = adapter.parse_webhook(payload, signature)

    assert event.event_id == "evt_1"
    assert event.data == {"id": "in_1"}
    with pytest.raises(WebhookSignatureInvalid):
        adapter.parse_webhook(payload, "forged")
    with pytest.raises(WebhookSignatureInvalid):
        adapter.parse_webhook(payload, None)


def test_malformed_webhook_payload_is_rejected():
    adapter = LocalSandboxPaymentAdapter()

    with pytest.raises(WebhookSignatureInvalid):
        adapter.parse_webhook(b"not json", None)
    with pytest.raises(WebhookSignatureInvalid):
        adapter.parse_webhook(b'{"type": "missing.id"}', None)


def test_build_adapter_follows_configuration():
    sandbox = build_adapter(load_engine_config({}))
    stripe_adapter = build_adapter(
        load_engine_config({"PAYMENT_PROVIDER": "stripe", "STRIPE_SECRET_KEY": "sk_test_1"})
    )

    assert isinstance(sandbox, LocalSandboxPaymentAdapter)
    assert isinstance(stripe_adapter, StripePaymentAdapter)
