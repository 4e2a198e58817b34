from __future__ import annotations

from datetime import timedelta

import pytest

from marketplace.app.billing import ProcessorUnavailable
from marketplace.app.entitlements import (
    FULL_CAPABILITIES,
    NO_CAPABILITIES,
    AccountRole,
    AuthenticatedIdentity,
    Capability,
    EntitlementService,
    SubscriptionStatus,
)
from marketplace.app.feature_gates import FeatureGateError

PROVIDER = AuthenticatedIdentity(account_id="provider-1", role=AccountRole.PROVIDER)


@pytest.fixture
def lapsed_provider(accounts, clock, make_state):
    accounts.create_if_missing(PROVIDER.account_id, PROVIDER.role)
    return accounts.attach_subscription(
        PROVIDER.account_id,
        make_state(period_end=clock.now - timedelta(hours=2), plan_id="provider"),
    )


def test_unknown_gated_account_has_no_capabilities(entitlements, adapter):
    snapshot = entitlements.check(PROVIDER)

    assert snapshot.record.status == SubscriptionStatus.NONE
    assert snapshot.capabilities == NO_CAPABILITIES
    assert adapter.calls == []


def test_regular_account_is_never_gated(entitlements):
    regular = AuthenticatedIdentity(account_id="user-1", role=AccountRole.REGULAR)

    snapshot = entitlements.require(regular, Capability.CREATE_CONTENT)

    assert snapshot.capabilities == FULL_CAPABILITIES


def test_stale_record_triggers_reconciliation(entitlements, adapter, lapsed_provider, clock, make_state):
    adapter.subscriptions["sub_1"] = make_state(period_end=clock.now + timedelta(days=28), plan_id="provider")

    snapshot = entitlements.check(PROVIDER)

    assert snapshot.reconciled is True
    assert snapshot.capabilities == FULL_CAPABILITIES
    assert snapshot.record.current_period_end == clock.now + timedelta(days=28)


def test_reconciliation_respects_cooldown(entitlements, adapter, lapsed_provider, clock):
    adapter.fail_with = ProcessorUnavailable("timeout")

    entitlements.check(PROVIDER)
    assert adapter.call_names().count("fetch_subscription") == 1

    clock.advance(seconds=60)
    entitlements.check(PROVIDER)
    assert adapter.call_names().count("fetch_subscription") == 1

    clock.advance(seconds=300)
    entitlements.check(PROVIDER)
    assert adapter.call_names().count("fetch_subscription") == 2


def test_processor_outage_falls_back_to_stored_record(entitlements, adapter, lapsed_provider):
    adapter.fail_with = ProcessorUnavailable("timeout")

    snapshot = entitlements.check(PROVIDER)

    assert snapshot.reconciled is False
    assert snapshot.record == lapsed_provider
    assert snapshot.capabilities == NO_CAPABILITIES


def test_service_without_reconciler_only_reads(accounts, adapter, lapsed_provider, clock):
    service = EntitlementService(accounts, clock=clock)

    snapshot = service.check(PROVIDER)

    assert snapshot.capabilities == NO_CAPABILITIES
    assert adapter.calls == []


def test_require_raises_gate_error_for_unentitled_provider(entitlements):
    with pytest.raises(FeatureGateError) as excinfo:
        entitlements.require(PROVIDER, Capability.PUBLISH_LISTING)

    assert excinfo.value.status_code == 403
    assert excinfo.value.payload["missing_capability"] == "publish_listing"


def test_expired_cooldown_entries_are_dropped(entitlements, accounts, adapter, lapsed_provider, clock, make_state):
    other = AuthenticatedIdentity(account_id="provider-2", role=AccountRole.PROVIDER)
    accounts.create_if_missing(other.account_id, other.role)
    accounts.attach_subscription(
        other.account_id,
        make_state("sub_2", customer_ref="cus_2", period_end=clock.now - timedelta(hours=1), plan_id="provider"),
    )
    adapter.fail_with = ProcessorUnavailable("timeout")

    entitlements.check(PROVIDER)
    clock.advance(seconds=301)
    entitlements.check(other)

    assert set(entitlements._last_reconcile) == {other.account_id}
