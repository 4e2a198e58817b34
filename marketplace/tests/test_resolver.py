from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from marketplace.app.entitlements import (
    FULL_CAPABILITIES,
    NO_CAPABILITIES,
    AccountEntitlementRecord,
    AccountRole,
    SubscriptionStatus,
    looks_stale,
    resolve,
)

NOW = datetime(2025, 3, 1, 12, tzinfo=timezone.utc)


def _record(status: SubscriptionStatus, period_end=None, role=AccountRole.SELLER) -> AccountEntitlementRecord:
    return AccountEntitlementRecord(
        account_id="acct-1",
        role=role,
        external_subscription_ref=None if status in {SubscriptionStatus.NONE, SubscriptionStatus.CANCELED} else "sub_1",
        status=status,
        current_period_end=period_end,
    )


@pytest.mark.parametrize("role", [AccountRole.REGULAR, AccountRole.ADMIN])
def test_ungated_roles_always_receive_full_capabilities(role):
    assert resolve(role, None, NOW) == FULL_CAPABILITIES
    assert resolve(role, _record(SubscriptionStatus.NONE, role=role), NOW) == FULL_CAPABILITIES


@pytest.mark.parametrize("status", [SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING])
def test_entitled_status_with_future_period_grants_everything(status):
    record = _record(status, NOW + timedelta(days=5))

    assert resolve(AccountRole.SELLER, record, NOW) == FULL_CAPABILITIES


@pytest.mark.parametrize(
    "status",
    [
        SubscriptionStatus.NONE,
        SubscriptionStatus.INCOMPLETE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.INCOMPLETE_EXPIRED,
    ],
)
def test_non_entitled_statuses_grant_nothing(status):
    record = _record(status, NOW + timedelta(days=5))

    assert resolve(AccountRole.PROVIDER, record, NOW) == NO_CAPABILITIES


def test_elapsed_period_grants_nothing_even_when_active():
    record = _record(SubscriptionStatus.ACTIVE, NOW)

    assert resolve(AccountRole.SELLER, record, NOW) == NO_CAPABILITIES
    assert resolve(AccountRole.SELLER, record, NOW - timedelta(seconds=1)) == FULL_CAPABILITIES


def test_missing_record_grants_nothing_for_gated_roles():
    assert resolve(AccountRole.PROVIDER, None, NOW) == NO_CAPABILITIES


def test_resolve_is_pure():
    record = _record(SubscriptionStatus.ACTIVE, NOW + timedelta(days=1))
    snapshot = record.model_dump()

    results = {resolve(AccountRole.SELLER, record, NOW) for _ in range(3)}

    assert results == {FULL_CAPABILITIES}
    assert record.model_dump() == snapshot


def test_looks_stale_only_for_entitled_records_past_their_period():
    assert looks_stale(_record(SubscriptionStatus.ACTIVE, NOW - timedelta(hours=1)), NOW)
    assert not looks_stale(_record(SubscriptionStatus.ACTIVE, NOW + timedelta(hours=1)), NOW)
    assert not looks_stale(_record(SubscriptionStatus.PAST_DUE, NOW - timedelta(hours=1)), NOW)
    assert not looks_stale(None, NOW)
