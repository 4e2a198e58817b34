from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from marketplace.app.entitlements import (
    AccountEntitlementRecord,
    AccountRole,
    AuthenticatedIdentity,
    Capability,
    EntitlementSnapshot,
    SubscriptionStatus,
    resolve,
)
from marketplace.app.feature_gates import EntitlementContext, FeatureGateError, require_capability

NOW = datetime(2025, 3, 1, 12, tzinfo=timezone.utc)


def _context(role: AccountRole, status: SubscriptionStatus, period_end=None) -> EntitlementContext:
    identity = AuthenticatedIdentity(account_id="acct-1", role=role)
    record = AccountEntitlementRecord(
        account_id="acct-1",
        role=role,
        external_subscription_ref="sub_1" if status == SubscriptionStatus.ACTIVE else None,
        status=status,
        current_period_end=period_end,
    )
    snapshot = EntitlementSnapshot(
        identity=identity,
        record=record,
        capabilities=resolve(role, record, NOW),
        evaluated_at=NOW,
    )
    return EntitlementContext(snapshot)


def test_require_capability_allows_granted_capability() -> None:
    require_capability(frozenset({Capability.PUBLISH_LISTING}), Capability.PUBLISH_LISTING)


def test_require_capability_raises_when_missing() -> None:
    with pytest.raises(FeatureGateError) as exc:
        require_capability(frozenset(), Capability.FEATURE_LISTING_SELF_SERVICE)

    assert exc.value.code == "entitlement_required"
    assert exc.value.payload["missing_capability"] == "feature_listing_self_service"
    assert exc.value.to_http_exception().status_code == 403


def test_entitled_seller_context_helpers() -> None:
    context = _context(AccountRole.SELLER, SubscriptionStatus.ACTIVE, NOW + timedelta(days=3))

    assert context.has(Capability.CREATE_CONTENT) is True
    assert context.capability_names == ["create_content", "feature_listing_self_service", "publish_listing"]
    assert context.listings_downgraded is False
    context.require(Capability.PUBLISH_LISTING)


def test_unentitled_provider_listings_are_downgraded() -> None:
    context = _context(AccountRole.PROVIDER, SubscriptionStatus.CANCELED)

    assert context.capability_names == []
    assert context.listings_downgraded is True
    with pytest.raises(FeatureGateError):
        context.require(Capability.PUBLISH_LISTING, error_code="subscription_required")


def test_regular_accounts_are_never_downgraded() -> None:
    context = _context(AccountRole.REGULAR, SubscriptionStatus.NONE)

    assert context.listings_downgraded is False
    assert context.status == SubscriptionStatus.NONE
