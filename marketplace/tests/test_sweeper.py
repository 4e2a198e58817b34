from __future__ import annotations

from datetime import timedelta

from marketplace.app.billing import BillingAuditEventType
from marketplace.app.listings import ListingKind


def _feature(listings, kind, listing_id, expiration):
    return listings.add(kind, listing_id, "owner-1", is_featured=True, feature_expiration=expiration)


def test_sweep_demotes_expired_listing_and_keeps_expiration(sweeper, listings, clock):
    expired_at = clock.now - timedelta(hours=1)
    _feature(listings, ListingKind.PRODUCT, "prod-1", expired_at)

    summary = sweeper.sweep(clock.now)

    listing = listings.get(ListingKind.PRODUCT, "prod-1")
    assert listing.is_featured is False
    assert listing.feature_expiration == expired_at
    assert summary.as_dict() == {"product": 1, "service": 0}


def test_sweep_counts_per_kind_across_batches(sweeper, listings, event_logger, clock):
    for index in range(5):
        _feature(listings, ListingKind.SERVICE, f"svc-{index}", clock.now - timedelta(days=index + 1))
    _feature(listings, ListingKind.PRODUCT, "prod-live", clock.now + timedelta(days=1))

    summary = sweeper.sweep(clock.now)

    assert summary.demoted[ListingKind.SERVICE] == 5
    assert summary.demoted[ListingKind.PRODUCT] == 0
    assert summary.total == 5
    assert listings.get(ListingKind.PRODUCT, "prod-live").is_featured is True
    assert event_logger.types() == [BillingAuditEventType.FEATURES_EXPIRED]


def test_sweep_is_idempotent(sweeper, listings, clock):
    _feature(listings, ListingKind.PRODUCT, "prod-1", clock.now - timedelta(minutes=5))

    first = sweeper.sweep(clock.now)
    state_after_first = dict(listings.listings)
    second = sweeper.sweep(clock.now)

    assert first.total == 1
    assert second.total == 0
    assert listings.listings == state_after_first


def test_grant_committed_during_sweep_survives(sweeper, listings, clock):
    _feature(listings, ListingKind.PRODUCT, "prod-1", clock.now - timedelta(hours=1))
    renewed_until = clock.now + timedelta(days=30)

    def renew_between_select_and_demote():
        listings.grant_feature(ListingKind.PRODUCT, "prod-1", renewed_until)

    listings.before_demote = renew_between_select_and_demote

    summary = sweeper.sweep(clock.now)

    listing = listings.get(ListingKind.PRODUCT, "prod-1")
    assert summary.total == 0
    assert listing.is_featured is True
    assert listing.feature_expiration == renewed_until


def test_listing_expiring_exactly_now_is_kept(sweeper, listings, clock):
    _feature(listings, ListingKind.SERVICE, "svc-1", clock.now)

    assert sweeper.sweep(clock.now).total == 0
    assert listings.get(ListingKind.SERVICE, "svc-1").is_featured is True
