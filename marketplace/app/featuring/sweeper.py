"""Demotes listings whose featured window has lapsed."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from ..billing.interfaces import BillingEventLogger, ListingRepository
from ..billing.models import BillingAuditEvent, BillingAuditEventType
from ..listings.models import ListingKind

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SweepSummary:
    """Demotion counts for one sweep pass."""

    swept_at: datetime
    demoted: Dict[ListingKind, int]

    @property
    def total(self) -> int:
        return sum(self.demoted.values())

    def as_dict(self) -> Dict[str, int]:
        return {kind.value: count for kind, count in self.demoted.items()}


@dataclass
class ExpirationSweeper:
    """Batch demotion of expired featured listings.

    Selection and demotion are separate statements; the demotion re-checks
    ``is_featured AND feature_expiration < now`` so a renewal committed in
    between survives. ``feature_expiration`` is never cleared.
    """

    listings: ListingRepository
    event_logger: BillingEventLogger
    batch_size: int = 500
    clock: Callable[[], datetime] = field(default=_utcnow)

    def sweep(self, now: Optional[datetime] = None) -> SweepSummary:
        swept_at = now or self.clock()
        demoted: Dict[ListingKind, int] = {}
        for kind in ListingKind:
            demoted[kind] = self._sweep_kind(kind, swept_at)

        summary = SweepSummary(swept_at=swept_at, demoted=demoted)
        if summary.total:
            logger.info("Expired featured listings demoted=%s at %s", summary.as_dict(), swept_at.isoformat())
        return summary

    def _sweep_kind(self, kind: ListingKind, now: datetime) -> int:
        count = 0
        while True:
            candidates = self.listings.select_expired(kind, now, limit=self.batch_size)
            if not candidates:
                break
            demoted_ids = self.listings.demote_if_expired(kind, candidates, now)
            count += len(demoted_ids)
            skipped = len(candidates) - len(demoted_ids)
            if skipped:
                logger.debug("Skipped %s %s listings renewed during sweep", skipped, kind.value)
            if len(candidates) < self.batch_size:
                break

        if count:
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.FEATURES_EXPIRED,
                    metadata={"listing_kind": kind.value, "demoted": str(count)},
                    occurred_at=now,
                )
            )
        return count


__all__ = ["ExpirationSweeper", "SweepSummary"]
