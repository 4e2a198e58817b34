"""Pure capability resolution for gated actions."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from .models import (
    FULL_CAPABILITIES,
    NO_CAPABILITIES,
    AccountEntitlementRecord,
    ENTITLED_STATUSES,
    AccountRole,
    CapabilitySet,
)


def resolve(
    role: AccountRole,
    record: Optional[AccountEntitlementRecord],
    now: datetime,
) -> CapabilitySet:
    """Map a role and its entitlement record to the allowed capabilities.

    Roles outside the subscription tiers are never gated. Provider and seller
    accounts receive the full set only while the stored status is entitled
    and the current period has not ended as of ``now``. The function reads no
    clock and no cached flags; callers pass the instant they evaluate at.
    """

    if not role.requires_subscription:
        return FULL_CAPABILITIES
    if record is None:
        return NO_CAPABILITIES
    if record.is_entitled(now):
        return FULL_CAPABILITIES
    return NO_CAPABILITIES


def looks_stale(record: Optional[AccountEntitlementRecord], now: datetime, *, tolerance_seconds: int = 0) -> bool:
    """Return whether the record claims entitlement past its period end.

    Such a record usually means a renewal event was missed; the status is
    not downgraded here, the caller decides whether to reconcile.
    """

    if record is None or record.current_period_end is None:
        return False
    if record.status not in ENTITLED_STATUSES:
        return False
    return (now - record.current_period_end).total_seconds() >= tolerance_seconds
