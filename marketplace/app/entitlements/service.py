"""Service answering "what may this identity do right now"."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import TYPE_CHECKING, Callable, Dict, Optional

from ..billing.errors import ProcessorRejected, ProcessorUnavailable
from ..feature_gates.enforcement import require_capability
from .models import AccountEntitlementRecord, AuthenticatedIdentity, Capability, EntitlementSnapshot
from .resolver import looks_stale, resolve

if TYPE_CHECKING:  # pragma: no cover
    from ..billing.interfaces import AccountRepository
    from ..billing.reconciliation import ReconciliationService

logger = logging.getLogger(__name__)


class EntitlementService:
    """Loads entitlement records and resolves capabilities for gated writes.

    A record that still claims an entitled status after its period ended
    usually means a renewal event has not arrived yet. In that case the
    service asks the reconciliation service for the processor's view once
    per cooldown window and resolves against the refreshed record.
    """

    def __init__(
        self,
        accounts: "AccountRepository",
        *,
        reconciler: Optional["ReconciliationService"] = None,
        reconcile_cooldown_seconds: int = 300,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._accounts = accounts
        self._reconciler = reconciler
        self._cooldown = timedelta(seconds=max(0, reconcile_cooldown_seconds))
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._last_reconcile: Dict[str, datetime] = {}
        self._lock = Lock()

    def _claim_reconcile_slot(self, account_id: str, now: datetime) -> bool:
        with self._lock:
            expired = [key for key, at in self._last_reconcile.items() if now - at >= self._cooldown]
            for key in expired:
                del self._last_reconcile[key]
            last = self._last_reconcile.get(account_id)
            if last is not None and now - last < self._cooldown:
                return False
            self._last_reconcile[account_id] = now
            return True

    def _refresh(self, record: AccountEntitlementRecord) -> Optional[AccountEntitlementRecord]:
        try:
            result = self._reconciler.reconcile(record.account_id)
        except (ProcessorUnavailable, ProcessorRejected) as exc:
            logger.warning(
                "Could not reconcile stale entitlement for account %s: %s",
                record.account_id,
                exc.message,
            )
            return None
        return result.current

    def check(self, identity: AuthenticatedIdentity, now: Optional[datetime] = None) -> EntitlementSnapshot:
        evaluated_at = now or self._clock()
        stored = self._accounts.get(identity.account_id)
        record = stored or AccountEntitlementRecord.new(identity.account_id, identity.role)

        reconciled = False
        if (
            stored is not None
            and self._reconciler is not None
            and identity.role.requires_subscription
            and looks_stale(stored, evaluated_at)
            and self._claim_reconcile_slot(identity.account_id, evaluated_at)
        ):
            refreshed = self._refresh(stored)
            if refreshed is not None:
                record = refreshed
                reconciled = True

        return EntitlementSnapshot(
            identity=identity,
            record=record,
            capabilities=resolve(identity.role, record, evaluated_at),
            evaluated_at=evaluated_at,
            reconciled=reconciled,
        )

    def require(
        self,
        identity: AuthenticatedIdentity,
        capability: Capability,
        now: Optional[datetime] = None,
    ) -> EntitlementSnapshot:
        """Resolve and raise ``FeatureGateError`` unless ``capability`` is granted."""

        snapshot = self.check(identity, now)
        require_capability(snapshot.capabilities, capability)
        return snapshot


__all__ = ["EntitlementService"]
