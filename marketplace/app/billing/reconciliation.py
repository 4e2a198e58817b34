"""Re-synchronises local entitlement records from the processor's view."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from ..entitlements.models import TERMINAL_STATUSES, AccountEntitlementRecord
from .adapter import PaymentProcessorAdapter
from .errors import DriftDetected, RecordNotFound
from .interfaces import AccountRepository, BillingEventLogger
from .models import BillingAuditEvent, BillingAuditEventType, NormalizedSubscriptionState

logger = logging.getLogger(__name__)

_COMPARED_FIELDS = (
    "status",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "canceled_at",
)


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of one reconciliation pass for an account."""

    account_id: str
    corrected: bool
    previous: AccountEntitlementRecord
    current: AccountEntitlementRecord
    drift: Optional[DriftDetected] = None


def _drifted_fields(record: AccountEntitlementRecord, remote: NormalizedSubscriptionState) -> List[str]:
    return [name for name in _COMPARED_FIELDS if getattr(record, name) != getattr(remote, name)]


@dataclass
class ReconciliationService:
    """Treats the processor as authoritative and overwrites drifted records.

    Unlike event application this path is not monotonic: whatever the
    processor reports now replaces the stored fields.
    """

    accounts: AccountRepository
    adapter: PaymentProcessorAdapter
    event_logger: BillingEventLogger

    def _fetch_authoritative(self, record: AccountEntitlementRecord) -> Optional[NormalizedSubscriptionState]:
        remote: Optional[NormalizedSubscriptionState] = None
        if record.external_subscription_ref:
            remote = self.adapter.fetch_subscription(record.external_subscription_ref)
        if record.external_customer_ref and (remote is None or remote.status in TERMINAL_STATUSES):
            latest = self.adapter.fetch_subscription(record.external_customer_ref)
            if latest is not None and (remote is None or latest.status not in TERMINAL_STATUSES):
                remote = latest
        return remote

    def reconcile(self, account_id: str) -> ReconciliationResult:
        record = self.accounts.get(account_id)
        if record is None:
            raise RecordNotFound(f"No entitlement record for account {account_id}")

        if not record.external_subscription_ref and not record.external_customer_ref:
            return ReconciliationResult(account_id=account_id, corrected=False, previous=record, current=record)

        remote = self._fetch_authoritative(record)

        if remote is None:
            if not record.claims_live_subscription:
                return ReconciliationResult(account_id=account_id, corrected=False, previous=record, current=record)
            current = self.accounts.clear_subscription(account_id)
            drift = DriftDetected(account_id, ["status", "external_subscription_ref"], subscription_vanished=True)
            return self._corrected(record, current, drift)

        if remote.external_subscription_ref != record.external_subscription_ref:
            if remote.status in TERMINAL_STATUSES and not record.claims_live_subscription:
                return ReconciliationResult(account_id=account_id, corrected=False, previous=record, current=record)
            current = self.accounts.attach_subscription(account_id, remote)
            fields = ["external_subscription_ref", *_drifted_fields(record, remote)]
            return self._corrected(record, current, DriftDetected(account_id, fields))

        fields = _drifted_fields(record, remote)
        if not fields:
            return ReconciliationResult(account_id=account_id, corrected=False, previous=record, current=record)
        current = self.accounts.overwrite_subscription_state(account_id, remote)
        return self._corrected(record, current, DriftDetected(account_id, fields))

    def _corrected(
        self,
        previous: AccountEntitlementRecord,
        current: AccountEntitlementRecord,
        drift: DriftDetected,
    ) -> ReconciliationResult:
        logger.warning(
            "Corrected entitlement drift for account %s fields=%s vanished=%s",
            previous.account_id,
            ",".join(drift.fields),
            drift.subscription_vanished,
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.DRIFT_CORRECTED,
                account_id=previous.account_id,
                subscription_ref=current.external_subscription_ref or previous.external_subscription_ref,
                metadata={
                    "fields": ",".join(drift.fields),
                    "previous_status": previous.status.value,
                    "status": current.status.value,
                },
            )
        )
        return ReconciliationResult(
            account_id=previous.account_id,
            corrected=True,
            previous=previous,
            current=current,
            drift=drift,
        )


__all__ = ["ReconciliationResult", "ReconciliationService"]
