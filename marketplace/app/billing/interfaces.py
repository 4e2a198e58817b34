"""Persistence and collaborator protocols required by the engine services."""
from __future__ import annotations

from datetime import datetime
from typing import Any, ContextManager, List, Optional, Protocol, Sequence, Tuple

from ..entitlements.models import AccountEntitlementRecord, AccountRole, SubscriptionStatus
from ..listings.models import Listing, ListingKind, ListingStatus
from .models import (
    ApplyOutcome,
    BillingAuditEvent,
    NormalizedSubscriptionState,
    PaymentTransaction,
    ProcessorWebhookEvent,
    TransactionStatus,
)


class TransactionScope(Protocol):
    """Opens a storage transaction spanning several repository calls."""

    def transaction(self) -> ContextManager[Any]:
        ...


class AccountRepository(Protocol):
    """Persistence operations for account entitlement records."""

    def get(self, account_id: str) -> Optional[AccountEntitlementRecord]:
        ...

    def get_by_customer_ref(self, customer_ref: str) -> Optional[AccountEntitlementRecord]:
        ...

    def get_by_subscription_ref(self, subscription_ref: str) -> Optional[AccountEntitlementRecord]:
        ...

    def create_if_missing(self, account_id: str, role: AccountRole) -> AccountEntitlementRecord:
        ...

    def set_customer_ref(self, account_id: str, customer_ref: str) -> AccountEntitlementRecord:
        """Store the customer ref only if none is stored yet; return the stored record."""

    def apply_subscription_state(
        self, state: NormalizedSubscriptionState
    ) -> Tuple[ApplyOutcome, Optional[AccountEntitlementRecord]]:
        """Conditionally overwrite the record matching the state's subscription ref.

        Returns ``APPLIED`` with the updated record, ``DUPLICATE`` with the
        unchanged record for an exact replay, ``UNKNOWN_SUBSCRIPTION`` with
        ``None`` when no record carries the ref, and raises ``StaleEvent`` when
        the stored period end is later than the state's.
        """

    def attach_subscription(
        self, account_id: str, state: NormalizedSubscriptionState
    ) -> AccountEntitlementRecord:
        ...

    def overwrite_subscription_state(
        self, account_id: str, state: NormalizedSubscriptionState
    ) -> AccountEntitlementRecord:
        ...

    def mark_canceled(self, account_id: str, *, canceled_at: datetime) -> AccountEntitlementRecord:
        ...

    def set_cancel_at_period_end(self, account_id: str, cancel_at_period_end: bool) -> AccountEntitlementRecord:
        ...

    def clear_subscription(self, account_id: str) -> AccountEntitlementRecord:
        ...

    def list_history(self, account_id: str, *, limit: int = 20) -> Sequence[AccountEntitlementRecord]:
        ...

    def has_archived_subscription(self, account_id: str, subscription_ref: str) -> bool:
        """Whether ``subscription_ref`` is an ended lineage in the account's history."""

    def list_records(
        self,
        *,
        status: Optional[SubscriptionStatus] = None,
        updated_since: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Sequence[AccountEntitlementRecord]:
        """Records ordered by most recent update first."""


class TransactionRepository(Protocol):
    """Append-only ledger of payment transactions."""

    def create(self, transaction: PaymentTransaction) -> PaymentTransaction:
        ...

    def get_by_payment_ref(self, payment_ref: str, *, conn: Any = None) -> Optional[PaymentTransaction]:
        ...

    def transition(
        self,
        payment_ref: str,
        *,
        from_status: TransactionStatus,
        to_status: TransactionStatus,
        conn: Any = None,
    ) -> Optional[PaymentTransaction]:
        """Atomically move a transaction between statuses; ``None`` if it was not in ``from_status``."""


class ListingRepository(Protocol):
    """Persistence operations over the featured state of listings."""

    def get(self, kind: ListingKind, listing_id: str, *, conn: Any = None) -> Optional[Listing]:
        ...

    def grant_feature(
        self, kind: ListingKind, listing_id: str, expiration: datetime, *, conn: Any = None
    ) -> Optional[Listing]:
        ...

    def force_feature(
        self,
        kind: ListingKind,
        listing_id: str,
        *,
        is_featured: bool,
        expiration: Optional[datetime],
    ) -> Optional[Listing]:
        ...

    def revoke_feature_window(
        self, kind: ListingKind, listing_id: str, expiration: datetime, *, conn: Any = None
    ) -> bool:
        """Demote only if the listing is still featured with exactly ``expiration``."""

    def select_expired(self, kind: ListingKind, now: datetime, *, limit: int) -> List[str]:
        ...

    def demote_if_expired(self, kind: ListingKind, listing_ids: Sequence[str], now: datetime) -> List[str]:
        """Demote listings still expired as of ``now`` at write time; return those demoted."""

    def set_status(self, kind: ListingKind, listing_id: str, status: ListingStatus) -> Optional[Listing]:
        ...


class WebhookEventRepository(Protocol):
    """Delivery log for processor webhooks."""

    def record_webhook_event(self, event: ProcessorWebhookEvent) -> bool:
        ...

    def forget_webhook_event(self, event_id: str) -> None:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...
