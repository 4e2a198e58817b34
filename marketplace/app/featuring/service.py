"""Time-bound featured promotion of individual listings."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional
from uuid import uuid4

from ..billing.adapter import PaymentProcessorAdapter
from ..billing.errors import (
    AlreadyFeatured,
    InvalidTransactionState,
    ListingNotOwned,
    RecordNotFound,
)
from ..billing.interfaces import (
    BillingEventLogger,
    ListingRepository,
    TransactionRepository,
    TransactionScope,
)
from ..billing.models import (
    BillingAuditEvent,
    BillingAuditEventType,
    CheckoutHandle,
    PaymentTransaction,
    TransactionKind,
    TransactionStatus,
)
from ..entitlements.models import AuthenticatedIdentity
from ..listings.models import Listing, ListingKind, is_currently_featured

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GrantOutcome(str, Enum):
    GRANTED = "granted"
    ALREADY_CONFIRMED = "already_confirmed"
    ORPHANED = "orphaned"


@dataclass(frozen=True)
class FeatureGrantResult:
    outcome: GrantOutcome
    transaction: PaymentTransaction
    listing: Optional[Listing] = None


@dataclass
class FeatureGrantManager:
    """Sells, confirms, refunds and overrides featured windows on listings."""

    listings: ListingRepository
    transactions: TransactionRepository
    adapter: PaymentProcessorAdapter
    event_logger: BillingEventLogger
    storage: TransactionScope
    base_price_cents: int = 1000
    base_duration_days: int = 30
    max_duration_days: int = 365
    currency: str = "USD"
    clock: Callable[[], datetime] = field(default=_utcnow)

    def _now(self) -> datetime:
        return self.clock()

    def price_for(self, duration_days: int) -> int:
        """Price proportional to the base price per base duration, rounded half up to the cent."""

        if duration_days < 1 or duration_days > self.max_duration_days:
            raise ValueError(f"duration_days must be between 1 and {self.max_duration_days}")
        numerator = self.base_price_cents * duration_days
        return (2 * numerator + self.base_duration_days) // (2 * self.base_duration_days)

    def _load_listing(self, kind: ListingKind, listing_id: str) -> Listing:
        listing = self.listings.get(kind, listing_id)
        if listing is None:
            raise RecordNotFound(
                f"No {kind.value} listing {listing_id}",
                detail={"listing_kind": kind.value, "listing_id": listing_id},
            )
        return listing

    def initiate_feature_checkout(
        self,
        identity: AuthenticatedIdentity,
        kind: ListingKind,
        listing_id: str,
        duration_days: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> CheckoutHandle:
        duration = duration_days if duration_days is not None else self.base_duration_days
        amount_cents = self.price_for(duration)
        evaluated_at = now or self._now()

        listing = self._load_listing(kind, listing_id)
        if not identity.is_admin and not listing.is_owned_by(identity.account_id):
            raise ListingNotOwned(
                "Only the listing owner can feature this listing",
                detail={"listing_id": listing_id},
            )
        if is_currently_featured(listing, evaluated_at):
            raise AlreadyFeatured(listing_id, listing.feature_expiration)

        handle = self.adapter.create_one_time_checkout(
            identity.account_id,
            listing_id,
            amount_cents,
            duration,
            metadata={"listing_kind": kind.value},
        )
        transaction = self.transactions.create(
            PaymentTransaction(
                transaction_id=f"txn_{uuid4().hex}",
                account_id=identity.account_id,
                listing_id=listing_id,
                listing_kind=kind,
                amount_cents=amount_cents,
                currency=self.currency,
                kind=TransactionKind.LISTING_FEATURE,
                status=TransactionStatus.PENDING,
                external_payment_ref=handle.session_ref,
                metadata={"duration_days": str(duration)},
                expires_at=evaluated_at + timedelta(days=duration),
                created_at=evaluated_at,
                updated_at=evaluated_at,
            )
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.CHECKOUT_STARTED,
                account_id=identity.account_id,
                listing_id=listing_id,
                metadata={
                    "session_ref": handle.session_ref,
                    "amount_cents": str(amount_cents),
                    "duration_days": str(duration),
                },
                occurred_at=evaluated_at,
            )
        )
        logger.info(
            "Started feature checkout %s listing=%s/%s amount=%s",
            transaction.external_payment_ref,
            kind.value,
            listing_id,
            amount_cents,
        )
        return handle

    def confirm_feature_grant(self, payment_ref: str) -> FeatureGrantResult:
        """Complete a paid feature purchase exactly once.

        The transaction flip and the listing update share one storage
        transaction; the window always ends at the transaction's
        ``expires_at``, so replays never extend it twice.
        """

        with self.storage.transaction() as conn:
            existing = self.transactions.get_by_payment_ref(payment_ref, conn=conn)
            if existing is None:
                raise RecordNotFound(f"No payment transaction {payment_ref}", detail={"payment_ref": payment_ref})
            if existing.kind != TransactionKind.LISTING_FEATURE:
                raise InvalidTransactionState(
                    f"Transaction {payment_ref} is not a feature purchase",
                    detail={"kind": existing.kind.value},
                )

            transaction = self.transactions.transition(
                payment_ref,
                from_status=TransactionStatus.PENDING,
                to_status=TransactionStatus.COMPLETED,
                conn=conn,
            )
            if transaction is None:
                current = self.transactions.get_by_payment_ref(payment_ref, conn=conn) or existing
                if current.status in {TransactionStatus.COMPLETED, TransactionStatus.REFUNDED}:
                    logger.info("Feature grant %s already confirmed", payment_ref)
                    return FeatureGrantResult(outcome=GrantOutcome.ALREADY_CONFIRMED, transaction=current)
                raise InvalidTransactionState(
                    f"Transaction {payment_ref} cannot be confirmed from {current.status.value}",
                    detail={"status": current.status.value},
                )

            if transaction.listing_kind is None or transaction.listing_id is None or transaction.expires_at is None:
                raise InvalidTransactionState(
                    f"Transaction {payment_ref} does not describe a listing window",
                    detail={"payment_ref": payment_ref},
                )

            listing = self.listings.grant_feature(
                transaction.listing_kind,
                transaction.listing_id,
                transaction.expires_at,
                conn=conn,
            )

        if listing is None:
            logger.warning(
                "Orphaned feature grant %s: listing %s/%s no longer exists",
                payment_ref,
                transaction.listing_kind.value,
                transaction.listing_id,
            )
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.ORPHANED_GRANT,
                    account_id=transaction.account_id,
                    listing_id=transaction.listing_id,
                    metadata={"payment_ref": payment_ref},
                )
            )
            return FeatureGrantResult(outcome=GrantOutcome.ORPHANED, transaction=transaction)

        logger.info(
            "Featured listing %s/%s until %s",
            transaction.listing_kind.value,
            transaction.listing_id,
            transaction.expires_at.isoformat(),
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.FEATURE_GRANTED,
                account_id=transaction.account_id,
                listing_id=transaction.listing_id,
                metadata={"payment_ref": payment_ref, "expires_at": transaction.expires_at.isoformat()},
            )
        )
        return FeatureGrantResult(outcome=GrantOutcome.GRANTED, transaction=transaction, listing=listing)

    def mark_checkout_failed(self, payment_ref: str) -> Optional[PaymentTransaction]:
        """Fail a pending checkout the processor reported as expired or unpaid."""

        transaction = self.transactions.transition(
            payment_ref,
            from_status=TransactionStatus.PENDING,
            to_status=TransactionStatus.FAILED,
        )
        if transaction is None:
            logger.info("Checkout %s was not pending; nothing to fail", payment_ref)
            return None
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.CHECKOUT_FAILED,
                account_id=transaction.account_id,
                listing_id=transaction.listing_id,
                metadata={"payment_ref": payment_ref, "kind": transaction.kind.value},
            )
        )
        return transaction

    def refund_feature_grant(self, payment_ref: str) -> PaymentTransaction:
        """Record a refund and withdraw the window it bought, unless superseded."""

        with self.storage.transaction() as conn:
            existing = self.transactions.get_by_payment_ref(payment_ref, conn=conn)
            if existing is None:
                raise RecordNotFound(f"No payment transaction {payment_ref}", detail={"payment_ref": payment_ref})
            if existing.kind != TransactionKind.LISTING_FEATURE:
                raise InvalidTransactionState(
                    f"Transaction {payment_ref} is not a feature purchase",
                    detail={"kind": existing.kind.value},
                )
            refunded = self.transactions.transition(
                payment_ref,
                from_status=TransactionStatus.COMPLETED,
                to_status=TransactionStatus.REFUNDED,
                conn=conn,
            )
            if refunded is None:
                raise InvalidTransactionState(
                    f"Transaction {payment_ref} cannot be refunded from {existing.status.value}",
                    detail={"status": existing.status.value},
                )
            demoted = False
            if refunded.listing_kind and refunded.listing_id and refunded.expires_at:
                demoted = self.listings.revoke_feature_window(
                    refunded.listing_kind,
                    refunded.listing_id,
                    refunded.expires_at,
                    conn=conn,
                )

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.FEATURE_REFUNDED,
                account_id=refunded.account_id,
                listing_id=refunded.listing_id,
                metadata={"payment_ref": payment_ref, "demoted": str(demoted).lower()},
            )
        )
        return refunded

    def force_set_feature(
        self,
        kind: ListingKind,
        listing_id: str,
        is_featured: bool,
        expiration: Optional[datetime] = None,
        *,
        actor_id: Optional[str] = None,
    ) -> Listing:
        """Administrative override; no payment transaction is recorded."""

        now = self._now()
        if is_featured:
            expiration = expiration or now + timedelta(days=self.base_duration_days)
            if expiration <= now:
                raise ValueError("feature expiration must be in the future")

        listing = self.listings.force_feature(kind, listing_id, is_featured=is_featured, expiration=expiration)
        if listing is None:
            raise RecordNotFound(
                f"No {kind.value} listing {listing_id}",
                detail={"listing_kind": kind.value, "listing_id": listing_id},
            )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.FEATURE_OVERRIDDEN,
                account_id=actor_id,
                listing_id=listing_id,
                metadata={
                    "is_featured": str(is_featured).lower(),
                    "feature_expiration": listing.feature_expiration.isoformat() if listing.feature_expiration else "",
                },
            )
        )
        return listing


__all__ = ["FeatureGrantManager", "FeatureGrantResult", "GrantOutcome"]
