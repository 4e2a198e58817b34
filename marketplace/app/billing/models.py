"""Domain models for the billing side of the engine."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..entitlements.models import SubscriptionStatus
from ..listings.models import ListingKind


class TransactionKind(str, Enum):
    """What a payment transaction purchased."""

    SUBSCRIPTION = "subscription"
    LISTING_FEATURE = "listing_feature"


class TransactionStatus(str, Enum):
    """Ledger status for a payment transaction."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class ApplyOutcome(str, Enum):
    """Result of applying a normalized processor event to local state."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    UNKNOWN_SUBSCRIPTION = "unknown_subscription"


class PaymentTransaction(BaseModel):
    """Append-only ledger entry for a checkout initiated through the processor."""

    transaction_id: str
    account_id: str
    listing_id: Optional[str] = None
    listing_kind: Optional[ListingKind] = None
    amount_cents: int = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    kind: TransactionKind
    status: TransactionStatus = TransactionStatus.PENDING
    external_payment_ref: str
    metadata: Dict[str, str] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def is_terminal(self) -> bool:
        return self.status != TransactionStatus.PENDING


class NormalizedSubscriptionState(BaseModel):
    """Processor subscription translated into the engine's vocabulary."""

    external_subscription_ref: str
    external_customer_ref: Optional[str] = None
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    plan_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def idempotency_key(self) -> Tuple[str, Optional[datetime], SubscriptionStatus]:
        return (self.external_subscription_ref, self.current_period_end, self.status)


class CheckoutHandle(BaseModel):
    """Opaque redirect handle returned when a checkout is initiated."""

    redirect_url: str
    session_ref: str
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutCompletion(BaseModel):
    """A checkout session reported as finished by the processor."""

    session_ref: str
    mode: str
    payment_status: Optional[str] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    payment_intent_ref: Optional[str] = None
    amount_total: Optional[int] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def purchase_kind(self) -> Optional[TransactionKind]:
        raw_kind = self.metadata.get("kind")
        if raw_kind:
            try:
                return TransactionKind(raw_kind)
            except ValueError:
                return None
        if self.mode == "subscription":
            return TransactionKind.SUBSCRIPTION
        return None


class ProcessorWebhookEvent(BaseModel):
    """Verified webhook delivery stored for idempotency tracking."""

    event_id: str
    event_type: str
    data: Dict[str, Any]
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the engine."""

    CHECKOUT_STARTED = "checkout_started"
    CHECKOUT_FAILED = "checkout_failed"
    SUBSCRIPTION_ATTACHED = "subscription_attached"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    AUTO_RENEW_CHANGED = "auto_renew_changed"
    FEATURE_GRANTED = "feature_granted"
    FEATURE_OVERRIDDEN = "feature_overridden"
    FEATURE_REFUNDED = "feature_refunded"
    ORPHANED_GRANT = "orphaned_grant"
    FEATURES_EXPIRED = "features_expired"
    DRIFT_CORRECTED = "drift_corrected"


class BillingAuditEvent(BaseModel):
    """Structured audit event for analytics and operations."""

    event_type: BillingAuditEventType
    account_id: Optional[str] = None
    subscription_ref: Optional[str] = None
    listing_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)
