"""Billing domain: processor adapter, subscription lifecycle and reconciliation."""

from .adapter import PaymentProcessorAdapter, normalize_checkout_session, normalize_subscription
from .errors import (
    AlreadyFeatured,
    DriftDetected,
    EngineError,
    InvalidTransactionState,
    ListingNotOwned,
    ProcessorRejected,
    ProcessorUnavailable,
    RecordNotFound,
    RoleNotEligible,
    StaleEvent,
    SubscriptionAlreadyActive,
    SubscriptionCanceled,
    UnknownPlan,
    WebhookSignatureInvalid,
)
from .interfaces import (
    AccountRepository,
    BillingEventLogger,
    ListingRepository,
    TransactionRepository,
    TransactionScope,
    WebhookEventRepository,
)
from .models import (
    ApplyOutcome,
    BillingAuditEvent,
    BillingAuditEventType,
    CheckoutCompletion,
    CheckoutHandle,
    NormalizedSubscriptionState,
    PaymentTransaction,
    ProcessorWebhookEvent,
    TransactionKind,
    TransactionStatus,
)
from .reconciliation import ReconciliationResult, ReconciliationService
from .subscriptions import SubscriptionLifecycleManager

__all__ = [
    "AccountRepository",
    "AlreadyFeatured",
    "ApplyOutcome",
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingEventLogger",
    "CheckoutCompletion",
    "CheckoutHandle",
    "DriftDetected",
    "EngineError",
    "InvalidTransactionState",
    "ListingNotOwned",
    "ListingRepository",
    "NormalizedSubscriptionState",
    "PaymentProcessorAdapter",
    "PaymentTransaction",
    "ProcessorRejected",
    "ProcessorUnavailable",
    "ProcessorWebhookEvent",
    "ReconciliationResult",
    "ReconciliationService",
    "RecordNotFound",
    "RoleNotEligible",
    "StaleEvent",
    "SubscriptionAlreadyActive",
    "SubscriptionCanceled",
    "SubscriptionLifecycleManager",
    "TransactionKind",
    "TransactionRepository",
    "TransactionScope",
    "TransactionStatus",
    "UnknownPlan",
    "WebhookEventRepository",
    "WebhookSignatureInvalid",
    "normalize_checkout_session",
    "normalize_subscription",
]
