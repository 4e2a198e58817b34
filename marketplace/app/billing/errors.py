"""Error taxonomy for the billing and entitlement engine."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Sequence

from fastapi import HTTPException, status


class EngineError(Exception):
    """Base class for failures surfaced by the engine to its callers."""

    code = "engine_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail or {})

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        base_detail.update(self.detail)
        return base_detail

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class RoleNotEligible(EngineError):
    code = "role_not_eligible"
    status_code = status.HTTP_403_FORBIDDEN


class UnknownPlan(EngineError):
    code = "unknown_plan"
    status_code = status.HTTP_400_BAD_REQUEST


class SubscriptionAlreadyActive(EngineError):
    code = "subscription_already_active"
    status_code = status.HTTP_409_CONFLICT


class SubscriptionCanceled(EngineError):
    code = "subscription_canceled"
    status_code = status.HTTP_409_CONFLICT


class ProcessorUnavailable(EngineError):
    """The payment processor could not be reached; the caller may retry."""

    code = "processor_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class ProcessorRejected(EngineError):
    """The payment processor refused the request; retrying will not help."""

    code = "processor_rejected"
    status_code = status.HTTP_502_BAD_GATEWAY


class WebhookSignatureInvalid(EngineError):
    code = "webhook_signature_invalid"
    status_code = status.HTTP_400_BAD_REQUEST


class AlreadyFeatured(EngineError):
    code = "already_featured"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, listing_id: str, feature_expiration: Optional[datetime]) -> None:
        super().__init__(
            "Listing is already featured",
            detail={
                "listing_id": listing_id,
                "feature_expiration": feature_expiration.isoformat() if feature_expiration else None,
            },
        )
        self.feature_expiration = feature_expiration


class ListingNotOwned(EngineError):
    code = "listing_not_owned"
    status_code = status.HTTP_403_FORBIDDEN


class RecordNotFound(EngineError):
    code = "record_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class InvalidTransactionState(EngineError):
    code = "invalid_transaction_state"
    status_code = status.HTTP_409_CONFLICT


class StaleEvent(EngineError):
    """A processor event older than the stored period; dropped, never surfaced."""

    code = "stale_event"
    status_code = status.HTTP_409_CONFLICT

    def __init__(
        self,
        subscription_ref: str,
        *,
        stored_period_end: Optional[datetime],
        event_period_end: Optional[datetime],
    ) -> None:
        super().__init__(
            f"Stale event for subscription {subscription_ref}",
            detail={
                "subscription_ref": subscription_ref,
                "stored_period_end": stored_period_end.isoformat() if stored_period_end else None,
                "event_period_end": event_period_end.isoformat() if event_period_end else None,
            },
        )
        self.subscription_ref = subscription_ref


class DriftDetected(EngineError):
    """Local state diverged from the processor; reported by reconciliation only."""

    code = "drift_detected"
    status_code = status.HTTP_200_OK

    def __init__(self, account_id: str, fields: Sequence[str], *, subscription_vanished: bool = False) -> None:
        super().__init__(
            f"Entitlement drift for account {account_id}",
            detail={
                "account_id": account_id,
                "fields": list(fields),
                "subscription_vanished": subscription_vanished,
            },
        )
        self.account_id = account_id
        self.fields = tuple(fields)
        self.subscription_vanished = subscription_vanished


__all__ = [
    "AlreadyFeatured",
    "DriftDetected",
    "EngineError",
    "InvalidTransactionState",
    "ListingNotOwned",
    "ProcessorRejected",
    "ProcessorUnavailable",
    "RecordNotFound",
    "RoleNotEligible",
    "StaleEvent",
    "SubscriptionAlreadyActive",
    "SubscriptionCanceled",
    "UnknownPlan",
    "WebhookSignatureInvalid",
]
