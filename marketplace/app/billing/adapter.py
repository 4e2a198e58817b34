"""Payment processor contract and translation of processor payloads."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Protocol

from ..entitlements.models import AccountEntitlementRecord, SubscriptionStatus
from .models import CheckoutCompletion, CheckoutHandle, NormalizedSubscriptionState, ProcessorWebhookEvent

logger = logging.getLogger(__name__)


class PaymentProcessorAdapter(Protocol):
    """External payment processor integration.

    Every method either completes or raises ``ProcessorUnavailable`` /
    ``ProcessorRejected``; none of them touches local storage.
    """

    def create_customer(self, account: AccountEntitlementRecord, *, email: Optional[str] = None) -> str:
        """Create a processor customer and return its reference."""

    def create_subscription_checkout(
        self,
        customer_ref: str,
        plan_id: str,
        *,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutHandle:
        """Create a hosted checkout for a recurring plan."""

    def create_one_time_checkout(
        self,
        account_id: str,
        listing_id: str,
        amount_cents: int,
        duration_days: int,
        *,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutHandle:
        """Create a hosted checkout for a single feature purchase."""

    def cancel_subscription(self, subscription_ref: str, *, at_period_end: bool) -> None:
        ...

    def set_auto_renew(self, subscription_ref: str, enabled: bool) -> None:
        ...

    def fetch_subscription(self, ref: str) -> Optional[NormalizedSubscriptionState]:
        """Return the authoritative state for a subscription or customer ref, or ``None``."""

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> ProcessorWebhookEvent:
        """Verify a raw webhook delivery and return it as an event."""


_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE_EXPIRED,
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.UNPAID,
    # A paused subscription resumes once paid, like a past-due one.
    "paused": SubscriptionStatus.PAST_DUE,
}


def map_processor_status(raw_status: object) -> SubscriptionStatus:
    status = _STATUS_MAP.get(str(raw_status or "").lower())
    if status is None:
        logger.warning("Unrecognized processor subscription status %r; treating as unpaid", raw_status)
        return SubscriptionStatus.UNPAID
    return status


def _field(payload: Any, key: str) -> Any:
    if isinstance(payload, Mapping):
        return payload.get(key)
    return getattr(payload, key, None)


def _ref(value: Any) -> Optional[str]:
    """Expanded objects carry their id; plain references are strings."""

    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    identifier = _field(value, "id")
    return str(identifier) if identifier else None


def parse_timestamp(value: object) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        if value.isdigit():
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError(f"Unsupported timestamp value {value!r}")


def safe_metadata(value: object) -> Dict[str, str]:
    if isinstance(value, Mapping):
        return {str(k): str(v) for k, v in value.items() if v is not None}
    return {}


def _first_item(subscription: Any) -> Any:
    items = _field(subscription, "items")
    data = _field(items, "data") if items is not None else None
    if data:
        return data[0]
    return None


def normalize_subscription(
    subscription: Any,
    *,
    plan_by_price: Optional[Mapping[str, str]] = None,
) -> NormalizedSubscriptionState:
    """Translate a processor subscription object into engine vocabulary.

    Period boundaries are read from the subscription itself and, for newer
    API versions that moved them, from its first item.
    """

    subscription_ref = _ref(_field(subscription, "id"))
    if not subscription_ref:
        raise ValueError("subscription payload is missing its id")

    item = _first_item(subscription)
    period_start = _field(subscription, "current_period_start")
    period_end = _field(subscription, "current_period_end")
    if period_end is None and item is not None:
        period_start = _field(item, "current_period_start")
        period_end = _field(item, "current_period_end")

    metadata = safe_metadata(_field(subscription, "metadata"))
    plan_id = metadata.get("plan_id")
    if plan_id is None and item is not None and plan_by_price:
        price_ref = _ref(_field(item, "price"))
        plan_id = plan_by_price.get(price_ref or "")

    return NormalizedSubscriptionState(
        external_subscription_ref=subscription_ref,
        external_customer_ref=_ref(_field(subscription, "customer")),
        status=map_processor_status(_field(subscription, "status")),
        current_period_start=parse_timestamp(period_start),
        current_period_end=parse_timestamp(period_end),
        cancel_at_period_end=bool(_field(subscription, "cancel_at_period_end")),
        canceled_at=parse_timestamp(_field(subscription, "canceled_at")),
        plan_id=plan_id,
    )


def normalize_checkout_session(session: Any) -> CheckoutCompletion:
    session_ref = _ref(_field(session, "id"))
    if not session_ref:
        raise ValueError("checkout session payload is missing its id")
    amount_total = _field(session, "amount_total")
    return CheckoutCompletion(
        session_ref=session_ref,
        mode=str(_field(session, "mode") or "payment"),
        payment_status=_field(session, "payment_status"),
        customer_ref=_ref(_field(session, "customer")),
        subscription_ref=_ref(_field(session, "subscription")),
        payment_intent_ref=_ref(_field(session, "payment_intent")),
        amount_total=int(amount_total) if amount_total is not None else None,
        metadata=safe_metadata(_field(session, "metadata")),
    )


def invoice_subscription_ref(invoice: Any) -> Optional[str]:
    subscription_ref = _ref(_field(invoice, "subscription"))
    if subscription_ref:
        return subscription_ref
    parent = _field(invoice, "parent")
    details = _field(parent, "subscription_details") if parent is not None else None
    return _ref(_field(details, "subscription")) if details is not None else None


__all__ = [
    "PaymentProcessorAdapter",
    "invoice_subscription_ref",
    "map_processor_status",
    "normalize_checkout_session",
    "normalize_subscription",
    "parse_timestamp",
    "safe_metadata",
]
