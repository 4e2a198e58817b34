"""Stripe implementation of the payment processor adapter."""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Dict, Iterator, Mapping, Optional

import stripe

from ..entitlements.models import AccountEntitlementRecord
from .adapter import normalize_subscription, parse_timestamp
from .errors import ProcessorRejected, ProcessorUnavailable, WebhookSignatureInvalid
from .models import CheckoutHandle, NormalizedSubscriptionState, ProcessorWebhookEvent, TransactionKind

logger = logging.getLogger(__name__)


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
        logger.warning("Stripe unavailable during %s: %s", operation, exc)
        raise ProcessorUnavailable(
            f"Payment processor unavailable during {operation}",
            detail={"operation": operation},
        ) from exc
    except stripe.StripeError as exc:
        logger.error("Stripe rejected %s: %s", operation, exc)
        raise ProcessorRejected(
            f"Payment processor rejected {operation}",
            detail={"operation": operation, "processor_code": getattr(exc, "code", None)},
        ) from exc


class StripePaymentAdapter:
    """Talks to Stripe through an explicitly configured client.

    No module-level API key is set; every call goes through the client so
    several adapters with different keys can coexist in one process.
    """

    def __init__(
        self,
        *,
        secret_key: str,
        webhook_secret: Optional[str],
        plan_price_refs: Mapping[str, str],
        app_base_url: str,
        currency: str = "USD",
        timeout_seconds: float = 10.0,
        client: Optional[stripe.StripeClient] = None,
    ) -> None:
        self._client = client or stripe.StripeClient(
            secret_key,
            http_client=stripe.RequestsClient(timeout=timeout_seconds),
            max_network_retries=0,
        )
        self._webhook_secret = webhook_secret
        self._plan_price_refs = dict(plan_price_refs)
        self._plan_by_price = {price: plan for plan, price in self._plan_price_refs.items()}
        self._app_base_url = app_base_url.rstrip("/")
        self._currency = currency.lower()

    def create_customer(self, account: AccountEntitlementRecord, *, email: Optional[str] = None) -> str:
        params: Dict[str, object] = {"metadata": {"account_id": account.account_id, "role": account.role.value}}
        if email:
            params["email"] = email
        with _translate_errors("create_customer"):
            customer = self._client.customers.create(params=params)
        logger.info("Created Stripe customer %s for account %s", customer.id, account.account_id)
        return customer.id

    def create_subscription_checkout(
        self,
        customer_ref: str,
        plan_id: str,
        *,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutHandle:
        price_ref = self._plan_price_refs.get(plan_id)
        if not price_ref:
            raise ProcessorRejected(
                f"No processor price configured for plan {plan_id}",
                detail={"plan_id": plan_id},
            )
        session_metadata = {"kind": TransactionKind.SUBSCRIPTION.value, "plan_id": plan_id, **(metadata or {})}
        with _translate_errors("create_subscription_checkout"):
            session = self._client.checkout.sessions.create(
                params={
                    "customer": customer_ref,
                    "mode": "subscription",
                    "line_items": [{"price": price_ref, "quantity": 1}],
                    "metadata": session_metadata,
                    "subscription_data": {"metadata": {"plan_id": plan_id, **(metadata or {})}},
                    "success_url": f"{self._app_base_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
                    "cancel_url": f"{self._app_base_url}/subscription/cancel",
                }
            )
        return CheckoutHandle(
            redirect_url=session.url or "",
            session_ref=session.id,
            expires_at=parse_timestamp(getattr(session, "expires_at", None)),
        )

    def create_one_time_checkout(
        self,
        account_id: str,
        listing_id: str,
        amount_cents: int,
        duration_days: int,
        *,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutHandle:
        session_metadata = {
            "kind": TransactionKind.LISTING_FEATURE.value,
            "account_id": account_id,
            "listing_id": listing_id,
            "duration_days": str(duration_days),
            **(metadata or {}),
        }
        with _translate_errors("create_one_time_checkout"):
            session = self._client.checkout.sessions.create(
                params={
                    "mode": "payment",
                    "client_reference_id": account_id,
                    "line_items": [
                        {
                            "price_data": {
                                "currency": self._currency,
                                "unit_amount": amount_cents,
                                "product_data": {
                                    "name": f"Featured listing - {duration_days} days",
                                },
                            },
                            "quantity": 1,
                        }
                    ],
                    "metadata": session_metadata,
                    "success_url": f"{self._app_base_url}/feature/success?session_id={{CHECKOUT_SESSION_ID}}",
                    "cancel_url": f"{self._app_base_url}/feature/cancel?listing_id={listing_id}",
                }
            )
        return CheckoutHandle(
            redirect_url=session.url or "",
            session_ref=session.id,
            expires_at=parse_timestamp(getattr(session, "expires_at", None)),
        )

    def cancel_subscription(self, subscription_ref: str, *, at_period_end: bool) -> None:
        with _translate_errors("cancel_subscription"):
            if at_period_end:
                self._client.subscriptions.update(subscription_ref, params={"cancel_at_period_end": True})
            else:
                self._client.subscriptions.cancel(subscription_ref)

    def set_auto_renew(self, subscription_ref: str, enabled: bool) -> None:
        with _translate_errors("set_auto_renew"):
            self._client.subscriptions.update(
                subscription_ref, params={"cancel_at_period_end": not enabled}
            )

    def fetch_subscription(self, ref: str) -> Optional[NormalizedSubscriptionState]:
        """Look up by subscription ref, or the newest subscription of a ``cus_`` customer ref."""

        with _translate_errors("fetch_subscription"):
            try:
                if ref.startswith("cus_"):
                    listing = self._client.subscriptions.list(
                        params={"customer": ref, "status": "all", "limit": 1}
                    )
                    if not listing.data:
                        return None
                    subscription = listing.data[0]
                else:
                    subscription = self._client.subscriptions.retrieve(ref)
            except stripe.InvalidRequestError as exc:
                if exc.http_status == 404:
                    return None
                raise
        return normalize_subscription(subscription, plan_by_price=self._plan_by_price)

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> ProcessorWebhookEvent:
        if not self._webhook_secret:
            raise WebhookSignatureInvalid("Webhook secret is not configured")
        if not signature:
            raise WebhookSignatureInvalid("Missing webhook signature")
        try:
            self._client.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureInvalid("Webhook signature verification failed") from exc
        except ValueError as exc:
            raise WebhookSignatureInvalid("Webhook payload is not valid JSON") from exc

        raw = json.loads(payload)
        return ProcessorWebhookEvent(
            event_id=str(raw["id"]),
            event_type=str(raw["type"]),
            data=dict((raw.get("data") or {}).get("object") or {}),
        )


__all__ = ["StripePaymentAdapter"]
