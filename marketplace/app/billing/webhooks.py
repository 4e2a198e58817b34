"""Routes verified processor webhooks to the lifecycle and feature managers."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping

from ..featuring.service import FeatureGrantManager
from .adapter import (
    PaymentProcessorAdapter,
    invoice_subscription_ref,
    normalize_checkout_session,
    normalize_subscription,
)
from .errors import InvalidTransactionState, RecordNotFound
from .interfaces import WebhookEventRepository
from .models import ProcessorWebhookEvent, TransactionKind
from .subscriptions import SubscriptionLifecycleManager

logger = logging.getLogger(__name__)

_PAID_STATUSES = {"paid", "no_payment_required"}


class WebhookDisposition(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


@dataclass
class ProcessorWebhookDispatcher:
    """Dispatches each delivery at most once per event id.

    A failed dispatch forgets the event id again so the processor's
    re-delivery is handled. Problems re-delivery cannot fix, such as a
    checkout with no recorded transaction, are logged and absorbed.
    """

    events: WebhookEventRepository
    subscriptions: SubscriptionLifecycleManager
    features: FeatureGrantManager
    adapter: PaymentProcessorAdapter
    plan_by_price: Mapping[str, str] = field(default_factory=dict)

    def dispatch(self, event: ProcessorWebhookEvent) -> WebhookDisposition:
        if not self.events.record_webhook_event(event):
            logger.info("Ignoring re-delivered webhook %s (%s)", event.event_id, event.event_type)
            return WebhookDisposition.DUPLICATE

        try:
            handled = self._route(event)
        except (RecordNotFound, InvalidTransactionState) as exc:
            logger.warning("Webhook %s (%s) not applied: %s", event.event_id, event.event_type, exc.message)
            return WebhookDisposition.PROCESSED
        except ValueError as exc:
            logger.error("Malformed webhook %s (%s): %s", event.event_id, event.event_type, exc)
            return WebhookDisposition.IGNORED
        except Exception:
            self.events.forget_webhook_event(event.event_id)
            raise

        return WebhookDisposition.PROCESSED if handled else WebhookDisposition.IGNORED

    def _route(self, event: ProcessorWebhookEvent) -> bool:
        event_type = event.event_type
        if event_type in {"checkout.session.completed", "checkout.session.async_payment_succeeded"}:
            return self._handle_checkout_completed(event)
        if event_type in {"checkout.session.expired", "checkout.session.async_payment_failed"}:
            completion = normalize_checkout_session(event.data)
            self.features.mark_checkout_failed(completion.session_ref)
            return True
        if event_type == "customer.subscription.created":
            state = normalize_subscription(event.data, plan_by_price=self.plan_by_price)
            account_id = (event.data.get("metadata") or {}).get("account_id")
            self.subscriptions.attach_subscription(state, account_id=account_id)
            return True
        if event_type in {"customer.subscription.updated", "customer.subscription.deleted"}:
            state = normalize_subscription(event.data, plan_by_price=self.plan_by_price)
            self.subscriptions.apply_processor_event(state)
            return True
        if event_type in {"invoice.payment_succeeded", "invoice.payment_failed"}:
            return self._handle_invoice(event)

        logger.debug("Unhandled webhook type %s", event_type)
        return False

    def _handle_checkout_completed(self, event: ProcessorWebhookEvent) -> bool:
        completion = normalize_checkout_session(event.data)
        kind = completion.purchase_kind
        if kind == TransactionKind.LISTING_FEATURE:
            if completion.payment_status not in _PAID_STATUSES:
                logger.info(
                    "Feature checkout %s completed with payment_status=%s; awaiting payment",
                    completion.session_ref,
                    completion.payment_status,
                )
                return False
            self.features.confirm_feature_grant(completion.session_ref)
            return True
        if kind == TransactionKind.SUBSCRIPTION:
            self.subscriptions.complete_subscription_checkout(completion)
            return True
        logger.info("Checkout %s has no recognised purchase kind", completion.session_ref)
        return False

    def _handle_invoice(self, event: ProcessorWebhookEvent) -> bool:
        subscription_ref = invoice_subscription_ref(event.data)
        if not subscription_ref:
            return False
        state = self.adapter.fetch_subscription(subscription_ref)
        if state is None:
            logger.warning("Invoice event %s names unknown subscription %s", event.event_id, subscription_ref)
            return False
        self.subscriptions.attach_subscription(state)
        return True


__all__ = ["ProcessorWebhookDispatcher", "WebhookDisposition"]
