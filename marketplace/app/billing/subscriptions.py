"""Subscription lifecycle management against the payment processor."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import uuid4

from ..entitlements.catalog import get_plan_definition
from ..entitlements.models import (
    TERMINAL_STATUSES,
    AccountEntitlementRecord,
    AuthenticatedIdentity,
    SubscriptionStatus,
)
from .adapter import PaymentProcessorAdapter
from .errors import (
    RecordNotFound,
    RoleNotEligible,
    StaleEvent,
    SubscriptionAlreadyActive,
    SubscriptionCanceled,
    UnknownPlan,
)
from .interfaces import AccountRepository, BillingEventLogger, TransactionRepository
from .models import (
    ApplyOutcome,
    BillingAuditEvent,
    BillingAuditEventType,
    CheckoutCompletion,
    CheckoutHandle,
    NormalizedSubscriptionState,
    PaymentTransaction,
    TransactionKind,
    TransactionStatus,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SubscriptionLifecycleManager:
    """Owns every write to account entitlement records outside reconciliation.

    Processor calls always happen before local mutation, so a processor
    failure leaves the stored record untouched.
    """

    accounts: AccountRepository
    transactions: TransactionRepository
    adapter: PaymentProcessorAdapter
    event_logger: BillingEventLogger
    clock: Callable[[], datetime] = field(default=_utcnow)

    def _now(self) -> datetime:
        return self.clock()

    def register_account(self, identity: AuthenticatedIdentity) -> AccountEntitlementRecord:
        return self.accounts.create_if_missing(identity.account_id, identity.role)

    def get_record(self, account_id: str) -> AccountEntitlementRecord:
        record = self.accounts.get(account_id)
        if record is None:
            raise RecordNotFound(f"No entitlement record for account {account_id}")
        return record

    def initiate_subscription(
        self,
        identity: AuthenticatedIdentity,
        plan_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> CheckoutHandle:
        if not identity.role.requires_subscription:
            raise RoleNotEligible(
                f"Role {identity.role.value} cannot subscribe",
                detail={"role": identity.role.value},
            )
        try:
            plan = get_plan_definition(plan_id)
        except KeyError as exc:
            raise UnknownPlan(f"Unknown plan {plan_id}", detail={"plan_id": plan_id}) from exc
        if not plan.is_offered_to(identity.role):
            raise UnknownPlan(
                f"Plan {plan_id} is not offered to role {identity.role.value}",
                detail={"plan_id": plan_id, "role": identity.role.value},
            )

        evaluated_at = now or self._now()
        record = self.accounts.create_if_missing(identity.account_id, identity.role)
        if record.is_entitled(evaluated_at):
            raise SubscriptionAlreadyActive(
                "Account already has an active subscription",
                detail={"status": record.status.value},
            )

        customer_ref = record.external_customer_ref
        if not customer_ref:
            created_ref = self.adapter.create_customer(record, email=identity.email)
            record = self.accounts.set_customer_ref(identity.account_id, created_ref)
            # A concurrent request may have stored its customer first.
            customer_ref = record.external_customer_ref or created_ref

        handle = self.adapter.create_subscription_checkout(
            customer_ref,
            plan.plan_id,
            metadata={"account_id": identity.account_id},
        )
        self.transactions.create(
            PaymentTransaction(
                transaction_id=f"txn_{uuid4().hex}",
                account_id=identity.account_id,
                amount_cents=plan.amount_cents,
                currency=plan.currency,
                kind=TransactionKind.SUBSCRIPTION,
                status=TransactionStatus.PENDING,
                external_payment_ref=handle.session_ref,
                metadata={"plan_id": plan.plan_id},
                created_at=evaluated_at,
                updated_at=evaluated_at,
            )
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.CHECKOUT_STARTED,
                account_id=identity.account_id,
                metadata={"plan_id": plan.plan_id, "session_ref": handle.session_ref},
                occurred_at=evaluated_at,
            )
        )
        logger.info("Started subscription checkout %s for account %s", handle.session_ref, identity.account_id)
        return handle

    def apply_processor_event(self, state: NormalizedSubscriptionState) -> ApplyOutcome:
        """Apply a processor-reported state; replays and stale deliveries are absorbed."""

        try:
            outcome, record = self.accounts.apply_subscription_state(state)
        except StaleEvent as exc:
            logger.warning("Dropping stale event for subscription %s: %s", state.external_subscription_ref, exc.detail)
            return ApplyOutcome.STALE

        if outcome == ApplyOutcome.UNKNOWN_SUBSCRIPTION:
            logger.warning("Dropping event for unknown subscription %s", state.external_subscription_ref)
            return outcome
        if outcome == ApplyOutcome.DUPLICATE or record is None:
            logger.debug("Ignoring replayed event for subscription %s", state.external_subscription_ref)
            return outcome

        logger.info(
            "Applied subscription %s status=%s period_end=%s for account %s",
            state.external_subscription_ref,
            record.status.value,
            record.current_period_end,
            record.account_id,
        )
        event_type = (
            BillingAuditEventType.SUBSCRIPTION_CANCELED
            if record.status == SubscriptionStatus.CANCELED
            else BillingAuditEventType.SUBSCRIPTION_UPDATED
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=event_type,
                account_id=record.account_id,
                subscription_ref=state.external_subscription_ref,
                metadata={"status": record.status.value},
            )
        )
        return outcome

    def attach_subscription(
        self,
        state: NormalizedSubscriptionState,
        *,
        account_id: Optional[str] = None,
    ) -> ApplyOutcome:
        """Link a newly created processor subscription to its account as a new lineage."""

        if self.accounts.get_by_subscription_ref(state.external_subscription_ref) is not None:
            return self.apply_processor_event(state)

        record: Optional[AccountEntitlementRecord] = None
        if account_id:
            record = self.accounts.get(account_id)
        if record is None and state.external_customer_ref:
            record = self.accounts.get_by_customer_ref(state.external_customer_ref)
        if record is None:
            logger.warning(
                "No account found for new subscription %s customer=%s",
                state.external_subscription_ref,
                state.external_customer_ref,
            )
            return ApplyOutcome.UNKNOWN_SUBSCRIPTION

        if self.accounts.has_archived_subscription(record.account_id, state.external_subscription_ref):
            logger.warning(
                "Not reattaching archived subscription %s to account %s",
                state.external_subscription_ref,
                record.account_id,
            )
            return ApplyOutcome.STALE

        if state.status in TERMINAL_STATUSES and record.claims_live_subscription:
            logger.warning(
                "Not replacing live subscription %s with ended subscription %s for account %s",
                record.external_subscription_ref,
                state.external_subscription_ref,
                record.account_id,
            )
            return ApplyOutcome.STALE

        updated = self.accounts.attach_subscription(record.account_id, state)
        logger.info(
            "Attached subscription %s (status=%s) to account %s",
            state.external_subscription_ref,
            updated.status.value,
            updated.account_id,
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_ATTACHED,
                account_id=updated.account_id,
                subscription_ref=state.external_subscription_ref,
                metadata={
                    "status": updated.status.value,
                    "previous_subscription_ref": record.external_subscription_ref or "",
                },
            )
        )
        return ApplyOutcome.APPLIED

    def complete_subscription_checkout(self, completion: CheckoutCompletion) -> ApplyOutcome:
        """Record a finished subscription checkout and attach the subscription it created.

        The processor is queried before the pending transaction is completed,
        so an outage leaves the transaction pending for the re-delivery.
        """

        state: Optional[NormalizedSubscriptionState] = None
        if completion.subscription_ref:
            state = self.adapter.fetch_subscription(completion.subscription_ref)

        transaction = self.transactions.transition(
            completion.session_ref,
            from_status=TransactionStatus.PENDING,
            to_status=TransactionStatus.COMPLETED,
        )
        account_id = completion.metadata.get("account_id")
        if transaction is not None:
            account_id = transaction.account_id
        elif self.transactions.get_by_payment_ref(completion.session_ref) is None:
            logger.warning("Subscription checkout %s has no recorded transaction", completion.session_ref)

        if not completion.subscription_ref:
            logger.warning("Subscription checkout %s completed without a subscription", completion.session_ref)
            return ApplyOutcome.UNKNOWN_SUBSCRIPTION
        if state is None:
            logger.warning(
                "Processor has no subscription %s for checkout %s",
                completion.subscription_ref,
                completion.session_ref,
            )
            return ApplyOutcome.UNKNOWN_SUBSCRIPTION
        return self.attach_subscription(state, account_id=account_id)

    def _live_subscription_ref(self, record: AccountEntitlementRecord) -> str:
        if record.status == SubscriptionStatus.CANCELED:
            raise SubscriptionCanceled(
                "Subscription is already canceled",
                detail={"account_id": record.account_id},
            )
        if not record.external_subscription_ref or not record.claims_live_subscription:
            raise RecordNotFound(
                "No active subscription found",
                detail={"account_id": record.account_id},
            )
        return record.external_subscription_ref

    def request_cancellation(
        self,
        identity: AuthenticatedIdentity,
        *,
        immediate: bool,
        actor_id: Optional[str] = None,
    ) -> AccountEntitlementRecord:
        """Cancel now, or at the end of the paid period.

        Immediate cancellation is written locally right after the processor
        confirms it. Period-end cancellation only sets the flag; the status
        changes when the processor reports the subscription ended.
        ``actor_id`` names an administrator acting for the account.
        """

        record = self.get_record(identity.account_id)
        subscription_ref = self._live_subscription_ref(record)

        self.adapter.cancel_subscription(subscription_ref, at_period_end=not immediate)
        if immediate:
            updated = self.accounts.mark_canceled(identity.account_id, canceled_at=self._now())
        else:
            updated = self.accounts.set_cancel_at_period_end(identity.account_id, True)

        logger.info(
            "Canceled subscription %s for account %s immediate=%s",
            subscription_ref,
            identity.account_id,
            immediate,
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_CANCELED,
                account_id=identity.account_id,
                subscription_ref=subscription_ref,
                metadata={"immediate": str(immediate).lower(), "actor_id": actor_id or identity.account_id},
            )
        )
        return updated

    def toggle_auto_renew(self, identity: AuthenticatedIdentity, enabled: bool) -> AccountEntitlementRecord:
        record = self.get_record(identity.account_id)
        subscription_ref = self._live_subscription_ref(record)

        self.adapter.set_auto_renew(subscription_ref, enabled)
        updated = self.accounts.set_cancel_at_period_end(identity.account_id, not enabled)

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.AUTO_RENEW_CHANGED,
                account_id=identity.account_id,
                subscription_ref=subscription_ref,
                metadata={"auto_renew": str(enabled).lower()},
            )
        )
        return updated


__all__ = ["SubscriptionLifecycleManager"]
