"""Shared in-memory collaborators for engine tests."""
from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import pytest

from marketplace.app.billing import (
    ApplyOutcome,
    BillingAuditEvent,
    BillingAuditEventType,
    CheckoutHandle,
    NormalizedSubscriptionState,
    PaymentTransaction,
    ProcessorWebhookEvent,
    ReconciliationService,
    StaleEvent,
    SubscriptionLifecycleManager,
    TransactionStatus,
)
from marketplace.app.billing.errors import RecordNotFound
from marketplace.app.billing.webhooks import ProcessorWebhookDispatcher
from marketplace.app.entitlements import AccountEntitlementRecord, AccountRole, EntitlementService, SubscriptionStatus
from marketplace.app.featuring import ExpirationSweeper, FeatureGrantManager
from marketplace.app.listings import LISTING_MODELS, Listing, ListingKind, ListingStatus
from marketplace.app.services.billing import BillingEngine
from marketplace.config import load_engine_config

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryAccountRepository:
    def __init__(self) -> None:
        self.records: Dict[str, AccountEntitlementRecord] = {}
        self.history: Dict[str, List[AccountEntitlementRecord]] = {}

    def put(self, record: AccountEntitlementRecord) -> AccountEntitlementRecord:
        self.records[record.account_id] = record
        return record

    def get(self, account_id: str) -> Optional[AccountEntitlementRecord]:
        return self.records.get(account_id)

    def get_by_customer_ref(self, customer_ref: str) -> Optional[AccountEntitlementRecord]:
        return next((r for r in self.records.values() if r.external_customer_ref == customer_ref), None)

    def get_by_subscription_ref(self, subscription_ref: str) -> Optional[AccountEntitlementRecord]:
        return next((r for r in self.records.values() if r.external_subscription_ref == subscription_ref), None)

    def create_if_missing(self, account_id: str, role: AccountRole) -> AccountEntitlementRecord:
        if account_id not in self.records:
            self.records[account_id] = AccountEntitlementRecord.new(account_id, role)
        return self.records[account_id]

    def _require(self, account_id: str) -> AccountEntitlementRecord:
        record = self.records.get(account_id)
        if record is None:
            raise RecordNotFound(f"No entitlement record for account {account_id}")
        return record

    def _update(self, record: AccountEntitlementRecord, **changes) -> AccountEntitlementRecord:
        updated = record.model_copy(update={**changes, "updated_at": datetime.now(timezone.utc)})
        self.records[record.account_id] = updated
        return updated

    def set_customer_ref(self, account_id: str, customer_ref: str) -> AccountEntitlementRecord:
        record = self._require(account_id)
        if record.external_customer_ref:
            return record
        return self._update(record, external_customer_ref=customer_ref)

    @staticmethod
    def _state_fields(record: AccountEntitlementRecord, state: NormalizedSubscriptionState) -> dict:
        return {
            "status": state.status,
            "plan_id": state.plan_id or record.plan_id,
            "current_period_start": state.current_period_start,
            "current_period_end": state.current_period_end,
            "cancel_at_period_end": state.cancel_at_period_end,
            "canceled_at": state.canceled_at,
        }

    def apply_subscription_state(
        self, state: NormalizedSubscriptionState
    ) -> Tuple[ApplyOutcome, Optional[AccountEntitlementRecord]]:
        record = self.get_by_subscription_ref(state.external_subscription_ref)
        if record is None:
            return ApplyOutcome.UNKNOWN_SUBSCRIPTION, None
        if (
            record.current_period_end is not None
            and state.current_period_end is not None
            and record.current_period_end > state.current_period_end
        ):
            raise StaleEvent(
                state.external_subscription_ref,
                stored_period_end=record.current_period_end,
                event_period_end=state.current_period_end,
            )
        fields = self._state_fields(record, state)
        fields["current_period_start"] = state.current_period_start or record.current_period_start
        fields["current_period_end"] = state.current_period_end or record.current_period_end
        if (
            record.current_period_end == fields["current_period_end"]
            and record.status == state.status
            and record.cancel_at_period_end == state.cancel_at_period_end
        ):
            return ApplyOutcome.DUPLICATE, record
        return ApplyOutcome.APPLIED, self._update(record, **fields)

    def _archive(
        self,
        record: AccountEntitlementRecord,
        *,
        status: Optional[SubscriptionStatus] = None,
        canceled_at: Optional[datetime] = None,
        unless_ref: Optional[str] = None,
    ) -> None:
        if not record.external_subscription_ref or record.external_subscription_ref == unless_ref:
            return
        archived = record.model_copy(
            update={"status": status or record.status, "canceled_at": canceled_at or record.canceled_at}
        )
        self.history.setdefault(record.account_id, []).insert(0, archived)

    def attach_subscription(self, account_id: str, state: NormalizedSubscriptionState) -> AccountEntitlementRecord:
        record = self._require(account_id)
        self._archive(record, unless_ref=state.external_subscription_ref)
        return self._update(
            record,
            external_subscription_ref=state.external_subscription_ref,
            external_customer_ref=record.external_customer_ref or state.external_customer_ref,
            **self._state_fields(record, state),
        )

    def overwrite_subscription_state(
        self, account_id: str, state: NormalizedSubscriptionState
    ) -> AccountEntitlementRecord:
        record = self._require(account_id)
        if record.external_subscription_ref != state.external_subscription_ref:
            raise RecordNotFound(f"No entitlement record for account {account_id}")
        return self._update(record, **self._state_fields(record, state))

    def mark_canceled(self, account_id: str, *, canceled_at: datetime) -> AccountEntitlementRecord:
        record = self._require(account_id)
        self._archive(record, status=SubscriptionStatus.CANCELED, canceled_at=canceled_at)
        return self._update(
            record,
            status=SubscriptionStatus.CANCELED,
            canceled_at=canceled_at,
            cancel_at_period_end=False,
            external_subscription_ref=None,
        )

    def set_cancel_at_period_end(self, account_id: str, cancel_at_period_end: bool) -> AccountEntitlementRecord:
        return self._update(self._require(account_id), cancel_at_period_end=cancel_at_period_end)

    def clear_subscription(self, account_id: str) -> AccountEntitlementRecord:
        record = self._require(account_id)
        self._archive(record)
        return self._update(
            record,
            status=SubscriptionStatus.NONE,
            external_subscription_ref=None,
            cancel_at_period_end=False,
        )

    def list_history(self, account_id: str, *, limit: int = 20) -> List[AccountEntitlementRecord]:
        return list(self.history.get(account_id, []))[:limit]

    def has_archived_subscription(self, account_id: str, subscription_ref: str) -> bool:
        return any(entry.external_subscription_ref == subscription_ref for entry in self.history.get(account_id, []))

    def list_records(
        self,
        *,
        status: Optional[SubscriptionStatus] = None,
        updated_since: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[AccountEntitlementRecord]:
        matching = [
            record
            for record in self.records.values()
            if (status is None or record.status == status)
            and (updated_since is None or record.updated_at >= updated_since)
        ]
        matching.sort(key=lambda record: (-record.updated_at.timestamp(), record.account_id))
        return matching[offset : offset + limit]


class InMemoryTransactionRepository:
    def __init__(self) -> None:
        self.transactions: Dict[str, PaymentTransaction] = {}

    def create(self, transaction: PaymentTransaction) -> PaymentTransaction:
        self.transactions[transaction.external_payment_ref] = transaction
        return transaction

    def get_by_payment_ref(self, payment_ref: str, *, conn=None) -> Optional[PaymentTransaction]:
        return self.transactions.get(payment_ref)

    def transition(
        self,
        payment_ref: str,
        *,
        from_status: TransactionStatus,
        to_status: TransactionStatus,
        conn=None,
    ) -> Optional[PaymentTransaction]:
        transaction = self.transactions.get(payment_ref)
        if transaction is None or transaction.status != from_status:
            return None
        updated = transaction.model_copy(update={"status": to_status})
        self.transactions[payment_ref] = updated
        return updated


class InMemoryListingRepository:
    def __init__(self) -> None:
        self.listings: Dict[Tuple[ListingKind, str], Listing] = {}
        self.before_demote: Optional[Callable[[], None]] = None

    def add(
        self,
        kind: ListingKind,
        listing_id: str,
        owner_id: str,
        *,
        is_featured: bool = False,
        feature_expiration: Optional[datetime] = None,
        status: ListingStatus = ListingStatus.DRAFT,
    ) -> Listing:
        listing = LISTING_MODELS[kind](
            listing_id=listing_id,
            owner_id=owner_id,
            title=f"Listing {listing_id}",
            status=status,
            is_featured=is_featured,
            feature_expiration=feature_expiration,
        )
        self.listings[(kind, listing_id)] = listing
        return listing

    def remove(self, kind: ListingKind, listing_id: str) -> None:
        self.listings.pop((kind, listing_id), None)

    def get(self, kind: ListingKind, listing_id: str, *, conn=None) -> Optional[Listing]:
        return self.listings.get((kind, listing_id))

    def _update(self, kind: ListingKind, listing_id: str, **changes) -> Optional[Listing]:
        listing = self.listings.get((kind, listing_id))
        if listing is None:
            return None
        updated = listing.model_copy(update=changes)
        self.listings[(kind, listing_id)] = updated
        return updated

    def grant_feature(self, kind: ListingKind, listing_id: str, expiration: datetime, *, conn=None):
        return self._update(kind, listing_id, is_featured=True, feature_expiration=expiration)

    def force_feature(self, kind: ListingKind, listing_id: str, *, is_featured: bool, expiration: Optional[datetime]):
        listing = self.listings.get((kind, listing_id))
        if listing is None:
            return None
        return self._update(
            kind,
            listing_id,
            is_featured=is_featured,
            feature_expiration=expiration or listing.feature_expiration,
        )

    def revoke_feature_window(self, kind: ListingKind, listing_id: str, expiration: datetime, *, conn=None) -> bool:
        listing = self.listings.get((kind, listing_id))
        if listing is None or not listing.is_featured or listing.feature_expiration != expiration:
            return False
        self._update(kind, listing_id, is_featured=False)
        return True

    def select_expired(self, kind: ListingKind, now: datetime, *, limit: int) -> List[str]:
        expired = [
            listing
            for (listing_kind, _), listing in self.listings.items()
            if listing_kind == kind
            and listing.is_featured
            and listing.feature_expiration is not None
            and listing.feature_expiration < now
        ]
        expired.sort(key=lambda listing: listing.feature_expiration)
        return [listing.listing_id for listing in expired[:limit]]

    def demote_if_expired(self, kind: ListingKind, listing_ids: Sequence[str], now: datetime) -> List[str]:
        if self.before_demote is not None:
            self.before_demote()
        demoted: List[str] = []
        for listing_id in listing_ids:
            listing = self.listings.get((kind, listing_id))
            if (
                listing is not None
                and listing.is_featured
                and listing.feature_expiration is not None
                and listing.feature_expiration < now
            ):
                self._update(kind, listing_id, is_featured=False)
                demoted.append(listing_id)
        return demoted

    def set_status(self, kind: ListingKind, listing_id: str, status: ListingStatus) -> Optional[Listing]:
        return self._update(kind, listing_id, status=status)


class InMemoryWebhookEventRepository:
    def __init__(self) -> None:
        self.events: Dict[str, ProcessorWebhookEvent] = {}

    def record_webhook_event(self, event: ProcessorWebhookEvent) -> bool:
        if event.event_id in self.events:
            return False
        self.events[event.event_id] = event
        return True

    def forget_webhook_event(self, event_id: str) -> None:
        self.events.pop(event_id, None)


class RecordingEventLogger:
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)

    def types(self) -> List[BillingAuditEventType]:
        return [event.event_type for event in self.events]


class FakeStorage:
    def __init__(self) -> None:
        self.transactions_opened = 0

    @contextmanager
    def transaction(self) -> Iterator[object]:
        self.transactions_opened += 1
        yield object()


class FakePaymentAdapter:
    """Processor double recording every call; ``fail_with`` makes each call raise."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, tuple]] = []
        self.fail_with: Optional[Exception] = None
        self.subscriptions: Dict[str, NormalizedSubscriptionState] = {}
        self._counter = 0

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))
        if self.fail_with is not None:
            raise self.fail_with

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def create_customer(self, account, *, email=None) -> str:
        self._record("create_customer", account.account_id, email)
        return self._next("cus")

    def create_subscription_checkout(self, customer_ref, plan_id, *, metadata=None) -> CheckoutHandle:
        self._record("create_subscription_checkout", customer_ref, plan_id, dict(metadata or {}))
        session_ref = self._next("cs_sub")
        return CheckoutHandle(redirect_url=f"https://pay.test/{session_ref}", session_ref=session_ref)

    def create_one_time_checkout(
        self, account_id, listing_id, amount_cents, duration_days, *, metadata=None
    ) -> CheckoutHandle:
        self._record("create_one_time_checkout", account_id, listing_id, amount_cents, duration_days)
        session_ref = self._next("cs_feat")
        return CheckoutHandle(redirect_url=f"https://pay.test/{session_ref}", session_ref=session_ref)

    def cancel_subscription(self, subscription_ref, *, at_period_end) -> None:
        self._record("cancel_subscription", subscription_ref, at_period_end)

    def set_auto_renew(self, subscription_ref, enabled) -> None:
        self._record("set_auto_renew", subscription_ref, enabled)

    def fetch_subscription(self, ref) -> Optional[NormalizedSubscriptionState]:
        self._record("fetch_subscription", ref)
        if ref in self.subscriptions:
            return self.subscriptions[ref]
        owned = [state for state in self.subscriptions.values() if state.external_customer_ref == ref]
        return owned[-1] if owned else None

    def parse_webhook(self, payload: bytes, signature) -> ProcessorWebhookEvent:
        self._record("parse_webhook", signature)
        raw = json.loads(payload)
        return ProcessorWebhookEvent(event_id=raw["id"], event_type=raw["type"], data=raw["data"]["object"])


def subscription_state(
    ref: str = "sub_1",
    *,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    period_end: Optional[datetime] = None,
    customer_ref: Optional[str] = "cus_1",
    cancel_at_period_end: bool = False,
    plan_id: Optional[str] = "product_seller",
) -> NormalizedSubscriptionState:
    end = period_end or NOW + timedelta(days=30)
    return NormalizedSubscriptionState(
        external_subscription_ref=ref,
        external_customer_ref=customer_ref,
        status=status,
        current_period_start=end - timedelta(days=30),
        current_period_end=end,
        cancel_at_period_end=cancel_at_period_end,
        canceled_at=NOW if status == SubscriptionStatus.CANCELED else None,
        plan_id=plan_id,
    )


@pytest.fixture
def make_state():
    return subscription_state


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def accounts() -> InMemoryAccountRepository:
    return InMemoryAccountRepository()


@pytest.fixture
def transactions() -> InMemoryTransactionRepository:
    return InMemoryTransactionRepository()


@pytest.fixture
def listings() -> InMemoryListingRepository:
    return InMemoryListingRepository()


@pytest.fixture
def webhook_events() -> InMemoryWebhookEventRepository:
    return InMemoryWebhookEventRepository()


@pytest.fixture
def event_logger() -> RecordingEventLogger:
    return RecordingEventLogger()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def adapter() -> FakePaymentAdapter:
    return FakePaymentAdapter()


@pytest.fixture
def subscriptions(accounts, transactions, adapter, event_logger, clock) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(
        accounts=accounts,
        transactions=transactions,
        adapter=adapter,
        event_logger=event_logger,
        clock=clock,
    )


@pytest.fixture
def reconciler(accounts, adapter, event_logger) -> ReconciliationService:
    return ReconciliationService(accounts=accounts, adapter=adapter, event_logger=event_logger)


@pytest.fixture
def entitlements(accounts, reconciler, clock) -> EntitlementService:
    return EntitlementService(accounts, reconciler=reconciler, reconcile_cooldown_seconds=300, clock=clock)


@pytest.fixture
def features(listings, transactions, adapter, event_logger, storage, clock) -> FeatureGrantManager:
    return FeatureGrantManager(
        listings=listings,
        transactions=transactions,
        adapter=adapter,
        event_logger=event_logger,
        storage=storage,
        clock=clock,
    )


@pytest.fixture
def sweeper(listings, event_logger, clock) -> ExpirationSweeper:
    return ExpirationSweeper(listings=listings, event_logger=event_logger, batch_size=2, clock=clock)


@pytest.fixture
def dispatcher(webhook_events, subscriptions, features, adapter) -> ProcessorWebhookDispatcher:
    return ProcessorWebhookDispatcher(
        events=webhook_events,
        subscriptions=subscriptions,
        features=features,
        adapter=adapter,
        plan_by_price={"price_seller": "product_seller"},
    )


@pytest.fixture
def engine(
    accounts,
    transactions,
    listings,
    webhook_events,
    adapter,
    event_logger,
    storage,
    subscriptions,
    reconciler,
    entitlements,
    features,
    sweeper,
    dispatcher,
) -> BillingEngine:
    return BillingEngine(
        config=load_engine_config({"CRON_SECRET_TOKEN": "cron-secret"}),
        storage=storage,
        adapter=adapter,
        event_logger=event_logger,
        accounts=accounts,
        transactions=transactions,
        listings=listings,
        webhook_events=webhook_events,
        subscriptions=subscriptions,
        reconciler=reconciler,
        entitlements=entitlements,
        features=features,
        sweeper=sweeper,
        webhooks=dispatcher,
    )
