"""Administrative routes for subscriptions, featured placement and sweep monitoring."""
from __future__ import annotations

from datetime import timedelta
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...app_context import get_admin_identity
from ...sweeps import get_sweep_metrics
from ..billing import EngineError
from ..entitlements import AuthenticatedIdentity, SubscriptionStatus
from ..listings import ListingKind
from ..schemas.billing import AdminSubscriptionList, AdminSubscriptionSummary
from ..schemas.features import FeatureOverrideRequest, ListingResponse, RefundResponse
from ..services.billing import BillingEngine, get_engine

router = APIRouter(prefix="/api/admin", tags=["admin"])

RECENT_WINDOW = timedelta(days=30)


@router.put("/listings/{kind}/{listing_id}/featured", response_model=ListingResponse)
def set_listing_featured(
    kind: ListingKind,
    listing_id: str,
    payload: FeatureOverrideRequest,
    *,
    engine: BillingEngine = Depends(get_engine),
    admin: AuthenticatedIdentity = Depends(get_admin_identity),
) -> ListingResponse:
    try:
        listing = engine.features.force_set_feature(
            kind,
            listing_id,
            payload.is_featured,
            payload.feature_expiration,
            actor_id=admin.account_id,
        )
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return ListingResponse.from_listing(listing)


@router.post("/payments/{payment_ref}/refund", response_model=RefundResponse)
def refund_feature_payment(
    payment_ref: str,
    *,
    engine: BillingEngine = Depends(get_engine),
    admin: AuthenticatedIdentity = Depends(get_admin_identity),
) -> RefundResponse:
    try:
        transaction = engine.features.refund_feature_grant(payment_ref)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return RefundResponse(transaction=transaction)


@router.get("/sweeps/metrics")
def sweep_metrics(admin: AuthenticatedIdentity = Depends(get_admin_identity)) -> Dict[str, object]:
    return get_sweep_metrics()


@router.get("/subscriptions", response_model=AdminSubscriptionList)
def list_subscriptions(
    subscription_status: Optional[SubscriptionStatus] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    *,
    engine: BillingEngine = Depends(get_engine),
    admin: AuthenticatedIdentity = Depends(get_admin_identity),
) -> AdminSubscriptionList:
    now = engine.subscriptions.clock()
    records = engine.accounts.list_records(status=subscription_status, limit=limit, offset=(page - 1) * limit)
    return AdminSubscriptionList(
        subscriptions=[AdminSubscriptionSummary.from_record(record, now) for record in records],
        page=page,
        limit=limit,
    )


@router.get("/subscriptions/recent", response_model=AdminSubscriptionList)
def recent_subscriptions(
    limit: int = Query(default=10, ge=1, le=100),
    *,
    engine: BillingEngine = Depends(get_engine),
    admin: AuthenticatedIdentity = Depends(get_admin_identity),
) -> AdminSubscriptionList:
    now = engine.subscriptions.clock()
    records = engine.accounts.list_records(updated_since=now - RECENT_WINDOW, limit=limit)
    return AdminSubscriptionList(
        subscriptions=[AdminSubscriptionSummary.from_record(record, now) for record in records],
        limit=limit,
    )


@router.post("/subscriptions/{account_id}/cancel", response_model=AdminSubscriptionSummary)
def cancel_account_subscription(
    account_id: str,
    *,
    engine: BillingEngine = Depends(get_engine),
    admin: AuthenticatedIdentity = Depends(get_admin_identity),
) -> AdminSubscriptionSummary:
    """Cancel an account's subscription at the end of its paid period."""

    try:
        record = engine.subscriptions.get_record(account_id)
        updated = engine.subscriptions.request_cancellation(
            AuthenticatedIdentity(account_id=record.account_id, role=record.role),
            immediate=False,
            actor_id=admin.account_id,
        )
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return AdminSubscriptionSummary.from_record(updated, engine.subscriptions.clock())
