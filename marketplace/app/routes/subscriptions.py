"""API routes for account subscriptions."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ...app_context import get_current_identity
from ..billing import EngineError
from ..entitlements import AuthenticatedIdentity, default_plan_for_role
from ..feature_gates import EntitlementContext
from ..schemas.billing import (
    CancelSubscriptionRequest,
    CheckoutResponse,
    CreateSubscriptionRequest,
    RefreshSubscriptionResponse,
    SubscriptionStatusResponse,
    ToggleAutoRenewRequest,
)
from ..services.billing import BillingEngine, get_engine

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


def _status_response(engine: BillingEngine, identity: AuthenticatedIdentity) -> SubscriptionStatusResponse:
    snapshot = engine.entitlements.check(identity)
    return SubscriptionStatusResponse.from_context(EntitlementContext(snapshot))


@router.post("/create", response_model=CheckoutResponse)
def create_subscription(
    payload: CreateSubscriptionRequest,
    *,
    engine: BillingEngine = Depends(get_engine),
    identity: AuthenticatedIdentity = Depends(get_current_identity),
) -> CheckoutResponse:
    plan_id = payload.plan_id
    if plan_id is None:
        try:
            plan_id = default_plan_for_role(identity.role).plan_id
        except KeyError as exc:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"error": "role_not_eligible", "message": f"Role {identity.role.value} cannot subscribe"},
            ) from exc

    try:
        handle = engine.subscriptions.initiate_subscription(identity, plan_id)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return CheckoutResponse.from_handle(handle)


@router.post("/cancel", response_model=SubscriptionStatusResponse)
def cancel_subscription(
    payload: CancelSubscriptionRequest,
    *,
    engine: BillingEngine = Depends(get_engine),
    identity: AuthenticatedIdentity = Depends(get_current_identity),
) -> SubscriptionStatusResponse:
    try:
        engine.subscriptions.request_cancellation(identity, immediate=payload.cancel_immediately)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return _status_response(engine, identity)


@router.post("/toggle-auto-renew", response_model=SubscriptionStatusResponse)
def toggle_auto_renew(
    payload: ToggleAutoRenewRequest,
    *,
    engine: BillingEngine = Depends(get_engine),
    identity: AuthenticatedIdentity = Depends(get_current_identity),
) -> SubscriptionStatusResponse:
    try:
        engine.subscriptions.toggle_auto_renew(identity, payload.auto_renew)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return _status_response(engine, identity)


@router.get("/status", response_model=SubscriptionStatusResponse)
def get_subscription_status(
    *,
    engine: BillingEngine = Depends(get_engine),
    identity: AuthenticatedIdentity = Depends(get_current_identity),
) -> SubscriptionStatusResponse:
    return _status_response(engine, identity)


@router.post("/refresh", response_model=RefreshSubscriptionResponse)
def refresh_subscription(
    *,
    engine: BillingEngine = Depends(get_engine),
    identity: AuthenticatedIdentity = Depends(get_current_identity),
) -> RefreshSubscriptionResponse:
    """Re-read the processor's view of the caller's subscription."""

    engine.subscriptions.register_account(identity)
    try:
        result = engine.reconciler.reconcile(identity.account_id)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    snapshot = engine.entitlements.check(identity)
    return RefreshSubscriptionResponse.from_result(result, EntitlementContext(snapshot))
