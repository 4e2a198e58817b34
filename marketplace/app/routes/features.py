"""API routes for buying featured placement on a listing."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ...app_context import get_current_identity
from ..billing import EngineError
from ..entitlements import AuthenticatedIdentity, Capability
from ..schemas.billing import CheckoutResponse
from ..schemas.features import FeatureCheckoutRequest
from ..services.billing import BillingEngine, get_engine

router = APIRouter(prefix="/api/features", tags=["features"])


@router.post("/checkout", response_model=CheckoutResponse)
def create_feature_checkout(
    payload: FeatureCheckoutRequest,
    *,
    engine: BillingEngine = Depends(get_engine),
    identity: AuthenticatedIdentity = Depends(get_current_identity),
) -> CheckoutResponse:
    try:
        if not identity.is_admin:
            engine.entitlements.require(identity, Capability.FEATURE_LISTING_SELF_SERVICE)
        handle = engine.features.initiate_feature_checkout(
            identity,
            payload.listing_kind,
            payload.listing_id,
            payload.duration_days,
        )
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return CheckoutResponse.from_handle(handle)
