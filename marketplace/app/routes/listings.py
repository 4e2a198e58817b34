"""API routes for gated listing writes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ...app_context import get_current_identity
from ..entitlements import AuthenticatedIdentity, Capability
from ..feature_gates import EntitlementContext, FeatureGateError
from ..listings import ListingKind, ListingStatus
from ..schemas.features import ListingResponse
from ..services.billing import BillingEngine, get_engine

router = APIRouter(prefix="/api/listings", tags=["listings"])


@router.post("/{kind}/{listing_id}/publish", response_model=ListingResponse)
def publish_listing(
    kind: ListingKind,
    listing_id: str,
    *,
    engine: BillingEngine = Depends(get_engine),
    identity: AuthenticatedIdentity = Depends(get_current_identity),
) -> ListingResponse:
    listing = engine.listings.get(kind, listing_id)
    if listing is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Listing not found")
    if not identity.is_admin and not listing.is_owned_by(identity.account_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot publish another account's listing")

    context = EntitlementContext(engine.entitlements.check(identity))
    try:
        context.require(Capability.PUBLISH_LISTING)
    except FeatureGateError as exc:
        raise exc.to_http_exception() from exc

    updated = engine.listings.set_status(kind, listing_id, ListingStatus.PUBLISHED)
    if updated is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Listing not found")
    return ListingResponse.from_listing(updated)
