"""API schemas for listing promotion, publication and sweep endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import PaymentTransaction
from ..featuring import SweepSummary
from ..listings.models import Listing, ListingKind, ListingStatus


class FeatureCheckoutRequest(BaseModel):
    listing_kind: ListingKind = Field(alias="listingKind")
    listing_id: str = Field(alias="listingId", min_length=1)
    duration_days: Optional[int] = Field(alias="durationDays", default=None, ge=1)

    model_config = ConfigDict(populate_by_name=True)


class FeatureOverrideRequest(BaseModel):
    is_featured: bool = Field(alias="isFeatured")
    feature_expiration: Optional[datetime] = Field(alias="featureExpiration", default=None)

    model_config = ConfigDict(populate_by_name=True)


class ListingResponse(BaseModel):
    listing_id: str = Field(alias="listingId")
    kind: ListingKind
    owner_id: str = Field(alias="ownerId")
    status: ListingStatus
    is_featured: bool = Field(alias="isFeatured")
    feature_expiration: Optional[datetime] = Field(alias="featureExpiration", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_listing(cls, listing: Listing) -> "ListingResponse":
        return cls(
            listing_id=listing.listing_id,
            kind=listing.kind,
            owner_id=listing.owner_id,
            status=listing.status,
            is_featured=listing.is_featured,
            feature_expiration=listing.feature_expiration,
        )


class RefundResponse(BaseModel):
    transaction: PaymentTransaction

    model_config = ConfigDict(populate_by_name=True)


class SweepResponse(BaseModel):
    success: bool = True
    swept_at: datetime = Field(alias="sweptAt")
    demoted: Dict[str, int]
    total: int

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: SweepSummary) -> "SweepResponse":
        return cls(swept_at=summary.swept_at, demoted=summary.as_dict(), total=summary.total)
