"""Listing records carrying the featured-promotion state."""

from .models import (
    LISTING_MODELS,
    Featurable,
    Listing,
    ListingBase,
    ListingKind,
    ListingStatus,
    ProductListing,
    ServiceListing,
    is_currently_featured,
)

__all__ = [
    "LISTING_MODELS",
    "Featurable",
    "Listing",
    "ListingBase",
    "ListingKind",
    "ListingStatus",
    "ProductListing",
    "ServiceListing",
    "is_currently_featured",
]
