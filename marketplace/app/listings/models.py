"""Listing models sharing the featured-promotion shape."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional, Protocol, Union, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ListingKind(str, Enum):
    """Sellable listing variants."""

    PRODUCT = "product"
    SERVICE = "service"


class ListingStatus(str, Enum):
    """Publication state of a listing."""

    DRAFT = "draft"
    PUBLISHED = "published"
    SUSPENDED = "suspended"


@runtime_checkable
class Featurable(Protocol):
    """Anything that can be promoted for a bounded window."""

    listing_id: str
    is_featured: bool
    feature_expiration: Optional[datetime]


def is_currently_featured(listing: Featurable, now: datetime) -> bool:
    return (
        listing.is_featured
        and listing.feature_expiration is not None
        and listing.feature_expiration > now
    )


class ListingBase(BaseModel):
    """Fields common to every listing kind."""

    listing_id: str
    owner_id: str
    title: str
    status: ListingStatus = ListingStatus.DRAFT
    is_featured: bool = False
    feature_expiration: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _featured_requires_expiration(self) -> "ListingBase":
        if self.is_featured and self.feature_expiration is None:
            raise ValueError("feature_expiration is required for featured listings")
        return self

    def is_owned_by(self, account_id: str) -> bool:
        return self.owner_id == account_id


class ProductListing(ListingBase):
    """A product sold by a seller account."""

    kind: Literal[ListingKind.PRODUCT] = ListingKind.PRODUCT


class ServiceListing(ListingBase):
    """A service offered by a provider account."""

    kind: Literal[ListingKind.SERVICE] = ListingKind.SERVICE


Listing = Union[ProductListing, ServiceListing]

LISTING_MODELS = {
    ListingKind.PRODUCT: ProductListing,
    ListingKind.SERVICE: ServiceListing,
}
