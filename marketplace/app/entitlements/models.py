"""Domain models for account entitlements and capability resolution."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AccountRole(str, Enum):
    """Roles assigned at account creation."""

    REGULAR = "regular"
    PROVIDER = "provider"
    SELLER = "seller"
    ADMIN = "admin"

    @property
    def requires_subscription(self) -> bool:
        return self in GATED_ROLES


GATED_ROLES: FrozenSet[AccountRole] = frozenset({AccountRole.PROVIDER, AccountRole.SELLER})


class SubscriptionStatus(str, Enum):
    """Lifecycle state mirrored from the payment processor."""

    NONE = "none"
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE_EXPIRED = "incomplete_expired"


ENTITLED_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}
)

TERMINAL_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE_EXPIRED}
)


class Capability(str, Enum):
    """Gated actions that require an entitlement for subscription roles."""

    PUBLISH_LISTING = "publish_listing"
    CREATE_CONTENT = "create_content"
    FEATURE_LISTING_SELF_SERVICE = "feature_listing_self_service"


CapabilitySet = FrozenSet[Capability]

FULL_CAPABILITIES: CapabilitySet = frozenset(Capability)
NO_CAPABILITIES: CapabilitySet = frozenset()


class AuthenticatedIdentity(BaseModel):
    """Identity established by the login layer before the engine is invoked."""

    account_id: str = Field(min_length=1)
    role: AccountRole
    email: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_admin(self) -> bool:
        return self.role == AccountRole.ADMIN


class AccountEntitlementRecord(BaseModel):
    """Persisted subscription state for a single account."""

    account_id: str
    role: AccountRole
    external_customer_ref: Optional[str] = None
    external_subscription_ref: Optional[str] = None
    plan_id: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.NONE
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _require_subscription_ref(self) -> "AccountEntitlementRecord":
        # Immediate cancellation drops the live ref; the lineage lives on in history.
        if (
            self.status not in {SubscriptionStatus.NONE, SubscriptionStatus.CANCELED}
            and not self.external_subscription_ref
        ):
            raise ValueError(
                f"external_subscription_ref is required when status is {self.status.value}"
            )
        return self

    @classmethod
    def new(cls, account_id: str, role: AccountRole) -> "AccountEntitlementRecord":
        return cls(account_id=account_id, role=role)

    @property
    def claims_live_subscription(self) -> bool:
        """Whether the record says a processor subscription is still running."""

        return self.status not in TERMINAL_STATUSES and self.status != SubscriptionStatus.NONE

    def is_entitled(self, now: datetime) -> bool:
        return (
            self.status in ENTITLED_STATUSES
            and self.current_period_end is not None
            and self.current_period_end > now
        )


class EntitlementSnapshot(BaseModel):
    """Capabilities resolved for an identity at a given instant."""

    identity: AuthenticatedIdentity
    record: AccountEntitlementRecord
    capabilities: CapabilitySet
    evaluated_at: datetime
    reconciled: bool = False

    model_config = ConfigDict(frozen=True)

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities
