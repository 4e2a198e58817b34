"""Convenience wrapper around entitlement snapshots for feature gating."""
from __future__ import annotations

from dataclasses import dataclass
from typing import List

from ..entitlements.models import Capability, EntitlementSnapshot, SubscriptionStatus
from .enforcement import require_capability


@dataclass(frozen=True)
class EntitlementContext:
    """Facade exposing gating-centric helpers for an account's snapshot."""

    snapshot: EntitlementSnapshot

    @property
    def account_id(self) -> str:
        return self.snapshot.identity.account_id

    @property
    def role(self):
        return self.snapshot.identity.role

    @property
    def status(self) -> SubscriptionStatus:
        return self.snapshot.record.status

    @property
    def capability_names(self) -> List[str]:
        return sorted(capability.value for capability in self.snapshot.capabilities)

    @property
    def listings_downgraded(self) -> bool:
        """Published listings of an unentitled gated account rank as downgraded."""

        return self.role.requires_subscription and not self.snapshot.capabilities

    def has(self, capability: Capability) -> bool:
        return self.snapshot.has(capability)

    def require(self, capability: Capability, *, error_code: str = "entitlement_required") -> None:
        """Ensure a capability is present before proceeding."""

        require_capability(self.snapshot.capabilities, capability, error_code=error_code)
