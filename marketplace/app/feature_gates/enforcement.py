"""Helpers for enforcing capability checks on API and service layers."""
from __future__ import annotations

from typing import AbstractSet, Optional

from ..entitlements.models import Capability
from .exceptions import FeatureGateError


def require_capability(
    capabilities: AbstractSet[Capability],
    capability: Capability,
    *,
    error_code: str = "entitlement_required",
    message: Optional[str] = None,
) -> None:
    """Ensure a capability was granted before a gated write proceeds.

    Parameters
    ----------
    capabilities:
        The capability set returned by the entitlement resolver.
    capability:
        The gated action the caller is about to perform.
    error_code:
        Optional override for the surfaced error code. Defaults to
        ``"entitlement_required"``.
    message:
        Optional human-friendly message explaining the failure. If omitted, a
        default message mentioning the missing capability is used.
    """

    if capability in capabilities:
        return

    failure_message = message or f"An active subscription is required to {capability.value.replace('_', ' ')}."
    raise FeatureGateError(capability, failure_message, code=error_code)
