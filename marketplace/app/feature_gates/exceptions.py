"""Gating failures raised before a capability-protected write."""
from __future__ import annotations

from typing import Any, Mapping, Optional

from fastapi import status

from ..billing.errors import EngineError
from ..entitlements.models import Capability


class FeatureGateError(EngineError):
    """The caller's entitlement does not grant ``capability``; always a hard 403."""

    code = "entitlement_required"
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(
        self,
        capability: Capability,
        message: str,
        *,
        code: Optional[str] = None,
        detail: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message, detail={"missing_capability": capability.value, **(detail or {})})
        self.capability = capability
        if code:
            self.code = code
