"""Feature gating utilities coordinating capability enforcement."""
from .context import EntitlementContext
from .enforcement import require_capability
from .exceptions import FeatureGateError

__all__ = [
    "EntitlementContext",
    "FeatureGateError",
    "require_capability",
]
