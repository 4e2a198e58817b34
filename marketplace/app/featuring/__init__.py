"""Featured promotion of listings: purchase, confirmation and expiry."""

from .service import FeatureGrantManager, FeatureGrantResult, GrantOutcome
from .sweeper import ExpirationSweeper, SweepSummary

__all__ = [
    "ExpirationSweeper",
    "FeatureGrantManager",
    "FeatureGrantResult",
    "GrantOutcome",
    "SweepSummary",
]
