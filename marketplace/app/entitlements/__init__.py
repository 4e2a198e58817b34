"""Entitlement records, plan catalog and capability resolution."""

from .catalog import PLAN_CATALOG, PlanDefinition, default_plan_for_role, get_plan_definition
from .models import (
    ENTITLED_STATUSES,
    FULL_CAPABILITIES,
    GATED_ROLES,
    NO_CAPABILITIES,
    TERMINAL_STATUSES,
    AccountEntitlementRecord,
    AccountRole,
    AuthenticatedIdentity,
    Capability,
    CapabilitySet,
    EntitlementSnapshot,
    SubscriptionStatus,
)
from .resolver import looks_stale, resolve
from .service import EntitlementService

__all__ = [
    "ENTITLED_STATUSES",
    "FULL_CAPABILITIES",
    "GATED_ROLES",
    "NO_CAPABILITIES",
    "PLAN_CATALOG",
    "TERMINAL_STATUSES",
    "AccountEntitlementRecord",
    "AccountRole",
    "AuthenticatedIdentity",
    "Capability",
    "CapabilitySet",
    "EntitlementService",
    "EntitlementSnapshot",
    "PlanDefinition",
    "SubscriptionStatus",
    "default_plan_for_role",
    "get_plan_definition",
    "looks_stale",
    "resolve",
]
