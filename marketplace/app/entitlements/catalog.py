"""Static catalog of purchasable subscription plans."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

from .models import AccountRole


@dataclass(frozen=True)
class PlanDefinition:
    """Describes a subscription plan and the roles it is offered to."""

    plan_id: str
    display_name: str
    eligible_roles: Tuple[AccountRole, ...]
    amount_cents: int
    currency: str = "USD"
    interval: str = "month"

    def is_offered_to(self, role: AccountRole) -> bool:
        return role in self.eligible_roles


PLAN_CATALOG: Dict[str, PlanDefinition] = {
    "provider": PlanDefinition(
        plan_id="provider",
        display_name="Service Provider",
        eligible_roles=(AccountRole.PROVIDER,),
        amount_cents=2000,
    ),
    "product_seller": PlanDefinition(
        plan_id="product_seller",
        display_name="Product Seller",
        eligible_roles=(AccountRole.SELLER,),
        amount_cents=2000,
    ),
}


def get_plan_definition(plan_id: str) -> PlanDefinition:
    """Return a plan definition, raising ``KeyError`` if unsupported."""

    try:
        return PLAN_CATALOG[plan_id]
    except KeyError as exc:
        raise KeyError(f"Unknown plan id: {plan_id}") from exc


def default_plan_for_role(role: AccountRole) -> PlanDefinition:
    for plan in PLAN_CATALOG.values():
        if plan.is_offered_to(role):
            return plan
    raise KeyError(f"No plan is offered to role {role.value}")
