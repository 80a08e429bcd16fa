"""Membership plan definitions — pricing and preferred billing entities."""

from dataclasses import dataclass


@dataclass(frozen=True)
class MembershipPlan:
    """A purchasable membership type."""

    name: str
    display_name: str
    monthly_price: float  # whole pounds
    # Entity names (BusinessEntity.name) that should bill this service, in order
    preferred_entities: tuple[str, ...]
    description: str = ""


PLANS: dict[str, MembershipPlan] = {
    "WEEKEND_ADULT": MembershipPlan(
        name="WEEKEND_ADULT",
        display_name="Weekend Warrior (Adult)",
        monthly_price=55.0,
        preferred_entities=("aura_mma",),
        description="Weekend classes only",
    ),
    "WEEKEND_UNDER18": MembershipPlan(
        name="WEEKEND_UNDER18",
        display_name="Weekend Warrior (Under 18)",
        monthly_price=40.0,
        preferred_entities=("aura_mma",),
        description="Weekend classes for juniors",
    ),
    "FULL_ADULT": MembershipPlan(
        name="FULL_ADULT",
        display_name="Full Access (Adult)",
        monthly_price=75.0,
        preferred_entities=("aura_mma",),
        description="Unlimited classes, all disciplines",
    ),
    "FULL_UNDER18": MembershipPlan(
        name="FULL_UNDER18",
        display_name="Full Access (Under 18)",
        monthly_price=55.0,
        preferred_entities=("aura_mma",),
        description="Unlimited junior classes",
    ),
    "PERSONAL_TRAINING": MembershipPlan(
        name="PERSONAL_TRAINING",
        display_name="Personal Training",
        monthly_price=120.0,
        preferred_entities=("aura_tuition",),
        description="Four one-to-one sessions per month",
    ),
    "WOMENS_CLASSES": MembershipPlan(
        name="WOMENS_CLASSES",
        display_name="Women's Classes",
        monthly_price=25.0,
        preferred_entities=("aura_womens",),
        description="Women-only sessions",
    ),
    "WELLNESS_PACKAGE": MembershipPlan(
        name="WELLNESS_PACKAGE",
        display_name="Wellness Package",
        monthly_price=95.0,
        preferred_entities=("aura_wellness",),
        description="Sauna, recovery and nutrition",
    ),
}

VALID_PLAN_NAMES: set[str] = set(PLANS.keys())


def get_plan(plan_name: str) -> MembershipPlan | None:
    """Get a plan by name. Returns None if unknown."""
    return PLANS.get(plan_name)


def preferred_entities_for(membership_type: str | None) -> tuple[str, ...]:
    """Preferred entity names for a membership type (empty if unknown)."""
    if not membership_type:
        return ()
    plan = PLANS.get(membership_type)
    return plan.preferred_entities if plan else ()
