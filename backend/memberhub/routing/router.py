"""Entity router — chooses which business entity receives a payment."""

import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from memberhub.billing.plans import preferred_entities_for
from memberhub.config import settings
from memberhub.exceptions import InvalidEntityError, NoViableEntityError
from memberhub.models.business_entity import ServiceOffering
from memberhub.models.routing import RoutingDecision
from memberhub.routing.vat import RiskLevel, VATPosition, calculate_vat_positions

logger = logging.getLogger(__name__)

BALANCED_UTILIZATION = (0.30, 0.70)


class RoutingMethod(str, Enum):
    SERVICE_PREFERENCE = "SERVICE_PREFERENCE"
    LOAD_BALANCING = "LOAD_BALANCING"
    HEADROOM_OPTIMIZED = "HEADROOM_OPTIMIZED"
    MANUAL_OVERRIDE = "MANUAL_OVERRIDE"


class RoutingConfidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    FORCED = "FORCED"


@dataclass(frozen=True)
class AdminOverride:
    """Force routing to a specific entity."""

    entity_id: uuid.UUID
    reason: str
    actor: str | None = None


def viable_entities(
    positions: list[VATPosition], amount: float, safety_buffer: float
) -> list[VATPosition]:
    """Entities that can take ``amount`` and still keep ``safety_buffer`` spare."""
    return [
        p
        for p in positions
        if p.headroom - safety_buffer >= amount and p.risk_level != RiskLevel.EXCEEDED
    ]


def matches_preference(entity_name: str, preferred: str) -> bool:
    """True if an entity slug satisfies a configured preference name.

    ``aura_mma`` matches ``aura_mma`` as well as any entity whose name
    contains ``mma``.
    """
    name = entity_name.lower()
    preferred = preferred.lower()
    return name == preferred or preferred.removeprefix("aura_") in name


def _by_headroom(positions: list[VATPosition]) -> list[VATPosition]:
    return sorted(positions, key=lambda p: (-p.headroom, p.entity_name))


async def _has_catalog_preference(db: AsyncSession, entity_id: uuid.UUID) -> bool:
    result = await db.execute(
        select(ServiceOffering.id)
        .where(
            ServiceOffering.preferred_entity_id == entity_id,
            ServiceOffering.is_active.is_(True),
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def find_preferred_entity(
    db: AsyncSession, viable: list[VATPosition], membership_type: str | None
) -> VATPosition | None:
    """Service-preference rule.

    First pass only accepts entities that an active catalog service names as
    preferred; the second pass falls back to a plain name match.
    """
    preferred = preferred_entities_for(membership_type)
    if not preferred:
        return None

    for name in preferred:
        for position in viable:
            if matches_preference(position.entity_name, name) and await _has_catalog_preference(
                db, position.entity_id
            ):
                return position

    for name in preferred:
        for position in viable:
            if matches_preference(position.entity_name, name):
                return position
    return None


def find_balanced_entity(viable: list[VATPosition]) -> VATPosition | None:
    """Load-balancing rule: 30-70% utilization, largest headroom wins."""
    low, high = BALANCED_UTILIZATION
    balanced = [p for p in viable if low <= p.utilization <= high]
    return _by_headroom(balanced)[0] if balanced else None


def calculate_confidence(selected: VATPosition, viable_count: int) -> RoutingConfidence:
    if viable_count == 1:
        return RoutingConfidence.FORCED

    headroom = selected.headroom
    risk = selected.risk_level
    if headroom > 30_000 and risk == RiskLevel.LOW:
        return RoutingConfidence.HIGH
    if headroom > 15_000 and risk in (RiskLevel.LOW, RiskLevel.MEDIUM):
        return RoutingConfidence.MEDIUM
    if headroom > 5_000 and risk != RiskLevel.CRITICAL:
        return RoutingConfidence.MEDIUM
    return RoutingConfidence.LOW


def build_reason(
    selected: VATPosition,
    viable: list[VATPosition],
    membership_type: str | None,
) -> str:
    """Human-readable justification, e.g. ``Low VAT risk + £42,000 remaining capacity``."""
    reasons: list[str] = []
    if any(matches_preference(selected.entity_name, n) for n in preferred_entities_for(membership_type)):
        reasons.append("Service type alignment")
    if selected.headroom == max(p.headroom for p in viable):
        reasons.append("Maximum VAT headroom")
    if selected.risk_level == RiskLevel.LOW:
        reasons.append("Low VAT risk")
    reasons.append(f"£{selected.headroom:,.0f} remaining capacity")
    return " + ".join(reasons)


async def route_payment(
    db: AsyncSession,
    amount: float,
    membership_type: str | None = None,
    admin_override: AdminOverride | None = None,
    subscription_id: uuid.UUID | None = None,
) -> RoutingDecision:
    """Choose the business entity for a payment and persist the audit row.

    Raises:
        ValueError: ``amount`` is negative.
        InvalidEntityError: the override names an unknown or inactive entity.
        NoViableEntityError: no entity can take the payment safely.
    """
    if amount < 0:
        raise ValueError("amount must be non-negative")

    started = time.perf_counter()
    positions = await calculate_vat_positions(db)

    if admin_override is not None:
        selected = next((p for p in positions if p.entity_id == admin_override.entity_id), None)
        if selected is None:
            raise InvalidEntityError(admin_override.entity_id)
        method = RoutingMethod.MANUAL_OVERRIDE
        confidence = RoutingConfidence.FORCED
        reason = f"Admin override: {admin_override.reason}"
    else:
        safety_buffer = settings.safety_buffer_gbp
        viable = viable_entities(positions, amount, safety_buffer)
        if not viable:
            logger.error(
                "No viable entity for £%.2f (%s); %d entities evaluated",
                amount,
                membership_type or "no membership type",
                len(positions),
            )
            raise NoViableEntityError(amount, safety_buffer)

        selected = await find_preferred_entity(db, viable, membership_type)
        method = RoutingMethod.SERVICE_PREFERENCE
        if selected is None:
            selected = find_balanced_entity(viable)
            method = RoutingMethod.LOAD_BALANCING
        if selected is None:
            selected = _by_headroom(viable)[0]
            method = RoutingMethod.HEADROOM_OPTIMIZED

        confidence = calculate_confidence(selected, len(viable))
        reason = build_reason(selected, viable, membership_type)

    decision = RoutingDecision(
        selected_entity_id=selected.entity_id,
        subscription_id=subscription_id,
        amount=amount,
        membership_type=membership_type,
        routing_reason=reason,
        routing_method=method.value,
        confidence=confidence.value,
        threshold_distance=selected.headroom,
        vat_position_snapshot=[p.to_snapshot() for p in positions],
        decision_time_ms=int((time.perf_counter() - started) * 1000),
        override_actor=admin_override.actor if admin_override else None,
    )
    db.add(decision)
    await db.flush()

    logger.info(
        "Routed £%.2f (%s) to %s via %s [%s]: %s",
        amount,
        membership_type or "-",
        selected.entity_name,
        method.value,
        confidence.value,
        reason,
    )
    return decision
