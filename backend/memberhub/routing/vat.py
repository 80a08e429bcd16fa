"""VAT position calculator — revenue, headroom and risk per business entity.

The UK VAT year used here runs 1 April to 31 March. Revenue counts every
CONFIRMED payment routed to an entity whose processed time (falling back to
its created time) lies inside the current VAT year.
"""

import logging
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from memberhub.billing.states import PaymentStatus
from memberhub.database import utcnow
from memberhub.models.business_entity import BusinessEntity
from memberhub.models.payment import Payment
from memberhub.models.routing import VATCalculation

logger = logging.getLogger(__name__)


class RiskLevel(str, Enum):
    """VAT exposure tiers, ordered from safest to breached."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"
    EXCEEDED = "EXCEEDED"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank >= other.rank


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL, RiskLevel.EXCEEDED]

# (minimum revenue/threshold percentage, risk) checked top-down
RISK_BANDS: list[tuple[float, RiskLevel]] = [
    (100.0, RiskLevel.EXCEEDED),
    (94.0, RiskLevel.CRITICAL),  # ~£85k of £90k
    (89.0, RiskLevel.HIGH),  # ~£80k
    (78.0, RiskLevel.MEDIUM),  # ~£70k
]

ALERT_LEVELS = {RiskLevel.HIGH, RiskLevel.CRITICAL, RiskLevel.EXCEEDED}


@dataclass(frozen=True)
class VATPosition:
    """One entity's VAT standing at a point in time."""

    entity_id: uuid.UUID
    entity_name: str
    display_name: str
    current_revenue: float
    vat_threshold: float
    headroom: float
    risk_level: RiskLevel
    monthly_average: float
    projected_year_end: float
    payment_count: int = 0

    @property
    def utilization(self) -> float:
        """Fraction of the threshold already used (0.0 - 1.0+)."""
        if self.vat_threshold <= 0:
            return 1.0
        return (self.vat_threshold - self.headroom) / self.vat_threshold

    def to_snapshot(self) -> dict[str, Any]:
        """JSON-safe dict for audit snapshots and API payloads."""
        data = asdict(self)
        data["entity_id"] = str(self.entity_id)
        data["risk_level"] = self.risk_level.value
        return data


def vat_year_bounds(now: datetime) -> tuple[datetime, datetime]:
    """Return ``[start, end)`` of the VAT year containing ``now``."""
    start = datetime(now.year, 4, 1)
    if now < start:
        start = datetime(now.year - 1, 4, 1)
    return start, datetime(start.year + 1, 4, 1)


def months_elapsed(start: datetime, now: datetime) -> int:
    """Whole calendar months since ``start``, never less than 1."""
    diff = (now.year - start.year) * 12 + (now.month - start.month)
    return max(1, diff)


def classify_risk(revenue: float, threshold: float) -> RiskLevel:
    """Map revenue/threshold to a risk tier. Monotonic in ``revenue``."""
    if threshold <= 0:
        return RiskLevel.EXCEEDED
    percentage = revenue / threshold * 100
    for minimum, level in RISK_BANDS:
        if percentage >= minimum:
            return level
    return RiskLevel.LOW


def build_position(
    entity: BusinessEntity,
    revenue: float,
    payment_count: int,
    now: datetime,
) -> VATPosition:
    """Derive a VATPosition from an entity and its VAT-year revenue."""
    start, _ = vat_year_bounds(now)
    elapsed = months_elapsed(start, now)
    threshold = float(entity.vat_threshold)
    monthly_average = revenue / elapsed if revenue else 0.0
    return VATPosition(
        entity_id=entity.id,
        entity_name=entity.name,
        display_name=entity.display_name,
        current_revenue=round(revenue, 2),
        vat_threshold=threshold,
        headroom=round(threshold - revenue, 2),
        risk_level=classify_risk(revenue, threshold),
        monthly_average=round(monthly_average, 2),
        projected_year_end=round(revenue + monthly_average * max(0, 12 - elapsed), 2),
        payment_count=payment_count,
    )


async def _revenue_by_entity(
    db: AsyncSession, start: datetime, end: datetime
) -> dict[uuid.UUID, tuple[float, int]]:
    booked_at = func.coalesce(Payment.processed_at, Payment.created_at)
    result = await db.execute(
        select(
            Payment.routed_entity_id,
            func.coalesce(func.sum(Payment.amount), 0),
            func.count(Payment.id),
        )
        .where(
            Payment.status == PaymentStatus.CONFIRMED.value,
            booked_at >= start,
            booked_at < end,
        )
        .group_by(Payment.routed_entity_id)
    )
    return {row[0]: (float(row[1] or 0), int(row[2])) for row in result.all()}


async def _update_revenue_cache(db: AsyncSession, positions: list[VATPosition]) -> None:
    """Write each entity's derived revenue back onto its row. Best-effort."""
    try:
        async with db.begin_nested():
            for position in positions:
                await db.execute(
                    update(BusinessEntity)
                    .where(BusinessEntity.id == position.entity_id)
                    .values(current_revenue=position.current_revenue)
                )
    except SQLAlchemyError:
        logger.warning("Failed to update entity revenue cache", exc_info=True)


async def calculate_vat_positions(
    db: AsyncSession, now: datetime | None = None
) -> list[VATPosition]:
    """Compute the VAT position of every ACTIVE business entity.

    Positions are returned in descending headroom order (ties by name).
    The entity revenue cache is refreshed as a side effect.
    """
    started = time.perf_counter()
    now = now or utcnow()
    start, end = vat_year_bounds(now)

    result = await db.execute(
        select(BusinessEntity).where(BusinessEntity.status == "ACTIVE")
    )
    entities = list(result.scalars().all())
    revenue = await _revenue_by_entity(db, start, end)

    positions = [
        build_position(entity, *revenue.get(entity.id, (0.0, 0)), now=now)
        for entity in entities
    ]
    positions.sort(key=lambda p: (-p.headroom, p.entity_name))

    await _update_revenue_cache(db, positions)

    logger.debug(
        "VAT calculation for %d entities completed in %.1fms",
        len(positions),
        (time.perf_counter() - started) * 1000,
    )
    return positions


async def record_vat_snapshot(
    db: AsyncSession, now: datetime | None = None
) -> list[VATCalculation]:
    """Persist one VATCalculation per entity and log threshold alerts.

    Intended to run on a schedule (see ``scripts/record_vat_snapshot.py``).
    """
    now = now or utcnow()
    start, end = vat_year_bounds(now)
    positions = await calculate_vat_positions(db, now=now)

    rows: list[VATCalculation] = []
    for position in positions:
        row = VATCalculation(
            entity_id=position.entity_id,
            calculation_date=now,
            vat_year_start=start,
            vat_year_end=end,
            total_revenue=position.current_revenue,
            monthly_average=position.monthly_average,
            projected_year_end=position.projected_year_end,
            headroom_remaining=position.headroom,
            risk_level=position.risk_level.value,
            payment_count=position.payment_count,
        )
        db.add(row)
        rows.append(row)

        if position.risk_level == RiskLevel.EXCEEDED:
            logger.error(
                "VAT threshold exceeded for %s: revenue £%.2f of £%.2f",
                position.entity_name,
                position.current_revenue,
                position.vat_threshold,
            )
        elif position.risk_level in ALERT_LEVELS:
            logger.warning(
                "VAT risk %s for %s: £%.2f headroom remaining",
                position.risk_level.value,
                position.entity_name,
                position.headroom,
            )

    await db.flush()
    logger.info("Recorded VAT snapshot for %d entities", len(rows))
    return rows
