"""Admin service — VAT dashboard summary and Stripe balance reporting."""

import json
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from memberhub.billing import stripe_client
from memberhub.billing.states import MembershipStatus, PaymentStatus
from memberhub.billing.stripe_objects import field, ts_to_naive
from memberhub.config import settings
from memberhub.database import utcnow
from memberhub.models.membership import Membership
from memberhub.models.payment import Payment
from memberhub.models.routing import RoutingDecision
from memberhub.models.system_setting import SystemSetting
from memberhub.routing.vat import ALERT_LEVELS, calculate_vat_positions

logger = logging.getLogger(__name__)

DASHBOARD_CACHE_KEY = "dashboard_summary"


async def _count(db: AsyncSession, stmt) -> int:
    result = await db.execute(stmt)
    return int(result.scalar_one() or 0)


async def build_dashboard(db: AsyncSession, now: datetime | None = None) -> dict[str, Any]:
    """Aggregate VAT positions and member/payment counters (uncached)."""
    now = now or utcnow()
    window_start = now - timedelta(days=30)
    positions = await calculate_vat_positions(db, now=now)

    membership_counts = dict(
        (
            await db.execute(
                select(Membership.status, func.count(Membership.id)).group_by(Membership.status)
            )
        ).all()
    )

    return {
        "generated_at": now.isoformat(),
        "total_revenue": round(sum(p.current_revenue for p in positions), 2),
        "total_headroom": round(sum(p.headroom for p in positions), 2),
        "entities_at_risk": sum(1 for p in positions if p.risk_level in ALERT_LEVELS),
        "active_members": int(membership_counts.get(MembershipStatus.ACTIVE.value, 0)),
        "suspended_members": int(membership_counts.get(MembershipStatus.SUSPENDED.value, 0)),
        "failed_payments_30d": await _count(
            db,
            select(func.count(Payment.id)).where(
                Payment.status == PaymentStatus.FAILED.value,
                Payment.created_at >= window_start,
            ),
        ),
        "routing_decisions_30d": await _count(
            db,
            select(func.count(RoutingDecision.id)).where(RoutingDecision.created_at >= window_start),
        ),
        "entities": [
            {
                "entity_id": str(p.entity_id),
                "entity_name": p.entity_name,
                "display_name": p.display_name,
                "current_revenue": p.current_revenue,
                "headroom": p.headroom,
                "risk_level": p.risk_level.value,
            }
            for p in positions
        ],
    }


async def _read_cached(db: AsyncSession, now: datetime) -> dict[str, Any] | None:
    result = await db.execute(select(SystemSetting).where(SystemSetting.key == DASHBOARD_CACHE_KEY))
    row = result.scalar_one_or_none()
    if row is None or row.expires_at is None or row.expires_at <= now:
        return None
    try:
        return json.loads(row.value)
    except ValueError:
        logger.warning("Discarding unreadable dashboard cache entry")
        return None


async def _write_cache(db: AsyncSession, summary: dict[str, Any], now: datetime) -> None:
    try:
        async with db.begin_nested():
            await db.execute(delete(SystemSetting).where(SystemSetting.key == DASHBOARD_CACHE_KEY))
            db.add(
                SystemSetting(
                    key=DASHBOARD_CACHE_KEY,
                    value=json.dumps(summary),
                    category="cache",
                    description="Admin dashboard summary",
                    expires_at=now + timedelta(seconds=settings.dashboard_cache_ttl_seconds),
                )
            )
    except SQLAlchemyError:
        logger.warning("Failed to cache dashboard summary", exc_info=True)


async def get_dashboard(
    db: AsyncSession, *, refresh: bool = False, now: datetime | None = None
) -> dict[str, Any]:
    """Dashboard summary, served from the settings cache while it is fresh.

    The returned dict carries ``cached`` so callers can tell the two apart.
    """
    now = now or utcnow()
    if not refresh:
        cached = await _read_cached(db, now)
        if cached is not None:
            return {**cached, "cached": True}

    summary = await build_dashboard(db, now=now)
    await _write_cache(db, summary, now)
    return {**summary, "cached": False}


async def list_payments(
    db: AsyncSession,
    *,
    status: str | None = None,
    entity_id=None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Payment], int]:
    query = select(Payment)
    count_query = select(func.count(Payment.id))
    if status is not None:
        query = query.where(Payment.status == status)
        count_query = count_query.where(Payment.status == status)
    if entity_id is not None:
        query = query.where(Payment.routed_entity_id == entity_id)
        count_query = count_query.where(Payment.routed_entity_id == entity_id)

    result = await db.execute(query.order_by(Payment.created_at.desc()).offset(offset).limit(limit))
    return list(result.scalars().all()), await _count(db, count_query)


async def list_routing_decisions(
    db: AsyncSession, *, entity_id=None, limit: int = 50, offset: int = 0
) -> tuple[list[RoutingDecision], int]:
    query = select(RoutingDecision)
    count_query = select(func.count(RoutingDecision.id))
    if entity_id is not None:
        query = query.where(RoutingDecision.selected_entity_id == entity_id)
        count_query = count_query.where(RoutingDecision.selected_entity_id == entity_id)

    result = await db.execute(
        query.order_by(RoutingDecision.created_at.desc()).offset(offset).limit(limit)
    )
    return list(result.scalars().all()), await _count(db, count_query)


def _amounts(entries: Any) -> list[dict[str, Any]]:
    return [
        {
            "amount": stripe_client.from_pence(field(entry, "amount")),
            "currency": field(entry, "currency", settings.currency),
        }
        for entry in entries or []
    ]


async def get_balance_report(payout_limit: int = 10) -> dict[str, Any]:
    """Stripe balance plus the most recent payouts, in pounds."""
    balance = await stripe_client.get_balance()
    payouts = await stripe_client.list_payouts(limit=payout_limit)
    return {
        "available": _amounts(field(balance, "available")),
        "pending": _amounts(field(balance, "pending")),
        "recent_payouts": [
            {
                "id": field(payout, "id"),
                "amount": stripe_client.from_pence(field(payout, "amount")),
                "currency": field(payout, "currency", settings.currency),
                "status": field(payout, "status", "unknown"),
                "arrival_date": ts_to_naive(field(payout, "arrival_date")),
            }
            for payout in payouts
        ],
    }
