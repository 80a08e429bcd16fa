"""Admin API router — VAT positions, routing, reconciliation and reporting.

Every endpoint requires the ``admin`` role.
"""

import logging
import uuid

import stripe
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from memberhub.api.deps import get_db, get_notifier, require_admin
from memberhub.billing.backfill import backfill_paid_invoices
from memberhub.billing.notifications import Notifier
from memberhub.config import settings
from memberhub.database import utcnow
from memberhub.exceptions import InvalidEntityError, NoViableEntityError
from memberhub.models.user import User
from memberhub.routing.router import AdminOverride, route_payment
from memberhub.routing.vat import (
    ALERT_LEVELS,
    RiskLevel,
    calculate_vat_positions,
    record_vat_snapshot,
    vat_year_bounds,
)
from memberhub.schemas.billing import (
    BackfillRequest,
    BackfillResponse,
    BalanceReportResponse,
    PaymentListResponse,
    PaymentResponse,
)
from memberhub.schemas.routing import (
    DashboardResponse,
    RoutingDecisionListResponse,
    RoutingDecisionResponse,
    RoutingRequest,
    VATPositionResponse,
    VATPositionsResponse,
    VATSnapshotAlert,
    VATSnapshotResponse,
)
from memberhub.services import admin_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# VAT positions & dashboard
# ---------------------------------------------------------------------------


@router.get("/vat-positions", response_model=VATPositionsResponse)
async def get_vat_positions(
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> VATPositionsResponse:
    """Current VAT standing of every active business entity."""
    now = utcnow()
    start, end = vat_year_bounds(now)
    positions = await calculate_vat_positions(db, now=now)
    return VATPositionsResponse(
        vat_year_start=start,
        vat_year_end=end,
        safety_buffer=settings.safety_buffer_gbp,
        positions=[
            VATPositionResponse(**p.to_snapshot(), utilization=round(p.utilization, 4))
            for p in positions
        ],
    )


@router.get("/dashboard", response_model=DashboardResponse)
async def get_dashboard(
    refresh: bool = Query(False, description="Bypass the cached summary"),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> DashboardResponse:
    summary = await admin_service.get_dashboard(db, refresh=refresh)
    return DashboardResponse(**summary)


@router.post("/vat-snapshots", response_model=VATSnapshotResponse, status_code=status.HTTP_201_CREATED)
async def create_vat_snapshot(
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> VATSnapshotResponse:
    """Record today's VAT calculation for every entity."""
    rows = await record_vat_snapshot(db)
    return VATSnapshotResponse(
        recorded=len(rows),
        alerts=[
            VATSnapshotAlert(
                entity_id=row.entity_id,
                risk_level=row.risk_level,
                total_revenue=row.total_revenue,
                headroom_remaining=row.headroom_remaining,
            )
            for row in rows
            if RiskLevel(row.risk_level) in ALERT_LEVELS
        ],
    )


# ---------------------------------------------------------------------------
# Routing decisions
# ---------------------------------------------------------------------------


@router.post("/routing-decisions", response_model=RoutingDecisionResponse, status_code=status.HTTP_201_CREATED)
async def create_routing_decision(
    body: RoutingRequest,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> RoutingDecisionResponse:
    """Route a payment amount, optionally forcing the entity."""
    override = None
    if body.override is not None:
        override = AdminOverride(
            entity_id=body.override.entity_id,
            reason=body.override.reason,
            actor=admin.email,
        )

    try:
        decision = await route_payment(
            db,
            body.amount,
            membership_type=body.membership_type,
            admin_override=override,
        )
    except InvalidEntityError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e
    except NoViableEntityError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e

    await db.refresh(decision)
    return RoutingDecisionResponse.model_validate(decision)


@router.get("/routing-decisions", response_model=RoutingDecisionListResponse)
async def list_routing_decisions(
    entity_id: uuid.UUID | None = Query(None, description="Filter by selected entity"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> RoutingDecisionListResponse:
    """Routing audit trail, newest first."""
    decisions, total = await admin_service.list_routing_decisions(
        db, entity_id=entity_id, limit=limit, offset=offset
    )
    return RoutingDecisionListResponse(
        items=[RoutingDecisionResponse.model_validate(d) for d in decisions],
        total=total,
    )


# ---------------------------------------------------------------------------
# Payments & reconciliation
# ---------------------------------------------------------------------------


@router.get("/payments", response_model=PaymentListResponse)
async def list_payments(
    payment_status: str | None = Query(None, alias="status", description="Filter by payment status"),
    entity_id: uuid.UUID | None = Query(None, description="Filter by routed entity"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> PaymentListResponse:
    payments, total = await admin_service.list_payments(
        db,
        status=payment_status.upper() if payment_status else None,
        entity_id=entity_id,
        limit=limit,
        offset=offset,
    )
    return PaymentListResponse(
        items=[PaymentResponse.model_validate(p) for p in payments],
        total=total,
    )


@router.post("/backfill", response_model=BackfillResponse)
async def run_backfill(
    body: BackfillRequest,
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    admin: User = Depends(require_admin),
) -> BackfillResponse:
    """Import paid Stripe invoices that reconciliation never recorded."""
    try:
        report = await backfill_paid_invoices(
            db, body.since, customer_ids=body.customer_ids, notifier=notifier
        )
    except stripe.StripeError as e:
        logger.error("Stripe error during backfill: %s", e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment service unavailable",
        ) from e

    logger.info("Backfill triggered by %s", admin.email)
    return BackfillResponse(
        examined=report.examined,
        imported=report.imported,
        payments_backfilled=report.payments_backfilled,
        skipped_existing=report.skipped_existing,
        ignored=report.ignored,
        failures=report.failures,
    )


@router.get("/balance", response_model=BalanceReportResponse)
async def get_balance_report(
    admin: User = Depends(require_admin),
) -> BalanceReportResponse:
    """Stripe balance and recent payouts."""
    try:
        report = await admin_service.get_balance_report()
    except stripe.StripeError as e:
        logger.error("Stripe error fetching balance: %s", e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment service unavailable",
        ) from e
    return BalanceReportResponse(**report)
