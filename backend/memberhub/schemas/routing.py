"""Pydantic v2 schemas for VAT positions and routing decisions."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class VATPositionResponse(BaseModel):
    entity_id: uuid.UUID
    entity_name: str
    display_name: str
    current_revenue: float
    vat_threshold: float
    headroom: float
    risk_level: str
    monthly_average: float
    projected_year_end: float
    payment_count: int = 0
    utilization: float | None = None


class VATPositionsResponse(BaseModel):
    vat_year_start: datetime
    vat_year_end: datetime
    safety_buffer: float
    positions: list[VATPositionResponse]


class AdminOverrideRequest(BaseModel):
    entity_id: uuid.UUID
    reason: str = Field(..., min_length=3, max_length=500)


class RoutingRequest(BaseModel):
    """Ask the router where a payment should go."""

    amount: float = Field(..., ge=0, le=100_000)
    membership_type: str | None = None
    override: AdminOverrideRequest | None = None


class RoutingDecisionResponse(BaseModel):
    id: uuid.UUID
    selected_entity_id: uuid.UUID
    subscription_id: uuid.UUID | None = None
    amount: float
    membership_type: str | None = None
    routing_reason: str
    routing_method: str
    confidence: str
    threshold_distance: float
    decision_time_ms: int
    override_actor: str | None = None
    vat_position_snapshot: list[dict]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoutingDecisionListResponse(BaseModel):
    items: list[RoutingDecisionResponse]
    total: int


class VATSnapshotAlert(BaseModel):
    entity_id: uuid.UUID
    risk_level: str
    total_revenue: float
    headroom_remaining: float


class VATSnapshotResponse(BaseModel):
    recorded: int
    alerts: list[VATSnapshotAlert]


class DashboardEntity(BaseModel):
    entity_id: uuid.UUID
    entity_name: str
    display_name: str
    current_revenue: float
    headroom: float
    risk_level: str


class DashboardResponse(BaseModel):
    generated_at: datetime
    cached: bool
    total_revenue: float
    total_headroom: float
    entities_at_risk: int
    active_members: int
    suspended_members: int
    failed_payments_30d: int
    routing_decisions_30d: int
    entities: list[DashboardEntity]
