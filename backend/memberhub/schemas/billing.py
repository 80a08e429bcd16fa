"""Pydantic v2 schemas for payments, backfill and Stripe reporting."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class PaymentResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    amount: float
    currency: str
    status: str
    description: str
    routed_entity_id: uuid.UUID
    failure_reason: str | None = None
    retry_count: int
    stripe_invoice_id: str | None = None
    processed_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentListResponse(BaseModel):
    items: list[PaymentResponse]
    total: int


class BackfillRequest(BaseModel):
    since: datetime
    customer_ids: list[str] | None = Field(None, max_length=100)


class BackfillFailure(BaseModel):
    invoice_id: str | None
    customer_id: str | None = None
    subscription_id: str | None = None
    error: str


class BackfillResponse(BaseModel):
    examined: int
    imported: int
    payments_backfilled: int
    skipped_existing: int
    ignored: int
    failures: list[BackfillFailure]


class BalanceAmount(BaseModel):
    amount: float
    currency: str


class PayoutSummary(BaseModel):
    id: str
    amount: float
    currency: str
    status: str
    arrival_date: datetime | None = None


class BalanceReportResponse(BaseModel):
    available: list[BalanceAmount]
    pending: list[BalanceAmount]
    recent_payouts: list[PayoutSummary]
