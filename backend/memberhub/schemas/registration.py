"""Pydantic v2 schemas for member registration and payment confirmation."""

import uuid
from datetime import date
from typing import Literal

from pydantic import BaseModel, EmailStr, Field, field_validator

from memberhub.billing.plans import VALID_PLAN_NAMES


class RegistrationRequest(BaseModel):
    """New member signing up for a membership plan."""

    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone: str | None = Field(None, max_length=50)
    membership_type: str

    @field_validator("membership_type")
    @classmethod
    def _known_plan(cls, value: str) -> str:
        value = value.upper()
        if value not in VALID_PLAN_NAMES:
            raise ValueError(f"Unknown membership type. Choose one of: {', '.join(sorted(VALID_PLAN_NAMES))}")
        return value


class RegistrationResponse(BaseModel):
    status: Literal["created", "partial"]
    user_id: uuid.UUID
    membership_id: uuid.UUID
    subscription_id: uuid.UUID | None = None
    client_secret: str | None = None
    publishable_key: str | None = None
    routed_entity: str | None = None
    prorated_amount: float
    next_billing_date: date
    billing_setup_required: bool = False
    access_token: str | None = None
    message: str


class PaymentConfirmRequest(BaseModel):
    subscription_id: uuid.UUID
    setup_intent_id: str = Field(..., min_length=1)


class PaymentConfirmResponse(BaseModel):
    subscription_id: uuid.UUID
    status: str
    is_provisional: bool
    stripe_subscription_id: str | None
    next_billing_date: date | None
    message: str
