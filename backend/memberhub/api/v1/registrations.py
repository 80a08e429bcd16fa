"""Registration API router — member signup with billing setup."""

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from memberhub.api.deps import get_current_user, get_db
from memberhub.auth.dependencies import ADMIN_ROLE
from memberhub.auth.security import create_access_token
from memberhub.billing.plans import get_plan
from memberhub.config import settings
from memberhub.exceptions import PaymentSetupError
from memberhub.models.user import User
from memberhub.schemas.registration import RegistrationRequest, RegistrationResponse
from memberhub.services.subscription_service import (
    RegistrationResult,
    register_member,
    retry_billing_setup,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/registrations", tags=["registrations"])


def _to_response(
    result: RegistrationResult, response: Response, access_token: str | None = None
) -> RegistrationResponse:
    if result.billing_setup_required:
        response.status_code = status.HTTP_202_ACCEPTED
        return RegistrationResponse(
            status="partial",
            user_id=result.user.id,
            membership_id=result.membership.id,
            prorated_amount=result.proration.amount,
            next_billing_date=result.proration.next_billing_date.date(),
            billing_setup_required=True,
            access_token=access_token,
            message=f"Account created but billing setup failed: {result.error}",
        )

    return RegistrationResponse(
        status="created",
        user_id=result.user.id,
        membership_id=result.membership.id,
        subscription_id=result.subscription.id,
        client_secret=result.client_secret,
        publishable_key=settings.stripe_publishable_key or None,
        routed_entity=result.routed_entity_name,
        prorated_amount=result.proration.amount,
        next_billing_date=result.proration.next_billing_date.date(),
        access_token=access_token,
        message="Account created. Confirm your payment method to activate the membership.",
    )


@router.post("", response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
async def create_registration(
    body: RegistrationRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
) -> RegistrationResponse:
    """Create a member account and start payment-method setup.

    Returns 202 with ``status="partial"`` when the account was created but
    billing could not be set up; the member retries through
    ``POST /registrations/{user_id}/billing``.
    """
    existing = await db.execute(select(User.id).where(User.email == body.email))
    if existing.scalar_one_or_none() is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered",
        )

    plan = get_plan(body.membership_type)
    if plan is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown membership type: {body.membership_type}",
        )

    result = await register_member(
        db,
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
        plan=plan,
    )
    token = create_access_token(str(result.user.id), result.user.role)
    return _to_response(result, response, token)


@router.post("/{user_id}/billing", response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
async def retry_registration_billing(
    user_id: uuid.UUID,
    response: Response,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RegistrationResponse:
    """Retry billing setup for an account whose registration ended partial."""
    if user_id != current_user.id and current_user.role != ADMIN_ROLE:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Member not found")
    member = current_user if user_id == current_user.id else await db.get(User, user_id)
    if member is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Member not found")

    try:
        result = await retry_billing_setup(db, member)
    except PaymentSetupError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e
    return _to_response(result, response)
