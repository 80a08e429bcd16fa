"""Payments API router — confirm a member's saved card and start billing."""

import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from memberhub.api.deps import get_current_user, get_db
from memberhub.auth.dependencies import ADMIN_ROLE
from memberhub.exceptions import GatewayDeclineError, PaymentSetupError
from memberhub.models.subscription import Subscription
from memberhub.models.user import User
from memberhub.schemas.registration import PaymentConfirmRequest, PaymentConfirmResponse
from memberhub.services.subscription_service import confirm_payment_setup

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


@router.post("/confirm", response_model=PaymentConfirmResponse)
async def confirm_payment(
    body: PaymentConfirmRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> PaymentConfirmResponse:
    """Charge the prorated first period and start the monthly subscription.

    A declined card returns 402 with the reason and leaves the membership
    pending so the member can try another card.
    """
    subscription = await db.get(Subscription, body.subscription_id)
    if subscription is None or (
        subscription.user_id != current_user.id and current_user.role != ADMIN_ROLE
    ):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found",
        )

    try:
        subscription = await confirm_payment_setup(db, subscription, body.setup_intent_id)
    except GatewayDeclineError as e:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=e.reason,
        ) from e
    except PaymentSetupError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e
    except stripe.StripeError as e:
        logger.error("Stripe error confirming subscription %s: %s", body.subscription_id, e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment service unavailable",
        ) from e

    return PaymentConfirmResponse(
        subscription_id=subscription.id,
        status=subscription.status,
        is_provisional=subscription.is_provisional,
        stripe_subscription_id=subscription.stripe_subscription_id,
        next_billing_date=subscription.next_billing_date.date() if subscription.next_billing_date else None,
        message="Membership active. Your first payment is being confirmed.",
    )
