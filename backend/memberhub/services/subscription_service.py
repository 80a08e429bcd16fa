"""Subscription service — member registration and first-payment confirmation."""

import calendar
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from memberhub.auth.security import hash_password
from memberhub.billing import stripe_client
from memberhub.billing.dunning import describe_decline
from memberhub.billing.plans import MembershipPlan, get_plan
from memberhub.billing.states import (
    MembershipStatus,
    SubscriptionStatus,
    apply_subscription_status,
)
from memberhub.billing.stripe_objects import field, object_id
from memberhub.billing.webhooks import set_membership_status
from memberhub.database import utcnow
from memberhub.exceptions import GatewayDeclineError, PaymentSetupError, RoutingError
from memberhub.models.membership import Membership
from memberhub.models.subscription import Subscription
from memberhub.models.user import User
from memberhub.routing.router import route_payment

logger = logging.getLogger(__name__)


@dataclass
class Proration:
    amount: float
    days_remaining: int
    days_in_month: int
    next_billing_date: datetime


@dataclass
class RegistrationResult:
    user: User
    membership: Membership
    proration: Proration
    subscription: Subscription | None = None
    client_secret: str | None = None
    routed_entity_name: str | None = None
    error: str | None = None

    @property
    def billing_setup_required(self) -> bool:
        return self.subscription is None


def first_of_next_month(today: date) -> datetime:
    if today.month == 12:
        return datetime(today.year + 1, 1, 1)
    return datetime(today.year, today.month + 1, 1)


def calculate_proration(monthly_price: float, today: date) -> Proration:
    """Charge for the rest of this month, inclusive of ``today``.

    Pence are rounded half up: £75 from 15 June (16 of 30 days) is £40.00.
    """
    days_in_month = calendar.monthrange(today.year, today.month)[1]
    days_remaining = days_in_month - today.day + 1
    pence = (
        Decimal(stripe_client.to_pence(monthly_price)) * days_remaining / days_in_month
    ).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return Proration(
        amount=float(pence) / 100,
        days_remaining=days_remaining,
        days_in_month=days_in_month,
        next_billing_date=first_of_next_month(today),
    )


async def register_member(
    db: AsyncSession,
    *,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    phone: str | None,
    plan: MembershipPlan,
    today: date | None = None,
) -> RegistrationResult:
    """Create the member, then try to set up billing.

    The account and PENDING_PAYMENT membership always persist. Routing or
    Stripe failures after that point yield a partial result
    (``billing_setup_required``) instead of an exception.
    """
    today = today or utcnow().date()
    proration = calculate_proration(plan.monthly_price, today)

    user = User(
        email=email,
        hashed_password=hash_password(password),
        first_name=first_name,
        last_name=last_name,
        phone=phone,
    )
    db.add(user)
    await db.flush()

    membership = Membership(
        user_id=user.id,
        membership_type=plan.name,
        status=MembershipStatus.PENDING_PAYMENT.value,
        monthly_price=plan.monthly_price,
        billing_day=1,
        next_billing_date=proration.next_billing_date,
    )
    db.add(membership)
    await db.flush()
    logger.info("Registered member %s (%s) on %s", user.id, email, plan.name)

    result = RegistrationResult(user=user, membership=membership, proration=proration)
    return await _start_billing_setup(db, result, plan)


async def _start_billing_setup(
    db: AsyncSession, result: RegistrationResult, plan: MembershipPlan
) -> RegistrationResult:
    """Route the membership and open a SetupIntent for the member's card.

    Failures are recorded on ``result.error`` and leave the account and
    membership untouched, so the step can be retried.
    """
    user = result.user
    proration = result.proration
    subscription_id = uuid.uuid4()
    try:
        decision = await route_payment(
            db, plan.monthly_price, membership_type=plan.name, subscription_id=None
        )
        customer = await stripe_client.create_customer(
            email=user.email, name=user.full_name, user_id=str(user.id), phone=user.phone
        )
        setup_intent = await stripe_client.create_setup_intent(
            customer.id,
            metadata={
                "dbSubscriptionId": str(subscription_id),
                "userId": str(user.id),
                "membershipType": plan.name,
                "routedEntityId": str(decision.selected_entity_id),
                "proratedAmount": f"{proration.amount:.2f}",
                "nextBillingDate": proration.next_billing_date.date().isoformat(),
            },
        )
    except RoutingError as exc:
        logger.error("Routing failed for member %s: %s", user.id, exc)
        result.error = str(exc)
        return result
    except stripe.StripeError as exc:
        logger.error("Stripe billing setup failed for member %s: %s", user.id, exc)
        result.error = "Payment setup is temporarily unavailable"
        return result

    subscription = Subscription(
        id=subscription_id,
        user_id=user.id,
        stripe_customer_id=customer.id,
        # Replaced by the real Stripe subscription id on confirmation
        stripe_subscription_id=setup_intent.id,
        membership_type=plan.name,
        monthly_price=plan.monthly_price,
        routed_entity_id=decision.selected_entity_id,
        status=SubscriptionStatus.PENDING_PAYMENT.value,
        next_billing_date=proration.next_billing_date,
    )
    db.add(subscription)
    await db.flush()
    decision.subscription_id = subscription.id
    await db.flush()

    result.subscription = subscription
    result.client_secret = setup_intent.client_secret
    result.routed_entity_name = next(
        (
            p["entity_name"]
            for p in decision.vat_position_snapshot
            if p["entity_id"] == str(decision.selected_entity_id)
        ),
        None,
    )
    return result


async def retry_billing_setup(
    db: AsyncSession, user: User, today: date | None = None
) -> RegistrationResult:
    """Set up billing for a member whose registration ended partial.

    Raises:
        PaymentSetupError: nothing is awaiting setup, or billing already exists.
    """
    result = await db.execute(
        select(Membership)
        .where(
            Membership.user_id == user.id,
            Membership.status == MembershipStatus.PENDING_PAYMENT.value,
        )
        .order_by(Membership.created_at.desc())
        .limit(1)
    )
    membership = result.scalar_one_or_none()
    if membership is None:
        raise PaymentSetupError("No membership is awaiting billing setup")

    existing = await db.execute(
        select(Subscription.id).where(
            Subscription.user_id == user.id,
            Subscription.status != SubscriptionStatus.CANCELLED.value,
        )
    )
    if existing.first() is not None:
        raise PaymentSetupError("Billing is already set up for this membership")

    plan = get_plan(membership.membership_type)
    if plan is None:
        raise PaymentSetupError(f"Unknown membership type {membership.membership_type}")

    proration = calculate_proration(plan.monthly_price, today or utcnow().date())
    membership.next_billing_date = proration.next_billing_date
    logger.info("Retrying billing setup for member %s on %s", user.id, plan.name)
    return await _start_billing_setup(
        db, RegistrationResult(user=user, membership=membership, proration=proration), plan
    )


def _parse_billing_date(raw: str | None, fallback: datetime | None) -> datetime:
    if raw:
        try:
            return datetime.fromisoformat(raw[:10])
        except ValueError:
            logger.warning("Bad nextBillingDate %r in setup metadata", raw)
    return fallback or first_of_next_month(utcnow().date())


async def confirm_payment_setup(
    db: AsyncSession, subscription: Subscription, setup_intent_id: str
) -> Subscription:
    """Finish signup after the member's card is saved.

    Charges the prorated first period as its own invoice, then starts the
    recurring Stripe subscription with a trial up to the next 1st. Local
    state only changes once every Stripe call has succeeded; the result is
    ACTIVE but provisional until the invoice webhook confirms the charge.

    Raises:
        PaymentSetupError: the SetupIntent is not complete or not ours.
        GatewayDeclineError: the prorated charge was declined.
    """
    if not subscription.has_placeholder_stripe_id:
        logger.info("Subscription %s already confirmed", subscription.id)
        return subscription

    setup_intent = await stripe_client.get_setup_intent(setup_intent_id)
    metadata = field(setup_intent, "metadata") or {}
    if field(setup_intent, "status") != "succeeded":
        raise PaymentSetupError("Payment method setup not completed")
    if field(metadata, "dbSubscriptionId") not in (None, str(subscription.id)):
        raise PaymentSetupError("Setup intent does not belong to this subscription")

    plan = get_plan(subscription.membership_type)
    if plan is None:
        raise PaymentSetupError(f"Unknown membership type {subscription.membership_type}")

    payment_method_id = object_id(field(setup_intent, "payment_method"))
    customer_id = subscription.stripe_customer_id or object_id(field(setup_intent, "customer"))
    prorated_amount = float(field(metadata, "proratedAmount") or 0)
    next_billing = _parse_billing_date(field(metadata, "nextBillingDate"), subscription.next_billing_date)
    billing_key = next_billing.date().isoformat()
    charge_metadata = {
        "dbSubscriptionId": str(subscription.id),
        "userId": str(subscription.user_id),
        "membershipType": subscription.membership_type,
        "reason": "prorated_first_period",
    }

    await stripe_client.set_default_payment_method(customer_id, payment_method_id)

    if prorated_amount > 0:
        # A retry after a partial failure reuses the invoice of the earlier attempt
        invoice = await stripe_client.find_invoice_by_metadata(
            customer_id,
            {"dbSubscriptionId": str(subscription.id), "reason": "prorated_first_period"},
        )
        if invoice is None:
            await stripe_client.create_invoice_item(
                customer_id,
                prorated_amount,
                description=f"Prorated membership ({utcnow().date().isoformat()} -> {billing_key})",
                metadata=charge_metadata,
                idempotency_key=f"prorate-item:{subscription.id}:{setup_intent_id}",
            )
            invoice = await stripe_client.create_invoice(
                customer_id,
                metadata=charge_metadata,
                idempotency_key=f"prorate-invoice:{subscription.id}:{setup_intent_id}",
            )
        if field(invoice, "status") == "paid":
            logger.info("Prorated invoice %s already paid, resuming setup", field(invoice, "id"))
        else:
            try:
                paid = await stripe_client.pay_invoice(field(invoice, "id"), payment_method_id)
            except stripe.CardError as exc:
                decline_code = field(exc.error, "decline_code") or exc.code
                reason = describe_decline(decline_code, exc.user_message)
                logger.warning("Prorated charge declined for subscription %s: %s", subscription.id, reason)
                raise GatewayDeclineError(reason, decline_code) from exc
            if field(paid, "status") != "paid":
                raise GatewayDeclineError(describe_decline(None, None))

    price_id = await stripe_client.get_or_create_monthly_price(plan.monthly_price, plan.display_name)
    stripe_sub = await stripe_client.create_subscription(
        customer_id,
        price_id,
        trial_end=next_billing,
        payment_method_id=payment_method_id,
        metadata={
            "userId": str(subscription.user_id),
            "membershipType": subscription.membership_type,
            "routedEntityId": str(subscription.routed_entity_id),
            "dbSubscriptionId": str(subscription.id),
        },
        idempotency_key=f"start-sub:{subscription.id}:{stripe_client.to_timestamp(next_billing)}",
    )

    subscription.stripe_subscription_id = stripe_sub.id
    subscription.stripe_customer_id = customer_id
    subscription.next_billing_date = next_billing
    # A webhook may already have confirmed the prorated charge
    confirmed = subscription.status == SubscriptionStatus.ACTIVE.value
    if apply_subscription_status(subscription, SubscriptionStatus.ACTIVE):
        subscription.is_provisional = not confirmed
        await set_membership_status(db, [subscription.user_id], MembershipStatus.ACTIVE, next_billing)
    await db.flush()

    logger.info(
        "Payment setup confirmed for subscription %s (Stripe %s, prorated £%.2f)",
        subscription.id,
        stripe_sub.id,
        prorated_amount,
    )
    return subscription
