"""Stripe webhook event handlers — reconcile payment lifecycle into local state.

Stripe delivers events at least once, in no guaranteed order, and payload
shapes vary across API versions. Every handler here is safe to replay:

* the Stripe invoice id is the idempotency key for Invoice and Payment rows;
* a failure arriving after a success for the same invoice is ignored;
* period fields fall back to stored values when the event lacks them.

Mapping failures raise :class:`SubscriptionMappingError` so the webhook
endpoint returns non-2xx and Stripe redelivers. Notification dispatch and
decline enrichment are best-effort and never abort a handler.
"""

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import stripe
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from memberhub.billing import stripe_client
from memberhub.billing.dunning import (
    clear_dunning_flag,
    enrich_decline_reason,
    is_dunning_suspended,
    set_dunning_flag,
)
from memberhub.billing.mapping import (
    FAILURE_CHAIN,
    PAYMENT_CHAIN,
    MappingContext,
    MappingResult,
    get_by_stripe_id,
    resolve_subscription,
)
from memberhub.billing.notifications import (
    NotificationKind,
    Notifier,
    dispatch_safely,
    get_notifier,
)
from memberhub.billing.plans import get_plan
from memberhub.billing.states import (
    MembershipStatus,
    PaymentStatus,
    SubscriptionStatus,
    apply_subscription_status,
    can_transition_payment,
    derive_membership_status,
    normalize_gateway_status,
)
from memberhub.billing.stripe_client import from_pence
from memberhub.billing.stripe_objects import (
    field,
    invoice_payment_intent_id,
    invoice_period,
    subscription_period,
    ts_to_naive,
)
from memberhub.config import settings
from memberhub.database import insert_ignoring_conflict, utcnow
from memberhub.exceptions import SubscriptionMappingError
from memberhub.models.membership import Membership
from memberhub.models.payment import Payment, build_description, parse_description_tags
from memberhub.models.subscription import Invoice, Subscription
from memberhub.models.user import User

logger = logging.getLogger(__name__)

PAYMENT_LABEL = "Monthly membership payment"
PENDING_CHANGE_KEYS = ["pendingMembershipType", "pendingApplyAt"]

# Outcomes of record_paid_invoice
IGNORED = "ignored"
CREATED = "created"
DUPLICATE = "duplicate"
PAYMENT_BACKFILLED = "payment_backfilled"


# -- Lookups ----------------------------------------------------------------


async def get_invoice_row(db: AsyncSession, stripe_invoice_id: str) -> Invoice | None:
    result = await db.execute(select(Invoice).where(Invoice.stripe_invoice_id == stripe_invoice_id))
    return result.scalar_one_or_none()


async def get_payment_for_invoice(db: AsyncSession, stripe_invoice_id: str) -> Payment | None:
    result = await db.execute(select(Payment).where(Payment.stripe_invoice_id == stripe_invoice_id))
    return result.scalar_one_or_none()


async def set_membership_status(
    db: AsyncSession,
    user_ids: Iterable[uuid.UUID],
    status: MembershipStatus,
    next_billing_date: datetime | None = None,
) -> None:
    """Set every non-cancelled membership of ``user_ids`` to ``status``."""
    values: dict[str, Any] = {"status": status.value}
    if next_billing_date is not None:
        values["next_billing_date"] = next_billing_date
    stmt = update(Membership).where(Membership.user_id.in_(set(user_ids)))
    if status != MembershipStatus.CANCELLED:
        stmt = stmt.where(Membership.status != MembershipStatus.CANCELLED.value)
    await db.execute(stmt.values(**values).execution_options(synchronize_session="fetch"))


def linked_user_ids(subscription: Subscription) -> set[uuid.UUID]:
    """Payer plus the family-billing beneficiary, if one is linked."""
    user_ids = {subscription.user_id}
    if subscription.beneficiary_user_id is not None:
        user_ids.add(subscription.beneficiary_user_id)
    return user_ids


async def _link_beneficiary(db: AsyncSession, mapping: MappingResult) -> None:
    """Remember the member an invoice pays for, so later lifecycle events reach them."""
    subscription = mapping.subscription
    member = mapping.member_user_id
    if member == subscription.user_id or member == subscription.beneficiary_user_id:
        return
    if await db.get(User, member) is None:
        logger.warning("Beneficiary %s on subscription %s is not a known user", member, subscription.id)
        return
    subscription.beneficiary_user_id = member
    logger.info("Subscription %s now pays for member %s", subscription.id, member)


def _user_ids(mapping: MappingResult) -> set[uuid.UUID]:
    return linked_user_ids(mapping.subscription) | {mapping.member_user_id}


def _paid_at(invoice: Any) -> datetime:
    return ts_to_naive(field(field(invoice, "status_transitions"), "paid_at")) or utcnow()


# -- invoice.paid / invoice.payment_succeeded -------------------------------


async def _confirm_payment(
    db: AsyncSession,
    invoice: Any,
    mapping: MappingResult,
    existing: Payment | None,
) -> Payment | None:
    """Create the CONFIRMED payment for an invoice, or promote a FAILED one."""
    subscription = mapping.subscription
    invoice_id = field(invoice, "id")
    description = build_description(
        PAYMENT_LABEL,
        inv=invoice_id,
        pi=invoice_payment_intent_id(invoice),
        member=str(mapping.member_user_id),
        sub=str(subscription.id),
    )
    amount = from_pence(field(invoice, "amount_paid"))
    currency = (field(invoice, "currency") or settings.currency).upper()

    if existing is not None:
        if existing.status in (PaymentStatus.FAILED.value, PaymentStatus.PENDING.value):
            existing.status = PaymentStatus.CONFIRMED.value
            existing.amount = amount
            existing.currency = currency
            existing.description = description
            existing.failure_reason = None
            existing.processed_at = _paid_at(invoice)
            logger.info("Payment %s for invoice %s promoted to CONFIRMED", existing.id, invoice_id)
        return existing

    created = await insert_ignoring_conflict(
        db,
        Payment,
        {
            "user_id": subscription.user_id,
            "amount": amount,
            "currency": currency,
            "status": PaymentStatus.CONFIRMED.value,
            "description": description,
            "routed_entity_id": subscription.routed_entity_id,
            "stripe_invoice_id": invoice_id,
            "retry_count": 0,
            "processed_at": _paid_at(invoice),
        },
        conflict_column="stripe_invoice_id",
    )
    if not created:
        logger.info("Payment for invoice %s created concurrently, skipping", invoice_id)
    return await get_payment_for_invoice(db, invoice_id)


def _reattribute(payment: Payment, mapping: MappingResult, ctx: MappingContext) -> None:
    """Point an existing payment's member tag at the member named in metadata."""
    member = ctx.member_user_id
    if member is None:
        return
    tags = parse_description_tags(payment.description)
    if tags.get("member") == str(member):
        return
    payment.description = build_description(
        PAYMENT_LABEL,
        inv=tags.get("inv") or payment.stripe_invoice_id,
        pi=tags.get("pi"),
        member=str(member),
        sub=tags.get("sub") or str(mapping.subscription.id),
    )
    logger.info("Payment %s re-attributed to member %s", payment.id, member)


async def record_paid_invoice(
    db: AsyncSession,
    invoice: Any,
    *,
    event_id: str | None = None,
    event_type: str | None = None,
    notifier: Notifier | None = None,
) -> str:
    """Apply one paid invoice to local state. Shared by webhooks and backfill.

    Returns one of ``ignored``, ``created``, ``duplicate`` or
    ``payment_backfilled``.

    Raises:
        SubscriptionMappingError: the invoice maps to no local subscription.
    """
    invoice_id = field(invoice, "id")
    amount_paid = field(invoice, "amount_paid", 0)
    if not amount_paid or amount_paid <= 0:
        logger.info("Invoice %s paid %s, nothing to record", invoice_id, amount_paid)
        return IGNORED

    ctx = MappingContext.from_invoice(invoice, event_id=event_id, event_type=event_type)
    mapping = await resolve_subscription(db, ctx, PAYMENT_CHAIN)
    subscription = mapping.subscription
    await _link_beneficiary(db, mapping)

    invoice_row = await get_invoice_row(db, invoice_id)
    payment = await get_payment_for_invoice(db, invoice_id)

    if invoice_row is not None:
        if payment is not None:
            if payment.status in (PaymentStatus.FAILED.value, PaymentStatus.PENDING.value):
                await _confirm_payment(db, invoice, mapping, payment)
            else:
                _reattribute(payment, mapping, ctx)
            await db.flush()
            logger.info("Invoice %s already recorded, duplicate delivery", invoice_id)
            return DUPLICATE
        await _confirm_payment(db, invoice, mapping, None)
        await db.flush()
        logger.warning("Invoice %s had no payment row, backfilled", invoice_id)
        return PAYMENT_BACKFILLED

    period_start, period_end = invoice_period(invoice)
    created = await insert_ignoring_conflict(
        db,
        Invoice,
        {
            "subscription_id": subscription.id,
            "stripe_invoice_id": invoice_id,
            "amount": from_pence(amount_paid),
            "currency": (field(invoice, "currency") or settings.currency).upper(),
            "status": field(invoice, "status") or "paid",
            "billing_period_start": period_start,
            "billing_period_end": period_end,
            "paid_at": _paid_at(invoice),
        },
        conflict_column="stripe_invoice_id",
    )
    if not created:
        logger.info("Invoice %s recorded concurrently, duplicate delivery", invoice_id)
        return DUPLICATE

    # Subscription: confirmed by a real charge
    if subscription.has_placeholder_stripe_id and ctx.stripe_subscription_id:
        subscription.stripe_subscription_id = ctx.stripe_subscription_id
    apply_subscription_status(subscription, SubscriptionStatus.ACTIVE)
    subscription.is_provisional = False
    if period_start is not None:
        subscription.current_period_start = period_start
    if period_end is not None:
        subscription.current_period_end = period_end
        subscription.next_billing_date = period_end

    if subscription.status == SubscriptionStatus.ACTIVE.value:
        await set_membership_status(db, _user_ids(mapping), MembershipStatus.ACTIVE, period_end)
    await _confirm_payment(db, invoice, mapping, payment)

    recovered = await clear_dunning_flag(db, subscription.id)
    await db.flush()

    logger.info(
        "Invoice %s paid: £%.2f for subscription %s (mapped via %s)",
        invoice_id,
        from_pence(amount_paid),
        subscription.id,
        mapping.strategy,
    )

    if recovered:
        user = await db.get(User, subscription.user_id)
        if user is not None:
            await dispatch_safely(
                notifier or get_notifier(),
                db,
                NotificationKind.RECOVERED,
                user,
                invoice_id=invoice_id,
                amount=from_pence(amount_paid),
            )
    return CREATED


async def handle_invoice_paid(
    db: AsyncSession, event: stripe.Event, notifier: Notifier | None = None
) -> None:
    """Handle invoice.paid / invoice.payment_succeeded."""
    await record_paid_invoice(
        db,
        event.data.object,
        event_id=event.id,
        event_type=event.type,
        notifier=notifier,
    )


# -- invoice.payment_failed ---------------------------------------------------


async def _record_failed_payment(
    db: AsyncSession,
    invoice: Any,
    subscription: Subscription,
    payment: Payment | None,
    attempt: int,
    reason: str,
) -> None:
    invoice_id = field(invoice, "id")
    if payment is None:
        created = await insert_ignoring_conflict(
            db,
            Payment,
            {
                "user_id": subscription.user_id,
                "amount": from_pence(field(invoice, "amount_due")),
                "currency": (field(invoice, "currency") or settings.currency).upper(),
                "status": PaymentStatus.FAILED.value,
                "description": build_description(
                    "Failed membership payment",
                    inv=invoice_id,
                    pi=invoice_payment_intent_id(invoice),
                    sub=str(subscription.id),
                ),
                "routed_entity_id": subscription.routed_entity_id,
                "failure_reason": reason,
                "retry_count": attempt,
                "stripe_invoice_id": invoice_id,
                "processed_at": utcnow(),
            },
            conflict_column="stripe_invoice_id",
        )
        if created:
            return
        payment = await get_payment_for_invoice(db, invoice_id)
        if payment is None:
            return

    if not can_transition_payment(PaymentStatus(payment.status), PaymentStatus.FAILED):
        logger.info("Payment %s is %s, not marking FAILED", payment.id, payment.status)
        return
    payment.status = PaymentStatus.FAILED.value
    payment.failure_reason = reason
    if attempt > payment.retry_count:
        payment.retry_count = attempt
    payment.processed_at = utcnow()


async def handle_invoice_payment_failed(
    db: AsyncSession, event: stripe.Event, notifier: Notifier | None = None
) -> None:
    """Handle invoice.payment_failed — retry notices, then suspension."""
    invoice = event.data.object
    invoice_id = field(invoice, "id")

    payment = await get_payment_for_invoice(db, invoice_id)
    if payment is not None and payment.status in (
        PaymentStatus.CONFIRMED.value,
        PaymentStatus.VOIDED.value,
        PaymentStatus.REFUNDED.value,
    ):
        logger.info(
            "Ignoring late failure for invoice %s: payment already %s", invoice_id, payment.status
        )
        return

    ctx = MappingContext.from_invoice(invoice, event_id=event.id, event_type=event.type)
    mapping = await resolve_subscription(db, ctx, FAILURE_CHAIN, exclude_cancelled=True)
    subscription = mapping.subscription
    await _link_beneficiary(db, mapping)

    previous = payment.retry_count if payment is not None else 0
    attempt = int(field(invoice, "attempt_count", 0) or 0) or previous + 1
    duplicate = payment is not None and attempt <= previous
    next_retry = ts_to_naive(field(invoice, "next_payment_attempt"))
    amount = from_pence(field(invoice, "amount_due"))
    reason = await enrich_decline_reason(invoice)
    max_attempts = settings.dunning_max_attempts

    if attempt >= max_attempts:
        if settings.auto_suspend_after_3_fails:
            apply_subscription_status(subscription, SubscriptionStatus.PAST_DUE)
            await set_membership_status(db, _user_ids(mapping), MembershipStatus.SUSPENDED)
            await set_dunning_flag(db, subscription.id, invoice_id)
            if settings.pause_collection_after_3_fails and not subscription.has_placeholder_stripe_id:
                try:
                    await stripe_client.pause_collection(subscription.stripe_subscription_id)
                except stripe.StripeError as exc:
                    logger.warning(
                        "Could not pause collection for %s: %s", subscription.stripe_subscription_id, exc
                    )
            logger.warning(
                "Subscription %s suspended after %d failed attempts (invoice %s)",
                subscription.id,
                attempt,
                invoice_id,
            )
        kind = NotificationKind.SUSPENDED
    else:
        kind = NotificationKind.RETRY

    await _record_failed_payment(db, invoice, subscription, payment, attempt, reason)
    await db.flush()

    logger.info(
        "Payment failed for invoice %s (attempt %d/%d%s): %s",
        invoice_id,
        attempt,
        max_attempts,
        ", duplicate" if duplicate else "",
        reason,
    )

    user = await db.get(User, subscription.user_id)
    if user is not None:
        await dispatch_safely(
            notifier or get_notifier(),
            db,
            kind,
            user,
            invoice_id=invoice_id,
            attempt=attempt,
            total_attempts=max_attempts,
            next_retry=next_retry.strftime("%d/%m/%Y") if next_retry else None,
            amount=amount,
            reason=reason,
        )


# -- invoice.payment_action_required ----------------------------------------


async def handle_invoice_payment_action_required(
    db: AsyncSession, event: stripe.Event, notifier: Notifier | None = None
) -> None:
    """Handle invoice.payment_action_required — ask the member to authenticate."""
    invoice = event.data.object
    ctx = MappingContext.from_invoice(invoice, event_id=event.id, event_type=event.type)
    try:
        mapping = await resolve_subscription(db, ctx, FAILURE_CHAIN, exclude_cancelled=True)
    except SubscriptionMappingError:
        # Notification only; nothing to reconcile
        return

    user = await db.get(User, mapping.subscription.user_id)
    if user is None:
        return
    await dispatch_safely(
        notifier or get_notifier(),
        db,
        NotificationKind.ACTION_REQUIRED,
        user,
        invoice_id=field(invoice, "id"),
        attempt=int(field(invoice, "attempt_count", 1) or 1),
        total_attempts=settings.dunning_max_attempts,
        amount=from_pence(field(invoice, "amount_due")),
        hosted_invoice_url=field(invoice, "hosted_invoice_url"),
    )


# -- customer.subscription.created / updated ---------------------------------


def _pending_change_due(metadata: dict[str, str], now: datetime) -> str | None:
    """Membership type of a scheduled plan change whose apply time has passed."""
    new_type = metadata.get("pendingMembershipType")
    raw_apply_at = metadata.get("pendingApplyAt")
    if not new_type or not raw_apply_at:
        return None
    if raw_apply_at.isdigit():
        apply_at = ts_to_naive(int(raw_apply_at))
    else:
        try:
            apply_at = datetime.fromisoformat(raw_apply_at.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable pendingApplyAt %r", raw_apply_at)
            return None
        if apply_at.tzinfo is not None:
            apply_at = apply_at.astimezone(timezone.utc).replace(tzinfo=None)
    return new_type if apply_at is not None and apply_at <= now else None


async def _apply_pending_change(
    db: AsyncSession, subscription: Subscription, stripe_sub: Any, metadata: dict[str, str]
) -> None:
    new_type = _pending_change_due(metadata, utcnow())
    if new_type is None:
        return
    plan = get_plan(new_type)
    if plan is None:
        logger.warning("Scheduled change to unknown membership type %s ignored", new_type)
        return

    subscription.membership_type = plan.name
    subscription.monthly_price = plan.monthly_price
    await db.execute(
        update(Membership)
        .where(
            Membership.user_id.in_(linked_user_ids(subscription)),
            Membership.status != MembershipStatus.CANCELLED.value,
        )
        .values(membership_type=plan.name, monthly_price=plan.monthly_price)
        .execution_options(synchronize_session="fetch")
    )
    logger.info("Applied scheduled plan change for subscription %s -> %s", subscription.id, plan.name)

    try:
        await stripe_client.clear_subscription_metadata(field(stripe_sub, "id"), PENDING_CHANGE_KEYS)
    except stripe.StripeError as exc:
        logger.warning("Could not clear pending change metadata on %s: %s", field(stripe_sub, "id"), exc)


async def handle_subscription_updated(
    db: AsyncSession, event: stripe.Event, notifier: Notifier | None = None
) -> None:
    """Handle customer.subscription.created / updated — sync status and period."""
    stripe_sub = event.data.object
    stripe_sub_id = field(stripe_sub, "id")
    ctx = MappingContext.from_subscription(stripe_sub, event_id=event.id, event_type=event.type)

    subscription = await get_by_stripe_id(db, stripe_sub_id)
    if subscription is None:
        # Local row may still carry a placeholder id; link it via our own id
        internal_id = ctx.first_metadata(("dbSubscriptionId",))
        candidate = None
        if internal_id:
            try:
                candidate = await db.get(Subscription, uuid.UUID(internal_id))
            except ValueError:
                candidate = None
        if candidate is not None and not candidate.has_placeholder_stripe_id:
            logger.warning(
                "Subscription %s already linked to %s, ignoring %s for %s",
                candidate.id,
                candidate.stripe_subscription_id,
                event.type,
                stripe_sub_id,
            )
            return
        if candidate is not None:
            logger.info("Linking subscription %s to Stripe subscription %s", candidate.id, stripe_sub_id)
            candidate.stripe_subscription_id = stripe_sub_id
            subscription = candidate

    if subscription is None:
        logger.error(
            "Subscription mapping failed: event=%s type=%s subscription=%s customer=%s",
            event.id,
            event.type,
            stripe_sub_id,
            ctx.customer_id,
        )
        raise SubscriptionMappingError(
            f"No local subscription for {stripe_sub_id}",
            event_id=event.id,
            event_type=event.type,
            subscription_id=stripe_sub_id,
            customer_id=ctx.customer_id,
        )

    raw_status = field(stripe_sub, "status")
    try:
        target = normalize_gateway_status(raw_status, field(stripe_sub, "pause_collection"))
    except ValueError:
        logger.warning("Unknown Stripe subscription status %r on %s", raw_status, stripe_sub_id)
        target = None
    if target is not None:
        apply_subscription_status(subscription, target)

    period_start, period_end = subscription_period(stripe_sub)
    subscription.current_period_start = period_start or subscription.current_period_start
    subscription.current_period_end = period_end or subscription.current_period_end
    subscription.next_billing_date = period_end or subscription.next_billing_date
    subscription.cancel_at_period_end = bool(field(stripe_sub, "cancel_at_period_end", False))
    if ctx.customer_id and not subscription.stripe_customer_id:
        subscription.stripe_customer_id = ctx.customer_id

    flagged = await is_dunning_suspended(db, subscription.id)
    membership_status = derive_membership_status(SubscriptionStatus(subscription.status), flagged)
    await set_membership_status(
        db, linked_user_ids(subscription), membership_status, subscription.next_billing_date
    )

    await _apply_pending_change(db, subscription, stripe_sub, ctx.metadata)
    await db.flush()

    logger.info(
        "Subscription %s (%s) -> status=%s, membership=%s",
        subscription.id,
        stripe_sub_id,
        subscription.status,
        membership_status.value,
    )


# -- customer.subscription.deleted -------------------------------------------


async def handle_subscription_deleted(
    db: AsyncSession, event: stripe.Event, notifier: Notifier | None = None
) -> None:
    """Handle customer.subscription.deleted — cancel subscription and access."""
    stripe_sub = event.data.object
    stripe_sub_id = field(stripe_sub, "id")

    subscription = await get_by_stripe_id(db, stripe_sub_id)
    if subscription is None:
        logger.error("Cancellation for unknown Stripe subscription %s (event %s)", stripe_sub_id, event.id)
        raise SubscriptionMappingError(
            f"No local subscription for {stripe_sub_id}",
            event_id=event.id,
            event_type=event.type,
            subscription_id=stripe_sub_id,
            customer_id=field(stripe_sub, "customer"),
        )

    apply_subscription_status(subscription, SubscriptionStatus.CANCELLED)
    subscription.cancel_at_period_end = False
    await set_membership_status(db, linked_user_ids(subscription), MembershipStatus.CANCELLED)
    await clear_dunning_flag(db, subscription.id)
    await db.flush()
    logger.info("Subscription deleted: %s cancelled", stripe_sub_id)


# Map event types to handler functions
EVENT_HANDLERS = {
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_succeeded": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "invoice.payment_action_required": handle_invoice_payment_action_required,
    "customer.subscription.created": handle_subscription_updated,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
}
