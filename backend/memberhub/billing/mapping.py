"""Subscription mapping — attribute a Stripe event to a local Subscription.

Mapping is an ordered chain of independent strategies. Each strategy looks
at one signal in the event and returns a Subscription or None; the first
hit wins. The chain order encodes signal strength, strongest first.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field as dc_field
from typing import Any

import stripe
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from memberhub.billing import stripe_client
from memberhub.billing.states import SubscriptionStatus
from memberhub.billing.stripe_objects import (
    collect_metadata,
    field,
    invoice_subscription_id,
    object_id,
)
from memberhub.exceptions import SubscriptionMappingError
from memberhub.models.subscription import Subscription

logger = logging.getLogger(__name__)

INTERNAL_ID_KEYS = ("dbSubscriptionId",)
MEMBER_ID_KEYS = ("memberUserId", "childUserId")
CUSTOMER_USER_KEYS = ("userId",)


@dataclass
class MappingContext:
    """The signals a strategy may use, extracted once from the event."""

    event_id: str | None
    event_type: str | None
    object_id: str | None
    stripe_subscription_id: str | None
    customer_id: str | None
    metadata: dict[str, str] = dc_field(default_factory=dict)

    @classmethod
    def from_invoice(cls, invoice: Any, event_id: str | None = None, event_type: str | None = None) -> "MappingContext":
        return cls(
            event_id=event_id,
            event_type=event_type,
            object_id=field(invoice, "id"),
            stripe_subscription_id=invoice_subscription_id(invoice),
            customer_id=object_id(field(invoice, "customer")),
            metadata=collect_metadata(invoice),
        )

    @classmethod
    def from_subscription(
        cls, stripe_sub: Any, event_id: str | None = None, event_type: str | None = None
    ) -> "MappingContext":
        return cls(
            event_id=event_id,
            event_type=event_type,
            object_id=field(stripe_sub, "id"),
            stripe_subscription_id=field(stripe_sub, "id"),
            customer_id=object_id(field(stripe_sub, "customer")),
            metadata=collect_metadata(stripe_sub),
        )

    def first_metadata(self, keys: Sequence[str]) -> str | None:
        for key in keys:
            if self.metadata.get(key):
                return self.metadata[key]
        return None

    @property
    def member_user_id(self) -> uuid.UUID | None:
        """Beneficiary named in metadata (family billing), if any."""
        return _parse_uuid(self.first_metadata(MEMBER_ID_KEYS))


@dataclass
class MappingResult:
    subscription: Subscription
    strategy: str
    member_user_id: uuid.UUID


Strategy = Callable[[AsyncSession, MappingContext], Awaitable[Subscription | None]]


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


async def latest_open_subscription(db: AsyncSession, user_id: uuid.UUID) -> Subscription | None:
    """Most recently created non-cancelled subscription paid by or for a user."""
    result = await db.execute(
        select(Subscription)
        .where(
            or_(Subscription.user_id == user_id, Subscription.beneficiary_user_id == user_id),
            Subscription.status != SubscriptionStatus.CANCELLED.value,
        )
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_by_stripe_id(db: AsyncSession, stripe_subscription_id: str) -> Subscription | None:
    result = await db.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    )
    return result.scalar_one_or_none()


# -- Strategies ---------------------------------------------------------------


async def by_internal_id(db: AsyncSession, ctx: MappingContext) -> Subscription | None:
    """Our own subscription id, stamped into metadata when we created it."""
    sub_id = _parse_uuid(ctx.first_metadata(INTERNAL_ID_KEYS))
    if sub_id is None:
        return None
    return await db.get(Subscription, sub_id)


async def by_external_id(db: AsyncSession, ctx: MappingContext) -> Subscription | None:
    """The Stripe subscription id stored on the row."""
    if not ctx.stripe_subscription_id:
        return None
    return await get_by_stripe_id(db, ctx.stripe_subscription_id)


async def by_member_metadata(db: AsyncSession, ctx: MappingContext) -> Subscription | None:
    """Member or child user id in metadata (payer may differ from beneficiary)."""
    user_id = ctx.member_user_id
    if user_id is None:
        return None
    return await latest_open_subscription(db, user_id)


async def by_customer_metadata(db: AsyncSession, ctx: MappingContext) -> Subscription | None:
    """Last resort: the user id recorded on the Stripe customer."""
    if not ctx.customer_id:
        return None
    try:
        customer = await stripe_client.get_customer(ctx.customer_id)
    except stripe.StripeError as exc:
        logger.warning("Could not retrieve customer %s for mapping: %s", ctx.customer_id, exc)
        return None
    if field(customer, "deleted"):
        return None
    metadata = field(customer, "metadata") or {}
    for key in CUSTOMER_USER_KEYS:
        user_id = _parse_uuid(field(metadata, key))
        if user_id is not None:
            return await latest_open_subscription(db, user_id)
    return None


PAYMENT_CHAIN: tuple[Strategy, ...] = (
    by_internal_id,
    by_external_id,
    by_member_metadata,
    by_customer_metadata,
)

FAILURE_CHAIN: tuple[Strategy, ...] = (
    by_external_id,
    by_customer_metadata,
)


async def resolve_subscription(
    db: AsyncSession,
    ctx: MappingContext,
    chain: Sequence[Strategy] = PAYMENT_CHAIN,
    exclude_cancelled: bool = False,
) -> MappingResult:
    """Run ``chain`` in order and return the first hit.

    Raises:
        SubscriptionMappingError: no strategy matched.
    """
    for strategy in chain:
        subscription = await strategy(db, ctx)
        if subscription is None:
            continue
        if exclude_cancelled and subscription.status == SubscriptionStatus.CANCELLED.value:
            logger.debug("Strategy %s hit cancelled subscription %s, skipping", strategy.__name__, subscription.id)
            continue
        logger.debug("Mapped %s to subscription %s via %s", ctx.object_id, subscription.id, strategy.__name__)
        return MappingResult(
            subscription=subscription,
            strategy=strategy.__name__,
            member_user_id=ctx.member_user_id or subscription.user_id,
        )

    logger.error(
        "Subscription mapping failed: event=%s type=%s object=%s subscription=%s customer=%s metadata=%s",
        ctx.event_id,
        ctx.event_type,
        ctx.object_id,
        ctx.stripe_subscription_id,
        ctx.customer_id,
        ctx.metadata,
    )
    raise SubscriptionMappingError(
        f"No local subscription for {ctx.object_id}",
        event_id=ctx.event_id,
        event_type=ctx.event_type,
        invoice_id=ctx.object_id if ctx.object_id and ctx.object_id.startswith("in_") else None,
        subscription_id=ctx.stripe_subscription_id,
        customer_id=ctx.customer_id,
    )
