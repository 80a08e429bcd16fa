"""Status enums and the transition rules between them.

Subscription and payment statuses only change through the tables below.
Membership status is never set directly by reconciliation code; it is
derived from the owning subscription with :func:`derive_membership_status`.
"""

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class SubscriptionStatus(str, Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    INCOMPLETE = "INCOMPLETE"
    INCOMPLETE_EXPIRED = "INCOMPLETE_EXPIRED"


class MembershipStatus(str, Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    VOIDED = "VOIDED"
    REFUNDED = "REFUNDED"


_S = SubscriptionStatus

SUBSCRIPTION_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    _S.PENDING_PAYMENT: frozenset(
        {_S.ACTIVE, _S.PAST_DUE, _S.INCOMPLETE, _S.CANCELLED}
    ),
    _S.ACTIVE: frozenset({_S.PAST_DUE, _S.PAUSED, _S.CANCELLED}),
    _S.PAST_DUE: frozenset({_S.ACTIVE, _S.PAUSED, _S.CANCELLED}),
    _S.PAUSED: frozenset({_S.ACTIVE, _S.PAST_DUE, _S.CANCELLED}),
    _S.INCOMPLETE: frozenset({_S.ACTIVE, _S.INCOMPLETE_EXPIRED, _S.CANCELLED}),
    _S.INCOMPLETE_EXPIRED: frozenset(),
    _S.CANCELLED: frozenset(),
}

_P = PaymentStatus

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    _P.PENDING: frozenset({_P.CONFIRMED, _P.FAILED, _P.VOIDED}),
    # FAILED -> FAILED records a later attempt on the same invoice
    _P.FAILED: frozenset({_P.FAILED, _P.CONFIRMED, _P.VOIDED}),
    _P.CONFIRMED: frozenset({_P.REFUNDED, _P.VOIDED}),
    _P.VOIDED: frozenset(),
    _P.REFUNDED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    """Whether a subscription may move from ``current`` to ``target``."""
    current_status = SubscriptionStatus(current)
    target_status = SubscriptionStatus(target)
    if current_status == target_status:
        return True
    return target_status in SUBSCRIPTION_TRANSITIONS[current_status]


def can_transition_payment(current: str, target: str) -> bool:
    """Whether a payment may move from ``current`` to ``target``."""
    return PaymentStatus(target) in PAYMENT_TRANSITIONS[PaymentStatus(current)]


def apply_subscription_status(subscription, target: SubscriptionStatus) -> bool:
    """Move ``subscription`` to ``target`` if the transition is legal.

    Returns False (and leaves the row untouched) for an illegal move, e.g. a
    late event trying to revive a cancelled subscription.
    """
    if not can_transition(subscription.status, target):
        logger.warning(
            "Ignoring illegal subscription transition %s -> %s (subscription %s)",
            subscription.status,
            target.value,
            subscription.id,
        )
        return False
    subscription.status = target.value
    return True


def normalize_gateway_status(raw_status: str | None, pause_collection: object = None) -> SubscriptionStatus:
    """Map a Stripe subscription status onto the local enum.

    Trialing customers keep access, so TRIALING counts as ACTIVE. An active
    pause_collection overrides whatever raw status Stripe reports.
    """
    if pause_collection:
        return SubscriptionStatus.PAUSED
    status = (raw_status or "").upper()
    aliases = {
        "TRIALING": SubscriptionStatus.ACTIVE,
        "CANCELED": SubscriptionStatus.CANCELLED,
        "UNPAID": SubscriptionStatus.PAST_DUE,
    }
    if status in aliases:
        return aliases[status]
    try:
        return SubscriptionStatus(status)
    except ValueError:
        raise ValueError(f"Unknown gateway subscription status: {raw_status!r}") from None


def derive_membership_status(
    subscription_status: str, dunning_suspended: bool = False
) -> MembershipStatus:
    """Access-control projection of a subscription status."""
    status = SubscriptionStatus(subscription_status)
    if status == SubscriptionStatus.PAUSED:
        return MembershipStatus.SUSPENDED
    if status in (
        SubscriptionStatus.PENDING_PAYMENT,
        SubscriptionStatus.INCOMPLETE,
        SubscriptionStatus.INCOMPLETE_EXPIRED,
    ):
        return MembershipStatus.PENDING_PAYMENT
    if status == SubscriptionStatus.CANCELLED:
        return MembershipStatus.CANCELLED
    if status == SubscriptionStatus.PAST_DUE:
        # Mid-retry members keep access until dunning suspends them
        return MembershipStatus.SUSPENDED if dunning_suspended else MembershipStatus.ACTIVE
    return MembershipStatus.ACTIVE
