"""Subscription and invoice models — Stripe billing state per member."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from memberhub.billing.states import SubscriptionStatus
from memberhub.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

# Prefixes of values stored in stripe_subscription_id before the real
# Stripe subscription exists.
PLACEHOLDER_PREFIXES = ("setup_placeholder_", "seti_")


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One member's recurring billing arrangement, routed to one entity."""

    __tablename__ = "subscriptions"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Family billing: the member whose access this subscription pays for
    beneficiary_user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Stripe identifiers
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    membership_type: Mapped[str] = mapped_column(String(50), nullable=False)
    monthly_price: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False)
    # Fixed at creation by the router, never reassigned
    routed_entity_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("business_entities.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=SubscriptionStatus.PENDING_PAYMENT.value, index=True
    )
    # ACTIVE granted by interactive setup, awaiting webhook confirmation
    is_provisional: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Billing period
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="subscriptions", lazy="selectin", foreign_keys=[user_id])  # type: ignore[name-defined]  # noqa: F821
    invoices: Mapped[list["Invoice"]] = relationship(back_populates="subscription", lazy="selectin")

    @property
    def has_placeholder_stripe_id(self) -> bool:
        sub_id = self.stripe_subscription_id
        return not sub_id or sub_id.startswith(PLACEHOLDER_PREFIXES)

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, user_id={self.user_id}, type={self.membership_type}, status={self.status})>"


class Invoice(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A paid Stripe invoice seen by reconciliation (one row per Stripe invoice)."""

    __tablename__ = "invoices"

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stripe_invoice_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    amount: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GBP")
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    billing_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    billing_period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    subscription: Mapped[Subscription] = relationship(back_populates="invoices", lazy="selectin")

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, stripe_invoice_id={self.stripe_invoice_id}, amount={self.amount})>"
