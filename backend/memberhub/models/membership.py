"""Membership model — the access-control projection of a subscription."""

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from memberhub.billing.states import MembershipStatus
from memberhub.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Membership(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Gym access granted to a member."""

    __tablename__ = "memberships"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    membership_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=MembershipStatus.PENDING_PAYMENT.value, index=True
    )
    monthly_price: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False)
    billing_day: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    next_billing_date: Mapped[datetime | None] = mapped_column(nullable=True)

    user: Mapped["User"] = relationship(back_populates="memberships", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return f"<Membership(id={self.id}, user_id={self.user_id}, type={self.membership_type}, status={self.status})>"
