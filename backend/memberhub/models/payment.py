"""Payment model — one attempted or completed charge."""

import re
import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from memberhub.billing.states import PaymentStatus
from memberhub.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

_TAG_RE = re.compile(r"\[(inv|pi|member|sub):([^\]]+)\]")


def build_description(label: str, **tags: str | None) -> str:
    """Append ``[key:value]`` attribution tags to a human description.

    >>> build_description("Monthly membership payment", inv="in_1", pi=None)
    'Monthly membership payment [inv:in_1]'
    """
    parts = [label]
    parts.extend(f"[{key}:{value}]" for key, value in tags.items() if value)
    return " ".join(parts)


def parse_description_tags(description: str | None) -> dict[str, str]:
    """Inverse of :func:`build_description` (tag values only)."""
    return dict(_TAG_RE.findall(description or ""))


class Payment(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A charge against a member, attributed to the routed business entity."""

    __tablename__ = "payments"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GBP")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    routed_entity_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("business_entities.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Primary idempotency key for webhook replays
    stripe_invoice_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def tags(self) -> dict[str, str]:
        return parse_description_tags(self.description)

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, amount={self.amount}, status={self.status}, invoice={self.stripe_invoice_id})>"
