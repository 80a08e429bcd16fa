"""Routing audit and VAT snapshot models."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from memberhub.database import Base, UUIDPrimaryKeyMixin


class RoutingDecision(UUIDPrimaryKeyMixin, Base):
    """Immutable record of one routing call."""

    __tablename__ = "routing_decisions"

    selected_entity_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("business_entities.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    amount: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False)
    membership_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    routing_reason: Mapped[str] = mapped_column(Text, nullable=False)
    routing_method: Mapped[str] = mapped_column(String(30), nullable=False)
    confidence: Mapped[str] = mapped_column(String(10), nullable=False)
    threshold_distance: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False)
    # Every entity's VATPosition at decision time
    vat_position_snapshot: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    decision_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    override_actor: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())

    selected_entity: Mapped["BusinessEntity"] = relationship(lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return (
            f"<RoutingDecision(id={self.id}, entity={self.selected_entity_id}, "
            f"method={self.routing_method}, confidence={self.confidence})>"
        )


class VATCalculation(UUIDPrimaryKeyMixin, Base):
    """Point-in-time VAT position of one entity, written by the snapshot job."""

    __tablename__ = "vat_calculations"

    entity_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("business_entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    calculation_date: Mapped[datetime] = mapped_column(nullable=False)
    vat_year_start: Mapped[datetime] = mapped_column(nullable=False)
    vat_year_end: Mapped[datetime] = mapped_column(nullable=False)
    total_revenue: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False)
    monthly_average: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False)
    projected_year_end: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False)
    headroom_remaining: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False)
    risk_level: Mapped[str] = mapped_column(String(10), nullable=False)
    payment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<VATCalculation(entity={self.entity_id}, risk={self.risk_level}, revenue={self.total_revenue})>"
