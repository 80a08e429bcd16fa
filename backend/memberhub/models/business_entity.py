"""Business entity and service catalog models — where revenue is routed."""

import uuid

from sqlalchemy import Boolean, ForeignKey, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from memberhub.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class BusinessEntity(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A legal entity (one VAT registration) that can receive payments."""

    __tablename__ = "business_entities"

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)  # e.g. aura_mma
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    vat_threshold: Mapped[float] = mapped_column(
        Numeric(12, 2, asdecimal=False), nullable=False, default=90000.0
    )
    # Cache only; always re-derivable from confirmed payments in the VAT year
    current_revenue: Mapped[float] = mapped_column(
        Numeric(12, 2, asdecimal=False), nullable=False, default=0.0
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE", index=True)

    services: Mapped[list["ServiceOffering"]] = relationship(
        back_populates="preferred_entity", lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<BusinessEntity(id={self.id}, name={self.name!r}, status={self.status})>"


class ServiceOffering(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Catalog entry for a service, naming the entity that should bill for it."""

    __tablename__ = "services"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)  # martial_arts, wellness, ...
    preferred_entity_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("business_entities.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    preferred_entity: Mapped[BusinessEntity | None] = relationship(back_populates="services", lazy="selectin")

    def __repr__(self) -> str:
        return f"<ServiceOffering(id={self.id}, name={self.name!r}, active={self.is_active})>"
