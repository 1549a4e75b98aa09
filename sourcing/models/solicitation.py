import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    BigInteger,
    Integer,
    DateTime,
    Text,
    ForeignKey,
    CheckConstraint,
    Index,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from sourcing.database import Base

SOLICITATION_STATUSES = ("DRAFT", "PUBLISHED", "CLOSED", "AWARDED", "CANCELLED")
LINE_ITEM_STATUSES = ("PENDING", "QUOTED", "AWARDED", "CANCELLED", "OUT_OF_STOCK")
TERMINAL_LINE_ITEM_STATUSES = frozenset({"AWARDED", "CANCELLED", "OUT_OF_STOCK"})


class Solicitation(Base):
    __tablename__ = "solicitations"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    solicitation_number: Mapped[str] = mapped_column(
        String(50), unique=True, nullable=False
    )
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="DRAFT")
    deadline: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('DRAFT','PUBLISHED','CLOSED','AWARDED','CANCELLED')",
            name="chk_solicitation_status",
        ),
        Index("idx_solicitation_status_deadline", "status", "deadline"),
        Index("idx_solicitation_owner", "owner_id"),
    )


class LineItem(Base):
    __tablename__ = "line_items"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    solicitation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("solicitations.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    product_name: Mapped[str] = mapped_column(String(300), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit: Mapped[Optional[str]] = mapped_column(String(30))
    ceiling_price_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    instant_price_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    item_status: Mapped[str] = mapped_column(String(20), default="PENDING")
    status_reason: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="chk_line_item_qty"),
        CheckConstraint(
            "instant_price_cents IS NULL OR ceiling_price_cents IS NULL "
            "OR instant_price_cents <= ceiling_price_cents",
            name="chk_line_item_instant_le_ceiling",
        ),
        CheckConstraint(
            "item_status IN ('PENDING','QUOTED','AWARDED','CANCELLED','OUT_OF_STOCK')",
            name="chk_line_item_status",
        ),
        Index("idx_line_item_solicitation", "solicitation_id"),
    )
