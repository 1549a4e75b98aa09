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
    UniqueConstraint,
    CheckConstraint,
    Index,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from sourcing.database import Base


class Award(Base):
    __tablename__ = "awards"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    solicitation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("solicitations.id"), nullable=False
    )
    supplier_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    # Representative quote: the supplier's quote winning the most line items
    quote_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("quotes.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE")
    final_price_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(100))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE','CANCELLED')",
            name="chk_award_status",
        ),
        Index(
            "uq_award_active_supplier",
            "solicitation_id",
            "supplier_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
        Index("idx_award_supplier", "supplier_id"),
    )


class AwardItem(Base):
    __tablename__ = "award_items"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    award_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("awards.id", ondelete="CASCADE"), nullable=False
    )
    line_item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("line_items.id"), nullable=False
    )
    quote_item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("quote_items.id"), nullable=False
    )
    unit_price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("award_id", "line_item_id", name="uq_award_item_line"),
        Index("idx_award_item_line", "line_item_id"),
    )
