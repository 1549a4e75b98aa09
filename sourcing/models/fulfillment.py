import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    BigInteger,
    Integer,
    DateTime,
    ForeignKey,
    CheckConstraint,
    Index,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from sourcing.database import Base


class StockOrder(Base):
    """Direct-from-stock purchase that never went through a solicitation."""

    __tablename__ = "stock_orders"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    supplier_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    buyer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    product_name: Mapped[str] = mapped_column(String(300), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    ordered_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="chk_stock_order_qty"),
        CheckConstraint("unit_price_cents > 0", name="chk_stock_order_price"),
        Index("idx_stock_order_supplier_date", "supplier_id", "ordered_at"),
    )


class Shipment(Base):
    __tablename__ = "shipments"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    supplier_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    line_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("line_items.id")
    )
    stock_order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("stock_orders.id")
    )
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100))
    carrier: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "(line_item_id IS NULL) <> (stock_order_id IS NULL)",
            name="chk_shipment_target",
        ),
        Index("idx_shipment_line_item", "line_item_id"),
        Index("idx_shipment_stock_order", "stock_order_id"),
    )


class Settlement(Base):
    __tablename__ = "settlements"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    shipment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payment_receipt_key: Mapped[Optional[str]] = mapped_column(String(500))
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )

    __table_args__ = (
        Index("idx_settlement_shipment", "shipment_id"),
    )
