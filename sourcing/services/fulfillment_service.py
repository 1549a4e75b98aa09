"""
Fulfilment records — shipments, settlements and direct-from-stock orders.

These rows only feed the payment status that reports derive; they never
influence who wins a line item.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from sourcing.exceptions import NotFoundError, StateError, ValidationError
from sourcing.models.fulfillment import Settlement, Shipment, StockOrder
from sourcing.models.solicitation import LineItem
from sourcing.services.award_engine import current_winners
from sourcing.services.audit_service import record_audit
from sourcing.services.solicitation_state import SolicitationState, as_uuid

logger = structlog.get_logger()


async def create_stock_order(
    session: AsyncSession,
    supplier_id,
    buyer_id,
    product_name: str,
    quantity: int,
    unit_price_cents: int,
    ordered_at: Optional[datetime] = None,
) -> StockOrder:
    if quantity <= 0 or unit_price_cents <= 0:
        raise ValidationError("Quantity and price must be positive", "INVALID_STOCK_ORDER")
    order = StockOrder(
        id=uuid.uuid4(),
        supplier_id=as_uuid(supplier_id),
        buyer_id=as_uuid(buyer_id),
        product_name=product_name,
        quantity=quantity,
        unit_price_cents=unit_price_cents,
        ordered_at=ordered_at or datetime.utcnow(),
    )
    session.add(order)
    await session.flush()
    await record_audit(
        session, "STOCK_ORDER_CREATED", "stock_order", order.id, buyer_id,
        {"supplier_id": order.supplier_id, "amount_cents": quantity * unit_price_cents},
    )
    logger.info("stock_order_created", stock_order_id=str(order.id), supplier_id=str(order.supplier_id))
    return order


async def _existing_shipment(
    session: AsyncSession, supplier_id, line_item_id=None, stock_order_id=None
):
    stmt = select(Shipment).where(Shipment.supplier_id == supplier_id)
    if line_item_id is not None:
        stmt = stmt.where(Shipment.line_item_id == line_item_id)
    else:
        stmt = stmt.where(Shipment.stock_order_id == stock_order_id)
    return (await session.execute(stmt)).scalars().first()


async def record_shipment(
    session: AsyncSession,
    supplier_id,
    tracking_number: str,
    carrier: Optional[str] = None,
    line_item_id=None,
    stock_order_id=None,
) -> Shipment:
    """Attach a tracking number to a won line item or a stock order of the supplier."""
    if (line_item_id is None) == (stock_order_id is None):
        raise ValidationError(
            "A shipment targets exactly one line item or one stock order", "INVALID_SHIPMENT_TARGET"
        )
    if not tracking_number:
        raise ValidationError("Tracking number is required", "TRACKING_REQUIRED")
    supplier_uuid = as_uuid(supplier_id)

    if line_item_id is not None:
        line_item = await session.get(LineItem, as_uuid(line_item_id))
        if line_item is None:
            raise NotFoundError("Line item not found", "LINE_ITEM_NOT_FOUND")
        state = await SolicitationState.load(session, line_item.solicitation_id)
        winner = current_winners(state.graph()).get(line_item.id)
        if winner is None or winner.supplier_id != supplier_uuid:
            raise StateError(
                "Only the current winner of a line item can ship it", "NOT_WINNER"
            )
        target = {"line_item_id": line_item.id}
    else:
        order = await session.get(StockOrder, as_uuid(stock_order_id))
        if order is None:
            raise NotFoundError("Stock order not found", "STOCK_ORDER_NOT_FOUND")
        if order.supplier_id != supplier_uuid:
            raise StateError("Stock order belongs to another supplier", "NOT_SUPPLIER")
        target = {"stock_order_id": order.id}

    shipment = await _existing_shipment(session, supplier_uuid, **target)
    if shipment is not None:
        shipment.tracking_number = tracking_number
        shipment.carrier = carrier
    else:
        # A superseded supplier's shipment stays for audit; the new winner gets its own
        shipment = Shipment(
            id=uuid.uuid4(),
            supplier_id=supplier_uuid,
            tracking_number=tracking_number,
            carrier=carrier,
            **target,
        )
        session.add(shipment)
    await session.flush()
    logger.info(
        "shipment_recorded",
        shipment_id=str(shipment.id),
        supplier_id=str(supplier_uuid),
        target={k: str(v) for k, v in target.items()},
    )
    return shipment


async def record_settlement(
    session: AsyncSession,
    shipment_id,
    amount_cents: int,
    payment_receipt_key: Optional[str] = None,
    actor_id=None,
) -> Settlement:
    shipment = await session.get(Shipment, as_uuid(shipment_id))
    if shipment is None:
        raise NotFoundError("Shipment not found", "SHIPMENT_NOT_FOUND")
    if amount_cents <= 0:
        raise ValidationError("Settlement amount must be positive", "INVALID_AMOUNT")

    existing = (
        await session.execute(select(Settlement).where(Settlement.shipment_id == shipment.id))
    ).scalars().first()
    settlement = existing or Settlement(id=uuid.uuid4(), shipment_id=shipment.id)
    settlement.amount_cents = amount_cents
    if payment_receipt_key:
        settlement.payment_receipt_key = payment_receipt_key
        settlement.paid_at = settlement.paid_at or datetime.utcnow()
    if existing is None:
        session.add(settlement)
    await session.flush()

    await record_audit(
        session, "SETTLEMENT_RECORDED", "settlement", settlement.id, actor_id,
        {"shipment_id": shipment.id, "amount_cents": amount_cents, "paid": bool(payment_receipt_key)},
    )
    logger.info(
        "settlement_recorded",
        settlement_id=str(settlement.id),
        shipment_id=str(shipment.id),
        paid=settlement.paid_at is not None,
    )
    return settlement
