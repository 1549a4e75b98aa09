from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from sourcing.database import get_db
from sourcing.middleware.auth import get_current_user
from sourcing.middleware.authorization import require_roles
from sourcing.models.fulfillment import Settlement, Shipment, StockOrder
from sourcing.services import fulfillment_service
from sourcing.services.storage import resolve_url
from sourcing.schemas.fulfillment import (
    SettlementCreate,
    SettlementResponse,
    ShipmentCreate,
    ShipmentResponse,
    StockOrderCreate,
    StockOrderResponse,
)

logger = structlog.get_logger()
router = APIRouter()


def _order_to_response(o: StockOrder) -> StockOrderResponse:
    return StockOrderResponse(
        id=str(o.id),
        supplier_id=str(o.supplier_id),
        buyer_id=str(o.buyer_id),
        product_name=o.product_name,
        quantity=o.quantity,
        unit_price_cents=o.unit_price_cents,
        ordered_at=o.ordered_at.isoformat() if o.ordered_at else "",
    )


def _shipment_to_response(s: Shipment) -> ShipmentResponse:
    return ShipmentResponse(
        id=str(s.id),
        supplier_id=str(s.supplier_id),
        line_item_id=str(s.line_item_id) if s.line_item_id else None,
        stock_order_id=str(s.stock_order_id) if s.stock_order_id else None,
        tracking_number=s.tracking_number,
        carrier=s.carrier,
        created_at=s.created_at.isoformat() if s.created_at else "",
    )


def _settlement_to_response(st: Settlement) -> SettlementResponse:
    return SettlementResponse(
        id=str(st.id),
        shipment_id=str(st.shipment_id),
        amount_cents=st.amount_cents,
        payment_receipt_key=st.payment_receipt_key,
        paid_at=st.paid_at.isoformat() if st.paid_at else None,
        receipt_url=resolve_url(st.payment_receipt_key),
    )


@router.post(
    "/stock-orders", response_model=StockOrderResponse, status_code=status.HTTP_201_CREATED
)
async def create_stock_order(
    body: StockOrderCreate,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("buyer", "admin")),
    db: AsyncSession = Depends(get_db),
):
    order = await fulfillment_service.create_stock_order(
        db,
        supplier_id=body.supplier_id,
        buyer_id=current_user["user_id"],
        product_name=body.product_name,
        quantity=body.quantity,
        unit_price_cents=body.unit_price_cents,
    )
    return _order_to_response(order)


@router.post("/shipments", response_model=ShipmentResponse)
async def record_shipment(
    body: ShipmentCreate,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("supplier")),
    db: AsyncSession = Depends(get_db),
):
    """Create or update the caller's tracking number for a won line item or stock order."""
    shipment = await fulfillment_service.record_shipment(
        db,
        supplier_id=current_user["user_id"],
        tracking_number=body.tracking_number,
        carrier=body.carrier,
        line_item_id=body.line_item_id,
        stock_order_id=body.stock_order_id,
    )
    return _shipment_to_response(shipment)


@router.post("/settlements", response_model=SettlementResponse)
async def record_settlement(
    body: SettlementCreate,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("buyer", "admin")),
    db: AsyncSession = Depends(get_db),
):
    settlement = await fulfillment_service.record_settlement(
        db,
        shipment_id=body.shipment_id,
        amount_cents=body.amount_cents,
        payment_receipt_key=body.payment_receipt_key,
        actor_id=current_user["user_id"],
    )
    return _settlement_to_response(settlement)
