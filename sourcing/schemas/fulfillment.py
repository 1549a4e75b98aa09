from typing import Optional
from pydantic import BaseModel, Field


class StockOrderCreate(BaseModel):
    supplier_id: str
    product_name: str = Field(..., min_length=1, max_length=300)
    quantity: int = Field(..., ge=1)
    unit_price_cents: int = Field(..., ge=1)


class StockOrderResponse(BaseModel):
    id: str
    supplier_id: str
    buyer_id: str
    product_name: str
    quantity: int
    unit_price_cents: int
    ordered_at: str


class ShipmentCreate(BaseModel):
    line_item_id: Optional[str] = None
    stock_order_id: Optional[str] = None
    tracking_number: str = Field(..., min_length=1, max_length=100)
    carrier: Optional[str] = Field(None, max_length=100)


class ShipmentResponse(BaseModel):
    id: str
    supplier_id: str
    line_item_id: Optional[str] = None
    stock_order_id: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    created_at: str


class SettlementCreate(BaseModel):
    shipment_id: str
    amount_cents: int = Field(..., ge=1)
    payment_receipt_key: Optional[str] = Field(None, max_length=500)


class SettlementResponse(BaseModel):
    id: str
    shipment_id: str
    amount_cents: int
    payment_receipt_key: Optional[str] = None
    paid_at: Optional[str] = None
    receipt_url: Optional[str] = None
