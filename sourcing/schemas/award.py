from typing import List, Optional
from pydantic import BaseModel, Field


class AwardItemRequest(BaseModel):
    quote_id: str
    quote_item_id: str
    reason: Optional[str] = Field(None, max_length=500)


class OutOfStockRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class AwardItemResponse(BaseModel):
    id: str
    line_item_id: str
    quote_item_id: str
    unit_price_cents: int
    quantity: int

    model_config = {"from_attributes": True}


class AwardResponse(BaseModel):
    id: str
    solicitation_id: str
    supplier_id: str
    quote_id: str
    status: str
    final_price_cents: int
    reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[str] = None
    items: List[AwardItemResponse] = []

    model_config = {"from_attributes": True}


class OverrideResponse(BaseModel):
    award: AwardResponse
    previous_supplier_id: Optional[str] = None
    solicitation_status: str
