from typing import List, Optional
from pydantic import BaseModel, Field


class QuoteItemCreate(BaseModel):
    line_item_id: str
    unit_price_cents: int = Field(..., ge=1)


class QuoteCreate(BaseModel):
    items: List[QuoteItemCreate] = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=2000)


class QuoteItemResponse(BaseModel):
    id: str
    line_item_id: str
    unit_price_cents: int

    model_config = {"from_attributes": True}


class QuoteResponse(BaseModel):
    id: str
    solicitation_id: str
    supplier_id: str
    status: str
    price_cents: int
    quoted_total_cents: int
    notes: Optional[str] = None
    submitted_at: str
    items: List[QuoteItemResponse] = []

    model_config = {"from_attributes": True}


class QuoteSubmissionResponse(BaseModel):
    quote: QuoteResponse
    instant_awards: List[str] = []
