from typing import List, Optional
from pydantic import BaseModel, Field, model_validator


class LineItemDraft(BaseModel):
    """One imported line item, as produced by the spreadsheet importer."""

    product_name: str = Field(..., min_length=1, max_length=300)
    quantity: int = Field(..., ge=1)
    unit: Optional[str] = Field(None, max_length=30)
    ceiling_price_cents: Optional[int] = Field(None, gt=0)
    instant_price_cents: Optional[int] = Field(None, gt=0)

    @model_validator(mode="after")
    def instant_within_ceiling(self):
        if (
            self.instant_price_cents is not None
            and self.ceiling_price_cents is not None
            and self.instant_price_cents > self.ceiling_price_cents
        ):
            raise ValueError("instant_price_cents cannot exceed ceiling_price_cents")
        return self


class SolicitationCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    deadline: str
    line_items: List[LineItemDraft] = Field(..., min_length=1)


class LineItemPriceUpdate(BaseModel):
    ceiling_price_cents: Optional[int] = Field(None, gt=0)
    instant_price_cents: Optional[int] = Field(None, gt=0)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class LineItemResponse(BaseModel):
    id: str
    position: int
    product_name: str
    quantity: int
    unit: Optional[str] = None
    ceiling_price_cents: Optional[int] = None
    instant_price_cents: Optional[int] = None
    item_status: str
    status_reason: Optional[str] = None

    model_config = {"from_attributes": True}


class SolicitationResponse(BaseModel):
    id: str
    solicitation_number: str
    title: str
    status: str
    deadline: str
    owner_id: str
    closed_at: Optional[str] = None
    line_items: List[LineItemResponse] = []
    created_at: str

    model_config = {"from_attributes": True}


class UnquotedLineItemResponse(BaseModel):
    solicitation_id: str
    solicitation_number: str
    line_item: LineItemResponse


class LineItemFailureResponse(BaseModel):
    line_item_id: str
    error: str


class EvaluationResponse(BaseModel):
    solicitation_id: str
    solicitation_status: str
    success_count: int
    failure_count: int
    awarded: List[str] = []
    unquoted: List[str] = []
    skipped: List[str] = []
    failures: List[LineItemFailureResponse] = []
