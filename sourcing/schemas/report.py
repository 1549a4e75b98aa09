from typing import List, Optional
from pydantic import BaseModel


class TotalsResponse(BaseModel):
    total_cents: int
    paid_cents: int
    pending_payment_cents: int
    not_shipped_cents: int
    item_count: int
    paid_count: int
    pending_payment_count: int
    not_shipped_count: int
    shipped_count: int
    pending_shipment_count: int

    model_config = {"from_attributes": True}


class ReportLineResponse(BaseModel):
    category: str
    supplier_id: str
    product_name: str
    quantity: int
    unit_price_cents: int
    amount_cents: int
    payment_status: str
    occurred_at: str
    solicitation_id: Optional[str] = None
    solicitation_number: Optional[str] = None
    line_item_id: Optional[str] = None
    quote_id: Optional[str] = None
    stock_order_id: Optional[str] = None
    tracking_number: Optional[str] = None
    receipt_url: Optional[str] = None


class DailyStat(BaseModel):
    date: str
    amount_cents: int
    count: int


class SupplierDashboardResponse(BaseModel):
    supplier_id: str
    start: str
    end: str
    summary: TotalsResponse
    solicitation_totals: TotalsResponse
    stock_order_totals: TotalsResponse
    items: List[ReportLineResponse] = []
    daily_stats: List[DailyStat] = []


class AllSuppliersDashboardResponse(BaseModel):
    start: str
    end: str
    summary: TotalsResponse
    suppliers: List[SupplierDashboardResponse] = []


class SolicitationGroupResponse(BaseModel):
    solicitation_id: str
    solicitation_number: str
    title: str
    totals: TotalsResponse
    items: List[ReportLineResponse] = []


class SupplierPaymentResponse(BaseModel):
    supplier_id: str
    totals: TotalsResponse
    solicitations: List[SolicitationGroupResponse] = []


class FinancialReportResponse(BaseModel):
    period: str
    start: str
    end: str
    summary: TotalsResponse
    suppliers: List[SupplierPaymentResponse] = []
    stock_orders: List[ReportLineResponse] = []
    stock_order_totals: TotalsResponse
