from datetime import date, datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from sourcing.database import get_db
from sourcing.middleware.auth import get_current_user
from sourcing.middleware.authorization import require_roles
from sourcing.services import report_service
from sourcing.schemas.report import (
    AllSuppliersDashboardResponse,
    DailyStat,
    FinancialReportResponse,
    ReportLineResponse,
    SolicitationGroupResponse,
    SupplierDashboardResponse,
    SupplierPaymentResponse,
    TotalsResponse,
)

logger = structlog.get_logger()
router = APIRouter()


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _totals(t: report_service.Totals) -> TotalsResponse:
    return TotalsResponse.model_validate(t)


def _line(line: report_service.ReportLine) -> ReportLineResponse:
    return ReportLineResponse(
        category=line.category,
        supplier_id=str(line.supplier_id),
        product_name=line.product_name,
        quantity=line.quantity,
        unit_price_cents=line.unit_price_cents,
        amount_cents=line.amount_cents,
        payment_status=line.payment_status,
        occurred_at=line.occurred_at.isoformat(),
        solicitation_id=str(line.solicitation_id) if line.solicitation_id else None,
        solicitation_number=line.solicitation_number,
        line_item_id=str(line.line_item_id) if line.line_item_id else None,
        quote_id=str(line.quote_id) if line.quote_id else None,
        stock_order_id=str(line.stock_order_id) if line.stock_order_id else None,
        tracking_number=line.tracking_number,
        receipt_url=line.receipt_url,
    )


def _dashboard(d: report_service.SupplierDashboard) -> SupplierDashboardResponse:
    return SupplierDashboardResponse(
        supplier_id=str(d.supplier_id),
        start=d.start.isoformat(),
        end=d.end.isoformat(),
        summary=_totals(d.summary),
        solicitation_totals=_totals(d.solicitation_totals),
        stock_order_totals=_totals(d.stock_order_totals),
        items=[_line(line) for line in d.items],
        daily_stats=[DailyStat(**stat) for stat in d.daily_stats],
    )


@router.get("/supplier-dashboard", response_model=SupplierDashboardResponse)
async def supplier_dashboard(
    supplier_id: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("supplier", "admin")),
    db: AsyncSession = Depends(get_db),
):
    """Won line items and stock orders of one supplier with payment status."""
    if current_user["role"] == "supplier":
        supplier_id = current_user["user_id"]
    elif not supplier_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "supplier_id is required",
                }
            },
        )
    dashboard = await report_service.supplier_dashboard(
        db, supplier_id, _naive(start), _naive(end)
    )
    return _dashboard(dashboard)


@router.get("/suppliers-dashboard", response_model=AllSuppliersDashboardResponse)
async def all_suppliers_dashboard(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    _auth: None = Depends(require_roles("admin")),
    db: AsyncSession = Depends(get_db),
):
    start, end = report_service.default_range(_naive(start), _naive(end))
    grand, dashboards = await report_service.all_suppliers_dashboard(db, start, end)
    return AllSuppliersDashboardResponse(
        start=start.isoformat(),
        end=end.isoformat(),
        summary=_totals(grand),
        suppliers=[_dashboard(d) for d in dashboards],
    )


@router.get("/financial", response_model=FinancialReportResponse)
async def financial_report(
    target: Optional[date] = Query(None, alias="date"),
    period: str = Query("day"),
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("buyer", "admin")),
    db: AsyncSession = Depends(get_db),
):
    """Payables per supplier and solicitation for a day, week or month."""
    owner_id = current_user["user_id"] if current_user["role"] == "buyer" else None
    report = await report_service.buyer_financial_report(
        db, target or date.today(), period=period, owner_id=owner_id
    )
    return FinancialReportResponse(
        period=report.period,
        start=report.start.isoformat(),
        end=report.end.isoformat(),
        summary=_totals(report.summary),
        suppliers=[
            SupplierPaymentResponse(
                supplier_id=str(p.supplier_id),
                totals=_totals(p.totals),
                solicitations=[
                    SolicitationGroupResponse(
                        solicitation_id=str(g.solicitation_id),
                        solicitation_number=g.solicitation_number,
                        title=g.title,
                        totals=_totals(g.totals),
                        items=[_line(line) for line in g.items],
                    )
                    for g in p.solicitations
                ],
            )
            for p in report.suppliers
        ],
        stock_orders=[_line(line) for line in report.stock_orders],
        stock_order_totals=_totals(report.stock_order_totals),
    )
