"""
Report service — supplier dashboards and the buyer financial report.

Reports never trust a stored winner. Each call loads the solicitations in range
inside one read snapshot, re-derives every winner with the award engine, and
derives payment status from shipments and settlements on the spot. Nothing is
cached between calls.
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from sourcing.config import settings
from sourcing.database import set_snapshot_isolation
from sourcing.exceptions import ValidationError
from sourcing.models.award import Award, AwardItem
from sourcing.models.fulfillment import Settlement, Shipment, StockOrder
from sourcing.models.quote import Quote, QuoteItem
from sourcing.models.solicitation import LineItem, Solicitation
from sourcing.services.award_engine import AwardGraph, current_winners
from sourcing.services.solicitation_state import as_uuid, build_graph
from sourcing.services.storage import resolve_url

logger = structlog.get_logger()

NOT_YET_SHIPPED = "NOT_YET_SHIPPED"
PENDING_PAYMENT = "PENDING_PAYMENT"
PAID = "PAID"

PERIODS = ("day", "week", "month")


def payment_status(
    shipment: Optional[Shipment], settlement: Optional[Settlement]
) -> str:
    if settlement is not None and settlement.payment_receipt_key:
        return PAID
    if shipment is not None and shipment.tracking_number:
        return PENDING_PAYMENT
    return NOT_YET_SHIPPED


@dataclass
class ReportLine:
    category: str  # "solicitation" or "stock_order"
    supplier_id: uuid.UUID
    product_name: str
    quantity: int
    unit_price_cents: int
    amount_cents: int
    payment_status: str
    occurred_at: datetime
    solicitation_id: Optional[uuid.UUID] = None
    solicitation_number: Optional[str] = None
    line_item_id: Optional[uuid.UUID] = None
    quote_id: Optional[uuid.UUID] = None
    stock_order_id: Optional[uuid.UUID] = None
    tracking_number: Optional[str] = None
    receipt_url: Optional[str] = None


@dataclass
class Totals:
    total_cents: int = 0
    paid_cents: int = 0
    pending_payment_cents: int = 0
    not_shipped_cents: int = 0
    item_count: int = 0
    paid_count: int = 0
    pending_payment_count: int = 0
    not_shipped_count: int = 0

    def add(self, line: ReportLine) -> None:
        self.total_cents += line.amount_cents
        self.item_count += 1
        if line.payment_status == PAID:
            self.paid_cents += line.amount_cents
            self.paid_count += 1
        elif line.payment_status == PENDING_PAYMENT:
            self.pending_payment_cents += line.amount_cents
            self.pending_payment_count += 1
        else:
            self.not_shipped_cents += line.amount_cents
            self.not_shipped_count += 1

    @property
    def shipped_count(self) -> int:
        return self.paid_count + self.pending_payment_count

    @property
    def pending_shipment_count(self) -> int:
        return self.not_shipped_count


@dataclass
class SupplierDashboard:
    supplier_id: uuid.UUID
    start: datetime
    end: datetime
    summary: Totals = field(default_factory=Totals)
    solicitation_totals: Totals = field(default_factory=Totals)
    stock_order_totals: Totals = field(default_factory=Totals)
    items: list[ReportLine] = field(default_factory=list)
    daily_stats: list[dict] = field(default_factory=list)


# ---------- ranges ----------


def default_range(
    start: Optional[datetime], end: Optional[datetime]
) -> tuple[datetime, datetime]:
    """Defaults to the last 30 days; ``end`` is exclusive."""
    end = end or datetime.utcnow()
    start = start or end - timedelta(days=30)
    if start >= end:
        raise ValidationError("Report start must be before its end", "INVALID_RANGE")
    return start, end


def period_range(target: date, period: str) -> tuple[datetime, datetime]:
    """[start, end) of the day, ISO week (Monday first) or month containing ``target``."""
    if period not in PERIODS:
        raise ValidationError(
            f"Unknown report period '{period}' (use day, week or month)", "INVALID_PERIOD"
        )
    day = datetime(target.year, target.month, target.day)
    if period == "day":
        return day, day + timedelta(days=1)
    if period == "week":
        monday = day - timedelta(days=day.weekday())
        return monday, monday + timedelta(days=7)
    first = day.replace(day=1)
    if first.month == 12:
        return first, first.replace(year=first.year + 1, month=1)
    return first, first.replace(month=first.month + 1)


# ---------- snapshot loading ----------


@dataclass
class _Snapshot:
    solicitations: dict[uuid.UUID, Solicitation]
    graphs: dict[uuid.UUID, AwardGraph]
    shipments_by_line: dict[tuple[uuid.UUID, uuid.UUID], Shipment]
    shipments_by_order: dict[uuid.UUID, Shipment]
    settlements: dict[uuid.UUID, Settlement]
    stock_orders: list[StockOrder]


async def _load_snapshot(
    session: AsyncSession,
    start: datetime,
    end: datetime,
    supplier_id: Optional[uuid.UUID] = None,
    owner_id: Optional[uuid.UUID] = None,
) -> _Snapshot:
    await set_snapshot_isolation(session)

    stmt = select(Solicitation).where(
        Solicitation.status.in_(("CLOSED", "AWARDED")),
        Solicitation.closed_at >= start,
        Solicitation.closed_at < end,
    )
    if owner_id is not None:
        stmt = stmt.where(Solicitation.owner_id == owner_id)
    solicitations = {s.id: s for s in (await session.execute(stmt)).scalars().all()}
    ids = list(solicitations)

    line_items: list[LineItem] = []
    quotes: list[Quote] = []
    quote_items: list[QuoteItem] = []
    awards: list[Award] = []
    award_items: list[AwardItem] = []
    if ids:
        line_items = list(
            (await session.execute(select(LineItem).where(LineItem.solicitation_id.in_(ids))))
            .scalars().all()
        )
        quotes = list(
            (await session.execute(select(Quote).where(Quote.solicitation_id.in_(ids))))
            .scalars().all()
        )
        quote_items = list(
            (
                await session.execute(
                    select(QuoteItem)
                    .join(Quote, QuoteItem.quote_id == Quote.id)
                    .where(Quote.solicitation_id.in_(ids))
                )
            ).scalars().all()
        )
        awards = list(
            (await session.execute(select(Award).where(Award.solicitation_id.in_(ids))))
            .scalars().all()
        )
        award_items = list(
            (
                await session.execute(
                    select(AwardItem)
                    .join(Award, AwardItem.award_id == Award.id)
                    .where(Award.solicitation_id.in_(ids))
                )
            ).scalars().all()
        )

    graphs = {}
    for sid in ids:
        sid_quotes = [q for q in quotes if q.solicitation_id == sid]
        sid_quote_ids = {q.id for q in sid_quotes}
        sid_awards = [a for a in awards if a.solicitation_id == sid]
        sid_award_ids = {a.id for a in sid_awards}
        graphs[sid] = build_graph(
            sid,
            [li for li in line_items if li.solicitation_id == sid],
            sid_quotes,
            [qi for qi in quote_items if qi.quote_id in sid_quote_ids],
            sid_awards,
            [ai for ai in award_items if ai.award_id in sid_award_ids],
        )

    order_stmt = select(StockOrder).where(
        StockOrder.ordered_at >= start, StockOrder.ordered_at < end
    )
    if supplier_id is not None:
        order_stmt = order_stmt.where(StockOrder.supplier_id == supplier_id)
    if owner_id is not None:
        order_stmt = order_stmt.where(StockOrder.buyer_id == owner_id)
    stock_orders = list((await session.execute(order_stmt.order_by(StockOrder.ordered_at))).scalars().all())

    line_ids = [li.id for li in line_items]
    order_ids = [o.id for o in stock_orders]
    shipments: list[Shipment] = []
    if line_ids:
        shipments += (
            await session.execute(select(Shipment).where(Shipment.line_item_id.in_(line_ids)))
        ).scalars().all()
    if order_ids:
        shipments += (
            await session.execute(select(Shipment).where(Shipment.stock_order_id.in_(order_ids)))
        ).scalars().all()
    settlements: dict[uuid.UUID, Settlement] = {}
    if shipments:
        result = await session.execute(
            select(Settlement).where(Settlement.shipment_id.in_([s.id for s in shipments]))
        )
        settlements = {st.shipment_id: st for st in result.scalars().all()}

    return _Snapshot(
        solicitations=solicitations,
        graphs=graphs,
        shipments_by_line={
            (s.line_item_id, s.supplier_id): s for s in shipments if s.line_item_id
        },
        shipments_by_order={s.stock_order_id: s for s in shipments if s.stock_order_id},
        settlements=settlements,
        stock_orders=stock_orders,
    )


def _receipt_url(settlement: Optional[Settlement]) -> Optional[str]:
    if settlement is None:
        return None
    return resolve_url(settlement.payment_receipt_key, settings.RECEIPT_URL_TTL_SECONDS)


def _lines(
    snapshot: _Snapshot, supplier_id: Optional[uuid.UUID] = None
) -> Iterable[ReportLine]:
    """Every won line item and stock order in the snapshot, optionally for one supplier."""
    for sid, graph in snapshot.graphs.items():
        solicitation = snapshot.solicitations[sid]
        for line_item_id, winner in current_winners(graph).items():
            if supplier_id is not None and winner.supplier_id != supplier_id:
                continue
            li = graph.line_items[line_item_id]
            shipment = snapshot.shipments_by_line.get((line_item_id, winner.supplier_id))
            settlement = snapshot.settlements.get(shipment.id) if shipment else None
            yield ReportLine(
                category="solicitation",
                supplier_id=winner.supplier_id,
                product_name=li.product_name,
                quantity=li.quantity,
                unit_price_cents=winner.unit_price_cents,
                amount_cents=winner.unit_price_cents * li.quantity,
                payment_status=payment_status(shipment, settlement),
                occurred_at=solicitation.closed_at,
                solicitation_id=sid,
                solicitation_number=solicitation.solicitation_number,
                line_item_id=line_item_id,
                quote_id=winner.quote_id,
                tracking_number=shipment.tracking_number if shipment else None,
                receipt_url=_receipt_url(settlement),
            )

    for order in snapshot.stock_orders:
        if supplier_id is not None and order.supplier_id != supplier_id:
            continue
        shipment = snapshot.shipments_by_order.get(order.id)
        settlement = snapshot.settlements.get(shipment.id) if shipment else None
        yield ReportLine(
            category="stock_order",
            supplier_id=order.supplier_id,
            product_name=order.product_name,
            quantity=order.quantity,
            unit_price_cents=order.unit_price_cents,
            amount_cents=order.unit_price_cents * order.quantity,
            payment_status=payment_status(shipment, settlement),
            occurred_at=order.ordered_at,
            stock_order_id=order.id,
            tracking_number=shipment.tracking_number if shipment else None,
            receipt_url=_receipt_url(settlement),
        )


def _daily_stats(lines: Iterable[ReportLine]) -> list[dict]:
    stats: dict[str, dict] = {}
    for line in lines:
        day = line.occurred_at.date().isoformat()
        entry = stats.setdefault(day, {"date": day, "amount_cents": 0, "count": 0})
        entry["amount_cents"] += line.amount_cents
        entry["count"] += 1
    return [stats[d] for d in sorted(stats)]


def _dashboard(
    supplier_id: uuid.UUID, start: datetime, end: datetime, lines: list[ReportLine]
) -> SupplierDashboard:
    dashboard = SupplierDashboard(supplier_id=supplier_id, start=start, end=end)
    for line in sorted(lines, key=lambda line: line.occurred_at, reverse=True):
        dashboard.items.append(line)
        dashboard.summary.add(line)
        if line.category == "stock_order":
            dashboard.stock_order_totals.add(line)
        else:
            dashboard.solicitation_totals.add(line)
    dashboard.daily_stats = _daily_stats(dashboard.items)
    return dashboard


# ---------- public reports ----------


async def supplier_dashboard(
    session: AsyncSession,
    supplier_id,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> SupplierDashboard:
    start, end = default_range(start, end)
    supplier_uuid = as_uuid(supplier_id)
    snapshot = await _load_snapshot(session, start, end, supplier_id=supplier_uuid)
    dashboard = _dashboard(supplier_uuid, start, end, list(_lines(snapshot, supplier_uuid)))
    logger.info(
        "supplier_dashboard_built",
        supplier_id=str(supplier_uuid),
        items=dashboard.summary.item_count,
        total_cents=dashboard.summary.total_cents,
    )
    return dashboard


async def all_suppliers_dashboard(
    session: AsyncSession,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> tuple[Totals, list[SupplierDashboard]]:
    start, end = default_range(start, end)
    snapshot = await _load_snapshot(session, start, end)
    by_supplier: dict[uuid.UUID, list[ReportLine]] = defaultdict(list)
    for line in _lines(snapshot):
        by_supplier[line.supplier_id].append(line)

    dashboards = [
        _dashboard(supplier_id, start, end, lines) for supplier_id, lines in by_supplier.items()
    ]
    dashboards.sort(key=lambda d: d.summary.total_cents, reverse=True)
    grand = Totals()
    for lines in by_supplier.values():
        for line in lines:
            grand.add(line)
    logger.info("all_suppliers_dashboard_built", suppliers=len(dashboards), total_cents=grand.total_cents)
    return grand, dashboards


@dataclass
class SolicitationGroup:
    solicitation_id: uuid.UUID
    solicitation_number: str
    title: str
    totals: Totals = field(default_factory=Totals)
    items: list[ReportLine] = field(default_factory=list)


@dataclass
class SupplierPayment:
    supplier_id: uuid.UUID
    totals: Totals = field(default_factory=Totals)
    solicitations: list[SolicitationGroup] = field(default_factory=list)


@dataclass
class FinancialReport:
    period: str
    start: datetime
    end: datetime
    summary: Totals = field(default_factory=Totals)
    suppliers: list[SupplierPayment] = field(default_factory=list)
    stock_orders: list[ReportLine] = field(default_factory=list)
    stock_order_totals: Totals = field(default_factory=Totals)


async def buyer_financial_report(
    session: AsyncSession,
    target: date,
    period: str = "day",
    owner_id=None,
) -> FinancialReport:
    """Payables per supplier and solicitation for the period containing ``target``."""
    start, end = period_range(target, period)
    owner_uuid = as_uuid(owner_id) if owner_id is not None else None
    snapshot = await _load_snapshot(session, start, end, owner_id=owner_uuid)
    report = FinancialReport(period=period, start=start, end=end)

    payments: dict[uuid.UUID, SupplierPayment] = {}
    groups: dict[tuple[uuid.UUID, uuid.UUID], SolicitationGroup] = {}
    for line in _lines(snapshot):
        report.summary.add(line)
        if line.category == "stock_order":
            report.stock_orders.append(line)
            report.stock_order_totals.add(line)
            continue
        payment = payments.setdefault(line.supplier_id, SupplierPayment(line.supplier_id))
        payment.totals.add(line)
        key = (line.supplier_id, line.solicitation_id)
        group = groups.get(key)
        if group is None:
            solicitation = snapshot.solicitations[line.solicitation_id]
            group = SolicitationGroup(
                solicitation_id=solicitation.id,
                solicitation_number=solicitation.solicitation_number,
                title=solicitation.title,
            )
            groups[key] = group
            payment.solicitations.append(group)
        group.totals.add(line)
        group.items.append(line)

    report.suppliers = sorted(payments.values(), key=lambda p: p.totals.total_cents, reverse=True)
    logger.info(
        "financial_report_built",
        period=period,
        start=start.isoformat(),
        suppliers=len(report.suppliers),
        payable_cents=report.summary.total_cents,
    )
    return report
