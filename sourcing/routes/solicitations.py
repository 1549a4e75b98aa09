from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from sourcing.database import get_db
from sourcing.exceptions import NotFoundError
from sourcing.middleware.auth import get_current_user
from sourcing.middleware.authorization import check_owner_scope, require_roles
from sourcing.models.award import Award, AwardItem
from sourcing.models.solicitation import LineItem, Solicitation
from sourcing.services import (
    evaluation_service,
    override_service,
    solicitation_service,
)
from sourcing.services.notification_service import dispatch_notifications
from sourcing.services.solicitation_state import as_uuid
from sourcing.schemas.award import (
    AwardItemRequest,
    AwardItemResponse,
    AwardResponse,
    OutOfStockRequest,
    OverrideResponse,
)
from sourcing.schemas.solicitation import (
    CancelRequest,
    EvaluationResponse,
    LineItemFailureResponse,
    LineItemPriceUpdate,
    LineItemResponse,
    SolicitationCreate,
    SolicitationResponse,
    UnquotedLineItemResponse,
)
from sourcing.schemas.common import PaginatedResponse, build_pagination

logger = structlog.get_logger()
router = APIRouter()

SUPPLIER_VISIBLE = ("PUBLISHED", "CLOSED", "AWARDED")


def _line_to_response(li: LineItem) -> LineItemResponse:
    return LineItemResponse(
        id=str(li.id),
        position=li.position,
        product_name=li.product_name,
        quantity=li.quantity,
        unit=li.unit,
        ceiling_price_cents=li.ceiling_price_cents,
        instant_price_cents=li.instant_price_cents,
        item_status=li.item_status,
        status_reason=li.status_reason,
    )


def _to_response(s: Solicitation, line_items: list[LineItem]) -> SolicitationResponse:
    return SolicitationResponse(
        id=str(s.id),
        solicitation_number=s.solicitation_number,
        title=s.title,
        status=s.status,
        deadline=s.deadline.isoformat() if s.deadline else "",
        owner_id=str(s.owner_id),
        closed_at=s.closed_at.isoformat() if s.closed_at else None,
        line_items=[_line_to_response(li) for li in line_items],
        created_at=s.created_at.isoformat() if s.created_at else "",
    )


async def _build_response(db: AsyncSession, s: Solicitation) -> SolicitationResponse:
    return _to_response(s, await solicitation_service.list_line_items(db, s.id))


async def _award_response(db: AsyncSession, award: Award) -> AwardResponse:
    items_result = await db.execute(
        select(AwardItem).where(AwardItem.award_id == award.id)
    )
    return AwardResponse(
        id=str(award.id),
        solicitation_id=str(award.solicitation_id),
        supplier_id=str(award.supplier_id),
        quote_id=str(award.quote_id),
        status=award.status,
        final_price_cents=award.final_price_cents,
        reason=award.reason,
        cancellation_reason=award.cancellation_reason,
        cancelled_at=award.cancelled_at.isoformat() if award.cancelled_at else None,
        items=[
            AwardItemResponse(
                id=str(ai.id),
                line_item_id=str(ai.line_item_id),
                quote_item_id=str(ai.quote_item_id),
                unit_price_cents=ai.unit_price_cents,
                quantity=ai.quantity,
            )
            for ai in items_result.scalars().all()
        ],
    )


def _evaluation_response(result: evaluation_service.EvaluationResult) -> EvaluationResponse:
    return EvaluationResponse(
        solicitation_id=str(result.solicitation_id),
        solicitation_status=result.solicitation_status or "",
        success_count=result.success_count,
        failure_count=result.failure_count,
        awarded=[str(i) for i in result.awarded],
        unquoted=[str(i) for i in result.unquoted],
        skipped=[str(i) for i in result.skipped],
        failures=[
            LineItemFailureResponse(line_item_id=str(f.line_item_id), error=f.error)
            for f in result.failures
        ],
    )


def _parse_deadline(value: str) -> datetime:
    try:
        deadline = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "Invalid deadline format (use ISO 8601)",
                }
            },
        )
    if deadline.tzinfo is not None:
        deadline = deadline.astimezone(timezone.utc).replace(tzinfo=None)
    return deadline


async def _owned(db: AsyncSession, solicitation_id: str, current_user: dict) -> Solicitation:
    solicitation = await solicitation_service.get_solicitation(db, solicitation_id)
    check_owner_scope(current_user, solicitation.owner_id)
    return solicitation


@router.get("", response_model=PaginatedResponse[SolicitationResponse])
async def list_solicitations(
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=50),
    solicitation_status: str = Query(None, alias="status"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    scope = []
    if current_user["role"] == "supplier":
        scope.append(Solicitation.status.in_(SUPPLIER_VISIBLE))
    elif current_user["role"] == "buyer":
        scope.append(Solicitation.owner_id == as_uuid(current_user["user_id"]))

    q = select(Solicitation).where(*scope)
    count_q = select(func.count(Solicitation.id)).where(*scope)
    status_result = await db.execute(
        select(Solicitation.status, func.count(Solicitation.id))
        .where(*scope)
        .group_by(Solicitation.status)
    )
    status_counts = {row[0]: row[1] for row in status_result.all()}
    if solicitation_status:
        q = q.where(Solicitation.status == solicitation_status)
        count_q = count_q.where(Solicitation.status == solicitation_status)

    total = (await db.execute(count_q)).scalar() or 0
    result = await db.execute(
        q.order_by(Solicitation.created_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    solicitations = result.scalars().all()

    # Batch-load line items for the page
    li_map: dict = {}
    ids = [s.id for s in solicitations]
    if ids:
        li_result = await db.execute(
            select(LineItem)
            .where(LineItem.solicitation_id.in_(ids))
            .order_by(LineItem.position)
        )
        for li in li_result.scalars().all():
            li_map.setdefault(li.solicitation_id, []).append(li)

    items = [_to_response(s, li_map.get(s.id, [])) for s in solicitations]
    return PaginatedResponse(
        data=items,
        pagination=build_pagination(page, limit, total),
        status_counts=status_counts,
    )


@router.get("/unquoted-items", response_model=list[UnquotedLineItemResponse])
async def list_unquoted_items(
    solicitation_id: str = Query(None),
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("buyer", "admin")),
    db: AsyncSession = Depends(get_db),
):
    rows = await solicitation_service.list_unquoted_line_items(db, solicitation_id)
    return [
        UnquotedLineItemResponse(
            solicitation_id=str(s.id),
            solicitation_number=s.solicitation_number,
            line_item=_line_to_response(li),
        )
        for s, li in rows
        if current_user["role"] == "admin" or str(s.owner_id) == str(current_user["user_id"])
    ]


@router.get("/{solicitation_id}", response_model=SolicitationResponse)
async def get_solicitation(
    solicitation_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    solicitation = await solicitation_service.get_solicitation(db, solicitation_id)
    if current_user["role"] == "supplier" and solicitation.status not in SUPPLIER_VISIBLE:
        raise NotFoundError("Solicitation not found", "SOLICITATION_NOT_FOUND")
    if current_user["role"] == "buyer":
        check_owner_scope(current_user, solicitation.owner_id)
    return await _build_response(db, solicitation)


@router.post("", response_model=SolicitationResponse, status_code=status.HTTP_201_CREATED)
async def create_solicitation(
    body: SolicitationCreate,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("buyer", "admin")),
    db: AsyncSession = Depends(get_db),
):
    solicitation, line_items = await solicitation_service.create_solicitation(
        db,
        owner_id=current_user["user_id"],
        title=body.title,
        deadline=_parse_deadline(body.deadline),
        drafts=body.line_items,
    )
    return _to_response(solicitation, line_items)


@router.patch(
    "/{solicitation_id}/line-items/{line_item_id}", response_model=LineItemResponse
)
async def update_line_item_prices(
    solicitation_id: str,
    line_item_id: str,
    body: LineItemPriceUpdate,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("buyer", "admin")),
    db: AsyncSession = Depends(get_db),
):
    await _owned(db, solicitation_id, current_user)
    line_item = await solicitation_service.update_line_item_prices(
        db,
        solicitation_id,
        line_item_id,
        body.ceiling_price_cents,
        body.instant_price_cents,
        actor_id=current_user["user_id"],
    )
    return _line_to_response(line_item)


@router.post("/{solicitation_id}/publish", response_model=SolicitationResponse)
async def publish_solicitation(
    solicitation_id: str,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("buyer", "admin")),
    db: AsyncSession = Depends(get_db),
):
    await _owned(db, solicitation_id, current_user)
    solicitation, events = await solicitation_service.publish_solicitation(
        db, solicitation_id, actor_id=current_user["user_id"]
    )
    response = await _build_response(db, solicitation)
    await db.commit()
    background_tasks.add_task(dispatch_notifications, events)
    return response


@router.post("/{solicitation_id}/close", response_model=EvaluationResponse)
async def close_solicitation(
    solicitation_id: str,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("buyer", "admin")),
    db: AsyncSession = Depends(get_db),
):
    """Close now and evaluate every line item; the close survives evaluation failures."""
    await _owned(db, solicitation_id, current_user)
    result = await evaluation_service.close_and_evaluate(
        db, solicitation_id, actor_id=current_user["user_id"]
    )
    await db.commit()
    background_tasks.add_task(dispatch_notifications, result.notifications)
    return _evaluation_response(result)


@router.post("/{solicitation_id}/evaluate", response_model=EvaluationResponse)
async def evaluate_solicitation(
    solicitation_id: str,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("admin")),
    db: AsyncSession = Depends(get_db),
):
    """Re-run evaluation on a CLOSED solicitation, e.g. after item failures."""
    result = await evaluation_service.evaluate_solicitation(
        db, solicitation_id, actor_id=current_user["user_id"]
    )
    await db.commit()
    background_tasks.add_task(dispatch_notifications, result.notifications)
    return _evaluation_response(result)


@router.post("/{solicitation_id}/cancel", response_model=SolicitationResponse)
async def cancel_solicitation(
    solicitation_id: str,
    background_tasks: BackgroundTasks,
    body: Optional[CancelRequest] = None,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("buyer", "admin")),
    db: AsyncSession = Depends(get_db),
):
    await _owned(db, solicitation_id, current_user)
    solicitation, events = await solicitation_service.cancel_solicitation(
        db, solicitation_id, reason=body.reason if body else None,
        actor_id=current_user["user_id"],
    )
    response = await _build_response(db, solicitation)
    await db.commit()
    background_tasks.add_task(dispatch_notifications, events)
    return response


@router.delete("/{solicitation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_solicitation(
    solicitation_id: str,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("buyer", "admin")),
    db: AsyncSession = Depends(get_db),
):
    await _owned(db, solicitation_id, current_user)
    await solicitation_service.delete_solicitation(db, solicitation_id, current_user)


@router.post(
    "/{solicitation_id}/line-items/{line_item_id}/award",
    response_model=OverrideResponse,
)
async def award_line_item(
    solicitation_id: str,
    line_item_id: str,
    body: AwardItemRequest,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("buyer", "admin")),
    db: AsyncSession = Depends(get_db),
):
    """Manually award one line item to a chosen quote item."""
    await _owned(db, solicitation_id, current_user)
    result = await override_service.award_item(
        db,
        solicitation_id,
        line_item_id,
        quote_item_id=body.quote_item_id,
        quote_id=body.quote_id,
        reason=body.reason,
        actor_id=current_user["user_id"],
    )
    response = OverrideResponse(
        award=await _award_response(db, result.award),
        previous_supplier_id=str(result.previous_supplier_id) if result.previous_supplier_id else None,
        solicitation_status=result.solicitation_status,
    )
    await db.commit()
    background_tasks.add_task(dispatch_notifications, result.notifications)
    return response


@router.post(
    "/{solicitation_id}/line-items/{line_item_id}/out-of-stock",
    response_model=LineItemResponse,
)
async def mark_out_of_stock(
    solicitation_id: str,
    line_item_id: str,
    background_tasks: BackgroundTasks,
    body: Optional[OutOfStockRequest] = None,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("supplier", "admin")),
    db: AsyncSession = Depends(get_db),
):
    supplier_id = current_user["user_id"] if current_user["role"] == "supplier" else None
    state, events = await override_service.mark_out_of_stock(
        db,
        solicitation_id,
        line_item_id,
        supplier_id=supplier_id,
        reason=body.reason if body else None,
        actor_id=current_user["user_id"],
    )
    response = _line_to_response(state.line_item(line_item_id))
    await db.commit()
    background_tasks.add_task(dispatch_notifications, events)
    return response


@router.get("/{solicitation_id}/awards", response_model=list[AwardResponse])
async def list_awards(
    solicitation_id: str,
    include_cancelled: bool = Query(False),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    solicitation = await solicitation_service.get_solicitation(db, solicitation_id)
    q = select(Award).where(Award.solicitation_id == solicitation.id)
    if not include_cancelled:
        q = q.where(Award.status == "ACTIVE")
    if current_user["role"] == "supplier":
        q = q.where(Award.supplier_id == as_uuid(current_user["user_id"]))
    elif current_user["role"] == "buyer":
        check_owner_scope(current_user, solicitation.owner_id)
    result = await db.execute(q.order_by(Award.created_at))
    return [await _award_response(db, award) for award in result.scalars().all()]
