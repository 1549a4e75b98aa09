from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from sourcing.database import get_db
from sourcing.middleware.auth import get_current_user
from sourcing.middleware.authorization import check_owner_scope, require_roles
from sourcing.models.quote import Quote, QuoteItem
from sourcing.services import quote_service, solicitation_service
from sourcing.services.notification_service import dispatch_notifications
from sourcing.schemas.quote import (
    QuoteCreate,
    QuoteItemResponse,
    QuoteResponse,
    QuoteSubmissionResponse,
)

logger = structlog.get_logger()
router = APIRouter()


def _quote_to_response(q: Quote, items: list[QuoteItem], quantities: dict) -> QuoteResponse:
    return QuoteResponse(
        id=str(q.id),
        solicitation_id=str(q.solicitation_id),
        supplier_id=str(q.supplier_id),
        status=q.status,
        price_cents=q.price_cents,
        quoted_total_cents=sum(
            qi.unit_price_cents * quantities.get(qi.line_item_id, 0) for qi in items
        ),
        notes=q.notes,
        submitted_at=q.submitted_at.isoformat() if q.submitted_at else "",
        items=[
            QuoteItemResponse(
                id=str(qi.id),
                line_item_id=str(qi.line_item_id),
                unit_price_cents=qi.unit_price_cents,
            )
            for qi in items
        ],
    )


async def _quantities(db: AsyncSession, solicitation_id) -> dict:
    line_items = await solicitation_service.list_line_items(db, solicitation_id)
    return {li.id: li.quantity for li in line_items}


@router.post(
    "/{solicitation_id}/quotes",
    response_model=QuoteSubmissionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_quote(
    solicitation_id: str,
    body: QuoteCreate,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("supplier")),
    db: AsyncSession = Depends(get_db),
):
    """Submit a new quote; items at or below their instant price are awarded immediately."""
    submission = await quote_service.submit_quote(
        db,
        solicitation_id,
        supplier_id=current_user["user_id"],
        items=body.items,
        notes=body.notes,
    )
    response = QuoteSubmissionResponse(
        quote=_quote_to_response(
            submission.quote,
            submission.quote_items,
            await _quantities(db, solicitation_id),
        ),
        instant_awards=[str(i) for i in submission.instant_awards],
    )
    await db.commit()
    background_tasks.add_task(dispatch_notifications, submission.notifications)
    return response


@router.get("/{solicitation_id}/quotes", response_model=list[QuoteResponse])
async def list_quotes(
    solicitation_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Buyers see every quote of their solicitation; suppliers only their own."""
    solicitation = await solicitation_service.get_solicitation(db, solicitation_id)
    supplier_id = None
    if current_user["role"] == "supplier":
        supplier_id = current_user["user_id"]
    else:
        check_owner_scope(current_user, solicitation.owner_id)

    rows = await quote_service.list_quotes(db, solicitation.id, supplier_id=supplier_id)
    quantities = await _quantities(db, solicitation.id)
    return [_quote_to_response(q, items, quantities) for q, items in rows]
