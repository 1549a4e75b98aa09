"""
Solicitation lifecycle — create, price, publish, cancel and delete.

All functions use the caller's session (no commit). get_db() auto-commits.
"""

import uuid
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from sourcing.exceptions import NotFoundError, StateError, ValidationError
from sourcing.models.quote import Quote, QuoteItem
from sourcing.models.solicitation import LineItem, Solicitation
from sourcing.schemas.solicitation import LineItemDraft
from sourcing.services.audit_service import record_audit
from sourcing.services.notification_service import NotificationEvent, notify
from sourcing.services.solicitation_state import SolicitationState, as_uuid

logger = structlog.get_logger()

SOLICITATION_PREFIX = "SOL"


async def _generate_solicitation_number(session: AsyncSession) -> str:
    result = await session.execute(select(func.count(Solicitation.id)))
    count = (result.scalar() or 0) + 1
    return f"{SOLICITATION_PREFIX}-{count:06d}"


def _check_prices(ceiling: Optional[int], instant: Optional[int], label: str) -> None:
    if ceiling is not None and ceiling <= 0:
        raise ValidationError(f"{label}: ceiling price must be positive", "INVALID_PRICE")
    if instant is not None and instant <= 0:
        raise ValidationError(f"{label}: instant price must be positive", "INVALID_PRICE")
    if instant is not None and ceiling is not None and instant > ceiling:
        raise ValidationError(
            f"{label}: instant price cannot exceed the ceiling price", "INSTANT_ABOVE_CEILING"
        )


async def get_solicitation(session: AsyncSession, solicitation_id) -> Solicitation:
    result = await session.execute(
        select(Solicitation).where(Solicitation.id == as_uuid(solicitation_id))
    )
    solicitation = result.scalar_one_or_none()
    if solicitation is None:
        raise NotFoundError("Solicitation not found", "SOLICITATION_NOT_FOUND")
    return solicitation


async def create_solicitation(
    session: AsyncSession,
    owner_id,
    title: str,
    deadline: datetime,
    drafts: Sequence[LineItemDraft],
) -> tuple[Solicitation, list[LineItem]]:
    """Create a DRAFT solicitation from imported line item drafts."""
    for idx, draft in enumerate(drafts, start=1):
        _check_prices(draft.ceiling_price_cents, draft.instant_price_cents, f"Line {idx}")

    solicitation = Solicitation(
        id=uuid.uuid4(),
        solicitation_number=await _generate_solicitation_number(session),
        title=title,
        status="DRAFT",
        deadline=deadline,
        owner_id=as_uuid(owner_id),
    )
    session.add(solicitation)

    line_items = []
    for idx, draft in enumerate(drafts):
        li = LineItem(
            id=uuid.uuid4(),
            solicitation_id=solicitation.id,
            position=idx,
            product_name=draft.product_name,
            quantity=draft.quantity,
            unit=draft.unit,
            ceiling_price_cents=draft.ceiling_price_cents,
            instant_price_cents=draft.instant_price_cents,
            item_status="PENDING",
        )
        session.add(li)
        line_items.append(li)

    await session.flush()
    logger.info(
        "solicitation_created",
        solicitation_id=str(solicitation.id),
        solicitation_number=solicitation.solicitation_number,
        line_items=len(line_items),
    )
    return solicitation, line_items


async def list_line_items(session: AsyncSession, solicitation_id) -> list[LineItem]:
    result = await session.execute(
        select(LineItem)
        .where(LineItem.solicitation_id == as_uuid(solicitation_id))
        .order_by(LineItem.position, LineItem.id)
    )
    return list(result.scalars().all())


async def update_line_item_prices(
    session: AsyncSession,
    solicitation_id,
    line_item_id,
    ceiling_price_cents: Optional[int],
    instant_price_cents: Optional[int],
    actor_id=None,
) -> LineItem:
    """Change ceiling/instant prices while the solicitation is DRAFT or PUBLISHED."""
    state = await SolicitationState.load(session, solicitation_id, lock=True)
    if state.solicitation.status not in ("DRAFT", "PUBLISHED"):
        raise StateError(
            f"Prices are frozen once a solicitation is {state.solicitation.status}",
            "SOLICITATION_NOT_OPEN",
        )
    line_item = state.line_item(line_item_id)
    _check_prices(ceiling_price_cents, instant_price_cents, line_item.product_name)
    if state.solicitation.status == "PUBLISHED" and not ceiling_price_cents:
        raise ValidationError(
            "A published line item needs a positive ceiling price", "CEILING_REQUIRED"
        )

    before = {
        "ceiling_price_cents": line_item.ceiling_price_cents,
        "instant_price_cents": line_item.instant_price_cents,
    }
    line_item.ceiling_price_cents = ceiling_price_cents
    line_item.instant_price_cents = instant_price_cents
    await session.flush()
    await record_audit(
        session,
        "LINE_ITEM_PRICES_UPDATED",
        "line_item",
        line_item.id,
        actor_id,
        {
            "before": before,
            "ceiling_price_cents": ceiling_price_cents,
            "instant_price_cents": instant_price_cents,
        },
    )
    return line_item


async def publish_solicitation(
    session: AsyncSession, solicitation_id, actor_id=None
) -> tuple[Solicitation, list[NotificationEvent]]:
    state = await SolicitationState.load(session, solicitation_id, lock=True)
    solicitation = state.solicitation
    if solicitation.status != "DRAFT":
        raise StateError(
            f"Can only publish DRAFT solicitations (current: {solicitation.status})",
            "SOLICITATION_NOT_DRAFT",
        )
    if not state.line_items:
        raise ValidationError("Cannot publish a solicitation without line items", "NO_LINE_ITEMS")
    missing = [
        li.product_name
        for li in state.line_items.values()
        if not li.ceiling_price_cents or li.ceiling_price_cents <= 0
    ]
    if missing:
        raise ValidationError(
            "Every line item needs a positive ceiling price before publishing: "
            + ", ".join(missing),
            "CEILING_REQUIRED",
        )
    if solicitation.deadline <= datetime.utcnow():
        raise ValidationError("Deadline must be in the future", "DEADLINE_PASSED")

    solicitation.status = "PUBLISHED"
    await session.flush()
    await record_audit(session, "SOLICITATION_PUBLISHED", "solicitation", solicitation.id, actor_id)
    logger.info("solicitation_published", solicitation_id=str(solicitation.id))

    events = [
        notify(
            "solicitation_published",
            {
                "solicitation_number": solicitation.solicitation_number,
                "title": solicitation.title,
                "deadline": solicitation.deadline.strftime("%d %b %Y %H:%M UTC"),
            },
            role="supplier",
            broadcast=True,
            entity_id=solicitation.id,
        )
    ]
    return solicitation, events


async def cancel_solicitation(
    session: AsyncSession,
    solicitation_id,
    reason: Optional[str] = None,
    actor_id=None,
) -> tuple[Solicitation, list[NotificationEvent]]:
    """Cancel an unfinished solicitation: quotes are rejected, awards retained as CANCELLED."""
    state = await SolicitationState.load(session, solicitation_id, lock=True)
    solicitation = state.solicitation
    if solicitation.status not in ("DRAFT", "PUBLISHED", "CLOSED"):
        raise StateError(
            f"Cannot cancel a solicitation in '{solicitation.status}' status",
            "SOLICITATION_NOT_CANCELLABLE",
        )

    now = datetime.utcnow()
    solicitation.status = "CANCELLED"
    for li in state.line_items.values():
        if li.item_status != "OUT_OF_STOCK":
            li.item_status = "CANCELLED"
            li.status_reason = reason
    for quote in state.quotes.values():
        quote.status = "REJECTED"
        quote.price_cents = 0
    for award in state.awards.values():
        if award.status == "ACTIVE":
            award.status = "CANCELLED"
            award.cancellation_reason = "SOLICITATION_CANCELLED"
            award.cancelled_at = now
    await session.flush()

    await record_audit(
        session, "SOLICITATION_CANCELLED", "solicitation", solicitation.id, actor_id,
        {"reason": reason},
    )
    logger.info("solicitation_cancelled", solicitation_id=str(solicitation.id), by=str(actor_id))

    events = [
        notify(
            "solicitation_cancelled",
            {"solicitation_number": solicitation.solicitation_number, "title": solicitation.title},
            recipient_id=supplier_id,
            entity_id=solicitation.id,
        )
        for supplier_id in {q.supplier_id for q in state.quotes.values()}
    ]
    return solicitation, events


async def delete_solicitation(
    session: AsyncSession, solicitation_id, actor: dict
) -> None:
    """
    Drafts can be deleted freely. After that only an admin may delete, only a
    CANCELLED solicitation, and only while no award row (active or not) exists.
    """
    state = await SolicitationState.load(session, solicitation_id, lock=True)
    solicitation = state.solicitation
    if solicitation.status != "DRAFT":
        if actor.get("role") != "admin":
            raise StateError(
                "Only drafts can be deleted; cancel the solicitation instead",
                "SOLICITATION_NOT_DRAFT",
            )
        if solicitation.status != "CANCELLED":
            raise StateError(
                "Only DRAFT or CANCELLED solicitations can be deleted",
                "SOLICITATION_NOT_DELETABLE",
            )
        if state.awards:
            raise StateError(
                "Solicitation has award records and must be kept for audit",
                "SOLICITATION_HAS_AWARDS",
            )

    sid = solicitation.id
    quote_ids = list(state.quotes)
    if quote_ids:
        await session.execute(delete(QuoteItem).where(QuoteItem.quote_id.in_(quote_ids)))
        await session.execute(delete(Quote).where(Quote.id.in_(quote_ids)))
    await session.execute(delete(LineItem).where(LineItem.solicitation_id == sid))
    await session.delete(solicitation)
    await session.flush()

    await record_audit(
        session, "SOLICITATION_DELETED", "solicitation", sid, actor.get("user_id"),
        {"status": solicitation.status, "solicitation_number": solicitation.solicitation_number},
    )
    logger.info("solicitation_deleted", solicitation_id=str(sid))


async def list_unquoted_line_items(
    session: AsyncSession, solicitation_id=None
) -> list[tuple[Solicitation, LineItem]]:
    """Line items of closed solicitations that never received a quote."""
    quoted = select(QuoteItem.line_item_id)
    stmt = (
        select(Solicitation, LineItem)
        .join(LineItem, LineItem.solicitation_id == Solicitation.id)
        .where(
            Solicitation.status.in_(("CLOSED", "AWARDED")),
            LineItem.item_status.in_(("PENDING", "QUOTED")),
            LineItem.id.not_in(quoted),
        )
        .order_by(Solicitation.closed_at.desc(), LineItem.position)
    )
    if solicitation_id is not None:
        stmt = stmt.where(Solicitation.id == as_uuid(solicitation_id))
    result = await session.execute(stmt)
    return [(row[0], row[1]) for row in result.all()]

