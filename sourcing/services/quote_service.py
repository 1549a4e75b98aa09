"""
Quote service — supplier submissions and the instant award they can trigger.

Each submission is a new, immutable Quote. Line items priced at or below
their instant price are awarded on the spot, inside the same transaction and
under the solicitation row lock, using the same repair path as evaluation.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from sourcing.exceptions import StateError, ValidationError
from sourcing.models.quote import Quote, QuoteItem
from sourcing.schemas.quote import QuoteItemCreate
from sourcing.services.award_consistency import assign_winner
from sourcing.services.award_engine import determine_winner, qualifies_for_instant_award
from sourcing.services.audit_service import record_audit
from sourcing.services.notification_service import NotificationEvent, notify
from sourcing.services.solicitation_state import SolicitationState, as_uuid

logger = structlog.get_logger()

INSTANT_AWARD = "INSTANT_AWARD"


@dataclass
class QuoteSubmission:
    quote: Quote
    quote_items: list[QuoteItem]
    instant_awards: list[uuid.UUID] = field(default_factory=list)
    notifications: list[NotificationEvent] = field(default_factory=list)


async def submit_quote(
    session: AsyncSession,
    solicitation_id,
    supplier_id,
    items: Sequence[QuoteItemCreate],
    notes: Optional[str] = None,
) -> QuoteSubmission:
    state = await SolicitationState.load(session, solicitation_id, lock=True)
    solicitation = state.solicitation
    if solicitation.status != "PUBLISHED":
        raise StateError(
            f"Can only quote on PUBLISHED solicitations (current: {solicitation.status})",
            "SOLICITATION_NOT_OPEN",
        )
    now = datetime.utcnow()
    if solicitation.deadline and now > solicitation.deadline:
        raise StateError("Solicitation deadline has passed", "DEADLINE_PASSED")

    if not items:
        raise ValidationError("A quote needs at least one line item", "EMPTY_QUOTE")
    seen: set[uuid.UUID] = set()
    for item in items:
        line_item_id = as_uuid(item.line_item_id)
        if line_item_id in seen:
            raise ValidationError(
                f"Line item {line_item_id} is quoted twice", "DUPLICATE_LINE_ITEM"
            )
        seen.add(line_item_id)
        line_item = state.line_items.get(line_item_id)
        if line_item is None:
            raise ValidationError(
                f"Line item {line_item_id} does not belong to this solicitation",
                "LINE_ITEM_MISMATCH",
            )
        if item.unit_price_cents <= 0:
            raise ValidationError(
                f"{line_item.product_name}: price must be positive", "INVALID_PRICE"
            )
        ceiling = line_item.ceiling_price_cents
        if ceiling is not None and item.unit_price_cents > ceiling:
            raise ValidationError(
                f"{line_item.product_name}: price {item.unit_price_cents} exceeds "
                f"the ceiling price {ceiling}",
                "PRICE_ABOVE_CEILING",
            )
        if line_item.item_status in ("AWARDED", "CANCELLED", "OUT_OF_STOCK"):
            raise StateError(
                f"{line_item.product_name} is already {line_item.item_status}",
                "LINE_ITEM_CLOSED",
            )

    supplier_uuid = as_uuid(supplier_id)
    quote = Quote(
        id=uuid.uuid4(),
        solicitation_id=solicitation.id,
        supplier_id=supplier_uuid,
        status="SUBMITTED",
        price_cents=0,
        notes=notes,
        submitted_at=now,
    )
    session.add(quote)
    state.quotes[quote.id] = quote

    quote_items = []
    for item in items:
        qi = QuoteItem(
            id=uuid.uuid4(),
            quote_id=quote.id,
            line_item_id=as_uuid(item.line_item_id),
            unit_price_cents=item.unit_price_cents,
            created_at=now,
        )
        session.add(qi)
        state.quote_items[qi.id] = qi
        quote_items.append(qi)
        line_item = state.line_items[qi.line_item_id]
        if line_item.item_status == "PENDING":
            line_item.item_status = "QUOTED"
    await session.flush()

    submission = QuoteSubmission(quote=quote, quote_items=quote_items)
    await _apply_instant_awards(state, submission)

    await record_audit(
        session,
        "QUOTE_SUBMITTED",
        "quote",
        quote.id,
        supplier_uuid,
        {
            "solicitation_id": solicitation.id,
            "line_items": [qi.line_item_id for qi in quote_items],
            "instant_awards": submission.instant_awards,
        },
    )
    logger.info(
        "quote_submitted",
        solicitation_id=str(solicitation.id),
        quote_id=str(quote.id),
        supplier_id=str(supplier_uuid),
        items=len(quote_items),
        instant_awards=len(submission.instant_awards),
    )
    return submission


async def _apply_instant_awards(state: SolicitationState, submission: QuoteSubmission) -> None:
    solicitation = state.solicitation
    for qi in submission.quote_items:
        line_item = state.line_items[qi.line_item_id]
        if line_item.item_status != "QUOTED":
            continue
        graph = state.graph()
        facts = graph.line_items[line_item.id]
        winner = determine_winner(facts, graph.quote_items_for(line_item.id), graph.awards)
        if winner is None or not qualifies_for_instant_award(facts, winner):
            continue

        await assign_winner(
            state, line_item, state.quote_items[winner.id], reason=INSTANT_AWARD
        )
        submission.instant_awards.append(line_item.id)
        logger.info(
            "line_item_instant_awarded",
            solicitation_id=str(solicitation.id),
            line_item_id=str(line_item.id),
            quote_item_id=str(winner.id),
            unit_price_cents=winner.unit_price_cents,
        )
        submission.notifications.append(
            notify(
                "instant_award",
                {
                    "solicitation_number": solicitation.solicitation_number,
                    "product_name": line_item.product_name,
                },
                recipient_id=winner.supplier_id,
                entity_id=solicitation.id,
            )
        )
    if submission.instant_awards:
        await state.session.flush()


async def list_quotes(
    session: AsyncSession,
    solicitation_id,
    supplier_id=None,
) -> list[tuple[Quote, list[QuoteItem]]]:
    """Quotes of a solicitation with their items, optionally for one supplier."""
    stmt = (
        select(Quote)
        .where(Quote.solicitation_id == as_uuid(solicitation_id))
        .order_by(Quote.submitted_at)
    )
    if supplier_id is not None:
        stmt = stmt.where(Quote.supplier_id == as_uuid(supplier_id))
    quotes = list((await session.execute(stmt)).scalars().all())
    if not quotes:
        return []

    items_result = await session.execute(
        select(QuoteItem).where(QuoteItem.quote_id.in_([q.id for q in quotes]))
    )
    items_map: dict = {}
    for qi in items_result.scalars().all():
        items_map.setdefault(qi.quote_id, []).append(qi)
    return [(q, items_map.get(q.id, [])) for q in quotes]
