"""
Override service — operator decisions on single line items after close.

``award_item`` reassigns one line item to a chosen quote item, and
``mark_out_of_stock`` lets the winning supplier withdraw one. Both run in the
caller's transaction under the solicitation row lock and finish with a full
invariant check. Any violation raises ConsistencyError, so get_db() rolls the
whole decision back.
"""

import uuid
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from sourcing.exceptions import NotFoundError, StateError, ValidationError
from sourcing.models.award import Award
from sourcing.services.award_consistency import (
    MANUAL_REAWARD,
    OUT_OF_STOCK,
    assign_winner,
    ensure_consistent,
    promote_if_complete,
    verify_winner,
    withdraw_line_item,
)
from sourcing.services.award_engine import current_winners
from sourcing.services.audit_service import record_audit
from sourcing.services.notification_service import NotificationEvent, notify
from sourcing.services.solicitation_state import SolicitationState, as_uuid

logger = structlog.get_logger()


@dataclass
class OverrideResult:
    award: Award
    previous_supplier_id: Optional[uuid.UUID]
    solicitation_status: str
    notifications: list[NotificationEvent] = field(default_factory=list)


async def award_item(
    session: AsyncSession,
    solicitation_id,
    line_item_id,
    quote_item_id,
    quote_id,
    reason: Optional[str] = None,
    actor_id=None,
) -> OverrideResult:
    """Manually award one line item to the named quote item."""
    state = await SolicitationState.load(session, solicitation_id, lock=True)
    solicitation = state.solicitation
    if solicitation.status not in ("CLOSED", "AWARDED"):
        raise StateError(
            f"Cannot award line items of a solicitation in '{solicitation.status}' status "
            "(must be CLOSED or AWARDED)",
            "SOLICITATION_NOT_CLOSED",
        )

    line_item = state.line_item(line_item_id)
    quote = state.quotes.get(as_uuid(quote_id))
    if quote is None:
        raise ValidationError("Quote does not belong to this solicitation", "QUOTE_MISMATCH")
    quote_item = state.quote_items.get(as_uuid(quote_item_id))
    if quote_item is None or quote_item.quote_id != quote.id:
        raise ValidationError("Quote item does not belong to the named quote", "QUOTE_ITEM_MISMATCH")
    if quote_item.line_item_id != line_item.id:
        raise ValidationError(
            "Quote item does not quote the named line item", "QUOTE_ITEM_LINE_MISMATCH"
        )
    if quote.status == "REJECTED":
        raise StateError("Cannot award a rejected quote", "QUOTE_REJECTED")
    if line_item.item_status == "CANCELLED":
        raise StateError("Cannot award a cancelled line item", "LINE_ITEM_CANCELLED")

    previous = current_winners(state.graph()).get(line_item.id)
    previous_supplier_id = previous.supplier_id if previous else None

    award = await assign_winner(
        state, line_item, quote_item, reason=reason, cancel_reason=MANUAL_REAWARD
    )
    verify_winner(state, line_item, quote_item)
    ensure_consistent(state)
    promote_if_complete(state)
    await session.flush()

    await record_audit(
        session,
        "LINE_ITEM_AWARDED",
        "line_item",
        line_item.id,
        actor_id,
        {
            "solicitation_id": solicitation.id,
            "quote_id": quote.id,
            "quote_item_id": quote_item.id,
            "supplier_id": quote.supplier_id,
            "previous_supplier_id": previous_supplier_id,
            "reason": reason,
        },
    )
    logger.info(
        "line_item_overridden",
        solicitation_id=str(solicitation.id),
        line_item_id=str(line_item.id),
        quote_item_id=str(quote_item.id),
        supplier_id=str(quote.supplier_id),
        previous_supplier_id=str(previous_supplier_id) if previous_supplier_id else None,
    )

    base = {
        "solicitation_number": solicitation.solicitation_number,
        "product_name": line_item.product_name,
        "reason": reason or "manual decision",
    }
    notifications = []
    if previous_supplier_id is not None and previous_supplier_id != quote.supplier_id:
        notifications.append(
            notify(
                "line_item_reassigned",
                base,
                recipient_id=previous_supplier_id,
                entity_id=solicitation.id,
            )
        )
    if previous_supplier_id != quote.supplier_id:
        notifications.append(
            notify(
                "line_items_won",
                {
                    **base,
                    "item_count": 1,
                    "product_names": line_item.product_name,
                    "amount_cents": award.final_price_cents,
                },
                recipient_id=quote.supplier_id,
                entity_id=solicitation.id,
            )
        )

    return OverrideResult(
        award=award,
        previous_supplier_id=previous_supplier_id,
        solicitation_status=solicitation.status,
        notifications=notifications,
    )


async def mark_out_of_stock(
    session: AsyncSession,
    solicitation_id,
    line_item_id,
    supplier_id,
    reason: Optional[str] = None,
    actor_id=None,
) -> tuple[SolicitationState, list[NotificationEvent]]:
    """The winning supplier declares an awarded line item undeliverable."""
    state = await SolicitationState.load(session, solicitation_id, lock=True)
    solicitation = state.solicitation
    if solicitation.status not in ("CLOSED", "AWARDED"):
        raise StateError(
            f"Cannot withdraw line items of a solicitation in '{solicitation.status}' status",
            "SOLICITATION_NOT_CLOSED",
        )
    line_item = state.line_item(line_item_id)
    if line_item.item_status != "AWARDED":
        raise StateError(
            f"Line item is '{line_item.item_status}', only AWARDED items can go out of stock",
            "LINE_ITEM_NOT_AWARDED",
        )
    winner = current_winners(state.graph()).get(line_item.id)
    if winner is None:
        raise NotFoundError("Line item has no winning quote", "WINNER_NOT_FOUND")
    if supplier_id is not None and winner.supplier_id != as_uuid(supplier_id):
        raise StateError("Only the winning supplier can withdraw this line item", "NOT_WINNER")

    await withdraw_line_item(
        state, line_item, "OUT_OF_STOCK", reason, cancel_reason=OUT_OF_STOCK
    )
    ensure_consistent(state)
    promote_if_complete(state)
    await session.flush()

    await record_audit(
        session,
        "LINE_ITEM_OUT_OF_STOCK",
        "line_item",
        line_item.id,
        actor_id,
        {"solicitation_id": solicitation.id, "supplier_id": winner.supplier_id, "reason": reason},
    )
    logger.info(
        "line_item_out_of_stock",
        solicitation_id=str(solicitation.id),
        line_item_id=str(line_item.id),
        supplier_id=str(winner.supplier_id),
    )

    events = [
        notify(
            "line_item_out_of_stock",
            {
                "solicitation_number": solicitation.solicitation_number,
                "product_name": line_item.product_name,
                "reason": reason or "not given",
            },
            recipient_id=solicitation.owner_id,
            broadcast=True,
            entity_id=solicitation.id,
        )
    ]
    return state, events
