"""
Consistency repair — keeps Quote, Award and AwardItem rows in step with the
winners derived by the award engine.

All helpers mutate ORM objects tracked by a ``SolicitationState`` and never
commit; the caller's transaction (or savepoint) makes the whole repair
all-or-nothing.
"""

import uuid
from datetime import datetime
from typing import Optional

import structlog

from sourcing.exceptions import ConsistencyError
from sourcing.models.award import Award, AwardItem
from sourcing.models.quote import QuoteItem
from sourcing.models.solicitation import LineItem
from sourcing.services.award_engine import (
    REASON_SEPARATOR,
    all_terminal,
    annotate_removal,
    append_reason,
    clear_removal,
    current_winners,
    determine_winner,
    operator_note,
    quote_totals,
    representative_quote_id,
    supplier_wins,
)
from sourcing.services.solicitation_state import SolicitationState

logger = structlog.get_logger()

MANUAL_REAWARD = "MANUAL_REAWARD"
OUT_OF_STOCK = "OUT_OF_STOCK"


async def release_line_item(
    state: SolicitationState,
    line_item: LineItem,
    keep_supplier_id: Optional[uuid.UUID] = None,
) -> set[uuid.UUID]:
    """Drop the line item from every active award except ``keep_supplier_id``'s.

    The award reason records the removal so the claim cannot be revived.
    Returns the suppliers whose awards changed.
    """
    affected: set[uuid.UUID] = set()
    for award_item in list(state.award_items.values()):
        if award_item.line_item_id != line_item.id:
            continue
        award = state.awards[award_item.award_id]
        if award.status != "ACTIVE" or award.supplier_id == keep_supplier_id:
            continue
        await state.delete_award_item(award_item)
        award.reason = annotate_removal(award.reason, line_item.id, line_item.product_name)
        affected.add(award.supplier_id)
    return affected


def set_claim(
    state: SolicitationState,
    line_item: LineItem,
    quote_item: QuoteItem,
    reason: Optional[str] = None,
) -> Award:
    """Point the supplier's active award at ``quote_item`` for this line item."""
    reason = operator_note(reason)
    supplier_id = state.quotes[quote_item.quote_id].supplier_id
    now = datetime.utcnow()
    award = state.active_award(supplier_id)
    if award is None:
        award = Award(
            id=uuid.uuid4(),
            solicitation_id=state.solicitation.id,
            supplier_id=supplier_id,
            quote_id=quote_item.quote_id,
            status="ACTIVE",
            final_price_cents=0,
            reason=reason,
            created_at=now,
            updated_at=now,
        )
        state.add_award(award)
    else:
        award.reason = clear_removal(award.reason, line_item.id)
        if reason and reason not in (award.reason or "").split(REASON_SEPARATOR):
            award.reason = append_reason(award.reason, reason)

    for award_item in state.items_of_award(award.id):
        if award_item.line_item_id == line_item.id:
            award_item.quote_item_id = quote_item.id
            award_item.unit_price_cents = quote_item.unit_price_cents
            award_item.quantity = line_item.quantity
            break
    else:
        state.add_award_item(
            AwardItem(
                id=uuid.uuid4(),
                award_id=award.id,
                line_item_id=line_item.id,
                quote_item_id=quote_item.id,
                unit_price_cents=quote_item.unit_price_cents,
                quantity=line_item.quantity,
            )
        )
    return award


def refresh_quote_aggregates(state: SolicitationState) -> None:
    """Recompute status and price of every quote from what it currently wins."""
    graph = state.graph()
    totals = quote_totals(graph, current_winners(graph))
    for quote in state.quotes.values():
        if quote.status == "REJECTED":
            continue
        won, value = totals.get(quote.id, (0, 0))
        quote.status = "AWARDED" if won else "SUBMITTED"
        quote.price_cents = value


async def sync_supplier_award(
    state: SolicitationState,
    supplier_id: uuid.UUID,
    cancel_reason: str = MANUAL_REAWARD,
) -> Optional[Award]:
    """Make the supplier's active award mirror exactly the line items it wins.

    An award left without items is cancelled with ``cancel_reason``.
    """
    graph = state.graph()
    winners = current_winners(graph)
    wins = supplier_wins(supplier_id, winners)
    award = state.active_award(supplier_id)
    now = datetime.utcnow()

    if award is None:
        if not wins:
            return None
        award = Award(
            id=uuid.uuid4(),
            solicitation_id=state.solicitation.id,
            supplier_id=supplier_id,
            quote_id=next(iter(wins.values())).quote_id,
            status="ACTIVE",
            final_price_cents=0,
            created_at=now,
            updated_at=now,
        )
        state.add_award(award)

    existing = {ai.line_item_id: ai for ai in state.items_of_award(award.id)}
    for line_item_id, award_item in existing.items():
        if line_item_id in wins:
            continue
        await state.delete_award_item(award_item)
        line_item = state.line_items[line_item_id]
        award.reason = annotate_removal(award.reason, line_item_id, line_item.product_name)

    final_price = 0
    for line_item_id, qi in wins.items():
        quantity = graph.line_items[line_item_id].quantity
        award_item = existing.get(line_item_id)
        if award_item is None:
            state.add_award_item(
                AwardItem(
                    id=uuid.uuid4(),
                    award_id=award.id,
                    line_item_id=line_item_id,
                    quote_item_id=qi.id,
                    unit_price_cents=qi.unit_price_cents,
                    quantity=quantity,
                )
            )
        else:
            award_item.quote_item_id = qi.id
            award_item.unit_price_cents = qi.unit_price_cents
            award_item.quantity = quantity
        final_price += qi.unit_price_cents * quantity

    award.final_price_cents = final_price
    award.updated_at = now
    if wins:
        award.quote_id = representative_quote_id(supplier_id, winners)
    else:
        award.status = "CANCELLED"
        award.cancellation_reason = cancel_reason
        award.cancelled_at = now
        logger.info(
            "award_cancelled",
            award_id=str(award.id),
            supplier_id=str(supplier_id),
            reason=cancel_reason,
        )
    return award


async def assign_winner(
    state: SolicitationState,
    line_item: LineItem,
    quote_item: QuoteItem,
    reason: Optional[str] = None,
    cancel_reason: str = MANUAL_REAWARD,
) -> Award:
    """Award one line item to one quote item and repair every dependent row.

    Other suppliers lose their claim on the line item, the chosen supplier's
    award gains it, and quotes and awards of everyone involved are recomputed.
    """
    supplier_id = state.quotes[quote_item.quote_id].supplier_id
    line_item.item_status = "AWARDED"
    line_item.status_reason = None

    superseded = await release_line_item(state, line_item, keep_supplier_id=supplier_id)
    award = set_claim(state, line_item, quote_item, reason)
    refresh_quote_aggregates(state)
    for other_supplier_id in superseded:
        await sync_supplier_award(state, other_supplier_id, cancel_reason)
    await sync_supplier_award(state, supplier_id, cancel_reason)
    return award


async def withdraw_line_item(
    state: SolicitationState,
    line_item: LineItem,
    item_status: str,
    status_reason: Optional[str],
    cancel_reason: str,
) -> set[uuid.UUID]:
    """Take a line item out of the award set (out of stock or cancelled)."""
    line_item.item_status = item_status
    line_item.status_reason = status_reason
    affected = await release_line_item(state, line_item)
    refresh_quote_aggregates(state)
    for supplier_id in affected:
        await sync_supplier_award(state, supplier_id, cancel_reason)
    return affected


def promote_if_complete(state: SolicitationState) -> bool:
    """CLOSED -> AWARDED once every line item is terminal. Never demotes."""
    solicitation = state.solicitation
    complete = all_terminal(state.graph())
    if solicitation.status == "CLOSED" and complete:
        solicitation.status = "AWARDED"
        logger.info("solicitation_awarded", solicitation_id=str(solicitation.id))
        return True
    if solicitation.status == "AWARDED" and not complete:
        logger.warning(
            "solicitation_award_incomplete",
            solicitation_id=str(solicitation.id),
        )
    return False


def check_consistency(state: SolicitationState) -> list[str]:
    """List every violated award invariant in the working set (empty when sound)."""
    graph = state.graph()
    winners = current_winners(graph)
    totals = quote_totals(graph, winners)
    problems: list[str] = []

    active_by_supplier: dict[uuid.UUID, list[Award]] = {}
    for award in state.awards.values():
        if award.status == "ACTIVE":
            active_by_supplier.setdefault(award.supplier_id, []).append(award)
    for supplier_id, awards in active_by_supplier.items():
        if len(awards) > 1:
            problems.append(f"supplier {supplier_id} has {len(awards)} active awards")

    for line_item_id, li in graph.line_items.items():
        if li.item_status != "AWARDED":
            continue
        winner = winners.get(line_item_id)
        if winner is None:
            problems.append(f"line item {line_item_id} is AWARDED without a winning quote")
            continue
        claims = [
            ai
            for ai in state.award_items.values()
            if ai.line_item_id == line_item_id
            and state.awards[ai.award_id].status == "ACTIVE"
        ]
        if len(claims) != 1 or claims[0].quote_item_id != winner.id:
            problems.append(
                f"line item {line_item_id} is claimed by {len(claims)} active awards"
            )

    for quote in state.quotes.values():
        if quote.status == "REJECTED":
            continue
        won, value = totals.get(quote.id, (0, 0))
        expected_status = "AWARDED" if won else "SUBMITTED"
        if quote.status != expected_status or quote.price_cents != value:
            problems.append(
                f"quote {quote.id} is {quote.status}/{quote.price_cents}, "
                f"expected {expected_status}/{value}"
            )

    for award in state.awards.values():
        if award.status != "ACTIVE":
            continue
        items = state.items_of_award(award.id)
        wins = supplier_wins(award.supplier_id, winners)
        if {ai.line_item_id for ai in items} != set(wins):
            problems.append(f"award {award.id} items do not mirror supplier wins")
        if award.final_price_cents != sum(ai.unit_price_cents * ai.quantity for ai in items):
            problems.append(f"award {award.id} final price does not match its items")
    return problems


def ensure_consistent(state: SolicitationState) -> None:
    problems = check_consistency(state)
    if problems:
        logger.error(
            "award_consistency_violation",
            solicitation_id=str(state.solicitation.id),
            problems=problems,
        )
        raise ConsistencyError(
            "Award state is inconsistent after repair: " + "; ".join(problems)
        )


def verify_winner(state: SolicitationState, line_item: LineItem, quote_item: QuoteItem) -> None:
    """Re-derive the winner of ``line_item`` and require it to be ``quote_item``."""
    graph = state.graph()
    winner = determine_winner(
        graph.line_items[line_item.id],
        graph.quote_items_for(line_item.id),
        graph.awards,
    )
    if winner is None or winner.id != quote_item.id:
        raise ConsistencyError(
            f"Line item {line_item.id} resolves to "
            f"{winner.id if winner else 'no quote'} instead of {quote_item.id}"
        )
