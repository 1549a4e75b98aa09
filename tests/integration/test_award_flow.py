"""
Award flow against a real (SQLite) database: publish -> quote -> close ->
evaluate -> override / out-of-stock, with the invariant check run after
every step.
"""

from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from sourcing.exceptions import NotFoundError, StateError, ValidationError
from sourcing.schemas.quote import QuoteItemCreate
from sourcing.services import (
    evaluation_service,
    override_service,
    quote_service,
    solicitation_service,
)
from sourcing.services.award_consistency import MANUAL_REAWARD, assign_winner, check_consistency
from sourcing.services.award_engine import current_winners, is_line_item_removed
from sourcing.services.solicitation_state import SolicitationState

from tests.conftest import ADMIN_ID, BUYER_ID, SUPPLIER_A, SUPPLIER_B, SUPPLIER_C

STANDARD_ITEMS = [
    # name, quantity, ceiling, instant
    ("Paper", 10, 1000, None),
    ("Toner", 2, 5000, None),
    ("Pens", 5, 300, None),
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _qi_for(submission, line_item):
    return next(qi for qi in submission.quote_items if qi.line_item_id == line_item.id)


async def _state(session, solicitation):
    return await SolicitationState.load(session, solicitation.id)


async def _assert_consistent(session, solicitation):
    state = await _state(session, solicitation)
    assert check_consistency(state) == []
    return state


async def _evaluated(db_session, published_solicitation, submit_quote):
    """Paper and Toner to A, Pens to B."""
    solicitation, (paper, toner, pens) = await published_solicitation(STANDARD_ITEMS)
    quote_a = await submit_quote(solicitation, SUPPLIER_A, {paper: 900, toner: 4000, pens: 250})
    quote_b = await submit_quote(solicitation, SUPPLIER_B, {paper: 950, toner: 4500, pens: 200})
    result = await evaluation_service.close_and_evaluate(db_session, solicitation.id, BUYER_ID)
    await db_session.commit()
    return solicitation, (paper, toner, pens), quote_a, quote_b, result


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


async def test_evaluation_awards_lowest_price(db_session, published_solicitation, submit_quote):
    solicitation, (paper, toner, pens), quote_a, quote_b, result = await _evaluated(
        db_session, published_solicitation, submit_quote
    )

    assert result.success_count == 3
    assert result.failure_count == 0
    assert result.solicitation_status == "AWARDED"

    state = await _assert_consistent(db_session, solicitation)
    assert state.solicitation.closed_at is not None
    winners = current_winners(state.graph())
    assert winners[paper.id].supplier_id == SUPPLIER_A
    assert winners[toner.id].supplier_id == SUPPLIER_A
    assert winners[pens.id].supplier_id == SUPPLIER_B

    a = state.quotes[quote_a.quote.id]
    b = state.quotes[quote_b.quote.id]
    assert (a.status, a.price_cents) == ("AWARDED", 900 * 10 + 4000 * 2)
    assert (b.status, b.price_cents) == ("AWARDED", 200 * 5)

    award_a = state.active_award(SUPPLIER_A)
    assert award_a.final_price_cents == 17000
    assert {ai.line_item_id for ai in state.items_of_award(award_a.id)} == {paper.id, toner.id}


async def test_unquoted_items_keep_solicitation_closed(db_session, published_solicitation, submit_quote):
    solicitation, (paper, stapler) = await published_solicitation(
        [("Paper", 1, 1000, None), ("Stapler", 1, 2000, None)]
    )
    await submit_quote(solicitation, SUPPLIER_A, {paper: 800})

    result = await evaluation_service.close_and_evaluate(db_session, solicitation.id, BUYER_ID)
    await db_session.commit()

    assert result.awarded == [paper.id]
    assert result.unquoted == [stapler.id]
    assert result.solicitation_status == "CLOSED"
    assert any(e.event_type == "unquoted_line_items" and e.broadcast for e in result.notifications)

    rows = await solicitation_service.list_unquoted_line_items(db_session, solicitation.id)
    assert [li.id for _, li in rows] == [stapler.id]


async def test_evaluation_requires_closed(db_session, published_solicitation):
    solicitation, _ = await published_solicitation(STANDARD_ITEMS)
    with pytest.raises(StateError) as exc_info:
        await evaluation_service.evaluate_solicitation(db_session, solicitation.id)
    assert exc_info.value.code == "SOLICITATION_NOT_CLOSED"


async def test_one_failing_line_item_does_not_block_others(
    db_session, published_solicitation, submit_quote
):
    solicitation, (paper, toner, pens) = await published_solicitation(STANDARD_ITEMS)
    await submit_quote(solicitation, SUPPLIER_A, {paper: 900, toner: 4000, pens: 250})

    async def flaky(state, line_item, quote_item, **kwargs):
        if line_item.product_name == "Toner":
            raise RuntimeError("corrupt quote data")
        return await assign_winner(state, line_item, quote_item, **kwargs)

    with patch("sourcing.services.evaluation_service.assign_winner", flaky):
        result = await evaluation_service.close_and_evaluate(
            db_session, solicitation.id, BUYER_ID
        )
    await db_session.commit()

    assert sorted(result.awarded) == sorted([paper.id, pens.id])
    assert [f.line_item_id for f in result.failures] == [toner.id]
    assert "corrupt quote data" in result.failures[0].error
    assert result.solicitation_status == "CLOSED"

    state = await _assert_consistent(db_session, solicitation)
    assert state.line_items[toner.id].item_status == "QUOTED"

    # A second run picks up the failed item only
    retry = await evaluation_service.evaluate_solicitation(db_session, solicitation.id, ADMIN_ID)
    await db_session.commit()
    assert retry.awarded == [toner.id]
    assert sorted(retry.skipped) == sorted([paper.id, pens.id])
    assert retry.solicitation_status == "AWARDED"
    await _assert_consistent(db_session, solicitation)


# ---------------------------------------------------------------------------
# Instant award
# ---------------------------------------------------------------------------


async def test_instant_award_on_submission(db_session, published_solicitation, submit_quote):
    solicitation, (chair, desk) = await published_solicitation(
        [("Chair", 4, 100, 80), ("Desk", 1, 500, None)]
    )
    slow = await submit_quote(solicitation, SUPPLIER_A, {chair: 90, desk: 450})
    assert slow.instant_awards == []

    fast = await submit_quote(solicitation, SUPPLIER_B, {chair: 75})
    assert fast.instant_awards == [chair.id]
    assert fast.notifications[0].event_type == "instant_award"
    assert fast.notifications[0].recipient_id == SUPPLIER_B

    state = await _assert_consistent(db_session, solicitation)
    assert state.line_items[chair.id].item_status == "AWARDED"
    quote_b = state.quotes[fast.quote.id]
    assert (quote_b.status, quote_b.price_cents) == ("AWARDED", 75 * 4)
    assert "INSTANT_AWARD" in state.active_award(SUPPLIER_B).reason

    # Awarded line items take no further quotes
    with pytest.raises(StateError) as exc_info:
        await submit_quote(solicitation, SUPPLIER_C, {chair: 60})
    assert exc_info.value.code == "LINE_ITEM_CLOSED"

    result = await evaluation_service.close_and_evaluate(db_session, solicitation.id, BUYER_ID)
    await db_session.commit()
    assert result.skipped == [chair.id]
    assert result.awarded == [desk.id]
    assert result.solicitation_status == "AWARDED"
    await _assert_consistent(db_session, solicitation)


# ---------------------------------------------------------------------------
# Manual override
# ---------------------------------------------------------------------------


async def test_override_reassigns_one_of_three_items(db_session, published_solicitation, submit_quote):
    """Quote X wins 2 of its 3 items; moving one away keeps X AWARDED at a lower price."""
    solicitation, (paper, toner, pens) = await published_solicitation(STANDARD_ITEMS)
    quote_x = await submit_quote(solicitation, SUPPLIER_A, {paper: 900, toner: 4000, pens: 250})
    quote_y = await submit_quote(solicitation, SUPPLIER_B, {paper: 950, toner: 4500, pens: 200})
    await evaluation_service.close_and_evaluate(db_session, solicitation.id, BUYER_ID)
    await db_session.commit()

    result = await override_service.award_item(
        db_session,
        solicitation.id,
        toner.id,
        quote_item_id=_qi_for(quote_y, toner).id,
        quote_id=quote_y.quote.id,
        reason="Faster delivery",
        actor_id=BUYER_ID,
    )
    await db_session.commit()

    assert result.previous_supplier_id == SUPPLIER_A
    assert result.award.supplier_id == SUPPLIER_B
    assert [e.event_type for e in result.notifications] == ["line_item_reassigned", "line_items_won"]

    state = await _assert_consistent(db_session, solicitation)
    x = state.quotes[quote_x.quote.id]
    y = state.quotes[quote_y.quote.id]
    assert (x.status, x.price_cents) == ("AWARDED", 900 * 10)
    assert (y.status, y.price_cents) == ("AWARDED", 4500 * 2 + 200 * 5)

    award_a = state.active_award(SUPPLIER_A)
    assert award_a.final_price_cents == 9000
    assert is_line_item_removed(award_a.reason, toner.id)
    assert f"removed line item Toner [{toner.id}]" in award_a.reason

    # Non-interference: Paper is still A's at the same price
    winners = current_winners(state.graph())
    assert winners[paper.id].supplier_id == SUPPLIER_A
    assert winners[paper.id].unit_price_cents == 900
    assert winners[toner.id].supplier_id == SUPPLIER_B


async def test_override_of_last_win_cancels_award(db_session, published_solicitation, submit_quote):
    solicitation, (paper, toner) = await published_solicitation(STANDARD_ITEMS[:2])
    quote_a = await submit_quote(solicitation, SUPPLIER_A, {paper: 900})
    quote_b = await submit_quote(solicitation, SUPPLIER_B, {paper: 950, toner: 4500})
    await evaluation_service.close_and_evaluate(db_session, solicitation.id, BUYER_ID)
    await db_session.commit()

    old_award_id = (await _state(db_session, solicitation)).active_award(SUPPLIER_A).id

    await override_service.award_item(
        db_session,
        solicitation.id,
        paper.id,
        quote_item_id=_qi_for(quote_b, paper).id,
        quote_id=quote_b.quote.id,
        actor_id=BUYER_ID,
    )
    await db_session.commit()

    state = await _assert_consistent(db_session, solicitation)
    a = state.quotes[quote_a.quote.id]
    assert (a.status, a.price_cents) == ("SUBMITTED", 0)
    old_award = state.awards[old_award_id]
    assert old_award.status == "CANCELLED"
    assert old_award.cancellation_reason == MANUAL_REAWARD
    assert old_award.cancelled_at is not None
    assert state.active_award(SUPPLIER_A) is None

    # Award it back: a fresh award is created, the cancelled one is kept for audit
    await override_service.award_item(
        db_session,
        solicitation.id,
        paper.id,
        quote_item_id=_qi_for(quote_a, paper).id,
        quote_id=quote_a.quote.id,
        actor_id=BUYER_ID,
    )
    await db_session.commit()

    state = await _assert_consistent(db_session, solicitation)
    new_award = state.active_award(SUPPLIER_A)
    assert new_award.id != old_award_id
    assert state.awards[old_award_id].status == "CANCELLED"
    assert state.quotes[quote_a.quote.id].price_cents == 9000
    assert state.quotes[quote_b.quote.id].price_cents == 4500 * 2


async def test_override_to_pricier_quote_survives_reload(db_session, published_solicitation, submit_quote):
    """Manual precedent keeps a pricier choice as winner for every later reader."""
    solicitation, (paper,) = await published_solicitation([("Paper", 3, 1000, None)])
    cheap = await submit_quote(solicitation, SUPPLIER_A, {paper: 500})
    pricey = await submit_quote(solicitation, SUPPLIER_B, {paper: 900})
    await evaluation_service.close_and_evaluate(db_session, solicitation.id, BUYER_ID)
    await db_session.commit()

    await override_service.award_item(
        db_session,
        solicitation.id,
        paper.id,
        quote_item_id=_qi_for(pricey, paper).id,
        quote_id=pricey.quote.id,
        reason="Preferred supplier",
        actor_id=BUYER_ID,
    )
    await db_session.commit()

    state = await _assert_consistent(db_session, solicitation)
    assert current_winners(state.graph())[paper.id].supplier_id == SUPPLIER_B
    assert state.quotes[cheap.quote.id].status == "SUBMITTED"
    assert state.quotes[pricey.quote.id].price_cents == 2700


async def test_override_reason_cannot_veto_claims(db_session, published_solicitation, submit_quote):
    solicitation, (paper, toner, pens), _, quote_b, _ = await _evaluated(
        db_session, published_solicitation, submit_quote
    )
    reason = (
        f"removed line item Toner [{toner.id}]; Faster delivery; "
        f"removed line item Pens [{pens.id}]"
    )

    result = await override_service.award_item(
        db_session,
        solicitation.id,
        toner.id,
        quote_item_id=_qi_for(quote_b, toner).id,
        quote_id=quote_b.quote.id,
        reason=reason,
        actor_id=BUYER_ID,
    )
    await db_session.commit()
    assert result.award.supplier_id == SUPPLIER_B

    state = await _assert_consistent(db_session, solicitation)
    award_b = state.active_award(SUPPLIER_B)
    assert "Faster delivery" in award_b.reason
    assert not is_line_item_removed(award_b.reason, toner.id)
    assert not is_line_item_removed(award_b.reason, pens.id)
    winners = current_winners(state.graph())
    assert winners[toner.id].supplier_id == SUPPLIER_B
    assert winners[pens.id].supplier_id == SUPPLIER_B
    assert {ai.line_item_id for ai in state.items_of_award(award_b.id)} == {toner.id, pens.id}


async def test_override_validation(db_session, published_solicitation, submit_quote):
    solicitation, (paper, toner, pens) = await published_solicitation(STANDARD_ITEMS)
    quote_a = await submit_quote(solicitation, SUPPLIER_A, {paper: 900, toner: 4000})
    quote_b = await submit_quote(solicitation, SUPPLIER_B, {paper: 950})

    # Still PUBLISHED
    with pytest.raises(StateError) as exc_info:
        await override_service.award_item(
            db_session, solicitation.id, paper.id,
            quote_item_id=_qi_for(quote_a, paper).id, quote_id=quote_a.quote.id,
        )
    assert exc_info.value.code == "SOLICITATION_NOT_CLOSED"

    await evaluation_service.close_and_evaluate(db_session, solicitation.id, BUYER_ID)
    await db_session.commit()

    # Quote item of another quote
    with pytest.raises(ValidationError) as exc_info:
        await override_service.award_item(
            db_session, solicitation.id, paper.id,
            quote_item_id=_qi_for(quote_a, paper).id, quote_id=quote_b.quote.id,
        )
    assert exc_info.value.code == "QUOTE_ITEM_MISMATCH"

    # Quote item for a different line item
    with pytest.raises(ValidationError) as exc_info:
        await override_service.award_item(
            db_session, solicitation.id, paper.id,
            quote_item_id=_qi_for(quote_a, toner).id, quote_id=quote_a.quote.id,
        )
    assert exc_info.value.code == "QUOTE_ITEM_LINE_MISMATCH"

    await _assert_consistent(db_session, solicitation)


# ---------------------------------------------------------------------------
# Out of stock
# ---------------------------------------------------------------------------


async def test_out_of_stock_releases_item(db_session, published_solicitation, submit_quote):
    solicitation, (paper, toner, pens) = await published_solicitation(STANDARD_ITEMS)
    quote_a = await submit_quote(solicitation, SUPPLIER_A, {paper: 900, toner: 4000})
    await submit_quote(solicitation, SUPPLIER_B, {pens: 200})
    await evaluation_service.close_and_evaluate(db_session, solicitation.id, BUYER_ID)
    await db_session.commit()

    with pytest.raises(StateError) as exc_info:
        await override_service.mark_out_of_stock(
            db_session, solicitation.id, toner.id, supplier_id=SUPPLIER_B
        )
    assert exc_info.value.code == "NOT_WINNER"

    state, events = await override_service.mark_out_of_stock(
        db_session, solicitation.id, toner.id, supplier_id=SUPPLIER_A, reason="Discontinued"
    )
    await db_session.commit()

    assert state.line_items[toner.id].item_status == "OUT_OF_STOCK"
    assert state.line_items[toner.id].status_reason == "Discontinued"
    assert events[0].event_type == "line_item_out_of_stock"

    state = await _assert_consistent(db_session, solicitation)
    assert state.quotes[quote_a.quote.id].price_cents == 9000
    assert state.active_award(SUPPLIER_A).final_price_cents == 9000
    # OUT_OF_STOCK is terminal
    assert state.solicitation.status == "AWARDED"

    with pytest.raises(StateError):
        await override_service.mark_out_of_stock(
            db_session, solicitation.id, toner.id, supplier_id=SUPPLIER_A
        )


async def test_out_of_stock_of_only_item_cancels_award(db_session, published_solicitation, submit_quote):
    solicitation, (paper,) = await published_solicitation([("Paper", 1, 1000, None)])
    quote_a = await submit_quote(solicitation, SUPPLIER_A, {paper: 900})
    await evaluation_service.close_and_evaluate(db_session, solicitation.id, BUYER_ID)
    await db_session.commit()

    await override_service.mark_out_of_stock(db_session, solicitation.id, paper.id, SUPPLIER_A)
    await db_session.commit()

    state = await _assert_consistent(db_session, solicitation)
    assert state.quotes[quote_a.quote.id].status == "SUBMITTED"
    assert state.active_award(SUPPLIER_A) is None
    cancelled = list(state.awards.values())[0]
    assert cancelled.cancellation_reason == "OUT_OF_STOCK"


# ---------------------------------------------------------------------------
# Quote validation
# ---------------------------------------------------------------------------


async def test_quote_validation(db_session, published_solicitation):
    solicitation, (paper, toner, pens) = await published_solicitation(STANDARD_ITEMS)
    other, (other_item,) = await published_solicitation([("Chair", 1, 100, None)], title="Other")

    async def attempt(items):
        with pytest.raises((ValidationError, StateError)) as exc_info:
            await quote_service.submit_quote(db_session, solicitation.id, SUPPLIER_A, items)
        return exc_info.value.code

    assert await attempt([]) == "EMPTY_QUOTE"
    assert await attempt([
        QuoteItemCreate(line_item_id=str(paper.id), unit_price_cents=900),
        QuoteItemCreate(line_item_id=str(paper.id), unit_price_cents=800),
    ]) == "DUPLICATE_LINE_ITEM"
    assert await attempt([
        QuoteItemCreate(line_item_id=str(other_item.id), unit_price_cents=50),
    ]) == "LINE_ITEM_MISMATCH"
    assert await attempt([
        QuoteItemCreate(line_item_id=str(paper.id), unit_price_cents=1001),
    ]) == "PRICE_ABOVE_CEILING"


async def test_quote_after_deadline_rejected(db_session, published_solicitation):
    solicitation, (paper, _, _) = await published_solicitation(STANDARD_ITEMS)
    solicitation.deadline = datetime.utcnow() - timedelta(minutes=1)
    await db_session.commit()

    with pytest.raises(StateError) as exc_info:
        await quote_service.submit_quote(
            db_session, solicitation.id, SUPPLIER_A,
            [QuoteItemCreate(line_item_id=str(paper.id), unit_price_cents=900)],
        )
    assert exc_info.value.code == "DEADLINE_PASSED"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def test_publish_requires_ceiling_prices(db_session):
    from sourcing.schemas.solicitation import LineItemDraft

    solicitation, _ = await solicitation_service.create_solicitation(
        db_session,
        owner_id=BUYER_ID,
        title="No prices",
        deadline=datetime.utcnow() + timedelta(days=1),
        drafts=[LineItemDraft(product_name="Paper", quantity=1)],
    )
    with pytest.raises(ValidationError) as exc_info:
        await solicitation_service.publish_solicitation(db_session, solicitation.id)
    assert exc_info.value.code == "CEILING_REQUIRED"


async def test_cancel_rejects_quotes_and_keeps_awards(db_session, published_solicitation, submit_quote):
    solicitation, (chair,) = await published_solicitation([("Chair", 1, 100, 80)])
    quote = await submit_quote(solicitation, SUPPLIER_A, {chair: 70})
    assert quote.instant_awards == [chair.id]

    sol, events = await solicitation_service.cancel_solicitation(
        db_session, solicitation.id, reason="Budget withdrawn", actor_id=BUYER_ID
    )
    await db_session.commit()
    assert sol.status == "CANCELLED"
    assert [e.recipient_id for e in events] == [SUPPLIER_A]

    state = await _state(db_session, solicitation)
    assert state.line_items[chair.id].item_status == "CANCELLED"
    assert state.quotes[quote.quote.id].status == "REJECTED"
    (award,) = state.awards.values()
    assert award.status == "CANCELLED"
    assert award.cancellation_reason == "SOLICITATION_CANCELLED"

    # Award rows must be kept: even an admin cannot delete it
    with pytest.raises(StateError) as exc_info:
        await solicitation_service.delete_solicitation(
            db_session, solicitation.id, {"user_id": str(ADMIN_ID), "role": "admin"}
        )
    assert exc_info.value.code == "SOLICITATION_HAS_AWARDS"


async def test_delete_rules(db_session, published_solicitation, submit_quote):
    solicitation, (paper,) = await published_solicitation([("Paper", 1, 1000, None)])
    await submit_quote(solicitation, SUPPLIER_A, {paper: 900})
    buyer = {"user_id": str(BUYER_ID), "role": "buyer"}
    admin = {"user_id": str(ADMIN_ID), "role": "admin"}

    with pytest.raises(StateError):
        await solicitation_service.delete_solicitation(db_session, solicitation.id, buyer)

    await solicitation_service.cancel_solicitation(db_session, solicitation.id)
    with pytest.raises(StateError):
        await solicitation_service.delete_solicitation(db_session, solicitation.id, buyer)

    await solicitation_service.delete_solicitation(db_session, solicitation.id, admin)
    await db_session.commit()
    with pytest.raises(NotFoundError):
        await solicitation_service.get_solicitation(db_session, solicitation.id)
