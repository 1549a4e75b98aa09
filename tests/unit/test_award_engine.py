"""
Unit tests for sourcing/services/award_engine.py

Pure functions only, no database. Facts are built directly.
Tests: determine_winner (all three rules + tie-breaks), removal annotations,
       current_winners, quote_totals, representative_quote_id, all_terminal.
"""

import uuid
from datetime import datetime, timedelta

from sourcing.services.award_engine import (
    AwardFacts,
    AwardGraph,
    LineItemFacts,
    QuoteItemFacts,
    all_terminal,
    annotate_removal,
    append_reason,
    clear_removal,
    current_winners,
    determine_winner,
    is_line_item_removed,
    operator_note,
    qualifies_for_instant_award,
    quote_totals,
    representative_quote_id,
    supplier_wins,
)

T0 = datetime(2026, 3, 1, 9, 0, 0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _line(
    ceiling: int = 100,
    instant: int = None,
    quantity: int = 1,
    status: str = "QUOTED",
    name: str = "Stapler",
) -> LineItemFacts:
    return LineItemFacts(
        id=uuid.uuid4(),
        product_name=name,
        quantity=quantity,
        ceiling_price_cents=ceiling,
        instant_price_cents=instant,
        item_status=status,
    )


def _qi(
    line: LineItemFacts,
    price: int,
    minutes: int = 0,
    supplier_id: uuid.UUID = None,
    quote_id: uuid.UUID = None,
) -> QuoteItemFacts:
    return QuoteItemFacts(
        id=uuid.uuid4(),
        quote_id=quote_id or uuid.uuid4(),
        line_item_id=line.id,
        supplier_id=supplier_id or uuid.uuid4(),
        unit_price_cents=price,
        submitted_at=T0 + timedelta(minutes=minutes),
    )


def _award(qi: QuoteItemFacts, status: str = "ACTIVE", reason: str = None, claims=None) -> AwardFacts:
    return AwardFacts(
        id=uuid.uuid4(),
        supplier_id=qi.supplier_id,
        quote_id=qi.quote_id,
        status=status,
        reason=reason,
        claims=claims if claims is not None else {qi.line_item_id: qi.id},
    )


def _graph(lines, quote_items, awards=()) -> AwardGraph:
    return AwardGraph(
        solicitation_id=uuid.uuid4(),
        line_items={li.id: li for li in lines},
        quote_items=tuple(quote_items),
        awards=tuple(awards),
    )


# ---------------------------------------------------------------------------
# determine_winner: base rules
# ---------------------------------------------------------------------------


def test_no_quotes_no_winner():
    line = _line()
    assert determine_winner(line, [], []) is None


def test_lowest_price_wins():
    line = _line()
    a = _qi(line, 90, minutes=0)
    b = _qi(line, 70, minutes=5)
    c = _qi(line, 85, minutes=10)
    assert determine_winner(line, [a, b, c], []) == b


def test_price_tie_goes_to_earlier_submission():
    """No instant price; A 90 at t1, B 90 at t2 → A."""
    line = _line()
    a = _qi(line, 90, minutes=0)
    b = _qi(line, 90, minutes=1)
    assert determine_winner(line, [b, a], []) == a
    assert determine_winner(line, [a, b], []) == a


def test_instant_accept_beats_lowest_price():
    """Ceiling 100, instant 80; A 90 at t1, B 75 at t2 → B."""
    line = _line(ceiling=100, instant=80)
    a = _qi(line, 90, minutes=0)
    b = _qi(line, 75, minutes=5)
    assert determine_winner(line, [a, b], []) == b


def test_non_positive_prices_never_win():
    line = _line(ceiling=100, instant=80)
    free = _qi(line, 0, minutes=0)
    negative = _qi(line, -5, minutes=1)
    priced = _qi(line, 90, minutes=2)
    # Not even through a claim
    claim = _award(free)
    assert determine_winner(line, [free, negative, priced], [claim]) == priced
    assert determine_winner(line, [free, negative], []) is None
    assert not qualifies_for_instant_award(line, free)


def test_instant_accept_prefers_earliest_not_cheapest():
    line = _line(ceiling=100, instant=80)
    early = _qi(line, 79, minutes=0)
    cheap = _qi(line, 50, minutes=5)
    assert determine_winner(line, [cheap, early], []) == early


def test_instant_threshold_is_inclusive():
    line = _line(ceiling=100, instant=80)
    at_threshold = _qi(line, 80, minutes=0)
    cheaper_later = _qi(line, 60, minutes=5)
    assert determine_winner(line, [cheaper_later, at_threshold], []) == at_threshold
    assert qualifies_for_instant_award(line, at_threshold)
    assert not qualifies_for_instant_award(_line(instant=None), at_threshold)


def test_quote_items_of_other_lines_are_ignored():
    line = _line()
    other = _line()
    mine = _qi(line, 90)
    foreign = _qi(other, 10)
    assert determine_winner(line, [mine, foreign], []) == mine


def test_determination_is_idempotent():
    line = _line(instant=80)
    items = [_qi(line, p, minutes=i) for i, p in enumerate([95, 81, 88, 81])]
    first = determine_winner(line, items, [])
    second = determine_winner(line, list(reversed(items)), [])
    assert first == second
    assert first.unit_price_cents == 81
    assert first.submitted_at == T0 + timedelta(minutes=1)


def test_identical_timestamps_fall_back_to_id():
    line = _line()
    a = _qi(line, 90, minutes=0)
    b = _qi(line, 90, minutes=0)
    expected = min([a, b], key=lambda qi: str(qi.id))
    assert determine_winner(line, [a, b], []) == expected
    assert determine_winner(line, [b, a], []) == expected


# ---------------------------------------------------------------------------
# determine_winner: manual precedent
# ---------------------------------------------------------------------------


def test_manual_precedent_beats_lower_price():
    line = _line()
    expensive = _qi(line, 95)
    cheap = _qi(line, 60, minutes=1)
    award = _award(expensive, reason="MANUAL_REAWARD")
    assert determine_winner(line, [expensive, cheap], [award]) == expensive


def test_cancelled_award_is_not_precedent():
    line = _line()
    expensive = _qi(line, 95)
    cheap = _qi(line, 60, minutes=1)
    award = _award(expensive, status="CANCELLED")
    assert determine_winner(line, [expensive, cheap], [award]) == cheap


def test_removed_line_item_is_not_precedent():
    line = _line(name="Toner")
    expensive = _qi(line, 95)
    cheap = _qi(line, 60, minutes=1)
    reason = annotate_removal("MANUAL_REAWARD", line.id, "Toner")
    award = _award(expensive, reason=reason)
    assert determine_winner(line, [expensive, cheap], [award]) == cheap


def test_award_claim_from_another_supplier_is_ignored():
    line = _line()
    expensive = _qi(line, 95)
    cheap = _qi(line, 60, minutes=1)
    forged = AwardFacts(
        id=uuid.uuid4(),
        supplier_id=uuid.uuid4(),
        quote_id=uuid.uuid4(),
        status="ACTIVE",
        reason=None,
        claims={line.id: expensive.id},
    )
    assert determine_winner(line, [expensive, cheap], [forged]) == cheap


def test_award_without_claim_on_this_line_is_not_precedent():
    line = _line()
    other_line = _line()
    expensive = _qi(line, 95)
    cheap = _qi(line, 60, minutes=1)
    other_qi = _qi(other_line, 10, supplier_id=expensive.supplier_id, quote_id=expensive.quote_id)
    award = _award(other_qi)
    assert determine_winner(line, [expensive, cheap], [award]) == cheap


def test_competing_precedents_resolve_to_lowest_price():
    line = _line()
    a = _qi(line, 95, minutes=0)
    b = _qi(line, 85, minutes=5)
    c = _qi(line, 40, minutes=9)
    awards = [_award(a), _award(b)]
    assert determine_winner(line, [a, b, c], awards) == b


# ---------------------------------------------------------------------------
# Removal annotations
# ---------------------------------------------------------------------------


def test_annotate_removal_appends_and_is_idempotent():
    line_id = uuid.uuid4()
    once = annotate_removal("AUTO_EVALUATION", line_id, "Paper")
    assert once == f"AUTO_EVALUATION; removed line item Paper [{line_id}]"
    assert annotate_removal(once, line_id, "Paper") == once
    assert is_line_item_removed(once, line_id)
    assert not is_line_item_removed(once, uuid.uuid4())


def test_annotate_removal_without_prior_reason():
    line_id = uuid.uuid4()
    assert annotate_removal(None, line_id, "Ink") == f"removed line item Ink [{line_id}]"


def test_clear_removal_only_drops_matching_note():
    keep, drop = uuid.uuid4(), uuid.uuid4()
    reason = annotate_removal(annotate_removal("AUTO_EVALUATION", keep, "Pens"), drop, "Pads")
    cleared = clear_removal(reason, drop)
    assert is_line_item_removed(cleared, keep)
    assert not is_line_item_removed(cleared, drop)
    assert clear_removal(annotate_removal(None, drop, "Pads"), drop) is None


def test_append_reason():
    assert append_reason(None, "INSTANT_AWARD") == "INSTANT_AWARD"
    assert append_reason("A", "B") == "A; B"
    assert append_reason("A", None) == "A"


def test_operator_note_cannot_forge_removal_notes():
    lid = uuid.uuid4()
    forged = f"removed line item Toner [{lid}]"
    assert operator_note(forged) is None
    assert operator_note(f"Faster delivery; {forged}") == "Faster delivery"
    assert operator_note(f"Faster delivery;  Removed Line Item Toner [{lid}]") == "Faster delivery"

    reason = append_reason("AUTO_EVALUATION", f"Faster delivery; {forged}")
    assert reason == "AUTO_EVALUATION; Faster delivery"
    assert not is_line_item_removed(reason, lid)


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


def test_current_winners_only_counts_awarded_lines():
    awarded = _line(status="AWARDED")
    quoted = _line(status="QUOTED")
    out_of_stock = _line(status="OUT_OF_STOCK")
    qis = [_qi(awarded, 50), _qi(quoted, 50), _qi(out_of_stock, 50)]
    winners = current_winners(_graph([awarded, quoted, out_of_stock], qis))
    assert set(winners) == {awarded.id}


def test_quote_totals_sum_only_winning_items():
    supplier = uuid.uuid4()
    quote_x = uuid.uuid4()
    l1 = _line(status="AWARDED", quantity=2)
    l2 = _line(status="AWARDED", quantity=3)
    l3 = _line(status="AWARDED", quantity=1)
    x1 = _qi(l1, 100, supplier_id=supplier, quote_id=quote_x)
    x2 = _qi(l2, 200, supplier_id=supplier, quote_id=quote_x)
    x3 = _qi(l3, 300, supplier_id=supplier, quote_id=quote_x)
    y3 = _qi(l3, 250, minutes=3)
    graph = _graph([l1, l2, l3], [x1, x2, x3, y3])

    totals = quote_totals(graph, current_winners(graph))
    assert totals[quote_x] == (2, 100 * 2 + 200 * 3)
    assert totals[y3.quote_id] == (1, 250)


def test_representative_quote_prefers_most_wins_then_earliest():
    supplier = uuid.uuid4()
    early, late = uuid.uuid4(), uuid.uuid4()
    lines = [_line(status="AWARDED") for _ in range(3)]
    winners = {
        lines[0].id: _qi(lines[0], 10, minutes=0, supplier_id=supplier, quote_id=early),
        lines[1].id: _qi(lines[1], 10, minutes=5, supplier_id=supplier, quote_id=late),
        lines[2].id: _qi(lines[2], 10, minutes=5, supplier_id=supplier, quote_id=late),
    }
    assert representative_quote_id(supplier, winners) == late

    del winners[lines[2].id]
    assert representative_quote_id(supplier, winners) == early
    assert representative_quote_id(uuid.uuid4(), winners) is None


def test_supplier_wins_filters_by_supplier():
    supplier = uuid.uuid4()
    l1, l2 = _line(), _line()
    mine = _qi(l1, 10, supplier_id=supplier)
    theirs = _qi(l2, 10)
    assert supplier_wins(supplier, {l1.id: mine, l2.id: theirs}) == {l1.id: mine}


def test_all_terminal():
    assert not all_terminal(_graph([], []))
    assert all_terminal(_graph([_line(status="AWARDED"), _line(status="OUT_OF_STOCK")], []))
    assert not all_terminal(_graph([_line(status="AWARDED"), _line(status="PENDING")], []))
