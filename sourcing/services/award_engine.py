"""
Award engine — winner determination and the aggregates derived from it.

Everything here is pure: it works on frozen fact records built from the
database rows and never reads a stored winner flag. The write paths
(evaluation, instant award, manual override) and every report call the same
functions, so they cannot drift apart.

Winner rules for one line item, in priority order:
  1. Manual precedent: a non-cancelled award of the quoting supplier claims
     the quote item and its reason does not record the line item as removed.
     Several qualifying awards resolve to the lowest price.
  2. Instant accept: the earliest quote priced at or below the instant price.
  3. Lowest price.
Ties fall back to the earliest submission, then the quote item id.
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Mapping, Optional

from sourcing.models.solicitation import TERMINAL_LINE_ITEM_STATUSES

REMOVAL_PREFIX = "removed line item"
REASON_SEPARATOR = "; "


@dataclass(frozen=True)
class LineItemFacts:
    id: uuid.UUID
    product_name: str
    quantity: int
    ceiling_price_cents: Optional[int]
    instant_price_cents: Optional[int]
    item_status: str

    @property
    def is_terminal(self) -> bool:
        return self.item_status in TERMINAL_LINE_ITEM_STATUSES


@dataclass(frozen=True)
class QuoteItemFacts:
    id: uuid.UUID
    quote_id: uuid.UUID
    line_item_id: uuid.UUID
    supplier_id: uuid.UUID
    unit_price_cents: int
    submitted_at: datetime


@dataclass(frozen=True)
class AwardFacts:
    id: uuid.UUID
    supplier_id: uuid.UUID
    quote_id: uuid.UUID
    status: str
    reason: Optional[str]
    # line_item_id -> quote_item_id, one entry per award item
    claims: Mapping[uuid.UUID, uuid.UUID] = field(default_factory=dict)

    @property
    def is_cancelled(self) -> bool:
        return self.status == "CANCELLED"


@dataclass(frozen=True)
class AwardGraph:
    """All facts of one solicitation needed to derive its winners."""

    solicitation_id: uuid.UUID
    line_items: Mapping[uuid.UUID, LineItemFacts]
    quote_items: tuple[QuoteItemFacts, ...]
    awards: tuple[AwardFacts, ...]

    def quote_items_for(self, line_item_id: uuid.UUID) -> list[QuoteItemFacts]:
        return [qi for qi in self.quote_items if qi.line_item_id == line_item_id]


# ---------- removal annotations ----------


def _removal_marker(line_item_id: uuid.UUID) -> str:
    return f"[{line_item_id}]"


def annotate_removal(
    reason: Optional[str], line_item_id: uuid.UUID, product_name: str
) -> str:
    """Append a 'removed line item' note to an award reason (idempotent)."""
    if is_line_item_removed(reason, line_item_id):
        return reason or ""
    note = f"{REMOVAL_PREFIX} {product_name} {_removal_marker(line_item_id)}"
    return f"{reason}{REASON_SEPARATOR}{note}" if reason else note


def is_line_item_removed(reason: Optional[str], line_item_id: uuid.UUID) -> bool:
    if not reason:
        return False
    marker = _removal_marker(line_item_id)
    return any(
        part.startswith(REMOVAL_PREFIX) and part.endswith(marker)
        for part in reason.split(REASON_SEPARATOR)
    )


def clear_removal(reason: Optional[str], line_item_id: uuid.UUID) -> Optional[str]:
    """Drop the removal note for a line item that is being awarded back."""
    if not reason:
        return reason
    marker = _removal_marker(line_item_id)
    kept = [
        part
        for part in reason.split(REASON_SEPARATOR)
        if not (part.startswith(REMOVAL_PREFIX) and part.endswith(marker))
    ]
    return REASON_SEPARATOR.join(kept) or None


def operator_note(note: Optional[str]) -> Optional[str]:
    """Free text from a person, minus any segment that would read as a removal note."""
    if not note:
        return None
    kept = [
        part
        for part in note.split(REASON_SEPARATOR)
        if part.strip() and not part.strip().lower().startswith(REMOVAL_PREFIX)
    ]
    return REASON_SEPARATOR.join(kept) or None


def append_reason(reason: Optional[str], note: Optional[str]) -> Optional[str]:
    note = operator_note(note)
    if not note:
        return reason
    return f"{reason}{REASON_SEPARATOR}{note}" if reason else note


# ---------- winner determination ----------


def _price_key(qi: QuoteItemFacts):
    return (qi.unit_price_cents, qi.submitted_at, str(qi.id))


def _submission_key(qi: QuoteItemFacts):
    return (qi.submitted_at, qi.unit_price_cents, str(qi.id))


def determine_winner(
    line_item: LineItemFacts,
    quote_items: Iterable[QuoteItemFacts],
    awards: Iterable[AwardFacts],
) -> Optional[QuoteItemFacts]:
    """Return the winning quote item for one line item, or None without quotes."""
    candidates = [
        qi
        for qi in quote_items
        # submit_quote rejects non-positive prices; rows that bypass it never win
        if qi.line_item_id == line_item.id and qi.unit_price_cents > 0
    ]
    if not candidates:
        return None
    by_id = {qi.id: qi for qi in candidates}

    precedent = []
    for award in awards:
        if award.is_cancelled:
            continue
        claimed = by_id.get(award.claims.get(line_item.id))
        if claimed is None or claimed.supplier_id != award.supplier_id:
            continue
        if is_line_item_removed(award.reason, line_item.id):
            continue
        precedent.append(claimed)
    if precedent:
        return min(precedent, key=_price_key)

    instant = line_item.instant_price_cents
    if instant:
        accepted = [qi for qi in candidates if qi.unit_price_cents <= instant]
        if accepted:
            return min(accepted, key=_submission_key)

    return min(candidates, key=_price_key)


def qualifies_for_instant_award(line_item: LineItemFacts, qi: QuoteItemFacts) -> bool:
    instant = line_item.instant_price_cents
    return bool(instant) and 0 < qi.unit_price_cents <= instant


# ---------- derived aggregates ----------


def current_winners(graph: AwardGraph) -> dict[uuid.UUID, QuoteItemFacts]:
    """Winner of every AWARDED line item, keyed by line item id."""
    winners: dict[uuid.UUID, QuoteItemFacts] = {}
    for line_item in graph.line_items.values():
        if line_item.item_status != "AWARDED":
            continue
        winner = determine_winner(
            line_item, graph.quote_items_for(line_item.id), graph.awards
        )
        if winner is not None:
            winners[line_item.id] = winner
    return winners


def line_value_cents(graph: AwardGraph, qi: QuoteItemFacts) -> int:
    return qi.unit_price_cents * graph.line_items[qi.line_item_id].quantity


def quote_totals(
    graph: AwardGraph, winners: Mapping[uuid.UUID, QuoteItemFacts]
) -> dict[uuid.UUID, tuple[int, int]]:
    """Map quote id -> (won line item count, won value in cents)."""
    totals: dict[uuid.UUID, tuple[int, int]] = {}
    for qi in winners.values():
        count, value = totals.get(qi.quote_id, (0, 0))
        totals[qi.quote_id] = (count + 1, value + line_value_cents(graph, qi))
    return totals


def supplier_wins(
    supplier_id: uuid.UUID, winners: Mapping[uuid.UUID, QuoteItemFacts]
) -> dict[uuid.UUID, QuoteItemFacts]:
    return {
        line_item_id: qi
        for line_item_id, qi in winners.items()
        if qi.supplier_id == supplier_id
    }


def representative_quote_id(
    supplier_id: uuid.UUID,
    winners: Mapping[uuid.UUID, QuoteItemFacts],
) -> Optional[uuid.UUID]:
    """The supplier's quote winning the most line items, earliest first on ties."""
    wins_per_quote: dict[uuid.UUID, int] = defaultdict(int)
    submitted: dict[uuid.UUID, datetime] = {}
    for qi in supplier_wins(supplier_id, winners).values():
        wins_per_quote[qi.quote_id] += 1
        submitted[qi.quote_id] = qi.submitted_at
    if not wins_per_quote:
        return None
    return min(
        wins_per_quote,
        key=lambda quote_id: (-wins_per_quote[quote_id], submitted[quote_id], str(quote_id)),
    )


def all_terminal(graph: AwardGraph) -> bool:
    return bool(graph.line_items) and all(
        li.is_terminal for li in graph.line_items.values()
    )
