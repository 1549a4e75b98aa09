"""
Solicitation working set — loads every row that winner determination and
consistency repair touch for one solicitation, and turns them into facts.

Writers load with ``lock=True``: the solicitation row is taken FOR UPDATE
before anything else, so evaluation, instant award, out-of-stock and manual
override for the same solicitation run one at a time.
"""

import uuid
from typing import Iterable, Optional

from sqlalchemy import inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from sourcing.exceptions import NotFoundError
from sourcing.models.award import Award, AwardItem
from sourcing.models.quote import Quote, QuoteItem
from sourcing.models.solicitation import LineItem, Solicitation
from sourcing.services.award_engine import (
    AwardFacts,
    AwardGraph,
    LineItemFacts,
    QuoteItemFacts,
)


def line_item_facts(li: LineItem) -> LineItemFacts:
    return LineItemFacts(
        id=li.id,
        product_name=li.product_name,
        quantity=li.quantity,
        ceiling_price_cents=li.ceiling_price_cents,
        instant_price_cents=li.instant_price_cents,
        item_status=li.item_status,
    )


def build_graph(
    solicitation_id: uuid.UUID,
    line_items: Iterable[LineItem],
    quotes: Iterable[Quote],
    quote_items: Iterable[QuoteItem],
    awards: Iterable[Award],
    award_items: Iterable[AwardItem],
) -> AwardGraph:
    quotes_by_id = {q.id: q for q in quotes}
    claims: dict[uuid.UUID, dict[uuid.UUID, uuid.UUID]] = {}
    for ai in award_items:
        claims.setdefault(ai.award_id, {})[ai.line_item_id] = ai.quote_item_id

    qi_facts = []
    for qi in quote_items:
        quote = quotes_by_id.get(qi.quote_id)
        if quote is None:
            continue
        qi_facts.append(
            QuoteItemFacts(
                id=qi.id,
                quote_id=qi.quote_id,
                line_item_id=qi.line_item_id,
                supplier_id=quote.supplier_id,
                unit_price_cents=qi.unit_price_cents,
                submitted_at=quote.submitted_at,
            )
        )

    return AwardGraph(
        solicitation_id=solicitation_id,
        line_items={li.id: line_item_facts(li) for li in line_items},
        quote_items=tuple(qi_facts),
        awards=tuple(
            AwardFacts(
                id=a.id,
                supplier_id=a.supplier_id,
                quote_id=a.quote_id,
                status=a.status,
                reason=a.reason,
                claims=claims.get(a.id, {}),
            )
            for a in awards
        ),
    )


class SolicitationState:
    """In-memory view of one solicitation's rows, kept in step with the session."""

    def __init__(
        self,
        session: AsyncSession,
        solicitation: Solicitation,
        line_items: list[LineItem],
        quotes: list[Quote],
        quote_items: list[QuoteItem],
        awards: list[Award],
        award_items: list[AwardItem],
    ):
        self.session = session
        self.solicitation = solicitation
        self.line_items = {li.id: li for li in line_items}
        self.quotes = {q.id: q for q in quotes}
        self.quote_items = {qi.id: qi for qi in quote_items}
        self.awards = {a.id: a for a in awards}
        self.award_items = {ai.id: ai for ai in award_items}

    @classmethod
    async def load(
        cls,
        session: AsyncSession,
        solicitation_id,
        lock: bool = False,
    ) -> "SolicitationState":
        stmt = (
            select(Solicitation)
            .where(Solicitation.id == as_uuid(solicitation_id))
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        solicitation = (await session.execute(stmt)).scalar_one_or_none()
        if solicitation is None:
            raise NotFoundError("Solicitation not found", "SOLICITATION_NOT_FOUND")

        sid = solicitation.id
        fresh = {"populate_existing": True}
        line_items = (
            await session.execute(
                select(LineItem)
                .where(LineItem.solicitation_id == sid)
                .order_by(LineItem.position, LineItem.id)
                .execution_options(**fresh)
            )
        ).scalars().all()
        quotes = (
            await session.execute(
                select(Quote)
                .where(Quote.solicitation_id == sid)
                .order_by(Quote.submitted_at)
                .execution_options(**fresh)
            )
        ).scalars().all()
        quote_items = (
            await session.execute(
                select(QuoteItem)
                .join(Quote, QuoteItem.quote_id == Quote.id)
                .where(Quote.solicitation_id == sid)
                .execution_options(**fresh)
            )
        ).scalars().all()
        awards = (
            await session.execute(
                select(Award)
                .where(Award.solicitation_id == sid)
                .order_by(Award.created_at)
                .execution_options(**fresh)
            )
        ).scalars().all()
        award_items = (
            await session.execute(
                select(AwardItem)
                .join(Award, AwardItem.award_id == Award.id)
                .where(Award.solicitation_id == sid)
                .execution_options(**fresh)
            )
        ).scalars().all()

        return cls(
            session,
            solicitation,
            list(line_items),
            list(quotes),
            list(quote_items),
            list(awards),
            list(award_items),
        )

    # ---------- facts ----------

    def graph(self) -> AwardGraph:
        return build_graph(
            self.solicitation.id,
            self.line_items.values(),
            self.quotes.values(),
            self.quote_items.values(),
            self.awards.values(),
            self.award_items.values(),
        )

    def line_item(self, line_item_id) -> LineItem:
        li = self.line_items.get(as_uuid(line_item_id))
        if li is None:
            raise NotFoundError("Line item not found", "LINE_ITEM_NOT_FOUND")
        return li

    def active_award(self, supplier_id: uuid.UUID) -> Optional[Award]:
        for award in self.awards.values():
            if award.supplier_id == supplier_id and award.status == "ACTIVE":
                return award
        return None

    def items_of_award(self, award_id: uuid.UUID) -> list[AwardItem]:
        return [ai for ai in self.award_items.values() if ai.award_id == award_id]

    def quote_items_for(self, line_item_id: uuid.UUID) -> list[QuoteItem]:
        return [
            qi for qi in self.quote_items.values() if qi.line_item_id == line_item_id
        ]

    # ---------- tracked mutations ----------

    def add_award(self, award: Award) -> None:
        self.session.add(award)
        self.awards[award.id] = award

    def add_award_item(self, award_item: AwardItem) -> None:
        self.session.add(award_item)
        self.award_items[award_item.id] = award_item

    async def delete_award_item(self, award_item: AwardItem) -> None:
        self.award_items.pop(award_item.id, None)
        if inspect(award_item).pending:
            self.session.expunge(award_item)
        else:
            await self.session.delete(award_item)


def as_uuid(value) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        raise NotFoundError(f"Invalid identifier '{value}'", "INVALID_ID")
