"""
Evaluation service — closes a solicitation and resolves the winner of every
open line item.

Close and evaluation are separate units of work: the caller commits the close
before evaluating, so a failing evaluation never reopens the solicitation.
Each line item is evaluated inside its own savepoint. A failure rolls back
only that item, gets logged and reported, and the loop moves on.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from sourcing.exceptions import StateError
from sourcing.services.award_consistency import (
    assign_winner,
    promote_if_complete,
)
from sourcing.services.award_engine import determine_winner
from sourcing.services.audit_service import record_audit
from sourcing.services.notification_service import (
    NotificationEvent,
    format_amount,
    notify,
)
from sourcing.services.solicitation_state import SolicitationState

logger = structlog.get_logger()

AUTO_EVALUATION = "AUTO_EVALUATION"


@dataclass
class LineItemFailure:
    line_item_id: uuid.UUID
    error: str


@dataclass
class EvaluationResult:
    solicitation_id: uuid.UUID
    awarded: list[uuid.UUID] = field(default_factory=list)
    skipped: list[uuid.UUID] = field(default_factory=list)
    unquoted: list[uuid.UUID] = field(default_factory=list)
    failures: list[LineItemFailure] = field(default_factory=list)
    solicitation_status: Optional[str] = None
    notifications: list[NotificationEvent] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.awarded)

    @property
    def failure_count(self) -> int:
        return len(self.failures)


async def close_solicitation(
    session: AsyncSession,
    solicitation_id,
    actor_id=None,
) -> SolicitationState:
    """PUBLISHED -> CLOSED. The caller commits before evaluating."""
    state = await SolicitationState.load(session, solicitation_id, lock=True)
    solicitation = state.solicitation
    if solicitation.status != "PUBLISHED":
        raise StateError(
            f"Cannot close a solicitation in '{solicitation.status}' status (must be PUBLISHED)",
            "SOLICITATION_NOT_PUBLISHED",
        )
    solicitation.status = "CLOSED"
    solicitation.closed_at = datetime.utcnow()
    await session.flush()
    await record_audit(
        session,
        "SOLICITATION_CLOSED",
        "solicitation",
        solicitation.id,
        actor_id,
        {"deadline": solicitation.deadline, "closed_at": solicitation.closed_at},
    )
    logger.info(
        "solicitation_closed",
        solicitation_id=str(solicitation.id),
        by=str(actor_id) if actor_id else "scheduler",
    )
    return state


async def evaluate_solicitation(
    session: AsyncSession,
    solicitation_id,
    actor_id=None,
) -> EvaluationResult:
    """Resolve every non-terminal, quoted line item of a CLOSED solicitation."""
    state = await SolicitationState.load(session, solicitation_id, lock=True)
    solicitation = state.solicitation
    if solicitation.status != "CLOSED":
        raise StateError(
            f"Cannot evaluate a solicitation in '{solicitation.status}' status (must be CLOSED)",
            "SOLICITATION_NOT_CLOSED",
        )

    result = EvaluationResult(solicitation_id=solicitation.id)
    won_by_supplier: dict[uuid.UUID, list[uuid.UUID]] = {}

    for line_item_id in list(state.line_items):
        line_item = state.line_items[line_item_id]
        if line_item.item_status in ("AWARDED", "CANCELLED", "OUT_OF_STOCK"):
            result.skipped.append(line_item_id)
            continue
        if not state.quote_items_for(line_item_id):
            result.unquoted.append(line_item_id)
            continue

        try:
            async with session.begin_nested():
                graph = state.graph()
                winner = determine_winner(
                    graph.line_items[line_item_id],
                    graph.quote_items_for(line_item_id),
                    [a for a in graph.awards if not a.is_cancelled],
                )
                quote_item = state.quote_items[winner.id]
                await assign_winner(state, line_item, quote_item, reason=AUTO_EVALUATION)
                await session.flush()
        except Exception as exc:
            logger.error(
                "line_item_evaluation_failed",
                solicitation_id=str(solicitation_id),
                line_item_id=str(line_item_id),
                error=str(exc),
            )
            result.failures.append(LineItemFailure(line_item_id, str(exc)))
            # The savepoint rollback expired part of the working set
            state = await SolicitationState.load(session, solicitation_id)
            solicitation = state.solicitation
            continue

        result.awarded.append(line_item_id)
        won_by_supplier.setdefault(winner.supplier_id, []).append(line_item_id)
        logger.info(
            "line_item_awarded",
            solicitation_id=str(solicitation.id),
            line_item_id=str(line_item_id),
            quote_item_id=str(winner.id),
            supplier_id=str(winner.supplier_id),
            unit_price_cents=winner.unit_price_cents,
        )

    promote_if_complete(state)
    await session.flush()
    result.solicitation_status = solicitation.status

    await record_audit(
        session,
        "SOLICITATION_EVALUATED",
        "solicitation",
        solicitation.id,
        actor_id,
        {
            "awarded": result.awarded,
            "unquoted": result.unquoted,
            "failures": [f.line_item_id for f in result.failures],
        },
    )
    result.notifications = _build_notifications(state, result, won_by_supplier)

    logger.info(
        "solicitation_evaluated",
        solicitation_id=str(solicitation.id),
        awarded=result.success_count,
        failed=result.failure_count,
        unquoted=len(result.unquoted),
        status=solicitation.status,
    )
    return result


def _build_notifications(
    state: SolicitationState,
    result: EvaluationResult,
    won_by_supplier: dict[uuid.UUID, list[uuid.UUID]],
) -> list[NotificationEvent]:
    solicitation = state.solicitation
    base = {
        "solicitation_number": solicitation.solicitation_number,
        "title": solicitation.title,
    }
    events = []

    for supplier_id, line_item_ids in won_by_supplier.items():
        award = state.active_award(supplier_id)
        events.append(
            notify(
                "line_items_won",
                {
                    **base,
                    "item_count": len(line_item_ids),
                    "product_names": ", ".join(
                        state.line_items[i].product_name for i in line_item_ids
                    ),
                    "amount_cents": award.final_price_cents if award else 0,
                },
                recipient_id=supplier_id,
                entity_id=solicitation.id,
            )
        )

    if result.unquoted:
        events.append(
            notify(
                "unquoted_line_items",
                {
                    **base,
                    "product_names": ", ".join(
                        state.line_items[i].product_name for i in result.unquoted
                    ),
                },
                recipient_id=solicitation.owner_id,
                broadcast=True,
                entity_id=solicitation.id,
            )
        )

    events.append(
        notify(
            "solicitation_closed",
            {
                **base,
                "quoted_count": len(state.line_items) - len(result.unquoted),
                "unquoted_count": len(result.unquoted),
            },
            recipient_id=solicitation.owner_id,
            entity_id=solicitation.id,
        )
    )

    if solicitation.status == "AWARDED":
        total = sum(
            a.final_price_cents for a in state.awards.values() if a.status == "ACTIVE"
        )
        events.append(
            notify(
                "solicitation_awarded",
                {**base, "amount_cents": total, "amount_display": format_amount(total)},
                recipient_id=solicitation.owner_id,
                broadcast=True,
                entity_id=solicitation.id,
            )
        )
    return events


async def close_and_evaluate(
    session: AsyncSession,
    solicitation_id,
    actor_id=None,
) -> EvaluationResult:
    """Close, commit, then evaluate in a fresh transaction on the same session."""
    await close_solicitation(session, solicitation_id, actor_id)
    await session.commit()
    return await evaluate_solicitation(session, solicitation_id, actor_id)
