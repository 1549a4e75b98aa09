"""
Notification service — template rendering + dispatch to in-app inbox and chat.

Services only build ``NotificationEvent`` values while their transaction is
open. Routes hand the list to ``dispatch_notifications`` through
BackgroundTasks once the transaction has committed, so a delivery failure can
never undo an award decision.
"""

import uuid
from dataclasses import dataclass, field
from typing import Optional

import structlog

from sourcing.database import AsyncSessionLocal
from sourcing.models.notification import AppNotification
from sourcing.services.chat_service import post_chat_message

logger = structlog.get_logger()

# ---------- Template registry ----------

TEMPLATES = {
    "solicitation_published": {
        "title": "New solicitation {solicitation_number}",
        "body": "{title} is open for quotes until {deadline}.",
    },
    "solicitation_closed": {
        "title": "Solicitation {solicitation_number} closed",
        "body": "{title} closed with {quoted_count} quoted and {unquoted_count} unquoted line items.",
    },
    "solicitation_awarded": {
        "title": "Solicitation {solicitation_number} fully awarded",
        "body": "All line items of {title} are resolved. Total awarded: {amount_display}.",
    },
    "solicitation_cancelled": {
        "title": "Solicitation {solicitation_number} cancelled",
        "body": "{title} was cancelled. Your quotes on it are rejected.",
    },
    "line_items_won": {
        "title": "You won {item_count} line item(s) in {solicitation_number}",
        "body": "Items: {product_names}. Award total: {amount_display}.",
    },
    "instant_award": {
        "title": "Instant award in {solicitation_number}",
        "body": "Your quote for {product_name} met the instant price and was accepted.",
    },
    "line_item_reassigned": {
        "title": "Line item reassigned in {solicitation_number}",
        "body": "{product_name} was awarded to another supplier. Reason: {reason}",
    },
    "unquoted_line_items": {
        "title": "Unquoted line items in {solicitation_number}",
        "body": "No supplier quoted: {product_names}.",
    },
    "line_item_out_of_stock": {
        "title": "Out of stock in {solicitation_number}",
        "body": "The awarded supplier cannot deliver {product_name}. Reason: {reason}",
    },
}


@dataclass
class NotificationEvent:
    event_type: str
    payload: dict = field(default_factory=dict)
    recipient_id: Optional[uuid.UUID] = None
    role: Optional[str] = None
    # Also post to the team chat webhook
    broadcast: bool = False
    entity_id: Optional[str] = None


def notify(
    event_type: str,
    payload: dict,
    recipient_id: Optional[uuid.UUID] = None,
    role: Optional[str] = None,
    broadcast: bool = False,
    entity_id=None,
) -> NotificationEvent:
    if recipient_id is None and role is None:
        raise ValueError("notify() needs a recipient_id or a role")
    return NotificationEvent(
        event_type=event_type,
        payload=payload,
        recipient_id=recipient_id,
        role=role,
        broadcast=broadcast,
        entity_id=str(entity_id) if entity_id is not None else None,
    )


def format_amount(cents: int) -> str:
    """Convert cents to display string (e.g. 500000 → '5,000.00')."""
    return f"{cents / 100:,.2f}"


def render(event: NotificationEvent) -> Optional[tuple[str, str]]:
    template = TEMPLATES.get(event.event_type)
    if not template:
        logger.warning("notification_template_not_found", event_type=event.event_type)
        return None

    context = dict(event.payload)
    if "amount_cents" in context and "amount_display" not in context:
        context["amount_display"] = format_amount(context["amount_cents"])

    try:
        return template["title"].format(**context), template["body"].format(**context)
    except KeyError as e:
        logger.error(
            "notification_template_render_error",
            event_type=event.event_type,
            missing_key=str(e),
        )
        return None


async def dispatch_notifications(
    events: list[NotificationEvent],
    session_factory=None,
) -> int:
    """Persist in-app notifications and post broadcasts. Never raises."""
    rendered = [(event, render(event)) for event in events]
    rendered = [(event, text) for event, text in rendered if text is not None]
    if not rendered:
        return 0

    factory = session_factory or AsyncSessionLocal
    stored = 0
    try:
        async with factory() as session:
            for event, (title, body) in rendered:
                session.add(
                    AppNotification(
                        user_id=event.recipient_id,
                        role=event.role,
                        title=title,
                        body=body,
                        type=event.event_type,
                        entity_id=event.entity_id,
                    )
                )
            await session.commit()
            stored = len(rendered)
    except Exception as exc:
        logger.error("notification_persist_failed", error=str(exc), count=len(rendered))

    for event, (title, body) in rendered:
        if event.broadcast:
            await post_chat_message(title, body)

    logger.info("notifications_dispatched", stored=stored, total=len(rendered))
    return stored
