"""
Unit tests for sourcing/services/notification_service.py and chat_service.py

Uses AsyncMock sessions and a patched chat webhook; nothing leaves the process.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from sourcing.models.notification import AppNotification
from sourcing.services import chat_service
from sourcing.services.notification_service import (
    TEMPLATES,
    dispatch_notifications,
    format_amount,
    notify,
    render,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _session_factory(session):
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


def _mock_session() -> AsyncMock:
    session = AsyncMock()
    session.add = MagicMock()
    session.commit = AsyncMock()
    return session


# ---------------------------------------------------------------------------
# notify / render
# ---------------------------------------------------------------------------


def test_notify_requires_recipient_or_role():
    with pytest.raises(ValueError):
        notify("instant_award", {})


def test_notify_stringifies_entity_id():
    entity = uuid.uuid4()
    event = notify("instant_award", {}, recipient_id=uuid.uuid4(), entity_id=entity)
    assert event.entity_id == str(entity)


def test_format_amount():
    assert format_amount(500000) == "5,000.00"
    assert format_amount(99) == "0.99"


def test_render_fills_amount_display():
    event = notify(
        "line_items_won",
        {
            "solicitation_number": "SOL-000001",
            "item_count": 2,
            "product_names": "Paper, Toner",
            "amount_cents": 123456,
        },
        recipient_id=uuid.uuid4(),
    )
    title, body = render(event)
    assert title == "You won 2 line item(s) in SOL-000001"
    assert "1,234.56" in body


def test_render_unknown_template_returns_none():
    event = notify("no_such_event", {}, role="buyer")
    assert render(event) is None


def test_render_missing_key_returns_none():
    event = notify("instant_award", {"solicitation_number": "SOL-1"}, recipient_id=uuid.uuid4())
    assert render(event) is None


def test_every_template_has_title_and_body():
    for name, template in TEMPLATES.items():
        assert set(template) == {"title", "body"}, name


# ---------------------------------------------------------------------------
# dispatch_notifications
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_dispatch_persists_and_broadcasts():
    session = _mock_session()
    supplier = uuid.uuid4()
    events = [
        notify(
            "instant_award",
            {"solicitation_number": "SOL-1", "product_name": "Paper"},
            recipient_id=supplier,
        ),
        notify(
            "unquoted_line_items",
            {"solicitation_number": "SOL-1", "product_names": "Toner"},
            role="buyer",
            broadcast=True,
        ),
    ]
    with patch(
        "sourcing.services.notification_service.post_chat_message",
        new_callable=AsyncMock,
    ) as mock_post:
        stored = await dispatch_notifications(events, session_factory=_session_factory(session))

    assert stored == 2
    assert session.add.call_count == 2
    first = session.add.call_args_list[0].args[0]
    assert isinstance(first, AppNotification)
    assert first.user_id == supplier
    assert first.type == "instant_award"
    session.commit.assert_awaited_once()
    mock_post.assert_awaited_once()
    assert mock_post.await_args.args[0] == "Unquoted line items in SOL-1"


@pytest.mark.asyncio
async def test_dispatch_never_raises_on_persist_failure():
    session = _mock_session()
    session.commit.side_effect = RuntimeError("db down")
    events = [
        notify(
            "solicitation_awarded",
            {"solicitation_number": "SOL-1", "title": "Q1", "amount_cents": 100},
            role="buyer",
            broadcast=True,
        )
    ]
    with patch(
        "sourcing.services.notification_service.post_chat_message",
        new_callable=AsyncMock,
    ) as mock_post:
        stored = await dispatch_notifications(events, session_factory=_session_factory(session))

    assert stored == 0
    # Broadcast still goes out
    mock_post.assert_awaited_once()


@pytest.mark.asyncio
async def test_dispatch_skips_unrenderable_events():
    factory = MagicMock()
    stored = await dispatch_notifications(
        [notify("no_such_event", {}, role="buyer")], session_factory=factory
    )
    assert stored == 0
    factory.assert_not_called()


# ---------------------------------------------------------------------------
# chat webhook
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_chat_message_skipped_when_not_configured():
    with patch.object(chat_service.settings, "CHAT_WEBHOOK_URL", None):
        assert await chat_service.post_chat_message("t", "x") is False


@pytest.mark.asyncio
async def test_chat_message_4xx_is_not_retried():
    response = MagicMock()
    response.status_code = 400
    response.text = "bad hook"
    client = MagicMock()
    client.post = AsyncMock(return_value=response)

    with patch.object(chat_service.settings, "CHAT_WEBHOOK_URL", "https://chat.example/hook"), \
            patch.object(chat_service, "get_http_client", return_value=client):
        assert await chat_service.post_chat_message("t", "x") is False

    client.post.assert_awaited_once()
    payload = client.post.await_args.kwargs["json"]
    assert payload["markdown"]["title"] == "t"


@pytest.mark.asyncio
async def test_chat_message_success():
    response = MagicMock()
    response.status_code = 200
    client = MagicMock()
    client.post = AsyncMock(return_value=response)

    with patch.object(chat_service.settings, "CHAT_WEBHOOK_URL", "https://chat.example/hook"), \
            patch.object(chat_service, "get_http_client", return_value=client):
        assert await chat_service.post_chat_message("t", "x") is True
