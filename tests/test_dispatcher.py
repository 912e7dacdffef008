"""Tests for courier/outbox/dispatcher.py: claim, send, record."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import telegram.error

from courier.exceptions import ServiceUnavailableError, TransportError
from courier.models import DispatchOutcome, QueueStatus
from courier.outbox.dispatcher import ClaimDispatcher
from courier.transport.address import Address
from courier.transport.telegram import TelegramTransport

from conftest import FakeTransport, insert_row

FIXED_NOW = datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc)


def make_dispatcher(store, transport, **kwargs):
    return ClaimDispatcher(store, transport, clock=lambda: FIXED_NOW, **kwargs)


async def _insert_chat(store, chat_id):
    async with store.get_connection() as conn:
        await conn.execute("INSERT INTO chats (chat_id) VALUES (?)", (chat_id,))
        await conn.commit()


@pytest.mark.asyncio
async def test_successful_send_records_everything(store, transport):
    await insert_row(store, 42, "123@x", "hi")
    await _insert_chat(store, "123@x")

    outcome = await make_dispatcher(store, transport).dispatch(42)

    assert outcome == DispatchOutcome.SENT
    assert transport.sent == [(Address(user="123", server="x"), "hi")]

    entry = await store.get_entry(42)
    assert entry.status == QueueStatus.SENT
    assert entry.provider_message_id == "ABC"
    assert entry.completed_at is not None

    async with store.get_connection() as conn:
        messages = await conn.execute_fetchall("SELECT * FROM messages")
        contacts = await conn.execute_fetchall("SELECT phone_number FROM contacts")
        chats = await conn.execute_fetchall("SELECT last_message_at FROM chats")

    assert len(messages) == 1
    msg = messages[0]
    assert msg["message_id"] == "ABC"
    assert msg["chat_id"] == "123@x"
    assert msg["sender_id"] == "15550001111"
    assert msg["content"] == "hi"
    assert msg["is_from_me"] == 1
    assert [c["phone_number"] for c in contacts] == ["15550001111"]
    assert chats[0]["last_message_at"] == FIXED_NOW.isoformat()


@pytest.mark.asyncio
async def test_transport_error_marks_failed(store):
    transport = FakeTransport(error=TransportError("rate limited"))
    await insert_row(store, 42, "123@x", "hi")

    outcome = await make_dispatcher(store, transport).dispatch(42)

    assert outcome == DispatchOutcome.FAILED
    entry = await store.get_entry(42)
    assert entry.status == QueueStatus.FAILED
    assert entry.error_detail == "rate limited"
    async with store.get_connection() as conn:
        rows = await conn.execute_fetchall("SELECT COUNT(*) FROM messages")
    assert rows[0][0] == 0


@pytest.mark.asyncio
async def test_unreachable_gateway_is_not_retried(store):
    transport = FakeTransport(error=ServiceUnavailableError("gateway unreachable"))
    await insert_row(store, 1, "123@x", "hi")
    dispatcher = make_dispatcher(store, transport)

    assert await dispatcher.dispatch(1) == DispatchOutcome.FAILED
    assert await dispatcher.dispatch(1) == DispatchOutcome.SKIPPED
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_error_without_message_uses_type_name(store):
    transport = FakeTransport(error=RuntimeError())
    await insert_row(store, 1, "123@x", "hi")

    await make_dispatcher(store, transport).dispatch(1)

    entry = await store.get_entry(1)
    assert entry.error_detail == "RuntimeError"


@pytest.mark.asyncio
async def test_telegram_api_rejection_records_api_message(store):
    bot = MagicMock()
    bot.send_message = AsyncMock(side_effect=telegram.error.BadRequest("Chat not found"))
    await insert_row(store, 5, "5@telegram", "hi")

    outcome = await make_dispatcher(store, TelegramTransport(bot=bot)).dispatch(5)

    assert outcome == DispatchOutcome.FAILED
    entry = await store.get_entry(5)
    assert entry.status == QueueStatus.FAILED
    assert entry.error_detail == "Chat not found"


@pytest.mark.asyncio
async def test_malformed_target_fails_without_sending(store, transport):
    await insert_row(store, 5, "not-a-target", "hi")

    outcome = await make_dispatcher(store, transport).dispatch(5)

    assert outcome == DispatchOutcome.FAILED
    assert transport.sent == []
    entry = await store.get_entry(5)
    assert entry.status == QueueStatus.FAILED
    assert "invalid target" in entry.error_detail


@pytest.mark.asyncio
async def test_missing_row_is_skipped(store, transport):
    assert await make_dispatcher(store, transport).dispatch(404) == DispatchOutcome.SKIPPED
    assert transport.sent == []


@pytest.mark.asyncio
async def test_terminal_row_is_skipped(store, transport):
    await insert_row(store, 9, "123@x", "hi", status="sent")

    assert await make_dispatcher(store, transport).dispatch(9) == DispatchOutcome.SKIPPED
    assert transport.sent == []


@pytest.mark.asyncio
async def test_racing_dispatches_send_once(store, transport):
    await insert_row(store, 7, "123@x", "hi")
    dispatcher = make_dispatcher(store, transport)

    outcomes = await asyncio.gather(dispatcher.dispatch(7), dispatcher.dispatch(7))

    assert sorted(outcomes) == sorted([DispatchOutcome.SENT, DispatchOutcome.SKIPPED])
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_bookkeeping_failure_leaves_row_sent(store, transport, monkeypatch):
    await insert_row(store, 3, "123@x", "hi")
    await _insert_chat(store, "123@x")
    monkeypatch.setattr(
        store, "record_sent_message", AsyncMock(side_effect=RuntimeError("disk full"))
    )
    touch = AsyncMock()
    monkeypatch.setattr(store, "touch_chat_activity", touch)

    outcome = await make_dispatcher(store, transport).dispatch(3)

    assert outcome == DispatchOutcome.SENT
    entry = await store.get_entry(3)
    assert entry.status == QueueStatus.SENT
    assert entry.provider_message_id == "ABC"
    touch.assert_awaited_once_with("123@x", FIXED_NOW)


@pytest.mark.asyncio
async def test_mark_sent_failure_is_logged_not_raised(store, transport, monkeypatch, caplog):
    await insert_row(store, 3, "123@x", "hi")
    monkeypatch.setattr(store, "mark_sent", AsyncMock(side_effect=RuntimeError("db gone")))

    outcome = await make_dispatcher(store, transport).dispatch(3)

    assert outcome == DispatchOutcome.SENT
    assert "Failed to mark outbox message 3 as sent" in caplog.text


@pytest.mark.asyncio
async def test_no_account_skips_contact_and_sender(store):
    transport = FakeTransport(account_id=None)
    await insert_row(store, 1, "123@x", "hi")

    await make_dispatcher(store, transport).dispatch(1)

    async with store.get_connection() as conn:
        contacts = await conn.execute_fetchall("SELECT COUNT(*) FROM contacts")
        messages = await conn.execute_fetchall("SELECT sender_id FROM messages")
    assert contacts[0][0] == 0
    assert messages[0]["sender_id"] is None


def test_account_id_prefers_transport_then_config():
    assert make_dispatcher(None, FakeTransport(account_id="111"), account_id="222").account_id == "111"
    assert make_dispatcher(None, FakeTransport(account_id=None), account_id="222").account_id == "222"
    assert make_dispatcher(None, FakeTransport(account_id=None)).account_id == ""
