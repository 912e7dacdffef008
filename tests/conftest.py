"""Shared fixtures for courier tests."""

import asyncio

import pytest
import pytest_asyncio

from courier.store.sqlite import SQLiteOutboxStore
from courier.transport.base import Transport


@pytest.fixture(autouse=True)
def isolate_env(monkeypatch, tmp_path):
    """Prevent tests from reading real .env or touching real data."""
    monkeypatch.setenv("STORE_BACKEND", "sqlite")
    monkeypatch.setenv("DATABASE_URL", "")
    monkeypatch.setenv("TRANSPORT_BACKEND", "http")
    monkeypatch.setenv("GATEWAY_BASE_URL", "http://gateway.test")
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "")
    monkeypatch.setenv("ACCOUNT_ID", "")
    monkeypatch.setenv("DATA_DIR", str(tmp_path))

    import courier.config
    monkeypatch.setattr(courier.config, "_settings", None)


class FakeTransport(Transport):
    """In-memory transport that records every send."""

    def __init__(self, message_id="ABC", error=None, account_id="15550001111"):
        self.message_id = message_id
        self.error = error
        self._account_id = account_id
        self.sent = []
        self.started = False
        self.closed = False

    @property
    def account_id(self):
        return self._account_id

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True

    async def send(self, address, content):
        self.sent.append((address, content))
        if self.error is not None:
            raise self.error
        return self.message_id


@pytest_asyncio.fixture
async def store(tmp_path):
    """Fresh SQLite queue store per test (temp file)."""
    s = SQLiteOutboxStore(db_path=str(tmp_path / "queue.db"))
    await s.init()
    yield s
    await s.close()


@pytest.fixture
def transport():
    return FakeTransport()


async def insert_row(store, outbox_id, chat_id, content, status="pending"):
    """Insert a queue row directly, bypassing enqueue and its notification."""
    async with store.get_connection() as conn:
        await conn.execute(
            "INSERT INTO outgoing_messages (id, chat_id, content, status) VALUES (?, ?, ?, ?)",
            (outbox_id, chat_id, content, status),
        )
        await conn.commit()


async def wait_until(predicate, timeout=2.0):
    """Poll an async or sync predicate until it is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
