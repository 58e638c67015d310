"""
Shared fixtures: temporary subscription store, delivery double, mock feed server.
"""

import asyncio

import pytest
import uvicorn

from artale_relay.dispatcher import Notification
from artale_relay.errors import DeliveryError
from artale_relay.store import SubscriptionStore
from artale_relay.subscriptions import SubscriptionEngine

from .mock_feed import MockFeed, create_feed_app, pick_port


class _UvicornServer:
    def __init__(self, app, host: str, port: int):
        self.config = uvicorn.Config(app, host=host, port=port, log_level="error")
        self.server = uvicorn.Server(self.config)
        self._task: asyncio.Task | None = None

    async def start(self):
        self._task = asyncio.create_task(self.server.serve())
        for _ in range(100):
            if self.server.started:
                return
            await asyncio.sleep(0.05)
        raise RuntimeError("Server did not start")

    async def stop(self):
        self.server.should_exit = True
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                self._task.cancel()


class FakeDelivery:
    """Records notifications; channels listed in ``failures`` raise instead."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, Notification]] = []
        self.failures: dict[str, Exception] = {}

    async def send(self, channel_id: str, notification: Notification) -> None:
        if channel_id in self.failures:
            raise self.failures[channel_id]
        self.sent.append((channel_id, notification))

    def fail(self, channel_id: str, code: str = "forbidden") -> None:
        self.failures[channel_id] = DeliveryError("Missing Access", code=code)

    def channels(self) -> list[str]:
        return [cid for cid, _ in self.sent]


@pytest.fixture
async def store(tmp_path):
    s = SubscriptionStore(str(tmp_path / "subscriptions.db"))
    await s.open()
    yield s
    await s.close()


@pytest.fixture
def engine(store):
    return SubscriptionEngine(store)


@pytest.fixture
def delivery():
    return FakeDelivery()


@pytest.fixture
async def feed_server():
    port = pick_port()
    feed = MockFeed()
    srv = _UvicornServer(create_feed_app(feed), "127.0.0.1", port)
    await srv.start()
    feed.url = f"ws://127.0.0.1:{port}/ws/broadcasts"
    yield feed
    await srv.stop()
