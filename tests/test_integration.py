"""
Integration tests: mock feed → FeedListener → dispatcher → delivery.
"""

import asyncio

from artale_relay.app import RelayService
from artale_relay.config import RelayConfig
from artale_relay.feed_listener import FeedListener

from .mock_feed import new_message, wait_until


class Recorder:
    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)


class FakeBot:
    """Stands in for RelayBot when no Discord token is configured."""

    def __init__(self):
        self.ready_event = asyncio.Event()
        self.closed = False

    def is_closed(self) -> bool:
        return self.closed

    async def close(self) -> None:
        self.closed = True


async def test_handshake_dedup_and_ping(feed_server):
    feed_server.script = [
        new_message("收 劍"),
        new_message("收 劍"),
        "{not json",
        new_message("賣 盾", "sell"),
    ]
    recorder = Recorder()
    listener = FeedListener(feed_server.url, recorder, initial_delay=0, ping_interval=0.05)
    await listener.start()

    try:
        assert await wait_until(lambda: len(recorder.events) >= 2)
        assert await wait_until(lambda: "ping" in feed_server.received_types())

        assert feed_server.received_types()[0] == "subscribe_new"
        assert listener.connected
        await asyncio.sleep(0.1)
        assert [e.content for e in recorder.events] == ["收 劍", "賣 盾"]
    finally:
        await listener.stop()

    assert not listener.connected


async def test_reconnect_collapses_redelivery(feed_server):
    feed_server.script = [new_message("收 劍")]
    feed_server.close_after_script = 1
    recorder = Recorder()
    listener = FeedListener(
        feed_server.url,
        recorder,
        initial_delay=0,
        reconnect_base=0.05,
        reconnect_max=0.1,
    )
    await listener.start()

    try:
        assert await wait_until(
            lambda: feed_server.received_types().count("subscribe_new") >= 2
        )
        assert await wait_until(lambda: listener.connected)
        await asyncio.sleep(0.1)
        await listener.wait_idle()

        assert feed_server.connections == 2
        assert len(recorder.events) == 1
        assert listener.reconnect_count == 1
        assert listener.attempt == 0
    finally:
        await listener.stop()


async def test_relay_service_end_to_end(feed_server, delivery, tmp_path, monkeypatch):
    monkeypatch.delenv("ARTALE_RELAY_TEST_TOKEN", raising=False)
    feed_server.script = [
        new_message("收購 劍 一把", player_name="Slime", player_id="42"),
        new_message("收購 劍 一把", player_name="Slime", player_id="42"),
        new_message("販售 盾", "sell"),
    ]
    config = RelayConfig.model_validate({
        "feed": {"url": feed_server.url, "initial_delay_seconds": 0.5},
        "discord": {"token_env": "ARTALE_RELAY_TEST_TOKEN"},
        "store": {"db_path": str(tmp_path / "subs.db")},
        "metrics": {"enabled": False},
    })
    bot = FakeBot()
    service = RelayService(config, bot=bot, delivery=delivery)
    await service.start()

    try:
        reply = await service.commands.subscribe("A", "chan-a", "劍,盾", "buy")
        assert reply.startswith("✅ 已成功訂閱")
        await service.engine.subscribe("B", "chan-b", [])

        assert await wait_until(lambda: len(delivery.sent) >= 3)
        await asyncio.sleep(0.1)
        await service.listener.wait_idle()

        sent = [(cid, n.text_body) for cid, n in delivery.sent]
        assert sorted(sent) == sorted([
            ("chan-a", "<@A> - 劍 (收購)"),
            ("chan-b", "<@B> - 全部訊息 (收購)"),
            ("chan-b", "<@B> - 全部訊息 (販售)"),
        ])
        assert service.metrics.get("broadcasts_duplicate_total") == 1
        assert service.metrics.get("notifications_sent_total") == 3
    finally:
        await service.stop()

    assert bot.closed
