"""
Relay service orchestrator.

Coordinates all components: subscription store, Discord client, feed listener,
fan-out dispatcher and health server.
Handles lifecycle: startup, shutdown, signal handling.
"""

from __future__ import annotations

import asyncio
import signal

import discord
import structlog

from .commands import CommandHandler
from .config import RelayConfig
from .discord_bot import DiscordDelivery, RelayBot
from .dispatcher import Delivery, FanOutDispatcher
from .errors import StoreError
from .feed_listener import FeedListener
from .health import HealthServer
from .metrics import MetricsCollector
from .store import SubscriptionStore
from .subscriptions import SubscriptionEngine

log = structlog.get_logger()

SHUTDOWN_TIMEOUT = 15.0
HEALTH_UPDATE_SECONDS = 30.0


class RelayService:
    """
    Main relay process: wires the feed to Discord and manages lifecycle.
    """

    def __init__(
        self,
        config: RelayConfig,
        bot: RelayBot | None = None,
        delivery: Delivery | None = None,
    ):
        self._config = config
        self._metrics = MetricsCollector()
        self._store = SubscriptionStore(config.store.db_path)
        self._engine = SubscriptionEngine(self._store)
        self._commands = CommandHandler(self._engine)
        self._bot = bot or RelayBot(self._commands, guild_id=config.discord.guild_id)
        self._dispatcher = FanOutDispatcher(
            self._store,
            delivery or DiscordDelivery(self._bot),
            metrics=self._metrics,
        )
        feed = config.feed
        self._listener = FeedListener(
            feed.url,
            self._dispatcher.broadcast,
            initial_delay=feed.initial_delay_seconds,
            ping_interval=feed.ping_interval_seconds,
            reconnect_base=feed.reconnect_base_seconds,
            reconnect_max=feed.reconnect_max_seconds,
            max_reconnect_attempts=feed.max_reconnect_attempts,
            dedup_high_water=feed.dedup_high_water,
            dedup_low_water=feed.dedup_low_water,
            metrics=self._metrics,
        )
        self._health = HealthServer(
            host=config.metrics.host,
            port=config.metrics.port,
            metrics=self._metrics,
        )
        self._bot_task: asyncio.Task | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()

    @property
    def engine(self) -> SubscriptionEngine:
        return self._engine

    @property
    def commands(self) -> CommandHandler:
        return self._commands

    @property
    def listener(self) -> FeedListener:
        return self._listener

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    async def start(self) -> None:
        """Open the store, log in to Discord, then start the feed and health server."""
        log.info("relay.starting", feed_url=self._config.feed.url)

        await self._store.open()

        token = self._config.discord.token
        if token:
            self._bot_task = asyncio.create_task(self._run_bot(token))
        else:
            log.error("relay.missing_discord_token", env=self._config.discord.token_env)

        if self._config.metrics.enabled:
            try:
                await self._health.start()
                log.info(
                    "relay.health_started",
                    host=self._config.metrics.host,
                    port=self._config.metrics.port,
                )
            except OSError as exc:
                log.warning("relay.health_start_failed", error=str(exc))

        await self._listener.start()
        self._running = True
        log.info("relay.started")

    async def _run_bot(self, token: str) -> None:
        try:
            await self._bot.start(token)
        except discord.LoginFailure as exc:
            log.error("relay.discord_login_failed", error=str(exc))
        except discord.DiscordException as exc:
            log.error("relay.discord_stopped", error=str(exc))

    async def stop(self) -> None:
        """Graceful shutdown: stop the feed, finish dispatches, close connections."""
        if not self._running:
            return
        self._running = False
        log.info("relay.stopping")

        # 1. Stop the feed and wait for in-flight dispatches
        await self._listener.stop()

        # 2. Close Discord and the health server
        await self._health.stop()
        if not self._bot.is_closed():
            await self._bot.close()
        if self._bot_task:
            await asyncio.gather(self._bot_task, return_exceptions=True)

        # 3. Close the store
        await self._store.close()
        log.info("relay.stopped")

    async def run_forever(self) -> None:
        """Run until shutdown signal."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._shutdown_event.set)

        await self.start()

        try:
            while not self._shutdown_event.is_set():
                await self._update_health()
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(), timeout=HEALTH_UPDATE_SECONDS
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await asyncio.wait_for(self.stop(), timeout=SHUTDOWN_TIMEOUT)

    async def _update_health(self) -> None:
        try:
            subscribers = await self._store.count()
        except StoreError as exc:
            log.warning("relay.health_count_failed", **exc.log_fields())
            subscribers = 0

        feed = {
            "state": self._listener.state.value,
            "connected": self._listener.connected,
            "attempt": self._listener.attempt,
            "reconnect_count": self._listener.reconnect_count,
            "last_frame_at": self._listener.last_frame_at,
        }
        self._health.update_status(feed, self._bot.ready_event.is_set(), subscribers)
