"""
WebSocket listener for the Artale broadcast feed.

Maintains a single persistent feed connection with:
- Delayed first connect so the Discord client can finish logging in
- Subscribe handshake and periodic liveness pings
- Exponential-backoff reconnection with a terminal attempt cap
- De-duplication of repeated broadcast deliveries
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable

import aiohttp
import structlog
from pydantic import ValidationError

from .errors import FeedError
from .metrics import MetricsCollector
from .models import BroadcastEvent, FeedFrame

log = structlog.get_logger()

FRAME_PREVIEW_CHARS = 200


class FeedState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    EXHAUSTED = "exhausted"


BroadcastHandler = Callable[[BroadcastEvent], Awaitable[Any]]


def reconnect_delay(attempt: int, base: float, cap: float) -> float:
    """Backoff before reconnect number ``attempt`` (0-based): min(base * 2^attempt, cap)."""
    return min(base * (2 ** attempt), cap)


class DedupCache:
    """
    Bounded set of recently seen dedup keys.

    Once more than ``high_water`` keys are held, only the ``low_water`` most
    recently inserted keys are kept. Lookups do not refresh recency.
    """

    def __init__(self, high_water: int = 1000, low_water: int = 500):
        self._high_water = high_water
        self._low_water = low_water
        self._keys: dict[str, None] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: str) -> bool:
        """Record a key; returns False if it was already present."""
        if key in self._keys:
            return False
        self._keys[key] = None
        if len(self._keys) > self._high_water:
            recent = list(self._keys)[-self._low_water:]
            self._keys = dict.fromkeys(recent)
        return True


class FeedListener:
    """
    Feed connection state machine: disconnected → connecting → open.

    Owns the socket, the ping task and the reconnect loop. Unique broadcasts
    are handed to the handler as independent tasks so a slow delivery never
    blocks reading the next frame.
    """

    def __init__(
        self,
        url: str,
        handler: BroadcastHandler,
        *,
        initial_delay: float = 5.0,
        ping_interval: float = 30.0,
        reconnect_base: float = 5.0,
        reconnect_max: float = 30.0,
        max_reconnect_attempts: int = 10,
        dedup_high_water: int = 1000,
        dedup_low_water: int = 500,
        metrics: MetricsCollector | None = None,
    ):
        self._url = url
        self._handler = handler
        self._initial_delay = initial_delay
        self._ping_interval = ping_interval
        self._reconnect_base = reconnect_base
        self._reconnect_max = reconnect_max
        self._max_attempts = max_reconnect_attempts
        self._metrics = metrics
        self._dedup = DedupCache(dedup_high_water, dedup_low_water)

        self._state = FeedState.DISCONNECTED
        self._running = False
        self._attempt = 0
        self._reconnect_count = 0
        self._last_frame_at: float | None = None
        self._ws: Any = None
        self._task: asyncio.Task | None = None
        self._ping_task: asyncio.Task | None = None
        self._dispatch_tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is FeedState.OPEN

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def reconnect_count(self) -> int:
        return self._reconnect_count

    @property
    def last_frame_at(self) -> float | None:
        return self._last_frame_at

    async def start(self) -> None:
        """Start the connect/reconnect loop in the background."""
        self._running = True
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Close the feed; in-flight dispatches are awaited, not cancelled."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._cancel_ping()
        await self.wait_idle()
        if self._state is not FeedState.EXHAUSTED:
            self._set_state(FeedState.DISCONNECTED)
        log.info("feed.stopped")

    async def wait_idle(self) -> None:
        """Wait for all dispatches started so far to finish."""
        if self._dispatch_tasks:
            await asyncio.gather(*list(self._dispatch_tasks), return_exceptions=True)

    def _set_state(self, state: FeedState) -> None:
        self._state = state
        if self._metrics:
            self._metrics.set_gauge("feed_connected", 1 if state is FeedState.OPEN else 0)

    # --- Connection loop ---

    async def _run(self) -> None:
        if self._initial_delay > 0:
            log.info("feed.initial_delay", seconds=self._initial_delay)
            await asyncio.sleep(self._initial_delay)

        async with aiohttp.ClientSession() as session:
            while self._running:
                try:
                    await self._connect_once(session)
                except FeedError as exc:
                    log.warning("feed.connection_lost", attempt=self._attempt, **exc.log_fields())
                finally:
                    self._cancel_ping()
                    self._set_state(FeedState.DISCONNECTED)

                if not self._running:
                    break

                if self._attempt >= self._max_attempts:
                    self._set_state(FeedState.EXHAUSTED)
                    log.error(
                        "feed.reconnect_exhausted",
                        attempts=self._attempt,
                        url=self._url,
                    )
                    return

                delay = reconnect_delay(self._attempt, self._reconnect_base, self._reconnect_max)
                self._attempt += 1
                self._reconnect_count += 1
                if self._metrics:
                    self._metrics.inc("feed_reconnects_total")
                log.info("feed.reconnecting", delay=delay, attempt=self._attempt)
                await asyncio.sleep(delay)

    async def _connect_once(self, session: aiohttp.ClientSession) -> None:
        self._set_state(FeedState.CONNECTING)
        log.info("feed.connecting", url=self._url, attempt=self._attempt)
        try:
            async with session.ws_connect(self._url) as ws:
                self._ws = ws
                self._attempt = 0
                self._set_state(FeedState.OPEN)
                log.info("feed.connected", url=self._url)

                async for msg in ws:
                    if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                        await self.handle_frame(msg.data)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        raise FeedError(str(ws.exception()), code="socket_error")

                log.warning("feed.closed", close_code=ws.close_code)
        except aiohttp.WSServerHandshakeError as exc:
            raise FeedError(exc.message or str(exc), code=f"handshake_{exc.status}") from exc
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            raise FeedError(str(exc) or type(exc).__name__, code="connect_failed") from exc
        finally:
            self._ws = None

    # --- Frames ---

    async def handle_frame(self, raw: str | bytes) -> None:
        """Decode one inbound frame and act on its type."""
        self._last_frame_at = time.time()
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")

        try:
            frame = FeedFrame.model_validate_json(raw)
        except ValidationError as exc:
            self._malformed(raw, exc)
            return

        if frame.type == "connection_info":
            log.info("feed.connection_info")
            if await self._send_control("subscribe_new"):
                log.info("feed.subscribe_sent")
        elif frame.type == "subscription_confirmed":
            log.info("feed.subscription_confirmed")
            self._start_ping()
        elif frame.type == "pong":
            log.debug("feed.pong")
        elif frame.type == "new_message":
            self._on_broadcast(frame, raw)
        else:
            log.warning("feed.unknown_frame", type=frame.type)

    def _on_broadcast(self, frame: FeedFrame, raw: str) -> None:
        if frame.payload is None:
            log.warning("feed.missing_payload", request_id=frame.request_id)
            return
        try:
            event = BroadcastEvent.model_validate(frame.payload)
        except ValidationError as exc:
            self._malformed(raw, exc)
            return

        if not self._dedup.add(event.dedup_key):
            log.debug("feed.duplicate_dropped", player_id=event.player_id, channel=event.channel)
            if self._metrics:
                self._metrics.inc("broadcasts_duplicate_total")
            return

        if self._metrics:
            self._metrics.inc("broadcasts_received_total")
        task = asyncio.create_task(self._dispatch(event))
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)

    async def _dispatch(self, event: BroadcastEvent) -> None:
        try:
            await self._handler(event)
        except Exception:
            log.exception(
                "feed.handler_error",
                message_type=event.message_type.value,
                channel=event.channel,
            )

    def _malformed(self, raw: str, exc: ValidationError) -> None:
        log.warning(
            "feed.malformed_frame",
            data=raw[:FRAME_PREVIEW_CHARS],
            errors=exc.error_count(),
        )
        if self._metrics:
            self._metrics.inc("feed_frames_malformed_total")

    # --- Outbound control frames ---

    async def _send_control(self, frame_type: str) -> bool:
        ws = self._ws
        if ws is None or ws.closed:
            return False
        frame = {"type": frame_type, "request_id": uuid.uuid4().hex}
        try:
            await ws.send_str(json.dumps(frame))
        except (ConnectionResetError, aiohttp.ClientError, RuntimeError) as exc:
            # The close event drives reconnection
            log.warning("feed.send_failed", type=frame_type, error=str(exc))
            return False
        return True

    def _start_ping(self) -> None:
        self._cancel_ping()
        self._ping_task = asyncio.create_task(self._ping_loop())

    def _cancel_ping(self) -> None:
        if self._ping_task:
            self._ping_task.cancel()
            self._ping_task = None

    async def _ping_loop(self) -> None:
        while True:
            await asyncio.sleep(self._ping_interval)
            ws = self._ws
            if ws is None or ws.closed:
                return
            if await self._send_control("ping"):
                log.debug("feed.ping_sent")
