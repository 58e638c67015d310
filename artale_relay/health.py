"""
Health and metrics HTTP server.

Exposes:
- GET /health: feed connection and subscriber status as JSON
- GET /metrics: Prometheus-compatible metrics
"""

from __future__ import annotations

from typing import Any

from aiohttp import web

from .metrics import MetricsCollector


class HealthServer:
    """Small aiohttp app reporting relay status; status is pushed in by RelayService."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 9090,
        metrics: MetricsCollector | None = None,
    ):
        self._host = host
        self._port = port
        self._metrics = metrics or MetricsCollector()
        self._feed: dict[str, Any] = {}
        self._discord_ready = False
        self._subscribers = 0
        self._runner: web.AppRunner | None = None

    def update_status(
        self,
        feed: dict[str, Any],
        discord_ready: bool,
        subscribers: int,
    ) -> None:
        self._feed = feed
        self._discord_ready = discord_ready
        self._subscribers = subscribers

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/metrics", self._metrics_handler)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        feed_state = self._feed.get("state", "disconnected")
        if feed_state == "exhausted":
            status = "failed"
        elif self._feed.get("connected") and self._discord_ready:
            status = "healthy"
        else:
            status = "degraded"
        body = {
            "status": status,
            "feed": self._feed,
            "discord_ready": self._discord_ready,
            "subscribers": self._subscribers,
        }
        return web.json_response(body)

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        return web.Response(
            text=self._metrics.to_prometheus(),
            content_type="text/plain",
        )
