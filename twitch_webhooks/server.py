"""
aiohttp binding for the webhook manager.

Exposes:
- GET|POST <base_path>/<topic segment>/{tail}: hub callbacks
- GET /health: JSON health status
- GET /metrics: Prometheus-compatible metrics
"""

from __future__ import annotations

from aiohttp import web

from .manager import WebhookManager
from .metrics import MetricsCollector
from .signature import InboundRequest
from .topics import WebhookType, endpoint_path


class WebhookServer:
    """Routes hub callbacks into the manager and serves health and metrics."""

    def __init__(
        self,
        manager: WebhookManager,
        host: str = "0.0.0.0",
        port: int = 8080,
        metrics: MetricsCollector | None = None,
    ):
        self._manager = manager
        self._host = host
        self._port = port
        self._metrics = metrics or MetricsCollector()
        self._runner: web.AppRunner | None = None

    def create_app(self) -> web.Application:
        """Build the aiohttp application with callback, health and metrics routes."""
        app = web.Application()
        base_path = self._manager.config.base_path
        for webhook_type in WebhookType:
            handler = self._callback_handler(webhook_type)
            path = endpoint_path(base_path, webhook_type) + "/{tail}"
            app.router.add_get(path, handler, allow_head=False)
            app.router.add_post(path, handler)
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/metrics", self._metrics_handler)
        return app

    async def start(self) -> None:
        """Start listening on the configured host and port."""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

    async def stop(self) -> None:
        """Stop the server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    def _callback_handler(self, webhook_type: WebhookType):
        async def handler(request: web.Request) -> web.Response:
            inbound = InboundRequest(
                method=request.method,
                path=request.path,
                query_string=request.rel_url.raw_query_string,
                headers=dict(request.headers),
                body=await request.read(),
            )
            result = await self._manager.handle_request(inbound, webhook_type)
            return web.Response(status=result.status, text=result.body, headers=result.headers)

        return handler

    async def _health_handler(self, request: web.Request) -> web.Response:
        webhooks = await self._manager.persistence.get_all_webhooks()
        subscribed = sum(1 for w in webhooks if w.subscribed)
        body = {
            "status": "healthy",
            "subscriptions": {
                "active": subscribed,
                "pending": len(webhooks) - subscribed,
            },
        }
        return web.json_response(body)

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        return web.Response(
            text=self._metrics.to_prometheus(),
            content_type="text/plain",
        )
