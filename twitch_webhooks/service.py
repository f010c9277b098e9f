"""
Standalone webhook service.

Coordinates all components: metrics, persistence, renewal scheduler, webhook
manager and the aiohttp server. Handles lifecycle: startup, declared
subscriptions, shutdown, signal handling.
"""

from __future__ import annotations

import asyncio
import signal

import structlog

from .config import ServiceConfig
from .manager import WebhookManager
from .metrics import MetricsCollector
from .persistence import MemoryWebhookPersistence, WebhookOptions, WebhookPersistence
from .scheduling import LeaseRenewalScheduler
from .server import WebhookServer

log = structlog.get_logger()

SHUTDOWN_TIMEOUT = 15.0
RECONCILE_INTERVAL = 60.0


class MissingTokenError(RuntimeError):
    pass


class WebhookService:
    """
    Main service process: owns the manager and its collaborators.

    The OAuth token is read from the environment variable named in
    ``auth.token_env``; refreshing re-reads it, so an external process can
    rotate it.
    """

    def __init__(self, config: ServiceConfig, persistence: WebhookPersistence | None = None):
        self._config = config
        self._metrics = MetricsCollector()
        self._scheduler = (
            LeaseRenewalScheduler(
                run_interval=config.renewal.run_interval_seconds,
                renewal_window=config.renewal.renewal_window_seconds,
            )
            if config.renewal.enabled
            else None
        )
        self._manager = WebhookManager(
            config.webhooks,
            get_oauth_token=self._get_token,
            refresh_oauth_token=self._refresh_token,
            persistence=persistence or MemoryWebhookPersistence(),
            renewal_scheduler=self._scheduler,
            metrics=self._metrics if config.metrics.enabled else None,
        )
        self._server = WebhookServer(
            self._manager,
            host=config.server.host,
            port=config.server.port,
            metrics=self._metrics,
        )
        self._running = False
        self._shutdown_event = asyncio.Event()

    @property
    def manager(self) -> WebhookManager:
        return self._manager

    async def _get_token(self, user_id: str | None) -> str:
        # One token for app- and user-scoped topics alike.
        token = self._config.auth.token
        if not token:
            raise MissingTokenError(f"Environment variable {self._config.auth.token_env} is not set")
        return token

    async def _refresh_token(self, old_token: str) -> str:
        log.warning("service.token_refresh", env=self._config.auth.token_env)
        return await self._get_token(None)

    async def start(self) -> None:
        """Start the server first so the hub's verification callbacks can land."""
        log.info("service.starting", subscriptions=len(self._config.subscriptions))

        await self._server.start()
        log.info(
            "service.server_started",
            host=self._config.server.host,
            port=self._config.server.port,
        )
        await self._manager.init()

        for sub in self._config.subscriptions:
            options = WebhookOptions(lease_seconds=sub.lease_seconds)
            try:
                webhook_id = await self._manager.subscribe(sub.type, sub.params, options)
                log.info("service.subscription_requested", webhook_id=webhook_id)
            except Exception as exc:
                log.error("service.subscription_failed", type=sub.type.value, error=str(exc))

        self._running = True
        log.info("service.started")

    async def stop(self) -> None:
        """Graceful shutdown: optionally unsubscribe, then stop server and manager."""
        if not self._running:
            return
        self._running = False
        log.info("service.stopping")

        if self._config.unsubscribe_on_shutdown:
            remaining = await self._manager.unsubscribe_from_all(timeout=SHUTDOWN_TIMEOUT / 2)
            if remaining:
                log.warning("service.unconfirmed_unsubscribes", count=len(remaining))

        await self._server.stop()
        await self._manager.destroy()
        log.info("service.stopped")

    async def run_forever(self) -> None:
        """Run until shutdown signal."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._shutdown_event.set)

        await self.start()

        # Periodic pending-subscription cleanup
        try:
            while not self._shutdown_event.is_set():
                await self._manager.reconcile_pending()
                await self._manager.update_gauges()
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(), timeout=RECONCILE_INTERVAL
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await asyncio.wait_for(self.stop(), timeout=SHUTDOWN_TIMEOUT)
