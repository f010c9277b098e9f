"""
Shared fixtures for webhook tests.
"""

import asyncio
import json
import random
from datetime import datetime, timezone
from urllib.parse import urlencode

import httpx
import pytest
import uvicorn

from twitch_webhooks.config import WebhookManagerConfig
from twitch_webhooks.hub import HubClient
from twitch_webhooks.manager import WebhookManager
from twitch_webhooks.metrics import MetricsCollector
from twitch_webhooks.persistence import WebhookRecord
from twitch_webhooks.signature import InboundRequest, compute_signature
from twitch_webhooks.topics import params_from_webhook_id, topic_href

from .mock_hub import create_hub_app

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeHub:
    """httpx transport handler that records hub requests and replays statuses."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.statuses: list[int] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 202
        if status >= 400:
            return httpx.Response(
                status,
                json={"error": "Error", "status": status, "message": f"hub said {status}"},
            )
        return httpx.Response(status)

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


class Tokens:
    def __init__(self) -> None:
        self.requested: list[str | None] = []
        self.refreshed: list[str] = []

    async def get(self, user_id: str | None) -> str:
        self.requested.append(user_id)
        return "token-1"

    async def refresh(self, old_token: str) -> str:
        self.refreshed.append(old_token)
        return "token-2"


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def config():
    return WebhookManagerConfig(hostname="https://example.com", client_id="client-123")


@pytest.fixture
def fake_hub():
    return FakeHub()


@pytest.fixture
def tokens():
    return Tokens()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def hub_client(config, fake_hub, tokens, metrics):
    return HubClient(
        hub_url=config.hub_url,
        client_id=config.client_id,
        hostname=config.hostname,
        base_path=config.base_path,
        get_oauth_token=tokens.get,
        refresh_oauth_token=tokens.refresh,
        metrics=metrics,
        transport=fake_hub.transport(),
    )


@pytest.fixture
async def manager(config, tokens, hub_client, clock, metrics):
    m = WebhookManager(
        config,
        tokens.get,
        tokens.refresh,
        hub_client=hub_client,
        clock=clock,
        metrics=metrics,
    )
    yield m
    await m.destroy()


def verification_query(
    webhook_id: str,
    mode: str | None = "subscribe",
    challenge: str = "challenge-token",
    **extra: object,
) -> str:
    """Query string of a hub verification GET for ``webhook_id``."""
    webhook_type, params = params_from_webhook_id(webhook_id)
    query = {"hub.topic": topic_href(webhook_type, params), "hub.challenge": challenge}
    if mode is not None:
        query["hub.mode"] = mode
    query.update({f"hub.{k}": str(v) for k, v in extra.items()})
    return urlencode(query)


def notification_request(webhook: WebhookRecord, body: bytes, secret: str | None = None) -> InboundRequest:
    """A signed push notification for ``webhook``."""
    segment, _, query = webhook.id.partition("?")
    signature = compute_signature(secret or webhook.secret, body)
    return InboundRequest(
        method="POST",
        path=f"/webhooks/{segment}/{segment}",
        query_string=query,
        headers={"X-Hub-Signature": f"sha256={signature}", "Content-Type": "application/json"},
        body=body,
    )


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


def pick_port():
    return random.randint(19000, 19999)


@pytest.fixture
async def hub_server():
    port = pick_port()
    app = create_hub_app()
    srv = _UvicornServer(app, "127.0.0.1", port)
    await srv.start()
    yield app, f"http://127.0.0.1:{port}"
    await srv.stop()
