"""Tests for the standalone service."""

import asyncio

import pytest

from twitch_webhooks.config import ServiceConfig
from twitch_webhooks.events import SubscribedEvent
from twitch_webhooks.service import MissingTokenError, WebhookService

from .conftest import pick_port
from .mock_hub import VALID_TOKEN


def _config(hub_url: str, port: int, **overrides) -> ServiceConfig:
    raw = {
        "webhooks": {
            "hostname": f"http://127.0.0.1:{port}",
            "client_id": "client-123",
            "hub_url": f"{hub_url}/hub",
        },
        "server": {"host": "127.0.0.1", "port": port},
        "auth": {"token_env": "TEST_TWITCH_TOKEN"},
        "subscriptions": [{"type": "stream_changed", "params": {"user_id": "99"}}],
    }
    raw.update(overrides)
    return ServiceConfig.model_validate(raw)


async def test_declared_subscriptions_and_shutdown_unsubscribe(hub_server, monkeypatch):
    hub_app, hub_url = hub_server
    monkeypatch.setenv("TEST_TWITCH_TOKEN", VALID_TOKEN)
    service = WebhookService(_config(hub_url, pick_port(), unsubscribe_on_shutdown=True))

    subscribed = []
    service.manager.on(SubscribedEvent, subscribed.append)
    await service.start()
    try:
        for _ in range(100):
            if subscribed:
                break
            await asyncio.sleep(0.05)
        assert [e.webhook_id for e in subscribed] == ["stream_changed?user_id=99"]
        assert len(hub_app.state.subscriptions) == 1
    finally:
        await service.stop()

    assert hub_app.state.subscriptions == {}


async def test_missing_token_is_reported(monkeypatch):
    monkeypatch.delenv("TEST_TWITCH_TOKEN", raising=False)
    service = WebhookService(_config("http://127.0.0.1:1", pick_port()))
    with pytest.raises(MissingTokenError):
        await service._get_token(None)
