"""Tests for the aiohttp callback server."""

import json

import pytest
from aiohttp.test_utils import TestClient, TestServer

from twitch_webhooks.events import MessageEvent, SubscribedEvent
from twitch_webhooks.server import WebhookServer
from twitch_webhooks.signature import compute_signature

from .conftest import verification_query


@pytest.fixture
async def client(manager, metrics):
    server = WebhookServer(manager, metrics=metrics)
    async with TestClient(TestServer(server.create_app())) as c:
        yield c


async def test_verification_echoes_challenge(manager, client):
    seen = []
    manager.on(SubscribedEvent, seen.append)
    wid = await manager.add_stream_changed_subscription(user_id="123")

    resp = await client.get(f"/webhooks/stream_changed/stream_changed?{verification_query(wid)}")
    assert resp.status == 200
    assert await resp.text() == "challenge-token"
    assert [e.webhook_id for e in seen] == [wid]


async def test_signed_notification_is_delivered(manager, client):
    messages = []
    manager.on(MessageEvent, messages.append)
    wid = await manager.add_stream_changed_subscription(user_id="123")
    webhook = await manager.persistence.get_webhook_by_id(wid)

    body = json.dumps({"data": [{"id": "1", "type": "live"}]}).encode()
    resp = await client.post(
        "/webhooks/stream_changed/stream_changed?user_id=123",
        data=body,
        headers={"X-Hub-Signature": f"sha256={compute_signature(webhook.secret, body)}"},
    )
    assert resp.status == 200
    assert len(messages) == 1
    assert messages[0].payload.data["id"] == "1"


async def test_bad_signature_is_rejected(manager, client):
    messages = []
    manager.on(MessageEvent, messages.append)
    await manager.add_stream_changed_subscription(user_id="123")

    resp = await client.post(
        "/webhooks/stream_changed/stream_changed?user_id=123",
        data=b'{"data": []}',
        headers={"X-Hub-Signature": "sha256=" + "0" * 64},
    )
    assert resp.status == 400
    assert messages == []


async def test_unknown_webhook_is_404(client):
    resp = await client.post(
        "/webhooks/stream_changed/stream_changed?user_id=999",
        data=b"{}",
        headers={"X-Hub-Signature": "sha256=" + "0" * 64},
    )
    assert resp.status == 404


async def test_other_methods_not_routed(client):
    resp = await client.put("/webhooks/stream_changed/stream_changed?user_id=1")
    assert resp.status == 405


async def test_health_reports_subscription_counts(manager, client):
    await manager.add_stream_changed_subscription(user_id="1")
    resp = await client.get("/health")
    assert resp.status == 200
    body = await resp.json()
    assert body["status"] == "healthy"
    assert body["subscriptions"] == {"active": 0, "pending": 1}


async def test_metrics_endpoint(manager, client):
    await manager.add_stream_changed_subscription(user_id="1")
    resp = await client.get("/metrics")
    assert resp.status == 200
    assert 'webhooks_hub_requests_total{mode="subscribe"} 1' in await resp.text()
