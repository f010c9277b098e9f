"""Tests for configuration loading."""

import pytest
import yaml
from pydantic import ValidationError

from twitch_webhooks.config import (
    TWITCH_HUB_URL,
    AuthConfig,
    ServiceConfig,
    WebhookManagerConfig,
    load_config,
)
from twitch_webhooks.topics import WebhookType


def test_load_config_from_yaml(tmp_path):
    config_data = {
        "webhooks": {"hostname": "https://hooks.example.com/", "client_id": "abc"},
        "server": {"port": 9000},
        "subscriptions": [
            {"type": "stream_changed", "params": {"user_id": "123"}, "lease_seconds": 3600}
        ],
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(config_data))

    cfg = load_config(path)
    assert cfg.webhooks.hostname == "https://hooks.example.com"
    assert cfg.webhooks.hub_url == TWITCH_HUB_URL
    assert cfg.server.port == 9000
    assert cfg.subscriptions[0].type is WebhookType.STREAM_CHANGED
    assert cfg.subscriptions[0].lease_seconds == 3600


def test_manager_config_defaults():
    cfg = WebhookManagerConfig(hostname="https://example.com", client_id="abc")
    assert cfg.base_path == "/webhooks"
    assert cfg.request_timeout_seconds == 10.0
    assert cfg.pending_timeout_seconds == 300.0


def test_required_fields():
    with pytest.raises(ValidationError):
        WebhookManagerConfig(hostname="https://example.com")
    with pytest.raises(ValidationError):
        ServiceConfig.model_validate({})


def test_hostname_needs_scheme():
    with pytest.raises(ValidationError):
        WebhookManagerConfig(hostname="example.com", client_id="abc")


@pytest.mark.parametrize("raw, expected", [("hooks", "/hooks"), ("/a/b/", "/a/b"), ("/", "")])
def test_base_path_normalized(raw, expected):
    cfg = WebhookManagerConfig(hostname="https://example.com", client_id="abc", base_path=raw)
    assert cfg.base_path == expected


def test_lease_bounds():
    with pytest.raises(ValidationError):
        ServiceConfig.model_validate(
            {
                "webhooks": {"hostname": "https://example.com", "client_id": "abc"},
                "subscriptions": [{"type": "stream_changed", "lease_seconds": 864001}],
            }
        )


def test_token_from_env(monkeypatch):
    monkeypatch.setenv("MY_TOKEN", "tok")
    assert AuthConfig(token_env="MY_TOKEN").token == "tok"


def test_load_config_file_not_found():
    with pytest.raises(FileNotFoundError):
        load_config("/nonexistent/path.yaml")
