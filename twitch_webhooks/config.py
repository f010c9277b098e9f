"""
Configuration loading and validation.

``WebhookManagerConfig`` holds the manager's own settings. ``ServiceConfig``
wraps it with everything the standalone service needs and is loaded from a
YAML file. Tokens are read from environment variables, never from the file.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from .persistence import MAX_LEASE_SECONDS
from .topics import WebhookType

TWITCH_HUB_URL = "https://api.twitch.tv/helix/webhooks/hub"


class WebhookManagerConfig(BaseModel):
    # Public origin the hub calls back to, e.g. https://example.com
    hostname: str
    client_id: str
    base_path: str = "/webhooks"
    hub_url: str = TWITCH_HUB_URL
    request_timeout_seconds: float = 10.0
    verify_tls: bool = True
    pending_timeout_seconds: float = 300.0

    @field_validator("hostname")
    @classmethod
    def _check_hostname(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("hostname must include the scheme, e.g. https://example.com")
        return v.rstrip("/")

    @field_validator("base_path")
    @classmethod
    def _check_base_path(cls, v: str) -> str:
        v = "/" + v.strip("/")
        return "" if v == "/" else v


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080


class AuthConfig(BaseModel):
    token_env: str = "TWITCH_OAUTH_TOKEN"

    @property
    def token(self) -> str | None:
        return os.environ.get(self.token_env)


class RenewalConfig(BaseModel):
    enabled: bool = True
    run_interval_seconds: float = 60.0
    renewal_window_seconds: float = 3600.0


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class MetricsConfig(BaseModel):
    enabled: bool = True


class SubscriptionConfig(BaseModel):
    type: WebhookType
    params: dict[str, str] = Field(default_factory=dict)
    lease_seconds: int = Field(default=MAX_LEASE_SECONDS, ge=0, le=MAX_LEASE_SECONDS)


class ServiceConfig(BaseModel):
    webhooks: WebhookManagerConfig
    server: ServerConfig = Field(default_factory=ServerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    renewal: RenewalConfig = Field(default_factory=RenewalConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    subscriptions: list[SubscriptionConfig] = Field(default_factory=list)
    unsubscribe_on_shutdown: bool = False


def load_config(path: str | Path) -> ServiceConfig:
    """Load and validate service configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return ServiceConfig.model_validate(raw)
