"""
Webhook records and the persistence contract.

The manager is the only writer. Storage itself is pluggable: implement
``WebhookPersistence`` for a real store. ``MemoryWebhookPersistence`` keeps
everything in a dict and is the default.
"""

from __future__ import annotations

import abc
import copy
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import BaseModel, Field, field_validator

from .errors import DuplicateWebhookError
from .topics import WebhookType, topic_href, webhook_id

MAX_LEASE_SECONDS = 864000
MAX_SECRET_LENGTH = 200


def generate_secret() -> str:
    # 90 random bytes -> 180 hex characters, under Twitch's 200 character cap.
    return secrets.token_hex(90)


class WebhookOptions(BaseModel):
    """Per-subscription options supplied by the caller."""

    lease_seconds: int = Field(default=MAX_LEASE_SECONDS, ge=0, le=MAX_LEASE_SECONDS)
    secret: str | None = None

    @field_validator("secret")
    @classmethod
    def _check_secret(cls, v: str | None) -> str | None:
        if v is not None and not 0 < len(v) <= MAX_SECRET_LENGTH:
            raise ValueError(f"secret must be 1..{MAX_SECRET_LENGTH} characters")
        return v


@dataclass
class WebhookRecord:
    """A persisted subscription. ``secret`` cannot be reassigned."""

    id: str
    type: WebhookType
    href: str
    secret: str = field(repr=False)
    lease_seconds: int
    subscribed: bool = False
    subscription_start: datetime | None = None
    subscription_end: datetime | None = None
    associated_user: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "secret" and "secret" in self.__dict__:
            raise AttributeError("webhook secret is immutable")
        super().__setattr__(name, value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "href": self.href,
            "secret": self.secret,
            "lease_seconds": self.lease_seconds,
            "subscribed": self.subscribed,
            "subscription_start": _iso(self.subscription_start),
            "subscription_end": _iso(self.subscription_end),
            "associated_user": self.associated_user,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WebhookRecord":
        return cls(
            id=data["id"],
            type=WebhookType(data["type"]),
            href=data["href"],
            secret=data["secret"],
            lease_seconds=int(data["lease_seconds"]),
            subscribed=bool(data.get("subscribed", False)),
            subscription_start=_parse_iso(data.get("subscription_start")),
            subscription_end=_parse_iso(data.get("subscription_end")),
            associated_user=data.get("associated_user"),
            created_at=_parse_iso(data.get("created_at")) or datetime.now(timezone.utc),
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def create_webhook_record(
    webhook_type: WebhookType,
    params: Mapping[str, str],
    options: WebhookOptions,
    associated_user: str | None = None,
) -> WebhookRecord:
    return WebhookRecord(
        id=webhook_id(webhook_type, params),
        type=webhook_type,
        href=topic_href(webhook_type, params),
        secret=options.secret or generate_secret(),
        lease_seconds=options.lease_seconds,
        associated_user=associated_user,
    )


class WebhookPersistence(abc.ABC):
    """Async key-value store for webhook records, keyed by id."""

    @abc.abstractmethod
    async def get_webhook_by_id(self, webhook_id: str) -> WebhookRecord | None:
        """Return a copy of the record, or None."""

    @abc.abstractmethod
    async def save_webhook(self, webhook: WebhookRecord) -> None:
        """Overwrite an existing record."""

    @abc.abstractmethod
    async def persist_webhook(self, webhook: WebhookRecord) -> None:
        """Insert a new record. Raises ``DuplicateWebhookError`` if the id exists."""

    @abc.abstractmethod
    async def delete_webhook(self, webhook_id: str) -> None:
        """Remove the record if present."""

    @abc.abstractmethod
    async def get_all_webhooks(self) -> list[WebhookRecord]:
        """Return copies of every stored record."""

    async def destroy(self) -> None:
        """Release any resources held by the store."""


class MemoryWebhookPersistence(WebhookPersistence):
    """In-process store. Returns copies so stored state only changes via save."""

    def __init__(self) -> None:
        self._webhooks: dict[str, WebhookRecord] = {}

    async def get_webhook_by_id(self, webhook_id: str) -> WebhookRecord | None:
        webhook = self._webhooks.get(webhook_id)
        return copy.copy(webhook) if webhook else None

    async def save_webhook(self, webhook: WebhookRecord) -> None:
        self._webhooks[webhook.id] = copy.copy(webhook)

    async def persist_webhook(self, webhook: WebhookRecord) -> None:
        if webhook.id in self._webhooks:
            raise DuplicateWebhookError(webhook.id)
        self._webhooks[webhook.id] = copy.copy(webhook)

    async def delete_webhook(self, webhook_id: str) -> None:
        self._webhooks.pop(webhook_id, None)

    async def get_all_webhooks(self) -> list[WebhookRecord]:
        return [copy.copy(w) for w in self._webhooks.values()]

    async def destroy(self) -> None:
        self._webhooks.clear()
