"""
Topic types and webhook identity.

A webhook id is ``<segment>?<canonical query>``: the topic type's path
segment followed by the topic parameters sorted by key and urlencoded.
The id doubles as the last path segment (plus query) of the callback URL, so
an inbound request maps back to its record without a lookup table.
"""

from __future__ import annotations

import enum
from typing import Mapping
from urllib.parse import parse_qsl, urlencode, urlsplit

HELIX_URL = "https://api.twitch.tv/helix"


class WebhookType(str, enum.Enum):
    USER_FOLLOWS = "user_follows"
    STREAM_CHANGED = "stream_changed"
    USER_CHANGED = "user_changed"
    EXTENSION_TRANSACTION_CREATED = "extension_transaction_created"
    MODERATOR_CHANGE = "moderator_change"
    CHANNEL_BAN_CHANGE = "channel_ban_change"
    SUBSCRIPTION = "subscription"

    @property
    def segment(self) -> str:
        return self.value

    @property
    def topic_url(self) -> str:
        return f"{HELIX_URL}{_TOPIC_PATHS[self]}"


_TOPIC_PATHS: dict[WebhookType, str] = {
    WebhookType.USER_FOLLOWS: "/users/follows",
    WebhookType.STREAM_CHANGED: "/streams",
    WebhookType.USER_CHANGED: "/users",
    WebhookType.EXTENSION_TRANSACTION_CREATED: "/extensions/transactions",
    WebhookType.MODERATOR_CHANGE: "/moderation/moderators/events",
    WebhookType.CHANNEL_BAN_CHANGE: "/moderation/banned/events",
    WebhookType.SUBSCRIPTION: "/subscriptions/events",
}


def canonical_query(params: Mapping[str, str]) -> str:
    """Urlencode params sorted by key so insertion order never matters."""
    return urlencode(sorted((str(k), str(v)) for k, v in params.items()))


def webhook_id(webhook_type: WebhookType, params: Mapping[str, str]) -> str:
    return f"{webhook_type.segment}?{canonical_query(params)}"


def webhook_id_from_query(webhook_type: WebhookType, query: str) -> str:
    """Derive the id from a raw query string (leading ``?`` optional)."""
    return webhook_id(webhook_type, dict(parse_qsl(query.lstrip("?"), keep_blank_values=True)))


def params_from_webhook_id(webhook_id_: str) -> tuple[WebhookType, dict[str, str]]:
    """Inverse of :func:`webhook_id`."""
    segment, sep, query = webhook_id_.partition("?")
    if not sep:
        raise ValueError(f"Not a webhook id: {webhook_id_!r}")
    webhook_type = WebhookType(segment)
    return webhook_type, dict(parse_qsl(query, keep_blank_values=True))


def topic_href(webhook_type: WebhookType, params: Mapping[str, str]) -> str:
    return f"{webhook_type.topic_url}?{canonical_query(params)}"


def webhook_id_from_topic(webhook_type: WebhookType, topic: str) -> str:
    """Derive the id from a ``hub.topic`` URL echoed back by the hub."""
    return webhook_id_from_query(webhook_type, urlsplit(topic).query)


def endpoint_path(base_path: str, webhook_type: WebhookType) -> str:
    return f"{base_path.rstrip('/')}/{webhook_type.segment}"


def callback_url(hostname: str, base_path: str, webhook_id_: str) -> str:
    webhook_type, _ = params_from_webhook_id(webhook_id_)
    return f"{hostname.rstrip('/')}{endpoint_path(base_path, webhook_type)}/{webhook_id_}"
