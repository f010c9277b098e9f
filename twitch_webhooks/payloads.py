"""
Notification payload decoding.

Each topic type has a decoder turning one raw ``data`` element into the value
handed to listeners. The defaults only parse the timestamp fields Helix sends
as RFC 3339 strings; register another decoder to change a topic's shape.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from .topics import WebhookType

Decoder = Callable[[Any], Any]

# Fields holding RFC 3339 timestamps, per topic type. Subscription, moderator
# and ban events nest their details under "event_data".
_TIMESTAMP_FIELDS: dict[WebhookType, tuple[str, ...]] = {
    WebhookType.USER_FOLLOWS: ("followed_at",),
    WebhookType.STREAM_CHANGED: ("started_at",),
    WebhookType.USER_CHANGED: (),
    WebhookType.EXTENSION_TRANSACTION_CREATED: ("timestamp",),
    WebhookType.MODERATOR_CHANGE: ("event_timestamp",),
    WebhookType.CHANNEL_BAN_CHANGE: ("event_timestamp",),
    WebhookType.SUBSCRIPTION: ("event_timestamp",),
}


@dataclass(frozen=True)
class WebhookPayload:
    """One decoded notification. ``data`` is None for a stream-offline push."""

    type: WebhookType
    data: Any
    sub_params: dict[str, str]


def parse_timestamp(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value


def _timestamp_decoder(fields: tuple[str, ...]) -> Decoder:
    def decode(raw: Any) -> Any:
        if not isinstance(raw, dict):
            return raw
        decoded = dict(raw)
        for name in fields:
            if name in decoded:
                decoded[name] = parse_timestamp(decoded[name])
        if isinstance(decoded.get("event_data"), dict):
            decoded["event_data"] = decode(decoded["event_data"])
        return decoded

    return decode


_DECODERS: dict[WebhookType, Decoder] = {
    webhook_type: _timestamp_decoder(fields)
    for webhook_type, fields in _TIMESTAMP_FIELDS.items()
}


def register_decoder(webhook_type: WebhookType, decoder: Decoder) -> None:
    _DECODERS[webhook_type] = decoder


def convert_payload(webhook_type: WebhookType, raw: Any) -> Any:
    if raw is None:
        return None
    return _DECODERS[webhook_type](raw)
