"""
Events emitted to application listeners.

The set of events is closed: every notification, confirmation and failure is
one of the dataclasses below. Listeners register for a class and also receive
its subclasses, so ``channel.on(TopicEvent, ...)`` sees every topic-specific
event and ``channel.on(WebhookEvent, ...)`` sees everything.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

import structlog

from .payloads import WebhookPayload
from .topics import WebhookType

log = structlog.get_logger()


@dataclass(frozen=True)
class WebhookEvent:
    pass


@dataclass(frozen=True)
class MessageEvent(WebhookEvent):
    """Any decoded notification, regardless of topic type."""

    webhook_id: str
    payload: WebhookPayload


@dataclass(frozen=True)
class TopicEvent(WebhookEvent):
    """Base of the per-topic notification variants."""

    webhook_id: str
    payload: WebhookPayload


@dataclass(frozen=True)
class UserFollowsEvent(TopicEvent):
    pass


@dataclass(frozen=True)
class StreamChangedEvent(TopicEvent):
    pass


@dataclass(frozen=True)
class UserChangedEvent(TopicEvent):
    pass


@dataclass(frozen=True)
class ExtensionTransactionCreatedEvent(TopicEvent):
    pass


@dataclass(frozen=True)
class ModeratorChangeEvent(TopicEvent):
    pass


@dataclass(frozen=True)
class ChannelBanChangeEvent(TopicEvent):
    pass


@dataclass(frozen=True)
class SubscriptionEvent(TopicEvent):
    pass


@dataclass(frozen=True)
class SubscribedEvent(WebhookEvent):
    webhook_id: str


@dataclass(frozen=True)
class UnsubscribedEvent(WebhookEvent):
    webhook_id: str


@dataclass(frozen=True)
class ErrorEvent(WebhookEvent):
    error: Exception
    webhook_id: str | None = None


_TOPIC_EVENTS: dict[WebhookType, type[TopicEvent]] = {
    WebhookType.USER_FOLLOWS: UserFollowsEvent,
    WebhookType.STREAM_CHANGED: StreamChangedEvent,
    WebhookType.USER_CHANGED: UserChangedEvent,
    WebhookType.EXTENSION_TRANSACTION_CREATED: ExtensionTransactionCreatedEvent,
    WebhookType.MODERATOR_CHANGE: ModeratorChangeEvent,
    WebhookType.CHANNEL_BAN_CHANGE: ChannelBanChangeEvent,
    WebhookType.SUBSCRIPTION: SubscriptionEvent,
}


def topic_event_for(webhook_id: str, payload: WebhookPayload) -> TopicEvent:
    """Build the topic-specific event for a decoded payload."""
    return _TOPIC_EVENTS[payload.type](webhook_id=webhook_id, payload=payload)


E = TypeVar("E", bound=WebhookEvent)
Listener = Callable[[Any], Any]


class EventChannel:
    """
    Synchronous, ordered, in-process event dispatch.

    Listeners run in registration order. A listener that raises is logged and
    skipped; it never affects other listeners or the caller of ``emit``. A
    listener returning a coroutine has it scheduled as a task.
    """

    def __init__(self) -> None:
        self._listeners: dict[type[WebhookEvent], list[Listener]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def on(self, event_type: type[E], listener: Callable[[E], Any]) -> None:
        """Register ``listener`` for ``event_type`` and its subclasses."""
        self._listeners[event_type].append(listener)

    def off(self, event_type: type[E], listener: Callable[[E], Any]) -> None:
        """Remove a listener; unknown listeners are ignored."""
        try:
            self._listeners[event_type].remove(listener)
        except ValueError:
            pass

    def emit(self, event: WebhookEvent) -> None:
        """Deliver ``event`` to every listener of its class or a base class."""
        for event_type in type(event).__mro__:
            for listener in list(self._listeners.get(event_type, ())):
                self._call(listener, event)

    def _call(self, listener: Listener, event: WebhookEvent) -> None:
        try:
            result = listener(event)
        except Exception:
            log.exception("events.listener_error", event_type=type(event).__name__)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("events.listener_task_error", error=repr(exc))
