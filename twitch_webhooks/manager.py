"""
Webhook subscription lifecycle.

States: absent -> pending -> subscribed -> (renewing -> subscribed)* -> absent.
A pending record leaves through a denial, a subscribed one through a
confirmed unsubscribe; either way the record is deleted, absence from the
store being the terminal state.

The HTTP layer hands inbound callbacks to ``handle_request`` and writes out
the returned ``WebhookResponse``. Everything listeners need to know about is
emitted on the manager's ``EventChannel``.
"""

from __future__ import annotations

import asyncio
import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping
from urllib.parse import parse_qsl

import structlog

from .config import WebhookManagerConfig
from .errors import (
    DuplicateWebhookError,
    NotFoundError,
    PendingExpiredError,
    SignatureError,
    SubscriptionDeniedError,
    UnknownWebhookError,
    ValidationError,
)
from .events import (
    E,
    ErrorEvent,
    EventChannel,
    MessageEvent,
    SubscribedEvent,
    UnsubscribedEvent,
    topic_event_for,
)
from .hub import GetOAuthToken, HubClient, RefreshOAuthToken
from .metrics import MetricsCollector
from .payloads import WebhookPayload, convert_payload
from .persistence import (
    MAX_LEASE_SECONDS,
    MemoryWebhookPersistence,
    WebhookOptions,
    WebhookPersistence,
    WebhookRecord,
    create_webhook_record,
)
from .scheduling import RenewalScheduler
from .signature import InboundRequest, SignatureVerifier
from .topics import (
    WebhookType,
    params_from_webhook_id,
    webhook_id,
    webhook_id_from_topic,
)

log = structlog.get_logger()

DEFAULT_DENIAL_REASON = "No reason given"


@dataclass
class WebhookResponse:
    """Status, body and headers for the HTTP layer to emit."""

    status: int
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def challenge(cls, challenge: str) -> "WebhookResponse":
        return cls(200, challenge, {"Content-Type": "text/plain"})


class WebhookManager:
    """
    Subscribes to hub topics and handles the hub's callbacks.

    Settings come from ``config``; collaborators are resolved once here.
    ``get_oauth_token(user_id)`` returns a bearer token (an app token when
    ``user_id`` is None) and ``refresh_oauth_token(old_token)`` a fresh one.
    """

    def __init__(
        self,
        config: WebhookManagerConfig,
        get_oauth_token: GetOAuthToken,
        refresh_oauth_token: RefreshOAuthToken,
        persistence: WebhookPersistence | None = None,
        renewal_scheduler: RenewalScheduler | None = None,
        metrics: MetricsCollector | None = None,
        hub_client: HubClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.events = EventChannel()
        self._persistence = persistence or MemoryWebhookPersistence()
        self._scheduler = renewal_scheduler
        self._metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._hub = hub_client or HubClient(
            hub_url=config.hub_url,
            client_id=config.client_id,
            hostname=config.hostname,
            base_path=config.base_path,
            get_oauth_token=get_oauth_token,
            refresh_oauth_token=refresh_oauth_token,
            request_timeout=config.request_timeout_seconds,
            verify_tls=config.verify_tls,
            metrics=metrics,
        )
        self._verifier = SignatureVerifier(self._persistence, metrics)
        self._renewal_task: asyncio.Task | None = None

        if self._scheduler:
            self._scheduler.bind(self)

    @property
    def persistence(self) -> WebhookPersistence:
        return self._persistence

    def on(self, event_type: type[E], listener: Callable[[E], Any]) -> None:
        self.events.on(event_type, listener)

    def off(self, event_type: type[E], listener: Callable[[E], Any]) -> None:
        self.events.off(event_type, listener)

    # --- Lifecycle ---

    async def init(self) -> None:
        """Open the hub client, load verified webhooks into the scheduler, start renewals."""
        await self._hub.open()
        if not self._scheduler:
            return

        webhooks = await self._persistence.get_all_webhooks()
        log.info("manager.scheduler_init", webhooks=len(webhooks))
        for webhook in webhooks:
            if webhook.subscribed:
                self._scheduler.add_to_scheduler(webhook)

        interval = self._scheduler.run_interval
        if interval != math.inf and self._renewal_task is None:
            self._renewal_task = asyncio.create_task(self._renewal_loop(interval))

    async def destroy(self) -> None:
        """Stop renewals and tear down collaborators. In-flight hub requests are not cancelled."""
        log.info("manager.destroying")
        if self._renewal_task:
            self._renewal_task.cancel()
            try:
                await self._renewal_task
            except asyncio.CancelledError:
                pass
            self._renewal_task = None

        if self._scheduler:
            await self._scheduler.destroy()
            self._scheduler = None

        await self._persistence.destroy()
        await self._hub.close()

    async def _renewal_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self._scheduler is None:
                return
            try:
                await self._scheduler.run()
            except Exception:
                log.exception("manager.renewal_run_failed")

    # --- Subscribing ---

    async def subscribe(
        self,
        webhook_type: WebhookType,
        params: Mapping[str, str],
        options: WebhookOptions | None = None,
        associated_user: str | None = None,
    ) -> str:
        """
        Subscribe to a topic and return the webhook id.

        Subscribing to a topic that already has a record returns its id
        without contacting the hub, unless the record is a pending one older
        than ``pending_timeout_seconds``: that subscribe is re-issued.
        """
        options = options or WebhookOptions()
        existing = await self._persistence.get_webhook_by_id(webhook_id(webhook_type, params))
        if existing:
            if not self._pending_expired(existing):
                log.info("manager.already_subscribed", webhook_id=existing.id, subscribed=existing.subscribed)
                return existing.id
            log.warning("manager.pending_reissued", webhook_id=existing.id)
            existing.created_at = self._clock()
            await self._persistence.save_webhook(existing)
            await self._hub.change_subscription(existing, True, existing.associated_user)
            return existing.id

        webhook = create_webhook_record(webhook_type, params, options, associated_user)
        webhook.created_at = self._clock()
        try:
            await self._persistence.persist_webhook(webhook)
        except DuplicateWebhookError:
            # A concurrent subscribe for the same topic got there first.
            return webhook.id
        log.info("manager.subscribe_requested", webhook_id=webhook.id)
        await self._hub.change_subscription(webhook, True, associated_user)
        return webhook.id

    async def add_user_follows_subscription(
        self,
        options: WebhookOptions | None = None,
        *,
        to_id: str | None = None,
        from_id: str | None = None,
    ) -> str:
        if not to_id and not from_id:
            raise ValidationError("to_id or from_id (or both) must be specified")
        params = {"first": "1"}
        if to_id:
            params["to_id"] = to_id
        if from_id:
            params["from_id"] = from_id
        return await self.subscribe(WebhookType.USER_FOLLOWS, params, options)

    async def add_stream_changed_subscription(
        self, options: WebhookOptions | None = None, *, user_id: str
    ) -> str:
        _require(user_id=user_id)
        return await self.subscribe(WebhookType.STREAM_CHANGED, {"user_id": user_id}, options)

    async def add_user_changed_subscription(
        self, options: WebhookOptions | None = None, *, user_id: str
    ) -> str:
        _require(user_id=user_id)
        return await self.subscribe(WebhookType.USER_CHANGED, {"id": user_id}, options, user_id)

    async def add_extension_transaction_created_subscription(
        self, options: WebhookOptions | None = None, *, extension_id: str
    ) -> str:
        _require(extension_id=extension_id)
        params = {"extension_id": extension_id, "first": "1"}
        return await self.subscribe(WebhookType.EXTENSION_TRANSACTION_CREATED, params, options)

    async def add_moderator_changed_subscription(
        self,
        options: WebhookOptions | None = None,
        *,
        broadcaster_id: str,
        user_id: str | None = None,
    ) -> str:
        _require(broadcaster_id=broadcaster_id)
        params = _optional({"first": "1", "broadcaster_id": broadcaster_id}, user_id=user_id)
        return await self.subscribe(WebhookType.MODERATOR_CHANGE, params, options, broadcaster_id)

    async def add_channel_ban_changed_subscription(
        self,
        options: WebhookOptions | None = None,
        *,
        broadcaster_id: str,
        user_id: str | None = None,
    ) -> str:
        _require(broadcaster_id=broadcaster_id)
        params = _optional({"first": "1", "broadcaster_id": broadcaster_id}, user_id=user_id)
        return await self.subscribe(WebhookType.CHANNEL_BAN_CHANGE, params, options, broadcaster_id)

    async def add_subscription_subscription(
        self,
        options: WebhookOptions | None = None,
        *,
        broadcaster_id: str,
        user_id: str | None = None,
        gifter_id: str | None = None,
        gifter_name: str | None = None,
    ) -> str:
        _require(broadcaster_id=broadcaster_id)
        params = _optional(
            {"broadcaster_id": broadcaster_id, "first": "1"},
            user_id=user_id,
            gifter_id=gifter_id,
            gifter_name=gifter_name,
        )
        return await self.subscribe(WebhookType.SUBSCRIPTION, params, options, broadcaster_id)

    # --- Unsubscribing / renewing ---

    async def unsubscribe(self, webhook_id_: str) -> None:
        """
        Ask the hub to drop a subscription.

        The record stays until the hub's unsubscribe confirmation arrives.
        """
        webhook = await self._persistence.get_webhook_by_id(webhook_id_)
        if webhook is None:
            raise NotFoundError(webhook_id_)
        await self.unsubscribe_webhook(webhook)

    async def unsubscribe_webhook(self, webhook: WebhookRecord) -> None:
        log.info("manager.unsubscribe_requested", webhook_id=webhook.id)
        await self._hub.change_subscription(webhook, False, webhook.associated_user)
        if self._scheduler:
            self._scheduler.remove_from_scheduler(webhook.id)

    async def resubscribe(self, webhook_id_: str) -> None:
        """Renew a lease. Nothing changes locally until the hub confirms."""
        webhook = await self._persistence.get_webhook_by_id(webhook_id_)
        if webhook is None:
            raise NotFoundError(webhook_id_)
        log.info("manager.resubscribe_requested", webhook_id=webhook.id)
        await self._hub.change_subscription(webhook, True, webhook.associated_user)

    async def unsubscribe_from_all(self, timeout: float | None = None) -> set[str]:
        """
        Unsubscribe every persisted webhook and wait for the hub to confirm.

        Webhooks whose unsubscribe request fails are logged, reported as
        ``ErrorEvent``s and not waited for. Returns the ids still unconfirmed
        when ``timeout`` expires (empty when all confirmed).
        """
        webhooks = await self._persistence.get_all_webhooks()
        log.info("manager.unsubscribe_all", webhooks=len(webhooks))
        waiting = {w.id for w in webhooks}
        done = asyncio.Event()

        def on_unsubscribed(event: UnsubscribedEvent) -> None:
            waiting.discard(event.webhook_id)
            if not waiting:
                done.set()

        self.events.on(UnsubscribedEvent, on_unsubscribed)
        try:
            results = await asyncio.gather(
                *(self.unsubscribe_webhook(w) for w in webhooks),
                return_exceptions=True,
            )
            for webhook, result in zip(webhooks, results):
                if isinstance(result, Exception):
                    log.error("manager.unsubscribe_failed", webhook_id=webhook.id, error=str(result))
                    waiting.discard(webhook.id)
                    self.events.emit(ErrorEvent(result, webhook.id))
            if not waiting:
                return set()
            try:
                await asyncio.wait_for(done.wait(), timeout)
            except asyncio.TimeoutError:
                log.warning("manager.unsubscribe_all_timeout", remaining=sorted(waiting))
            return set(waiting)
        finally:
            self.events.off(UnsubscribedEvent, on_unsubscribed)

    async def reconcile_pending(self) -> list[str]:
        """Delete pending webhooks the hub never verified within the timeout."""
        removed = []
        for webhook in await self._persistence.get_all_webhooks():
            if self._pending_expired(webhook):
                await self._persistence.delete_webhook(webhook.id)
                removed.append(webhook.id)
                log.warning("manager.pending_expired", webhook_id=webhook.id)
                self.events.emit(ErrorEvent(PendingExpiredError(webhook.id), webhook.id))
        return removed

    def _pending_expired(self, webhook: WebhookRecord) -> bool:
        if webhook.subscribed:
            return False
        age = self._clock() - webhook.created_at
        return age > timedelta(seconds=self.config.pending_timeout_seconds)

    # --- Inbound callbacks ---

    async def handle_request(self, request: InboundRequest, webhook_type: WebhookType) -> WebhookResponse:
        """Entry point for the HTTP layer: verify, then dispatch by method."""
        method = request.method.upper()
        if method not in ("GET", "POST"):
            return WebhookResponse(405)
        try:
            webhook = await self._verifier.check(request, webhook_type)
        except SignatureError:
            return WebhookResponse(400)
        except UnknownWebhookError:
            return WebhookResponse(404)

        if method == "GET":
            return await self.handle_verification(webhook_type, request.query_string)
        assert webhook is not None
        return self.handle_notification(webhook, request.body)

    async def handle_verification(self, webhook_type: WebhookType, query_string: str) -> WebhookResponse:
        query = dict(parse_qsl(query_string.lstrip("?"), keep_blank_values=True))
        topic = query.get("hub.topic")
        if not topic:
            log.error("manager.verification_missing_topic")
            return WebhookResponse(400)

        webhook = await self._persistence.get_webhook_by_id(webhook_id_from_topic(webhook_type, topic))
        if webhook is None:
            log.error("manager.verification_unknown_webhook", topic=topic)
            return WebhookResponse(404)

        mode = query.get("hub.mode")
        challenge = query.get("hub.challenge", "")

        if not mode or mode == "denied":
            reason = query.get("hub.reason") or DEFAULT_DENIAL_REASON
            log.error("manager.subscription_denied", webhook_id=webhook.id, reason=reason)
            await self._persistence.delete_webhook(webhook.id)
            if self._scheduler:
                self._scheduler.remove_from_scheduler(webhook.id)
            await self.update_gauges()
            self.events.emit(ErrorEvent(SubscriptionDeniedError(webhook.id, reason), webhook.id))
            return WebhookResponse(200)

        if mode == "unsubscribe":
            await self._persistence.delete_webhook(webhook.id)
            if self._scheduler:
                self._scheduler.remove_from_scheduler(webhook.id)
            log.info("manager.unsubscribed", webhook_id=webhook.id)
            await self.update_gauges()
            self.events.emit(UnsubscribedEvent(webhook.id))
            return WebhookResponse.challenge(challenge)

        webhook.subscription_start = self._clock()
        lease = _parse_lease(query.get("hub.lease_seconds"))
        if lease is None:
            lease = webhook.lease_seconds
        webhook.subscription_end = webhook.subscription_start + timedelta(seconds=lease)
        webhook.subscribed = True
        await self._persistence.save_webhook(webhook)
        log.info("manager.subscribed", webhook_id=webhook.id, lease_seconds=lease)
        await self.update_gauges()
        self.events.emit(SubscribedEvent(webhook.id))

        if self._scheduler:
            self._scheduler.add_to_scheduler(webhook)
        return WebhookResponse.challenge(challenge)

    def handle_notification(self, webhook: WebhookRecord, body: bytes) -> WebhookResponse:
        """Decode a verified push and emit it. Verified pushes always get a 200."""
        for payload in self._decode(webhook, body):
            if self._metrics:
                self._metrics.inc("notifications_total", type=payload.type.value)
            log.debug("manager.notification", webhook_id=webhook.id, type=payload.type.value)
            self.events.emit(MessageEvent(webhook.id, payload))
            self.events.emit(topic_event_for(webhook.id, payload))
        return WebhookResponse(200)

    def _decode(self, webhook: WebhookRecord, body: bytes) -> list[WebhookPayload]:
        webhook_type, sub_params = params_from_webhook_id(webhook.id)
        try:
            parsed = json.loads(body.decode("utf-8")) if body else {}
        except ValueError as exc:
            log.error("manager.notification_unparseable", webhook_id=webhook.id)
            self.events.emit(ErrorEvent(exc, webhook.id))
            return []

        items = parsed.get("data") if isinstance(parsed, dict) else None
        if isinstance(items, dict):
            items = [items]
        if not items:
            # An empty data list is how the hub reports e.g. a stream going offline.
            items = [None]
        elif not isinstance(items, list):
            log.error("manager.notification_malformed", webhook_id=webhook.id, data_type=type(items).__name__)
            self.events.emit(ErrorEvent(ValueError(f"Unexpected notification data: {items!r}"), webhook.id))
            return []
        return [
            WebhookPayload(type=webhook_type, data=convert_payload(webhook_type, item), sub_params=sub_params)
            for item in items
        ]

    async def update_gauges(self) -> None:
        if not self._metrics:
            return
        webhooks = await self._persistence.get_all_webhooks()
        subscribed = sum(1 for w in webhooks if w.subscribed)
        self._metrics.set_gauge("subscriptions_active", subscribed)
        self._metrics.set_gauge("subscriptions_pending", len(webhooks) - subscribed)


def _require(**values: str | None) -> None:
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise ValidationError(f"Missing required parameter(s): {', '.join(missing)}")


def _optional(params: dict[str, str], **values: str | None) -> dict[str, str]:
    params.update({name: value for name, value in values.items() if value})
    return params


def _parse_lease(value: str | None) -> int | None:
    if not value:
        return None
    try:
        lease = int(value)
    except ValueError:
        return None
    return lease if 0 <= lease <= MAX_LEASE_SECONDS else None
