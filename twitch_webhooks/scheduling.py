"""
Lease renewal scheduling.

The manager registers verified webhooks with a ``RenewalScheduler`` and
deregisters them on unsubscribe; the scheduler calls back through the narrow
``Resubscriber`` interface when a lease needs renewing. The manager drives
``run()`` from a timer at the scheduler's ``run_interval``.
"""

from __future__ import annotations

import abc
import asyncio
import math
from datetime import datetime, timedelta, timezone
from typing import Protocol

import structlog

from .persistence import WebhookRecord

log = structlog.get_logger()


class Resubscriber(Protocol):
    async def resubscribe(self, webhook_id: str) -> None: ...


class RenewalScheduler(abc.ABC):
    """Contract between the manager and whatever decides when to renew."""

    def __init__(self) -> None:
        self._resubscriber: Resubscriber | None = None

    @property
    def run_interval(self) -> float:
        """Seconds between ``run()`` calls; ``math.inf`` disables the timer."""
        return math.inf

    def bind(self, resubscriber: Resubscriber) -> None:
        """Set the object renewals are delegated to."""
        self._resubscriber = resubscriber

    @abc.abstractmethod
    def add_to_scheduler(self, webhook: WebhookRecord) -> None:
        """Start tracking a verified webhook."""

    @abc.abstractmethod
    def remove_from_scheduler(self, webhook_id: str) -> None:
        """Stop tracking ``webhook_id``; unknown ids are ignored."""

    @abc.abstractmethod
    async def run(self) -> None:
        """Renew whatever is due. Called every ``run_interval`` seconds."""

    async def destroy(self) -> None:
        """Release the scheduler; it must not be used afterwards."""
        self._resubscriber = None


class LeaseRenewalScheduler(RenewalScheduler):
    """Renews every tracked webhook whose lease ends within ``renewal_window``."""

    def __init__(self, run_interval: float = 60.0, renewal_window: float = 3600.0):
        super().__init__()
        self._run_interval = run_interval
        self._renewal_window = timedelta(seconds=renewal_window)
        self._webhooks: dict[str, WebhookRecord] = {}

    @property
    def run_interval(self) -> float:
        return self._run_interval

    def tracked_ids(self) -> list[str]:
        return sorted(self._webhooks)

    def add_to_scheduler(self, webhook: WebhookRecord) -> None:
        self._webhooks[webhook.id] = webhook

    def remove_from_scheduler(self, webhook_id: str) -> None:
        self._webhooks.pop(webhook_id, None)

    def due(self, now: datetime | None = None) -> list[str]:
        """Ids of tracked webhooks whose lease ends within the renewal window."""
        now = now or datetime.now(timezone.utc)
        return [
            webhook.id
            for webhook in self._webhooks.values()
            if webhook.subscription_end is None
            or webhook.subscription_end - now <= self._renewal_window
        ]

    async def run(self) -> None:
        if self._resubscriber is None:
            log.warning("scheduler.unbound")
            return
        due = self.due()
        if not due:
            return
        log.info("scheduler.renewing", count=len(due))
        results = await asyncio.gather(
            *(self._resubscriber.resubscribe(webhook_id) for webhook_id in due),
            return_exceptions=True,
        )
        for webhook_id, result in zip(due, results):
            if isinstance(result, Exception):
                log.error("scheduler.renew_failed", webhook_id=webhook_id, error=str(result))

    async def destroy(self) -> None:
        self._webhooks.clear()
        await super().destroy()
