"""
Error types raised by the webhook manager and its collaborators.

Caller-invoked operations (subscribe, unsubscribe, resubscribe) raise these
directly. Failures discovered while handling an inbound callback have no
caller to raise to, so the manager delivers them as ``ErrorEvent``s instead.
"""

from __future__ import annotations

import json
from typing import Any

import httpx


class WebhookError(Exception):
    """Base class for all errors raised by this package."""


class ValidationError(WebhookError):
    """Missing or invalid subscription parameters."""


class NotFoundError(WebhookError):
    """An operation referenced a webhook id that is not persisted."""

    def __init__(self, webhook_id: str):
        super().__init__(f"Webhook with id {webhook_id} could not be found")
        self.webhook_id = webhook_id


class UnknownWebhookError(NotFoundError):
    """An inbound callback referenced a webhook id that is not persisted."""


class DuplicateWebhookError(WebhookError):
    """``persist_webhook`` was called for an id that already exists."""

    def __init__(self, webhook_id: str):
        super().__init__(f"Webhook with id {webhook_id} already exists")
        self.webhook_id = webhook_id


class SignatureError(WebhookError):
    """Inbound notification failed X-Hub-Signature verification."""


class SubscriptionDeniedError(WebhookError):
    """The hub denied a subscription request."""

    def __init__(self, webhook_id: str, reason: str):
        super().__init__(f"Subscription {webhook_id} denied: {reason}")
        self.webhook_id = webhook_id
        self.reason = reason


class PendingExpiredError(WebhookError):
    """A pending subscription was never verified and has been dropped."""

    def __init__(self, webhook_id: str):
        super().__init__(f"Subscription {webhook_id} was never verified by the hub")
        self.webhook_id = webhook_id


class HubRequestError(WebhookError):
    """The hub rejected a subscribe/unsubscribe request."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class HubBadRequestError(HubRequestError):
    pass


class HubUnauthorizedError(HubRequestError):
    pass


class HubRateLimitError(HubRequestError):
    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
        reset_at: float | None = None,
    ):
        super().__init__(message, status_code, body)
        self.reset_at = reset_at


class HubServerError(HubRequestError):
    pass


class HubConnectionError(HubRequestError):
    """The hub could not be reached (connect error or timeout)."""


def _error_message(body: str) -> str | None:
    # Helix errors look like {"error": "Bad Request", "status": 400, "message": "..."}
    try:
        parsed: Any = json.loads(body)
    except ValueError:
        return None
    if isinstance(parsed, dict):
        message = parsed.get("message") or parsed.get("error")
        if message:
            return str(message)
    return None


def create_error_from_response(response: httpx.Response) -> HubRequestError:
    """Build the typed error for a non-2xx hub response."""
    status = response.status_code
    body = response.text
    detail = _error_message(body) or body or response.reason_phrase
    message = f"Hub request failed with status {status}: {detail}"

    if status == 400:
        return HubBadRequestError(message, status, body)
    if status == 401:
        return HubUnauthorizedError(message, status, body)
    if status == 429:
        reset_at: float | None = None
        reset = response.headers.get("Ratelimit-Reset")
        if reset is not None:
            try:
                reset_at = float(reset)
            except ValueError:
                reset_at = None
        return HubRateLimitError(message, status, body, reset_at=reset_at)
    if status >= 500:
        return HubServerError(message, status, body)
    return HubRequestError(message, status, body)
