"""
Outbound requests to the webhook hub.

Subscribe and unsubscribe share one request shape. The only retry is
semantic: a 401 refreshes the OAuth token and repeats the request exactly
once. There are no transport-level retries.
"""

from __future__ import annotations

import json
from typing import Awaitable, Callable

import httpx
import structlog

from .errors import HubConnectionError, create_error_from_response
from .metrics import MetricsCollector
from .persistence import WebhookRecord
from .topics import callback_url

log = structlog.get_logger()

GetOAuthToken = Callable[[str | None], Awaitable[str]]
RefreshOAuthToken = Callable[[str], Awaitable[str]]


class HubClient:
    """Issues hub.mode=subscribe|unsubscribe requests for webhook records."""

    def __init__(
        self,
        hub_url: str,
        client_id: str,
        hostname: str,
        base_path: str,
        get_oauth_token: GetOAuthToken,
        refresh_oauth_token: RefreshOAuthToken,
        request_timeout: float = 10.0,
        verify_tls: bool = True,
        metrics: MetricsCollector | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._hub_url = hub_url
        self._client_id = client_id
        self._hostname = hostname
        self._base_path = base_path
        self._get_oauth_token = get_oauth_token
        self._refresh_oauth_token = refresh_oauth_token
        self._request_timeout = request_timeout
        self._verify_tls = verify_tls
        self._metrics = metrics
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def open(self) -> None:
        """Create the shared HTTP client (idempotent)."""
        if self._client:
            return
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._request_timeout),
            verify=self._verify_tls,
            transport=self._transport or httpx.AsyncHTTPTransport(retries=0, verify=self._verify_tls),
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def hub_params(self, webhook: WebhookRecord, subscribe: bool) -> dict:
        """Build the JSON body of a hub request for ``webhook``."""
        return {
            "hub.callback": callback_url(self._hostname, self._base_path, webhook.id),
            "hub.mode": "subscribe" if subscribe else "unsubscribe",
            "hub.topic": webhook.href,
            "hub.lease_seconds": webhook.lease_seconds,
            "hub.secret": webhook.secret,
        }

    async def change_subscription(
        self,
        webhook: WebhookRecord,
        subscribe: bool,
        user_id: str | None = None,
    ) -> None:
        """Send the hub request; raise ``HubRequestError`` on failure."""
        if self._client is None:
            await self.open()

        params = self.hub_params(webhook, subscribe)
        body = json.dumps(params).encode("utf-8")
        mode = params["hub.mode"]
        log.debug("hub.request", webhook_id=webhook.id, mode=mode, user_id=user_id)

        token = await self._get_oauth_token(user_id)
        resp = await self._post(webhook, body, token, mode)

        if resp.status_code == 401:
            log.warning("hub.unauthorized_retry", webhook_id=webhook.id, mode=mode)
            if self._metrics:
                self._metrics.inc("hub_token_refreshes_total")
            token = await self._refresh_oauth_token(token)
            resp = await self._post(webhook, body, token, mode)

        if resp.is_success:
            log.info("hub.request_accepted", webhook_id=webhook.id, mode=mode)
            return

        if self._metrics:
            self._metrics.inc("hub_request_errors_total", status=resp.status_code)
        log.error(
            "hub.request_failed",
            webhook_id=webhook.id,
            mode=mode,
            status=resp.status_code,
        )
        raise create_error_from_response(resp)

    async def _post(self, webhook: WebhookRecord, body: bytes, token: str, mode: str) -> httpx.Response:
        assert self._client
        headers = {
            "Authorization": f"Bearer {token}",
            "Client-ID": self._client_id,
            "Content-Type": "application/json",
        }
        if self._metrics:
            self._metrics.inc("hub_requests_total", mode=mode)
        try:
            return await self._client.post(self._hub_url, content=body, headers=headers)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            if self._metrics:
                self._metrics.inc("hub_request_errors_total", status="connection")
            log.error("hub.unreachable", webhook_id=webhook.id, error=str(exc))
            raise HubConnectionError(f"Hub request failed: {exc}") from exc
