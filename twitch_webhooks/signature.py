"""
X-Hub-Signature verification for inbound webhook requests.

Notifications (POST) are signed by the hub with HMAC-SHA256 over the raw
request body, keyed by the subscription's secret. Verification handshakes
(GET) are not signed and pass straight through.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Mapping

import structlog

from .errors import SignatureError, UnknownWebhookError
from .metrics import MetricsCollector
from .persistence import WebhookPersistence, WebhookRecord
from .topics import WebhookType, webhook_id_from_query

log = structlog.get_logger()

SIGNATURE_HEADER = "X-Hub-Signature"
SIGNATURE_ALGORITHM = "sha256"


@dataclass
class InboundRequest:
    """What the HTTP layer hands to the core: method, location and raw body."""

    method: str
    path: str
    query_string: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def parse_signature_header(header: str) -> tuple[str, str]:
    """Split ``sha256=<hex>`` into algorithm and digest."""
    algorithm, sep, digest = header.strip().partition("=")
    if not sep or not digest:
        raise SignatureError("Malformed X-Hub-Signature header")
    return algorithm.lower(), digest.strip().lower()


def verify_signature(secret: str, body: bytes, header: str) -> bool:
    try:
        algorithm, digest = parse_signature_header(header)
    except SignatureError:
        return False
    if algorithm != SIGNATURE_ALGORITHM:
        return False
    expected = compute_signature(secret, body).encode("ascii")
    return hmac.compare_digest(expected, digest.encode("utf-8"))


class SignatureVerifier:
    """Gate applied to every inbound request before lifecycle handling."""

    def __init__(
        self,
        persistence: WebhookPersistence,
        metrics: MetricsCollector | None = None,
    ):
        self._persistence = persistence
        self._metrics = metrics

    async def check(
        self, request: InboundRequest, webhook_type: WebhookType
    ) -> WebhookRecord | None:
        """
        Return the record a signed POST belongs to, or None for a GET.

        Raises ``SignatureError`` (respond 400) when the signature is missing
        or wrong, and ``UnknownWebhookError`` (respond 404) when the callback
        URL does not name a persisted webhook.
        """
        if request.method.upper() != "POST":
            return None

        header = request.header(SIGNATURE_HEADER)
        if not header:
            log.error("signature.missing", path=request.path)
            self._fail()
            raise SignatureError("Request had no X-Hub-Signature header")

        webhook_id = webhook_id_from_query(webhook_type, request.query_string)
        webhook = await self._persistence.get_webhook_by_id(webhook_id)
        if webhook is None:
            log.error("signature.unknown_webhook", webhook_id=webhook_id)
            raise UnknownWebhookError(webhook_id)

        if not verify_signature(webhook.secret, request.body, header):
            log.error("signature.mismatch", webhook_id=webhook_id)
            self._fail()
            raise SignatureError("Request gave bad X-Hub-Signature")

        return webhook

    def _fail(self) -> None:
        if self._metrics:
            self._metrics.inc("signature_failures_total")
