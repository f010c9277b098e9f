"""
Twitch webhook subscriptions

Subscribes to Twitch's WebSub-style webhook hub, answers its verification
callbacks, verifies signed notifications and renews leases.
"""

from .config import WebhookManagerConfig
from .errors import (
    HubRequestError,
    NotFoundError,
    SubscriptionDeniedError,
    ValidationError,
    WebhookError,
)
from .events import (
    ErrorEvent,
    MessageEvent,
    SubscribedEvent,
    TopicEvent,
    UnsubscribedEvent,
    WebhookEvent,
)
from .manager import WebhookManager, WebhookResponse
from .persistence import MemoryWebhookPersistence, WebhookOptions, WebhookPersistence, WebhookRecord
from .scheduling import LeaseRenewalScheduler, RenewalScheduler
from .signature import InboundRequest
from .topics import WebhookType

__version__ = "0.1.0"
