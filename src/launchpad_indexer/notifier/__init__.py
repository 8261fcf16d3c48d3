"""Push layer - subscriber registry, broadcaster and WebSocket server."""

from launchpad_indexer.notifier.hub import Notifier, Subscriber, SubscriberRegistry
from launchpad_indexer.notifier.server import PushServer, PushServerError

__all__ = [
    "Notifier",
    "PushServer",
    "PushServerError",
    "Subscriber",
    "SubscriberRegistry",
]
