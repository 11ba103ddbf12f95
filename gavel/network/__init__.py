"""
Gavel Network Module - session notifications.

Events describe every state transition and are broadcast on a
per-session topic through a pluggable publisher.
"""

from gavel.network.protocol import Event, EventType, session_topic, TOPIC_PREFIX
from gavel.network.publisher import (
    InMemoryPublisher,
    LoggingPublisher,
    Publisher,
    Subscriber,
    safe_publish,
)

__all__ = [
    # Protocol
    "Event",
    "EventType",
    "session_topic",
    "TOPIC_PREFIX",
    # Publisher
    "Publisher",
    "Subscriber",
    "InMemoryPublisher",
    "LoggingPublisher",
    "safe_publish",
]
