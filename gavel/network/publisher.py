"""
Notification Publisher - broadcasts session events to subscribers.

Delivery is fire-and-forget: a failing subscriber or transport is
logged and never affects the transition that produced the event.
"""

from collections import defaultdict
from typing import Callable, Dict, List, Protocol

from gavel.network.protocol import Event, EventType
from gavel.utils.logger import get_logger

logger = get_logger("publisher")

Subscriber = Callable[[Event], None]


class Publisher(Protocol):
    def publish(self, topic: str, event: Event) -> None:
        ...


class InMemoryPublisher:
    """
    Topic-based publisher delivering synchronously to local callbacks.

    Keeps a bounded history per topic for late readers and tests. A
    topic's history and subscribers are dropped once its session is
    deleted.
    """

    def __init__(self, history_limit: int = 1000):
        self.history_limit = history_limit
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._history: Dict[str, List[Event]] = defaultdict(list)

    def subscribe(self, topic: str, callback: Subscriber) -> None:
        self._subscribers[topic].append(callback)

    def unsubscribe(self, topic: str, callback: Subscriber) -> None:
        subs = self._subscribers.get(topic)
        if subs and callback in subs:
            subs.remove(callback)
            if not subs:
                del self._subscribers[topic]

    def publish(self, topic: str, event: Event) -> None:
        history = self._history[topic]
        history.append(event)
        if len(history) > self.history_limit:
            del history[: len(history) - self.history_limit]

        delivered = 0
        for callback in list(self._subscribers.get(topic, [])):
            try:
                callback(event)
                delivered += 1
            except Exception as e:
                logger.warning(f"Subscriber on {topic} failed for {event.event_type.name}: {e}")

        logger.debug(f"Published {event.event_type.name} on {topic} to {delivered} subscribers")

        if event.event_type == EventType.SESSION_DELETED:
            # Nothing is published on a deleted session's topic again
            self._history.pop(topic, None)
            self._subscribers.pop(topic, None)

    def history(self, topic: str) -> List[Event]:
        return list(self._history.get(topic, []))

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))


class LoggingPublisher:
    """Publisher that only logs; used when no transport is configured."""

    def publish(self, topic: str, event: Event) -> None:
        logger.info(f"[{topic}] {event.event_type.name.lower()} {event.data}")


def safe_publish(publisher: Publisher, event: Event) -> None:
    """Publish without letting transport errors escape."""
    try:
        publisher.publish(event.topic, event)
    except Exception as e:
        logger.warning(f"Publishing {event.event_type.name} for {event.session_id} failed: {e}")
