"""
Notification Protocol - events broadcast on a session topic.

Each state transition produces one Event. Events are JSON-serializable
so any publish/subscribe transport can carry them.
"""

import json
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Optional


class EventType(IntEnum):
    """Types of session notifications."""
    SESSION_CREATED = 0
    PARTICIPANT_JOINED = 1
    SESSION_STARTED = 2
    BID_PLACED = 3
    SKIP_VOTED = 4
    ITEM_OPENED = 5
    ITEM_SOLD = 6
    ITEM_SKIPPED = 7
    ROUND_STARTED = 8
    SESSION_PAUSED = 9
    SESSION_RESUMED = 10
    SESSION_COMPLETED = 11
    SESSION_DELETED = 12


TOPIC_PREFIX = "auction-"


def session_topic(session_id: str) -> str:
    return f"{TOPIC_PREFIX}{session_id}"


@dataclass
class Event:
    """
    A state-change notification.

    data carries event-specific fields; snapshot is the session state
    after the transition (None once the session is deleted).
    """
    event_type: EventType
    session_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    snapshot: Optional[Dict[str, Any]] = None
    timestamp: Optional[float] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = time.time()

    @property
    def topic(self) -> str:
        return session_topic(self.session_id)

    def to_dict(self) -> dict:
        return {
            "type": self.event_type.name.lower(),
            "session_id": self.session_id,
            "data": self.data,
            "snapshot": self.snapshot,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "Event":
        d = json.loads(raw)
        return cls(
            event_type=EventType[d["type"].upper()],
            session_id=d["session_id"],
            data=d.get("data", {}),
            snapshot=d.get("snapshot"),
            timestamp=d["timestamp"],
        )
