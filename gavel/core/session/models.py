"""
Session data model.

A Session is one live auction run over a queue of catalog items.
Committed sessions are never mutated: every transition works on a
draft produced by Session.copy() and the draft replaces the committed
session only once the whole transition succeeded.
"""

import random
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional, Set

from gavel.core.config import SessionConfig


# =============================================================================
# Enums
# =============================================================================


class SessionStatus(IntEnum):
    """Status of an auction session."""
    PENDING = 0     # Created, accepting participants
    ACTIVE = 1      # An item is up for bid and the clock is running
    PAUSED = 2      # An item is up for bid, clock frozen
    COMPLETED = 3   # No item left, or ended by the host


class ItemLocation(IntEnum):
    """Where an item identifier currently lives within a session."""
    AVAILABLE = 0
    CURRENT = 1
    COMPLETED = 2
    SKIPPED = 3


# =============================================================================
# Data Structures
# =============================================================================


@dataclass
class CurrentItem:
    """
    The item presently up for bid.

    current_bid is 0 with no bidder until the first bid lands. The
    minimum bid is captured from the catalog when the item is opened.
    """
    item_id: str
    minimum_bid: int
    start_time: float
    current_bid: int = 0
    current_bidder: Optional[str] = None

    @property
    def has_bid(self) -> bool:
        return self.current_bidder is not None

    def time_left(self, duration: float, now: float) -> float:
        return max(0.0, duration - (now - self.start_time))

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "minimum_bid": self.minimum_bid,
            "start_time": self.start_time,
            "current_bid": self.current_bid,
            "current_bidder": self.current_bidder,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CurrentItem":
        return cls(**data)


@dataclass(frozen=True)
class CompletedEntry:
    """Immutable record of a settled item."""
    item_id: str
    winner_id: str
    amount: int
    settled_at: float

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "winner_id": self.winner_id,
            "amount": self.amount,
            "settled_at": self.settled_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CompletedEntry":
        return cls(**data)


@dataclass
class Session:
    """
    One live auction run.

    Attributes:
        session_id: Unique identifier
        name: Display name
        host_id: User that created the session
        budget: Nominal per-participant budget chosen by the host
        participants: Participant ids in join order, host first
        budgets: Cached remaining budget per participant
        status: Current SessionStatus
        round: 1, or 2 while skipped items are re-auctioned
        available: FIFO queue of item ids not yet opened
        completed: Settled items
        skipped: Items closed without a sale
        skip_votes: Participants voting to skip the current item
        current: Item up for bid (present iff ACTIVE or PAUSED)
        paused_time_left: Frozen time left while PAUSED
    """
    session_id: str
    name: str
    host_id: str
    budget: int
    config: SessionConfig
    participants: List[str] = field(default_factory=list)
    budgets: Dict[str, int] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.PENDING
    round: int = 1
    available: List[str] = field(default_factory=list)
    completed: List[CompletedEntry] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    skip_votes: Set[str] = field(default_factory=set)
    current: Optional[CurrentItem] = None
    paused_time_left: Optional[float] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    def copy(self) -> "Session":
        """Draft for a transition; containers are copied, entries shared."""
        return Session(
            session_id=self.session_id,
            name=self.name,
            host_id=self.host_id,
            budget=self.budget,
            config=self.config,
            participants=list(self.participants),
            budgets=dict(self.budgets),
            status=self.status,
            round=self.round,
            available=list(self.available),
            completed=list(self.completed),
            skipped=list(self.skipped),
            skip_votes=set(self.skip_votes),
            current=CurrentItem(**vars(self.current)) if self.current else None,
            paused_time_left=self.paused_time_left,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def is_live(self) -> bool:
        return self.status in (SessionStatus.ACTIVE, SessionStatus.PAUSED)

    def is_participant(self, user_id: str) -> bool:
        return user_id in self.participants

    def is_settled(self, item_id: str) -> bool:
        return any(entry.item_id == item_id for entry in self.completed)

    def time_left(self, now: float) -> float:
        if self.status == SessionStatus.PAUSED:
            return self.paused_time_left or 0.0
        if self.status != SessionStatus.ACTIVE or self.current is None:
            return 0.0
        return self.current.time_left(self.config.bid_duration, now)

    def locate(self, item_id: str) -> List[ItemLocation]:
        """Every place an item id appears; at most one entry when consistent."""
        found = []
        if item_id in self.available:
            found.append(ItemLocation.AVAILABLE)
        if self.current is not None and self.current.item_id == item_id:
            found.append(ItemLocation.CURRENT)
        if self.is_settled(item_id):
            found.append(ItemLocation.COMPLETED)
        if item_id in self.skipped:
            found.append(ItemLocation.SKIPPED)
        return found

    def spent_by(self, user_id: str) -> int:
        return sum(e.amount for e in self.completed if e.winner_id == user_id)

    # -------------------------------------------------------------------------
    # Draft mutations (called by the engine on a copy)
    # -------------------------------------------------------------------------

    def open_item(self, item_id: str, minimum_bid: int, now: float) -> CurrentItem:
        self.current = CurrentItem(item_id=item_id, minimum_bid=minimum_bid, start_time=now)
        self.skip_votes.clear()
        self.paused_time_left = None
        return self.current

    def close_current(self) -> Optional[CurrentItem]:
        closed = self.current
        self.current = None
        self.skip_votes.clear()
        return closed

    def requeue_skipped(self, rng: random.Random) -> bool:
        """
        Start the second round with every skipped item.

        Returns:
            True if a second round was started
        """
        if not self.config.rerun_skipped or self.round != 1 or not self.skipped:
            return False
        self.available = list(self.skipped)
        self.skipped = []
        if self.config.auto_shuffle:
            rng.shuffle(self.available)
        self.round = 2
        return True

    def close_out(self) -> List[str]:
        """Move the current item and every queued item to skipped."""
        leftover = []
        if self.current is not None:
            leftover.append(self.current.item_id)
        leftover.extend(self.available)
        self.skipped.extend(leftover)
        self.available = []
        self.current = None
        return leftover

    def complete(self) -> None:
        self.status = SessionStatus.COMPLETED
        self.current = None
        self.skip_votes.clear()
        self.paused_time_left = None

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "name": self.name,
            "host_id": self.host_id,
            "budget": self.budget,
            "config": self.config.to_dict(),
            "participants": list(self.participants),
            "budgets": dict(self.budgets),
            "status": self.status.name.lower(),
            "round": self.round,
            "available": list(self.available),
            "completed": [e.to_dict() for e in self.completed],
            "skipped": list(self.skipped),
            "skip_votes": sorted(self.skip_votes),
            "current": self.current.to_dict() if self.current else None,
            "paused_time_left": self.paused_time_left,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(
            session_id=data["session_id"],
            name=data["name"],
            host_id=data["host_id"],
            budget=data["budget"],
            config=SessionConfig.from_dict(data["config"]),
            participants=list(data["participants"]),
            budgets=dict(data["budgets"]),
            status=SessionStatus[data["status"].upper()],
            round=data["round"],
            available=list(data["available"]),
            completed=[CompletedEntry.from_dict(e) for e in data["completed"]],
            skipped=list(data["skipped"]),
            skip_votes=set(data["skip_votes"]),
            current=CurrentItem.from_dict(data["current"]) if data["current"] else None,
            paused_time_left=data.get("paused_time_left"),
            created_at=data.get("created_at", 0.0),
            updated_at=data.get("updated_at", 0.0),
        )
