"""
Gavel Session Module.

This module provides the live-session engine:
- Session data model
- Bid validation
- Per-session countdown clock
- Skip-vote consensus
- Settlement
- The session state machine
"""

from gavel.core.session.models import (
    CompletedEntry,
    CurrentItem,
    ItemLocation,
    Session,
    SessionStatus,
)

from gavel.core.session.validator import (
    BidCheck,
    minimum_next_bid,
    validate_bid,
)

from gavel.core.session.clock import SessionClock

from gavel.core.session.skip import (
    is_unanimous,
    record_vote,
    votes_needed,
)

from gavel.core.session.settlement import (
    Advance,
    SettlementEngine,
    advance,
    skip_current,
)

from gavel.core.session.engine import AuctionEngine

__all__ = [
    # Models
    "CompletedEntry",
    "CurrentItem",
    "ItemLocation",
    "Session",
    "SessionStatus",
    # Validation
    "BidCheck",
    "minimum_next_bid",
    "validate_bid",
    # Clock
    "SessionClock",
    # Skip consensus
    "is_unanimous",
    "record_vote",
    "votes_needed",
    # Settlement
    "Advance",
    "SettlementEngine",
    "advance",
    "skip_current",
    # Engine
    "AuctionEngine",
]
