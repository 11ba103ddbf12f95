"""
Error taxonomy for the auction engine.

Every error raised out of a session transition derives from AuctionError.
A transition that raises leaves the committed session exactly as it was.

- ValidationError: malformed input (caller's fault)
- NotFound: unknown session, item or user
- StateConflict: action not valid for the current status
- PermissionDenied: host-only action by a non-host, or a non-participant acting
- BidRejected: business-rule rejection, reported verbatim to the bidder
- ConcurrencyConflict: stale expiry / duplicate settlement, absorbed internally
- FatalError: a collaborator (catalog, directory, store) failed mid-transition
"""

from enum import IntEnum
from typing import Optional


class RejectReason(IntEnum):
    """Why the bid validator refused a bid."""
    NOT_ACTIVE = 1
    NOT_PARTICIPANT = 2
    BELOW_FLOOR = 3
    INCREMENT_TOO_SMALL = 4
    INSUFFICIENT_BUDGET = 5


class AuctionError(Exception):
    """Base class for all engine errors."""


class ValidationError(AuctionError):
    """Input has the wrong shape or range."""


class NotFound(AuctionError):
    """Referenced session, item or user does not exist."""


class StateConflict(AuctionError):
    """Operation is not allowed in the session's current status."""


class PermissionDenied(AuctionError):
    """Actor is not allowed to perform this operation."""


class BidRejected(AuctionError):
    """A bid failed one of the bidding rules."""

    def __init__(self, reason: RejectReason, message: str):
        super().__init__(message)
        self.reason = reason


class BelowMinimumBid(BidRejected):
    def __init__(self, message: str):
        super().__init__(RejectReason.BELOW_FLOOR, message)


class IncrementTooSmall(BidRejected):
    def __init__(self, message: str):
        super().__init__(RejectReason.INCREMENT_TOO_SMALL, message)


class BudgetExceeded(BidRejected):
    def __init__(self, message: str):
        super().__init__(RejectReason.INSUFFICIENT_BUDGET, message)


class ConcurrencyConflict(AuctionError):
    """A stale or duplicate signal; callers treat it as a no-op."""


class FatalError(AuctionError):
    """An external collaborator was unavailable; the transition was aborted."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


def rejection_error(reason: RejectReason, message: str) -> AuctionError:
    """Map a validator rejection onto the matching exception."""
    if reason == RejectReason.NOT_ACTIVE:
        return StateConflict(message)
    if reason == RejectReason.NOT_PARTICIPANT:
        return PermissionDenied(message)
    if reason == RejectReason.BELOW_FLOOR:
        return BelowMinimumBid(message)
    if reason == RejectReason.INCREMENT_TOO_SMALL:
        return IncrementTooSmall(message)
    return BudgetExceeded(message)
