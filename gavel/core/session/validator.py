"""
Bid Validator - pure check of a proposed bid against session state.

Checks, in order:
1. Session is ACTIVE
2. Bidder is a participant
3. Opening bid reaches the item's minimum bid
   (or a follow-up bid beats the current one by the minimum increment)
4. Bidder's live budget covers the amount

The validator never mutates anything; the engine commits on success.
"""

from dataclasses import dataclass
from typing import Optional

from gavel.core.errors import RejectReason
from gavel.core.session.models import Session, SessionStatus


@dataclass(frozen=True)
class BidCheck:
    """Result of bid validation."""
    ok: bool
    reason: Optional[RejectReason] = None
    message: str = ""
    required: Optional[int] = None  # Lowest acceptable amount, for amount rejections


ACCEPTED = BidCheck(ok=True)


def minimum_next_bid(session: Session) -> int:
    """Lowest amount the next bid on the current item may have."""
    item = session.current
    if item is None:
        return 0
    if not item.has_bid:
        return item.minimum_bid
    return item.current_bid + session.config.min_bid_increment


def validate_bid(session: Session, amount: int, bidder_id: str, live_budget: int) -> BidCheck:
    """
    Validate a proposed bid.

    Args:
        session: Committed session state
        amount: Proposed bid amount
        bidder_id: Participant placing the bid
        live_budget: Bidder's budget as reported by the user directory

    Returns:
        BidCheck
    """
    if session.status != SessionStatus.ACTIVE or session.current is None:
        return BidCheck(
            ok=False,
            reason=RejectReason.NOT_ACTIVE,
            message=f"Session is {session.status.name.lower()}, bids are not accepted",
        )

    if not session.is_participant(bidder_id):
        return BidCheck(
            ok=False,
            reason=RejectReason.NOT_PARTICIPANT,
            message=f"User {bidder_id} is not a participant",
        )

    required = minimum_next_bid(session)
    if not session.current.has_bid:
        if amount < required:
            return BidCheck(
                ok=False,
                reason=RejectReason.BELOW_FLOOR,
                message=f"Bid {amount} is below the minimum bid {required}",
                required=required,
            )
    elif amount < required:
        return BidCheck(
            ok=False,
            reason=RejectReason.INCREMENT_TOO_SMALL,
            message=f"Bid {amount} must be at least {required}",
            required=required,
        )

    if live_budget < amount:
        return BidCheck(
            ok=False,
            reason=RejectReason.INSUFFICIENT_BUDGET,
            message=f"Bid {amount} exceeds remaining budget {live_budget}",
        )

    return ACCEPTED
