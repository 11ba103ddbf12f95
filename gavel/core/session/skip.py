"""
Skip-Consensus Tracker - unanimous votes to drop the current item.

Votes live on the session (skip_votes) and are cleared every time the
current item changes, so the tracker itself holds no state.
"""

from gavel.core.errors import PermissionDenied, StateConflict
from gavel.core.session.models import Session, SessionStatus


def record_vote(session: Session, user_id: str) -> bool:
    """
    Add a skip vote to a draft session.

    Args:
        session: Draft session (mutated)
        user_id: Voting participant

    Returns:
        True when every participant has now voted

    Raises:
        StateConflict: session not ACTIVE, or user already voted on this item
        PermissionDenied: user is not a participant
    """
    if session.status != SessionStatus.ACTIVE or session.current is None:
        raise StateConflict(
            f"Session is {session.status.name.lower()}, skip votes are not accepted"
        )
    if not session.is_participant(user_id):
        raise PermissionDenied(f"User {user_id} is not a participant")
    if user_id in session.skip_votes:
        raise StateConflict(f"User {user_id} already voted to skip {session.current.item_id}")

    session.skip_votes.add(user_id)
    return is_unanimous(session)


def is_unanimous(session: Session) -> bool:
    return len(session.skip_votes) == len(session.participants) and session.skip_votes <= set(
        session.participants
    )


def votes_needed(session: Session) -> int:
    return len(session.participants) - len(session.skip_votes)
