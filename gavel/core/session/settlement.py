"""
Settlement Engine - closes items and moves a session forward.

Settlement is the only place a budget is debited. For a given item it
happens at most once: a second attempt (duplicate expiry, expiry racing
an explicit advance) finds the item already completed and is ignored.

The debit and the CompletedEntry belong together. If the session commit
that follows a debit fails, the engine calls revert() to undo the debit
and the ownership record.
"""

import random
import time
from dataclasses import dataclass
from typing import Callable, Optional

from gavel.core.catalog import CatalogProvider
from gavel.core.directory import OwnershipRecord, UserDirectory
from gavel.core.errors import (
    AuctionError,
    BudgetExceeded,
    FatalError,
    NotFound,
)
from gavel.core.session.models import CompletedEntry, Session
from gavel.utils.logger import get_logger

logger = get_logger("settlement")


@dataclass
class Advance:
    """What happened when a session moved past its current item."""
    opened: Optional[str] = None   # Item now up for bid
    round_started: bool = False    # Skipped items were re-queued
    completed: bool = False        # Nothing left; session COMPLETED


def advance(
    session: Session,
    catalog: CatalogProvider,
    rng: random.Random,
    now: float,
) -> Advance:
    """
    Open the next available item on a draft session, or complete it.

    Items the catalog no longer knows are moved to the skipped list.

    Raises:
        FatalError: catalog unavailable
    """
    result = Advance()
    while True:
        if not session.available:
            if session.requeue_skipped(rng):
                result.round_started = True
                logger.info(
                    f"Session {session.session_id}: round {session.round} with "
                    f"{len(session.available)} re-queued items"
                )
                continue
            session.complete()
            result.completed = True
            return result

        item_id = session.available.pop(0)
        try:
            item = catalog.get_item(item_id)
        except NotFound:
            logger.warning(f"Session {session.session_id}: item {item_id} left the catalog, skipping")
            session.skipped.append(item_id)
            continue
        except AuctionError:
            raise
        except Exception as e:
            raise FatalError(f"Catalog lookup for {item_id} failed: {e}", e) from e

        session.open_item(item_id, item.minimum_bid, now)
        result.opened = item_id
        return result


def skip_current(
    session: Session,
    catalog: CatalogProvider,
    rng: random.Random,
    now: float,
) -> Advance:
    """Close the current item without a sale and advance."""
    closed = session.close_current()
    if closed is not None:
        session.skipped.append(closed.item_id)
    return advance(session, catalog, rng, now)


class SettlementEngine:
    """Debits winners and records completed items."""

    def __init__(
        self,
        directory: UserDirectory,
        catalog: CatalogProvider,
        rng: Optional[random.Random] = None,
        now: Callable[[], float] = time.time,
    ):
        self.directory = directory
        self.catalog = catalog
        self.rng = rng or random.Random()
        self._now = now

    def record_sale(
        self,
        session: Session,
        winner_id: str,
        amount: int,
        item_id: str,
    ) -> Optional[CompletedEntry]:
        """
        Debit the winner and record the sale on a draft session.

        Args:
            session: Draft session (mutated)
            winner_id: Highest bidder
            amount: Winning bid
            item_id: Item being settled

        Returns:
            The new CompletedEntry, or None if the item was already
            settled or is no longer current

        Raises:
            BudgetExceeded: winner can no longer cover the amount (nothing debited)
            FatalError: directory unavailable (nothing debited)
        """
        if session.is_settled(item_id):
            logger.debug(f"Session {session.session_id}: {item_id} already settled, ignoring")
            return None
        if session.current is None or session.current.item_id != item_id:
            logger.debug(f"Session {session.session_id}: {item_id} is not current, ignoring settlement")
            return None

        budget = self._call(self.directory.get_budget, winner_id)
        if budget < amount:
            raise BudgetExceeded(
                f"{winner_id} cannot cover {amount} for {item_id}: budget {budget}"
            )
        if not self._call(self.directory.debit, winner_id, amount):
            raise BudgetExceeded(f"Debit of {amount} refused for {winner_id}")

        settled_at = self._now()
        entry = CompletedEntry(item_id, winner_id, amount, settled_at)
        try:
            self.directory.record_win(
                winner_id, OwnershipRecord(session.session_id, item_id, amount, settled_at)
            )
        except Exception as e:
            self.directory.credit(winner_id, amount)
            raise FatalError(f"Recording win of {item_id} failed: {e}", e) from e

        session.completed.append(entry)
        session.close_current()
        try:
            session.budgets[winner_id] = self.directory.get_budget(winner_id)
        except Exception:
            session.budgets[winner_id] = budget - amount

        logger.info(
            f"Session {session.session_id}: {item_id} sold to {winner_id} for {amount}"
        )
        return entry

    def settle(
        self,
        session: Session,
        winner_id: str,
        amount: int,
        item_id: str,
    ) -> tuple[Optional[CompletedEntry], Advance]:
        """
        Settle the current item and advance the draft session.

        Returns:
            (entry, advance); entry is None and nothing moves when the
            item was already settled or is no longer current
        """
        entry = self.record_sale(session, winner_id, amount, item_id)
        if entry is None:
            return None, Advance()
        try:
            moved = advance(session, self.catalog, self.rng, self._now())
        except Exception:
            self.revert(session.session_id, entry)
            raise
        return entry, moved

    def revert(self, session_id: str, entry: CompletedEntry) -> None:
        """Undo the directory side of a settlement whose commit failed."""
        self.directory.credit(entry.winner_id, entry.amount)
        self.directory.remove_win(entry.winner_id, session_id, entry.item_id)
        logger.warning(
            f"Session {session_id}: reverted settlement of {entry.item_id} "
            f"({entry.amount} back to {entry.winner_id})"
        )

    def _call(self, fn, *args):
        try:
            return fn(*args)
        except AuctionError:
            raise
        except Exception as e:
            raise FatalError(f"User directory unavailable: {e}", e) from e
