"""
Auction Session State Machine.

    PENDING -> ACTIVE <-> PAUSED -> COMPLETED      (delete: any status)

Every mutating action for a session runs under that session's gate (an
asyncio.Lock). The action works on a draft copy of the committed session;
only when the whole step succeeded is the draft persisted, swapped in as
the new committed snapshot, the clock re-armed and the events published.
Any exception discards the draft, so the committed session never shows a
half-applied transition.

Clock expiry enters through expire(), i.e. the same gate. Each action
also catches up on an expiry that is due but not yet processed before it
looks at the current item, so a late bid can never win a closed item.

Directory lookups (budgets, identities) happen before the gate is taken.
Store I/O runs in a worker thread while the gate is held, so a slow or
locked database delays only the session being committed.
"""

import asyncio
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple

from gavel.core.catalog import CatalogProvider
from gavel.core.config import EngineConfig, SessionConfig
from gavel.core.directory import UserDirectory
from gavel.core.errors import (
    AuctionError,
    BudgetExceeded,
    ConcurrencyConflict,
    FatalError,
    NotFound,
    PermissionDenied,
    StateConflict,
    rejection_error,
)
from gavel.core.requests import (
    ActorRequest,
    BidRequest,
    CreateSessionRequest,
    parse_request,
)
from gavel.core.session.clock import SessionClock
from gavel.core.session.models import CompletedEntry, Session, SessionStatus
from gavel.core.session.settlement import (
    Advance,
    SettlementEngine,
    advance as advance_session,
    skip_current,
)
from gavel.core.session.skip import record_vote, votes_needed
from gavel.core.session.validator import validate_bid
from gavel.network.protocol import Event, EventType
from gavel.network.publisher import LoggingPublisher, Publisher, safe_publish
from gavel.utils.logger import get_logger

if TYPE_CHECKING:
    from gavel.core.storage.storage_manager import SessionStore

logger = get_logger("session")


@dataclass
class _Outcome:
    """Side results of one transition step."""
    events: List[Tuple[EventType, dict]] = field(default_factory=list)
    entries: List[CompletedEntry] = field(default_factory=list)
    changed: bool = False
    error: Optional[AuctionError] = None  # Raised after the commit

    def emit(self, event_type: EventType, **data) -> None:
        self.events.append((event_type, data))
        self.changed = True


Step = Callable[[Session, _Outcome], None]


class AuctionEngine:
    """
    Runs live auction sessions.

    Args:
        catalog: Item lookup (ids and minimum bids)
        directory: Participant identities and authoritative budgets
        publisher: Receives one event per state change
        store: Durable session store; None keeps sessions in memory only
        config: Engine configuration
        now: Time source in seconds
        rng: Random source for shuffling
        id_factory: Produces new session ids
    """

    def __init__(
        self,
        catalog: CatalogProvider,
        directory: UserDirectory,
        publisher: Optional[Publisher] = None,
        store: Optional["SessionStore"] = None,
        config: Optional[EngineConfig] = None,
        now: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.catalog = catalog
        self.directory = directory
        self.publisher = publisher or LoggingPublisher()
        self.store = store
        self.config = config or EngineConfig()
        self._now = now
        self.rng = rng or random.Random()
        self._new_id = id_factory or (lambda: uuid.uuid4().hex[:12])

        self.settlement = SettlementEngine(directory, catalog, self.rng, now)

        self._sessions: Dict[str, Session] = {}
        self._gates: Dict[str, asyncio.Lock] = {}
        self._clocks: Dict[str, SessionClock] = {}

    # =========================================================================
    # Reads (no gate; committed snapshots are never mutated)
    # =========================================================================

    def get_state(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise NotFound(f"Session {session_id} not found") from None

    def list_sessions(self, include_completed: bool = False) -> List[Session]:
        return [
            s for s in self._sessions.values()
            if include_completed or s.status != SessionStatus.COMPLETED
        ]

    async def get_time_left(self, session_id: str) -> float:
        """
        Seconds left on the current item.

        A deadline found to have passed is processed through the gate
        before answering, so the reply always reflects the settled state.
        """
        session = self.get_state(session_id)
        if session.status == SessionStatus.ACTIVE and session.current is not None:
            if session.time_left(self._now()) <= 0:
                await self.expire(
                    session_id,
                    item_id=session.current.item_id,
                    started_at=session.current.start_time,
                )
                session = self.get_state(session_id)
        return session.time_left(self._now())

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create_session(
        self,
        name: str,
        budget: Optional[int],
        host_id: str,
        config: Optional[SessionConfig] = None,
    ) -> Session:
        """Create a PENDING session over a snapshot of the catalog."""
        req = parse_request(
            CreateSessionRequest,
            name=name,
            budget=self.config.default_budget if budget is None else budget,
            host_id=host_id,
        )
        session_config = config or self.config.session

        host_budget = self._directory(self.directory.get_budget, req.host_id)
        try:
            items = list(self.catalog.list_items())
        except AuctionError:
            raise
        except Exception as e:
            raise FatalError(f"Catalog unavailable: {e}", e) from e
        if session_config.auto_shuffle:
            self.rng.shuffle(items)

        now = self._now()
        session = Session(
            session_id=self._new_id(),
            name=req.name,
            host_id=req.host_id,
            budget=req.budget,
            config=session_config,
            participants=[req.host_id],
            budgets={req.host_id: host_budget},
            available=items,
            created_at=now,
            updated_at=now,
        )
        if session.session_id in self._sessions:
            raise StateConflict(f"Session {session.session_id} already exists")

        await self._persist(session, None)
        self._sessions[session.session_id] = session
        self._gates[session.session_id] = asyncio.Lock()

        logger.info(
            f"Session {session.session_id} '{session.name}' created by {session.host_id} "
            f"with {len(items)} items"
        )
        self._broadcast(session, [(EventType.SESSION_CREATED, {"host_id": session.host_id})])
        return session

    async def join(self, session_id: str, user_id: str) -> Session:
        req = parse_request(ActorRequest, session_id=session_id, user_id=user_id)
        self.get_state(req.session_id)
        self._directory(self.directory.get_identity, req.user_id)
        budget = self._directory(self.directory.get_budget, req.user_id)

        def step(draft: Session, out: _Outcome) -> None:
            if draft.status != SessionStatus.PENDING:
                raise StateConflict("Auction already started")
            if draft.is_participant(req.user_id):
                raise StateConflict(f"User {req.user_id} already joined")
            draft.participants.append(req.user_id)
            draft.budgets[req.user_id] = budget
            out.emit(EventType.PARTICIPANT_JOINED, user_id=req.user_id)
            logger.info(f"Session {draft.session_id}: {req.user_id} joined")

        return await self._run(req.session_id, step)

    async def start(self, session_id: str, host_id: str) -> Session:
        req = parse_request(ActorRequest, session_id=session_id, user_id=host_id)
        snapshot = self.get_state(req.session_id)
        budgets = {
            p: self._directory(self.directory.get_budget, p) for p in snapshot.participants
        }

        def step(draft: Session, out: _Outcome) -> None:
            self._require_host(draft, req.user_id)
            if draft.status != SessionStatus.PENDING:
                raise StateConflict("Auction already started")
            if not draft.participants:
                raise StateConflict("No participants")
            if not draft.available:
                raise StateConflict("No items available")

            draft.budgets.update({p: b for p, b in budgets.items() if p in draft.participants})
            draft.status = SessionStatus.ACTIVE
            out.emit(EventType.SESSION_STARTED, participants=list(draft.participants))
            logger.info(f"Session {draft.session_id} started")
            self._emit_advance(draft, self._advance(draft), out)

        return await self._run(req.session_id, step)

    async def pause(self, session_id: str, host_id: str) -> Session:
        req = parse_request(ActorRequest, session_id=session_id, user_id=host_id)

        def step(draft: Session, out: _Outcome) -> None:
            self._require_host(draft, req.user_id)
            self._catch_up(draft, out)
            if draft.status != SessionStatus.ACTIVE:
                self._refuse(
                    out, StateConflict(f"Cannot pause a {draft.status.name.lower()} session")
                )
                return
            draft.paused_time_left = draft.current.time_left(
                draft.config.bid_duration, self._now()
            )
            draft.status = SessionStatus.PAUSED
            out.emit(EventType.SESSION_PAUSED, time_left=draft.paused_time_left)
            logger.info(
                f"Session {draft.session_id} paused with {draft.paused_time_left:.1f}s left"
            )

        return await self._run(req.session_id, step)

    async def resume(self, session_id: str, host_id: str) -> Session:
        req = parse_request(ActorRequest, session_id=session_id, user_id=host_id)

        def step(draft: Session, out: _Outcome) -> None:
            self._require_host(draft, req.user_id)
            if draft.status != SessionStatus.PAUSED:
                raise StateConflict(f"Cannot resume a {draft.status.name.lower()} session")
            # A resumed item always gets the full duration back
            draft.current.start_time = self._now()
            draft.paused_time_left = None
            draft.status = SessionStatus.ACTIVE
            out.emit(EventType.SESSION_RESUMED, time_left=draft.config.bid_duration)
            logger.info(f"Session {draft.session_id} resumed")

        return await self._run(req.session_id, step)

    async def end(self, session_id: str, host_id: str) -> Session:
        """Complete the session now. A pending bid is discarded, not settled."""
        req = parse_request(ActorRequest, session_id=session_id, user_id=host_id)

        def step(draft: Session, out: _Outcome) -> None:
            self._require_host(draft, req.user_id)
            self._catch_up(draft, out)
            if draft.status == SessionStatus.COMPLETED:
                if not out.changed:
                    raise StateConflict("Session already completed")
                return
            discarded = None
            if draft.current is not None and draft.current.has_bid:
                discarded = {
                    "item_id": draft.current.item_id,
                    "amount": draft.current.current_bid,
                    "bidder": draft.current.current_bidder,
                }
                logger.info(
                    f"Session {draft.session_id}: discarding unsettled bid "
                    f"{discarded['amount']} on {discarded['item_id']}"
                )
            leftover = draft.close_out()
            draft.complete()
            out.emit(
                EventType.SESSION_COMPLETED,
                reason="ended",
                discarded_bid=discarded,
                unsold=leftover,
            )
            logger.info(f"Session {draft.session_id} ended by host")

        return await self._run(req.session_id, step)

    async def delete(self, session_id: str, host_id: str) -> None:
        """Broadcast a deletion notice and remove the session entirely."""
        req = parse_request(ActorRequest, session_id=session_id, user_id=host_id)
        gate = self._gate(req.session_id)
        async with gate:
            session = self.get_state(req.session_id)
            self._require_host(session, req.user_id)

            # A failed store delete leaves the session running with its clock
            if self.store is not None:
                await asyncio.to_thread(self.store.delete_session, req.session_id)

            clock = self._clocks.pop(req.session_id, None)
            if clock is not None:
                clock.cancel()
            safe_publish(
                self.publisher,
                Event(
                    EventType.SESSION_DELETED,
                    req.session_id,
                    {"host_id": req.user_id},
                    None,
                    self._now(),
                ),
            )
            del self._sessions[req.session_id]
            self._gates.pop(req.session_id, None)
        logger.info(f"Session {req.session_id} deleted")

    # =========================================================================
    # Bidding
    # =========================================================================

    async def place_bid(self, session_id: str, user_id: str, amount: int) -> Session:
        """
        Bid on the current item. An accepted bid restarts the countdown.

        Raises:
            StateConflict: session not ACTIVE, or the item's time ran out
            PermissionDenied: bidder is not a participant
            BelowMinimumBid / IncrementTooSmall / BudgetExceeded
        """
        req = parse_request(BidRequest, session_id=session_id, user_id=user_id, amount=amount)
        self.get_state(req.session_id)
        try:
            live_budget = self._directory(self.directory.get_budget, req.user_id)
        except NotFound:
            live_budget = 0

        def step(draft: Session, out: _Outcome) -> None:
            if self._catch_up(draft, out):
                out.error = StateConflict("Bidding on that item has closed")
                return

            check = validate_bid(draft, req.amount, req.user_id, live_budget)
            if not check.ok:
                logger.info(
                    f"Session {draft.session_id}: bid {req.amount} by {req.user_id} "
                    f"rejected ({check.reason.name.lower()})"
                )
                raise rejection_error(check.reason, check.message)

            item = draft.current
            item.current_bid = req.amount
            item.current_bidder = req.user_id
            item.start_time = self._now()
            draft.budgets[req.user_id] = live_budget
            out.emit(
                EventType.BID_PLACED,
                item_id=item.item_id,
                amount=req.amount,
                bidder=req.user_id,
                time_left=draft.config.bid_duration,
            )
            logger.info(
                f"Session {draft.session_id}: {req.user_id} bids {req.amount} on {item.item_id}"
            )

        return await self._run(req.session_id, step)

    async def vote_skip(self, session_id: str, user_id: str) -> Session:
        """
        Vote to skip the current item.

        When every participant has voted the item closes: unsold if it
        has no bid, otherwise sold to the high bidder.
        """
        req = parse_request(ActorRequest, session_id=session_id, user_id=user_id)

        def step(draft: Session, out: _Outcome) -> None:
            if self._catch_up(draft, out):
                out.error = StateConflict("That item has already closed")
                return

            item_id = draft.current.item_id if draft.current else None
            unanimous = record_vote(draft, req.user_id)
            out.emit(
                EventType.SKIP_VOTED,
                item_id=item_id,
                user_id=req.user_id,
                votes=len(draft.skip_votes),
                needed=votes_needed(draft),
            )
            logger.info(
                f"Session {draft.session_id}: {req.user_id} votes to skip {item_id} "
                f"({len(draft.skip_votes)}/{len(draft.participants)})"
            )
            if unanimous:
                self._close_current(draft, out, reason="skip_vote")

        return await self._run(req.session_id, step)

    async def advance(self, session_id: str, host_id: str) -> Session:
        """Close the current item immediately (host only)."""
        req = parse_request(ActorRequest, session_id=session_id, user_id=host_id)

        def step(draft: Session, out: _Outcome) -> None:
            self._require_host(draft, req.user_id)
            if self._catch_up(draft, out):
                return
            if draft.status != SessionStatus.ACTIVE or draft.current is None:
                raise StateConflict(f"Cannot advance a {draft.status.name.lower()} session")
            self._close_current(draft, out, reason="advanced")

        return await self._run(req.session_id, step)

    async def expire(
        self,
        session_id: str,
        item_id: Optional[str] = None,
        started_at: Optional[float] = None,
    ) -> Session:
        """
        Handle the current item's countdown reaching zero.

        Stale signals (another item is current, a bid moved the start
        time, time is not actually up, session not ACTIVE) are no-ops.
        """
        def step(draft: Session, out: _Outcome) -> None:
            item = draft.current
            if draft.status != SessionStatus.ACTIVE or item is None:
                raise ConcurrencyConflict("no active item")
            if item_id is not None and item.item_id != item_id:
                raise ConcurrencyConflict(f"{item_id} is no longer current")
            if started_at is not None and item.start_time != started_at:
                raise ConcurrencyConflict(f"{item.item_id} clock was reset")
            if item.time_left(draft.config.bid_duration, self._now()) > 0:
                raise ConcurrencyConflict(f"{item.item_id} has time left")
            self._close_current(draft, out, reason="expired")

        return await self._run(session_id, step)

    # =========================================================================
    # Recovery
    # =========================================================================

    async def restore(self) -> int:
        """
        Load persisted sessions. Live items restart with a full duration.

        Returns:
            Number of sessions restored
        """
        if self.store is None:
            return 0
        count = 0
        for session in await asyncio.to_thread(self.store.load_sessions):
            if session.session_id in self._sessions:
                continue
            if session.status == SessionStatus.ACTIVE and session.current is not None:
                session.current.start_time = self._now()
            self._sessions[session.session_id] = session
            self._gates[session.session_id] = asyncio.Lock()
            self._sync_clock(session)
            count += 1
        logger.info(f"Restored {count} sessions")
        return count

    def close(self) -> None:
        """Cancel every clock."""
        for clock in self._clocks.values():
            clock.cancel()
        self._clocks.clear()

    # =========================================================================
    # Internals
    # =========================================================================

    def _gate(self, session_id: str) -> asyncio.Lock:
        gate = self._gates.get(session_id)
        if gate is None:
            raise NotFound(f"Session {session_id} not found")
        return gate

    async def _run(self, session_id: str, step: Step) -> Session:
        """Apply step to a draft under the session gate and commit it."""
        async with self._gate(session_id):
            current = self.get_state(session_id)
            draft = current.copy()
            out = _Outcome()
            try:
                step(draft, out)
            except ConcurrencyConflict as e:
                for entry in out.entries:
                    self.settlement.revert(session_id, entry)
                logger.debug(f"Session {session_id}: ignored stale signal ({e})")
                return current
            except Exception:
                for entry in out.entries:
                    self.settlement.revert(session_id, entry)
                raise

            if out.changed:
                draft.updated_at = self._now()
                try:
                    await self._persist(draft, current)
                except Exception:
                    for entry in out.entries:
                        self.settlement.revert(session_id, entry)
                    raise
                self._sessions[session_id] = draft
                self._sync_clock(draft)
                self._broadcast(draft, out.events)
                current = draft

        if out.error is not None:
            raise out.error
        return current

    def _catch_up(self, draft: Session, out: _Outcome) -> bool:
        """Process an expiry that is due; True if the current item closed."""
        item = draft.current
        if draft.status != SessionStatus.ACTIVE or item is None:
            return False
        if item.time_left(draft.config.bid_duration, self._now()) > 0:
            return False
        self._close_current(draft, out, reason="expired")
        return True

    def _close_current(self, draft: Session, out: _Outcome, reason: str) -> None:
        """Settle or skip the current item, then advance."""
        item = draft.current
        if item.has_bid:
            try:
                entry, moved = self.settlement.settle(
                    draft, item.current_bidder, item.current_bid, item.item_id
                )
            except BudgetExceeded as e:
                logger.warning(
                    f"Session {draft.session_id}: settlement of {item.item_id} failed ({e}), "
                    f"closing it unsold"
                )
                out.emit(EventType.ITEM_SKIPPED, item_id=item.item_id, reason="settlement_failed")
                moved = skip_current(draft, self.catalog, self.rng, self._now())
            else:
                if entry is None:
                    raise ConcurrencyConflict(f"{item.item_id} already settled")
                out.entries.append(entry)
                out.emit(
                    EventType.ITEM_SOLD,
                    item_id=entry.item_id,
                    winner_id=entry.winner_id,
                    amount=entry.amount,
                    reason=reason,
                )
        else:
            logger.info(f"Session {draft.session_id}: {item.item_id} closed unsold ({reason})")
            out.emit(EventType.ITEM_SKIPPED, item_id=item.item_id, reason=reason)
            moved = skip_current(draft, self.catalog, self.rng, self._now())
        self._emit_advance(draft, moved, out)

    def _advance(self, draft: Session) -> Advance:
        return advance_session(draft, self.catalog, self.rng, self._now())

    def _emit_advance(self, draft: Session, moved: Advance, out: _Outcome) -> None:
        if moved.round_started:
            out.emit(EventType.ROUND_STARTED, round=draft.round)
        if moved.opened is not None:
            out.emit(
                EventType.ITEM_OPENED,
                item_id=moved.opened,
                minimum_bid=draft.current.minimum_bid,
                time_left=draft.config.bid_duration,
            )
        if moved.completed:
            out.emit(EventType.SESSION_COMPLETED, reason="exhausted")
            logger.info(
                f"Session {draft.session_id} completed: {len(draft.completed)} sold, "
                f"{len(draft.skipped)} skipped"
            )

    def _refuse(self, out: _Outcome, error: AuctionError) -> None:
        """Reject the action but keep any expiry already caught up on."""
        if not out.changed:
            raise error
        out.error = error

    def _require_host(self, session: Session, user_id: str) -> None:
        if session.host_id != user_id:
            raise PermissionDenied(f"Only the host can do that (user {user_id})")

    def _directory(self, fn, *args):
        try:
            return fn(*args)
        except AuctionError:
            raise
        except Exception as e:
            raise FatalError(f"User directory unavailable: {e}", e) from e

    async def _persist(self, session: Session, previous: Optional[Session]) -> None:
        # Store I/O runs off the event loop; only this session's gate stays held
        if self.store is not None:
            await asyncio.to_thread(self.store.save_session, session, previous)

    def _sync_clock(self, session: Session) -> None:
        """Make the session's clock match its committed state."""
        clock = self._clocks.get(session.session_id)
        if session.status != SessionStatus.ACTIVE or session.current is None:
            if clock is not None:
                clock.cancel()
                if session.status == SessionStatus.COMPLETED:
                    del self._clocks[session.session_id]
            return

        if clock is None:
            clock = SessionClock(
                session.session_id,
                session.config.bid_duration,
                self._on_clock_expired,
                now=self._now,
                auto_expire=self.config.auto_expire,
            )
            self._clocks[session.session_id] = clock

        item = session.current
        if clock.item_id != item.item_id or clock.deadline != item.start_time + clock.duration:
            clock.arm(item.item_id, item.start_time)

    async def _on_clock_expired(self, session_id: str, item_id: str, started_at: float) -> None:
        try:
            await self.expire(session_id, item_id=item_id, started_at=started_at)
        except NotFound:
            logger.debug(f"Expiry for deleted session {session_id} ignored")

    def _broadcast(self, session: Session, events: List[Tuple[EventType, dict]]) -> None:
        snapshot = session.to_dict()
        for event_type, data in events:
            safe_publish(
                self.publisher,
                Event(event_type, session.session_id, data, snapshot, self._now()),
            )
