"""
Tests for the Auction Session State Machine.

Tests cover:
1. Create / join / start
2. Bidding and clock resets
3. Expiry (lazy and explicit), stale and duplicate signals
4. Skip votes
5. Pause / resume / end / delete / advance
6. Notifications
"""

import asyncio
import random

import pytest

from gavel.core.catalog import CatalogItem, InMemoryCatalog
from gavel.core.config import EngineConfig, SessionConfig
from gavel.core.directory import InMemoryDirectory
from gavel.core.errors import (
    BelowMinimumBid,
    BudgetExceeded,
    IncrementTooSmall,
    NotFound,
    PermissionDenied,
    StateConflict,
    ValidationError,
)
from gavel.core.session import AuctionEngine, SessionStatus
from gavel.network import EventType, InMemoryPublisher, session_topic


# =============================================================================
# Fixtures
# =============================================================================


class FakeTime:
    def __init__(self, t: float = 1000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


CONFIG = SessionConfig(bid_duration=30, min_bid_increment=1000, auto_shuffle=False)


def make_engine(items=None, budgets=None, catalog=None):
    now = FakeTime()
    if catalog is None:
        catalog = InMemoryCatalog(items or [
            CatalogItem("item1", "One", rating=70, minimum_bid_override=5000),
            CatalogItem("item2", "Two", rating=70, minimum_bid_override=5000),
            CatalogItem("item3", "Three", rating=70, minimum_bid_override=5000),
        ])
    directory = InMemoryDirectory()
    for user, budget in (budgets or {"A": 1_000_000, "B": 1_000_000, "C": 1_000_000}).items():
        directory.register(user, budget=budget)
    publisher = InMemoryPublisher()
    engine = AuctionEngine(
        catalog,
        directory,
        publisher=publisher,
        config=EngineConfig(session=CONFIG, auto_expire=False),
        now=now,
        rng=random.Random(3),
    )
    return engine, directory, publisher, now


async def started(engine, participants=("A", "B")):
    session = await engine.create_session("Test", 1_000_000, participants[0], config=CONFIG)
    for user in participants[1:]:
        await engine.join(session.session_id, user)
    return await engine.start(session.session_id, participants[0])


def run(coro):
    return asyncio.run(coro)


def event_types(publisher, session_id):
    return [e.event_type for e in publisher.history(session_topic(session_id))]


# =============================================================================
# Create / Join / Start
# =============================================================================


class TestCreateJoinStart:

    def test_create_session(self):
        engine, _, publisher, _ = make_engine()

        async def scenario():
            return await engine.create_session("Friday", 500_000, "A", config=CONFIG)

        session = run(scenario())
        assert session.status == SessionStatus.PENDING
        assert session.participants == ["A"]
        assert session.available == ["item1", "item2", "item3"]
        assert session.current is None
        assert session.budgets == {"A": 1_000_000}
        assert event_types(publisher, session.session_id) == [EventType.SESSION_CREATED]

    def test_create_shuffles_catalog(self):
        engine, _, _, _ = make_engine()
        shuffled = SessionConfig(bid_duration=30, min_bid_increment=1000, auto_shuffle=True)

        async def scenario():
            return await engine.create_session("Friday", 500_000, "A", config=shuffled)

        session = run(scenario())
        expected = ["item1", "item2", "item3"]
        random.Random(3).shuffle(expected)
        assert session.available == expected

    def test_create_default_budget(self):
        engine, _, _, _ = make_engine()
        session = run(engine.create_session("Friday", None, "A"))
        assert session.budget == 1_000_000

    @pytest.mark.parametrize("name,budget,host", [
        ("", 1000, "A"),
        ("   ", 1000, "A"),
        ("Friday", 0, "A"),
        ("Friday", -5, "A"),
        ("Friday", "1000", "A"),
        ("Friday", 1000, ""),
    ])
    def test_create_rejects_bad_input(self, name, budget, host):
        engine, _, _, _ = make_engine()
        with pytest.raises(ValidationError):
            run(engine.create_session(name, budget, host))
        assert engine.list_sessions(include_completed=True) == []

    def test_create_unknown_host(self):
        engine, _, _, _ = make_engine()
        with pytest.raises(NotFound):
            run(engine.create_session("Friday", 1000, "nobody"))

    def test_join(self):
        engine, _, _, _ = make_engine()

        async def scenario():
            s = await engine.create_session("Friday", 1000, "A", config=CONFIG)
            await engine.join(s.session_id, "B")
            return await engine.join(s.session_id, "C")

        session = run(scenario())
        assert session.participants == ["A", "B", "C"]
        assert set(session.budgets) == {"A", "B", "C"}

    def test_join_twice_rejected(self):
        engine, _, _, _ = make_engine()

        async def scenario():
            s = await engine.create_session("Friday", 1000, "A", config=CONFIG)
            await engine.join(s.session_id, "B")
            with pytest.raises(StateConflict):
                await engine.join(s.session_id, "B")
            return engine.get_state(s.session_id)

        assert run(scenario()).participants == ["A", "B"]

    def test_join_after_start_rejected(self):
        engine, _, _, _ = make_engine()

        async def scenario():
            s = await started(engine)
            with pytest.raises(StateConflict):
                await engine.join(s.session_id, "C")

        run(scenario())

    def test_join_unknown_session_or_user(self):
        engine, _, _, _ = make_engine()

        async def scenario():
            with pytest.raises(NotFound):
                await engine.join("missing", "B")
            s = await engine.create_session("Friday", 1000, "A", config=CONFIG)
            with pytest.raises(NotFound):
                await engine.join(s.session_id, "nobody")

        run(scenario())

    def test_start(self):
        engine, _, publisher, now = make_engine()
        session = run(started(engine))

        assert session.status == SessionStatus.ACTIVE
        assert session.current.item_id == "item1"
        assert session.current.current_bid == 0
        assert session.current.current_bidder is None
        assert session.current.start_time == now.t
        assert session.available == ["item2", "item3"]
        assert event_types(publisher, session.session_id)[-2:] == [
            EventType.SESSION_STARTED,
            EventType.ITEM_OPENED,
        ]

    def test_start_host_only(self):
        engine, _, _, _ = make_engine()

        async def scenario():
            s = await engine.create_session("Friday", 1000, "A", config=CONFIG)
            await engine.join(s.session_id, "B")
            with pytest.raises(PermissionDenied):
                await engine.start(s.session_id, "B")
            return engine.get_state(s.session_id)

        assert run(scenario()).status == SessionStatus.PENDING

    def test_start_twice_rejected(self):
        engine, _, _, _ = make_engine()

        async def scenario():
            s = await started(engine)
            with pytest.raises(StateConflict):
                await engine.start(s.session_id, "A")

        run(scenario())

    def test_start_without_items(self):
        engine, _, _, _ = make_engine(catalog=InMemoryCatalog())

        async def scenario():
            s = await engine.create_session("Friday", 1000, "A", config=CONFIG)
            with pytest.raises(StateConflict):
                await engine.start(s.session_id, "A")

        run(scenario())


# =============================================================================
# Bidding
# =============================================================================


class TestBidding:

    def test_bid_updates_current_item(self):
        engine, _, publisher, _ = make_engine()

        async def scenario():
            s = await started(engine)
            return await engine.place_bid(s.session_id, "A", 5000)

        session = run(scenario())
        assert session.current.current_bid == 5000
        assert session.current.current_bidder == "A"
        assert event_types(publisher, session.session_id)[-1] == EventType.BID_PLACED

    def test_bid_rejections_leave_state_untouched(self):
        engine, _, _, _ = make_engine()

        async def scenario():
            s = await started(engine)
            with pytest.raises(BelowMinimumBid):
                await engine.place_bid(s.session_id, "A", 4000)
            await engine.place_bid(s.session_id, "A", 5000)
            before = engine.get_state(s.session_id)
            with pytest.raises(IncrementTooSmall) as exc:
                await engine.place_bid(s.session_id, "B", 5500)
            assert "6000" in str(exc.value)
            with pytest.raises(PermissionDenied):
                await engine.place_bid(s.session_id, "C", 9000)
            with pytest.raises(ValidationError):
                await engine.place_bid(s.session_id, "B", -1)
            assert engine.get_state(s.session_id) is before

        run(scenario())

    def test_bid_over_budget(self):
        engine, _, _, _ = make_engine(budgets={"A": 1_000_000, "B": 5500})

        async def scenario():
            s = await started(engine)
            await engine.place_bid(s.session_id, "A", 5000)
            with pytest.raises(BudgetExceeded):
                await engine.place_bid(s.session_id, "B", 6000)

        run(scenario())

    def test_bid_resets_clock(self):
        engine, _, _, now = make_engine()

        async def scenario():
            s = await started(engine)
            now.advance(25)
            assert await engine.get_time_left(s.session_id) == 5
            await engine.place_bid(s.session_id, "A", 5000)
            return await engine.get_time_left(s.session_id)

        assert run(scenario()) == 30

    def test_bid_on_paused_session_rejected(self):
        engine, _, _, _ = make_engine()

        async def scenario():
            s = await started(engine)
            await engine.pause(s.session_id, "A")
            with pytest.raises(StateConflict):
                await engine.place_bid(s.session_id, "A", 5000)

        run(scenario())

    def test_late_bid_cannot_win_closed_item(self):
        engine, directory, _, now = make_engine()

        async def scenario():
            s = await started(engine)
            await engine.place_bid(s.session_id, "A", 5000)
            now.advance(31)
            with pytest.raises(StateConflict):
                await engine.place_bid(s.session_id, "B", 9000)
            return engine.get_state(s.session_id)

        session = run(scenario())
        assert [(e.item_id, e.winner_id, e.amount) for e in session.completed] == [
            ("item1", "A", 5000)
        ]
        assert session.current.item_id == "item2"
        assert directory.get_budget("A") == 995_000
        assert directory.get_budget("B") == 1_000_000


# =============================================================================
# Expiry
# =============================================================================


class TestExpiry:

    def test_expiry_with_bid_settles(self):
        engine, directory, publisher, now = make_engine()

        async def scenario():
            s = await started(engine)
            await engine.place_bid(s.session_id, "B", 7000)
            now.advance(30)
            left = await engine.get_time_left(s.session_id)
            return left, engine.get_state(s.session_id)

        left, session = run(scenario())
        assert left == 30
        assert session.completed[0].winner_id == "B"
        assert session.budgets["B"] == 993_000
        assert directory.get_budget("B") == 993_000
        assert session.current.item_id == "item2"
        types = event_types(publisher, session.session_id)
        assert types[-2:] == [EventType.ITEM_SOLD, EventType.ITEM_OPENED]

    def test_expiry_without_bid_skips(self):
        engine, _, _, now = make_engine()

        async def scenario():
            s = await started(engine)
            now.advance(31)
            return await engine.expire(s.session_id)

        session = run(scenario())
        assert session.skipped == ["item1"]
        assert session.completed == []
        assert session.current.item_id == "item2"

    def test_early_expiry_is_noop(self):
        engine, _, _, now = make_engine()

        async def scenario():
            s = await started(engine)
            now.advance(10)
            before = engine.get_state(s.session_id)
            after = await engine.expire(s.session_id)
            return before, after

        before, after = run(scenario())
        assert after is before

    def test_stale_expiry_after_bid_is_noop(self):
        engine, _, _, now = make_engine()

        async def scenario():
            s = await started(engine)
            old_start = s.current.start_time
            now.advance(29)
            await engine.place_bid(s.session_id, "A", 5000)
            now.advance(5)
            session = await engine.expire(s.session_id, item_id="item1", started_at=old_start)
            return session

        session = run(scenario())
        assert session.current.item_id == "item1"
        assert session.current.current_bidder == "A"
        assert session.completed == []

    def test_duplicate_expiry_settles_once(self):
        engine, directory, _, now = make_engine()

        async def scenario():
            s = await started(engine)
            await engine.place_bid(s.session_id, "A", 5000)
            start = engine.get_state(s.session_id).current.start_time
            now.advance(31)
            await engine.expire(s.session_id, item_id="item1", started_at=start)
            await engine.expire(s.session_id, item_id="item1", started_at=start)
            await engine.get_time_left(s.session_id)
            return engine.get_state(s.session_id)

        session = run(scenario())
        assert len(session.completed) == 1
        assert directory.get_budget("A") == 995_000

    def test_concurrent_duplicate_expiry(self):
        engine, directory, _, now = make_engine()

        async def scenario():
            s = await started(engine)
            await engine.place_bid(s.session_id, "A", 5000)
            start = engine.get_state(s.session_id).current.start_time
            now.advance(31)
            await asyncio.gather(*[
                engine.expire(s.session_id, item_id="item1", started_at=start)
                for _ in range(5)
            ])
            return engine.get_state(s.session_id)

        session = run(scenario())
        assert len(session.completed) == 1
        assert directory.get_budget("A") == 995_000

    def test_last_item_expiry_completes_session(self):
        engine, _, publisher, now = make_engine(items=[
            CatalogItem("only", "Only", rating=50),
        ])

        async def scenario():
            s = await started(engine)
            now.advance(31)
            return await engine.expire(s.session_id)

        session = run(scenario())
        assert session.status == SessionStatus.COMPLETED
        assert session.current is None
        assert session.skipped == ["only"]
        assert event_types(publisher, session.session_id)[-1] == EventType.SESSION_COMPLETED

    def test_winner_short_at_settlement_closes_unsold(self):
        engine, directory, _, now = make_engine()

        async def scenario():
            s = await started(engine)
            await engine.place_bid(s.session_id, "A", 5000)
            directory.debit("A", 998_000)  # spent in another session
            now.advance(31)
            return await engine.expire(s.session_id)

        session = run(scenario())
        assert session.completed == []
        assert session.skipped == ["item1"]
        assert directory.get_budget("A") == 2000


# =============================================================================
# Skip Votes
# =============================================================================


class TestSkip:

    def test_unanimous_skip(self):
        engine, _, publisher, _ = make_engine()

        async def scenario():
            s = await started(engine)
            first = await engine.vote_skip(s.session_id, "A")
            assert first.skip_votes == {"A"}
            assert first.current.item_id == "item1"
            return await engine.vote_skip(s.session_id, "B")

        session = run(scenario())
        assert session.skipped == ["item1"]
        assert session.skip_votes == set()
        assert session.current.item_id == "item2"
        assert session.completed == []
        assert EventType.ITEM_SKIPPED in event_types(publisher, session.session_id)

    def test_double_vote_rejected(self):
        engine, _, _, _ = make_engine()

        async def scenario():
            s = await started(engine)
            await engine.vote_skip(s.session_id, "A")
            with pytest.raises(StateConflict):
                await engine.vote_skip(s.session_id, "A")
            return engine.get_state(s.session_id)

        session = run(scenario())
        assert session.skip_votes == {"A"}
        assert session.current.item_id == "item1"

    def test_skip_with_bid_sells_to_high_bidder(self):
        engine, directory, _, _ = make_engine()

        async def scenario():
            s = await started(engine)
            await engine.place_bid(s.session_id, "B", 5000)
            await engine.vote_skip(s.session_id, "A")
            return await engine.vote_skip(s.session_id, "B")

        session = run(scenario())
        assert session.completed[0].winner_id == "B"
        assert directory.get_budget("B") == 995_000

    def test_non_participant_vote(self):
        engine, _, _, _ = make_engine()

        async def scenario():
            s = await started(engine)
            with pytest.raises(PermissionDenied):
                await engine.vote_skip(s.session_id, "C")

        run(scenario())


# =============================================================================
# Host Controls
# =============================================================================


class TestHostControls:

    def test_pause_freezes_and_resume_restarts(self):
        engine, _, _, now = make_engine()

        async def scenario():
            s = await started(engine)
            now.advance(12)
            paused = await engine.pause(s.session_id, "A")
            assert paused.status == SessionStatus.PAUSED
            assert await engine.get_time_left(s.session_id) == 18
            now.advance(500)
            assert await engine.get_time_left(s.session_id) == 18
            assert engine.get_state(s.session_id).current.item_id == "item1"
            resumed = await engine.resume(s.session_id, "A")
            assert resumed.status == SessionStatus.ACTIVE
            return await engine.get_time_left(s.session_id)

        assert run(scenario()) == 30

    def test_pause_resume_host_only_and_status_checked(self):
        engine, _, _, _ = make_engine()

        async def scenario():
            s = await started(engine)
            with pytest.raises(PermissionDenied):
                await engine.pause(s.session_id, "B")
            with pytest.raises(StateConflict):
                await engine.resume(s.session_id, "A")
            await engine.pause(s.session_id, "A")
            with pytest.raises(StateConflict):
                await engine.pause(s.session_id, "A")
            with pytest.raises(PermissionDenied):
                await engine.resume(s.session_id, "B")

        run(scenario())

    def test_paused_bid_is_kept(self):
        engine, _, _, now = make_engine()

        async def scenario():
            s = await started(engine)
            await engine.place_bid(s.session_id, "A", 5000)
            await engine.pause(s.session_id, "A")
            now.advance(100)
            await engine.resume(s.session_id, "A")
            return engine.get_state(s.session_id)

        session = run(scenario())
        assert session.current.current_bidder == "A"
        assert session.completed == []

    def test_end_discards_pending_bid(self):
        engine, directory, publisher, _ = make_engine()

        async def scenario():
            s = await started(engine)
            await engine.place_bid(s.session_id, "A", 8000)
            return await engine.end(s.session_id, "A")

        session = run(scenario())
        assert session.status == SessionStatus.COMPLETED
        assert session.current is None
        assert session.completed == []
        assert directory.get_budget("A") == 1_000_000
        assert session.skipped == ["item1", "item2", "item3"]
        last = publisher.history(session_topic(session.session_id))[-1]
        assert last.event_type == EventType.SESSION_COMPLETED
        assert last.data["discarded_bid"]["amount"] == 8000

    def test_end_pending_session(self):
        engine, _, _, _ = make_engine()

        async def scenario():
            s = await engine.create_session("Friday", 1000, "A", config=CONFIG)
            return await engine.end(s.session_id, "A")

        assert run(scenario()).status == SessionStatus.COMPLETED

    def test_end_rules(self):
        engine, _, _, _ = make_engine()

        async def scenario():
            s = await started(engine)
            with pytest.raises(PermissionDenied):
                await engine.end(s.session_id, "B")
            await engine.end(s.session_id, "A")
            with pytest.raises(StateConflict):
                await engine.end(s.session_id, "A")
            with pytest.raises(StateConflict):
                await engine.place_bid(s.session_id, "A", 5000)

        run(scenario())

    def test_advance_settles_immediately(self):
        engine, directory, _, _ = make_engine()

        async def scenario():
            s = await started(engine)
            await engine.place_bid(s.session_id, "B", 5000)
            with pytest.raises(PermissionDenied):
                await engine.advance(s.session_id, "B")
            return await engine.advance(s.session_id, "A")

        session = run(scenario())
        assert session.completed[0].item_id == "item1"
        assert directory.get_budget("B") == 995_000
        assert directory.get_wins("B")[0].session_id == session.session_id
        assert session.current.item_id == "item2"

    def test_delete(self):
        engine, _, publisher, now = make_engine()

        seen = []

        async def scenario():
            s = await started(engine)
            publisher.subscribe(session_topic(s.session_id), seen.append)
            with pytest.raises(PermissionDenied):
                await engine.delete(s.session_id, "B")
            await engine.delete(s.session_id, "A")
            return s.session_id

        sid = run(scenario())
        with pytest.raises(NotFound):
            engine.get_state(sid)
        assert seen[-1].event_type == EventType.SESSION_DELETED
        assert seen[-1].timestamp == now.t
        assert seen[-1].snapshot is None
        assert publisher.history(session_topic(sid)) == []
        assert engine._clocks == {}

    def test_list_sessions(self):
        engine, _, _, _ = make_engine()

        async def scenario():
            a = await engine.create_session("A's", 1000, "A", config=CONFIG)
            b = await engine.create_session("B's", 1000, "B", config=CONFIG)
            await engine.end(b.session_id, "B")
            return a, b

        a, b = run(scenario())
        assert [s.session_id for s in engine.list_sessions()] == [a.session_id]
        assert len(engine.list_sessions(include_completed=True)) == 2


# =============================================================================
# Second Round
# =============================================================================


class TestSecondRound:

    def test_skipped_items_rerun_once(self):
        engine, _, publisher, now = make_engine()
        rerun = SessionConfig(
            bid_duration=30, min_bid_increment=1000, auto_shuffle=False, rerun_skipped=True
        )

        async def scenario():
            s = await engine.create_session("Friday", 1000, "A", config=rerun)
            await engine.join(s.session_id, "B")
            await engine.start(s.session_id, "A")
            sid = s.session_id
            await engine.place_bid(sid, "A", 5000)
            for _ in range(3):
                now.advance(31)
                await engine.get_time_left(sid)
            mid = engine.get_state(sid)
            assert mid.round == 2
            assert mid.status == SessionStatus.ACTIVE
            for _ in range(2):
                now.advance(31)
                await engine.get_time_left(sid)
            return engine.get_state(sid)

        session = run(scenario())
        assert session.status == SessionStatus.COMPLETED
        assert [e.item_id for e in session.completed] == ["item1"]
        assert sorted(session.skipped) == ["item2", "item3"]
        assert EventType.ROUND_STARTED in event_types(publisher, session.session_id)
