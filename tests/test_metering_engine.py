"""
Metering Engine Tests
=====================

Drives MeteringEngine on a ManualTickClock so every tick is explicit.

Coverage:
  - Start preconditions (no subscription, zero seconds)
  - Per-tick decrement and progress stream, exhaustion exactly once
  - Explicit end, idempotent end, zero-tick round trip
  - Supersession by a second start (single timer)
  - Connection-scoped disconnect
  - Top-up and plan switch during a live session, and a cycle reset
    landing just before the session ends
  - Ledger I/O kept off the event loop thread
  - Record deleted mid-call, persistence failure, sink failure
  - Tick write conflicts (compare-and-swap retry)
  - Journal bookkeeping, crash recovery, shutdown drain
"""

import asyncio
import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from app.core.database import get_session_context
from app.core.timeutil import utcnow
from app.models.metering import MeteringJournalEntry
from app.models.subscription import UserSubscription
from app.services.ledger_store import LedgerConflictError
from app.services.metering_engine import (
    MSG_NO_SECONDS,
    MSG_NO_SUBSCRIPTION,
    MSG_SERVER_ERROR,
    MeteringEngine,
)
from app.services.tick_clock import ManualTickClock


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return ManualTickClock()


@pytest.fixture
def engine(store, registry, journal, clock):
    return MeteringEngine(store, registry, journal, clock=clock, tick_interval_s=1.0, write_retries=3)


def _journal_entries(user_id: str) -> list:
    from sqlmodel import select

    with get_session_context() as db:
        return list(db.exec(select(MeteringJournalEntry).where(MeteringJournalEntry.user_id == user_id)).all())


# ---------------------------------------------------------------------------
# Start preconditions
# ---------------------------------------------------------------------------

class TestStartPreconditions:

    @pytest.mark.asyncio
    async def test_rejects_user_without_subscription(self, engine, registry, make_user, collector):
        user = make_user()
        session = await engine.start_session(user.id, "c1", collector)

        assert session is None
        assert collector.events == [{"type": "error", "message": MSG_NO_SUBSCRIPTION}]
        assert registry.get(user.id) is None
        assert _journal_entries(user.id) == []

    @pytest.mark.asyncio
    async def test_rejects_zero_seconds(self, engine, registry, store, make_user, make_ledger, collector):
        user = make_user()
        record = make_ledger(user, available=0, extra=0)

        session = await engine.start_session(user.id, "c1", collector)

        assert session is None
        assert collector.events == [{"type": "error", "message": MSG_NO_SECONDS}]
        assert registry.get(user.id) is None
        assert store.get(record.id).version == record.version

    @pytest.mark.asyncio
    async def test_started_reports_current_seconds(self, engine, registry, make_user, make_ledger, collector):
        user = make_user()
        make_ledger(user, available=2)

        session = await engine.start_session(user.id, "c1", collector)

        assert session is not None
        assert collector.events == [{"type": "started", "seconds": 120}]
        assert registry.get(user.id) is session
        await engine.shutdown()


# ---------------------------------------------------------------------------
# Ticking
# ---------------------------------------------------------------------------

class TestTicking:

    @pytest.mark.asyncio
    async def test_each_tick_takes_exactly_one_second(self, engine, store, clock, make_user, make_ledger, collector):
        user = make_user()
        record = make_ledger(user, available=1)
        await engine.start_session(user.id, "c1", collector)

        await clock.advance(3)

        assert [e["seconds"] for e in collector.of_type("progress")] == [59, 58, 57]
        assert store.get(record.id).seconds == 57
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_exhaustion_stops_at_zero(self, engine, store, registry, journal, clock, make_user, make_ledger, collector):
        """available=2 -> 120 seconds; 125 ticks attempted, only 120 happen."""
        user = make_user()
        record = make_ledger(user, available=2, extra=0)
        await engine.start_session(user.id, "c1", collector)

        await clock.advance(125)

        progress = [e["seconds"] for e in collector.of_type("progress")]
        assert progress == list(range(119, -1, -1))
        assert collector.of_type("ended") == [{"type": "ended", "reason": "time-up"}]
        assert collector.events[-1] == {"type": "ended", "reason": "time-up"}
        assert clock.ticks_elapsed == 120
        assert registry.get(user.id) is None

        fresh = store.get(record.id)
        assert fresh.seconds == 0
        assert fresh.available_minutes == 0
        assert fresh.extra_minutes == 0
        assert fresh.total_minutes == 2

        entries = _journal_entries(user.id)
        assert len(entries) == 1
        assert entries[0].end_reason == "time-up"
        assert entries[0].seconds_consumed == 120
        assert entries[0].ended_at is not None

    @pytest.mark.asyncio
    async def test_last_second_ends_exactly_once(self, engine, clock, store, make_user, make_ledger, collector):
        user = make_user()
        make_ledger(user, available=1, seconds=1)
        await engine.start_session(user.id, "c1", collector)

        await clock.advance(3)

        assert collector.types == ["started", "progress", "ended"]
        assert collector.of_type("progress") == [{"type": "progress", "seconds": 0}]
        assert len(collector.of_type("ended")) == 1

    @pytest.mark.asyncio
    async def test_consumption_spills_into_extra_minutes(self, engine, clock, store, make_user, make_ledger, collector):
        user = make_user()
        record = make_ledger(user, available=0.5, extra=1)
        await engine.start_session(user.id, "c1", collector)

        await clock.advance(45)
        await engine.end_session(user.id, collector)

        fresh = store.get(record.id)
        assert fresh.available_minutes == 0
        assert fresh.extra_minutes == pytest.approx(0.75)
        assert fresh.seconds == 45

    @pytest.mark.asyncio
    async def test_zero_balance_at_tick_time_ends_without_decrement(
        self, engine, clock, store, make_user, make_ledger, collector
    ):
        user = make_user()
        record = make_ledger(user, available=1)
        await engine.start_session(user.id, "c1", collector)

        drained = store.get(record.id)
        drained.seconds = 0
        store.save(drained)

        await clock.advance(1)

        assert collector.of_type("progress") == []
        assert collector.of_type("ended") == [{"type": "ended", "reason": "time-up"}]
        assert store.get(record.id).seconds == 0

    @pytest.mark.asyncio
    async def test_ticks_and_reconciliation_run_off_the_loop_thread(
        self, engine, clock, store, make_user, make_ledger, collector
    ):
        user = make_user()
        make_ledger(user, available=1)
        loop_thread = threading.get_ident()
        threads = []
        real_persist, real_save = store.persist_tick, store.save

        def persist_spy(*args, **kwargs):
            threads.append(threading.get_ident())
            return real_persist(*args, **kwargs)

        def save_spy(record):
            threads.append(threading.get_ident())
            return real_save(record)

        await engine.start_session(user.id, "c1", collector)
        with patch.object(store, "persist_tick", side_effect=persist_spy), patch.object(
            store, "save", side_effect=save_spy
        ):
            await clock.advance(3)
            await engine.end_session(user.id, collector)

        assert len(threads) == 4
        assert loop_thread not in threads


# ---------------------------------------------------------------------------
# Explicit end / round trip / idempotence
# ---------------------------------------------------------------------------

class TestEndSession:

    @pytest.mark.asyncio
    async def test_end_after_ten_ticks(self, engine, clock, store, registry, make_user, make_ledger, collector):
        user = make_user()
        record = make_ledger(user, available=1, extra=0)
        await engine.start_session(user.id, "c1", collector)

        await clock.advance(10)
        stopped = await engine.end_session(user.id, collector)

        assert stopped is True
        assert collector.events[-1] == {"type": "ended", "reason": "user-ended"}
        assert registry.get(user.id) is None
        assert registry.locked_users == 0

        fresh = store.get(record.id)
        assert fresh.seconds == 50
        assert fresh.available_minutes == pytest.approx(50 / 60)
        assert fresh.total_minutes == 1

        # Timer really stopped
        await clock.advance(5)
        assert store.get(record.id).seconds == 50
        assert clock.pending == 0

    @pytest.mark.asyncio
    async def test_zero_tick_round_trip_leaves_ledger_unchanged(
        self, engine, store, make_user, make_ledger, collector
    ):
        user = make_user()
        record = make_ledger(user, available=1.5, extra=0.25)
        before = store.get(record.id)

        await engine.start_session(user.id, "c1", collector)
        await engine.end_session(user.id, collector)

        after = store.get(record.id)
        assert after.seconds == before.seconds == 105
        assert after.available_minutes == before.available_minutes
        assert after.extra_minutes == before.extra_minutes
        assert after.version == before.version

    @pytest.mark.asyncio
    async def test_double_end_is_idempotent(self, engine, clock, store, make_user, make_ledger, collector):
        user = make_user()
        record = make_ledger(user, available=1)
        await engine.start_session(user.id, "c1", collector)
        await clock.advance(7)

        assert await engine.end_session(user.id, collector) is True
        once = store.get(record.id)
        assert await engine.end_session(user.id, collector) is False
        twice = store.get(record.id)

        assert (twice.seconds, twice.available_minutes, twice.extra_minutes, twice.version) == (
            once.seconds, once.available_minutes, once.extra_minutes, once.version
        )
        assert collector.of_type("ended") == [
            {"type": "ended", "reason": "user-ended"},
            {"type": "ended", "reason": "user-ended"},
        ]

    @pytest.mark.asyncio
    async def test_end_without_session_still_answers(self, engine, make_user, collector):
        user = make_user()
        assert await engine.end_session(user.id, collector) is False
        assert collector.events == [{"type": "ended", "reason": "user-ended"}]


# ---------------------------------------------------------------------------
# Supersession and disconnects
# ---------------------------------------------------------------------------

class TestSupersession:

    @pytest.mark.asyncio
    async def test_back_to_back_starts_keep_a_single_timer(
        self, engine, clock, store, registry, make_user, make_ledger, make_collector
    ):
        user = make_user()
        record = make_ledger(user, available=1)
        first_sink, second_sink = make_collector(), make_collector()

        first, second = await asyncio.gather(
            engine.start_session(user.id, "c1", first_sink),
            engine.start_session(user.id, "c2", second_sink),
        )

        assert first.task.cancelled()
        assert registry.get(user.id) is second
        assert first_sink.types == ["started", "ended"]
        assert first_sink.events[-1] == {"type": "ended", "reason": "user-ended"}

        await clock.advance(5)

        assert store.get(record.id).seconds == 55
        assert [e["seconds"] for e in second_sink.of_type("progress")] == [59, 58, 57, 56, 55]
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_supersession_reconciles_previous_session(
        self, engine, clock, store, make_user, make_ledger, make_collector
    ):
        user = make_user()
        record = make_ledger(user, available=1)
        await engine.start_session(user.id, "c1", make_collector())
        await clock.advance(6)

        second_sink = make_collector()
        await engine.start_session(user.id, "c2", second_sink)

        assert second_sink.events == [{"type": "started", "seconds": 54}]
        assert store.get(record.id).available_minutes == pytest.approx(54 / 60)
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_disconnect_of_other_connection_is_ignored(
        self, engine, clock, store, registry, make_user, make_ledger, collector
    ):
        user = make_user()
        make_ledger(user, available=1)
        session = await engine.start_session(user.id, "c-new", collector)

        assert await engine.handle_disconnect(user.id, "c-old") is False
        assert registry.get(user.id) is session

        await clock.advance(2)
        assert [e["seconds"] for e in collector.of_type("progress")] == [59, 58]
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_disconnect_ends_silently_and_reconciles(
        self, engine, clock, store, registry, make_user, make_ledger, collector
    ):
        user = make_user()
        record = make_ledger(user, available=1)
        await engine.start_session(user.id, "c1", collector)
        await clock.advance(4)
        emitted = len(collector.events)

        assert await engine.handle_disconnect(user.id, "c1") is True

        assert len(collector.events) == emitted
        assert registry.get(user.id) is None
        assert store.get(record.id).available_minutes == pytest.approx(56 / 60)
        assert _journal_entries(user.id)[0].end_reason == "disconnected"


# ---------------------------------------------------------------------------
# Ledger changes during a live session
# ---------------------------------------------------------------------------

class TestConcurrentLedgerChanges:

    @pytest.mark.asyncio
    async def test_top_up_during_session(self, engine, clock, store, lifecycle, make_user, make_ledger, collector):
        user = make_user()
        record = make_ledger(user, available=1)
        await engine.start_session(user.id, "c1", collector)
        await clock.advance(10)

        lifecycle.add_minutes(user.id, 1)
        await clock.advance(1)

        assert collector.of_type("progress")[-1] == {"type": "progress", "seconds": 109}

        await engine.end_session(user.id, collector)
        fresh = store.get(record.id)
        assert fresh.extra_minutes == 1
        assert fresh.available_minutes == pytest.approx(1 - 11 / 60)
        assert fresh.seconds == 109
        assert fresh.total_minutes == 2

    @pytest.mark.asyncio
    async def test_plan_switch_resets_consumption(
        self, engine, clock, store, lifecycle, make_user, make_ledger, collector
    ):
        user = make_user()
        record = make_ledger(user, available=2)
        await engine.start_session(user.id, "c1", collector)
        await clock.advance(10)

        lifecycle.purchase_plan(user.id, "Premium")
        await clock.advance(5)

        assert collector.of_type("progress")[-1] == {"type": "progress", "seconds": 2995}

        await engine.end_session(user.id, collector)
        fresh = store.get(record.id)
        assert fresh.name == "Premium"
        assert fresh.available_minutes == pytest.approx(50 - 5 / 60)
        assert fresh.seconds == 2995
        assert fresh.total_minutes == 50

    @pytest.mark.asyncio
    async def test_end_right_after_plan_switch_debits_nothing(
        self, engine, clock, store, lifecycle, make_user, make_ledger, collector
    ):
        user = make_user()
        record = make_ledger(user, available=2)
        await engine.start_session(user.id, "c1", collector)
        await clock.advance(30)

        lifecycle.purchase_plan(user.id, "Premium")
        await engine.end_session(user.id, collector)

        fresh = store.get(record.id)
        assert fresh.available_minutes == 50
        assert fresh.seconds == 3000

    @pytest.mark.asyncio
    async def test_shutdown_right_after_plan_switch_debits_nothing(
        self, engine, clock, store, lifecycle, make_user, make_ledger, collector
    ):
        user = make_user()
        record = make_ledger(user, available=2, extra=1)
        await engine.start_session(user.id, "c1", collector)
        await clock.advance(12)

        lifecycle.purchase_plan(user.id, "Super")
        await engine.shutdown()

        fresh = store.get(record.id)
        assert fresh.available_minutes == 200
        assert fresh.extra_minutes == 1
        assert fresh.seconds == 201 * 60

    @pytest.mark.asyncio
    async def test_expiry_reset_then_new_start_debits_nothing(
        self, engine, clock, store, lifecycle, make_user, make_ledger, make_collector
    ):
        user = make_user()
        now = utcnow()
        record = make_ledger(
            user,
            name="Premium",
            available=2,
            started_at=now - timedelta(days=30),
            end_date=now + timedelta(days=1),
        )
        old_tab, new_tab = make_collector(), make_collector()
        await engine.start_session(user.id, "c1", old_tab)
        await clock.advance(30)

        assert lifecycle.check_and_apply_expiry(user.id, now=now + timedelta(days=2)).expired is True
        await engine.start_session(user.id, "c2", new_tab)

        assert old_tab.events[-1] == {"type": "ended", "reason": "user-ended"}
        assert new_tab.events == [{"type": "started", "seconds": 120}]
        fresh = store.get(record.id)
        assert fresh.name == "Free"
        assert fresh.available_minutes == 2
        assert fresh.seconds == 120
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_record_deleted_mid_call(self, engine, clock, registry, make_user, make_ledger, collector):
        user = make_user()
        record = make_ledger(user, available=1)
        await engine.start_session(user.id, "c1", collector)
        await clock.advance(2)

        with get_session_context() as db:
            db.delete(db.get(UserSubscription, record.id))
            db.commit()

        await clock.advance(1)

        assert collector.events[-1] == {"type": "error", "message": MSG_NO_SUBSCRIPTION}
        assert registry.get(user.id) is None
        assert clock.pending == 0

    @pytest.mark.asyncio
    async def test_tick_retries_after_write_conflict(self, engine, clock, store, make_user, make_ledger, collector):
        user = make_user()
        record = make_ledger(user, available=1)
        real_persist = store.persist_tick
        calls = {"n": 0}

        def racing_persist(rec, journal_id, seconds_consumed, cycle_started_at=None):
            calls["n"] += 1
            if calls["n"] == 1:
                # Another writer lands between the tick's read and its write
                store.save(store.get(rec.id))
            return real_persist(rec, journal_id, seconds_consumed, cycle_started_at=cycle_started_at)

        await engine.start_session(user.id, "c1", collector)
        with patch.object(store, "persist_tick", side_effect=racing_persist):
            await clock.advance(1)

        assert calls["n"] == 2
        assert collector.of_type("progress") == [{"type": "progress", "seconds": 59}]
        assert store.get(record.id).seconds == 59
        await engine.shutdown()


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:

    @pytest.mark.asyncio
    async def test_persistence_failure_tears_down_session(
        self, engine, clock, store, registry, make_user, make_ledger, collector
    ):
        user = make_user()
        record = make_ledger(user, available=1)
        await engine.start_session(user.id, "c1", collector)
        await clock.advance(3)

        with patch.object(store, "persist_tick", side_effect=RuntimeError("disk full")):
            await clock.advance(1)

        assert collector.events[-1] == {"type": "error", "message": MSG_SERVER_ERROR}
        assert registry.get(user.id) is None
        assert clock.pending == 0
        # Last persisted tick kept and reconciled
        fresh = store.get(record.id)
        assert fresh.seconds == 57
        assert fresh.available_minutes == pytest.approx(57 / 60)
        assert _journal_entries(user.id)[0].end_reason == "error"

    @pytest.mark.asyncio
    async def test_conflicts_exhausting_retries_become_server_error(
        self, engine, clock, store, registry, make_user, make_ledger, collector
    ):
        user = make_user()
        record = make_ledger(user, available=1)
        await engine.start_session(user.id, "c1", collector)

        with patch.object(store, "persist_tick", side_effect=LedgerConflictError(record.id, 1)):
            await clock.advance(1)

        assert collector.events[-1] == {"type": "error", "message": MSG_SERVER_ERROR}
        assert registry.get(user.id) is None

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_stop_metering(self, engine, clock, store, make_user, make_ledger):
        user = make_user()
        record = make_ledger(user, available=1)

        async def broken_sink(event: dict) -> None:
            if event["type"] == "progress":
                raise ConnectionError("socket gone")

        await engine.start_session(user.id, "c1", broken_sink)
        await clock.advance(3)

        assert store.get(record.id).seconds == 57
        await engine.shutdown()


# ---------------------------------------------------------------------------
# Journal, recovery, shutdown
# ---------------------------------------------------------------------------

class TestRecoveryAndShutdown:

    @pytest.mark.asyncio
    async def test_journal_tracks_live_consumption(self, engine, clock, make_user, make_ledger, collector):
        user = make_user()
        make_ledger(user, available=1)
        session = await engine.start_session(user.id, "c1", collector)
        await clock.advance(4)

        entry = _journal_entries(user.id)[0]
        assert entry.id == session.journal_id
        assert entry.seconds_at_start == 60
        assert entry.seconds_consumed == 4
        assert entry.ended_at is None
        await engine.shutdown()

    def test_recover_open_entries(self, engine, store, journal, make_user, make_ledger):
        user = make_user()
        record = make_ledger(user, available=2)
        journal_id = journal.open(user.id, record.id, "c1", 120, record.subscription_started_at)

        # Crashed process: ticks persisted, never reconciled
        live = store.get(record.id)
        live.seconds = 90
        store.persist_tick(live, journal_id, 30, cycle_started_at=record.subscription_started_at)

        assert engine.recover_open_sessions() == 1

        fresh = store.get(record.id)
        assert fresh.available_minutes == pytest.approx(1.5)
        assert fresh.seconds == 90
        entry = journal.get(journal_id)
        assert entry.end_reason == "recovered"
        assert entry.ended_at is not None
        assert journal.open_entries() == []

    def test_recovery_skips_entries_from_a_reset_cycle(self, engine, store, journal, make_user, make_ledger):
        user = make_user()
        record = make_ledger(user, available=50)
        old_cycle = utcnow() - timedelta(days=40)
        journal_id = journal.open(user.id, record.id, "c1", 120, old_cycle)
        with get_session_context() as db:
            entry = db.get(MeteringJournalEntry, journal_id)
            entry.seconds_consumed = 30
            db.add(entry)
            db.commit()

        assert engine.recover_open_sessions() == 1

        fresh = store.get(record.id)
        assert fresh.available_minutes == 50
        assert journal.get(journal_id).end_reason == "recovered"

    @pytest.mark.asyncio
    async def test_shutdown_reconciles_live_sessions(
        self, engine, clock, store, registry, make_user, make_ledger, collector
    ):
        user = make_user()
        record = make_ledger(user, available=2)
        await engine.start_session(user.id, "c1", collector)
        await clock.advance(5)

        await engine.shutdown()

        assert registry.active_count == 0
        fresh = store.get(record.id)
        assert fresh.seconds == 115
        assert fresh.available_minutes == pytest.approx(2 - 5 / 60)
        assert _journal_entries(user.id)[0].end_reason == "shutdown"
