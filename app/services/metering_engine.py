"""
Metering Engine: Real-Time Talk-Time Deduction
==============================================

PURPOSE:
    Runs one timer per live call. Every tick re-reads the ledger, takes
    exactly one second off ``seconds``, persists it (compare-and-swap plus
    journal progress in one transaction) and pushes a ``progress`` event.
    When the balance reaches zero the session ends with ``time-up``.

    Whatever terminates a session (exhaustion, explicit end, connection
    loss, a newer start, a server error) funnels through ``_close()``,
    which reconciles consumed seconds into minute balances exactly once.

EVENTS (dicts handed to the session's sink):
    {"type": "started",  "seconds": N}
    {"type": "progress", "seconds": N}
    {"type": "ended",    "reason": "time-up" | "user-ended"}
    {"type": "error",    "message": str}

CYCLE MARKER:
    A session remembers the ledger's ``subscription_started_at``. If a tick
    sees a different value, a purchase or expiry reset the balance mid-call;
    consumption restarts from 0 against the fresh cycle. Reconciliation
    re-checks the marker, so seconds from a replaced cycle are never
    debited from the fresh grant.

THREADING:
    Ledger and journal I/O runs through run_sync(). A session task still
    awaits each tick before sleeping again, so ticks stay sequential.

PHASE: ST-04 - Metering
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Optional

from app.config import settings
from app.core.async_utils import run_sync
from app.core.structured_logging import user_id_var
from app.core.timeutil import as_utc
from app.models.metering import (
    END_REASON_DISCONNECTED,
    END_REASON_ERROR,
    END_REASON_RECOVERED,
    END_REASON_SHUTDOWN,
    END_REASON_SUPERSEDED,
    END_REASON_TIME_UP,
    END_REASON_USER_ENDED,
)
from app.models.subscription import UserSubscription
from app.services.ledger_store import LedgerConflictError, LedgerStore
from app.services.metering_journal import MeteringJournal
from app.services.reconciliation import reconcile_consumption
from app.services.session_registry import EventSink, MeteringSession, SessionRegistry
from app.services.tick_clock import AsyncioTickClock, TickClock

logger = logging.getLogger(__name__)

EVENT_STARTED = "started"
EVENT_PROGRESS = "progress"
EVENT_ENDED = "ended"
EVENT_ERROR = "error"

REASON_TIME_UP = END_REASON_TIME_UP
REASON_USER_ENDED = END_REASON_USER_ENDED

MSG_NO_SUBSCRIPTION = "No active subscription found"
MSG_NO_SECONDS = "No seconds available for call"
MSG_SERVER_ERROR = "Metering stopped due to a server error"


def started_event(seconds: int) -> dict:
    return {"type": EVENT_STARTED, "seconds": seconds}


def progress_event(seconds: int) -> dict:
    return {"type": EVENT_PROGRESS, "seconds": seconds}


def ended_event(reason: str) -> dict:
    return {"type": EVENT_ENDED, "reason": reason}


def error_event(message: str) -> dict:
    return {"type": EVENT_ERROR, "message": message}


@dataclass(frozen=True)
class TickOutcome:
    """Result of one tick."""

    seconds: int
    decremented: bool
    record_missing: bool = False


class MeteringEngine:
    """Per-user talk-time metering on top of the session registry and ledger."""

    def __init__(
        self,
        store: LedgerStore,
        registry: SessionRegistry,
        journal: MeteringJournal,
        clock: Optional[TickClock] = None,
        tick_interval_s: Optional[float] = None,
        write_retries: Optional[int] = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._journal = journal
        self._clock = clock or AsyncioTickClock()
        self._tick_interval_s = tick_interval_s if tick_interval_s is not None else settings.tick_interval_s
        self._write_retries = max(1, write_retries if write_retries is not None else settings.ledger_write_retries)

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def active_sessions(self) -> int:
        return self._registry.active_count

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def recover_open_sessions(self) -> int:
        """Fold consumption of journal entries left open by a crash into the ledger.

        Entries whose cycle was reset since the crash are closed without a
        debit. Returns the number of entries recovered.
        """
        recovered = 0
        for entry in self._journal.open_entries():
            try:
                record = self._reconcile(entry.subscription_id, entry.seconds_consumed, entry.cycle_started_at)
                self._journal.close(entry.id, END_REASON_RECOVERED)
                recovered += 1
                logger.warning(
                    "metering_session_recovered",
                    extra={
                        "journal_id": entry.id,
                        "user_id": entry.user_id,
                        "subscription_id": entry.subscription_id,
                        "seconds_applied": entry.seconds_consumed if record is not None else 0,
                    },
                )
            except Exception:
                logger.exception("metering_recovery_failed", extra={"journal_id": entry.id})
        return recovered

    async def shutdown(self) -> None:
        """Stop every live timer and reconcile what it consumed."""
        for session in await self._registry.shutdown():
            await self._close(session, END_REASON_SHUTDOWN)

    # ------------------------------------------------------------------
    # Protocol operations
    # ------------------------------------------------------------------

    async def start_session(
        self,
        user_id: str,
        connection_id: str,
        sink: EventSink,
    ) -> Optional[MeteringSession]:
        """Start metering for ``user_id``; any live session is ended first.

        Emits ``started`` on success, or ``error`` when the user has no
        subscription or no seconds left. Returns the new session or None.
        """
        async with self._registry.user_lock(user_id):
            previous = await self._registry.end_session(user_id)
            if previous is not None:
                await self._close(previous, END_REASON_SUPERSEDED)
                await self._emit(previous, ended_event(REASON_USER_ENDED))

            try:
                record = await run_sync(self._store.get_for_user, user_id)
            except Exception:
                logger.exception("metering_start_read_failed", extra={"user_id": user_id})
                await self._send(sink, error_event(MSG_SERVER_ERROR), user_id)
                return None

            if record is None:
                await self._send(sink, error_event(MSG_NO_SUBSCRIPTION), user_id)
                return None
            if record.seconds <= 0:
                await self._send(sink, error_event(MSG_NO_SECONDS), user_id)
                return None

            cycle_marker = as_utc(record.subscription_started_at)
            try:
                journal_id = await run_sync(
                    partial(
                        self._journal.open,
                        user_id=user_id,
                        subscription_id=record.id,
                        connection_id=connection_id,
                        seconds_at_start=record.seconds,
                        cycle_started_at=cycle_marker,
                    )
                )
            except Exception:
                logger.exception("metering_journal_open_failed", extra={"user_id": user_id})
                await self._send(sink, error_event(MSG_SERVER_ERROR), user_id)
                return None

            session = MeteringSession(
                user_id=user_id,
                connection_id=connection_id,
                subscription_id=record.id,
                seconds_at_start=record.seconds,
                cycle_started_at=cycle_marker,
                sink=sink,
                journal_id=journal_id,
            )
            await self._registry.start_session(session)
            await self._emit(session, started_event(record.seconds))
            session.task = asyncio.create_task(self._run(session), name=f"metering:{user_id}")

            logger.info(
                "metering_session_started",
                extra={
                    "user_id": user_id,
                    "connection_id": connection_id,
                    "subscription_id": record.id,
                    "seconds": record.seconds,
                },
            )
            return session

    async def end_session(self, user_id: str, sink: EventSink) -> bool:
        """Explicit end: stop, reconcile, then answer ``ended``/``user-ended``.

        The answer goes out even when no session was live, so a repeated
        end is harmless. Returns True if a live session was stopped.
        """
        stopped = await self._stop(user_id, END_REASON_USER_ENDED)
        await self._send(sink, ended_event(REASON_USER_ENDED), user_id)
        return stopped

    async def handle_disconnect(self, user_id: str, connection_id: str) -> bool:
        """Connection loss: stop and reconcile silently.

        Only the session bound to ``connection_id`` is stopped; a session
        started from a newer connection keeps running.
        """
        return await self._stop(user_id, END_REASON_DISCONNECTED, connection_id=connection_id)

    async def _stop(self, user_id: str, reason: str, connection_id: Optional[str] = None) -> bool:
        async with self._registry.user_lock(user_id):
            session = self._registry.get(user_id)
            if session is None:
                return False
            if connection_id is not None and session.connection_id != connection_id:
                return False
            await self._registry.end_session(user_id)
            await self._close(session, reason)
            return True

    # ------------------------------------------------------------------
    # Tick loop
    # ------------------------------------------------------------------

    async def _run(self, session: MeteringSession) -> None:
        token = user_id_var.set(session.user_id)
        try:
            while not session.closed:
                await self._clock.sleep(self._tick_interval_s)
                if session.closed:
                    return

                try:
                    outcome = await run_sync(self._tick, session)
                except Exception:
                    logger.exception(
                        "metering_tick_failed",
                        extra={
                            "user_id": session.user_id,
                            "subscription_id": session.subscription_id,
                            "seconds_consumed": session.seconds_consumed,
                        },
                    )
                    await self._terminate(session, END_REASON_ERROR)
                    await self._emit(session, error_event(MSG_SERVER_ERROR))
                    return

                if outcome.record_missing:
                    logger.warning(
                        "metering_record_missing",
                        extra={"user_id": session.user_id, "subscription_id": session.subscription_id},
                    )
                    await self._terminate(session, END_REASON_ERROR)
                    await self._emit(session, error_event(MSG_NO_SUBSCRIPTION))
                    return

                if outcome.decremented:
                    await self._emit(session, progress_event(outcome.seconds))

                if outcome.seconds <= 0:
                    await self._terminate(session, END_REASON_TIME_UP)
                    await self._emit(session, ended_event(REASON_TIME_UP))
                    return
        finally:
            user_id_var.reset(token)

    def _tick(self, session: MeteringSession) -> TickOutcome:
        """Read, decrement by one, persist. Runs in a worker thread."""
        for attempt in range(self._write_retries):
            record = self._store.get(session.subscription_id)
            if record is None:
                return TickOutcome(seconds=0, decremented=False, record_missing=True)

            marker = as_utc(record.subscription_started_at)
            if marker != session.cycle_started_at:
                logger.info(
                    "metering_cycle_reset",
                    extra={
                        "user_id": session.user_id,
                        "seconds_consumed_discarded": session.seconds_consumed,
                        "seconds": record.seconds,
                    },
                )
                session.seconds_consumed = 0
                session.cycle_started_at = marker

            if record.seconds <= 0:
                return TickOutcome(seconds=0, decremented=False)

            record.seconds -= 1
            try:
                self._store.persist_tick(
                    record,
                    session.journal_id,
                    session.seconds_consumed + 1,
                    cycle_started_at=session.cycle_started_at,
                )
            except LedgerConflictError:
                logger.info(
                    "metering_tick_conflict",
                    extra={"user_id": session.user_id, "attempt": attempt + 1},
                )
                continue

            session.seconds_consumed += 1
            return TickOutcome(seconds=record.seconds, decremented=True)

        raise LedgerConflictError(session.subscription_id, -1)

    # ------------------------------------------------------------------
    # Termination and reconciliation
    # ------------------------------------------------------------------

    async def _terminate(self, session: MeteringSession, reason: str) -> None:
        """Self-termination from inside the tick task."""
        self._registry.discard(session)
        await self._close(session, reason)

    async def _close(self, session: MeteringSession, reason: str) -> Optional[UserSubscription]:
        """Reconcile and close the journal entry. Runs at most once per session."""
        if session.closed:
            return None
        session.closed = True
        return await run_sync(self._settle, session, reason)

    def _settle(self, session: MeteringSession, reason: str) -> Optional[UserSubscription]:
        record = None
        try:
            record = self._reconcile(session.subscription_id, session.seconds_consumed, session.cycle_started_at)
        except Exception:
            logger.exception(
                "metering_reconcile_failed",
                extra={
                    "user_id": session.user_id,
                    "subscription_id": session.subscription_id,
                    "seconds_consumed": session.seconds_consumed,
                },
            )

        if session.journal_id is not None:
            try:
                self._journal.close(session.journal_id, reason, seconds_consumed=session.seconds_consumed)
            except Exception:
                logger.exception("metering_journal_close_failed", extra={"journal_id": session.journal_id})

        logger.info(
            "metering_session_ended",
            extra={
                "user_id": session.user_id,
                "connection_id": session.connection_id,
                "reason": reason,
                "seconds_consumed": session.seconds_consumed,
                "seconds_at_start": session.seconds_at_start,
            },
        )
        return record

    def _reconcile(
        self,
        subscription_id: str,
        seconds_consumed: int,
        cycle_started_at: Optional[datetime],
    ) -> Optional[UserSubscription]:
        """Debit ``seconds_consumed`` from the record if it is still in the same cycle.

        Returns the saved record, or None when nothing was debited.
        """
        if seconds_consumed <= 0:
            return None

        for _ in range(self._write_retries):
            record = self._store.get(subscription_id)
            if record is None:
                return None
            if as_utc(record.subscription_started_at) != as_utc(cycle_started_at):
                logger.info(
                    "metering_reconcile_skipped_cycle_reset",
                    extra={"subscription_id": subscription_id, "seconds_consumed_discarded": seconds_consumed},
                )
                return None
            balance = reconcile_consumption(record.available_minutes, record.extra_minutes, seconds_consumed)
            record.available_minutes = balance.available_minutes
            record.extra_minutes = balance.extra_minutes
            record.seconds = balance.seconds
            try:
                return self._store.save(record)
            except LedgerConflictError:
                continue

        raise LedgerConflictError(subscription_id, -1)

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    async def _emit(self, session: MeteringSession, event: dict) -> None:
        await self._send(session.sink, event, session.user_id)

    @staticmethod
    async def _send(sink: EventSink, event: dict, user_id: str) -> None:
        """Deliver an event; transport failures are logged, never raised."""
        try:
            await sink(event)
        except Exception as exc:
            logger.warning(
                "metering_emit_failed",
                extra={"user_id": user_id, "event_type": event.get("type"), "error": str(exc)},
            )
