"""
Metering Journal: Durable Session Progress
==========================================

PURPOSE:
    Persists one MeteringJournalEntry per metered call so that consumption
    survives a process crash. The ledger store updates ``seconds_consumed``
    in the same transaction as each tick (see LedgerStore.persist_tick).

STATE MACHINE:
    open (ended_at NULL) --> closed (ended_at set, end_reason recorded)

    Entries still open at startup are recovered by the metering engine.

PHASE: ST-05 - Crash recovery
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, ContextManager, List, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from app.core.database import get_session_context
from app.core.timeutil import utcnow
from app.models.metering import MeteringJournalEntry

logger = logging.getLogger(__name__)


class MeteringJournal:
    """Open/close bookkeeping for metered calls."""

    def __init__(self, session_factory: Callable[[], ContextManager[Session]] = get_session_context) -> None:
        self._session_factory = session_factory

    def open(
        self,
        user_id: str,
        subscription_id: str,
        connection_id: str,
        seconds_at_start: int,
        cycle_started_at: Optional[datetime],
    ) -> str:
        entry = MeteringJournalEntry(
            user_id=user_id,
            subscription_id=subscription_id,
            connection_id=connection_id,
            seconds_at_start=seconds_at_start,
            cycle_started_at=cycle_started_at,
        )
        with self._session_factory() as db:
            db.add(entry)
            db.commit()
        return entry.id

    def close(self, journal_id: str, reason: str, seconds_consumed: Optional[int] = None) -> None:
        values = {"ended_at": utcnow(), "end_reason": reason}
        if seconds_consumed is not None:
            values["seconds_consumed"] = seconds_consumed
        with self._session_factory() as db:
            db.execute(
                update(MeteringJournalEntry)
                .where(MeteringJournalEntry.id == journal_id)
                .where(MeteringJournalEntry.ended_at.is_(None))
                .values(**values)
            )
            db.commit()

    def get(self, journal_id: str) -> Optional[MeteringJournalEntry]:
        with self._session_factory() as db:
            return db.get(MeteringJournalEntry, journal_id)

    def open_entries(self) -> List[MeteringJournalEntry]:
        """Entries never closed (left behind by a crashed process)."""
        with self._session_factory() as db:
            stmt = (
                select(MeteringJournalEntry)
                .where(MeteringJournalEntry.ended_at.is_(None))
                .order_by(MeteringJournalEntry.started_at)
            )
            return list(db.exec(stmt).all())
