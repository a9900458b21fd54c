"""
Ledger Store: Subscription Record Persistence
=============================================

PURPOSE:
    Reads and writes UserSubscription rows. Every write is a whole-record
    compare-and-swap on ``version``: the UPDATE only matches when the row
    still carries the version the caller read. A concurrent writer (a tick
    racing a purchase, say) therefore surfaces as LedgerConflictError
    instead of a silent lost update, and the caller re-reads and retries.
    A busy SQLite file (another writer holding the lock) is retried with
    jittered backoff before the write fails.

    Reads return detached snapshots; mutating one has no effect until it
    is passed back to save().

PHASE: ST-02 - Persistent ledger
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, ContextManager, Optional

from sqlalchemy import update
from sqlmodel import Session

from app.core.database import get_session_context, sqlite_retry
from app.core.errors import SelfTalkError
from app.core.timeutil import utcnow
from app.models.metering import MeteringJournalEntry
from app.models.subscription import UserSubscription
from app.models.user import User

logger = logging.getLogger(__name__)

# Columns never rewritten by save()
_IMMUTABLE_COLUMNS = {"id", "user_id", "version", "created_at"}


class LedgerConflictError(SelfTalkError):
    """The record changed between read and write."""

    def __init__(self, subscription_id: str, expected_version: int) -> None:
        super().__init__(
            "ST-LDG-002",
            detail=f"subscription {subscription_id} no longer at version {expected_version}",
            context={"subscription_id": subscription_id, "expected_version": expected_version},
        )
        self.subscription_id = subscription_id


class LedgerRecordMissingError(SelfTalkError):
    """The record was deleted between read and write."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(
            "ST-SUB-001",
            detail=f"subscription {subscription_id} not found",
            context={"subscription_id": subscription_id},
        )
        self.subscription_id = subscription_id


class LedgerStore:
    """Subscription ledger access with optimistic concurrency."""

    def __init__(self, session_factory: Callable[[], ContextManager[Session]] = get_session_context) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, subscription_id: str) -> Optional[UserSubscription]:
        with self._session_factory() as db:
            return db.get(UserSubscription, subscription_id)

    def get_for_user(self, user_id: str) -> Optional[UserSubscription]:
        """Resolve the user's current subscription reference."""
        with self._session_factory() as db:
            user = db.get(User, user_id)
            if user is None or not user.current_subscription_id:
                return None
            return db.get(UserSubscription, user.current_subscription_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_for_user(self, record: UserSubscription) -> UserSubscription:
        """Insert ``record`` and point the owning user's reference at it.

        Raises LedgerConflictError if the user already holds a subscription
        (a concurrent purchase won the race); the caller re-reads and updates.
        """
        with self._session_factory() as db:
            user = db.get(User, record.user_id)
            if user is None:
                raise SelfTalkError("ST-USR-001", detail=f"user {record.user_id} not found")
            if user.current_subscription_id:
                raise LedgerConflictError(user.current_subscription_id, 0)

            now = utcnow()
            record.version = 1
            record.created_at = now
            record.updated_at = now
            db.add(record)
            db.flush()

            user.current_subscription_id = record.id
            user.updated_at = now
            db.add(user)
            db.commit()

        logger.info(
            "ledger_created",
            extra={"user_id": record.user_id, "subscription_id": record.id, "plan": record.name},
        )
        return record

    def save(self, record: UserSubscription) -> UserSubscription:
        """Compare-and-swap the whole record against ``record.version``."""
        def _write() -> None:
            with self._session_factory() as db:
                self._cas_update(db, record)
                db.commit()

        sqlite_retry(_write)
        self._bump(record)
        return record

    def persist_tick(
        self,
        record: UserSubscription,
        journal_id: Optional[str],
        seconds_consumed: int,
        cycle_started_at: Optional[datetime] = None,
    ) -> UserSubscription:
        """Write a tick and its journal progress in one transaction."""
        def _write() -> None:
            with self._session_factory() as db:
                self._cas_update(db, record)
                if journal_id is not None:
                    db.execute(
                        update(MeteringJournalEntry)
                        .where(MeteringJournalEntry.id == journal_id)
                        .values(seconds_consumed=seconds_consumed, cycle_started_at=cycle_started_at)
                    )
                db.commit()

        sqlite_retry(_write)
        self._bump(record)
        return record

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _cas_update(db: Session, record: UserSubscription) -> None:
        now = utcnow()
        values = {
            key: value
            for key, value in record.model_dump().items()
            if key not in _IMMUTABLE_COLUMNS
        }
        values["version"] = record.version + 1
        values["updated_at"] = now

        result = db.execute(
            update(UserSubscription)
            .where(UserSubscription.id == record.id)
            .where(UserSubscription.version == record.version)
            .values(**values)
        )
        if result.rowcount == 1:
            return

        db.rollback()
        if db.get(UserSubscription, record.id) is None:
            raise LedgerRecordMissingError(record.id)
        raise LedgerConflictError(record.id, record.version)

    @staticmethod
    def _bump(record: UserSubscription) -> None:
        record.version += 1
        record.updated_at = utcnow()
