"""
Metering Journal Model
======================

Durable per-session record written alongside every metering tick.

A row is opened when a call starts and closed (``ended_at`` set) after
reconciliation. Rows still open at startup belong to a process that died
mid-call; their ``seconds_consumed`` is folded back into the ledger.

Phase: ST-05 - Crash recovery
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlmodel import Field, SQLModel

END_REASON_TIME_UP = "time-up"
END_REASON_USER_ENDED = "user-ended"
END_REASON_DISCONNECTED = "disconnected"
END_REASON_SUPERSEDED = "superseded"
END_REASON_ERROR = "error"
END_REASON_RECOVERED = "recovered"
END_REASON_SHUTDOWN = "shutdown"


class MeteringJournalEntry(SQLModel, table=True):
    """One metered call."""

    __tablename__ = "metering_sessions"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        max_length=36,
    )
    user_id: str = Field(index=True, max_length=36)
    subscription_id: str = Field(index=True, max_length=36)
    connection_id: str = Field(max_length=64)
    seconds_at_start: int = Field(default=0)
    seconds_consumed: int = Field(default=0)
    # Ledger subscription_started_at when the row was last written; a
    # different value at recovery time means the cycle was reset mid-call.
    cycle_started_at: Optional[datetime] = Field(default=None, nullable=True)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: Optional[datetime] = Field(default=None, nullable=True, index=True)
    end_reason: Optional[str] = Field(default=None, nullable=True, max_length=32)
