"""
Session Registry: Live Metering Sessions
========================================

PURPOSE:
    Process-local map of user_id -> MeteringSession. At most one live
    session per user; a newer start replaces the older one after its timer
    has been cancelled and awaited.

    The registry is an explicit object created in the application lifespan
    (``app.state.session_registry``) and handed to the metering engine.
    ``shutdown()`` drains every timer so no task outlives the app.

SINGLE-INSTANCE:
    Sessions live in this process only. Running more than one worker would
    let two processes meter the same user; main.py refuses to start with
    WEB_CONCURRENCY > 1.

PHASE: ST-04 - Metering
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from app.core.timeutil import utcnow

logger = logging.getLogger(__name__)

EventSink = Callable[[dict], Awaitable[None]]


@dataclass(eq=False)
class MeteringSession:
    """Transient per-user timer state. Never persisted itself."""

    user_id: str
    connection_id: str
    subscription_id: str
    seconds_at_start: int
    cycle_started_at: Optional[datetime]
    sink: EventSink
    journal_id: Optional[str] = None
    seconds_consumed: int = 0
    started_at: datetime = field(default_factory=utcnow)
    task: Optional[asyncio.Task] = None
    closed: bool = False


class _UserLock:
    """A lock plus the number of coroutines holding or waiting for it."""

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class SessionRegistry:
    """Keyed collection of live sessions, one per user."""

    def __init__(self) -> None:
        self._sessions: Dict[str, MeteringSession] = {}
        self._user_locks: Dict[str, _UserLock] = {}

    @asynccontextmanager
    async def user_lock(self, user_id: str) -> AsyncIterator[None]:
        """Serialize start/stop for one user.

        The lock is dropped once nobody holds or waits for it.
        """
        entry = self._user_locks.get(user_id)
        if entry is None:
            entry = self._user_locks[user_id] = _UserLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._user_locks[user_id]

    @property
    def locked_users(self) -> int:
        return len(self._user_locks)

    def get(self, user_id: str) -> Optional[MeteringSession]:
        return self._sessions.get(user_id)

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    async def start_session(self, session: MeteringSession) -> Optional[MeteringSession]:
        """Install ``session`` for its user, cancelling any existing timer first.

        Returns the superseded session, or None.
        """
        previous = self._sessions.get(session.user_id)
        if previous is not None and previous is not session:
            await self._cancel_timer(previous)
            logger.info(
                "metering_session_superseded",
                extra={"user_id": session.user_id, "old_connection_id": previous.connection_id},
            )
        self._sessions[session.user_id] = session
        return previous if previous is not session else None

    async def end_session(self, user_id: str) -> Optional[MeteringSession]:
        """Cancel and remove the user's session. No-op (returns None) when absent."""
        session = self._sessions.pop(user_id, None)
        if session is not None:
            await self._cancel_timer(session)
        return session

    def discard(self, session: MeteringSession) -> bool:
        """Remove ``session`` if it is still the registered one (self-termination path)."""
        if self._sessions.get(session.user_id) is session:
            del self._sessions[session.user_id]
            return True
        return False

    async def shutdown(self) -> List[MeteringSession]:
        """Cancel and drain every timer. Returns the drained sessions."""
        drained = list(self._sessions.values())
        self._sessions.clear()
        for session in drained:
            await self._cancel_timer(session)
        if drained:
            logger.info("metering_registry_drained", extra={"count": len(drained)})
        return drained

    @staticmethod
    async def _cancel_timer(session: MeteringSession) -> None:
        task = session.task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
