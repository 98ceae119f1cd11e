import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Sequence

from ..models import Message, SessionState

logger = logging.getLogger(__name__)


class SessionStore:
    """In-memory chat history per session id, bounded and evicted on idle.

    History only lives for the process lifetime. Every ``get``/``append``
    refreshes the session's last access time; ``evict`` drops sessions idle
    longer than ``timeout_seconds`` and is run periodically once ``start`` has
    been awaited.
    """

    def __init__(
        self,
        max_history_length: int = 20,
        timeout_seconds: float = 86400,
        cleanup_interval_seconds: float = 1800,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_history_length < 1:
            raise ValueError("max_history_length must be at least 1")
        self._max_history_length = max_history_length
        self._timeout = timeout_seconds
        self._interval = cleanup_interval_seconds
        self._clock = clock
        self._sessions: Dict[str, SessionState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._sweeper: asyncio.Task | None = None

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def _touch(self, session_id: str) -> SessionState:
        now = self._clock()
        session = self._sessions.get(session_id)
        if session is None:
            session = SessionState(session_id=session_id, last_accessed=now)
            self._sessions[session_id] = session
        session.last_accessed = now
        return session

    def get(self, session_id: str) -> List[Message]:
        """Return a copy of the session's history and refresh its last access.

        Args:
            session_id: Session identifier (str). Unknown ids create an empty session.

        Returns:
            List[Message]: Copy of the stored history; empty for new or blank ids.
        """
        if not session_id:
            return []
        return list(self._touch(session_id).messages)

    def append(self, session_id: str, new_messages: Sequence[Message]) -> None:
        """Append messages in order, then enforce the retention cap.

        When the cap is exceeded the most recent ``cap`` messages are kept. If
        the history holds a system message that would fall outside them, it is
        kept in front of the most recent ``cap - 1`` messages instead.

        Args:
            session_id: Session to update; created when absent.
            new_messages: Messages to append, in order. Empty input is a no-op.
        """
        if not session_id or not new_messages:
            return

        session = self._touch(session_id)
        messages = session.messages + list(new_messages)

        cap = self._max_history_length
        if len(messages) > cap:
            system_index = next(
                (i for i, m in enumerate(messages) if m.role == "system"), None
            )
            if system_index is not None and system_index < len(messages) - cap:
                recent = messages[-(cap - 1):] if cap > 1 else []
                messages = [messages[system_index]] + recent
            else:
                messages = messages[-cap:]

        session.messages = messages
        logger.info(
            "Updated session %s with %d new messages. Total: %d",
            session_id,
            len(new_messages),
            len(messages),
        )

    def lock(self, session_id: str) -> asyncio.Lock:
        """Return the lock serializing read-run-write cycles for a session.

        Args:
            session_id: Session identifier (str).

        Returns:
            asyncio.Lock: The same lock object for every call with this id.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def evict(self) -> int:
        """Remove sessions idle longer than the timeout.

        Returns:
            int: Number of sessions removed.
        """
        now = self._clock()
        expired = [
            sid
            for sid, session in self._sessions.items()
            if now - session.last_accessed > self._timeout
        ]
        for sid in expired:
            del self._sessions[sid]
            lock = self._locks.get(sid)
            if lock is not None and not lock.locked():
                del self._locks[sid]

        if expired:
            logger.info(
                "Removed %d inactive sessions. Active sessions: %d",
                len(expired),
                len(self._sessions),
            )
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        """Read-only counters for observability. Ages are idle minutes."""
        if not self._sessions:
            return {
                "active_sessions": 0,
                "oldest_session_idle_minutes": None,
                "newest_session_idle_minutes": None,
                "average_messages_per_session": 0,
            }

        now = self._clock()
        accessed = [s.last_accessed for s in self._sessions.values()]
        total_messages = sum(len(s.messages) for s in self._sessions.values())
        return {
            "active_sessions": len(self._sessions),
            "oldest_session_idle_minutes": round((now - min(accessed)) / 60),
            "newest_session_idle_minutes": round((now - max(accessed)) / 60),
            "average_messages_per_session": round(total_messages / len(self._sessions)),
        }

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.evict()

    async def start(self) -> None:
        """Start the periodic eviction sweep. Idempotent."""
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_forever())
            logger.debug("Session sweeper started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        """Cancel the eviction sweep and wait for it to finish."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
            logger.debug("Session sweeper stopped")
