"""
In-memory session store.

One session per submitted batch. Every mutation of a session goes through
its own asyncio.Lock, so concurrent task completions never lose a counter
increment or a result. Sessions expire on download, on clear, or when the
periodic sweep finds them older than the TTL.

Expiry does not interrupt work still running for that session; updates
arriving for an expired session are dropped.
"""

import asyncio
import secrets
import time
from typing import Callable, Dict, List, Optional, Set

from src.core.logging import get_logger
from src.core.metrics import sessions_gauge
from src.core.storage import IStorage
from src.engines.compositing.schemas import Outcome, SessionView

logger = get_logger(__name__)


def generate_session_id() -> str:
    return secrets.token_hex(16)


class Session:
    """Mutable per-batch state. Only touched while holding `lock`."""

    def __init__(self, session_id: str, total_images: int, started_at: float):
        self.id = session_id
        self.started_at = started_at
        self.total_images = total_images
        self.processed_images = 0
        self.in_flight: List[str] = []
        self.results: List[Outcome] = []
        self.is_processing = total_images > 0
        self.lock = asyncio.Lock()

    def view(self) -> SessionView:
        return SessionView(
            is_processing=self.is_processing,
            total_images=self.total_images,
            processed_images=self.processed_images,
            in_flight=list(self.in_flight),
            results=list(self.results),
        )


class SessionStore:
    """Owns all session state for the process."""

    def __init__(
        self,
        storage: IStorage,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic
    ):
        self.storage = storage
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._sweeper: Optional[asyncio.Task] = None
        self._scheduled: Set[asyncio.Task] = set()

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create(self, total_images: int) -> str:
        if total_images < 0:
            raise ValueError("total_images cannot be negative")

        session_id = generate_session_id()
        await self.storage.create_session(session_id)
        self._sessions[session_id] = Session(session_id, total_images, self._clock())
        sessions_gauge.set(len(self._sessions))

        logger.info("session_created", session_id=session_id, total_images=total_images)
        return session_id

    async def get(self, session_id: Optional[str]) -> SessionView:
        """Snapshot of a session, or an empty default view if unknown."""
        session = self._sessions.get(session_id) if session_id else None
        if session is None:
            return SessionView()
        async with session.lock:
            return session.view()

    async def expire(self, session_id: str) -> bool:
        """Drop a session's state and reclaim its output storage."""
        session = self._sessions.pop(session_id, None)
        sessions_gauge.set(len(self._sessions))
        removed = await self.storage.delete_session(session_id)

        if session is not None or removed:
            logger.info("session_expired", session_id=session_id, had_state=session is not None)
        return session is not None

    def schedule_expire(self, session_id: str, delay: float) -> asyncio.Task:
        """Expire a session after a grace delay (lets a transfer finish)."""
        async def _expire_later():
            await asyncio.sleep(delay)
            await self.expire(session_id)

        task = asyncio.create_task(_expire_later())
        self._scheduled.add(task)
        task.add_done_callback(self._scheduled.discard)
        return task

    async def sweep(self) -> int:
        """Expire every session older than the TTL. Returns how many."""
        now = self._clock()
        stale = [
            session_id for session_id, session in list(self._sessions.items())
            if now - session.started_at > self.ttl_seconds
        ]
        for session_id in stale:
            await self.expire(session_id)

        if stale:
            logger.info("session_sweep_completed", expired=len(stale), remaining=len(self._sessions))
        return len(stale)

    def start_sweeper(self, interval: float):
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever(interval))

    async def _sweep_forever(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("session_sweep_failed", error=str(e), error_type=type(e).__name__)

    async def stop(self):
        """Cancel the sweeper and pending grace-delayed expiries."""
        tasks = list(self._scheduled)
        if self._sweeper is not None:
            tasks.append(self._sweeper)
            self._sweeper = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # =========================================================================
    # Mutations (serialized per session)
    # =========================================================================

    async def mark_in_flight(self, session_id: str, name: str):
        session = self._lookup(session_id, "mark_in_flight")
        if session is None:
            return
        async with session.lock:
            session.in_flight.append(name)

    async def clear_in_flight(self, session_id: str, name: str):
        session = self._lookup(session_id, "clear_in_flight")
        if session is None:
            return
        async with session.lock:
            # Names may repeat within a batch; drop a single occurrence
            if name in session.in_flight:
                session.in_flight.remove(name)

    async def append_result(self, session_id: str, outcome: Outcome):
        session = self._lookup(session_id, "append_result")
        if session is None:
            return
        async with session.lock:
            self._append(session, outcome)

    async def complete_task(self, session_id: str, name: str, outcome: Outcome):
        """Clear the in-flight marker and record the outcome in one step."""
        session = self._lookup(session_id, "complete_task")
        if session is None:
            return
        async with session.lock:
            if name in session.in_flight:
                session.in_flight.remove(name)
            self._append(session, outcome)

    async def finish(self, session_id: str):
        """Mark processing over once the dispatcher has run every chunk."""
        session = self._lookup(session_id, "finish")
        if session is None:
            return
        async with session.lock:
            session.is_processing = False
            session.in_flight.clear()

    async def is_complete(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        async with session.lock:
            return session.processed_images == session.total_images

    @staticmethod
    def _append(session: Session, outcome: Outcome):
        if session.processed_images >= session.total_images:
            logger.warning(
                "session_result_overflow",
                session_id=session.id,
                file=outcome.file,
                total_images=session.total_images
            )
            return
        session.results.append(outcome)
        session.processed_images = len(session.results)
        if session.processed_images == session.total_images:
            session.is_processing = False

    def _lookup(self, session_id: str, operation: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None:
            logger.debug("session_missing", session_id=session_id, operation=operation)
        return session
