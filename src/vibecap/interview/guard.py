import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Dict

from ..exceptions import SessionBusyError

logger = logging.getLogger(__name__)


class GuardState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"


class SessionGuard:
    """At most one in-flight operation per session, optionally one overall.

    Rejected messages are dropped, not queued. Checks and acquisitions happen
    without yielding to the event loop, so two coroutines cannot both see a
    session as idle.
    """

    def __init__(self, single_worker: bool = False) -> None:
        self.single_worker = single_worker
        self._locks: Dict[str, asyncio.Lock] = {}
        self._global = asyncio.Lock()

    @property
    def active(self) -> int:
        return sum(1 for lock in self._locks.values() if lock.locked())

    def is_processing(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    def state(self, session_id: str) -> GuardState:
        return GuardState.PROCESSING if self.is_processing(session_id) else GuardState.IDLE

    async def try_acquire(self, session_id: str) -> bool:
        """Mark the session as processing. Returns False if admission is refused."""
        if self.is_processing(session_id):
            logger.info("Session %s busy; dropping message", session_id)
            return False
        if self.single_worker and self._global.locked():
            logger.info("Worker busy; dropping message for session %s", session_id)
            return False

        # Locks are only ever taken here, after the checks above, so they are
        # free and acquire() returns without suspending.
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        await lock.acquire()
        if self.single_worker:
            await self._global.acquire()
        return True

    def release(self, session_id: str) -> None:
        lock = self._locks.pop(session_id, None)
        if lock is None or not lock.locked():
            return
        lock.release()
        if self.single_worker and self._global.locked():
            self._global.release()

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        """Hold the session for the duration of the block.

        Raises SessionBusyError if the session (or, in single-worker mode, the
        worker) is already processing. Released even if the block raises.
        """
        if not await self.try_acquire(session_id):
            raise SessionBusyError(session_id)
        try:
            yield
        finally:
            self.release(session_id)
