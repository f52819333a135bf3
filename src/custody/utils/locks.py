"""Concurrency control for background cycles.

Each cycle type (scan, confirm, sweep, expire) runs at most once at a time
within a process. A tick that finds its cycle still running is skipped
instead of queueing behind it.
"""

import asyncio
import logging

logger = logging.getLogger(__name__)

# Global lock registry: cycle name -> asyncio.Lock
_cycle_locks: dict[str, asyncio.Lock] = {}


def get_cycle_lock(name: str) -> asyncio.Lock:
    """Get or create the lock for a cycle type."""
    if name not in _cycle_locks:
        _cycle_locks[name] = asyncio.Lock()
    return _cycle_locks[name]


def is_cycle_running(name: str) -> bool:
    return get_cycle_lock(name).locked()


class CycleGuard:
    """Non-blocking guard around one run of a cycle.

    Example:
        async with CycleGuard("scan") as guard:
            if not guard.acquired:
                return
            await service.process_new_deposits()
    """

    def __init__(self, name: str):
        self.name = name
        self.acquired = False
        self._lock = get_cycle_lock(name)

    async def __aenter__(self) -> "CycleGuard":
        # An unlocked asyncio.Lock is acquired without yielding to the loop
        if self._lock.locked():
            logger.debug(f"Cycle {self.name} already running, skipping")
            return self

        await self._lock.acquire()
        self.acquired = True
        logger.debug(f"Cycle {self.name} started")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.acquired:
            self._lock.release()
            self.acquired = False
            logger.debug(f"Cycle {self.name} finished")
        return False


def clear_cycle_locks() -> None:
    """Clear all cycle locks (useful for testing)."""
    _cycle_locks.clear()
