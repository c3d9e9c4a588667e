"""
In-process, timeout-guarded mutual exclusion for sync runs.

A lock older than its timeout is stale: the next acquirer force-releases it.
Each lock also schedules an event-loop timer that releases it after the
timeout even if its holder never does (e.g. a run that crashed without
reaching its finally block).
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ticketsync.sync.exceptions import SyncInProgressError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class LockHeldError(SyncInProgressError):
    """Raised when acquiring a key that is held and not stale."""


@dataclass
class _Lock:
    acquired_at: float
    timeout: float
    timer: Optional[asyncio.TimerHandle]


class SyncLock:
    """Keyed locks with stale detection and auto-release."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            clock: Monotonic seconds source, injectable for tests.
        """
        self._clock = clock
        self._locks: Dict[str, _Lock] = {}

    def acquire(self, key: str, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> Callable[[], None]:
        """
        Take the lock for `key`.

        Args:
            key: Lock name, e.g. "full_sync".
            timeout: Seconds after which the lock is stale and auto-released.

        Returns:
            A callable that releases this acquisition. Safe to call more than
            once; it never releases a later holder's lock.

        Raises:
            LockHeldError: if `key` is held and younger than its timeout.
        """
        now = self._clock()
        existing = self._locks.get(key)
        if existing is not None:
            age = now - existing.acquired_at
            if age > existing.timeout:
                logger.warning("Releasing stale lock %s (age %.0fs)", key, age)
                self.release(key)
            else:
                raise LockHeldError(f"Sync already in progress (locked {round(age)}s ago)")

        lock = _Lock(acquired_at=now, timeout=timeout, timer=None)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            lock.timer = loop.call_later(timeout, self._expire, key, lock)
        self._locks[key] = lock
        logger.debug("Lock %s acquired (timeout %.0fs)", key, timeout)

        def release() -> None:
            if self._locks.get(key) is lock:
                self.release(key)

        return release

    def release(self, key: str) -> None:
        """Release `key`. Unknown or already released keys are a no-op."""
        lock = self._locks.pop(key, None)
        if lock is None:
            return
        if lock.timer is not None:
            lock.timer.cancel()
        logger.debug("Lock %s released", key)

    def is_locked(self, key: str) -> bool:
        return key in self._locks

    def age(self, key: str) -> Optional[float]:
        lock = self._locks.get(key)
        return None if lock is None else self._clock() - lock.acquired_at

    def held_keys(self) -> List[str]:
        return list(self._locks)

    def _expire(self, key: str, lock: _Lock) -> None:
        if self._locks.get(key) is lock:
            logger.warning("Lock %s timed out, auto-releasing", key)
            self.release(key)
