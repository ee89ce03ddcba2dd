"""
Per-key cooperative locks for shared memory writes.

Every held key gets its own asyncio.Lock, dropped again once released. Callers never queue on the lock;
they poll it with exponential backoff and give up after a bounded number of
waits. Checking ``locked()`` and taking the lock happen without a suspension
point in between, so two coroutines can never both see the key as free.

Each holder receives a token. A watchdog timer force-releases a lock whose
holder has been stuck longer than ``lock_timeout``; a late ``release`` from
that holder is then ignored so it cannot free the next owner's lock.
"""

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from meeting_coord.errors import LockAcquisitionError
from meeting_coord.logging_config import get_logger
from meeting_coord.utils import generate_id

logger = logging.getLogger("meeting_coord.memory.locks")


class KeyLockManager:
    """Hands out exclusive, token-owned locks keyed by string."""

    def __init__(
        self,
        max_attempts: int = 10,
        initial_backoff_ms: float = 10,
        max_backoff_ms: float = 200,
        jitter_ms: float = 10,
        lock_timeout: float = 5.0,
        log: Optional[logging.Logger] = None,
    ):
        """
        Args:
            max_attempts: Backoff waits before giving up
            initial_backoff_ms: First wait
            max_backoff_ms: Upper bound for a single wait
            jitter_ms: Random extra added each time the wait grows
            lock_timeout: Seconds before a stuck holder is force-released
            log: Logger for watchdog warnings
        """
        self.max_attempts = max_attempts
        self.initial_backoff_ms = initial_backoff_ms
        self.max_backoff_ms = max_backoff_ms
        self.jitter_ms = jitter_ms
        self.lock_timeout = lock_timeout
        self._log = get_logger(log or logger)

        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, str] = {}
        self._watchdogs: Dict[str, asyncio.TimerHandle] = {}
        self.force_released = 0

    def _lock_for(self, full_key: str) -> asyncio.Lock:
        lock = self._locks.get(full_key)
        if lock is None:
            lock = self._locks[full_key] = asyncio.Lock()
        return lock

    def _next_backoff(self, current: float) -> float:
        return min(current * 1.5 + random.random() * self.jitter_ms, self.max_backoff_ms)

    async def acquire(self, full_key: str) -> str:
        """
        Acquire the lock for ``full_key``.

        Returns:
            Holder token to pass to release()

        Raises:
            LockAcquisitionError: If the lock stayed busy for every attempt
        """
        lock = self._lock_for(full_key)
        backoff = self.initial_backoff_ms
        attempts = 0

        while lock.locked():
            if attempts >= self.max_attempts:
                raise LockAcquisitionError(
                    f"Failed to acquire lock for {full_key} after {attempts} attempts",
                    full_key=full_key,
                    attempts=attempts,
                )
            attempts += 1
            await asyncio.sleep(backoff / 1000.0)
            backoff = self._next_backoff(backoff)
            # The holder may have dropped the entry while we slept
            lock = self._lock_for(full_key)

        # Uncontended acquire completes without yielding
        await lock.acquire()

        token = generate_id("lock")
        self._holders[full_key] = token
        loop = asyncio.get_running_loop()
        self._watchdogs[full_key] = loop.call_later(
            self.lock_timeout, self._force_release, full_key, token
        )
        if attempts:
            self._log.debug("Acquired contended lock", key=full_key, waits=attempts)
        return token

    def release(self, full_key: str, token: str) -> bool:
        """
        Release ``full_key`` if ``token`` still owns it.

        Returns:
            True if the lock was released by this call
        """
        if self._holders.get(full_key) != token:
            self._log.debug("Ignoring release by a stale holder", key=full_key)
            return False

        handle = self._watchdogs.pop(full_key, None)
        if handle is not None:
            handle.cancel()
        del self._holders[full_key]
        self._locks.pop(full_key).release()
        return True

    def _force_release(self, full_key: str, token: str) -> None:
        if self._holders.get(full_key) != token:
            return
        self._log.warning(
            "Force-releasing lock held past timeout", key=full_key, timeout_seconds=self.lock_timeout
        )
        self._watchdogs.pop(full_key, None)
        del self._holders[full_key]
        self._locks.pop(full_key).release()
        self.force_released += 1

    @asynccontextmanager
    async def hold(self, full_key: str) -> AsyncIterator[str]:
        """Hold the lock for the duration of the ``async with`` block."""
        token = await self.acquire(full_key)
        try:
            yield token
        finally:
            self.release(full_key, token)

    def is_locked(self, full_key: str) -> bool:
        lock = self._locks.get(full_key)
        return lock is not None and lock.locked()

    def held_count(self) -> int:
        return len(self._holders)

    def clear(self) -> None:
        """Cancel all watchdogs and forget every lock."""
        for handle in self._watchdogs.values():
            handle.cancel()
        self._watchdogs.clear()
        self._holders.clear()
        self._locks.clear()
