"""Per-item lock registry used by the movement engine.

Every movement holds the lock of the item it mutates for the whole
validate-then-write span. Locks are created lazily, one per item id, so two
movements against different items never contend. Waits are bounded: callers
receive ``False`` from :meth:`ItemLockRegistry.acquire` instead of blocking
forever. A lock is dropped from the registry once nobody holds or waits for
it, so ids that are never seen again do not accumulate.
"""

from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterator

from . import log


class LockTimeout(Exception):
    """Raised by :meth:`ItemLockRegistry.hold` when the wait expires."""

    def __init__(self, item_id: str, timeout: float) -> None:
        self.item_id = item_id
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.2f}s waiting for item '{item_id}'")


class ItemLockRegistry:
    """Hand out one exclusive lock per item identifier."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: Dict[str, Lock] = {}
        self._users: Dict[str, int] = {}

    def tracked_count(self) -> int:
        """Number of item ids currently held or waited on."""

        with self._guard:
            return len(self._locks)

    def _checkout(self, item_id: str) -> Lock:
        with self._guard:
            lock = self._locks.get(item_id)
            if lock is None:
                lock = Lock()
                self._locks[item_id] = lock
            self._users[item_id] = self._users.get(item_id, 0) + 1
            return lock

    def _checkin(self, item_id: str) -> None:
        with self._guard:
            remaining = self._users[item_id] - 1
            if remaining:
                self._users[item_id] = remaining
            else:
                del self._users[item_id]
                del self._locks[item_id]

    def acquire(self, item_id: str, timeout: float) -> bool:
        """Try to take the item's lock within ``timeout`` seconds."""

        acquired = self._checkout(item_id).acquire(timeout=timeout)
        if not acquired:
            self._checkin(item_id)
            log.warning("Lock wait for item '%s' expired after %.2fs", item_id, timeout)
        return acquired

    def release(self, item_id: str) -> None:
        """Release a lock taken with :meth:`acquire`.

        Raises:
            KeyError: If nobody holds the item's lock.
        """

        with self._guard:
            lock = self._locks[item_id]
        lock.release()
        self._checkin(item_id)

    def is_locked(self, item_id: str) -> bool:
        with self._guard:
            lock = self._locks.get(item_id)
        return lock is not None and lock.locked()

    @contextmanager
    def hold(self, item_id: str, timeout: float) -> Iterator[None]:
        """Context manager form of :meth:`acquire` / :meth:`release`.

        Raises:
            LockTimeout: If the lock is not obtained within ``timeout``.
        """

        if not self.acquire(item_id, timeout):
            raise LockTimeout(item_id, timeout)
        try:
            yield
        finally:
            self.release(item_id)


__all__ = ["ItemLockRegistry", "LockTimeout"]
