"""
Arena of per-key locks (wallet address, withdrawal id, sending account).

Unrelated keys never contend; one key is held by at most one thread.
Locks are created on first use and kept for the process lifetime.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from backend_sweeper.core.exceptions import WalletLockedError


class KeyedLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        key = key.lower()
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def acquire(self, key: str, timeout: float | None = None) -> bool:
        """Block up to timeout seconds (None: forever, 0: don't wait)."""
        lock = self._lock_for(key)
        if timeout is None:
            return lock.acquire()
        if timeout <= 0:
            return lock.acquire(blocking=False)
        return lock.acquire(timeout=timeout)

    def release(self, key: str) -> None:
        self._lock_for(key).release()

    def is_locked(self, key: str) -> bool:
        return self._lock_for(key).locked()

    @contextmanager
    def hold(self, key: str, timeout: float | None = None) -> Iterator[None]:
        """Hold key for the block; WalletLockedError if not acquired within timeout."""
        if not self.acquire(key, timeout):
            raise WalletLockedError(f"lock for {key} is held by another operation")
        try:
            yield
        finally:
            self.release(key)

    @contextmanager
    def try_hold(self, key: str) -> Iterator[None]:
        """Non-blocking hold: WalletLockedError immediately when already held."""
        with self.hold(key, timeout=0):
            yield
