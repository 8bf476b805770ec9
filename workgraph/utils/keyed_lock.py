"""
Per-key mutual exclusion.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable


class KeyedLock:
    """Hands out one lock per key so unrelated keys never contend.

    Locks are created lazily under a guard lock and kept for the lifetime of
    the instance; the number of keys is bounded by the number of
    (user, timeline node) pairs seen.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable):
        lock = self._lock_for(key)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
