"""
In-process mutexes keyed by bet id or user id.

Operations on the same bet (votes, resolution, confirmations) and balance
updates for the same user are serialized; different keys run concurrently.
Lock order: bet lock, then the sqlite write transaction (BEGIN IMMEDIATE),
then user locks in sorted order.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterable


class KeyedLock:
    """A lazily created ``threading.RLock`` per key."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str):
        lock = self._lock_for(key)
        with lock:
            yield

    @contextmanager
    def hold_many(self, keys: Iterable[str]):
        ordered = sorted(set(keys))
        acquired = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


def bet_key(bet_id: str) -> str:
    return f"bet:{bet_id}"


def user_key(user_id: str) -> str:
    return f"user:{user_id}"
