"""Expiring in-process key-value store with atomic read-modify-write."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any, Generic, Protocol, TypeVar

from cachetools import TLRUCache


class Expiring(Protocol):
    """Anything stored must say when it stops being live (epoch seconds)."""

    @property
    def expires_at(self) -> float: ...


V = TypeVar("V", bound=Expiring)
R = TypeVar("R")


def _entry_expiry(_key: str, value: Expiring, _now: float) -> float:
    return value.expires_at


class ExpiringStore(Generic[V]):
    """Thread-safe map whose entries vanish once ``timer() >= expires_at``.

    All mutation goes through :meth:`compute`, which runs a read-modify-write
    callback under a single lock so check-and-set is atomic per store. This
    backing is process-local: running several API instances requires a shared
    store honouring the same ``compute`` contract.
    """

    def __init__(self, maxsize: int = 100_000, timer: Callable[[], float] = time.time) -> None:
        self._timer = timer
        self._cache: TLRUCache[str, V] = TLRUCache(maxsize=maxsize, ttu=_entry_expiry, timer=timer)
        self._lock = threading.Lock()

    def now(self) -> float:
        return self._timer()

    def get(self, key: str) -> V | None:
        with self._lock:
            return self._cache.get(key)

    def compute(self, key: str, fn: Callable[[V | None, float], tuple[V | None, R]]) -> R:
        """Atomically replace the entry for ``key``.

        ``fn`` receives the live entry (or None) and the current time and
        returns ``(new_entry, result)``. A ``None`` entry deletes the key.
        """
        with self._lock:
            now = self._timer()
            current = self._cache.get(key)
            new_entry, result = fn(current, now)
            if new_entry is None:
                self._cache.pop(key, None)
            else:
                self._cache[key] = new_entry
            return result

    def pop(self, key: str) -> V | None:
        with self._lock:
            return self._cache.pop(key, None)

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""
        with self._lock:
            expired = self._cache.expire()
            return len(expired) if expired else 0

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def __contains__(self, key: Any) -> bool:
        with self._lock:
            return key in self._cache
