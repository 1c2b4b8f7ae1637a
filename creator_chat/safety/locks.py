"""TTL-based named try-locks for serialising long-running operations."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from creator_chat.config import settings
from creator_chat.errors import ConcurrentOperationError
from creator_chat.safety.store import ExpiringStore

logger = logging.getLogger(__name__)


def channel_ingest_lock_key(channel_id: str) -> str:
    return f"ingest:channel:{channel_id}"


@dataclass(frozen=True)
class Lock:
    key: str
    holder_id: str
    acquired_at: float
    ttl: float
    operation: str | None = None

    @property
    def expires_at(self) -> float:
        return self.acquired_at + self.ttl


class LockManager:
    """Non-blocking mutual exclusion with automatic expiry.

    :meth:`acquire` never waits: it returns False when a live lock exists.
    The TTL guarantees progress if a holder dies without releasing.
    """

    def __init__(self, store: ExpiringStore[Lock] | None = None) -> None:
        self._store = store if store is not None else ExpiringStore(maxsize=settings.substrate_max_keys)

    @property
    def store(self) -> ExpiringStore[Lock]:
        return self._store

    def acquire(
        self,
        key: str,
        ttl_seconds: float,
        holder_id: str | None = None,
        operation: str | None = None,
    ) -> bool:
        holder = holder_id or uuid.uuid4().hex

        def _apply(current: Lock | None, now: float) -> tuple[Lock, bool]:
            if current is not None:
                return current, False
            return Lock(key=key, holder_id=holder, acquired_at=now, ttl=ttl_seconds, operation=operation), True

        acquired = self._store.compute(key, _apply)
        if acquired:
            logger.info("Lock acquired: %s (ttl=%ss)", key, ttl_seconds)
        else:
            logger.info("Lock busy: %s", key)
        return acquired

    def release(self, key: str, holder_id: str | None = None) -> bool:
        """Release ``key``. With ``holder_id`` only that holder's lock is removed."""

        def _apply(current: Lock | None, _now: float) -> tuple[Lock | None, bool]:
            if current is None:
                return None, False
            if holder_id is not None and current.holder_id != holder_id:
                return current, False
            return None, True

        released = self._store.compute(key, _apply)
        if released:
            logger.info("Lock released: %s", key)
        return released

    def get(self, key: str) -> Lock | None:
        return self._store.get(key)

    def remaining_ttl(self, key: str) -> float | None:
        lock = self._store.get(key)
        if lock is None:
            return None
        return max(lock.expires_at - self._store.now(), 0.0)

    @contextmanager
    def hold(self, key: str, ttl_seconds: float, operation: str | None = None) -> Iterator[str]:
        """Hold ``key`` for the duration of the block or fail fast.

        Raises:
            ConcurrentOperationError: The lock is already held.
        """
        holder = uuid.uuid4().hex
        if not self.acquire(key, ttl_seconds, holder_id=holder, operation=operation):
            raise ConcurrentOperationError(
                "This operation is already in progress. Please wait for it to finish.",
                retry_after_seconds=self.remaining_ttl(key) or ttl_seconds,
                details={"lockKey": key},
            )
        try:
            yield holder
        finally:
            self.release(key, holder_id=holder)

    def sweep(self) -> int:
        return self._store.sweep()


lock_manager = LockManager()
