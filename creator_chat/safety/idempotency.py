"""Idempotency records: replay completed responses, block pending duplicates."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from creator_chat.config import settings
from creator_chat.safety.store import ExpiringStore

logger = logging.getLogger(__name__)


class IdempotencyStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class IdempotencyRecord:
    key: str
    status: IdempotencyStatus
    created_at: float
    expires_at: float
    response_snapshot: Any = None


@dataclass(frozen=True)
class DuplicateCheck:
    is_duplicate: bool
    existing_status: IdempotencyStatus | None = None
    existing_response: Any = None


class IdempotencyStore:
    """Tracks operations by caller-supplied idempotency key.

    The first observation of a key records it as pending. While pending,
    every further observation is reported as a duplicate so the caller can
    answer "retry later" instead of re-running side effects. Once
    :meth:`complete` is called the stored snapshot is replayed verbatim until
    the record expires.
    """

    def __init__(
        self,
        store: ExpiringStore[IdempotencyRecord] | None = None,
        retention_seconds: float | None = None,
        pending_ttl_seconds: float | None = None,
    ) -> None:
        self._store = store if store is not None else ExpiringStore(maxsize=settings.substrate_max_keys)
        self.retention_seconds = (
            retention_seconds if retention_seconds is not None else settings.idempotency_ttl_seconds
        )
        # A pending record outlives a crashed holder only as long as its lock would.
        self.pending_ttl_seconds = (
            pending_ttl_seconds if pending_ttl_seconds is not None else settings.ingest_lock_ttl_seconds
        )

    @property
    def store(self) -> ExpiringStore[IdempotencyRecord]:
        return self._store

    def check_duplicate(self, key: str) -> DuplicateCheck:
        def _apply(
            current: IdempotencyRecord | None, now: float
        ) -> tuple[IdempotencyRecord, DuplicateCheck]:
            if current is None:
                record = IdempotencyRecord(
                    key=key,
                    status=IdempotencyStatus.PENDING,
                    created_at=now,
                    expires_at=now + self.pending_ttl_seconds,
                )
                return record, DuplicateCheck(is_duplicate=False)
            return current, DuplicateCheck(
                is_duplicate=True,
                existing_status=current.status,
                existing_response=current.response_snapshot,
            )

        return self._store.compute(key, _apply)

    def complete(
        self,
        key: str,
        response: Any,
        status: IdempotencyStatus = IdempotencyStatus.COMPLETED,
    ) -> bool:
        """Finalise a pending record. Returns False if it was already final."""
        if status is IdempotencyStatus.PENDING:
            raise ValueError("complete() needs a final status")

        def _apply(
            current: IdempotencyRecord | None, now: float
        ) -> tuple[IdempotencyRecord, bool]:
            if current is not None and current.status is not IdempotencyStatus.PENDING:
                return current, False
            created_at = current.created_at if current is not None else now
            record = IdempotencyRecord(
                key=key,
                status=status,
                created_at=created_at,
                expires_at=now + self.retention_seconds,
                response_snapshot=response,
            )
            return record, True

        transitioned = self._store.compute(key, _apply)
        if not transitioned:
            logger.warning("Idempotency key %s was already finalised; keeping first result", key)
        return transitioned

    def discard(self, key: str) -> None:
        """Forget a still-pending key (used when the caller went away mid-flight)."""

        def _apply(
            current: IdempotencyRecord | None, _now: float
        ) -> tuple[IdempotencyRecord | None, None]:
            if current is not None and current.status is IdempotencyStatus.PENDING:
                return None, None
            return current, None

        self._store.compute(key, _apply)

    def get(self, key: str) -> IdempotencyRecord | None:
        return self._store.get(key)

    def sweep(self) -> int:
        return self._store.sweep()


idempotency_store = IdempotencyStore()
