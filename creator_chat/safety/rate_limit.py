"""Fixed-window rate limiter keyed by identity + operation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from creator_chat.config import settings
from creator_chat.rag_config import RateLimitProfile
from creator_chat.safety.store import ExpiringStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitWindow:
    """Counter for one key; discarded once ``window_reset_at`` has passed."""

    key: str
    count: int
    window_reset_at: float

    @property
    def expires_at(self) -> float:
        return self.window_reset_at


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float

    @property
    def reset_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.reset_at, tz=UTC)

    def retry_after(self, now: float) -> float:
        return max(self.reset_at - now, 0.0)


class RateLimiter:
    """Fixed (not sliding) window counter.

    The first call for a key opens a window of ``window_minutes``. Calls are
    counted until ``count >= limit``; later calls are rejected until the
    window resets. Never raises.
    """

    def __init__(self, store: ExpiringStore[RateLimitWindow] | None = None) -> None:
        self._store = store if store is not None else ExpiringStore(maxsize=settings.substrate_max_keys)

    @property
    def store(self) -> ExpiringStore[RateLimitWindow]:
        return self._store

    def check(self, key: str, limit: int, window_minutes: float) -> RateLimitResult:
        window_seconds = window_minutes * 60

        def _apply(
            current: RateLimitWindow | None, now: float
        ) -> tuple[RateLimitWindow, RateLimitResult]:
            if current is None or now >= current.window_reset_at:
                current = RateLimitWindow(key=key, count=0, window_reset_at=now + window_seconds)
            if current.count >= limit:
                return current, RateLimitResult(False, 0, current.window_reset_at)
            updated = replace(current, count=current.count + 1)
            return updated, RateLimitResult(True, limit - updated.count, updated.window_reset_at)

        result = self._store.compute(key, _apply)
        if not result.allowed:
            logger.warning("Rate limit exceeded for %s (resets at %s)", key, result.reset_at_datetime)
        return result

    def check_profile(self, key: str, profile: RateLimitProfile) -> RateLimitResult:
        return self.check(key, profile.requests, profile.window_minutes)

    def now(self) -> float:
        return self._store.now()

    def sweep(self) -> int:
        return self._store.sweep()


rate_limiter = RateLimiter()
