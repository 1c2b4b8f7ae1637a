"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from creator_chat.retrieval.models import TranscriptChunk
from creator_chat.safety.idempotency import idempotency_store
from creator_chat.safety.locks import lock_manager
from creator_chat.safety.rate_limit import rate_limiter


class FakeClock:
    """Callable timer that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _reset_substrate() -> Iterator[None]:
    """Module-level limiter/lock/idempotency stores are shared; isolate tests."""
    rate_limiter.store.clear()
    idempotency_store.store.clear()
    lock_manager.store.clear()
    yield
    rate_limiter.store.clear()
    idempotency_store.store.clear()
    lock_manager.store.clear()


def make_chunk(
    chunk_id: str = "c1",
    video_id: str = "vid1",
    similarity: float = 0.5,
    start_time: float | None = 30.0,
    end_time: float | None = 45.0,
    text: str = "We talked about pricing your product for value.",
    chunk_index: int = 0,
) -> TranscriptChunk:
    return TranscriptChunk(
        id=chunk_id,
        video_id=video_id,
        channel_id="UC123",
        chunk_index=chunk_index,
        text=text,
        start_time=start_time,
        end_time=end_time,
        similarity=similarity,
    )


@pytest.fixture(name="make_chunk")
def make_chunk_fixture():
    return make_chunk
