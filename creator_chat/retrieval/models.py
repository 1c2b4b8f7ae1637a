"""Data models for the retrieval and answer pipeline."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Literal


@dataclass(frozen=True)
class TranscriptChunk:
    """A contiguous transcript slice returned by similarity search.

    Chunks are written once by the embedding pipeline and only read here.
    ``similarity`` is populated by the vector store per query.
    """

    id: str
    video_id: str
    channel_id: str
    chunk_index: int
    text: str
    start_time: float | None = None
    end_time: float | None = None
    similarity: float = 0.0

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> TranscriptChunk:
        return cls(
            id=str(row["id"]),
            video_id=row["video_id"],
            channel_id=row.get("channel_id") or "",
            chunk_index=int(row.get("chunk_index") or 0),
            text=row.get("text") or "",
            start_time=row.get("start_time"),
            end_time=row.get("end_time"),
            similarity=float(row.get("similarity") or 0.0),
        )

    @property
    def has_valid_timestamps(self) -> bool:
        """True when both times exist and ``end_time > start_time >= 0``."""
        start, end = self.start_time, self.end_time
        if start is None or end is None:
            return False
        if math.isnan(start) or math.isnan(end):
            return False
        return end > start >= 0


@dataclass(frozen=True)
class ConversationMessage:
    role: Literal["user", "assistant"]
    content: str


@dataclass(frozen=True)
class VideoDetails:
    video_id: str
    title: str
    thumbnail_url: str | None = None


@dataclass(frozen=True)
class Citation:
    """Display-ready evidence for one (video, moment) bucket."""

    index: int
    chunk_id: str
    video_id: str
    title: str
    thumbnail_url: str | None
    start_time: float | None
    end_time: float | None
    timestamp: str | None
    has_timestamp: bool
    similarity: float
    excerpt_text: str
