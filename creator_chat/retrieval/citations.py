"""Citation building: rank, bucket-deduplicate and cap retrieved passages."""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from creator_chat.rag_config import CITATION_EXCERPT_CHARS, MAX_CITATIONS
from creator_chat.retrieval.models import Citation, TranscriptChunk, VideoDetails
from creator_chat.retrieval.prompt import UNKNOWN_VIDEO_TITLE, format_timestamp

NO_TIMESTAMP_BUCKET = "no-timestamp"


def citation_bucket(chunk: TranscriptChunk) -> tuple[str, str]:
    """``(video_id, whole-second start)`` or the no-timestamp sentinel."""
    if chunk.has_valid_timestamps and chunk.start_time is not None:
        return chunk.video_id, str(int(chunk.start_time))
    return chunk.video_id, NO_TIMESTAMP_BUCKET


def truncate_excerpt(text: str, limit: int = CITATION_EXCERPT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def build_citations(
    chunks: Sequence[TranscriptChunk],
    video_details: Mapping[str, VideoDetails],
    show_citations: bool = True,
    max_citations: int = MAX_CITATIONS,
) -> list[Citation]:
    """Turn chunks into at most ``max_citations`` distinct citations.

    Chunks are taken in descending similarity; a chunk whose bucket is
    already cited is skipped. Returns an empty list when citations are not
    to be shown.
    """
    if not show_citations or max_citations <= 0:
        return []

    seen: set[tuple[str, str]] = set()
    citations: list[Citation] = []
    for chunk in sorted(chunks, key=lambda c: c.similarity, reverse=True):
        if len(citations) >= max_citations:
            break
        bucket = citation_bucket(chunk)
        if bucket in seen:
            continue
        seen.add(bucket)

        video = video_details.get(chunk.video_id)
        has_ts = chunk.has_valid_timestamps
        citations.append(
            Citation(
                index=len(citations) + 1,
                chunk_id=chunk.id,
                video_id=chunk.video_id,
                title=video.title if video else UNKNOWN_VIDEO_TITLE,
                thumbnail_url=video.thumbnail_url if video else None,
                start_time=chunk.start_time if has_ts else None,
                end_time=chunk.end_time if has_ts else None,
                timestamp=format_timestamp(chunk.start_time) if has_ts else None,
                has_timestamp=has_ts,
                similarity=chunk.similarity,
                excerpt_text=truncate_excerpt(chunk.text),
            )
        )
    return citations
