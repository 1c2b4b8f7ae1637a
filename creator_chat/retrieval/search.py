"""Query embedding, tiered vector search and video/channel lookups."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, cast

from openai import AsyncOpenAI

from creator_chat.config import settings
from creator_chat.errors import UpstreamError, classify_provider_error
from creator_chat.ingestion.storage import get_supabase_client
from creator_chat.rag_config import QuestionType, RetrievalProfile, get_retrieval_profile
from creator_chat.retrieval.models import TranscriptChunk, VideoDetails

logger = logging.getLogger(__name__)

SEARCH_RPC = "search_transcript_chunks"


@dataclass(frozen=True)
class RetrievalResult:
    """Chunks found plus the thresholds that were tried to find them."""

    chunks: list[TranscriptChunk]
    profile: RetrievalProfile
    threshold_used: float | None
    attempts: list[float] = field(default_factory=list)

    @property
    def relaxed(self) -> bool:
        return len(self.attempts) > 1


@dataclass(frozen=True)
class ChannelIndexStatus:
    total_chunks: int
    chunks_with_timestamps: int
    embedded_chunks: int

    @property
    def has_chunks(self) -> bool:
        return self.total_chunks > 0

    @property
    def has_embeddings(self) -> bool:
        return self.embedded_chunks > 0

    @property
    def is_ready(self) -> bool:
        return self.has_chunks and self.has_embeddings


async def embed_query(text: str) -> list[float]:
    """Embed ``text`` with the configured OpenAI model.

    Raises:
        UpstreamError: On any provider failure, or when the vector is empty
            or has the wrong dimensionality.
    """
    client = AsyncOpenAI(api_key=settings.openai_api_key, timeout=settings.embedding_timeout_seconds)
    try:
        response = await client.embeddings.create(input=[text], model=settings.embedding_model)
    except Exception as exc:
        raise classify_provider_error(exc, "openai") from exc

    embedding = response.data[0].embedding if response.data else []
    if len(embedding) != settings.embedding_dimensions:
        raise UpstreamError(
            f"Embedding provider returned {len(embedding)} dimensions, "
            f"expected {settings.embedding_dimensions}",
            provider="openai",
            retryable=True,
        )
    return embedding


def _search_rows(
    embedding: list[float], channel_id: str | None, match_count: int, threshold: float
) -> list[dict[str, Any]]:
    client = get_supabase_client()
    result = client.rpc(
        SEARCH_RPC,
        {
            "query_embedding": embedding,
            "match_threshold": threshold,
            "match_count": match_count,
            "filter_channel_id": channel_id,
        },
    ).execute()
    # Supabase .data is typed as JSON (broad union); cast to concrete type.
    return cast(list[dict[str, Any]], result.data or [])


async def search_chunks(
    embedding: list[float], channel_id: str | None, match_count: int, threshold: float
) -> list[TranscriptChunk]:
    """One similarity search; rows come back similarity-descending."""
    try:
        rows = await asyncio.to_thread(_search_rows, embedding, channel_id, match_count, threshold)
    except Exception as exc:
        raise classify_provider_error(exc, "supabase") from exc
    return [TranscriptChunk.from_row(row) for row in rows]


async def retrieve(
    embedding: list[float],
    channel_id: str | None,
    question_type: QuestionType,
    is_public: bool = False,
) -> RetrievalResult:
    """Search each threshold of the question type's profile in turn.

    Stops at the first non-empty result. Moment profiles only carry their
    preferred threshold, so they never fall back to a looser search.
    """
    profile = get_retrieval_profile(question_type, is_public)
    attempts: list[float] = []
    for threshold in profile.thresholds():
        attempts.append(threshold)
        chunks = await search_chunks(embedding, channel_id, profile.match_count, threshold)
        logger.info(
            "Search at threshold %.2f returned %d chunks (type=%s)",
            threshold,
            len(chunks),
            question_type.value,
        )
        if chunks:
            return RetrievalResult(chunks, profile, threshold, attempts)
    return RetrievalResult([], profile, None, attempts)


def get_video_details(video_ids: list[str]) -> dict[str, VideoDetails]:
    """Title and thumbnail per video id; unknown ids are simply absent."""
    if not video_ids:
        return {}
    client = get_supabase_client()
    result = (
        client.table("videos")
        .select("video_id,title,thumbnail_url")
        .in_("video_id", sorted(set(video_ids)))
        .execute()
    )
    return {
        row["video_id"]: VideoDetails(
            video_id=row["video_id"],
            title=row.get("title") or "",
            thumbnail_url=row.get("thumbnail_url"),
        )
        for row in cast(list[dict[str, Any]], result.data or [])
    }


def check_channel_index_status(channel_id: str | None) -> ChannelIndexStatus:
    """Count chunks, timestamped chunks and embedded chunks for a scope."""
    client = get_supabase_client()
    query = client.table("transcript_chunks").select("id,start_time,end_time,embedding_status")
    if channel_id:
        query = query.eq("channel_id", channel_id)
    rows = cast(list[dict[str, Any]], query.execute().data or [])

    with_timestamps = sum(
        1
        for row in rows
        if row.get("start_time") is not None
        and row.get("end_time") is not None
        and row["end_time"] > row["start_time"]
    )
    embedded = sum(1 for row in rows if row.get("embedding_status") == "completed")
    status = ChannelIndexStatus(len(rows), with_timestamps, embedded)
    logger.info(
        "Index status for %s: chunks=%d timestamps=%d embeddings=%d",
        channel_id or "all",
        status.total_chunks,
        status.chunks_with_timestamps,
        status.embedded_chunks,
    )
    return status
