"""Supabase storage helpers for channels, videos and user links."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any, cast

from postgrest import CountMethod
from postgrest.exceptions import APIError
from supabase import Client, create_client

from creator_chat.config import settings
from creator_chat.ingestion.content_filter import get_video_content_type
from creator_chat.ingestion.models import ChannelInfo, VideoMetadata

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
VIDEO_BATCH_SIZE = 50


@lru_cache(maxsize=1)
def get_supabase_client() -> Client:
    """Create (once) and return a Supabase client from settings."""
    return create_client(settings.supabase_url, settings.supabase_key)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _first_row(data: Any) -> dict[str, Any] | None:
    rows = cast(list[dict[str, Any]], data or [])
    return rows[0] if rows else None


def get_channel(client: Client, channel_uuid: str) -> dict[str, Any] | None:
    """Fetch a channel row by its internal id."""
    result = client.table("channels").select("*").eq("id", channel_uuid).limit(1).execute()
    return _first_row(result.data)


def get_channel_by_youtube_id(client: Client, channel_id: str) -> dict[str, Any] | None:
    result = client.table("channels").select("*").eq("channel_id", channel_id).limit(1).execute()
    return _first_row(result.data)


def save_channel(client: Client, info: ChannelInfo, channel_url: str | None) -> tuple[dict[str, Any], bool]:
    """Insert or refresh a channel row and mark it as processing.

    Returns:
        ``(row, created)`` where ``created`` is True for a new channel.
    """
    fields = {
        "channel_name": info.channel_name,
        "avatar_url": info.avatar_url,
        "subscriber_count": info.subscriber_count,
        "uploads_playlist_id": info.uploads_playlist_id,
        "ingestion_status": "processing",
        "ingestion_progress": 0,
    }
    existing = get_channel_by_youtube_id(client, info.channel_id)
    if existing:
        result = client.table("channels").update(fields).eq("id", existing["id"]).execute()
        return _first_row(result.data) or {**existing, **fields}, False

    result = (
        client.table("channels")
        .insert(
            {
                **fields,
                "channel_id": info.channel_id,
                "channel_url": channel_url,
                "indexed_videos": 0,
                "total_videos": info.total_video_count,
            }
        )
        .execute()
    )
    row = _first_row(result.data)
    if row is None:
        raise RuntimeError(f"Channel insert returned no row for {info.channel_id}")
    return row, True


def user_has_channel(client: Client, user_id: str, channel_uuid: str) -> bool:
    result = (
        client.table("user_creators")
        .select("id")
        .eq("user_id", user_id)
        .eq("channel_id", channel_uuid)
        .limit(1)
        .execute()
    )
    return bool(result.data)


def link_user_to_channel(client: Client, user_id: str, channel_uuid: str) -> bool:
    """Link a user to a channel. Returns False when the link already existed."""
    try:
        client.table("user_creators").insert({"user_id": user_id, "channel_id": channel_uuid}).execute()
    except APIError as exc:
        if exc.code == UNIQUE_VIOLATION:
            return False
        raise
    return True


def get_existing_video_ids(client: Client, channel_id: str) -> set[str]:
    result = client.table("videos").select("video_id").eq("channel_id", channel_id).execute()
    return {row["video_id"] for row in cast(list[dict[str, Any]], result.data or [])}


def upsert_videos(
    client: Client,
    videos: list[VideoMetadata],
    channel_id: str,
    ingestion_method: str = "youtube_api",
) -> int:
    """Upsert videos on ``video_id`` (batched by 50) and return how many were sent."""
    rows: list[dict[str, object]] = [
        {
            "video_id": video.video_id,
            "channel_id": channel_id,
            "title": video.title,
            "description": video.description,
            "published_at": video.published_at or None,
            "duration": video.duration,
            "duration_seconds": video.duration_seconds,
            "thumbnail_url": video.thumbnail_url,
            "view_count": video.view_count,
            "like_count": video.like_count,
            "ingestion_method": ingestion_method,
            "content_type": get_video_content_type(video).value,
        }
        for video in videos
    ]
    for i in range(0, len(rows), VIDEO_BATCH_SIZE):
        client.table("videos").upsert(rows[i : i + VIDEO_BATCH_SIZE], on_conflict="video_id").execute()
    logger.info("Upserted %d videos for channel %s", len(rows), channel_id)
    return len(rows)


def count_channel_videos(client: Client, channel_id: str) -> int:
    result = (
        client.table("videos")
        .select("video_id", count=CountMethod.exact)
        .eq("channel_id", channel_id)
        .execute()
    )
    return result.count or 0


def update_channel(client: Client, channel_uuid: str, **fields: Any) -> None:
    client.table("channels").update(fields).eq("id", channel_uuid).execute()


def mark_channel_indexed(
    client: Client,
    channel_uuid: str,
    indexed_videos: int,
    total_videos: int,
    status: str = "completed",
) -> str:
    """Record ingestion completion; returns the ``last_indexed_at`` written."""
    indexed_at = _now_iso()
    update_channel(
        client,
        channel_uuid,
        ingestion_status=status,
        ingestion_progress=100 if status == "completed" else 0,
        indexed_videos=indexed_videos,
        total_videos=total_videos,
        last_indexed_at=indexed_at,
    )
    return indexed_at
