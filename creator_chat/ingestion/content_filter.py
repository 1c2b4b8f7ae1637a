"""Classify YouTube uploads as regular videos, shorts or live streams."""

from __future__ import annotations

from creator_chat.ingestion.models import ContentType, ContentTypeFilters, VideoMetadata

SHORT_MAX_SECONDS = 61
_LIVE_BROADCAST_STATES = {"live", "upcoming"}


def get_video_content_type(video: VideoMetadata) -> ContentType:
    if video.has_live_streaming_details or video.live_broadcast_content in _LIVE_BROADCAST_STATES:
        return ContentType.LIVE
    if 0 < video.duration_seconds <= SHORT_MAX_SECONDS:
        return ContentType.SHORT
    return ContentType.VIDEO


def filter_videos_by_content_type(
    videos: list[VideoMetadata], filters: ContentTypeFilters
) -> list[VideoMetadata]:
    """Keep only the content types enabled in ``filters``, preserving order."""
    allowed = {
        ContentType.VIDEO: filters.videos,
        ContentType.SHORT: filters.shorts,
        ContentType.LIVE: filters.lives,
    }
    return [video for video in videos if allowed[get_video_content_type(video)]]


def has_any_content_type(filters: ContentTypeFilters) -> bool:
    return filters.videos or filters.shorts or filters.lives
