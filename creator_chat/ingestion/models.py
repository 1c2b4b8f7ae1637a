"""Data models for channel and video ingestion."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ImportMode(str, Enum):
    LATEST = "latest"
    OLDEST = "oldest"
    ALL = "all"


class ContentType(str, Enum):
    VIDEO = "video"
    SHORT = "short"
    LIVE = "live"


class ChannelUrlType(str, Enum):
    CHANNEL = "channel"
    HANDLE = "handle"
    CUSTOM = "custom"
    USER = "user"


@dataclass(frozen=True)
class ParsedChannelUrl:
    type: ChannelUrlType
    id: str


@dataclass(frozen=True)
class ChannelInfo:
    """Channel metadata as resolved from the YouTube Data API."""

    channel_id: str
    channel_name: str
    avatar_url: str = ""
    subscriber_count: str = "0"
    uploads_playlist_id: str = ""
    total_video_count: int = 0


@dataclass(frozen=True)
class VideoMetadata:
    video_id: str
    title: str
    description: str = ""
    published_at: str = ""
    duration: str = ""
    duration_seconds: int = 0
    thumbnail_url: str = ""
    view_count: int = 0
    like_count: int = 0
    live_broadcast_content: str | None = None
    has_live_streaming_details: bool = False


@dataclass(frozen=True)
class ContentTypeFilters:
    videos: bool = True
    shorts: bool = False
    lives: bool = False


@dataclass(frozen=True)
class ImportSettings:
    mode: ImportMode = ImportMode.LATEST
    limit: int | None = 20
