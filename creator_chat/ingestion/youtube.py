"""YouTube Data API v3 client: channel URLs, uploads and video metadata."""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from types import TracebackType
from typing import Any
from urllib.parse import urlparse

import httpx

from creator_chat.config import settings
from creator_chat.errors import InvalidInputError, UpstreamError, classify_provider_error
from creator_chat.ingestion.models import ChannelInfo, ChannelUrlType, ParsedChannelUrl, VideoMetadata

logger = logging.getLogger(__name__)

YOUTUBE_API_BASE = "https://www.googleapis.com/youtube/v3"
PAGE_SIZE = 50
_CHANNEL_PARTS = "snippet,contentDetails,statistics"
_VIDEO_PARTS = "snippet,contentDetails,statistics,liveStreamingDetails"
_DURATION_RE = re.compile(r"^P(?:(\d+)D)?T?(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?$")
_QUOTA_REASONS = {"quotaExceeded", "dailyLimitExceeded"}
_THROTTLE_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}

_PATH_PREFIXES = (
    ("/channel/", ChannelUrlType.CHANNEL),
    ("/c/", ChannelUrlType.CUSTOM),
    ("/user/", ChannelUrlType.USER),
)


def parse_channel_url(url: str) -> ParsedChannelUrl:
    """Recognise ``/@handle``, ``/channel/<id>``, ``/c/<name>`` and ``/user/<name>``.

    Raises:
        InvalidInputError: Anything else.
    """
    path = urlparse(url.strip()).path
    if path.startswith("/@"):
        handle = path[2:].strip("/").split("/")[0]
        if handle:
            return ParsedChannelUrl(ChannelUrlType.HANDLE, handle)
    for prefix, url_type in _PATH_PREFIXES:
        if path.startswith(prefix):
            ident = path[len(prefix) :].split("/")[0]
            if ident:
                return ParsedChannelUrl(url_type, ident)
    raise InvalidInputError("Invalid YouTube channel URL", details={"channelUrl": url})


def parse_duration(duration: str) -> int:
    """ISO-8601 duration (``PT1H2M3S``) to seconds; 0 when unparseable."""
    match = _DURATION_RE.match(duration or "")
    if not match:
        return 0
    days, hours, minutes, seconds = (int(g or 0) for g in match.groups())
    return days * 86400 + hours * 3600 + minutes * 60 + seconds


def parse_iso_datetime(value: str) -> datetime:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed) as an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _thumbnail(snippet: dict[str, Any]) -> str:
    thumbnails = snippet.get("thumbnails") or {}
    for size in ("high", "default"):
        url = (thumbnails.get(size) or {}).get("url")
        if url:
            return url
    return ""


def _channel_from_item(item: dict[str, Any]) -> ChannelInfo:
    snippet = item.get("snippet") or {}
    statistics = item.get("statistics") or {}
    uploads = ((item.get("contentDetails") or {}).get("relatedPlaylists") or {}).get("uploads", "")
    return ChannelInfo(
        channel_id=item["id"],
        channel_name=snippet.get("title", ""),
        avatar_url=_thumbnail(snippet),
        subscriber_count=str(statistics.get("subscriberCount", "0")),
        uploads_playlist_id=uploads,
        total_video_count=int(statistics.get("videoCount") or 0),
    )


def _video_from_item(item: dict[str, Any]) -> VideoMetadata:
    snippet = item.get("snippet") or {}
    statistics = item.get("statistics") or {}
    duration = (item.get("contentDetails") or {}).get("duration", "")
    return VideoMetadata(
        video_id=item["id"],
        title=snippet.get("title", ""),
        description=snippet.get("description", ""),
        published_at=snippet.get("publishedAt", ""),
        duration=duration,
        duration_seconds=parse_duration(duration),
        thumbnail_url=_thumbnail(snippet),
        view_count=int(statistics.get("viewCount") or 0),
        like_count=int(statistics.get("likeCount") or 0),
        live_broadcast_content=snippet.get("liveBroadcastContent"),
        has_live_streaming_details=item.get("liveStreamingDetails") is not None,
    )


def _error_body(response: httpx.Response) -> dict[str, Any]:
    """The ``error`` object of an API error response; empty for non-JSON bodies."""
    try:
        payload = response.json()
    except ValueError:
        return {}
    error = payload.get("error") if isinstance(payload, dict) else None
    return error if isinstance(error, dict) else {}


class YouTubeClient:
    """Thin async wrapper over the endpoints ingestion needs.

    Use as ``async with YouTubeClient() as yt:``; pass ``http_client`` to
    reuse (or mock) the underlying :class:`httpx.AsyncClient`.
    """

    def __init__(self, api_key: str | None = None, http_client: httpx.AsyncClient | None = None) -> None:
        self.api_key = api_key if api_key is not None else settings.youtube_api_key
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=YOUTUBE_API_BASE, timeout=settings.youtube_timeout_seconds
        )

    async def __aenter__(self) -> YouTubeClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._http.get(path, params={**params, "key": self.api_key})
        except httpx.HTTPError as exc:
            raise classify_provider_error(exc, "youtube") from exc

        if response.status_code >= 400:
            error = _error_body(response)
            reasons = {e.get("reason") for e in error.get("errors") or []}
            logger.error("YouTube API error %s on %s: %s", response.status_code, path, error.get("message"))
            if reasons & _QUOTA_REASONS:
                raise UpstreamError("YouTube API quota exceeded", provider="youtube", retryable=False)
            if reasons & _THROTTLE_REASONS:
                raise UpstreamError("YouTube API is throttling requests", provider="youtube", retryable=True)
            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise classify_provider_error(exc, "youtube") from exc
        return response.json()

    async def get_channel(self, channel_id: str) -> ChannelInfo | None:
        data = await self._get("/channels", {"part": _CHANNEL_PARTS, "id": channel_id})
        items = data.get("items") or []
        return _channel_from_item(items[0]) if items else None

    async def resolve_channel(self, parsed: ParsedChannelUrl) -> ChannelInfo | None:
        """Look up channel metadata for a parsed URL; None when not found."""
        if parsed.type is ChannelUrlType.CHANNEL:
            return await self.get_channel(parsed.id)
        if parsed.type is ChannelUrlType.HANDLE:
            data = await self._get("/channels", {"part": _CHANNEL_PARTS, "forHandle": parsed.id})
            items = data.get("items") or []
            return _channel_from_item(items[0]) if items else None

        search = await self._get(
            "/search", {"part": "snippet", "type": "channel", "q": parsed.id, "maxResults": 1}
        )
        items = search.get("items") or []
        if not items:
            return None
        return await self.get_channel(items[0]["id"]["channelId"])

    async def list_upload_ids(
        self, playlist_id: str, max_videos: int, published_after: datetime | None = None
    ) -> list[str]:
        """Page the uploads playlist (newest first) for up to ``max_videos`` ids.

        With ``published_after``, only uploads strictly newer than
        it are returned and paging stops at the first older one.
        """
        video_ids: list[str] = []
        page_token: str | None = None
        while len(video_ids) < max_videos:
            params: dict[str, Any] = {
                "part": "contentDetails",
                "playlistId": playlist_id,
                "maxResults": PAGE_SIZE,
            }
            if page_token:
                params["pageToken"] = page_token
            data = await self._get("/playlistItems", params)
            items = data.get("items") or []
            if not items:
                break
            for item in items:
                details = item.get("contentDetails") or {}
                video_id = details.get("videoId")
                if not video_id:
                    continue
                published = details.get("videoPublishedAt") or ""
                if published_after and published:
                    if parse_iso_datetime(published) <= published_after:
                        return video_ids
                video_ids.append(video_id)
                if len(video_ids) >= max_videos:
                    break
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        return video_ids

    async def get_videos(self, video_ids: list[str]) -> list[VideoMetadata]:
        """Fetch metadata in batches of 50 ids."""
        videos: list[VideoMetadata] = []
        for i in range(0, len(video_ids), PAGE_SIZE):
            batch = video_ids[i : i + PAGE_SIZE]
            data = await self._get("/videos", {"part": _VIDEO_PARTS, "id": ",".join(batch)})
            videos.extend(_video_from_item(item) for item in data.get("items") or [])
        return videos
