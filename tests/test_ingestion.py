"""Tests for channel URL parsing, the YouTube client and the ingestion flow."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock, patch

import httpx
import pytest

from creator_chat.api.models import ContentTypeFiltersModel, ImportSettingsModel, IngestRequest
from creator_chat.errors import (
    ConcurrentOperationError,
    InvalidInputError,
    NotFoundError,
    RateLimitedError,
    UpstreamError,
    UsageLimitError,
)
from creator_chat.ingestion.content_filter import filter_videos_by_content_type, get_video_content_type
from creator_chat.ingestion.models import (
    ChannelInfo,
    ChannelUrlType,
    ContentType,
    ContentTypeFilters,
    ImportMode,
    ImportSettings,
    VideoMetadata,
)
from creator_chat.ingestion.pipeline import collect_videos, ingest_channel, sort_videos, validate_ingest_request
from creator_chat.ingestion.youtube import YOUTUBE_API_BASE, YouTubeClient, parse_channel_url, parse_duration
from creator_chat.rag_config import INGEST_AUTHENTICATED_LIMIT
from creator_chat.safety.locks import channel_ingest_lock_key, lock_manager
from creator_chat.safety.rate_limit import rate_limiter
from creator_chat.usage import PLAN_LIMITS, LimitCheck, UserUsage

MODULE = "creator_chat.ingestion.pipeline"


def _video(video_id: str, published_at: str = "2026-01-01T00:00:00Z", seconds: int = 600, **kwargs: Any) -> VideoMetadata:
    return VideoMetadata(
        video_id=video_id,
        title=f"Video {video_id}",
        description="",
        published_at=published_at,
        duration=f"PT{seconds}S",
        duration_seconds=seconds,
        thumbnail_url="",
        view_count=0,
        like_count=0,
        **kwargs,
    )


CHANNEL = ChannelInfo(
    channel_id="UCabc",
    channel_name="Ali Builds",
    avatar_url="https://img/a.jpg",
    subscriber_count="1200",
    uploads_playlist_id="UUabc",
    total_video_count=3,
)


# ------------------------------------------------------------------
# URL and metadata parsing
# ------------------------------------------------------------------


class TestParseChannelUrl:
    @pytest.mark.parametrize(
        ("url", "expected_type", "expected_id"),
        [
            ("https://www.youtube.com/@alibuilds", ChannelUrlType.HANDLE, "alibuilds"),
            ("https://youtube.com/@alibuilds/videos", ChannelUrlType.HANDLE, "alibuilds"),
            ("https://www.youtube.com/channel/UCabc123", ChannelUrlType.CHANNEL, "UCabc123"),
            ("https://www.youtube.com/c/AliBuilds", ChannelUrlType.CUSTOM, "AliBuilds"),
            ("https://www.youtube.com/user/alib", ChannelUrlType.USER, "alib"),
        ],
    )
    def test_recognised_shapes(self, url: str, expected_type: ChannelUrlType, expected_id: str) -> None:
        parsed = parse_channel_url(url)
        assert parsed.type is expected_type
        assert parsed.id == expected_id

    @pytest.mark.parametrize("url", ["https://www.youtube.com/watch?v=abc", "not a url", "https://youtube.com/@"])
    def test_rejects_other_urls(self, url: str) -> None:
        with pytest.raises(InvalidInputError):
            parse_channel_url(url)


class TestParseDuration:
    @pytest.mark.parametrize(
        ("value", "seconds"),
        [("PT45S", 45), ("PT1H2M3S", 3723), ("PT10M", 600), ("P1DT2S", 86402), ("", 0), ("garbage", 0)],
    )
    def test_parse(self, value: str, seconds: int) -> None:
        assert parse_duration(value) == seconds


class TestContentTypes:
    def test_enums_behave_as_strings(self) -> None:
        assert ImportMode("oldest") is ImportMode.OLDEST
        assert ContentType.SHORT == "short"
        assert all(isinstance(member, str) for enum in (ImportMode, ContentType, ChannelUrlType) for member in enum)

    def test_live_wins_over_duration(self) -> None:
        assert get_video_content_type(_video("a", seconds=30, has_live_streaming_details=True)) is ContentType.LIVE

    def test_upcoming_broadcast_is_live(self) -> None:
        assert get_video_content_type(_video("a", live_broadcast_content="upcoming")) is ContentType.LIVE

    def test_short_and_regular(self) -> None:
        assert get_video_content_type(_video("a", seconds=61)) is ContentType.SHORT
        assert get_video_content_type(_video("a", seconds=62)) is ContentType.VIDEO
        assert get_video_content_type(_video("a", seconds=0)) is ContentType.VIDEO

    def test_filter_preserves_order(self) -> None:
        videos = [_video("long1"), _video("short", seconds=20), _video("long2")]
        kept = filter_videos_by_content_type(videos, ContentTypeFilters(videos=True))
        assert [v.video_id for v in kept] == ["long1", "long2"]

    def test_sort_modes(self) -> None:
        videos = [
            _video("mid", "2026-02-01T00:00:00Z"),
            _video("new", "2026-03-01T00:00:00Z"),
            _video("old", "2026-01-01T00:00:00Z"),
        ]
        assert [v.video_id for v in sort_videos(videos, ImportMode.LATEST)] == ["new", "mid", "old"]
        assert [v.video_id for v in sort_videos(videos, ImportMode.OLDEST)] == ["old", "mid", "new"]
        assert [v.video_id for v in sort_videos(videos, ImportMode.ALL)] == ["mid", "new", "old"]


# ------------------------------------------------------------------
# YouTube client over a mocked transport
# ------------------------------------------------------------------


def _youtube(handler) -> YouTubeClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=YOUTUBE_API_BASE)
    return YouTubeClient(api_key="test-key", http_client=http)


class TestYouTubeClient:
    def test_resolve_handle_uses_for_handle(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "items": [
                        {
                            "id": "UCabc",
                            "snippet": {"title": "Ali Builds", "thumbnails": {"high": {"url": "https://img/h.jpg"}}},
                            "statistics": {"subscriberCount": "1200", "videoCount": "42"},
                            "contentDetails": {"relatedPlaylists": {"uploads": "UUabc"}},
                        }
                    ]
                },
            )

        info = asyncio.run(_youtube(handler).resolve_channel(parse_channel_url("https://youtube.com/@alibuilds")))

        assert info is not None
        assert info.channel_id == "UCabc"
        assert info.uploads_playlist_id == "UUabc"
        assert info.total_video_count == 42
        assert seen[0].url.params["forHandle"] == "alibuilds"
        assert seen[0].url.params["key"] == "test-key"

    def test_unknown_channel_is_none(self) -> None:
        client = _youtube(lambda request: httpx.Response(200, json={"items": []}))
        assert asyncio.run(client.get_channel("UCnope")) is None

    def test_pages_uploads(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("pageToken") == "p2":
                return httpx.Response(200, json={"items": [{"contentDetails": {"videoId": "v3"}}]})
            return httpx.Response(
                200,
                json={
                    "items": [{"contentDetails": {"videoId": "v1"}}, {"contentDetails": {"videoId": "v2"}}],
                    "nextPageToken": "p2",
                },
            )

        ids = asyncio.run(_youtube(handler).list_upload_ids("UUabc", 10))
        assert ids == ["v1", "v2", "v3"]

    def test_stops_at_max(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            items = [{"contentDetails": {"videoId": f"v{i}"}} for i in range(5)]
            return httpx.Response(200, json={"items": items, "nextPageToken": "more"})

        assert asyncio.run(_youtube(handler).list_upload_ids("UUabc", 3)) == ["v0", "v1", "v2"]

    def test_published_after_stops_paging(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "items": [
                        {"contentDetails": {"videoId": "new", "videoPublishedAt": "2026-03-02T00:00:00Z"}},
                        {"contentDetails": {"videoId": "seen", "videoPublishedAt": "2026-03-01T00:00:00Z"}},
                        {"contentDetails": {"videoId": "older", "videoPublishedAt": "2026-02-01T00:00:00Z"}},
                    ],
                    "nextPageToken": "never-requested",
                },
            )

        cutoff = datetime(2026, 3, 1, tzinfo=UTC)
        assert asyncio.run(_youtube(handler).list_upload_ids("UUabc", 50, cutoff)) == ["new"]

    def test_get_videos_batches_by_fifty(self) -> None:
        batches: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            ids = request.url.params["id"].split(",")
            batches.append(len(ids))
            return httpx.Response(
                200,
                json={"items": [{"id": i, "snippet": {"title": i}, "contentDetails": {"duration": "PT2M"}} for i in ids]},
            )

        videos = asyncio.run(_youtube(handler).get_videos([f"v{i}" for i in range(120)]))

        assert batches == [50, 50, 20]
        assert len(videos) == 120
        assert videos[0].duration_seconds == 120

    def test_quota_exceeded_is_fatal(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                403,
                json={"error": {"message": "quota", "errors": [{"reason": "quotaExceeded"}]}},
            )

        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(_youtube(handler).get_channel("UCabc"))
        assert not excinfo.value.retryable
        assert excinfo.value.provider == "youtube"

    def test_server_error_is_retryable(self) -> None:
        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(_youtube(lambda request: httpx.Response(503)).get_channel("UCabc"))
        assert excinfo.value.retryable

    def test_html_gateway_error_is_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="<html><body>Bad Gateway</body></html>")

        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(_youtube(handler).get_channel("UCabc"))
        assert excinfo.value.retryable
        assert excinfo.value.status_code == 503

    @pytest.mark.parametrize("reason", ["rateLimitExceeded", "userRateLimitExceeded"])
    def test_throttling_is_retryable(self, reason: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"error": {"message": "slow down", "errors": [{"reason": reason}]}})

        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(_youtube(handler).get_channel("UCabc"))
        assert excinfo.value.retryable
        assert excinfo.value.code == "UPSTREAM_UNAVAILABLE"

    def test_daily_limit_is_fatal(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"error": {"errors": [{"reason": "dailyLimitExceeded"}]}})

        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(_youtube(handler).get_channel("UCabc"))
        assert excinfo.value.code == "UPSTREAM_QUOTA_EXCEEDED"


# ------------------------------------------------------------------
# Ingestion flow
# ------------------------------------------------------------------


class FakeYouTube:
    """Stands in for YouTubeClient inside the ingestion pipeline."""

    def __init__(self, info: ChannelInfo | None = CHANNEL, videos: list[VideoMetadata] | None = None) -> None:
        self.info = info
        self.videos = videos if videos is not None else [_video("v1"), _video("v2")]
        self.upload_calls: list[tuple[str, int, datetime | None]] = []

    def __call__(self) -> FakeYouTube:
        return self

    async def __aenter__(self) -> FakeYouTube:
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None

    async def resolve_channel(self, parsed) -> ChannelInfo | None:
        return self.info

    async def get_channel(self, channel_id: str) -> ChannelInfo | None:
        return self.info

    async def list_upload_ids(self, playlist_id: str, max_videos: int, published_after: datetime | None = None) -> list[str]:
        self.upload_calls.append((playlist_id, max_videos, published_after))
        return [v.video_id for v in self.videos]

    async def get_videos(self, video_ids: list[str]) -> list[VideoMetadata]:
        return [v for v in self.videos if v.video_id in video_ids]


def _ingest_request(**kwargs: Any) -> IngestRequest:
    kwargs.setdefault("user_id", "user-1")
    if "existing_channel_id" not in kwargs:
        kwargs.setdefault("channel_url", "https://www.youtube.com/@alibuilds")
    return IngestRequest(**kwargs)


@pytest.fixture
def storage() -> Iterator[dict[str, MagicMock]]:
    names = {
        "get_supabase_client": MagicMock(),
        "get_user_usage": UserUsage(),
        "get_channel": {"id": "row-1", "channel_id": "UCabc", "channel_name": "Ali Builds", "last_indexed_at": "2026-03-01T00:00:00+00:00"},
        "get_channel_by_youtube_id": None,
        "user_has_channel": False,
        "check_creator_limit": LimitCheck(True, 0, 2, "free"),
        "save_channel": ({"id": "row-1", "channel_id": "UCabc", "channel_name": "Ali Builds"}, True),
        "link_user_to_channel": True,
        "get_existing_video_ids": set(),
        "upsert_videos": 2,
        "count_channel_videos": 2,
        "mark_channel_indexed": "2026-03-14T12:00:00+00:00",
        "increment_creator_count": None,
        "increment_videos_indexed": None,
        "update_channel": None,
    }
    patchers = {name: patch(f"{MODULE}.{name}", return_value=value) for name, value in names.items()}
    mocks = {name: p.start() for name, p in patchers.items()}
    yield mocks
    for p in patchers.values():
        p.stop()


class TestValidateIngestRequest:
    def test_requires_user(self) -> None:
        with pytest.raises(InvalidInputError, match="userId"):
            validate_ingest_request(IngestRequest(channel_url="https://youtube.com/@a"))

    def test_requires_exactly_one_reference(self) -> None:
        with pytest.raises(InvalidInputError):
            validate_ingest_request(IngestRequest(user_id="u"))
        with pytest.raises(InvalidInputError):
            validate_ingest_request(
                IngestRequest(user_id="u", channel_url="https://youtube.com/@a", existing_channel_id="row-1")
            )

    def test_rejects_bad_url(self) -> None:
        with pytest.raises(InvalidInputError):
            validate_ingest_request(IngestRequest(user_id="u", channel_url="https://example.com/watch"))

    def test_requires_a_content_type(self) -> None:
        request = _ingest_request(content_type_filters=ContentTypeFiltersModel(videos=False))
        with pytest.raises(InvalidInputError, match="content type"):
            validate_ingest_request(request)


class TestCollectVideos:
    def test_caps_at_effective_limit(self) -> None:
        yt = FakeYouTube(videos=[_video(f"v{i}", f"2026-01-{i + 1:02d}T00:00:00Z") for i in range(15)])
        videos = asyncio.run(
            collect_videos(yt, CHANNEL, ImportSettings(ImportMode.LATEST, 50), ContentTypeFilters(), PLAN_LIMITS["free"])
        )
        assert len(videos) == 10
        assert videos[0].video_id == "v14"

    def test_no_uploads_playlist(self) -> None:
        info = ChannelInfo(channel_id="UCx", channel_name="X")
        assert asyncio.run(
            collect_videos(FakeYouTube(), info, ImportSettings(), ContentTypeFilters(), PLAN_LIMITS["free"])
        ) == []


class TestIngestChannel:
    def test_imports_new_channel(self, storage: dict[str, MagicMock]) -> None:
        with patch(f"{MODULE}.YouTubeClient", FakeYouTube()):
            response = asyncio.run(ingest_channel(_ingest_request()))

        assert response.success
        assert response.new_videos_count == 2
        assert response.message == "Successfully ingested 2 videos from Ali Builds"
        assert response.channel.indexed_videos == 2
        assert response.channel.ingestion_status == "completed"
        storage["increment_creator_count"].assert_called_once()
        storage["increment_videos_indexed"].assert_called_once()
        assert lock_manager.get(channel_ingest_lock_key("UCabc")) is None

    def test_store_failure_marks_channel_failed(self, storage: dict[str, MagicMock]) -> None:
        storage["upsert_videos"].side_effect = ConnectionError("db down")

        with patch(f"{MODULE}.YouTubeClient", FakeYouTube()):
            with pytest.raises(UpstreamError):
                asyncio.run(ingest_channel(_ingest_request()))

        storage["update_channel"].assert_called_once()
        assert storage["update_channel"].call_args.kwargs == {"ingestion_status": "failed"}
        assert lock_manager.get(channel_ingest_lock_key("UCabc")) is None

    def test_unknown_channel(self, storage: dict[str, MagicMock]) -> None:
        with patch(f"{MODULE}.YouTubeClient", FakeYouTube(info=None)):
            with pytest.raises(NotFoundError):
                asyncio.run(ingest_channel(_ingest_request()))

    def test_concurrent_ingest_fails_fast(self, storage: dict[str, MagicMock]) -> None:
        lock_manager.acquire(channel_ingest_lock_key("UCabc"), 600)

        with patch(f"{MODULE}.YouTubeClient", FakeYouTube()):
            with pytest.raises(ConcurrentOperationError) as excinfo:
                asyncio.run(ingest_channel(_ingest_request()))

        assert excinfo.value.retry_after_seconds is not None
        storage["save_channel"].assert_not_called()

    def test_creator_limit_blocks_new_link(self, storage: dict[str, MagicMock]) -> None:
        storage["check_creator_limit"].return_value = LimitCheck(False, 2, 2, "free")

        with patch(f"{MODULE}.YouTubeClient", FakeYouTube()):
            with pytest.raises(UsageLimitError) as excinfo:
                asyncio.run(ingest_channel(_ingest_request()))

        assert excinfo.value.details["limitType"] == "creators"
        assert lock_manager.get(channel_ingest_lock_key("UCabc")) is None

    def test_already_linked_skips_creator_limit(self, storage: dict[str, MagicMock]) -> None:
        storage["get_channel_by_youtube_id"].return_value = {"id": "row-1", "channel_id": "UCabc"}
        storage["user_has_channel"].return_value = True
        storage["link_user_to_channel"].return_value = False

        with patch(f"{MODULE}.YouTubeClient", FakeYouTube()):
            asyncio.run(ingest_channel(_ingest_request()))

        storage["check_creator_limit"].assert_not_called()
        storage["increment_creator_count"].assert_not_called()

    def test_rate_limited(self, storage: dict[str, MagicMock]) -> None:
        for _ in range(INGEST_AUTHENTICATED_LIMIT.requests):
            rate_limiter.check_profile("ingest:user:user-1", INGEST_AUTHENTICATED_LIMIT)

        with pytest.raises(RateLimitedError):
            asyncio.run(ingest_channel(_ingest_request()))

    def test_refresh_up_to_date(self, storage: dict[str, MagicMock]) -> None:
        storage["get_existing_video_ids"].return_value = {"v1", "v2"}
        yt = FakeYouTube()

        with patch(f"{MODULE}.YouTubeClient", yt):
            response = asyncio.run(ingest_channel(_ingest_request(existing_channel_id="row-1")))

        assert response.up_to_date
        assert response.message == "Creator is up to date. No new videos found."
        assert yt.upload_calls[0][2] == datetime(2026, 3, 1, tzinfo=UTC)
        storage["upsert_videos"].assert_not_called()

    def test_refresh_with_new_videos(self, storage: dict[str, MagicMock]) -> None:
        storage["get_existing_video_ids"].return_value = {"v1"}

        with patch(f"{MODULE}.YouTubeClient", FakeYouTube()):
            response = asyncio.run(ingest_channel(_ingest_request(existing_channel_id="row-1")))

        assert not response.up_to_date
        assert response.new_videos_count == 1
        assert response.message == "Found 1 new videos. Processing transcripts..."

    def test_refresh_unknown_row(self, storage: dict[str, MagicMock]) -> None:
        storage["get_channel"].return_value = None
        with pytest.raises(NotFoundError, match="refresh"):
            asyncio.run(ingest_channel(_ingest_request(existing_channel_id="missing")))

    def test_oldest_mode_scans_deep(self, storage: dict[str, MagicMock]) -> None:
        yt = FakeYouTube()
        request = _ingest_request(import_settings=ImportSettingsModel(mode=ImportMode.OLDEST, limit=5))

        with patch(f"{MODULE}.YouTubeClient", yt):
            asyncio.run(ingest_channel(request))

        assert yt.upload_calls[0][1] == 500
