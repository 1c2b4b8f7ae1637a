"""Channel ingestion: resolve -> lock -> fetch uploads -> filter -> store."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from typing import Any, TypeVar

from creator_chat.api.models import ChannelSummary, IngestRequest, IngestResponse
from creator_chat.config import settings
from creator_chat.errors import InvalidInputError, NotFoundError, RateLimitedError, classify_provider_error
from creator_chat.ingestion.content_filter import filter_videos_by_content_type, has_any_content_type
from creator_chat.ingestion.models import (
    ChannelInfo,
    ContentTypeFilters,
    ImportMode,
    ImportSettings,
    VideoMetadata,
)
from creator_chat.ingestion.storage import (
    count_channel_videos,
    get_channel,
    get_channel_by_youtube_id,
    get_existing_video_ids,
    get_supabase_client,
    link_user_to_channel,
    mark_channel_indexed,
    save_channel,
    update_channel,
    upsert_videos,
    user_has_channel,
)
from creator_chat.ingestion.youtube import YouTubeClient, parse_channel_url, parse_iso_datetime
from creator_chat.rag_config import INGEST_AUTHENTICATED_LIMIT
from creator_chat.safety.locks import channel_ingest_lock_key, lock_manager
from creator_chat.safety.rate_limit import rate_limiter
from creator_chat.usage import (
    PlanLimits,
    check_creator_limit,
    effective_video_limit,
    get_user_usage,
    increment_creator_count,
    increment_videos_indexed,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound on playlist entries scanned when filtering or importing oldest-first.
MAX_PLAYLIST_SCAN = 500
FILTER_OVERSCAN = 4


async def _db(fn: Callable[..., T], *args: Any) -> T:
    try:
        return await asyncio.to_thread(fn, *args)
    except Exception as exc:
        raise classify_provider_error(exc, "supabase") from exc


def validate_ingest_request(request: IngestRequest) -> None:
    """Reject malformed requests before any lock or idempotency state exists.

    Raises:
        InvalidInputError: Missing user, not exactly one channel reference,
            an unrecognised channel URL, or no content type selected.
    """
    if not request.user_id:
        raise InvalidInputError("userId is required")
    if bool(request.channel_url) == bool(request.existing_channel_id):
        raise InvalidInputError("Provide exactly one of channelUrl or existingChannelId")
    if request.channel_url:
        parse_channel_url(request.channel_url)
    if not has_any_content_type(_filters(request)):
        raise InvalidInputError("Select at least one content type to import")


def _filters(request: IngestRequest) -> ContentTypeFilters:
    f = request.content_type_filters
    return ContentTypeFilters(videos=f.videos, shorts=f.shorts, lives=f.lives)


def _import_settings(request: IngestRequest) -> ImportSettings:
    return ImportSettings(mode=request.import_settings.mode, limit=request.import_settings.limit)


def sort_videos(videos: list[VideoMetadata], mode: ImportMode) -> list[VideoMetadata]:
    """Newest first for ``latest``, oldest first for ``oldest``, API order for ``all``."""
    if mode is ImportMode.ALL:
        return list(videos)
    return sorted(videos, key=lambda v: v.published_at, reverse=mode is ImportMode.LATEST)


def _scan_size(limit: int, mode: ImportMode, filters: ContentTypeFilters) -> int:
    if mode is ImportMode.OLDEST:
        return max(limit, MAX_PLAYLIST_SCAN)
    if filters == ContentTypeFilters(videos=True, shorts=True, lives=True):
        return limit
    return min(limit * FILTER_OVERSCAN, max(limit, MAX_PLAYLIST_SCAN))


async def collect_videos(
    yt: YouTubeClient,
    info: ChannelInfo,
    import_settings: ImportSettings,
    filters: ContentTypeFilters,
    plan: PlanLimits,
    published_after: str | None = None,
) -> list[VideoMetadata]:
    """Fetch, classify, filter and order uploads, capped at the effective limit."""
    if not info.uploads_playlist_id:
        return []
    limit = effective_video_limit(import_settings, plan)
    ids = await yt.list_upload_ids(
        info.uploads_playlist_id,
        _scan_size(limit, import_settings.mode, filters),
        parse_iso_datetime(published_after) if published_after else None,
    )
    videos = filter_videos_by_content_type(await yt.get_videos(ids), filters)
    return sort_videos(videos, import_settings.mode)[:limit]


def _enforce_rate_limit(user_id: str) -> None:
    profile = INGEST_AUTHENTICATED_LIMIT
    result = rate_limiter.check_profile(f"ingest:user:{user_id}", profile)
    if not result.allowed:
        raise RateLimitedError(
            "Too many ingestion requests. Please try again later.",
            retry_after_seconds=result.retry_after(rate_limiter.now()),
            details={"limit": profile.requests, "windowMinutes": profile.window_minutes},
        )


def _summary(row: dict[str, Any], **overrides: Any) -> ChannelSummary:
    data = {**row, **overrides}
    return ChannelSummary(
        id=str(data["id"]),
        channel_id=data["channel_id"],
        channel_name=data.get("channel_name") or "",
        avatar_url=data.get("avatar_url"),
        subscriber_count=data.get("subscriber_count"),
        indexed_videos=data.get("indexed_videos") or 0,
        total_videos=data.get("total_videos") or 0,
        ingestion_status=data.get("ingestion_status"),
        ingestion_progress=data.get("ingestion_progress") or 0,
        last_indexed_at=data.get("last_indexed_at"),
    )


async def _record_ingest_usage(
    user_id: str, new_creator: bool, new_videos: int, request_id: str
) -> None:
    try:
        client = get_supabase_client()
        if new_creator:
            await asyncio.to_thread(increment_creator_count, client, user_id)
        await asyncio.to_thread(increment_videos_indexed, client, user_id, new_videos)
    except Exception:
        logger.exception("[%s] Failed to record ingestion usage for %s", request_id, user_id)


async def _mark_failed(channel_uuid: str, request_id: str) -> None:
    try:
        await asyncio.to_thread(update_channel, get_supabase_client(), channel_uuid, ingestion_status="failed")
    except Exception:
        logger.exception("[%s] Could not mark channel %s as failed", request_id, channel_uuid)


async def _store_videos(
    channel_row: dict[str, Any], info: ChannelInfo, videos: list[VideoMetadata]
) -> tuple[int, int, str]:
    """Upsert videos and stamp the channel. Returns ``(new, total, indexed_at)``."""
    client = get_supabase_client()
    existing_ids = await _db(get_existing_video_ids, client, info.channel_id)
    new_count = sum(1 for v in videos if v.video_id not in existing_ids)
    await _db(upsert_videos, client, videos, info.channel_id)
    total = await _db(count_channel_videos, client, info.channel_id)
    indexed_at = await _db(mark_channel_indexed, client, channel_row["id"], total, info.total_video_count)
    return new_count, total, indexed_at


async def _import_channel(request: IngestRequest, user_id: str, request_id: str) -> IngestResponse:
    channel_url = request.channel_url or ""
    parsed = parse_channel_url(channel_url)
    filters, import_settings = _filters(request), _import_settings(request)

    async with YouTubeClient() as yt:
        info = await yt.resolve_channel(parsed)
        if info is None:
            raise NotFoundError("Channel not found", details={"channelUrl": channel_url})

        with lock_manager.hold(
            channel_ingest_lock_key(info.channel_id), settings.ingest_lock_ttl_seconds, operation="ingest"
        ):
            client = get_supabase_client()
            usage = await _db(get_user_usage, client, user_id)
            existing = await _db(get_channel_by_youtube_id, client, info.channel_id)
            linked = bool(existing) and await _db(user_has_channel, client, user_id, existing["id"])
            if not linked:
                check = await _db(check_creator_limit, client, user_id)
                check.raise_if_exceeded(
                    "creators",
                    f"You've reached your limit of {check.limit} creators. Upgrade to add more.",
                )

            channel_row, created = await _db(save_channel, client, info, channel_url)
            newly_linked = await _db(link_user_to_channel, client, user_id, channel_row["id"])
            logger.info(
                "[%s] Importing %s (%s, created=%s, mode=%s)",
                request_id,
                info.channel_name,
                info.channel_id,
                created,
                import_settings.mode.value,
            )

            try:
                videos = await collect_videos(yt, info, import_settings, filters, usage.limits)
                new_count, total, indexed_at = await _store_videos(channel_row, info, videos)
            except Exception:
                await _mark_failed(channel_row["id"], request_id)
                raise

    await _record_ingest_usage(user_id, newly_linked, new_count, request_id)

    message = (
        f"Successfully ingested {len(videos)} videos from {info.channel_name}"
        if videos
        else "Channel found but no videos available"
    )
    return IngestResponse(
        message=message,
        new_videos_count=new_count,
        channel=_summary(
            channel_row,
            channel_name=info.channel_name,
            avatar_url=info.avatar_url,
            subscriber_count=info.subscriber_count,
            indexed_videos=total,
            total_videos=info.total_video_count,
            ingestion_status="completed",
            ingestion_progress=100,
            last_indexed_at=indexed_at,
        ),
    )


async def _refresh_channel(request: IngestRequest, user_id: str, request_id: str) -> IngestResponse:
    channel_uuid = request.existing_channel_id or ""
    filters, import_settings = _filters(request), _import_settings(request)
    client = get_supabase_client()

    row = await _db(get_channel, client, channel_uuid)
    if row is None:
        raise NotFoundError("Channel not found for refresh", details={"channelId": channel_uuid})

    with lock_manager.hold(
        channel_ingest_lock_key(row["channel_id"]), settings.ingest_lock_ttl_seconds, operation="refresh"
    ):
        async with YouTubeClient() as yt:
            info = await yt.get_channel(row["channel_id"])
            if info is None:
                raise NotFoundError("Channel not found on YouTube", details={"channelId": row["channel_id"]})

            usage = await _db(get_user_usage, client, user_id)
            videos = await collect_videos(
                yt, info, import_settings, filters, usage.limits, published_after=row.get("last_indexed_at")
            )

        existing_ids = await _db(get_existing_video_ids, client, info.channel_id)
        if not any(v.video_id not in existing_ids for v in videos):
            logger.info("[%s] Channel %s is up to date", request_id, info.channel_id)
            return IngestResponse(
                up_to_date=True,
                message="Creator is up to date. No new videos found.",
                channel=_summary(row),
            )

        new_count, total, indexed_at = await _store_videos(row, info, videos)

    await _record_ingest_usage(user_id, False, new_count, request_id)
    logger.info("[%s] Refreshed %s: %d new videos", request_id, info.channel_id, new_count)
    return IngestResponse(
        message=f"Found {new_count} new videos. Processing transcripts...",
        new_videos_count=new_count,
        channel=_summary(
            row,
            indexed_videos=total,
            total_videos=info.total_video_count,
            ingestion_status="completed",
            ingestion_progress=100,
            last_indexed_at=indexed_at,
        ),
    )


async def ingest_channel(request: IngestRequest, request_id: str | None = None) -> IngestResponse:
    """Import a channel by URL, or refresh an existing one by id.

    The per-channel lock is held from the first video fetch until the channel
    row is stamped; a concurrent ingestion of the same channel fails fast.

    Raises:
        InvalidInputError: See :func:`validate_ingest_request`.
        RateLimitedError: The user's ingestion window is exhausted.
        ConcurrentOperationError: The channel is already being ingested.
        NotFoundError: Unknown channel.
        UsageLimitError: The user's creator limit is reached.
        UpstreamError: YouTube or Supabase failure.
    """
    request_id = request_id or uuid.uuid4().hex[:8]
    validate_ingest_request(request)
    user_id = request.user_id or ""
    _enforce_rate_limit(user_id)

    if request.existing_channel_id:
        return await _refresh_channel(request, user_id, request_id)
    return await _import_channel(request, user_id, request_id)
