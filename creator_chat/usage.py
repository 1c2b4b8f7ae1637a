"""Plan limits and the usage counters consulted by chat and ingestion.

Counters live in Supabase: per-user usage behind the ``get_usage_with_limits``
and ``increment_*`` RPCs, and anonymous per-channel daily counters in the
``public_chat_limits`` table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any, cast

from postgrest import CountMethod
from supabase import Client

from creator_chat.errors import UsageLimitError
from creator_chat.ingestion.models import ImportMode, ImportSettings
from creator_chat.rag_config import PUBLIC_LIMITS

logger = logging.getLogger(__name__)

DEFAULT_PLAN = "free"


@dataclass(frozen=True)
class PlanLimits:
    max_creators: int
    max_videos_per_creator: int
    max_daily_messages: int


PLAN_LIMITS: MappingProxyType[str, PlanLimits] = MappingProxyType(
    {
        "free": PlanLimits(max_creators=2, max_videos_per_creator=10, max_daily_messages=18),
        "pro": PlanLimits(max_creators=25, max_videos_per_creator=100, max_daily_messages=500),
    }
)


def get_plan_limits(plan_type: str) -> PlanLimits:
    return PLAN_LIMITS.get(plan_type, PLAN_LIMITS[DEFAULT_PLAN])


@dataclass(frozen=True)
class UserUsage:
    plan_type: str = DEFAULT_PLAN
    messages_sent_today: int = 0
    creators_added: int = 0
    videos_indexed: int = 0

    @property
    def limits(self) -> PlanLimits:
        return get_plan_limits(self.plan_type)


@dataclass(frozen=True)
class LimitCheck:
    allowed: bool
    current: int
    limit: int
    plan_type: str | None = None

    def raise_if_exceeded(self, limit_type: str, message: str) -> None:
        """Raise :class:`UsageLimitError` when the check did not pass."""
        if self.allowed:
            return
        details: dict[str, Any] = {"limitType": limit_type, "current": self.current, "limit": self.limit}
        if self.plan_type:
            details["planType"] = self.plan_type
        raise UsageLimitError(message, details=details)


def get_user_usage(client: Client, user_id: str) -> UserUsage:
    """Read usage for ``user_id``; a missing row means free plan, zero usage."""
    result = client.rpc("get_usage_with_limits", {"p_user_id": user_id}).execute()
    rows = cast(list[dict[str, Any]], result.data or [])
    if not rows:
        return UserUsage()
    row = rows[0]
    return UserUsage(
        plan_type=row.get("plan_type") or DEFAULT_PLAN,
        messages_sent_today=row.get("messages_sent_today") or 0,
        creators_added=row.get("creators_added") or 0,
        videos_indexed=row.get("videos_indexed") or 0,
    )


def check_message_limit(client: Client, user_id: str) -> LimitCheck:
    usage = get_user_usage(client, user_id)
    limit = usage.limits.max_daily_messages
    return LimitCheck(
        allowed=usage.messages_sent_today < limit,
        current=usage.messages_sent_today,
        limit=limit,
        plan_type=usage.plan_type,
    )


def increment_message_count(client: Client, user_id: str) -> None:
    client.rpc("increment_message_count", {"p_user_id": user_id}).execute()


def _public_limit_row(client: Client, identifier: str, channel_id: str) -> dict[str, Any] | None:
    result = (
        client.table("public_chat_limits")
        .select("*")
        .eq("identifier", identifier)
        .eq("channel_id", channel_id)
        .limit(1)
        .execute()
    )
    rows = cast(list[dict[str, Any]], result.data or [])
    return rows[0] if rows else None


def _is_stale(row: dict[str, Any], now: datetime) -> bool:
    """True when the row's counter was last reset on an earlier UTC day."""
    raw = row.get("last_reset_at")
    if not raw:
        return True
    last_reset = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if last_reset.tzinfo is None:
        last_reset = last_reset.replace(tzinfo=UTC)
    return last_reset.astimezone(UTC).date() < now.date()


def check_public_message_limit(
    client: Client, identifier: str, channel_id: str, now: datetime | None = None
) -> LimitCheck:
    now = now or datetime.now(UTC)
    row = _public_limit_row(client, identifier, channel_id)
    current = 0 if row is None or _is_stale(row, now) else int(row.get("messages_today") or 0)
    limit = PUBLIC_LIMITS.max_daily_messages
    return LimitCheck(allowed=current < limit, current=current, limit=limit)


def increment_public_message_count(
    client: Client, identifier: str, channel_id: str, now: datetime | None = None
) -> None:
    now = now or datetime.now(UTC)
    table = client.table("public_chat_limits")
    row = _public_limit_row(client, identifier, channel_id)
    if row is None:
        table.insert(
            {
                "identifier": identifier,
                "channel_id": channel_id,
                "messages_today": 1,
                "last_reset_at": now.isoformat(),
            }
        ).execute()
    elif _is_stale(row, now):
        table.update({"messages_today": 1, "last_reset_at": now.isoformat()}).eq("id", row["id"]).execute()
    else:
        table.update({"messages_today": int(row.get("messages_today") or 0) + 1}).eq("id", row["id"]).execute()


def check_creator_limit(client: Client, user_id: str) -> LimitCheck:
    usage = get_user_usage(client, user_id)
    result = (
        client.table("user_creators")
        .select("id", count=CountMethod.exact)
        .eq("user_id", user_id)
        .execute()
    )
    current = result.count or 0
    limit = usage.limits.max_creators
    return LimitCheck(allowed=current < limit, current=current, limit=limit, plan_type=usage.plan_type)


def increment_creator_count(client: Client, user_id: str) -> None:
    client.rpc("increment_creator_count", {"p_user_id": user_id}).execute()


def increment_videos_indexed(client: Client, user_id: str, count: int) -> None:
    if count <= 0:
        return
    client.rpc("increment_videos_indexed", {"p_user_id": user_id, "p_count": count}).execute()


def effective_video_limit(import_settings: ImportSettings, plan: PlanLimits) -> int:
    """Videos to import: the plan maximum for ``all``/no limit, else the lower of the two."""
    if import_settings.mode is ImportMode.ALL or import_settings.limit is None:
        return plan.max_videos_per_creator
    return min(import_settings.limit, plan.max_videos_per_creator)
