"""Pydantic request/response schemas for the Creator Chat API.

JSON on the wire is camelCase; snake_case field names are accepted too.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from creator_chat.ingestion.models import ImportMode
from creator_chat.rag_config import ConfidenceLevel, QuestionType


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HistoryMessage(ApiModel):
    role: Literal["user", "assistant"]
    content: str


class CallerIdentity(ApiModel):
    """Who is asking. No ``user_id`` means a public (anonymous) caller."""

    user_id: str | None = None
    public_client_id: str | None = None

    @property
    def is_public(self) -> bool:
        return not self.user_id


class ChatRequest(ApiModel):
    """Request body for the /api/chat endpoint."""

    query: str
    channel_scope: str | None = Field(
        default=None,
        validation_alias=AliasChoices("channelScope", "channel_scope", "channelId", "channel_id"),
    )
    conversation_history: list[HistoryMessage] = []
    caller_identity: CallerIdentity = CallerIdentity()
    creator_name: str = "the creator"


class CitationModel(ApiModel):
    index: int
    chunk_id: str
    video_id: str
    title: str
    thumbnail_url: str | None = None
    start_time: float | None = None
    end_time: float | None = None
    timestamp: str | None = None
    has_timestamp: bool
    similarity: float
    excerpt_text: str


class Evidence(ApiModel):
    chunks_used: int = 0
    videos_referenced: int = 0


class ChatResponse(ApiModel):
    """Response body for the /api/chat endpoint.

    ``is_refusal`` is true exactly when ``confidence`` is ``not_covered``.
    """

    answer: str
    citations: list[CitationModel] = []
    show_citations: bool = False
    confidence: ConfidenceLevel
    evidence: Evidence = Evidence()
    is_refusal: bool
    question_type: QuestionType | None = None
    debug: dict[str, Any] | None = None


class ImportSettingsModel(ApiModel):
    mode: ImportMode = ImportMode.LATEST
    limit: int | None = Field(default=20, ge=1)


class ContentTypeFiltersModel(ApiModel):
    videos: bool = True
    shorts: bool = False
    lives: bool = False


class IngestRequest(ApiModel):
    """Request body for the /api/ingest endpoint.

    Exactly one of ``channel_url`` (first import) or ``existing_channel_id``
    (refresh) must be given.
    """

    user_id: str | None = None
    channel_url: str | None = None
    existing_channel_id: str | None = None
    import_settings: ImportSettingsModel = ImportSettingsModel()
    content_type_filters: ContentTypeFiltersModel = ContentTypeFiltersModel()


class ChannelSummary(ApiModel):
    id: str
    channel_id: str
    channel_name: str
    avatar_url: str | None = None
    subscriber_count: str | None = None
    indexed_videos: int = 0
    total_videos: int = 0
    ingestion_status: str | None = None
    ingestion_progress: int = 0
    last_indexed_at: str | None = None


class IngestResponse(ApiModel):
    """Response body for the /api/ingest endpoint."""

    success: bool = True
    up_to_date: bool = False
    message: str
    new_videos_count: int = 0
    channel: ChannelSummary


class ErrorResponse(ApiModel):
    error: str
    code: str
    retry_after_seconds: int | None = None
    details: dict[str, Any] | None = None
    timestamp: str
