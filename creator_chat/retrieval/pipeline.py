"""Chat orchestrator: gate, retrieve, ground and answer one question.

Stages run strictly in sequence: validate, rate limit, usage quota, index
status, classify, expand, embed, retrieve, confidence gate, then either a
refusal or citations + prompt + completion. Usage counters move only after a
completed, non-cancelled answer.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from typing import Any, TypeVar

from creator_chat.api.models import CallerIdentity, ChatRequest, ChatResponse, CitationModel, Evidence
from creator_chat.config import settings
from creator_chat.errors import InvalidInputError, RateLimitedError, classify_provider_error
from creator_chat.ingestion.storage import get_supabase_client
from creator_chat.rag_config import (
    CHAT_AUTHENTICATED_LIMIT,
    CHAT_PUBLIC_LIMIT,
    MAX_HISTORY_MESSAGES,
    ConfidenceLevel,
    QuestionType,
)
from creator_chat.retrieval.citations import build_citations
from creator_chat.retrieval.classifier import classify_question, should_show_citations
from creator_chat.retrieval.confidence import (
    ConfidenceAssessment,
    RefusalReason,
    assess_confidence,
    confidence_message,
)
from creator_chat.retrieval.expansion import expand_query
from creator_chat.retrieval.generation import generate_answer
from creator_chat.retrieval.models import ConversationMessage, TranscriptChunk
from creator_chat.retrieval.prompt import build_prompt
from creator_chat.retrieval.search import (
    ChannelIndexStatus,
    RetrievalResult,
    check_channel_index_status,
    embed_query,
    get_video_details,
    retrieve,
)
from creator_chat.safety.rate_limit import rate_limiter
from creator_chat.usage import (
    LimitCheck,
    check_message_limit,
    check_public_message_limit,
    increment_message_count,
    increment_public_message_count,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOT_INDEXED_MESSAGE = "I haven't been fully indexed yet. Please wait for the indexing process to complete."
MOMENT_NO_TIMESTAMPS_MESSAGE = (
    "I can't pinpoint the exact moment - timestamp data isn't available for this content."
)
MOMENT_NOT_FOUND_MESSAGE = "I couldn't find a specific moment where I discussed that in my indexed videos."
NOT_COVERED_MESSAGE = "I haven't covered that topic in my indexed videos."


def refusal_message(question_type: QuestionType, reason: RefusalReason | None) -> str:
    if question_type is QuestionType.MOMENT:
        if reason is RefusalReason.MOMENT_WITHOUT_TIMESTAMPS:
            return MOMENT_NO_TIMESTAMPS_MESSAGE
        return MOMENT_NOT_FOUND_MESSAGE
    return NOT_COVERED_MESSAGE


async def _supabase_call(fn: Callable[..., T], *args: Any) -> T:
    """Run a blocking Supabase helper off the event loop."""
    try:
        return await asyncio.to_thread(fn, *args)
    except Exception as exc:
        raise classify_provider_error(exc, "supabase") from exc


def _validate(request: ChatRequest) -> str:
    query = request.query.strip()
    if not query:
        raise InvalidInputError("Query is required")
    identity = request.caller_identity
    if identity.is_public:
        if not identity.public_client_id:
            raise InvalidInputError("publicClientId is required for public chat")
        if not request.channel_scope:
            raise InvalidInputError("channelScope is required for public chat")
    return query


def _enforce_rate_limit(identity: CallerIdentity) -> None:
    if identity.is_public:
        key, profile = f"chat:public:{identity.public_client_id}", CHAT_PUBLIC_LIMIT
    else:
        key, profile = f"chat:user:{identity.user_id}", CHAT_AUTHENTICATED_LIMIT

    result = rate_limiter.check_profile(key, profile)
    if not result.allowed:
        raise RateLimitedError(
            "Too many requests. Please slow down and try again later.",
            retry_after_seconds=result.retry_after(rate_limiter.now()),
            details={
                "limit": profile.requests,
                "windowMinutes": profile.window_minutes,
                "resetAt": result.reset_at_datetime.isoformat(),
            },
        )


def _check_quota(identity: CallerIdentity, channel_id: str | None) -> LimitCheck:
    client = get_supabase_client()
    if identity.is_public:
        return check_public_message_limit(client, identity.public_client_id or "", channel_id or "")
    return check_message_limit(client, identity.user_id or "")


async def _enforce_usage_quota(identity: CallerIdentity, channel_id: str | None) -> None:
    check = await _supabase_call(_check_quota, identity, channel_id)
    if identity.is_public:
        check.raise_if_exceeded(
            "public_messages",
            f"You've reached your {check.limit} free questions for today. "
            "Sign up for unlimited access!",
        )
    else:
        check.raise_if_exceeded(
            "messages",
            f"You've reached your daily limit of {check.limit} messages. "
            "Try again tomorrow or upgrade for more.",
        )


def _increment_usage(identity: CallerIdentity, channel_id: str | None) -> None:
    client = get_supabase_client()
    if identity.is_public:
        increment_public_message_count(client, identity.public_client_id or "", channel_id or "")
    else:
        increment_message_count(client, identity.user_id or "")


async def _record_usage(identity: CallerIdentity, channel_id: str | None, request_id: str) -> None:
    """Best-effort counter increment; failures are logged, never raised.

    Starting the increment commits the request: a cancellation arriving while
    it runs is absorbed, so a counted answer is always returned to the caller.
    """
    job = asyncio.ensure_future(asyncio.to_thread(_increment_usage, identity, channel_id))
    while True:
        try:
            await asyncio.shield(job)
            return
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is None or job.cancelled():
                raise
            task.uncancel()
            logger.info("[%s] Cancellation deferred until usage is recorded", request_id)
        except Exception:
            logger.exception("[%s] Failed to record message usage", request_id)
            return


def _evidence(chunks: list[TranscriptChunk]) -> Evidence:
    return Evidence(chunks_used=len(chunks), videos_referenced=len({c.video_id for c in chunks}))


def _debug(
    request_id: str,
    question_type: QuestionType,
    expanded_query: str,
    retrieval: RetrievalResult,
    assessment: ConfidenceAssessment,
) -> dict[str, Any] | None:
    if not settings.show_debug_in_response:
        return None
    gate = assessment.gate
    return {
        "requestId": request_id,
        "questionType": question_type.value,
        "expandedQuery": expanded_query,
        "matchCount": retrieval.profile.match_count,
        "thresholdsTried": retrieval.attempts,
        "thresholdUsed": retrieval.threshold_used,
        "maxSimilarity": round(gate.max_similarity, 4),
        "hasTimestamps": gate.has_timestamps,
        "refusalReason": gate.refusal_reason.value if gate.refusal_reason else None,
        "weightedScore": assessment.weighted_score,
        "weightedLevel": assessment.weighted_level.value,
        "confidenceLabel": confidence_message(assessment.level, len(retrieval.chunks)),
    }


def _not_indexed_response(request_id: str, status: ChannelIndexStatus) -> ChatResponse:
    debug = None
    if settings.show_debug_in_response:
        debug = {
            "requestId": request_id,
            "reason": "not_indexed",
            "totalChunks": status.total_chunks,
            "embeddedChunks": status.embedded_chunks,
            "chunksWithTimestamps": status.chunks_with_timestamps,
        }
    return ChatResponse(
        answer=NOT_INDEXED_MESSAGE,
        confidence=ConfidenceLevel.NOT_COVERED,
        is_refusal=True,
        debug=debug,
    )


async def answer_question(request: ChatRequest, request_id: str | None = None) -> ChatResponse:
    """Answer ``request.query`` strictly from the channel's indexed transcripts.

    Args:
        request: The validated chat request.
        request_id: Correlation id for log lines; generated when omitted.

    Returns:
        A grounded answer, or a well-formed refusal (``is_refusal`` with
        ``confidence == not_covered``) when the evidence is inadequate.

    Raises:
        InvalidInputError: Empty query or missing public-caller identifiers.
        RateLimitedError: The caller's fixed window is exhausted.
        UsageLimitError: The caller's daily message quota is used up.
        UpstreamError: Embedding, vector store or completion failure.
    """
    request_id = request_id or uuid.uuid4().hex[:8]
    query = _validate(request)
    identity = request.caller_identity
    channel_id = request.channel_scope

    logger.info(
        "[%s] Chat query=%r channel=%s public=%s history=%d",
        request_id,
        query[:50],
        channel_id or "all",
        identity.is_public,
        len(request.conversation_history),
    )

    _enforce_rate_limit(identity)
    await _enforce_usage_quota(identity, channel_id)

    index_status = await _supabase_call(check_channel_index_status, channel_id)
    if not index_status.is_ready:
        logger.info("[%s] Channel %s is not indexed yet", request_id, channel_id or "all")
        return _not_indexed_response(request_id, index_status)

    history = [
        ConversationMessage(role=m.role, content=m.content) for m in request.conversation_history
    ]
    question_type = classify_question(query, bool(history))
    expanded_query = expand_query(query, history, question_type)
    logger.info("[%s] Question type: %s", request_id, question_type.value)

    embedding = await embed_query(expanded_query)
    retrieval = await retrieve(embedding, channel_id, question_type, identity.is_public)
    chunks = retrieval.chunks

    assessment = assess_confidence(chunks, question_type, query)
    debug = _debug(request_id, question_type, expanded_query, retrieval, assessment)

    if not assessment.should_answer:
        logger.info(
            "[%s] Refusing: %s (max similarity %.3f)",
            request_id,
            assessment.gate.refusal_reason,
            assessment.gate.max_similarity,
        )
        return ChatResponse(
            answer=refusal_message(question_type, assessment.gate.refusal_reason),
            confidence=ConfidenceLevel.NOT_COVERED,
            evidence=_evidence(chunks),
            is_refusal=True,
            question_type=question_type,
            debug=debug,
        )

    video_details = await _supabase_call(get_video_details, [c.video_id for c in chunks])
    show_citations = should_show_citations(question_type, query)
    citations = build_citations(chunks, video_details)

    prompt = build_prompt(
        query,
        chunks,
        history,
        question_type,
        request.creator_name,
        assessment.level,
        video_details,
        MAX_HISTORY_MESSAGES,
    )
    completion = await generate_answer(prompt)
    logger.info(
        "[%s] Answered with %s confidence (%d chunks, %d output tokens)",
        request_id,
        assessment.level.value,
        len(chunks),
        completion.output_tokens,
    )

    await _record_usage(identity, channel_id, request_id)

    return ChatResponse(
        answer=completion.text,
        citations=(
            [CitationModel.model_validate(c, from_attributes=True) for c in citations]
            if show_citations
            else []
        ),
        show_citations=show_citations,
        confidence=assessment.level,
        evidence=_evidence(chunks),
        is_refusal=False,
        question_type=question_type,
        debug=debug,
    )
