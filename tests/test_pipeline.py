"""End-to-end tests for the chat orchestrator with every external call mocked."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from creator_chat.api.models import CallerIdentity, ChatRequest, HistoryMessage
from creator_chat.api.responses import run_until_disconnect
from creator_chat.errors import ClientDisconnectedError, InvalidInputError, RateLimitedError, UpstreamError, UsageLimitError
from creator_chat.rag_config import CHAT_AUTHENTICATED_LIMIT, ConfidenceLevel, QuestionType, get_retrieval_profile
from creator_chat.retrieval.generation import Completion
from creator_chat.retrieval.models import VideoDetails
from creator_chat.retrieval.pipeline import (
    MOMENT_NO_TIMESTAMPS_MESSAGE,
    MOMENT_NOT_FOUND_MESSAGE,
    NOT_COVERED_MESSAGE,
    NOT_INDEXED_MESSAGE,
    answer_question,
)
from creator_chat.retrieval.search import ChannelIndexStatus, RetrievalResult
from creator_chat.safety.rate_limit import rate_limiter
from creator_chat.usage import LimitCheck

MODULE = "creator_chat.retrieval.pipeline"


@dataclass
class PipelineMocks:
    index_status: MagicMock
    embed: AsyncMock
    retrieve: AsyncMock
    video_details: MagicMock
    generate: AsyncMock
    check_messages: MagicMock
    check_public: MagicMock
    increment_messages: MagicMock
    increment_public: MagicMock

    def returns_chunks(self, question_type: QuestionType, chunks, is_public: bool = False) -> None:
        profile = get_retrieval_profile(question_type, is_public)
        self.retrieve.return_value = RetrievalResult(
            chunks, profile, profile.preferred_threshold if chunks else None, [profile.preferred_threshold]
        )


@pytest.fixture
def mocks() -> Iterator[PipelineMocks]:
    with (
        patch(f"{MODULE}.get_supabase_client", return_value=MagicMock()),
        patch(f"{MODULE}.check_channel_index_status", return_value=ChannelIndexStatus(12, 12, 12)) as index_status,
        patch(f"{MODULE}.embed_query", new_callable=AsyncMock, return_value=[0.1] * 1536) as embed,
        patch(f"{MODULE}.retrieve", new_callable=AsyncMock) as retrieve,
        patch(
            f"{MODULE}.get_video_details",
            return_value={"vid1": VideoDetails("vid1", "Pricing 101", "https://img/1.jpg")},
        ) as video_details,
        patch(
            f"{MODULE}.generate_answer",
            new_callable=AsyncMock,
            return_value=Completion("I covered that around 0:30 in Pricing 101.", "claude-test", 900, 40),
        ) as generate,
        patch(f"{MODULE}.check_message_limit", return_value=LimitCheck(True, 3, 18, "free")) as check_messages,
        patch(f"{MODULE}.check_public_message_limit", return_value=LimitCheck(True, 0, 5)) as check_public,
        patch(f"{MODULE}.increment_message_count") as increment_messages,
        patch(f"{MODULE}.increment_public_message_count") as increment_public,
    ):
        yield PipelineMocks(
            index_status,
            embed,
            retrieve,
            video_details,
            generate,
            check_messages,
            check_public,
            increment_messages,
            increment_public,
        )


def _request(query: str, **kwargs) -> ChatRequest:
    kwargs.setdefault("caller_identity", CallerIdentity(user_id="user-1"))
    kwargs.setdefault("channel_scope", "UC123")
    return ChatRequest(query=query, creator_name="Ali", **kwargs)


class TestAnsweredQuestions:
    def test_moment_question_with_timestamps(self, mocks: PipelineMocks, make_chunk) -> None:
        mocks.returns_chunks(QuestionType.MOMENT, [make_chunk(similarity=0.5)])

        response = asyncio.run(answer_question(_request("Where did you talk about pricing?")))

        assert response.question_type is QuestionType.MOMENT
        assert response.confidence is ConfidenceLevel.HIGH
        assert not response.is_refusal
        assert response.show_citations
        assert len(response.citations) == 1
        assert response.citations[0].timestamp == "0:30"
        assert response.citations[0].title == "Pricing 101"
        assert response.evidence.chunks_used == 1
        mocks.increment_messages.assert_called_once()

    def test_medium_confidence_between_floors(self, mocks: PipelineMocks, make_chunk) -> None:
        mocks.returns_chunks(QuestionType.CONCEPTUAL, [make_chunk(similarity=0.3)])

        response = asyncio.run(answer_question(_request("How should I price my first online course?")))

        assert response.confidence is ConfidenceLevel.MEDIUM
        assert not response.is_refusal

    def test_citations_hidden_unless_asked_for(self, mocks: PipelineMocks, make_chunk) -> None:
        mocks.returns_chunks(QuestionType.CONCEPTUAL, [make_chunk(similarity=0.6)])

        response = asyncio.run(answer_question(_request("How do you grow a newsletter?")))

        assert not response.show_citations
        assert response.citations == []

    def test_prompt_carries_creator_and_history(self, mocks: PipelineMocks, make_chunk) -> None:
        mocks.returns_chunks(QuestionType.FOLLOW_UP, [make_chunk(similarity=0.6)])
        request = _request(
            "tell me more",
            conversation_history=[
                HistoryMessage(role="user", content="What about pricing?"),
                HistoryMessage(role="assistant", content="I charge for value."),
            ],
        )

        asyncio.run(answer_question(request))

        prompt = mocks.generate.await_args.args[0]
        assert prompt.system.startswith("You ARE Ali")
        assert "I charge for value." in prompt.system
        assert prompt.user == "tell me more"

    def test_public_caller_uses_public_counters(self, mocks: PipelineMocks, make_chunk) -> None:
        mocks.returns_chunks(QuestionType.CONCEPTUAL, [make_chunk(similarity=0.6)], is_public=True)
        request = _request("How do you grow a newsletter?", caller_identity=CallerIdentity(public_client_id="anon-9"))

        asyncio.run(answer_question(request))

        assert mocks.retrieve.await_args.args[3] is True
        mocks.check_public.assert_called_once()
        mocks.increment_public.assert_called_once()
        mocks.increment_messages.assert_not_called()


class TestRefusals:
    def test_moment_without_timestamps_refuses(self, mocks: PipelineMocks, make_chunk) -> None:
        mocks.returns_chunks(
            QuestionType.MOMENT, [make_chunk(similarity=0.9, start_time=None, end_time=None)]
        )

        response = asyncio.run(answer_question(_request("Where did you talk about pricing?")))

        assert response.is_refusal
        assert response.confidence is ConfidenceLevel.NOT_COVERED
        assert response.answer == MOMENT_NO_TIMESTAMPS_MESSAGE
        assert response.citations == []
        mocks.generate.assert_not_awaited()

    def test_moment_with_no_chunks_refuses(self, mocks: PipelineMocks) -> None:
        mocks.returns_chunks(QuestionType.MOMENT, [])

        response = asyncio.run(answer_question(_request("Where did you talk about pricing?")))

        assert response.answer == MOMENT_NOT_FOUND_MESSAGE
        assert response.evidence.chunks_used == 0

    def test_weak_context_refuses(self, mocks: PipelineMocks, make_chunk) -> None:
        mocks.returns_chunks(QuestionType.CONCEPTUAL, [make_chunk(similarity=0.1)])

        response = asyncio.run(answer_question(_request("How do you grow a newsletter?")))

        assert response.answer == NOT_COVERED_MESSAGE
        assert response.is_refusal

    def test_refusal_does_not_consume_quota(self, mocks: PipelineMocks) -> None:
        mocks.returns_chunks(QuestionType.GENERAL, [])

        asyncio.run(answer_question(_request("Tell me about your channel")))

        mocks.increment_messages.assert_not_called()

    def test_not_indexed_short_circuits(self, mocks: PipelineMocks) -> None:
        mocks.index_status.return_value = ChannelIndexStatus(4, 4, 0)

        response = asyncio.run(answer_question(_request("Tell me about your channel")))

        assert response.answer == NOT_INDEXED_MESSAGE
        assert response.is_refusal
        mocks.embed.assert_not_awaited()
        mocks.increment_messages.assert_not_called()


class TestGuards:
    def test_blank_query_rejected(self, mocks: PipelineMocks) -> None:
        with pytest.raises(InvalidInputError):
            asyncio.run(answer_question(_request("   ")))
        mocks.check_messages.assert_not_called()

    def test_public_caller_needs_client_id(self, mocks: PipelineMocks) -> None:
        with pytest.raises(InvalidInputError, match="publicClientId"):
            asyncio.run(answer_question(_request("hi", caller_identity=CallerIdentity())))

    def test_public_caller_needs_channel(self, mocks: PipelineMocks) -> None:
        request = _request("hi", caller_identity=CallerIdentity(public_client_id="anon"), channel_scope=None)
        with pytest.raises(InvalidInputError, match="channelScope"):
            asyncio.run(answer_question(request))

    def test_rate_limited_before_quota(self, mocks: PipelineMocks) -> None:
        for _ in range(CHAT_AUTHENTICATED_LIMIT.requests):
            rate_limiter.check_profile("chat:user:user-1", CHAT_AUTHENTICATED_LIMIT)

        with pytest.raises(RateLimitedError) as excinfo:
            asyncio.run(answer_question(_request("How do you grow a newsletter?")))

        assert excinfo.value.retry_after_seconds is not None
        assert excinfo.value.details["limit"] == CHAT_AUTHENTICATED_LIMIT.requests
        mocks.check_messages.assert_not_called()

    def test_quota_exceeded(self, mocks: PipelineMocks) -> None:
        mocks.check_messages.return_value = LimitCheck(False, 18, 18, "free")

        with pytest.raises(UsageLimitError) as excinfo:
            asyncio.run(answer_question(_request("How do you grow a newsletter?")))

        assert excinfo.value.details == {"limitType": "messages", "current": 18, "limit": 18, "planType": "free"}
        mocks.embed.assert_not_awaited()

    def test_quota_store_failure_is_upstream_error(self, mocks: PipelineMocks) -> None:
        mocks.check_messages.side_effect = ConnectionError("db down")

        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(answer_question(_request("How do you grow a newsletter?")))

        assert excinfo.value.provider == "supabase"

    def test_usage_increment_failure_is_swallowed(self, mocks: PipelineMocks, make_chunk) -> None:
        mocks.returns_chunks(QuestionType.CONCEPTUAL, [make_chunk(similarity=0.6)])
        mocks.increment_messages.side_effect = RuntimeError("rpc missing")

        response = asyncio.run(answer_question(_request("How do you grow a newsletter?")))

        assert not response.is_refusal

    def test_completion_failure_leaves_usage_untouched(self, mocks: PipelineMocks, make_chunk) -> None:
        mocks.returns_chunks(QuestionType.CONCEPTUAL, [make_chunk(similarity=0.6)])
        mocks.generate.side_effect = UpstreamError("overloaded", provider="anthropic", retryable=True)

        with pytest.raises(UpstreamError):
            asyncio.run(answer_question(_request("How do you grow a newsletter?")))

        mocks.increment_messages.assert_not_called()


def _client_request(is_disconnected) -> MagicMock:
    request = MagicMock()
    request.url.path = "/api/chat"
    request.is_disconnected = is_disconnected
    return request


class TestDisconnect:
    def test_disconnect_during_completion_records_no_usage(self, mocks: PipelineMocks, make_chunk) -> None:
        mocks.returns_chunks(QuestionType.CONCEPTUAL, [make_chunk(similarity=0.6)])

        async def scenario() -> None:
            generating = asyncio.Event()

            async def stalled_completion(prompt):
                generating.set()
                await asyncio.Event().wait()

            mocks.generate.side_effect = stalled_completion
            request = _client_request(AsyncMock(side_effect=lambda: generating.is_set()))
            await run_until_disconnect(request, answer_question(_request("How do you grow a newsletter?")), 0.01)

        with pytest.raises(ClientDisconnectedError):
            asyncio.run(scenario())

        mocks.generate.assert_awaited_once()
        mocks.increment_messages.assert_not_called()

    def test_disconnect_during_usage_commit_returns_counted_answer(self, mocks: PipelineMocks, make_chunk) -> None:
        mocks.returns_chunks(QuestionType.CONCEPTUAL, [make_chunk(similarity=0.6)])
        counting = threading.Event()
        release = threading.Event()

        def slow_increment(*args) -> None:
            counting.set()
            release.wait(5)

        mocks.increment_messages.side_effect = slow_increment

        async def disconnected() -> bool:
            if counting.is_set():
                release.set()
                return True
            return False

        response = asyncio.run(
            run_until_disconnect(
                _client_request(disconnected), answer_question(_request("How do you grow a newsletter?")), 0.01
            )
        )

        assert not response.is_refusal
        mocks.increment_messages.assert_called_once()
