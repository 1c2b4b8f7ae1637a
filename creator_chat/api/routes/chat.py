"""Chat endpoint: grounded answers over a creator's indexed transcripts."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Request

from creator_chat.api.models import ChatRequest, ChatResponse
from creator_chat.api.responses import run_until_disconnect
from creator_chat.config import settings
from creator_chat.retrieval.pipeline import answer_question

router = APIRouter()


@router.post("/api/chat", response_model=ChatResponse)
async def chat(body: ChatRequest, request: Request) -> ChatResponse:
    """Answer a question, or refuse when the transcripts do not cover it.

    The pipeline is cancelled if the client disconnects mid-flight, in which
    case no usage is recorded.
    """
    request_id = uuid.uuid4().hex[:8]
    return await run_until_disconnect(
        request, answer_question(body, request_id=request_id), settings.disconnect_poll_seconds
    )
