"""Claude-powered grounded answer generation."""

from __future__ import annotations

from dataclasses import dataclass

from anthropic import AsyncAnthropic
from anthropic.types import TextBlock

from creator_chat.config import settings
from creator_chat.errors import UpstreamError, classify_provider_error
from creator_chat.retrieval.prompt import AssembledPrompt


@dataclass(frozen=True)
class Completion:
    text: str
    model: str
    input_tokens: int
    output_tokens: int


async def generate_answer(prompt: AssembledPrompt) -> Completion:
    """Send the assembled prompt to Claude and return the text answer.

    The call is bounded by ``completion_timeout_seconds`` and
    ``llm_max_tokens``; cancelling the awaiting task aborts the request.

    Raises:
        UpstreamError: Provider failure or a non-text first content block.
    """
    client = AsyncAnthropic(
        api_key=settings.anthropic_api_key, timeout=settings.completion_timeout_seconds
    )
    try:
        response = await client.messages.create(
            model=settings.llm_model,
            max_tokens=settings.llm_max_tokens,
            temperature=settings.llm_temperature,
            system=prompt.system,
            messages=prompt.messages(),  # type: ignore[arg-type]
        )
    except Exception as exc:
        raise classify_provider_error(exc, "anthropic") from exc

    # We always request plain text, so the first block should be a TextBlock.
    block = response.content[0] if response.content else None
    if not isinstance(block, TextBlock):
        raise UpstreamError(
            f"Expected TextBlock from Claude, got {type(block).__name__}",
            provider="anthropic",
            retryable=True,
        )

    return Completion(
        text=block.text,
        model=response.model,
        input_tokens=response.usage.input_tokens,
        output_tokens=response.usage.output_tokens,
    )
