"""Grounding prompt assembly for the completion model."""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from creator_chat.rag_config import MAX_HISTORY_MESSAGES, ConfidenceLevel, QuestionType
from creator_chat.retrieval.models import ConversationMessage, TranscriptChunk, VideoDetails

UNKNOWN_VIDEO_TITLE = "Unknown Video"
NO_TIMESTAMP_LABEL = "[timestamp unavailable]"

REFUSAL_PHRASES = (
    "I haven't covered that in my videos.",
    "That's not something I've discussed in the content I have indexed.",
    "I don't have information on that in my transcripts.",
)


def format_timestamp(seconds: float | None) -> str:
    """``m:ss`` below one hour, ``h:mm:ss`` above; empty for missing/invalid."""
    if seconds is None or math.isnan(seconds) or seconds < 0:
        return ""
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def _question_guidance(question_type: QuestionType, has_timestamps: bool) -> str:
    if question_type is QuestionType.MOMENT:
        if has_timestamps:
            where = (
                '- Include the timestamp naturally: "I talked about that around [X:XX] in [video title]"\n'
                "- Be specific about the exact moment"
            )
        else:
            where = "- Timestamp data is unavailable - mention the video but say you can't pinpoint the exact moment"
        return (
            "The viewer wants to know WHERE or WHEN you said something.\n"
            f"{where}\n"
            '- If you can\'t find the specific moment: "I don\'t think I covered that specifically."'
        )
    if question_type is QuestionType.CLARIFICATION:
        return (
            "The viewer is asking about something from the conversation.\n"
            "- Check what was discussed earlier (in CONVERSATION HISTORY below)\n"
            "- Ground your explanation ONLY in transcript chunks\n"
            '- If you can\'t clarify from transcripts: "I\'d need to cover that more in my videos."'
        )
    if question_type is QuestionType.FOLLOW_UP:
        return (
            "This builds on the previous exchange.\n"
            "- Reference prior context from CONVERSATION HISTORY\n"
            "- Ground ALL facts in transcript chunks only\n"
            "- Connect naturally to what was discussed"
        )
    if question_type is QuestionType.CONCEPTUAL:
        return (
            "The viewer wants to understand an idea or get advice.\n"
            "- Synthesize from your transcript chunks\n"
            "- Share YOUR perspective as expressed in YOUR videos\n"
            "- Be practical and actionable"
        )
    return (
        "The viewer wants broad information about what you cover.\n"
        "- Synthesize themes across several transcript chunks\n"
        '- Answer naturally: "I typically cover X, Y, and Z..."\n'
        "- Keep it conversational, not a list"
    )


def _confidence_guidance(level: ConfidenceLevel) -> str:
    if level is ConfidenceLevel.HIGH:
        return "The transcript chunks are highly relevant. Answer with confidence based on them."
    if level is ConfidenceLevel.MEDIUM:
        return "The chunks are moderately relevant. You may hedge slightly: \"Based on what I've covered...\""
    return (
        "The chunks have weak relevance. Either:\n"
        '- Add uncertainty: "I may have touched on this briefly..."\n'
        '- Or refuse: "I don\'t think I\'ve covered that in depth."\n'
        "Prefer refusal over a weak, speculative answer."
    )


def build_system_prompt(
    creator_name: str,
    question_type: QuestionType,
    has_timestamps: bool,
    confidence: ConfidenceLevel,
) -> str:
    refusals = "\n".join(f'- "{phrase}"' for phrase in REFUSAL_PHRASES)
    return f"""You ARE {creator_name}, responding directly to a viewer based ONLY on your video transcripts.

## CRITICAL RULES - NEVER VIOLATE

1. **ONLY USE THE TRANSCRIPT CHUNKS BELOW** - These are your ONLY source of facts
2. **NEVER USE PRIOR KNOWLEDGE** - If it's not in the chunks, you don't know it
3. **NEVER INVENT OR INFER** - No examples, no anecdotes, no details unless explicitly in chunks
4. **REFUSE CLEARLY** when information isn't in your transcripts

## YOUR RESPONSE STYLE

- Speak as yourself (first person: "I", "my", "I've")
- Be direct and concise: 1-3 sentences for simple questions
- Paraphrase what you said; quote only short phrases
- NEVER list video titles unless explicitly asked for a list
- NEVER mention timestamps unless the viewer asks "where/when" something was said

## QUESTION-SPECIFIC GUIDANCE

{_question_guidance(question_type, has_timestamps)}

## CONFIDENCE LEVEL: {confidence.value.upper()}

{_confidence_guidance(confidence)}

## WHEN INFORMATION IS NOT IN TRANSCRIPTS

If the chunks don't contain relevant information, say ONE of:
{refusals}

Do NOT apologize excessively or offer alternatives unless asked."""


def build_context_block(
    chunks: Sequence[TranscriptChunk],
    video_details: Mapping[str, VideoDetails],
) -> str:
    if not chunks:
        return "## TRANSCRIPT CHUNKS\n\nNo relevant transcript chunks found."

    parts: list[str] = []
    for i, chunk in enumerate(chunks, 1):
        video = video_details.get(chunk.video_id)
        title = video.title if video else UNKNOWN_VIDEO_TITLE
        if chunk.has_valid_timestamps:
            time_info = f"[{format_timestamp(chunk.start_time)} - {format_timestamp(chunk.end_time)}]"
        else:
            time_info = NO_TIMESTAMP_LABEL
        parts.append(
            f'[{i}] "{title}" {time_info} (relevance: {chunk.similarity * 100:.0f}%)\n{chunk.text}'
        )

    joined = "\n\n".join(parts)
    return f"## TRANSCRIPT CHUNKS (YOUR ONLY SOURCE OF FACTS)\n\n{joined}\n\n---END TRANSCRIPTS---"


def build_history_block(
    history: Sequence[ConversationMessage],
    max_messages: int = MAX_HISTORY_MESSAGES,
) -> str:
    if not history or max_messages <= 0:
        return ""
    recent = history[-max_messages:]
    formatted = "\n\n".join(
        f"{'Viewer' if m.role == 'user' else 'You'}: {m.content}" for m in recent
    )
    return (
        "## CONVERSATION HISTORY (for context only, NOT a source of facts)\n\n"
        f"{formatted}\n\n---END HISTORY---"
    )


@dataclass(frozen=True)
class AssembledPrompt:
    """System instructions (preamble .. history) and the literal user question."""

    system: str
    user: str

    @property
    def text(self) -> str:
        return f"{self.system}\n\n## USER QUESTION\n\n{self.user}"

    def messages(self) -> list[dict[str, str]]:
        return [{"role": "user", "content": self.user}]


def build_prompt(
    query: str,
    chunks: Sequence[TranscriptChunk],
    history: Sequence[ConversationMessage],
    question_type: QuestionType,
    creator_name: str,
    confidence: ConfidenceLevel,
    video_details: Mapping[str, VideoDetails] | None = None,
    max_history_messages: int = MAX_HISTORY_MESSAGES,
) -> AssembledPrompt:
    """Assemble the grounding prompt in its fixed section order.

    Order: identity/grounding preamble, question-type guidance, confidence
    directive, transcript excerpts, conversation history, user question.
    """
    has_timestamps = any(c.has_valid_timestamps for c in chunks)
    sections = [
        build_system_prompt(creator_name, question_type, has_timestamps, confidence),
        build_context_block(chunks, video_details or {}),
        build_history_block(history, max_history_messages),
    ]
    return AssembledPrompt(system="\n\n".join(s for s in sections if s), user=query)
