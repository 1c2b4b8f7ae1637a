"""Follow-up query expansion for the embedding step."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from creator_chat.rag_config import QuestionType
from creator_chat.retrieval.classifier import count_words
from creator_chat.retrieval.models import ConversationMessage

logger = logging.getLogger(__name__)

EXPANDABLE_TYPES = frozenset(
    {QuestionType.FOLLOW_UP, QuestionType.CLARIFICATION, QuestionType.MOMENT}
)
RECENT_HISTORY_WINDOW = 4
SHORT_QUERY_MAX_WORDS = 8
MAX_KEYWORDS = 8
MIN_KEYWORD_LENGTH = 4

STOP_WORDS = frozenset(
    {
        "that", "this", "with", "have", "from", "about", "what", "where", "when",
        "which", "would", "could", "should", "there", "their", "been", "being",
        "your", "also", "just", "more", "some", "very", "will", "only",
    }
)

_REFERENTIAL = re.compile(
    r"\b(that|this|it|those|these|the same|what you|you said|you mentioned|earlier)\b",
    re.IGNORECASE,
)
_NON_WORD = re.compile(r"[^\w\s]")


def extract_keywords(text: str, limit: int = MAX_KEYWORDS) -> list[str]:
    """Distinct non-stopword tokens longer than three characters, in order."""
    tokens = _NON_WORD.sub(" ", text.lower()).split()
    keywords = [t for t in tokens if len(t) >= MIN_KEYWORD_LENGTH and t not in STOP_WORDS]
    return list(dict.fromkeys(keywords))[:limit]


def _last_exchange(history: Sequence[ConversationMessage]) -> tuple[str, str]:
    last_user = ""
    last_assistant = ""
    for message in reversed(history[-RECENT_HISTORY_WINDOW:]):
        if message.role == "user" and not last_user:
            last_user = message.content
        elif message.role == "assistant" and not last_assistant:
            last_assistant = message.content
        if last_user and last_assistant:
            break
    return last_user, last_assistant


def expand_query(
    query: str,
    history: Sequence[ConversationMessage],
    question_type: QuestionType,
) -> str:
    """Splice topic keywords from the previous exchange into a vague query.

    Only the text that gets embedded is expanded; the prompt keeps the
    user's original wording. Falls back to ``query`` whenever there is
    nothing useful to add.
    """
    if question_type not in EXPANDABLE_TYPES or not history:
        return query

    last_user, last_assistant = _last_exchange(history)
    if not (last_user or last_assistant):
        return query

    is_short = count_words(query) <= SHORT_QUERY_MAX_WORDS
    if not (is_short or _REFERENTIAL.search(query)):
        return query

    keywords = extract_keywords(f"{last_user} {last_assistant}")
    if not keywords:
        logger.debug("Query expansion found no keywords for %r", query[:50])
        return query

    expanded = f"{query} {' '.join(keywords)}"
    logger.info("Expanded query %r -> %r", query[:50], expanded[:120])
    return expanded
