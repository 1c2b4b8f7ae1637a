"""Question classifier: ordered pattern rules mapping a query to a QuestionType.

Rules are evaluated strictly in the order of ``CLASSIFICATION_RULES`` and the
first match wins:

1. moment         - asks where/when something was said, or for a timestamp
2. clarification  - "what did you mean", "clarify"; demoted to conceptual
                    when there is no conversation history
3. followUp       - only with history: connective openers, continuation
                    requests, or any query of five words or fewer
4. general        - topic overview / summary phrasing
5. conceptual     - how/why/explain/advice phrasing

Anything unmatched is conceptual above eight words and general otherwise.
Moment detection must precede the general rule so that "where does he
summarize X" is a location question, not a summary request.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from creator_chat.rag_config import QuestionType

FOLLOW_UP_MAX_WORDS = 5
CONCEPTUAL_MIN_WORDS = 9

_MOMENT_VERBS = (
    r"(say|said|mention|talk|discuss|cover|explain|give|show|summari[sz]e|bring\s+up|go\s+over|speak)"
)

_MOMENT_PATTERNS: list[re.Pattern[str]] = [
    re.compile(rf"\bwhere\s+(did|does|do)\s+(he|she|they|you|i)\s+(\w+\s+){{0,2}}?{_MOMENT_VERBS}", re.IGNORECASE),
    re.compile(rf"\bwhen\s+(did|does|do)\s+(he|she|they|you|i)\s+(\w+\s+){{0,2}}?{_MOMENT_VERBS}", re.IGNORECASE),
    re.compile(r"\bat\s+what\s+(time|point|moment)", re.IGNORECASE),
    re.compile(r"\bin\s+which\s+video", re.IGNORECASE),
    re.compile(r"\bwhich\s+video\s+(does|did|do|is|was)", re.IGNORECASE),
    re.compile(r"\bwhat\s+time\s+does", re.IGNORECASE),
    re.compile(r"timestamp", re.IGNORECASE),
    re.compile(r"\bfind\s+(the\s+)?(moment|part|section)", re.IGNORECASE),
    re.compile(r"\bshow\s+me\s+where", re.IGNORECASE),
    re.compile(r"\bcan\s+you\s+(find|show|point)", re.IGNORECASE),
]

_CLARIFICATION_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"\bwhat\s+(did|does|do)\s+(he|she|they|you|i)\s+mean\s+by", re.IGNORECASE),
    re.compile(r"\bwhat\s+do\s+you\s+mean", re.IGNORECASE),
    re.compile(r"\bcan\s+you\s+explain", re.IGNORECASE),
    re.compile(r"\bwhat\s+is\s+that", re.IGNORECASE),
    re.compile(r"clarify", re.IGNORECASE),
]

_FOLLOW_UP_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"^\s*(and|but|so|also|what about|how about)\b", re.IGNORECASE),
    re.compile(r"^\s*(why|how|what)\s*\?*\s*$", re.IGNORECASE),
    re.compile(r"\bmore\s+(about|on)\s+(that|this)", re.IGNORECASE),
    re.compile(r"\btell\s+me\s+more", re.IGNORECASE),
    re.compile(r"elaborate", re.IGNORECASE),
    re.compile(r"^\s*(really|seriously|interesting)", re.IGNORECASE),
    re.compile(r"^\s*(yes|no|okay|ok)\b", re.IGNORECASE),
    re.compile(r"\byou\s+(said|mentioned|talked)", re.IGNORECASE),
    re.compile(r"\bearlier\s+you", re.IGNORECASE),
    re.compile(r"\bgo(ing)?\s+back\s+to", re.IGNORECASE),
]

_GENERAL_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"\bwhat\s+(topics?|does|do)\s+(he|she|they|you)\s+(talk|cover|discuss)", re.IGNORECASE),
    re.compile(r"\bwhat\s+(is|are)\s+your\s+(main|key)", re.IGNORECASE),
    re.compile(r"\btell\s+me\s+about", re.IGNORECASE),
    re.compile(r"overview", re.IGNORECASE),
    re.compile(r"generally", re.IGNORECASE),
    re.compile(r"usually", re.IGNORECASE),
    re.compile(r"summari[sz]e", re.IGNORECASE),
    re.compile(r"\bwhat\s+kind\s+of", re.IGNORECASE),
]

_CONCEPTUAL_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"\bhow\s+(do|does|can|should)", re.IGNORECASE),
    re.compile(r"\bwhat\s+is\s+(the|a|your)", re.IGNORECASE),
    re.compile(r"explain", re.IGNORECASE),
    re.compile(r"\bwhy\s+(do|does|is|are)", re.IGNORECASE),
    re.compile(r"\bdifference\s+between", re.IGNORECASE),
    re.compile(r"\btips?\s+(for|on|about)", re.IGNORECASE),
    re.compile(r"\badvice\s+(for|on|about)", re.IGNORECASE),
    re.compile(r"\bbest\s+way", re.IGNORECASE),
    re.compile(r"recommend", re.IGNORECASE),
]

_CITATION_KEYWORDS = (
    "where",
    "which video",
    "when did",
    "what video",
    "timestamp",
    "show me",
    "find where",
    "link",
    "source",
    "quote",
    "clip",
)


def count_words(query: str) -> int:
    return len(query.split())


def _matches_any(patterns: Sequence[re.Pattern[str]]) -> Callable[[str, bool], bool]:
    def predicate(query: str, _has_history: bool) -> bool:
        return any(p.search(query) for p in patterns)

    return predicate


def _is_follow_up(query: str, has_history: bool) -> bool:
    if not has_history:
        return False
    return any(p.search(query) for p in _FOLLOW_UP_PATTERNS) or count_words(query) <= FOLLOW_UP_MAX_WORDS


@dataclass(frozen=True)
class ClassificationRule:
    """One ``(predicate, result)`` step of the classifier.

    ``without_history`` overrides the result when the conversation is empty.
    """

    name: str
    predicate: Callable[[str, bool], bool]
    question_type: QuestionType
    without_history: QuestionType | None = None

    def resolve(self, has_history: bool) -> QuestionType:
        if not has_history and self.without_history is not None:
            return self.without_history
        return self.question_type


CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule("moment", _matches_any(_MOMENT_PATTERNS), QuestionType.MOMENT),
    ClassificationRule(
        "clarification",
        _matches_any(_CLARIFICATION_PATTERNS),
        QuestionType.CLARIFICATION,
        without_history=QuestionType.CONCEPTUAL,
    ),
    ClassificationRule("follow_up", _is_follow_up, QuestionType.FOLLOW_UP),
    ClassificationRule("general", _matches_any(_GENERAL_PATTERNS), QuestionType.GENERAL),
    ClassificationRule("conceptual", _matches_any(_CONCEPTUAL_PATTERNS), QuestionType.CONCEPTUAL),
)


def classify_question(query: str, has_history: bool) -> QuestionType:
    """Classify a question by the first matching rule.

    Args:
        query: The user's question as typed.
        has_history: Whether the chat already contains prior messages.

    Returns:
        The question type used for retrieval, gating and prompting.
    """
    for rule in CLASSIFICATION_RULES:
        if rule.predicate(query, has_history):
            return rule.resolve(has_history)
    return QuestionType.CONCEPTUAL if count_words(query) >= CONCEPTUAL_MIN_WORDS else QuestionType.GENERAL


def should_show_citations(question_type: QuestionType, query: str) -> bool:
    """Whether the user is asking for sources (moment questions always are)."""
    if question_type is QuestionType.MOMENT:
        return True
    lowered = query.lower()
    return any(keyword in lowered for keyword in _CITATION_KEYWORDS)
