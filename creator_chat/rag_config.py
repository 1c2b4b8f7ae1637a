"""Retrieval tuning: question/confidence enums, retrieval profiles and limits."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType


class QuestionType(str, Enum):
    """Kind of question being asked; drives retrieval and prompting."""

    GENERAL = "general"
    CONCEPTUAL = "conceptual"
    MOMENT = "moment"
    CLARIFICATION = "clarification"
    FOLLOW_UP = "followUp"


class ConfidenceLevel(str, Enum):
    """Discrete answer confidence. ``NOT_COVERED`` is reserved for refusals."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NOT_COVERED = "not_covered"


@dataclass(frozen=True)
class RetrievalProfile:
    """Similarity search settings owned by one question type.

    ``preferred_threshold`` is tried first; ``min_threshold`` is the relaxed
    fallback used only when the preferred search is empty and the profile
    allows loosening.
    """

    match_count: int
    min_threshold: float
    preferred_threshold: float
    requires_timestamp: bool = False

    @property
    def allows_relaxation(self) -> bool:
        # Timestamp-bound (moment) lookups never loosen.
        return not self.requires_timestamp

    def thresholds(self) -> tuple[float, ...]:
        """Ordered similarity thresholds to try, strictest first."""
        if self.allows_relaxation and self.min_threshold < self.preferred_threshold:
            return (self.preferred_threshold, self.min_threshold)
        return (self.preferred_threshold,)

    def clamp_for_public(self, max_chunks: int, public_threshold: float) -> RetrievalProfile:
        """Return a stricter copy for unauthenticated callers."""
        return replace(
            self,
            match_count=min(self.match_count, max_chunks),
            min_threshold=max(self.min_threshold, public_threshold),
            preferred_threshold=max(self.preferred_threshold, public_threshold),
        )


RETRIEVAL_PROFILES: MappingProxyType[QuestionType, RetrievalProfile] = MappingProxyType(
    {
        QuestionType.GENERAL: RetrievalProfile(10, 0.25, 0.35),
        QuestionType.CONCEPTUAL: RetrievalProfile(8, 0.30, 0.40),
        QuestionType.MOMENT: RetrievalProfile(5, 0.35, 0.45, requires_timestamp=True),
        QuestionType.FOLLOW_UP: RetrievalProfile(8, 0.28, 0.38),
        QuestionType.CLARIFICATION: RetrievalProfile(6, 0.32, 0.42),
    }
)


PUBLIC_MIN_SIMILARITY: MappingProxyType[QuestionType, float] = MappingProxyType(
    {
        # General questions need a low floor to surface diverse topics.
        QuestionType.GENERAL: 0.22,
        QuestionType.FOLLOW_UP: 0.25,
        QuestionType.CONCEPTUAL: 0.35,
        QuestionType.CLARIFICATION: 0.35,
        QuestionType.MOMENT: 0.40,
    }
)


@dataclass(frozen=True)
class PublicLimits:
    """Stricter limits applied to anonymous (public) chat callers."""

    max_daily_messages: int = 5
    max_chunks: int = 6
    min_similarity: MappingProxyType[QuestionType, float] = field(
        default_factory=lambda: PUBLIC_MIN_SIMILARITY, hash=False
    )


PUBLIC_LIMITS = PublicLimits()


@dataclass(frozen=True)
class AnswerGate:
    """Similarity floors deciding refuse / medium / high."""

    min_similarity_for_any_answer: float = 0.25
    min_similarity_for_confident_answer: float = 0.40


ANSWER_GATE = AnswerGate()


@dataclass(frozen=True)
class ConfidenceCutoffs:
    """Cutoffs for the descriptive weighted confidence score."""

    high: float = 0.8
    medium: float = 0.6


DEFAULT_CONFIDENCE_CUTOFFS = ConfidenceCutoffs()


@dataclass(frozen=True)
class RateLimitProfile:
    """Fixed-window request ceiling."""

    requests: int
    window_minutes: int


CHAT_AUTHENTICATED_LIMIT = RateLimitProfile(requests=100, window_minutes=60)
CHAT_PUBLIC_LIMIT = RateLimitProfile(requests=20, window_minutes=60)
INGEST_AUTHENTICATED_LIMIT = RateLimitProfile(requests=10, window_minutes=60)

MAX_HISTORY_MESSAGES = 6
MAX_CITATIONS = 4
CITATION_EXCERPT_CHARS = 200


def get_retrieval_profile(question_type: QuestionType, is_public: bool = False) -> RetrievalProfile:
    """Look up the retrieval profile, clamped for public callers."""
    profile = RETRIEVAL_PROFILES.get(question_type, RETRIEVAL_PROFILES[QuestionType.GENERAL])
    if not is_public:
        return profile
    public_threshold = PUBLIC_LIMITS.min_similarity.get(
        question_type, PUBLIC_LIMITS.min_similarity[QuestionType.GENERAL]
    )
    return profile.clamp_for_public(PUBLIC_LIMITS.max_chunks, public_threshold)
