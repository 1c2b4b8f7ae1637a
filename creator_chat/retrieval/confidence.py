"""Answer gating and descriptive confidence scoring.

Two computations exist:

* The **gate** (:func:`gate_answer`) is authoritative for the answer/refuse
  decision. It compares the best similarity against two fixed floors and
  forces a refusal for moment questions without usable timestamps.
* The **weighted score** (:func:`weighted_confidence_score`) blends average
  and top similarity with question-type, chunk-count and query-specificity
  bonuses. It is explanatory only and never overrides the gate.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from creator_chat.rag_config import (
    ANSWER_GATE,
    DEFAULT_CONFIDENCE_CUTOFFS,
    AnswerGate,
    ConfidenceCutoffs,
    ConfidenceLevel,
    QuestionType,
)
from creator_chat.retrieval.classifier import count_words
from creator_chat.retrieval.models import TranscriptChunk

QUESTION_TYPE_MODIFIERS: dict[QuestionType, float] = {
    QuestionType.MOMENT: 0.9,
    QuestionType.CONCEPTUAL: 0.8,
    QuestionType.GENERAL: 0.7,
    QuestionType.FOLLOW_UP: 0.6,
    QuestionType.CLARIFICATION: 0.5,
}

AVG_SIMILARITY_WEIGHT = 0.4
TOP_SIMILARITY_WEIGHT = 0.2
QUESTION_TYPE_WEIGHT = 0.2
CHUNK_COUNT_WEIGHT = 0.1
SPECIFICITY_WEIGHT = 0.1
CHUNK_COUNT_SATURATION = 5
QUERY_WORDS_SATURATION = 10


class RefusalReason(str, Enum):
    NO_CONTEXT = "no_relevant_context"
    BELOW_MINIMUM = "below_minimum_similarity"
    MOMENT_NOT_CONFIDENT = "moment_not_confident"
    MOMENT_WITHOUT_TIMESTAMPS = "moment_without_timestamps"


@dataclass(frozen=True)
class GateDecision:
    confidence: ConfidenceLevel
    should_answer: bool
    max_similarity: float
    has_timestamps: bool
    refusal_reason: RefusalReason | None = None

    @property
    def is_refusal(self) -> bool:
        return not self.should_answer


@dataclass(frozen=True)
class ConfidenceFactors:
    avg_similarity: float
    top_similarity: float
    question_type: QuestionType
    chunk_count: int
    query_words: int


@dataclass(frozen=True)
class ConfidenceAssessment:
    """Authoritative gate decision plus the explanatory weighted score."""

    gate: GateDecision
    weighted_score: float
    weighted_level: ConfidenceLevel

    @property
    def level(self) -> ConfidenceLevel:
        return self.gate.confidence

    @property
    def should_answer(self) -> bool:
        return self.gate.should_answer


def max_similarity(chunks: Sequence[TranscriptChunk]) -> float:
    return max((c.similarity for c in chunks), default=0.0)


def gate_answer(
    chunks: Sequence[TranscriptChunk],
    question_type: QuestionType,
    gate: AnswerGate = ANSWER_GATE,
) -> GateDecision:
    """Decide refuse / medium / high from the best similarity.

    Monotonic in ``max_similarity``: raising it never lowers the level.
    """
    best = max_similarity(chunks)
    has_timestamps = any(c.has_valid_timestamps for c in chunks)
    confident = best >= gate.min_similarity_for_confident_answer

    reason: RefusalReason | None = None
    if not chunks:
        reason = RefusalReason.NO_CONTEXT
    elif question_type is QuestionType.MOMENT and not has_timestamps:
        reason = RefusalReason.MOMENT_WITHOUT_TIMESTAMPS
    elif best < gate.min_similarity_for_any_answer:
        reason = RefusalReason.BELOW_MINIMUM
    elif question_type is QuestionType.MOMENT and not confident:
        reason = RefusalReason.MOMENT_NOT_CONFIDENT

    if reason is not None:
        return GateDecision(ConfidenceLevel.NOT_COVERED, False, best, has_timestamps, reason)

    level = ConfidenceLevel.HIGH if confident else ConfidenceLevel.MEDIUM
    return GateDecision(level, True, best, has_timestamps)


def confidence_factors(
    chunks: Sequence[TranscriptChunk], question_type: QuestionType, query: str
) -> ConfidenceFactors:
    similarities = [c.similarity for c in chunks]
    return ConfidenceFactors(
        avg_similarity=sum(similarities) / len(similarities) if similarities else 0.0,
        top_similarity=max(similarities, default=0.0),
        question_type=question_type,
        chunk_count=len(chunks),
        query_words=count_words(query),
    )


def weighted_confidence_score(factors: ConfidenceFactors) -> float:
    """Blend the factors into a 0-1 score; each bonus is capped at its weight."""
    score = factors.avg_similarity * AVG_SIMILARITY_WEIGHT
    score += factors.top_similarity * TOP_SIMILARITY_WEIGHT
    score += QUESTION_TYPE_MODIFIERS.get(factors.question_type, 0.7) * QUESTION_TYPE_WEIGHT
    score += min(factors.chunk_count / CHUNK_COUNT_SATURATION, 1) * CHUNK_COUNT_WEIGHT
    score += min(factors.query_words / QUERY_WORDS_SATURATION, 1) * SPECIFICITY_WEIGHT
    return min(score, 1.0)


def score_to_level(score: float, cutoffs: ConfidenceCutoffs = DEFAULT_CONFIDENCE_CUTOFFS) -> ConfidenceLevel:
    if score >= cutoffs.high:
        return ConfidenceLevel.HIGH
    if score >= cutoffs.medium:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def score_confidence(
    chunks: Sequence[TranscriptChunk],
    question_type: QuestionType,
    query: str,
    cutoffs: ConfidenceCutoffs = DEFAULT_CONFIDENCE_CUTOFFS,
) -> ConfidenceLevel:
    """Descriptive confidence label from the weighted score (LOW when empty)."""
    if not chunks:
        return ConfidenceLevel.LOW
    return score_to_level(weighted_confidence_score(confidence_factors(chunks, question_type, query)), cutoffs)


def assess_confidence(
    chunks: Sequence[TranscriptChunk],
    question_type: QuestionType,
    query: str,
    gate: AnswerGate = ANSWER_GATE,
    cutoffs: ConfidenceCutoffs = DEFAULT_CONFIDENCE_CUTOFFS,
) -> ConfidenceAssessment:
    decision = gate_answer(chunks, question_type, gate)
    score = (
        weighted_confidence_score(confidence_factors(chunks, question_type, query)) if chunks else 0.0
    )
    weighted_level = score_to_level(score, cutoffs) if chunks else ConfidenceLevel.LOW
    return ConfidenceAssessment(gate=decision, weighted_score=round(score, 4), weighted_level=weighted_level)


def confidence_message(level: ConfidenceLevel, chunk_count: int) -> str:
    """Short human label, e.g. ``"High confidence (3 sources)"``."""
    sources = "1 source" if chunk_count == 1 else f"{chunk_count} sources"
    if level is ConfidenceLevel.NOT_COVERED:
        return f"Not covered ({sources} checked)"
    return f"{level.value.capitalize()} confidence ({sources})"
