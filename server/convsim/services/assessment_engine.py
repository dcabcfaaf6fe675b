import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from convsim.schemas.vignette import AssessmentHooks
from convsim.services.pattern_matcher import (
    Dimension,
    DimensionMatches,
    MessageAnalysis,
    PatternMatch,
    PatternMatcher,
)
from convsim.services.session_context import AssessmentScores, Clock, Message, Sender, utcnow

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5
PATTERN_REWARD = 0.15
ANTI_PATTERN_PENALTY = 0.2
# Accountability anti-patterns (blame, excuses) cost more
ACCOUNTABILITY_ANTI_PATTERN_PENALTY = 0.25
DEVELOPING_FRACTION = 0.7


class AssessmentMode(str, Enum):
    SINGLE_MESSAGE = "single_message"
    CUMULATIVE = "cumulative"


class PerformanceLevel(str, Enum):
    NEEDS_IMPROVEMENT = "needs_improvement"
    DEVELOPING = "developing"
    PROFICIENT = "proficient"
    EXEMPLARY = "exemplary"


@dataclass(frozen=True)
class DimensionAssessment:
    score: float
    patterns: tuple[PatternMatch, ...] = ()
    anti_patterns: tuple[PatternMatch, ...] = ()

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "patterns": [m.to_dict() for m in self.patterns],
            "anti_patterns": [m.to_dict() for m in self.anti_patterns],
        }


@dataclass(frozen=True)
class AssessmentResult:
    empathy: DimensionAssessment
    clarity: DimensionAssessment
    accountability: DimensionAssessment
    overall: float
    timestamp: datetime

    @property
    def scores(self) -> AssessmentScores:
        return AssessmentScores(
            empathy=self.empathy.score,
            clarity=self.clarity.score,
            accountability=self.accountability.score,
            overall=self.overall,
        )

    def to_dict(self) -> dict:
        return {
            "empathy": self.empathy.to_dict(),
            "clarity": self.clarity.to_dict(),
            "accountability": self.accountability.to_dict(),
            "overall": self.overall,
            "timestamp": self.timestamp.isoformat(),
        }


def score_dimension(matches: DimensionMatches, anti_penalty: float = ANTI_PATTERN_PENALTY) -> float:
    """Neutral 0.5, moved up by positive matches and down by anti-patterns, clamped to [0, 1]."""
    score = NEUTRAL_SCORE
    for match in matches.patterns:
        score += match.confidence * PATTERN_REWARD
    for match in matches.anti_patterns:
        score -= match.confidence * anti_penalty
    return max(0.0, min(1.0, score))


def weighted_overall(scores: dict[str, float], weights: dict[str, float]) -> float:
    total = sum(weights.get(d.value, 0.0) for d in Dimension)
    if total <= 0:
        return sum(scores[d.value] for d in Dimension) / len(Dimension)
    return sum(scores[d.value] * weights.get(d.value, 0.0) / total for d in Dimension)


class AssessmentEngine:
    """Scores trainee messages on empathy, clarity and accountability."""

    def __init__(
        self,
        assessment_hooks: AssessmentHooks,
        passing_score: float = 0.7,
        excellence_score: float = 0.85,
        weights: Optional[dict[str, float]] = None,
        mode: AssessmentMode = AssessmentMode.SINGLE_MESSAGE,
        min_confidence: float = 0.5,
        clock: Clock = utcnow,
    ):
        self.hooks = assessment_hooks
        self.passing_score = passing_score
        self.excellence_score = excellence_score
        self.weights = dict(weights) if weights is not None else assessment_hooks.weights
        self.mode = AssessmentMode(mode)
        self._clock = clock
        self.matcher = PatternMatcher(assessment_hooks, min_confidence=min_confidence)
        self._conversation: list[Message] = []
        self._history: list[AssessmentResult] = []

    def _result(self, analysis: MessageAnalysis) -> AssessmentResult:
        dimensions = {}
        for dimension in Dimension:
            matches = analysis.for_dimension(dimension)
            penalty = (
                ACCOUNTABILITY_ANTI_PATTERN_PENALTY
                if dimension == Dimension.ACCOUNTABILITY
                else ANTI_PATTERN_PENALTY
            )
            dimensions[dimension.value] = DimensionAssessment(
                score=score_dimension(matches, penalty),
                patterns=matches.patterns,
                anti_patterns=matches.anti_patterns,
            )
        overall = weighted_overall({k: v.score for k, v in dimensions.items()}, self.weights)
        return AssessmentResult(overall=overall, timestamp=self._clock(), **dimensions)

    def assess_message(self, message: Message) -> AssessmentResult:
        """Score one trainee message and record it as the current assessment.

        In cumulative mode the score covers every trainee message seen so far.
        """
        self._conversation.append(message)
        if self.mode == AssessmentMode.CUMULATIVE:
            analysis = self.matcher.analyze_conversation(self._conversation)
        else:
            analysis = self.matcher.analyze_message(message.text)
        result = self._result(analysis)
        self._history.append(result)
        logger.debug(
            f"Assessed message {message.id}: overall={result.overall:.3f} "
            f"({analysis.total_matches} matches)"
        )
        return result

    def assess_conversation(self, messages: Iterable[Message]) -> AssessmentResult:
        """Score all trainee text in ``messages`` as one block. Does not touch history."""
        return self._result(self.matcher.analyze_conversation(messages))

    def current_scores(self) -> AssessmentScores:
        if not self._history:
            return AssessmentScores()
        return self._history[-1].scores

    def history(self) -> list[AssessmentResult]:
        return list(self._history)

    def conversation(self) -> list[Message]:
        return list(self._conversation)

    def is_passing(self) -> bool:
        return self.current_scores().overall >= self.passing_score

    def is_excellent(self) -> bool:
        return self.current_scores().overall >= self.excellence_score

    def performance_level(self, overall: Optional[float] = None) -> PerformanceLevel:
        score = self.current_scores().overall if overall is None else overall
        if score >= self.excellence_score:
            return PerformanceLevel.EXEMPLARY
        if score >= self.passing_score:
            return PerformanceLevel.PROFICIENT
        if score >= self.passing_score * DEVELOPING_FRACTION:
            return PerformanceLevel.DEVELOPING
        return PerformanceLevel.NEEDS_IMPROVEMENT

    def update_conversation_history(self, messages: Iterable[Message]) -> AssessmentResult:
        """Replace the known conversation and re-score it as a whole."""
        self._conversation = [m for m in messages if m.sender == Sender.USER]
        result = self.assess_conversation(self._conversation)
        self._history.append(result)
        return result

    def reset(self) -> None:
        self._conversation = []
        self._history = []

    def checkpoint(self) -> tuple:
        return (list(self._conversation), list(self._history))

    def restore(self, checkpoint: tuple) -> None:
        conversation, history = checkpoint
        self._conversation = list(conversation)
        self._history = list(history)
