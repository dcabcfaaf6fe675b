import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from convsim.schemas.vignette import AssessmentHooks, DimensionHooks
from convsim.services.semantic_patterns import (
    SemanticPatternMatcher,
    extract_context,
    indicator_confidence,
)
from convsim.services.session_context import Message, Sender

logger = logging.getLogger(__name__)


class Dimension(str, Enum):
    EMPATHY = "empathy"
    CLARITY = "clarity"
    ACCOUNTABILITY = "accountability"


@dataclass(frozen=True)
class PatternMatch:
    pattern: str
    confidence: float
    context: str
    indicator: str
    semantic: bool = False

    def to_dict(self) -> dict:
        return {
            "pattern": self.pattern,
            "confidence": self.confidence,
            "context": self.context,
            "indicator": self.indicator,
            "semantic": self.semantic,
        }


@dataclass(frozen=True)
class DimensionMatches:
    patterns: tuple[PatternMatch, ...] = ()
    anti_patterns: tuple[PatternMatch, ...] = ()

    def to_dict(self) -> dict:
        return {
            "patterns": [m.to_dict() for m in self.patterns],
            "anti_patterns": [m.to_dict() for m in self.anti_patterns],
        }


@dataclass(frozen=True)
class MessageAnalysis:
    empathy: DimensionMatches = field(default_factory=DimensionMatches)
    clarity: DimensionMatches = field(default_factory=DimensionMatches)
    accountability: DimensionMatches = field(default_factory=DimensionMatches)

    def for_dimension(self, dimension: Dimension) -> DimensionMatches:
        return getattr(self, dimension.value)

    @property
    def total_matches(self) -> int:
        return sum(
            len(d.patterns) + len(d.anti_patterns)
            for d in (self.empathy, self.clarity, self.accountability)
        )


class PatternMatcher:
    """Detects assessment patterns and anti-patterns in trainee messages.

    Each configured pattern is first resolved as a semantic concept (a named
    list of indicator phrases). Pattern names that are not known concepts are
    matched literally as substrings of the message.
    """

    def __init__(
        self,
        assessment_hooks: AssessmentHooks,
        case_insensitive: bool = True,
        min_confidence: float = 0.5,
        semantic_matcher: Optional[SemanticPatternMatcher] = None,
    ):
        self.hooks = assessment_hooks
        self.case_insensitive = case_insensitive
        self.min_confidence = min_confidence
        self.semantic = semantic_matcher or SemanticPatternMatcher(
            concepts=assessment_hooks.semantic_concepts
        )

    def _hooks_for(self, dimension: Dimension) -> DimensionHooks:
        return getattr(self.hooks, dimension.value)

    def match(self, dimension: Dimension, message: str, anti: bool = False) -> list[PatternMatch]:
        hooks = self._hooks_for(dimension)
        return self.match_patterns(message, hooks.anti_patterns if anti else hooks.patterns)

    def match_patterns(self, message: str, patterns: Iterable[str]) -> list[PatternMatch]:
        matches: list[PatternMatch] = []
        for pattern in patterns:
            match = self._match_one(message, pattern)
            if match is not None and match.confidence >= self.min_confidence:
                matches.append(match)
        return matches

    def _match_one(self, message: str, pattern: str) -> Optional[PatternMatch]:
        if self.semantic.is_concept(pattern):
            hit = self.semantic.match(pattern, message)
            if hit is None:
                return None
            return PatternMatch(
                pattern=pattern,
                confidence=hit.confidence,
                context=hit.context,
                indicator=hit.indicator,
                semantic=True,
            )

        text = message.lower() if self.case_insensitive else message
        needle = pattern.lower() if self.case_insensitive else pattern
        if not needle or needle not in text:
            return None
        occurrences = text.count(needle)
        return PatternMatch(
            pattern=pattern,
            confidence=indicator_confidence(needle, text, occurrences),
            context=extract_context(message, pattern, context_length=50),
            indicator=pattern,
        )

    def analyze_message(self, message: str) -> MessageAnalysis:
        groups = {
            dimension.value: DimensionMatches(
                patterns=tuple(self.match(dimension, message)),
                anti_patterns=tuple(self.match(dimension, message, anti=True)),
            )
            for dimension in Dimension
        }
        analysis = MessageAnalysis(**groups)
        logger.debug(f"Pattern analysis found {analysis.total_matches} matches")
        return analysis

    def analyze_conversation(self, messages: Iterable[Message]) -> MessageAnalysis:
        """Analyze all trainee-authored text as a single block."""
        text = " ".join(m.text for m in messages if m.sender == Sender.USER)
        return self.analyze_message(text)
