"""Concept-name -> indicator phrase tables for semantic pattern matching.

A vignette's assessment hooks name concepts such as "emotional
acknowledgment"; the matcher resolves the name through these tables and
searches the message for any of the concrete phrases. Vignettes may add or
override concepts through ``AssessmentHooks.semantic_concepts``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_SEMANTIC_CONCEPTS: dict[str, tuple[str, ...]] = {
    # Empathy
    "emotional acknowledgment": (
        "i understand how you feel",
        "i can see this is difficult",
        "i know this is hard",
        "i hear your concern",
        "that must be",
        "i can imagine",
        "i appreciate that",
        "your feelings are valid",
        "this is understandably",
    ),
    "validation phrases": (
        "you're right to",
        "it's completely understandable",
        "that makes sense",
        "i don't blame you",
        "anyone would feel",
        "that's a valid concern",
    ),
    "reflective listening": (
        "so you're saying",
        "what i hear you saying",
        "if i understand correctly",
        "you mean",
        "it sounds like",
    ),
    "genuine concern expression": (
        "i'm so sorry",
        "i'm truly sorry",
        "i deeply regret",
        "this is heartbreaking",
        "my heart goes out",
    ),
    "sincere apology": (
        "i am sorry",
        "i'm sorry",
        "i apologize",
        "please accept my apology",
    ),
    "minimizing emotions": (
        "don't worry",
        "it's not that bad",
        "everything will be fine",
        "you're overreacting",
        "calm down",
        "it could be worse",
    ),
    "rushing through feelings": (
        "let's move on",
        "we need to focus on",
        "there's no time for",
        "we should talk about",
    ),
    "false reassurance": (
        "everything will be okay",
        "it'll all work out",
        "don't worry about it",
        "these things happen",
    ),
    # Clarity
    "plain language usage": (
        "in simple terms",
        "let me explain",
        "to put it simply",
        "what that means is",
        "in other words",
    ),
    "structured explanation": (
        "first",
        "second",
        "third",
        "to summarize",
        "the key points are",
    ),
    "checking understanding": (
        "does that make sense",
        "do you understand",
        "are you following",
        "does this help",
        "any questions",
    ),
    "teach back": (
        "can you tell me in your own words",
        "what is your understanding",
        "tell me what you heard",
    ),
    "appropriate detail level": (
        "the important thing is",
        "what you need to know",
        "the bottom line",
    ),
    "medical jargon": (
        "iatrogenic",
        "ventricular fibrillation",
        "hemodynamic instability",
        "tachyarrhythmia",
        "cardioversion",
        "defibrillation",
        "vasopressor",
        "intubation",
        "cardiopulmonary",
    ),
    "vague explanations": (
        "something went wrong",
        "things didn't go as planned",
        "there was a complication",
        "an issue occurred",
        "something happened",
    ),
    "information overload": (
        "additionally",
        "furthermore",
        "moreover",
        "it's also important to note",
        "another thing",
    ),
    # Accountability
    "clear responsibility acceptance": (
        "i made an error",
        "i made a mistake",
        "i was wrong",
        "i take responsibility",
        "this is my fault",
        "i am responsible",
    ),
    "system improvement discussion": (
        "we will review",
        "we need to improve",
        "we'll make changes",
        "we'll ensure this doesn't happen",
        "we'll put safeguards in place",
    ),
    "no blame shifting": (),
    "honest disclosure": (
        "i want to be completely honest",
        "i need to tell you",
        "the truth is",
        "to be transparent",
        "frankly",
    ),
    "defensive responses": (
        "but it's not my fault",
        "i was just following",
        "that's standard practice",
        "anyone would have done",
        "it's not uncommon",
    ),
    "excuse making": (
        "we were very busy",
        "it was chaotic",
        "there wasn't enough time",
        "the system is flawed",
        "these things happen",
    ),
    "minimizing error": (
        "it was just a small",
        "fortunately nothing serious",
        "it could have been worse",
        "the outcome was good",
        "no real harm was done",
    ),
    "blame shifting": (
        "the nurse should have",
        "the pharmacy sent",
        "it was their mistake",
        "someone else gave",
        "not my call",
    ),
    "open-ended questions": (
        "what questions do you have",
        "how are you feeling",
        "what worries you most",
        "tell me more",
    ),
}

# Concepts that match when none of the listed phrases appear
DEFAULT_ABSENCE_CONCEPTS: dict[str, tuple[str, ...]] = {
    "no blame shifting": ("fault", "blame", "their mistake", "someone else", "not my"),
}

ABSENCE_CONFIDENCE = 0.65
ABSENCE_INDICATOR = "no blame language detected"


def indicator_confidence(indicator: str, text: str, occurrences: int = 1) -> float:
    """Confidence that ``indicator`` genuinely signals its pattern in ``text``.

    ``text`` is expected in the same case as ``indicator``.
    """
    confidence = 0.7
    if indicator in text:
        confidence = min(0.95, confidence + 0.1)
    if len(indicator.split()) > 2:
        confidence = min(0.95, confidence + 0.15)
    if occurrences > 1:
        confidence = min(0.95, confidence + (occurrences - 1) * 0.1)
    # Very short indicators are usually common words
    if len(indicator) < 5:
        confidence = max(0.5, confidence - 0.2)
    return confidence


def extract_context(message: str, phrase: str, context_length: int = 80) -> str:
    """Excerpt of ``message`` centred on the first occurrence of ``phrase``."""
    index = message.lower().find(phrase.lower())
    if index == -1:
        return message[: min(context_length, len(message))]
    start = max(0, index - context_length // 2)
    end = min(len(message), index + len(phrase) + context_length // 2)
    return message[start:end]


@dataclass(frozen=True)
class SemanticHit:
    indicator: str
    confidence: float
    context: str


class SemanticPatternMatcher:
    """Resolves concept names to phrase lists and matches them against text."""

    def __init__(
        self,
        concepts: Optional[dict[str, list[str]]] = None,
        absence_concepts: Optional[dict[str, list[str]]] = None,
    ):
        self.concepts: dict[str, tuple[str, ...]] = dict(DEFAULT_SEMANTIC_CONCEPTS)
        for name, phrases in (concepts or {}).items():
            self.concepts[name.lower()] = tuple(p.lower() for p in phrases)
        self.absence_concepts: dict[str, tuple[str, ...]] = dict(DEFAULT_ABSENCE_CONCEPTS)
        for name, phrases in (absence_concepts or {}).items():
            self.absence_concepts[name.lower()] = tuple(p.lower() for p in phrases)

    def is_concept(self, pattern: str) -> bool:
        key = pattern.lower()
        return key in self.concepts or key in self.absence_concepts

    def match(self, pattern: str, message: str) -> Optional[SemanticHit]:
        """Best-confidence hit for a known concept, or None."""
        key = pattern.lower()
        text = message.lower()

        best: Optional[SemanticHit] = None
        for indicator in self.concepts.get(key, ()):
            if indicator in text:
                confidence = indicator_confidence(indicator, text)
                if best is None or confidence > best.confidence:
                    best = SemanticHit(indicator, confidence, extract_context(message, indicator))

        absent_phrases = self.absence_concepts.get(key)
        if absent_phrases and not any(p in text for p in absent_phrases):
            if best is None or ABSENCE_CONFIDENCE > best.confidence:
                best = SemanticHit(ABSENCE_INDICATOR, ABSENCE_CONFIDENCE, message[:80])

        if best is not None:
            logger.debug(f"Concept {pattern!r} matched via {best.indicator!r} ({best.confidence:.2f})")
        return best
