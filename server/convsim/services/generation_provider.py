"""Boundary to the external text-generation service that voices the character.

The conversation engine only depends on ``GenerationProvider``. Concrete
backends live in ``llm_client`` (Gemini) and ``claude_client`` (Claude);
``CannedProvider`` answers from the character's scripted key phrases and
needs no network.
"""

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Sequence

from convsim.services.prompt_builder import ConversationContext
from convsim.services.session_context import Message, Sender

logger = logging.getLogger(__name__)

ANGER_WORDS = ("angry", "furious", "lawyer")
UPSET_WORDS = ("upset", "frustrated", "disappointed")
CALMING_WORDS = ("understand", "thank", "appreciate")
MAX_IMPACT = 0.3

# Abbreviations that should NOT be treated as sentence boundaries
_ABBREVIATIONS = re.compile(
    r"\b(?:Mr|Mrs|Ms|Dr|Prof|Sr|Jr|St|Inc|Corp|Ltd|Co|vs|etc|approx|dept|e\.g|i\.e)\.$",
    re.IGNORECASE,
)

# Sentence-ending punctuation followed by space or end-of-string
_SENTENCE_END = re.compile(r'([.?!])(?:\s|$)')


def split_sentences(text: str, min_chunk_len: int = 10) -> list[str]:
    """Split text into sentences at . ? ! boundaries.

    Skips common abbreviations and merges tiny fragments into the previous
    sentence.
    """
    if not text or not text.strip():
        return []

    sentences: list[str] = []
    start = 0

    for m in _SENTENCE_END.finditer(text):
        end = m.end()
        candidate = text[start:end].strip()

        if _ABBREVIATIONS.search(candidate):
            continue

        if candidate:
            if len(candidate) < min_chunk_len and sentences:
                sentences[-1] = sentences[-1] + " " + candidate
            else:
                sentences.append(candidate)
            start = end

    remainder = text[start:].strip()
    if remainder:
        if len(remainder) < min_chunk_len and sentences:
            sentences[-1] = sentences[-1] + " " + remainder
        else:
            sentences.append(remainder)

    return sentences if sentences else [text.strip()]


def extract_first_sentence(buffer: str) -> str | None:
    """Extract the first complete sentence from buffer, or None if incomplete."""
    for m in _SENTENCE_END.finditer(buffer):
        candidate = buffer[: m.end()].strip()
        if _ABBREVIATIONS.search(candidate):
            continue
        if len(candidate) >= 10:
            return candidate
    return None


def estimate_emotional_impact(text: str, triggers: Sequence[str] = ()) -> float:
    """Rough emotional delta implied by the character's own reply.

    Anger or upset words push it up, understanding or gratitude pulls it down,
    and echoing one of the character's trigger phrases pushes it up again.
    """
    lowered = text.lower()
    delta = 0.0
    if any(w in lowered for w in ANGER_WORDS):
        delta += 0.3
    elif any(w in lowered for w in UPSET_WORDS):
        delta += 0.15
    if any(w in lowered for w in CALMING_WORDS):
        delta -= 0.1
    if any(t.lower() in lowered for t in triggers if t):
        delta += 0.2
    return max(-MAX_IMPACT, min(MAX_IMPACT, delta))


@dataclass(frozen=True)
class ProviderResponse:
    text: str
    emotion_delta: float = 0.0

    def to_dict(self) -> dict:
        return {"text": self.text, "emotion_delta": self.emotion_delta}


class GenerationProvider(ABC):
    name = "base"
    supports_streaming = False

    @abstractmethod
    async def get_response(
        self,
        message: str,
        context: ConversationContext,
        history: Sequence[Message],
    ) -> ProviderResponse:
        """Generate the character's full reply to ``message``."""

    async def stream_response(
        self,
        message: str,
        context: ConversationContext,
        history: Sequence[Message],
    ) -> AsyncGenerator[str, None]:
        """Yield the reply sentence by sentence.

        Providers without native streaming generate the whole reply and split it.
        """
        response = await self.get_response(message, context, history)
        for sentence in split_sentences(response.text):
            yield sentence


class CannedProvider(GenerationProvider):
    """Replies with the character's key phrases in turn. Used offline and in demos."""

    name = "canned"
    fallback = "I... I don't know what to say. Please, just tell me what happened."

    async def get_response(self, message, context, history) -> ProviderResponse:
        phrases = context.key_phrases
        if phrases:
            replies = sum(1 for m in history if m.sender == Sender.AVATAR)
            text = phrases[replies % len(phrases)]
        else:
            text = self.fallback
        return ProviderResponse(text=text, emotion_delta=estimate_emotional_impact(text, context.triggers))
