from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone

import pytest

# Keep the host layer offline: canned replies, no API keys needed
os.environ.setdefault("LLM_PROVIDER", "canned")
os.environ.setdefault("DEBUG", "false")

from convsim.schemas.vignette import Vignette  # noqa: E402
from convsim.services.generation_provider import GenerationProvider, ProviderResponse  # noqa: E402
from convsim.services.vignette_loader import _VIGNETTES_DIR, clear_cache, load_vignettes  # noqa: E402

START = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class ScriptedProvider(GenerationProvider):
    """Replies from a fixed list; can be told to fail or stall."""

    name = "scripted"
    supports_streaming = True

    def __init__(self, replies=None, delta: float = 0.0, error: Exception | None = None, delay: float = 0.0):
        self.replies = list(replies or ["I see. Please go on."])
        self.delta = delta
        self.error = error
        self.delay = delay
        self.calls = []

    async def get_response(self, message, context, history):
        self.calls.append((message, context, list(history)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        text = self.replies[(len(self.calls) - 1) % len(self.replies)]
        return ProviderResponse(text=text, emotion_delta=self.delta)


def variation(traits: str) -> dict:
    return {
        "traits": traits,
        "emotional_range": {"min": "worried", "max": "angry"},
        "triggers": ["lawsuit"],
        "responses": {"to_empathy": "Softens", "to_clarity": "Asks more", "to_defensiveness": "Escalates"},
        "key_phrases": ["What happened to him?", "I want answers."],
    }


def vignette_data() -> dict:
    return {
        "id": "TEST-001",
        "title": "Test disclosure",
        "setting_description": "Family room",
        "clinical_summary": "Wrong dose given overnight.",
        "identity_prompt": "You are Alex, whose mother is in hospital.",
        "phases": [
            {"id": "preparation", "name": "Preparation", "duration": "0 minutes", "objective": "Get ready"},
            {
                "id": "opening",
                "name": "Opening",
                "duration": "1 minute",
                "objective": "Set the stage",
                "max_messages": 3,
                "difficulty_overrides": {
                    "advanced": {"max_messages": 2},
                    "beginner": {
                        "additional_keywords": {"Introduce yourself": ["hello"]},
                        "removed_keywords": {"Introduce yourself": ["my name is"]},
                    },
                },
                "objectives": [
                    {"text": "Introduce yourself", "keywords": ["my name is"]},
                    {"text": "Check what they know", "keywords": ["what do you know"]},
                ],
                "opening_line": "Is my mother okay?",
            },
            {
                "id": "disclosure",
                "name": "Disclosure",
                "duration": "3-7 minutes",
                "objective": "Disclose the error",
                "critical": True,
                "objectives": [{"text": "Explain the error", "keywords": ["mistake"]}],
                "branch_points": {
                    "clear_empathetic": {"next": "processing", "emotion_delta": -0.2},
                    "medical_jargon": {"next": "processing", "emotion_delta": 0.3},
                    "defensive": {"next": "processing", "emotion_delta": 0.5, "description": "Defensive"},
                },
                "hints": {"focus": "Shock", "information_boundary": "Basic facts only"},
                "reveals": ["Error occurred"],
            },
            {
                "id": "processing",
                "name": "Processing",
                "duration": "2 minutes",
                "objective": "Support the family",
                "objectives": ["Acknowledge their feelings"],
                "branch_points": {"second opinion": {"next": "closing", "emotion_delta": 0.1}},
            },
            {
                "id": "closing",
                "name": "Closing",
                "duration": "1 minute",
                "objective": "Plan next steps",
                "objectives": [{"text": "Offer support", "keywords": ["support"]}],
            },
        ],
        "character": {
            "id": "child",
            "identity": {"name": "Alex", "relationship": "adult son"},
            "personality": "Direct",
            "difficulty_variations": {
                "beginner": variation("Shocked but reasonable"),
                "intermediate": variation("Angry but reachable"),
                "advanced": variation("Hostile"),
            },
        },
        "information_stages": ["Error occurred", "Current status"],
        "assessment_hooks": {
            "empathy": {
                "weight": 0.4,
                "patterns": ["emotional acknowledgment"],
                "anti_patterns": ["minimizing emotions"],
            },
            "clarity": {
                "weight": 0.3,
                "patterns": ["checking understanding"],
                "anti_patterns": ["medical jargon"],
            },
            "accountability": {
                "weight": 0.3,
                "patterns": ["clear responsibility acceptance"],
                "anti_patterns": ["blame shifting"],
            },
        },
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def vignette() -> Vignette:
    return Vignette.model_validate(vignette_data())


@pytest.fixture
def med001() -> Vignette:
    clear_cache()
    vignettes = load_vignettes(_VIGNETTES_DIR)
    yield vignettes["MED-001"]
    clear_cache()


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()
