"""Vignette (training scenario) configuration.

Vignettes are authored offline and loaded once; every model here is frozen
so a single instance can be shared by any number of sessions.
"""

import difflib
import logging
import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

BUILTIN_BRANCH_CONDITIONS = (
    "clear_empathetic",
    "medical_jargon",
    "defensive",
    "objective_completed",
    "time_elapsed",
)

# Minimum phase length is the first integer in the duration, in minutes
DURATION_MINUTES_RE = re.compile(r"(\d+)")


class Difficulty(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class _Frozen(BaseModel):
    model_config = {"frozen": True}


class LearnerObjective(_Frozen):
    text: str
    keywords: list[str] = []

    @model_validator(mode="before")
    @classmethod
    def _from_plain_text(cls, data):
        # Objectives may be authored as bare strings
        if isinstance(data, str):
            return {"text": data, "keywords": []}
        return data


class BranchPoint(_Frozen):
    next: str
    emotion_delta: float = 0.0
    description: str = ""


class PhaseDifficultyOverride(_Frozen):
    max_messages: Optional[int] = Field(default=None, ge=1)
    additional_keywords: dict[str, list[str]] = {}
    removed_keywords: dict[str, list[str]] = {}


class GenerationHints(_Frozen):
    focus: str = ""
    information_boundary: Optional[str] = None
    behavior_guidance: Optional[str] = None


class Phase(_Frozen):
    id: str
    name: str
    duration: str
    objective: str
    critical: bool = False
    max_messages: Optional[int] = Field(default=None, ge=1)
    difficulty_overrides: dict[Difficulty, PhaseDifficultyOverride] = {}
    objectives: list[LearnerObjective] = []
    disposition: str = ""
    opening_line: Optional[str] = None
    key_questions: list[str] = []
    branch_points: dict[str, BranchPoint] = {}
    hints: GenerationHints = GenerationHints()
    reveals: list[str] = []

    @field_validator("duration")
    @classmethod
    def _duration_has_minutes(cls, value: str) -> str:
        if not DURATION_MINUTES_RE.search(value):
            raise ValueError(f"Phase duration has no minute count: {value!r}")
        return value

    @property
    def objective_texts(self) -> list[str]:
        return [o.text for o in self.objectives]


class DimensionHooks(_Frozen):
    patterns: list[str] = []
    anti_patterns: list[str] = []
    weight: float = Field(default=1.0, ge=0.0)


class AssessmentHooks(_Frozen):
    empathy: DimensionHooks = DimensionHooks()
    clarity: DimensionHooks = DimensionHooks()
    accountability: DimensionHooks = DimensionHooks()
    # Extra or overriding concept -> indicator phrase lists
    semantic_concepts: dict[str, list[str]] = {}

    @property
    def weights(self) -> dict[str, float]:
        return {
            "empathy": self.empathy.weight,
            "clarity": self.clarity.weight,
            "accountability": self.accountability.weight,
        }


class EmotionalScale(_Frozen):
    min: float = 0.0
    max: float = 1.0
    thresholds: dict[str, float] = {
        "concerned": 0.3,
        "upset": 0.5,
        "angry": 0.7,
        "hostile": 0.9,
    }

    @model_validator(mode="after")
    def _check_bounds(self):
        if not 0.0 <= self.min < self.max <= 1.0:
            raise ValueError(f"Scale bounds must satisfy 0 <= min < max <= 1, got {self.min}..{self.max}")
        if not self.thresholds:
            raise ValueError("At least one emotional threshold is required")
        for label, cut in self.thresholds.items():
            if not self.min <= cut <= self.max:
                raise ValueError(f"Threshold {label}={cut} lies outside the scale")
        return self


class EmotionalTracking(_Frozen):
    scale: EmotionalScale = EmotionalScale()
    modifiers: dict[str, float] = {
        "empathyShown": -0.1,
        "medicalJargon": 0.15,
        "defensiveness": 0.3,
        "honestApology": -0.2,
        "clearExplanation": -0.15,
    }


class ResponseGuidelines(_Frozen):
    length: str = "2-3 sentences"
    emotional_authenticity: str = "Match words with emotional state"
    questioning_pattern: str = "Ask follow-up questions when something is unclear"
    interruption_behavior: str = "Interrupt when frustrated"
    silence_usage: str = "Pause after shocking information"


class CharacterIdentity(_Frozen):
    name: str
    relationship: Optional[str] = None
    age: Optional[int] = None
    occupation: Optional[str] = None


class EmotionalRange(_Frozen):
    min: str
    max: str
    progression: str = ""


class DifficultyResponses(_Frozen):
    to_empathy: str = ""
    to_clarity: str = ""
    to_defensiveness: str = ""


class DifficultyVariation(_Frozen):
    traits: str
    emotional_range: EmotionalRange
    triggers: list[str] = []
    responses: DifficultyResponses = DifficultyResponses()
    key_phrases: list[str] = []


class CharacterProfile(_Frozen):
    id: str
    identity: CharacterIdentity
    personality: str
    medical_knowledge: str = ""
    vocabulary: str = ""
    difficulty_variations: dict[Difficulty, DifficultyVariation]


class Vignette(_Frozen):
    id: str
    title: str
    description: str = ""
    setting_description: str = ""
    clinical_summary: str = ""
    identity_prompt: str = ""
    current_state: str = ""
    difficulties: list[Difficulty] = list(Difficulty)
    phases: list[Phase] = Field(min_length=1)
    character: CharacterProfile
    emotional_tracking: EmotionalTracking = EmotionalTracking()
    information_stages: list[str] = []
    response_guidelines: ResponseGuidelines = ResponseGuidelines()
    assessment_hooks: AssessmentHooks = AssessmentHooks()
    passing_score: float = Field(default=0.7, ge=0.0, le=1.0)
    excellence_score: float = Field(default=0.85, ge=0.0, le=1.0)
    max_response_length: int = 500

    @model_validator(mode="after")
    def _check_structure(self):
        index = {}
        for i, phase in enumerate(self.phases):
            if phase.id in index:
                raise ValueError(f"Duplicate phase id: {phase.id}")
            index[phase.id] = i

        for i, phase in enumerate(self.phases):
            for condition, branch in phase.branch_points.items():
                if branch.next not in index:
                    raise ValueError(
                        f"Phase {phase.id}: branch {condition!r} targets unknown phase {branch.next}"
                    )
                if index[branch.next] <= i:
                    raise ValueError(
                        f"Phase {phase.id}: branch {condition!r} must move forward, "
                        f"not back to {branch.next}"
                    )
                if condition not in BUILTIN_BRANCH_CONDITIONS:
                    close = difflib.get_close_matches(condition, BUILTIN_BRANCH_CONDITIONS, n=1)
                    if close:
                        logger.warning(
                            f"Vignette {self.id}: branch condition {condition!r} in phase "
                            f"{phase.id} will be matched as literal text; did you mean {close[0]!r}?"
                        )
            for stage in phase.reveals:
                if stage not in self.information_stages:
                    raise ValueError(f"Phase {phase.id} reveals unknown stage {stage!r}")

        if self.passing_score > self.excellence_score:
            raise ValueError("passing_score must not exceed excellence_score")

        missing = [d.value for d in self.difficulties if d not in self.character.difficulty_variations]
        if missing:
            raise ValueError(f"Character has no variation for difficulties: {', '.join(missing)}")
        return self

    def phase_index(self, phase_id: str) -> int:
        for i, phase in enumerate(self.phases):
            if phase.id == phase_id:
                return i
        return -1
