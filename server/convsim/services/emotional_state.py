"""Tracks the simulated character's emotional intensity through a session.

Intensity is a single continuous value clamped to the vignette's scale
(within [0, 1]). Named modifiers from the vignette move it up (escalation)
or down (de-escalation); there is no decay between turns.
"""

import logging
from enum import Enum
from typing import Optional

from convsim.schemas.vignette import Difficulty, Vignette
from convsim.services.session_context import (
    AppliedModifier,
    Clock,
    EmotionalHistoryEntry,
    EmotionalState,
    utcnow,
)

logger = logging.getLogger(__name__)


class Modifier(str, Enum):
    EMPATHY_SHOWN = "empathyShown"
    MEDICAL_JARGON = "medicalJargon"
    DEFENSIVENESS = "defensiveness"
    HONEST_APOLOGY = "honestApology"
    CLEAR_EXPLANATION = "clearExplanation"


BASE_INTENSITY = {
    Difficulty.BEGINNER: 0.3,
    Difficulty.INTERMEDIATE: 0.5,
    Difficulty.ADVANCED: 0.7,
}

MODIFIER_REASONS = {
    Modifier.EMPATHY_SHOWN.value: "Learner showed empathy",
    Modifier.MEDICAL_JARGON.value: "Learner used medical jargon",
    Modifier.DEFENSIVENESS.value: "Learner was defensive",
    Modifier.HONEST_APOLOGY.value: "Learner gave honest apology",
    Modifier.CLEAR_EXPLANATION.value: "Learner gave clear explanation",
}

EMPATHY_PHRASES = (
    "i understand", "i can imagine", "that must be", "i'm sorry",
    "i apologize", "i recognize", "i acknowledge", "that sounds",
    "i hear you", "i see that", "that's difficult", "must be hard",
)

JARGON_TERMS = (
    "iatrogenic", "ventricular", "tachycardia", "defibrillation",
    "cardiac arrest", "biphasic", "amiodarone", "norepinephrine",
    "adenosine", "systolic", "diastolic", "hemodynamic", "qrs",
    "ekg", "ecg", "rosc", "cpr", "acls",
)

DEFENSIVE_PHRASES = (
    "it's not my fault", "not my responsibility", "following protocol",
    "standard procedure", "wasn't my decision", "everyone makes mistakes",
    "these things happen", "can't be prevented", "part of the job",
    "you have to understand", "that's just how it is",
)

APOLOGY_PHRASES = (
    "i made a mistake", "i made an error", "i take responsibility",
    "i was wrong", "this is my fault", "i apologize for",
    "i'm sorry for what happened", "i accept responsibility",
)

STRUCTURE_CUES = ("first", "then", "next", "finally")

# Character-length window for a "clear explanation"
EXPLANATION_LENGTH = (50, 300)


def response_intensity(value: float) -> str:
    """How charged the character's next reply should be."""
    if value >= 0.7:
        return "intense"
    if value >= 0.4:
        return "moderate"
    return "calm"


def detects_empathy(text: str) -> bool:
    return any(p in text for p in EMPATHY_PHRASES)


def detects_jargon(text: str) -> bool:
    return any(t in text for t in JARGON_TERMS)


def detects_defensiveness(text: str) -> bool:
    return any(p in text for p in DEFENSIVE_PHRASES)


def detects_apology(text: str) -> bool:
    return any(p in text for p in APOLOGY_PHRASES)


def detects_clear_explanation(text: str) -> bool:
    has_structure = any(cue in text for cue in STRUCTURE_CUES)
    low, high = EXPLANATION_LENGTH
    return has_structure and low < len(text) < high and not detects_jargon(text)


# Evaluated in this order; every detector that fires applies its modifier
DETECTORS = (
    (Modifier.EMPATHY_SHOWN, detects_empathy),
    (Modifier.MEDICAL_JARGON, detects_jargon),
    (Modifier.DEFENSIVENESS, detects_defensiveness),
    (Modifier.HONEST_APOLOGY, detects_apology),
    (Modifier.CLEAR_EXPLANATION, detects_clear_explanation),
)


class EmotionalStateTracker:
    def __init__(
        self,
        vignette: Vignette,
        difficulty: Difficulty,
        initial_value: Optional[float] = None,
        clock: Clock = utcnow,
    ):
        self.difficulty = Difficulty(difficulty)
        self.tracking = vignette.emotional_tracking
        self._clock = clock
        self._value = 0.0
        self._threshold = ""
        self._history: list[EmotionalHistoryEntry] = []
        self._modifiers: list[AppliedModifier] = []
        self._set_initial(initial_value, "Initial state")

    def _set_initial(self, value: Optional[float], reason: str) -> None:
        start = self._clamp(BASE_INTENSITY[self.difficulty] if value is None else value)
        self._value = start
        self._threshold = self.threshold_for(start)
        self._history = [EmotionalHistoryEntry(timestamp=self._clock(), value=start, reason=reason)]
        self._modifiers = []

    # --- Queries ---

    @property
    def value(self) -> float:
        return self._value

    @property
    def threshold(self) -> str:
        return self._threshold

    def state(self) -> EmotionalState:
        return EmotionalState(
            value=self._value,
            threshold=self._threshold,
            history=tuple(self._history),
        )

    def history(self) -> list[EmotionalHistoryEntry]:
        return list(self._history)

    def modifier_history(self) -> list[AppliedModifier]:
        return list(self._modifiers)

    def threshold_for(self, value: float) -> str:
        """Highest label whose cut-point is at or below ``value``."""
        ordered = sorted(self.tracking.scale.thresholds.items(), key=lambda kv: kv[1])
        label = ordered[0][0]
        for name, cut in ordered:
            if value >= cut:
                label = name
        return label

    def has_crossed_threshold(self, label: str) -> bool:
        cut = self.tracking.scale.thresholds.get(label)
        return cut is not None and self._value >= cut

    def get_emotional_trajectory(self, window: int = 5) -> str:
        if window < 2 or len(self._history) < window:
            return "stable"
        recent = self._history[-window:]
        difference = recent[-1].value - recent[0].value
        if difference < -0.1:
            return "improving"
        if difference > 0.1:
            return "worsening"
        return "stable"

    def get_response_intensity(self) -> str:
        return response_intensity(self._value)

    # --- Updates ---

    def _clamp(self, value: float) -> float:
        scale = self.tracking.scale
        return max(scale.min, min(scale.max, value))

    def _scale_for_difficulty(self, delta: float) -> float:
        # Hard characters calm down slowly; easy characters escalate slowly
        if self.difficulty == Difficulty.ADVANCED and delta < 0:
            return delta * 0.7
        if self.difficulty == Difficulty.BEGINNER and delta > 0:
            return delta * 0.8
        return delta

    def apply_modifier(self, name: str, context: Optional[dict] = None) -> AppliedModifier:
        """Apply a configured modifier by name. Unknown names apply a zero delta."""
        key = name.value if isinstance(name, Modifier) else name
        if key not in self.tracking.modifiers:
            logger.debug(f"Modifier {key!r} not configured for this vignette; applying 0")
        delta = self.tracking.modifiers.get(key, 0.0)
        reason = MODIFIER_REASONS.get(key, f"Modifier: {key}")
        if context:
            logger.debug(f"Applying {key} with context keys {sorted(context)}")
        return self.apply_delta(delta, key, reason)

    def apply_delta(self, delta: float, name: str, reason: Optional[str] = None) -> AppliedModifier:
        actual = self._scale_for_difficulty(delta)
        self._value = self._clamp(self._value + actual)
        self._threshold = self.threshold_for(self._value)
        now = self._clock()
        modifier = AppliedModifier(
            name=name,
            value=actual,
            reason=reason or f"Modifier: {name}",
            timestamp=now,
        )
        self._history.append(
            EmotionalHistoryEntry(timestamp=now, value=self._value, reason=modifier.reason, modifier=name)
        )
        self._modifiers.append(modifier)
        logger.debug(f"Emotion {name}: {actual:+.3f} -> {self._value:.3f} ({self._threshold})")
        return modifier

    def analyze_message(self, message: str) -> list[AppliedModifier]:
        text = message.lower()
        return [
            self.apply_modifier(modifier, {"user_message": message})
            for modifier, detector in DETECTORS
            if detector(text)
        ]

    # --- Restore / reset ---

    def reset(self, value: Optional[float] = None) -> None:
        self._set_initial(value, "State reset")

    def restore_state(self, state: EmotionalState) -> None:
        self._value = self._clamp(state.value)
        self._threshold = self.threshold_for(self._value)
        self._history = list(state.history) or [
            EmotionalHistoryEntry(timestamp=self._clock(), value=self._value, reason="Restored")
        ]
        self._modifiers = []

    def checkpoint(self) -> tuple:
        return (self._value, self._threshold, list(self._history), list(self._modifiers))

    def restore(self, checkpoint: tuple) -> None:
        value, threshold, history, modifiers = checkpoint
        self._value = value
        self._threshold = threshold
        self._history = list(history)
        self._modifiers = list(modifiers)
