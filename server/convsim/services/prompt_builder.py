"""Prompt assembly for the simulated character's next reply.

Everything here is a pure function of the vignette, the difficulty, the
current session snapshot, the trainee message and the message history. No
component state is read and nothing is mutated, so the same inputs always
produce the same prompt.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from convsim.schemas.vignette import Difficulty, Phase, Vignette
from convsim.services.emotional_state import response_intensity
from convsim.services.errors import PhaseNotFoundError
from convsim.services.session_context import Message, Sender, SessionSnapshot

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_WINDOW = 10

SYSTEM_INSTRUCTIONS = """You are an AI avatar in a medical simulation. Your role is to portray {name}, {relationship}.

CRITICAL INSTRUCTIONS:
1. Stay in character at all times
2. Match your emotional state to the current intensity
3. Use appropriate vocabulary: {vocabulary}
4. Follow response guidelines:
   - Length: {length}
   - Emotional authenticity: {emotional_authenticity}
   - Questioning pattern: {questioning_pattern}
   - Interruption behavior: {interruption_behavior}
   - Silence usage: {silence_usage}
5. Do NOT break character or acknowledge you are an AI
6. Respond as if this is a real conversation with real emotions"""

BASE_PROMPT = """{identity_prompt}

Personality: {personality}
Medical Knowledge: {medical_knowledge}
Current State: {current_state}"""

EMOTIONAL_STATE_LAYER = """EMOTIONAL STATE LAYER:
Your current emotional state: {label} (intensity: {percent}%)
Traits at this difficulty: {traits}
Emotional range: {range_min} to {range_max}

Your response should reflect this emotional state authentically. {disposition}"""

HISTORY_LAYER = """CONVERSATION HISTORY LAYER:
Recent conversation:
{history}

Remember what has been said and maintain consistency. Reference previous statements when relevant."""

INFORMATION_BOUNDARY_LAYER = """INFORMATION BOUNDARY LAYER:
Current Phase: {phase_name}
Focus: {focus}
{limit}
You know: {known}

Do NOT reveal information that hasn't been discussed yet. Stay within the boundaries of what has been revealed."""

DIFFICULTY_LAYER = """DIFFICULTY ADJUSTMENT LAYER:
Difficulty Level: {difficulty}
Your behavior: {traits}

What triggers you: {triggers}
How you respond:
- To empathy: {to_empathy}
- To clarity: {to_clarity}
- To defensiveness: {to_defensiveness}

Current emotional intensity: {percent}%

{cooperation}"""

CONVERSATION_CONTEXT = """CONVERSATION CONTEXT:
Setting: {setting}
Current Phase: {phase_name} - {objective}
Clinical Situation: {clinical_summary}

Your opening line in this phase: {opening_line}"""

RESPONSE_GUIDELINES = """RESPONSE GUIDELINES:
- Keep responses to {length}
- Your emotional intensity is: {intensity}
- Match your words to your emotional state ({label})
- {questioning_pattern}
- {interruption}
- {silence_usage}
- Never exceed {max_length} characters

Remember: You are {name}, a real person with real emotions in a difficult situation."""

COOPERATION = {
    Difficulty.ADVANCED: "You are less cooperative and may challenge the doctor more aggressively.",
    Difficulty.INTERMEDIATE: "You are demanding answers but can be reached with the right approach.",
    Difficulty.BEGINNER: "You are seeking understanding and will respond well to empathy and clarity.",
}

SENDER_LABELS = {Sender.USER: "Doctor", Sender.AVATAR: "You"}


@dataclass(frozen=True)
class ConversationContext:
    """Everything the generation provider needs to voice the next reply."""
    character_name: str
    difficulty: str
    phase_id: str
    phase_name: str
    phase_focus: str
    information_boundary: Optional[str]
    emotional_value: float
    emotional_label: str
    response_intensity: str
    known_information: tuple[str, ...]
    recent_history: tuple[Message, ...]
    triggers: tuple[str, ...]
    key_phrases: tuple[str, ...]
    system_prompt: str
    user_prompt: str

    def to_dict(self) -> dict:
        return {
            "character_name": self.character_name,
            "difficulty": self.difficulty,
            "phase_id": self.phase_id,
            "phase_name": self.phase_name,
            "phase_focus": self.phase_focus,
            "information_boundary": self.information_boundary,
            "emotional_value": self.emotional_value,
            "emotional_label": self.emotional_label,
            "response_intensity": self.response_intensity,
            "known_information": list(self.known_information),
            "recent_history": [m.to_dict() for m in self.recent_history],
        }


def known_information(vignette: Vignette, phase_id: str, revealed: Sequence[str] = ()) -> list[str]:
    """Information stages the character may speak about in ``phase_id``.

    A stage is known once a phase up to and including the current one
    schedules it, or once the trainee has raised it. Stage order follows the
    vignette.
    """
    index = vignette.phase_index(phase_id)
    scheduled = set()
    for phase in vignette.phases[: index + 1]:
        scheduled.update(phase.reveals)
    scheduled.update(revealed)
    return [stage for stage in vignette.information_stages if stage in scheduled]


def _percent(value: float) -> str:
    return f"{value * 100:.0f}"


def _disposition(value: float) -> str:
    if value >= 0.7:
        return "You are highly emotional and may be less cooperative."
    if value >= 0.5:
        return "You are upset but can be reasoned with."
    return "You are concerned but seeking understanding."


def _history_layer(history: Sequence[Message]) -> str:
    if not history:
        return ""
    lines = "\n".join(f"{SENDER_LABELS[m.sender]}: {m.text}" for m in history)
    return HISTORY_LAYER.format(history=lines)


def _information_layer(phase: Phase, known: Sequence[str]) -> str:
    boundary = phase.hints.information_boundary
    return INFORMATION_BOUNDARY_LAYER.format(
        phase_name=phase.name,
        focus=phase.hints.focus or phase.objective,
        limit=f"\nInformation Limit: {boundary}\n" if boundary else "",
        known=", ".join(known) if known else "nothing beyond what the doctor has told you",
    )


def build_context(
    vignette: Vignette,
    difficulty: Difficulty,
    snapshot: SessionSnapshot,
    message: str,
    history: Sequence[Message],
    history_window: int = DEFAULT_HISTORY_WINDOW,
) -> ConversationContext:
    difficulty = Difficulty(difficulty)
    character = vignette.character
    variation = character.difficulty_variations[difficulty]
    guidelines = vignette.response_guidelines

    phase_id = snapshot.phase_state.phase_id
    phase = next((p for p in vignette.phases if p.id == phase_id), None)
    if phase is None:
        raise PhaseNotFoundError(phase_id)

    value = snapshot.emotional_state.value
    label = snapshot.emotional_state.threshold
    intensity = response_intensity(value)
    percent = _percent(value)
    recent = tuple(history[-history_window:]) if history_window > 0 else ()
    known = known_information(vignette, phase_id, snapshot.revealed_information)

    layers = [
        SYSTEM_INSTRUCTIONS.format(
            name=character.identity.name,
            relationship=character.identity.relationship or "a family member",
            vocabulary=character.vocabulary or "everyday language",
            length=guidelines.length,
            emotional_authenticity=guidelines.emotional_authenticity,
            questioning_pattern=guidelines.questioning_pattern,
            interruption_behavior=guidelines.interruption_behavior,
            silence_usage=guidelines.silence_usage,
        ),
        BASE_PROMPT.format(
            identity_prompt=vignette.identity_prompt or f"You are {character.identity.name}.",
            personality=character.personality,
            medical_knowledge=character.medical_knowledge or "Layperson",
            current_state=vignette.current_state or phase.disposition,
        ),
        EMOTIONAL_STATE_LAYER.format(
            label=label,
            percent=percent,
            traits=variation.traits,
            range_min=variation.emotional_range.min,
            range_max=variation.emotional_range.max,
            disposition=_disposition(value),
        ),
        _history_layer(recent),
        _information_layer(phase, known),
        DIFFICULTY_LAYER.format(
            difficulty=difficulty.value,
            traits=variation.traits,
            triggers=", ".join(variation.triggers) or "none in particular",
            to_empathy=variation.responses.to_empathy,
            to_clarity=variation.responses.to_clarity,
            to_defensiveness=variation.responses.to_defensiveness,
            percent=percent,
            cooperation=COOPERATION[difficulty],
        ),
        CONVERSATION_CONTEXT.format(
            setting=vignette.setting_description,
            phase_name=phase.name,
            objective=phase.objective,
            clinical_summary=vignette.clinical_summary,
            opening_line=phase.opening_line or "N/A",
        ),
        RESPONSE_GUIDELINES.format(
            length=guidelines.length,
            intensity=intensity,
            label=label,
            questioning_pattern=guidelines.questioning_pattern,
            interruption=(
                guidelines.interruption_behavior
                if intensity == "intense"
                else "Allow the doctor to finish speaking"
            ),
            silence_usage=guidelines.silence_usage,
            max_length=vignette.max_response_length,
            name=character.identity.name,
        ),
    ]
    system_prompt = "\n\n".join(layer for layer in layers if layer)

    return ConversationContext(
        character_name=character.identity.name,
        difficulty=difficulty.value,
        phase_id=phase.id,
        phase_name=phase.name,
        phase_focus=phase.hints.focus,
        information_boundary=phase.hints.information_boundary,
        emotional_value=value,
        emotional_label=label,
        response_intensity=intensity,
        known_information=tuple(known),
        recent_history=recent,
        triggers=tuple(variation.triggers),
        key_phrases=tuple(variation.key_phrases),
        system_prompt=system_prompt,
        user_prompt=f'The doctor says: "{message}"\n\nRespond in character.',
    )


def optimization_hints(snapshot: SessionSnapshot, progression: int) -> list[str]:
    """Suggestions for trimming the prompt on long sessions."""
    hints = []
    if len(snapshot.emotional_state.history) > 10:
        hints.append("Consider summarizing older conversation history")
    if progression > 50:
        hints.append("Early phases can be referenced briefly")
    return hints
