"""Phase progression for one conversation session.

A vignette is an ordered list of phases. The manager tracks which phase is
active and which of its objectives the trainee has covered, and decides after
every trainee message whether the conversation should move on: first through
the phase's branch points (declaration order, first match wins), then through
automatic progression (objectives done and minimum time elapsed), and finally
through the per-phase message budget.

Transitions only ever move forward. ``reset_to_phase`` is the one exception
and exists for tests and debugging.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from convsim.schemas.vignette import DURATION_MINUTES_RE, Difficulty, LearnerObjective, Phase, Vignette
from convsim.services.errors import DurationFormatError, PhaseNotFoundError, PhaseTransitionError
from convsim.services.session_context import (
    BranchPath,
    Clock,
    PhaseState,
    PhaseTransition,
    TransitionKind,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 5
PREPARATION_PHASE_ID = "preparation"

TRIGGER_OBJECTIVES = "objectives_and_time"
TRIGGER_MESSAGE_LIMIT = "message_limit"

EMPATHETIC_KEYWORDS = (
    "understand", "sorry", "apologize", "feel", "emotions",
    "difficult", "acknowledge", "recognize", "empathize",
)

JARGON_KEYWORDS = (
    "iatrogenic", "ventricular", "tachycardia", "defibrillation",
    "cardiac arrest", "biphasic", "amiodarone", "norepinephrine",
    "adenosine", "systolic", "diastolic", "hemodynamic",
)

DEFENSIVE_KEYWORDS = (
    "it's not my fault", "blame", "it's protocol", "standard procedure",
    "everyone makes mistakes", "these things happen", "not preventable",
    "wasn't my decision", "following orders",
)

class BranchHeuristic(str, Enum):
    CLEAR_EMPATHETIC = "clear_empathetic"
    MEDICAL_JARGON = "medical_jargon"
    DEFENSIVE = "defensive"
    OBJECTIVE_COMPLETED = "objective_completed"
    TIME_ELAPSED = "time_elapsed"


@dataclass(frozen=True)
class BranchCondition:
    """A branch point's condition: a built-in heuristic or a literal phrase."""
    name: str
    heuristic: Optional[BranchHeuristic] = None

    @classmethod
    def parse(cls, name: str) -> "BranchCondition":
        try:
            return cls(name=name, heuristic=BranchHeuristic(name))
        except ValueError:
            return cls(name=name)

    @property
    def is_custom(self) -> bool:
        return self.heuristic is None


@dataclass(frozen=True)
class BranchContext:
    """Optional overrides for the state used by context-based heuristics.

    Any field left as None is taken from the manager's own phase state.
    """
    phase_duration: Optional[float] = None  # seconds
    objectives_completed: Optional[Sequence[str]] = None
    total_objectives: Optional[int] = None
    min_duration: Optional[float] = None  # seconds


@dataclass(frozen=True)
class PriorPhaseState:
    """Phase progress carried over from an earlier turn of the same session."""
    objectives_completed: Sequence[str] = ()
    message_count: int = 0
    branch_history: Sequence[BranchPath] = ()


def parse_phase_duration(duration: str) -> int:
    """Minimum phase duration in seconds.

    The first integer in the human-readable duration ("3-7 minutes") is the
    minimum, in minutes.
    """
    match = DURATION_MINUTES_RE.search(duration or "")
    if not match:
        raise DurationFormatError(duration)
    return int(match.group(1)) * 60


def _contains_any(text: str, phrases: Sequence[str]) -> bool:
    return any(p in text for p in phrases)


class PhaseManager:
    def __init__(
        self,
        vignette: Vignette,
        difficulty: Difficulty,
        initial_phase_id: Optional[str] = None,
        prior_state: Optional[PriorPhaseState] = None,
        clock: Clock = utcnow,
        default_max_messages: int = DEFAULT_MAX_MESSAGES,
    ):
        self.vignette = vignette
        self.difficulty = Difficulty(difficulty)
        self.default_max_messages = default_max_messages
        self._clock = clock
        self._phases: dict[str, Phase] = {p.id: p for p in vignette.phases}
        self._transitions: list[PhaseTransition] = []
        self._branch_history: list[BranchPath] = []

        phase_id = initial_phase_id or self._initial_phase_id()
        self._enter(phase_id)

        if prior_state is not None:
            for text in prior_state.objectives_completed:
                self.complete_objective(text)
            self._message_count = prior_state.message_count
            self._branch_history = list(prior_state.branch_history)

    def _initial_phase_id(self) -> str:
        for phase in self.vignette.phases:
            if phase.id != PREPARATION_PHASE_ID:
                return phase.id
        return self.vignette.phases[0].id

    def _enter(self, phase_id: str) -> None:
        phase = self.get_phase(phase_id)
        if phase is None:
            raise PhaseNotFoundError(phase_id)
        self._phase_id = phase_id
        self._phase_start = self._clock()
        self._completed: list[str] = []
        self._pending: list[str] = phase.objective_texts
        self._message_count = 0

    # --- Queries ---

    def current_phase(self) -> Phase:
        phase = self._phases.get(self._phase_id)
        if phase is None:
            raise PhaseNotFoundError(self._phase_id)
        return phase

    @property
    def current_phase_id(self) -> str:
        return self._phase_id

    def time_in_phase(self) -> int:
        return max(0, int((self._clock() - self._phase_start).total_seconds()))

    def phase_state(self) -> PhaseState:
        return PhaseState(
            phase_id=self._phase_id,
            phase_start_time=self._phase_start,
            objectives_completed=tuple(self._completed),
            objectives_pending=tuple(self._pending),
            time_in_phase=self.time_in_phase(),
            message_count=self._message_count,
        )

    def get_phase(self, phase_id: str) -> Optional[Phase]:
        return self._phases.get(phase_id)

    def all_phases(self) -> list[Phase]:
        return list(self.vignette.phases)

    def objective_texts(self) -> list[str]:
        return self.current_phase().objective_texts

    def branch_history(self) -> list[BranchPath]:
        return list(self._branch_history)

    def transition_history(self) -> list[PhaseTransition]:
        return list(self._transitions)

    def _index(self, phase_id: str) -> int:
        index = self.vignette.phase_index(phase_id)
        if index == -1:
            raise PhaseNotFoundError(phase_id)
        return index

    def phase_progression(self) -> int:
        """Percent of the way through the phase sequence."""
        count = len(self.vignette.phases)
        if count == 1:
            return 100
        return round(self._index(self._phase_id) / (count - 1) * 100)

    def is_critical_phase(self) -> bool:
        return self.current_phase().critical

    def is_final_phase(self) -> bool:
        return self._index(self._phase_id) == len(self.vignette.phases) - 1

    def all_objectives_completed(self) -> bool:
        return not self._pending

    def max_messages(self) -> int:
        phase = self.current_phase()
        override = phase.difficulty_overrides.get(self.difficulty)
        if override is not None and override.max_messages is not None:
            return override.max_messages
        if phase.max_messages is not None:
            return phase.max_messages
        return self.default_max_messages

    def keywords_for_objective(self, objective: LearnerObjective) -> list[str]:
        """Trigger keywords for an objective after difficulty overrides."""
        keywords = list(objective.keywords)
        override = self.current_phase().difficulty_overrides.get(self.difficulty)
        if override is None:
            return keywords
        keywords.extend(
            k for k in override.additional_keywords.get(objective.text, []) if k not in keywords
        )
        removed = set(override.removed_keywords.get(objective.text, []))
        return [k for k in keywords if k not in removed]

    # --- Objectives ---

    def complete_objective(self, text: str) -> bool:
        """Mark an objective of the current phase done. Returns True if it changed state."""
        if text in self._completed or text not in self._pending:
            return False
        self._completed.append(text)
        self._pending = [o for o in self._pending if o != text]
        logger.debug(f"Objective completed in {self._phase_id}: {text}")
        return True

    def complete_objective_at(self, index: int) -> bool:
        objectives = self.objective_texts()
        if 0 <= index < len(objectives):
            return self.complete_objective(objectives[index])
        return False

    # --- Branching ---

    def evaluate_branch(
        self,
        message: str,
        emotional_value: float,
        context: Optional[BranchContext] = None,
    ) -> Optional[PhaseTransition]:
        """Count a trainee message against the phase and decide whether to move on."""
        context = context or BranchContext()
        self._message_count += 1
        phase = self.current_phase()
        text = message.lower()

        for name, branch in phase.branch_points.items():
            condition = BranchCondition.parse(name)
            if not self._condition_met(condition, text, context):
                continue
            logger.debug(f"Branch {name!r} matched in {phase.id} at emotion {emotional_value:.2f}")
            transition = PhaseTransition(
                from_phase_id=phase.id,
                to_phase_id=branch.next,
                reason=branch.description or f"Branch condition {name} met",
                trigger=name,
                timestamp=self._clock(),
                emotion_delta=branch.emotion_delta,
            )
            self._transition(transition)
            self._branch_history.append(
                BranchPath(phase_id=phase.id, trigger=name, timestamp=transition.timestamp)
            )
            return transition

        return self._automatic_progression(phase, context)

    def _condition_met(self, condition: BranchCondition, text: str, context: BranchContext) -> bool:
        heuristic = condition.heuristic
        if heuristic is None:
            return condition.name.lower() in text
        if heuristic == BranchHeuristic.CLEAR_EMPATHETIC:
            return _contains_any(text, EMPATHETIC_KEYWORDS)
        if heuristic == BranchHeuristic.MEDICAL_JARGON:
            return _contains_any(text, JARGON_KEYWORDS)
        if heuristic == BranchHeuristic.DEFENSIVE:
            return _contains_any(text, DEFENSIVE_KEYWORDS)
        if heuristic == BranchHeuristic.OBJECTIVE_COMPLETED:
            completed = (
                context.objectives_completed
                if context.objectives_completed is not None
                else self._completed
            )
            total = context.total_objectives or len(self.objective_texts()) or 1
            return len(completed) >= total
        if heuristic == BranchHeuristic.TIME_ELAPSED:
            elapsed = (
                context.phase_duration if context.phase_duration is not None else self.time_in_phase()
            )
            minimum = (
                context.min_duration
                if context.min_duration is not None
                else parse_phase_duration(self.current_phase().duration)
            )
            return elapsed >= minimum
        return False

    def _automatic_progression(self, phase: Phase, context: BranchContext) -> Optional[PhaseTransition]:
        if self.is_final_phase():
            return None
        next_phase = self.vignette.phases[self._index(phase.id) + 1]

        elapsed = context.phase_duration if context.phase_duration is not None else self.time_in_phase()
        if self.all_objectives_completed() and elapsed >= parse_phase_duration(phase.duration):
            transition = PhaseTransition(
                from_phase_id=phase.id,
                to_phase_id=next_phase.id,
                reason="Objectives completed and minimum time elapsed",
                trigger=TRIGGER_OBJECTIVES,
                timestamp=self._clock(),
                kind=TransitionKind.OBJECTIVES,
            )
            self._transition(transition)
            return transition

        limit = self.max_messages()
        if self._message_count >= limit:
            transition = PhaseTransition(
                from_phase_id=phase.id,
                to_phase_id=next_phase.id,
                reason=f"Maximum messages ({limit}) reached, advancing to next phase",
                trigger=TRIGGER_MESSAGE_LIMIT,
                timestamp=self._clock(),
                kind=TransitionKind.MESSAGE_LIMIT,
            )
            self._transition(transition)
            return transition
        return None

    def _transition(self, transition: PhaseTransition) -> None:
        current = self._index(transition.from_phase_id)
        target = self._index(transition.to_phase_id)
        if target <= current:
            raise PhaseTransitionError(
                f"Cannot move from {transition.from_phase_id} back to {transition.to_phase_id}"
            )
        self._transitions.append(transition)
        self._enter(transition.to_phase_id)
        logger.info(
            f"Phase transition {transition.from_phase_id} -> {transition.to_phase_id} "
            f"({transition.trigger})"
        )

    # --- Restore / reset ---

    def reset_to_phase(self, phase_id: str) -> None:
        """Jump to any phase, including earlier ones. Tests and debugging only."""
        self._enter(phase_id)
        logger.warning(f"Phase manager reset to {phase_id}")

    def restore_state(self, state: PhaseState, branch_history: Sequence[BranchPath] = ()) -> None:
        self._enter(state.phase_id)
        self._phase_start = state.phase_start_time
        for text in state.objectives_completed:
            self.complete_objective(text)
        self._message_count = state.message_count
        self._branch_history = list(branch_history)
        self._transitions = []

    def checkpoint(self) -> tuple:
        return (
            self._phase_id,
            self._phase_start,
            list(self._completed),
            list(self._pending),
            self._message_count,
            list(self._branch_history),
            list(self._transitions),
        )

    def restore(self, checkpoint: tuple) -> None:
        (
            self._phase_id,
            self._phase_start,
            completed,
            pending,
            self._message_count,
            branch_history,
            transitions,
        ) = checkpoint
        self._completed = list(completed)
        self._pending = list(pending)
        self._branch_history = list(branch_history)
        self._transitions = list(transitions)
