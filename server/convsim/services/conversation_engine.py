"""Turn orchestration for one simulated conversation.

One engine owns one session. ``process_user_message`` runs the full turn:
record the trainee message, update the character's emotion, score the
message, check for a phase transition, build the prompt, ask the generation
provider for the reply and record it. A turn is all-or-nothing: if anything
fails before the reply is recorded, every component is put back exactly as
it was before the turn started and the error propagates.

Turns on one engine must be serialized by the caller; separate engines share
nothing mutable and can run concurrently.
"""

import asyncio
import itertools
import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from convsim.schemas.vignette import Difficulty, Phase, Vignette
from convsim.services.assessment_engine import (
    AssessmentEngine,
    AssessmentMode,
    AssessmentResult,
    PerformanceLevel,
)
from convsim.services.emotional_state import EmotionalStateTracker
from convsim.services.errors import (
    ConfigurationError,
    InvalidMessageError,
    ProviderError,
    ProviderResponseError,
    ProviderTimeoutError,
    UnsupportedDifficultyError,
)
from convsim.services.generation_provider import (
    MAX_IMPACT,
    GenerationProvider,
    ProviderResponse,
    estimate_emotional_impact,
)
from convsim.services.phase_manager import BranchContext, PhaseManager, PriorPhaseState
from convsim.services.prompt_builder import (
    DEFAULT_HISTORY_WINDOW,
    ConversationContext,
    build_context,
    optimization_hints,
)
from convsim.services.session_context import (
    AppliedModifier,
    AssessmentScores,
    Clock,
    Message,
    PhaseTransition,
    Sender,
    SessionSnapshot,
    utcnow,
)

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Awaitable[None]]
IdGenerator = Callable[[], str]

# Words this short say nothing about which objective or stage is meant
SIGNIFICANT_WORD_LENGTH = 3
FALLBACK_OBJECTIVE_WORDS = 2


@dataclass(frozen=True)
class TurnResult:
    response: ProviderResponse
    snapshot: SessionSnapshot
    user_message: Message
    avatar_message: Message
    assessment: AssessmentResult
    modifiers: tuple[AppliedModifier, ...] = ()
    completed_objectives: tuple[str, ...] = ()
    transition: Optional[PhaseTransition] = None

    def to_dict(self) -> dict:
        return {
            "response": self.response.to_dict(),
            "user_message": self.user_message.to_dict(),
            "avatar_message": self.avatar_message.to_dict(),
            "assessment": self.assessment.scores.to_dict(),
            "modifiers": [m.to_dict() for m in self.modifiers],
            "completed_objectives": list(self.completed_objectives),
            "transition": self.transition.to_dict() if self.transition else None,
            "session": self.snapshot.to_dict(),
        }


def _significant_words(text: str) -> list[str]:
    return [w for w in text.lower().split() if len(w) > SIGNIFICANT_WORD_LENGTH]


class ConversationEngine:
    def __init__(
        self,
        vignette: Vignette,
        difficulty: Difficulty,
        provider: GenerationProvider,
        initial_phase_id: Optional[str] = None,
        prior_phase_state: Optional[PriorPhaseState] = None,
        initial_emotion: Optional[float] = None,
        assessment_mode: AssessmentMode = AssessmentMode.SINGLE_MESSAGE,
        weights: Optional[dict[str, float]] = None,
        history_window: int = DEFAULT_HISTORY_WINDOW,
        min_pattern_confidence: float = 0.5,
        default_max_messages: int = 5,
        provider_timeout: Optional[float] = 30.0,
        id_generator: Optional[IdGenerator] = None,
        clock: Clock = utcnow,
    ):
        difficulty = Difficulty(difficulty)
        if difficulty not in vignette.difficulties:
            raise UnsupportedDifficultyError(vignette.id, difficulty.value)

        self.vignette = vignette
        self.difficulty = difficulty
        self.provider = provider
        self.history_window = history_window
        self.provider_timeout = provider_timeout
        self._clock = clock
        self._counter = itertools.count(1)
        self._id_generator = id_generator

        self.phase_manager = PhaseManager(
            vignette,
            difficulty,
            initial_phase_id=initial_phase_id,
            prior_state=prior_phase_state,
            clock=clock,
            default_max_messages=default_max_messages,
        )
        self._initial_phase_id = self.phase_manager.current_phase_id
        self.emotion = EmotionalStateTracker(vignette, difficulty, initial_value=initial_emotion, clock=clock)
        self.assessment = AssessmentEngine(
            vignette.assessment_hooks,
            passing_score=vignette.passing_score,
            excellence_score=vignette.excellence_score,
            weights=weights,
            mode=assessment_mode,
            min_confidence=min_pattern_confidence,
            clock=clock,
        )

        self._messages: list[Message] = []
        self._revealed: list[str] = []
        self._scores = AssessmentScores()
        self._started_at = clock()
        self._last_updated = self._started_at
        self._version = 0

    def _next_id(self) -> str:
        if self._id_generator is not None:
            return self._id_generator()
        return f"msg-{next(self._counter)}"

    # --- Queries ---

    def current_phase(self) -> Phase:
        return self.phase_manager.current_phase()

    def opening_line(self) -> Optional[str]:
        return self.current_phase().opening_line

    def messages(self) -> list[Message]:
        return list(self._messages)

    def get_session_state(self) -> SessionSnapshot:
        return SessionSnapshot(
            vignette_id=self.vignette.id,
            difficulty=self.difficulty.value,
            phase_state=self.phase_manager.phase_state(),
            emotional_state=self.emotion.state(),
            started_at=self._started_at,
            last_updated=self._last_updated,
            version=self._version,
            branch_history=tuple(self.phase_manager.branch_history()),
            messages=tuple(self._messages),
            revealed_information=tuple(self._revealed),
            assessment_scores=self._scores,
        )

    def is_complete(self) -> bool:
        return self.phase_manager.is_final_phase() and self.phase_manager.all_objectives_completed()

    def get_progress(self) -> float:
        """Overall progress in [0, 1]: 70% phase position, 30% current-phase objectives."""
        progression = self.phase_manager.phase_progression() / 100
        objectives = self.phase_manager.objective_texts()
        if objectives:
            done = len(self.phase_manager.phase_state().objectives_completed) / len(objectives)
        else:
            done = 1.0
        return progression * 0.7 + done * 0.3

    def get_assessment_results(self) -> AssessmentResult:
        return self.assessment.assess_conversation(self._messages)

    def performance_level(self) -> PerformanceLevel:
        return self.assessment.performance_level(self.get_assessment_results().overall)

    def optimization_hints(self) -> list[str]:
        return optimization_hints(self.get_session_state(), self.phase_manager.phase_progression())

    # --- Turn pipeline ---

    async def process_user_message(self, text: str, on_chunk: Optional[ChunkCallback] = None) -> TurnResult:
        if not isinstance(text, str) or not text.strip():
            raise InvalidMessageError("Trainee message must contain text")
        text = text.strip()

        checkpoint = self._checkpoint()
        try:
            return await self._run_turn(text, on_chunk)
        except ProviderError as e:
            logger.warning(f"Turn rolled back for {self.vignette.id}: {e}")
            self._restore(checkpoint)
            raise
        except BaseException:
            self._restore(checkpoint)
            raise

    async def _run_turn(self, text: str, on_chunk: Optional[ChunkCallback]) -> TurnResult:
        history = list(self._messages)
        user_message = Message(
            id=self._next_id(),
            text=text,
            sender=Sender.USER,
            timestamp=self._clock(),
            phase_id=self.phase_manager.current_phase_id,
        )
        self._messages.append(user_message)

        modifiers = self.emotion.analyze_message(text)

        assessment = self.assessment.assess_message(user_message)
        self._scores = assessment.scores

        self._update_revealed_information(text)
        completed = self._detect_objective_completion(text)

        phase_state = self.phase_manager.phase_state()
        transition = self.phase_manager.evaluate_branch(
            text,
            self.emotion.value,
            BranchContext(
                phase_duration=phase_state.time_in_phase,
                objectives_completed=phase_state.objectives_completed,
            ),
        )
        if transition is not None and transition.is_branch and transition.emotion_delta:
            modifiers.append(
                self.emotion.apply_delta(
                    transition.emotion_delta,
                    f"branch:{transition.trigger}",
                    transition.reason,
                )
            )

        context = build_context(
            self.vignette,
            self.difficulty,
            self.get_session_state(),
            text,
            history,
            history_window=self.history_window,
        )
        response = await self._generate(text, context, history, on_chunk)

        avatar_message = Message(
            id=self._next_id(),
            text=response.text,
            sender=Sender.AVATAR,
            timestamp=self._clock(),
            phase_id=self.phase_manager.current_phase_id,
            emotional_impact=response.emotion_delta,
        )
        self._messages.append(avatar_message)
        self._version += 1
        self._last_updated = self._clock()

        return TurnResult(
            response=response,
            snapshot=self.get_session_state(),
            user_message=user_message,
            avatar_message=avatar_message,
            assessment=assessment,
            modifiers=tuple(modifiers),
            completed_objectives=tuple(completed),
            transition=transition,
        )

    async def _generate(
        self,
        text: str,
        context: ConversationContext,
        history: list[Message],
        on_chunk: Optional[ChunkCallback],
    ) -> ProviderResponse:
        try:
            if on_chunk is not None:
                chunks: list[str] = []

                async def consume():
                    async for chunk in self.provider.stream_response(text, context, history):
                        chunks.append(chunk)
                        await on_chunk(chunk)

                await asyncio.wait_for(consume(), timeout=self.provider_timeout)
                reply = " ".join(c.strip() for c in chunks if c.strip())
                response = ProviderResponse(
                    text=reply, emotion_delta=estimate_emotional_impact(reply, context.triggers)
                )
            else:
                response = await asyncio.wait_for(
                    self.provider.get_response(text, context, history),
                    timeout=self.provider_timeout,
                )
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(
                f"{self.provider.name} provider gave no reply within {self.provider_timeout}s"
            ) from e
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"{self.provider.name} provider failed: {e}") from e

        reply_text = getattr(response, "text", None)
        if not isinstance(reply_text, str) or not reply_text.strip():
            raise ProviderResponseError(f"{self.provider.name} provider returned no usable text")
        try:
            delta = float(response.emotion_delta or 0.0)
        except (TypeError, ValueError) as e:
            raise ProviderResponseError(f"Non-numeric emotion estimate: {response.emotion_delta!r}") from e
        return ProviderResponse(text=reply_text.strip(), emotion_delta=max(-MAX_IMPACT, min(MAX_IMPACT, delta)))

    def _update_revealed_information(self, text: str) -> None:
        lowered = text.lower()
        for stage in self.vignette.information_stages:
            if stage in self._revealed:
                continue
            if any(word in lowered for word in _significant_words(stage)):
                self._revealed.append(stage)

    def _detect_objective_completion(self, text: str) -> list[str]:
        lowered = text.lower()
        completed = []
        for objective in self.current_phase().objectives:
            keywords = self.phase_manager.keywords_for_objective(objective)
            if keywords:
                hit = any(k.lower() in lowered for k in keywords)
            else:
                words = _significant_words(objective.text)
                hit = sum(1 for w in words if w in lowered) >= FALLBACK_OBJECTIVE_WORDS
            if hit and self.phase_manager.complete_objective(objective.text):
                completed.append(objective.text)
        return completed

    # --- Checkpoint / restore ---

    def _checkpoint(self) -> tuple:
        return (
            self.phase_manager.checkpoint(),
            self.emotion.checkpoint(),
            self.assessment.checkpoint(),
            list(self._messages),
            list(self._revealed),
            self._scores,
            self._last_updated,
            self._version,
        )

    def _restore(self, checkpoint: tuple) -> None:
        (
            phases,
            emotion,
            assessment,
            messages,
            revealed,
            self._scores,
            self._last_updated,
            self._version,
        ) = checkpoint
        self.phase_manager.restore(phases)
        self.emotion.restore(emotion)
        self.assessment.restore(assessment)
        self._messages = list(messages)
        self._revealed = list(revealed)
        self._counter = itertools.count(len(messages) + 1)

    def update_conversation_history(self, messages: Iterable[Message]) -> AssessmentResult:
        """Replace the message log and re-assess it as a whole."""
        self._messages = list(messages)
        result = self.assessment.update_conversation_history(self._messages)
        self._scores = result.scores
        self._counter = itertools.count(len(self._messages) + 1)
        self._version += 1
        self._last_updated = self._clock()
        return result

    def restore_session_state(self, snapshot: SessionSnapshot) -> None:
        """Resume a persisted session from its snapshot."""
        if snapshot.vignette_id != self.vignette.id:
            raise ConfigurationError(
                f"Snapshot belongs to vignette {snapshot.vignette_id}, not {self.vignette.id}"
            )
        if snapshot.difficulty != self.difficulty.value:
            raise ConfigurationError(
                f"Snapshot difficulty {snapshot.difficulty} does not match {self.difficulty.value}"
            )
        self.phase_manager.restore_state(snapshot.phase_state, snapshot.branch_history)
        self.emotion.restore_state(snapshot.emotional_state)
        self._revealed = list(snapshot.revealed_information)
        self._started_at = snapshot.started_at
        self.update_conversation_history(snapshot.messages)
        self._version = snapshot.version
        self._last_updated = snapshot.last_updated
        logger.info(f"Restored session on {self.vignette.id} at version {snapshot.version}")

    def reset(self) -> None:
        """Start the session over. Tests and debugging only."""
        self.phase_manager.reset_to_phase(self._initial_phase_id)
        self.emotion.reset()
        self.assessment.reset()
        self._messages = []
        self._revealed = []
        self._scores = AssessmentScores()
        self._counter = itertools.count(1)
        self._started_at = self._clock()
        self._last_updated = self._started_at
        self._version = 0
