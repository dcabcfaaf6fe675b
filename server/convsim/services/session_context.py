"""Session state dataclasses for a running conversation.

Every type here is frozen: components keep their own working state and hand
out these values as snapshots, so a snapshot never changes after the turn
that produced it.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime) -> str:
    return value.isoformat()


def _parse_ts(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class Sender(str, Enum):
    USER = "user"
    AVATAR = "avatar"


@dataclass(frozen=True)
class Message:
    id: str
    text: str
    sender: Sender
    timestamp: datetime
    phase_id: str
    emotional_impact: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "sender": self.sender.value,
            "timestamp": _ts(self.timestamp),
            "phase_id": self.phase_id,
            "emotional_impact": self.emotional_impact,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        return cls(
            id=data["id"],
            text=data["text"],
            sender=Sender(data["sender"]),
            timestamp=_parse_ts(data["timestamp"]),
            phase_id=data["phase_id"],
            emotional_impact=data.get("emotional_impact"),
        )


@dataclass(frozen=True)
class PhaseState:
    phase_id: str
    phase_start_time: datetime
    objectives_completed: tuple[str, ...] = ()
    objectives_pending: tuple[str, ...] = ()
    time_in_phase: int = 0  # seconds
    message_count: int = 0

    def to_dict(self) -> dict:
        return {
            "phase_id": self.phase_id,
            "phase_start_time": _ts(self.phase_start_time),
            "objectives_completed": list(self.objectives_completed),
            "objectives_pending": list(self.objectives_pending),
            "time_in_phase": self.time_in_phase,
            "message_count": self.message_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> PhaseState:
        return cls(
            phase_id=data["phase_id"],
            phase_start_time=_parse_ts(data["phase_start_time"]),
            objectives_completed=tuple(data.get("objectives_completed", ())),
            objectives_pending=tuple(data.get("objectives_pending", ())),
            time_in_phase=int(data.get("time_in_phase", 0)),
            message_count=int(data.get("message_count", 0)),
        )


@dataclass(frozen=True)
class EmotionalHistoryEntry:
    timestamp: datetime
    value: float
    reason: str
    modifier: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "timestamp": _ts(self.timestamp),
            "value": self.value,
            "modifier": self.modifier,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> EmotionalHistoryEntry:
        return cls(
            timestamp=_parse_ts(data["timestamp"]),
            value=float(data["value"]),
            reason=data.get("reason", ""),
            modifier=data.get("modifier"),
        )


@dataclass(frozen=True)
class EmotionalState:
    value: float
    threshold: str
    history: tuple[EmotionalHistoryEntry, ...] = ()

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "threshold": self.threshold,
            "history": [h.to_dict() for h in self.history],
        }

    @classmethod
    def from_dict(cls, data: dict) -> EmotionalState:
        return cls(
            value=float(data["value"]),
            threshold=data["threshold"],
            history=tuple(EmotionalHistoryEntry.from_dict(h) for h in data.get("history", ())),
        )


@dataclass(frozen=True)
class AppliedModifier:
    name: str
    value: float
    reason: str
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "value": self.value,
            "reason": self.reason,
            "timestamp": _ts(self.timestamp),
        }


@dataclass(frozen=True)
class BranchPath:
    phase_id: str
    trigger: str
    timestamp: datetime

    def to_dict(self) -> dict:
        return {"phase_id": self.phase_id, "trigger": self.trigger, "timestamp": _ts(self.timestamp)}

    @classmethod
    def from_dict(cls, data: dict) -> BranchPath:
        return cls(
            phase_id=data["phase_id"],
            trigger=data["trigger"],
            timestamp=_parse_ts(data["timestamp"]),
        )


class TransitionKind(str, Enum):
    BRANCH = "branch"
    OBJECTIVES = "objectives"
    MESSAGE_LIMIT = "message_limit"


@dataclass(frozen=True)
class PhaseTransition:
    from_phase_id: str
    to_phase_id: str
    reason: str
    trigger: str  # branch condition name, "objectives_and_time" or "message_limit"
    timestamp: datetime
    emotion_delta: float = 0.0
    kind: TransitionKind = TransitionKind.BRANCH

    @property
    def is_branch(self) -> bool:
        return self.kind == TransitionKind.BRANCH

    def to_dict(self) -> dict:
        return {
            "from": self.from_phase_id,
            "to": self.to_phase_id,
            "reason": self.reason,
            "trigger": self.trigger,
            "kind": self.kind.value,
            "emotion_delta": self.emotion_delta,
            "timestamp": _ts(self.timestamp),
        }


@dataclass(frozen=True)
class AssessmentScores:
    empathy: float = 0.0
    clarity: float = 0.0
    accountability: float = 0.0
    overall: float = 0.0

    def to_dict(self) -> dict:
        return {
            "empathy": self.empathy,
            "clarity": self.clarity,
            "accountability": self.accountability,
            "overall": self.overall,
        }

    @classmethod
    def from_dict(cls, data: dict) -> AssessmentScores:
        return cls(**{k: float(data.get(k, 0.0)) for k in ("empathy", "clarity", "accountability", "overall")})


@dataclass(frozen=True)
class SessionSnapshot:
    """Full, versioned state of one session after a turn."""
    vignette_id: str
    difficulty: str
    phase_state: PhaseState
    emotional_state: EmotionalState
    started_at: datetime
    last_updated: datetime
    version: int = 0
    branch_history: tuple[BranchPath, ...] = ()
    messages: tuple[Message, ...] = ()
    revealed_information: tuple[str, ...] = ()
    assessment_scores: AssessmentScores = field(default_factory=AssessmentScores)

    @property
    def user_messages(self) -> tuple[Message, ...]:
        return tuple(m for m in self.messages if m.sender == Sender.USER)

    def evolve(self, **changes) -> SessionSnapshot:
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "vignette_id": self.vignette_id,
            "difficulty": self.difficulty,
            "phase_state": self.phase_state.to_dict(),
            "emotional_state": self.emotional_state.to_dict(),
            "branch_history": [b.to_dict() for b in self.branch_history],
            "messages": [m.to_dict() for m in self.messages],
            "revealed_information": list(self.revealed_information),
            "assessment_scores": self.assessment_scores.to_dict(),
            "started_at": _ts(self.started_at),
            "last_updated": _ts(self.last_updated),
        }

    @classmethod
    def from_dict(cls, data: dict) -> SessionSnapshot:
        return cls(
            version=int(data.get("version", 0)),
            vignette_id=data["vignette_id"],
            difficulty=data["difficulty"],
            phase_state=PhaseState.from_dict(data["phase_state"]),
            emotional_state=EmotionalState.from_dict(data["emotional_state"]),
            branch_history=tuple(BranchPath.from_dict(b) for b in data.get("branch_history", ())),
            messages=tuple(Message.from_dict(m) for m in data.get("messages", ())),
            revealed_information=tuple(data.get("revealed_information", ())),
            assessment_scores=AssessmentScores.from_dict(data.get("assessment_scores", {})),
            started_at=_parse_ts(data["started_at"]),
            last_updated=_parse_ts(data["last_updated"]),
        )
