from typing import Optional

from pydantic import BaseModel

from convsim.schemas.vignette import Difficulty


class ConversationCreate(BaseModel):
    vignette_id: str
    difficulty: Difficulty = Difficulty.INTERMEDIATE


class MessageCreate(BaseModel):
    text: str


class RestoreRequest(BaseModel):
    snapshot: dict


class ConversationResponse(BaseModel):
    session_id: str
    vignette_id: str
    difficulty: str
    phase_id: str
    phase_name: str
    opening_line: Optional[str] = None
    progress: float
    is_complete: bool
    session: dict


class TurnResponse(BaseModel):
    session_id: str
    reply: str
    emotion_delta: float
    transition: Optional[dict] = None
    completed_objectives: list[str] = []
    modifiers: list[dict] = []
    scores: dict
    progress: float
    is_complete: bool
    session: dict


class AssessmentResponse(BaseModel):
    session_id: str
    performance_level: str
    is_passing: bool
    is_excellent: bool
    result: dict


class VignetteSummary(BaseModel):
    id: str
    title: str
    description: str
    difficulties: list[str]
    phase_count: int
