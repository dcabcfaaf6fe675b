import logging

from fastapi import APIRouter, HTTPException

from convsim.schemas.conversation import (
    AssessmentResponse,
    ConversationCreate,
    ConversationResponse,
    MessageCreate,
    RestoreRequest,
    TurnResponse,
    VignetteSummary,
)
from convsim.services.conversation_engine import ConversationEngine
from convsim.services.errors import (
    ConversationError,
    InvalidMessageError,
    InvalidSessionIdError,
    ProviderError,
    SessionNotFoundError,
    UnsupportedDifficultyError,
    VignetteNotFoundError,
)
from convsim.services.session_context import SessionSnapshot
from convsim.services.session_registry import registry
from convsim.services.vignette_loader import list_vignettes

logger = logging.getLogger(__name__)

router = APIRouter()
vignettes_router = APIRouter()


def _http_error(e: ConversationError) -> HTTPException:
    if isinstance(e, (SessionNotFoundError, VignetteNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (InvalidMessageError, InvalidSessionIdError, UnsupportedDifficultyError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ProviderError):
        return HTTPException(status_code=502, detail=str(e))
    logger.error(f"Conversation error: {e}")
    return HTTPException(status_code=500, detail=str(e))


def _conversation_response(session_id: str, engine: ConversationEngine) -> ConversationResponse:
    phase = engine.current_phase()
    return ConversationResponse(
        session_id=session_id,
        vignette_id=engine.vignette.id,
        difficulty=engine.difficulty.value,
        phase_id=phase.id,
        phase_name=phase.name,
        opening_line=engine.opening_line(),
        progress=engine.get_progress(),
        is_complete=engine.is_complete(),
        session=engine.get_session_state().to_dict(),
    )


@vignettes_router.get("/vignettes", response_model=list[VignetteSummary])
async def get_vignettes():
    return [
        VignetteSummary(
            id=v.id,
            title=v.title,
            description=v.description,
            difficulties=[d.value for d in v.difficulties],
            phase_count=len(v.phases),
        )
        for v in list_vignettes()
    ]


@router.post("/", response_model=ConversationResponse, status_code=201)
async def start_conversation(payload: ConversationCreate):
    try:
        session_id, engine = registry.start(payload.vignette_id, payload.difficulty)
    except ConversationError as e:
        raise _http_error(e)
    return _conversation_response(session_id, engine)


@router.get("/{session_id}", response_model=ConversationResponse)
async def get_conversation(session_id: str):
    try:
        engine = registry.get(session_id)
    except ConversationError as e:
        raise _http_error(e)
    return _conversation_response(session_id, engine)


@router.post("/{session_id}/messages", response_model=TurnResponse)
async def send_message(session_id: str, payload: MessageCreate):
    try:
        result = await registry.process(session_id, payload.text)
        engine = registry.get(session_id)
    except ConversationError as e:
        raise _http_error(e)

    return TurnResponse(
        session_id=session_id,
        reply=result.response.text,
        emotion_delta=result.response.emotion_delta,
        transition=result.transition.to_dict() if result.transition else None,
        completed_objectives=list(result.completed_objectives),
        modifiers=[m.to_dict() for m in result.modifiers],
        scores=result.snapshot.assessment_scores.to_dict(),
        progress=engine.get_progress(),
        is_complete=engine.is_complete(),
        session=result.snapshot.to_dict(),
    )


@router.get("/{session_id}/assessment", response_model=AssessmentResponse)
async def get_assessment(session_id: str):
    try:
        engine = registry.get(session_id)
    except ConversationError as e:
        raise _http_error(e)

    result = engine.get_assessment_results()
    return AssessmentResponse(
        session_id=session_id,
        performance_level=engine.assessment.performance_level(result.overall).value,
        is_passing=result.overall >= engine.assessment.passing_score,
        is_excellent=result.overall >= engine.assessment.excellence_score,
        result=result.to_dict(),
    )


@router.post("/{session_id}/restore", response_model=ConversationResponse)
async def restore_conversation(session_id: str, payload: RestoreRequest):
    try:
        snapshot = SessionSnapshot.from_dict(payload.snapshot)
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid snapshot: {e}")

    try:
        engine = await registry.restore_session(session_id, snapshot)
    except ConversationError as e:
        raise _http_error(e)
    return _conversation_response(session_id, engine)


@router.delete("/{session_id}", status_code=204)
async def end_conversation(session_id: str):
    if not registry.end(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
