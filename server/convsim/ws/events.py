import logging

from convsim.services.errors import ConversationError, InvalidMessageError, ProviderError
from convsim.services.session_registry import registry
from convsim.ws.handler import session_room, sio

logger = logging.getLogger(__name__)


def _error_kind(e: ConversationError) -> str:
    if isinstance(e, InvalidMessageError):
        return "invalid_message"
    if isinstance(e, ProviderError):
        return "provider"
    return "conversation"


async def handle_trainee_message(session_id: str, sid: str, data: dict):
    """Run one turn, streaming the character's reply sentence by sentence.

    Emits ``avatar_chunk`` for each sentence and ``turn_complete`` with the
    new session state, or ``turn_error`` if the turn was rejected or rolled
    back.
    """
    if not isinstance(data, dict):
        logger.warning(f"Session {session_id}: ignoring non-object trainee_message payload")
        await sio.emit(
            "turn_error",
            {"error": "trainee_message payload must be an object with a text field", "kind": "invalid_message"},
            to=sid,
        )
        return
    text = data.get("text", "")
    room = session_room(session_id)

    async def on_chunk(chunk: str):
        await sio.emit("avatar_chunk", {"text": chunk}, room=room)

    try:
        result = await registry.process(session_id, text, on_chunk=on_chunk)
    except ConversationError as e:
        logger.warning(f"Session {session_id}: turn failed: {e}")
        await sio.emit("turn_error", {"error": str(e), "kind": _error_kind(e)}, to=sid)
        return

    engine = registry.get(session_id)
    payload = result.to_dict()
    payload["progress"] = engine.get_progress()
    payload["is_complete"] = engine.is_complete()
    await sio.emit("turn_complete", payload, room=room)


async def handle_end_session(session_id: str, sid: str):
    registry.end(session_id)
    await sio.emit("session_ended", {"sessionId": session_id}, room=session_room(session_id))
    await sio.close_room(session_room(session_id))
