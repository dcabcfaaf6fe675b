import logging

import socketio

logger = logging.getLogger(__name__)

sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins="*",
    logger=False,
    engineio_logger=False,
)

# Store active session mappings: sid -> session_id
active_sessions: dict[str, str] = {}


def session_room(session_id: str) -> str:
    return f"session_{session_id}"


@sio.event
async def connect(sid, environ, auth):
    session_id = None
    if auth and isinstance(auth, dict):
        session_id = auth.get("sessionId")

    if session_id:
        active_sessions[sid] = session_id
        await sio.enter_room(sid, session_room(session_id))
        logger.info(f"Client {sid} connected to session {session_id}")
    else:
        logger.info(f"Client {sid} connected without session ID")


@sio.event
async def disconnect(sid):
    session_id = active_sessions.pop(sid, None)
    if session_id:
        logger.info(f"Client {sid} disconnected from session {session_id}")


@sio.event
async def trainee_message(sid, data):
    from convsim.ws.events import handle_trainee_message
    session_id = active_sessions.get(sid)
    if session_id:
        await handle_trainee_message(session_id, sid, data)
    else:
        await sio.emit("turn_error", {"error": "No session bound to this connection"}, to=sid)


@sio.event
async def end_session(sid, data):
    from convsim.ws.events import handle_end_session
    session_id = active_sessions.get(sid)
    if session_id:
        await handle_end_session(session_id, sid)
