"""Thin JSON file store for conversation session snapshots.

Each session lives at: {storage_dir}/sessions/{session_id}/session.json
"""
from __future__ import annotations

import json
import os
import shutil
import uuid
from datetime import datetime, timezone

from convsim.config import settings
from convsim.services.errors import InvalidSessionIdError
from convsim.services.session_context import SessionSnapshot


def _json_default(obj):
    """Handle datetime and other non-serializable types."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def is_valid_session_id(session_id: str) -> bool:
    """Session ids are canonical lowercase UUID strings."""
    try:
        return str(uuid.UUID(session_id)) == session_id
    except (AttributeError, TypeError, ValueError):
        return False


def _session_dir(session_id: str) -> str:
    if not is_valid_session_id(session_id):
        raise InvalidSessionIdError(session_id)
    root = os.path.realpath(os.path.join(settings.storage_dir, "sessions"))
    directory = os.path.realpath(os.path.join(root, session_id))
    # Must be a direct child of the sessions root
    if os.path.dirname(directory) != root:
        raise InvalidSessionIdError(session_id)
    return directory


def _session_path(session_id: str) -> str:
    return os.path.join(_session_dir(session_id), "session.json")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _write(session_id: str, record: dict) -> None:
    os.makedirs(_session_dir(session_id), exist_ok=True)
    with open(_session_path(session_id), "w") as f:
        json.dump(record, f, indent=2, default=_json_default)


def read_session(session_id: str) -> dict | None:
    """Read session.json. Returns None if not found."""
    path = _session_path(session_id)
    if not os.path.exists(path):
        return None
    with open(path) as f:
        return json.load(f)


def save_snapshot(session_id: str, snapshot: SessionSnapshot) -> dict:
    """Write the latest snapshot for a session, creating the record if needed."""
    record = read_session(session_id) or {"id": session_id, "created_at": _now_iso()}
    record.update(
        {
            "vignette_id": snapshot.vignette_id,
            "difficulty": snapshot.difficulty,
            "version": snapshot.version,
            "updated_at": _now_iso(),
            "snapshot": snapshot.to_dict(),
        }
    )
    _write(session_id, record)
    return record


def read_snapshot(session_id: str) -> SessionSnapshot | None:
    record = read_session(session_id)
    if record is None or "snapshot" not in record:
        return None
    return SessionSnapshot.from_dict(record["snapshot"])


def delete_session(session_id: str) -> bool:
    """Delete the entire session directory. Returns True if it existed."""
    directory = _session_dir(session_id)
    if not os.path.exists(directory):
        return False
    shutil.rmtree(directory)
    return True
