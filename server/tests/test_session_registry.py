import asyncio

import pytest

from convsim.config import settings
from convsim.schemas.vignette import Difficulty
from convsim.services import session_store
from convsim.services.errors import InvalidSessionIdError, SessionNotFoundError, VignetteNotFoundError
from convsim.services.session_registry import SessionRegistry

from conftest import ScriptedProvider


@pytest.fixture
def storage(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "storage_dir", str(tmp_path))
    return tmp_path


@pytest.fixture
def registry(med001, storage):
    return SessionRegistry(provider_factory=lambda: ScriptedProvider(delay=0.01))


def test_store_round_trip(registry):
    session_id, engine = registry.start("MED-001", Difficulty.ADVANCED)
    record = session_store.read_session(session_id)
    assert record["vignette_id"] == "MED-001"
    assert record["difficulty"] == "advanced"
    snapshot = session_store.read_snapshot(session_id)
    assert snapshot.emotional_state == engine.emotion.state()
    assert snapshot.phase_state.phase_id == "opening"
    assert session_store.delete_session(session_id) is True
    assert session_store.read_snapshot(session_id) is None
    assert session_store.delete_session(session_id) is False


@pytest.mark.parametrize("bad_id", ["..", ".", "", "../sessions", "ABC", "{12345678-1234-5678-1234-567812345678}"])
def test_store_rejects_ids_outside_session_dir(storage, bad_id):
    with pytest.raises(InvalidSessionIdError):
        session_store.delete_session(bad_id)
    with pytest.raises(InvalidSessionIdError):
        session_store.read_session(bad_id)


def test_unknown_vignette(registry):
    with pytest.raises(VignetteNotFoundError):
        registry.start("NOPE", Difficulty.BEGINNER)


def test_unknown_session(registry):
    with pytest.raises(SessionNotFoundError):
        registry.get("missing")


@pytest.mark.asyncio
async def test_turns_on_one_session_are_serialized(registry):
    session_id, engine = registry.start("MED-001", Difficulty.INTERMEDIATE)
    results = await asyncio.gather(
        registry.process(session_id, "Hello."),
        registry.process(session_id, "My name is Dr. Patel."),
        registry.process(session_id, "Please have a seat."),
    )
    assert sorted(r.snapshot.version for r in results) == [1, 2, 3]
    ids = [m.id for m in engine.messages()]
    assert ids == [f"msg-{n}" for n in range(1, 7)]
    assert session_store.read_snapshot(session_id).version == 3


@pytest.mark.asyncio
async def test_sessions_are_independent(registry):
    first, _ = registry.start("MED-001", Difficulty.BEGINNER)
    second, _ = registry.start("MED-001", Difficulty.ADVANCED)
    await asyncio.gather(
        registry.process(first, "It's not my fault, these things happen."),
        registry.process(second, "Hello."),
    )
    assert registry.get(first).emotion.value > 0.3
    assert registry.get(second).emotion.value == 0.7


def test_non_persistent_registry_forgets_ended_sessions(med001, storage):
    registry = SessionRegistry(provider_factory=ScriptedProvider, persist=False)
    session_id, _ = registry.start("MED-001", Difficulty.BEGINNER)
    assert session_store.read_session(session_id) is None
    assert registry.end(session_id) is True
    assert registry.end(session_id) is False
    with pytest.raises(SessionNotFoundError):
        registry.get(session_id)
