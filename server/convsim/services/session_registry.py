"""In-memory map of live conversation sessions.

Each session id maps to its own ConversationEngine and asyncio.Lock, so at
most one turn per session is in flight while different sessions run
concurrently. After every successful turn the snapshot is written to the
session store, which lets a session be resumed after a restart.
"""

import asyncio
import logging
import uuid
from typing import Callable, Optional

from convsim.config import Settings, settings
from convsim.schemas.vignette import Difficulty, Vignette
from convsim.services import session_store
from convsim.services.claude_client import ClaudeProvider
from convsim.services.conversation_engine import ChunkCallback, ConversationEngine, TurnResult
from convsim.services.errors import (
    ConfigurationError,
    InvalidSessionIdError,
    SessionNotFoundError,
    UnsupportedDifficultyError,
    VignetteNotFoundError,
)
from convsim.services.generation_provider import CannedProvider, GenerationProvider
from convsim.services.llm_client import GeminiProvider
from convsim.services.session_context import SessionSnapshot
from convsim.services.vignette_loader import get_vignette

logger = logging.getLogger(__name__)


def create_provider(config: Settings = settings) -> GenerationProvider:
    """Build the generation provider named by ``llm_provider``."""
    name = config.llm_provider.lower()
    if name == "gemini":
        return GeminiProvider(
            api_key=config.gemini_api_key,
            model=config.gemini_model,
            temperature=config.temperature,
            max_output_tokens=config.max_output_tokens,
        )
    if name == "claude":
        return ClaudeProvider(
            api_key=config.anthropic_api_key,
            model=config.claude_model,
            temperature=config.temperature,
            max_tokens=config.max_output_tokens,
        )
    if name == "canned":
        return CannedProvider()
    raise ConfigurationError(f"Unknown llm_provider: {config.llm_provider}")


class SessionRegistry:
    def __init__(
        self,
        provider_factory: Callable[[], GenerationProvider] = create_provider,
        persist: bool = True,
    ):
        self.provider_factory = provider_factory
        self.persist = persist
        self.engines: dict[str, ConversationEngine] = {}
        self.locks: dict[str, asyncio.Lock] = {}

    def _build_engine(self, vignette: Vignette, difficulty: Difficulty) -> ConversationEngine:
        return ConversationEngine(
            vignette,
            difficulty,
            self.provider_factory(),
            history_window=settings.history_window,
            min_pattern_confidence=settings.min_pattern_confidence,
            default_max_messages=settings.default_max_messages,
            provider_timeout=settings.provider_timeout_secs,
        )

    def _save(self, session_id: str, engine: ConversationEngine) -> None:
        if self.persist:
            session_store.save_snapshot(session_id, engine.get_session_state())

    def start(self, vignette_id: str, difficulty: Difficulty) -> tuple[str, ConversationEngine]:
        vignette = get_vignette(vignette_id)
        if vignette is None:
            raise VignetteNotFoundError(vignette_id)
        engine = self._build_engine(vignette, difficulty)
        session_id = str(uuid.uuid4())
        self.engines[session_id] = engine
        self.locks[session_id] = asyncio.Lock()
        self._save(session_id, engine)
        logger.info(f"Session {session_id}: started {vignette_id} at {engine.difficulty.value}")
        return session_id, engine

    def get(self, session_id: str) -> ConversationEngine:
        """Live engine for a session, resuming it from the store if needed."""
        engine = self.engines.get(session_id)
        if engine is not None:
            return engine
        snapshot = None
        if self.persist and session_store.is_valid_session_id(session_id):
            snapshot = session_store.read_snapshot(session_id)
        if snapshot is None:
            raise SessionNotFoundError(session_id)
        return self.restore(session_id, snapshot)

    def lock(self, session_id: str) -> asyncio.Lock:
        return self.locks.setdefault(session_id, asyncio.Lock())

    def restore(self, session_id: str, snapshot: SessionSnapshot) -> ConversationEngine:
        if not session_store.is_valid_session_id(session_id):
            raise InvalidSessionIdError(session_id)
        vignette = get_vignette(snapshot.vignette_id)
        if vignette is None:
            raise VignetteNotFoundError(snapshot.vignette_id)
        try:
            difficulty = Difficulty(snapshot.difficulty)
        except ValueError as e:
            raise UnsupportedDifficultyError(snapshot.vignette_id, snapshot.difficulty) from e
        engine = self._build_engine(vignette, difficulty)
        engine.restore_session_state(snapshot)
        self.engines[session_id] = engine
        self.lock(session_id)
        self._save(session_id, engine)
        logger.info(f"Session {session_id}: restored at version {snapshot.version}")
        return engine

    async def restore_session(self, session_id: str, snapshot: SessionSnapshot) -> ConversationEngine:
        """Restore a snapshot, waiting out any turn already running on the session.

        No lock is created for a session that fails to restore.
        """
        lock = self.locks.get(session_id)
        if lock is None:
            return self.restore(session_id, snapshot)
        async with lock:
            return self.restore(session_id, snapshot)

    async def process(
        self,
        session_id: str,
        text: str,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> TurnResult:
        engine = self.get(session_id)
        async with self.lock(session_id):
            result = await engine.process_user_message(text, on_chunk=on_chunk)
            self._save(session_id, engine)
        return result

    def end(self, session_id: str) -> bool:
        existed = self.engines.pop(session_id, None) is not None
        self.locks.pop(session_id, None)
        if self.persist and session_store.is_valid_session_id(session_id):
            existed = session_store.delete_session(session_id) or existed
        if existed:
            logger.info(f"Session {session_id}: ended")
        return existed


registry = SessionRegistry()
