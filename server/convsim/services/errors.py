"""Exception taxonomy for the conversation simulation core.

Configuration errors mean the vignette itself is broken and are never
retried. Provider errors mean the turn did not complete. Input errors are
raised before any session state is touched.
"""


class ConversationError(Exception):
    """Base class for every error raised by the simulation core."""


class ConfigurationError(ConversationError):
    """The vignette configuration is structurally wrong."""


class PhaseNotFoundError(ConfigurationError):
    def __init__(self, phase_id: str):
        super().__init__(f"Phase {phase_id} not found")
        self.phase_id = phase_id


class PhaseTransitionError(ConfigurationError):
    """A transition would move backwards (or nowhere) in the phase sequence."""


class DurationFormatError(ConfigurationError):
    def __init__(self, duration: str):
        super().__init__(f"Phase duration has no minute count: {duration!r}")
        self.duration = duration


class InvalidMessageError(ConversationError, ValueError):
    """Trainee message rejected before any state mutation."""


class ProviderError(ConversationError):
    """The generation provider failed; the turn is not complete."""


class ProviderTimeoutError(ProviderError):
    pass


class ProviderResponseError(ProviderError):
    """The provider answered, but not with usable text."""


class UnsupportedDifficultyError(ConfigurationError, ValueError):
    def __init__(self, vignette_id: str, difficulty: str):
        super().__init__(f"Vignette {vignette_id} does not offer difficulty {difficulty!r}")
        self.vignette_id = vignette_id
        self.difficulty = difficulty


class VignetteNotFoundError(ConfigurationError):
    def __init__(self, vignette_id: str):
        super().__init__(f"Vignette {vignette_id} not found")
        self.vignette_id = vignette_id


class SessionNotFoundError(ConversationError):
    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class InvalidSessionIdError(ConversationError, ValueError):
    def __init__(self, session_id: str):
        super().__init__(f"Invalid session id: {session_id!r}")
        self.session_id = session_id
