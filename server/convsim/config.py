from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Generation provider: "gemini", "claude", or "canned" (offline, no API key)
    llm_provider: str = "gemini"

    # Gemini API
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"

    # Anthropic API
    anthropic_api_key: str = ""
    claude_model: str = "claude-sonnet-4-20250514"

    # Sampling for avatar replies
    temperature: float = 0.7
    max_output_tokens: int = 500

    # Seconds before a provider call is abandoned and the turn rolled back
    provider_timeout_secs: float = 30.0

    # Conversation pipeline tuning
    history_window: int = 10
    min_pattern_confidence: float = 0.5
    default_max_messages: int = 5

    # Local file storage for session snapshots
    storage_dir: str = "./data"

    # Directory of vignette JSON files (empty = bundled vignettes)
    vignettes_dir: str = ""

    # App
    cors_origins: list[str] = ["http://localhost:3000"]
    debug: bool = True

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
