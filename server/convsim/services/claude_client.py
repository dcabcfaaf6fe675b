import logging
from typing import Sequence

from anthropic import AsyncAnthropic

from convsim.services.errors import ProviderError, ProviderResponseError
from convsim.services.generation_provider import (
    GenerationProvider,
    ProviderResponse,
    estimate_emotional_impact,
)
from convsim.services.prompt_builder import ConversationContext
from convsim.services.session_context import Message, Sender

logger = logging.getLogger(__name__)


def to_claude_messages(history: Sequence[Message], message: str, window: int = 10) -> list[dict]:
    """Recent turns as Claude chat messages, ending with the trainee's new message."""
    messages = [
        {"role": "user" if m.sender == Sender.USER else "assistant", "content": m.text}
        for m in history[-window:]
    ]
    # Claude conversations must open with a user turn
    while messages and messages[0]["role"] != "user":
        messages.pop(0)
    messages.append({"role": "user", "content": message})
    return messages


class ClaudeProvider(GenerationProvider):
    """Character replies from the Anthropic Claude API."""

    name = "claude"

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        temperature: float = 0.7,
        max_tokens: int = 500,
    ):
        self.client = AsyncAnthropic(api_key=api_key)
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def get_response(
        self,
        message: str,
        context: ConversationContext,
        history: Sequence[Message],
    ) -> ProviderResponse:
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=context.system_prompt,
                messages=to_claude_messages(history, message),
            )
        except Exception as e:
            raise ProviderError(f"Claude API error: {e}") from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        ).strip()
        logger.info(f"Claude response: stop_reason={response.stop_reason}, len={len(text)}")
        if not text:
            raise ProviderResponseError("Claude returned no text content")
        return ProviderResponse(text=text, emotion_delta=estimate_emotional_impact(text, context.triggers))
