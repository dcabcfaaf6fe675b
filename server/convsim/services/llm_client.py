import logging
from collections.abc import AsyncGenerator
from typing import Sequence

from google import genai
from google.genai import types

from convsim.services.errors import ProviderError, ProviderResponseError
from convsim.services.generation_provider import (
    GenerationProvider,
    ProviderResponse,
    estimate_emotional_impact,
    extract_first_sentence,
)
from convsim.services.prompt_builder import ConversationContext
from convsim.services.session_context import Message

logger = logging.getLogger(__name__)


class GeminiProvider(GenerationProvider):
    """Character replies from the Google Gemini API."""

    name = "gemini"
    supports_streaming = True

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash",
        temperature: float = 0.7,
        max_output_tokens: int = 500,
    ):
        self.client = genai.Client(api_key=api_key)
        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    def _config(self, context: ConversationContext) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            system_instruction=context.system_prompt,
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
        )

    async def get_response(
        self,
        message: str,
        context: ConversationContext,
        history: Sequence[Message],
    ) -> ProviderResponse:
        # History is already folded into the system prompt
        try:
            response = await self.client.aio.models.generate_content(
                model=self.model,
                contents=context.user_prompt,
                config=self._config(context),
            )
        except Exception as e:
            raise ProviderError(f"Gemini API error: {e}") from e

        text = (response.text or "").strip()
        finish = getattr(
            response.candidates[0], "finish_reason", None
        ) if response.candidates else None
        logger.info(
            f"Gemini response: finish_reason={finish}, "
            f"len={len(text)}, text='{text[:200]}'"
        )
        if not text:
            raise ProviderResponseError(f"Gemini returned no text (finish_reason={finish})")
        return ProviderResponse(text=text, emotion_delta=estimate_emotional_impact(text, context.triggers))

    async def stream_response(
        self,
        message: str,
        context: ConversationContext,
        history: Sequence[Message],
    ) -> AsyncGenerator[str, None]:
        """Stream the reply, yielding each sentence as it completes."""
        buffer = ""
        try:
            stream = await self.client.aio.models.generate_content_stream(
                model=self.model,
                contents=context.user_prompt,
                config=self._config(context),
            )
            async for chunk in stream:
                buffer += chunk.text or ""
                while True:
                    sentence = extract_first_sentence(buffer)
                    if not sentence:
                        break
                    yield sentence
                    buffer = buffer[len(sentence) :].lstrip()
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Gemini streaming error: {e}") from e

        if buffer.strip():
            yield buffer.strip()
