from datetime import timedelta
from types import SimpleNamespace

import pytest

from convsim.config import Settings
from convsim.schemas.vignette import Difficulty
from convsim.services.claude_client import ClaudeProvider, to_claude_messages
from convsim.services.errors import ConfigurationError, ProviderError, ProviderResponseError
from convsim.services.generation_provider import (
    CannedProvider,
    estimate_emotional_impact,
    extract_first_sentence,
    split_sentences,
)
from convsim.services.llm_client import GeminiProvider
from convsim.services.prompt_builder import build_context
from convsim.services.session_context import EmotionalState, Message, PhaseState, Sender, SessionSnapshot
from convsim.services.session_registry import create_provider

from conftest import START


def _message(i, sender):
    return Message(
        id=f"m{i}",
        text=f"text {i}",
        sender=sender,
        timestamp=START + timedelta(seconds=i),
        phase_id="opening",
    )


@pytest.fixture
def context(vignette):
    snapshot = SessionSnapshot(
        vignette_id=vignette.id,
        difficulty="intermediate",
        phase_state=PhaseState(phase_id="opening", phase_start_time=START),
        emotional_state=EmotionalState(value=0.5, threshold="upset"),
        started_at=START,
        last_updated=START,
    )
    return build_context(vignette, Difficulty.INTERMEDIATE, snapshot, "Hello.", [])


def test_split_sentences_keeps_abbreviations():
    text = "Dr. Smith told me nothing. Why won't anyone tell me what happened? I need answers!"
    assert split_sentences(text) == [
        "Dr. Smith told me nothing.",
        "Why won't anyone tell me what happened?",
        "I need answers!",
    ]


def test_split_sentences_merges_short_fragments():
    assert split_sentences("He was fine this morning. No. Fine.") == ["He was fine this morning. No. Fine."]
    assert split_sentences("   ") == []


def test_extract_first_sentence():
    assert extract_first_sentence("Where is my husband? And") == "Where is my husband?"
    assert extract_first_sentence("Still talking") is None


@pytest.mark.parametrize(
    "text, triggers, expected",
    [
        ("I'm furious about this.", (), 0.3),
        ("I'm so upset.", (), 0.15),
        ("Thank you for telling me.", (), -0.1),
        ("I'm upset, but thank you.", (), 0.05),
        ("My lawyer will hear about the lawsuit.", ("lawsuit",), 0.3),
        ("Okay.", (), 0.0),
    ],
)
def test_estimate_emotional_impact(text, triggers, expected):
    assert estimate_emotional_impact(text, triggers) == pytest.approx(expected)


@pytest.mark.asyncio
async def test_canned_provider_cycles_key_phrases(context):
    provider = CannedProvider()
    first = await provider.get_response("Hello.", context, [])
    assert first.text == "What happened to him?"
    history = [_message(0, Sender.USER), _message(1, Sender.AVATAR)]
    second = await provider.get_response("Hello.", context, history)
    assert second.text == "I want answers."


@pytest.mark.asyncio
async def test_default_stream_splits_full_reply(context):
    provider = CannedProvider()
    chunks = [chunk async for chunk in provider.stream_response("Hello.", context, [])]
    assert chunks == ["What happened to him?"]


def test_to_claude_messages_starts_with_user_turn():
    history = [_message(0, Sender.AVATAR), _message(1, Sender.USER), _message(2, Sender.AVATAR)]
    messages = to_claude_messages(history, "Are you okay?")
    assert [m["role"] for m in messages] == ["user", "assistant", "user"]
    assert messages[-1]["content"] == "Are you okay?"


def test_to_claude_messages_window():
    history = [_message(i, Sender.USER if i % 2 == 0 else Sender.AVATAR) for i in range(20)]
    messages = to_claude_messages(history, "Next.", window=3)
    # The window opens on an assistant turn, which is dropped
    assert [m["content"] for m in messages] == ["text 18", "text 19", "Next."]


class _FakeAnthropicMessages:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error
        return self.response


@pytest.mark.asyncio
async def test_claude_provider_joins_text_blocks(context):
    provider = ClaudeProvider(api_key="test-key")
    fake = _FakeAnthropicMessages(
        SimpleNamespace(
            content=[SimpleNamespace(type="text", text="Who did this? "), SimpleNamespace(type="text", text="Tell me.")],
            stop_reason="end_turn",
        )
    )
    provider.client = SimpleNamespace(messages=fake)
    response = await provider.get_response("Hello.", context, [])
    assert response.text == "Who did this? Tell me."
    assert fake.kwargs["system"] == context.system_prompt
    assert fake.kwargs["messages"] == [{"role": "user", "content": "Hello."}]


@pytest.mark.asyncio
async def test_claude_provider_wraps_api_errors(context):
    provider = ClaudeProvider(api_key="test-key")
    provider.client = SimpleNamespace(messages=_FakeAnthropicMessages(error=RuntimeError("overloaded")))
    with pytest.raises(ProviderError):
        await provider.get_response("Hello.", context, [])


@pytest.mark.asyncio
async def test_claude_provider_rejects_empty_reply(context):
    provider = ClaudeProvider(api_key="test-key")
    provider.client = SimpleNamespace(
        messages=_FakeAnthropicMessages(SimpleNamespace(content=[], stop_reason="max_tokens"))
    )
    with pytest.raises(ProviderResponseError):
        await provider.get_response("Hello.", context, [])


class _FakeGeminiModels:
    def __init__(self, text=None, chunks=()):
        self.text = text
        self.chunks = chunks
        self.kwargs = None

    async def generate_content(self, **kwargs):
        self.kwargs = kwargs
        return SimpleNamespace(text=self.text, candidates=[SimpleNamespace(finish_reason="STOP")])

    async def generate_content_stream(self, **kwargs):
        self.kwargs = kwargs

        async def stream():
            for chunk in self.chunks:
                yield SimpleNamespace(text=chunk)

        return stream()


@pytest.mark.asyncio
async def test_gemini_provider_sends_system_prompt(context):
    provider = GeminiProvider(api_key="test-key")
    models = _FakeGeminiModels(text="I'm frustrated. What happened?")
    provider.client = SimpleNamespace(aio=SimpleNamespace(models=models))
    response = await provider.get_response("Hello.", context, [])
    assert response.text == "I'm frustrated. What happened?"
    assert response.emotion_delta == pytest.approx(0.15)
    assert models.kwargs["contents"] == context.user_prompt
    assert models.kwargs["config"].system_instruction == context.system_prompt


@pytest.mark.asyncio
async def test_gemini_provider_rejects_empty_reply(context):
    provider = GeminiProvider(api_key="test-key")
    provider.client = SimpleNamespace(aio=SimpleNamespace(models=_FakeGeminiModels(text="")))
    with pytest.raises(ProviderResponseError):
        await provider.get_response("Hello.", context, [])


@pytest.mark.asyncio
async def test_gemini_stream_yields_complete_sentences(context):
    provider = GeminiProvider(api_key="test-key")
    models = _FakeGeminiModels(chunks=["Where is he? I want to ", "see him right now. And", " then"])
    provider.client = SimpleNamespace(aio=SimpleNamespace(models=models))
    chunks = [chunk async for chunk in provider.stream_response("Hello.", context, [])]
    assert chunks == ["Where is he?", "I want to see him right now.", "And then"]


def test_create_provider_by_name():
    assert isinstance(create_provider(Settings(llm_provider="canned")), CannedProvider)
    assert isinstance(create_provider(Settings(llm_provider="Claude", anthropic_api_key="k")), ClaudeProvider)
    assert isinstance(create_provider(Settings(llm_provider="gemini", gemini_api_key="k")), GeminiProvider)
    with pytest.raises(ConfigurationError):
        create_provider(Settings(llm_provider="unknown"))
