from __future__ import annotations

import asyncio

import pytest

from interview_voice.errors import FeatureDisabled, NotFound, SynthesisProviderError
from interview_voice.repository import VoiceRepository
from interview_voice.schemas.voice import Persona, PersonaVoiceBinding, SynthesisConfig
from interview_voice.services.conversation import ConversationOrchestrator
from interview_voice.services.object_store import LocalObjectStore
from interview_voice.services.text_generation import build_system_prompt
from interview_voice.services.tts.speech_cache import SpeechCache
from interview_voice.services.voice_gateway import FakeVoiceGateway

FIVE_SENTENCES = "One is first. Two is next. Three follows. Four is near. Five ends."


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _config(**overrides) -> SynthesisConfig:
    values = {
        "enabled": True,
        "model_id": "eleven_monolingual_v1",
        "default_voice_id": "default-voice",
        "max_chars_per_request": 500,
        "max_requests_per_message": 6,
    }
    values.update(overrides)
    return SynthesisConfig(**values)


class StreamingGateway(FakeVoiceGateway):
    """Fake gateway that records every stream request and yields two sub-chunks."""

    def __init__(self, config: SynthesisConfig, *, fail_on: int | None = None):
        super().__init__(config)
        self.requests: list[tuple[str, str, float, float]] = []
        self.fail_on = fail_on

    async def stream_speech(
        self, text, voice_id, stability, similarity_boost, cancel_event=None
    ):
        self.requests.append((text, voice_id, stability, similarity_boost))
        if self.fail_on is not None and len(self.requests) == self.fail_on:
            raise SynthesisProviderError("provider unavailable")
        for part in ("a", "b"):
            if cancel_event is not None and cancel_event.is_set():
                return
            await asyncio.sleep(0)
            yield f"{text}|{part}".encode()


class StaticTextGenerator:
    def __init__(self, text: str):
        self.text = text
        self.calls: list[tuple[str, str]] = []

    async def generate_response(self, persona: Persona, user_message: str) -> str:
        self.calls.append((persona.persona_id, user_message))
        return self.text


@pytest.fixture
async def repository(tmp_path):
    repo = VoiceRepository(tmp_path / "voice.db")
    await repo.initialize()
    await repo.upsert_persona(
        Persona(
            persona_id="persona-1",
            display_name="Ada",
            voice=PersonaVoiceBinding(voice_id="ada-voice"),
            voice_stability=0.3,
            voice_similarity_boost=0.6,
        )
    )
    await repo.upsert_persona(Persona(persona_id="persona-2", display_name="Grace"))
    try:
        yield repo
    finally:
        await repo.close()


def _orchestrator(repository, gateway, tmp_path, text=FIVE_SENTENCES):
    cache = SpeechCache(LocalObjectStore(tmp_path / "objects"), gateway)
    return ConversationOrchestrator(repository, gateway, cache, StaticTextGenerator(text))


async def _collect(stream) -> list[bytes]:
    return [chunk async for chunk in stream]


@pytest.mark.anyio
async def test_request_cap_stops_after_first_chunks(repository, tmp_path):
    gateway = StreamingGateway(_config(max_requests_per_message=2))
    orchestrator = _orchestrator(repository, gateway, tmp_path)

    audio = await _collect(await orchestrator.stream_turn("persona-1", "Hi"))

    assert [request[0] for request in gateway.requests] == ["One is first.", "Two is next."]
    assert audio == [
        b"One is first.|a",
        b"One is first.|b",
        b"Two is next.|a",
        b"Two is next.|b",
    ]


@pytest.mark.anyio
async def test_turn_uses_persona_voice_and_prosody(repository, tmp_path):
    gateway = StreamingGateway(_config())
    orchestrator = _orchestrator(repository, gateway, tmp_path, text="Hello there.")

    await _collect(await orchestrator.stream_turn("persona-1", "Hi"))

    assert gateway.requests == [("Hello there.", "ada-voice", 0.3, 0.6)]
    assert orchestrator.text_generator.calls == [("persona-1", "Hi")]


@pytest.mark.anyio
async def test_turn_falls_back_to_default_voice(repository, tmp_path):
    gateway = StreamingGateway(_config())
    orchestrator = _orchestrator(repository, gateway, tmp_path, text="Hello there.")

    await _collect(await orchestrator.stream_turn("persona-2", "Hi"))

    assert gateway.requests == [("Hello there.", "default-voice", 0.5, 0.75)]


@pytest.mark.anyio
async def test_long_response_chunks_respect_request_budget(repository, tmp_path):
    gateway = StreamingGateway(_config(max_chars_per_request=20, max_requests_per_message=50))
    text = "This response sentence is considerably longer than twenty characters."
    orchestrator = _orchestrator(repository, gateway, tmp_path, text=text)

    await _collect(await orchestrator.stream_turn("persona-1", "Hi"))

    sent = [request[0] for request in gateway.requests]
    assert all(len(chunk) <= 20 for chunk in sent)
    assert "".join(sent) == text


@pytest.mark.anyio
async def test_cancellation_between_chunks_stops_synthesis(repository, tmp_path):
    gateway = StreamingGateway(_config())
    orchestrator = _orchestrator(repository, gateway, tmp_path)
    cancel_event = asyncio.Event()

    received: list[bytes] = []
    stream = await orchestrator.stream_turn("persona-1", "Hi", cancel_event)
    async for chunk in stream:
        received.append(chunk)
        if chunk.endswith(b"|b"):
            cancel_event.set()

    assert len(gateway.requests) == 1
    assert received == [b"One is first.|a", b"One is first.|b"]


@pytest.mark.anyio
async def test_cancellation_mid_chunk_stops_sub_chunks(repository, tmp_path):
    gateway = StreamingGateway(_config())
    orchestrator = _orchestrator(repository, gateway, tmp_path)
    cancel_event = asyncio.Event()

    received: list[bytes] = []
    stream = await orchestrator.stream_turn("persona-1", "Hi", cancel_event)
    async for chunk in stream:
        received.append(chunk)
        cancel_event.set()

    assert received == [b"One is first.|a"]
    assert len(gateway.requests) == 1


@pytest.mark.anyio
async def test_synthesis_error_aborts_turn(repository, tmp_path):
    gateway = StreamingGateway(_config(), fail_on=2)
    orchestrator = _orchestrator(repository, gateway, tmp_path)

    received: list[bytes] = []
    stream = await orchestrator.stream_turn("persona-1", "Hi")
    with pytest.raises(SynthesisProviderError):
        async for chunk in stream:
            received.append(chunk)

    assert received == [b"One is first.|a", b"One is first.|b"]
    assert len(gateway.requests) == 2


@pytest.mark.anyio
async def test_disabled_voice_fails_before_generation(repository, tmp_path):
    gateway = StreamingGateway(_config(enabled=False))
    orchestrator = _orchestrator(repository, gateway, tmp_path)

    assert not orchestrator.is_voice_enabled()
    with pytest.raises(FeatureDisabled):
        await orchestrator.stream_turn("persona-1", "Hi")
    assert orchestrator.text_generator.calls == []
    with pytest.raises(FeatureDisabled):
        await orchestrator.get_message_audio("persona-1", "Hello.")


@pytest.mark.anyio
async def test_missing_text_generator_is_feature_disabled(repository, tmp_path):
    gateway = StreamingGateway(_config())
    cache = SpeechCache(LocalObjectStore(tmp_path / "objects"), gateway)
    orchestrator = ConversationOrchestrator(repository, gateway, cache)

    with pytest.raises(FeatureDisabled):
        await orchestrator.stream_turn("persona-1", "Hi")


@pytest.mark.anyio
async def test_unknown_persona(repository, tmp_path):
    orchestrator = _orchestrator(repository, StreamingGateway(_config()), tmp_path)

    with pytest.raises(NotFound):
        await orchestrator.stream_turn("missing", "Hi")
    with pytest.raises(NotFound):
        await orchestrator.get_message_audio("missing", "Hello.")


@pytest.mark.anyio
async def test_blank_response_streams_nothing(repository, tmp_path):
    gateway = StreamingGateway(_config())
    orchestrator = _orchestrator(repository, gateway, tmp_path, text="   ")

    assert await _collect(await orchestrator.stream_turn("persona-1", "Hi")) == []
    assert gateway.requests == []


@pytest.mark.anyio
async def test_message_audio_is_cached(repository, tmp_path):
    gateway = StreamingGateway(_config())
    orchestrator = _orchestrator(repository, gateway, tmp_path)

    first = await orchestrator.get_message_audio("persona-1", "Hello again.")
    second = await orchestrator.get_message_audio("persona-1", "hello again.")

    assert first == second == b"fake-audio:Hello again."
    assert gateway.generated == ["Hello again."]
    assert await orchestrator.speech_cache.is_cached("Hello again.", "ada-voice", 0.3, 0.6)


def test_system_prompt_names_persona():
    prompt = build_system_prompt(Persona(persona_id="p", display_name="Ada"))

    assert prompt.startswith("You are Ada.")
    assert "voice interaction" in prompt
