from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from interview_voice.config import Settings
from interview_voice.errors import FeatureDisabled, SynthesisProviderError
from interview_voice.schemas.voice import SynthesisConfig
from interview_voice.services.elevenlabs_gateway import (
    ElevenLabsGateway,
    build_voice_gateway,
)
from interview_voice.services.voice_gateway import FAKE_CLONED_VOICE_ID, FakeVoiceGateway


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _config(**overrides) -> SynthesisConfig:
    values = {
        "enabled": True,
        "model_id": "eleven_monolingual_v1",
        "default_voice_id": "default-voice",
        "max_chars_per_request": 20,
        "max_requests_per_message": 6,
    }
    values.update(overrides)
    return SynthesisConfig(**values)


def _gateway(handler, **overrides) -> ElevenLabsGateway:
    client = httpx.AsyncClient(
        base_url="https://api.elevenlabs.test",
        transport=httpx.MockTransport(handler),
    )
    return ElevenLabsGateway(api_key="secret", config=_config(**overrides), client=client)


@pytest.mark.anyio
async def test_stream_speech_posts_expected_request():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, content=b"mp3-bytes")

    gateway = _gateway(handler)
    chunks = [
        chunk
        async for chunk in gateway.stream_speech("Hello there.", "voice-1", 0.4, 0.9)
    ]

    assert b"".join(chunks) == b"mp3-bytes"
    request = captured[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/text-to-speech/voice-1/stream"
    assert request.headers["xi-api-key"] == "secret"
    assert json.loads(request.content) == {
        "text": "Hello there.",
        "model_id": "eleven_monolingual_v1",
        "voice_settings": {"stability": 0.4, "similarity_boost": 0.9},
    }


@pytest.mark.anyio
async def test_stream_speech_truncates_to_request_budget():
    captured: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(json.loads(request.content))
        return httpx.Response(200, content=b"audio")

    gateway = _gateway(handler)
    await gateway.generate_speech("x" * 50, "voice-1", 0.5, 0.75)

    assert captured[0]["text"] == "x" * 20


@pytest.mark.anyio
async def test_stream_speech_uses_default_voice_when_missing():
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, content=b"audio")

    await _gateway(handler).generate_speech("Hi.", "", 0.5, 0.75)

    assert paths == ["/v1/text-to-speech/default-voice/stream"]


@pytest.mark.anyio
async def test_blank_text_makes_no_request():
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover
        raise AssertionError("no request expected")

    assert await _gateway(handler).generate_speech("   ", "voice-1", 0.5, 0.75) == b""


@pytest.mark.anyio
async def test_api_error_is_wrapped_with_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="invalid api key")

    with pytest.raises(SynthesisProviderError) as excinfo:
        await _gateway(handler).generate_speech("Hi.", "voice-1", 0.5, 0.75)

    assert excinfo.value.provider_status == 401
    assert "invalid api key" in str(excinfo.value)


@pytest.mark.anyio
async def test_transport_error_is_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom", request=request)

    with pytest.raises(SynthesisProviderError) as excinfo:
        await _gateway(handler).generate_speech("Hi.", "voice-1", 0.5, 0.75)

    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)


@pytest.mark.anyio
async def test_disabled_gateway_refuses_requests():
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover
        raise AssertionError("no request expected")

    gateway = _gateway(handler, enabled=False)

    with pytest.raises(FeatureDisabled):
        await gateway.generate_speech("Hi.", "voice-1", 0.5, 0.75)
    with pytest.raises(FeatureDisabled):
        await gateway.list_voices()
    with pytest.raises(FeatureDisabled):
        await gateway.create_voice_from_sample("Mine", b"sample", "sample.mp3")


@pytest.mark.anyio
async def test_cancelled_stream_ends_quietly():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"audio")

    cancel_event = asyncio.Event()
    cancel_event.set()
    gateway = _gateway(handler)

    chunks = [
        chunk
        async for chunk in gateway.stream_speech("Hi.", "voice-1", 0.5, 0.75, cancel_event)
    ]

    assert chunks == []


@pytest.mark.anyio
async def test_list_voices_parses_payload():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/voices"
        return httpx.Response(
            200,
            json={
                "voices": [
                    {"voice_id": "v1", "name": "Rachel", "category": "premade"},
                    {"voice_id": "v2", "name": "Adam"},
                ]
            },
        )

    voices = await _gateway(handler).list_voices()

    assert [(v.voice_id, v.name, v.category) for v in voices] == [
        ("v1", "Rachel", "premade"),
        ("v2", "Adam", None),
    ]
    assert all(v.voice_type == "prebuilt" for v in voices)


@pytest.mark.anyio
async def test_create_voice_from_sample_sends_multipart():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"voice_id": "cloned-1"})

    result = await _gateway(handler).create_voice_from_sample(
        "My Voice", b"sample-bytes", "take1.wav"
    )

    assert result.voice_id == "cloned-1"
    assert result.voice_name == "My Voice"
    request = captured[0]
    assert request.url.path == "/v1/voices/add"
    assert request.headers["content-type"].startswith("multipart/form-data")
    body = request.content
    assert b'name="name"' in body
    assert b"My Voice" in body
    assert b'filename="take1.wav"' in body
    assert b"sample-bytes" in body


@pytest.mark.anyio
async def test_fake_gateway_is_deterministic():
    gateway = FakeVoiceGateway(_config())

    voices = await gateway.list_voices()
    clone = await gateway.create_voice_from_sample("Mine", b"sample", "sample.mp3")
    audio = await gateway.generate_speech("Hello.", "fake-voice-1", 0.5, 0.75)

    assert [v.voice_id for v in voices] == ["fake-voice-1", "fake-voice-2"]
    assert [v.name for v in voices] == ["Fake Voice One", "Fake Voice Two"]
    assert clone.voice_id == FAKE_CLONED_VOICE_ID
    assert clone.voice_name == "Mine"
    assert audio == b"fake-audio:Hello."


def test_build_voice_gateway_selects_fake_provider():
    settings = Settings(USE_FAKE_ELEVENLABS=True, ELEVENLABS_ENABLED=False)

    gateway = build_voice_gateway(settings)

    assert isinstance(gateway, FakeVoiceGateway)
    assert gateway.get_config().use_fake_provider is True
    assert gateway.get_config().enabled is False


@pytest.mark.anyio
async def test_build_voice_gateway_selects_http_adapter():
    settings = Settings(
        ELEVENLABS_ENABLED=True,
        ELEVENLABS_API_KEY="secret",
        ELEVENLABS_MAX_CHARS_PER_REQUEST=250,
    )

    gateway = build_voice_gateway(settings)
    try:
        assert isinstance(gateway, ElevenLabsGateway)
        assert gateway.get_config().max_chars_per_request == 250
        assert gateway.get_config().enabled is True
    finally:
        await gateway.aclose()
