from __future__ import annotations

import asyncio
import hashlib

import pytest

from interview_voice.errors import CacheStorageError, FeatureDisabled, VoiceValidationError
from interview_voice.schemas.voice import SynthesisConfig
from interview_voice.services.object_store import LocalObjectStore, StoredObject
from interview_voice.services.tts.speech_cache import (
    SpeechCache,
    compute_fingerprint,
    object_key,
)
from interview_voice.services.voice_gateway import FakeVoiceGateway


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


@pytest.fixture
def gateway() -> FakeVoiceGateway:
    return FakeVoiceGateway(_config())


@pytest.fixture
def store(tmp_path) -> LocalObjectStore:
    return LocalObjectStore(tmp_path / "objects")


@pytest.fixture
def cache(store, gateway) -> SpeechCache:
    return SpeechCache(store, gateway)


class BrokenStore:
    async def exists(self, key):
        raise OSError("disk unavailable")

    async def put(self, key, data, *, content_type, metadata=None):
        raise OSError("disk unavailable")

    async def get(self, key):
        raise OSError("disk unavailable")


class LosingStore:
    """Store where another writer always got there first."""

    def __init__(self, winner: bytes):
        self.winner = winner
        self.saved = False

    async def exists(self, key):
        return self.saved

    async def put(self, key, data, *, content_type, metadata=None):
        self.saved = True
        return False

    async def get(self, key):
        if not self.saved:
            return None
        return StoredObject(data=self.winner, content_type="audio/mpeg")


def test_fingerprint_matches_documented_format():
    expected = hashlib.sha256(
        b"voice|model|0.50|0.75|mp3|hello there"
    ).hexdigest()

    assert compute_fingerprint("voice", "model", 0.5, 0.75, "  Hello There ") == expected


def test_fingerprint_ignores_case_and_outer_whitespace():
    first = compute_fingerprint("voice", "model", 0.5, 0.75, "Hello world.")
    second = compute_fingerprint("voice", "model", 0.5, 0.75, "  HELLO WORLD.\n")

    assert first == second
    assert len(first) == 64
    assert first == first.lower()


@pytest.mark.parametrize(
    "args",
    [
        ("other", "model", 0.5, 0.75, "hello"),
        ("voice", "other", 0.5, 0.75, "hello"),
        ("voice", "model", 0.6, 0.75, "hello"),
        ("voice", "model", 0.5, 0.8, "hello"),
        ("voice", "model", 0.5, 0.75, "goodbye"),
    ],
)
def test_fingerprint_changes_with_inputs(args):
    base = compute_fingerprint("voice", "model", 0.5, 0.75, "hello")

    assert compute_fingerprint(*args) != base


def test_fingerprint_rounds_half_up():
    assert compute_fingerprint("v", "m", 0.125, 0.75, "x") == compute_fingerprint(
        "v", "m", 0.13, 0.75, "x"
    )
    assert compute_fingerprint("v", "m", 0.504, 0.75, "x") == compute_fingerprint(
        "v", "m", 0.5, 0.75, "x"
    )


@pytest.mark.parametrize(
    "args",
    [
        ("", "model", 0.5, 0.75, "hello"),
        ("voice", " ", 0.5, 0.75, "hello"),
        ("voice", "model", 0.5, 0.75, "   "),
        ("voice", "model", -0.1, 0.75, "hello"),
        ("voice", "model", 0.5, 1.5, "hello"),
    ],
)
def test_fingerprint_rejects_malformed_inputs(args):
    with pytest.raises(VoiceValidationError):
        compute_fingerprint(*args)


@pytest.mark.anyio
async def test_get_or_generate_stores_on_miss(cache, store):
    fingerprint = compute_fingerprint("voice", "model", 0.5, 0.75, "hello")
    calls = 0

    async def generate() -> bytes:
        nonlocal calls
        calls += 1
        return b"audio-bytes"

    first = await cache.get_or_generate(fingerprint, generate, {"voiceId": "voice"})
    second = await cache.get_or_generate(fingerprint, generate)

    assert first == second == b"audio-bytes"
    assert calls == 1
    stored = await store.get(object_key(fingerprint))
    assert stored is not None
    assert stored.content_type == "audio/mpeg"
    assert stored.metadata == {"voiceId": "voice"}


@pytest.mark.anyio
async def test_concurrent_misses_generate_once(cache):
    fingerprint = compute_fingerprint("voice", "model", 0.5, 0.75, "race")
    calls = 0

    async def generate() -> bytes:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return b"generated"

    results = await asyncio.gather(
        *(cache.get_or_generate(fingerprint, generate) for _ in range(5))
    )

    assert results == [b"generated"] * 5
    assert calls == 1
    assert cache._flights == {}


@pytest.mark.anyio
async def test_empty_audio_is_returned_but_not_cached(cache):
    fingerprint = compute_fingerprint("voice", "model", 0.5, 0.75, "silence")

    async def generate() -> bytes:
        return b""

    assert await cache.get_or_generate(fingerprint, generate) == b""
    assert not await cache.exists(fingerprint)


@pytest.mark.anyio
async def test_losing_writer_returns_stored_winner(gateway):
    cache = SpeechCache(LosingStore(winner=b"winner"), gateway)
    fingerprint = compute_fingerprint("voice", "model", 0.5, 0.75, "hello")

    async def generate() -> bytes:
        return b"loser"

    assert await cache.get_or_generate(fingerprint, generate) == b"winner"


@pytest.mark.anyio
async def test_store_failures_are_wrapped(gateway):
    cache = SpeechCache(BrokenStore(), gateway)
    fingerprint = compute_fingerprint("voice", "model", 0.5, 0.75, "hello")

    with pytest.raises(CacheStorageError) as excinfo:
        await cache.get(fingerprint)
    assert isinstance(excinfo.value.__cause__, OSError)

    with pytest.raises(CacheStorageError):
        await cache.save(fingerprint, b"audio")

    with pytest.raises(CacheStorageError):
        await cache.exists(fingerprint)


@pytest.mark.anyio
async def test_get_or_generate_speech_uses_gateway_once(cache, gateway, store):
    audio = await cache.get_or_generate_speech("Hello there.", None, 0.5, 0.75)
    again = await cache.get_or_generate_speech("  hello THERE. ", None, 0.5, 0.75)

    assert audio == b"fake-audio:Hello there."
    assert again == audio
    assert gateway.generated == ["Hello there."]
    assert await cache.is_cached("Hello there.", "default-voice", 0.5, 0.75)
    assert not await cache.is_cached("Hello there.", "other-voice", 0.5, 0.75)

    fingerprint = compute_fingerprint(
        "default-voice", "eleven_monolingual_v1", 0.5, 0.75, "Hello there."
    )
    stored = await store.get(object_key(fingerprint))
    assert stored is not None
    assert stored.metadata["voiceId"] == "default-voice"
    assert stored.metadata["modelId"] == "eleven_monolingual_v1"
    assert stored.metadata["stability"] == "0.50"
    assert stored.metadata["similarityBoost"] == "0.75"
    assert stored.metadata["textLength"] == str(len("Hello there."))
    assert "generatedAt" in stored.metadata


@pytest.mark.anyio
async def test_get_or_generate_speech_requires_enabled(store):
    cache = SpeechCache(store, FakeVoiceGateway(_config(enabled=False)))

    with pytest.raises(FeatureDisabled):
        await cache.get_or_generate_speech("Hello.", "voice", 0.5, 0.75)
