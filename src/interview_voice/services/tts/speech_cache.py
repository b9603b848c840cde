"""
Content-addressed cache of synthesized speech.

Audio is stored in the object store under ``audio/{fingerprint}.mp3`` where
the fingerprint is a SHA-256 over every input that changes the rendered
audio: voice, model, prosody, output format and normalized text. Objects are
created once and never modified.

Concurrent requests for the same fingerprint share one generation inside
the process, and writes use the store's insert-if-absent primitive so that
separate processes racing on a miss converge on a single stored object.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import AsyncIterator, Awaitable, Callable

from ...errors import CacheStorageError, FeatureDisabled, VoiceValidationError
from ..object_store import ObjectStore
from ..voice_gateway import VoiceSynthesisGateway

logger = logging.getLogger(__name__)

AUDIO_CONTENT_TYPE = "audio/mpeg"
DEFAULT_OUTPUT_FORMAT = "mp3"

_TWO_PLACES = Decimal("0.01")


def _format_prosody(name: str, value: float) -> str:
    if value < 0 or value > 1:
        raise VoiceValidationError(f"{name} must be between 0 and 1, got {value}")
    # str() first so 0.125 rounds to 0.13 rather than through its binary form
    return str(Decimal(str(value)).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP))


def normalize_text(text: str) -> str:
    return text.strip().lower()


def compute_fingerprint(
    voice_id: str,
    model_id: str,
    stability: float,
    similarity_boost: float,
    text: str,
    output_format: str = DEFAULT_OUTPUT_FORMAT,
) -> str:
    """Return the lowercase hex SHA-256 identifying one rendering of ``text``."""

    if not voice_id or not voice_id.strip():
        raise VoiceValidationError("voice_id is required")
    if not model_id or not model_id.strip():
        raise VoiceValidationError("model_id is required")
    if not text or not text.strip():
        raise VoiceValidationError("text is required")

    raw = "|".join(
        (
            voice_id,
            model_id,
            _format_prosody("stability", stability),
            _format_prosody("similarity_boost", similarity_boost),
            output_format,
            normalize_text(text),
        )
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def object_key(fingerprint: str) -> str:
    return f"audio/{fingerprint}.{DEFAULT_OUTPUT_FORMAT}"


@dataclass
class _Flight:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: int = 0


class SpeechCache:
    """Get-or-generate access to cached audio backed by an object store."""

    def __init__(self, store: ObjectStore, gateway: VoiceSynthesisGateway):
        self._store = store
        self._gateway = gateway
        self._flights: dict[str, _Flight] = {}

    fingerprint = staticmethod(compute_fingerprint)

    async def exists(self, fingerprint: str) -> bool:
        try:
            return await self._store.exists(object_key(fingerprint))
        except Exception as exc:
            raise CacheStorageError(
                f"Failed to check cached audio {fingerprint}: {exc}", cause=exc
            ) from exc

    async def get(self, fingerprint: str) -> bytes | None:
        try:
            stored = await self._store.get(object_key(fingerprint))
        except Exception as exc:
            raise CacheStorageError(
                f"Failed to read cached audio {fingerprint}: {exc}", cause=exc
            ) from exc
        return stored.data if stored is not None else None

    async def save(
        self,
        fingerprint: str,
        audio: bytes,
        metadata: dict[str, str] | None = None,
    ) -> bool:
        """Store ``audio`` unless an object already exists. Returns True if created."""

        try:
            return await self._store.put(
                object_key(fingerprint),
                audio,
                content_type=AUDIO_CONTENT_TYPE,
                metadata=metadata,
            )
        except Exception as exc:
            raise CacheStorageError(
                f"Failed to save cached audio {fingerprint}: {exc}", cause=exc
            ) from exc

    @asynccontextmanager
    async def _single_flight(self, fingerprint: str) -> AsyncIterator[None]:
        flight = self._flights.get(fingerprint)
        if flight is None:
            flight = self._flights[fingerprint] = _Flight()
        flight.waiters += 1
        try:
            async with flight.lock:
                yield
        finally:
            flight.waiters -= 1
            if flight.waiters == 0:
                self._flights.pop(fingerprint, None)

    async def get_or_generate(
        self,
        fingerprint: str,
        generate_fn: Callable[[], Awaitable[bytes]],
        metadata: dict[str, str] | None = None,
    ) -> bytes:
        """
        Return cached audio, generating and storing it on a miss.

        Empty audio from ``generate_fn`` is returned to the caller but not
        stored. If another writer stored the object first, its bytes win.
        """
        cached = await self.get(fingerprint)
        if cached is not None:
            return cached

        async with self._single_flight(fingerprint):
            cached = await self.get(fingerprint)
            if cached is not None:
                return cached

            audio = await generate_fn()
            if not audio:
                logger.warning(f"Generated empty audio for {fingerprint}; not caching")
                return audio

            if await self.save(fingerprint, audio, metadata):
                logger.info(f"Cached {len(audio)} bytes of audio as {fingerprint}")
                return audio

            winner = await self.get(fingerprint)
            return winner if winner is not None else audio

    def _resolve(
        self,
        text: str,
        voice_id: str | None,
        stability: float,
        similarity_boost: float,
    ) -> tuple[str, str]:
        config = self._gateway.get_config()
        effective_voice_id = voice_id or config.default_voice_id
        fingerprint = compute_fingerprint(
            effective_voice_id,
            config.model_id,
            stability,
            similarity_boost,
            text,
        )
        return fingerprint, effective_voice_id

    async def get_or_generate_speech(
        self,
        text: str,
        voice_id: str | None,
        stability: float,
        similarity_boost: float,
    ) -> bytes:
        """Return the complete audio for ``text``, synthesizing on a cache miss."""

        config = self._gateway.get_config()
        if not config.enabled:
            raise FeatureDisabled()

        fingerprint, effective_voice_id = self._resolve(
            text, voice_id, stability, similarity_boost
        )
        metadata = {
            "voiceId": effective_voice_id,
            "modelId": config.model_id,
            "stability": _format_prosody("stability", stability),
            "similarityBoost": _format_prosody("similarity_boost", similarity_boost),
            "textLength": str(len(text)),
            "generatedAt": datetime.now(timezone.utc).isoformat(),
        }

        async def _generate() -> bytes:
            return await self._gateway.generate_speech(
                text, effective_voice_id, stability, similarity_boost
            )

        return await self.get_or_generate(fingerprint, _generate, metadata)

    async def is_cached(
        self,
        text: str,
        voice_id: str | None,
        stability: float,
        similarity_boost: float,
    ) -> bool:
        fingerprint, _ = self._resolve(text, voice_id, stability, similarity_boost)
        return await self.exists(fingerprint)


__all__ = [
    "AUDIO_CONTENT_TYPE",
    "SpeechCache",
    "compute_fingerprint",
    "normalize_text",
    "object_key",
]
