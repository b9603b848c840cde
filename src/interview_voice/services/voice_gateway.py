"""Voice synthesis gateway interface and the offline fake provider."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Protocol

from ..schemas.voice import SynthesisConfig, VoiceCloneResult, VoiceInfo

logger = logging.getLogger(__name__)

FAKE_CLONED_VOICE_ID = "fake-cloned-voice-id"


class VoiceSynthesisGateway(Protocol):
    """Operations the orchestration core needs from a synthesis provider."""

    async def generate_speech(
        self,
        text: str,
        voice_id: str,
        stability: float,
        similarity_boost: float,
    ) -> bytes: ...

    def stream_speech(
        self,
        text: str,
        voice_id: str,
        stability: float,
        similarity_boost: float,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[bytes]: ...

    async def list_voices(self) -> list[VoiceInfo]: ...

    async def create_voice_from_sample(
        self,
        name: str,
        data: bytes,
        filename: str,
    ) -> VoiceCloneResult: ...

    def get_config(self) -> SynthesisConfig: ...

    async def aclose(self) -> None: ...


class FakeVoiceGateway:
    """In-process provider used for local development and tests.

    Audio is a deterministic placeholder derived from the input text so that
    callers can tell chunks apart and assert on ordering.
    """

    def __init__(self, config: SynthesisConfig):
        self._config = config
        self.generated: list[str] = []
        self.cloned: list[str] = []

    def get_config(self) -> SynthesisConfig:
        return self._config

    async def generate_speech(
        self,
        text: str,
        voice_id: str,
        stability: float,
        similarity_boost: float,
    ) -> bytes:
        text = text[: self._config.max_chars_per_request]
        self.generated.append(text)
        logger.debug(f"Fake synthesis for voice {voice_id}: {text[:50]}")
        return f"fake-audio:{text}".encode("utf-8")

    async def stream_speech(
        self,
        text: str,
        voice_id: str,
        stability: float,
        similarity_boost: float,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[bytes]:
        if cancel_event is not None and cancel_event.is_set():
            return
        yield await self.generate_speech(text, voice_id, stability, similarity_boost)

    async def list_voices(self) -> list[VoiceInfo]:
        return [
            VoiceInfo(voice_id="fake-voice-1", name="Fake Voice One", category="premade"),
            VoiceInfo(voice_id="fake-voice-2", name="Fake Voice Two", category="premade"),
        ]

    async def create_voice_from_sample(
        self,
        name: str,
        data: bytes,
        filename: str,
    ) -> VoiceCloneResult:
        self.cloned.append(name)
        logger.info(f"Fake voice clone created for '{name}' ({len(data)} bytes)")
        return VoiceCloneResult(voice_id=FAKE_CLONED_VOICE_ID, voice_name=name)

    async def aclose(self) -> None:
        return None


__all__ = ["FAKE_CLONED_VOICE_ID", "FakeVoiceGateway", "VoiceSynthesisGateway"]
