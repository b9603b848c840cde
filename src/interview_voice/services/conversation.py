"""
Conversation Orchestrator for Voiced Persona Turns.

This module turns one user message into a stream of persona audio: the
persona's reply is generated in full, split into sentence-sized chunks, and
each chunk is synthesized and forwarded in order.

Architecture:
    user message → TextGenerator → SentenceSplitter → gateway.stream_speech() → audio bytes

Chunks are synthesized strictly one after another:
- Audio for chunk N is fully forwarded before chunk N+1 is requested
- At most ``max_requests_per_message`` synthesis requests are made per turn;
  text beyond the cap is silently dropped
- The cancel event is checked before every chunk (and by the gateway between
  audio sub-chunks) so a barge-in stops the turn at the next suspension point
- Any synthesis error aborts the remainder of the turn

Usage:
    orchestrator = ConversationOrchestrator(repository, gateway, cache, generator)

    audio = await orchestrator.stream_turn(persona_id, "Tell me about yourself")
    async for chunk in audio:
        await send(chunk)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Protocol

from ..errors import FeatureDisabled, NotFound
from ..repository import VoiceRepository
from ..schemas.voice import Persona
from .tts.sentence_splitter import SentenceSplitter
from .tts.speech_cache import SpeechCache
from .voice_gateway import VoiceSynthesisGateway

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    async def generate_response(self, persona: Persona, user_message: str) -> str: ...


class ConversationOrchestrator:
    """
    Drive voiced persona turns and message audio replay.

    Attributes:
        repository: Persona lookup
        gateway: Voice synthesis provider
        speech_cache: Cache used for replaying already generated messages
        text_generator: Produces the persona's reply; turns are unavailable without it
    """

    def __init__(
        self,
        repository: VoiceRepository,
        gateway: VoiceSynthesisGateway,
        speech_cache: SpeechCache,
        text_generator: TextGenerator | None = None,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.speech_cache = speech_cache
        self.text_generator = text_generator

    def is_voice_enabled(self) -> bool:
        return self.gateway.get_config().enabled

    def _ensure_enabled(self) -> None:
        if not self.is_voice_enabled():
            raise FeatureDisabled()

    async def _get_persona(self, persona_id: str) -> Persona:
        persona = await self.repository.get_persona(persona_id)
        if persona is None:
            raise NotFound(f"Persona with ID {persona_id} not found.")
        return persona

    def _voice_for(self, persona: Persona) -> str:
        return persona.voice.voice_id or self.gateway.get_config().default_voice_id

    async def stream_turn(
        self,
        persona_id: str,
        user_message: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[bytes]:
        """
        Generate the persona's reply to ``user_message`` and return its audio stream.

        Preconditions, the persona lookup and text generation complete before
        this returns, so their errors surface here rather than mid-stream.
        """
        self._ensure_enabled()
        if self.text_generator is None:
            raise FeatureDisabled("Text generation is not configured")

        persona = await self._get_persona(persona_id)

        start_time = time.monotonic()
        response_text = await self.text_generator.generate_response(persona, user_message)
        elapsed = (time.monotonic() - start_time) * 1000
        logger.info(
            f"Generated {len(response_text)} chars for persona {persona_id} in {elapsed:.0f}ms"
        )

        return self.stream_text(
            response_text,
            self._voice_for(persona),
            persona.voice_stability,
            persona.voice_similarity_boost,
            cancel_event,
        )

    async def stream_text(
        self,
        text: str,
        voice_id: str,
        stability: float,
        similarity_boost: float,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[bytes]:
        """
        Synthesize ``text`` chunk by chunk and yield audio in order.

        Args:
            text: One complete block of response text
            voice_id: Voice to synthesize with
            stability: Prosody stability (0.0-1.0)
            similarity_boost: Prosody similarity boost (0.0-1.0)
            cancel_event: Set to stop before the next chunk or sub-chunk

        Yields:
            Audio bytes as they arrive from the provider
        """
        self._ensure_enabled()
        config = self.gateway.get_config()
        splitter = SentenceSplitter(config.max_chars_per_request)

        start_time = time.monotonic()
        first_audio_chunk = True
        request_count = 0
        total_chunks = 0

        for chunk in splitter.split(text):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Voice turn cancelled")
                return

            if request_count >= config.max_requests_per_message:
                logger.info(
                    f"Reached {config.max_requests_per_message} synthesis requests; "
                    "dropping remaining text"
                )
                break
            request_count += 1

            logger.debug(f"Synthesizing chunk {request_count} ({len(chunk)} chars): {chunk[:50]}...")
            async for audio_chunk in self.gateway.stream_speech(
                chunk, voice_id, stability, similarity_boost, cancel_event
            ):
                if first_audio_chunk:
                    elapsed = (time.monotonic() - start_time) * 1000
                    logger.info(f"First audio chunk in {elapsed:.0f}ms")
                    first_audio_chunk = False
                total_chunks += 1
                yield audio_chunk

        elapsed = (time.monotonic() - start_time) * 1000
        logger.info(
            f"Voice turn complete: {request_count} requests, {total_chunks} chunks in {elapsed:.0f}ms"
        )

    async def get_message_audio(self, persona_id: str, text: str) -> bytes:
        """Return the full audio for an already generated message, using the cache."""

        self._ensure_enabled()
        persona = await self._get_persona(persona_id)
        return await self.speech_cache.get_or_generate_speech(
            text,
            self._voice_for(persona),
            persona.voice_stability,
            persona.voice_similarity_boost,
        )


__all__ = ["ConversationOrchestrator", "TextGenerator"]
