"""ElevenLabs HTTP adapter for the voice synthesis gateway."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

import httpx

from ..config import Settings
from ..errors import FeatureDisabled, SynthesisProviderError
from ..schemas.voice import SynthesisConfig, VoiceCloneResult, VoiceInfo
from .voice_gateway import FakeVoiceGateway, VoiceSynthesisGateway

logger = logging.getLogger(__name__)


class ElevenLabsGateway:
    """
    Client for the ElevenLabs text-to-speech and voice APIs.

    The gateway owns one ``httpx.AsyncClient`` for connection pooling; pass a
    client explicitly to share one or to inject a mock transport in tests.

    Audio is requested from the streaming endpoint and yielded chunk by
    chunk as it arrives, so playback can begin before synthesis completes:
    - stream_speech() yields MP3 bytes as they arrive
    - generate_speech() collects the same stream into one payload
    """

    def __init__(
        self,
        *,
        api_key: str,
        config: SynthesisConfig,
        base_url: str = "https://api.elevenlabs.io",
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
        )
        self._owns_client = client is None
        self._headers = {"xi-api-key": api_key}

    def get_config(self) -> SynthesisConfig:
        return self._config

    def _ensure_enabled(self) -> None:
        if not self._config.enabled:
            raise FeatureDisabled()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
            logger.info("Closed ElevenLabs HTTP client")

    async def stream_speech(
        self,
        text: str,
        voice_id: str,
        stability: float,
        similarity_boost: float,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[bytes]:
        """
        Stream MP3 audio for ``text``.

        Text over ``max_chars_per_request`` is truncated before the request.
        The cancel event is checked between received chunks; once set the
        response is closed and the iterator ends without error.
        """
        self._ensure_enabled()
        if not text or not text.strip():
            return

        max_chars = self._config.max_chars_per_request
        if len(text) > max_chars:
            text = text[:max_chars]

        effective_voice_id = voice_id or self._config.default_voice_id
        payload = {
            "text": text,
            "model_id": self._config.model_id,
            "voice_settings": {
                "stability": stability,
                "similarity_boost": similarity_boost,
            },
        }

        try:
            async with self._client.stream(
                "POST",
                f"/v1/text-to-speech/{effective_voice_id}/stream",
                headers=self._headers,
                json=payload,
            ) as response:
                if response.is_error:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise SynthesisProviderError(
                        f"ElevenLabs API returned error: {response.status_code} - {body}",
                        provider_status=response.status_code,
                    )
                async for chunk in response.aiter_bytes():
                    if cancel_event is not None and cancel_event.is_set():
                        logger.info("Speech stream cancelled mid-chunk")
                        return
                    if chunk:
                        yield chunk
        except httpx.TimeoutException as exc:
            raise SynthesisProviderError(
                f"ElevenLabs API request timed out: {exc}", cause=exc
            ) from exc
        except httpx.HTTPError as exc:
            raise SynthesisProviderError(
                f"Failed to connect to ElevenLabs API: {exc}", cause=exc
            ) from exc

    async def generate_speech(
        self,
        text: str,
        voice_id: str,
        stability: float,
        similarity_boost: float,
    ) -> bytes:
        """Return the complete audio for ``text`` (used for caching and previews)."""

        buffer = bytearray()
        async for chunk in self.stream_speech(text, voice_id, stability, similarity_boost):
            buffer.extend(chunk)
        logger.info(f"ElevenLabs synthesized {len(buffer)} bytes for text: {text[:50]}...")
        return bytes(buffer)

    async def list_voices(self) -> list[VoiceInfo]:
        self._ensure_enabled()
        data = await self._request_json("GET", "/v1/voices")

        voices: list[VoiceInfo] = []
        for item in data.get("voices") or []:
            voices.append(
                VoiceInfo(
                    voice_id=item.get("voice_id") or "",
                    name=item.get("name") or "",
                    category=item.get("category"),
                )
            )
        return voices

    async def create_voice_from_sample(
        self,
        name: str,
        data: bytes,
        filename: str = "sample.mp3",
    ) -> VoiceCloneResult:
        """Create an instant voice clone from one audio sample."""

        self._ensure_enabled()
        body = await self._request_json(
            "POST",
            "/v1/voices/add",
            data={"name": name},
            files={"files": (filename, data)},
        )
        voice_id = body.get("voice_id") or ""
        logger.info(f"ElevenLabs created cloned voice {voice_id} ({name})")
        return VoiceCloneResult(voice_id=voice_id, voice_name=name)

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(
                method, url, headers=self._headers, **kwargs
            )
        except httpx.TimeoutException as exc:
            raise SynthesisProviderError(
                f"ElevenLabs API request timed out: {exc}", cause=exc
            ) from exc
        except httpx.HTTPError as exc:
            raise SynthesisProviderError(
                f"Failed to connect to ElevenLabs API: {exc}", cause=exc
            ) from exc

        if response.is_error:
            raise SynthesisProviderError(
                f"ElevenLabs API returned error: {response.status_code} - {response.text}",
                provider_status=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise SynthesisProviderError(
                "ElevenLabs API returned invalid JSON", cause=exc
            ) from exc
        if not isinstance(payload, dict):
            raise SynthesisProviderError("ElevenLabs API returned an unexpected payload")
        return payload


def synthesis_config_from_settings(settings: Settings) -> SynthesisConfig:
    return SynthesisConfig(
        enabled=settings.voice_enabled,
        model_id=settings.elevenlabs_model_id,
        default_voice_id=settings.default_voice_id,
        max_chars_per_request=settings.max_chars_per_request,
        max_requests_per_message=settings.max_requests_per_message,
        use_fake_provider=settings.use_fake_voice_provider,
    )


def build_voice_gateway(
    settings: Settings,
    *,
    client: httpx.AsyncClient | None = None,
) -> VoiceSynthesisGateway:
    """Return the fake provider when requested, otherwise the HTTP adapter."""

    config = synthesis_config_from_settings(settings)
    if config.use_fake_provider:
        logger.info("Using fake voice synthesis provider")
        return FakeVoiceGateway(config)

    api_key = (
        settings.elevenlabs_api_key.get_secret_value()
        if settings.elevenlabs_api_key
        else ""
    )
    if config.enabled and not api_key:
        logger.warning("ELEVENLABS_API_KEY is not set; synthesis requests will fail")
    return ElevenLabsGateway(
        api_key=api_key,
        config=config,
        base_url=str(settings.elevenlabs_base_url),
        timeout=settings.elevenlabs_timeout,
        client=client,
    )


__all__ = ["ElevenLabsGateway", "build_voice_gateway", "synthesis_config_from_settings"]
