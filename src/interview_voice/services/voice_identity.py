"""Voice identity lifecycle: consent, cloning, persona voice selection and previews."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import PurePosixPath
from typing import Callable

from ..errors import (
    ConsentMismatch,
    FeatureDisabled,
    NotFound,
    RateLimitExceeded,
    StorageError,
    VoiceValidationError,
)
from ..repository import VoiceRepository
from ..schemas.voice import (
    DEFAULT_SIMILARITY_BOOST,
    DEFAULT_STABILITY,
    CloneJobStatus,
    ConsentRecord,
    PersonaVoiceBinding,
    StockVoice,
    VoiceCloneJob,
    VoiceCloneResult,
    VoiceInfo,
    VoiceType,
)
from .object_store import ObjectStore
from .voice_gateway import VoiceSynthesisGateway

logger = logging.getLogger(__name__)

VOICE_PROVIDER = "elevenlabs"
VOICE_SAMPLE_PREFIX = "voice-samples"
DEFAULT_SAMPLE_EXTENSION = ".mp3"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VoiceIdentityService:
    """
    Manage a user's synthetic voice identity for a persona.

    Cloning is gated by an attested consent record, a per-user rate limit
    and sample duration bounds, all checked before the provider is called.
    Every clone attempt that passes those checks leaves a job row that ends
    as Success or Failed.
    """

    def __init__(
        self,
        repository: VoiceRepository,
        gateway: VoiceSynthesisGateway,
        store: ObjectStore,
        *,
        rate_limit_hours: int = 24,
        rate_limit_per_period: int = 5,
        min_sample_seconds: int = 10,
        max_sample_seconds: int = 300,
        preview_text: str = "Hey, I'm your persona voice.",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._gateway = gateway
        self._store = store
        self._rate_limit_window = timedelta(hours=rate_limit_hours)
        self._rate_limit_hours = rate_limit_hours
        self._rate_limit_per_period = rate_limit_per_period
        self._min_sample_seconds = min_sample_seconds
        self._max_sample_seconds = max_sample_seconds
        self._preview_text = preview_text
        self._clock = clock

    async def record_consent(
        self,
        user_id: str,
        persona_id: str,
        consent_text_version: str | None,
        attested: bool,
    ) -> str:
        """Persist a consent audit row and return its id."""

        if not attested:
            raise VoiceValidationError("Consent must be attested.")

        record = ConsentRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            persona_id=persona_id,
            consent_text_version=consent_text_version,
            attested=True,
            created_at=self._clock(),
        )
        await self._repository.add_consent(record)
        logger.info(f"Recorded voice consent {record.id} for persona {persona_id}")
        return record.id

    async def list_available_voices(self) -> list[VoiceInfo]:
        return await self._gateway.list_voices()

    async def list_stock_voices(self) -> list[StockVoice]:
        return await self._repository.list_stock_voices()

    async def upload_voice_sample(
        self,
        data: bytes,
        filename: str | None,
        content_type: str | None = None,
    ) -> str:
        """Store a raw voice sample and return its object key."""

        extension = PurePosixPath(filename or "").suffix.lower() or DEFAULT_SAMPLE_EXTENSION
        key = f"{VOICE_SAMPLE_PREFIX}/{uuid.uuid4()}{extension}"
        try:
            created = await self._store.put(
                key,
                data,
                content_type=content_type or "audio/mpeg",
            )
        except Exception as exc:
            raise StorageError(f"Failed to store voice sample: {exc}", cause=exc) from exc
        if not created:
            raise StorageError(f"Voice sample {key} already exists")
        logger.info(f"Stored voice sample {key} ({len(data)} bytes)")
        return key

    async def select_persona_voice(
        self,
        persona_id: str,
        voice_provider: str,
        voice_type: VoiceType,
        voice_id: str,
        voice_name: str | None = None,
    ) -> PersonaVoiceBinding:
        """Bind a prebuilt (or existing cloned) voice to a persona."""

        persona = await self._repository.get_persona(persona_id)
        if persona is None:
            raise NotFound(f"Persona with ID {persona_id} not found.")

        binding = PersonaVoiceBinding(
            voice_provider=voice_provider,
            voice_type=voice_type,
            voice_id=voice_id,
            voice_name=voice_name or voice_id,
        )
        await self._repository.update_persona_voice(persona_id, binding)
        return binding

    async def clone_voice(
        self,
        user_id: str,
        persona_id: str,
        voice_name: str,
        sample_blob_ref: str | None,
        sample_bytes: bytes,
        sample_duration_seconds: int,
        consent_record_id: str,
        style_lane: str | None = None,
        sample_filename: str = "sample.mp3",
    ) -> VoiceCloneResult:
        """
        Create a cloned voice from a sample and bind it to the persona.

        Checks run in order: consent, rate limit, sample duration. None of
        them writes a job row. A provider failure marks the job Failed and
        re-raises the provider's error.
        """
        consent = await self._repository.get_consent(consent_record_id)
        if consent is None:
            raise NotFound("Consent record not found.")
        if (
            consent.user_id != user_id
            or consent.persona_id != persona_id
            or not consent.attested
        ):
            raise ConsentMismatch("Consent record does not match this user and persona.")

        now = self._clock()
        window_start = now - self._rate_limit_window
        used = await self._repository.count_clone_reservations(user_id, window_start)
        if used >= self._rate_limit_per_period:
            raise self._rate_limit_error()

        if sample_duration_seconds < self._min_sample_seconds:
            raise VoiceValidationError(
                f"Sample must be at least {self._min_sample_seconds} seconds."
            )
        if sample_duration_seconds > self._max_sample_seconds:
            raise VoiceValidationError(
                f"Sample must be at most {self._max_sample_seconds} seconds."
            )

        job = VoiceCloneJob(
            id=str(uuid.uuid4()),
            user_id=user_id,
            persona_id=persona_id,
            sample_blob_ref=sample_blob_ref,
            sample_duration_seconds=sample_duration_seconds,
            status=CloneJobStatus.PENDING,
            style_lane=style_lane,
            created_at=now,
            updated_at=now,
        )
        reserved = await self._repository.reserve_clone_job(
            job,
            window_start=window_start,
            limit=self._rate_limit_per_period,
        )
        if not reserved:
            raise self._rate_limit_error()

        try:
            result = await self._gateway.create_voice_from_sample(
                voice_name, sample_bytes, sample_filename
            )
        except asyncio.CancelledError:
            await self._mark_clone_failed(job.id, "cancelled")
            raise
        except Exception as exc:
            await self._mark_clone_failed(job.id, str(exc))
            raise

        finished_at = self._clock()
        await self._repository.finish_clone_job(
            job.id,
            CloneJobStatus.SUCCESS,
            updated_at=finished_at,
            external_voice_id=result.voice_id,
        )

        binding = PersonaVoiceBinding(
            voice_provider=VOICE_PROVIDER,
            voice_type="user_cloned",
            voice_id=result.voice_id,
            voice_name=result.voice_name,
            voice_created_at=finished_at,
            voice_created_by_user_id=user_id,
        )
        if not await self._repository.update_persona_voice(persona_id, binding):
            logger.warning(
                f"Persona {persona_id} not found; cloned voice {result.voice_id} left unbound"
            )
        logger.info(f"Voice clone job {job.id} succeeded with voice {result.voice_id}")
        return result

    async def _mark_clone_failed(self, job_id: str, message: str) -> None:
        """Record a terminal Failed state without masking the caller's error."""

        logger.warning(f"Voice clone job {job_id} failed: {message}")
        # Shielded so a second cancellation cannot leave the job Pending
        update = asyncio.ensure_future(
            self._repository.finish_clone_job(
                job_id,
                CloneJobStatus.FAILED,
                updated_at=self._clock(),
                error_message=message,
            )
        )
        try:
            await asyncio.shield(update)
        except asyncio.CancelledError:
            await asyncio.wait([update])
            raise
        except Exception as exc:
            logger.error(f"Failed to mark voice clone job {job_id} as failed: {exc}")

    def _rate_limit_error(self) -> RateLimitExceeded:
        return RateLimitExceeded(
            f"You can create up to {self._rate_limit_per_period} voices per "
            f"{self._rate_limit_hours} hours. Please try again later."
        )

    async def preview_voice(self, voice_id: str, text: str | None = None) -> bytes:
        """Synthesize a short sample of ``voice_id`` with neutral prosody."""

        config = self._gateway.get_config()
        if not config.enabled and not config.use_fake_provider:
            raise FeatureDisabled()

        line = text if text and text.strip() else self._preview_text
        return await self._gateway.generate_speech(
            line, voice_id, DEFAULT_STABILITY, DEFAULT_SIMILARITY_BOOST
        )

    async def preview_persona_voice(self, persona_id: str, text: str | None = None) -> bytes:
        persona = await self._repository.get_persona(persona_id)
        if persona is None:
            raise NotFound(f"Persona with ID {persona_id} not found.")

        voice_id = persona.voice.voice_id or self._gateway.get_config().default_voice_id
        return await self.preview_voice(voice_id, text)


__all__ = ["VOICE_PROVIDER", "VoiceIdentityService"]
