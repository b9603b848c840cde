"""Voice identity and synthesis schemas."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

VoiceType = Literal["prebuilt", "user_cloned"]

DEFAULT_STABILITY = 0.5
DEFAULT_SIMILARITY_BOOST = 0.75


class CloneJobStatus(str, Enum):
    PENDING = "Pending"
    SUCCESS = "Success"
    FAILED = "Failed"


class ConsentRecord(BaseModel):
    """Immutable audit row proving a user attested to voice-cloning consent."""

    model_config = {"frozen": True}

    id: str
    user_id: str
    persona_id: str
    consent_text_version: str | None = None
    attested: bool
    created_at: datetime


class VoiceCloneJob(BaseModel):
    """Tracked attempt to create a synthetic voice from a sample."""

    id: str
    user_id: str
    persona_id: str
    sample_blob_ref: str | None = None
    sample_duration_seconds: int
    status: CloneJobStatus = CloneJobStatus.PENDING
    external_voice_id: str | None = None
    error_message: str | None = None
    style_lane: str | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status is not CloneJobStatus.PENDING


class PersonaVoiceBinding(BaseModel):
    """Voice identity currently attached to a persona."""

    voice_provider: str | None = None
    voice_type: VoiceType | None = None
    voice_id: str | None = None
    voice_name: str | None = None
    voice_created_at: datetime | None = None
    voice_created_by_user_id: str | None = None


class Persona(BaseModel):
    """Voice-relevant slice of the persona aggregate."""

    persona_id: str
    display_name: str
    voice: PersonaVoiceBinding = Field(default_factory=PersonaVoiceBinding)
    voice_stability: float = Field(default=DEFAULT_STABILITY, ge=0.0, le=1.0)
    voice_similarity_boost: float = Field(
        default=DEFAULT_SIMILARITY_BOOST, ge=0.0, le=1.0
    )


class StockVoice(BaseModel):
    """Curated prebuilt voice offered when choosing a persona voice."""

    voice_id: str
    name: str
    provider: str = "elevenlabs"
    preview_text: str | None = None
    sort_order: int = 0


class VoiceInfo(BaseModel):
    """Voice reported by the synthesis provider."""

    voice_id: str
    name: str
    voice_type: VoiceType = "prebuilt"
    category: str | None = None
    preview_text: str | None = None


class VoiceCloneResult(BaseModel):
    voice_id: str
    voice_name: str


class SynthesisConfig(BaseModel):
    """Effective synthesis settings exposed by a gateway."""

    enabled: bool
    model_id: str
    default_voice_id: str
    max_chars_per_request: int
    max_requests_per_message: int
    use_fake_provider: bool = False


__all__ = [
    "CloneJobStatus",
    "ConsentRecord",
    "DEFAULT_SIMILARITY_BOOST",
    "DEFAULT_STABILITY",
    "Persona",
    "PersonaVoiceBinding",
    "StockVoice",
    "SynthesisConfig",
    "VoiceCloneJob",
    "VoiceCloneResult",
    "VoiceInfo",
    "VoiceType",
]
