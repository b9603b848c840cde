"""Application configuration using environment variables."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

DEFAULT_PREVIEW_TEXT = "Hey, I'm your persona voice."


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Voice synthesis provider (ElevenLabs)
    voice_enabled: bool = Field(
        default=False,
        validation_alias=AliasChoices("ELEVENLABS_ENABLED", "voice_enabled"),
    )
    use_fake_voice_provider: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "USE_FAKE_ELEVENLABS",
            "use_fake_voice_provider",
        ),
    )
    elevenlabs_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("ELEVENLABS_API_KEY", "elevenlabs_api_key"),
    )
    elevenlabs_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.elevenlabs.io"),
        validation_alias=AliasChoices("ELEVENLABS_BASE_URL", "elevenlabs_base_url"),
    )
    elevenlabs_model_id: str = Field(
        default="eleven_monolingual_v1",
        validation_alias=AliasChoices("ELEVENLABS_MODEL_ID", "elevenlabs_model_id"),
    )
    default_voice_id: str = Field(
        default="21m00Tcm4TlvDq8ikWAM",
        validation_alias=AliasChoices(
            "ELEVENLABS_DEFAULT_VOICE_ID",
            "default_voice_id",
        ),
    )
    max_chars_per_request: int = Field(
        default=500,
        ge=1,
        validation_alias=AliasChoices(
            "ELEVENLABS_MAX_CHARS_PER_REQUEST",
            "max_chars_per_request",
        ),
    )
    max_requests_per_message: int = Field(
        default=6,
        ge=1,
        validation_alias=AliasChoices(
            "ELEVENLABS_MAX_REQUESTS_PER_MESSAGE",
            "max_requests_per_message",
        ),
    )
    elevenlabs_timeout: float = Field(
        default=120.0,
        ge=1,
        validation_alias=AliasChoices("ELEVENLABS_TIMEOUT", "elevenlabs_timeout"),
    )

    # Persistence
    voice_database_path: Path = Field(
        default_factory=lambda: Path("data/voice.db"),
        validation_alias=AliasChoices("VOICE_DATABASE_PATH", "voice_database_path"),
    )
    object_store_backend: Literal["local", "gcs"] = Field(
        default="local",
        validation_alias=AliasChoices(
            "OBJECT_STORE_BACKEND",
            "object_store_backend",
        ),
    )
    object_store_dir: Path = Field(
        default_factory=lambda: Path("data/objects"),
        validation_alias=AliasChoices("OBJECT_STORE_DIR", "object_store_dir"),
    )
    gcs_bucket_name: str = Field(
        default="interview-voice",
        validation_alias=AliasChoices("GCS_BUCKET_NAME", "gcs_bucket_name"),
    )
    gcp_project_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GCP_PROJECT_ID", "gcp_project_id"),
    )
    google_application_credentials: Path = Field(
        default_factory=lambda: Path("credentials/googlecloud/sa.json"),
        validation_alias=AliasChoices(
            "GOOGLE_APPLICATION_CREDENTIALS",
            "google_application_credentials",
        ),
    )

    # Voice cloning guardrails
    clone_rate_limit_hours: int = Field(
        default=24,
        ge=1,
        validation_alias=AliasChoices(
            "VOICE_CLONE_RATE_LIMIT_HOURS",
            "clone_rate_limit_hours",
        ),
    )
    clone_rate_limit_per_period: int = Field(
        default=5,
        ge=1,
        validation_alias=AliasChoices(
            "VOICE_CLONE_RATE_LIMIT_PER_PERIOD",
            "clone_rate_limit_per_period",
        ),
    )
    min_sample_duration_seconds: int = Field(
        default=10,
        ge=0,
        validation_alias=AliasChoices(
            "VOICE_SAMPLE_MIN_SECONDS",
            "min_sample_duration_seconds",
        ),
    )
    max_sample_duration_seconds: int = Field(
        default=300,
        ge=1,
        validation_alias=AliasChoices(
            "VOICE_SAMPLE_MAX_SECONDS",
            "max_sample_duration_seconds",
        ),
    )
    preview_text: str = Field(
        default=DEFAULT_PREVIEW_TEXT,
        validation_alias=AliasChoices("VOICE_PREVIEW_TEXT", "preview_text"),
    )
    stock_voices_path: Optional[Path] = Field(
        default=None,
        validation_alias=AliasChoices(
            "VOICE_STOCK_VOICES_PATH",
            "stock_voices_path",
        ),
    )

    # Text generation (OpenRouter); optional, turns are unavailable without it
    openrouter_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("OPENROUTER_API_KEY", "openrouter_api_key"),
    )
    openrouter_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://openrouter.ai/api/v1"),
        validation_alias=AliasChoices("OPENROUTER_BASE_URL", "openrouter_base_url"),
    )
    default_model: str = Field(
        default="openrouter/auto",
        validation_alias=AliasChoices("OPENROUTER_DEFAULT_MODEL", "default_model"),
    )
    request_timeout: float = Field(
        default=120.0,
        ge=1,
        validation_alias=AliasChoices("OPENROUTER_TIMEOUT", "request_timeout"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["DEFAULT_PREVIEW_TEXT", "Settings", "get_settings"]
