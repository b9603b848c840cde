"""Error taxonomy for voice synthesis and voice identity operations.

Every expected failure raised by this package is a ``VoiceError`` carrying an
explicit ``kind`` so callers (and the HTTP layer) can branch on the category
without matching on class names or message text.
"""

from __future__ import annotations

from enum import Enum


class VoiceErrorKind(str, Enum):
    FEATURE_DISABLED = "feature_disabled"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONSENT_MISMATCH = "consent_mismatch"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    STORAGE = "storage"
    CACHE_STORAGE = "cache_storage"
    SYNTHESIS_PROVIDER = "synthesis_provider"


class VoiceError(RuntimeError):
    """Base error for expected voice failures."""

    kind: VoiceErrorKind = VoiceErrorKind.VALIDATION
    status_code: int = 400

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def asdict(self) -> dict[str, str]:
        return {"error": self.kind.value, "detail": self.message}


class FeatureDisabled(VoiceError):
    """Raised when voice synthesis is turned off in configuration."""

    kind = VoiceErrorKind.FEATURE_DISABLED
    status_code = 503

    def __init__(
        self,
        message: str = "Voice synthesis is disabled in configuration",
        *,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, cause=cause)


class VoiceValidationError(VoiceError):
    """Raised for bad sample durations, unattested consent or malformed inputs."""

    kind = VoiceErrorKind.VALIDATION
    status_code = 400


class NotFound(VoiceError):
    """Raised when a persona, consent record or job cannot be located."""

    kind = VoiceErrorKind.NOT_FOUND
    status_code = 404


class ConsentMismatch(VoiceError):
    """Raised when a consent record does not cover the requested clone."""

    kind = VoiceErrorKind.CONSENT_MISMATCH
    status_code = 403


class RateLimitExceeded(VoiceError):
    """Raised when a user has used up their clone allowance for the window."""

    kind = VoiceErrorKind.RATE_LIMIT_EXCEEDED
    status_code = 429


class StorageError(VoiceError):
    """Wrap object store failures."""

    kind = VoiceErrorKind.STORAGE
    status_code = 502


class CacheStorageError(StorageError):
    """Wrap object store failures raised while reading or writing cached audio."""

    kind = VoiceErrorKind.CACHE_STORAGE


class SynthesisProviderError(VoiceError):
    """Wrap transport or API failures when talking to the synthesis provider."""

    kind = VoiceErrorKind.SYNTHESIS_PROVIDER
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        provider_status: int | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.provider_status = provider_status


__all__ = [
    "CacheStorageError",
    "ConsentMismatch",
    "FeatureDisabled",
    "NotFound",
    "RateLimitExceeded",
    "StorageError",
    "SynthesisProviderError",
    "VoiceError",
    "VoiceErrorKind",
    "VoiceValidationError",
]
