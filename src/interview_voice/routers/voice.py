"""Routes for persona voices: consent, cloning, selection, previews and speech."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    Header,
    HTTPException,
    Request,
    UploadFile,
)
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, Field

from ..errors import FeatureDisabled, StorageError, VoiceError
from ..schemas.voice import (
    DEFAULT_SIMILARITY_BOOST,
    DEFAULT_STABILITY,
    StockVoice,
    VoiceCloneResult,
    VoiceInfo,
    VoiceType,
)
from ..services.conversation import ConversationOrchestrator
from ..services.text_generation import OpenRouterError
from ..services.voice_identity import VOICE_PROVIDER, VoiceIdentityService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/voice", tags=["voice"])

AUDIO_MEDIA_TYPE = "audio/mpeg"


def get_voice_identity_service(request: Request) -> VoiceIdentityService:
    service = getattr(request.app.state, "voice_identity_service", None)
    if service is None:
        raise HTTPException(status_code=500, detail="Voice identity service unavailable")
    return service


def get_conversation_orchestrator(request: Request) -> ConversationOrchestrator:
    orchestrator = getattr(request.app.state, "conversation_orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=500, detail="Conversation orchestrator unavailable")
    return orchestrator


def _http_error(exc: VoiceError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.asdict())


class ConsentRequest(BaseModel):
    persona_id: str
    consent_text_version: str | None = None
    attested: bool


class ConsentResponse(BaseModel):
    consent_record_id: str


class SelectVoiceRequest(BaseModel):
    voice_provider: str = VOICE_PROVIDER
    voice_type: VoiceType = "prebuilt"
    voice_id: str = Field(min_length=1)
    voice_name: str | None = None


class PreviewRequest(BaseModel):
    voice_id: str = Field(min_length=1)
    text: str | None = None


class PersonaPreviewRequest(BaseModel):
    text: str | None = None


class SpeakRequest(BaseModel):
    message: str = Field(min_length=1)


class MessageAudioRequest(BaseModel):
    text: str = Field(min_length=1)


class StreamTextRequest(BaseModel):
    text: str = Field(min_length=1)
    voice_id: str | None = None
    stability: float = Field(default=DEFAULT_STABILITY, ge=0.0, le=1.0)
    similarity_boost: float = Field(default=DEFAULT_SIMILARITY_BOOST, ge=0.0, le=1.0)


@router.post("/consent", response_model=ConsentResponse, status_code=201)
async def record_consent(
    payload: ConsentRequest,
    user_id: str = Header(..., alias="X-User-Id"),
    service: VoiceIdentityService = Depends(get_voice_identity_service),
) -> ConsentResponse:
    try:
        consent_id = await service.record_consent(
            user_id,
            payload.persona_id,
            payload.consent_text_version,
            payload.attested,
        )
    except VoiceError as exc:
        raise _http_error(exc) from exc
    return ConsentResponse(consent_record_id=consent_id)


@router.get("/voices", response_model=list[VoiceInfo])
async def list_voices(
    service: VoiceIdentityService = Depends(get_voice_identity_service),
) -> list[VoiceInfo]:
    try:
        return await service.list_available_voices()
    except VoiceError as exc:
        raise _http_error(exc) from exc


@router.get("/voices/stock", response_model=list[StockVoice])
async def list_stock_voices(
    service: VoiceIdentityService = Depends(get_voice_identity_service),
) -> list[StockVoice]:
    return await service.list_stock_voices()


@router.post("/clone", response_model=VoiceCloneResult, status_code=201)
async def clone_voice(
    user_id: str = Header(..., alias="X-User-Id"),
    service: VoiceIdentityService = Depends(get_voice_identity_service),
    file: UploadFile = File(...),
    persona_id: str = Form(...),
    voice_name: str = Form(...),
    sample_duration_seconds: int = Form(...),
    consent_record_id: str = Form(...),
    style_lane: str | None = Form(default=None),
) -> VoiceCloneResult:
    sample_bytes = await file.read()
    if not sample_bytes:
        raise HTTPException(status_code=400, detail="Voice sample is empty")

    sample_blob_ref: str | None = None
    try:
        sample_blob_ref = await service.upload_voice_sample(
            sample_bytes, file.filename, file.content_type
        )
    except StorageError as exc:
        # The clone can proceed without an audit copy of the sample
        logger.warning(f"Voice sample upload failed; continuing without blob ref: {exc}")

    try:
        return await service.clone_voice(
            user_id=user_id,
            persona_id=persona_id,
            voice_name=voice_name,
            sample_blob_ref=sample_blob_ref,
            sample_bytes=sample_bytes,
            sample_duration_seconds=sample_duration_seconds,
            consent_record_id=consent_record_id,
            style_lane=style_lane,
            sample_filename=file.filename or "sample.mp3",
        )
    except VoiceError as exc:
        raise _http_error(exc) from exc


@router.post("/preview")
async def preview_voice(
    payload: PreviewRequest,
    service: VoiceIdentityService = Depends(get_voice_identity_service),
) -> Response:
    try:
        audio = await service.preview_voice(payload.voice_id, payload.text)
    except VoiceError as exc:
        raise _http_error(exc) from exc
    return Response(content=audio, media_type=AUDIO_MEDIA_TYPE)


@router.put("/personas/{persona_id}/voice")
async def select_persona_voice(
    persona_id: str,
    payload: SelectVoiceRequest,
    service: VoiceIdentityService = Depends(get_voice_identity_service),
) -> dict[str, Any]:
    try:
        binding = await service.select_persona_voice(
            persona_id,
            payload.voice_provider,
            payload.voice_type,
            payload.voice_id,
            payload.voice_name,
        )
    except VoiceError as exc:
        raise _http_error(exc) from exc
    return {"persona_id": persona_id, "voice": binding.model_dump(mode="json")}


@router.post("/personas/{persona_id}/preview")
async def preview_persona_voice(
    persona_id: str,
    payload: PersonaPreviewRequest | None = None,
    service: VoiceIdentityService = Depends(get_voice_identity_service),
) -> Response:
    text = payload.text if payload is not None else None
    try:
        audio = await service.preview_persona_voice(persona_id, text)
    except VoiceError as exc:
        raise _http_error(exc) from exc
    return Response(content=audio, media_type=AUDIO_MEDIA_TYPE)


@router.post("/personas/{persona_id}/speak")
async def speak(
    persona_id: str,
    payload: SpeakRequest,
    orchestrator: ConversationOrchestrator = Depends(get_conversation_orchestrator),
) -> StreamingResponse:
    """Generate the persona's reply and stream it as MP3 audio."""

    try:
        audio = await orchestrator.stream_turn(persona_id, payload.message)
    except VoiceError as exc:
        raise _http_error(exc) from exc
    except OpenRouterError as exc:
        raise HTTPException(status_code=502, detail=exc.detail) from exc

    return StreamingResponse(audio, media_type=AUDIO_MEDIA_TYPE)


@router.post("/stream")
async def stream_text(
    payload: StreamTextRequest,
    orchestrator: ConversationOrchestrator = Depends(get_conversation_orchestrator),
) -> StreamingResponse:
    """Stream already generated text as MP3 audio in the given voice."""

    if not orchestrator.is_voice_enabled():
        raise _http_error(FeatureDisabled())

    voice_id = payload.voice_id or orchestrator.gateway.get_config().default_voice_id
    audio = orchestrator.stream_text(
        payload.text,
        voice_id,
        payload.stability,
        payload.similarity_boost,
    )
    return StreamingResponse(audio, media_type=AUDIO_MEDIA_TYPE)


@router.post("/personas/{persona_id}/audio")
async def message_audio(
    persona_id: str,
    payload: MessageAudioRequest,
    orchestrator: ConversationOrchestrator = Depends(get_conversation_orchestrator),
) -> Response:
    try:
        audio = await orchestrator.get_message_audio(persona_id, payload.text)
    except VoiceError as exc:
        raise _http_error(exc) from exc
    return Response(content=audio, media_type=AUDIO_MEDIA_TYPE)


__all__ = [
    "router",
    "get_conversation_orchestrator",
    "get_voice_identity_service",
]
