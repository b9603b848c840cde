"""Application factory for the FastAPI service."""

from __future__ import annotations

import json
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import PROJECT_ROOT, get_settings
from .repository import VoiceRepository
from .routers.voice import router as voice_router
from .schemas.voice import StockVoice
from .services.conversation import ConversationOrchestrator
from .services.elevenlabs_gateway import build_voice_gateway
from .services.object_store import build_object_store
from .services.text_generation import OpenRouterTextGenerator
from .services.tts.speech_cache import SpeechCache
from .services.voice_identity import VoiceIdentityService

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    """Configure logging based on LOG_LEVEL environment variable."""
    # Load .env file first to ensure LOG_FILE is available
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    log_file = os.getenv("LOG_FILE")
    handlers: list[logging.Handler] = []

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger("interview_voice").setLevel(log_level)
    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    else:
        logging.getLogger("httpx").setLevel(log_level)
        logging.getLogger("httpcore").setLevel(log_level)


def _resolve_under(base: Path, p: Path) -> Path:
    # Allow absolute paths as-is (useful for tests and external mounts).
    if p.is_absolute():
        return p.resolve()
    resolved = (base / p).resolve()
    if not resolved.is_relative_to(base):
        raise ValueError(f"Configured path {resolved} escapes project root {base}")
    return resolved


async def _seed_stock_voices(repository: VoiceRepository, path: Path) -> None:
    """Load the curated stock voice list from a JSON array file."""

    if not path.exists():
        logger.warning(f"Stock voices file {path} not found; skipping seed")
        return
    entries = json.loads(path.read_text(encoding="utf-8"))
    for entry in entries:
        await repository.add_stock_voice(StockVoice.model_validate(entry))
    logger.info(f"Seeded {len(entries)} stock voices from {path}")


def create_app() -> FastAPI:
    # Configure logging first thing
    _configure_logging()

    settings = get_settings()

    database_path = _resolve_under(PROJECT_ROOT, settings.voice_database_path)
    repository = VoiceRepository(database_path)

    if settings.object_store_backend == "local":
        settings = settings.model_copy(
            update={
                "object_store_dir": _resolve_under(PROJECT_ROOT, settings.object_store_dir)
            }
        )
    store = build_object_store(settings)
    gateway = build_voice_gateway(settings)
    speech_cache = SpeechCache(store, gateway)

    text_generator: OpenRouterTextGenerator | None = None
    if settings.openrouter_api_key is not None:
        text_generator = OpenRouterTextGenerator(settings)
    else:
        logger.warning("OPENROUTER_API_KEY is not set; voiced turns are unavailable")

    voice_identity_service = VoiceIdentityService(
        repository,
        gateway,
        store,
        rate_limit_hours=settings.clone_rate_limit_hours,
        rate_limit_per_period=settings.clone_rate_limit_per_period,
        min_sample_seconds=settings.min_sample_duration_seconds,
        max_sample_seconds=settings.max_sample_duration_seconds,
        preview_text=settings.preview_text,
    )
    orchestrator = ConversationOrchestrator(
        repository,
        gateway,
        speech_cache,
        text_generator,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await repository.initialize()
        if settings.stock_voices_path is not None:
            await _seed_stock_voices(
                repository, _resolve_under(PROJECT_ROOT, settings.stock_voices_path)
            )
        try:
            yield
        finally:
            if text_generator is not None:
                await text_generator.aclose()
            await gateway.aclose()
            await repository.close()

    app = FastAPI(
        title="Interview Voice Service",
        version="0.1.0",
        description="Persona voice identity and streaming speech synthesis.",
        lifespan=lifespan,
    )

    app.state.voice_repository = repository
    app.state.speech_cache = speech_cache
    app.state.voice_identity_service = voice_identity_service
    app.state.conversation_orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(voice_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, str | bool]:
        config = gateway.get_config()
        return {
            "status": "ok",
            "voice_enabled": config.enabled,
            "fake_provider": config.use_fake_provider,
            "model_id": config.model_id,
        }

    return app


__all__ = ["create_app"]
