"""Application factory for the FastAPI service."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .chat.orchestrator import TurnOrchestrator
from .completion import CompletionClient
from .config import PROJECT_ROOT, Settings, get_settings, resolve_project_path
from .logging_handlers import DateStampedFileHandler, cleanup_old_logs
from .logging_settings import parse_logging_settings
from .repository import ConversationRepository
from .routers.chat import router as chat_router
from .routers.voice import router as voice_router
from .services.credit_gate import CreditGate
from .services.media import MediaStore
from .services.notifier import BillingNotifier
from .services.sessions import SessionLookup
from .services.stt_service import Transcriber
from .services.tts_service import TTSService

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
APP_LOG_DIRECTORY = PROJECT_ROOT / "logs" / "app"


def _configure_logging(settings: Settings) -> None:
    """Configure root handlers from LOG_LEVEL/LOG_FILE and the logging settings file."""
    # Load .env file first to ensure LOG_FILE is available
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    file_settings = parse_logging_settings(
        resolve_project_path(settings.logging_settings_path)
    )
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    handlers: list[logging.Handler] = []

    if file_settings.terminal_level is not None:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(max(log_level, file_settings.terminal_level))
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    # Sweep before the handler creates today's folder so it is not pruned as empty.
    deleted, errors = cleanup_old_logs([APP_LOG_DIRECTORY], file_settings.retention_hours)

    log_file = os.getenv("LOG_FILE")
    file_handler: Optional[logging.FileHandler] = None
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
    elif file_settings.file_level is not None:
        file_handler = DateStampedFileHandler(APP_LOG_DIRECTORY, delay=True)
        file_handler.setLevel(file_settings.file_level)
    if file_handler is not None:
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger("convo_backend").setLevel(log_level)
    file_settings.apply_turn_level()

    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    # Optionally quiet down noisy third-party libraries
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    if deleted or errors:
        logging.getLogger(__name__).info(
            "Log cleanup complete: %d file(s) deleted, %d error(s) encountered",
            deleted,
            errors,
        )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    _configure_logging(settings)
    logger = logging.getLogger(__name__)

    repository = ConversationRepository(resolve_project_path(settings.chat_database_path))
    media_store = MediaStore(resolve_project_path(settings.public_dir))
    completion_client = CompletionClient(settings)
    tts_service = TTSService(settings)
    transcriber = Transcriber(settings)
    notifier = BillingNotifier(settings)
    session_lookup = SessionLookup(settings)

    orchestrator = TurnOrchestrator(
        settings=settings,
        repository=repository,
        media_store=media_store,
        completion_client=completion_client,
        tts_service=tts_service,
        transcriber=transcriber,
        notifier=notifier,
        credit_gate=CreditGate(settings.model_prices),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await repository.initialize()
        logger.info("Conversation store ready at %s", settings.chat_database_path)
        try:
            yield
        finally:
            # Add timeout to prevent hanging during shutdown (especially in tests)
            try:
                await asyncio.wait_for(orchestrator.shutdown(), timeout=15.0)
            except asyncio.TimeoutError:
                logger.warning("Orchestrator shutdown timed out after 15s")
            await CompletionClient.aclose_shared()
            await tts_service.aclose()
            await notifier.aclose()
            await session_lookup.aclose()
            await transcriber.aclose()
            await repository.close()

    app = FastAPI(
        title="Conversation Turn Backend",
        version="0.1.0",
        description="Streams text and voice conversation turns with transactional persistence.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.repository = repository
    app.state.media_store = media_store
    app.state.turn_orchestrator = orchestrator
    app.state.session_lookup = session_lookup
    app.state.transcriber = transcriber

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat_router)
    app.include_router(voice_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, object]:
        return {
            "status": "ok",
            "models": sorted(orchestrator.credit_gate.prices),
            "active_turns": orchestrator.active_turns,
        }

    return app


__all__ = ["create_app"]
