"""Voice transcription route."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile

from ..errors import TurnError
from ..schemas.chat import TranscriptionResponse
from ..services.sessions import SessionData
from ..services.stt_service import Transcriber
from .chat import get_session, to_http_exception

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/voice", tags=["voice"])


def get_transcriber(request: Request) -> Transcriber:
    transcriber = getattr(request.app.state, "transcriber", None)
    if transcriber is None:
        raise HTTPException(status_code=500, detail="Transcriber unavailable")
    return transcriber


@router.post("/transcribe", response_model=TranscriptionResponse)
async def transcribe_voice(
    voice: UploadFile = File(...),
    session: SessionData = Depends(get_session),
    transcriber: Transcriber = Depends(get_transcriber),
) -> TranscriptionResponse:
    audio = await voice.read()
    logger.info(
        "Transcription request from user %s (%d bytes)", session.user_id, len(audio)
    )
    try:
        text = await transcriber.transcribe(audio, voice.filename)
    except TurnError as exc:
        raise to_http_exception(exc) from exc
    return TranscriptionResponse(text=text)


__all__ = ["router"]
