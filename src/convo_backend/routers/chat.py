"""Conversation and streamed turn API routes."""

from __future__ import annotations

import logging
from typing import Optional

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
from fastapi.responses import StreamingResponse

from ..chat.context_builder import UploadedImage
from ..chat.orchestrator import TurnOrchestrator, TurnRequest
from ..errors import AuthError, TurnError
from ..repository import ConversationRepository
from ..schemas.chat import (
    ConversationListResponse,
    ConversationResponse,
    CreateConversationResponse,
    EditTitleRequest,
    StatusResponse,
    VoiceEntry,
)
from ..services.media import MediaStore
from ..services.sessions import SessionData, SessionLookup

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/chat", tags=["chat"])

STREAM_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


def to_http_exception(exc: TurnError) -> HTTPException:
    detail = exc.detail if isinstance(exc.detail, (str, dict, list)) else str(exc)
    return HTTPException(status_code=exc.status_code, detail=detail)


def get_repository(request: Request) -> ConversationRepository:
    repository = getattr(request.app.state, "repository", None)
    if repository is None:
        raise HTTPException(status_code=500, detail="Conversation store unavailable")
    return repository


def get_orchestrator(request: Request) -> TurnOrchestrator:
    orchestrator = getattr(request.app.state, "turn_orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=500, detail="Turn orchestrator unavailable")
    return orchestrator


def get_media_store(request: Request) -> MediaStore:
    media_store = getattr(request.app.state, "media_store", None)
    if media_store is None:
        raise HTTPException(status_code=500, detail="Media store unavailable")
    return media_store


async def get_session(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> SessionData:
    """Resolve the caller's bearer token to a session snapshot."""

    lookup: SessionLookup | None = getattr(request.app.state, "session_lookup", None)
    if lookup is None:
        raise HTTPException(status_code=500, detail="Session lookup unavailable")

    scheme, _, token = (authorization or "").partition(" ")
    try:
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthError("Invalid authorization header")
        return await lookup.lookup(token.strip())
    except TurnError as exc:
        raise to_http_exception(exc) from exc


@router.post("/conversation", response_model=CreateConversationResponse)
async def create_conversation(
    session: SessionData = Depends(get_session),
    repository: ConversationRepository = Depends(get_repository),
) -> CreateConversationResponse:
    conversation_id = await repository.create_conversation(session.user_id)
    return CreateConversationResponse(conversation_id=conversation_id)


@router.get("/conversation", response_model=ConversationListResponse)
async def list_conversations(
    session: SessionData = Depends(get_session),
    repository: ConversationRepository = Depends(get_repository),
) -> ConversationListResponse:
    conversations = await repository.list_conversations(session.user_id)
    return ConversationListResponse(conversations=conversations)


@router.get("/conversation/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: str,
    session: SessionData = Depends(get_session),
    repository: ConversationRepository = Depends(get_repository),
) -> ConversationResponse:
    conversation = await repository.get_conversation(session.user_id, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return ConversationResponse(
        id=conversation.id,
        title=conversation.title,
        messages=conversation.entries,
    )


@router.delete("/conversation/{conversation_id}", response_model=StatusResponse)
async def delete_conversation(
    conversation_id: str,
    session: SessionData = Depends(get_session),
    repository: ConversationRepository = Depends(get_repository),
    media_store: MediaStore = Depends(get_media_store),
) -> StatusResponse:
    try:
        removed = await repository.delete_conversation(session.user_id, conversation_id)
    except TurnError as exc:
        raise to_http_exception(exc) from exc
    if removed is None:
        raise HTTPException(status_code=404, detail="Conversation not found")

    media: list[str] = []
    for entry in removed.entries:
        media.extend(entry.images)
        if isinstance(entry, VoiceEntry):
            media.append(entry.content)
    if media:
        deleted = await media_store.delete_many(media)
        logger.info(
            "Removed %d/%d media files for conversation %s",
            deleted,
            len(media),
            conversation_id,
        )
    return StatusResponse()


@router.patch("/conversation/{conversation_id}/title", response_model=StatusResponse)
async def edit_title(
    conversation_id: str,
    payload: EditTitleRequest,
    session: SessionData = Depends(get_session),
    repository: ConversationRepository = Depends(get_repository),
) -> StatusResponse:
    updated = await repository.update_title(
        session.user_id, conversation_id, payload.title
    )
    if not updated:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return StatusResponse()


@router.post("/conversation/{conversation_id}/turn", response_model=None)
async def send_turn(
    conversation_id: str,
    message_type: str = Form(...),
    model: str = Form(...),
    message: str = Form(""),
    edit_target: int = Form(-1),
    voice: Optional[UploadFile] = File(None),
    images: Optional[list[UploadFile]] = File(None),
    session: SessionData = Depends(get_session),
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """Stream the assistant reply as text or WAV audio."""

    uploaded: list[UploadedImage] = []
    for image in images or []:
        data = await image.read()
        if data:
            uploaded.append(UploadedImage(data=data, filename=image.filename))

    turn = TurnRequest(
        conversation_id=conversation_id,
        model=model,
        message_type=message_type,
        message=message,
        voice=await voice.read() if voice is not None else None,
        voice_filename=voice.filename if voice is not None else None,
        edit_target=edit_target,
        images=uploaded,
    )

    try:
        stream = await orchestrator.start_turn(turn, session)
    except TurnError as exc:
        logger.info("Rejected turn for conversation %s: %s", conversation_id, exc)
        raise to_http_exception(exc) from exc

    return StreamingResponse(
        stream.body,
        media_type=stream.media_type,
        headers=STREAM_HEADERS,
    )


__all__ = ["get_session", "router", "to_http_exception"]
