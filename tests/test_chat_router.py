from __future__ import annotations

from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from convo_backend.chat.orchestrator import TurnRequest, TurnStream
from convo_backend.errors import AuthError, InsufficientCredit, UpstreamError
from convo_backend.routers.chat import router as chat_router
from convo_backend.routers.voice import router as voice_router
from convo_backend.schemas.chat import Conversation, ConversationSummary, TextEntry, VoiceEntry
from convo_backend.services.sessions import SessionData


class DummySessionLookup:
    def __init__(self) -> None:
        self.tokens: list[str] = []

    async def lookup(self, token: str) -> SessionData:
        self.tokens.append(token)
        if token != "good":
            raise AuthError("Invalid or expired session")
        return SessionData(user_id=1, credits_remaining=20.0, token=token)


class DummyRepository:
    def __init__(self) -> None:
        self.conversation = Conversation(
            id="c1",
            user_id=1,
            title="Existing",
            entries=[
                VoiceEntry(
                    id=0,
                    role="user",
                    content="voice/c1-0.webm",
                    transcription="hi",
                    images=["images/c1-0-0.png"],
                ),
                TextEntry(id=1, role="assistant", content="hello"),
            ],
        )
        self.titles: dict[str, str] = {}

    async def create_conversation(self, user_id: int) -> str:
        return "new-id"

    async def list_conversations(self, user_id: int) -> list[ConversationSummary]:
        return [ConversationSummary(id="c1", title="Existing")]

    async def get_conversation(self, user_id: int, conversation_id: str):
        return self.conversation if conversation_id == "c1" else None

    async def update_title(self, user_id: int, conversation_id: str, title: str) -> bool:
        if conversation_id != "c1":
            return False
        self.titles[conversation_id] = title
        return True

    async def delete_conversation(self, user_id: int, conversation_id: str):
        return self.conversation if conversation_id == "c1" else None


class DummyMediaStore:
    def __init__(self) -> None:
        self.deleted: list[str] = []

    async def delete_many(self, paths: list[str]) -> int:
        self.deleted.extend(paths)
        return len(paths)


class DummyOrchestrator:
    def __init__(self, frames: list[bytes], *, error: Exception | None = None) -> None:
        self.frames = frames
        self.error = error
        self.requests: list[TurnRequest] = []

    async def start_turn(self, request: TurnRequest, session: SessionData) -> TurnStream:
        self.requests.append(request)
        if self.error is not None:
            raise self.error

        async def body():
            for frame in self.frames:
                yield frame

        media_type = "audio/wav" if request.message_type == "voice" else "text/plain"
        return TurnStream(media_type=media_type, body=body())


class DummyTranscriber:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error

    async def transcribe(self, audio: bytes, filename: str | None = None) -> str:
        if self.error is not None:
            raise self.error
        return f"{len(audio)} bytes from {filename}"


def make_client(**state: Any) -> TestClient:
    app = FastAPI()
    app.state.session_lookup = state.get("session_lookup", DummySessionLookup())
    app.state.repository = state.get("repository", DummyRepository())
    app.state.media_store = state.get("media_store", DummyMediaStore())
    app.state.turn_orchestrator = state.get("orchestrator", DummyOrchestrator([b"ok"]))
    app.state.transcriber = state.get("transcriber", DummyTranscriber())
    app.include_router(chat_router)
    app.include_router(voice_router)
    return TestClient(app)


AUTH = {"Authorization": "Bearer good"}


def test_missing_or_invalid_token_is_unauthorized() -> None:
    client = make_client()

    assert client.get("/api/chat/conversation").status_code == 401
    response = client.get("/api/chat/conversation", headers={"Authorization": "Bearer bad"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or expired session"


def test_conversation_crud_routes() -> None:
    repository = DummyRepository()
    media_store = DummyMediaStore()
    client = make_client(repository=repository, media_store=media_store)

    created = client.post("/api/chat/conversation", headers=AUTH)
    assert created.json() == {"conversation_id": "new-id"}

    listed = client.get("/api/chat/conversation", headers=AUTH).json()
    assert listed["conversations"][0]["id"] == "c1"

    fetched = client.get("/api/chat/conversation/c1", headers=AUTH).json()
    assert fetched["title"] == "Existing"
    assert fetched["messages"][0]["type"] == "voice"
    assert fetched["messages"][1] == {
        "type": "text",
        "id": 1,
        "role": "assistant",
        "content": "hello",
        "images": [],
    }

    assert client.get("/api/chat/conversation/nope", headers=AUTH).status_code == 404

    renamed = client.patch(
        "/api/chat/conversation/c1/title", json={"title": "Renamed"}, headers=AUTH
    )
    assert renamed.json() == {"message": "success"}
    assert repository.titles == {"c1": "Renamed"}
    assert (
        client.patch(
            "/api/chat/conversation/c1/title", json={"title": ""}, headers=AUTH
        ).status_code
        == 422
    )

    deleted = client.delete("/api/chat/conversation/c1", headers=AUTH)
    assert deleted.status_code == 200
    assert sorted(media_store.deleted) == ["images/c1-0-0.png", "voice/c1-0.webm"]


def test_text_turn_streams_with_headers() -> None:
    orchestrator = DummyOrchestrator([b"Hel", b"lo"])
    client = make_client(orchestrator=orchestrator)

    response = client.post(
        "/api/chat/conversation/c1/turn",
        data={"message_type": "text", "message": "hi", "model": "gpt-4o"},
        headers=AUTH,
    )

    assert response.status_code == 200
    assert response.text == "Hello"
    assert response.headers["content-type"].startswith("text/plain")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["connection"] == "keep-alive"
    (request,) = orchestrator.requests
    assert request.edit_target == -1
    assert request.images == []


def test_voice_turn_forwards_uploads() -> None:
    orchestrator = DummyOrchestrator([b"RIFF", b"data"])
    client = make_client(orchestrator=orchestrator)

    response = client.post(
        "/api/chat/conversation/c1/turn",
        data={"message_type": "voice", "model": "gpt-4o", "edit_target": "0"},
        files=[
            ("voice", ("clip.webm", b"voice-bytes", "audio/webm")),
            ("images", ("a.png", b"img-a", "image/png")),
            ("images", ("b.jpg", b"img-b", "image/jpeg")),
        ],
        headers=AUTH,
    )

    assert response.status_code == 200
    assert response.content == b"RIFFdata"
    assert response.headers["content-type"] == "audio/wav"
    (request,) = orchestrator.requests
    assert request.voice == b"voice-bytes"
    assert request.voice_filename == "clip.webm"
    assert request.edit_target == 0
    assert [(image.filename, image.data) for image in request.images] == [
        ("a.png", b"img-a"),
        ("b.jpg", b"img-b"),
    ]


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (InsufficientCredit("Insufficient credits"), 403),
        (UpstreamError("Failed to transcribe"), 502),
    ],
)
def test_turn_errors_map_to_status_codes(error: Exception, status_code: int) -> None:
    client = make_client(orchestrator=DummyOrchestrator([], error=error))

    response = client.post(
        "/api/chat/conversation/c1/turn",
        data={"message_type": "text", "message": "hi", "model": "gpt-4o"},
        headers=AUTH,
    )

    assert response.status_code == status_code
    assert response.json()["detail"] == str(error)


def test_transcribe_route() -> None:
    client = make_client()

    response = client.post(
        "/api/voice/transcribe",
        files={"voice": ("note.ogg", b"12345", "audio/ogg")},
        headers=AUTH,
    )

    assert response.status_code == 200
    assert response.json() == {"text": "5 bytes from note.ogg"}


def test_transcribe_route_maps_upstream_error() -> None:
    client = make_client(transcriber=DummyTranscriber(UpstreamError("whisper down")))

    response = client.post(
        "/api/voice/transcribe",
        files={"voice": ("note.ogg", b"12345", "audio/ogg")},
        headers=AUTH,
    )

    assert response.status_code == 502
