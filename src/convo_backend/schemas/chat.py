"""Pydantic models for stored conversation entries and chat API payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

Role = Literal["user", "assistant"]
MessageType = Literal["text", "voice"]


class TextEntry(BaseModel):
    """A turn entry holding a literal message."""

    type: Literal["text"] = "text"
    id: int
    role: Role
    content: str
    images: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


class VoiceEntry(BaseModel):
    """A turn entry referencing a stored recording and its transcription."""

    type: Literal["voice"] = "voice"
    id: int
    role: Role
    content: str  # storage path of the audio file
    transcription: Optional[str] = None
    images: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


TurnEntry = Annotated[Union[TextEntry, VoiceEntry], Field(discriminator="type")]

_entries_adapter: TypeAdapter[list[TurnEntry]] = TypeAdapter(list[TurnEntry])


def decode_entries(raw: list[dict] | str | bytes) -> list[TurnEntry]:
    """Decode stored JSON entries into their tagged variants."""

    if isinstance(raw, (str, bytes)):
        return _entries_adapter.validate_json(raw)
    return _entries_adapter.validate_python(raw)


def encode_entries(entries: list[TurnEntry]) -> str:
    return _entries_adapter.dump_json(entries).decode("utf-8")


class Conversation(BaseModel):
    id: str
    user_id: int
    title: str
    entries: list[TurnEntry] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ConversationSummary(BaseModel):
    id: str
    title: str
    updated_at: Optional[datetime] = None


class CreateConversationResponse(BaseModel):
    conversation_id: str


class ConversationListResponse(BaseModel):
    conversations: list[ConversationSummary]


class ConversationResponse(BaseModel):
    id: str
    title: str
    messages: list[TurnEntry]


class EditTitleRequest(BaseModel):
    title: str = Field(min_length=1)


class StatusResponse(BaseModel):
    message: str = "success"


class TranscriptionResponse(BaseModel):
    text: str


__all__ = [
    "Conversation",
    "ConversationListResponse",
    "ConversationResponse",
    "ConversationSummary",
    "CreateConversationResponse",
    "EditTitleRequest",
    "MessageType",
    "Role",
    "StatusResponse",
    "TextEntry",
    "TranscriptionResponse",
    "TurnEntry",
    "VoiceEntry",
    "decode_entries",
    "encode_entries",
]
