"""
Transactional commit of a finished turn.

The run moves through ``Idle → TransactionOpen → Validated → Committed`` and
lands in ``RolledBack`` on any failure. The conversation is re-read inside
the transaction; that read is the one every decision is based on. The billing
notifier is called before ``COMMIT`` so a rejected notification leaves the
stored conversation untouched.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..errors import InvalidEditTarget, NotFound, PersistenceError, TurnError
from ..repository import ConversationRepository
from ..schemas.chat import Conversation, MessageType, TextEntry, TurnEntry, VoiceEntry
from ..services.media import MediaStore, media_name
from ..services.notifier import BillingNotifier
from ..services.title_service import derive_title

logger = logging.getLogger(__name__)

VOICE_DIRECTORY = "voice"
APPEND = -1


class PersistState(str, Enum):
    IDLE = "idle"
    TRANSACTION_OPEN = "transaction_open"
    VALIDATED = "validated"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class CompletedTurn:
    """Everything the pipeline accumulated for one turn."""

    user_id: int
    conversation_id: str
    edit_target: int
    message_type: MessageType
    user_text: str
    assistant_text: str
    credits_remaining: float
    token: Optional[str] = None
    image_paths: list[str] = field(default_factory=list)
    voice_audio: Optional[bytes] = None
    voice_filename: Optional[str] = None
    assistant_audio: Optional[bytes] = None


@dataclass
class PersistResult:
    state: PersistState = PersistState.IDLE
    conversation: Optional[Conversation] = None
    error: Optional[TurnError] = None

    @property
    def committed(self) -> bool:
        return self.state is PersistState.COMMITTED


def truncation_point(edit_target: int, entry_count: int) -> int:
    """Return the entry index the new pair is written at.

    Raises ``InvalidEditTarget`` unless ``edit_target`` is ``-1`` or addresses
    an existing user turn.
    """
    if edit_target == APPEND:
        return entry_count
    if 0 <= edit_target < entry_count // 2:
        return edit_target * 2
    raise InvalidEditTarget(
        f"The message ID {edit_target} is invalid or out of range"
    )


class TurnPersistence:
    """Write the user/assistant pair, notify billing, then commit."""

    def __init__(
        self,
        repository: ConversationRepository,
        media_store: MediaStore,
        notifier: BillingNotifier,
    ):
        self._repository = repository
        self._media = media_store
        self._notifier = notifier

    async def commit_turn(self, turn: CompletedTurn) -> PersistResult:
        result = PersistResult()
        saved_media: list[str] = []
        try:
            async with self._repository.transaction() as tx:
                result.state = PersistState.TRANSACTION_OPEN

                conversation = await tx.fetch(turn.user_id, turn.conversation_id)
                if conversation is None:
                    raise NotFound(
                        f"Conversation '{turn.conversation_id}' does not exist"
                    )
                index = truncation_point(turn.edit_target, len(conversation.entries))
                result.state = PersistState.VALIDATED

                entries: list[TurnEntry] = list(conversation.entries[:index])
                title = conversation.title
                if index == 0:
                    title = derive_title(turn.user_text, conversation.title)

                user_entry, assistant_entry = await self._build_pair(
                    turn, index, saved_media
                )
                entries.extend((user_entry, assistant_entry))
                updated = conversation.model_copy(
                    update={"title": title, "entries": entries}
                )
                await tx.save(updated)

                await self._notifier.notify(
                    user_id=turn.user_id,
                    credits_remaining=turn.credits_remaining,
                    token=turn.token,
                )
                await tx.commit()
                result.state = PersistState.COMMITTED
                result.conversation = updated
        except TurnError as exc:
            result.error = exc
        # ValueError covers refused media paths and pydantic validation errors.
        except (sqlite3.Error, OSError, ValueError) as exc:
            result.error = PersistenceError(f"Failed to save the turn: {exc}")

        if result.error is not None:
            result.state = PersistState.ROLLED_BACK
            logger.error(
                "Turn for conversation %s rolled back: %s",
                turn.conversation_id,
                result.error,
            )
            if saved_media:
                await self._media.delete_many(saved_media)
        else:
            logger.info(
                "Committed turn for conversation %s (user %s)",
                turn.conversation_id,
                turn.user_id,
            )
        return result

    async def _build_pair(
        self, turn: CompletedTurn, index: int, saved_media: list[str]
    ) -> tuple[TurnEntry, TurnEntry]:
        user_entry: TurnEntry
        if turn.message_type == "voice":
            voice_path = media_name(
                VOICE_DIRECTORY, f"{turn.conversation_id}-{index}", turn.voice_filename
            )
            await self._media.save(voice_path, turn.voice_audio or b"")
            saved_media.append(voice_path)
            user_entry = VoiceEntry(
                id=index,
                role="user",
                content=voice_path,
                transcription=turn.user_text,
                images=list(turn.image_paths),
            )
        else:
            user_entry = TextEntry(
                id=index,
                role="user",
                content=turn.user_text,
                images=list(turn.image_paths),
            )

        assistant_entry: TurnEntry
        if turn.assistant_audio:
            reply_path = f"{VOICE_DIRECTORY}/{turn.conversation_id}-{index + 1}-reply.wav"
            await self._media.save(reply_path, turn.assistant_audio)
            saved_media.append(reply_path)
            assistant_entry = VoiceEntry(
                id=index + 1,
                role="assistant",
                content=reply_path,
                transcription=turn.assistant_text,
            )
        else:
            assistant_entry = TextEntry(
                id=index + 1, role="assistant", content=turn.assistant_text
            )
        return user_entry, assistant_entry


__all__ = [
    "APPEND",
    "CompletedTurn",
    "PersistResult",
    "PersistState",
    "TurnPersistence",
    "truncation_point",
]
