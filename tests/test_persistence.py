from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from convo_backend.chat.persistence import (
    CompletedTurn,
    PersistState,
    TurnPersistence,
    truncation_point,
)
from convo_backend.errors import InvalidEditTarget, NotFound, NotifierError, PersistenceError
from convo_backend.repository import DEFAULT_TITLE, ConversationRepository
from convo_backend.schemas.chat import TextEntry, VoiceEntry
from convo_backend.services.media import MediaStore


def seeded_entries(turns: int) -> list[TextEntry]:
    entries: list[TextEntry] = []
    for index in range(turns):
        entries.append(TextEntry(id=2 * index, role="user", content=f"question {index}"))
        entries.append(TextEntry(id=2 * index + 1, role="assistant", content=f"answer {index}"))
    return entries


async def seed_turns(repository: ConversationRepository, user_id: int, turns: int) -> str:
    conversation_id = await repository.create_conversation(user_id)
    entries = seeded_entries(turns)
    async with repository.transaction() as tx:
        conversation = await tx.fetch(user_id, conversation_id)
        assert conversation is not None
        await tx.save(conversation.model_copy(update={"title": "Seeded", "entries": entries}))
        await tx.commit()
    return conversation_id


def make_turn(conversation_id: str, **overrides) -> CompletedTurn:
    values = dict(
        user_id=1,
        conversation_id=conversation_id,
        edit_target=-1,
        message_type="text",
        user_text="hello there world and more",
        assistant_text="Hi! How can I help?",
        credits_remaining=5.0,
        token="token-1",
    )
    values.update(overrides)
    return CompletedTurn(**values)


@pytest.fixture
def notifier() -> AsyncMock:
    mock = AsyncMock()
    mock.notify = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def persistence(repository, media_store, notifier) -> TurnPersistence:
    return TurnPersistence(repository, media_store, notifier)


@pytest.mark.parametrize(
    ("edit_target", "count", "expected"),
    [(-1, 0, 0), (-1, 6, 6), (0, 6, 0), (1, 6, 2), (2, 6, 4)],
)
def test_truncation_point(edit_target: int, count: int, expected: int) -> None:
    assert truncation_point(edit_target, count) == expected


@pytest.mark.parametrize(("edit_target", "count"), [(3, 6), (0, 0), (-2, 6), (1, 2)])
def test_truncation_point_rejects_out_of_range(edit_target: int, count: int) -> None:
    with pytest.raises(InvalidEditTarget):
        truncation_point(edit_target, count)


@pytest.mark.asyncio
async def test_first_turn_sets_title_and_appends_pair(
    persistence: TurnPersistence, repository, notifier
) -> None:
    conversation_id = await repository.create_conversation(1)

    result = await persistence.commit_turn(make_turn(conversation_id))

    assert result.state is PersistState.COMMITTED
    assert result.error is None
    stored = await repository.get_conversation(1, conversation_id)
    assert stored is not None
    assert stored.title == "hello there world"
    assert [entry.role for entry in stored.entries] == ["user", "assistant"]
    assert [entry.id for entry in stored.entries] == [0, 1]
    assert stored.entries[0].content == "hello there world and more"
    assert stored.entries[1].content == "Hi! How can I help?"
    notifier.notify.assert_awaited_once_with(
        user_id=1, credits_remaining=5.0, token="token-1"
    )


@pytest.mark.asyncio
async def test_first_turn_with_long_words_keeps_existing_title_prefix(
    persistence: TurnPersistence, repository
) -> None:
    conversation_id = await repository.create_conversation(
        1, title="A rather long pre-existing conversation title"
    )

    await persistence.commit_turn(
        make_turn(conversation_id, user_text="incomprehensibilities counterrevolutionaries x")
    )

    stored = await repository.get_conversation(1, conversation_id)
    assert stored is not None
    assert stored.title == "A rather long pre-existing con"


@pytest.mark.asyncio
async def test_later_turns_keep_title(persistence: TurnPersistence, repository) -> None:
    conversation_id = await seed_turns(repository, 1, 2)

    await persistence.commit_turn(make_turn(conversation_id, user_text="new words here"))

    stored = await repository.get_conversation(1, conversation_id)
    assert stored is not None
    assert stored.title == "Seeded"
    assert len(stored.entries) == 6
    assert [entry.id for entry in stored.entries] == list(range(6))


@pytest.mark.asyncio
@pytest.mark.parametrize("edit_target", [0, 1, 2])
async def test_edit_truncates_to_two_n_before_append(
    persistence: TurnPersistence, repository, edit_target: int
) -> None:
    conversation_id = await seed_turns(repository, 1, 3)

    result = await persistence.commit_turn(
        make_turn(conversation_id, edit_target=edit_target, user_text="edited question")
    )

    assert result.committed
    stored = await repository.get_conversation(1, conversation_id)
    assert stored is not None
    assert len(stored.entries) == 2 * edit_target + 2
    assert stored.entries[: 2 * edit_target] == seeded_entries(edit_target)
    assert stored.entries[-2].content == "edited question"
    assert stored.entries[-2].id == 2 * edit_target


@pytest.mark.asyncio
async def test_out_of_range_edit_is_rejected_without_mutation(
    persistence: TurnPersistence, repository, notifier
) -> None:
    conversation_id = await seed_turns(repository, 1, 2)

    result = await persistence.commit_turn(make_turn(conversation_id, edit_target=2))

    assert result.state is PersistState.ROLLED_BACK
    assert isinstance(result.error, InvalidEditTarget)
    stored = await repository.get_conversation(1, conversation_id)
    assert stored is not None
    assert len(stored.entries) == 4
    notifier.notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_conversation_is_not_found(persistence: TurnPersistence) -> None:
    result = await persistence.commit_turn(make_turn("does-not-exist"))

    assert result.state is PersistState.ROLLED_BACK
    assert isinstance(result.error, NotFound)


@pytest.mark.asyncio
async def test_notifier_failure_rolls_back(
    persistence: TurnPersistence, repository, notifier
) -> None:
    conversation_id = await seed_turns(repository, 1, 1)
    before = await repository.get_conversation(1, conversation_id)
    notifier.notify.side_effect = NotifierError("billing down")

    result = await persistence.commit_turn(make_turn(conversation_id))

    assert result.state is PersistState.ROLLED_BACK
    assert isinstance(result.error, NotifierError)
    after = await repository.get_conversation(1, conversation_id)
    assert after is not None and before is not None
    assert after.entries == before.entries
    assert after.title == before.title


@pytest.mark.asyncio
async def test_voice_turn_saves_recording(
    persistence: TurnPersistence, repository, media_store: MediaStore
) -> None:
    conversation_id = await seed_turns(repository, 1, 1)

    result = await persistence.commit_turn(
        make_turn(
            conversation_id,
            message_type="voice",
            user_text="transcribed words",
            voice_audio=b"RIFFdata",
            voice_filename="clip.webm",
            assistant_audio=b"RIFFreply",
        )
    )

    assert result.committed
    stored = await repository.get_conversation(1, conversation_id)
    assert stored is not None
    user_entry, assistant_entry = stored.entries[2:]
    assert isinstance(user_entry, VoiceEntry)
    assert user_entry.content == f"voice/{conversation_id}-2.webm"
    assert user_entry.transcription == "transcribed words"
    assert isinstance(assistant_entry, VoiceEntry)
    assert assistant_entry.content == f"voice/{conversation_id}-3-reply.wav"
    assert await media_store.read(user_entry.content) == b"RIFFdata"
    assert await media_store.read(assistant_entry.content) == b"RIFFreply"


@pytest.mark.asyncio
async def test_failed_voice_turn_removes_saved_recording(
    persistence: TurnPersistence, repository, media_store: MediaStore, notifier
) -> None:
    conversation_id = await repository.create_conversation(1)
    notifier.notify.side_effect = NotifierError("billing down")

    await persistence.commit_turn(
        make_turn(
            conversation_id,
            message_type="voice",
            voice_audio=b"RIFFdata",
            voice_filename=None,
        )
    )

    assert not media_store.resolve(f"voice/{conversation_id}-0").exists()
    stored = await repository.get_conversation(1, conversation_id)
    assert stored is not None
    assert stored.entries == []
    assert stored.title == DEFAULT_TITLE


class RefusingReplyStore(MediaStore):
    async def save(self, relative_path: str, data: bytes) -> str:
        if relative_path.endswith("-reply.wav"):
            raise ValueError(f"Media path {relative_path!r} escapes the media root")
        return await super().save(relative_path, data)


@pytest.mark.asyncio
async def test_unexpected_media_error_rolls_back_and_cleans_up(
    repository, media_store: MediaStore, notifier
) -> None:
    store = RefusingReplyStore(media_store.root)
    persistence = TurnPersistence(repository, store, notifier)
    conversation_id = await repository.create_conversation(1)

    result = await persistence.commit_turn(
        make_turn(
            conversation_id,
            message_type="voice",
            voice_audio=b"RIFFdata",
            voice_filename="clip.ogg",
            assistant_audio=b"RIFFreply",
        )
    )

    assert result.state is PersistState.ROLLED_BACK
    assert isinstance(result.error, PersistenceError)
    assert not store.resolve(f"voice/{conversation_id}-0.ogg").exists()
    notifier.notify.assert_not_awaited()
    stored = await repository.get_conversation(1, conversation_id)
    assert stored is not None
    assert stored.entries == []
