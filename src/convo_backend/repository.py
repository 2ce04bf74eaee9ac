"""SQLite-backed repository for conversations."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from .errors import PersistenceError
from .schemas.chat import Conversation, ConversationSummary, decode_entries, encode_entries

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_db_timestamp(value: str | None) -> datetime | None:
    """Parse a stored timestamp and normalize to UTC."""

    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _row_to_conversation(row: aiosqlite.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        entries=decode_entries(row["entries"] or "[]"),
        created_at=_parse_db_timestamp(row["created_at"]),
        updated_at=_parse_db_timestamp(row["updated_at"]),
    )


class ConversationTransaction:
    """Handle for a single write transaction on the conversation store."""

    def __init__(self, connection: aiosqlite.Connection):
        self._connection = connection
        self._finished = False

    async def fetch(self, user_id: int, conversation_id: str) -> Conversation | None:
        cursor = await self._connection.execute(
            """
            SELECT id, user_id, title, entries, created_at, updated_at
            FROM conversations
            WHERE user_id = ? AND id = ?
            LIMIT 1
            """,
            (user_id, conversation_id),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return _row_to_conversation(row)

    async def save(self, conversation: Conversation) -> None:
        """Write title and entries back for an existing conversation."""

        cursor = await self._connection.execute(
            """
            UPDATE conversations
            SET title = ?, entries = ?, updated_at = ?
            WHERE user_id = ? AND id = ?
            """,
            (
                conversation.title,
                encode_entries(conversation.entries),
                _utcnow_iso(),
                conversation.user_id,
                conversation.id,
            ),
        )
        updated = cursor.rowcount
        await cursor.close()
        if updated != 1:
            raise PersistenceError(
                f"Conversation {conversation.id} could not be updated"
            )

    async def commit(self) -> None:
        await self._connection.execute("COMMIT")
        self._finished = True

    async def rollback(self) -> None:
        if self._finished:
            return
        self._finished = True
        await self._connection.execute("ROLLBACK")


class ConversationRepository:
    """Persist conversations and their serialized turn entries.

    A single connection is shared; the lock serializes statements so that an
    open transaction never interleaves with other reads or writes.
    """

    def __init__(self, database_path: Path):
        self._path = database_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the SQLite connection and ensure tables exist."""

        if self._connection is not None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; transactions are opened explicitly with BEGIN.
        self._connection = await aiosqlite.connect(self._path, isolation_level=None)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                user_id INTEGER NOT NULL,
                title TEXT NOT NULL,
                entries TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_conversations_user_id ON conversations(user_id);
            """
        )

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    @property
    def _conn(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise PersistenceError("Conversation repository is not initialized")
        return self._connection

    async def create_conversation(self, user_id: int, *, title: str = DEFAULT_TITLE) -> str:
        conversation_id = str(uuid.uuid4())
        now = _utcnow_iso()
        async with self._lock:
            await self._conn.execute(
                """
                INSERT INTO conversations(id, user_id, title, entries, created_at, updated_at)
                VALUES (?, ?, ?, '[]', ?, ?)
                """,
                (conversation_id, user_id, title, now, now),
            )
        logger.info("Created conversation %s for user %s", conversation_id, user_id)
        return conversation_id

    async def list_conversations(self, user_id: int) -> list[ConversationSummary]:
        async with self._lock:
            cursor = await self._conn.execute(
                """
                SELECT id, title, updated_at
                FROM conversations
                WHERE user_id = ?
                ORDER BY updated_at DESC
                """,
                (user_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [
            ConversationSummary(
                id=row["id"],
                title=row["title"],
                updated_at=_parse_db_timestamp(row["updated_at"]),
            )
            for row in rows
        ]

    async def get_conversation(
        self, user_id: int, conversation_id: str
    ) -> Conversation | None:
        """Plain read outside of any transaction."""

        async with self._lock:
            cursor = await self._conn.execute(
                """
                SELECT id, user_id, title, entries, created_at, updated_at
                FROM conversations
                WHERE user_id = ? AND id = ?
                LIMIT 1
                """,
                (user_id, conversation_id),
            )
            row = await cursor.fetchone()
            await cursor.close()
        if row is None:
            return None
        return _row_to_conversation(row)

    async def update_title(self, user_id: int, conversation_id: str, title: str) -> bool:
        async with self._lock:
            cursor = await self._conn.execute(
                """
                UPDATE conversations
                SET title = ?, updated_at = ?
                WHERE user_id = ? AND id = ?
                """,
                (title, _utcnow_iso(), user_id, conversation_id),
            )
            updated = cursor.rowcount
            await cursor.close()
        return bool(updated)

    async def delete_conversation(
        self, user_id: int, conversation_id: str
    ) -> Conversation | None:
        """Delete a conversation and return what was removed."""

        async with self.transaction() as tx:
            conversation = await tx.fetch(user_id, conversation_id)
            if conversation is None:
                return None
            await self._conn.execute(
                "DELETE FROM conversations WHERE user_id = ? AND id = ?",
                (user_id, conversation_id),
            )
            await tx.commit()
        return conversation

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[ConversationTransaction]:
        """Open a write transaction; it is rolled back unless committed."""

        async with self._lock:
            try:
                await self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise PersistenceError(f"Could not start a transaction: {exc}") from exc
            tx = ConversationTransaction(self._conn)
            try:
                yield tx
            except BaseException:
                await tx.rollback()
                raise
            else:
                await tx.rollback()


__all__ = [
    "DEFAULT_TITLE",
    "ConversationRepository",
    "ConversationTransaction",
]
