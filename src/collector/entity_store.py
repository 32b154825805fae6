"""
PostgreSQL entity storage for users, chats and messages.

Uses ``asyncpg`` for async database access.  All queries use parameterized
placeholders ($1, $2, ...) — **never** string interpolation — to prevent
SQL injection.

Every public operation is a single statement and therefore independently
atomic.  No transaction spans entity kinds: a user upsert that succeeded
stays in place even if the chat upsert or message insert for the same
update fails afterwards.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Dict, Optional, TypeVar

import asyncpg

from collector.models import Chat, Message, NewChat, NewMessage, NewUser, User
from shared.errors import StorageError

logger = logging.getLogger("collector.entity_store")

T = TypeVar("T")

_USER_COLUMNS = (
    "id, telegram_user_id, username, first_name, last_name, phone_number, "
    "is_bot, is_verified, is_premium, language_code, created_at, updated_at"
)

_CHAT_COLUMNS = (
    "id, telegram_chat_id, chat_type, title, username, description, invite_link, "
    "member_count, is_verified, is_restricted, is_scam, is_fake, created_at, updated_at"
)

_MESSAGE_INSERT_COLUMNS = (
    "id, telegram_message_id, telegram_chat_id, user_id, chat_id, message_text, "
    "message_type, date, edit_date, forward_from_user_id, forward_from_chat_id, "
    "forward_date, reply_to_message_id, media_file_id, media_file_unique_id, "
    "media_file_size, media_mime_type, media_file_name, location_latitude, "
    "location_longitude, contact_phone_number, contact_first_name, contact_last_name"
)

_MESSAGE_COLUMNS = _MESSAGE_INSERT_COLUMNS + ", created_at"

_UPSERT_USER_SQL = f"""
    INSERT INTO users (
        id, telegram_user_id, username, first_name, last_name, phone_number,
        is_bot, is_verified, is_premium, language_code, created_at, updated_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, NOW(), NOW())
    ON CONFLICT (telegram_user_id)
    DO UPDATE SET
        username = EXCLUDED.username,
        first_name = EXCLUDED.first_name,
        last_name = EXCLUDED.last_name,
        phone_number = EXCLUDED.phone_number,
        is_bot = EXCLUDED.is_bot,
        is_verified = EXCLUDED.is_verified,
        is_premium = EXCLUDED.is_premium,
        language_code = EXCLUDED.language_code,
        updated_at = NOW()
    RETURNING {_USER_COLUMNS}
"""

_UPSERT_CHAT_SQL = f"""
    INSERT INTO chats (
        id, telegram_chat_id, chat_type, title, username, description, invite_link,
        member_count, is_verified, is_restricted, is_scam, is_fake, created_at, updated_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, NOW(), NOW())
    ON CONFLICT (telegram_chat_id)
    DO UPDATE SET
        chat_type = EXCLUDED.chat_type,
        title = EXCLUDED.title,
        username = EXCLUDED.username,
        description = EXCLUDED.description,
        invite_link = EXCLUDED.invite_link,
        member_count = EXCLUDED.member_count,
        is_verified = EXCLUDED.is_verified,
        is_restricted = EXCLUDED.is_restricted,
        is_scam = EXCLUDED.is_scam,
        is_fake = EXCLUDED.is_fake,
        updated_at = NOW()
    RETURNING {_CHAT_COLUMNS}
"""

_INSERT_MESSAGE_SQL = f"""
    INSERT INTO messages ({_MESSAGE_INSERT_COLUMNS}, created_at)
    VALUES (
        $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15,
        $16, $17, $18, $19, $20, $21, $22, $23, NOW()
    )
    ON CONFLICT (telegram_chat_id, telegram_message_id) DO NOTHING
    RETURNING {_MESSAGE_COLUMNS}
"""

_STORAGE_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)


class EntityStore:
    """Manages user, chat and message persistence in PostgreSQL.

    Args:
        pool: An ``asyncpg`` connection pool (created via
              :func:`shared.db.get_connection_pool`).
    """

    def __init__(self, pool: asyncpg.Pool, log: Optional[logging.Logger] = None) -> None:
        self._pool = pool
        self._log = log or logger

    async def _run(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except _STORAGE_ERRORS as exc:
            raise StorageError(f"{operation} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def upsert_user(self, candidate: NewUser) -> User:
        """Insert a user, or refresh its mutable fields if it already exists.

        Returns:
            The stored row.  On conflict the existing surrogate ``id`` and
            ``created_at`` are kept and ``updated_at`` advances.
        """
        record = await self._run(
            "upsert_user",
            self._pool.fetchrow(
                _UPSERT_USER_SQL,
                uuid.uuid4(),
                candidate.telegram_user_id,
                candidate.username,
                candidate.first_name,
                candidate.last_name,
                candidate.phone_number,
                candidate.is_bot,
                candidate.is_verified,
                candidate.is_premium,
                candidate.language_code,
            ),
        )
        user = User.from_record(record)
        self._log.debug(
            "Upserted user telegram_user_id=%d id=%s", user.telegram_user_id, user.id
        )
        return user

    async def find_user_by_remote_id(self, telegram_user_id: int) -> Optional[User]:
        record = await self._run(
            "find_user_by_remote_id",
            self._pool.fetchrow(
                f"SELECT {_USER_COLUMNS} FROM users WHERE telegram_user_id = $1",
                telegram_user_id,
            ),
        )
        return User.from_record(record) if record is not None else None

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    async def upsert_chat(self, candidate: NewChat) -> Chat:
        """Insert a chat, or refresh its mutable fields if it already exists."""
        record = await self._run(
            "upsert_chat",
            self._pool.fetchrow(
                _UPSERT_CHAT_SQL,
                uuid.uuid4(),
                candidate.telegram_chat_id,
                candidate.chat_type.value,
                candidate.title,
                candidate.username,
                candidate.description,
                candidate.invite_link,
                candidate.member_count,
                candidate.is_verified,
                candidate.is_restricted,
                candidate.is_scam,
                candidate.is_fake,
            ),
        )
        chat = Chat.from_record(record)
        self._log.debug(
            "Upserted chat telegram_chat_id=%d id=%s", chat.telegram_chat_id, chat.id
        )
        return chat

    async def find_chat_by_remote_id(self, telegram_chat_id: int) -> Optional[Chat]:
        record = await self._run(
            "find_chat_by_remote_id",
            self._pool.fetchrow(
                f"SELECT {_CHAT_COLUMNS} FROM chats WHERE telegram_chat_id = $1",
                telegram_chat_id,
            ),
        )
        return Chat.from_record(record) if record is not None else None

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def insert_message(self, candidate: NewMessage) -> Optional[Message]:
        """Insert a message unless ``(telegram_chat_id, telegram_message_id)`` exists.

        Returns:
            The stored row, or ``None`` when the insert was suppressed as a
            duplicate.  A duplicate is a normal outcome, not an error.

        Raises:
            StorageError: On any other database failure.
        """
        record = await self._run(
            "insert_message",
            self._pool.fetchrow(
                _INSERT_MESSAGE_SQL,
                uuid.uuid4(),
                candidate.telegram_message_id,
                candidate.telegram_chat_id,
                candidate.user_id,
                candidate.chat_id,
                candidate.message_text,
                candidate.message_type.value,
                candidate.date,
                candidate.edit_date,
                candidate.forward_from_user_id,
                candidate.forward_from_chat_id,
                candidate.forward_date,
                candidate.reply_to_message_id,
                candidate.media_file_id,
                candidate.media_file_unique_id,
                candidate.media_file_size,
                candidate.media_mime_type,
                candidate.media_file_name,
                candidate.location_latitude,
                candidate.location_longitude,
                candidate.contact_phone_number,
                candidate.contact_first_name,
                candidate.contact_last_name,
            ),
        )
        if record is None:
            return None
        return Message.from_record(record)

    async def find_message(
        self, telegram_chat_id: int, telegram_message_id: int
    ) -> Optional[Message]:
        record = await self._run(
            "find_message",
            self._pool.fetchrow(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM messages
                WHERE telegram_chat_id = $1 AND telegram_message_id = $2
                """,
                telegram_chat_id,
                telegram_message_id,
            ),
        )
        return Message.from_record(record) if record is not None else None

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def get_stats(self) -> Dict[str, Any]:
        """Return summary statistics for the periodic status log."""

        async def _collect() -> Dict[str, Any]:
            async with self._pool.acquire() as conn:
                total_users = await conn.fetchval("SELECT COUNT(*) FROM users")
                total_chats = await conn.fetchval("SELECT COUNT(*) FROM chats")
                total_messages = await conn.fetchval("SELECT COUNT(*) FROM messages")
                newest = await conn.fetchval("SELECT MAX(date) FROM messages")
                oldest = await conn.fetchval("SELECT MIN(date) FROM messages")
            return {
                "total_users": total_users or 0,
                "total_chats": total_chats or 0,
                "total_messages": total_messages or 0,
                "newest_message": newest.isoformat() if newest else None,
                "oldest_message": oldest.isoformat() if oldest else None,
            }

        return await self._run("get_stats", _collect())
