"""
Tests for collector.entity_store.

The unit tests run against a mocked asyncpg pool.  The integration tests
at the bottom need a disposable PostgreSQL database named by
``TEST_DATABASE_URL`` and are skipped otherwise.
"""

import os
import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest
import pytest_asyncio

from collector.entity_store import (
    _INSERT_MESSAGE_SQL,
    _UPSERT_CHAT_SQL,
    _UPSERT_USER_SQL,
    EntityStore,
)
from collector.models import ChatKind, MessageKind, NewChat, NewMessage, NewUser
from shared.db import get_connection_pool, init_database
from shared.errors import StorageError

NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def _user_record(**overrides):
    record = {
        "id": uuid.uuid4(),
        "telegram_user_id": 1001,
        "username": "alice",
        "first_name": "Alice",
        "last_name": None,
        "phone_number": None,
        "is_bot": False,
        "is_verified": False,
        "is_premium": False,
        "language_code": "en",
        "created_at": NOW,
        "updated_at": NOW,
    }
    record.update(overrides)
    return record


def _chat_record(**overrides):
    record = {
        "id": uuid.uuid4(),
        "telegram_chat_id": -2002,
        "chat_type": "group",
        "title": "Study Group",
        "username": None,
        "description": None,
        "invite_link": None,
        "member_count": 12,
        "is_verified": False,
        "is_restricted": False,
        "is_scam": False,
        "is_fake": False,
        "created_at": NOW,
        "updated_at": NOW,
    }
    record.update(overrides)
    return record


def _message_record(candidate: NewMessage):
    record = {
        "id": uuid.uuid4(),
        "created_at": NOW,
        **candidate.__dict__,
    }
    record["message_type"] = candidate.message_type.value
    return record


def _new_message(chat_id=None, **overrides) -> NewMessage:
    params = {
        "telegram_message_id": 100,
        "telegram_chat_id": -2002,
        "chat_id": chat_id or uuid.uuid4(),
        "message_type": MessageKind.TEXT,
        "date": NOW,
        "message_text": "Hello",
    }
    params.update(overrides)
    return NewMessage(**params)


@pytest.fixture
def mock_pool():
    pool = MagicMock()
    pool.fetchrow = AsyncMock()
    return pool


# ---------------------------------------------------------------------------
# Users and chats
# ---------------------------------------------------------------------------


class TestUpsert:

    @pytest.mark.asyncio
    async def test_upsert_user_binds_candidate_fields(self, mock_pool):
        mock_pool.fetchrow.return_value = _user_record()
        store = EntityStore(mock_pool)

        user = await store.upsert_user(NewUser(telegram_user_id=1001, username="alice", first_name="Alice"))

        args = mock_pool.fetchrow.call_args[0]
        assert "ON CONFLICT (telegram_user_id)" in args[0]
        assert isinstance(args[1], uuid.UUID)
        assert args[2] == 1001
        assert args[3] == "alice"
        assert user.telegram_user_id == 1001
        assert user.first_name == "Alice"

    @pytest.mark.asyncio
    async def test_upsert_chat_stores_kind_as_text(self, mock_pool):
        mock_pool.fetchrow.return_value = _chat_record()
        store = EntityStore(mock_pool)

        chat = await store.upsert_chat(NewChat(telegram_chat_id=-2002, chat_type=ChatKind.GROUP))

        args = mock_pool.fetchrow.call_args[0]
        assert args[3] == "group"
        assert chat.chat_type is ChatKind.GROUP

    @pytest.mark.asyncio
    async def test_find_missing_user_returns_none(self, mock_pool):
        mock_pool.fetchrow.return_value = None
        assert await EntityStore(mock_pool).find_user_by_remote_id(1) is None

    @pytest.mark.asyncio
    async def test_find_chat(self, mock_pool):
        mock_pool.fetchrow.return_value = _chat_record(chat_type="channel")
        chat = await EntityStore(mock_pool).find_chat_by_remote_id(-2002)
        assert chat.chat_type is ChatKind.CHANNEL

    @pytest.mark.asyncio
    async def test_database_error_becomes_storage_error(self, mock_pool):
        mock_pool.fetchrow.side_effect = asyncpg.InterfaceError("connection is closed")
        with pytest.raises(StorageError, match="upsert_user"):
            await EntityStore(mock_pool).upsert_user(NewUser(telegram_user_id=1))

    @pytest.mark.asyncio
    async def test_connection_loss_becomes_storage_error(self, mock_pool):
        mock_pool.fetchrow.side_effect = ConnectionResetError("reset")
        with pytest.raises(StorageError):
            await EntityStore(mock_pool).upsert_chat(
                NewChat(telegram_chat_id=1, chat_type=ChatKind.PRIVATE)
            )


def _conflict_assignments(sql):
    """Map column -> expression for the ``DO UPDATE SET`` clause."""
    clause = sql.split("DO UPDATE SET", 1)[1].split("RETURNING", 1)[0]
    pairs = (item.split("=", 1) for item in clause.split(",") if item.strip())
    return {column.strip(): value.strip() for column, value in pairs}


class TestUpsertStatements:

    def test_user_upsert_keeps_identity_and_advances_updated_at(self):
        assignments = _conflict_assignments(_UPSERT_USER_SQL)
        assert "ON CONFLICT (telegram_user_id)" in _UPSERT_USER_SQL
        assert assignments["updated_at"] == "NOW()"
        assert assignments["first_name"] == "EXCLUDED.first_name"
        for column in ("id", "telegram_user_id", "created_at"):
            assert column not in assignments

    def test_chat_upsert_keeps_identity_and_advances_updated_at(self):
        assignments = _conflict_assignments(_UPSERT_CHAT_SQL)
        assert "ON CONFLICT (telegram_chat_id)" in _UPSERT_CHAT_SQL
        assert assignments["updated_at"] == "NOW()"
        assert assignments["title"] == "EXCLUDED.title"
        for column in ("id", "telegram_chat_id", "created_at"):
            assert column not in assignments

    def test_message_insert_never_overwrites(self):
        assert (
            "ON CONFLICT (telegram_chat_id, telegram_message_id) DO NOTHING"
            in _INSERT_MESSAGE_SQL
        )
        assert "DO UPDATE" not in _INSERT_MESSAGE_SQL


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class TestInsertMessage:

    @pytest.mark.asyncio
    async def test_returns_stored_row(self, mock_pool):
        candidate = _new_message()
        mock_pool.fetchrow.return_value = _message_record(candidate)

        stored = await EntityStore(mock_pool).insert_message(candidate)

        args = mock_pool.fetchrow.call_args[0]
        assert "DO NOTHING" in args[0]
        assert args[2] == 100
        assert args[3] == -2002
        assert args[7] == "text"
        assert stored.message_type is MessageKind.TEXT
        assert stored.message_text == "Hello"

    @pytest.mark.asyncio
    async def test_unset_media_fields_bind_as_null(self, mock_pool):
        candidate = _new_message(
            message_type=MessageKind.PHOTO,
            message_text=None,
            media_file_id="f1",
            media_mime_type="image/jpeg",
        )
        mock_pool.fetchrow.return_value = _message_record(candidate)

        stored = await EntityStore(mock_pool).insert_message(candidate)

        args = mock_pool.fetchrow.call_args[0]
        assert args[14] == "f1"
        assert args[15] is None
        assert args[16] is None
        assert args[6] is None
        assert stored.media_file_size is None
        assert stored.media_mime_type == "image/jpeg"

    @pytest.mark.asyncio
    async def test_duplicate_returns_none(self, mock_pool):
        """A suppressed insert is a normal outcome, not an error."""
        mock_pool.fetchrow.return_value = None
        assert await EntityStore(mock_pool).insert_message(_new_message()) is None

    @pytest.mark.asyncio
    async def test_failure_raises_storage_error(self, mock_pool):
        mock_pool.fetchrow.side_effect = OSError("network down")
        with pytest.raises(StorageError, match="insert_message"):
            await EntityStore(mock_pool).insert_message(_new_message())


class TestGetStats:

    @pytest.mark.asyncio
    async def test_collects_counts(self):
        conn = MagicMock()
        conn.fetchval = AsyncMock(side_effect=[3, 2, 10, NOW, None])
        pool = MagicMock()
        pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
        pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)

        stats = await EntityStore(pool).get_stats()

        assert stats == {
            "total_users": 3,
            "total_chats": 2,
            "total_messages": 10,
            "newest_message": NOW.isoformat(),
            "oldest_message": None,
        }


# ---------------------------------------------------------------------------
# PostgreSQL integration
# ---------------------------------------------------------------------------

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL")

requires_db = pytest.mark.skipif(
    not TEST_DATABASE_URL, reason="TEST_DATABASE_URL not set"
)


@pytest_asyncio.fixture
async def pg_store():
    pool = await get_connection_pool(TEST_DATABASE_URL)
    async with pool.acquire() as conn:
        await conn.execute("DROP TABLE IF EXISTS messages, chats, users")
    await init_database(pool)
    try:
        yield EntityStore(pool)
    finally:
        await pool.close()


@requires_db
class TestPostgresIntegration:

    @pytest.mark.asyncio
    async def test_user_upsert_keeps_one_row(self, pg_store):
        first = await pg_store.upsert_user(NewUser(telegram_user_id=77, first_name="Ana"))
        second = await pg_store.upsert_user(NewUser(telegram_user_id=77, first_name="Ana B"))

        assert second.id == first.id
        assert second.created_at == first.created_at
        assert second.updated_at >= first.updated_at
        assert second.first_name == "Ana B"
        found = await pg_store.find_user_by_remote_id(77)
        assert found.first_name == "Ana B"

    @pytest.mark.asyncio
    async def test_chat_upsert_keeps_one_row(self, pg_store):
        first = await pg_store.upsert_chat(
            NewChat(telegram_chat_id=-5, chat_type=ChatKind.GROUP, title="Old")
        )
        second = await pg_store.upsert_chat(
            NewChat(telegram_chat_id=-5, chat_type=ChatKind.GROUP, title="New")
        )
        assert second.id == first.id
        assert (await pg_store.find_chat_by_remote_id(-5)).title == "New"

    @pytest.mark.asyncio
    async def test_duplicate_message_is_suppressed(self, pg_store):
        chat = await pg_store.upsert_chat(NewChat(telegram_chat_id=-5, chat_type=ChatKind.GROUP))
        candidate = _new_message(chat_id=chat.id, telegram_chat_id=-5)

        stored = await pg_store.insert_message(candidate)
        duplicate = await pg_store.insert_message(_new_message(chat_id=chat.id, telegram_chat_id=-5, message_text="again"))

        assert stored is not None
        assert duplicate is None
        kept = await pg_store.find_message(-5, 100)
        assert kept.message_text == "Hello"
        stats = await pg_store.get_stats()
        assert stats["total_messages"] == 1

    @pytest.mark.asyncio
    async def test_media_message_round_trip(self, pg_store):
        chat = await pg_store.upsert_chat(NewChat(telegram_chat_id=9, chat_type=ChatKind.PRIVATE))
        candidate = _new_message(
            chat_id=chat.id,
            telegram_chat_id=9,
            message_type=MessageKind.PHOTO,
            message_text=None,
            media_file_id="f1",
            media_file_unique_id="u1",
            media_mime_type="image/jpeg",
        )

        await pg_store.insert_message(candidate)
        stored = await pg_store.find_message(9, 100)

        assert stored.message_type is MessageKind.PHOTO
        assert stored.message_text is None
        assert stored.media_file_size is None
        assert stored.user_id is None
        assert stored.media_mime_type == "image/jpeg"

    @pytest.mark.asyncio
    async def test_message_for_unknown_chat_fails(self, pg_store):
        with pytest.raises(StorageError):
            await pg_store.insert_message(_new_message())
