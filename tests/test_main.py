"""
Tests for collector.main: startup wiring, degraded mode and exit codes.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from collector.config import Config, TelegramConfig
from collector.main import main, run, run_collector
from shared.errors import AuthError, StorageError


def _configured() -> Config:
    return Config(
        telegram=TelegramConfig(api_id=1, api_hash="h", phone_number="+1555")
    )


def _store():
    store = MagicMock()
    store.get_stats = AsyncMock(
        return_value={"total_users": 0, "total_chats": 0, "total_messages": 0}
    )
    return store


class TestMain:

    @pytest.mark.asyncio
    async def test_degraded_without_credentials(self):
        pool = MagicMock()
        pool.close = AsyncMock()
        with patch("collector.main.get_connection_pool", new=AsyncMock(return_value=pool)), \
             patch("collector.main.init_database", new=AsyncMock()) as init_db, \
             patch("collector.main.EntityStore", return_value=_store()), \
             patch("collector.main.run_degraded", new=AsyncMock()) as degraded, \
             patch("collector.main.run_collector", new=AsyncMock()) as collector:
            await main(Config())

        init_db.assert_awaited_once_with(pool)
        degraded.assert_awaited_once_with(pool, 300.0)
        collector.assert_not_called()
        pool.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_collector_with_credentials(self):
        pool = MagicMock()
        pool.close = AsyncMock()
        prompt = MagicMock()
        with patch("collector.main.get_connection_pool", new=AsyncMock(return_value=pool)), \
             patch("collector.main.init_database", new=AsyncMock()), \
             patch("collector.main.EntityStore", return_value=_store()) as store_cls, \
             patch("collector.main.run_collector", new=AsyncMock()) as collector:
            config = _configured()
            await main(config, prompt)

        collector.assert_awaited_once_with(config, store_cls.return_value, prompt)
        pool.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_schema_failure_closes_pool(self):
        pool = MagicMock()
        pool.close = AsyncMock()
        with patch("collector.main.get_connection_pool", new=AsyncMock(return_value=pool)), \
             patch("collector.main.init_database", new=AsyncMock(side_effect=StorageError("ddl"))):
            with pytest.raises(StorageError):
                await main(Config())
        pool.close.assert_awaited_once()


class TestRunCollector:

    @pytest.mark.asyncio
    async def test_login_failure_propagates(self):
        manager = MagicMock()
        manager.start = AsyncMock(side_effect=AuthError("bad code"))
        with patch("collector.main.SessionManager", return_value=manager):
            with pytest.raises(AuthError):
                await run_collector(_configured(), _store(), MagicMock())

    @pytest.mark.asyncio
    async def test_disconnects_when_ingestion_stops(self):
        client = MagicMock()
        client.get_me = AsyncMock(return_value=MagicMock(username="me", id=1))
        client.disconnect = AsyncMock()
        manager = MagicMock()
        manager.start = AsyncMock(return_value=client)
        with patch("collector.main.SessionManager", return_value=manager), \
             patch("collector.main.run_ingestion", new=AsyncMock(side_effect=RuntimeError("stop"))):
            with pytest.raises(RuntimeError):
                await run_collector(_configured(), _store(), MagicMock())

        client.add_event_handler.assert_called_once()
        client.remove_event_handler.assert_called_once()
        client.disconnect.assert_awaited_once()


class TestRun:

    def test_config_error_exits_nonzero(self, monkeypatch):
        monkeypatch.setenv("TELEGRAM_API_ID", "not-a-number")
        monkeypatch.delenv("TG_COLLECTOR_CONFIG", raising=False)
        assert run([]) == 1

    def test_startup_storage_error_exits_nonzero(self, monkeypatch):
        monkeypatch.delenv("TG_COLLECTOR_CONFIG", raising=False)
        monkeypatch.delenv("TELEGRAM_API_ID", raising=False)
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        failing = AsyncMock(side_effect=StorageError("Could not connect to database"))
        with patch("collector.main.get_connection_pool", new=failing):
            assert run([]) == 1

    def test_malformed_session_key_exits_nonzero(self, monkeypatch):
        monkeypatch.delenv("TG_COLLECTOR_CONFIG", raising=False)
        monkeypatch.delenv("TELEGRAM_API_ID", raising=False)
        monkeypatch.setenv("TELEGRAM_SESSION_KEY", "not-a-fernet-key")
        with patch("collector.main.get_connection_pool", new=AsyncMock()) as pool:
            assert run([]) == 1
        pool.assert_not_called()
