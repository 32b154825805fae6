"""
Collector entry point — authenticates to Telegram, listens for new
messages, and stores senders, chats and messages in PostgreSQL.

Runs as a long-lived service.

Key behaviours:
    - Loads configuration from the environment (optionally layered over a
      TOML file named by ``TG_COLLECTOR_CONFIG``).
    - Creates the database schema on startup (idempotent).
    - Reuses the stored Telegram session; logs in interactively only when
      the session is new or no longer authorized.
    - Without Telegram credentials, stays up in degraded mode and only
      reports database health.
    - Startup failures (config, session, connect, login, database) exit
      with status 1 and are not retried in-process.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

import asyncpg

from collector.config import Config, load_config
from collector.entity_store import EntityStore
from collector.ingest import run_ingestion
from collector.normalizer import UpdateNormalizer
from collector.progress import IngestProgress
from collector.session import ConsolePrompt, CredentialPrompt, SessionManager
from collector.transport import UpdateStream
from shared.db import get_connection_pool, health_check, init_database
from shared.errors import CollectorError

logger = logging.getLogger("collector.main")


# ---------------------------------------------------------------------------
# Degraded mode
# ---------------------------------------------------------------------------


async def run_degraded(pool: asyncpg.Pool, interval: float) -> None:
    """Idle without ingestion, logging database health every *interval* seconds."""
    logger.warning("Telegram credentials not configured; ingestion disabled")
    logger.warning(
        "Set TELEGRAM_API_ID, TELEGRAM_API_HASH and TELEGRAM_PHONE_NUMBER to enable it"
    )
    while True:
        healthy = await health_check(pool)
        if healthy:
            logger.info("Degraded mode: database reachable, ingestion disabled")
        else:
            logger.warning("Degraded mode: database health check failed")
        await asyncio.sleep(max(1.0, interval))


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


async def run_collector(
    config: Config,
    store: EntityStore,
    prompt: CredentialPrompt,
) -> None:
    """Authenticate and run the ingestion loop until cancelled."""
    manager = SessionManager(config.telegram, prompt)
    client = await manager.start()
    try:
        me = await client.get_me()
        logger.info(
            "Logged in as %s (id=%s)", getattr(me, "username", None), getattr(me, "id", None)
        )

        stream = UpdateStream(client, queue_size=config.collector.queue_size)
        stream.attach()
        progress = IngestProgress(log_interval=config.collector.status_interval)
        try:
            await run_ingestion(
                stream,
                UpdateNormalizer(store),
                poll_timeout=config.collector.poll_timeout,
                retry_delay=config.collector.retry_delay,
                progress=progress,
            )
        finally:
            stream.detach()
            progress.log_summary()
    finally:
        await client.disconnect()
        logger.info("Disconnected from Telegram")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def main(config: Config, prompt: Optional[CredentialPrompt] = None) -> None:
    """Top-level async entry point for the collector service."""
    pool = await get_connection_pool(
        config.database.url,
        min_size=config.database.min_size,
        max_size=config.database.max_size,
    )
    try:
        await init_database(pool)
        store = EntityStore(pool)
        try:
            stats = await store.get_stats()
            logger.info(
                "Store contains %d users, %d chats, %d messages",
                stats["total_users"],
                stats["total_chats"],
                stats["total_messages"],
            )
        except CollectorError:
            logger.warning("Could not read store statistics", exc_info=True)

        if not config.is_telegram_configured():
            await run_degraded(pool, config.collector.status_interval)
            return

        logger.info("Telegram credentials configured")
        await run_collector(config, store, prompt or ConsolePrompt())
    finally:
        try:
            await pool.close()
        except Exception:
            logger.exception("Failed to close database pool")
        logger.info("Collector shut down.")


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tg-collector",
        description="Collect Telegram messages into PostgreSQL.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="TOML settings file (environment variables take precedence)",
    )
    return parser.parse_args(argv)


def run(argv: Optional[Sequence[str]] = None) -> int:
    """Synchronous entry point (console script, ``python -m`` or systemd)."""
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config)
        logging.getLogger().setLevel(config.log_level)
        asyncio.run(main(config))
    except CollectorError as exc:
        logger.error("Startup failed: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(run())
