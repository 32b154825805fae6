"""
Pull-based update stream over Telethon's push-based event handlers.

Telethon delivers new messages by invoking registered handlers.  The
ingestion loop instead wants ``next_update(timeout)``, so
:class:`UpdateStream` registers a ``NewMessage`` handler that feeds a
bounded queue and exposes a timed ``get`` over it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from telethon import events

from shared.errors import TransportError

logger = logging.getLogger("collector.transport")


class UpdateStream:
    """Queue-backed view of new-message events from one client.

    Args:
        client: A connected, authorized Telethon client.
        queue_size: Max buffered messages before the event handler waits.
    """

    def __init__(
        self,
        client: Any,
        queue_size: int = 1000,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._client = client
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max(1, queue_size))
        self._log = log or logger
        self._event = events.NewMessage()
        self._attached = False

    def attach(self) -> None:
        """Start receiving new-message events."""
        if not self._attached:
            self._client.add_event_handler(self._on_new_message, self._event)
            self._attached = True
            self._log.info("Listening for new messages")

    def detach(self) -> None:
        if self._attached:
            self._client.remove_event_handler(self._on_new_message, self._event)
            self._attached = False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _on_new_message(self, event: Any) -> None:
        await self._queue.put(event.message)

    async def next_update(self, timeout: float) -> Optional[Any]:
        """Wait up to *timeout* seconds for the next message.

        Returns:
            The Telethon message, or ``None`` if the timeout elapsed.

        Raises:
            TransportError: If the client is disconnected and reconnecting
                fails.
        """
        if not self._queue.empty():
            return self._queue.get_nowait()

        await self._ensure_connected()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def _ensure_connected(self) -> None:
        if self._client.is_connected():
            return
        self._log.warning("Telegram client disconnected; reconnecting")
        try:
            await self._client.connect()
        except (OSError, asyncio.TimeoutError) as exc:
            raise TransportError(f"Reconnect failed: {exc}") from exc
        if not self._client.is_connected():
            raise TransportError("Reconnect did not establish a connection")
        self._log.info("Telegram client reconnected")
