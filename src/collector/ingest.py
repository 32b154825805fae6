"""
Ingestion loop — polls the update stream and hands each message to the
normalizer, one at a time.

The loop never ends on its own.  Timeouts are its heartbeat, transport
errors are retried after a fixed delay, and per-update failures are
absorbed by the normalizer.  It stops only when its task is cancelled.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol

from collector.normalizer import IngestOutcome
from collector.progress import IngestProgress

logger = logging.getLogger("collector.ingest")


class UpdateSource(Protocol):
    async def next_update(self, timeout: float) -> Optional[Any]: ...


class UpdateSink(Protocol):
    async def process(self, message: Any) -> IngestOutcome: ...


async def run_ingestion(
    source: UpdateSource,
    normalizer: UpdateSink,
    poll_timeout: float = 10.0,
    retry_delay: float = 1.0,
    progress: Optional[IngestProgress] = None,
    log: Optional[logging.Logger] = None,
) -> None:
    """Run the unending poll/dispatch cycle.

    Args:
        source: Provides ``next_update(timeout)``; ``None`` means timeout.
        normalizer: Persists one message and reports the outcome.
        poll_timeout: Seconds to wait for each update.
        retry_delay: Fixed pause after a transport error.
        progress: Outcome counters; a fresh tracker is used if omitted.
    """
    log = log or logger
    progress = progress or IngestProgress()
    log.info(
        "Ingestion started (poll_timeout=%.1fs retry_delay=%.1fs)", poll_timeout, retry_delay
    )

    while True:
        try:
            message = await source.next_update(poll_timeout)
        except Exception:
            progress.record_transport_error()
            log.warning("Error receiving update; retrying in %.1fs", retry_delay, exc_info=True)
            await asyncio.sleep(retry_delay)
            continue

        if message is not None:
            try:
                outcome = await normalizer.process(message)
            except Exception:
                log.warning(
                    "Unhandled error processing message %s",
                    getattr(message, "id", None),
                    exc_info=True,
                )
                outcome = IngestOutcome.DROPPED
            progress.record(outcome.value)

        progress.maybe_log()
