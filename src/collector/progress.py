"""
Ingestion progress tracking for journalctl output.

``IngestProgress`` counts per-update outcomes and periodically logs a
human-readable summary line with rates and uptime.  Idle intervals (no
updates processed) produce no output.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Optional

logger = logging.getLogger("collector.progress")


def _format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples: ``"45s"``, ``"2m 30s"``, ``"1h 15m"``.
    """
    if seconds < 0:
        return "0s"
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        if secs:
            return f"{minutes}m {secs}s"
        return f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    if mins:
        return f"{hours}h {mins}m"
    return f"{hours}h"


class IngestProgress:
    """Tracks outcomes of processed updates.

    Args:
        log_interval: Minimum seconds between summary lines.  ``0``
            disables periodic summaries.
    """

    def __init__(self, log_interval: float = 300.0, log: Optional[logging.Logger] = None) -> None:
        self.log_interval = max(0.0, log_interval)
        self.stored = 0
        self.duplicates = 0
        self.dropped = 0
        self.transport_errors = 0
        self._log = log or logger
        self._start = time.monotonic()
        self._last_log_at = self._start
        self._processed_at_last_log = 0

    @property
    def processed(self) -> int:
        return self.stored + self.duplicates + self.dropped

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    @property
    def rate(self) -> float:
        """Updates processed per second since start."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.processed / elapsed

    def record(self, outcome: str) -> None:
        """Count one update outcome (``stored``, ``duplicate``, ``dropped``)."""
        if outcome == "stored":
            self.stored += 1
        elif outcome == "duplicate":
            self.duplicates += 1
        else:
            self.dropped += 1

    def record_transport_error(self) -> None:
        self.transport_errors += 1

    def snapshot(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "stored": self.stored,
            "duplicates": self.duplicates,
            "dropped": self.dropped,
            "transport_errors": self.transport_errors,
        }

    def maybe_log(self) -> bool:
        """Log a summary if the interval elapsed and anything was processed."""
        if self.log_interval <= 0:
            return False
        now = time.monotonic()
        if now - self._last_log_at < self.log_interval:
            return False
        if self.processed == self._processed_at_last_log:
            return False
        self.log_summary()
        self._last_log_at = now
        self._processed_at_last_log = self.processed
        return True

    def log_summary(self) -> None:
        self._log.info(
            "Ingest: %d processed (%d stored, %d duplicate, %d dropped) | "
            "%d transport errors | %.2f msg/s | up %s",
            self.processed,
            self.stored,
            self.duplicates,
            self.dropped,
            self.transport_errors,
            self.rate,
            _format_duration(self.elapsed_seconds),
        )
