"""
Exception types shared by the collector.

Startup errors (config, session, connect, auth) are fatal for the run.
Storage and transport errors are raised per operation and handled by the
ingestion path without stopping it.  A suppressed duplicate message is
*not* an error and has no exception type here.
"""

from __future__ import annotations


class CollectorError(Exception):
    """Base class for all collector errors."""


class ConfigError(CollectorError):
    """A configuration value is malformed (e.g. a non-numeric API id)."""


class ConnectError(CollectorError):
    """The Telegram client could not complete its connection handshake."""


class AuthError(CollectorError):
    """Login code or second-factor password submission failed."""


class StorageError(CollectorError):
    """A database operation failed (constraint violation, lost connection)."""


class TransportError(CollectorError):
    """Reading from the Telegram update stream failed."""


class SessionError(CollectorError):
    """The session blob could not be created or written."""
