"""
Telegram session lifecycle — session blob persistence and interactive login.

The session blob is a Telethon ``StringSession`` string kept in a single
file.  It is Fernet-encrypted when a session key is configured.  An
absent, unreadable or corrupt blob is never fatal: a fresh session is
created and written immediately so the slot survives a crash before login.

Authentication walks this state machine::

    NO_SESSION -> SESSION_LOADED | SESSION_CREATED -> UNAUTHENTICATED
        -> AWAITING_CODE -> AWAITING_SECOND_FACTOR -> AUTHENTICATED

Already-authorized sessions jump straight to ``AUTHENTICATED``.  The login
code and the 2FA password come from a pluggable :class:`CredentialPrompt`,
the only place the collector needs a human.
"""

from __future__ import annotations

import asyncio
import getpass
import logging
import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from telethon import TelegramClient, errors
from telethon.sessions import StringSession

from collector.config import TelegramConfig
from shared.errors import AuthError, ConnectError, SessionError
from shared.secrets import InvalidToken, decrypt_blob, encrypt_blob

logger = logging.getLogger("collector.session")

_PROBE_PREFIX = ".write-probe-"


class SessionState(str, Enum):
    NO_SESSION = "no_session"
    SESSION_LOADED = "session_loaded"
    SESSION_CREATED = "session_created"
    UNAUTHENTICATED = "unauthenticated"
    AWAITING_CODE = "awaiting_code"
    AWAITING_SECOND_FACTOR = "awaiting_second_factor"
    AUTHENTICATED = "authenticated"


# ---------------------------------------------------------------------------
# Credential prompt
# ---------------------------------------------------------------------------


class CredentialPrompt(Protocol):
    """Synchronous source of login secrets (console, web form, test double)."""

    def request_code(self, phone_number: str) -> str: ...

    def request_password(self) -> str: ...


class ConsolePrompt:
    """Reads the login code and 2FA password from the terminal."""

    def request_code(self, phone_number: str) -> str:
        print(f"\nEnter the login code sent to {phone_number}:")
        return input("Code: ").strip()

    def request_password(self) -> str:
        print("\nTwo-step verification is enabled for this account.")
        return getpass.getpass("Password: ")


# ---------------------------------------------------------------------------
# Session file
# ---------------------------------------------------------------------------


class SessionFile:
    """Owns the on-disk session blob.

    Args:
        path: Location of the blob.  Relative paths resolve against the
              working directory.
        encryption_key: Optional Fernet key; when set the blob is stored
              encrypted.
    """

    def __init__(
        self,
        path: Path | str,
        encryption_key: Optional[str] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.path = Path(path).expanduser().absolute()
        self._key = encryption_key
        self._log = log or logger

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Optional[StringSession]:
        """Return the stored session, or ``None`` if absent or unusable."""
        if not self.exists():
            return None
        try:
            raw = self.path.read_bytes()
            if self._key:
                raw = decrypt_blob(raw, self._key)
            return StringSession(raw.decode("utf-8").strip())
        except InvalidToken:
            self._log.warning(
                "Session file %s could not be decrypted (wrong key or tampered)", self.path
            )
        except Exception:
            self._log.warning("Session file %s could not be loaded", self.path, exc_info=True)
        return None

    def create(self) -> StringSession:
        """Create an empty session and persist it immediately.

        Raises:
            SessionError: If the directory cannot be created or written.
        """
        parent = self.path.parent
        try:
            if not parent.exists():
                self._log.info("Creating session directory %s", parent)
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SessionError(f"Cannot create session directory {parent}: {exc}") from exc

        self._probe_writable(parent)

        session = StringSession()
        self.save(session.save())
        self._log.info("New session created at %s", self.path)
        return session

    def save(self, blob: str) -> None:
        """Atomically replace the stored blob with *blob*.

        Raises:
            SessionError: If the file cannot be written.
        """
        data = blob.encode("utf-8")
        if self._key:
            try:
                data = encrypt_blob(data, self._key)
            except ValueError as exc:
                raise SessionError(f"Cannot encrypt session blob: {exc}") from exc

        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as exc:
            raise SessionError(f"Cannot write session file {self.path}: {exc}") from exc
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.remove(tmp_path)
        self._log.debug("Session saved to %s", self.path)

    def _probe_writable(self, directory: Path) -> None:
        try:
            fd, probe = tempfile.mkstemp(prefix=_PROBE_PREFIX, dir=directory)
            os.close(fd)
            os.remove(probe)
        except OSError as exc:
            raise SessionError(f"Session directory {directory} is not writable: {exc}") from exc
        self._log.debug("Write permission OK in %s", directory)


# ---------------------------------------------------------------------------
# Session manager
# ---------------------------------------------------------------------------


ClientFactory = Callable[[StringSession, int, str], Any]


class SessionManager:
    """Drives session acquisition, connection and login.

    Args:
        config: Telegram credentials and session location.
        prompt: Source of the login code and 2FA password.
        client_factory: Builds the transport client from
              ``(session, api_id, api_hash)``.  Defaults to Telethon's
              ``TelegramClient``.
        session_file: Override for the session blob store.
    """

    def __init__(
        self,
        config: TelegramConfig,
        prompt: CredentialPrompt,
        client_factory: ClientFactory = TelegramClient,
        session_file: Optional[SessionFile] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config
        self._prompt = prompt
        self._client_factory = client_factory
        self._log = log or logger
        self._session_file = session_file or SessionFile(
            config.session_path, config.session_key, log=self._log
        )
        self._session: Optional[StringSession] = None
        self._state = SessionState.NO_SESSION

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session_file(self) -> SessionFile:
        return self._session_file

    def acquire(self) -> StringSession:
        """Load the stored session, creating a new one if absent or unusable."""
        if self._session_file.exists():
            self._log.info("Loading session from %s", self._session_file.path)
            session = self._session_file.load()
            if session is not None:
                self._session = session
                self._state = SessionState.SESSION_LOADED
                return session
            self._log.warning("Existing session unusable; creating a new one")
        else:
            self._log.info("No session at %s; creating a new one", self._session_file.path)

        self._session = self._session_file.create()
        self._state = SessionState.SESSION_CREATED
        return self._session

    async def connect(self) -> Any:
        """Build the transport client around the acquired session and connect.

        Raises:
            ConnectError: If the handshake fails.  Not retried.
        """
        session = self._session if self._session is not None else self.acquire()
        client = self._client_factory(session, self._config.api_id, self._config.api_hash)
        self._log.info("Connecting to Telegram...")
        try:
            await client.connect()
        except (OSError, asyncio.TimeoutError, errors.RPCError) as exc:
            raise ConnectError(f"Could not connect to Telegram: {exc}") from exc
        self._log.info("Connected to Telegram")
        return client

    async def authenticate(self, client: Any) -> None:
        """Log in unless the session is already authorized.

        Raises:
            AuthError: If requesting or submitting the code or password
                fails.  The attempt is aborted, not retried.
        """
        try:
            authorized = await client.is_user_authorized()
        except (OSError, errors.RPCError) as exc:
            raise AuthError(f"Could not check authorization: {exc}") from exc
        if authorized:
            self._state = SessionState.AUTHENTICATED
            self._log.info("Session already authorized")
            return

        self._state = SessionState.UNAUTHENTICATED
        phone = self._config.phone_number
        try:
            sent = await client.send_code_request(phone)
        except (OSError, errors.RPCError) as exc:
            raise AuthError(f"Login code request for {phone} failed: {exc}") from exc
        self._state = SessionState.AWAITING_CODE
        self._log.info("Login code sent to %s", phone)

        code = await self._ask(self._prompt.request_code, phone)
        if not code.strip():
            raise AuthError("Empty login code submitted")
        try:
            await client.sign_in(phone=phone, code=code, phone_code_hash=sent.phone_code_hash)
        except errors.SessionPasswordNeededError:
            self._state = SessionState.AWAITING_SECOND_FACTOR
            self._log.info("Second factor required")
            password = await self._ask(self._prompt.request_password)
            if not password:
                raise AuthError("Empty second factor password submitted")
            try:
                await client.sign_in(password=password)
            except (OSError, ValueError, errors.RPCError) as exc:
                raise AuthError(f"Second factor rejected: {exc}") from exc
        except (OSError, ValueError, errors.RPCError) as exc:
            raise AuthError(f"Sign-in with login code failed: {exc}") from exc

        # sign_in returns without raising when it only re-sent the code.
        try:
            authorized = await client.is_user_authorized()
        except (OSError, errors.RPCError) as exc:
            raise AuthError(f"Could not confirm login: {exc}") from exc
        if not authorized:
            raise AuthError("Sign-in finished but the session is not authorized")

        self._state = SessionState.AUTHENTICATED
        self._log.info("Login successful")

    def persist(self, client: Any) -> bool:
        """Write the client's session to disk.

        A failure is logged and reported as ``False``; the connected client
        stays usable but the session will not survive a restart.
        """
        try:
            self._session_file.save(client.session.save())
        except Exception:
            self._log.error(
                "Failed to save session to %s", self._session_file.path, exc_info=True
            )
            return False
        self._log.info("Session saved to %s", self._session_file.path)
        return True

    async def start(self) -> Any:
        """Acquire, connect, authenticate and persist; return the ready client."""
        self.acquire()
        client = await self.connect()
        try:
            await self.authenticate(client)
        except AuthError:
            await client.disconnect()
            raise
        self.persist(client)
        return client

    async def _ask(self, func: Callable[..., str], *args: Any) -> str:
        # Prompts block; keep the event loop free to service the connection.
        try:
            return await asyncio.to_thread(func, *args)
        except EOFError as exc:
            raise AuthError("No interactive input available for login") from exc
