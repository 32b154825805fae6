"""
Update normalizer — turns one incoming Telethon message into entity rows.

For every message the normalizer performs, in order:

    1. an upsert of the sending user (optional; failures are tolerated),
    2. an upsert of the originating chat (required; failure drops the update),
    3. an insert-or-ignore of the message itself.

The message payload is classified by the first matching shape in
``text > photo > video > audio > document > sticker > location > contact``
and flattened into the shared message columns.  Nothing raised while
processing one update escapes :meth:`UpdateNormalizer.process`.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from telethon.tl import types

from collector.entity_store import EntityStore
from collector.models import (
    ChatKind,
    ContactPayload,
    LocationPayload,
    MediaPayload,
    MessageKind,
    MessagePayload,
    NewChat,
    NewMessage,
    NewUser,
    TextPayload,
    UnknownPayload,
)

logger = logging.getLogger("collector.normalizer")

_DEFAULT_MIME_TYPES = {
    MessageKind.PHOTO: "image/jpeg",
    MessageKind.VIDEO: "video/mp4",
}


class IngestOutcome(str, Enum):
    """Result of processing one update."""

    STORED = "stored"
    DUPLICATE = "duplicate"
    DROPPED = "dropped"


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def to_timestamp(value: Any) -> datetime:
    """Convert an epoch-seconds value or datetime to an aware UTC datetime.

    Values that cannot be converted (out-of-range epochs, garbage) fall back
    to the current processing time.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (OverflowError, OSError, ValueError, TypeError):
        logger.debug("Unconvertible timestamp %r; using processing time", value)
        return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def user_from_sender(sender: Any) -> NewUser:
    """Build a user candidate from a message sender entity.

    The phone number is never set: it is not part of the
    sender snapshot delivered with a message.  Senders that are not user
    accounts (a channel posting as itself) yield a bare remote identity.
    """
    if not isinstance(sender, types.User):
        return NewUser(telegram_user_id=sender.id)
    return NewUser(
        telegram_user_id=sender.id,
        username=sender.username,
        first_name=sender.first_name,
        last_name=sender.last_name,
        phone_number=None,
        is_bot=bool(sender.bot),
        is_verified=bool(sender.verified),
        is_premium=bool(sender.premium),
        language_code=sender.lang_code,
    )


# ---------------------------------------------------------------------------
# Chats
# ---------------------------------------------------------------------------


def chat_kind_of(entity: Any) -> ChatKind:
    """Classify a Telethon chat entity."""
    if isinstance(entity, types.User):
        return ChatKind.PRIVATE
    if isinstance(entity, (types.Channel, types.ChannelForbidden)):
        return ChatKind.SUPERGROUP if entity.megagroup else ChatKind.CHANNEL
    if isinstance(entity, (types.Chat, types.ChatForbidden)):
        return ChatKind.GROUP
    raise TypeError(f"Unsupported chat entity: {type(entity).__name__}")


def private_chat_title(first_name: Optional[str], last_name: Optional[str]) -> str:
    """Join first and last name with a space, omitting missing parts."""
    return " ".join(part.strip() for part in (first_name, last_name) if part and part.strip())


def chat_from_entity(entity: Any, telegram_chat_id: int) -> NewChat:
    """Build a chat candidate from a Telethon chat entity.

    Trust flags are never derived from the entity; they stay ``False`` as
    placeholders for later enrichment.
    """
    kind = chat_kind_of(entity)
    chat = NewChat(telegram_chat_id=telegram_chat_id, chat_type=kind)

    if kind is ChatKind.PRIVATE:
        chat.title = private_chat_title(entity.first_name, entity.last_name) or None
        chat.username = entity.username
    elif kind is ChatKind.GROUP:
        chat.title = entity.title
        chat.member_count = getattr(entity, "participants_count", None)
    else:
        chat.title = entity.title
        chat.username = getattr(entity, "username", None)
        chat.description = getattr(entity, "about", None)
        chat.member_count = getattr(entity, "participants_count", None)
    return chat


# ---------------------------------------------------------------------------
# Payload classification
# ---------------------------------------------------------------------------


def _plain_document(message: Any) -> Any:
    # Telethon also exposes video, audio and sticker files via ``document``.
    document = getattr(message, "document", None)
    if document is None:
        return None
    for attr in ("video", "audio", "voice", "sticker"):
        if getattr(message, attr, None) is not None:
            return None
    return document


def _media_payload(message: Any, kind: MessageKind, media: Any) -> MediaPayload:
    file = getattr(message, "file", None)
    media_id = getattr(media, "id", None)
    mime_type = getattr(file, "mime_type", None) or getattr(media, "mime_type", None)
    return MediaPayload(
        kind=kind,
        file_id=getattr(file, "id", None),
        file_unique_id=str(media_id) if media_id is not None else None,
        file_size=getattr(file, "size", None),
        mime_type=mime_type or _DEFAULT_MIME_TYPES.get(kind),
        file_name=getattr(file, "name", None) if kind is MessageKind.DOCUMENT else None,
    )


def classify_payload(message: Any) -> MessagePayload:
    """Resolve the message kind and its kind-specific fields.

    The first present shape wins, in this order: text, photo, video, audio,
    document, sticker, location, contact.  A photo with a caption is
    therefore a text message and carries no media fields.
    """
    text = getattr(message, "message", None)
    if text:
        return TextPayload(text=text)

    photo = getattr(message, "photo", None)
    if photo is not None:
        return _media_payload(message, MessageKind.PHOTO, photo)

    video = getattr(message, "video", None)
    if video is not None:
        return _media_payload(message, MessageKind.VIDEO, video)

    audio = getattr(message, "audio", None) or getattr(message, "voice", None)
    if audio is not None:
        return _media_payload(message, MessageKind.AUDIO, audio)

    document = _plain_document(message)
    if document is not None:
        return _media_payload(message, MessageKind.DOCUMENT, document)

    sticker = getattr(message, "sticker", None)
    if sticker is not None:
        return _media_payload(message, MessageKind.STICKER, sticker)

    geo = getattr(message, "geo", None)
    if geo is not None and not isinstance(geo, types.GeoPointEmpty):
        return LocationPayload(latitude=geo.lat, longitude=geo.long)

    contact = getattr(message, "contact", None)
    if contact is not None:
        return ContactPayload(
            phone_number=contact.phone_number or None,
            first_name=contact.first_name or None,
            last_name=contact.last_name or None,
        )

    return UnknownPayload()


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class UpdateNormalizer:
    """Maps Telethon messages into users, chats and messages.

    Args:
        store: Entity store receiving the writes.
        log: Optional logger (defaults to ``collector.normalizer``).
    """

    def __init__(self, store: EntityStore, log: Optional[logging.Logger] = None) -> None:
        self._store = store
        self._log = log or logger

    async def process(self, message: Any) -> IngestOutcome:
        """Persist one message.  Never raises for per-update failures."""
        message_id = getattr(message, "id", None)
        try:
            return await self._process(message)
        except Exception:
            self._log.warning("Dropping message %s: processing failed", message_id, exc_info=True)
            return IngestOutcome.DROPPED

    async def _process(self, message: Any) -> IngestOutcome:
        user_id = await self._resolve_user(message)

        try:
            entity = await message.get_chat()
            if entity is None:
                raise LookupError("message has no resolvable chat")
            chat = await self._store.upsert_chat(chat_from_entity(entity, message.chat_id))
        except Exception:
            self._log.warning(
                "Dropping message %s: chat %s could not be resolved",
                message.id,
                getattr(message, "chat_id", None),
                exc_info=True,
            )
            return IngestOutcome.DROPPED
        self._log.debug("Chat processed: %s (%d)", chat.title or "untitled", chat.telegram_chat_id)

        payload = classify_payload(message)
        edit_date = getattr(message, "edit_date", None)
        reply_to = getattr(message, "reply_to_msg_id", None)
        candidate = NewMessage(
            telegram_message_id=message.id,
            telegram_chat_id=chat.telegram_chat_id,
            chat_id=chat.id,
            user_id=user_id,
            message_type=payload.kind,
            date=to_timestamp(getattr(message, "date", None)),
            edit_date=to_timestamp(edit_date) if edit_date is not None else None,
            reply_to_message_id=reply_to if isinstance(reply_to, int) else None,
        )
        candidate.apply_payload(payload)

        stored = await self._store.insert_message(candidate)
        if stored is None:
            self._log.info(
                "Duplicate message ignored: id=%d chat=%d",
                candidate.telegram_message_id,
                candidate.telegram_chat_id,
            )
            return IngestOutcome.DUPLICATE

        self._log.info(
            "Message stored: id=%d chat=%d type=%s",
            stored.telegram_message_id,
            stored.telegram_chat_id,
            stored.message_type.value,
        )
        return IngestOutcome.STORED

    async def _resolve_user(self, message: Any) -> Optional[uuid.UUID]:
        try:
            sender = await message.get_sender()
            if sender is None:
                return None
            user = await self._store.upsert_user(user_from_sender(sender))
        except Exception:
            self._log.warning(
                "Sender of message %s could not be resolved; storing without user",
                getattr(message, "id", None),
                exc_info=True,
            )
            return None
        self._log.debug(
            "User processed: %s (%d)", user.first_name or "unnamed", user.telegram_user_id
        )
        return user.id
