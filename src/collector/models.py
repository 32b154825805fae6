"""
Entity shapes for users, chats and messages.

``New*`` dataclasses are write candidates built by the normalizer; the
plain ``User`` / ``Chat`` / ``Message`` dataclasses mirror stored rows and
are built from ``asyncpg`` records.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, fields
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Union


class ChatKind(str, Enum):
    PRIVATE = "private"
    GROUP = "group"
    SUPERGROUP = "supergroup"
    CHANNEL = "channel"


class MessageKind(str, Enum):
    TEXT = "text"
    PHOTO = "photo"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"
    LOCATION = "location"
    CONTACT = "contact"
    UNKNOWN = "unknown"


def _from_record(cls: Any, record: Mapping[str, Any]) -> Any:
    return cls(**{f.name: record[f.name] for f in fields(cls)})


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@dataclass
class NewUser:
    telegram_user_id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    is_bot: bool = False
    is_verified: bool = False
    is_premium: bool = False
    language_code: Optional[str] = None


@dataclass
class User:
    id: uuid.UUID
    telegram_user_id: int
    username: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    phone_number: Optional[str]
    is_bot: bool
    is_verified: bool
    is_premium: bool
    language_code: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "User":
        return _from_record(cls, record)


# ---------------------------------------------------------------------------
# Chats
# ---------------------------------------------------------------------------


@dataclass
class NewChat:
    telegram_chat_id: int
    chat_type: ChatKind
    title: Optional[str] = None
    username: Optional[str] = None
    description: Optional[str] = None
    invite_link: Optional[str] = None
    member_count: Optional[int] = None
    is_verified: bool = False
    is_restricted: bool = False
    is_scam: bool = False
    is_fake: bool = False


@dataclass
class Chat:
    id: uuid.UUID
    telegram_chat_id: int
    chat_type: ChatKind
    title: Optional[str]
    username: Optional[str]
    description: Optional[str]
    invite_link: Optional[str]
    member_count: Optional[int]
    is_verified: bool
    is_restricted: bool
    is_scam: bool
    is_fake: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Chat":
        chat = _from_record(cls, record)
        chat.chat_type = ChatKind(chat.chat_type)
        return chat


# ---------------------------------------------------------------------------
# Message payload variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextPayload:
    text: str
    kind: MessageKind = MessageKind.TEXT


@dataclass(frozen=True)
class MediaPayload:
    kind: MessageKind
    file_id: Optional[str] = None
    file_unique_id: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    file_name: Optional[str] = None


@dataclass(frozen=True)
class LocationPayload:
    latitude: float
    longitude: float
    kind: MessageKind = MessageKind.LOCATION


@dataclass(frozen=True)
class ContactPayload:
    phone_number: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    kind: MessageKind = MessageKind.CONTACT


@dataclass(frozen=True)
class UnknownPayload:
    kind: MessageKind = MessageKind.UNKNOWN


MessagePayload = Union[TextPayload, MediaPayload, LocationPayload, ContactPayload, UnknownPayload]


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass
class NewMessage:
    telegram_message_id: int
    telegram_chat_id: int
    chat_id: uuid.UUID
    message_type: MessageKind
    date: datetime
    user_id: Optional[uuid.UUID] = None
    message_text: Optional[str] = None
    edit_date: Optional[datetime] = None
    # Forward provenance is reserved and never populated.
    forward_from_user_id: Optional[uuid.UUID] = None
    forward_from_chat_id: Optional[uuid.UUID] = None
    forward_date: Optional[datetime] = None
    reply_to_message_id: Optional[int] = None
    media_file_id: Optional[str] = None
    media_file_unique_id: Optional[str] = None
    media_file_size: Optional[int] = None
    media_mime_type: Optional[str] = None
    media_file_name: Optional[str] = None
    location_latitude: Optional[float] = None
    location_longitude: Optional[float] = None
    contact_phone_number: Optional[str] = None
    contact_first_name: Optional[str] = None
    contact_last_name: Optional[str] = None

    def apply_payload(self, payload: MessagePayload) -> None:
        """Copy the kind-specific fields of *payload* onto this message."""
        self.message_type = payload.kind
        if isinstance(payload, TextPayload):
            self.message_text = payload.text
        elif isinstance(payload, MediaPayload):
            self.media_file_id = payload.file_id
            self.media_file_unique_id = payload.file_unique_id
            self.media_file_size = payload.file_size
            self.media_mime_type = payload.mime_type
            self.media_file_name = payload.file_name
        elif isinstance(payload, LocationPayload):
            self.location_latitude = payload.latitude
            self.location_longitude = payload.longitude
        elif isinstance(payload, ContactPayload):
            self.contact_phone_number = payload.phone_number
            self.contact_first_name = payload.first_name
            self.contact_last_name = payload.last_name


@dataclass
class Message:
    id: uuid.UUID
    telegram_message_id: int
    telegram_chat_id: int
    user_id: Optional[uuid.UUID]
    chat_id: uuid.UUID
    message_text: Optional[str]
    message_type: MessageKind
    date: datetime
    edit_date: Optional[datetime]
    forward_from_user_id: Optional[uuid.UUID]
    forward_from_chat_id: Optional[uuid.UUID]
    forward_date: Optional[datetime]
    reply_to_message_id: Optional[int]
    media_file_id: Optional[str]
    media_file_unique_id: Optional[str]
    media_file_size: Optional[int]
    media_mime_type: Optional[str]
    media_file_name: Optional[str]
    location_latitude: Optional[float]
    location_longitude: Optional[float]
    contact_phone_number: Optional[str]
    contact_first_name: Optional[str]
    contact_last_name: Optional[str]
    created_at: datetime

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Message":
        message = _from_record(cls, record)
        message.message_type = MessageKind(message.message_type)
        return message
