from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


HANDLE_RE = re.compile(r"^[A-Za-z0-9_]{3,15}$")
BIO_MAX_LEN = 150


def utcnow() -> datetime:
    # Naive UTC, matching what the SQL columns hand back.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


def direct_key(a: str, b: str) -> str:
    lo, hi = sorted((a, b))
    return f"{lo}:{hi}"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    VOICE = "voice"
    FILE = "file"
    GIF = "gif"
    CALL = "call"


class MessageState(str, Enum):
    PENDING = "pending"
    PERSISTED = "persisted"
    DELIVERED = "delivered"
    SEEN = "seen"


class Coverage(str, Enum):
    NONE = "none"
    PARTIAL = "partial"
    FULL = "full"


@dataclass
class User:
    id: str
    handle: str
    display_name: str = ""
    avatar_url: str = ""
    bio: str = ""
    is_online: bool = False
    last_seen: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class DeliveryRecord:
    user_id: str
    delivered_at: datetime


@dataclass
class SeenRecord:
    user_id: str
    seen_at: datetime


@dataclass
class Reaction:
    user_id: str
    emoji: str


@dataclass
class Conversation:
    id: str
    participant_ids: list[str]
    is_group: bool = False
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    owner_id: Optional[str] = None
    direct_key: Optional[str] = None
    unread: dict[str, int] = field(default_factory=dict)
    muted_by: list[str] = field(default_factory=list)
    last_message_id: Optional[str] = None
    last_seq: int = 0
    theme: str = "default"
    emoji: str = "\U0001F44D"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participant_ids

    def others(self, user_id: str) -> list[str]:
        return [p for p in self.participant_ids if p != user_id]

    def unread_for(self, user_id: str) -> int:
        return int(self.unread.get(user_id, 0))


@dataclass
class Message:
    id: str
    conversation_id: str
    sender_id: str
    seq: int = 0
    content: str = ""
    message_type: MessageType = MessageType.TEXT
    media_url: Optional[str] = None
    media_thumbnail: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    duration: Optional[float] = None
    delivered_to: list[DeliveryRecord] = field(default_factory=list)
    seen_by: list[SeenRecord] = field(default_factory=list)
    reactions: list[Reaction] = field(default_factory=list)
    reply_to_id: Optional[str] = None
    forwarded_from_id: Optional[str] = None
    is_deleted: bool = False
    state: MessageState = MessageState.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def delivered_at(self, user_id: str) -> Optional[datetime]:
        for rec in self.delivered_to:
            if rec.user_id == user_id:
                return rec.delivered_at
        return None

    def seen_at(self, user_id: str) -> Optional[datetime]:
        for rec in self.seen_by:
            if rec.user_id == user_id:
                return rec.seen_at
        return None

    def reaction_of(self, user_id: str) -> Optional[Reaction]:
        for r in self.reactions:
            if r.user_id == user_id:
                return r
        return None
