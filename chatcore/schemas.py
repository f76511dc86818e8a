from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .domain import Conversation, Message, MessageType, User


class Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Inbound


class SendMessageIn(Wire):
    content: str = ""
    message_type: MessageType = MessageType.TEXT
    media_url: Optional[str] = None
    media_thumbnail: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = Field(default=None, ge=0)
    duration: Optional[float] = Field(default=None, ge=0)
    reply_to: Optional[str] = None


class ReactionIn(Wire):
    emoji: str = Field(min_length=1, max_length=16)


class ForwardIn(Wire):
    conversation_ids: List[str] = Field(min_length=1, max_length=20)


class CreateGroupIn(Wire):
    name: str = Field(min_length=1, max_length=128)
    participants: List[str] = Field(min_length=1)
    avatar: Optional[str] = None


class UpdateConversationIn(Wire):
    theme: Optional[str] = None
    emoji: Optional[str] = None
    is_muted: Optional[bool] = None
    name: Optional[str] = None


class UpdateProfileIn(Wire):
    full_name: Optional[str] = None
    bio: Optional[str] = None
    avatar: Optional[str] = None


class OnlineStatusIn(Wire):
    user_ids: List[str] = Field(max_length=500)


# Outbound


class UserOut(Wire):
    id: str
    handle: str
    display_name: str
    avatar: str
    bio: str
    is_online: bool
    last_seen: Optional[datetime] = None


class DeliveryOut(Wire):
    user: str
    delivered_at: datetime


class SeenOut(Wire):
    user: str
    seen_at: datetime


class ReactionOut(Wire):
    user: str
    emoji: str


class ReplyOut(Wire):
    id: str
    sender_id: str
    content: str
    message_type: MessageType
    is_deleted: bool


class MessageOut(Wire):
    id: str
    conversation_id: str
    sender_id: str
    seq: int
    content: str
    message_type: MessageType
    media_url: Optional[str] = None
    media_thumbnail: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    duration: Optional[float] = None
    delivered_to: List[DeliveryOut]
    seen_by: List[SeenOut]
    reactions: List[ReactionOut]
    reply_to: Optional[ReplyOut] = None
    forwarded_from: Optional[str] = None
    is_deleted: bool
    state: str
    created_at: datetime
    updated_at: datetime


class MessagesPageOut(Wire):
    messages: List[MessageOut]
    page: int
    has_more: bool


class ConversationOut(Wire):
    id: str
    participants: List[str]
    participant: Optional[UserOut] = None
    is_group: bool
    group_name: Optional[str] = None
    group_avatar: Optional[str] = None
    owner_id: Optional[str] = None
    last_message: Optional[MessageOut] = None
    unread_count: int
    is_muted: bool
    theme: str
    emoji: str
    updated_at: datetime


class ConversationsOut(Wire):
    conversations: List[ConversationOut]


class PresenceOut(Wire):
    user_id: str
    online: bool
    last_seen: Optional[datetime] = None


class UploadOut(Wire):
    url: str
    blob_id: str
    file_name: Optional[str] = None
    file_size: int
    content_type: Optional[str] = None


def user_out(u: User) -> UserOut:
    return UserOut(
        id=u.id, handle=u.handle, display_name=u.display_name, avatar=u.avatar_url, bio=u.bio,
        is_online=u.is_online, last_seen=u.last_seen,
    )


def reply_out(m: Optional[Message]) -> Optional[ReplyOut]:
    if m is None:
        return None
    return ReplyOut(id=m.id, sender_id=m.sender_id, content=m.content, message_type=m.message_type, is_deleted=m.is_deleted)


def message_out(m: Message, reply: Optional[Message] = None) -> MessageOut:
    return MessageOut(
        id=m.id,
        conversation_id=m.conversation_id,
        sender_id=m.sender_id,
        seq=m.seq,
        content=m.content,
        message_type=m.message_type,
        media_url=m.media_url,
        media_thumbnail=m.media_thumbnail,
        file_name=m.file_name,
        file_size=m.file_size,
        duration=m.duration,
        delivered_to=[DeliveryOut(user=d.user_id, delivered_at=d.delivered_at) for d in m.delivered_to],
        seen_by=[SeenOut(user=s.user_id, seen_at=s.seen_at) for s in m.seen_by],
        reactions=[ReactionOut(user=r.user_id, emoji=r.emoji) for r in m.reactions],
        reply_to=reply_out(reply),
        forwarded_from=m.forwarded_from_id,
        is_deleted=m.is_deleted,
        state=m.state.value,
        created_at=m.created_at,
        updated_at=m.updated_at,
    )


def message_payload(m: Message, reply: Optional[Message] = None) -> dict:
    return message_out(m, reply).model_dump(mode="json", by_alias=True)


def reactions_payload(m: Message) -> list[dict]:
    return [{"user": r.user_id, "emoji": r.emoji} for r in m.reactions]


def conversation_out(
    c: Conversation,
    viewer_id: str,
    *,
    peer: Optional[User] = None,
    last_message: Optional[Message] = None,
) -> ConversationOut:
    return ConversationOut(
        id=c.id,
        participants=list(c.participant_ids),
        participant=user_out(peer) if peer is not None else None,
        is_group=c.is_group,
        group_name=c.name,
        group_avatar=c.avatar_url,
        owner_id=c.owner_id,
        last_message=message_out(last_message) if last_message is not None else None,
        unread_count=c.unread_for(viewer_id),
        is_muted=viewer_id in c.muted_by,
        theme=c.theme,
        emoji=c.emoji,
        updated_at=c.updated_at,
    )
