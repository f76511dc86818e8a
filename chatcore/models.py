from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, LargeBinary, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    handle = Column(String(15), nullable=False, unique=True, index=True)
    display_name = Column(String(128), nullable=False, default="")
    avatar_url = Column(String(512), nullable=False, default="")
    bio = Column(String(150), nullable=False, default="")
    is_online = Column(Boolean, nullable=False, default=False)
    last_seen = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class ConversationRow(Base):
    __tablename__ = "conversations"

    id = Column(String(64), primary_key=True)
    direct_key = Column(String(160), nullable=True, unique=True)  # sorted "a:b" for direct chats
    is_group = Column(Boolean, nullable=False, default=False)
    name = Column(String(128), nullable=True)
    avatar_url = Column(String(512), nullable=True)
    owner_user_id = Column(String(64), nullable=True)
    theme = Column(String(32), nullable=False, default="default")
    emoji = Column(String(16), nullable=False, default="\U0001F44D")
    unread_json = Column(JSON, nullable=False, default=dict)
    muted_json = Column(JSON, nullable=False, default=list)
    last_message_id = Column(String(64), nullable=True)
    last_seq = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)


class ConversationParticipant(Base):
    __tablename__ = "conversation_participants"
    __table_args__ = (UniqueConstraint("conversation_id", "user_id", name="uq_conv_part"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(64), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)


class MessageRow(Base):
    __tablename__ = "messages"
    __table_args__ = (UniqueConstraint("conversation_id", "seq", name="uq_message_seq"),)

    id = Column(String(64), primary_key=True)
    conversation_id = Column(String(64), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    sender_user_id = Column(String(64), nullable=False)
    content = Column(Text, nullable=False, default="")
    message_type = Column(String(16), nullable=False, default="text")
    media_url = Column(String(1024), nullable=True)
    media_thumbnail = Column(String(1024), nullable=True)
    file_name = Column(String(256), nullable=True)
    file_size = Column(Integer, nullable=True)
    duration = Column(Float, nullable=True)
    delivered_json = Column(JSON, nullable=False, default=list)  # [{user_id, delivered_at}]
    seen_json = Column(JSON, nullable=False, default=list)  # [{user_id, seen_at}]
    reactions_json = Column(JSON, nullable=False, default=list)  # [{user_id, emoji}]
    reply_to_id = Column(String(64), nullable=True)
    forwarded_from_id = Column(String(64), nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    state = Column(String(16), nullable=False, default="persisted")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Blob(Base):
    __tablename__ = "blobs"

    id = Column(String(64), primary_key=True)
    data = Column(LargeBinary, nullable=False)
    content_type = Column(String(128), nullable=True)
    filename = Column(String(256), nullable=True)
    size_bytes = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
