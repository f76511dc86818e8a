from __future__ import annotations

import asyncio
import dataclasses
from datetime import datetime
from typing import Callable, Optional, TypeVar

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from .database import make_session_factory, session_scope
from .domain import Conversation, DeliveryRecord, Message, MessageState, MessageType, Reaction, SeenRecord, User
from .errors import ConflictError, NotFoundError, TransientStoreError
from .models import ConversationParticipant, ConversationRow, MessageRow, UserRow
from .store import DocumentStore


T = TypeVar("T")


def _ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _user_from_row(r: UserRow) -> User:
    return User(
        id=r.id, handle=r.handle, display_name=r.display_name or "", avatar_url=r.avatar_url or "", bio=r.bio or "",
        is_online=bool(r.is_online), last_seen=r.last_seen, created_at=r.created_at,
    )


def _apply_user(r: UserRow, u: User) -> None:
    r.handle = u.handle
    r.display_name = u.display_name
    r.avatar_url = u.avatar_url
    r.bio = u.bio
    r.is_online = u.is_online
    r.last_seen = u.last_seen
    r.created_at = u.created_at


def _conversation_from_row(r: ConversationRow, participants: list[str]) -> Conversation:
    return Conversation(
        id=r.id, participant_ids=participants, is_group=bool(r.is_group), name=r.name, avatar_url=r.avatar_url,
        owner_id=r.owner_user_id, direct_key=r.direct_key, unread={k: int(v) for k, v in (r.unread_json or {}).items()},
        muted_by=list(r.muted_json or []), last_message_id=r.last_message_id, last_seq=int(r.last_seq or 0),
        theme=r.theme, emoji=r.emoji, created_at=r.created_at, updated_at=r.updated_at,
    )


def _apply_conversation(r: ConversationRow, c: Conversation) -> None:
    r.direct_key = c.direct_key
    r.is_group = c.is_group
    r.name = c.name
    r.avatar_url = c.avatar_url
    r.owner_user_id = c.owner_id
    r.theme = c.theme
    r.emoji = c.emoji
    r.unread_json = dict(c.unread)
    r.muted_json = list(c.muted_by)
    r.last_message_id = c.last_message_id
    r.last_seq = c.last_seq
    r.created_at = c.created_at
    r.updated_at = c.updated_at


def _message_from_row(r: MessageRow) -> Message:
    return Message(
        id=r.id, conversation_id=r.conversation_id, sender_id=r.sender_user_id, seq=r.seq, content=r.content or "",
        message_type=MessageType(r.message_type), media_url=r.media_url, media_thumbnail=r.media_thumbnail,
        file_name=r.file_name, file_size=r.file_size, duration=r.duration,
        delivered_to=[DeliveryRecord(d["user_id"], _ts(d["delivered_at"])) for d in (r.delivered_json or [])],
        seen_by=[SeenRecord(s["user_id"], _ts(s["seen_at"])) for s in (r.seen_json or [])],
        reactions=[Reaction(x["user_id"], x["emoji"]) for x in (r.reactions_json or [])],
        reply_to_id=r.reply_to_id, forwarded_from_id=r.forwarded_from_id, is_deleted=bool(r.is_deleted),
        state=MessageState(r.state), created_at=r.created_at, updated_at=r.updated_at,
    )


def _apply_message(r: MessageRow, m: Message) -> None:
    r.conversation_id = m.conversation_id
    r.seq = m.seq
    r.sender_user_id = m.sender_id
    r.content = m.content
    r.message_type = m.message_type.value
    r.media_url = m.media_url
    r.media_thumbnail = m.media_thumbnail
    r.file_name = m.file_name
    r.file_size = m.file_size
    r.duration = m.duration
    r.delivered_json = [{"user_id": d.user_id, "delivered_at": d.delivered_at.isoformat()} for d in m.delivered_to]
    r.seen_json = [{"user_id": s.user_id, "seen_at": s.seen_at.isoformat()} for s in m.seen_by]
    r.reactions_json = [{"user_id": x.user_id, "emoji": x.emoji} for x in m.reactions]
    r.reply_to_id = m.reply_to_id
    r.forwarded_from_id = m.forwarded_from_id
    r.is_deleted = m.is_deleted
    r.state = m.state.value
    r.created_at = m.created_at
    r.updated_at = m.updated_at


class SqlStore(DocumentStore):
    """SQLAlchemy adapter. Blocking ORM work runs on worker threads so the event loop never waits on the database."""

    def __init__(self, engine) -> None:
        self.engine = engine
        self.SessionLocal = make_session_factory(engine)

    async def _run(self, fn: Callable[[Session], T]) -> T:
        def work() -> T:
            try:
                with session_scope(self.SessionLocal) as db:
                    return fn(db)
            except IntegrityError as e:
                raise ConflictError("Write conflicts with existing record") from e
            except OperationalError as e:
                raise TransientStoreError("Database unavailable") from e

        return await asyncio.to_thread(work)

    @staticmethod
    def _participants(db: Session, conversation_id: str) -> list[str]:
        rows = (
            db.query(ConversationParticipant.user_id)
            .filter(ConversationParticipant.conversation_id == conversation_id)
            .order_by(ConversationParticipant.position.asc())
            .all()
        )
        return [r[0] for r in rows]

    # Users

    async def get_user(self, user_id):
        def op(db: Session):
            r = db.get(UserRow, user_id)
            return _user_from_row(r) if r else None
        return await self._run(op)

    async def get_user_by_handle(self, handle):
        def op(db: Session):
            r = db.query(UserRow).filter(func.lower(UserRow.handle) == handle.lower()).one_or_none()
            return _user_from_row(r) if r else None
        return await self._run(op)

    async def put_user(self, user):
        def op(db: Session):
            r = db.get(UserRow, user.id)
            if r is None:
                r = UserRow(id=user.id)
                db.add(r)
            _apply_user(r, user)
            db.flush()
            return _user_from_row(r)
        return await self._run(op)

    async def patch_user(self, user_id, **fields):
        def op(db: Session):
            r = db.get(UserRow, user_id)
            if r is None:
                raise NotFoundError("User not found")
            u = dataclasses.replace(_user_from_row(r), **fields)
            _apply_user(r, u)
            db.flush()
            return u
        return await self._run(op)

    async def search_users(self, query, limit=20):
        pattern = f"%{query.strip().lower()}%"

        def op(db: Session):
            rows = (
                db.query(UserRow)
                .filter(or_(func.lower(UserRow.handle).like(pattern), func.lower(UserRow.display_name).like(pattern)))
                .order_by(func.lower(UserRow.handle).asc())
                .limit(limit)
                .all()
            )
            return [_user_from_row(r) for r in rows]
        return await self._run(op)

    async def list_users(self, limit=50):
        def op(db: Session):
            rows = db.query(UserRow).order_by(UserRow.created_at.asc()).limit(limit).all()
            return [_user_from_row(r) for r in rows]
        return await self._run(op)

    # Conversations

    async def get_conversation(self, conversation_id):
        def op(db: Session):
            r = db.get(ConversationRow, conversation_id)
            return _conversation_from_row(r, self._participants(db, r.id)) if r else None
        return await self._run(op)

    async def find_direct(self, key):
        def op(db: Session):
            r = db.query(ConversationRow).filter(ConversationRow.direct_key == key).one_or_none()
            return _conversation_from_row(r, self._participants(db, r.id)) if r else None
        return await self._run(op)

    async def put_conversation(self, conversation):
        def op(db: Session):
            r = db.get(ConversationRow, conversation.id)
            if r is None:
                r = ConversationRow(id=conversation.id)
                db.add(r)
            _apply_conversation(r, conversation)
            db.flush()
            if self._participants(db, r.id) != conversation.participant_ids:
                db.query(ConversationParticipant).filter(ConversationParticipant.conversation_id == r.id).delete()
                for pos, uid in enumerate(conversation.participant_ids):
                    db.add(ConversationParticipant(conversation_id=r.id, user_id=uid, position=pos))
                db.flush()
            return _conversation_from_row(r, list(conversation.participant_ids))
        return await self._run(op)

    async def patch_conversation(self, conversation_id, **fields):
        def op(db: Session):
            r = db.get(ConversationRow, conversation_id)
            if r is None:
                raise NotFoundError("Conversation not found")
            c = dataclasses.replace(_conversation_from_row(r, self._participants(db, r.id)), **fields)
            _apply_conversation(r, c)
            db.flush()
            return c
        return await self._run(op)

    async def conversations_for_user(self, user_id):
        def op(db: Session):
            rows = (
                db.query(ConversationRow)
                .join(ConversationParticipant, ConversationParticipant.conversation_id == ConversationRow.id)
                .filter(ConversationParticipant.user_id == user_id)
                .order_by(ConversationRow.updated_at.desc())
                .all()
            )
            return [_conversation_from_row(r, self._participants(db, r.id)) for r in rows]
        return await self._run(op)

    async def delete_conversation(self, conversation_id):
        def op(db: Session):
            removed = db.query(MessageRow).filter(MessageRow.conversation_id == conversation_id).delete()
            db.query(ConversationParticipant).filter(ConversationParticipant.conversation_id == conversation_id).delete()
            db.query(ConversationRow).filter(ConversationRow.id == conversation_id).delete()
            return int(removed)
        return await self._run(op)

    # Messages

    async def get_message(self, message_id):
        def op(db: Session):
            r = db.get(MessageRow, message_id)
            return _message_from_row(r) if r else None
        return await self._run(op)

    async def get_messages(self, message_ids):
        if not message_ids:
            return []

        def op(db: Session):
            rows = db.query(MessageRow).filter(MessageRow.id.in_(list(message_ids))).all()
            return [_message_from_row(r) for r in rows]
        return await self._run(op)

    async def put_message(self, message):
        def op(db: Session):
            existing = db.get(MessageRow, message.id)
            if existing is not None:
                if existing.conversation_id == message.conversation_id and existing.seq == message.seq:
                    return _message_from_row(existing)
                raise ConflictError("Message id already used")
            r = MessageRow(id=message.id)
            _apply_message(r, message)
            db.add(r)
            db.flush()
            return _message_from_row(r)
        return await self._run(op)

    async def patch_message(self, message_id, **fields):
        def op(db: Session):
            r = db.get(MessageRow, message_id)
            if r is None:
                raise NotFoundError("Message not found")
            m = dataclasses.replace(_message_from_row(r), **fields)
            _apply_message(r, m)
            db.flush()
            return m
        return await self._run(op)

    async def remove_message(self, message_id):
        def op(db: Session):
            return db.query(MessageRow).filter(MessageRow.id == message_id).delete() > 0
        return await self._run(op)

    async def list_messages(self, conversation_id, offset=0, limit=50):
        def op(db: Session):
            rows = (
                db.query(MessageRow)
                .filter(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.seq.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [_message_from_row(r) for r in rows]
        return await self._run(op)

    async def count_messages(self, conversation_id):
        def op(db: Session):
            return int(db.query(func.count(MessageRow.id)).filter(MessageRow.conversation_id == conversation_id).scalar() or 0)
        return await self._run(op)

    async def max_seq(self, conversation_id):
        def op(db: Session):
            return int(db.query(func.max(MessageRow.seq)).filter(MessageRow.conversation_id == conversation_id).scalar() or 0)
        return await self._run(op)
