"""Message pipeline: validate, sequence, persist, fan out.

A message moves Pending -> Persisted inside `submit`; receipts then move it to
Delivered and Seen (partial or full across recipients). Deletion is a flag
that can be set on any persisted message and freezes it.

Everything that touches one conversation's sequence counter, unread counters
or a message document runs inside that conversation's actor slot, and the
fan-out of a message is queued before the slot is released, so every session
receives a conversation's messages in sequence order.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from prometheus_client import Counter

from .actors import ConversationActors
from .domain import Conversation, Message, MessageState, MessageType, Reaction, new_id, utcnow
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .events import MessageEvent, Topic
from .quota import MessageQuota
from .receipts import ReceiptAggregator
from .schemas import message_payload, reactions_payload
from .sessions import SessionRegistry
from .store import GuardedStore


logger = logging.getLogger("chat.pipeline")

MESSAGES_SUBMITTED = Counter("chat_messages_submitted_total", "Messages persisted", ["type"])

EMOJI_MAX_LEN = 16
CONTENT_MAX_LEN = 10000


@dataclass
class MessageDraft:
    content: str = ""
    message_type: str = MessageType.TEXT.value
    media_url: Optional[str] = None
    media_thumbnail: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    duration: Optional[float] = None
    reply_to: Optional[str] = None
    forwarded_from: Optional[str] = None


@dataclass
class HistoryPage:
    messages: list[Message]
    replies: dict[str, Message]
    page: int
    has_more: bool


class MessagePipeline:
    def __init__(
        self,
        store: GuardedStore,
        actors: ConversationActors,
        registry: SessionRegistry,
        receipts: ReceiptAggregator,
        quota: Optional[MessageQuota] = None,
    ) -> None:
        self.store = store
        self.actors = actors
        self.registry = registry
        self.receipts = receipts
        self.quota = quota
        self.message_events: Topic[MessageEvent] = Topic("message_events")
        self._background: set[asyncio.Task] = set()

    # Background work

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("background task failed", exc_info=task.exception())

    async def drain(self) -> None:
        """Wait for delivery bookkeeping and event publication started so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Helpers

    async def _load(self, message_id: str) -> Message:
        m = await self.store.get_message(message_id)
        if m is None:
            raise NotFoundError("Message not found")
        return m

    async def _participant_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        c = await self.store.get_conversation(conversation_id)
        if c is None:
            raise NotFoundError("Conversation not found")
        if not c.has_participant(user_id):
            raise ForbiddenError("Not a participant of this conversation")
        return c

    @staticmethod
    def _coerce_type(value) -> MessageType:
        try:
            return MessageType(value)
        except ValueError:
            raise ValidationError(f"Unknown message type {value!r}")

    async def resolve_replies(self, messages: Iterable[Message]) -> dict[str, Message]:
        ids = sorted({m.reply_to_id for m in messages if m.reply_to_id})
        if not ids:
            return {}
        return {m.id: m for m in await self.store.get_messages(ids)}

    # Operations

    async def submit(self, conversation_id: str, sender_id: str, draft: MessageDraft) -> Message:
        message_type = self._coerce_type(draft.message_type)
        content = draft.content or ""
        if not content.strip() and not draft.media_url:
            raise ValidationError("Message needs content or a media reference")
        if len(content) > CONTENT_MAX_LEN:
            raise ValidationError(f"Content must be at most {CONTENT_MAX_LEN} characters")

        async with self.actors.hold(conversation_id):
            conv = await self.store.get_conversation(conversation_id)
            if conv is None:
                raise ValidationError("Conversation does not exist")
            if not conv.has_participant(sender_id):
                raise ValidationError("Sender is not a participant of this conversation")
            reply = None
            if draft.reply_to:
                reply = await self.store.get_message(draft.reply_to)
                if reply is None or reply.conversation_id != conversation_id:
                    raise ValidationError("Reply target must be a message of the same conversation")
            if self.quota is not None:
                await self.quota.check(sender_id)

            now = utcnow()
            msg = Message(
                id=new_id(),
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=content,
                message_type=message_type,
                media_url=draft.media_url,
                media_thumbnail=draft.media_thumbnail,
                file_name=draft.file_name,
                file_size=draft.file_size,
                duration=draft.duration,
                reply_to_id=draft.reply_to,
                forwarded_from_id=draft.forwarded_from,
                state=MessageState.PERSISTED,
                created_at=now,
                updated_at=now,
            )
            last_seq = conv.last_seq
            for attempt in (1, 2):
                msg.seq = last_seq + 1
                try:
                    msg = await self.store.put_message(msg)
                    break
                except ConflictError:
                    if attempt == 2:
                        raise
                    last_seq = max(last_seq, await self.store.max_seq(conversation_id))
                    logger.warning(json.dumps({"event": "sequence_conflict", "conversation_id": conversation_id, "retry_seq": last_seq + 1}))

            unread = {p: conv.unread_for(p) + (0 if p == sender_id else 1) for p in conv.participant_ids}
            try:
                conv = await self.store.patch_conversation(
                    conversation_id, last_message_id=msg.id, last_seq=msg.seq, updated_at=msg.created_at, unread=unread
                )
            except Exception:
                await self._discard(msg)
                raise
            payload = message_payload(msg, reply)
            online = [p for p in conv.others(sender_id) if self.registry.deliver(p, "new_message", payload)]

        MESSAGES_SUBMITTED.labels(message_type.value).inc()
        logger.info(json.dumps({"event": "message_submitted", "message_id": msg.id, "conversation_id": conversation_id, "seq": msg.seq, "online_recipients": len(online)}))
        if online:
            self._spawn(self._record_deliveries(msg, online))
        self._spawn(self.message_events.publish(MessageEvent("created", msg.id, conversation_id, sender_id)))
        return msg

    async def _discard(self, msg: Message) -> None:
        # History only holds messages the conversation has counted.
        try:
            await self.store.remove_message(msg.id)
        except Exception as e:
            logger.error(json.dumps({"event": "submit_rollback_failed", "message_id": msg.id, "conversation_id": msg.conversation_id, "error": type(e).__name__}))
            return
        logger.warning(json.dumps({"event": "submit_rolled_back", "message_id": msg.id, "conversation_id": msg.conversation_id, "seq": msg.seq}))

    async def _record_deliveries(self, msg: Message, recipients: list[str]) -> None:
        at = utcnow()
        for uid in recipients:
            try:
                await self.receipts.mark_delivered(msg.id, uid, at)
            except Exception as e:
                logger.warning(json.dumps({"event": "delivery_record_failed", "message_id": msg.id, "user_id": uid, "error": type(e).__name__}))

    async def delete(self, message_id: str, requester_id: str) -> Message:
        """Soft delete by the author. Content and media are cleared; id, seq and timestamps stay."""
        first = await self._load(message_id)
        async with self.actors.hold(first.conversation_id):
            m = await self._load(message_id)
            if m.sender_id != requester_id:
                raise ForbiddenError("Only the sender can delete this message")
            if m.is_deleted:
                return m
            m = await self.store.patch_message(
                message_id,
                is_deleted=True,
                content="",
                media_url=None,
                media_thumbnail=None,
                file_name=None,
                file_size=None,
                duration=None,
            )
            conv = await self.store.get_conversation(m.conversation_id)
            if conv is not None:
                self.registry.deliver_many(
                    conv.participant_ids, "message_deleted", {"messageId": m.id, "conversationId": m.conversation_id}
                )
        logger.info(json.dumps({"event": "message_deleted", "message_id": m.id, "conversation_id": m.conversation_id}))
        self._spawn(self.message_events.publish(MessageEvent("deleted", m.id, m.conversation_id, requester_id)))
        return m

    async def react(self, message_id: str, user_id: str, emoji: str) -> Message:
        """Set the user's single reaction, replacing any earlier one, and fan out the full set."""
        emoji = (emoji or "").strip()
        if not emoji or len(emoji) > EMOJI_MAX_LEN:
            raise ValidationError("Invalid emoji")
        return await self._update_reactions(message_id, user_id, emoji)

    async def unreact(self, message_id: str, user_id: str) -> Message:
        return await self._update_reactions(message_id, user_id, None)

    async def _update_reactions(self, message_id: str, user_id: str, emoji: Optional[str]) -> Message:
        first = await self._load(message_id)
        async with self.actors.hold(first.conversation_id):
            m = await self._load(message_id)
            conv = await self._participant_conversation(m.conversation_id, user_id)
            if m.is_deleted:
                raise ValidationError("Deleted messages cannot be reacted to")
            current = m.reaction_of(user_id)
            if emoji is None:
                if current is None:
                    return m
                reactions = [r for r in m.reactions if r.user_id != user_id]
            elif current is None:
                reactions = m.reactions + [Reaction(user_id, emoji)]
            elif current.emoji == emoji:
                return m
            else:
                reactions = [Reaction(user_id, emoji) if r.user_id == user_id else r for r in m.reactions]
            m = await self.store.patch_message(message_id, reactions=reactions)
            self.registry.deliver_many(
                conv.participant_ids,
                "message_reaction",
                {"messageId": m.id, "conversationId": m.conversation_id, "reactions": reactions_payload(m)},
            )
        self._spawn(self.message_events.publish(MessageEvent("reacted", m.id, m.conversation_id, user_id)))
        return m

    async def forward(self, message_id: str, user_id: str, conversation_ids: Iterable[str]) -> list[Message]:
        """Copy a message into other conversations of the user; each copy is a fresh submit."""
        src = await self._load(message_id)
        await self._participant_conversation(src.conversation_id, user_id)
        if src.is_deleted:
            raise ValidationError("Deleted messages cannot be forwarded")
        targets: list[str] = []
        for cid in conversation_ids:
            if cid not in targets:
                targets.append(cid)
        if not targets:
            raise ValidationError("No target conversations")
        for cid in targets:
            c = await self.store.get_conversation(cid)
            if c is None or not c.has_participant(user_id):
                raise ValidationError(f"Cannot forward into conversation {cid}")
        out = []
        for cid in targets:
            draft = MessageDraft(
                content=src.content,
                message_type=src.message_type.value,
                media_url=src.media_url,
                media_thumbnail=src.media_thumbnail,
                file_name=src.file_name,
                file_size=src.file_size,
                duration=src.duration,
                forwarded_from=src.forwarded_from_id or src.sender_id,
            )
            out.append(await self.submit(cid, user_id, draft))
        return out

    async def history(self, conversation_id: str, user_id: str, page: int = 1, limit: int = 50) -> HistoryPage:
        """One page of history, newest page first, oldest-to-newest inside the page.

        Fetching is what reconciles deliveries missed while the reader was
        offline: any message here without a delivery record for the reader
        gets one now.
        """
        if page < 1:
            raise ValidationError("Page must be >= 1")
        if limit < 1:
            raise ValidationError("Limit must be >= 1")
        await self._participant_conversation(conversation_id, user_id)
        offset = (page - 1) * limit
        rows = await self.store.list_messages(conversation_id, offset=offset, limit=limit)
        total = await self.store.count_messages(conversation_id)
        missing = [m.id for m in rows if m.sender_id != user_id and m.delivered_at(user_id) is None]
        if missing:
            updated = {m.id: m for m in await self.receipts.mark_delivered_bulk(conversation_id, missing, user_id)}
            rows = [updated.get(m.id, m) for m in rows]
        rows.reverse()
        return HistoryPage(messages=rows, replies=await self.resolve_replies(rows), page=page, has_more=total > offset + len(rows))
