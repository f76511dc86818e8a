from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Iterable, Optional

from .actors import ConversationActors
from .domain import Conversation, Coverage, DeliveryRecord, Message, MessageState, SeenRecord, utcnow
from .errors import ForbiddenError, NotFoundError
from .sessions import SessionRegistry
from .store import GuardedStore


logger = logging.getLogger("chat.receipts")


def coverage(message: Message, conversation: Conversation, *, seen: bool = True) -> Coverage:
    """`full` when every recipient has a record, `partial` when some do, else `none`."""
    recipients = set(conversation.others(message.sender_id))
    if not recipients:
        return Coverage.NONE
    records = message.seen_by if seen else message.delivered_to
    have = {r.user_id for r in records} & recipients
    if not have:
        return Coverage.NONE
    return Coverage.FULL if have == recipients else Coverage.PARTIAL


def derive_state(message: Message) -> MessageState:
    if message.seen_by:
        return MessageState.SEEN
    if message.delivered_to:
        return MessageState.DELIVERED
    return MessageState.PERSISTED


class ReceiptAggregator:
    """Delivery and seen acknowledgements, per message per recipient.

    Updates are idempotent and run inside the conversation's actor slot so
    concurrent receipts for one message never overwrite each other. Only the
    message's author is told about receipts.
    Deleted messages still collect delivery records; seen receipts for them
    are ignored.
    """

    def __init__(self, store: GuardedStore, actors: ConversationActors, registry: SessionRegistry) -> None:
        self.store = store
        self.actors = actors
        self.registry = registry

    async def _load(self, message_id: str) -> Message:
        m = await self.store.get_message(message_id)
        if m is None:
            raise NotFoundError("Message not found")
        return m

    async def _conversation(self, m: Message, user_id: str) -> Conversation:
        c = await self.store.get_conversation(m.conversation_id)
        if c is None:
            raise NotFoundError("Conversation not found")
        if not c.has_participant(user_id):
            raise ForbiddenError("Not a participant of this conversation")
        return c

    async def mark_delivered(self, message_id: str, user_id: str, at: Optional[datetime] = None) -> Message:
        at = at or utcnow()
        first = await self._load(message_id)
        async with self.actors.hold(first.conversation_id):
            m = await self._load(message_id)
            c = await self._conversation(m, user_id)
            if m.sender_id == user_id or m.delivered_at(user_id) is not None:
                return m
            delivered = m.delivered_to + [DeliveryRecord(user_id, at)]
            m.delivered_to = delivered
            m = await self.store.patch_message(message_id, delivered_to=delivered, state=derive_state(m))
        self._notify_delivered(m, c, user_id, at)
        return m

    async def mark_delivered_bulk(self, conversation_id: str, message_ids: Iterable[str], user_id: str, at: Optional[datetime] = None) -> list[Message]:
        """Fill in missing delivery records for one recipient; used when history is fetched."""
        at = at or utcnow()
        updated: list[Message] = []
        async with self.actors.hold(conversation_id):
            c = await self.store.get_conversation(conversation_id)
            if c is None or not c.has_participant(user_id):
                return updated
            for m in await self.store.get_messages(list(message_ids)):
                if m.conversation_id != conversation_id or m.sender_id == user_id:
                    continue
                if m.delivered_at(user_id) is not None:
                    continue
                m.delivered_to = m.delivered_to + [DeliveryRecord(user_id, at)]
                updated.append(await self.store.patch_message(m.id, delivered_to=m.delivered_to, state=derive_state(m)))
        for m in updated:
            self._notify_delivered(m, c, user_id, at)
        if updated:
            logger.info(json.dumps({"event": "deferred_delivery", "conversation_id": conversation_id, "user_id": user_id, "count": len(updated)}))
        return updated

    async def mark_seen(self, message_id: str, user_id: str, at: Optional[datetime] = None) -> Message:
        """Record that the user saw the message. A missing delivery record is synthesized with the same timestamp."""
        at = at or utcnow()
        first = await self._load(message_id)
        async with self.actors.hold(first.conversation_id):
            m = await self._load(message_id)
            c = await self._conversation(m, user_id)
            if m.sender_id == user_id or m.is_deleted or m.seen_at(user_id) is not None:
                return m
            synthesized = m.delivered_at(user_id) is None
            if synthesized:
                m.delivered_to = m.delivered_to + [DeliveryRecord(user_id, at)]
            m.seen_by = m.seen_by + [SeenRecord(user_id, at)]
            m = await self.store.patch_message(
                message_id, delivered_to=m.delivered_to, seen_by=m.seen_by, state=derive_state(m)
            )
        if synthesized:
            self._notify_delivered(m, c, user_id, at)
        self.registry.deliver(
            m.sender_id,
            "message_seen",
            {
                "messageId": m.id,
                "conversationId": m.conversation_id,
                "seenBy": user_id,
                "seenAt": at.isoformat(),
                "status": coverage(m, c).value,
            },
        )
        return m

    def _notify_delivered(self, m: Message, c: Conversation, user_id: str, at: datetime) -> None:
        self.registry.deliver(
            m.sender_id,
            "message_delivered",
            {
                "messageId": m.id,
                "conversationId": m.conversation_id,
                "deliveredTo": user_id,
                "deliveredAt": at.isoformat(),
                "status": coverage(m, c, seen=False).value,
            },
        )

    async def status(self, message_id: str) -> dict:
        m = await self._load(message_id)
        c = await self.store.get_conversation(m.conversation_id)
        if c is None:
            raise NotFoundError("Conversation not found")
        return {
            "state": m.state.value,
            "delivered": coverage(m, c, seen=False).value,
            "seen": coverage(m, c).value,
        }
