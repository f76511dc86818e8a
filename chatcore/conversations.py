from __future__ import annotations

import json
import logging
from typing import Iterable, Optional

from .actors import ConversationActors
from .domain import Conversation, direct_key, new_id, utcnow
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .store import GuardedStore


logger = logging.getLogger("chat.conversations")

GROUP_NAME_MAX_LEN = 128


class ConversationService:
    def __init__(self, store: GuardedStore, actors: ConversationActors) -> None:
        self.store = store
        self.actors = actors

    async def get(self, conversation_id: str) -> Conversation:
        c = await self.store.get_conversation(conversation_id)
        if c is None:
            raise NotFoundError("Conversation not found")
        return c

    async def get_for_participant(self, conversation_id: str, user_id: str) -> Conversation:
        c = await self.get(conversation_id)
        if not c.has_participant(user_id):
            raise ForbiddenError("Not a participant of this conversation")
        return c

    async def list_for_user(self, user_id: str) -> list[Conversation]:
        return await self.store.conversations_for_user(user_id)

    async def get_or_create_direct(self, user_id: str, other_id: str) -> Conversation:
        if user_id == other_id:
            raise ValidationError("Cannot start a conversation with yourself")
        if await self.store.get_user(other_id) is None:
            raise NotFoundError("User not found")
        key = direct_key(user_id, other_id)
        async with self.actors.hold(f"direct:{key}"):
            found = await self.store.find_direct(key)
            if found is not None:
                return found
            convo = Conversation(id=new_id(), participant_ids=[user_id, other_id], direct_key=key, unread={user_id: 0, other_id: 0})
            try:
                convo = await self.store.put_conversation(convo)
            except ConflictError:
                # Another process created it first.
                found = await self.store.find_direct(key)
                if found is None:
                    raise
                return found
        logger.info(json.dumps({"event": "conversation_created", "conversation_id": convo.id, "kind": "direct"}))
        return convo

    async def create_group(self, owner_id: str, name: str, member_ids: Iterable[str], avatar_url: Optional[str] = None) -> Conversation:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Group name is required")
        if len(name) > GROUP_NAME_MAX_LEN:
            raise ValidationError(f"Group name must be at most {GROUP_NAME_MAX_LEN} characters")
        participants = [owner_id]
        for uid in member_ids:
            if uid not in participants:
                participants.append(uid)
        if len(participants) < 2:
            raise ValidationError("A group needs at least one other member")
        for uid in participants[1:]:
            if await self.store.get_user(uid) is None:
                raise NotFoundError(f"User {uid} not found")
        convo = Conversation(
            id=new_id(),
            participant_ids=participants,
            is_group=True,
            name=name,
            avatar_url=avatar_url,
            owner_id=owner_id,
            unread={uid: 0 for uid in participants},
        )
        convo = await self.store.put_conversation(convo)
        logger.info(json.dumps({"event": "conversation_created", "conversation_id": convo.id, "kind": "group", "members": len(participants)}))
        return convo

    async def mark_read(self, conversation_id: str, user_id: str) -> Conversation:
        """Reset the reader's unread counter; other participants' counters are untouched."""
        async with self.actors.hold(conversation_id):
            c = await self.get_for_participant(conversation_id, user_id)
            if c.unread_for(user_id) == 0:
                return c
            unread = dict(c.unread)
            unread[user_id] = 0
            return await self.store.patch_conversation(conversation_id, unread=unread)

    async def update_settings(
        self,
        conversation_id: str,
        user_id: str,
        *,
        theme: Optional[str] = None,
        emoji: Optional[str] = None,
        is_muted: Optional[bool] = None,
        name: Optional[str] = None,
    ) -> Conversation:
        async with self.actors.hold(conversation_id):
            c = await self.get_for_participant(conversation_id, user_id)
            fields = {}
            if theme is not None:
                if not theme.strip() or len(theme) > 32:
                    raise ValidationError("Invalid theme")
                fields["theme"] = theme.strip()
            if emoji is not None:
                if not emoji or len(emoji) > 16:
                    raise ValidationError("Invalid emoji")
                fields["emoji"] = emoji
            if is_muted is not None:
                muted = [u for u in c.muted_by if u != user_id]
                if is_muted:
                    muted.append(user_id)
                fields["muted_by"] = muted
            if name is not None:
                if not c.is_group:
                    raise ValidationError("Only groups have a name")
                name = name.strip()
                if not name or len(name) > GROUP_NAME_MAX_LEN:
                    raise ValidationError("Invalid group name")
                fields["name"] = name
            if not fields:
                return c
            fields["updated_at"] = utcnow()
            return await self.store.patch_conversation(conversation_id, **fields)

    async def delete(self, conversation_id: str, user_id: str, *, hard: bool = False) -> int:
        """Remove a conversation. Refuses while messages exist unless `hard`, which cascades to them."""
        async with self.actors.hold(conversation_id):
            c = await self.get_for_participant(conversation_id, user_id)
            if c.is_group and c.owner_id and c.owner_id != user_id:
                raise ForbiddenError("Only the group owner can delete the group")
            if not hard and await self.store.count_messages(conversation_id) > 0:
                raise ConflictError("Conversation still has messages; request a hard delete")
            removed = await self.store.delete_conversation(conversation_id)
        logger.info(json.dumps({"event": "conversation_deleted", "conversation_id": conversation_id, "messages_removed": removed, "hard": hard}))
        return removed
