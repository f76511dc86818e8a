"""Durable document store behind a repository interface.

`DocumentStore` is what the core talks to; `MemoryStore` backs dev and tests,
`chatcore.sql_store.SqlStore` backs production. Every call from the core goes
through `GuardedStore`, which bounds each call with a timeout and retries
transient failures before surfacing `ServiceUnavailable`.
"""
from __future__ import annotations

import asyncio
import copy
import dataclasses
import functools
import inspect
import json
import logging
from typing import Any, Optional

from .domain import Conversation, Message, User
from .errors import ConflictError, NotFoundError, ServiceUnavailable, TransientStoreError


logger = logging.getLogger("chat.store")


class DocumentStore:
    # Users
    async def get_user(self, user_id: str) -> Optional[User]:
        raise NotImplementedError

    async def get_user_by_handle(self, handle: str) -> Optional[User]:
        raise NotImplementedError

    async def put_user(self, user: User) -> User:
        raise NotImplementedError

    async def patch_user(self, user_id: str, **fields: Any) -> User:
        raise NotImplementedError

    async def search_users(self, query: str, limit: int = 20) -> list[User]:
        raise NotImplementedError

    async def list_users(self, limit: int = 50) -> list[User]:
        raise NotImplementedError

    # Conversations
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        raise NotImplementedError

    async def find_direct(self, key: str) -> Optional[Conversation]:
        raise NotImplementedError

    async def put_conversation(self, conversation: Conversation) -> Conversation:
        raise NotImplementedError

    async def patch_conversation(self, conversation_id: str, **fields: Any) -> Conversation:
        raise NotImplementedError

    async def conversations_for_user(self, user_id: str) -> list[Conversation]:
        raise NotImplementedError

    async def delete_conversation(self, conversation_id: str) -> int:
        """Remove the conversation and its messages; returns the number of messages removed."""
        raise NotImplementedError

    # Messages
    async def get_message(self, message_id: str) -> Optional[Message]:
        raise NotImplementedError

    async def get_messages(self, message_ids: list[str]) -> list[Message]:
        raise NotImplementedError

    async def put_message(self, message: Message) -> Message:
        """Insert a new message. Raises ConflictError if (conversation, seq) is taken."""
        raise NotImplementedError

    async def patch_message(self, message_id: str, **fields: Any) -> Message:
        raise NotImplementedError

    async def remove_message(self, message_id: str) -> bool:
        """Hard-remove one message; returns False if it was already gone."""
        raise NotImplementedError

    async def list_messages(self, conversation_id: str, offset: int = 0, limit: int = 50) -> list[Message]:
        """Newest first (descending seq)."""
        raise NotImplementedError

    async def count_messages(self, conversation_id: str) -> int:
        raise NotImplementedError

    async def max_seq(self, conversation_id: str) -> int:
        raise NotImplementedError


def _matches(user: User, needle: str) -> bool:
    return needle in user.handle.lower() or needle in (user.display_name or "").lower()


class MemoryStore(DocumentStore):
    """Dict-backed store. Values are deep-copied in and out so callers never share state."""

    def __init__(self) -> None:
        self._users: dict[str, User] = {}
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, Message] = {}

    async def get_user(self, user_id):
        return copy.deepcopy(self._users.get(user_id))

    async def get_user_by_handle(self, handle):
        lowered = handle.lower()
        for u in self._users.values():
            if u.handle.lower() == lowered:
                return copy.deepcopy(u)
        return None

    async def put_user(self, user):
        for u in self._users.values():
            if u.id != user.id and u.handle.lower() == user.handle.lower():
                raise ConflictError("Handle already taken")
        self._users[user.id] = copy.deepcopy(user)
        return copy.deepcopy(user)

    async def patch_user(self, user_id, **fields):
        cur = self._users.get(user_id)
        if cur is None:
            raise NotFoundError("User not found")
        self._users[user_id] = dataclasses.replace(cur, **copy.deepcopy(fields))
        return copy.deepcopy(self._users[user_id])

    async def search_users(self, query, limit=20):
        needle = query.strip().lower()
        rows = [u for u in self._users.values() if _matches(u, needle)]
        rows.sort(key=lambda u: u.handle.lower())
        return copy.deepcopy(rows[:limit])

    async def list_users(self, limit=50):
        rows = sorted(self._users.values(), key=lambda u: u.created_at)
        return copy.deepcopy(rows[:limit])

    async def get_conversation(self, conversation_id):
        return copy.deepcopy(self._conversations.get(conversation_id))

    async def find_direct(self, key):
        for c in self._conversations.values():
            if c.direct_key == key:
                return copy.deepcopy(c)
        return None

    async def put_conversation(self, conversation):
        if conversation.direct_key:
            for c in self._conversations.values():
                if c.id != conversation.id and c.direct_key == conversation.direct_key:
                    raise ConflictError("Direct conversation already exists")
        self._conversations[conversation.id] = copy.deepcopy(conversation)
        return copy.deepcopy(conversation)

    async def patch_conversation(self, conversation_id, **fields):
        cur = self._conversations.get(conversation_id)
        if cur is None:
            raise NotFoundError("Conversation not found")
        self._conversations[conversation_id] = dataclasses.replace(cur, **copy.deepcopy(fields))
        return copy.deepcopy(self._conversations[conversation_id])

    async def conversations_for_user(self, user_id):
        rows = [c for c in self._conversations.values() if user_id in c.participant_ids]
        rows.sort(key=lambda c: c.updated_at, reverse=True)
        return copy.deepcopy(rows)

    async def delete_conversation(self, conversation_id):
        self._conversations.pop(conversation_id, None)
        doomed = [m.id for m in self._messages.values() if m.conversation_id == conversation_id]
        for mid in doomed:
            del self._messages[mid]
        return len(doomed)

    async def get_message(self, message_id):
        return copy.deepcopy(self._messages.get(message_id))

    async def get_messages(self, message_ids):
        return [copy.deepcopy(self._messages[mid]) for mid in message_ids if mid in self._messages]

    async def put_message(self, message):
        existing = self._messages.get(message.id)
        if existing is not None:
            if existing.conversation_id == message.conversation_id and existing.seq == message.seq:
                # A retried insert that already landed.
                return copy.deepcopy(existing)
            raise ConflictError("Message id already used")
        for m in self._messages.values():
            if m.conversation_id == message.conversation_id and m.seq == message.seq:
                raise ConflictError("Sequence number already assigned")
        self._messages[message.id] = copy.deepcopy(message)
        return copy.deepcopy(message)

    async def patch_message(self, message_id, **fields):
        cur = self._messages.get(message_id)
        if cur is None:
            raise NotFoundError("Message not found")
        self._messages[message_id] = dataclasses.replace(cur, **copy.deepcopy(fields))
        return copy.deepcopy(self._messages[message_id])

    async def remove_message(self, message_id):
        return self._messages.pop(message_id, None) is not None

    async def list_messages(self, conversation_id, offset=0, limit=50):
        rows = [m for m in self._messages.values() if m.conversation_id == conversation_id]
        rows.sort(key=lambda m: m.seq, reverse=True)
        return copy.deepcopy(rows[offset:offset + limit])

    async def count_messages(self, conversation_id):
        return sum(1 for m in self._messages.values() if m.conversation_id == conversation_id)

    async def max_seq(self, conversation_id):
        seqs = [m.seq for m in self._messages.values() if m.conversation_id == conversation_id]
        return max(seqs, default=0)


class GuardedStore:
    """Wraps every coroutine of a DocumentStore with a timeout and bounded retries."""

    def __init__(self, inner: DocumentStore, *, timeout: float = 5.0, attempts: int = 3, backoff: float = 0.05):
        self.inner = inner
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.backoff = backoff

    def __getattr__(self, name: str):
        target = getattr(self.inner, name)
        if not inspect.iscoroutinefunction(target):
            return target

        @functools.wraps(target)
        async def guarded(*args, **kwargs):
            return await self._call(name, target, *args, **kwargs)

        return guarded

    async def _call(self, name, target, *args, **kwargs):
        delay = self.backoff
        last_err: Exception | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                return await asyncio.wait_for(target(*args, **kwargs), timeout=self.timeout)
            except (asyncio.TimeoutError, TransientStoreError) as e:
                last_err = e
                logger.warning(json.dumps({"event": "store_retry", "op": name, "attempt": attempt, "error": type(e).__name__}))
                if attempt < self.attempts:
                    await asyncio.sleep(delay)
                    delay *= 2
        raise ServiceUnavailable(f"Store operation {name} failed after {self.attempts} attempts") from last_err
