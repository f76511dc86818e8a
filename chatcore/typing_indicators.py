from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .conversations import ConversationService
from .sessions import SessionRegistry


logger = logging.getLogger("chat.typing")


@dataclass(frozen=True)
class TypingUntil:
    deadline: float


# (conversation_id, user_id) -> TypingUntil; a missing key is the Idle state.
Key = Tuple[str, str]


class TypingCoordinator:
    """Advisory typing state with a server-side TTL. Nothing here is persisted.

    Only edges are broadcast: idle -> typing, typing -> idle (explicit stop or
    TTL expiry). Repeated "still typing" signals just push the deadline out.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        conversations: ConversationService,
        *,
        ttl: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.conversations = conversations
        self.ttl = ttl
        self.clock = clock
        self._state: Dict[Key, TypingUntil] = {}
        self._participants: Dict[str, list[str]] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def is_typing(self, conversation_id: str, user_id: str) -> bool:
        entry = self._state.get((conversation_id, user_id))
        return entry is not None and entry.deadline > self.clock()

    async def set_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> bool:
        """Apply a client signal. Returns True when it produced a broadcast."""
        convo = await self.conversations.get_for_participant(conversation_id, user_id)
        self._participants[conversation_id] = list(convo.participant_ids)
        key = (conversation_id, user_id)
        now = self.clock()
        entry = self._state.get(key)
        if entry is not None and entry.deadline <= now:
            # Expired but not swept yet: settle the synthesized stop first.
            del self._state[key]
            self._broadcast(conversation_id, user_id, False)
            entry = None
        if is_typing:
            self._state[key] = TypingUntil(now + self.ttl)
            if entry is None:
                self._broadcast(conversation_id, user_id, True)
                return True
            return False
        if entry is None:
            return False
        del self._state[key]
        self._broadcast(conversation_id, user_id, False)
        return True

    def clear_user(self, user_id: str) -> int:
        """Stop every typing indicator of a user (their last session went away)."""
        keys = [k for k in self._state if k[1] == user_id]
        for conversation_id, uid in keys:
            del self._state[(conversation_id, uid)]
            self._broadcast(conversation_id, uid, False)
        return len(keys)

    def sweep(self) -> int:
        now = self.clock()
        expired = [k for k, v in self._state.items() if v.deadline <= now]
        for conversation_id, user_id in expired:
            del self._state[(conversation_id, user_id)]
            self._broadcast(conversation_id, user_id, False)
        active = {k[0] for k in self._state}
        for conversation_id in [c for c in self._participants if c not in active]:
            del self._participants[conversation_id]
        return len(expired)

    def _broadcast(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        others = [p for p in self._participants.get(conversation_id, []) if p != user_id]
        self.registry.deliver_many(
            others, "typing", {"conversationId": conversation_id, "userId": user_id, "isTyping": is_typing}
        )

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("typing sweep failed")

    def start(self, interval: float = 0.5) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_forever(interval), name="typing-sweeper")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
