import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class ConversationActors:
    """One serialization point per conversation.

    Sequence assignment, unread counters and per-message read-modify-write all
    run while holding the conversation's slot; different conversations never
    wait on each other. Slots are dropped once no task holds or awaits them.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                self._refs.pop(key, None)
                self._locks.pop(key, None)

    def active(self) -> int:
        return len(self._locks)
