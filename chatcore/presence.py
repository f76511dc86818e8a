from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from .events import PresenceChange
from .sessions import SessionRegistry
from .store import GuardedStore


logger = logging.getLogger("chat.presence")


@dataclass
class PresenceStatus:
    online: bool
    last_seen: Optional[datetime] = None


class PresenceTracker:
    """Derives online/last-seen from registry edges and tells the user's contacts.

    Contacts are the other participants of the user's conversations, so each
    transition costs one query plus one frame per contact session.
    """

    def __init__(self, registry: SessionRegistry, store: GuardedStore) -> None:
        self.registry = registry
        self.store = store
        self._status: Dict[str, PresenceStatus] = {}
        self._versions: Dict[str, int] = {}

    async def on_presence_change(self, change: PresenceChange) -> None:
        if change.version <= self._versions.get(change.user_id, 0):
            return
        self._versions[change.user_id] = change.version
        if change.online:
            self._status[change.user_id] = PresenceStatus(online=True, last_seen=None)
        else:
            self._status[change.user_id] = PresenceStatus(online=False, last_seen=change.at)
        try:
            if change.online:
                await self.store.patch_user(change.user_id, is_online=True)
            else:
                await self.store.patch_user(change.user_id, is_online=False, last_seen=change.at)
        except Exception as e:
            logger.warning(json.dumps({"event": "presence_persist_failed", "user_id": change.user_id, "error": type(e).__name__}))
        await self.broadcast(change)

    async def broadcast(self, change: PresenceChange) -> int:
        contacts = await self.contacts_of(change.user_id)
        if change.online:
            return self.registry.deliver_many(contacts, "user_online", {"userId": change.user_id})
        return self.registry.deliver_many(
            contacts, "user_offline", {"userId": change.user_id, "lastSeen": change.at.isoformat()}
        )

    async def contacts_of(self, user_id: str) -> set[str]:
        out: set[str] = set()
        for convo in await self.store.conversations_for_user(user_id):
            out.update(convo.others(user_id))
        return out

    def status_of(self, user_id: str) -> PresenceStatus:
        if self.registry.is_online(user_id):
            return PresenceStatus(online=True, last_seen=None)
        known = self._status.get(user_id)
        if known is not None:
            return PresenceStatus(online=False, last_seen=known.last_seen)
        return PresenceStatus(online=False, last_seen=None)

    async def lookup(self, user_id: str) -> PresenceStatus:
        """Like status_of, falling back to the persisted last-seen for users not seen by this process."""
        status = self.status_of(user_id)
        if status.online or status.last_seen is not None:
            return status
        user = await self.store.get_user(user_id)
        return PresenceStatus(online=False, last_seen=user.last_seen if user else None)
