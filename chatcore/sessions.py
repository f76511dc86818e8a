from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, Optional, Set

from fastapi import WebSocket
from prometheus_client import Counter, Gauge

from .domain import new_id, utcnow
from .events import PresenceChange, Topic


logger = logging.getLogger("chat.sessions")

LIVE_SESSIONS = Gauge("chat_live_sessions", "Registered live sessions")
FANOUT_FAILURES = Counter("chat_fanout_failures_total", "Frames that could not be queued or written to a session", ["event"])


def frame(event: str, data: dict) -> dict:
    return {"type": event, "data": data}


class Session:
    """One live connection of a user. Subclasses decide how queued frames reach the client."""

    def __init__(self, user_id: str, session_id: Optional[str] = None) -> None:
        self.id = session_id or new_id()
        self.user_id = user_id
        self.connected_at = utcnow()

    def push(self, payload: dict) -> bool:
        """Queue one frame without waiting. Returns False if the frame was dropped."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


class WebSocketSession(Session):
    """Frames go into a bounded queue drained by a writer task, in push order."""

    def __init__(self, websocket: WebSocket, user_id: str, *, queue_size: int = 256) -> None:
        super().__init__(user_id)
        self.websocket = websocket
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None
        self.closed = False

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain(), name=f"session-writer:{self.id}")

    async def _drain(self) -> None:
        while True:
            payload = await self.queue.get()
            try:
                await self.websocket.send_json(payload)
            except Exception:
                FANOUT_FAILURES.labels(payload.get("type", "unknown")).inc()
                logger.warning(json.dumps({"event": "session_write_failed", "session_id": self.id, "user_id": self.user_id}))
                self.closed = True
                return

    def push(self, payload: dict) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(payload)
            return True
        except asyncio.QueueFull:
            logger.warning(json.dumps({"event": "session_queue_full", "session_id": self.id, "user_id": self.user_id}))
            return False

    async def close(self) -> None:
        # Pending frames for this connection are abandoned; nothing upstream waits on them.
        self.closed = True
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except (asyncio.CancelledError, Exception):
                pass
            self._writer = None


class SessionRegistry:
    """Sole owner of the user -> live sessions mapping.

    A user's 0 -> 1 and 1 -> 0 session edges are detected under the lock and
    published on `presence_changes` exactly once, stamped with a per-user
    version so late subscribers can discard stale transitions.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._by_user: Dict[str, Set[str]] = {}
        self._versions: Dict[str, int] = {}
        self._lock = asyncio.Lock()
        self.presence_changes: Topic[PresenceChange] = Topic("presence_changes")

    async def register(self, user_id: str, session: Session) -> bool:
        """Add a session for the user. Returns True when this made the user online."""
        change = None
        async with self._lock:
            if session.id in self._sessions:
                return False
            ids = self._by_user.setdefault(user_id, set())
            went_online = not ids
            ids.add(session.id)
            self._sessions[session.id] = session
            if went_online:
                change = self._edge(user_id, True)
        LIVE_SESSIONS.inc()
        logger.info(json.dumps({"event": "session_registered", "session_id": session.id, "user_id": user_id}))
        if change is not None:
            await self.presence_changes.publish(change)
        return change is not None

    async def unregister(self, session_id: str) -> bool:
        """Drop a session. Unknown ids are ignored. Returns True when this made the user offline."""
        change = None
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            ids = self._by_user.get(session.user_id)
            if ids is not None:
                ids.discard(session_id)
                if not ids:
                    self._by_user.pop(session.user_id, None)
                    change = self._edge(session.user_id, False)
        LIVE_SESSIONS.dec()
        logger.info(json.dumps({"event": "session_unregistered", "session_id": session_id, "user_id": session.user_id}))
        if change is not None:
            await self.presence_changes.publish(change)
        return change is not None

    def _edge(self, user_id: str, online: bool) -> PresenceChange:
        version = self._versions.get(user_id, 0) + 1
        self._versions[user_id] = version
        return PresenceChange(user_id=user_id, online=online, at=utcnow(), version=version)

    def sessions_for(self, user_id: str) -> Set[str]:
        return set(self._by_user.get(user_id, ()))

    def is_online(self, user_id: str) -> bool:
        return bool(self._by_user.get(user_id))

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def deliver(self, user_id: str, event: str, data: dict, *, exclude_session: Optional[str] = None) -> int:
        """Queue a frame on every session of the user. Never blocks; returns how many sessions accepted it."""
        payload = frame(event, data)
        accepted = 0
        for sid in list(self._by_user.get(user_id, ())):
            if sid == exclude_session:
                continue
            session = self._sessions.get(sid)
            if session is None:
                continue
            try:
                ok = session.push(payload)
            except Exception:
                ok = False
                logger.exception("push failed for session %s", sid)
            if ok:
                accepted += 1
            else:
                FANOUT_FAILURES.labels(event).inc()
        return accepted

    def deliver_many(self, user_ids: Iterable[str], event: str, data: dict, **kwargs: Any) -> int:
        return sum(self.deliver(uid, event, data, **kwargs) for uid in user_ids)
