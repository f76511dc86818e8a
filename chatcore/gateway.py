"""Composition root: wires the core components together and dispatches live-channel frames.

The REST routers read components off `app.state.gateway`; the websocket
route hands every inbound frame to `ChatGateway.dispatch` after the
connection's token has been verified again.
"""
from __future__ import annotations

import json
import logging
from typing import Optional

from .actors import ConversationActors
from .auth import Identity, JwtTokenVerifier
from .blobs import BlobStore, MemoryBlobStore
from .config import Settings, settings as default_settings
from .conversations import ConversationService
from .errors import ForbiddenError, ValidationError
from .events import Subscription
from .pipeline import MessagePipeline
from .presence import PresenceTracker
from .quota import MemoryQuota, MessageQuota, RedisQuota
from .receipts import ReceiptAggregator
from .sessions import Session, SessionRegistry, frame
from .store import DocumentStore, GuardedStore
from .typing_indicators import TypingCoordinator
from .users import UserDirectory
from .utils.webhooks import WebhookSender, load_endpoints


logger = logging.getLogger("chat.gateway")

CALL_EVENTS = ("call_offer", "call_answer", "ice_candidate", "end_call")


def build_quota(cfg: Settings) -> Optional[MessageQuota]:
    if cfg.CHAT_USER_MSGS_PER_MINUTE <= 0:
        return None
    if cfg.QUOTA_BACKEND.lower() == "redis":
        return RedisQuota(cfg.REDIS_URL, cfg.CHAT_USER_MSGS_PER_MINUTE, prefix=cfg.QUOTA_REDIS_PREFIX)
    return MemoryQuota(cfg.CHAT_USER_MSGS_PER_MINUTE)


def build_webhooks(cfg: Settings) -> Optional[WebhookSender]:
    if not cfg.WEBHOOK_ENABLED:
        return None
    endpoints = load_endpoints(cfg.CHAT_WEBHOOK_ENDPOINTS_JSON)
    if not endpoints:
        return None
    return WebhookSender(endpoints, timeout=cfg.WEBHOOK_TIMEOUT_SECS)


class ChatGateway:
    def __init__(
        self,
        store: DocumentStore,
        *,
        cfg: Optional[Settings] = None,
        verifier: Optional[JwtTokenVerifier] = None,
        blobs: Optional[BlobStore] = None,
        quota: Optional[MessageQuota] = None,
        webhooks: Optional[WebhookSender] = None,
    ) -> None:
        self.settings = cfg or default_settings
        s = self.settings
        self.store = GuardedStore(
            store, timeout=s.STORE_TIMEOUT_SECS, attempts=s.STORE_MAX_ATTEMPTS, backoff=s.STORE_RETRY_BACKOFF_SECS
        )
        self.verifier = verifier or JwtTokenVerifier(s.jwt_signing_keys, expires=s.jwt_expires_delta)
        self.blobs = blobs or MemoryBlobStore(s.BLOB_PUBLIC_BASE_URL)
        self.actors = ConversationActors()
        self.registry = SessionRegistry()
        self.users = UserDirectory(self.store)
        self.conversations = ConversationService(self.store, self.actors)
        self.presence = PresenceTracker(self.registry, self.store)
        self.receipts = ReceiptAggregator(self.store, self.actors, self.registry)
        self.typing = TypingCoordinator(self.registry, self.conversations, ttl=s.TYPING_TTL_SECS)
        self.quota = quota
        self.pipeline = MessagePipeline(self.store, self.actors, self.registry, self.receipts, quota)
        self.webhooks = webhooks
        self._subscriptions: list[Subscription] = [
            self.registry.presence_changes.subscribe(self.presence.on_presence_change),
        ]
        if webhooks is not None:
            self._subscriptions.append(self.pipeline.message_events.subscribe(webhooks.on_message_event))

    # Lifecycle

    async def start(self) -> None:
        self.typing.start(self.settings.TYPING_SWEEP_SECS)

    async def close(self) -> None:
        await self.typing.stop()
        await self.pipeline.drain()
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions.clear()
        if self.quota is not None:
            await self.quota.close()

    # Live channel

    def authenticate(self, token: str) -> Identity:
        return self.verifier.verify(token)

    async def join(self, session: Session) -> bool:
        went_online = await self.registry.register(session.user_id, session)
        session.push(frame("joined", {"userId": session.user_id, "sessionId": session.id}))
        return went_online

    async def disconnect(self, session: Session) -> None:
        went_offline = await self.registry.unregister(session.id)
        if went_offline:
            self.typing.clear_user(session.user_id)
        await session.close()

    async def dispatch(self, session: Session, token: str, message: dict) -> None:
        """Handle one inbound frame. Raises ChatError for the caller to answer with an error frame."""
        identity = self.authenticate(token)
        if identity.user_id != session.user_id:
            raise ForbiddenError("Token subject changed")
        if not isinstance(message, dict):
            raise ValidationError("Frame must be an object")
        event = message.get("type")
        data = message.get("data") or {}
        if not isinstance(data, dict):
            raise ValidationError("Frame data must be an object")

        if event == "join":
            requested = data.get("userId")
            if requested and requested != session.user_id:
                raise ForbiddenError("Cannot join as another user")
            await self.join(session)
            return
        if self.registry.get(session.id) is None:
            raise ValidationError("Send join first")

        if event == "typing":
            conversation_id = _required(data, "conversationId")
            await self.typing.set_typing(conversation_id, session.user_id, bool(data.get("isTyping")))
        elif event == "message_seen":
            message_id = _required(data, "messageId")
            await self.receipts.mark_seen(message_id, session.user_id)
        elif event in CALL_EVENTS:
            self.relay_call(session, event, data)
        elif event == "ping":
            session.push(frame("pong", {}))
        else:
            raise ValidationError(f"Unknown event {event!r}")

    def relay_call(self, session: Session, event: str, data: dict) -> int:
        """Pass call signalling through to the target's sessions without looking inside it."""
        target = _required(data, "to")
        relayed = {k: v for k, v in data.items() if k != "to"}
        relayed["from"] = session.user_id
        count = self.registry.deliver(target, event, relayed)
        logger.info(json.dumps({"event": "call_relay", "call_event": event, "from": session.user_id, "to": target, "sessions": count}))
        return count


def _required(data: dict, key: str) -> str:
    value = data.get(key)
    if not value or not isinstance(value, str):
        raise ValidationError(f"{key} is required")
    return value
