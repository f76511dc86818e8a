"""Typed in-process topics.

Components talk to each other by publishing on a `Topic`; `subscribe` hands
back a `Subscription` whose `unsubscribe()` must be called when the owner shuts
down (the gateway keeps every handle it creates and releases them on close).
"""
from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union


logger = logging.getLogger("chat.events")

E = TypeVar("E")
Handler = Callable[[E], Union[None, Awaitable[None]]]


class Subscription:
    def __init__(self, topic: "Topic", handler: Handler) -> None:
        self._topic = topic
        self._handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._topic._remove(self._handler)
            self.active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.unsubscribe()


class Topic(Generic[E]):
    def __init__(self, name: str) -> None:
        self.name = name
        self._handlers: list[Handler] = []

    def subscribe(self, handler: Handler) -> Subscription:
        self._handlers.append(handler)
        return Subscription(self, handler)

    def _remove(self, handler: Handler) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    async def publish(self, event: E) -> None:
        """Run every handler in subscription order. A failing handler is logged and skipped."""
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("handler failed on topic %s", self.name)


@dataclass(frozen=True)
class PresenceChange:
    user_id: str
    online: bool
    at: datetime
    version: int


@dataclass(frozen=True)
class MessageEvent:
    kind: str  # created|deleted|reacted
    message_id: str
    conversation_id: str
    actor_id: str
    extra: Optional[dict] = None
