import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, List

import httpx

from ..events import MessageEvent


logger = logging.getLogger("chat.webhooks")

PUBLISHED_KINDS = ("created", "deleted")


class Ep:
    def __init__(self, url: str, secret: str):
        self.url = url
        self.secret = secret


def load_endpoints(raw: str) -> List[Ep]:
    try:
        arr = json.loads(raw or "[]")
    except ValueError:
        logger.warning("CHAT_WEBHOOK_ENDPOINTS_JSON is not valid JSON; webhooks disabled")
        return []
    out = []
    for e in arr if isinstance(arr, list) else []:
        if isinstance(e, dict) and e.get("url") and e.get("secret"):
            out.append(Ep(e["url"], e["secret"]))
    return out


def sign(secret: str, ts: str, event: str, body: bytes) -> str:
    msg = (ts + event).encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


class WebhookSender:
    """Posts message lifecycle events (ids only, never content) to configured endpoints."""

    def __init__(self, endpoints: List[Ep], timeout: float = 3.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.endpoints = endpoints
        self.timeout = timeout
        self.transport = transport

    async def send(self, event: str, payload: Dict[str, Any]) -> int:
        if not self.endpoints:
            return 0
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        ts = str(int(time.time()))
        headers_base = {
            "Content-Type": "application/json",
            "X-Webhook-Event": event,
            "X-Webhook-Ts": ts,
        }
        sent = 0
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for ep in self.endpoints:
                headers = headers_base | {"X-Webhook-Sign": sign(ep.secret, ts, event, body)}
                try:
                    r = await client.post(ep.url, content=body, headers=headers)
                    r.raise_for_status()
                    sent += 1
                except httpx.HTTPError as e:
                    logger.warning(json.dumps({"event": "webhook_failed", "url": ep.url, "webhook_event": event, "error": type(e).__name__}))
        return sent

    async def on_message_event(self, evt: MessageEvent) -> None:
        if evt.kind not in PUBLISHED_KINDS:
            return
        payload = {
            "message_id": evt.message_id,
            "conversation_id": evt.conversation_id,
            "actor_user_id": evt.actor_id,
        }
        await self.send(f"chat.message.{evt.kind}", payload)
