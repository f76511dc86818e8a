import json
import logging
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict

import redis.asyncio as redis_async

from .errors import RateLimited


logger = logging.getLogger("chat.quota")


class MessageQuota:
    """Per-sender submit budget over a one minute window."""

    window_seconds = 60

    def __init__(self, limit_per_minute: int) -> None:
        self.limit_per_minute = limit_per_minute

    async def check(self, user_id: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class MemoryQuota(MessageQuota):
    def __init__(self, limit_per_minute: int, clock: Callable[[], float] = time.time) -> None:
        super().__init__(limit_per_minute)
        self.clock = clock
        self.store: Dict[str, Deque[float]] = defaultdict(deque)

    async def check(self, user_id: str) -> None:
        if self.limit_per_minute <= 0:
            return
        now = self.clock()
        dq = self.store[user_id]
        while dq and now - dq[0] > self.window_seconds:
            dq.popleft()
        if len(dq) >= self.limit_per_minute:
            retry_after = max(1, int(self.window_seconds - (now - dq[0])))
            raise RateLimited("Too many messages", details={"retry_after": retry_after})
        dq.append(now)


class RedisQuota(MessageQuota):
    """Fixed minute windows shared by every process; fails open when Redis is unreachable."""

    def __init__(self, redis_url: str, limit_per_minute: int, prefix: str = "quota_chat") -> None:
        super().__init__(limit_per_minute)
        self.redis = redis_async.from_url(redis_url, decode_responses=True)
        self.prefix = prefix

    async def check(self, user_id: str) -> None:
        if self.limit_per_minute <= 0:
            return
        now = int(time.time())
        key = f"{self.prefix}:user:{user_id}:{now // 60}"
        try:
            count = await self.redis.incr(key)
            if count == 1:
                await self.redis.expire(key, 70)
        except Exception as e:
            logger.warning(json.dumps({"event": "quota_unavailable", "error": type(e).__name__}))
            return
        if count > self.limit_per_minute:
            raise RateLimited("Too many messages", details={"retry_after": 60 - (now % 60)})

    async def close(self) -> None:
        await self.redis.aclose()
