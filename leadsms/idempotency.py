"""Seen-MessageSid guard against provider retries of the same delivery."""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Optional

import redis

from leadsms.config import settings
from leadsms.runtime import get_logger

logger = get_logger(__name__)

SEEN_TTL_SECONDS = 24 * 60 * 60


class IdempotencyStore:
    """Redis idempotency with local fallback for message deduplication."""

    def __init__(self, redis_url: Optional[str] = None, *, max_mem_size: int = 10000):
        # rediss:// URLs get TLS from the scheme
        self.r = redis.from_url(redis_url, decode_responses=True) if redis_url else None
        self._mem: "OrderedDict[str, None]" = OrderedDict()
        self._max_mem_size = max_mem_size
        self._lock = threading.Lock()

    def seen(self, msg_id: Optional[str]) -> bool:
        """Check if message ID has been seen before, mark as seen if not."""
        if not msg_id:
            return False

        key = f"inbound:msg:{msg_id}"

        if self.r is not None:
            try:
                ok = self.r.set(key, "1", nx=True, ex=SEEN_TTL_SECONDS)
                return not bool(ok)
            except redis.RedisError as exc:
                logger.warning("Redis idempotency check failed for %s, using local set: %s", msg_id, exc)

        with self._lock:
            if key in self._mem:
                return True
            if len(self._mem) >= self._max_mem_size:
                # drop the oldest 20%
                for _ in range(self._max_mem_size // 5):
                    self._mem.popitem(last=False)
            self._mem[key] = None
            return False


def build_idempotency_store() -> IdempotencyStore:
    s = settings()
    return IdempotencyStore(s.REDIS_URL)
