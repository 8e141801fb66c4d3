# relaybot/message_cache.py

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

logger = logging.getLogger("relaybot_server")


class ProcessedMessageCache:
    """
    Process-local record of inbound chat messages already seen.

    - key: "<message_id>-<user_id>"
    - entries expire `ttl_seconds` after the first delivery
    - at `max_size` the oldest `eviction_fraction` of entries are dropped
    - a delivery counts as duplicate once it has been seen more than
      `duplicate_threshold` times within the TTL
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_size: int = 10000,
        duplicate_threshold: int = 3,
        eviction_fraction: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
    ):
        if duplicate_threshold < 0:
            raise ValueError("duplicate_threshold must be >= 0")
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.duplicate_threshold = duplicate_threshold
        self.eviction_fraction = eviction_fraction
        self._clock = clock
        self._lock = threading.Lock()
        # key -> {"first_seen": float, "count": int}; insertion order == age
        self._items: Dict[str, Dict[str, float]] = {}

    @staticmethod
    def make_key(message_id: str, user_id: Optional[str]) -> str:
        return f"{message_id}-{user_id}"

    def _evict_oldest_unlocked(self) -> int:
        n = max(1, int(len(self._items) * self.eviction_fraction))
        oldest: List[str] = list(self._items)[:n]
        for key in oldest:
            del self._items[key]
        return n

    def record(self, message_id: str, user_id: Optional[str]) -> int:
        """Register one delivery and return how many times it has been seen within the TTL."""
        key = self.make_key(message_id, user_id)
        now = self._clock()
        with self._lock:
            item = self._items.get(key)
            if item is not None and now - item["first_seen"] >= self.ttl_seconds:
                del self._items[key]
                item = None
            if item is None:
                if len(self._items) >= self.max_size:
                    evicted = self._evict_oldest_unlocked()
                    logger.debug("Message cache full, evicted %d oldest entries", evicted)
                item = {"first_seen": now, "count": 0}
                self._items[key] = item
            item["count"] += 1
            return int(item["count"])

    def is_duplicate(self, message_id: str, user_id: Optional[str]) -> bool:
        count = self.record(message_id, user_id)
        if count > self.duplicate_threshold:
            logger.warning(
                "Ignoring duplicate delivery of message %s from %s (seen %d times)", message_id, user_id, count
            )
            return True
        return False

    def sweep_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, v in self._items.items() if now - v["first_seen"] >= self.ttl_seconds]
            for key in expired:
                del self._items[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
