# relaybot/rate_limits.py

import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Optional

logger = logging.getLogger("relaybot_queue")


class SlidingWindowLimiter:
    """
    Counts calls inside a trailing time window.

    - timestamps older than `now - window_seconds` are pruned on every access
    - `try_acquire()` is the atomic check-and-record used by callers that actually proceed
    - thread-safe (one lock around the timestamp deque), also safe for a single event loop
    """

    def __init__(self, window_seconds: float, capacity: int, clock: Callable[[], float] = time.monotonic):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.window_seconds = float(window_seconds)
        self.capacity = int(capacity)
        self._clock = clock
        self._lock = threading.Lock()
        self._timestamps: Deque[float] = deque()

    def _prune_unlocked(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def can_proceed(self) -> bool:
        with self._lock:
            self._prune_unlocked(self._clock())
            return len(self._timestamps) < self.capacity

    def record(self) -> None:
        with self._lock:
            now = self._clock()
            self._prune_unlocked(now)
            self._timestamps.append(now)

    def try_acquire(self) -> bool:
        with self._lock:
            now = self._clock()
            self._prune_unlocked(now)
            if len(self._timestamps) >= self.capacity:
                return False
            self._timestamps.append(now)
            return True

    def seconds_until_available(self) -> float:
        """
        How long until a slot frees up. 0.0 when one is free now.
        """
        with self._lock:
            now = self._clock()
            self._prune_unlocked(now)
            if len(self._timestamps) < self.capacity:
                return 0.0
            oldest = self._timestamps[len(self._timestamps) - self.capacity]
            return max(0.0, oldest + self.window_seconds - now)

    def requests_in_window(self) -> int:
        with self._lock:
            self._prune_unlocked(self._clock())
            return len(self._timestamps)


class CooldownController:
    """
    Holds the "locked until" instant (epoch seconds) entered after throttling.

    There is no timer: the cooldown is cleared lazily by the first check after it expires.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._cooldown_until: Optional[float] = None

    @property
    def cooldown_until(self) -> Optional[float]:
        with self._lock:
            return self._cooldown_until

    def is_in_cooldown(self) -> bool:
        with self._lock:
            if self._cooldown_until is None:
                return False
            if self._clock() >= self._cooldown_until:
                self._cooldown_until = None
                logger.info("Cooldown period ended")
                return False
            return True

    def remaining(self) -> float:
        with self._lock:
            if self._cooldown_until is None:
                return 0.0
            return max(0.0, self._cooldown_until - self._clock())

    def enter_cooldown(self, duration_seconds: float) -> float:
        with self._lock:
            until = self._clock() + float(duration_seconds)
            # never shorten a cooldown that is already running
            if self._cooldown_until is not None and self._cooldown_until > until:
                until = self._cooldown_until
            self._cooldown_until = until

        logger.warning(
            "Entering cooldown period until %s",
            datetime.fromtimestamp(until, tz=timezone.utc).isoformat(),
        )
        return until

    def restore(self, cooldown_until: Optional[float]) -> bool:
        """
        Re-apply a persisted cooldown. Ignored when the instant is already in the past.
        """
        if cooldown_until is None:
            return False
        with self._lock:
            if float(cooldown_until) <= self._clock():
                return False
            self._cooldown_until = float(cooldown_until)
        logger.warning("Restored cooldown period, %.1fs remaining", self.remaining())
        return True
