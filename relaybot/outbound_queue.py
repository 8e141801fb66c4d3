# relaybot/outbound_queue.py

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Set

from relaybot.errors import (
    CooldownActiveError,
    QueueFullError,
    RateLimitError,
    TerminalError,
    ValidationError,
)
from relaybot.message_chunks import CHUNKED_METHODS, chunk_message
from relaybot.rate_limits import CooldownController, SlidingWindowLimiter
from relaybot.retry_policy import RetryDecision, backoff_delay, classify
from relaybot.settings import QueueSettings

logger = logging.getLogger("relaybot_queue")

MAX_RETRIES_CAP = 10
STATE_COLLECTION = "queue"
STATE_DOC_ID = "state"

ApiCall = Callable[[str, Dict[str, Any]], Awaitable[Any]]


@dataclass
class OutboundRequest:
    method: str
    params: Mapping[str, Any] = field(default_factory=dict)
    max_retries: Optional[int] = None


@dataclass
class _PendingCall:
    request: OutboundRequest
    future: asyncio.Future
    max_retries: int
    attempts: int = 0
    started_at: float = field(default_factory=time.monotonic)
    # holds a quota slot for its next dispatch
    quota_reserved: bool = False


def _coerce_request(request: Any) -> OutboundRequest:
    if isinstance(request, Mapping):
        request = OutboundRequest(
            method=request.get("method"),
            params=request.get("params"),
            max_retries=request.get("max_retries", request.get("maxRetries")),
        )
    if not isinstance(request, OutboundRequest):
        raise ValidationError(f"Unsupported request type: {type(request).__name__}")
    if not isinstance(request.method, str) or not request.method.strip():
        raise ValidationError("Request method is required")
    if not isinstance(request.params, Mapping):
        raise ValidationError(f"Request params for {request.method} must be a mapping")
    if request.max_retries is not None and (
        isinstance(request.max_retries, bool) or not isinstance(request.max_retries, int)
    ):
        raise ValidationError("max_retries must be an integer")
    return request


class OutboundQueue:
    """
    FIFO queue of remote platform calls.

    Admission (cooldown check, queue bound, quota reservation) happens inside submit()
    before the call is enqueued, with no suspension point in between. A single
    drain task then dispatches calls no faster than the dispatch window allows;
    each attempt runs as its own task so slow calls don't hold up the window.

    Retries go back to the tail of the queue after their backoff delay, so they
    are paced by the same window and rejected if a cooldown started meanwhile.
    """

    def __init__(
        self,
        api_call: ApiCall,
        settings: Optional[QueueSettings] = None,
        *,
        dispatch_limiter: Optional[SlidingWindowLimiter] = None,
        quota_limiter: Optional[SlidingWindowLimiter] = None,
        cooldown: Optional[CooldownController] = None,
        state_store=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or QueueSettings()
        self._api_call = api_call
        self.dispatch_limiter = dispatch_limiter or SlidingWindowLimiter(
            self.settings.rate_window_seconds, self.settings.rate_limit_per_window
        )
        self.quota_limiter = quota_limiter or SlidingWindowLimiter(
            self.settings.quota_window_seconds, self.settings.quota_per_window
        )
        self.cooldown = cooldown or CooldownController()
        self._state_store = state_store
        self._clock = clock

        self._pending: Deque[_PendingCall] = deque()
        self._drainer: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()
        self._retry_waits: Dict[int, asyncio.Task] = {}
        self._retrying: Dict[int, _PendingCall] = {}
        self._background: Set[asyncio.Task] = set()
        self._closed = False

        self._stats = {
            "processed": 0,
            "failed": 0,
            "queued": 0,
            "cooldowns": 0,
            "dropped": 0,
            "rejected": 0,
        }

    # -------------------------
    # Submission
    # -------------------------

    async def submit(self, request: Any) -> Any:
        """
        Enqueue one remote call and wait for its outcome.

        Raises ValidationError, CooldownActiveError, RateLimitError or
        QueueFullError without enqueuing; TerminalError once the call failed
        for good.
        """
        request = _coerce_request(request)
        if self._closed:
            raise TerminalError("Outbound queue is closed")

        self._admit(request)

        max_retries = self.settings.max_retries if request.max_retries is None else request.max_retries
        call = _PendingCall(
            request=request,
            future=asyncio.get_running_loop().create_future(),
            max_retries=max(0, min(int(max_retries), MAX_RETRIES_CAP)),
            started_at=self._clock(),
            quota_reserved=True,
        )
        self._pending.append(call)
        self._stats["queued"] += 1
        self._ensure_drainer()
        return await call.future

    async def call(self, method: str, params: Optional[Mapping[str, Any]] = None, max_retries: Optional[int] = None) -> Any:
        return await self.submit(OutboundRequest(method, {} if params is None else params, max_retries))

    async def send_message(self, dialog_id: str, message: str, method: str = "imbot.message.add", **params: Any) -> Any:
        """
        Post a chat message, split into several calls when it is too long.

        Chunks go out one after another, each through normal admission. Returns
        the single result, or the list of chunk results.
        """
        chunks = chunk_message(message) if method in CHUNKED_METHODS else [message]
        if len(chunks) > 1:
            logger.info("Splitting message for %s into %d chunks", dialog_id, len(chunks))
        results: List[Any] = []
        for chunk in chunks:
            payload = dict(params)
            payload["DIALOG_ID"] = dialog_id
            payload["MESSAGE"] = chunk
            results.append(await self.submit(OutboundRequest(method, payload)))
        return results[0] if len(results) == 1 else results

    def _admit(self, request: OutboundRequest) -> None:
        if self.cooldown.is_in_cooldown():
            self._stats["rejected"] += 1
            until = self.cooldown.cooldown_until
            logger.warning(
                "Rejected %s: rate limit cooldown active for %.1fs", request.method, self.cooldown.remaining()
            )
            raise CooldownActiveError(cooldown_until=until)

        if len(self._pending) >= self.settings.max_queue_size:
            self._stats["dropped"] += 1
            logger.warning(
                "Queue full (%d pending), dropping %s", len(self._pending), request.method
            )
            raise QueueFullError(f"Queue full: {self.settings.max_queue_size} pending calls")

        # reserve the quota slot now; admitted calls must never overrun it
        if not self.quota_limiter.try_acquire():
            self._stats["rejected"] += 1
            self._enter_cooldown()
            logger.warning("Rejected %s: request quota exhausted", request.method)
            raise RateLimitError("Rate limit exceeded, entering cooldown")

    # -------------------------
    # Draining
    # -------------------------

    def _ensure_drainer(self) -> None:
        if self._drainer is None or self._drainer.done():
            self._drainer = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while self._pending:
            call = self._pending[0]
            if call.future.done():
                # caller went away
                self._pending.popleft()
                continue

            if self.cooldown.is_in_cooldown():
                self._pending.popleft()
                self._fail(call, CooldownActiveError(cooldown_until=self.cooldown.cooldown_until))
                continue

            if not call.quota_reserved:
                # retries take a fresh quota slot
                if not self.quota_limiter.try_acquire():
                    self._pending.popleft()
                    self._enter_cooldown()
                    logger.error("Quota exhausted before retrying %s, entering cooldown", call.request.method)
                    self._fail(call, RateLimitError("Rate limit exceeded, entering cooldown"))
                    continue
                call.quota_reserved = True

            if not self.dispatch_limiter.try_acquire():
                await asyncio.sleep(max(self.dispatch_limiter.seconds_until_available(), 0.001))
                continue

            self._pending.popleft()
            call.quota_reserved = False
            task = asyncio.create_task(self._attempt(call))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _attempt(self, call: _PendingCall) -> None:
        call.attempts += 1
        request = call.request
        try:
            result = await self._api_call(request.method, dict(request.params))
        except asyncio.CancelledError:
            if not call.future.done():
                call.future.set_exception(TerminalError("Outbound queue closed", attempts=call.attempts))
            raise
        except Exception as e:
            self._handle_failure(call, e)
            return

        self._stats["processed"] += 1
        if not call.future.done():
            call.future.set_result(result)

    def _handle_failure(self, call: _PendingCall, error: Exception) -> None:
        request = call.request
        decision = classify(error)

        if decision is RetryDecision.ENTER_COOLDOWN:
            # honour a longer Retry-After from the platform
            retry_after = getattr(error, "retry_after", None) or 0
            self._enter_cooldown(max(self.settings.cooldown_seconds, float(retry_after)))
            if isinstance(error, RateLimitError):
                rate_error = error
            else:
                rate_error = RateLimitError(f"{request.method} was throttled: {error}")
                rate_error.__cause__ = error
            logger.error(
                "%s hit the platform rate limit on attempt %d, not retrying", request.method, call.attempts
            )
            self._fail(call, rate_error)
            return

        elapsed = self._clock() - call.started_at
        if decision is RetryDecision.RETRY:
            if elapsed >= self.settings.max_execution_time:
                logger.error(
                    "Circuit breaker: %s has been running %.1fs, giving up", request.method, elapsed
                )
            elif call.attempts <= call.max_retries:
                delay = backoff_delay(
                    call.attempts - 1, self.settings.retry_base_delay, self.settings.retry_max_delay
                )
                logger.info(
                    "Retrying %s in %.2fs (attempt %d/%d): %s",
                    request.method, delay, call.attempts, call.max_retries + 1, error,
                )
                self._schedule_retry(call, delay)
                return

        terminal = TerminalError(
            f"{request.method} failed after {call.attempts} attempt(s): {error}",
            attempts=call.attempts,
            last_error=error,
        )
        terminal.__cause__ = error
        logger.error("Request %s failed permanently: %s", request.method, error)
        self._fail(call, terminal)

    def _schedule_retry(self, call: _PendingCall, delay: float) -> None:
        key = id(call)
        self._retrying[key] = call
        task = asyncio.create_task(self._requeue_after(call, delay))
        self._retry_waits[key] = task

    async def _requeue_after(self, call: _PendingCall, delay: float) -> None:
        key = id(call)
        try:
            await asyncio.sleep(delay)
        finally:
            self._retry_waits.pop(key, None)
            self._retrying.pop(key, None)
        if call.future.done() or self._closed:
            return
        self._pending.append(call)
        self._ensure_drainer()

    def _fail(self, call: _PendingCall, error: BaseException) -> None:
        self._stats["failed"] += 1
        if not call.future.done():
            call.future.set_exception(error)

    # -------------------------
    # Cooldown persistence
    # -------------------------

    def _enter_cooldown(self, duration: Optional[float] = None) -> None:
        if duration is None:
            duration = self.settings.cooldown_seconds
        until = self.cooldown.enter_cooldown(duration)
        self._stats["cooldowns"] += 1
        if self._state_store is None:
            return
        task = asyncio.create_task(self._persist_cooldown(until))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist_cooldown(self, until: float) -> None:
        state = {
            "cooldownUntil": until,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await asyncio.to_thread(self._state_store.set, STATE_COLLECTION, STATE_DOC_ID, state, True)
        except Exception as e:
            logger.error("Failed to persist cooldown state: %s", e)

    async def restore_state(self) -> bool:
        """Re-apply a cooldown persisted by an earlier process, if it has not expired yet."""
        if self._state_store is None:
            return False
        try:
            state = await asyncio.to_thread(self._state_store.get, STATE_COLLECTION, STATE_DOC_ID)
        except Exception as e:
            logger.error("Failed to load queue state: %s", e)
            return False
        if not state:
            return False
        until = state.get("cooldownUntil")
        if until is None:
            return False
        return self.cooldown.restore(float(until))

    # -------------------------
    # Introspection & teardown
    # -------------------------

    def get_stats(self) -> Dict[str, Any]:
        snapshot: Dict[str, Any] = dict(self._stats)
        snapshot.update({
            "queue_size": len(self._pending),
            "in_flight": len(self._in_flight),
            "retrying": len(self._retrying),
            "is_in_cooldown": self.cooldown.is_in_cooldown(),
            "cooldown_until": self.cooldown.cooldown_until,
            "requests_in_window": self.dispatch_limiter.requests_in_window(),
        })
        return snapshot

    def clear(self) -> int:
        """Reject every call that is waiting for dispatch or for a retry. Returns how many."""
        cleared = 0
        while self._pending:
            call = self._pending.popleft()
            if not call.future.done():
                self._fail(call, TerminalError("Queue cleared", attempts=call.attempts))
                cleared += 1
        for key, call in list(self._retrying.items()):
            task = self._retry_waits.pop(key, None)
            if task is not None:
                task.cancel()
            self._retrying.pop(key, None)
            if not call.future.done():
                self._fail(call, TerminalError("Queue cleared", attempts=call.attempts))
                cleared += 1
        if cleared:
            logger.warning("Cleared %d queued request(s)", cleared)
        return cleared

    async def aclose(self) -> None:
        self._closed = True
        self.clear()
        tasks = [t for t in (self._drainer,) if t is not None]
        tasks.extend(self._in_flight)
        for task in tasks:
            task.cancel()
        # let pending cooldown writes finish
        tasks.extend(self._background)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
