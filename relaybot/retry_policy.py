# relaybot/retry_policy.py

import asyncio
import re
from enum import Enum

from relaybot.errors import (
    CooldownActiveError,
    PermanentError,
    RateLimitError,
    TransientError,
    ValidationError,
)


class RetryDecision(Enum):
    RETRY = "retry"
    FAIL_FAST = "fail_fast"
    ENTER_COOLDOWN = "enter_cooldown"


_STATUS_429 = re.compile(r"\b429\b")


def _is_resource_exhausted_error(e: BaseException) -> bool:
    if getattr(e, "status", None) == 429 or getattr(e, "status_code", None) == 429:
        return True
    msg = str(e)
    return (
        _STATUS_429.search(msg) is not None
        or "QUERY_LIMIT_EXCEEDED" in msg
        or "Too Many Requests" in msg
        or "RESOURCE_EXHAUSTED" in msg
    )


def _is_timeout_error(e: BaseException) -> bool:
    if isinstance(e, (asyncio.TimeoutError, TimeoutError)):
        return True
    msg = repr(e)
    return "TimeoutError" in msg or "timed out" in msg.lower()


def classify(error: BaseException) -> RetryDecision:
    """
    Map an error raised by a remote call onto what the queue must do next.

    Rate-limit signals always map to ENTER_COOLDOWN, even when they arrive as
    an untyped exception whose message mentions 429. Typed permanent failures
    are never retried, whatever their message says.
    """
    if isinstance(error, RateLimitError):
        return RetryDecision.ENTER_COOLDOWN
    if isinstance(error, (CooldownActiveError, ValidationError, PermanentError)):
        return RetryDecision.FAIL_FAST
    if isinstance(error, TransientError):
        return RetryDecision.RETRY
    if _is_resource_exhausted_error(error):
        return RetryDecision.ENTER_COOLDOWN
    if _is_timeout_error(error) or isinstance(error, ConnectionError):
        return RetryDecision.RETRY
    return RetryDecision.FAIL_FAST


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Delay before retry number `attempt` (0-based): base * 2**attempt, capped."""
    if attempt < 0:
        attempt = 0
    return min(base * (2 ** attempt), cap)
