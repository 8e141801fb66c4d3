import asyncio

import pytest

from relaybot.errors import (
    CooldownActiveError,
    PermanentError,
    RateLimitError,
    TransientError,
    ValidationError,
)
from relaybot.retry_policy import RetryDecision, backoff_delay, classify


@pytest.mark.parametrize(
    "error, expected",
    [
        (RateLimitError(), RetryDecision.ENTER_COOLDOWN),
        (RuntimeError("HTTP 429 Too Many Requests"), RetryDecision.ENTER_COOLDOWN),
        (RuntimeError("QUERY_LIMIT_EXCEEDED"), RetryDecision.ENTER_COOLDOWN),
        (RuntimeError("connection refused on port 4290"), RetryDecision.FAIL_FAST),
        (RuntimeError("request id 14290 rejected"), RetryDecision.FAIL_FAST),
        (TransientError("server error 502"), RetryDecision.RETRY),
        (asyncio.TimeoutError(), RetryDecision.RETRY),
        (ConnectionResetError("peer reset"), RetryDecision.RETRY),
        (RuntimeError("read timed out"), RetryDecision.RETRY),
        (ValidationError("bad"), RetryDecision.FAIL_FAST),
        (CooldownActiveError(), RetryDecision.FAIL_FAST),
        (PermanentError("rejected (400)", status=400), RetryDecision.FAIL_FAST),
        (KeyError("oops"), RetryDecision.FAIL_FAST),
    ],
)
def test_classify(error, expected):
    assert classify(error) is expected


def test_typed_permanent_error_is_not_sniffed_for_429():
    assert classify(PermanentError("message mentions 429 somewhere")) is RetryDecision.FAIL_FAST


def test_backoff_doubles_and_caps():
    assert [backoff_delay(a, 1.0, 30.0) for a in range(7)] == [1, 2, 4, 8, 16, 30, 30]
    assert backoff_delay(-1, 0.5) == 0.5
