# relaybot/errors.py
from typing import Any, Dict, Optional


class RelayError(Exception):
    kind = "error"


class ValidationError(RelayError):
    kind = "validation"


class RateLimitError(RelayError):
    """The admission quota or the remote platform reported throttling."""
    kind = "rate_limited"

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class CooldownActiveError(RelayError):
    """Rejected because a cooldown entered earlier (by any caller) is still running."""
    kind = "cooldown_active"

    def __init__(self, message: str = "Rate limit cooldown active", cooldown_until: Optional[float] = None):
        super().__init__(message)
        self.cooldown_until = cooldown_until


class QueueFullError(RelayError):
    kind = "queue_full"


class RemoteCallError(RelayError):
    kind = "remote"

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.code = code


class TransientError(RemoteCallError):
    kind = "transient"


class PermanentError(RemoteCallError):
    kind = "permanent"


class TerminalError(RelayError):
    kind = "terminal"

    def __init__(self, message: str, attempts: int = 0, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class WorkerStartupError(RelayError):
    kind = "worker_startup"


class WorkerCapacityError(RelayError):
    kind = "worker_capacity"


class ExecutorCapacityError(RelayError):
    kind = "executor_capacity"


class IsolationError(RelayError):
    """Base for failures enforced by the isolation boundary rather than raised by task logic."""
    kind = "isolation"

    def __init__(self, message: str, executor_metadata: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.executor_metadata = executor_metadata


class IsolationTimeoutError(IsolationError):
    kind = "isolation_timeout"


class IsolationMemoryError(IsolationError):
    kind = "isolation_memory"


class IsolatedProcessError(IsolationError):
    kind = "isolated_process"


class TaskExecutionError(RelayError):
    """Task logic raised inside the isolated process; carries the child's error details."""
    kind = "execution_error"

    def __init__(
        self,
        message: str,
        error_type: str = "Exception",
        stack: Optional[str] = None,
        executor_metadata: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.stack = stack
        self.executor_metadata = executor_metadata
