# relaybot/isolated_executor.py

import asyncio
import importlib
import inspect
import logging
import multiprocessing
import os
import signal
import threading
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from relaybot.errors import (
    ExecutorCapacityError,
    IsolatedProcessError,
    IsolationMemoryError,
    IsolationTimeoutError,
    TaskExecutionError,
    ValidationError,
)

try:
    import resource as _resource
except ImportError:  # pragma: no cover - not available on Windows
    _resource = None

logger = logging.getLogger("relaybot_executor")

ProgressCallback = Callable[[Dict[str, Any]], None]


# =====================================================================
# Child side
# =====================================================================

def _set_limits(memory_limit_mb: int) -> List[str]:
    errors: List[str] = []
    if _resource is None:
        errors.append("RLIMIT limits unavailable on this platform")
        return errors

    mem_bytes = int(memory_limit_mb) * 1024 * 1024
    try:
        _, current_hard = _resource.getrlimit(_resource.RLIMIT_AS)
        if current_hard in (-1, _resource.RLIM_INFINITY):
            target_hard = mem_bytes
        else:
            target_hard = min(mem_bytes, current_hard)
        target_soft = min(mem_bytes, target_hard)
        _resource.setrlimit(_resource.RLIMIT_AS, (target_soft, target_hard))
    except (ValueError, OSError) as exc:
        errors.append(f"RLIMIT_AS not applied: {exc}")
    return errors


def load_handler(path: str) -> Callable[..., Any]:
    module_name, _, func_name = path.partition(":")
    if not module_name or not func_name:
        raise ValueError(f"Handler path must look like 'module:function', got {path!r}")
    module = importlib.import_module(module_name)
    handler = getattr(module, func_name)
    if not callable(handler):
        raise TypeError(f"Handler {path} is not callable")
    return handler


class TaskContext:
    """
    What a task handler sees inside the isolated process.

    Handlers report progress with report_progress() and should check
    `cancelled` between steps; a handler that never checks it is terminated
    after the cancel grace period.
    """

    def __init__(self, task_id: str, task_data: Dict[str, Any], conn, cancel_event):
        self.task_id = task_id
        self.task_data = task_data
        self.parameters: Dict[str, Any] = dict(task_data.get("parameters") or {})
        self.progress_steps: List[Dict[str, Any]] = []
        self.current_step: Optional[str] = None
        self._conn = conn
        self._cancel_event = cancel_event

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def report_progress(self, percentage: float, message: str, step: Optional[str] = None) -> None:
        entry = {
            "percentage": percentage,
            "message": message,
            "step": step,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self.progress_steps.append(entry)
        if step:
            self.current_step = step
        self._conn.send(("progress", entry))

    def metadata(self) -> Dict[str, Any]:
        return build_metadata(self.task_data, self.progress_steps, self.current_step)


def build_metadata(task_data: Mapping[str, Any], progress_steps: List[Dict[str, Any]], current_step: Optional[str]) -> Dict[str, Any]:
    return {
        "template": {
            "templateId": task_data.get("templateId"),
            "name": task_data.get("templateName"),
            "description": task_data.get("templateDescription"),
        },
        "parameters": dict(task_data.get("parameters") or {}),
        "progressSteps": list(progress_steps),
        "currentStep": current_step or "unknown",
    }


def _run_isolated(conn, cancel_event, task_id: str, task_data: Dict[str, Any], handler_path: str, memory_limit_mb: int) -> None:
    # entry point of the child process; sends exactly one terminal message
    _set_limits(memory_limit_mb)
    context = TaskContext(task_id, task_data, conn, cancel_event)
    try:
        handler = load_handler(handler_path)
        result = handler(context)
        if inspect.isawaitable(result):
            result = asyncio.run(result)
        message = {"success": True, "result": result}
    except MemoryError:
        message = {
            "success": False,
            "errorKind": "memory",
            "error": {"type": "MemoryError", "message": "Memory limit exceeded"},
        }
    except Exception as e:
        message = {
            "success": False,
            "errorKind": "execution",
            "error": {"type": type(e).__name__, "message": str(e), "stack": traceback.format_exc()},
        }

    try:
        message["executorMetadata"] = context.metadata()
    except Exception:
        message["executorMetadata"] = None

    try:
        conn.send(("result", message))
    except Exception as e:
        # result could not be pickled
        conn.send(("result", {
            "success": False,
            "errorKind": "execution",
            "error": {"type": type(e).__name__, "message": f"Task result could not be delivered: {e}"},
            "executorMetadata": message.get("executorMetadata"),
        }))
    finally:
        conn.close()


# =====================================================================
# Parent side
# =====================================================================

@dataclass
class IsolatedResult:
    success: bool
    result: Any = None
    error: Optional[Dict[str, Any]] = None
    executor_metadata: Optional[Dict[str, Any]] = None
    cancelled: bool = False

    def raise_for_error(self) -> None:
        if self.success:
            return
        error = self.error or {}
        raise TaskExecutionError(
            error.get("message") or "Task failed",
            error_type=error.get("type") or "Exception",
            stack=error.get("stack"),
            executor_metadata=self.executor_metadata,
        )


@dataclass
class _ActiveProcess:
    task_id: str
    task_data: Dict[str, Any]
    handler_path: str
    cancel_event: Any
    started_at: float = field(default_factory=time.monotonic)
    process: Any = None
    reader: Any = None
    progress_steps: List[Dict[str, Any]] = field(default_factory=list)
    current_step: Optional[str] = None
    stop_requested: bool = False
    abandoned: bool = False


class IsolatedExecutor:
    """
    Runs one task per child process with hard memory and time ceilings.

    The child talks back over a one-way pipe: any number of ("progress", ...)
    messages, then one ("result", ...) message. The parent never shares
    objects with it, so killing a runaway child leaves the worker untouched.
    """

    def __init__(
        self,
        handlers: Mapping[str, str],
        task_timeout: float = 300.0,
        memory_limit_mb: int = 512,
        max_concurrent: Optional[int] = None,
        cancel_grace: float = 2.0,
        poll_interval: float = 0.05,
        start_method: str = "spawn",
    ):
        self.handlers = dict(handlers)
        self.task_timeout = task_timeout
        self.memory_limit_mb = memory_limit_mb
        self.max_concurrent = max_concurrent or os.cpu_count() or 2
        self.cancel_grace = cancel_grace
        self.poll_interval = poll_interval
        self._mp = multiprocessing.get_context(start_method)
        self._lock = threading.Lock()
        self._active: Dict[str, _ActiveProcess] = {}

    def _resolve_handler(self, task_data: Mapping[str, Any]) -> str:
        template_id = task_data.get("templateId")
        path = task_data.get("handler") or self.handlers.get(template_id)
        if not path:
            raise ValidationError(f"No task handler registered for template {template_id!r}")
        return path

    async def execute_task_isolated(
        self,
        task_id: str,
        task_data: Dict[str, Any],
        on_progress: Optional[ProgressCallback] = None,
    ) -> IsolatedResult:
        """
        Run the task in a fresh process and wait for its verdict.

        Returns an IsolatedResult for any verdict the task itself produced
        (including cancellation). Raises IsolationTimeoutError,
        IsolationMemoryError or IsolatedProcessError when the isolation
        boundary had to end the task, and ExecutorCapacityError when too many
        tasks are already isolated.
        """
        handler_path = self._resolve_handler(task_data)
        with self._lock:
            if task_id in self._active:
                raise ValidationError(f"Task {task_id} is already executing")
            if len(self._active) >= self.max_concurrent:
                raise ExecutorCapacityError("Worker pool at capacity")
            active = _ActiveProcess(
                task_id=task_id,
                task_data=task_data,
                handler_path=handler_path,
                cancel_event=self._mp.Event(),
            )
            self._active[task_id] = active

        loop = asyncio.get_running_loop()
        try:
            outcome, payload = await asyncio.to_thread(self._supervise, active, loop, on_progress)
        except asyncio.CancelledError:
            active.abandoned = True
            raise
        finally:
            with self._lock:
                self._active.pop(task_id, None)

        return self._to_result(active, outcome, payload)

    def _partial_metadata(self, active: _ActiveProcess) -> Dict[str, Any]:
        return build_metadata(active.task_data, active.progress_steps, active.current_step)

    def _to_result(self, active: _ActiveProcess, outcome: str, payload: Any) -> IsolatedResult:
        task_id = active.task_id
        if outcome == "result":
            metadata = payload.get("executorMetadata") or self._partial_metadata(active)
            if not payload.get("success") and payload.get("errorKind") == "memory":
                logger.warning("Task %s exceeded its memory limit (%dMB)", task_id, self.memory_limit_mb)
                raise IsolationMemoryError("Memory limit exceeded", executor_metadata=metadata)
            return IsolatedResult(
                success=bool(payload.get("success")),
                result=payload.get("result"),
                error=payload.get("error"),
                executor_metadata=metadata,
                cancelled=active.stop_requested,
            )

        metadata = self._partial_metadata(active)
        if outcome == "cancelled":
            logger.info("Task %s did not stop within %.1fs of cancellation, terminated", task_id, self.cancel_grace)
            return IsolatedResult(success=False, executor_metadata=metadata, cancelled=True)
        if outcome == "timeout":
            logger.warning("Task %s timed out after %.1fs", task_id, self.task_timeout)
            raise IsolationTimeoutError(f"Task timeout after {self.task_timeout}s", executor_metadata=metadata)
        if outcome == "exit":
            exit_code = payload
            if active.stop_requested:
                return IsolatedResult(success=False, executor_metadata=metadata, cancelled=True)
            if exit_code == -signal.SIGKILL:
                raise IsolationMemoryError(
                    "Task process was killed (likely out of memory)", executor_metadata=metadata
                )
            raise IsolatedProcessError(f"Worker exited with code {exit_code}", executor_metadata=metadata)
        raise IsolatedProcessError("Task execution abandoned", executor_metadata=metadata)

    def _supervise(self, active: _ActiveProcess, loop: asyncio.AbstractEventLoop, on_progress: Optional[ProgressCallback]):
        # runs in a worker thread; owns the child process from start to reap
        try:
            if active.abandoned:
                return "abandoned", None
            reader, writer = self._mp.Pipe(duplex=False)
            active.reader = reader
            active.process = self._mp.Process(
                target=_run_isolated,
                args=(writer, active.cancel_event, active.task_id, active.task_data,
                      active.handler_path, self.memory_limit_mb),
                name=f"task-{active.task_id}",
                daemon=True,
            )
            active.process.start()
            writer.close()
            logger.debug("Task %s started in pid %s", active.task_id, active.process.pid)
            return self._wait_for_terminal(active, loop, on_progress)
        finally:
            self._reap(active)

    def _wait_for_terminal(self, active: _ActiveProcess, loop: asyncio.AbstractEventLoop, on_progress: Optional[ProgressCallback]):
        deadline = active.started_at + self.task_timeout
        stop_deadline: Optional[float] = None
        reader = active.reader

        while True:
            if active.abandoned:
                return "abandoned", None

            if reader.poll(self.poll_interval):
                try:
                    kind, payload = reader.recv()
                except EOFError:
                    active.process.join(1.0)
                    return "exit", active.process.exitcode
                if kind != "progress":
                    return "result", payload
                active.progress_steps.append(payload)
                if payload.get("step"):
                    active.current_step = payload["step"]
                if on_progress is not None:
                    loop.call_soon_threadsafe(on_progress, payload)

            now = time.monotonic()
            if active.stop_requested:
                if stop_deadline is None:
                    stop_deadline = now + self.cancel_grace
                elif now >= stop_deadline:
                    return "cancelled", None
            if now >= deadline:
                return "timeout", None
            if not active.process.is_alive() and not reader.poll(0):
                active.process.join(1.0)
                return "exit", active.process.exitcode

    def _reap(self, active: _ActiveProcess) -> None:
        process = active.process
        if process is not None:
            if process.is_alive():
                process.terminate()
                process.join(1.0)
            if process.is_alive():
                process.kill()
                process.join(1.0)
        if active.reader is not None:
            active.reader.close()

    def cancel(self, task_id: str) -> bool:
        """Ask a running task to stop. It gets `cancel_grace` seconds before being terminated."""
        with self._lock:
            active = self._active.get(task_id)
        if active is None:
            return False
        active.stop_requested = True
        active.cancel_event.set()
        return True

    def get_stats(self) -> Dict[str, Any]:
        now = time.monotonic()
        with self._lock:
            items = list(self._active.values())
        return {
            "activeWorkers": len(items),
            "maxConcurrent": self.max_concurrent,
            "tasks": [{"taskId": a.task_id, "runningTime": now - a.started_at} for a in items],
        }

    def shutdown(self) -> None:
        with self._lock:
            items = list(self._active.values())
        for active in items:
            active.abandoned = True
            active.cancel_event.set()
            if active.process is not None and active.process.is_alive():
                active.process.terminate()
        if items:
            logger.info("Terminated %d isolated task(s)", len(items))
