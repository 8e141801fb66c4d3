# relaybot/task_worker.py

import asyncio
import logging
import os
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

import psutil

from relaybot.errors import (
    IsolatedProcessError,
    TaskExecutionError,
    ValidationError,
    WorkerCapacityError,
    WorkerStartupError,
)
from relaybot.settings import WorkerSettings
from relaybot.task_store import STATUS_CANCELLED, STATUS_COMPLETED, STATUS_FAILED
from relaybot.worker_registry import (
    STATUS_IDLE,
    STATUS_RUNNING,
    STATUS_STARTING,
    STATUS_STOPPED,
    STATUS_STOPPING,
    generate_worker_id,
)

logger = logging.getLogger("relaybot_worker")

MSG_EXECUTE_TASK = "EXECUTE_TASK"
MSG_CANCEL_TASK = "CANCEL_TASK"
MSG_STATUS_REQUEST = "STATUS_REQUEST"
MSG_SHUTDOWN = "SHUTDOWN"

SendMessage = Callable[[str, Dict[str, Any]], None]


@dataclass
class TaskExecutionRecord:
    task_id: str
    status: str
    start_time: str
    execution_time_ms: int = 0
    result: Any = None
    error: Optional[Dict[str, Any]] = None
    executor_metadata: Optional[Dict[str, Any]] = None


@dataclass
class _TaskEntry:
    task_id: str
    task_data: Dict[str, Any]
    start_time: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    started_at: float = field(default_factory=time.monotonic)
    runner: Optional[asyncio.Task] = None
    cancelled: bool = False
    # set once a terminal path has started; later cancels are no-ops
    finishing: bool = False
    executor_metadata: Optional[Dict[str, Any]] = None

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


def _error_info(error: BaseException) -> Dict[str, Any]:
    info = {"type": type(error).__name__, "message": str(error)}
    if isinstance(error, TaskExecutionError):
        # the exception raised by the task inside its process
        info["type"] = error.error_type
    kind = getattr(error, "kind", None)
    if kind:
        info["kind"] = kind
    return info


class TaskWorker:
    """
    Runs up to `max_concurrent_tasks` tasks, each in its own isolated process.

    Status: starting -> idle <-> running -> stopping -> stopped.

    The worker never queues: a task arriving while every slot is taken is
    rejected with WorkerCapacityError and the caller decides what to do.
    Registry, task store and notifications are best-effort once the worker is
    registered; their failures are logged and never change a task's verdict.
    """

    def __init__(
        self,
        registry,
        task_store,
        executor,
        notifier,
        settings: Optional[WorkerSettings] = None,
        worker_id: Optional[str] = None,
        send_message: Optional[SendMessage] = None,
        receiver_id: Optional[str] = None,
    ):
        self.registry = registry
        self.task_store = task_store
        self.executor = executor
        self.notifier = notifier
        self.settings = settings or WorkerSettings()
        self.worker_id = worker_id or generate_worker_id()
        self._send_message = send_message
        self.receiver_id = receiver_id

        self.status = STATUS_STARTING
        self.current_tasks: Dict[str, _TaskEntry] = {}
        self.start_time = time.monotonic()
        self.resource_usage = {
            "peakMemoryMB": 0,
            "tasksCompleted": 0,
            "tasksFailed": 0,
            "tasksCancelled": 0,
            "totalExecutionTime": 0,
        }

        self._process = psutil.Process()
        self._timers: List[asyncio.Task] = []
        self._background: Set[asyncio.Task] = set()
        self._shutdown_started = False
        self._stopped = asyncio.Event()

    # -------------------------
    # Helpers
    # -------------------------

    @property
    def available_slots(self) -> int:
        if self._shutdown_started:
            return 0
        return max(0, self.settings.max_concurrent_tasks - len(self.current_tasks))

    def send_message(self, msg_type: str, data: Dict[str, Any]) -> None:
        if self._send_message is None:
            return
        try:
            self._send_message(msg_type, data)
        except Exception as e:
            logger.error("Failed to send %s from worker %s: %s", msg_type, self.worker_id, e)

    async def _best_effort(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception as e:
            logger.error("Worker %s: %s failed: %s", self.worker_id, getattr(fn, "__name__", fn), e)
            return None

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _set_status(self, status: str, extra: Optional[Dict[str, Any]] = None) -> None:
        self.status = status
        await self._best_effort(self.registry.update_worker_status, self.worker_id, status, extra)

    async def _go_idle_if_empty(self) -> None:
        if not self.current_tasks and not self._shutdown_started and self.status != STATUS_IDLE:
            await self._set_status(STATUS_IDLE)

    async def _load_task(self, entry: _TaskEntry) -> Dict[str, Any]:
        doc = await self._best_effort(self.task_store.get_task, entry.task_id)
        if doc:
            return doc
        fallback = dict(entry.task_data)
        fallback["taskId"] = entry.task_id
        return fallback

    def _release(self, task_id: str) -> None:
        self.current_tasks.pop(task_id, None)

    # -------------------------
    # Lifecycle
    # -------------------------

    async def initialize(self) -> str:
        """
        Register with the fleet, start heartbeat and health-check loops, go idle.

        A failed registration raises WorkerStartupError.
        """
        logger.info("Initializing worker %s", self.worker_id)
        record = {
            "workerId": self.worker_id,
            "type": "task_worker",
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "receiverId": self.receiver_id or self.worker_id,
            "config": self.settings.as_record(),
        }
        try:
            registered = await asyncio.to_thread(self.registry.register_worker, record)
        except Exception as e:
            raise WorkerStartupError(f"Failed to register worker in database: {e}") from e
        if not registered:
            raise WorkerStartupError("Failed to register worker in database")
        self.worker_id = registered

        self._timers = [
            asyncio.create_task(self._every(self.settings.heartbeat_interval, self.send_heartbeat)),
            asyncio.create_task(self._every(self.settings.health_check_interval, self.perform_health_check)),
        ]
        await self._set_status(STATUS_IDLE)
        logger.info(
            "Worker %s ready (max_concurrent_tasks=%d, specializations=%s)",
            self.worker_id, self.settings.max_concurrent_tasks, ",".join(self.settings.specializations),
        )
        self.send_message("WORKER_READY", {"workerId": self.worker_id})
        return self.worker_id

    async def _every(self, interval: float, fn: Callable[[], Any]) -> None:
        while True:
            await asyncio.sleep(interval)
            await fn()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    # -------------------------
    # Messages
    # -------------------------

    async def handle_message(self, msg_type: str, data: Optional[Dict[str, Any]] = None) -> Any:
        data = data or {}
        try:
            if msg_type == MSG_EXECUTE_TASK:
                return await self.execute_task(data)
            if msg_type == MSG_CANCEL_TASK:
                return await self.cancel_task(data.get("taskId"))
            if msg_type == MSG_STATUS_REQUEST:
                status = self.get_status()
                self.send_message("WORKER_STATUS", status)
                return status
            if msg_type == MSG_SHUTDOWN:
                await self.shutdown()
                return None
        except (ValidationError, WorkerCapacityError) as e:
            logger.error("Worker %s rejected %s: %s", self.worker_id, msg_type, e)
            self.send_message("TASK_REJECTED", {
                "taskId": data.get("taskId"),
                "workerId": self.worker_id,
                "error": _error_info(e),
            })
            return None

        logger.warning("Unknown message type received by %s: %s", self.worker_id, msg_type)
        return None

    def get_status(self) -> Dict[str, Any]:
        return {
            "workerId": self.worker_id,
            "status": self.status,
            "currentTasks": list(self.current_tasks),
            "resourceUsage": dict(self.resource_usage),
            "uptimeMs": int((time.monotonic() - self.start_time) * 1000),
            "config": self.settings.as_record(),
        }

    # -------------------------
    # Tasks
    # -------------------------

    async def execute_task(self, task_data: Dict[str, Any]) -> TaskExecutionRecord:
        task_id = task_data.get("taskId") if isinstance(task_data, dict) else None
        if not task_id or not task_data.get("templateId"):
            raise ValidationError("Task data requires taskId and templateId")
        if self._shutdown_started:
            raise WorkerCapacityError(f"Worker {self.worker_id} is shutting down")
        if task_id in self.current_tasks:
            raise ValidationError(f"Task {task_id} is already running on this worker")
        if len(self.current_tasks) >= self.settings.max_concurrent_tasks:
            raise WorkerCapacityError("Worker at maximum capacity")

        entry = _TaskEntry(task_id=task_id, task_data=task_data)
        self.current_tasks[task_id] = entry
        logger.info("Starting task %s on worker %s", task_id, self.worker_id)

        runner = asyncio.create_task(
            self.executor.execute_task_isolated(
                task_id, task_data, on_progress=lambda p: self._on_progress(task_id, p)
            )
        )
        entry.runner = runner

        if self.status != STATUS_RUNNING:
            await self._set_status(STATUS_RUNNING)
        await self._best_effort(self.registry.add_task_to_worker, self.worker_id, task_id)
        await self._best_effort(self.task_store.start_task, task_id, self.worker_id)

        try:
            await asyncio.wait({runner})
        except asyncio.CancelledError:
            runner.cancel()
            if not entry.cancelled:
                self._release(task_id)
            raise

        if entry.cancelled:
            # cancel_task already did the bookkeeping
            return self._cancelled_record(entry)

        error: Optional[BaseException] = None
        outcome = None
        if runner.cancelled():
            error = IsolatedProcessError("Task execution abandoned")
        else:
            error = runner.exception()
            if error is None:
                outcome = runner.result()
                entry.executor_metadata = outcome.executor_metadata
                if outcome.cancelled:
                    return await self._finish_cancelled(entry)
                try:
                    outcome.raise_for_error()
                except TaskExecutionError as e:
                    error = e

        if error is not None:
            if entry.executor_metadata is None:
                entry.executor_metadata = getattr(error, "executor_metadata", None)
            return await self.task_failed(entry, error)
        return await self.task_completed(entry, outcome.result)

    def _on_progress(self, task_id: str, progress: Dict[str, Any]) -> None:
        if task_id not in self.current_tasks:
            return
        self._spawn(self._best_effort(
            self.task_store.update_progress,
            task_id,
            progress.get("percentage", 0),
            progress.get("message", ""),
            {"step": progress.get("step")},
        ))

    async def task_completed(self, entry: _TaskEntry, result: Any) -> TaskExecutionRecord:
        entry.finishing = True
        task_id = entry.task_id
        execution_time_ms = entry.elapsed_ms()

        await self._best_effort(
            self.task_store.complete_task, task_id, result, execution_time_ms, entry.executor_metadata
        )
        task = await self._load_task(entry)
        await self.notifier.send_task_notification(
            task, STATUS_COMPLETED, {"execution_time_ms": execution_time_ms, "result": result}
        )
        await self._best_effort(self.registry.remove_task_from_worker, self.worker_id, task_id, True)

        self._release(task_id)
        self.resource_usage["tasksCompleted"] += 1
        self.resource_usage["totalExecutionTime"] += execution_time_ms
        await self._go_idle_if_empty()

        self.send_message("TASK_COMPLETED", {
            "taskId": task_id,
            "result": result,
            "executionTime": execution_time_ms,
            "workerId": self.worker_id,
        })
        logger.info("Task %s completed in %dms on worker %s", task_id, execution_time_ms, self.worker_id)
        return TaskExecutionRecord(
            task_id=task_id,
            status=STATUS_COMPLETED,
            start_time=entry.start_time,
            execution_time_ms=execution_time_ms,
            result=result,
            executor_metadata=entry.executor_metadata,
        )

    async def task_failed(self, entry: _TaskEntry, error: BaseException) -> TaskExecutionRecord:
        entry.finishing = True
        task_id = entry.task_id
        execution_time_ms = entry.elapsed_ms()
        info = _error_info(error)
        metadata = entry.executor_metadata or {}

        await self._best_effort(
            self.task_store.fail_task,
            task_id,
            {
                "type": info["type"],
                "kind": info.get("kind"),
                "message": info["message"],
                "step": metadata.get("currentStep"),
            },
            execution_time_ms,
            entry.executor_metadata,
        )
        task = await self._load_task(entry)
        await self.notifier.send_task_notification(
            task, STATUS_FAILED, {"execution_time_ms": execution_time_ms, "error": info}
        )
        await self._best_effort(self.registry.remove_task_from_worker, self.worker_id, task_id, False)

        self._release(task_id)
        self.resource_usage["tasksFailed"] += 1
        await self._go_idle_if_empty()

        self.send_message("TASK_FAILED", {
            "taskId": task_id,
            "error": info,
            "executionTime": execution_time_ms,
            "workerId": self.worker_id,
        })
        logger.error("Task %s failed after %dms: %s", task_id, execution_time_ms, error)
        return TaskExecutionRecord(
            task_id=task_id,
            status=STATUS_FAILED,
            start_time=entry.start_time,
            execution_time_ms=execution_time_ms,
            error=info,
            executor_metadata=entry.executor_metadata,
        )

    def _cancelled_record(self, entry: _TaskEntry) -> TaskExecutionRecord:
        return TaskExecutionRecord(
            task_id=entry.task_id,
            status=STATUS_CANCELLED,
            start_time=entry.start_time,
            execution_time_ms=entry.elapsed_ms(),
            executor_metadata=entry.executor_metadata,
        )

    async def cancel_task(self, task_id: Optional[str]) -> bool:
        """
        Cancel a task running on this worker. Unknown or already finished
        tasks log a warning and return False.
        """
        entry = self.current_tasks.get(task_id) if task_id else None
        if entry is None or entry.cancelled or entry.finishing:
            logger.warning("Attempted to cancel non-existent task %s on worker %s", task_id, self.worker_id)
            return False

        entry.cancelled = True
        self.executor.cancel(task_id)
        await self._finish_cancelled(entry)
        return True

    async def _finish_cancelled(self, entry: _TaskEntry) -> TaskExecutionRecord:
        entry.finishing = True
        task_id = entry.task_id
        entry.cancelled = True
        execution_time_ms = entry.elapsed_ms()
        self._release(task_id)

        await self._best_effort(self.task_store.cancel_task, task_id)
        task = await self._load_task(entry)
        await self.notifier.send_task_notification(
            task, STATUS_CANCELLED, {"execution_time_ms": execution_time_ms}
        )
        await self._best_effort(self.registry.remove_task_from_worker, self.worker_id, task_id, False)

        self.resource_usage["tasksCancelled"] += 1
        await self._go_idle_if_empty()

        self.send_message("TASK_CANCELLED", {
            "taskId": task_id,
            "executionTime": execution_time_ms,
            "workerId": self.worker_id,
        })
        logger.info("Task %s cancelled on worker %s", task_id, self.worker_id)
        return self._cancelled_record(entry)

    # -------------------------
    # Monitoring
    # -------------------------

    def _memory_mb(self) -> float:
        return self._process.memory_info().rss / 1024 / 1024

    async def send_heartbeat(self) -> None:
        try:
            memory_mb = self._memory_mb()
            self.resource_usage["peakMemoryMB"] = max(self.resource_usage["peakMemoryMB"], round(memory_mb))
            uptime_ms = int((time.monotonic() - self.start_time) * 1000)
            ok = await asyncio.to_thread(self.registry.update_worker_resources, self.worker_id, {
                "memoryUsedMB": round(memory_mb, 1),
                "memoryUsage": f"{round(memory_mb)}MB",
                "cpuUsage": f"{self._process.cpu_percent(interval=None)}%",
                "uptimeMs": uptime_ms,
            })
            if not ok:
                logger.warning("Heartbeat for worker %s was not recorded", self.worker_id)
            self.send_message("HEARTBEAT", {
                "workerId": self.worker_id,
                "status": self.status,
                "currentTasks": len(self.current_tasks),
                "resourceUsage": dict(self.resource_usage),
            })
        except Exception as e:
            logger.error("Heartbeat failed for worker %s: %s", self.worker_id, e)

    async def perform_health_check(self) -> Dict[str, Any]:
        """
        Flag, never kill: tasks past 80% of the maximum execution time and
        high memory usage only produce warnings.
        """
        report: Dict[str, Any] = {"longRunningTasks": [], "highMemory": False, "memoryMB": None}
        try:
            memory_mb = self._memory_mb()
            report["memoryMB"] = round(memory_mb)
            if memory_mb > self.settings.high_memory_mb:
                report["highMemory"] = True
                logger.warning("High memory usage on worker %s: %dMB", self.worker_id, round(memory_mb))

            threshold_ms = self.settings.max_execution_time * 1000 * 0.8
            for task_id, entry in list(self.current_tasks.items()):
                elapsed = entry.elapsed_ms()
                if elapsed > threshold_ms:
                    report["longRunningTasks"].append(task_id)
                    logger.warning(
                        "Long running task %s on worker %s: %dms", task_id, self.worker_id, elapsed
                    )
        except Exception as e:
            logger.error("Health check failed for worker %s: %s", self.worker_id, e)
        return report

    # -------------------------
    # Shutdown
    # -------------------------

    async def shutdown(self) -> None:
        """
        Stop timers, cancel running tasks, mark the worker stopped.

        Safe to call more than once; later calls just wait for the first one.
        Each task gets `shutdown_grace` seconds; the worker stops waiting for
        tasks that don't finish in time.
        """
        if self._shutdown_started:
            await self._stopped.wait()
            return
        self._shutdown_started = True
        logger.info("Shutting down worker %s", self.worker_id)

        try:
            await self._set_status(STATUS_STOPPING)

            for timer in self._timers:
                timer.cancel()
            if self._timers:
                await asyncio.gather(*self._timers, return_exceptions=True)
            self._timers = []

            entries = list(self.current_tasks.values())
            for entry in entries:
                try:
                    await asyncio.wait_for(self.cancel_task(entry.task_id), timeout=self.settings.shutdown_grace)
                except asyncio.TimeoutError:
                    logger.warning("Cancelling task %s timed out during shutdown", entry.task_id)
                except Exception as e:
                    logger.error("Error cancelling task %s during shutdown: %s", entry.task_id, e)

            runners = [e.runner for e in entries if e.runner is not None and not e.runner.done()]
            if runners:
                _, pending = await asyncio.wait(runners, timeout=self.settings.shutdown_grace)
                for runner in pending:
                    runner.cancel()
            self.executor.shutdown()

            if self._background:
                await asyncio.gather(*list(self._background), return_exceptions=True)

            await self._set_status(STATUS_STOPPED)
            self.send_message("WORKER_SHUTDOWN", {"workerId": self.worker_id})
            logger.info("Worker shutdown complete: %s", self.worker_id)
        finally:
            self._stopped.set()
