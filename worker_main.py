# worker_main.py
"""
Task worker process.

Inbox
-----
The control plane addresses a worker by writing QueueMessage rows with
receiver_id == QUEUE_RECEIVER_ID. AsyncGuard polls only those rows:

  - control messages (CANCEL_TASK, STATUS_REQUEST, SHUTDOWN) are always claimed
  - EXECUTE_TASK messages are claimed only while the worker has free slots,
    so unclaimed work stays in the table for another worker

Everything the worker reports (WORKER_READY, HEARTBEAT, TASK_COMPLETED, ...)
is written back as QueueMessage rows addressed to CONTROLLER_ID.

One process runs exactly one TaskWorker. SIGTERM / SIGINT or a SHUTDOWN
message stop it; the process exits once the worker reports stopped.
"""

import asyncio
import logging
import os
import signal
import time
from typing import Any, Callable, Dict, Optional, Set

from sqlalchemy.orm import sessionmaker

from relaybot.db_connection import create_session_factory, get_db_engine, init_schema
from relaybot.document_store import DocumentStore
from relaybot.inbox import claim_queue_messages, send_queue_message
from relaybot.isolated_executor import IsolatedExecutor
from relaybot.notifications import TaskNotifier
from relaybot.outbound_queue import OutboundQueue
from relaybot.platform_client import PlatformApiClient
from relaybot.settings import (
    LOG_FORMAT,
    LOG_LEVEL,
    PlatformSettings,
    QueueSettings,
    ServerSettings,
    WorkerSettings,
)
from relaybot.task_store import TaskStore
from relaybot.task_worker import MSG_EXECUTE_TASK, TaskWorker
from relaybot.worker_registry import WorkerRegistry

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger("relaybot_worker")

QUEUE_RECEIVER_ID = os.getenv("QUEUE_RECEIVER_ID")
CONTROL_BATCH_SIZE = 10


class Outbox:
    """Writes worker messages to the controller's inbox without blocking the event loop."""

    def __init__(self, session_factory: sessionmaker, controller_id: str, sender_id: Callable[[], str]):
        self.SessionFactory = session_factory
        self.controller_id = controller_id
        self.sender_id = sender_id
        self._pending: Set[asyncio.Task] = set()

    def __call__(self, msg_type: str, data: Dict[str, Any]) -> None:
        task = asyncio.get_running_loop().create_task(self._write(msg_type, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, msg_type: str, data: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(
                send_queue_message, self.SessionFactory, self.sender_id(), self.controller_id, msg_type, data
            )
        except Exception as e:
            logger.error("Failed to deliver %s to %s: %s", msg_type, self.controller_id, e)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class AsyncGuard:
    def __init__(
        self,
        worker: TaskWorker,
        session_factory: sessionmaker,
        receiver_id: str,
        poll_interval: float = 1.0,
        registry: Optional[WorkerRegistry] = None,
        inactive_timeout: float = 600.0,
        sweep_interval: float = 60.0,
    ):
        self.worker = worker
        self.SessionFactory = session_factory
        self.receiver_id = receiver_id
        self.poll_interval = poll_interval
        self.registry = registry
        self.inactive_timeout = inactive_timeout
        self.sweep_interval = sweep_interval
        self._in_flight: Set[asyncio.Task] = set()
        self._last_sweep = 0.0

    async def sweep(self) -> None:
        if self.registry is None:
            return
        now = time.monotonic()
        if now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        removed = await asyncio.to_thread(self.registry.cleanup_inactive_workers, self.inactive_timeout)
        if removed:
            logger.debug("Inactive worker sweep: marked %d worker(s) crashed", removed)

    async def _run_message(self, job: Dict[str, Any]) -> None:
        try:
            await self.worker.handle_message(job["type"], job.get("payload") or {})
        except Exception:
            logger.exception("Error processing message id=%s type=%s", job.get("id"), job.get("type"))

    async def poll_once(self) -> int:
        control = await asyncio.to_thread(
            claim_queue_messages,
            self.SessionFactory,
            self.receiver_id,
            CONTROL_BATCH_SIZE,
            exclude_types=[MSG_EXECUTE_TASK],
        )

        slots = self.worker.available_slots
        work = []
        if slots > 0:
            work = await asyncio.to_thread(
                claim_queue_messages,
                self.SessionFactory,
                self.receiver_id,
                slots,
                include_types=[MSG_EXECUTE_TASK],
            )

        for job in control + work:
            task = asyncio.create_task(self._run_message(job))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
        return len(control) + len(work)

    async def run(self) -> None:
        logger.info("AsyncGuard running - receiver_id=%s worker=%s", self.receiver_id, self.worker.worker_id)

        while not self.worker.stopped:
            try:
                await self.sweep()
                await self.poll_once()
            except Exception:
                logger.exception("Inbox poll failed for %s", self.receiver_id)

            try:
                await asyncio.wait_for(self.worker.wait_stopped(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)


async def run_worker() -> None:
    if not QUEUE_RECEIVER_ID:
        raise RuntimeError("QUEUE_RECEIVER_ID env var is required for DB queue mode")

    worker_settings = WorkerSettings.from_env()
    server_settings = ServerSettings.from_env()
    platform_settings = PlatformSettings.from_env()

    engine = get_db_engine()
    init_schema(engine)
    session_factory = create_session_factory(engine)
    store = DocumentStore(session_factory)
    registry = WorkerRegistry(store)

    client = PlatformApiClient(platform_settings.rest_url, platform_settings.timeout, store=store)
    queue = OutboundQueue(client.call, QueueSettings.from_env(), state_store=store)
    await queue.restore_state()

    executor = IsolatedExecutor(
        worker_settings.task_handlers,
        task_timeout=worker_settings.task_timeout,
        memory_limit_mb=worker_settings.memory_limit_mb,
        max_concurrent=worker_settings.max_isolated_tasks,
        cancel_grace=worker_settings.cancel_grace,
    )

    worker: Optional[TaskWorker] = None
    outbox = Outbox(session_factory, server_settings.controller_id, lambda: worker.worker_id)
    worker = TaskWorker(
        registry,
        TaskStore(store),
        executor,
        TaskNotifier(queue),
        worker_settings,
        send_message=outbox,
        receiver_id=QUEUE_RECEIVER_ID,
    )

    try:
        await worker.initialize()

        loop = asyncio.get_running_loop()
        shutdown_tasks = []
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: shutdown_tasks.append(asyncio.create_task(worker.shutdown())))

        guard = AsyncGuard(
            worker,
            session_factory,
            QUEUE_RECEIVER_ID,
            poll_interval=worker_settings.poll_interval,
            registry=registry,
            inactive_timeout=worker_settings.inactive_timeout,
        )
        await guard.run()
        await worker.wait_stopped()
    finally:
        await outbox.drain()
        await queue.aclose()
        await client.aclose()


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
