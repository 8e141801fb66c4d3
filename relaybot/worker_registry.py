# relaybot/worker_registry.py

import logging
import random
import string
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from relaybot.document_store import (
    SERVER_TIMESTAMP,
    ArrayUnion,
    DocumentNotFoundError,
    DocumentStore,
    Increment,
    utc_now_iso,
)

logger = logging.getLogger("relaybot_store")

COLLECTION = "worker-processes"

STATUS_STARTING = "starting"
STATUS_IDLE = "idle"
STATUS_RUNNING = "running"
STATUS_STOPPING = "stopping"
STATUS_STOPPED = "stopped"
STATUS_CRASHED = "crashed"

AVAILABLE_STATUSES = (STATUS_IDLE, STATUS_RUNNING)
ACTIVE_STATUSES = (STATUS_STARTING, STATUS_RUNNING, STATUS_IDLE)

_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_worker_id() -> str:
    suffix = "".join(random.choice(_ID_ALPHABET) for _ in range(6))
    return f"worker_{int(time.time() * 1000)}_{suffix}"


def _parse_instant(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class WorkerRegistry:
    """
    Worker fleet records in the "worker-processes" collection.

    A worker only writes its own record. Reads of single records are cached
    for `cache_ttl` seconds; this process's own writes drop the cached entry.
    Except for register_worker, store failures are logged and reported as
    False / None / empty results.
    """

    def __init__(self, store: DocumentStore, cache_ttl: float = 30.0):
        self.store = store
        self.cache_ttl = cache_ttl
        self._cache_lock = threading.Lock()
        # worker_id -> (fetched_at, record)
        self._cache: Dict[str, tuple] = {}

    # -------------------------
    # Cache
    # -------------------------

    def _cache_get(self, worker_id: str) -> Optional[Dict[str, Any]]:
        with self._cache_lock:
            item = self._cache.get(worker_id)
            if item is None:
                return None
            fetched_at, record = item
            if time.monotonic() - fetched_at >= self.cache_ttl:
                del self._cache[worker_id]
                return None
            return record

    def _cache_put(self, worker_id: str, record: Dict[str, Any]) -> None:
        with self._cache_lock:
            self._cache[worker_id] = (time.monotonic(), record)

    def _invalidate(self, worker_id: str) -> None:
        with self._cache_lock:
            self._cache.pop(worker_id, None)

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    # -------------------------
    # Writes
    # -------------------------

    def register_worker(self, record: Dict[str, Any]) -> str:
        """
        Create the worker's record with status "starting". Returns the worker id.

        Store errors propagate: a worker that cannot register must not start.
        """
        worker_id = record.get("workerId") or generate_worker_id()
        config = record.get("config") or {}
        doc = dict(record)
        doc.update({
            "workerId": worker_id,
            "status": STATUS_STARTING,
            "startedAt": SERVER_TIMESTAMP,
            "lastUpdate": SERVER_TIMESTAMP,
            "currentTasks": [],
            "performance": {
                "avgTaskDuration": 0,
                "successRate": 100,
            },
            "resources": {
                "memoryUsedMB": 0,
                "memoryLimit": config.get("memoryLimit", "512MB"),
                "uptimeMs": 0,
                "lastHealthCheck": SERVER_TIMESTAMP,
                "taskQueueSize": 0,
                "completedTasks": 0,
                "failedTasks": 0,
            },
            "errors": [],
        })
        self.store.set(COLLECTION, worker_id, doc)
        self._invalidate(worker_id)
        logger.info("Worker registered: %s", worker_id)
        return worker_id

    def update_worker(self, worker_id: str, updates: Dict[str, Any]) -> bool:
        data = dict(updates)
        data["lastUpdate"] = SERVER_TIMESTAMP
        try:
            self.store.update(COLLECTION, worker_id, data)
        except (SQLAlchemyError, DocumentNotFoundError) as e:
            logger.error("Failed to update worker %s: %s", worker_id, e)
            return False
        finally:
            self._invalidate(worker_id)
        return True

    def update_worker_status(self, worker_id: str, status: str, extra: Optional[Dict[str, Any]] = None) -> bool:
        updates = {"status": status}
        if extra:
            updates.update(extra)
        ok = self.update_worker(worker_id, updates)
        if ok:
            logger.debug("Worker %s status -> %s", worker_id, status)
        return ok

    def update_worker_resources(self, worker_id: str, usage: Dict[str, Any]) -> bool:
        updates: Dict[str, Any] = {
            f"resources.{key}": value for key, value in usage.items()
        }
        updates["resources.lastHealthCheck"] = SERVER_TIMESTAMP
        return self.update_worker(worker_id, updates)

    def add_task_to_worker(self, worker_id: str, task_id: str) -> bool:
        return self.update_worker(worker_id, {
            "currentTasks": ArrayUnion({"taskId": task_id, "startedAt": utc_now_iso(), "progress": 0}),
            "resources.taskQueueSize": Increment(1),
        })

    def remove_task_from_worker(self, worker_id: str, task_id: str, succeeded: bool = True) -> bool:
        def _changes(current: Dict[str, Any]) -> Dict[str, Any]:
            tasks = [t for t in current.get("currentTasks") or [] if t.get("taskId") != task_id]
            resources = current.get("resources") or {}
            completed = int(resources.get("completedTasks") or 0)
            failed = int(resources.get("failedTasks") or 0)
            if succeeded:
                completed += 1
            else:
                failed += 1
            return {
                "currentTasks": tasks,
                "resources.taskQueueSize": len(tasks),
                "resources.completedTasks": completed,
                "resources.failedTasks": failed,
                "performance.successRate": round(100.0 * completed / (completed + failed), 1),
                "lastUpdate": SERVER_TIMESTAMP,
            }

        try:
            self.store.update(COLLECTION, worker_id, _changes)
        except (SQLAlchemyError, DocumentNotFoundError) as e:
            logger.error("Failed to remove task %s from worker %s: %s", task_id, worker_id, e)
            return False
        finally:
            self._invalidate(worker_id)
        return True

    def mark_worker_crashed(self, worker_id: str, error_message: str, action: str = "worker_crash") -> bool:
        return self.update_worker(worker_id, {
            "status": STATUS_CRASHED,
            "errors": ArrayUnion({
                "timestamp": utc_now_iso(),
                "error": error_message,
                "action": action,
                "recovery": "restart_required",
            }),
        })

    # -------------------------
    # Reads
    # -------------------------

    def get_worker(self, worker_id: str) -> Optional[Dict[str, Any]]:
        cached = self._cache_get(worker_id)
        if cached is not None:
            return cached
        try:
            record = self.store.get(COLLECTION, worker_id)
        except SQLAlchemyError as e:
            logger.error("Failed to read worker %s: %s", worker_id, e)
            return None
        if record is not None:
            self._cache_put(worker_id, record)
        return record

    def get_available_workers(self, task_type: Optional[str] = None) -> List[Dict[str, Any]]:
        try:
            records = self.store.query(COLLECTION, status=list(AVAILABLE_STATUSES))
        except SQLAlchemyError as e:
            logger.error("Failed to list available workers: %s", e)
            return []

        workers = []
        for record in records:
            config = record.get("config") or {}
            specializations = config.get("specializations")
            if task_type and specializations and task_type not in specializations:
                continue
            max_tasks = int(config.get("maxConcurrentTasks") or 2)
            current = len(record.get("currentTasks") or [])
            if current >= max_tasks:
                continue
            worker = dict(record)
            worker["availableSlots"] = max_tasks - current
            workers.append(worker)

        workers.sort(
            key=lambda w: (w["availableSlots"], (w.get("performance") or {}).get("successRate") or 0),
            reverse=True,
        )
        return workers

    def get_active_workers(self) -> List[Dict[str, Any]]:
        try:
            return self.store.query(COLLECTION, status=list(ACTIVE_STATUSES))
        except SQLAlchemyError as e:
            logger.error("Failed to list active workers: %s", e)
            return []

    def cleanup_inactive_workers(self, timeout_seconds: float = 600.0) -> int:
        """
        Mark idle/running workers whose lastUpdate is older than the timeout as crashed.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=timeout_seconds)
        try:
            records = self.store.query(COLLECTION, status=list(AVAILABLE_STATUSES))
        except SQLAlchemyError as e:
            logger.error("Failed to scan for inactive workers: %s", e)
            return 0

        count = 0
        for record in records:
            last_update = _parse_instant(record.get("lastUpdate"))
            if last_update is None or last_update >= cutoff:
                continue
            if self.mark_worker_crashed(
                record["workerId"], "Worker timeout - no heartbeat received", action="timeout_crash"
            ):
                count += 1
        if count:
            logger.warning("Marked %d inactive worker(s) as crashed", count)
        return count

    def get_worker_pool_stats(self) -> Dict[str, int]:
        stats = {
            "total": 0,
            STATUS_STARTING: 0,
            STATUS_RUNNING: 0,
            STATUS_IDLE: 0,
            STATUS_STOPPING: 0,
            STATUS_STOPPED: 0,
            STATUS_CRASHED: 0,
            "totalTasks": 0,
        }
        try:
            records = self.store.query(COLLECTION)
        except SQLAlchemyError as e:
            logger.error("Failed to compute worker pool stats: %s", e)
            return stats
        for record in records:
            stats["total"] += 1
            status = record.get("status") or "unknown"
            stats[status] = stats.get(status, 0) + 1
            stats["totalTasks"] += len(record.get("currentTasks") or [])
        return stats
