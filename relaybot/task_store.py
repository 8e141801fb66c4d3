# relaybot/task_store.py

import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from relaybot.document_store import (
    SERVER_TIMESTAMP,
    ArrayUnion,
    DocumentNotFoundError,
    DocumentStore,
    utc_now_iso,
)

logger = logging.getLogger("relaybot_store")

COLLECTION = "task-queue"

STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED)


def _not_terminal(task: Dict[str, Any]) -> bool:
    return task.get("status") not in TERMINAL_STATUSES


class TaskStore:
    """
    Persisted task records ("task-queue" collection).

    complete_task / fail_task / cancel_task only write while the record is
    not terminal yet, so each task ends in exactly one terminal state.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    def create_task(self, task_data: Dict[str, Any]) -> str:
        task_id = task_data.get("taskId") or f"task_{uuid.uuid4().hex[:16]}"
        doc = dict(task_data)
        doc.update({
            "taskId": task_id,
            "status": task_data.get("status") or STATUS_QUEUED,
            "progress": {"percentage": 0, "message": "Queued"},
            "errors": [],
            "createdAt": SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
        })
        self.store.set(COLLECTION, task_id, doc)
        logger.info("Task created: %s (template=%s)", task_id, doc.get("templateId"))
        return task_id

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get(COLLECTION, task_id)

    def list_tasks(self, **criteria: Any) -> List[Dict[str, Any]]:
        return self.store.query(COLLECTION, **criteria)

    def _update(self, task_id: str, updates: Dict[str, Any], only_if=None) -> bool:
        data = dict(updates)
        data["updatedAt"] = SERVER_TIMESTAMP
        try:
            return self.store.update(COLLECTION, task_id, data, only_if=only_if)
        except (SQLAlchemyError, DocumentNotFoundError) as e:
            logger.error("Failed to update task %s: %s", task_id, e)
            return False

    def start_task(self, task_id: str, worker_id: str) -> bool:
        return self._update(task_id, {
            "status": STATUS_RUNNING,
            "execution.workerId": worker_id,
            "execution.startTime": utc_now_iso(),
            "progress.message": "Task started",
        }, only_if=_not_terminal)

    def update_progress(self, task_id: str, percentage: float, message: str, data: Optional[Dict[str, Any]] = None) -> bool:
        return self._update(task_id, {
            "progress.percentage": percentage,
            "progress.message": message,
            "progress.data": data or {},
            "execution.lastHeartbeat": SERVER_TIMESTAMP,
        }, only_if=_not_terminal)

    def _terminal_write(self, task_id: str, status: str, updates: Dict[str, Any]) -> bool:
        data = dict(updates)
        data["status"] = status
        ok = self._update(task_id, data, only_if=_not_terminal)
        if not ok:
            logger.warning("Task %s was not moved to %s (already terminal or missing)", task_id, status)
        return ok

    def complete_task(
        self,
        task_id: str,
        result: Any,
        execution_time_ms: int,
        executor_metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        summary = result.get("summary") if isinstance(result, dict) else result
        attachments = result.get("attachments", []) if isinstance(result, dict) else []
        updates: Dict[str, Any] = {
            "result": {
                "success": True,
                "summary": summary,
                "attachments": attachments,
                "executionTime": execution_time_ms,
            },
            "executionTimeMs": execution_time_ms,
            "progress.percentage": 100,
            "progress.message": "Task completed successfully",
            "completedAt": utc_now_iso(),
        }
        if executor_metadata is not None:
            updates["executorMetadata"] = executor_metadata
        return self._terminal_write(task_id, STATUS_COMPLETED, updates)

    def fail_task(
        self,
        task_id: str,
        error: Dict[str, Any],
        execution_time_ms: Optional[int] = None,
        executor_metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        updates: Dict[str, Any] = {
            "errors": ArrayUnion({
                "timestamp": utc_now_iso(),
                "type": error.get("type") or "execution_error",
                "kind": error.get("kind"),
                "message": error.get("message"),
                "step": error.get("step"),
                "resolved": False,
            }),
            "progress.message": "Task failed",
            "failedAt": utc_now_iso(),
        }
        if execution_time_ms is not None:
            updates["executionTimeMs"] = execution_time_ms
        if executor_metadata is not None:
            updates["executorMetadata"] = executor_metadata
        return self._terminal_write(task_id, STATUS_FAILED, updates)

    def cancel_task(self, task_id: str) -> bool:
        return self._terminal_write(task_id, STATUS_CANCELLED, {
            "progress.message": "Task cancelled by user",
            "cancelledAt": utc_now_iso(),
        })
