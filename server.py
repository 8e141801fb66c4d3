# server.py
import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy.orm import sessionmaker

from relaybot.db_connection import create_session_factory, get_db_engine, init_schema
from relaybot.document_store import DocumentStore
from relaybot.inbox import send_queue_message
from relaybot.message_cache import ProcessedMessageCache
from relaybot.settings import LOG_FORMAT, LOG_LEVEL, ServerSettings
from relaybot.task_store import TERMINAL_STATUSES, TaskStore
from relaybot.task_worker import MSG_CANCEL_TASK, MSG_EXECUTE_TASK
from relaybot.worker_registry import WorkerRegistry

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger("relaybot_server")

WEBHOOK_SENDER_ID = "webhook"


class ChatEvent(BaseModel):
    event: str
    message_id: str
    user_id: str
    dialog_id: Optional[str] = None
    payload: Optional[Any] = None


class ExecuteRequest(BaseModel):
    taskId: str
    templateId: str
    userId: str
    parameters: Dict[str, Any] = {}
    taskType: Optional[str] = None
    templateName: Optional[str] = None


def create_app(
    session_factory: Optional[sessionmaker] = None,
    settings: Optional[ServerSettings] = None,
) -> FastAPI:
    """
    Control plane: inbound chat events, task submission and cancellation,
    fleet views. Run with `uvicorn server:create_app --factory`.
    """
    settings = settings or ServerSettings.from_env()
    if session_factory is None:
        engine = get_db_engine()
        init_schema(engine)
        session_factory = create_session_factory(engine)

    store = DocumentStore(session_factory)
    registry = WorkerRegistry(store, cache_ttl=0)
    tasks = TaskStore(store)
    message_cache = ProcessedMessageCache(
        ttl_seconds=settings.message_cache_ttl,
        max_size=settings.message_cache_max_size,
        duplicate_threshold=settings.duplicate_message_threshold,
    )

    app = FastAPI()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.message_cache = message_cache

    def _send(receiver_id: str, msg_type: str, payload: Dict[str, Any]) -> str:
        return send_queue_message(session_factory, settings.controller_id, receiver_id, msg_type, payload)

    @app.post("/events")
    async def receive_event(event: ChatEvent):
        message_cache.sweep_expired()
        if message_cache.is_duplicate(event.message_id, event.user_id):
            return {"status": "duplicate"}
        try:
            msg_id = await asyncio.to_thread(
                send_queue_message,
                session_factory,
                WEBHOOK_SENDER_ID,
                settings.chat_receiver_id,
                event.event,
                event.model_dump(),
            )
        except Exception as e:
            logger.error("Failed to forward event %s: %s", event.message_id, e)
            raise HTTPException(status_code=500, detail=str(e))
        return {"status": "accepted", "id": msg_id}

    @app.post("/worker/execute")
    async def execute_task(request: ExecuteRequest):
        if not request.taskId or not request.templateId or not request.userId:
            raise HTTPException(status_code=400, detail="Missing required fields: taskId, templateId, userId")

        existing = await asyncio.to_thread(tasks.get_task, request.taskId)
        if existing is not None:
            raise HTTPException(status_code=409, detail=f"Task {request.taskId} already exists")

        workers = await asyncio.to_thread(registry.get_available_workers, request.taskType)
        if not workers:
            raise HTTPException(status_code=503, detail="No worker available")
        worker = workers[0]
        receiver_id = worker.get("receiverId") or worker["workerId"]

        task_data = {
            "taskId": request.taskId,
            "templateId": request.templateId,
            "templateName": request.templateName,
            "parameters": request.parameters,
            "createdBy": request.userId,
        }
        await asyncio.to_thread(tasks.create_task, task_data)
        try:
            await asyncio.to_thread(_send, receiver_id, MSG_EXECUTE_TASK, task_data)
        except Exception as e:
            logger.error("Failed to dispatch task %s to worker %s: %s", request.taskId, worker["workerId"], e)
            # no worker will ever own it
            await asyncio.to_thread(tasks.fail_task, request.taskId, {
                "type": type(e).__name__,
                "kind": "dispatch",
                "message": f"Failed to dispatch task: {e}",
            })
            raise HTTPException(status_code=503, detail="Failed to dispatch task to worker")
        logger.info("Task %s dispatched to worker %s", request.taskId, worker["workerId"])
        return {"success": True, "taskId": request.taskId, "workerId": worker["workerId"], "status": "queued"}

    @app.post("/worker/tasks/{task_id}/cancel")
    async def cancel_task(task_id: str):
        task = await asyncio.to_thread(tasks.get_task, task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        if task.get("status") in TERMINAL_STATUSES:
            return {"success": False, "taskId": task_id, "status": task["status"]}

        worker_id = (task.get("execution") or {}).get("workerId")
        if not worker_id:
            # never picked up: no worker owns it yet
            cancelled = await asyncio.to_thread(tasks.cancel_task, task_id)
            return {"success": cancelled, "taskId": task_id, "status": "cancelled"}

        worker = await asyncio.to_thread(registry.get_worker, worker_id)
        receiver_id = (worker or {}).get("receiverId") or worker_id
        await asyncio.to_thread(_send, receiver_id, MSG_CANCEL_TASK, {"taskId": task_id})
        return {"success": True, "taskId": task_id, "status": "cancelling"}

    @app.get("/tasks/{task_id}")
    async def get_task(task_id: str):
        task = await asyncio.to_thread(tasks.get_task, task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return task

    @app.get("/workers")
    async def list_workers():
        return await asyncio.to_thread(registry.get_active_workers)

    @app.get("/workers/{worker_id}")
    async def get_worker(worker_id: str):
        worker = await asyncio.to_thread(registry.get_worker, worker_id)
        if worker is None:
            raise HTTPException(status_code=404, detail="Worker not found")
        return worker

    @app.get("/worker/health")
    async def health():
        stats = await asyncio.to_thread(registry.get_worker_pool_stats)
        return {"status": "healthy", "workers": stats}

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("server:create_app", factory=True, host="0.0.0.0", port=8000)
