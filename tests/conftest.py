"""
Shared fixtures: a throwaway SQLite database per test and the stores built on it.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import pytest

from relaybot.db_connection import create_session_factory, get_db_engine, init_schema
from relaybot.document_store import DocumentStore
from relaybot.isolated_executor import IsolatedResult
from relaybot.task_store import TaskStore
from relaybot.worker_registry import WorkerRegistry

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")


@pytest.fixture
def session_factory(tmp_path):
    engine = get_db_engine(f"sqlite:///{tmp_path}/relaybot.db")
    init_schema(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return DocumentStore(session_factory)


@pytest.fixture
def registry(store):
    return WorkerRegistry(store, cache_ttl=0)


@pytest.fixture
def task_store(store):
    return TaskStore(store)


class FakeExecutor:
    """
    Stands in for IsolatedExecutor. Each task blocks until the test calls
    finish(task_id, outcome); cancel() finishes it as cancelled.
    """

    def __init__(self):
        self._done: Dict[str, asyncio.Future] = {}
        self.started: List[str] = []
        self.progress_callbacks: Dict[str, Any] = {}
        self.cancelled: List[str] = []
        self.shutdown_calls = 0

    def _future(self, task_id: str) -> asyncio.Future:
        if task_id not in self._done:
            self._done[task_id] = asyncio.get_running_loop().create_future()
        return self._done[task_id]

    async def execute_task_isolated(self, task_id, task_data, on_progress=None):
        self.started.append(task_id)
        self.progress_callbacks[task_id] = on_progress
        outcome = await self._future(task_id)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def finish(self, task_id: str, outcome: Any) -> None:
        future = self._future(task_id)
        if not future.done():
            future.set_result(outcome)

    def cancel(self, task_id: str) -> bool:
        self.cancelled.append(task_id)
        self.finish(task_id, IsolatedResult(success=False, cancelled=True))
        return True

    def shutdown(self) -> None:
        self.shutdown_calls += 1


class RecordingNotifier:
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def send_task_notification(self, task, status, details) -> bool:
        self.sent.append({"taskId": task.get("taskId"), "status": status, "details": details})
        return True


class MemoryStateStore:
    """Minimal get/set pair used for cooldown persistence."""

    def __init__(self):
        self.docs: Dict[tuple, Dict[str, Any]] = {}

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return self.docs.get((collection, doc_id))

    def set(self, collection: str, doc_id: str, fields: Dict[str, Any], merge: bool = False) -> None:
        current = dict(self.docs.get((collection, doc_id)) or {}) if merge else {}
        current.update(fields)
        self.docs[(collection, doc_id)] = current


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def state_store():
    return MemoryStateStore()
