import pytest
from fastapi.testclient import TestClient

from relaybot.inbox import claim_queue_messages
from relaybot.settings import ServerSettings
from relaybot.worker_registry import STATUS_IDLE
from server import create_app


@pytest.fixture
def client(session_factory):
    app = create_app(session_factory, ServerSettings(duplicate_message_threshold=2))
    with TestClient(app) as c:
        yield c


def _register_idle_worker(registry, worker_id="worker_1", receiver_id="pool-a"):
    registry.register_worker({
        "workerId": worker_id,
        "receiverId": receiver_id,
        "config": {"maxConcurrentTasks": 2, "specializations": []},
    })
    registry.update_worker_status(worker_id, STATUS_IDLE)


class TestEvents:
    def test_event_is_forwarded_once(self, client, session_factory):
        event = {"event": "ONIMBOTMESSAGEADD", "message_id": "m1", "user_id": "u1", "payload": {"text": "hi"}}

        first = client.post("/events", json=event)
        second = client.post("/events", json=event)
        third = client.post("/events", json=event)

        assert first.json()["status"] == "accepted"
        assert second.json()["status"] == "accepted"
        assert third.json() == {"status": "duplicate"}

        forwarded = claim_queue_messages(session_factory, "chat_pipeline", 10)
        assert len(forwarded) == 2
        assert forwarded[0]["type"] == "ONIMBOTMESSAGEADD"
        assert forwarded[0]["payload"]["payload"] == {"text": "hi"}


class TestTasks:
    def test_execute_without_workers_is_unavailable(self, client):
        response = client.post("/worker/execute", json={"taskId": "t1", "templateId": "x", "userId": "17"})
        assert response.status_code == 503

    def test_execute_routes_to_worker_inbox(self, client, registry, task_store, session_factory):
        _register_idle_worker(registry)

        response = client.post(
            "/worker/execute",
            json={"taskId": "t1", "templateId": "monthly_report", "userId": "17", "parameters": {"month": 5}},
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "taskId": "t1", "workerId": "worker_1", "status": "queued"}
        task = task_store.get_task("t1")
        assert task["status"] == "queued"
        assert task["createdBy"] == "17"

        messages = claim_queue_messages(session_factory, "pool-a", 10)
        assert [m["type"] for m in messages] == ["EXECUTE_TASK"]
        assert messages[0]["payload"]["parameters"] == {"month": 5}

        duplicate = client.post("/worker/execute", json={"taskId": "t1", "templateId": "x", "userId": "17"})
        assert duplicate.status_code == 409

    def test_failed_dispatch_fails_the_task(self, client, registry, task_store, monkeypatch):
        _register_idle_worker(registry)

        def broken_send(*args, **kwargs):
            raise RuntimeError("inbox unavailable")

        monkeypatch.setattr("server.send_queue_message", broken_send)
        response = client.post("/worker/execute", json={"taskId": "t1", "templateId": "x", "userId": "17"})

        assert response.status_code == 503
        task = task_store.get_task("t1")
        assert task["status"] == "failed"
        assert task["errors"][0]["kind"] == "dispatch"
        assert "inbox unavailable" in task["errors"][0]["message"]

    def test_execute_validates_fields(self, client):
        response = client.post("/worker/execute", json={"taskId": "", "templateId": "x", "userId": "17"})
        assert response.status_code == 400

    def test_cancel_task_not_yet_started(self, client, task_store):
        task_store.create_task({"taskId": "t1", "templateId": "x"})

        response = client.post("/worker/tasks/t1/cancel")

        assert response.json()["status"] == "cancelled"
        assert task_store.get_task("t1")["status"] == "cancelled"
        assert client.post("/worker/tasks/t1/cancel").json()["success"] is False

    def test_cancel_running_task_messages_its_worker(self, client, registry, task_store, session_factory):
        _register_idle_worker(registry)
        task_store.create_task({"taskId": "t1", "templateId": "x"})
        task_store.start_task("t1", "worker_1")

        response = client.post("/worker/tasks/t1/cancel")

        assert response.json()["status"] == "cancelling"
        messages = claim_queue_messages(session_factory, "pool-a", 10)
        assert messages[0]["type"] == "CANCEL_TASK"
        assert messages[0]["payload"] == {"taskId": "t1"}

    def test_lookups(self, client, registry, task_store):
        _register_idle_worker(registry)
        task_store.create_task({"taskId": "t1", "templateId": "x"})

        assert client.get("/tasks/t1").json()["taskId"] == "t1"
        assert client.get("/tasks/ghost").status_code == 404
        assert client.get("/workers/worker_1").json()["status"] == STATUS_IDLE
        assert client.get("/workers/ghost").status_code == 404
        assert [w["workerId"] for w in client.get("/workers").json()] == ["worker_1"]

        health = client.get("/worker/health").json()
        assert health["status"] == "healthy"
        assert health["workers"]["idle"] == 1
        assert client.post("/worker/tasks/ghost/cancel").status_code == 404
