import asyncio

import pytest

from relaybot.inbox import claim_queue_messages, send_queue_message
from worker_main import AsyncGuard, Outbox


class StubWorker:
    worker_id = "worker_1"

    def __init__(self, slots):
        self.available_slots = slots
        self.handled = []
        self._stopped = asyncio.Event()

    @property
    def stopped(self):
        return self._stopped.is_set()

    async def wait_stopped(self):
        await self._stopped.wait()

    async def handle_message(self, msg_type, data):
        self.handled.append((msg_type, data))
        if msg_type == "SHUTDOWN":
            self._stopped.set()


class TestAsyncGuard:
    @pytest.mark.asyncio
    async def test_claims_work_only_up_to_free_slots(self, session_factory):
        for i in range(3):
            send_queue_message(session_factory, "controller", "pool-a", "EXECUTE_TASK", {"taskId": f"t{i}"})
        send_queue_message(session_factory, "controller", "pool-a", "STATUS_REQUEST", {})
        worker = StubWorker(slots=1)
        guard = AsyncGuard(worker, session_factory, "pool-a", poll_interval=0.01)

        assert await guard.poll_once() == 2
        await asyncio.sleep(0.05)

        assert sorted(t for t, _ in worker.handled) == ["EXECUTE_TASK", "STATUS_REQUEST"]
        left = claim_queue_messages(session_factory, "pool-a", 10)
        assert [m["payload"]["taskId"] for m in left] == ["t1", "t2"]

    @pytest.mark.asyncio
    async def test_control_messages_flow_when_full(self, session_factory):
        send_queue_message(session_factory, "controller", "pool-a", "EXECUTE_TASK", {"taskId": "t1"})
        send_queue_message(session_factory, "controller", "pool-a", "CANCEL_TASK", {"taskId": "t0"})
        worker = StubWorker(slots=0)
        guard = AsyncGuard(worker, session_factory, "pool-a")

        assert await guard.poll_once() == 1
        await asyncio.sleep(0.05)
        assert worker.handled == [("CANCEL_TASK", {"taskId": "t0"})]

    @pytest.mark.asyncio
    async def test_run_stops_with_the_worker(self, session_factory):
        send_queue_message(session_factory, "controller", "pool-a", "SHUTDOWN", {})
        worker = StubWorker(slots=2)
        guard = AsyncGuard(worker, session_factory, "pool-a", poll_interval=0.01)

        await asyncio.wait_for(guard.run(), timeout=5)
        assert worker.stopped


class TestOutbox:
    @pytest.mark.asyncio
    async def test_messages_land_in_controller_inbox(self, session_factory):
        outbox = Outbox(session_factory, "controller", lambda: "worker_1")

        outbox("TASK_COMPLETED", {"taskId": "t1"})
        outbox("HEARTBEAT", {"workerId": "worker_1"})
        await outbox.drain()

        messages = claim_queue_messages(session_factory, "controller", 10)
        assert {m["type"] for m in messages} == {"TASK_COMPLETED", "HEARTBEAT"}
        assert all(m["sender_id"] == "worker_1" for m in messages)
