import pytest

from relaybot.errors import CooldownActiveError
from relaybot.notifications import (
    TaskNotifier,
    build_task_message,
    format_duration,
    format_file_size,
)


class RecordingQueue:
    def __init__(self, error=None):
        self.error = error
        self.sent = []

    async def send_message(self, dialog_id, message, method="imbot.message.add", **params):
        if self.error is not None:
            raise self.error
        self.sent.append((dialog_id, message, method))
        return {"result": 1}


def test_format_duration():
    assert format_duration(0) == "0s"
    assert format_duration(59_000) == "59s"
    assert format_duration(61_000) == "1m 1s"
    assert format_duration(3_720_000) == "1h 2m"


def test_format_file_size():
    assert format_file_size(0) == "0 B"
    assert format_file_size(512) == "512 B"
    assert format_file_size(1536) == "1.5 KB"
    assert format_file_size(5 * 1024 * 1024) == "5 MB"


def test_completed_message_lists_attachments():
    task = {"taskId": "t1", "templateId": "monthly_report"}
    text = build_task_message(task, "completed", {
        "execution_time_ms": 65_000,
        "result": {
            "summary": "3 invoices overdue",
            "attachments": [{"name": "report.pdf", "size": 2048, "publicUrl": "https://files/report.pdf"}],
        },
    })

    assert "[B]Task Completed![/B]" in text
    assert "Monthly Report" in text
    assert "1m 5s" in text
    assert "3 invoices overdue" in text
    assert "report.pdf" in text and "2 KB" in text
    assert "https://files/report.pdf" in text


def test_failed_and_cancelled_messages():
    task = {"taskId": "t1", "templateId": "x"}
    failed = build_task_message(task, "failed", {"execution_time_ms": 1000, "error": {"message": "boom"}})
    cancelled = build_task_message(task, "cancelled", {"execution_time_ms": 1000})

    assert "[B]Error:[/B] boom" in failed
    assert "Task Cancelled" in cancelled
    with pytest.raises(ValueError):
        build_task_message(task, "paused", {})


class TestTaskNotifier:
    @pytest.mark.asyncio
    async def test_sends_to_task_creator(self):
        queue = RecordingQueue()
        notifier = TaskNotifier(queue)

        ok = await notifier.send_task_notification(
            {"taskId": "t1", "templateId": "x", "createdBy": 17}, "cancelled", {"execution_time_ms": 0}
        )

        assert ok
        assert queue.sent[0][0] == "17"
        assert queue.sent[0][2] == "imbot.message.add"

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self):
        notifier = TaskNotifier(RecordingQueue(error=CooldownActiveError()))

        ok = await notifier.send_task_notification(
            {"taskId": "t1", "createdBy": "17"}, "completed", {"execution_time_ms": 0}
        )
        assert not ok

    @pytest.mark.asyncio
    async def test_task_without_creator_is_skipped(self):
        queue = RecordingQueue()
        ok = await TaskNotifier(queue).send_task_notification({"taskId": "t1"}, "completed", {})

        assert not ok
        assert queue.sent == []
