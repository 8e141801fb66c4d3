# relaybot/notifications.py

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("relaybot_worker")

NOTIFY_METHOD = "imbot.message.add"


def format_duration(ms: Optional[float]) -> str:
    seconds = int((ms or 0) // 1000)
    minutes = seconds // 60
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def format_file_size(size_bytes: Optional[float]) -> str:
    if not size_bytes:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    size = float(size_bytes)
    unit = 0
    while size >= 1024 and unit < len(units) - 1:
        size /= 1024
        unit += 1
    rounded = round(size, 1)
    if rounded == int(rounded):
        rounded = int(rounded)
    return f"{rounded} {units[unit]}"


def _template_name(template_id: Optional[str]) -> str:
    return (template_id or "task").replace("_", " ").title()


def build_task_message(task: Dict[str, Any], status: str, details: Dict[str, Any]) -> str:
    name = _template_name(task.get("templateId"))
    task_id = task.get("taskId")
    duration = format_duration(details.get("execution_time_ms"))

    if status == "completed":
        lines = [
            "[B]Task Completed![/B]",
            "",
            f"Your [B]{name}[/B] task has finished successfully.",
            "",
            f"[B]Task ID:[/B] {task_id}",
            f"[B]Duration:[/B] {duration}",
        ]
        result = details.get("result")
        if isinstance(result, dict):
            if result.get("summary"):
                lines.append(f"[B]Summary:[/B] {result['summary']}")
            attachments = result.get("attachments") or []
            if attachments:
                lines.append(f"[B]Files Generated:[/B] {len(attachments)}")
                for i, attachment in enumerate(attachments, start=1):
                    lines.append(
                        f"{i}. [B]{attachment.get('name', 'file')}[/B] ({format_file_size(attachment.get('size'))})"
                    )
                    if attachment.get("publicUrl"):
                        lines.append(f"   Download: {attachment['publicUrl']}")
        lines.extend(["", f"[I]Use \"task status {task_id}\" to view full details.[/I]"])
    elif status == "failed":
        error = details.get("error") or {}
        lines = [
            "[B]Task Failed[/B]",
            "",
            f"Your [B]{name}[/B] task encountered an error and could not complete.",
            "",
            f"[B]Task ID:[/B] {task_id}",
            f"[B]Duration:[/B] {duration}",
            f"[B]Error:[/B] {error.get('message', 'unknown error')}",
            "",
            "[I]Please try creating the task again or contact support if the issue persists.[/I]",
        ]
    elif status == "cancelled":
        lines = [
            "[B]Task Cancelled[/B]",
            "",
            f"Your [B]{name}[/B] task was cancelled as requested.",
            "",
            f"[B]Task ID:[/B] {task_id}",
            f"[B]Duration:[/B] {duration}",
            "",
            "[I]The task was stopped before completion.[/I]",
        ]
    else:
        raise ValueError(f"Unknown task notification status: {status}")
    return "\n".join(lines)


class TaskNotifier:
    """
    Tells the user who created a task how it ended.

    Messages travel through the outbound queue like any other platform call,
    so they obey the same rate limits and cooldown.
    """

    def __init__(self, queue):
        self.queue = queue

    async def notify(self, user_id: str, message: str) -> None:
        await self.queue.send_message(str(user_id), message, method=NOTIFY_METHOD)

    async def send_task_notification(self, task: Dict[str, Any], status: str, details: Dict[str, Any]) -> bool:
        """
        Best-effort: failures are logged and reported as False, never raised.
        """
        user_id = task.get("createdBy")
        if not user_id:
            logger.warning("Task %s has no originator, skipping %s notification", task.get("taskId"), status)
            return False
        try:
            await self.notify(user_id, build_task_message(task, status, details))
        except Exception as e:
            logger.error(
                "Failed to send %s notification for task %s: %s", status, task.get("taskId"), e
            )
            return False
        logger.info("Task notification sent: task=%s user=%s status=%s", task.get("taskId"), user_id, status)
        return True
