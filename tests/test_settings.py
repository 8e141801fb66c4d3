import pytest

from relaybot.settings import PlatformSettings, QueueSettings, WorkerSettings, parse_task_handlers


def test_parse_task_handlers():
    assert parse_task_handlers("report=tasks.report:run, sync=tasks.sync:main") == {
        "report": "tasks.report:run",
        "sync": "tasks.sync:main",
    }
    assert parse_task_handlers("") == {}
    with pytest.raises(ValueError):
        parse_task_handlers("report=tasks.report")


def test_queue_settings_from_env(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_PER_SECOND", "5")
    monkeypatch.setenv("QUEUE_COOLDOWN_SECONDS", "30")
    settings = QueueSettings.from_env()

    assert settings.rate_limit_per_window == 5
    assert settings.cooldown_seconds == 30.0
    assert settings.max_retries == 3


def test_bad_number_is_reported(monkeypatch):
    monkeypatch.setenv("QUEUE_MAX_RETRIES", "three")
    with pytest.raises(ValueError, match="QUEUE_MAX_RETRIES"):
        QueueSettings.from_env()


def test_worker_settings_from_env(monkeypatch):
    monkeypatch.setenv("WORKER_MAX_CONCURRENT_TASKS", "4")
    monkeypatch.setenv("WORKER_SPECIALIZATIONS", "financial_reporting, client_management")
    monkeypatch.setenv("TASK_HANDLERS", "report=tasks.report:run")
    settings = WorkerSettings.from_env()

    assert settings.max_concurrent_tasks == 4
    assert settings.specializations == ("financial_reporting", "client_management")
    assert settings.task_handlers == {"report": "tasks.report:run"}
    assert settings.as_record()["memoryLimit"] == "512MB"


def test_rest_url_from_webhook():
    settings = PlatformSettings(inbound_webhook="https://portal.example.com/rest/1/abc/profile")
    assert settings.rest_url == "https://portal.example.com/rest/1/abc/"
    assert PlatformSettings(inbound_webhook="https://x/rest/1/abc/").rest_url == "https://x/rest/1/abc/"
