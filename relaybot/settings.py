# relaybot/settings.py

import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {raw!r}") from None


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def parse_task_handlers(raw: Optional[str]) -> Dict[str, str]:
    """
    Parse "templateId=module:function,other=module:function" into a mapping.
    """
    handlers: Dict[str, str] = {}
    if not raw:
        return handlers
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        template_id, sep, path = pair.partition("=")
        if not sep or ":" not in path:
            raise ValueError(f"TASK_HANDLERS entry must look like 'templateId=module:function', got {pair!r}")
        handlers[template_id.strip()] = path.strip()
    return handlers


@dataclass(frozen=True)
class QueueSettings:
    rate_limit_per_window: int = 2
    rate_window_seconds: float = 1.0
    quota_per_window: int = 10000
    quota_window_seconds: float = 600.0
    cooldown_seconds: float = 600.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    max_queue_size: int = 5000
    max_execution_time: float = 120.0

    @classmethod
    def from_env(cls) -> "QueueSettings":
        return cls(
            rate_limit_per_window=_env_int("RATE_LIMIT_PER_SECOND", 2),
            rate_window_seconds=_env_float("RATE_LIMIT_WINDOW_SECONDS", 1.0),
            quota_per_window=_env_int("RATE_LIMIT_PER_10MIN", 10000),
            quota_window_seconds=_env_float("RATE_LIMIT_QUOTA_WINDOW_SECONDS", 600.0),
            cooldown_seconds=_env_float("QUEUE_COOLDOWN_SECONDS", 600.0),
            max_retries=_env_int("QUEUE_MAX_RETRIES", 3),
            retry_base_delay=_env_float("QUEUE_RETRY_DELAY", 1.0),
            retry_max_delay=_env_float("QUEUE_RETRY_MAX_DELAY", 30.0),
            max_queue_size=_env_int("QUEUE_MAX_SIZE", 5000),
            max_execution_time=_env_float("QUEUE_MAX_EXECUTION_TIME", 120.0),
        )


@dataclass(frozen=True)
class WorkerSettings:
    max_concurrent_tasks: int = 2
    heartbeat_interval: float = 5.0
    health_check_interval: float = 30.0
    max_execution_time: float = 3600.0
    task_timeout: float = 300.0
    memory_limit_mb: int = 512
    max_isolated_tasks: int = field(default_factory=lambda: os.cpu_count() or 2)
    shutdown_grace: float = 5.0
    cancel_grace: float = 2.0
    high_memory_mb: int = 1024
    specializations: Tuple[str, ...] = ("financial_reporting", "client_management", "business_analysis")
    poll_interval: float = 1.0
    inactive_timeout: float = 600.0
    task_handlers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "WorkerSettings":
        defaults = cls()
        return cls(
            max_concurrent_tasks=_env_int("WORKER_MAX_CONCURRENT_TASKS", defaults.max_concurrent_tasks),
            heartbeat_interval=_env_float("WORKER_HEARTBEAT_INTERVAL", defaults.heartbeat_interval),
            health_check_interval=_env_float("WORKER_HEALTH_CHECK_INTERVAL", defaults.health_check_interval),
            max_execution_time=_env_float("WORKER_MAX_EXECUTION_TIME", defaults.max_execution_time),
            task_timeout=_env_float("TASK_TIMEOUT", defaults.task_timeout),
            memory_limit_mb=_env_int("TASK_MEMORY_LIMIT_MB", defaults.memory_limit_mb),
            max_isolated_tasks=_env_int("MAX_ISOLATED_TASKS", defaults.max_isolated_tasks),
            shutdown_grace=_env_float("WORKER_SHUTDOWN_GRACE", defaults.shutdown_grace),
            cancel_grace=_env_float("TASK_CANCEL_GRACE", defaults.cancel_grace),
            high_memory_mb=_env_int("WORKER_HIGH_MEMORY_MB", defaults.high_memory_mb),
            specializations=_env_list("WORKER_SPECIALIZATIONS", defaults.specializations),
            poll_interval=_env_float("QUEUE_POLL_INTERVAL", defaults.poll_interval),
            inactive_timeout=_env_float("WORKER_INACTIVE_TIMEOUT", defaults.inactive_timeout),
            task_handlers=parse_task_handlers(os.getenv("TASK_HANDLERS")),
        )

    def as_record(self) -> Dict[str, object]:
        # what the registry stores under "config"
        return {
            "maxConcurrentTasks": self.max_concurrent_tasks,
            "heartbeatInterval": self.heartbeat_interval,
            "healthCheckInterval": self.health_check_interval,
            "maxExecutionTime": self.max_execution_time,
            "memoryLimit": f"{self.memory_limit_mb}MB",
            "specializations": list(self.specializations),
        }


@dataclass(frozen=True)
class PlatformSettings:
    inbound_webhook: str = ""
    timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "PlatformSettings":
        return cls(
            inbound_webhook=os.getenv("PLATFORM_INBOUND_WEBHOOK", ""),
            timeout=_env_float("PLATFORM_TIMEOUT", 30.0),
        )

    @property
    def rest_url(self) -> str:
        # webhook URLs end with the method segment; the REST base is everything up to the last "/"
        url = self.inbound_webhook
        if not url or url.endswith("/"):
            return url
        return url.rsplit("/", 1)[0] + "/"


@dataclass(frozen=True)
class ServerSettings:
    chat_receiver_id: str = "chat_pipeline"
    controller_id: str = "controller"
    duplicate_message_threshold: int = 3
    message_cache_ttl: float = 300.0
    message_cache_max_size: int = 10000

    @classmethod
    def from_env(cls) -> "ServerSettings":
        return cls(
            chat_receiver_id=os.getenv("CHAT_RECEIVER_ID", "chat_pipeline"),
            controller_id=os.getenv("CONTROLLER_ID", "controller"),
            duplicate_message_threshold=_env_int("DUPLICATE_MESSAGE_THRESHOLD", 3),
            message_cache_ttl=_env_float("MESSAGE_CACHE_TTL", 300.0),
            message_cache_max_size=_env_int("MESSAGE_CACHE_MAX_SIZE", 10000),
        )


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
