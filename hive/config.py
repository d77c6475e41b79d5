"""Settings via pydantic-settings with HIVE_ env prefix.

Task retry policy defaults are clamped to the same ranges enforced on
individual tasks (max attempts 1-20, backoff 1-3600 seconds), so a bad
.env value degrades to the nearest legal policy instead of failing startup.
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="HIVE_", env_file=".env")

    # Storage
    database_url: str = "sqlite+aiosqlite:///./hive.db"
    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000

    # Task queue policy
    default_task_max_attempts: int = 3
    task_retry_backoff_sec: int = 30
    task_stall_timeout_min: int = 45
    task_result_max_chars: int = 4000

    # Task worker
    worker_enabled: bool = True
    task_poll_interval: float = 2.0
    task_run_timeout: int = 1800  # seconds per executor call

    # Schedules
    schedule_enabled: bool = True
    schedule_check_interval: int = 60

    # Completion reports
    reports_dir: str = "data/task-reports"

    # Sessions
    mailbox_max_ttl_sec: int = 7 * 24 * 3600
    run_history_limit: int = 200
    main_loop_event_limit: int = 40

    # Executor (opaque LLM/agent backend)
    executor_url: str = ""
    executor_token: str = ""
    executor_timeout: int = 600

    # Event Bus
    event_bus_enabled: bool = True

    @field_validator("default_task_max_attempts")
    @classmethod
    def _clamp_attempts(cls, v: int) -> int:
        return max(1, min(20, v))

    @field_validator("task_retry_backoff_sec")
    @classmethod
    def _clamp_backoff(cls, v: int) -> int:
        return max(1, min(3600, v))

    @field_validator("task_stall_timeout_min")
    @classmethod
    def _clamp_stall(cls, v: int) -> int:
        return max(5, min(24 * 60, v))

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")
