"""Settings via pydantic-settings with STEWARD_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the container and the Python app.

Heartbeat and retry fields here are process defaults. Operators can override
most of them at runtime through the persisted ``settings/app`` record.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STEWARD_", env_file=".env")

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("steward", validation_alias="DB_USER")
    db_password: str = Field("steward_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("steward", validation_alias="DB_NAME")
    database_url: str = ""

    db_pool_size: int = 10
    db_max_overflow: int = 5
    store_backend: Literal["sql", "memory"] = "sql"
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8100

    # Daemon
    daemon_autostart: bool = True
    scheduler_tick_interval: float = 60.0
    heartbeat_tick_interval: float = 5.0
    queue_check_interval: float = 30.0
    health_check_interval: float = 120.0
    resource_sweep_interval: float = 60.0
    resource_idle_max_age: int = 600  # seconds before an idle session lane is evicted

    # Heartbeat defaults (global layer)
    heartbeat_interval_sec: int = 120
    heartbeat_prompt: str = "STEWARD_HEARTBEAT_CHECK"
    heartbeat_model: str | None = None
    heartbeat_active_start: str | None = None  # HH:MM
    heartbeat_active_end: str | None = None  # HH:MM
    heartbeat_timezone: str | None = None
    heartbeat_user_idle_sec: int | None = None
    loop_mode: Literal["bounded", "ongoing"] = "bounded"

    # Mission loop
    main_session_name: str = "__main__"
    memory_note_min_interval_sec: int = 90 * 60

    # Task queue
    default_task_max_attempts: int = 3
    task_retry_backoff_sec: int = 30
    task_stall_timeout_min: int = 45

    # Session runs (agent runtime)
    runtime_url: str = "http://localhost:8000"
    runtime_api_key: str = ""
    run_timeout: int = 900  # seconds per session run
    api_timeout_connect: int = 10  # seconds

    # Health alerts
    telegram_bot_token: str = Field("", validation_alias="TELEGRAM_BOT_TOKEN")
    telegram_chat_id: str = Field("", validation_alias="TELEGRAM_CHAT_ID")

    @model_validator(mode="after")
    def _validate_intervals(self) -> "Settings":
        for name in (
            "scheduler_tick_interval",
            "heartbeat_tick_interval",
            "queue_check_interval",
            "health_check_interval",
            "resource_sweep_interval",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
