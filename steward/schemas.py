"""Pydantic models for every record kept in the document store.

Records are stored as JSON documents with camelCase keys and epoch-millisecond
timestamps. Models accept both camelCase and snake_case on input and keep
unknown keys, so fields owned by external collaborators (UI, API) survive a
load/modify/save cycle untouched.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

ScheduleType = Literal["cron", "interval", "once"]
ScheduleStatus = Literal["active", "paused", "completed", "failed"]
TaskStatus = Literal["backlog", "queued", "running", "completed", "failed", "archived"]
TaskSourceType = Literal["schedule", "mission", "manual", "delegation"]
ConnectorStatus = Literal["running", "stopped", "error"]
LoopMode = Literal["bounded", "ongoing"]


class Record(BaseModel):
    """Base for store documents."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_doc(self) -> dict[str, Any]:
        """Serialize back to the stored camelCase document shape."""
        return self.model_dump(by_alias=True, mode="json")


# --- Scheduling ---


class Schedule(Record):
    id: str
    name: str = ""
    agent_id: str = ""
    task_prompt: str = ""
    schedule_type: ScheduleType = "interval"
    cron: str | None = None
    interval_ms: int | None = None
    run_at: int | None = None
    last_run_at: int | None = None
    next_run_at: int | None = None
    status: ScheduleStatus = "active"
    created_by_agent_id: str | None = None
    created_in_session_id: str | None = None
    last_session_id: str | None = None
    created_at: int | None = None
    updated_at: int | None = None


class TaskComment(Record):
    id: str
    author: str
    text: str
    created_at: int


class BoardTask(Record):
    """A unit of queued work, spawned by schedules, missions or operators."""

    id: str
    title: str
    description: str = ""
    status: TaskStatus = "backlog"
    agent_id: str = ""
    session_id: str | None = None
    result: str | None = None
    error: str | None = None
    created_at: int = 0
    updated_at: int = 0
    queued_at: int | None = None
    started_at: int | None = None
    completed_at: int | None = None
    attempts: int = 0
    max_attempts: int | None = None
    retry_backoff_sec: int | None = None
    retry_scheduled_at: int | None = None
    dead_lettered_at: int | None = None
    source_type: TaskSourceType | None = None
    source_schedule_id: str | None = None
    source_schedule_name: str | None = None
    source_schedule_key: str | None = None
    created_in_session_id: str | None = None
    created_by_agent_id: str | None = None
    comments: list[TaskComment] = []


class QueueEntry(Record):
    id: str  # task id
    enqueued_at: int


# --- Sessions & agents ---


class SessionMessage(Record):
    role: str
    text: str = ""
    time: int | None = None


class SessionRecord(Record):
    id: str
    name: str = ""
    agent_id: str | None = None
    user: str | None = None
    session_type: str | None = None
    tools: list[str] = []
    heartbeat_enabled: bool | None = None
    heartbeat_interval_sec: int | None = None
    heartbeat_prompt: str | None = None
    heartbeat_model: str | None = None
    last_active_at: int | None = None
    main_loop_state: dict[str, Any] | None = None
    messages: list[SessionMessage] = []
    parent_session_id: str | None = None
    created_at: int | None = None


class AgentRecord(Record):
    id: str
    name: str = ""
    model: str | None = None
    tools: list[str] = []
    heartbeat_enabled: bool | None = None
    heartbeat_interval_sec: int | None = None
    heartbeat_prompt: str | None = None
    heartbeat_model: str | None = None
    heartbeat_goal: str | None = None
    heartbeat_next_action: str | None = None
    heartbeat_status: str | None = None
    thread_session_id: str | None = None


class RuntimeSettings(Record):
    """Operator overrides persisted as the ``settings/app`` record."""

    heartbeat_interval_sec: int | None = None
    heartbeat_prompt: str | None = None
    heartbeat_model: str | None = None
    heartbeat_active_start: str | None = None
    heartbeat_active_end: str | None = None
    heartbeat_timezone: str | None = None
    heartbeat_user_idle_sec: int | None = None
    loop_mode: LoopMode | None = None
    default_task_max_attempts: int | None = None
    task_retry_backoff_sec: int | None = None
    task_stall_timeout_min: int | None = None


# --- Webhooks & connectors ---


class WebhookRecord(Record):
    id: str
    name: str = ""
    source: str = "custom"
    agent_id: str | None = None


class WebhookRetryEntry(Record):
    id: str
    webhook_id: str
    event: str = ""
    payload: str = ""
    attempts: int = 0
    max_attempts: int = 3
    next_retry_at: int = 0
    dead_lettered: bool = False
    created_at: int = 0


class WebhookLogEntry(Record):
    id: str
    webhook_id: str
    event: str
    payload: str = ""
    status: Literal["success", "error"]
    session_id: str | None = None
    run_id: str | None = None
    error: str | None = None
    timestamp: int


class ConnectorRecord(Record):
    id: str
    name: str = ""
    platform: str = ""
    agent_id: str | None = None
    is_enabled: bool = False
    status: ConnectorStatus = "stopped"
    last_error: str | None = None
    updated_at: int | None = None


# --- Memory ---


class MemoryNote(Record):
    id: str
    agent_id: str | None = None
    session_id: str
    category: str
    title: str
    content: str
    created_at: int = 0
