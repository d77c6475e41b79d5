"""Pydantic DTOs and status enums for the orchestration core.

These models define the public contract of the managers: every manager
method returns one of these, never an ORM row.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from hive.utils import ensure_utc

# --- Enums ---


class TaskStatus(StrEnum):
    BACKLOG = "backlog"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ARCHIVED = "archived"


class SourceType(StrEnum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    DELEGATION = "delegation"


class ScheduleType(StrEnum):
    CRON = "cron"
    INTERVAL = "interval"
    ONCE = "once"


class ScheduleStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class RunMode(StrEnum):
    STEER = "steer"
    FOLLOWUP = "followup"
    COLLECT = "collect"


class RunStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ArchiveFilter(StrEnum):
    ALL = "all"
    SCHEDULE = "schedule"
    DONE = "done"
    ARCHIVED = "archived"  # purge tasks that are already archived


class EnvelopeStatus(StrEnum):
    NEW = "new"
    ACK = "ack"


# --- Tasks ---


class GoalContract(BaseModel):
    """What "done" means for a task."""

    objective: str | None = None
    constraints: list[str] = []
    budget_usd: float | None = Field(default=None, ge=0)
    deadline_at: datetime | None = None
    success_metric: str | None = None

    @field_validator("deadline_at")
    @classmethod
    def _utc_deadline(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)


class Checkpoint(BaseModel):
    last_run_id: str | None = None
    last_session_id: str | None = None
    note: str | None = None
    updated_at: datetime | None = None


class TaskValidation(BaseModel):
    ok: bool
    reasons: list[str] = []
    checked_at: datetime


class TaskComment(BaseModel):
    id: str
    author: str
    agent_id: str | None = None
    text: str
    created_at: datetime


class TaskInput(BaseModel):
    """Input for creating a task.

    ``status`` may be ``backlog`` (default), ``queued`` (enqueue right away)
    or ``completed`` (externally reported completion, validated immediately).
    """

    title: str = Field(min_length=1, max_length=500)
    description: str = ""
    agent_id: str = Field(min_length=1)
    status: Literal["backlog", "queued", "completed"] = "backlog"
    result: str | None = None
    session_id: str | None = None
    goal_contract: GoalContract | None = None
    max_attempts: int | None = None
    retry_backoff_sec: int | None = None
    blocked_by: list[str] = []
    blocks: list[str] = []
    source_type: SourceType = SourceType.MANUAL
    created_in_session_id: str | None = None
    created_by_agent_id: str | None = None


class TaskUpdate(BaseModel):
    """Partial update. Unset fields are left alone."""

    title: str | None = Field(default=None, min_length=1, max_length=500)
    description: str | None = None
    agent_id: str | None = None
    status: TaskStatus | None = None
    result: str | None = None
    goal_contract: GoalContract | None = None
    max_attempts: int | None = None
    retry_backoff_sec: int | None = None
    blocked_by: list[str] | None = None
    blocks: list[str] | None = None


class TaskDetail(BaseModel):
    id: str
    title: str
    description: str
    status: TaskStatus
    agent_id: str
    session_id: str | None
    result: str | None
    error: str | None
    goal_contract: GoalContract | None
    checkpoint: Checkpoint | None
    validation: TaskValidation | None
    comments: list[TaskComment]
    completion_report_path: str | None
    attempts: int
    max_attempts: int
    retry_backoff_sec: int
    blocked_by: list[str]
    blocks: list[str]
    source_type: SourceType
    source_schedule_id: str | None
    source_schedule_name: str | None
    source_schedule_key: str | None
    run_number: int | None
    total_runs: int
    total_completed: int
    total_failed: int
    created_in_session_id: str | None
    created_by_agent_id: str | None
    created_at: datetime
    updated_at: datetime
    queued_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    archived_at: datetime | None
    retry_scheduled_at: datetime | None
    dead_lettered_at: datetime | None
    version: int

    @property
    def dead_lettered(self) -> bool:
        return self.dead_lettered_at is not None


class ArchiveResult(BaseModel):
    filter: ArchiveFilter
    archived: int = 0
    purged: int = 0
    skipped_running: int = 0


class IntegrityResult(BaseModel):
    checked: int
    demoted: int


class StallRecoveryResult(BaseModel):
    recovered: int
    dead_lettered: int


# --- Schedules ---


class ScheduleInput(BaseModel):
    name: str | None = None
    agent_id: str = Field(min_length=1)
    task_prompt: str = ""
    schedule_type: ScheduleType
    cron: str | None = None
    interval_ms: int | None = None
    run_at: datetime | None = None
    status: Literal["active", "paused"] = "active"
    created_in_session_id: str | None = None
    created_by_agent_id: str | None = None

    @field_validator("run_at")
    @classmethod
    def _utc_run_at(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)


class ScheduleUpdate(BaseModel):
    name: str | None = None
    task_prompt: str | None = None
    status: Literal["active", "paused"] | None = None
    cron: str | None = None
    interval_ms: int | None = None
    run_at: datetime | None = None

    @field_validator("run_at")
    @classmethod
    def _utc_run_at(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)


class ScheduleDetail(BaseModel):
    id: str
    name: str
    agent_id: str
    task_prompt: str
    schedule_type: ScheduleType
    cron: str | None
    cron_human: str | None = None
    interval_ms: int | None
    run_at: datetime | None
    last_run_at: datetime | None
    next_run_at: datetime | None
    status: ScheduleStatus
    run_number: int
    linked_task_id: str | None
    last_session_id: str | None
    total_runs: int
    total_completed: int
    total_failed: int
    created_in_session_id: str | None
    created_by_agent_id: str | None
    created_at: datetime
    updated_at: datetime
    deduplicated: bool = False


class FireResult(BaseModel):
    """Outcome of firing a schedule. ``queued=False`` is a benign skip."""

    schedule_id: str
    queued: bool
    reason: str | None = None
    task_id: str | None = None
    run_number: int | None = None


# --- Agents & sessions ---


class AgentInput(BaseModel):
    id: str | None = None
    name: str = Field(min_length=1)
    system_prompt: str | None = None
    thread_session_id: str | None = None


class AgentDetail(BaseModel):
    id: str
    name: str
    system_prompt: str | None
    thread_session_id: str | None
    created_at: datetime
    updated_at: datetime


class SessionMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    text: str
    kind: Literal["chat", "heartbeat", "system"] = "chat"
    time: datetime


class SessionInput(BaseModel):
    id: str | None = None
    name: str = "New Session"
    agent_id: str | None = None
    user: str | None = None
    main_session: bool = False
    heartbeat_enabled: bool | None = None
    heartbeat_interval_sec: int | None = None


class SessionDetail(BaseModel):
    id: str
    name: str
    agent_id: str | None
    user: str | None
    main_session: bool
    heartbeat_enabled: bool | None
    heartbeat_interval_sec: int | None
    messages: list[SessionMessage]
    main_loop_events: list[dict]
    created_at: datetime
    last_active_at: datetime | None


# --- Session runs ---


class RunRecord(BaseModel):
    id: str
    session_id: str
    message: str
    mode: RunMode
    source: str
    internal: bool
    dedupe_key: str | None
    status: RunStatus
    queued_at: datetime
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error: str | None = None
    result_preview: str | None = None


class RunState(BaseModel):
    session_id: str
    running_run_id: str | None
    queue_length: int


class HeartbeatCancelResult(BaseModel):
    cancelled_queued: int
    aborted_running: int


# --- Mailbox ---


class EnvelopeInput(BaseModel):
    to_session_id: str = Field(min_length=1)
    type: str = "message"
    payload: str = ""
    from_session_id: str | None = None
    from_agent_id: str | None = None
    to_agent_id: str | None = None
    correlation_id: str | None = None
    ttl_sec: int | None = None


class EnvelopeDetail(BaseModel):
    id: str
    type: str
    payload: str
    from_session_id: str | None
    from_agent_id: str | None
    to_session_id: str
    to_agent_id: str | None
    correlation_id: str | None
    status: EnvelopeStatus
    created_at: datetime
    expires_at: datetime | None
    acked_at: datetime | None


class MailboxClearResult(BaseModel):
    before: int
    after: int
