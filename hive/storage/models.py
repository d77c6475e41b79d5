"""SQLAlchemy ORM models for the orchestration store.

Every table is a keyed record collection with a ``version`` counter wired
to the mapper's ``version_id_col``: an UPDATE only succeeds if the row still
carries the version that was read, so two writers racing on the same id
produce a StaleDataError instead of a silent lost update.
"""

from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo, so values are stored naive-UTC and re-tagged
    on the way out.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Single declarative base for all tables."""

    pass


class Agent(Base):
    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    system_prompt: Mapped[str | None] = mapped_column(Text)
    thread_session_id: Mapped[str | None] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class ChatSession(Base):
    """A stateful agent conversation; the unit of run-concurrency control."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    agent_id: Mapped[str | None] = mapped_column(String(100))
    user: Mapped[str | None] = mapped_column(String(100))
    main_session: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    heartbeat_enabled: Mapped[bool | None] = mapped_column(Boolean)
    heartbeat_interval_sec: Mapped[int | None] = mapped_column(Integer)
    messages: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    main_loop_events: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_active_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class Task(Base):
    """Board task tracked through the queue state machine."""

    __tablename__ = "tasks"
    __table_args__ = (
        CheckConstraint(
            "status IN ('backlog', 'queued', 'running', 'completed', 'failed', 'archived')",
            name="chk_task_status",
        ),
        CheckConstraint("attempts <= max_attempts", name="chk_task_attempts"),
    )

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="backlog")
    agent_id: Mapped[str] = mapped_column(String(100), nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(100))
    result: Mapped[str | None] = mapped_column(Text)
    error: Mapped[str | None] = mapped_column(String(500))
    goal_contract: Mapped[dict | None] = mapped_column(JSON)
    checkpoint: Mapped[dict | None] = mapped_column(JSON)
    validation: Mapped[dict | None] = mapped_column(JSON)
    comments: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    completion_report_path: Mapped[str | None] = mapped_column(String(500))

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    retry_backoff_sec: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    blocked_by: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    blocks: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    source_type: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")
    source_schedule_id: Mapped[str | None] = mapped_column(String(100))
    source_schedule_name: Mapped[str | None] = mapped_column(String(200))
    source_schedule_key: Mapped[str | None] = mapped_column(Text)
    run_number: Mapped[int | None] = mapped_column(Integer)
    total_runs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_in_session_id: Mapped[str | None] = mapped_column(String(100))
    created_by_agent_id: Mapped[str | None] = mapped_column(String(100))

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    queued_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    retry_scheduled_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    dead_lettered_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class Schedule(Base):
    """Time-based trigger that creates or recycles a linked task."""

    __tablename__ = "schedules"
    __table_args__ = (
        CheckConstraint(
            "schedule_type IN ('cron', 'interval', 'once')",
            name="chk_schedule_type",
        ),
        CheckConstraint(
            "status IN ('active', 'paused', 'completed', 'failed')",
            name="chk_schedule_status",
        ),
    )

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    agent_id: Mapped[str] = mapped_column(String(100), nullable=False)
    task_prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    schedule_type: Mapped[str] = mapped_column(String(20), nullable=False)
    cron: Mapped[str | None] = mapped_column(String(200))
    interval_ms: Mapped[int | None] = mapped_column(Integer)
    run_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    last_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    next_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    run_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    linked_task_id: Mapped[str | None] = mapped_column(String(100))
    last_session_id: Mapped[str | None] = mapped_column(String(100))
    total_runs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_in_session_id: Mapped[str | None] = mapped_column(String(100))
    created_by_agent_id: Mapped[str | None] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class MailboxEnvelope(Base):
    """Typed, TTL-bounded, ack-able message between sessions."""

    __tablename__ = "mailbox_envelopes"
    __table_args__ = (
        CheckConstraint("status IN ('new', 'ack')", name="chk_envelope_status"),
    )

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    type: Mapped[str] = mapped_column(String(100), nullable=False, default="message")
    payload: Mapped[str] = mapped_column(Text, nullable=False, default="")
    from_session_id: Mapped[str | None] = mapped_column(String(100))
    from_agent_id: Mapped[str | None] = mapped_column(String(100))
    to_session_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    to_agent_id: Mapped[str | None] = mapped_column(String(100))
    correlation_id: Mapped[str | None] = mapped_column(String(200))
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="new")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    acked_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
