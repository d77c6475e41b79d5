"""Core module -- task, schedule, session-run and mailbox orchestration.

Public API: Hive class + all schema types from schemas.py.
"""

from hive.core.hive import Hive
from hive.core.runs import SessionRunHandle
from hive.core.schemas import (
    AgentDetail,
    AgentInput,
    ArchiveFilter,
    ArchiveResult,
    EnvelopeDetail,
    EnvelopeInput,
    EnvelopeStatus,
    FireResult,
    GoalContract,
    HeartbeatCancelResult,
    IntegrityResult,
    MailboxClearResult,
    RunMode,
    RunRecord,
    RunState,
    RunStatus,
    ScheduleDetail,
    ScheduleInput,
    ScheduleStatus,
    ScheduleType,
    ScheduleUpdate,
    SessionDetail,
    SessionInput,
    SourceType,
    StallRecoveryResult,
    TaskDetail,
    TaskInput,
    TaskStatus,
    TaskUpdate,
    TaskValidation,
)

__all__ = [
    "Hive",
    "SessionRunHandle",
    # Enums
    "ArchiveFilter",
    "EnvelopeStatus",
    "RunMode",
    "RunStatus",
    "ScheduleStatus",
    "ScheduleType",
    "SourceType",
    "TaskStatus",
    # Tasks
    "ArchiveResult",
    "GoalContract",
    "IntegrityResult",
    "StallRecoveryResult",
    "TaskDetail",
    "TaskInput",
    "TaskUpdate",
    "TaskValidation",
    # Schedules
    "FireResult",
    "ScheduleDetail",
    "ScheduleInput",
    "ScheduleUpdate",
    # Agents & sessions
    "AgentDetail",
    "AgentInput",
    "SessionDetail",
    "SessionInput",
    # Runs
    "HeartbeatCancelResult",
    "RunRecord",
    "RunState",
    # Mailbox
    "EnvelopeDetail",
    "EnvelopeInput",
    "MailboxClearResult",
]
