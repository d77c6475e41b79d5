"""Main Hive class -- public API for the orchestration core.

Composes the directory, task queue, schedule engine, session run manager
and mailbox. Most methods delegate straight to a manager; the ones that
span managers (heartbeat shutdown, health) live here.
"""

from __future__ import annotations

import logging

from hive.config import Settings
from hive.core.directory import DirectoryManager
from hive.core.mailbox import MailboxManager
from hive.core.runs import Executor, SessionRunHandle, SessionRunManager
from hive.core.schedules import ScheduleManager
from hive.core.schemas import (
    ArchiveFilter,
    ArchiveResult,
    EnvelopeDetail,
    EnvelopeInput,
    FireResult,
    HeartbeatCancelResult,
    MailboxClearResult,
    RunMode,
    ScheduleDetail,
    ScheduleInput,
    ScheduleUpdate,
    TaskDetail,
    TaskInput,
    TaskUpdate,
)
from hive.core.tasks import TaskManager
from hive.errors import NotFoundError
from hive.events import Notifier
from hive.storage.database import Database

logger = logging.getLogger(__name__)


class Hive:
    """Orchestration core for agent work.

    Owns one instance of each manager. The session run manager holds
    in-memory queues, so a Hive must be closed to cancel pending runs.
    """

    def __init__(
        self,
        database: Database,
        settings: Settings,
        executor: Executor,
        notifier: Notifier | None = None,
    ) -> None:
        self.db = database
        self.settings = settings
        self.notifier = notifier or Notifier()

        self.directory = DirectoryManager(database, settings, self.notifier)
        self.tasks = TaskManager(database, settings, self.directory, self.notifier)
        self.schedules = ScheduleManager(database, settings, self.tasks, self.directory, self.notifier)
        self.runs = SessionRunManager(self.directory, executor, settings, self.notifier)
        self.mailbox = MailboxManager(database, settings, self.directory, self.notifier)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Cancel queued session runs. The database is owned by the caller."""
        await self.runs.shutdown()

    async def __aenter__(self) -> Hive:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def health(self) -> dict:
        await self.db.ping()
        return {
            "status": "ok",
            "tasks": await self.tasks.counts_by_status(),
        }

    # ==================================================================
    # Tasks
    # ==================================================================

    async def create_task(self, input: TaskInput) -> TaskDetail:
        return await self.tasks.create_task(input)

    async def get_task(self, task_id: str) -> TaskDetail:
        """Fetch a single task. Raises NotFoundError if missing."""
        result = await self.tasks.get_task(task_id)
        if result is None:
            raise NotFoundError(f"Task {task_id} not found")
        return result

    async def list_tasks(self, include_archived: bool = False) -> list[TaskDetail]:
        return await self.tasks.list_tasks(include_archived=include_archived)

    async def update_task(self, task_id: str, update: TaskUpdate) -> TaskDetail:
        return await self.tasks.update_task(task_id, update)

    async def delete_task(self, task_id: str) -> None:
        await self.tasks.delete_task(task_id)

    async def enqueue_task(self, task_id: str) -> TaskDetail:
        return await self.tasks.enqueue_task(task_id)

    async def reset_task(self, task_id: str) -> TaskDetail:
        return await self.tasks.reset_task(task_id)

    async def archive_tasks(self, filter: ArchiveFilter | str = ArchiveFilter.ARCHIVED) -> ArchiveResult:
        return await self.tasks.archive_tasks(filter)

    # ==================================================================
    # Schedules
    # ==================================================================

    async def create_schedule(self, input: ScheduleInput) -> ScheduleDetail:
        return await self.schedules.create_schedule(input)

    async def get_schedule(self, schedule_id: str) -> ScheduleDetail:
        """Fetch a single schedule. Raises NotFoundError if missing."""
        result = await self.schedules.get_schedule(schedule_id)
        if result is None:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        return result

    async def list_schedules(self) -> list[ScheduleDetail]:
        return await self.schedules.list_schedules()

    async def update_schedule(self, schedule_id: str, update: ScheduleUpdate) -> ScheduleDetail:
        return await self.schedules.update_schedule(schedule_id, update)

    async def delete_schedule(self, schedule_id: str) -> None:
        await self.schedules.delete_schedule(schedule_id)

    async def fire_schedule(self, schedule_id: str) -> FireResult:
        return await self.schedules.fire_schedule(schedule_id, manual=True)

    # ==================================================================
    # Sessions
    # ==================================================================

    async def enqueue_session_run(
        self,
        session_id: str,
        message: str,
        mode: RunMode | str = RunMode.FOLLOWUP,
        source: str = "api",
        internal: bool = False,
        dedupe_key: str | None = None,
    ) -> SessionRunHandle:
        return await self.runs.enqueue_session_run(
            session_id, message, mode=mode, source=source, internal=internal, dedupe_key=dedupe_key
        )

    def stop_session(self, session_id: str) -> bool:
        return self.runs.stop_session(session_id)

    async def disable_all_heartbeats(self, reason: str = "Heartbeat disabled") -> dict:
        """Turn heartbeats off everywhere and cancel heartbeat runs."""
        disabled = await self.directory.disable_all_heartbeats()
        cancelled: HeartbeatCancelResult = self.runs.cancel_all_heartbeat_runs(reason)
        logger.info(
            "Heartbeats disabled on %d session(s); cancelled %d queued, aborted %d running",
            disabled, cancelled.cancelled_queued, cancelled.aborted_running,
        )
        return {"disabled_sessions": disabled, **cancelled.model_dump()}

    # ==================================================================
    # Mailbox
    # ==================================================================

    async def send_envelope(self, input: EnvelopeInput) -> EnvelopeDetail:
        return await self.mailbox.send_envelope(input)

    async def list_mailbox(self, session_id: str, limit: int = 50, include_acked: bool = False) -> list[EnvelopeDetail]:
        return await self.mailbox.list_mailbox(session_id, limit=limit, include_acked=include_acked)

    async def ack_envelope(self, session_id: str, envelope_id: str) -> EnvelopeDetail | None:
        return await self.mailbox.ack_envelope(session_id, envelope_id)

    async def clear_mailbox(self, session_id: str, include_acked: bool = True) -> MailboxClearResult:
        return await self.mailbox.clear_mailbox(session_id, include_acked=include_acked)
