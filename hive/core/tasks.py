"""Task queue -- the board task state machine.

Every status change goes through ``transition()``, which checks the move
against ``TRANSITIONS``. Retry is delay-then-requeue: a failed attempt puts
the task back in ``queued`` with ``retry_scheduled_at`` in the future and the
claim query skips it until then. When attempts run out the task is
dead-lettered (``dead_lettered_at`` set, status frozen at ``failed``) and only
``reset_task`` brings it back.

All public methods follow the session injection pattern: pass ``session``
to compose with a caller's transaction, omit it to get a committed unit.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from hive.config import Settings
from hive.core.directory import DirectoryManager
from hive.core.reports import ensure_task_completion_report
from hive.core.schemas import (
    ArchiveFilter,
    ArchiveResult,
    Checkpoint,
    GoalContract,
    IntegrityResult,
    SourceType,
    StallRecoveryResult,
    TaskComment,
    TaskDetail,
    TaskInput,
    TaskStatus,
    TaskUpdate,
    TaskValidation,
)
from hive.core.validation import format_validation_failure, validate_task_completion
from hive.errors import (
    ConflictError,
    DeadLetterError,
    NotFoundError,
    ValidationError,
    truncate_error,
)
from hive.events import Notifier
from hive.storage.database import Database, commit_or_conflict
from hive.storage.models import Task
from hive.utils import clamp_int, new_id, utcnow

logger = logging.getLogger(__name__)

SYSTEM_AUTHOR = "System"

TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.BACKLOG: frozenset({TaskStatus.QUEUED, TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.ARCHIVED}),
    TaskStatus.QUEUED: frozenset({TaskStatus.RUNNING, TaskStatus.BACKLOG, TaskStatus.FAILED, TaskStatus.ARCHIVED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.QUEUED}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.FAILED, TaskStatus.BACKLOG, TaskStatus.ARCHIVED}),
    TaskStatus.FAILED: frozenset({TaskStatus.BACKLOG, TaskStatus.ARCHIVED}),
    TaskStatus.ARCHIVED: frozenset({TaskStatus.BACKLOG}),
}

IN_FLIGHT = (TaskStatus.QUEUED, TaskStatus.RUNNING)
# Reached only through claim_next_task / fail_task, never by a direct update.
WORKER_ONLY_TARGETS = (TaskStatus.RUNNING, TaskStatus.FAILED)


def can_transition(current: TaskStatus | str, target: TaskStatus | str) -> bool:
    return TaskStatus(target) in TRANSITIONS[TaskStatus(current)]


def transition(task: Task, target: TaskStatus, now: datetime | None = None) -> None:
    """Move ``task`` to ``target`` or raise ConflictError."""
    current = TaskStatus(task.status)
    if not can_transition(current, target):
        raise ConflictError(f"Task {task.id} cannot move from {current} to {target}")
    now = now or utcnow()
    task.status = target
    task.updated_at = now
    if target == TaskStatus.ARCHIVED:
        task.archived_at = now
    elif current == TaskStatus.ARCHIVED:
        task.archived_at = None
    logger.debug("Task %s: %s -> %s", task.id, current, target)


class TaskManager:
    """Owns the task lifecycle. The only writer of task status."""

    def __init__(
        self,
        db: Database,
        settings: Settings,
        directory: DirectoryManager,
        notifier: Notifier | None = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.directory = directory
        self.notifier = notifier or Notifier()

    # ------------------------------------------------------------------
    # Policy helpers
    # ------------------------------------------------------------------

    def resolve_policy(self, max_attempts: Any, retry_backoff_sec: Any) -> tuple[int, int]:
        """Clamp per-task policy values, falling back to the configured defaults."""
        attempts = clamp_int(max_attempts, self.settings.default_task_max_attempts, 1, 20)
        backoff = clamp_int(retry_backoff_sec, self.settings.task_retry_backoff_sec, 1, 3600)
        return attempts, backoff

    def _apply_policy_defaults(self, task: Task) -> None:
        task.max_attempts, task.retry_backoff_sec = self.resolve_policy(task.max_attempts, task.retry_backoff_sec)
        if task.attempts is None or task.attempts < 0:
            task.attempts = 0
        # Lowering max_attempts never un-dead-letters or breaks attempts <= max_attempts.
        task.attempts = min(task.attempts, task.max_attempts)

    def _add_comment(self, task: Task, text: str, author: str = SYSTEM_AUTHOR, agent_id: str | None = None) -> None:
        comment = TaskComment(id=new_id(), author=author, agent_id=agent_id, text=text, created_at=utcnow())
        task.comments = [*(task.comments or []), comment.model_dump(mode="json")]

    def _set_checkpoint(self, task: Task, **fields: Any) -> None:
        checkpoint = Checkpoint.model_validate(task.checkpoint or {})
        task.checkpoint = checkpoint.model_copy(update={**fields, "updated_at": utcnow()}).model_dump(mode="json")

    def build_task(self, **fields: Any) -> Task:
        """Construct a new backlog Task row with policy defaults applied (not added)."""
        now = utcnow()
        task = Task(
            id=fields.pop("id", None) or new_id(),
            status=TaskStatus.BACKLOG,
            attempts=0,
            comments=[],
            blocked_by=[],
            blocks=[],
            total_runs=0,
            total_completed=0,
            total_failed=0,
            created_at=now,
            updated_at=now,
            **fields,
        )
        self._apply_policy_defaults(task)
        return task

    async def _get_orm(self, task_id: str, session: AsyncSession) -> Task:
        task = await session.get(Task, task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    # ------------------------------------------------------------------
    # create_task()
    # ------------------------------------------------------------------

    async def create_task(self, input: TaskInput, session: AsyncSession | None = None) -> TaskDetail:
        """Create a task in backlog, then enqueue or validate per ``input.status``."""
        if session is None:
            async with self.db.session() as session:
                result = await self._create_task(input, session)
                await session.commit()
                await self.notifier.notify("tasks", "create", result.id)
                return result
        return await self._create_task(input, session)

    async def _create_task(self, input: TaskInput, session: AsyncSession) -> TaskDetail:
        task = self.build_task(
            title=input.title.strip(),
            description=input.description,
            agent_id=input.agent_id,
            session_id=input.session_id,
            goal_contract=input.goal_contract.model_dump(mode="json") if input.goal_contract else None,
            max_attempts=input.max_attempts,
            retry_backoff_sec=input.retry_backoff_sec,
            source_type=input.source_type,
            created_in_session_id=input.created_in_session_id,
            created_by_agent_id=input.created_by_agent_id,
        )
        task.blocked_by = list(input.blocked_by)
        task.blocks = list(input.blocks)
        session.add(task)
        await session.flush()
        logger.info("Created task %s: %s", task.id, task.title[:80])

        if input.status == TaskStatus.QUEUED:
            await self._enqueue(task, session)
        elif input.status == TaskStatus.COMPLETED:
            # Externally reported completion: straight through the completion gate.
            task.result = self._clip_result(input.result)
            await self._finish_with_validation(task, session, agent_name=None)

        # Detail reflects the flushed version.
        await session.flush()
        return self._to_detail(task)

    # ------------------------------------------------------------------
    # enqueue_task()
    # ------------------------------------------------------------------

    async def enqueue_task(self, task_id: str, session: AsyncSession | None = None) -> TaskDetail:
        """``backlog -> queued``. Idempotent for tasks already queued or running."""
        if session is None:
            async with self.db.session() as session:
                result = await self._enqueue_task(task_id, session)
                await commit_or_conflict(session, f"Task {task_id}")
                await self.notifier.notify("tasks", "update", task_id)
                return result
        return await self._enqueue_task(task_id, session)

    async def _enqueue_task(self, task_id: str, session: AsyncSession) -> TaskDetail:
        task = await self._get_orm(task_id, session)
        await self._enqueue(task, session)
        await session.flush()
        return self._to_detail(task)

    async def _enqueue(self, task: Task, session: AsyncSession) -> None:
        if task.dead_lettered_at is not None:
            raise DeadLetterError(
                f"Task {task.id} is dead-lettered after {task.attempts}/{task.max_attempts} attempts; reset it first"
            )
        if task.status in IN_FLIGHT:
            return
        if not await self.directory.agent_exists(task.agent_id, session):
            raise ValidationError(f"Agent {task.agent_id} not found")

        now = utcnow()
        self._apply_policy_defaults(task)
        transition(task, TaskStatus.QUEUED, now)
        task.queued_at = now
        task.retry_scheduled_at = None
        logger.info("Queued task %s: %s", task.id, task.title[:80])
        await self.notifier.push_main_loop_event("task_queued", f'Task queued: "{task.title}" ({task.id})')

    # ------------------------------------------------------------------
    # claim_next_task()
    # ------------------------------------------------------------------

    async def claim_next_task(self) -> TaskDetail | None:
        """Claim the oldest runnable queued task: ``queued -> running``.

        Tasks whose retry delay has not elapsed are skipped. A task whose
        agent has disappeared is dead-lettered and the next one is tried.
        """
        while True:
            async with self.db.session() as session:
                now = utcnow()
                result = await session.execute(
                    select(Task)
                    .where(Task.status == TaskStatus.QUEUED)
                    .where(or_(Task.retry_scheduled_at.is_(None), Task.retry_scheduled_at <= now))
                    .order_by(func.coalesce(Task.queued_at, Task.created_at), Task.created_at)
                    .limit(1)
                )
                task = result.scalars().first()
                if task is None:
                    return None

                if not await self.directory.agent_exists(task.agent_id, session):
                    transition(task, TaskStatus.FAILED, now)
                    task.dead_lettered_at = now
                    task.retry_scheduled_at = None
                    task.error = truncate_error(f"Agent {task.agent_id} not found")
                    if not await self._try_commit(session, task.id):
                        continue
                    logger.warning("Dead-lettered task %s: agent %s not found", task.id, task.agent_id)
                    await self.notifier.push_main_loop_event(
                        "task_failed", f'Task failed: "{task.title}" ({task.id}) - agent not found.'
                    )
                    await self.notifier.notify("tasks", "update", task.id)
                    continue

                self._apply_policy_defaults(task)
                transition(task, TaskStatus.RUNNING, now)
                task.started_at = now
                task.retry_scheduled_at = None
                task.dead_lettered_at = None
                task.error = None
                task.validation = None
                self._set_checkpoint(
                    task,
                    last_session_id=task.session_id,
                    note=f"Attempt {task.attempts + 1}/{task.max_attempts} started",
                )
                if not await self._try_commit(session, task.id):
                    continue

                logger.info("Claimed task %s: %s", task.id, task.title[:80])
                await self.notifier.notify("tasks", "update", task.id)
                return self._to_detail(task)

    async def _try_commit(self, session: AsyncSession, task_id: str) -> bool:
        try:
            await commit_or_conflict(session, f"Task {task_id}")
        except ConflictError:
            logger.debug("Lost claim race on task %s", task_id)
            return False
        return True

    async def bind_session(self, task_id: str, session_id: str) -> TaskDetail:
        async with self.db.session() as session:
            task = await self._get_orm(task_id, session)
            task.session_id = session_id
            task.updated_at = utcnow()
            self._set_checkpoint(task, last_session_id=session_id)
            await commit_or_conflict(session, f"Task {task_id}")
        return self._to_detail(task)

    # ------------------------------------------------------------------
    # complete_task() / fail_task()
    # ------------------------------------------------------------------

    async def complete_task(
        self,
        task_id: str,
        result: str | None,
        run_id: str | None = None,
        agent_name: str | None = None,
    ) -> TaskDetail:
        """``running -> completed``, gated by the completion report and validator."""
        async with self.db.session() as session:
            task = await self._get_orm(task_id, session)
            if task.status != TaskStatus.RUNNING:
                raise ConflictError(f"Task {task_id} is {task.status}, not running")
            task.result = self._clip_result(result)
            task.updated_at = utcnow()
            await self._finish_with_validation(task, session, agent_name=agent_name, run_id=run_id)
            await commit_or_conflict(session, f"Task {task_id}")
        await self.notifier.notify("tasks", "update", task_id)
        await self.notifier.notify("runs")
        return self._to_detail(task)

    async def _finish_with_validation(
        self,
        task: Task,
        session: AsyncSession,
        agent_name: str | None,
        run_id: str | None = None,
    ) -> None:
        now = utcnow()
        report = ensure_task_completion_report(task, self.settings.reports_dir)
        if report is not None:
            task.completion_report_path = report.relative_path
        validation = validate_task_completion(task, report=report)
        task.validation = validation.model_dump(mode="json")
        author = agent_name or SYSTEM_AUTHOR
        agent_id = task.agent_id if agent_name else None

        if validation.ok:
            transition(task, TaskStatus.COMPLETED, now)
            task.completed_at = now
            task.retry_scheduled_at = None
            task.error = None
            self._set_checkpoint(
                task,
                last_run_id=run_id,
                note=f"Completed on attempt {task.attempts + 1}/{task.max_attempts}",
            )
            summary = (task.result or "")[:1000] or "No summary provided."
            self._add_comment(task, f"Task completed.\n\n{summary}", author=author, agent_id=agent_id)
            logger.info("Task %s completed", task.id)
            await self.notifier.push_main_loop_event("task_completed", f'Task completed: "{task.title}" ({task.id})')
        else:
            transition(task, TaskStatus.FAILED, now)
            task.completed_at = None
            task.retry_scheduled_at = None
            task.error = truncate_error(format_validation_failure(validation.reasons))
            bullets = "\n".join(f"- {r}" for r in validation.reasons)
            self._add_comment(
                task,
                f"Task failed validation and was not marked completed.\n\n{bullets}",
                author=author,
                agent_id=agent_id,
            )
            logger.warning("Task %s failed completion validation: %s", task.id, "; ".join(validation.reasons))
            await self.notifier.push_main_loop_event(
                "task_failed", f'Task failed validation: "{task.title}" ({task.id})'
            )

        await self.directory.disable_heartbeat(task.session_id, session)

    async def fail_task(self, task_id: str, reason: str) -> TaskDetail:
        """Record a failed attempt: retry after the task's backoff, or dead-letter."""
        async with self.db.session() as session:
            task = await self._get_orm(task_id, session)
            if task.status != TaskStatus.RUNNING:
                raise ConflictError(f"Task {task_id} is {task.status}, not running")
            await self._retry_or_dead_letter(task, reason or "Unknown error", session)
            await commit_or_conflict(session, f"Task {task_id}")
        await self.notifier.notify("tasks", "update", task_id)
        await self.notifier.notify("runs")
        return self._to_detail(task)

    async def _retry_or_dead_letter(
        self,
        task: Task,
        reason: str,
        session: AsyncSession,
        retry_event: str = "task_retry_scheduled",
    ) -> str:
        self._apply_policy_defaults(task)
        now = utcnow()
        reason = truncate_error(reason)
        task.attempts = min(task.attempts + 1, task.max_attempts)

        if task.attempts < task.max_attempts:
            delay = task.retry_backoff_sec
            transition(task, TaskStatus.QUEUED, now)
            task.queued_at = now
            task.retry_scheduled_at = now + timedelta(seconds=delay)
            task.error = truncate_error(f"Retry scheduled after failure: {reason}")
            self._add_comment(
                task,
                f"Attempt {task.attempts}/{task.max_attempts} failed. Retrying in {delay}s.\n\nReason: {reason}",
            )
            logger.warning(
                "Task %s attempt %d/%d failed, retrying in %ds: %s",
                task.id, task.attempts, task.max_attempts, delay, reason,
            )
            await self.notifier.push_main_loop_event(
                retry_event,
                f'Task retry scheduled: "{task.title}" ({task.id}) attempt '
                f"{task.attempts}/{task.max_attempts} in {delay}s.",
            )
            state = "retry"
        else:
            transition(task, TaskStatus.FAILED, now)
            task.dead_lettered_at = now
            task.retry_scheduled_at = None
            task.completed_at = None
            task.error = truncate_error(
                f"Dead-lettered after {task.attempts}/{task.max_attempts} attempts: {reason}"
            )
            self._add_comment(
                task,
                f"Task moved to dead-letter after {task.attempts}/{task.max_attempts} attempts.\n\nReason: {reason}",
            )
            logger.warning("Task %s dead-lettered after %d attempts: %s", task.id, task.attempts, reason)
            await self.notifier.push_main_loop_event(
                "task_dead_lettered", f'Task dead-lettered: "{task.title}" ({task.id}) - {reason[:200]}'
            )
            state = "dead_lettered"

        await self.directory.disable_heartbeat(task.session_id, session)
        return state

    # ------------------------------------------------------------------
    # reset_task()
    # ------------------------------------------------------------------

    async def reset_task(self, task_id: str) -> TaskDetail:
        """Manual reset of a failed (usually dead-lettered) task back to backlog."""
        async with self.db.session() as session:
            task = await self._get_orm(task_id, session)
            if task.status != TaskStatus.FAILED:
                raise ConflictError(f"Only failed tasks can be reset; task {task_id} is {task.status}")
            self._reset_failed(task)
            await commit_or_conflict(session, f"Task {task_id}")
        logger.info("Reset task %s to backlog", task_id)
        await self.notifier.notify("tasks", "update", task_id)
        return self._to_detail(task)

    def _reset_failed(self, task: Task) -> None:
        """``failed -> backlog`` with attempts and dead-letter state cleared."""
        was_dead = task.dead_lettered_at is not None
        transition(task, TaskStatus.BACKLOG)
        task.attempts = 0
        task.dead_lettered_at = None
        task.retry_scheduled_at = None
        task.error = None
        task.validation = None
        task.completed_at = None
        self._add_comment(task, "Task manually reset to backlog." + (" Dead-letter cleared." if was_dead else ""))

    # ------------------------------------------------------------------
    # archive_tasks()
    # ------------------------------------------------------------------

    async def archive_tasks(self, filter: ArchiveFilter | str = ArchiveFilter.ARCHIVED) -> ArchiveResult:
        """Bulk archive. The default filter purges tasks that are already archived."""
        try:
            filter = ArchiveFilter(filter)
        except ValueError as e:
            raise ValidationError(f"Unknown archive filter: {filter}") from e

        outcome = ArchiveResult(filter=filter)
        async with self.db.session() as session:
            if filter == ArchiveFilter.ARCHIVED:
                result = await session.execute(
                    delete(Task).where(Task.status == TaskStatus.ARCHIVED).execution_options(synchronize_session=False)
                )
                outcome.purged = result.rowcount or 0
            else:
                q = select(Task).where(Task.status != TaskStatus.ARCHIVED)
                if filter == ArchiveFilter.SCHEDULE:
                    q = q.where(Task.source_type == SourceType.SCHEDULE)
                elif filter == ArchiveFilter.DONE:
                    q = q.where(Task.status.in_([TaskStatus.COMPLETED, TaskStatus.FAILED]))
                now = utcnow()
                for task in (await session.execute(q)).scalars().all():
                    if task.status == TaskStatus.RUNNING:
                        outcome.skipped_running += 1
                        continue
                    transition(task, TaskStatus.ARCHIVED, now)
                    outcome.archived += 1
            await commit_or_conflict(session, "Task collection")

        logger.info(
            "Archive (%s): archived=%d purged=%d skipped_running=%d",
            filter, outcome.archived, outcome.purged, outcome.skipped_running,
        )
        if outcome.archived or outcome.purged:
            await self.notifier.notify("tasks")
        return outcome

    # ------------------------------------------------------------------
    # Integrity pass
    # ------------------------------------------------------------------

    async def validate_completed_tasks(self) -> IntegrityResult:
        """Re-validate every completed task; demote the ones that no longer pass.

        Idempotent: a task that is already consistent is not written.
        """
        checked = 0
        demoted = 0
        dirty = False
        async with self.db.session() as session:
            result = await session.execute(select(Task).where(Task.status == TaskStatus.COMPLETED))
            for task in result.scalars().all():
                checked += 1
                report = ensure_task_completion_report(task, self.settings.reports_dir)
                if report is not None and task.completion_report_path != report.relative_path:
                    task.completion_report_path = report.relative_path
                    dirty = True

                validation = validate_task_completion(task, report=report)
                previous = TaskValidation.model_validate(task.validation) if task.validation else None
                if previous is None or previous.ok != validation.ok or previous.reasons != validation.reasons:
                    task.validation = validation.model_dump(mode="json")
                    dirty = True

                if validation.ok:
                    if task.completed_at is None:
                        task.completed_at = utcnow()
                        task.updated_at = task.completed_at
                        dirty = True
                    continue

                transition(task, TaskStatus.FAILED)
                task.completed_at = None
                task.error = truncate_error(format_validation_failure(validation.reasons))
                bullets = "\n".join(f"- {r}" for r in validation.reasons)
                self._add_comment(task, f"Task auto-failed completed-queue validation.\n\n{bullets}")
                await self.directory.disable_heartbeat(task.session_id, session)
                demoted += 1
                dirty = True

            if dirty:
                await commit_or_conflict(session, "Completed task queue")

        if demoted:
            logger.warning("Demoted %d invalid completed task(s) to failed after validation audit", demoted)
        if dirty:
            await self.notifier.notify("tasks")
        return IntegrityResult(checked=checked, demoted=demoted)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover_stalled_tasks(self) -> StallRecoveryResult:
        """Push running tasks with no progress past the stall timeout through the retry policy."""
        timeout_min = self.settings.task_stall_timeout_min
        cutoff = utcnow() - timedelta(minutes=timeout_min)
        recovered = 0
        dead = 0
        async with self.db.session() as session:
            result = await session.execute(select(Task).where(Task.status == TaskStatus.RUNNING))
            for task in result.scalars().all():
                since = max(t for t in (task.updated_at, task.started_at) if t is not None)
                if since > cutoff:
                    continue
                reason = f"Detected stalled run after {timeout_min}m without progress"
                state = await self._retry_or_dead_letter(task, reason, session, retry_event="task_stall_recovered")
                if state == "retry":
                    recovered += 1
                else:
                    dead += 1
            if recovered or dead:
                await commit_or_conflict(session, "Running task queue")
                await self.notifier.notify("tasks")
        if recovered or dead:
            logger.warning("Stall recovery: requeued=%d dead_lettered=%d", recovered, dead)
        return StallRecoveryResult(recovered=recovered, dead_lettered=dead)

    async def resume(self) -> int:
        """Boot-time cleanup. Returns the number of queued tasks waiting to run."""
        async with self.db.session() as session:
            result = await session.execute(
                select(Task).where(
                    Task.status.in_([TaskStatus.QUEUED, TaskStatus.COMPLETED, TaskStatus.FAILED])
                )
            )
            queued = 0
            for task in result.scalars().all():
                if task.status == TaskStatus.QUEUED:
                    queued += 1
                    self._apply_policy_defaults(task)
                    if task.queued_at is None:
                        task.queued_at = utcnow()
                else:
                    await self.directory.disable_heartbeat(task.session_id, session)
            await commit_or_conflict(session, "Task queue")
        if queued:
            logger.info("Resuming %d queued task(s) on boot", queued)
        return queued

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def get_task(self, task_id: str, session: AsyncSession | None = None) -> TaskDetail | None:
        if session is None:
            async with self.db.session() as session:
                return await self.get_task(task_id, session)
        task = await session.get(Task, task_id)
        return self._to_detail(task) if task else None

    async def list_tasks(
        self,
        include_archived: bool = False,
        status: TaskStatus | None = None,
        limit: int = 500,
    ) -> list[TaskDetail]:
        """List tasks newest first. Runs the completed-task integrity pass first."""
        await self.validate_completed_tasks()
        async with self.db.session() as session:
            q = select(Task).order_by(Task.created_at.desc()).limit(limit)
            if status is not None:
                q = q.where(Task.status == status)
            elif not include_archived:
                q = q.where(Task.status != TaskStatus.ARCHIVED)
            result = await session.execute(q)
            return [self._to_detail(t) for t in result.scalars().all()]

    async def update_task(self, task_id: str, update: TaskUpdate) -> TaskDetail:
        fields = update.model_dump(exclude_unset=True)
        target = fields.pop("status", None)
        async with self.db.session() as session:
            task = await self._get_orm(task_id, session)
            now = utcnow()
            if "title" in fields and fields["title"] is not None:
                task.title = fields["title"].strip()
            if "description" in fields and fields["description"] is not None:
                task.description = fields["description"]
            if fields.get("agent_id"):
                task.agent_id = fields["agent_id"]
            if "goal_contract" in fields:
                gc = update.goal_contract
                task.goal_contract = gc.model_dump(mode="json") if isinstance(gc, GoalContract) else None
            if "max_attempts" in fields or "retry_backoff_sec" in fields:
                max_attempts, backoff = self.resolve_policy(
                    fields.get("max_attempts", task.max_attempts),
                    fields.get("retry_backoff_sec", task.retry_backoff_sec),
                )
                if max_attempts < task.attempts:
                    raise ValidationError(
                        f"max_attempts {max_attempts} is below attempts already used ({task.attempts})"
                    )
                task.max_attempts, task.retry_backoff_sec = max_attempts, backoff
            if fields.get("blocked_by") is not None:
                task.blocked_by = list(fields["blocked_by"])
            if fields.get("blocks") is not None:
                task.blocks = list(fields["blocks"])
            if "result" in fields:
                task.result = self._clip_result(fields["result"])
            task.updated_at = now

            if target is not None and target != task.status:
                target = TaskStatus(target)
                if target in WORKER_ONLY_TARGETS:
                    raise ConflictError(
                        f"Task {task_id} cannot be set to {target} directly; "
                        "the worker claims and fails tasks"
                    )
                if target == TaskStatus.QUEUED:
                    await self._enqueue(task, session)
                elif target == TaskStatus.COMPLETED:
                    if not can_transition(task.status, target):
                        raise ConflictError(f"Task {task_id} cannot move from {task.status} to {target}")
                    await self._finish_with_validation(task, session, agent_name=None)
                elif target == TaskStatus.BACKLOG and task.status == TaskStatus.FAILED:
                    self._reset_failed(task)
                else:
                    transition(task, target, now)
                    if target == TaskStatus.BACKLOG:
                        task.retry_scheduled_at = None

            await commit_or_conflict(session, f"Task {task_id}")
        await self.notifier.notify("tasks", "update", task_id)
        return self._to_detail(task)

    async def delete_task(self, task_id: str) -> None:
        async with self.db.session() as session:
            task = await self._get_orm(task_id, session)
            if task.status == TaskStatus.RUNNING:
                raise ConflictError(f"Task {task_id} is running; wait for it to finish")
            await session.delete(task)
            await commit_or_conflict(session, f"Task {task_id}")
        logger.info("Deleted task %s", task_id)
        await self.notifier.notify("tasks", "delete", task_id)

    async def find_in_flight(self, signature_key: str, session: AsyncSession) -> str | None:
        """Id of a queued/running task carrying ``signature_key``, if any."""
        if not signature_key:
            return None
        result = await session.execute(
            select(Task.id)
            .where(Task.source_schedule_key == signature_key)
            .where(Task.status.in_(IN_FLIGHT))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def counts_by_status(self) -> dict[str, int]:
        async with self.db.session() as session:
            result = await session.execute(select(Task.status, func.count()).group_by(Task.status))
            return dict(result.all())

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def _clip_result(self, result: str | None) -> str | None:
        if not result:
            return None
        return result[: self.settings.task_result_max_chars]

    def _to_detail(self, task: Task) -> TaskDetail:
        """Convert ORM Task to TaskDetail DTO."""
        return TaskDetail(
            id=task.id,
            title=task.title,
            description=task.description or "",
            status=TaskStatus(task.status),
            agent_id=task.agent_id,
            session_id=task.session_id,
            result=task.result,
            error=task.error,
            goal_contract=GoalContract.model_validate(task.goal_contract) if task.goal_contract else None,
            checkpoint=Checkpoint.model_validate(task.checkpoint) if task.checkpoint else None,
            validation=TaskValidation.model_validate(task.validation) if task.validation else None,
            comments=[TaskComment.model_validate(c) for c in task.comments or []],
            completion_report_path=task.completion_report_path,
            attempts=task.attempts or 0,
            max_attempts=task.max_attempts,
            retry_backoff_sec=task.retry_backoff_sec,
            blocked_by=list(task.blocked_by or []),
            blocks=list(task.blocks or []),
            source_type=SourceType(task.source_type or SourceType.MANUAL),
            source_schedule_id=task.source_schedule_id,
            source_schedule_name=task.source_schedule_name,
            source_schedule_key=task.source_schedule_key,
            run_number=task.run_number,
            total_runs=task.total_runs or 0,
            total_completed=task.total_completed or 0,
            total_failed=task.total_failed or 0,
            created_in_session_id=task.created_in_session_id,
            created_by_agent_id=task.created_by_agent_id,
            created_at=task.created_at,
            updated_at=task.updated_at,
            queued_at=task.queued_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
            archived_at=task.archived_at,
            retry_scheduled_at=task.retry_scheduled_at,
            dead_lettered_at=task.dead_lettered_at,
            version=task.version,
        )
