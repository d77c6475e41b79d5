"""Schedule engine -- time-based triggers that create or recycle a linked task.

A schedule owns at most one linked task. Firing recycles that task back to
backlog (unless it is still queued or running) and enqueues it, so a
schedule's history lives on one task record with running totals instead of
a pile of one-off tasks.

Anti-overlap: before firing, the schedule's signature key is looked up on
in-flight tasks; if one exists the fire is skipped with ``in_flight``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from croniter import croniter
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hive.config import Settings
from hive.core.cron_human import cron_to_human
from hive.core.dedupe import find_duplicate_schedule, schedule_signature_key
from hive.core.directory import DirectoryManager
from hive.core.naming import is_generic_name, resolve_schedule_name
from hive.core.schemas import (
    FireResult,
    ScheduleDetail,
    ScheduleInput,
    ScheduleStatus,
    ScheduleType,
    ScheduleUpdate,
    SourceType,
    TaskStatus,
)
from hive.core.tasks import IN_FLIGHT, TaskManager, transition
from hive.errors import ConflictError, NotFoundError, ValidationError
from hive.events import Notifier
from hive.storage.database import Database, commit_or_conflict
from hive.storage.models import Schedule, Task
from hive.utils import ensure_utc, new_id, normalize_whitespace, utcnow

logger = logging.getLogger(__name__)

IN_FLIGHT_REASON = "in_flight"


def validate_trigger(
    schedule_type: ScheduleType | str,
    cron: str | None,
    interval_ms: int | None,
    run_at: datetime | None,
) -> None:
    """Raise ValidationError unless the trigger fields fit the schedule type."""
    if schedule_type == ScheduleType.CRON:
        expr = normalize_whitespace(cron)
        if not expr or not croniter.is_valid(expr):
            raise ValidationError(f"Invalid cron expression: {cron!r}")
    elif schedule_type == ScheduleType.INTERVAL:
        if not interval_ms or interval_ms <= 0:
            raise ValidationError("Interval schedules need a positive interval_ms")
    elif schedule_type == ScheduleType.ONCE:
        if run_at is None:
            raise ValidationError("Once schedules need run_at")
    else:
        raise ValidationError(f"Unknown schedule type: {schedule_type}")


def next_cron_run(expr: str, after: datetime) -> datetime:
    return ensure_utc(croniter(expr, after).get_next(datetime))


def initial_next_run(schedule: Schedule, now: datetime) -> datetime | None:
    if schedule.schedule_type == ScheduleType.ONCE:
        return schedule.run_at
    if schedule.schedule_type == ScheduleType.INTERVAL:
        return now + timedelta(milliseconds=schedule.interval_ms)
    return next_cron_run(schedule.cron, now)


class ScheduleManager:
    """Manages schedules and their linked tasks."""

    def __init__(
        self,
        db: Database,
        settings: Settings,
        tasks: TaskManager,
        directory: DirectoryManager,
        notifier: Notifier | None = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.tasks = tasks
        self.directory = directory
        self.notifier = notifier or Notifier()

    # ------------------------------------------------------------------
    # create_schedule()
    # ------------------------------------------------------------------

    async def create_schedule(self, input: ScheduleInput) -> ScheduleDetail:
        """Create a schedule, or merge into an existing duplicate."""
        cron = normalize_whitespace(input.cron) or None
        validate_trigger(input.schedule_type, cron, input.interval_ms, input.run_at)
        name = resolve_schedule_name(input.name, input.task_prompt)

        async with self.db.session() as session:
            if not await self.directory.agent_exists(input.agent_id, session):
                raise ValidationError(f"Agent {input.agent_id} not found")

            candidates = (
                await session.execute(
                    select(Schedule)
                    .where(Schedule.agent_id == input.agent_id)
                    .where(Schedule.status.in_([ScheduleStatus.ACTIVE, ScheduleStatus.PAUSED]))
                )
            ).scalars().all()
            duplicate = find_duplicate_schedule(
                candidates,
                input.model_copy(update={"cron": cron}),
                creator_agent_id=input.created_by_agent_id,
                creator_session_id=input.created_in_session_id,
            )
            if duplicate is not None:
                changed = False
                if not is_generic_name(input.name) and duplicate.name != name:
                    duplicate.name = name
                    changed = True
                if duplicate.status != input.status:
                    duplicate.status = input.status
                    changed = True
                if changed:
                    duplicate.updated_at = utcnow()
                    await commit_or_conflict(session, f"Schedule {duplicate.id}")
                    await self.notifier.notify("schedules", "update", duplicate.id)
                logger.info("Schedule create deduplicated into %s (%s)", duplicate.id, duplicate.name)
                return self._to_detail(duplicate, deduplicated=True)

            now = utcnow()
            schedule = Schedule(
                id=new_id(),
                name=name,
                agent_id=input.agent_id,
                task_prompt=input.task_prompt,
                schedule_type=input.schedule_type,
                cron=cron,
                interval_ms=input.interval_ms,
                run_at=input.run_at,
                status=input.status,
                run_number=0,
                total_runs=0,
                total_completed=0,
                total_failed=0,
                created_in_session_id=input.created_in_session_id,
                created_by_agent_id=input.created_by_agent_id,
                created_at=now,
                updated_at=now,
            )
            schedule.next_run_at = initial_next_run(schedule, now)
            session.add(schedule)
            await session.commit()

        logger.info(
            "Created %s schedule %s: %s (next: %s)",
            schedule.schedule_type, schedule.id, schedule.name, schedule.next_run_at,
        )
        await self.notifier.notify("schedules", "create", schedule.id)
        return self._to_detail(schedule)

    # ------------------------------------------------------------------
    # fire_schedule()
    # ------------------------------------------------------------------

    async def fire_schedule(self, schedule_id: str, manual: bool = True) -> FireResult:
        """Fire a schedule now: recycle or create its task and enqueue it."""
        async with self.db.session() as session:
            schedule = await self._get_orm(schedule_id, session)
            if not await self.directory.agent_exists(schedule.agent_id, session):
                raise ValidationError(f"Agent {schedule.agent_id} not found")
            result = await self._fire(schedule, session, utcnow(), manual=manual)
            if result.queued:
                await commit_or_conflict(session, f"Schedule {schedule_id}")
        if result.queued:
            await self.notifier.notify("schedules", "update", schedule_id)
            await self.notifier.notify("tasks", "update", result.task_id)
        return result

    async def _in_flight(self, schedule: Schedule, session: AsyncSession) -> bool:
        key = schedule_signature_key(schedule)
        if key and await self.tasks.find_in_flight(key, session):
            return True
        if schedule.linked_task_id:
            linked = await session.get(Task, schedule.linked_task_id)
            if linked is not None and linked.status in IN_FLIGHT:
                return True
        return False

    async def _fire(
        self,
        schedule: Schedule,
        session: AsyncSession,
        now: datetime,
        manual: bool,
    ) -> FireResult:
        if await self._in_flight(schedule, session):
            logger.info("Schedule %s skipped: previous run still in flight", schedule.id)
            return FireResult(schedule_id=schedule.id, queued=False, reason=IN_FLIGHT_REASON)

        key = schedule_signature_key(schedule) or None
        schedule.run_number = (schedule.run_number or 0) + 1
        title = f"[Sched] {schedule.name} (run #{schedule.run_number})"

        linked = await session.get(Task, schedule.linked_task_id) if schedule.linked_task_id else None
        if linked is not None:
            self._recycle(linked, schedule, title, key, now)
            task = linked
        else:
            task = self.tasks.build_task(
                title=title,
                description=schedule.task_prompt or "",
                agent_id=schedule.agent_id,
                source_type=SourceType.SCHEDULE,
                source_schedule_id=schedule.id,
                source_schedule_name=schedule.name,
                source_schedule_key=key,
                created_in_session_id=schedule.created_in_session_id,
                created_by_agent_id=schedule.created_by_agent_id,
                run_number=schedule.run_number,
            )
            session.add(task)
            await session.flush()
            schedule.linked_task_id = task.id

        await self.tasks.enqueue_task(task.id, session=session)

        schedule.total_runs = (schedule.total_runs or 0) + 1
        schedule.last_run_at = now
        schedule.updated_at = now
        how = "manually" if manual else "on schedule"
        logger.info("Fired schedule %s %s (run #%d, task %s)", schedule.id, how, schedule.run_number, task.id)
        await self.notifier.push_main_loop_event(
            "schedule_fired",
            f'Schedule fired {how}: "{schedule.name}" ({schedule.id}) run #{schedule.run_number} - task {task.id}',
        )
        return FireResult(
            schedule_id=schedule.id,
            queued=True,
            task_id=task.id,
            run_number=schedule.run_number,
        )

    def _recycle(self, task: Task, schedule: Schedule, title: str, key: str | None, now: datetime) -> None:
        previous = task.status
        task.total_runs = (task.total_runs or 0) + 1
        if previous == TaskStatus.COMPLETED:
            task.total_completed = (task.total_completed or 0) + 1
            schedule.total_completed = (schedule.total_completed or 0) + 1
        elif previous == TaskStatus.FAILED:
            task.total_failed = (task.total_failed or 0) + 1
            schedule.total_failed = (schedule.total_failed or 0) + 1

        if previous != TaskStatus.BACKLOG:
            transition(task, TaskStatus.BACKLOG, now)
        task.title = title
        task.description = schedule.task_prompt or ""
        task.agent_id = schedule.agent_id
        task.result = None
        task.error = None
        task.session_id = None
        task.queued_at = None
        task.started_at = None
        task.completed_at = None
        task.archived_at = None
        task.attempts = 0
        task.retry_scheduled_at = None
        task.dead_lettered_at = None
        task.validation = None
        task.source_schedule_name = schedule.name
        task.source_schedule_key = key
        task.run_number = schedule.run_number
        task.updated_at = now

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def _advance(self, schedule: Schedule, now: datetime) -> None:
        if schedule.schedule_type == ScheduleType.CRON and schedule.cron:
            try:
                schedule.next_run_at = next_cron_run(schedule.cron, now)
            except (ValueError, KeyError) as e:
                logger.error("Invalid cron for schedule %s: %s", schedule.id, e)
                schedule.status = ScheduleStatus.FAILED
        elif schedule.schedule_type == ScheduleType.INTERVAL and schedule.interval_ms:
            schedule.next_run_at = now + timedelta(milliseconds=schedule.interval_ms)
        elif schedule.schedule_type == ScheduleType.ONCE:
            schedule.status = ScheduleStatus.COMPLETED
            schedule.next_run_at = None
        schedule.updated_at = now

    async def fire_due_schedules(self, now: datetime | None = None) -> list[FireResult]:
        """Fire every active schedule whose ``next_run_at`` has passed.

        Each schedule is advanced before firing so a failing fire never
        re-triggers on the next tick. In-flight skips are silent.
        """
        now = now or utcnow()
        async with self.db.session() as session:
            due_ids = (
                await session.execute(
                    select(Schedule.id)
                    .where(Schedule.status == ScheduleStatus.ACTIVE)
                    .where(Schedule.next_run_at.is_not(None))
                    .where(Schedule.next_run_at <= now)
                    .order_by(Schedule.next_run_at)
                )
            ).scalars().all()

        results: list[FireResult] = []
        for schedule_id in due_ids:
            try:
                result = await self._fire_due(schedule_id, now)
            except ConflictError as e:
                logger.warning("Schedule %s tick skipped: %s", schedule_id, e.message)
                continue
            if result is not None:
                results.append(result)
        return results

    async def _fire_due(self, schedule_id: str, now: datetime) -> FireResult | None:
        async with self.db.session() as session:
            schedule = await session.get(Schedule, schedule_id)
            if schedule is None or schedule.status != ScheduleStatus.ACTIVE:
                return None

            if await self._in_flight(schedule, session):
                self._advance(schedule, now)
                await commit_or_conflict(session, f"Schedule {schedule_id}")
                return FireResult(schedule_id=schedule_id, queued=False, reason=IN_FLIGHT_REASON)

            if not await self.directory.agent_exists(schedule.agent_id, session):
                schedule.status = ScheduleStatus.FAILED
                schedule.updated_at = now
                await commit_or_conflict(session, f"Schedule {schedule_id}")
                logger.error("Agent %s not found for schedule %s", schedule.agent_id, schedule_id)
                await self.notifier.push_main_loop_event(
                    "schedule_failed",
                    f'Schedule failed: "{schedule.name}" ({schedule_id}) - agent {schedule.agent_id} not found.',
                )
                await self.notifier.notify("schedules", "update", schedule_id)
                return FireResult(schedule_id=schedule_id, queued=False, reason="agent_not_found")

            self._advance(schedule, now)
            result = await self._fire(schedule, session, now, manual=False)
            await commit_or_conflict(session, f"Schedule {schedule_id}")

        await self.notifier.notify("schedules", "update", schedule_id)
        await self.notifier.notify("tasks", "update", result.task_id)
        return result

    async def compute_next_runs(self) -> int:
        """Fill ``next_run_at`` for active cron schedules missing it. Invalid crons are marked failed."""
        now = utcnow()
        changed = 0
        async with self.db.session() as session:
            result = await session.execute(
                select(Schedule)
                .where(Schedule.status == ScheduleStatus.ACTIVE)
                .where(Schedule.schedule_type == ScheduleType.CRON)
                .where(Schedule.next_run_at.is_(None))
            )
            for schedule in result.scalars().all():
                if schedule.cron and croniter.is_valid(schedule.cron):
                    schedule.next_run_at = next_cron_run(schedule.cron, now)
                else:
                    logger.error("Invalid cron for schedule %s: %r", schedule.id, schedule.cron)
                    schedule.status = ScheduleStatus.FAILED
                schedule.updated_at = now
                changed += 1
            if changed:
                await commit_or_conflict(session, "Schedule collection")
        return changed

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def _get_orm(self, schedule_id: str, session: AsyncSession) -> Schedule:
        schedule = await session.get(Schedule, schedule_id)
        if schedule is None:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        return schedule

    async def get_schedule(self, schedule_id: str) -> ScheduleDetail | None:
        async with self.db.session() as session:
            schedule = await session.get(Schedule, schedule_id)
            return self._to_detail(schedule) if schedule else None

    async def list_schedules(self, status: ScheduleStatus | None = None) -> list[ScheduleDetail]:
        async with self.db.session() as session:
            q = select(Schedule).order_by(Schedule.created_at.desc())
            if status is not None:
                q = q.where(Schedule.status == status)
            result = await session.execute(q)
            return [self._to_detail(s) for s in result.scalars().all()]

    async def update_schedule(self, schedule_id: str, update: ScheduleUpdate) -> ScheduleDetail:
        fields = update.model_dump(exclude_unset=True)
        async with self.db.session() as session:
            schedule = await self._get_orm(schedule_id, session)
            siblings = (
                await session.execute(select(Schedule).where(Schedule.agent_id == schedule.agent_id))
            ).scalars().all()
            now = utcnow()

            if "task_prompt" in fields and fields["task_prompt"] is not None:
                schedule.task_prompt = fields["task_prompt"]
            if fields.get("name") is not None:
                schedule.name = resolve_schedule_name(fields["name"], schedule.task_prompt)

            trigger_changed = False
            if "cron" in fields:
                schedule.cron = normalize_whitespace(fields["cron"]) or None
                trigger_changed = True
            if "interval_ms" in fields:
                schedule.interval_ms = fields["interval_ms"]
                trigger_changed = True
            if "run_at" in fields:
                schedule.run_at = fields["run_at"]
                trigger_changed = True
            if trigger_changed:
                validate_trigger(schedule.schedule_type, schedule.cron, schedule.interval_ms, schedule.run_at)

            duplicate = find_duplicate_schedule(siblings, schedule, ignore_id=schedule.id)
            if duplicate is not None:
                raise ConflictError(f"Schedule {duplicate.id} already runs this prompt on the same cadence")

            status = fields.get("status")
            if status is not None and status != schedule.status:
                if schedule.status not in (ScheduleStatus.ACTIVE, ScheduleStatus.PAUSED):
                    raise ConflictError(f"Schedule {schedule_id} is {schedule.status}")
                schedule.status = status
                if status == ScheduleStatus.ACTIVE and schedule.next_run_at is None:
                    trigger_changed = True

            if trigger_changed and schedule.status == ScheduleStatus.ACTIVE:
                schedule.next_run_at = initial_next_run(schedule, now)

            schedule.updated_at = now
            await commit_or_conflict(session, f"Schedule {schedule_id}")

        logger.info("Updated schedule %s", schedule_id)
        await self.notifier.notify("schedules", "update", schedule_id)
        return self._to_detail(schedule)

    async def record_session(self, schedule_id: str, session_id: str) -> None:
        """Remember the session a schedule's task ran in so the next run reuses it."""
        async with self.db.session() as session:
            schedule = await session.get(Schedule, schedule_id)
            if schedule is None or schedule.last_session_id == session_id:
                return
            schedule.last_session_id = session_id
            await commit_or_conflict(session, f"Schedule {schedule_id}")

    async def delete_schedule(self, schedule_id: str) -> None:
        async with self.db.session() as session:
            schedule = await self._get_orm(schedule_id, session)
            await session.delete(schedule)
            await commit_or_conflict(session, f"Schedule {schedule_id}")
        logger.info("Deleted schedule %s", schedule_id)
        await self.notifier.notify("schedules", "delete", schedule_id)

    def _to_detail(self, schedule: Schedule, deduplicated: bool = False) -> ScheduleDetail:
        """Convert ORM Schedule to ScheduleDetail DTO."""
        return ScheduleDetail(
            id=schedule.id,
            name=schedule.name,
            agent_id=schedule.agent_id,
            task_prompt=schedule.task_prompt or "",
            schedule_type=ScheduleType(schedule.schedule_type),
            cron=schedule.cron,
            cron_human=cron_to_human(schedule.cron) if schedule.cron else None,
            interval_ms=schedule.interval_ms,
            run_at=schedule.run_at,
            last_run_at=schedule.last_run_at,
            next_run_at=schedule.next_run_at,
            status=ScheduleStatus(schedule.status),
            run_number=schedule.run_number or 0,
            linked_task_id=schedule.linked_task_id,
            last_session_id=schedule.last_session_id,
            total_runs=schedule.total_runs or 0,
            total_completed=schedule.total_completed or 0,
            total_failed=schedule.total_failed or 0,
            created_in_session_id=schedule.created_in_session_id,
            created_by_agent_id=schedule.created_by_agent_id,
            created_at=schedule.created_at,
            updated_at=schedule.updated_at,
            deduplicated=deduplicated,
        )
