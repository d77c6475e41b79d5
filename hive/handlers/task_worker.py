"""Task Worker -- executes queued board tasks as session runs.

Polls the task queue and runs each claimed task through the session run
manager, so task work is serialized with any chat traffic on the same
session. On completion the task goes through the completion gate; on
failure or timeout it goes through the retry policy.

A single worker loop is enough: runs on different sessions are already
concurrent inside the run manager, and the claim is a version-checked
update, so a lost race just moves on to the next task.
"""

from __future__ import annotations

import asyncio
import logging
import time

from hive.config import Settings
from hive.core.hive import Hive
from hive.core.schemas import RunMode, SessionInput, SourceType, TaskDetail
from hive.errors import ConflictError, HiveError, NotFoundError

logger = logging.getLogger(__name__)

TASK_RUN_SOURCE = "task"
STALL_CHECK_INTERVAL = 60.0


def build_task_message(task: TaskDetail) -> str:
    """The turn the agent receives for a board task."""
    parts = [f"You are executing a board task.\nTask: {task.title}"]
    if task.description:
        parts.append(task.description)
    goal = task.goal_contract
    if goal is not None:
        lines = []
        if goal.objective:
            lines.append(f"Objective: {goal.objective}")
        if goal.constraints:
            lines.append("Constraints: " + "; ".join(goal.constraints))
        if goal.success_metric:
            lines.append(f"Success metric: {goal.success_metric}")
        if goal.deadline_at:
            lines.append(f"Deadline: {goal.deadline_at.isoformat()}")
        if lines:
            parts.append("\n".join(lines))
    if task.attempts:
        parts.append(f"This is attempt {task.attempts + 1} of {task.max_attempts}. Last error: {task.error or 'unknown'}")
    parts.append(
        "Deliver a clear, complete result. Include the files you changed, the "
        "commands you ran and how you verified the outcome."
    )
    return "\n\n".join(parts)


class TaskWorker:
    """Background worker that claims queued tasks and executes them.

    On start it runs the boot-time resume and a stall recovery pass, then
    polls every ``task_poll_interval`` seconds while the queue is empty.
    """

    def __init__(self, hive: Hive, settings: Settings) -> None:
        self._hive = hive
        self._settings = settings
        self._task: asyncio.Task | None = None
        self._running = False
        self._last_stall_check = 0.0

    async def start(self) -> None:
        """Resume queued work from a previous process and start polling."""
        queued = await self._hive.tasks.resume()
        recovery = await self._hive.tasks.recover_stalled_tasks()
        self._last_stall_check = time.monotonic()
        if recovery.recovered or recovery.dead_lettered:
            logger.info(
                "Recovered %d stalled task(s) on startup (%d dead-lettered)",
                recovery.recovered, recovery.dead_lettered,
            )

        self._running = True
        self._task = asyncio.create_task(self._worker_loop(), name="task-worker")
        logger.info(
            "Task worker started (poll=%.1fs, queued=%d, run_timeout=%ds)",
            self._settings.task_poll_interval, queued, self._settings.task_run_timeout,
        )

    async def stop(self) -> None:
        """Cancel the worker and wait for it to finish."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Task worker stopped")

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    async def _worker_loop(self) -> None:
        """Main loop: claim, execute, repeat. Sleeps when nothing is runnable."""
        while self._running:
            try:
                await self._maybe_recover_stalled()
                task = await self._hive.tasks.claim_next_task()
                if task is None:
                    await asyncio.sleep(self._settings.task_poll_interval)
                    continue

                await self.process_task(task)

            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Task worker encountered unexpected error")
                await asyncio.sleep(self._settings.task_poll_interval)

    async def _maybe_recover_stalled(self) -> None:
        if time.monotonic() - self._last_stall_check < STALL_CHECK_INTERVAL:
            return
        self._last_stall_check = time.monotonic()
        await self._hive.tasks.recover_stalled_tasks()

    # ------------------------------------------------------------------
    # Task processing
    # ------------------------------------------------------------------

    async def process_task(self, task: TaskDetail) -> TaskDetail | None:
        """Execute one claimed (running) task and record the outcome."""
        session_id = await self._session_for(task)
        await self._hive.tasks.bind_session(task.id, session_id)
        if task.source_type == SourceType.SCHEDULE and task.source_schedule_id:
            await self._hive.schedules.record_session(task.source_schedule_id, session_id)

        logger.info("Executing task %s on session %s: %s", task.id, session_id, task.title[:80])
        handle = await self._hive.runs.enqueue_session_run(
            session_id,
            build_task_message(task),
            mode=RunMode.FOLLOWUP,
            source=TASK_RUN_SOURCE,
            dedupe_key=f"task:{task.id}",
        )

        timeout = self._settings.task_run_timeout
        try:
            text = await asyncio.wait_for(asyncio.shield(handle.result), timeout=timeout)
        except asyncio.TimeoutError:
            self._hive.runs.cancel_run(session_id, handle.run_id, f"Task timed out after {timeout}s")
            logger.warning("Task %s timed out after %ds", task.id, timeout)
            return await self._fail(task, f"Task timed out after {timeout}s")
        except asyncio.CancelledError:
            if asyncio.current_task().cancelling():
                raise
            # Only the result was cancelled; the worker itself keeps going.
            return await self._fail(task, "Run result was cancelled")
        except HiveError as exc:
            return await self._fail(task, exc.message)
        except Exception as exc:
            return await self._fail(task, f"{type(exc).__name__}: {exc}")

        agent = await self._hive.directory.get_agent(task.agent_id)
        try:
            return await self._hive.tasks.complete_task(
                task.id,
                text,
                run_id=handle.run_id,
                agent_name=agent.name if agent else None,
            )
        except (ConflictError, NotFoundError) as exc:
            # Task was changed (archived, deleted, reset) while the run was in flight.
            logger.warning("Could not complete task %s: %s", task.id, exc.message)
            return None

    async def _fail(self, task: TaskDetail, reason: str) -> TaskDetail | None:
        try:
            return await self._hive.tasks.fail_task(task.id, reason)
        except (ConflictError, NotFoundError) as exc:
            logger.warning("Could not record failure for task %s: %s", task.id, exc.message)
            return None

    async def _session_for(self, task: TaskDetail) -> str:
        """Reuse the task's (or its schedule's) session, else open a new one."""
        candidates = [task.session_id]
        if task.source_type == SourceType.SCHEDULE and task.source_schedule_id:
            schedule = await self._hive.schedules.get_schedule(task.source_schedule_id)
            if schedule is not None:
                candidates.append(schedule.last_session_id)

        for session_id in candidates:
            if session_id and await self._hive.directory.get_session(session_id) is not None:
                return session_id

        session = await self._hive.directory.create_session(
            SessionInput(name=task.title[:200], agent_id=task.agent_id)
        )
        return session.id
