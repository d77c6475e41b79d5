"""Session run manager -- single-flight execution gate per session.

Every session has a FIFO of pending runs drained by one asyncio task, so
at most one run per session is ever executing and conversation history is
appended in order. Pending runs can be coalesced:

- a run whose ``dedupe_key`` matches a run still waiting in the queue is
  not added again; the caller gets the existing run's handle
- a ``collect`` run folds its message into the newest pending ``collect``
  run for the session

State is in memory and owned by whoever constructs the manager (the app
lifespan in production). Nothing survives a restart.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from hive.config import Settings
from hive.core.directory import DirectoryManager
from hive.core.schemas import (
    HeartbeatCancelResult,
    RunMode,
    RunRecord,
    RunState,
    RunStatus,
    SessionDetail,
    SessionMessage,
)
from hive.errors import HiveError, NotFoundError, RunCancelledError, UpstreamError, truncate_error
from hive.events import Notifier
from hive.utils import new_id, utcnow

logger = logging.getLogger(__name__)

# (session, message, system_prompt) -> full reply text. Raises on failure.
Executor = Callable[[SessionDetail, str, str], Awaitable[str]]

HEARTBEAT_SOURCE = "heartbeat"
RESULT_PREVIEW_CHARS = 280

STEER_INSTRUCTION = (
    "The user is steering the work in progress. Treat the latest message as a "
    "correction to your current plan and adjust course before continuing."
)
COLLECT_INSTRUCTION = (
    "Several queued messages were collected into this turn. Address each of them."
)


@dataclass
class _Run:
    record: RunRecord
    future: asyncio.Future
    messages: list[str] = field(default_factory=list)
    exec_task: asyncio.Task | None = None
    abort_reason: str | None = None


@dataclass
class SessionRunHandle:
    run_id: str
    deduped: bool
    result: asyncio.Future
    merged: bool = False


def _consume_exception(future: asyncio.Future) -> None:
    # Fire-and-forget callers (heartbeats) never await the result.
    if not future.cancelled():
        future.exception()


def _follow(source: asyncio.Future) -> asyncio.Future:
    """A per-caller future that mirrors ``source``.

    Cancelling it (a dropped HTTP waiter, a timed-out worker) leaves
    ``source`` and every other caller sharing the run untouched.
    """
    follower = source.get_loop().create_future()
    follower.add_done_callback(_consume_exception)

    def _copy(done: asyncio.Future) -> None:
        if follower.done():
            return
        if done.cancelled():
            follower.cancel()
        elif done.exception() is not None:
            follower.set_exception(done.exception())
        else:
            follower.set_result(done.result())

    if source.done():
        _copy(source)
    else:
        source.add_done_callback(_copy)
    return follower


class SessionRunManager:
    """Queues, serializes, dedupes and cancels runs against sessions."""

    def __init__(
        self,
        directory: DirectoryManager,
        executor: Executor,
        settings: Settings,
        notifier: Notifier | None = None,
    ) -> None:
        self.directory = directory
        self.executor = executor
        self.settings = settings
        self.notifier = notifier or Notifier()
        self._queues: dict[str, deque[_Run]] = {}
        self._running: dict[str, _Run] = {}
        self._drains: dict[str, asyncio.Task] = {}
        self._history: deque[RunRecord] = deque(maxlen=settings.run_history_limit)

    # ------------------------------------------------------------------
    # enqueue_session_run()
    # ------------------------------------------------------------------

    async def enqueue_session_run(
        self,
        session_id: str,
        message: str,
        mode: RunMode | str = RunMode.FOLLOWUP,
        source: str = "api",
        internal: bool = False,
        dedupe_key: str | None = None,
    ) -> SessionRunHandle:
        """Queue a run for ``session_id`` and return a handle to its result."""
        if await self.directory.get_session(session_id) is None:
            raise NotFoundError(f"Session {session_id} not found")
        mode = RunMode(mode)
        queue = self._queues.setdefault(session_id, deque())

        if dedupe_key:
            for pending in queue:
                if pending.record.dedupe_key == dedupe_key:
                    logger.debug("Coalesced run for session %s (dedupe_key=%s)", session_id, dedupe_key)
                    return SessionRunHandle(run_id=pending.record.id, deduped=True, result=_follow(pending.future))

        if mode == RunMode.COLLECT:
            for pending in reversed(queue):
                if pending.record.mode == RunMode.COLLECT:
                    pending.messages.append(message)
                    pending.record.message = "\n\n".join(pending.messages)
                    logger.debug("Collected message into run %s", pending.record.id)
                    return SessionRunHandle(
                        run_id=pending.record.id, deduped=False, result=_follow(pending.future), merged=True
                    )

        record = RunRecord(
            id=new_id(),
            session_id=session_id,
            message=message,
            mode=mode,
            source=source,
            internal=internal,
            dedupe_key=dedupe_key,
            status=RunStatus.QUEUED,
            queued_at=utcnow(),
        )
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        run = _Run(record=record, future=future, messages=[message])
        queue.append(run)
        self._history.append(record)
        self._ensure_drain(session_id)
        logger.info(
            "Queued run %s on session %s (mode=%s, source=%s, queue=%d)",
            record.id, session_id, mode, source, len(queue),
        )
        await self.notifier.notify("runs", "create", record.id)
        return SessionRunHandle(run_id=record.id, deduped=False, result=_follow(future))

    def _ensure_drain(self, session_id: str) -> None:
        drain = self._drains.get(session_id)
        if drain is None or drain.done():
            self._drains[session_id] = asyncio.create_task(
                self._drain(session_id), name=f"session-runs-{session_id}"
            )

    async def _drain(self, session_id: str) -> None:
        queue = self._queues.get(session_id)
        try:
            while queue:
                run = queue.popleft()
                await self._execute(run)
        finally:
            self._drains.pop(session_id, None)
            if not queue:
                self._queues.pop(session_id, None)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _compose(self, session: SessionDetail, run: _Run) -> tuple[str, str]:
        system_parts: list[str] = []
        if session.agent_id:
            agent = await self.directory.get_agent(session.agent_id)
            if agent is not None and agent.system_prompt:
                system_parts.append(agent.system_prompt)
        if run.record.mode == RunMode.STEER:
            system_parts.append(STEER_INSTRUCTION)
        elif run.record.mode == RunMode.COLLECT and len(run.messages) > 1:
            system_parts.append(COLLECT_INSTRUCTION)
        return run.record.message, "\n\n".join(system_parts)

    async def _execute(self, run: _Run) -> None:
        record = run.record
        session_id = record.session_id
        record.status = RunStatus.RUNNING
        record.started_at = utcnow()
        self._running[session_id] = run
        try:
            session = await self.directory.get_session(session_id)
            if session is None:
                raise NotFoundError(f"Session {session_id} not found")
            message, system_prompt = await self._compose(session, run)
            if run.abort_reason is not None:
                raise RunCancelledError(run.abort_reason)

            run.exec_task = asyncio.create_task(
                self.executor(session, message, system_prompt), name=f"run-{record.id}"
            )
            try:
                await asyncio.wait({run.exec_task})
            except asyncio.CancelledError:
                run.exec_task.cancel()
                raise
            if run.exec_task.cancelled():
                raise RunCancelledError(run.abort_reason or "Run aborted")
            text = run.exec_task.result()

            await self.directory.append_messages(session_id, self._history_entries(run, text))
            record.status = RunStatus.COMPLETED
            record.result_preview = (text or "")[:RESULT_PREVIEW_CHARS]
            if not run.future.done():
                run.future.set_result(text)
            logger.info("Run %s on session %s completed", record.id, session_id)
        except asyncio.CancelledError:
            self._finish_cancelled(run, "Run manager shutting down")
            raise
        except RunCancelledError as e:
            self._finish_cancelled(run, e.message)
        except Exception as e:
            error = e if isinstance(e, HiveError) else UpstreamError(f"{type(e).__name__}: {e}")
            record.status = RunStatus.FAILED
            record.error = truncate_error(error.message)
            if not run.future.done():
                run.future.set_exception(error)
            logger.warning("Run %s on session %s failed: %s", record.id, session_id, record.error)
        finally:
            record.ended_at = utcnow()
            self._running.pop(session_id, None)
        await self.notifier.notify("runs", "update", record.id)

    def _history_entries(self, run: _Run, reply: str) -> list[SessionMessage]:
        now = utcnow()
        kind = "heartbeat" if run.record.source == HEARTBEAT_SOURCE else "chat"
        reply_msg = SessionMessage(role="assistant", text=reply or "", kind=kind, time=now)
        if run.record.internal:
            return [reply_msg]
        return [SessionMessage(role="user", text=m, kind=kind, time=now) for m in run.messages] + [reply_msg]

    def _finish_cancelled(self, run: _Run, reason: str) -> None:
        run.record.status = RunStatus.CANCELLED
        run.record.error = truncate_error(reason)
        run.record.ended_at = utcnow()
        if not run.future.done():
            run.future.set_exception(RunCancelledError(reason))
        logger.info("Run %s on session %s cancelled: %s", run.record.id, run.record.session_id, reason)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def _abort(self, run: _Run, reason: str) -> None:
        run.abort_reason = reason
        if run.exec_task is not None and not run.exec_task.done():
            run.exec_task.cancel()

    def stop_session(self, session_id: str, reason: str = "Stopped by user") -> bool:
        """Abort the in-flight run only. Queued runs stay queued."""
        run = self._running.get(session_id)
        if run is None:
            return False
        self._abort(run, reason)
        logger.info("Stopping run %s on session %s", run.record.id, session_id)
        return True

    def cancel_run(self, session_id: str, run_id: str, reason: str = "Cancelled") -> bool:
        """Cancel one run, whether it is still queued or already executing."""
        running = self._running.get(session_id)
        if running is not None and running.record.id == run_id:
            self._abort(running, reason)
            return True
        queue = self._queues.get(session_id) or deque()
        for run in queue:
            if run.record.id == run_id:
                queue.remove(run)
                self._finish_cancelled(run, reason)
                return True
        return False

    def cancel_session_runs(self, session_id: str, reason: str = "Cancelled") -> HeartbeatCancelResult:
        """Drop every queued run for the session and abort the running one."""
        cancelled = 0
        queue = self._queues.get(session_id)
        while queue:
            self._finish_cancelled(queue.popleft(), reason)
            cancelled += 1
        aborted = 1 if self.stop_session(session_id, reason) else 0
        return HeartbeatCancelResult(cancelled_queued=cancelled, aborted_running=aborted)

    def cancel_all_heartbeat_runs(self, reason: str = "Heartbeat disabled") -> HeartbeatCancelResult:
        """Remove queued heartbeat runs and abort running ones. Other runs are untouched."""
        cancelled = 0
        for queue in self._queues.values():
            keep = deque()
            while queue:
                run = queue.popleft()
                if run.record.source == HEARTBEAT_SOURCE:
                    self._finish_cancelled(run, reason)
                    cancelled += 1
                else:
                    keep.append(run)
            queue.extend(keep)

        aborted = 0
        for run in list(self._running.values()):
            if run.record.source == HEARTBEAT_SOURCE:
                self._abort(run, reason)
                aborted += 1

        if cancelled or aborted:
            logger.info("Cancelled %d queued and aborted %d running heartbeat run(s)", cancelled, aborted)
        return HeartbeatCancelResult(cancelled_queued=cancelled, aborted_running=aborted)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_session_run_state(self, session_id: str) -> RunState:
        running = self._running.get(session_id)
        return RunState(
            session_id=session_id,
            running_run_id=running.record.id if running else None,
            queue_length=len(self._queues.get(session_id) or ()),
        )

    def list_runs(self, session_id: str | None = None, limit: int = 50) -> list[RunRecord]:
        """Recent runs, newest first."""
        records = [r for r in reversed(self._history) if session_id is None or r.session_id == session_id]
        return [r.model_copy() for r in records[: max(1, limit)]]

    async def shutdown(self) -> None:
        """Cancel queued runs and drain tasks."""
        for session_id in list(self._queues):
            self.cancel_session_runs(session_id, "Run manager shutting down")
        drains = list(self._drains.values())
        for drain in drains:
            drain.cancel()
        for drain in drains:
            try:
                await drain
            except asyncio.CancelledError:
                pass
        logger.info("Session run manager stopped")
