"""Tests for the task queue state machine."""

from datetime import timedelta

import pytest

from hive.core.schemas import TaskInput, TaskStatus, TaskUpdate
from hive.core.tasks import TRANSITIONS, can_transition, transition
from hive.errors import ConflictError, DeadLetterError, NotFoundError, ValidationError
from hive.storage.database import commit_or_conflict
from hive.storage.models import Task
from hive.utils import utcnow
from tests.conftest import GOOD_REPLY


def _input(agent_id: str = "agent-1", **kw) -> TaskInput:
    kw.setdefault("title", "Summarize error logs")
    return TaskInput(agent_id=agent_id, **kw)


async def _edit(db, task_id: str, **fields) -> None:
    """Write raw column values, bypassing the manager."""
    async with db.session() as session:
        task = await session.get(Task, task_id)
        for key, value in fields.items():
            setattr(task, key, value)
        await session.commit()


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------


class TestTransitions:

    def test_table_covers_every_status(self):
        assert set(TRANSITIONS) == set(TaskStatus)

    def test_allowed_and_forbidden(self):
        assert can_transition("backlog", "queued")
        assert can_transition("running", "queued")
        assert not can_transition("backlog", "running")
        assert not can_transition("failed", "queued")
        assert not can_transition("archived", "queued")

    def test_transition_raises_conflict(self):
        task = Task(id="t1", status=TaskStatus.COMPLETED)
        with pytest.raises(ConflictError):
            transition(task, TaskStatus.RUNNING)
        assert task.status == TaskStatus.COMPLETED

    def test_archive_stamps_and_unarchive_clears(self):
        task = Task(id="t1", status=TaskStatus.FAILED)
        transition(task, TaskStatus.ARCHIVED)
        assert task.archived_at is not None
        transition(task, TaskStatus.BACKLOG)
        assert task.archived_at is None


# ---------------------------------------------------------------------------
# create / enqueue / claim
# ---------------------------------------------------------------------------


async def test_create_defaults(hive, agent):
    task = await hive.create_task(_input())
    assert task.status == TaskStatus.BACKLOG
    assert task.attempts == 0
    assert task.max_attempts == 3
    assert task.retry_backoff_sec == 30
    assert task.version == 1


async def test_policy_values_clamped(hive, agent):
    task = await hive.create_task(_input(max_attempts=99, retry_backoff_sec=0))
    assert task.max_attempts == 20
    assert task.retry_backoff_sec == 1


async def test_enqueue_requires_agent(hive, agent):
    task = await hive.create_task(_input(agent_id="ghost"))
    with pytest.raises(ValidationError):
        await hive.enqueue_task(task.id)
    assert (await hive.get_task(task.id)).status == TaskStatus.BACKLOG


async def test_enqueue_is_idempotent(hive, agent):
    task = await hive.create_task(_input(status="queued"))
    assert task.status == TaskStatus.QUEUED
    again = await hive.enqueue_task(task.id)
    assert again.status == TaskStatus.QUEUED


async def test_get_unknown_task(hive):
    with pytest.raises(NotFoundError):
        await hive.get_task("missing")


async def test_claim_oldest_first(hive, agent):
    first = await hive.create_task(_input(title="first", status="queued"))
    await hive.create_task(_input(title="second", status="queued"))

    claimed = await hive.tasks.claim_next_task()
    assert claimed.id == first.id
    assert claimed.status == TaskStatus.RUNNING
    assert claimed.started_at is not None
    assert claimed.checkpoint.note == "Attempt 1/3 started"


async def test_claim_empty_queue(hive, agent):
    await hive.create_task(_input())
    assert await hive.tasks.claim_next_task() is None


async def test_claim_dead_letters_task_without_agent(hive, agent):
    task = await hive.create_task(_input(status="queued"))
    await hive.directory.delete_agent(agent.id)

    assert await hive.tasks.claim_next_task() is None
    row = await hive.get_task(task.id)
    assert row.status == TaskStatus.FAILED
    assert row.dead_lettered_at is not None
    assert "not found" in row.error


# ---------------------------------------------------------------------------
# complete / fail / retry / dead-letter
# ---------------------------------------------------------------------------


async def test_complete_passes_gate(hive, agent, settings):
    task = await hive.create_task(_input(status="queued"))
    await hive.tasks.claim_next_task()

    done = await hive.tasks.complete_task(task.id, GOOD_REPLY, run_id="r1", agent_name="Builder")
    assert done.status == TaskStatus.COMPLETED
    assert done.completed_at is not None
    assert done.validation.ok
    assert done.checkpoint.last_run_id == "r1"
    assert done.comments[-1].author == "Builder"
    assert done.comments[-1].text.startswith("Task completed.")
    assert done.completion_report_path == f"{task.id}.md"


async def test_complete_rejected_by_gate(hive, agent):
    task = await hive.create_task(_input(status="queued"))
    await hive.tasks.claim_next_task()

    result = await hive.tasks.complete_task(task.id, "done")
    assert result.status == TaskStatus.FAILED
    assert result.completed_at is None
    assert result.error.startswith("Completion validation failed")
    assert not result.validation.ok
    assert result.dead_lettered_at is None
    assert "failed validation" in result.comments[-1].text


async def test_complete_requires_running(hive, agent):
    task = await hive.create_task(_input())
    with pytest.raises(ConflictError):
        await hive.tasks.complete_task(task.id, GOOD_REPLY)


async def test_create_as_completed_goes_through_gate(hive, agent):
    good = await hive.create_task(_input(status="completed", result=GOOD_REPLY))
    bad = await hive.create_task(_input(status="completed", result="ok"))
    assert good.status == TaskStatus.COMPLETED
    assert bad.status == TaskStatus.FAILED


async def test_fail_schedules_retry(hive, agent, db):
    task = await hive.create_task(_input(status="queued"))
    await hive.tasks.claim_next_task()

    before = utcnow()
    retried = await hive.tasks.fail_task(task.id, "executor crashed")
    assert retried.status == TaskStatus.QUEUED
    assert retried.attempts == 1
    assert retried.retry_scheduled_at >= before + timedelta(seconds=29)
    assert retried.error.startswith("Retry scheduled after failure")
    assert "Retrying in 30s" in retried.comments[-1].text

    # Not claimable until the backoff elapses.
    assert await hive.tasks.claim_next_task() is None

    await _edit(db, task.id, retry_scheduled_at=utcnow() - timedelta(seconds=1))
    again = await hive.tasks.claim_next_task()
    assert again.id == task.id
    assert again.retry_scheduled_at is None
    assert again.error is None
    assert again.checkpoint.note == "Attempt 2/3 started"


async def test_dead_letter_then_reset(hive, agent):
    task = await hive.create_task(_input(status="queued", max_attempts=1))
    await hive.tasks.claim_next_task()

    dead = await hive.tasks.fail_task(task.id, "boom")
    assert dead.status == TaskStatus.FAILED
    assert dead.attempts == 1
    assert dead.dead_lettered_at is not None
    assert dead.error.startswith("Dead-lettered after 1/1 attempts")

    with pytest.raises(DeadLetterError):
        await hive.enqueue_task(task.id)

    reset = await hive.reset_task(task.id)
    assert reset.status == TaskStatus.BACKLOG
    assert reset.attempts == 0
    assert reset.dead_lettered_at is None
    assert "Dead-letter cleared" in reset.comments[-1].text

    assert (await hive.enqueue_task(task.id)).status == TaskStatus.QUEUED


async def test_attempts_never_exceed_max(hive, agent, db):
    task = await hive.create_task(_input(status="queued", max_attempts=2))
    for _ in range(2):
        await _edit(db, task.id, retry_scheduled_at=None)
        await hive.tasks.claim_next_task()
        result = await hive.tasks.fail_task(task.id, "boom")
        assert result.attempts <= result.max_attempts
    assert result.dead_lettered_at is not None
    assert result.attempts == 2


async def test_reset_requires_failed(hive, agent):
    task = await hive.create_task(_input())
    with pytest.raises(ConflictError):
        await hive.reset_task(task.id)


async def test_heartbeat_disabled_when_task_finishes(hive, agent, chat_session):
    task = await hive.create_task(_input(status="queued", session_id=chat_session.id))
    await hive.tasks.claim_next_task()
    await hive.tasks.complete_task(task.id, GOOD_REPLY)

    session = await hive.directory.get_session(chat_session.id)
    assert session.heartbeat_enabled is False


# ---------------------------------------------------------------------------
# archive
# ---------------------------------------------------------------------------


async def test_archive_filters(hive, agent):
    backlog = await hive.create_task(_input(title="backlog"))
    done = await hive.create_task(_input(title="done", status="completed", result=GOOD_REPLY))
    running = await hive.create_task(_input(title="running", status="queued"))
    await hive.tasks.claim_next_task()

    result = await hive.archive_tasks("done")
    assert result.archived == 1
    assert (await hive.get_task(done.id)).status == TaskStatus.ARCHIVED

    result = await hive.archive_tasks("all")
    assert result.archived == 1
    assert result.skipped_running == 1
    assert (await hive.get_task(backlog.id)).archived_at is not None

    listed = await hive.list_tasks()
    assert [t.id for t in listed] == [running.id]

    # Default filter purges what is already archived.
    result = await hive.archive_tasks()
    assert result.purged == 2
    remaining = await hive.tasks.list_tasks(include_archived=True)
    assert [t.id for t in remaining] == [running.id]


async def test_archive_unknown_filter(hive):
    with pytest.raises(ValidationError):
        await hive.archive_tasks("everything")


# ---------------------------------------------------------------------------
# Integrity pass / stall recovery / resume
# ---------------------------------------------------------------------------


async def test_integrity_pass_is_idempotent(hive, agent):
    task = await hive.create_task(_input(status="completed", result=GOOD_REPLY))

    first = await hive.tasks.validate_completed_tasks()
    second = await hive.tasks.validate_completed_tasks()
    assert first.checked == second.checked == 1
    assert first.demoted == second.demoted == 0
    assert (await hive.get_task(task.id)).version == task.version


async def test_integrity_pass_demotes_invalid(hive, agent, db):
    task = await hive.create_task(_input(status="completed", result=GOOD_REPLY))
    await _edit(db, task.id, result="waiting for approval")

    result = await hive.tasks.validate_completed_tasks()
    assert result.demoted == 1
    row = await hive.get_task(task.id)
    assert row.status == TaskStatus.FAILED
    assert row.completed_at is None
    assert "auto-failed" in row.comments[-1].text


async def test_stall_recovery(hive, agent, db):
    task = await hive.create_task(_input(status="queued"))
    await hive.tasks.claim_next_task()
    stale = utcnow() - timedelta(days=1)
    await _edit(db, task.id, started_at=stale, updated_at=stale)

    result = await hive.tasks.recover_stalled_tasks()
    assert result.recovered == 1
    assert result.dead_lettered == 0
    row = await hive.get_task(task.id)
    assert row.status == TaskStatus.QUEUED
    assert row.attempts == 1
    assert "stalled" in row.error


async def test_fresh_running_task_not_recovered(hive, agent):
    await hive.create_task(_input(status="queued"))
    await hive.tasks.claim_next_task()
    result = await hive.tasks.recover_stalled_tasks()
    assert result.recovered == result.dead_lettered == 0


async def test_resume_counts_queued(hive, agent):
    await hive.create_task(_input(status="queued"))
    await hive.create_task(_input())
    assert await hive.tasks.resume() == 1


# ---------------------------------------------------------------------------
# update / delete / concurrency
# ---------------------------------------------------------------------------


async def test_update_fields_and_status(hive, agent):
    task = await hive.create_task(_input())
    updated = await hive.update_task(
        task.id,
        TaskUpdate(title="  Renamed ", result=GOOD_REPLY, status=TaskStatus.COMPLETED),
    )
    assert updated.title == "Renamed"
    assert updated.status == TaskStatus.COMPLETED
    assert updated.version > task.version


async def test_update_illegal_status(hive, agent):
    task = await hive.create_task(_input())
    with pytest.raises(ConflictError):
        await hive.update_task(task.id, TaskUpdate(status=TaskStatus.RUNNING))


async def test_update_cannot_claim_task(hive, agent):
    task = await hive.create_task(_input(status="queued"))
    with pytest.raises(ConflictError):
        await hive.update_task(task.id, TaskUpdate(status=TaskStatus.RUNNING))
    stored = await hive.get_task(task.id)
    assert stored.status == TaskStatus.QUEUED
    assert stored.started_at is None


async def test_update_cannot_fail_running_task(hive, agent):
    task = await hive.create_task(_input(status="queued"))
    await hive.tasks.claim_next_task()
    with pytest.raises(ConflictError):
        await hive.update_task(task.id, TaskUpdate(status=TaskStatus.FAILED))
    stored = await hive.get_task(task.id)
    assert stored.status == TaskStatus.RUNNING
    assert stored.attempts == 0


async def test_update_to_backlog_clears_dead_letter(hive, agent):
    task = await hive.create_task(_input(status="queued", max_attempts=1))
    await hive.tasks.claim_next_task()
    await hive.tasks.fail_task(task.id, "boom")

    revived = await hive.update_task(task.id, TaskUpdate(status=TaskStatus.BACKLOG))
    assert revived.status == TaskStatus.BACKLOG
    assert revived.dead_lettered_at is None
    assert revived.attempts == 0
    assert revived.error is None
    assert "Dead-letter cleared" in revived.comments[-1].text


async def test_created_detail_matches_stored_version(hive, agent):
    queued = await hive.create_task(_input(status="queued"))
    assert (await hive.get_task(queued.id)).version == queued.version

    completed = await hive.create_task(_input(status="completed", result=GOOD_REPLY))
    assert (await hive.get_task(completed.id)).version == completed.version

    backlog = await hive.create_task(_input())
    enqueued = await hive.enqueue_task(backlog.id)
    assert (await hive.get_task(backlog.id)).version == enqueued.version


async def test_update_max_attempts_below_used(hive, agent, db):
    task = await hive.create_task(_input())
    await _edit(db, task.id, attempts=2)
    with pytest.raises(ValidationError):
        await hive.update_task(task.id, TaskUpdate(max_attempts=1))


async def test_delete(hive, agent):
    task = await hive.create_task(_input())
    await hive.delete_task(task.id)
    assert await hive.tasks.get_task(task.id) is None


async def test_delete_running_conflicts(hive, agent):
    task = await hive.create_task(_input(status="queued"))
    await hive.tasks.claim_next_task()
    with pytest.raises(ConflictError):
        await hive.delete_task(task.id)


async def test_concurrent_write_conflicts(hive, agent, db):
    task = await hive.create_task(_input())

    async with db.session() as first, db.session() as second:
        a = await first.get(Task, task.id)
        b = await second.get(Task, task.id)
        a.title = "first writer"
        await commit_or_conflict(first, "Task")
        b.title = "second writer"
        with pytest.raises(ConflictError):
            await commit_or_conflict(second, "Task")

    assert (await hive.get_task(task.id)).title == "first writer"


async def test_counts_by_status(hive, agent):
    await hive.create_task(_input())
    await hive.create_task(_input(status="queued"))
    counts = await hive.tasks.counts_by_status()
    assert counts == {"backlog": 1, "queued": 1}
