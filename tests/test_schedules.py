"""Tests for the schedule engine: create, dedupe, fire, recycle, tick."""

from datetime import timedelta

import pytest

from hive.core.schedules import IN_FLIGHT_REASON, validate_trigger
from hive.core.schemas import ScheduleInput, ScheduleStatus, ScheduleUpdate, SourceType, TaskStatus
from hive.errors import ConflictError, NotFoundError, ValidationError
from hive.storage.models import Schedule
from hive.utils import utcnow
from tests.conftest import GOOD_REPLY


def _interval(**kw) -> ScheduleInput:
    kw.setdefault("agent_id", "agent-1")
    kw.setdefault("task_prompt", "Check the dashboards")
    kw.setdefault("interval_ms", 60000)
    return ScheduleInput(schedule_type="interval", **kw)


async def _complete_linked(hive, task_id: str, result: str = GOOD_REPLY) -> None:
    claimed = await hive.tasks.claim_next_task()
    assert claimed.id == task_id
    await hive.tasks.complete_task(task_id, result)


# ---------------------------------------------------------------------------
# validate_trigger
# ---------------------------------------------------------------------------


class TestValidateTrigger:

    def test_valid(self):
        validate_trigger("cron", "0 9 * * 1-5", None, None)
        validate_trigger("interval", None, 1000, None)
        validate_trigger("once", None, None, utcnow())

    @pytest.mark.parametrize(
        "args",
        [
            ("cron", "not a cron", None, None),
            ("cron", None, None, None),
            ("interval", None, 0, None),
            ("interval", None, None, None),
            ("once", None, None, None),
        ],
    )
    def test_invalid(self, args):
        with pytest.raises(ValidationError):
            validate_trigger(*args)


# ---------------------------------------------------------------------------
# create / dedupe
# ---------------------------------------------------------------------------


async def test_create_interval(hive, agent):
    before = utcnow()
    schedule = await hive.create_schedule(_interval())
    assert schedule.status == ScheduleStatus.ACTIVE
    assert schedule.run_number == 0
    assert schedule.linked_task_id is None
    assert schedule.next_run_at >= before + timedelta(seconds=60)
    assert not schedule.deduplicated


async def test_create_derives_name(hive, agent):
    schedule = await hive.create_schedule(_interval(task_prompt="Take a screenshot of Wikipedia's homepage"))
    assert schedule.name == "Wikipedia Screenshot"


async def test_create_cron_has_human_description(hive, agent):
    schedule = await hive.create_schedule(
        ScheduleInput(agent_id="agent-1", task_prompt="Standup notes", schedule_type="cron", cron="0  9 * * 1-5")
    )
    assert schedule.cron == "0 9 * * 1-5"
    assert schedule.cron_human == "Weekdays at 9:00 AM"
    assert schedule.next_run_at is not None


async def test_create_rejects_bad_input(hive, agent):
    with pytest.raises(ValidationError):
        await hive.create_schedule(ScheduleInput(agent_id="agent-1", schedule_type="cron", cron="61 * * * *"))
    with pytest.raises(ValidationError):
        await hive.create_schedule(_interval(agent_id="ghost"))


async def test_create_deduplicates(hive, agent):
    first = await hive.create_schedule(_interval())
    second = await hive.create_schedule(_interval(task_prompt="  check the   DASHBOARDS "))
    assert second.deduplicated
    assert second.id == first.id
    assert len(await hive.list_schedules()) == 1


async def test_dedupe_applies_specific_name(hive, agent):
    first = await hive.create_schedule(_interval())
    merged = await hive.create_schedule(_interval(name="Dashboard sweep"))
    assert merged.id == first.id
    assert merged.name == "Dashboard sweep"

    # A generic name never overwrites.
    again = await hive.create_schedule(_interval(name="New schedule"))
    assert again.name == "Dashboard sweep"


async def test_different_cadence_is_not_duplicate(hive, agent):
    await hive.create_schedule(_interval())
    other = await hive.create_schedule(_interval(interval_ms=120000))
    assert not other.deduplicated
    assert len(await hive.list_schedules()) == 2


# ---------------------------------------------------------------------------
# fire / recycle
# ---------------------------------------------------------------------------


async def test_fire_creates_linked_task(hive, agent):
    schedule = await hive.create_schedule(_interval())
    fired = await hive.fire_schedule(schedule.id)
    assert fired.queued
    assert fired.run_number == 1

    task = await hive.get_task(fired.task_id)
    assert task.status == TaskStatus.QUEUED
    assert task.source_type == SourceType.SCHEDULE
    assert task.source_schedule_id == schedule.id
    assert task.source_schedule_key == "agent-1::check the dashboards::interval::interval:60000"
    assert task.title == f"[Sched] {schedule.name} (run #1)"
    assert task.description == "Check the dashboards"

    refreshed = await hive.get_schedule(schedule.id)
    assert refreshed.linked_task_id == task.id
    assert refreshed.total_runs == 1
    assert refreshed.last_run_at is not None


async def test_fire_skips_while_in_flight(hive, agent):
    schedule = await hive.create_schedule(_interval())
    await hive.fire_schedule(schedule.id)

    again = await hive.fire_schedule(schedule.id)
    assert not again.queued
    assert again.reason == IN_FLIGHT_REASON

    tasks = await hive.list_tasks()
    assert len(tasks) == 1
    assert (await hive.get_schedule(schedule.id)).run_number == 1


async def test_fire_recycles_completed_task(hive, agent):
    schedule = await hive.create_schedule(_interval())
    first = await hive.fire_schedule(schedule.id)
    await _complete_linked(hive, first.task_id)

    second = await hive.fire_schedule(schedule.id)
    assert second.queued
    assert second.task_id == first.task_id
    assert second.run_number == 2

    task = await hive.get_task(first.task_id)
    assert task.status == TaskStatus.QUEUED
    assert task.title.endswith("(run #2)")
    assert task.result is None
    assert task.attempts == 0
    assert task.total_runs == 1
    assert task.total_completed == 1
    assert task.total_failed == 0

    refreshed = await hive.get_schedule(schedule.id)
    assert refreshed.total_runs == 2
    assert refreshed.total_completed == 1


async def test_fire_recycles_failed_task(hive, agent):
    schedule = await hive.create_schedule(_interval())
    first = await hive.fire_schedule(schedule.id)
    await _complete_linked(hive, first.task_id, result="nope")

    await hive.fire_schedule(schedule.id)
    task = await hive.get_task(first.task_id)
    assert task.total_failed == 1
    assert (await hive.get_schedule(schedule.id)).total_failed == 1


async def test_fire_recycles_archived_task(hive, agent):
    schedule = await hive.create_schedule(_interval())
    first = await hive.fire_schedule(schedule.id)
    result = await hive.archive_tasks("schedule")
    assert result.archived == 1

    second = await hive.fire_schedule(schedule.id)
    assert second.queued
    task = await hive.get_task(first.task_id)
    assert task.status == TaskStatus.QUEUED
    assert task.archived_at is None


async def test_fire_missing_agent(hive, agent):
    schedule = await hive.create_schedule(_interval())
    await hive.directory.delete_agent(agent.id)
    with pytest.raises(ValidationError):
        await hive.fire_schedule(schedule.id)


async def test_fire_unknown_schedule(hive):
    with pytest.raises(NotFoundError):
        await hive.fire_schedule("missing")


# ---------------------------------------------------------------------------
# Tick
# ---------------------------------------------------------------------------


async def test_fire_due_advances_interval(hive, agent):
    schedule = await hive.create_schedule(_interval())

    assert await hive.schedules.fire_due_schedules() == []

    later = utcnow() + timedelta(minutes=2)
    results = await hive.schedules.fire_due_schedules(later)
    assert [r.schedule_id for r in results] == [schedule.id]
    assert results[0].queued

    refreshed = await hive.get_schedule(schedule.id)
    assert refreshed.last_run_at == later
    assert refreshed.next_run_at == later + timedelta(seconds=60)

    # Next due tick while the task is still queued: skipped, but still advanced.
    much_later = later + timedelta(minutes=5)
    results = await hive.schedules.fire_due_schedules(much_later)
    assert results[0].reason == IN_FLIGHT_REASON
    assert (await hive.get_schedule(schedule.id)).next_run_at == much_later + timedelta(seconds=60)


async def test_fire_due_once_completes(hive, agent):
    run_at = utcnow() + timedelta(hours=1)
    schedule = await hive.create_schedule(
        ScheduleInput(agent_id="agent-1", task_prompt="Renew the cert", schedule_type="once", run_at=run_at)
    )
    assert schedule.next_run_at == run_at

    results = await hive.schedules.fire_due_schedules(run_at + timedelta(seconds=1))
    assert results[0].queued
    refreshed = await hive.get_schedule(schedule.id)
    assert refreshed.status == ScheduleStatus.COMPLETED
    assert refreshed.next_run_at is None


async def test_fire_due_skips_paused(hive, agent):
    await hive.create_schedule(_interval(status="paused"))
    assert await hive.schedules.fire_due_schedules(utcnow() + timedelta(hours=1)) == []


async def test_fire_due_missing_agent_fails_schedule(hive, agent):
    schedule = await hive.create_schedule(_interval())
    await hive.directory.delete_agent(agent.id)

    results = await hive.schedules.fire_due_schedules(utcnow() + timedelta(minutes=2))
    assert results[0].reason == "agent_not_found"
    assert (await hive.get_schedule(schedule.id)).status == ScheduleStatus.FAILED


async def test_compute_next_runs(hive, agent, db):
    schedule = await hive.create_schedule(
        ScheduleInput(agent_id="agent-1", task_prompt="Standup", schedule_type="cron", cron="*/5 * * * *")
    )
    broken = await hive.create_schedule(
        ScheduleInput(agent_id="agent-1", task_prompt="Broken", schedule_type="cron", cron="0 * * * *")
    )
    async with db.session() as session:
        (await session.get(Schedule, schedule.id)).next_run_at = None
        row = await session.get(Schedule, broken.id)
        row.next_run_at = None
        row.cron = "nonsense"
        await session.commit()

    assert await hive.schedules.compute_next_runs() == 2
    assert (await hive.get_schedule(schedule.id)).next_run_at is not None
    assert (await hive.get_schedule(broken.id)).status == ScheduleStatus.FAILED


# ---------------------------------------------------------------------------
# update / delete
# ---------------------------------------------------------------------------


async def test_update_trigger_recomputes_next_run(hive, agent):
    schedule = await hive.create_schedule(_interval())
    before = utcnow()
    updated = await hive.update_schedule(schedule.id, ScheduleUpdate(interval_ms=3_600_000))
    assert updated.interval_ms == 3_600_000
    assert updated.next_run_at >= before + timedelta(hours=1)


async def test_update_invalid_trigger(hive, agent):
    schedule = await hive.create_schedule(_interval())
    with pytest.raises(ValidationError):
        await hive.update_schedule(schedule.id, ScheduleUpdate(interval_ms=0))


async def test_update_into_duplicate_conflicts(hive, agent):
    await hive.create_schedule(_interval())
    other = await hive.create_schedule(_interval(task_prompt="Rotate the logs"))
    with pytest.raises(ConflictError):
        await hive.update_schedule(other.id, ScheduleUpdate(task_prompt="check the dashboards"))


async def test_pause_and_resume(hive, agent):
    schedule = await hive.create_schedule(_interval())
    paused = await hive.update_schedule(schedule.id, ScheduleUpdate(status="paused"))
    assert paused.status == ScheduleStatus.PAUSED
    resumed = await hive.update_schedule(schedule.id, ScheduleUpdate(status="active"))
    assert resumed.status == ScheduleStatus.ACTIVE


async def test_update_finished_schedule_conflicts(hive, agent):
    run_at = utcnow() + timedelta(hours=1)
    schedule = await hive.create_schedule(
        ScheduleInput(agent_id="agent-1", task_prompt="Renew the cert", schedule_type="once", run_at=run_at)
    )
    await hive.schedules.fire_due_schedules(run_at + timedelta(seconds=1))
    with pytest.raises(ConflictError):
        await hive.update_schedule(schedule.id, ScheduleUpdate(status="active"))


async def test_record_session(hive, agent, chat_session):
    schedule = await hive.create_schedule(_interval())
    await hive.schedules.record_session(schedule.id, chat_session.id)
    assert (await hive.get_schedule(schedule.id)).last_session_id == chat_session.id


async def test_delete(hive, agent):
    schedule = await hive.create_schedule(_interval())
    await hive.delete_schedule(schedule.id)
    with pytest.raises(NotFoundError):
        await hive.get_schedule(schedule.id)
