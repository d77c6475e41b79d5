"""Schedule signature keys and duplicate detection.

Two schedules are duplicates when they target the same agent with the same
normalized prompt on the same cadence. ``once`` schedules match when their
run times are within a second of each other.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from hive.utils import normalize_whitespace

ONCE_TOLERANCE = timedelta(seconds=1)
DEFAULT_STATUSES = ("active", "paused")


@dataclass(frozen=True)
class ScheduleSignature:
    id: str
    agent_id: str
    task_prompt: str
    schedule_type: str
    cron: str
    interval_ms: int | None
    run_at: datetime | None

    def cadence_key(self) -> str:
        if self.schedule_type == "cron":
            return f"cron:{self.cron}"
        if self.schedule_type == "interval":
            return f"interval:{self.interval_ms if self.interval_ms is not None else ''}"
        run_at = int(self.run_at.timestamp() * 1000) if self.run_at else ""
        return f"once:{run_at}"

    def same_cadence(self, other: ScheduleSignature) -> bool:
        if self.schedule_type != other.schedule_type:
            return False
        if self.schedule_type == "cron":
            return self.cron != "" and self.cron == other.cron
        if self.schedule_type == "interval":
            return self.interval_ms is not None and self.interval_ms == other.interval_ms
        if self.run_at is None or other.run_at is None:
            return False
        return abs(self.run_at - other.run_at) <= ONCE_TOLERANCE


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = int(value.strip(), 10)
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    as_int = int(value)
    return as_int if as_int > 0 else None


def to_signature(schedule: Any) -> ScheduleSignature:
    """Build a normalized signature from a Schedule row or input DTO."""
    schedule_type = getattr(schedule, "schedule_type", None)
    if schedule_type not in ("cron", "interval", "once"):
        schedule_type = "interval"
    run_at = getattr(schedule, "run_at", None)
    return ScheduleSignature(
        id=_text(getattr(schedule, "id", None)),
        agent_id=_text(getattr(schedule, "agent_id", None)),
        task_prompt=normalize_whitespace(_text(getattr(schedule, "task_prompt", None))).lower(),
        schedule_type=str(schedule_type),
        cron=normalize_whitespace(_text(getattr(schedule, "cron", None))),
        interval_ms=_positive_int(getattr(schedule, "interval_ms", None)),
        run_at=run_at if isinstance(run_at, datetime) else None,
    )


def schedule_signature_key(schedule: Any) -> str:
    """``agent::prompt::type::cadence`` or ``""`` when the schedule is underspecified."""
    sig = to_signature(schedule)
    if not sig.agent_id or not sig.task_prompt:
        return ""
    if not sig.same_cadence(sig):
        return ""
    return f"{sig.agent_id}::{sig.task_prompt}::{sig.schedule_type}::{sig.cadence_key()}"


def _matches_creator_scope(
    schedule: Any,
    scope_agent_id: str | None,
    scope_session_id: str | None,
) -> bool:
    scope_agent = _text(scope_agent_id)
    scope_session = _text(scope_session_id)
    if not scope_agent and not scope_session:
        return True
    existing_agent = _text(getattr(schedule, "created_by_agent_id", None))
    existing_session = _text(getattr(schedule, "created_in_session_id", None))
    if scope_agent and existing_agent and scope_agent != existing_agent:
        return False
    if scope_session and existing_session and scope_session != existing_session:
        return False
    return True


def _recency(schedule: Any) -> float:
    ts = getattr(schedule, "updated_at", None) or getattr(schedule, "created_at", None)
    return ts.timestamp() if isinstance(ts, datetime) else 0.0


def find_duplicate_schedule(
    schedules: Iterable[Any],
    candidate: Any,
    *,
    ignore_id: str | None = None,
    include_statuses: Iterable[str] = DEFAULT_STATUSES,
    creator_agent_id: str | None = None,
    creator_session_id: str | None = None,
) -> Any | None:
    """Return the most recently updated schedule duplicating ``candidate``."""
    cand = to_signature(candidate)
    if not cand.agent_id or not cand.task_prompt:
        return None

    ignore = _text(ignore_id) or cand.id
    statuses = {s.lower() for s in include_statuses} or set(DEFAULT_STATUSES)

    matches = []
    for existing in schedules:
        sig = to_signature(existing)
        if not sig.id or (ignore and sig.id == ignore):
            continue
        status = _text(getattr(existing, "status", None)).lower() or "active"
        if status not in statuses:
            continue
        if not _matches_creator_scope(existing, creator_agent_id, creator_session_id):
            continue
        if sig.agent_id != cand.agent_id or sig.task_prompt != cand.task_prompt:
            continue
        if sig.same_cadence(cand):
            matches.append(existing)

    if not matches:
        return None
    return max(matches, key=_recency)
