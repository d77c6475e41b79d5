"""Tests for schedule naming, cron descriptions and signature dedupe."""

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest

from hive.core.cron_human import cron_to_human, format_time, ordinal
from hive.core.dedupe import find_duplicate_schedule, schedule_signature_key
from hive.core.naming import (
    FALLBACK_NAME,
    derive_name_from_prompt,
    is_generic_name,
    resolve_schedule_name,
    truncate_name,
)


def _sched(**kw):
    base = dict(
        id="s1",
        agent_id="agent-1",
        task_prompt="Check the dashboards",
        schedule_type="interval",
        cron=None,
        interval_ms=60000,
        run_at=None,
        status="active",
        created_by_agent_id=None,
        created_in_session_id=None,
        updated_at=datetime(2026, 1, 1, tzinfo=UTC),
        created_at=datetime(2026, 1, 1, tzinfo=UTC),
    )
    base.update(kw)
    return SimpleNamespace(**base)


class TestNaming:

    def test_wikipedia_screenshot(self):
        assert resolve_schedule_name("", "Take a screenshot of Wikipedia's homepage") == "Wikipedia Screenshot"

    def test_provided_name_preserved_verbatim(self):
        assert resolve_schedule_name("Nightly sync", "run the sync") == "Nightly sync"

    def test_provided_name_whitespace_normalized(self):
        assert resolve_schedule_name("  Nightly   sync ", "x") == "Nightly sync"

    @pytest.mark.parametrize("name", ["", "schedule", "New Schedule", "  unnamed   schedule "])
    def test_generic_names(self, name):
        assert is_generic_name(name)

    def test_keyword_rules(self):
        assert derive_name_from_prompt("Take a screenshot of the status page") == "Screenshot Task"
        assert derive_name_from_prompt("Run the nightly backup") == "Backup Task"
        assert derive_name_from_prompt("Send a heartbeat ping") == "Health Check"
        assert derive_name_from_prompt("Compile the weekly report") == "Report Task"

    def test_first_clause_with_filler_stripped(self):
        assert derive_name_from_prompt("Please can you check inbox for invoices, then file them") == (
            "Inbox for invoices"
        )

    def test_only_first_line_used(self):
        assert derive_name_from_prompt("summarize open pull requests\nand post them") == "Summarize open pull requests"

    def test_empty_prompt_falls_back(self):
        assert resolve_schedule_name(None, "") == FALLBACK_NAME
        assert resolve_schedule_name("", "Run") == FALLBACK_NAME

    def test_truncation(self):
        name = truncate_name("x" * 100)
        assert len(name) == 80
        assert name.endswith("...")
        assert truncate_name("short") == "short"


class TestCronToHuman:

    @pytest.mark.parametrize(
        "expr,expected",
        [
            ("0 9 * * 1-5", "Weekdays at 9:00 AM"),
            ("*/15 * * * *", "Every 15 minutes"),
            ("* * * * *", "Every minute"),
            ("0 */2 * * *", "Every 2 hours"),
            ("30 * * * *", "Every hour at minute 30"),
            ("0 0 * * *", "Every day at midnight"),
            ("30 14 * * *", "Every day at 2:30 PM"),
            ("0 8 * * 0,6", "Weekends at 8:00 AM"),
            ("0 8 * * 1", "Every Monday at 8:00 AM"),
            ("0 8 1 * *", "1st of every month at 8:00 AM"),
            ("15 6 25 12 *", "December 25th at 6:15 AM"),
        ],
    )
    def test_known_patterns(self, expr, expected):
        assert cron_to_human(expr) == expected

    @pytest.mark.parametrize("expr", ["5-10 * * * *", "0 9 * *", "garbage"])
    def test_unrecognized_returned_unchanged(self, expr):
        assert cron_to_human(expr) == expr

    def test_helpers(self):
        assert format_time(0, 5) == "12:05 AM"
        assert format_time(12, 0) == "12:00 PM"
        assert ordinal(11) == "11th"
        assert ordinal(22) == "22nd"


class TestSignature:

    def test_key_shape(self):
        key = schedule_signature_key(_sched(task_prompt="  Check   the Dashboards "))
        assert key == "agent-1::check the dashboards::interval::interval:60000"

    def test_key_empty_when_underspecified(self):
        assert schedule_signature_key(_sched(task_prompt="")) == ""
        assert schedule_signature_key(_sched(interval_ms=None)) == ""

    def test_duplicate_found(self):
        existing = [_sched(id="a"), _sched(id="b", task_prompt="other")]
        candidate = _sched(id="", task_prompt="check the  dashboards")
        assert find_duplicate_schedule(existing, candidate).id == "a"

    def test_inactive_schedules_ignored(self):
        existing = [_sched(id="a", status="completed")]
        assert find_duplicate_schedule(existing, _sched(id="")) is None

    def test_once_within_tolerance(self):
        at = datetime(2026, 5, 1, 12, tzinfo=UTC)
        existing = [_sched(id="a", schedule_type="once", interval_ms=None, run_at=at)]
        near = _sched(id="", schedule_type="once", interval_ms=None, run_at=at + timedelta(milliseconds=500))
        far = _sched(id="", schedule_type="once", interval_ms=None, run_at=at + timedelta(seconds=5))
        assert find_duplicate_schedule(existing, near) is not None
        assert find_duplicate_schedule(existing, far) is None

    def test_creator_scope(self):
        existing = [_sched(id="a", created_by_agent_id="planner")]
        assert find_duplicate_schedule(existing, _sched(id=""), creator_agent_id="other") is None
        assert find_duplicate_schedule(existing, _sched(id=""), creator_agent_id="planner").id == "a"

    def test_most_recent_match_wins(self):
        older = _sched(id="old", updated_at=datetime(2026, 1, 1, tzinfo=UTC))
        newer = _sched(id="new", updated_at=datetime(2026, 2, 1, tzinfo=UTC))
        assert find_duplicate_schedule([older, newer], _sched(id="")).id == "new"
