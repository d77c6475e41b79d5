"""Test fixtures using a throwaway SQLite database per test."""

from __future__ import annotations

import asyncio
from collections import defaultdict

import pytest
import pytest_asyncio

from hive.config import Settings
from hive.core import AgentInput, Hive, SessionInput
from hive.storage.database import Database

GOOD_REPLY = (
    "Reviewed the overnight error logs: 3 timeouts in the billing job, "
    "all verified as transient and retried successfully."
)


# ---------------------------------------------------------------------------
# Fake executor
# ---------------------------------------------------------------------------


class FakeExecutor:
    """Records every call; optionally blocks on a gate or raises.

    Tracks how many calls are active per session so tests can assert
    single-flight execution.
    """

    def __init__(self, reply: str = GOOD_REPLY) -> None:
        self.reply = reply
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.calls: list[tuple[str, str, str]] = []
        self.active: dict[str, int] = defaultdict(int)
        self.max_active: dict[str, int] = defaultdict(int)

    async def __call__(self, session, message: str, system_prompt: str) -> str:
        self.calls.append((session.id, message, system_prompt))
        self.active[session.id] += 1
        self.max_active[session.id] = max(self.max_active[session.id], self.active[session.id])
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.error is not None:
                raise self.error
            return self.reply
        finally:
            self.active[session.id] -= 1


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it is truthy or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Per-test settings pointing at a temp database and reports dir."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'hive.db'}",
        reports_dir=str(tmp_path / "reports"),
        worker_enabled=False,
        schedule_enabled=False,
        event_bus_enabled=False,
        task_retry_backoff_sec=30,
        task_poll_interval=0.05,
        executor_url="",
    )


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings)
    await database.connect()
    yield database
    await database.disconnect()


# ---------------------------------------------------------------------------
# Hive fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest_asyncio.fixture
async def hive(db, settings, executor):
    h = Hive(db, settings, executor)
    yield h
    await h.close()


@pytest_asyncio.fixture
async def agent(hive):
    return await hive.directory.create_agent(
        AgentInput(id="agent-1", name="Builder", system_prompt="You are a careful operator.")
    )


@pytest_asyncio.fixture
async def chat_session(hive, agent):
    return await hive.directory.create_session(SessionInput(name="Work", agent_id=agent.id))
