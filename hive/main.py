"""Hive entry point.

Initializes all components and starts the server:
  Settings -> Database -> EventBus -> Hive -> handlers -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from hive.api.executor import HttpExecutor
from hive.config import Settings
from hive.core import Hive
from hive.events import EventBus, Notifier
from hive.handlers.main_loop import MainLoopRelay
from hive.handlers.task_scheduler import TaskScheduler
from hive.handlers.task_worker import TaskWorker
from hive.storage.database import Database

logger = logging.getLogger(__name__)


async def create_components(settings: Settings, executor=None) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.

    1. Database - engine + tables
    2. EventBus - optional, with the main-loop relay registered
    3. Executor - HTTP backend unless one is injected
    4. Hive - task/schedule/run/mailbox managers
    5. TaskWorker / TaskScheduler - background loops
    """
    database = Database(settings)
    await database.connect()

    bus = None
    if settings.event_bus_enabled:
        bus = EventBus()
    notifier = Notifier(bus)

    http_executor = None
    if executor is None:
        http_executor = HttpExecutor(settings)
        executor = http_executor
        if not settings.executor_url:
            logger.warning("HIVE_EXECUTOR_URL is not set; session runs will fail with 503")

    hive = Hive(database, settings, executor, notifier)

    if bus is not None:
        MainLoopRelay(hive.directory, bus)
        await bus.start()

    task_worker = None
    if settings.worker_enabled:
        task_worker = TaskWorker(hive, settings)
        await task_worker.start()

    task_scheduler = None
    if settings.schedule_enabled:
        task_scheduler = TaskScheduler(hive, settings)
        await task_scheduler.start()

    return {
        "database": database,
        "bus": bus,
        "hive": hive,
        "executor": http_executor,
        "task_worker": task_worker,
        "task_scheduler": task_scheduler,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Hive...")

    task_scheduler = components.get("task_scheduler")
    if task_scheduler:
        await task_scheduler.stop()
    task_worker = components.get("task_worker")
    if task_worker:
        await task_worker.stop()

    hive = components.get("hive")
    if hive:
        await hive.close()

    bus = components.get("bus")
    if bus:
        await bus.stop()

    executor = components.get("executor")
    if executor:
        await executor.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Hive shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app. Components are created in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components
        logger.info(
            "Hive started (worker=%s, scheduler=%s, db=%s)",
            settings.worker_enabled,
            settings.schedule_enabled,
            settings.database_url.split("://", 1)[0],
        )
        yield
        await shutdown_components(components)

    from hive.api.rest import create_app

    return create_app(
        hive=_lazy_component(components, "hive"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized; lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    """Create a lazy proxy for a component that will be initialized in lifespan."""
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    app = build_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level)


if __name__ == "__main__":
    main()
