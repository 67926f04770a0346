"""Steward daemon entry point.

Initializes all components and starts the server:
  Settings -> Store -> EventBus -> Executor -> RunManager -> MissionLoop
  -> TaskQueue -> Scheduler -> Heartbeat -> HealthMonitor -> Daemon -> App

Uses Starlette lifespan to manage component lifecycle on the same event
loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from starlette.applications import Starlette

from steward.config import Settings
from steward.connectors import ConnectorManager
from steward.daemon import Daemon
from steward.events import DIAGNOSTIC_EVENT_TYPES, EventBus
from steward.handlers.alerts import HealthAlerter
from steward.handlers.health_monitor import HealthMonitor
from steward.handlers.heartbeat import HeartbeatService
from steward.handlers.task_queue import TaskQueue
from steward.handlers.task_scheduler import TaskScheduler
from steward.handlers.webhook_retry import WebhookRetryProcessor
from steward.mission.loop import MissionLoop
from steward.runs.executor import HttpSessionExecutor, SessionExecutor
from steward.runs.manager import SessionRunManager
from steward.state import DaemonState
from steward.storage import DocumentStore, MemoryDocumentStore, SqlDocumentStore
from steward.storage.database import Database

logger = logging.getLogger(__name__)


async def create_components(
    settings: Settings,
    *,
    store: DocumentStore | None = None,
    executor: SessionExecutor | None = None,
) -> dict:
    """Initialize all components in dependency order.

    ``store`` and ``executor`` may be injected (tests, embedding); otherwise
    they are built from settings. Returns a dict of components.
    """
    database = None
    if store is None:
        if settings.store_backend == "memory":
            store = MemoryDocumentStore()
            logger.warning("Using in-memory store: state is lost on restart")
        else:
            database = Database(settings)
            await database.connect()
            store = SqlDocumentStore(database)

    bus = EventBus()
    state = DaemonState()

    if executor is None:
        executor = HttpSessionExecutor(settings)
    await executor.start()

    runs = SessionRunManager(executor, settings)
    mission = MissionLoop(store, settings)
    runs.set_result_hook(mission.handle_run_result)
    bus.on_many(DIAGNOSTIC_EVENT_TYPES, mission.on_diagnostic)

    alert_http = httpx.AsyncClient(timeout=httpx.Timeout(connect=10, read=30, write=10, pool=10))
    alerter = HealthAlerter(settings, bus, alert_http)

    task_queue = TaskQueue(store, runs, settings, bus)
    scheduler = TaskScheduler(store, task_queue, settings, bus)
    heartbeat = HeartbeatService(store, runs, mission, state, settings)
    webhook_retry = WebhookRetryProcessor(store, runs, bus)
    connectors = ConnectorManager(store)
    health = HealthMonitor(
        store,
        state,
        settings,
        alerter,
        task_queue=task_queue,
        connectors=connectors,
        webhook_retry=webhook_retry,
    )
    daemon = Daemon(
        state,
        settings,
        scheduler=scheduler,
        task_queue=task_queue,
        heartbeat=heartbeat,
        health=health,
        runs=runs,
        webhook_retry=webhook_retry,
        connectors=connectors,
    )

    await bus.start()
    await daemon.ensure_started("boot")

    return {
        "database": database,
        "store": store,
        "bus": bus,
        "state": state,
        "executor": executor,
        "runs": runs,
        "mission": mission,
        "alert_http": alert_http,
        "task_queue": task_queue,
        "scheduler": scheduler,
        "heartbeat": heartbeat,
        "webhook_retry": webhook_retry,
        "connectors": connectors,
        "health": health,
        "daemon": daemon,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Steward...")

    daemon = components.get("daemon")
    if daemon:
        await daemon.stop("shutdown")

    webhook_retry = components.get("webhook_retry")
    if webhook_retry:
        await webhook_retry.stop()

    runs = components.get("runs")
    if runs:
        await runs.shutdown()

    bus = components.get("bus")
    if bus:
        await bus.stop()

    alert_http = components.get("alert_http")
    if alert_http:
        await alert_http.aclose()

    executor = components.get("executor")
    if executor:
        await executor.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Steward shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components come up in its lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components
        logger.info("Steward started (daemon running=%s)", components["daemon"].running)
        yield
        await shutdown_components(components)

    # Import here to avoid circular imports at module level
    from steward.api.rest import create_app

    return create_app(
        daemon=_lazy_component(components, "daemon"),
        store=_lazy_component(components, "store"),
        mission=_lazy_component(components, "mission"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Forwards attribute access to a component created later in lifespan."""

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized -- lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str):
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Steward daemon")
    logger.info("Store: %s", settings.store_backend)
    if settings.store_backend == "sql" and not settings.database_url:
        logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)
    logger.info("Agent runtime: %s", settings.runtime_url)
    if not settings.telegram_bot_token:
        logger.warning("TELEGRAM_BOT_TOKEN not set -- health alerts go to the log and event bus only")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
