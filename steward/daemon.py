"""Daemon -- owns the periodic processes and their lifecycle.

Timers (each its own asyncio task looping sleep -> tick):
- scheduler: fires due schedules
- heartbeat: heartbeat runs for idle sessions
- queue: processes queued board tasks
- health: stall recovery, stale sessions, connectors, webhook retries
- sweep: evicts idle session run lanes

Starting is idempotent: a second start only creates timers that are
missing. A manual stop blocks autostart until the next manual start.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from steward.config import Settings
from steward.connectors import ConnectorManager
from steward.handlers.health_monitor import HealthMonitor
from steward.handlers.heartbeat import HeartbeatService
from steward.handlers.task_queue import TaskQueue
from steward.handlers.task_scheduler import TaskScheduler
from steward.handlers.webhook_retry import WebhookRetryProcessor
from steward.runs.manager import SessionRunManager
from steward.state import DaemonState
from steward.utils import is_self_cancelled, now_ms

logger = logging.getLogger(__name__)

TickFn = Callable[[], Awaitable[Any]]


class Daemon:
    def __init__(
        self,
        state: DaemonState,
        settings: Settings,
        *,
        scheduler: TaskScheduler,
        task_queue: TaskQueue,
        heartbeat: HeartbeatService,
        health: HealthMonitor,
        runs: SessionRunManager,
        webhook_retry: WebhookRetryProcessor,
        connectors: ConnectorManager | None = None,
    ) -> None:
        self._state = state
        self._settings = settings
        self._scheduler = scheduler
        self._queue = task_queue
        self._heartbeat = heartbeat
        self._health = health
        self._runs = runs
        self._webhook_retry = webhook_retry
        self._connectors = connectors
        self._timers: dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return self._state.running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ensure_started(self, source: str = "unknown") -> bool:
        """Autostart unless disabled by settings or a manual stop."""
        if self._state.running:
            return False
        if not self._settings.daemon_autostart or self._state.manual_stop_requested:
            return False
        await self.start(source=source)
        return True

    async def start(self, source: str = "unknown", *, manual: bool = False) -> None:
        if manual:
            self._state.manual_stop_requested = False

        if self._state.running:
            # Already running: only fill in timers that are missing
            self._start_timers()
            return

        self._state.running = True
        logger.info("Starting daemon (source=%s)", source)

        try:
            await self._scheduler.compute_next_runs()
        except Exception:
            logger.exception("Failed to compute next schedule runs")
        seeded = await self._heartbeat.seed_last_active()
        logger.info("Heartbeat tracking %d session(s) after seed", seeded)

        self._start_timers()

        if self._connectors is not None:
            try:
                await self._connectors.auto_start()
            except Exception:
                logger.exception("Error auto-starting connectors")

    async def stop(self, source: str = "unknown", *, manual: bool = False) -> None:
        if manual:
            self._state.manual_stop_requested = True
        if not self._state.running:
            return
        self._state.running = False
        logger.info("Stopping daemon (source=%s)", source)

        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        for task in timers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._state.heartbeat_running = False
        self._state.health_monitor_active = False

        if self._connectors is not None:
            await self._connectors.stop_all()

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _start_timers(self) -> None:
        s = self._settings
        self._ensure_timer("scheduler", s.scheduler_tick_interval, self._scheduler.tick)
        self._ensure_timer("queue", s.queue_check_interval, self._queue_tick)
        self._ensure_timer("heartbeat", s.heartbeat_tick_interval, self._heartbeat.tick)
        self._ensure_timer("health", s.health_check_interval, self._health.check)
        self._ensure_timer("sweep", s.resource_sweep_interval, self._sweep_tick)
        self._state.heartbeat_running = True
        self._state.health_monitor_active = True

    def _ensure_timer(self, name: str, interval: float, fn: TickFn) -> None:
        existing = self._timers.get(name)
        if existing is not None and not existing.done():
            return
        self._timers[name] = asyncio.create_task(
            self._timer_loop(name, interval, fn), name=f"daemon-{name}"
        )

    async def _timer_loop(self, name: str, interval: float, fn: TickFn) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                await fn()
            except asyncio.CancelledError:
                if is_self_cancelled():
                    break
                logger.warning("Daemon %s tick interrupted by a cancelled run", name)
            except Exception:
                logger.exception("Daemon %s tick failed", name)

    def timer_names(self) -> list[str]:
        return sorted(name for name, task in self._timers.items() if not task.done())

    async def _queue_tick(self) -> None:
        if not await self._queue.has_pending():
            return
        logger.info("Processing %d queued task(s)", await self._queue.queue_length())
        await self._queue.process_next()
        self._state.last_processed = now_ms()

    async def _sweep_tick(self) -> None:
        evicted = self._runs.sweep_idle(self._settings.resource_idle_max_age)
        if evicted:
            logger.info("Evicted %d idle session lane(s), %d remain", evicted, self._runs.lane_count)

    # ------------------------------------------------------------------
    # Operator access
    # ------------------------------------------------------------------

    async def run_health_check_now(self) -> None:
        await self._health.check()

    async def get_status(self) -> dict[str, Any]:
        retry = await self._webhook_retry.stats()
        return {
            "running": self._state.running,
            "schedulerActive": self._state.running,
            "autostartEnabled": self._settings.daemon_autostart,
            "manualStopRequested": self._state.manual_stop_requested,
            "queueLength": await self._queue.queue_length(),
            "lastProcessed": self._state.last_processed,
            "nextScheduled": await self._scheduler.next_scheduled_at(),
            "heartbeat": self._heartbeat.status(),
            "health": self._health.status(),
            "webhookRetry": {
                "pendingRetries": retry.pending,
                "deadLettered": retry.dead_lettered,
            },
        }
