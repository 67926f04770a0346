"""Task Scheduler -- fires due schedules by creating board tasks.

Each tick:
1. Loads schedules whose ``nextRunAt <= now``
2. Skips (but advances) schedules whose previous task is still in flight
3. Creates a board task for each remaining due schedule and enqueues it
4. Completes one-shot schedules, advances recurring ones

Configuration problems (missing agent, invalid cron, interval schedule
without an interval, malformed record) fail the schedule for good and emit
``schedule_failed``. Other schedules keep firing.
Cron expressions are evaluated in UTC.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from croniter import croniter
from pydantic import ValidationError

from steward.config import Settings
from steward.events import EventBus
from steward.handlers import emit_diagnostic
from steward.handlers.task_queue import TaskQueue
from steward.scheduling import schedule_signature_key
from steward.schemas import BoardTask, Schedule
from steward.storage import AGENTS, SCHEDULES, TASKS, DocumentStore
from steward.utils import gen_id, now_ms

logger = logging.getLogger(__name__)


def next_cron_run(expr: str, now: int) -> int:
    """Next occurrence of ``expr`` strictly after ``now`` (epoch ms, UTC).

    Raises ValueError for an invalid expression.
    """
    try:
        cron = croniter(expr, datetime.fromtimestamp(now / 1000, tz=UTC))
        return int(cron.get_next(datetime).timestamp() * 1000)
    except (ValueError, KeyError) as exc:
        raise ValueError(f"Invalid cron expression {expr!r}: {exc}") from exc


def advance_schedule(schedule: Schedule, now: int) -> None:
    """Move a schedule past ``now``: next cron/interval run, or complete a one-shot.

    Raises ValueError when the schedule has no usable timing.
    """
    if schedule.schedule_type == "cron":
        if not schedule.cron:
            raise ValueError("Cron schedule without an expression")
        schedule.next_run_at = next_cron_run(schedule.cron, now)
    elif schedule.schedule_type == "interval":
        if not schedule.interval_ms or schedule.interval_ms <= 0:
            raise ValueError("Interval schedule without a positive intervalMs")
        schedule.next_run_at = now + schedule.interval_ms
    else:
        schedule.status = "completed"
        schedule.next_run_at = None


class TaskScheduler:
    """Turns due schedules into queued board tasks.

    The daemon calls ``compute_next_runs`` once at start and ``tick`` every
    ``scheduler_tick_interval`` seconds.
    """

    def __init__(
        self,
        store: DocumentStore,
        task_queue: TaskQueue,
        settings: Settings,
        bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._queue = task_queue
        self._settings = settings
        self._bus = bus

    async def compute_next_runs(self, now: int | None = None) -> int:
        """Fill ``nextRunAt`` for active cron schedules missing one.

        Invalid expressions fail the schedule. Returns how many were updated.
        """
        now = now_ms() if now is None else now
        changed = 0
        for schedule_id, doc in (await self._store.load_collection(SCHEDULES)).items():
            schedule = await self._load(schedule_id, doc, now)
            if schedule is None or schedule.status != "active" or schedule.schedule_type != "cron":
                continue
            if not schedule.cron or schedule.next_run_at:
                continue
            try:
                schedule.next_run_at = next_cron_run(schedule.cron, now)
            except ValueError as exc:
                logger.error("Invalid cron for schedule %s: %s", schedule.id, exc)
                schedule.status = "failed"
            schedule.updated_at = now
            await self._store.upsert(SCHEDULES, schedule.id, schedule.to_doc())
            changed += 1
        return changed

    async def tick(self, now: int | None = None) -> int:
        fired = await self._fire_due_tasks(now_ms() if now is None else now)
        if fired:
            logger.info("Fired %d due schedule(s)", fired)
        return fired

    async def next_scheduled_at(self) -> int | None:
        """Earliest ``nextRunAt`` among active schedules."""
        upcoming = [
            doc.get("nextRunAt")
            for doc in (await self._store.load_collection(SCHEDULES)).values()
            if doc.get("status") == "active" and isinstance(doc.get("nextRunAt"), int)
        ]
        return min(upcoming) if upcoming else None

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    async def _fail(self, schedule: Schedule, reason: str, now: int) -> None:
        schedule.status = "failed"
        schedule.updated_at = now
        await self._store.upsert(SCHEDULES, schedule.id, schedule.to_doc())
        logger.error("Schedule %s failed: %s", schedule.id, reason)
        await emit_diagnostic(
            self._bus,
            "schedule_failed",
            f'Schedule failed: "{schedule.name}" ({schedule.id}): {reason}',
            schedule_id=schedule.id,
        )

    async def _load(self, schedule_id: str, doc: dict, now: int) -> Schedule | None:
        """Validate a stored schedule. A malformed one is failed on the spot."""
        try:
            return Schedule.model_validate(doc)
        except ValidationError as exc:
            if doc.get("status") in ("paused", "completed", "failed"):
                return None
            reason = f"invalid schedule record ({exc.error_count()} error(s))"
            await self._store.upsert(SCHEDULES, schedule_id, {**doc, "status": "failed", "updatedAt": now})
            logger.error("Schedule %s failed: %s: %s", schedule_id, reason, exc)
            await emit_diagnostic(
                self._bus,
                "schedule_failed",
                f'Schedule failed: "{doc.get("name") or schedule_id}" ({schedule_id}): {reason}',
                schedule_id=schedule_id,
            )
            return None

    async def _fire_due_tasks(self, now: int) -> int:
        """Fire due schedules. Returns the number of schedules fired."""
        schedules = await self._store.load_collection(SCHEDULES)
        agents = await self._store.load_collection(AGENTS)
        tasks = await self._store.load_collection(TASKS)
        in_flight = {
            doc.get("sourceScheduleKey")
            for doc in tasks.values()
            if doc.get("status") in ("queued", "running") and doc.get("sourceScheduleKey")
        }

        fired = 0
        for schedule_id, doc in schedules.items():
            schedule = await self._load(schedule_id, doc, now)
            if schedule is None or schedule.status != "active":
                continue
            if not schedule.next_run_at or schedule.next_run_at > now:
                continue

            signature = schedule_signature_key(schedule)
            try:
                if signature and signature in in_flight:
                    # Previous run still queued/running: skip this slot
                    advance_schedule(schedule, now)
                    schedule.updated_at = now
                    await self._store.upsert(SCHEDULES, schedule.id, schedule.to_doc())
                    logger.debug("Schedule %s still in flight, advanced without firing", schedule.id)
                    continue

                if schedule.agent_id not in agents:
                    await self._fail(schedule, f"agent {schedule.agent_id} not found", now)
                    continue

                schedule.last_run_at = now
                advance_schedule(schedule, now)
            except ValueError as exc:
                await self._fail(schedule, str(exc), now)
                continue

            schedule.updated_at = now
            await self._store.upsert(SCHEDULES, schedule.id, schedule.to_doc())

            task = BoardTask(
                id=gen_id(4),
                title=f"[Sched] {schedule.name}: {schedule.task_prompt[:40]}",
                description=schedule.task_prompt,
                status="backlog",
                agent_id=schedule.agent_id,
                created_at=now,
                updated_at=now,
                source_type="schedule",
                source_schedule_id=schedule.id,
                source_schedule_name=schedule.name,
                source_schedule_key=signature or None,
                created_in_session_id=schedule.created_in_session_id,
                created_by_agent_id=schedule.created_by_agent_id,
            )
            await self._store.upsert(TASKS, task.id, task.to_doc())
            await self._queue.enqueue(task.id, now)
            if signature:
                in_flight.add(signature)
            fired += 1
            logger.info("Fired schedule %s (%s)", schedule.id, schedule.name)
            await emit_diagnostic(
                self._bus,
                "schedule_fired",
                f'Schedule fired: "{schedule.name}" ({schedule.id}) queued task "{task.title}" ({task.id}).',
                schedule_id=schedule.id,
                task_id=task.id,
            )
        return fired
