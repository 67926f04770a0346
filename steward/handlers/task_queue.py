"""Task Queue -- runs queued board tasks one at a time.

The queue collection holds ``{id, enqueuedAt}`` entries pointing at tasks in
``queued`` status. ``process_next`` drains every runnable entry:

1. Recover orphans (tasks ``queued`` but missing from the queue)
2. Pop the oldest entry whose retry time has passed
3. Resolve the agent; missing agent fails the task for good
4. Mark ``running``, pick a session, run the task prompt and await the reply
5. Success -> ``completed``; failure -> retry with exponential backoff or
   dead-letter once ``maxAttempts`` is spent

``recover_stalled`` (called from the health monitor) retries or dead-letters
``running`` tasks that stopped making progress. Mission tasks mirror a live
mission rather than a run, so they are exempt.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from steward.config import Settings
from steward.events import EventBus
from steward.handlers import emit_diagnostic
from steward.runs.manager import RunRequest, SessionRunManager
from steward.schemas import (
    AgentRecord,
    BoardTask,
    QueueEntry,
    RuntimeSettings,
    Schedule,
    SessionRecord,
    TaskComment,
)
from steward.storage import (
    AGENTS,
    QUEUE,
    SCHEDULES,
    SESSIONS,
    TASKS,
    DocumentStore,
    load_runtime_settings,
)
from steward.utils import clamp_int, gen_id, is_self_cancelled, now_ms

logger = logging.getLogger(__name__)

MAX_RETRY_DELAY_SEC = 6 * 3600


@dataclass
class RetryPolicy:
    max_attempts: int
    backoff_sec: int


@dataclass
class StallReport:
    recovered: int = 0
    dead_lettered: int = 0


class TaskQueue:
    """Persistent FIFO of board tasks with retry and dead-letter handling."""

    def __init__(
        self,
        store: DocumentStore,
        runs: SessionRunManager,
        settings: Settings,
        bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._runs = runs
        self._settings = settings
        self._bus = bus
        self._processing = False

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def _policy(self, task: BoardTask, overrides: RuntimeSettings) -> RetryPolicy:
        default_attempts = clamp_int(
            overrides.default_task_max_attempts, self._settings.default_task_max_attempts, 1, 20
        )
        default_backoff = clamp_int(
            overrides.task_retry_backoff_sec, self._settings.task_retry_backoff_sec, 1, 3600
        )
        return RetryPolicy(
            max_attempts=clamp_int(task.max_attempts, default_attempts, 1, 20),
            backoff_sec=clamp_int(task.retry_backoff_sec, default_backoff, 1, 3600),
        )

    def _apply_policy(self, task: BoardTask, overrides: RuntimeSettings) -> None:
        policy = self._policy(task, overrides)
        task.attempts = max(0, task.attempts)
        task.max_attempts = policy.max_attempts
        task.retry_backoff_sec = policy.backoff_sec

    def _retry_or_dead_letter(self, task: BoardTask, reason: str, now: int) -> str:
        """Count a failed attempt. Returns ``"retry"`` or ``"dead_lettered"``."""
        task.attempts += 1
        max_attempts = task.max_attempts or 1
        if task.attempts < max_attempts:
            delay = min(MAX_RETRY_DELAY_SEC, (task.retry_backoff_sec or 30) * 2 ** max(0, task.attempts - 1))
            task.status = "queued"
            task.retry_scheduled_at = now + delay * 1000
            task.updated_at = now
            task.error = f"Retry scheduled after failure: {reason}"[:500]
            task.comments.append(TaskComment(
                id=gen_id(),
                author="System",
                text=f"Attempt {task.attempts}/{max_attempts} failed. Retrying in {delay}s.\n\nReason: {reason}",
                created_at=now,
            ))
            return "retry"

        task.status = "failed"
        task.dead_lettered_at = now
        task.retry_scheduled_at = None
        task.updated_at = now
        task.error = f"Dead-lettered after {task.attempts}/{max_attempts} attempts: {reason}"[:500]
        task.comments.append(TaskComment(
            id=gen_id(),
            author="System",
            text=f"Task moved to dead-letter after {task.attempts}/{max_attempts} attempts.\n\nReason: {reason}",
            created_at=now,
        ))
        return "dead_lettered"

    # ------------------------------------------------------------------
    # Queue primitives
    # ------------------------------------------------------------------

    async def _load_task(self, task_id: str) -> BoardTask | None:
        doc = await self._store.get(TASKS, task_id)
        return BoardTask.model_validate(doc) if doc else None

    async def _save_task(self, task: BoardTask) -> None:
        await self._store.upsert(TASKS, task.id, task.to_doc())

    async def _push(self, task_id: str, now: int) -> None:
        if await self._store.get(QUEUE, task_id) is None:
            await self._store.upsert(QUEUE, task_id, QueueEntry(id=task_id, enqueued_at=now).to_doc())

    async def _owner_user(self, task: BoardTask) -> str | None:
        """User scope of the session the task was created in, if any."""
        if not task.created_in_session_id:
            return None
        doc = await self._store.get(SESSIONS, task.created_in_session_id)
        user = (doc or {}).get("user")
        return (user.strip() or None) if isinstance(user, str) else None

    async def enqueue(self, task_id: str, now: int | None = None) -> bool:
        """Mark a task queued and append it to the queue. False if it doesn't exist."""
        now = now_ms() if now is None else now
        task = await self._load_task(task_id)
        if task is None:
            return False
        self._apply_policy(task, await load_runtime_settings(self._store))
        task.status = "queued"
        task.queued_at = now
        task.retry_scheduled_at = None
        task.updated_at = now
        await self._save_task(task)
        await self._push(task_id, now)
        await emit_diagnostic(
            self._bus,
            "task_queued",
            f'Task queued: "{task.title}" ({task.id})',
            user=await self._owner_user(task),
            task_id=task.id,
        )
        return True

    async def queue_length(self) -> int:
        return len(await self._store.load_collection(QUEUE))

    async def has_pending(self) -> bool:
        return await self.queue_length() > 0

    async def _recover_orphans(self, now: int) -> int:
        tasks = await self._store.load_collection(TASKS)
        queue = await self._store.load_collection(QUEUE)
        recovered = 0
        for task_id, doc in tasks.items():
            if doc.get("status") == "queued" and task_id not in queue:
                logger.info("Recovering orphaned queued task %s (%s)", task_id, doc.get("title"))
                await self._push(task_id, now)
                recovered += 1
        return recovered

    async def _dequeue_runnable(self, now: int) -> BoardTask | None:
        """Drop stale entries, then pop the oldest runnable task."""
        queue = await self._store.load_collection(QUEUE)
        tasks = await self._store.load_collection(TASKS)
        entries = sorted(queue.values(), key=lambda e: (e.get("enqueuedAt") or 0, e.get("id", "")))
        for entry in entries:
            task_id = entry.get("id", "")
            doc = tasks.get(task_id)
            if doc is None or doc.get("status") != "queued":
                await self._store.delete(QUEUE, task_id)
                continue
            retry_at = doc.get("retryScheduledAt")
            if isinstance(retry_at, int) and retry_at > now:
                continue
            await self._store.delete(QUEUE, task_id)
            return BoardTask.model_validate(doc)
        return None

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_next(self, now: int | None = None) -> int:
        """Run every runnable queued task. Returns how many were started.

        Re-entrant calls return 0 immediately.
        """
        if self._processing:
            return 0
        self._processing = True
        started = 0
        try:
            await self._recover_orphans(now_ms() if now is None else now)
            while True:
                tick_now = now_ms() if now is None else now
                task = await self._dequeue_runnable(tick_now)
                if task is None:
                    break
                if await self._run_task(task, tick_now):
                    started += 1
        finally:
            self._processing = False
        return started

    async def _resolve_session(self, task: BoardTask, agent: AgentRecord, now: int) -> str:
        """Reuse the schedule's last session, else create an orchestrated one."""
        schedule: Schedule | None = None
        session_id = ""
        if task.source_type == "schedule" and task.source_schedule_id:
            doc = await self._store.get(SCHEDULES, task.source_schedule_id)
            schedule = Schedule.model_validate(doc) if doc else None
            if schedule and schedule.last_session_id:
                if await self._store.get(SESSIONS, schedule.last_session_id) is not None:
                    session_id = schedule.last_session_id

        if not session_id:
            session = SessionRecord(
                id=gen_id(),
                name=task.title,
                agent_id=agent.id,
                session_type="orchestrated",
                tools=list(agent.tools),
                parent_session_id=agent.thread_session_id,
                created_at=now,
                last_active_at=now,
            )
            await self._store.upsert(SESSIONS, session.id, session.to_doc())
            session_id = session.id

        if schedule is not None and schedule.last_session_id != session_id:
            schedule.last_session_id = session_id
            schedule.updated_at = now
            await self._store.upsert(SCHEDULES, schedule.id, schedule.to_doc())
        return session_id

    async def _run_task(self, task: BoardTask, now: int) -> bool:
        user = await self._owner_user(task)
        agent_doc = await self._store.get(AGENTS, task.agent_id)
        if agent_doc is None:
            task.status = "failed"
            task.dead_lettered_at = now
            task.error = f"Agent {task.agent_id} not found"
            task.updated_at = now
            await self._save_task(task)
            await emit_diagnostic(
                self._bus,
                "task_failed",
                f'Task failed: "{task.title}" ({task.id}): agent not found.',
                user=user,
                task_id=task.id,
            )
            return False
        agent = AgentRecord.model_validate(agent_doc)

        self._apply_policy(task, await load_runtime_settings(self._store))
        session_id = await self._resolve_session(task, agent, now)
        task.status = "running"
        task.started_at = now
        task.retry_scheduled_at = None
        task.dead_lettered_at = None
        task.error = None
        task.session_id = session_id
        task.updated_at = now
        await self._save_task(task)
        await emit_diagnostic(
            self._bus,
            "task_running",
            f'Task running: "{task.title}" ({task.id}) with {agent.name or agent.id}',
            user=user,
            task_id=task.id,
        )
        logger.info("Running task %s (%s) with agent %s", task.id, task.title[:80], agent.id)

        request = RunRequest(
            session_id=session_id,
            message=task.description or task.title,
            mode="followup",
            source="task",
            internal=False,
        )
        try:
            handle = self._runs.enqueue(request)
            reply = await handle.future
        except asyncio.CancelledError:
            if is_self_cancelled():
                raise
            # Session stopped under us: only this run is lost
            await self._on_failure(task.id, agent, "Run cancelled", user)
            return True
        except Exception as exc:
            await self._on_failure(task.id, agent, f"{exc}"[:500] or "Unknown error", user)
            return True

        await self._on_success(task.id, agent, reply or "", user)
        return True

    async def _on_success(self, task_id: str, agent: AgentRecord, reply: str, user: str | None) -> None:
        now = now_ms()
        task = await self._load_task(task_id)
        if task is None:
            return
        task.status = "completed"
        task.completed_at = now
        task.retry_scheduled_at = None
        task.error = None
        task.result = reply[:4000] or None
        task.updated_at = now
        task.comments.append(TaskComment(
            id=gen_id(),
            author=agent.name or agent.id,
            text=f"Task completed.\n\n{reply[:1000] or 'No summary provided.'}",
            created_at=now,
        ))
        await self._save_task(task)
        await self._disable_session_heartbeat(task.session_id, now)
        await emit_diagnostic(
            self._bus, "task_completed", f'Task completed: "{task.title}" ({task.id})', user=user, task_id=task.id
        )
        logger.info("Task %s completed", task.id)

    async def _on_failure(self, task_id: str, agent: AgentRecord, reason: str, user: str | None) -> None:
        now = now_ms()
        task = await self._load_task(task_id)
        if task is None:
            return
        logger.warning("Task %s failed: %s", task_id, reason)
        self._apply_policy(task, await load_runtime_settings(self._store))
        outcome = self._retry_or_dead_letter(task, reason, now)
        await self._save_task(task)
        await self._disable_session_heartbeat(task.session_id, now)
        if outcome == "retry":
            await self._push(task.id, now)
            await emit_diagnostic(
                self._bus,
                "task_retry_scheduled",
                f'Task retry scheduled: "{task.title}" ({task.id}) attempt {task.attempts}/{task.max_attempts}.',
                user=user,
                task_id=task.id,
            )
            return
        await emit_diagnostic(
            self._bus,
            "task_failed",
            f'Task failed: "{task.title}" ({task.id}): {reason[:200]}',
            user=user,
            task_id=task.id,
        )
        await emit_diagnostic(
            self._bus,
            "task_dead_lettered",
            f'Task dead-lettered: "{task.title}" ({task.id}) after {task.attempts} attempt(s).',
            user=user,
            task_id=task.id,
        )

    async def _disable_session_heartbeat(self, session_id: str | None, now: int) -> None:
        """A finished task's session no longer needs heartbeats."""
        if not session_id:
            return
        doc = await self._store.get(SESSIONS, session_id)
        if doc is None or doc.get("heartbeatEnabled") is False:
            return
        doc["heartbeatEnabled"] = False
        doc["lastActiveAt"] = now
        await self._store.upsert(SESSIONS, session_id, doc)
        logger.debug("Disabled heartbeat on session %s (task finished)", session_id)

    # ------------------------------------------------------------------
    # Stall recovery
    # ------------------------------------------------------------------

    async def recover_stalled(self, now: int | None = None) -> StallReport:
        """Retry or dead-letter running tasks without progress for the stall timeout."""
        now = now_ms() if now is None else now
        overrides = await load_runtime_settings(self._store)
        stall_min = clamp_int(
            overrides.task_stall_timeout_min, self._settings.task_stall_timeout_min, 5, 24 * 60
        )
        stale_ms = stall_min * 60_000
        report = StallReport()

        for doc in (await self._store.load_collection(TASKS)).values():
            if doc.get("status") != "running" or doc.get("sourceType") == "mission":
                continue
            task = BoardTask.model_validate(doc)
            since = max(task.updated_at or 0, task.started_at or 0)
            if not since or now - since < stale_ms:
                continue

            self._apply_policy(task, overrides)
            reason = f"Detected stalled run after {stall_min}m without progress"
            outcome = self._retry_or_dead_letter(task, reason, now)
            await self._save_task(task)
            await self._disable_session_heartbeat(task.session_id, now)
            user = await self._owner_user(task)
            if outcome == "retry":
                await self._push(task.id, now)
                report.recovered += 1
                await emit_diagnostic(
                    self._bus,
                    "task_stall_recovered",
                    f'Recovered stalled task "{task.title}" ({task.id}) and requeued attempt '
                    f"{task.attempts}/{task.max_attempts}.",
                    user=user,
                    task_id=task.id,
                )
            else:
                report.dead_lettered += 1
                await emit_diagnostic(
                    self._bus,
                    "task_dead_lettered",
                    f'Task dead-lettered after stalling: "{task.title}" ({task.id}).',
                    user=user,
                    task_id=task.id,
                )
        if report.recovered or report.dead_lettered:
            logger.warning(
                "Stall recovery: %d requeued, %d dead-lettered", report.recovered, report.dead_lettered
            )
        return report
