"""Session Run Manager -- serializes session turns per session.

Every session gets a lane: a FIFO of pending runs drained by one asyncio
worker, so two turns of the same session never run at once while different
sessions run concurrently.

Enqueue semantics:
- ``dedupe_key``: a pending or running run with the same key absorbs the new
  request and its handle is returned instead.
- ``collect`` mode: the message is merged into a pending collect run of the
  same session rather than queued as a separate turn.
- ``followup`` mode: always queued as its own turn.

After each run the result hook (the mission loop) sees the outcome and may
ask for a delayed follow-up, which is scheduled with ``enqueue_later``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal

from steward.config import Settings
from steward.mission.contract import strip_meta_for_persistence
from steward.runs.executor import SessionExecutor
from steward.utils import gen_id

logger = logging.getLogger(__name__)

RunMode = Literal["collect", "followup"]


@dataclass
class RunRequest:
    session_id: str
    message: str
    mode: RunMode = "followup"
    source: str = "chat"
    internal: bool = False
    dedupe_key: str | None = None
    model_override: str | None = None


@dataclass
class RunHandle:
    """Returned by ``enqueue``. ``future`` resolves to the reply text."""

    run_id: str
    future: asyncio.Future
    deduped: bool = False


@dataclass
class RunResult:
    """What the result hook sees once a run finishes."""

    run_id: str
    request: RunRequest
    text: str = ""
    error: str | None = None
    tool_events: list[dict[str, Any]] = field(default_factory=list)

    @property
    def session_id(self) -> str:
        return self.request.session_id


@dataclass
class DelayedRun:
    """A follow-up turn to enqueue after ``delay_sec``."""

    request: RunRequest
    delay_sec: float


@dataclass
class RunState:
    running_run_id: str | None = None
    queued: int = 0


ResultHook = Callable[[RunResult], Awaitable[DelayedRun | None]]


@dataclass
class _PendingRun:
    run_id: str
    request: RunRequest
    future: asyncio.Future


@dataclass
class _Lane:
    pending: deque[_PendingRun] = field(default_factory=deque)
    running: _PendingRun | None = None
    worker: asyncio.Task | None = None
    last_active: float = field(default_factory=time.monotonic)


def _mark_retrieved(future: asyncio.Future) -> None:
    # Fire-and-forget callers never await; keep asyncio from warning about it
    if not future.cancelled():
        future.exception()


class SessionRunManager:
    """Per-session serial run lanes with dedupe, delays and cancellation."""

    def __init__(
        self,
        executor: SessionExecutor,
        settings: Settings,
        *,
        on_result: ResultHook | None = None,
    ) -> None:
        self._executor = executor
        self._settings = settings
        self._on_result = on_result
        self._lanes: dict[str, _Lane] = {}
        self._delayed: dict[str, dict[str, asyncio.Task]] = {}

    def set_result_hook(self, hook: ResultHook | None) -> None:
        self._on_result = hook

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(self, request: RunRequest) -> RunHandle:
        """Queue a run for its session and return a handle to its reply."""
        lane = self._lanes.get(request.session_id)
        if lane is None:
            lane = self._lanes[request.session_id] = _Lane()
        lane.last_active = time.monotonic()

        if request.dedupe_key:
            candidates = list(lane.pending)
            if lane.running is not None:
                candidates.append(lane.running)
            for existing in candidates:
                if existing.request.dedupe_key == request.dedupe_key:
                    logger.debug(
                        "Run for session %s deduped on %s", request.session_id, request.dedupe_key
                    )
                    return RunHandle(existing.run_id, existing.future, deduped=True)

        if request.mode == "collect":
            for existing in lane.pending:
                if existing.request.mode == "collect":
                    existing.request.message = f"{existing.request.message}\n\n{request.message}"
                    return RunHandle(existing.run_id, existing.future, deduped=True)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_mark_retrieved)
        run = _PendingRun(run_id=gen_id(), request=request, future=future)
        lane.pending.append(run)

        if lane.worker is None or lane.worker.done():
            lane.worker = asyncio.create_task(
                self._drain(request.session_id, lane), name=f"session-run-{request.session_id}"
            )
        return RunHandle(run.run_id, future)

    def enqueue_later(self, request: RunRequest, delay_sec: float) -> None:
        """Enqueue after a delay. A later call with the same dedupe key replaces it."""
        key = request.dedupe_key or gen_id()
        per_session = self._delayed.setdefault(request.session_id, {})
        previous = per_session.pop(key, None)
        if previous is not None:
            previous.cancel()
        per_session[key] = asyncio.create_task(
            self._fire_later(request, key, delay_sec), name=f"session-delay-{key}"
        )

    async def _fire_later(self, request: RunRequest, key: str, delay_sec: float) -> None:
        try:
            await asyncio.sleep(delay_sec)
        except asyncio.CancelledError:
            return
        per_session = self._delayed.get(request.session_id, {})
        per_session.pop(key, None)
        if not per_session:
            self._delayed.pop(request.session_id, None)
        self.enqueue(request)

    # ------------------------------------------------------------------
    # State and cancellation
    # ------------------------------------------------------------------

    def get_run_state(self, session_id: str) -> RunState:
        lane = self._lanes.get(session_id)
        if lane is None:
            return RunState()
        running = lane.running.run_id if lane.running else None
        return RunState(running_run_id=running, queued=len(lane.pending))

    def has_delayed(self, session_id: str) -> bool:
        return bool(self._delayed.get(session_id))

    def cancel_session(self, session_id: str) -> int:
        """Abort the running run, queued runs and delayed follow-ups of a session.

        Returns how many runs or delayed follow-ups were cancelled.
        """
        cancelled = 0
        for task in self._delayed.pop(session_id, {}).values():
            task.cancel()
            cancelled += 1

        lane = self._lanes.get(session_id)
        if lane is None:
            return cancelled
        while lane.pending:
            run = lane.pending.popleft()
            run.future.cancel()
            cancelled += 1
        if lane.worker is not None and not lane.worker.done():
            if lane.running is not None:
                cancelled += 1
            lane.worker.cancel()
        if cancelled:
            logger.info("Cancelled %d run(s) for session %s", cancelled, session_id)
        return cancelled

    def sweep_idle(self, max_age_sec: float) -> int:
        """Drop lanes that have been empty longer than ``max_age_sec``."""
        now = time.monotonic()
        evicted = 0
        for session_id, lane in list(self._lanes.items()):
            busy = lane.running is not None or lane.pending
            if busy or (lane.worker is not None and not lane.worker.done()):
                continue
            if session_id in self._delayed:
                continue
            if now - lane.last_active >= max_age_sec:
                del self._lanes[session_id]
                evicted += 1
        return evicted

    @property
    def lane_count(self) -> int:
        return len(self._lanes)

    async def shutdown(self) -> None:
        """Cancel everything and wait for workers to exit."""
        workers = [lane.worker for lane in self._lanes.values() if lane.worker is not None]
        for session_id in list(self._lanes) + list(self._delayed):
            self.cancel_session(session_id)
        for worker in workers:
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._lanes.clear()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _drain(self, session_id: str, lane: _Lane) -> None:
        """Run pending turns of one session, one at a time."""
        while lane.pending:
            run = lane.pending.popleft()
            lane.running = run
            try:
                result = await self._execute(run)
                lane.running = None
                lane.last_active = time.monotonic()
                await self._after_run(run, result)
            except asyncio.CancelledError:
                if not run.future.done():
                    run.future.cancel()
                lane.running = None
                raise

    async def _execute(self, run: _PendingRun) -> RunResult:
        request = run.request
        try:
            outcome = await asyncio.wait_for(
                self._executor.run(request), timeout=self._settings.run_timeout
            )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.warning(
                "Run %s for session %s timed out after %ds",
                run.run_id,
                request.session_id,
                self._settings.run_timeout,
            )
            return RunResult(
                run.run_id, request, error=f"Run timed out after {self._settings.run_timeout}s"
            )
        except Exception as exc:
            logger.warning("Run %s for session %s failed: %s", run.run_id, request.session_id, exc)
            return RunResult(run.run_id, request, error=f"{type(exc).__name__}: {exc}")
        return RunResult(run.run_id, request, text=outcome.text, tool_events=outcome.tool_events)

    async def _after_run(self, run: _PendingRun, result: RunResult) -> None:
        if self._on_result is not None:
            try:
                followup = await self._on_result(result)
                if followup is not None:
                    self.enqueue_later(followup.request, followup.delay_sec)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Run result hook failed for session %s", result.session_id)

        if run.future.done():
            return
        if result.error:
            run.future.set_exception(RuntimeError(result.error))
        elif result.request.internal:
            run.future.set_result(strip_meta_for_persistence(result.text))
        else:
            run.future.set_result(result.text)
