"""Mission Loop -- the state machine behind every main session.

Each finished run of a main session lands in ``handle_run_result``:

- external (user) input updates the goal and goal contract, resets the
  follow-up chain and, in autonomous mode, schedules a kickoff follow-up
- internal output (heartbeat ticks, follow-ups) is parsed for the meta
  contract; a valid META line drives status/summary/next action and may
  request a delayed follow-up, a missing one is counted and the state is
  inferred from the plain text
- errors block the mission

After every update the mission task mirrors the state onto the task board and
a mission memory note is written when due. Diagnostic events from the rest
of the daemon are folded into each main session's pending events.

Non-main sessions only get their ``[AGENT_HEARTBEAT_META]`` reports applied
to the owning agent.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic.alias_generators import to_camel

from steward.config import Settings
from steward.events import Event
from steward.mission.contract import (
    ParsedContract,
    merge_goal_contracts,
    parse_agent_heartbeat_meta,
    parse_contract,
    parse_goal_contract_from_text,
)
from steward.mission.gates import ArtifactEvidenceGate, CompletionGate
from steward.mission.prompts import (
    build_followup_prompt,
    build_heartbeat_prompt,
    goal_contract_lines,
    infer_goal_from_message,
)
from steward.mission.state import (
    MainLoopState,
    append_event,
    append_timeline,
    append_working_memory_note,
    compute_momentum_score,
    consume_events,
    normalize_state,
    prune_events,
)
from steward.runs.manager import DelayedRun, RunRequest, RunResult
from steward.schemas import AgentRecord, BoardTask, MemoryNote, SessionRecord
from steward.storage import AGENTS, MEMORIES, SESSIONS, TASKS, DocumentStore
from steward.utils import gen_id, now_ms, to_one_line

logger = logging.getLogger(__name__)

MAX_FOLLOWUP_CHAIN = 6
KICKOFF_DELAY_SEC = 1.5
MISSION_TASK_PREFIX = "Mission:"

_STATUS_TO_TASK = {
    "idle": "backlog",
    "progress": "running",
    "blocked": "failed",
    "ok": "completed",
}


class MissionLoop:
    """Drives main-session missions from run results and diagnostic events."""

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings,
        gate: CompletionGate | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._gate: CompletionGate = gate or ArtifactEvidenceGate()

    # ------------------------------------------------------------------
    # Session helpers
    # ------------------------------------------------------------------

    def is_main_session(self, session: SessionRecord | dict[str, Any] | None) -> bool:
        if session is None:
            return False
        name = session.get("name") if isinstance(session, dict) else session.name
        return isinstance(name, str) and name.strip() == self._settings.main_session_name

    async def _load_session(self, session_id: str) -> SessionRecord | None:
        doc = await self._store.get(SESSIONS, session_id)
        return SessionRecord.model_validate(doc) if doc else None

    async def _save_state(self, session_id: str, state: MainLoopState) -> None:
        # Re-read so concurrent edits to other session fields survive
        doc = await self._store.get(SESSIONS, session_id)
        if doc is None:
            return
        doc["mainLoopState"] = state.to_doc()
        await self._store.upsert(SESSIONS, session_id, doc)

    # ------------------------------------------------------------------
    # Operator access
    # ------------------------------------------------------------------

    async def get_state(self, session_id: str) -> MainLoopState | None:
        session = await self._load_session(session_id)
        if session is None or not self.is_main_session(session):
            return None
        return normalize_state(session.main_loop_state)

    async def set_state(self, session_id: str, patch: dict[str, Any]) -> MainLoopState | None:
        """Apply an operator patch (pause, autonomy mode, goal, ...).

        Keys may be snake_case or camelCase; None clears a field.
        """
        session = await self._load_session(session_id)
        if session is None or not self.is_main_session(session):
            return None
        now = now_ms()
        doc = normalize_state(session.main_loop_state, now).to_doc()
        for key, value in patch.items():
            doc[to_camel(key)] = value
        state = normalize_state(doc, now)
        state.updated_at = now
        await self._save_state(session_id, state)
        return state

    # ------------------------------------------------------------------
    # Diagnostic events
    # ------------------------------------------------------------------

    async def on_diagnostic(self, event: Event) -> None:
        """Event bus handler."""
        await self.push_event(event.type, event.text, user=event.user)

    async def push_event(self, event_type: str, text: str, user: str | None = None) -> int:
        """Append an event to every main session (of ``user``, when given).

        Returns how many sessions received it.
        """
        if not to_one_line(text):
            return 0
        now = now_ms()
        sessions = await self._store.load_collection(SESSIONS)
        changed = 0
        for session_id, doc in sessions.items():
            if not self.is_main_session(doc):
                continue
            if user and doc.get("user") and doc.get("user") != user:
                continue
            state = normalize_state(doc.get("mainLoopState"), now)
            if not append_event(state, event_type or "event", text, now):
                continue
            append_timeline(state, event_type or "event", text, now, state.status)
            state.momentum_score = compute_momentum_score(state)
            state.updated_at = now
            await self._save_state(session_id, state)
            changed += 1
        if changed:
            logger.info("Queued %s event for %d main session(s)", event_type, changed)
        return changed

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def build_heartbeat_prompt(self, session: SessionRecord, fallback_prompt: str, now: int | None = None) -> str:
        now = now_ms() if now is None else now
        state = normalize_state(session.main_loop_state, now)
        return build_heartbeat_prompt(session, state, fallback_prompt, now)

    # ------------------------------------------------------------------
    # Run results
    # ------------------------------------------------------------------

    async def handle_run_result(self, result: RunResult) -> DelayedRun | None:
        """Fold a finished run into mission state. Returns a follow-up to schedule."""
        session = await self._load_session(result.session_id)
        if session is None:
            return None
        if not self.is_main_session(session):
            await self._handle_agent_heartbeat(session, result)
            return None

        request = result.request
        now = now_ms()
        state = normalize_state(session.main_loop_state, now)
        state.pending_events = prune_events(state.pending_events, now)
        has_memory = "memory" in session.tools
        force_note = False

        user_goal = None
        user_contract = None
        if not request.internal:
            user_goal = infer_goal_from_message(request.message)
            user_contract = parse_goal_contract_from_text(user_goal) if user_goal else None
            if user_goal:
                state.goal = user_goal
                state.goal_contract = merge_goal_contracts(state.goal_contract, user_contract)
                state.status = "progress"
                append_event(state, "user_instruction", f"User goal updated: {user_goal}", now)
                append_timeline(state, "user_goal", f"Goal updated: {user_goal}", now, state.status)
                append_working_memory_note(state, f"goal:{user_goal}")
                force_note = True
            state.followup_chain_count = 0

        if state.paused and request.internal:
            append_timeline(
                state,
                "paused_skip",
                f"Skipped internal tick from {request.source} because mission is paused.",
                now,
                state.status,
            )
            state.momentum_score = compute_momentum_score(state)
            state.updated_at = now
            await self._save_state(session.id, state)
            return None

        if result.error:
            append_event(state, "run_error", f"Run error ({request.source}): {to_one_line(result.error, 400)}", now)
            append_timeline(
                state, "run_error", f"Run error ({request.source}): {to_one_line(result.error, 220)}", now, "blocked"
            )
            state.status = "blocked"
            append_working_memory_note(state, f"blocked:{to_one_line(result.error, 120)}")
            force_note = True

        for tool_event in result.tool_events:
            if not tool_event.get("error"):
                continue
            name = tool_event.get("name") or "unknown"
            detail = tool_event.get("output") or tool_event.get("input") or "unknown error"
            append_event(state, "tool_error", f"Tool {name} error: {to_one_line(str(detail), 400)}", now)
            append_timeline(state, "tool_error", f"Tool {name} error encountered.", now, "blocked")
            force_note = True

        followup: DelayedRun | None = None
        if (
            not request.internal
            and not result.error
            and user_goal
            and not state.paused
            and state.autonomy_mode == "autonomous"
        ):
            followup = self._followup(
                session.id, state, has_memory, KICKOFF_DELAY_SEC, f"main-loop-user-kickoff:{session.id}"
            )
            append_timeline(state, "followup", "Queued autonomous kickoff follow-up from new user goal.", now, state.status)

        if request.internal:
            parsed = parse_contract((result.text or "").strip())
            force_note = self._apply_internal_reply(state, parsed, result, now) or force_note
            followup = self._chain_followup(session.id, state, parsed, result, has_memory, now) or followup

        if request.internal and state.status == "ok":
            reason = self._gate.check(session, state, result.text)
            if reason:
                state.status = "progress"
                if not state.next_action or state.next_action.lower().startswith("no queued action"):
                    state.next_action = "Wait for the next run and verify the required artifact is delivered."
                append_event(state, "completion_gate", reason, now)
                append_timeline(state, "completion_gate", "Holding completion until artifact evidence is observed.", now, state.status)
                append_working_memory_note(state, f"gate:{to_one_line(reason, 180)}")

        if state.status in ("ok", "blocked") and request.internal:
            force_note = True

        state.mission_task_id = await self.upsert_mission_task(session, state, now)
        state.momentum_score = compute_momentum_score(state)
        await self.maybe_store_memory_note(session, state, now, request.source, force=force_note)
        state.momentum_score = compute_momentum_score(state)
        state.updated_at = now
        await self._save_state(session.id, state)
        return followup

    def _apply_internal_reply(
        self, state: MainLoopState, parsed: ParsedContract, result: RunResult, now: int
    ) -> bool:
        """Apply plan/review/meta tags of an internal reply. Returns True to force a memory note."""
        text = (result.text or "").strip()
        state.last_tick_at = now

        if parsed.plan:
            if parsed.plan.steps:
                state.plan_steps = parsed.plan.steps
                state.last_planned_at = now
                append_working_memory_note(state, f"plan:{' -> '.join(parsed.plan.steps)}")
            if parsed.plan.current_step:
                state.current_plan_step = parsed.plan.current_step
                state.last_planned_at = now
            suffix = f" at step: {parsed.plan.current_step}" if parsed.plan.current_step else ""
            append_timeline(state, "plan", f"Plan updated{suffix}.", now, state.status)

        if parsed.review:
            review = parsed.review
            if review.note:
                state.review_note = review.note
                append_working_memory_note(state, f"review:{review.note}")
            if review.confidence is not None:
                state.review_confidence = review.confidence
            state.last_reviewed_at = now
            if review.needs_replan is True and state.plan_steps:
                append_event(state, "review_replan", "Execution review requested replanning.", now)
            append_timeline(state, "review", review.note or "Execution review updated.", now, state.status)

        meta = parsed.meta
        if meta:
            state.meta_miss_count = 0
            goal_changed = False
            if meta.goal:
                goal_changed = meta.goal != state.goal
                state.goal = meta.goal
                state.goal_contract = merge_goal_contracts(
                    state.goal_contract, parse_goal_contract_from_text(meta.goal)
                )
            if meta.status:
                state.status = meta.status
            if meta.summary:
                state.summary = meta.summary
                append_working_memory_note(state, f"summary:{to_one_line(meta.summary, 180)}")
            if meta.next_action:
                state.next_action = meta.next_action
                append_working_memory_note(state, f"next:{to_one_line(meta.next_action, 180)}")
            append_timeline(
                state,
                "meta",
                f"Meta update: status={meta.status or state.status}; "
                f"summary={to_one_line(meta.summary or state.summary or 'none', 140)}",
                now,
                meta.status or state.status,
            )
            consume_events(state, meta.consume_event_ids)
            return goal_changed

        if text and not parsed.heartbeat_ok:
            state.meta_miss_count = min(100, state.meta_miss_count + 1)
            state.summary = to_one_line(text, 700)
            append_working_memory_note(state, f"inferred:{to_one_line(text, 160)}")
            if state.status == "idle":
                state.status = "progress"
            append_event(
                state, "meta_missing", "Main-loop reply missing [MAIN_LOOP_META] contract; state inferred from text.", now
            )
            append_timeline(state, "meta_missing", "Missing [MAIN_LOOP_META]; inferred state from plain text.", now, state.status)
        elif parsed.heartbeat_ok:
            state.meta_miss_count = 0
            state.followup_chain_count = 0
            append_timeline(state, "heartbeat_ok", "Heartbeat returned HEARTBEAT_OK.", now, state.status)
        return False

    def _chain_followup(
        self,
        session_id: str,
        state: MainLoopState,
        parsed: ParsedContract,
        result: RunResult,
        has_memory: bool,
        now: int,
    ) -> DelayedRun | None:
        meta = parsed.meta
        if meta is None:
            return None
        if (
            meta.follow_up is True
            and not result.error
            and not parsed.heartbeat_ok
            and not state.paused
            and state.followup_chain_count < MAX_FOLLOWUP_CHAIN
        ):
            state.followup_chain_count += 1
            append_timeline(state, "followup", f"Queued chained follow-up in {meta.delay_sec}s.", now, state.status)
            return self._followup(
                session_id, state, has_memory, meta.delay_sec, f"main-loop-followup:{session_id}"
            )
        if meta.follow_up is False or parsed.heartbeat_ok:
            state.followup_chain_count = 0
        return None

    def _followup(
        self,
        session_id: str,
        state: MainLoopState,
        has_memory: bool,
        delay_sec: float,
        dedupe_key: str,
    ) -> DelayedRun:
        request = RunRequest(
            session_id=session_id,
            message=build_followup_prompt(state, has_memory=has_memory),
            mode="followup",
            source="main-loop-followup",
            internal=True,
            dedupe_key=dedupe_key,
        )
        return DelayedRun(request=request, delay_sec=delay_sec)

    # ------------------------------------------------------------------
    # Mission task
    # ------------------------------------------------------------------

    async def upsert_mission_task(self, session: SessionRecord, state: MainLoopState, now: int) -> str | None:
        """Mirror the mission onto its board task. Returns the task id."""
        if not state.goal:
            return state.mission_task_id

        tasks = await self._store.load_collection(TASKS)
        doc = tasks.get(state.mission_task_id) if state.mission_task_id else None
        if doc is None:
            doc = next(
                (
                    t for t in tasks.values()
                    if t.get("sessionId") == session.id
                    and str(t.get("title", "")).startswith(MISSION_TASK_PREFIX)
                    and t.get("status") != "archived"
                ),
                None,
            )

        status = _STATUS_TO_TASK[state.status]
        gate_reason = self._gate.check(session, state) if status == "completed" else None
        if gate_reason:
            status = "running"

        detail = [
            "Autonomous mission goal tracked from main loop.",
            f"Goal: {state.goal}",
            f"Next action: {state.next_action}" if state.next_action else "",
            f"Completion gate: {gate_reason}" if gate_reason else "",
            *goal_contract_lines(state),
            f"plan_steps: {' -> '.join(state.plan_steps)}" if state.plan_steps else "",
            f"current_plan_step: {state.current_plan_step}" if state.current_plan_step else "",
            f"latest_review: {state.review_note}" if state.review_note else "",
        ]
        description = "\n".join(line for line in detail if line)
        title = f"{MISSION_TASK_PREFIX} {state.goal[:140]}"
        error = (state.summary or state.next_action or "Blocked") if status == "failed" else None

        if doc is None:
            task = BoardTask(
                id=gen_id(),
                title=title,
                description=description,
                status=status,
                agent_id=session.agent_id or "default",
                session_id=session.id,
                result=state.summary,
                error=error,
                created_at=now,
                updated_at=now,
                started_at=now if status == "running" else None,
                completed_at=now if status == "completed" else None,
                source_type="mission",
            )
            await self._store.upsert(TASKS, task.id, task.to_doc())
            logger.info("Created mission task %s for session %s", task.id, session.id)
            return task.id

        task = BoardTask.model_validate(doc)
        before = task.to_doc()
        task.title = title
        task.description = description
        task.source_type = "mission"
        if task.status != status:
            task.status = status
            if status == "running" and not task.started_at:
                task.started_at = now
            if status == "completed":
                task.completed_at = now
        task.result = state.summary or task.result
        task.error = error
        if task.to_doc() != before:
            task.updated_at = now
            await self._store.upsert(TASKS, task.id, task.to_doc())
        return task.id

    # ------------------------------------------------------------------
    # Memory notes
    # ------------------------------------------------------------------

    async def maybe_store_memory_note(
        self,
        session: SessionRecord,
        state: MainLoopState,
        now: int,
        source: str,
        *,
        force: bool = False,
    ) -> bool:
        """Write a ``mission`` memory note when due. Returns True if written."""
        if "memory" not in session.tools or not state.goal:
            return False
        min_interval_ms = self._settings.memory_note_min_interval_sec * 1000
        if not force and state.last_memory_note_at and now - state.last_memory_note_at < min_interval_ms:
            return False

        title = f"Mission {state.status}: {state.goal[:72]}"
        lines = [
            f"source: {source}",
            f"status: {state.status}",
            f"momentum: {state.momentum_score}/100",
            f"goal: {state.goal}",
            *goal_contract_lines(state),
            f"plan_steps: {' -> '.join(state.plan_steps)}" if state.plan_steps else "",
            f"current_plan_step: {state.current_plan_step}" if state.current_plan_step else "",
            f"summary: {state.summary or 'No summary'}",
            f"next_action: {state.next_action or 'No next action'}",
            f"review: {state.review_note}" if state.review_note else "",
            f"review_confidence: {state.review_confidence}" if state.review_confidence is not None else "",
            f"mission_task_id: {state.mission_task_id}" if state.mission_task_id else "",
        ]
        content = "\n".join(line for line in lines if line)

        try:
            notes = await self._store.load_collection(MEMORIES)
            latest = max(
                (
                    n for n in notes.values()
                    if n.get("sessionId") == session.id and n.get("category") == "mission"
                ),
                key=lambda n: n.get("createdAt") or 0,
                default=None,
            )
            if (
                latest is not None
                and to_one_line(latest.get("title"), 10_000) == to_one_line(title, 10_000)
                and to_one_line(latest.get("content"), 10_000) == to_one_line(content, 10_000)
            ):
                state.last_memory_note_at = now
                return False
            note = MemoryNote(
                id=gen_id(),
                agent_id=session.agent_id,
                session_id=session.id,
                category="mission",
                title=title,
                content=content,
                created_at=now,
            )
            await self._store.upsert(MEMORIES, note.id, note.to_doc())
        except Exception as exc:
            logger.warning("Failed to store mission memory note for %s: %s", session.id, exc)
            append_event(
                state, "memory_note_error", f"Failed to store mission memory note: {to_one_line(str(exc), 240)}", now
            )
            return False
        state.last_memory_note_at = now
        return True

    # ------------------------------------------------------------------
    # Agent heartbeats (non-main sessions)
    # ------------------------------------------------------------------

    async def _handle_agent_heartbeat(self, session: SessionRecord, result: RunResult) -> None:
        if not result.request.internal or result.request.source != "heartbeat":
            return
        if not session.agent_id or not (result.text or "").strip():
            return
        meta = parse_agent_heartbeat_meta(result.text)
        if meta is None:
            return
        doc = await self._store.get(AGENTS, session.agent_id)
        if doc is None:
            return
        agent = AgentRecord.model_validate(doc)
        changed = False
        if meta.goal and meta.goal != agent.heartbeat_goal:
            agent.heartbeat_goal = meta.goal
            changed = True
            logger.info("Heartbeat goal updated for agent %s: %s", agent.name or agent.id, meta.goal[:120])
        if meta.next_action:
            agent.heartbeat_next_action = meta.next_action
            changed = True
        if meta.status:
            agent.heartbeat_status = meta.status
            changed = True
        if changed:
            await self._store.upsert(AGENTS, agent.id, agent.to_doc())
