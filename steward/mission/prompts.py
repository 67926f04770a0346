"""Prompt builders for mission heartbeat ticks and automatic follow-ups."""

from __future__ import annotations

import re
from datetime import datetime, timezone

from steward.mission.state import MainLoopState
from steward.schemas import SessionRecord
from steward.utils import to_one_line

MISSION_TICK_MARKER = "STEWARD_MAIN_MISSION_TICK"
AUTO_FOLLOWUP_MARKER = "STEWARD_MAIN_AUTO_FOLLOWUP"
HEARTBEAT_CHECK_MARKER = "STEWARD_HEARTBEAT_CHECK"

_INTERNAL_MARKER_RE = re.compile(
    r"^(STEWARD_MAIN_(MISSION_TICK|AUTO_FOLLOWUP)|STEWARD_HEARTBEAT_CHECK)\b", re.IGNORECASE
)
_ACKNOWLEDGEMENT_RE = re.compile(
    r"^(ok|okay|cool|thanks|thx|got it|nice|yep|yeah|nope|nah)[.! ]*$", re.IGNORECASE
)

_CONTRACT_FORMAT_LINES = [
    '[MAIN_LOOP_META] {"status":"progress|ok|blocked|idle","summary":"...","next_action":"...",'
    '"follow_up":true|false,"delay_sec":45,"goal":"optional","consume_event_ids":["evt_..."]}',
    '[MAIN_LOOP_PLAN] {"steps":["..."],"current_step":"..."}',
    '[MAIN_LOOP_REVIEW] {"note":"...","confidence":0.0,"needs_replan":false}',
]

_ARTIFACT_RULE = (
    'For screenshot or image delivery goals, including scheduled captures, do not report status "ok" '
    "until a real artifact exists (upload link or explicit sent-file confirmation)."
)


def infer_goal_from_message(message: str) -> str | None:
    """A user message as a goal, ignoring acknowledgements and internal markers."""
    text = (message or "").strip()
    if not text:
        return None
    if _INTERNAL_MARKER_RE.match(text) or _ACKNOWLEDGEMENT_RE.match(text):
        return None
    return text[:600]


def infer_goal_from_session(session: SessionRecord) -> str | None:
    for message in reversed(session.messages):
        if message.role != "user":
            continue
        goal = infer_goal_from_message(message.text)
        if goal:
            return goal
    return None


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def goal_contract_lines(state: MainLoopState) -> list[str]:
    contract = state.goal_contract
    if contract is None or not contract.objective:
        return []
    lines = [f"contract_objective: {contract.objective}"]
    if contract.constraints:
        lines.append(f"contract_constraints: {' | '.join(contract.constraints)}")
    if contract.budget_usd is not None:
        lines.append(f"contract_budget_usd: {contract.budget_usd:g}")
    if contract.deadline_at is not None:
        lines.append(f"contract_deadline_iso: {_iso(contract.deadline_at)}")
    if contract.success_metric:
        lines.append(f"contract_success_metric: {contract.success_metric}")
    return lines


def plan_lines(state: MainLoopState) -> list[str]:
    lines = []
    if state.plan_steps:
        lines.append(f"Current plan steps: {' -> '.join(state.plan_steps)}")
    if state.current_plan_step:
        lines.append(f"Current plan step: {state.current_plan_step}")
    if state.review_note:
        lines.append(f"Last review: {state.review_note}")
    return lines


def pending_event_lines(state: MainLoopState) -> str:
    if not state.pending_events:
        return "Pending events:\n- none"
    lines = "\n".join(f"- {e.id} | {e.type} | {e.text}" for e in state.pending_events[-10:])
    return f"Pending events (oldest first):\n{lines}"


def timeline_lines(state: MainLoopState) -> str:
    if not state.timeline:
        return "Recent mission timeline:\n- none"
    rows = []
    for entry in state.timeline[-5:]:
        clock = datetime.fromtimestamp(entry.at / 1000, tz=timezone.utc).strftime("%H:%M:%S")
        status = f" [{entry.status}]" if entry.status else ""
        rows.append(f"- {clock} {entry.source}{status}: {entry.note}")
    return "Recent mission timeline:\n" + "\n".join(rows)


def build_heartbeat_prompt(
    session: SessionRecord,
    state: MainLoopState,
    fallback_prompt: str,
    now: int,
) -> str:
    """Prompt for a heartbeat tick of a main session."""
    has_memory = "memory" in session.tools
    goal = state.goal or infer_goal_from_session(session)
    lines = [
        MISSION_TICK_MARKER,
        f"Time: {_iso(now)}",
        "Mission goal: "
        + (goal or "No explicit mission captured yet. Infer it from recent user instructions and continue."),
        f"Current status: {state.status}",
        f"Mission paused: {'yes' if state.paused else 'no'}",
        f"Autonomy mode: {state.autonomy_mode}",
        f"Mission task id: {state.mission_task_id or 'none'}",
        f"Momentum score: {state.momentum_score}/100",
        *goal_contract_lines(state),
        *plan_lines(state),
        f"Last summary: {to_one_line(state.summary or 'No prior mission summary yet.', 500)}",
        f"Last next action: {to_one_line(state.next_action or 'No queued action. Determine one.', 500)}",
        pending_event_lines(state),
        timeline_lines(state),
        "You are running the main autonomous mission loop. Keep executing toward the goal.",
        (
            "Assist mode: do safe internal work and ask before irreversible external side effects."
            if state.autonomy_mode == "assist"
            else "Autonomous mode: execute safe next actions without waiting for confirmation; ask only when blocked."
        ),
        "Use tools where needed, verify outcomes, and avoid status-only replies.",
        "Do not ask clarifying questions unless blocked by missing credentials, permissions or safety constraints.",
        (
            "Use the memory tool: recall relevant notes before acting and store a concise note after each meaningful step."
            if has_memory
            else "No memory tool in this session. Keep state in summary and next_action."
        ),
        "Work as plan, execute one meaningful step, review, then continue or re-plan.",
        _ARTIFACT_RULE,
        "If nothing changed and no action is needed now, reply exactly HEARTBEAT_OK.",
        "Otherwise give a concise human update, then append exactly one [MAIN_LOOP_META] JSON line.",
        "Optionally append one [MAIN_LOOP_PLAN] line when the plan changes and one [MAIN_LOOP_REVIEW] line after a review.",
        *_CONTRACT_FORMAT_LINES,
        "The [MAIN_LOOP_META] JSON must be valid, on one line, and appear only once.",
        f"Fallback prompt context: {fallback_prompt or HEARTBEAT_CHECK_MARKER}",
    ]
    return "\n".join(line for line in lines if line)


def build_followup_prompt(state: MainLoopState, *, has_memory: bool) -> str:
    """Prompt for a chained follow-up turn."""
    lines = [
        AUTO_FOLLOWUP_MARKER,
        "Mission goal: "
        + (state.goal or "No explicit goal yet. Continue with the strongest actionable objective from context."),
        "Next action to execute now: "
        + (state.next_action or "Determine the next highest-impact action and execute it."),
        f"Current status: {state.status}",
        f"Mission task id: {state.mission_task_id or 'none'}",
        f"Momentum score: {state.momentum_score}/100",
        *goal_contract_lines(state),
        *plan_lines(state),
        pending_event_lines(state),
        timeline_lines(state),
        "Act autonomously. Use available tools to execute work, verify results and keep momentum.",
        (
            "Assist mode: ask before irreversible external side effects such as sending messages or purchases."
            if state.autonomy_mode == "assist"
            else "Autonomous mode: execute safe next actions without waiting for confirmation."
        ),
        (
            "Use the memory tool: recall before acting and store a concise note after each meaningful step."
            if has_memory
            else "No memory tool in this session. Keep progress in your status/meta output."
        ),
        "If blocked by credentials, permissions or policy, say exactly what is blocked and the smallest unblock needed.",
        _ARTIFACT_RULE,
        "If no meaningful action remains right now, reply exactly HEARTBEAT_OK.",
        "Otherwise give a concise human update, then append exactly one [MAIN_LOOP_META] JSON line.",
        *_CONTRACT_FORMAT_LINES,
    ]
    return "\n".join(line for line in lines if line)
