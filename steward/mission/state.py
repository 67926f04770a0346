"""Mission state of a main session and its bounded bookkeeping.

The state lives on the session record under ``mainLoopState``. It is
normalized on every load so hand-edited or stale documents never break the
loop: unknown statuses fall back to ``idle``, lists are deduplicated and
capped, and pending events / timeline entries older than a week are dropped.
"""

from __future__ import annotations

import math
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from steward.mission.contract import MISSION_STATUSES, GoalContract, MissionStatus, unique_strings
from steward.utils import clamp_int, gen_id, now_ms, to_one_line

MAX_PENDING_EVENTS = 40
MAX_TIMELINE_ENTRIES = 80
MAX_WORKING_MEMORY_NOTES = 24
EVENT_TTL_MS = 7 * 24 * 60 * 60 * 1000
EVENT_DEDUPE_WINDOW_MS = 60_000
TIMELINE_DEDUPE_WINDOW_MS = 45_000

AutonomyMode = Literal["assist", "autonomous"]

_STATUS_BASE_SCORE = {"idle": 40, "progress": 72, "blocked": 20, "ok": 94}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MissionEvent(_CamelModel):
    id: str
    type: str
    text: str
    created_at: int


class TimelineEntry(_CamelModel):
    id: str
    at: int
    source: str
    note: str
    status: MissionStatus | None = None


class MainLoopState(_CamelModel):
    goal: str | None = None
    goal_contract: GoalContract | None = None
    status: MissionStatus = "idle"
    summary: str | None = None
    next_action: str | None = None
    plan_steps: list[str] = []
    current_plan_step: str | None = None
    review_note: str | None = None
    review_confidence: float | None = None
    mission_task_id: str | None = None
    momentum_score: int = 40
    paused: bool = False
    autonomy_mode: AutonomyMode = "autonomous"
    pending_events: list[MissionEvent] = []
    timeline: list[TimelineEntry] = []
    followup_chain_count: int = 0
    meta_miss_count: int = 0
    working_memory_notes: list[str] = []
    last_memory_note_at: int | None = None
    last_planned_at: int | None = None
    last_reviewed_at: int | None = None
    last_tick_at: int | None = None
    updated_at: int = 0

    def to_doc(self) -> dict[str, Any]:
        doc = self.model_dump(by_alias=True, mode="json", exclude={"goal_contract"})
        doc["goalContract"] = self.goal_contract.to_doc() if self.goal_contract else None
        return doc


# ----------------------------------------------------------------------
# Normalization
# ----------------------------------------------------------------------


def _str_or_none(value: Any, limit: int) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip()[:limit] or None


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return int(value)


def _status(value: Any) -> MissionStatus | None:
    return value if value in MISSION_STATUSES else None


def prune_events(events: list[MissionEvent], now: int) -> list[MissionEvent]:
    """Drop events older than the TTL and keep the newest ``MAX_PENDING_EVENTS``."""
    fresh = [e for e in events if e.created_at >= now - EVENT_TTL_MS]
    return fresh[-MAX_PENDING_EVENTS:]


def prune_timeline(entries: list[TimelineEntry], now: int) -> list[TimelineEntry]:
    fresh = [e for e in entries if e.at >= now - EVENT_TTL_MS and e.note.strip()]
    return fresh[-MAX_TIMELINE_ENTRIES:]


def normalize_state(raw: Any, now: int | None = None) -> MainLoopState:
    """Build a valid ``MainLoopState`` from whatever is stored."""
    now = now_ms() if now is None else now
    raw = raw if isinstance(raw, dict) else {}

    events: list[MissionEvent] = []
    for item in raw.get("pendingEvents") or []:
        if not isinstance(item, dict):
            continue
        text = to_one_line(item.get("text") if isinstance(item.get("text"), str) else "")
        if not text:
            continue
        events.append(MissionEvent(
            id=_str_or_none(item.get("id"), 64) or f"evt_{gen_id(3)}",
            type=_str_or_none(item.get("type"), 64) or "event",
            text=text,
            created_at=_int_or_none(item.get("createdAt")) or now,
        ))

    timeline: list[TimelineEntry] = []
    for item in raw.get("timeline") or []:
        if not isinstance(item, dict):
            continue
        note = to_one_line(item.get("note") if isinstance(item.get("note"), str) else "", 400)
        if not note:
            continue
        timeline.append(TimelineEntry(
            id=_str_or_none(item.get("id"), 64) or f"tl_{gen_id(3)}",
            at=_int_or_none(item.get("at")) or now,
            source=_str_or_none(item.get("source"), 64) or "event",
            note=note,
            status=_status(item.get("status")),
        ))

    confidence = raw.get("reviewConfidence")
    contract = GoalContract.from_doc(raw.get("goalContract"))
    state = MainLoopState(
        goal=_str_or_none(raw.get("goal"), 600),
        goal_contract=contract,
        status=_status(raw.get("status")) or "idle",
        summary=_str_or_none(raw.get("summary"), 800),
        next_action=_str_or_none(raw.get("nextAction"), 600),
        plan_steps=unique_strings(raw.get("planSteps"), max_items=10, max_chars=220),
        current_plan_step=_str_or_none(raw.get("currentPlanStep"), 220),
        review_note=_str_or_none(raw.get("reviewNote"), 320),
        review_confidence=(
            max(0.0, min(1.0, float(confidence)))
            if _int_or_none(confidence) is not None
            else None
        ),
        mission_task_id=_str_or_none(raw.get("missionTaskId"), 64),
        momentum_score=clamp_int(raw.get("momentumScore"), 40, 0, 100),
        paused=raw.get("paused") is True,
        autonomy_mode="assist" if raw.get("autonomyMode") == "assist" else "autonomous",
        pending_events=prune_events(events, now),
        timeline=prune_timeline(timeline, now),
        followup_chain_count=clamp_int(raw.get("followupChainCount"), 0, 0, 100),
        meta_miss_count=clamp_int(raw.get("metaMissCount"), 0, 0, 100),
        working_memory_notes=unique_strings(
            raw.get("workingMemoryNotes"), max_items=MAX_WORKING_MEMORY_NOTES, max_chars=260
        ),
        last_memory_note_at=_int_or_none(raw.get("lastMemoryNoteAt")),
        last_planned_at=_int_or_none(raw.get("lastPlannedAt")),
        last_reviewed_at=_int_or_none(raw.get("lastReviewedAt")),
        last_tick_at=_int_or_none(raw.get("lastTickAt")),
        updated_at=_int_or_none(raw.get("updatedAt")) or now,
    )
    if not state.goal and contract is not None:
        state.goal = contract.objective
    state.momentum_score = compute_momentum_score(state)
    return state


# ----------------------------------------------------------------------
# Mutators
# ----------------------------------------------------------------------


def compute_momentum_score(state: MainLoopState) -> int:
    """0-100 health indicator derived from status, misses, backlog and pause."""
    score = _STATUS_BASE_SCORE[state.status]
    score -= min(20, state.meta_miss_count * 3)
    score -= min(12, max(0, len(state.pending_events) - 4) * 2)
    if state.paused:
        score = min(score, 35)
    return max(0, min(100, score))


def append_event(state: MainLoopState, event_type: str, text: str, now: int) -> bool:
    """Queue a pending event. Returns False when empty or a repeat within 60s."""
    normalized = to_one_line(text)
    if not normalized:
        return False
    if state.pending_events:
        recent = state.pending_events[-1]
        if (
            recent.type == event_type
            and recent.text == normalized
            and now - recent.created_at < EVENT_DEDUPE_WINDOW_MS
        ):
            return False
    state.pending_events.append(
        MissionEvent(id=f"evt_{gen_id()}", type=event_type, text=normalized, created_at=now)
    )
    state.pending_events = prune_events(state.pending_events, now)
    return True


def append_timeline(
    state: MainLoopState,
    source: str,
    note: str,
    now: int,
    status: MissionStatus | None = None,
) -> None:
    normalized = to_one_line(note, 400)
    if not normalized:
        return
    if state.timeline:
        recent = state.timeline[-1]
        if (
            recent.source == source
            and recent.note == normalized
            and now - recent.at < TIMELINE_DEDUPE_WINDOW_MS
        ):
            return
    state.timeline.append(
        TimelineEntry(id=f"tl_{gen_id()}", at=now, source=source, note=normalized, status=status)
    )
    state.timeline = prune_timeline(state.timeline, now)


def append_working_memory_note(state: MainLoopState, note: str) -> None:
    value = to_one_line(note, 260)
    if not value:
        return
    notes = state.working_memory_notes
    if notes and notes[-1] == value:
        return
    state.working_memory_notes = [*notes[-(MAX_WORKING_MEMORY_NOTES - 1):], value]


def consume_events(state: MainLoopState, ids: list[str]) -> None:
    if not ids:
        return
    remove = set(ids)
    state.pending_events = [e for e in state.pending_events if e.id not in remove]
