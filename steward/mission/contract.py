"""Meta-contract parsing for mission replies.

Internal mission turns end with single-line JSON tags:

    [MAIN_LOOP_META] {"status":"progress","summary":"...","follow_up":true,...}
    [MAIN_LOOP_PLAN] {"steps":["..."],"current_step":"..."}
    [MAIN_LOOP_REVIEW] {"note":"...","confidence":0.7,"needs_replan":false}
    [AGENT_HEARTBEAT_META] {"goal":"...","status":"ok","next_action":"..."}

Parsers are pure: they never raise on bad input and return None when no
valid payload is found. Missing, malformed or duplicated tags are tolerated;
the first valid match wins.

Also here: heuristic goal-contract extraction from free-form user text.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError

from steward.utils import clamp_int, to_one_line

MissionStatus = Literal["idle", "progress", "blocked", "ok"]
MISSION_STATUSES: tuple[str, ...] = ("idle", "progress", "blocked", "ok")

DEFAULT_FOLLOWUP_DELAY_SEC = 45
MIN_FOLLOWUP_DELAY_SEC = 5
MAX_FOLLOWUP_DELAY_SEC = 900
MAX_PLAN_STEPS = 8

META_TAG = "[MAIN_LOOP_META]"
PLAN_TAG = "[MAIN_LOOP_PLAN]"
REVIEW_TAG = "[MAIN_LOOP_REVIEW]"
AGENT_HEARTBEAT_TAG = "[AGENT_HEARTBEAT_META]"

_META_RE = re.compile(r"\[MAIN_LOOP_META\]\s*(\{[^\n]*\})", re.IGNORECASE)
_PLAN_RE = re.compile(r"\[MAIN_LOOP_PLAN\]\s*(\{[^\n]*\})", re.IGNORECASE)
_REVIEW_RE = re.compile(r"\[MAIN_LOOP_REVIEW\]\s*(\{[^\n]*\})", re.IGNORECASE)
_AGENT_HEARTBEAT_RE = re.compile(r"\[AGENT_HEARTBEAT_META\]\s*(\{[^\n]*\})", re.IGNORECASE)
_HEARTBEAT_OK_RE = re.compile(r"^HEARTBEAT_OK$", re.IGNORECASE)

# Keys that mark a bare one-line JSON as a META payload
_META_HINT_KEYS = ("follow_up", "next_action", "consume_event_ids")


@dataclass
class MainLoopMeta:
    status: MissionStatus | None = None
    summary: str | None = None
    next_action: str | None = None
    follow_up: bool | None = None
    delay_sec: int = DEFAULT_FOLLOWUP_DELAY_SEC
    goal: str | None = None
    consume_event_ids: list[str] = field(default_factory=list)


@dataclass
class MainLoopPlan:
    steps: list[str] = field(default_factory=list)
    current_step: str | None = None


@dataclass
class MainLoopReview:
    note: str | None = None
    confidence: float | None = None
    needs_replan: bool | None = None


class AgentHeartbeatMeta(BaseModel):
    """Heartbeat report of a non-main session about its owning agent."""

    model_config = ConfigDict(extra="allow", str_strip_whitespace=True)

    goal: str | None = None
    status: MissionStatus | None = None
    next_action: str | None = None


@dataclass
class ParsedContract:
    """Everything recognised in one reply."""

    heartbeat_ok: bool = False
    meta: MainLoopMeta | None = None
    plan: MainLoopPlan | None = None
    review: MainLoopReview | None = None


class GoalContract(BaseModel):
    """Structured reading of a user goal."""

    objective: str
    constraints: list[str] = []
    budget_usd: float | None = None
    deadline_at: int | None = None
    success_metric: str | None = None

    def to_doc(self) -> dict[str, Any]:
        return {
            "objective": self.objective,
            "constraints": list(self.constraints),
            "budgetUsd": self.budget_usd,
            "deadlineAt": self.deadline_at,
            "successMetric": self.success_metric,
        }

    @classmethod
    def from_doc(cls, raw: Any) -> GoalContract | None:
        """Normalize a stored contract; None when it has no objective."""
        if not isinstance(raw, dict):
            return None
        objective = raw.get("objective")
        if not isinstance(objective, str) or not objective.strip():
            return None
        budget = raw.get("budgetUsd")
        deadline = raw.get("deadlineAt")
        metric = raw.get("successMetric")
        return cls(
            objective=objective.strip()[:300],
            constraints=unique_strings(raw.get("constraints"), max_items=10, max_chars=220),
            budget_usd=(
                max(0.0, min(1_000_000.0, float(budget)))
                if isinstance(budget, (int, float)) and not isinstance(budget, bool)
                else None
            ),
            deadline_at=int(deadline) if isinstance(deadline, (int, float)) and not isinstance(deadline, bool) else None,
            success_metric=(metric.strip()[:220] or None) if isinstance(metric, str) else None,
        )


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


def unique_strings(values: Any, max_items: int, max_chars: int) -> list[str]:
    """Whitespace-collapse, drop empties and case-insensitive duplicates."""
    if not isinstance(values, list):
        return []
    seen: set[str] = set()
    out: list[str] = []
    for raw in values:
        if not isinstance(raw, str):
            continue
        value = to_one_line(raw, max_chars)
        if not value or value.lower() in seen:
            continue
        seen.add(value.lower())
        out.append(value)
        if len(out) >= max_items:
            break
    return out


def _json_object(candidate: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(candidate)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _tagged_json(text: str, tag_re: re.Pattern[str], hint_keys: tuple[str, ...] = ()) -> dict[str, Any] | None:
    """First valid tagged JSON object, else a bare one-line JSON fallback."""
    raw = (text or "").strip()
    if not raw:
        return None
    for match in tag_re.finditer(raw):
        parsed = _json_object(match.group(1))
        if parsed is not None:
            return parsed
    for line in raw.split("\n"):
        line = line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        if hint_keys and not any(key in line for key in hint_keys):
            continue
        parsed = _json_object(line)
        if parsed is not None:
            return parsed
    return None


def is_heartbeat_ok(text: str) -> bool:
    return bool(_HEARTBEAT_OK_RE.match((text or "").strip()))


# ----------------------------------------------------------------------
# Tag parsers
# ----------------------------------------------------------------------


def parse_main_loop_meta(text: str) -> MainLoopMeta | None:
    parsed = _tagged_json(text, _META_RE, _META_HINT_KEYS)
    if parsed is None:
        return None

    status = parsed.get("status")
    follow_up = parsed.get("follow_up")
    if isinstance(follow_up, str):
        follow_up = follow_up.strip().lower() == "true"
    elif not isinstance(follow_up, bool):
        follow_up = None

    consume = parsed.get("consume_event_ids")
    consume_ids = (
        [v.strip() for v in consume if isinstance(v, str) and v.strip()]
        if isinstance(consume, list)
        else []
    )

    def _text(key: str, limit: int) -> str | None:
        value = parsed.get(key)
        return value.strip()[:limit] if isinstance(value, str) else None

    return MainLoopMeta(
        status=status if status in MISSION_STATUSES else None,
        summary=_text("summary", 800),
        next_action=_text("next_action", 600),
        follow_up=follow_up,
        delay_sec=clamp_int(
            parsed.get("delay_sec"),
            DEFAULT_FOLLOWUP_DELAY_SEC,
            MIN_FOLLOWUP_DELAY_SEC,
            MAX_FOLLOWUP_DELAY_SEC,
        ),
        goal=_text("goal", 600),
        consume_event_ids=consume_ids,
    )


def parse_main_loop_plan(text: str) -> MainLoopPlan | None:
    parsed = _tagged_json(text, _PLAN_RE)
    if parsed is None:
        return None
    steps = unique_strings(parsed.get("steps"), max_items=MAX_PLAN_STEPS, max_chars=240)
    current = parsed.get("current_step")
    current_step = to_one_line(current, 220) if isinstance(current, str) else ""
    if not steps and not current_step:
        return None
    return MainLoopPlan(steps=steps, current_step=current_step or None)


def parse_main_loop_review(text: str) -> MainLoopReview | None:
    parsed = _tagged_json(text, _REVIEW_RE)
    if parsed is None:
        return None
    note = parsed.get("note")
    note = to_one_line(note, 320) if isinstance(note, str) else ""

    confidence: float | None = None
    raw_conf = parsed.get("confidence")
    if isinstance(raw_conf, str):
        try:
            raw_conf = float(raw_conf)
        except ValueError:
            raw_conf = None
    if isinstance(raw_conf, (int, float)) and not isinstance(raw_conf, bool) and raw_conf == raw_conf:
        confidence = max(0.0, min(1.0, float(raw_conf)))

    needs_replan = parsed.get("needs_replan")
    if not isinstance(needs_replan, bool):
        needs_replan = None

    if not note and confidence is None and needs_replan is None:
        return None
    return MainLoopReview(note=note or None, confidence=confidence, needs_replan=needs_replan)


def parse_agent_heartbeat_meta(text: str) -> AgentHeartbeatMeta | None:
    raw = (text or "").strip()
    match = _AGENT_HEARTBEAT_RE.search(raw)
    if not match:
        return None
    parsed = _json_object(match.group(1))
    if parsed is None:
        return None
    try:
        return AgentHeartbeatMeta.model_validate(parsed)
    except ValidationError:
        return None


def parse_contract(text: str) -> ParsedContract:
    """Parse every contract tag of a reply at once."""
    return ParsedContract(
        heartbeat_ok=is_heartbeat_ok(text),
        meta=parse_main_loop_meta(text),
        plan=parse_main_loop_plan(text),
        review=parse_main_loop_review(text),
    )


def strip_meta_for_persistence(text: str) -> str:
    """Remove contract lines from an internal reply before it is shown."""
    if not text:
        return ""
    tags = (META_TAG, PLAN_TAG, REVIEW_TAG, AGENT_HEARTBEAT_TAG)
    kept = [line for line in text.split("\n") if not any(tag in line for tag in tags)]
    return "\n".join(kept).strip()


# ----------------------------------------------------------------------
# Goal contracts
# ----------------------------------------------------------------------

_BUDGET_PATTERNS = (
    re.compile(r"budget[^$\d]{0,20}\$?\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
    re.compile(r"\$\s*(\d+(?:\.\d+)?)"),
    re.compile(r"(\d+(?:\.\d+)?)\s*(?:usd|dollars?)", re.IGNORECASE),
)
_DEADLINE_PATTERNS = (
    re.compile(r"\bby\s+([A-Za-z]{3,10}\s+\d{1,2},?\s+\d{4})", re.IGNORECASE),
    re.compile(r"\bby\s+(\d{4}-\d{2}-\d{2})", re.IGNORECASE),
    re.compile(r"\bdeadline[^A-Za-z0-9]{0,8}([A-Za-z]{3,10}\s+\d{1,2},?\s+\d{4})", re.IGNORECASE),
    re.compile(r"\bdeadline[^A-Za-z0-9]{0,8}(\d{4}-\d{2}-\d{2})", re.IGNORECASE),
)
_METRIC_PATTERNS = (
    re.compile(r"success(?:\s+is|\s+means|\s+metric)?\s*[:=-]\s*([^\n.]{4,180})", re.IGNORECASE),
    re.compile(r"metric\s*[:=-]\s*([^\n.]{4,180})", re.IGNORECASE),
    re.compile(r"kpi\s*[:=-]\s*([^\n.]{4,180})", re.IGNORECASE),
)
_CONSTRAINT_LINE_RE = re.compile(r"^(must|should|avoid|without|do not|don't|within|under|limit)", re.IGNORECASE)
_CONSTRAINT_LABEL_RE = re.compile(r"constraints?\s*[:=-]", re.IGNORECASE)
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_DATE_FORMATS = ("%Y-%m-%d", "%B %d, %Y", "%B %d %Y", "%b %d, %Y", "%b %d %Y")


def _parse_budget(text: str) -> float | None:
    for pattern in _BUDGET_PATTERNS:
        match = pattern.search(text)
        if match:
            return max(0.0, min(1_000_000.0, float(match.group(1))))
    return None


def _parse_deadline(text: str) -> int | None:
    for pattern in _DEADLINE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        value = re.sub(r"\s+", " ", match.group(1).strip())
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
            except ValueError:
                continue
            return int(parsed.timestamp() * 1000)
    return None


def _parse_success_metric(text: str) -> str | None:
    for pattern in _METRIC_PATTERNS:
        match = pattern.search(text)
        if match:
            value = to_one_line(match.group(1), 180)
            if value:
                return value
    return None


def _parse_constraints(text: str) -> list[str]:
    found: list[str] = []
    for line in (ln.strip() for ln in text.split("\n")):
        if not line:
            continue
        if _CONSTRAINT_LINE_RE.match(line):
            found.append(re.sub(r"^[-*]\s*", "", line))
        elif _CONSTRAINT_LABEL_RE.search(line):
            value = ":".join(re.split(r"[:=-]", line)[1:]).strip()
            if value:
                found.append(value)
    return unique_strings(found, max_items=8, max_chars=240)


def parse_goal_contract_from_text(text: str) -> GoalContract | None:
    """Heuristically extract objective, constraints, budget, deadline and metric."""
    direct = to_one_line(text or "", 300)
    if not direct:
        return None
    objective = to_one_line(_SENTENCE_SPLIT_RE.split(direct)[0], 300) or direct
    source = text or ""
    return GoalContract(
        objective=objective,
        constraints=_parse_constraints(source),
        budget_usd=_parse_budget(source),
        deadline_at=_parse_deadline(source),
        success_metric=_parse_success_metric(source),
    )


def merge_goal_contracts(current: GoalContract | None, new: GoalContract | None) -> GoalContract | None:
    """Overlay ``new`` on ``current``; empty fields of ``new`` inherit."""
    if current is None:
        return new
    if new is None:
        return current
    return GoalContract(
        objective=new.objective or current.objective,
        constraints=new.constraints or current.constraints,
        budget_usd=new.budget_usd if new.budget_usd is not None else current.budget_usd,
        deadline_at=new.deadline_at if new.deadline_at is not None else current.deadline_at,
        success_metric=new.success_metric or current.success_metric,
    )
