"""Schedule cadence signatures.

A signature fingerprints what a schedule does and how often:
``<agentId>::<prompt>::<type>::<cadence>``. The prompt is whitespace-collapsed
and lowercased, cron expressions are whitespace-collapsed. The scheduler uses
it to avoid stacking a second task while the previous one from an identical
schedule is still in flight; the creation API uses it to refuse duplicates.

Functions accept store documents (camelCase dicts) or ``Schedule`` models.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from pydantic import BaseModel

_WS_RE = re.compile(r"\s+")

# Two one-shot schedules within this distance are the same cadence
ONCE_MATCH_TOLERANCE_MS = 1000


@dataclass(frozen=True)
class _Signature:
    id: str
    agent_id: str
    prompt: str
    schedule_type: str
    cron: str
    interval_ms: int | None
    run_at: int | None


def _as_doc(raw: Mapping[str, Any] | BaseModel) -> Mapping[str, Any]:
    if isinstance(raw, BaseModel):
        return raw.model_dump(by_alias=True)
    return raw


def _text(value: object) -> str:
    return value.strip() if isinstance(value, str) else ""


def _positive_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        parsed = float(value)
    elif isinstance(value, str):
        try:
            parsed = float(int(value.strip()))
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(parsed):
        return None
    result = math.trunc(parsed)
    return result if result > 0 else None


def _to_signature(raw: Mapping[str, Any] | BaseModel) -> _Signature:
    doc = _as_doc(raw)
    schedule_type = doc.get("scheduleType")
    if schedule_type not in ("cron", "interval", "once"):
        schedule_type = "interval"
    return _Signature(
        id=_text(doc.get("id")),
        agent_id=_text(doc.get("agentId")),
        prompt=_WS_RE.sub(" ", _text(doc.get("taskPrompt"))).strip().lower(),
        schedule_type=schedule_type,
        cron=_WS_RE.sub(" ", _text(doc.get("cron"))).strip(),
        interval_ms=_positive_int(doc.get("intervalMs")),
        run_at=_positive_int(doc.get("runAt")),
    )


def _same_cadence(a: _Signature, b: _Signature) -> bool:
    if a.schedule_type != b.schedule_type:
        return False
    if a.schedule_type == "cron":
        return a.cron != "" and a.cron == b.cron
    if a.schedule_type == "interval":
        return a.interval_ms is not None and a.interval_ms == b.interval_ms
    if a.run_at is None or b.run_at is None:
        return False
    return abs(a.run_at - b.run_at) <= ONCE_MATCH_TOLERANCE_MS


def _cadence_key(sig: _Signature) -> str:
    if sig.schedule_type == "cron":
        return f"cron:{sig.cron}"
    if sig.schedule_type == "interval":
        return f"interval:{sig.interval_ms if sig.interval_ms is not None else ''}"
    return f"once:{sig.run_at if sig.run_at is not None else ''}"


def schedule_signature_key(schedule: Mapping[str, Any] | BaseModel) -> str:
    """Return the cadence signature, or "" when the schedule is incomplete."""
    sig = _to_signature(schedule)
    if not sig.agent_id or not sig.prompt:
        return ""
    if not _same_cadence(sig, sig):
        return ""
    return f"{sig.agent_id}::{sig.prompt}::{sig.schedule_type}::{_cadence_key(sig)}"


def _matches_creator_scope(doc: Mapping[str, Any], scope: Mapping[str, str | None] | None) -> bool:
    if not scope:
        return True
    scope_agent = _text(scope.get("agent_id"))
    scope_session = _text(scope.get("session_id"))
    if not scope_agent and not scope_session:
        return True
    existing_agent = _text(doc.get("createdByAgentId"))
    existing_session = _text(doc.get("createdInSessionId"))
    if scope_agent and existing_agent and scope_agent != existing_agent:
        return False
    if scope_session and existing_session and scope_session != existing_session:
        return False
    return True


def _recency(doc: Mapping[str, Any]) -> int:
    for key in ("updatedAt", "createdAt"):
        value = doc.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    return 0


def find_duplicate_schedule(
    schedules: Mapping[str, Any] | Iterable[Any],
    candidate: Mapping[str, Any] | BaseModel,
    *,
    ignore_id: str | None = None,
    include_statuses: Iterable[str] = ("active", "paused"),
    creator_scope: Mapping[str, str | None] | None = None,
) -> dict[str, Any] | None:
    """Find an existing schedule with the same agent, prompt and cadence.

    Only schedules whose status is in ``include_statuses`` (missing status
    counts as active) are considered. ``creator_scope`` takes ``agent_id``
    and/or ``session_id``; a schedule created by a different agent or in a
    different session is not a duplicate. Among several matches, the most
    recently updated wins.
    """
    cand = _to_signature(candidate)
    if not cand.agent_id or not cand.prompt:
        return None

    skip_id = _text(ignore_id) or cand.id
    statuses = {s.lower() for s in include_statuses} or {"active", "paused"}
    pool = schedules.values() if isinstance(schedules, Mapping) else schedules

    matches: list[Mapping[str, Any]] = []
    for existing in pool:
        if existing is None:
            continue
        doc = _as_doc(existing)
        sig = _to_signature(doc)
        if not sig.id or (skip_id and sig.id == skip_id):
            continue
        status = _text(doc.get("status")).lower() or "active"
        if status not in statuses:
            continue
        if not _matches_creator_scope(doc, creator_scope):
            continue
        if sig.agent_id != cand.agent_id or sig.prompt != cand.prompt:
            continue
        if _same_cadence(sig, cand):
            matches.append(doc)

    if not matches:
        return None
    matches.sort(key=_recency, reverse=True)
    return dict(matches[0])
