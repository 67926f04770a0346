"""Completion gates -- policies that can hold a mission out of ``ok``.

A gate looks at the mission state and recent session output and returns a
reason string when the mission must not be reported as completed yet, or
None when completion is allowed.
"""

from __future__ import annotations

import re
from typing import Protocol

from steward.mission.state import MainLoopState
from steward.schemas import SessionRecord

SCREENSHOT_GOAL_HINT = re.compile(r"\b(screenshot|screen shot|snapshot|capture)\b", re.IGNORECASE)
DELIVERY_GOAL_HINT = re.compile(r"\b(send|deliver|return|share|upload|post|message)\b", re.IGNORECASE)
SCHEDULE_GOAL_HINT = re.compile(r"\b(schedule|scheduled|every\s+\w+|interval|cron|recurr)", re.IGNORECASE)
UPLOAD_ARTIFACT_HINT = re.compile(
    r"(?:sandbox:)?/api/uploads/[^\s)\]]+|https?://[^\s)\]]+\.(?:png|jpe?g|webp|gif|pdf)\b",
    re.IGNORECASE,
)
SENT_ARTIFACT_HINT = re.compile(
    r"\b(sent|shared|uploaded|returned)\b[^.]*\b(screenshot|snapshot|image|file)\b",
    re.IGNORECASE,
)

# Most recent session messages scanned for evidence
EVIDENCE_WINDOW = 14


class CompletionGate(Protocol):
    def check(
        self,
        session: SessionRecord | None,
        state: MainLoopState,
        additional_text: str = "",
    ) -> str | None:
        """Return a reason to hold completion, or None."""
        ...


class ArtifactEvidenceGate:
    """Holds screenshot-delivery missions until an artifact is observed.

    Applies when the goal language mentions a screenshot/capture together
    with delivering or scheduling it. Evidence is an upload link / image URL
    or an explicit "sent the screenshot" style confirmation in the summary,
    the reply being processed, or recent session messages.
    """

    reason = (
        "Mission requires screenshot artifact evidence (upload link or explicit "
        "sent screenshot confirmation) before completion."
    )

    def needs_evidence(self, state: MainLoopState) -> bool:
        contract = state.goal_contract
        haystack = " ".join(
            [
                state.goal or "",
                contract.objective if contract else "",
                (contract.success_metric or "") if contract else "",
                state.next_action or "",
                *state.plan_steps,
                state.current_plan_step or "",
            ]
        )
        if not SCREENSHOT_GOAL_HINT.search(haystack):
            return False
        return bool(DELIVERY_GOAL_HINT.search(haystack) or SCHEDULE_GOAL_HINT.search(haystack))

    def has_evidence(
        self,
        session: SessionRecord | None,
        state: MainLoopState,
        additional_text: str = "",
    ) -> bool:
        candidates = [state.summary or "", additional_text or ""]
        if session is not None:
            recent = [m.text for m in reversed(session.messages) if m.text and m.text.strip()]
            candidates.extend(recent[:EVIDENCE_WINDOW])
        return any(
            UPLOAD_ARTIFACT_HINT.search(text) or SENT_ARTIFACT_HINT.search(text)
            for text in candidates
        )

    def check(
        self,
        session: SessionRecord | None,
        state: MainLoopState,
        additional_text: str = "",
    ) -> str | None:
        if not self.needs_evidence(state):
            return None
        if self.has_evidence(session, state, additional_text):
            return None
        return self.reason


class NoCompletionGate:
    """Never holds completion."""

    def check(
        self,
        session: SessionRecord | None,
        state: MainLoopState,
        additional_text: str = "",
    ) -> str | None:
        return None
