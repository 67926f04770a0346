"""Heartbeat Service -- periodic internal check-ins for idle sessions.

A heartbeat is an internal run sent to a session the user has left alone for
a while, so the agent can keep working on whatever it was doing. Each tick:

1. Skips entirely outside the configured active window
2. Forgets tracked sessions that vanished or lost heartbeat eligibility
3. For each eligible session, resolves the layered heartbeat config
   (global -> agent -> session), checks user idleness, mission gating for
   main sessions, due time and in-flight runs
4. Enqueues a collect-mode internal run deduped per session

The fire time is recorded only after the run was enqueued.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError

from steward.config import Settings
from steward.mission.loop import MissionLoop
from steward.mission.state import normalize_state
from steward.runs.manager import RunRequest, SessionRunManager
from steward.schemas import AgentRecord, Record, RuntimeSettings, SessionRecord
from steward.state import DaemonState
from steward.storage import AGENTS, SESSIONS, DocumentStore, load_runtime_settings
from steward.utils import clamp_int, now_ms

logger = logging.getLogger(__name__)

MAX_INTERVAL_SEC = 3600
MAX_USER_IDLE_SEC = 86_400
MIN_INHERITED_IDLE_SEC = 180
ELIGIBLE_SESSION_TYPES = (None, "human", "orchestrated")

_HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

RecordT = TypeVar("RecordT", bound=Record)


@dataclass
class HeartbeatLayer:
    """One layer of heartbeat settings. None means inherit."""

    enabled: bool | None = None
    interval_sec: int | None = None
    prompt: str | None = None
    model: str | None = None

    @classmethod
    def from_record(cls, record: AgentRecord | SessionRecord) -> HeartbeatLayer:
        prompt = (record.heartbeat_prompt or "").strip()
        model = (record.heartbeat_model or "").strip()
        return cls(
            enabled=record.heartbeat_enabled,
            interval_sec=record.heartbeat_interval_sec,
            prompt=prompt or None,
            model=model or None,
        )


@dataclass
class HeartbeatConfig:
    enabled: bool
    interval_sec: int
    prompt: str
    model: str | None = None


def global_layer(settings: Settings, runtime: RuntimeSettings) -> HeartbeatLayer:
    """Process settings overlaid with the persisted operator overrides."""
    interval = runtime.heartbeat_interval_sec
    if interval is None:
        interval = settings.heartbeat_interval_sec
    interval = clamp_int(interval, 120, 0, MAX_INTERVAL_SEC)
    prompt = (runtime.heartbeat_prompt or "").strip() or settings.heartbeat_prompt.strip()
    return HeartbeatLayer(
        enabled=interval > 0,
        interval_sec=interval,
        prompt=prompt or "STEWARD_HEARTBEAT_CHECK",
        model=runtime.heartbeat_model or settings.heartbeat_model,
    )


def resolve_heartbeat_config(*layers: HeartbeatLayer) -> HeartbeatConfig:
    """Overlay layers in order; only explicitly set fields override.

    The interval is bounded to 0..3600 s and a zero interval disables
    heartbeats regardless of the ``enabled`` flags.
    """
    config = HeartbeatConfig(enabled=False, interval_sec=0, prompt="STEWARD_HEARTBEAT_CHECK")
    for layer in layers:
        if layer.enabled is not None:
            config.enabled = layer.enabled
        if layer.interval_sec is not None:
            config.interval_sec = clamp_int(layer.interval_sec, config.interval_sec, 0, MAX_INTERVAL_SEC)
        if layer.prompt:
            config.prompt = layer.prompt
        if layer.model:
            config.model = layer.model
    config.enabled = config.enabled and config.interval_sec > 0
    return config


def _parse_hhmm(raw: Any) -> int | None:
    """Minutes since midnight for ``HH:MM`` (24:00 allowed), else None."""
    if not isinstance(raw, str):
        return None
    match = _HHMM_RE.match(raw.strip())
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 24 or minutes > 59 or (hours == 24 and minutes != 0):
        return None
    return hours * 60 + minutes


def in_active_window(now: int, start: Any, end: Any, timezone: str | None = None) -> bool:
    """Whether ``now`` (epoch ms) falls inside the ``[start, end)`` window.

    Windows may wrap midnight. Missing, unparsable or equal bounds and an
    unknown timezone all mean "always active".
    """
    start_min = _parse_hhmm(start)
    end_min = _parse_hhmm(end)
    if start_min is None or end_min is None or start_min == end_min:
        return True

    tz_name = (timezone or "").strip()
    try:
        tz = ZoneInfo(tz_name) if tz_name else None
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown heartbeat timezone %r, treating window as always active", tz_name)
        return True
    local = datetime.fromtimestamp(now / 1000, tz=tz)
    current = local.hour * 60 + local.minute

    if start_min < end_min:
        return start_min <= current < end_min
    return current >= start_min or current < end_min


def last_user_message_at(session: SessionRecord) -> int:
    for message in reversed(session.messages):
        if message.role == "user" and message.time and message.time > 0:
            return message.time
    return 0


def _valid_records(model: type[RecordT], docs: dict[str, dict]) -> dict[str, RecordT]:
    """Validate a collection, skipping malformed documents."""
    records: dict[str, RecordT] = {}
    for record_id, doc in docs.items():
        try:
            records[record_id] = model.model_validate(doc)
        except ValidationError as exc:
            logger.warning("Skipping malformed %s %s: %s", model.__name__, record_id, exc)
    return records


def _log_run_failure(session_id: str, future: asyncio.Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("Heartbeat run failed for session %s: %s", session_id, exc)


class HeartbeatService:
    """Fires heartbeat runs for idle, heartbeat-enabled sessions."""

    def __init__(
        self,
        store: DocumentStore,
        runs: SessionRunManager,
        mission: MissionLoop,
        state: DaemonState,
        settings: Settings,
    ) -> None:
        self._store = store
        self._runs = runs
        self._mission = mission
        self._state = state
        self._settings = settings

    @property
    def tracked_sessions(self) -> int:
        return len(self._state.heartbeat_last_by_session)

    def status(self) -> dict[str, Any]:
        return {
            "running": self._state.heartbeat_running,
            "trackedSessions": self.tracked_sessions,
        }

    async def seed_last_active(self) -> int:
        """Seed last-fired times from persisted ``lastActiveAt``.

        Keeps a cold restart from firing every session on the first tick.
        Entries already tracked are left alone. Returns how many were seeded.
        """
        seeded = 0
        tracked = self._state.heartbeat_last_by_session
        for session_id, doc in (await self._store.load_collection(SESSIONS)).items():
            last_active = doc.get("lastActiveAt")
            if isinstance(last_active, int) and last_active > 0 and session_id not in tracked:
                tracked[session_id] = last_active
                seeded += 1
        return seeded

    def _user_idle_threshold(self, runtime: RuntimeSettings, fallback: int) -> int:
        configured = runtime.heartbeat_user_idle_sec
        if configured is None:
            configured = self._settings.heartbeat_user_idle_sec
        if configured is None:
            return fallback
        return clamp_int(configured, fallback, 0, MAX_USER_IDLE_SEC)

    def _mission_allows(self, session: SessionRecord, now: int) -> bool:
        if not self._mission.is_main_session(session):
            return True
        loop_state = normalize_state(session.main_loop_state, now)
        if loop_state.paused:
            return False
        if loop_state.status in ("ok", "idle") and not loop_state.pending_events:
            return False
        return True

    async def tick(self, now: int | None = None) -> int:
        """Run one heartbeat pass. Returns the number of heartbeats fired."""
        now = now_ms() if now is None else now
        runtime = await load_runtime_settings(self._store)

        start = runtime.heartbeat_active_start or self._settings.heartbeat_active_start
        end = runtime.heartbeat_active_end or self._settings.heartbeat_active_end
        timezone = runtime.heartbeat_timezone or self._settings.heartbeat_timezone
        if not in_active_window(now, start, end, timezone):
            return 0

        ongoing = (runtime.loop_mode or self._settings.loop_mode) == "ongoing"
        base = global_layer(self._settings, runtime)
        sessions = _valid_records(SessionRecord, await self._store.load_collection(SESSIONS))
        agents = _valid_records(AgentRecord, await self._store.load_collection(AGENTS))
        has_scoped_agents = any(agent.heartbeat_enabled is True for agent in agents.values())

        def config_for(session: SessionRecord) -> HeartbeatConfig:
            layers = [base]
            agent = agents.get(session.agent_id) if session.agent_id else None
            if agent is not None:
                layers.append(HeartbeatLayer.from_record(agent))
            layers.append(HeartbeatLayer.from_record(session))
            return resolve_heartbeat_config(*layers)

        tracked = self._state.heartbeat_last_by_session
        for session_id in list(tracked):
            session = sessions.get(session_id)
            if session is None or not config_for(session).enabled:
                del tracked[session_id]

        fired = 0
        for session in sessions.values():
            if not session.tools or session.session_type not in ELIGIBLE_SESSION_TYPES:
                continue

            agent = agents.get(session.agent_id) if session.agent_id else None
            explicit_opt_in = session.heartbeat_enabled is True or (
                agent is not None and agent.heartbeat_enabled is True
            )
            # Bounded mode, or once any agent opts in: only opted-in sessions run
            if not explicit_opt_in and (not ongoing or has_scoped_agents):
                continue

            config = config_for(session)
            if not config.enabled:
                continue

            default_idle = config.interval_sec * 2
            if not explicit_opt_in:
                default_idle = max(default_idle, MIN_INHERITED_IDLE_SEC)
            idle_threshold = self._user_idle_threshold(runtime, default_idle)
            last_user_at = last_user_message_at(session)
            if last_user_at <= 0:
                logger.debug("Heartbeat skip %s: no user messages", session.id)
                continue
            idle_ms = now - last_user_at
            if idle_ms < idle_threshold * 1000:
                logger.debug(
                    "Heartbeat skip %s: user idle %ds < %ds", session.id, idle_ms // 1000, idle_threshold
                )
                continue

            if not self._mission_allows(session, now):
                continue

            if now - tracked.get(session.id, 0) < config.interval_sec * 1000:
                continue
            if self._runs.get_run_state(session.id).running_run_id:
                logger.debug("Heartbeat skip %s: run in flight", session.id)
                continue

            if self._mission.is_main_session(session):
                message = self._mission.build_heartbeat_prompt(session, config.prompt, now)
            else:
                message = config.prompt

            handle = self._runs.enqueue(
                RunRequest(
                    session_id=session.id,
                    message=message,
                    mode="collect",
                    source="heartbeat",
                    internal=True,
                    dedupe_key=f"heartbeat:{session.id}",
                    model_override=config.model,
                )
            )
            handle.future.add_done_callback(
                lambda future, sid=session.id: _log_run_failure(sid, future)
            )
            tracked[session.id] = now
            fired += 1
            logger.info(
                "Heartbeat fired for session %s (interval=%ds, idle=%ds)",
                session.id,
                config.interval_sec,
                idle_ms // 1000,
            )
        return fired
