"""In-memory daemon state shared by the periodic handlers.

Owned by the entry point and injected into each component. Everything here
is bounded bookkeeping that can be lost on restart: the document store stays
the source of truth.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ConnectorRestartState:
    last_attempt_at: int = 0
    fail_count: int = 0
    wake_attempts: int = 0


@dataclass
class DaemonState:
    running: bool = False
    manual_stop_requested: bool = False
    last_processed: int | None = None

    # session id -> last heartbeat fire (epoch ms)
    heartbeat_last_by_session: dict[str, int] = field(default_factory=dict)
    heartbeat_running: bool = False

    stale_sessions: set[str] = field(default_factory=set)
    connector_restarts: dict[str, ConnectorRestartState] = field(default_factory=dict)
    health_monitor_active: bool = False
