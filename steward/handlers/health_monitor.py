"""Health Monitor -- periodic self-healing checks.

Each check:
1. Recovers stalled running tasks (requeue or dead-letter)
2. Alerts once per stale episode for heartbeat sessions that stopped
   reporting, and disables the heartbeat after sustained staleness
3. Restarts enabled connectors that are down, with exponential backoff and
   a hard give-up after MAX_WAKE_ATTEMPTS failures
4. Drains due webhook retries

A failure in one step is logged and does not stop the others.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from steward.config import Settings
from steward.connectors import ConnectorManager
from steward.handlers.alerts import HealthAlerter
from steward.handlers.task_queue import TaskQueue
from steward.handlers.webhook_retry import WebhookRetryProcessor
from steward.schemas import ConnectorRecord
from steward.state import ConnectorRestartState, DaemonState
from steward.storage import CONNECTORS, SESSIONS, DocumentStore
from steward.utils import clamp_int, now_ms

logger = logging.getLogger(__name__)

STALE_MULTIPLIER = 4
STALE_MIN_MS = 4 * 60 * 1000
STALE_AUTO_DISABLE_MULTIPLIER = 16
STALE_AUTO_DISABLE_MIN_MS = 45 * 60 * 1000
CONNECTOR_RESTART_BASE_MS = 30_000
CONNECTOR_RESTART_MAX_MS = 15 * 60 * 1000
MAX_WAKE_ATTEMPTS = 3


def connector_backoff_ms(fail_count: int) -> int:
    return min(CONNECTOR_RESTART_MAX_MS, CONNECTOR_RESTART_BASE_MS * 2 ** min(6, fail_count))


class HealthMonitor:
    def __init__(
        self,
        store: DocumentStore,
        state: DaemonState,
        settings: Settings,
        alerter: HealthAlerter,
        *,
        task_queue: TaskQueue | None = None,
        connectors: ConnectorManager | None = None,
        webhook_retry: WebhookRetryProcessor | None = None,
    ) -> None:
        self._store = store
        self._state = state
        self._settings = settings
        self._alerter = alerter
        self._task_queue = task_queue
        self._connectors = connectors
        self._webhook_retry = webhook_retry

    def status(self) -> dict[str, Any]:
        return {
            "monitorActive": self._state.health_monitor_active,
            "staleSessions": len(self._state.stale_sessions),
            "connectorsInBackoff": len(self._state.connector_restarts),
            "checkIntervalSec": int(self._settings.health_check_interval),
        }

    async def check(self, now: int | None = None) -> None:
        now = now_ms() if now is None else now

        if self._task_queue is not None:
            try:
                await self._task_queue.recover_stalled(now)
            except Exception:
                logger.exception("Task stall recovery failed")

        try:
            await self.check_stale_sessions(now)
        except Exception:
            logger.exception("Stale session check failed")

        if self._connectors is not None:
            try:
                await self.check_connectors(now)
            except Exception:
                logger.exception("Connector health check failed")

        if self._webhook_retry is not None:
            try:
                await self._webhook_retry.process_due(now)
            except Exception:
                logger.exception("Webhook retry processing failed")

    # ------------------------------------------------------------------
    # Stale sessions
    # ------------------------------------------------------------------

    async def check_stale_sessions(self, now: int) -> int:
        """Alert on newly stale sessions. Returns how many are stale now."""
        stale = self._state.stale_sessions
        currently_stale: set[str] = set()

        for session_id, doc in (await self._store.load_collection(SESSIONS)).items():
            if doc.get("heartbeatEnabled") is not True:
                continue
            interval_sec = clamp_int(doc.get("heartbeatIntervalSec"), 120, 0, 3600)
            if interval_sec <= 0:
                continue
            last_active = doc.get("lastActiveAt")
            if not isinstance(last_active, int) or last_active <= 0:
                continue

            stale_for = now - last_active
            if stale_for <= max(interval_sec * STALE_MULTIPLIER * 1000, STALE_MIN_MS):
                continue

            label = doc.get("name") or session_id
            auto_disable_after = max(
                interval_sec * STALE_AUTO_DISABLE_MULTIPLIER * 1000, STALE_AUTO_DISABLE_MIN_MS
            )
            if stale_for > auto_disable_after:
                doc["heartbeatEnabled"] = False
                doc["lastActiveAt"] = now
                await self._store.upsert(SESSIONS, session_id, doc)
                stale.discard(session_id)
                await self._alerter.send(
                    f'Auto-disabled heartbeat for stale session "{label}" '
                    f"after {round(stale_for / 60_000)}m of inactivity."
                )
                continue

            currently_stale.add(session_id)
            # Alert only on the healthy -> stale transition
            if session_id not in stale:
                stale.add(session_id)
                await self._alerter.send(
                    f'Session "{label}" heartbeat appears stale '
                    f"(last active {round(stale_for / 1000)}s ago, interval {interval_sec}s)."
                )

        # Recovered sessions may alert again on their next stale episode
        stale.intersection_update(currently_stale)
        return len(currently_stale)

    # ------------------------------------------------------------------
    # Connectors
    # ------------------------------------------------------------------

    async def check_connectors(self, now: int) -> int:
        """Restart down connectors whose backoff elapsed. Returns restarts."""
        if self._connectors is None:
            return 0
        restarts = self._state.connector_restarts
        restarted = 0

        for connector_id, doc in (await self._store.load_collection(CONNECTORS)).items():
            try:
                connector = ConnectorRecord.model_validate(doc)
            except ValidationError as exc:
                logger.warning("Skipping malformed connector record %s: %s", connector_id, exc)
                restarts.pop(connector_id, None)
                continue
            if not connector.is_enabled or self._connectors.status(connector_id) == "running":
                restarts.pop(connector_id, None)
                continue

            current = restarts.get(connector_id) or ConnectorRestartState()
            if current.wake_attempts >= MAX_WAKE_ATTEMPTS:
                logger.warning(
                    "Connector %s exceeded %d wake attempts, giving up",
                    connector.name or connector_id,
                    MAX_WAKE_ATTEMPTS,
                )
                connector.status = "error"
                connector.last_error = (
                    f"Auto-restart gave up after {MAX_WAKE_ATTEMPTS} consecutive failures"
                )
                connector.updated_at = now
                await self._store.upsert(CONNECTORS, connector_id, connector.to_doc())
                restarts.pop(connector_id, None)
                continue

            if now - current.last_attempt_at < connector_backoff_ms(current.fail_count):
                continue

            current.last_attempt_at = now
            restarts[connector_id] = current
            try:
                await self._connectors.start(connector_id)
            except Exception as exc:
                current.fail_count += 1
                current.wake_attempts += 1
                logger.warning(
                    "Connector auto-restart failed for %s (attempt %d/%d): %s",
                    connector.name or connector_id,
                    current.wake_attempts,
                    MAX_WAKE_ATTEMPTS,
                    exc,
                )
                continue

            restarts.pop(connector_id, None)
            restarted += 1
            await self._alerter.send(
                f'Connector "{connector.name}" ({connector.platform}) was down and has been auto-restarted.'
            )
        return restarted
