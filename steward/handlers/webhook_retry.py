"""Webhook Retry -- redelivers webhook events whose first delivery failed.

Entries live in the ``webhook_retry_queue`` collection. Each drain starts a
background delivery for every due, non-dead-lettered entry as a run in the
webhook's own session (``webhook:<webhookId>``), so the drain never waits on
an agent. Success logs the delivery and removes the entry;
failure backs off ``30s * 2^attempts`` plus up to 5 s of jitter until
``maxAttempts`` is reached, after which the entry is dead-lettered.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone

from pydantic import ValidationError

from steward.events import EventBus
from steward.handlers import emit_diagnostic
from steward.runs.manager import RunRequest, SessionRunManager
from steward.schemas import (
    AgentRecord,
    SessionRecord,
    WebhookLogEntry,
    WebhookRecord,
    WebhookRetryEntry,
)
from steward.storage import (
    AGENTS,
    SESSIONS,
    WEBHOOK_LOGS,
    WEBHOOK_RETRY_QUEUE,
    WEBHOOKS,
    DocumentStore,
)
from steward.utils import gen_id, is_self_cancelled, now_ms

logger = logging.getLogger(__name__)

RETRY_BASE_MS = 30_000
RETRY_JITTER_MS = 5_000
PAYLOAD_PROMPT_CHARS = 12_000
PAYLOAD_LOG_CHARS = 2_000


@dataclass
class RetryStats:
    pending: int = 0
    dead_lettered: int = 0


def retry_delay_ms(attempts: int, jitter_ms: int | None = None) -> int:
    """Backoff before the next attempt, given attempts made so far."""
    if jitter_ms is None:
        jitter_ms = random.randint(0, RETRY_JITTER_MS - 1)
    return RETRY_BASE_MS * 2**attempts + jitter_ms


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


class WebhookRetryProcessor:
    def __init__(
        self,
        store: DocumentStore,
        runs: SessionRunManager,
        bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._runs = runs
        self._bus = bus
        self._deliveries: dict[str, asyncio.Task] = {}

    async def stats(self) -> RetryStats:
        stats = RetryStats()
        for doc in (await self._store.load_collection(WEBHOOK_RETRY_QUEUE)).values():
            if doc.get("deadLettered"):
                stats.dead_lettered += 1
            else:
                stats.pending += 1
        return stats

    async def process_due(self, now: int | None = None) -> int:
        """Start delivery of due entries. Returns how many deliveries were started.

        Deliveries run as background tasks; outcomes are recorded when each
        run settles. An entry already being delivered is skipped.
        """
        now = now_ms() if now is None else now
        due: list[WebhookRetryEntry] = []
        for entry_id, doc in (await self._store.load_collection(WEBHOOK_RETRY_QUEUE)).items():
            if entry_id in self._deliveries:
                continue
            try:
                entry = WebhookRetryEntry.model_validate(doc)
            except ValidationError as exc:
                await self._dead_letter_invalid(entry_id, doc, exc)
                continue
            if not entry.dead_lettered and entry.next_retry_at <= now:
                due.append(entry)
        if not due:
            return 0

        webhooks = await self._store.load_collection(WEBHOOKS)
        agents = await self._store.load_collection(AGENTS)
        started = 0
        for entry in due:
            webhook_doc = webhooks.get(entry.webhook_id)
            if webhook_doc is None:
                # Webhook deleted: nothing left to deliver to
                await self._store.delete(WEBHOOK_RETRY_QUEUE, entry.id)
                continue

            try:
                webhook = WebhookRecord.model_validate(webhook_doc)
                agent_doc = agents.get(webhook.agent_id) if webhook.agent_id else None
                agent = AgentRecord.model_validate(agent_doc) if agent_doc is not None else None
            except ValidationError as exc:
                logger.warning("Webhook retry %s has an invalid webhook or agent record: %s", entry.id, exc)
                await self._dead_letter(entry, "invalid webhook or agent record")
                continue

            if agent is None:
                logger.warning(
                    "Dead-lettered webhook retry %s: agent not found for webhook %s",
                    entry.id,
                    entry.webhook_id,
                )
                await self._dead_letter(entry, "agent not found")
                continue

            task = asyncio.create_task(
                self._deliver(entry, webhook, agent, now), name=f"webhook-retry-{entry.id}"
            )
            self._deliveries[entry.id] = task
            task.add_done_callback(functools.partial(self._delivery_done, entry.id))
            started += 1
        return started

    def _delivery_done(self, entry_id: str, task: asyncio.Task) -> None:
        self._deliveries.pop(entry_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Webhook retry %s delivery crashed", entry_id, exc_info=task.exception())

    @property
    def in_flight(self) -> int:
        return len(self._deliveries)

    async def wait_idle(self) -> None:
        """Wait until every started delivery has recorded its outcome."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries.values()), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel in-flight deliveries. Their entries stay queued for the next start."""
        tasks = list(self._deliveries.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._deliveries.clear()

    async def _dead_letter(self, entry: WebhookRetryEntry, reason: str) -> None:
        entry.dead_lettered = True
        await self._store.upsert(WEBHOOK_RETRY_QUEUE, entry.id, entry.to_doc())
        await self._notify_dead_letter(entry, reason)

    async def _dead_letter_invalid(self, entry_id: str, doc: dict, exc: ValidationError) -> None:
        if doc.get("deadLettered") is True:
            return
        logger.warning("Dead-lettered malformed webhook retry %s: %s", entry_id, exc)
        doc = {**doc, "deadLettered": True}
        await self._store.upsert(WEBHOOK_RETRY_QUEUE, entry_id, doc)
        await emit_diagnostic(
            self._bus,
            "webhook_dead_lettered",
            f"Webhook delivery dead-lettered: malformed retry entry {entry_id}",
            webhook_id=doc.get("webhookId"),
            entry_id=entry_id,
        )

    async def _session_for(self, webhook: WebhookRecord, agent: AgentRecord, now: int) -> str:
        name = f"webhook:{webhook.id}"
        for session_id, doc in (await self._store.load_collection(SESSIONS)).items():
            if doc.get("name") == name and doc.get("agentId") == agent.id:
                return session_id

        session = SessionRecord(
            id=gen_id(),
            name=name,
            agent_id=agent.id,
            user="system",
            session_type="orchestrated",
            tools=list(agent.tools),
            heartbeat_enabled=agent.heartbeat_enabled if agent.heartbeat_enabled is not None else True,
            heartbeat_interval_sec=agent.heartbeat_interval_sec,
            created_at=now,
            last_active_at=now,
        )
        await self._store.upsert(SESSIONS, session.id, session.to_doc())
        logger.info("Created session %s for webhook %s", session.id, webhook.id)
        return session.id

    def _prompt(self, entry: WebhookRetryEntry, webhook: WebhookRecord) -> str:
        payload = (entry.payload or "")[:PAYLOAD_PROMPT_CHARS]
        return "\n".join(
            [
                "Webhook event received (retry).",
                f"Webhook ID: {entry.webhook_id}",
                f"Webhook Name: {webhook.name or entry.webhook_id}",
                f"Source: {webhook.source or 'custom'}",
                f"Event: {entry.event}",
                f"Retry attempt: {entry.attempts}",
                f"Original received at: {_iso(entry.created_at)}",
                "",
                "Payload:",
                payload or "(empty payload)",
                "",
                "Handle this event now. If this requires notifying the user, use configured connector tools.",
            ]
        )

    async def _deliver(
        self,
        entry: WebhookRetryEntry,
        webhook: WebhookRecord,
        agent: AgentRecord,
        now: int,
    ) -> bool:
        session_id = await self._session_for(webhook, agent, now)
        request = RunRequest(
            session_id=session_id,
            message=self._prompt(entry, webhook),
            mode="followup",
            source="webhook",
            internal=False,
        )
        try:
            handle = self._runs.enqueue(request)
            await handle.future
        except asyncio.CancelledError:
            if is_self_cancelled():
                raise
            await self._on_failure(entry, "Run cancelled")
            return False
        except Exception as exc:
            await self._on_failure(entry, str(exc) or exc.__class__.__name__)
            return False

        log = WebhookLogEntry(
            id=gen_id(8),
            webhook_id=entry.webhook_id,
            event=entry.event,
            payload=(entry.payload or "")[:PAYLOAD_LOG_CHARS],
            status="success",
            session_id=session_id,
            run_id=handle.run_id,
            timestamp=now_ms(),
        )
        await self._store.upsert(WEBHOOK_LOGS, log.id, log.to_doc())
        await self._store.delete(WEBHOOK_RETRY_QUEUE, entry.id)
        logger.info(
            "Retried webhook delivery %s for webhook %s (attempt %d)",
            entry.id,
            entry.webhook_id,
            entry.attempts,
        )
        return True

    async def _on_failure(self, entry: WebhookRetryEntry, error: str) -> None:
        entry.attempts += 1
        if entry.attempts >= entry.max_attempts:
            entry.dead_lettered = True
            await self._store.upsert(WEBHOOK_RETRY_QUEUE, entry.id, entry.to_doc())
            logger.warning(
                "Dead-lettered webhook retry %s after %d attempts: %s", entry.id, entry.attempts, error
            )
            log = WebhookLogEntry(
                id=gen_id(8),
                webhook_id=entry.webhook_id,
                event=entry.event,
                payload=(entry.payload or "")[:PAYLOAD_LOG_CHARS],
                status="error",
                error=f"Dead-lettered after {entry.attempts} attempts: {error}",
                timestamp=now_ms(),
            )
            await self._store.upsert(WEBHOOK_LOGS, log.id, log.to_doc())
            await self._notify_dead_letter(entry, error)
            return

        entry.next_retry_at = now_ms() + retry_delay_ms(entry.attempts)
        await self._store.upsert(WEBHOOK_RETRY_QUEUE, entry.id, entry.to_doc())
        logger.warning(
            "Webhook retry %s failed (attempt %d/%d), next at %s: %s",
            entry.id,
            entry.attempts,
            entry.max_attempts,
            _iso(entry.next_retry_at),
            error,
        )

    async def _notify_dead_letter(self, entry: WebhookRetryEntry, reason: str) -> None:
        await emit_diagnostic(
            self._bus,
            "webhook_dead_lettered",
            f"Webhook delivery dead-lettered: {entry.event or 'event'} for webhook {entry.webhook_id}: {reason}",
            webhook_id=entry.webhook_id,
            entry_id=entry.id,
        )
