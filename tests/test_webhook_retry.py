"""Tests for webhook retry delivery, backoff and dead-lettering."""

import asyncio

import pytest

from steward.handlers.webhook_retry import RETRY_BASE_MS, WebhookRetryProcessor, retry_delay_ms
from steward.storage import AGENTS, SESSIONS, WEBHOOK_LOGS, WEBHOOK_RETRY_QUEUE, WEBHOOKS
from steward.utils import now_ms

DAY_MS = 24 * 60 * 60 * 1000


async def _entry(store, entry_id="r1", **overrides) -> None:
    doc = {
        "id": entry_id,
        "webhookId": "wh-1",
        "event": "push",
        "payload": '{"ref":"main"}',
        "attempts": 0,
        "maxAttempts": 3,
        "nextRetryAt": 0,
        "deadLettered": False,
        "createdAt": now_ms(),
    }
    doc.update(overrides)
    await store.upsert(WEBHOOK_RETRY_QUEUE, entry_id, doc)


@pytest.fixture
async def processor(store, runs, bus):
    await store.upsert(AGENTS, "agent-1", {"id": "agent-1", "name": "Ops", "tools": ["shell"]})
    await store.upsert(WEBHOOKS, "wh-1", {"id": "wh-1", "name": "GitHub", "source": "github", "agentId": "agent-1"})
    return WebhookRetryProcessor(store, runs, bus)


def test_retry_delay():
    assert retry_delay_ms(0, jitter_ms=0) == RETRY_BASE_MS
    assert retry_delay_ms(2, jitter_ms=100) == RETRY_BASE_MS * 4 + 100
    assert RETRY_BASE_MS * 2 <= retry_delay_ms(1) < RETRY_BASE_MS * 2 + 5000


class TestProcessDue:

    async def test_success_logs_and_removes(self, processor, store, executor):
        await _entry(store)

        assert await processor.process_due() == 1
        await processor.wait_idle()

        assert await store.load_collection(WEBHOOK_RETRY_QUEUE) == {}
        logs = list((await store.load_collection(WEBHOOK_LOGS)).values())
        assert len(logs) == 1
        assert logs[0]["status"] == "success"
        assert logs[0]["webhookId"] == "wh-1"
        request = executor.requests[0]
        assert request.source == "webhook"
        assert request.internal is False
        assert "Event: push" in request.message
        assert '{"ref":"main"}' in request.message

    async def test_session_created_once(self, processor, store):
        await _entry(store, "r1")
        await processor.process_due()
        await processor.wait_idle()
        await _entry(store, "r2")
        await processor.process_due()
        await processor.wait_idle()

        sessions = [s for s in (await store.load_collection(SESSIONS)).values() if s["name"] == "webhook:wh-1"]
        assert len(sessions) == 1
        assert sessions[0]["user"] == "system"
        assert sessions[0]["sessionType"] == "orchestrated"
        assert sessions[0]["heartbeatEnabled"] is True

    async def test_not_due_skipped(self, processor, store, executor):
        await _entry(store, nextRetryAt=now_ms() + DAY_MS)
        assert await processor.process_due() == 0
        assert executor.requests == []

    async def test_failures_back_off_then_dead_letter(self, processor, store, executor, bus):
        executor.replies = [RuntimeError("agent offline")] * 5
        await _entry(store)

        before = now_ms()
        await processor.process_due()
        await processor.wait_idle()
        doc = await store.get(WEBHOOK_RETRY_QUEUE, "r1")
        assert doc["attempts"] == 1
        assert doc["deadLettered"] is False
        assert doc["nextRetryAt"] >= before + RETRY_BASE_MS * 2

        later = now_ms() + DAY_MS
        await processor.process_due(later)
        await processor.wait_idle()
        assert (await store.get(WEBHOOK_RETRY_QUEUE, "r1"))["attempts"] == 2

        await processor.process_due(later + DAY_MS)
        await processor.wait_idle()
        doc = await store.get(WEBHOOK_RETRY_QUEUE, "r1")
        assert doc["attempts"] == 3
        assert doc["deadLettered"] is True
        assert "webhook_dead_lettered" in bus.types()
        errors = [log for log in (await store.load_collection(WEBHOOK_LOGS)).values() if log["status"] == "error"]
        assert len(errors) == 1

        # Dead-lettered entries are never picked up again
        assert await processor.process_due(later + 2 * DAY_MS) == 0
        assert len(executor.requests) == 3
        assert (await store.get(WEBHOOK_RETRY_QUEUE, "r1"))["attempts"] == 3

    async def test_missing_webhook_drops_entry(self, processor, store, executor):
        await _entry(store, webhookId="gone")
        await processor.process_due()
        assert await store.load_collection(WEBHOOK_RETRY_QUEUE) == {}
        assert executor.requests == []

    async def test_missing_agent_dead_letters(self, processor, store, bus):
        await store.upsert(WEBHOOKS, "wh-2", {"id": "wh-2", "name": "Orphan", "agentId": "ghost"})
        await _entry(store, webhookId="wh-2")
        await processor.process_due()
        assert (await store.get(WEBHOOK_RETRY_QUEUE, "r1"))["deadLettered"] is True
        assert "webhook_dead_lettered" in bus.types()

    async def test_stats(self, processor, store):
        await _entry(store, "r1")
        await _entry(store, "r2", deadLettered=True)
        stats = await processor.stats()
        assert stats.pending == 1
        assert stats.dead_lettered == 1


async def _wait_for_request(executor) -> None:
    for _ in range(200):
        if executor.requests:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("run never reached the executor")


class TestInFlightDeliveries:

    async def test_drain_returns_before_run_finishes(self, processor, store, executor):
        executor.delay = 0.2
        await _entry(store)

        assert await processor.process_due() == 1
        assert processor.in_flight == 1
        assert await store.get(WEBHOOK_RETRY_QUEUE, "r1") is not None
        # Already being delivered: not started twice
        assert await processor.process_due() == 0

        await processor.wait_idle()
        assert processor.in_flight == 0
        assert await store.load_collection(WEBHOOK_RETRY_QUEUE) == {}
        assert len(executor.requests) == 1

    async def test_cancelled_run_counts_as_failed_attempt(self, processor, store, executor, runs):
        executor.delay = 5
        await _entry(store)
        await processor.process_due()
        await _wait_for_request(executor)

        assert runs.cancel_session(executor.requests[0].session_id) >= 1
        await processor.wait_idle()

        doc = await store.get(WEBHOOK_RETRY_QUEUE, "r1")
        assert doc["attempts"] == 1
        assert doc["deadLettered"] is False
        assert doc["nextRetryAt"] > now_ms()

    async def test_stop_leaves_entry_queued(self, processor, store, executor):
        executor.delay = 5
        await _entry(store)
        await processor.process_due()
        await _wait_for_request(executor)

        await processor.stop()

        assert processor.in_flight == 0
        doc = await store.get(WEBHOOK_RETRY_QUEUE, "r1")
        assert doc["attempts"] == 0


class TestMalformedEntries:

    async def test_bad_entry_dead_lettered_good_delivered(self, processor, store, bus):
        await _entry(store, "bad", attempts="many")
        await _entry(store, "good")

        assert await processor.process_due() == 1
        await processor.wait_idle()

        assert await store.get(WEBHOOK_RETRY_QUEUE, "good") is None
        bad = await store.get(WEBHOOK_RETRY_QUEUE, "bad")
        assert bad["deadLettered"] is True
        assert bad["attempts"] == "many"
        assert "webhook_dead_lettered" in bus.types()

        # Dead-lettered malformed entries are left alone afterwards
        bus.events.clear()
        assert await processor.process_due() == 0
        assert bus.types() == []
