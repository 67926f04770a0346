"""Tests for the task queue: running, retries, dead-letter and stall recovery."""

import pytest

from steward.handlers.task_queue import TaskQueue
from steward.storage import AGENTS, QUEUE, SCHEDULES, SESSIONS, SETTINGS, TASKS
from steward.utils import now_ms


async def _task(store, task_id="t1", **overrides) -> None:
    now = now_ms()
    doc = {
        "id": task_id,
        "title": "Write report",
        "description": "Write the weekly report",
        "status": "backlog",
        "agentId": "agent-1",
        "createdAt": now,
        "updatedAt": now,
    }
    doc.update(overrides)
    await store.upsert(TASKS, task_id, doc)


@pytest.fixture
async def queue(store, runs, settings, bus):
    await store.upsert(AGENTS, "agent-1", {"id": "agent-1", "name": "Writer", "tools": ["shell"]})
    return TaskQueue(store, runs, settings, bus)


class TestEnqueue:

    async def test_enqueue_marks_queued(self, queue, store, bus):
        await _task(store)
        assert await queue.enqueue("t1") is True
        task = await store.get(TASKS, "t1")
        assert task["status"] == "queued"
        assert task["maxAttempts"] == 3
        assert task["retryBackoffSec"] == 30
        assert await queue.has_pending()
        assert "task_queued" in bus.types()

    async def test_enqueue_unknown_task(self, queue):
        assert await queue.enqueue("missing") is False

    async def test_runtime_overrides_policy(self, queue, store):
        await store.upsert(SETTINGS, "app", {"defaultTaskMaxAttempts": 5, "taskRetryBackoffSec": 10})
        await _task(store)
        await queue.enqueue("t1")
        task = await store.get(TASKS, "t1")
        assert task["maxAttempts"] == 5
        assert task["retryBackoffSec"] == 10


class TestProcessNext:

    async def test_success_completes_task(self, queue, store, executor, bus):
        executor.default = "Report written."
        await _task(store)
        await queue.enqueue("t1")

        started = await queue.process_next()

        assert started == 1
        task = await store.get(TASKS, "t1")
        assert task["status"] == "completed"
        assert task["result"] == "Report written."
        assert task["sessionId"] in await store.load_collection(SESSIONS)
        assert await store.load_collection(QUEUE) == {}
        assert executor.requests[0].source == "task"
        assert executor.requests[0].message == "Write the weekly report"
        assert "task_completed" in bus.types()

    async def test_missing_agent_fails(self, queue, store, bus):
        await _task(store, agentId="ghost")
        await queue.enqueue("t1")
        assert await queue.process_next() == 0
        assert (await store.get(TASKS, "t1"))["status"] == "failed"
        assert "task_failed" in bus.types()

    async def test_failure_schedules_retry(self, queue, store, executor, bus):
        executor.replies = [RuntimeError("boom")]
        await _task(store)
        await queue.enqueue("t1")
        before = now_ms()

        await queue.process_next()

        task = await store.get(TASKS, "t1")
        assert task["status"] == "queued"
        assert task["attempts"] == 1
        assert task["retryScheduledAt"] >= before + 30_000
        assert "t1" in await store.load_collection(QUEUE)
        assert "task_retry_scheduled" in bus.types()
        # Not runnable until the retry time
        assert await queue.process_next() == 0

    async def test_dead_letter_after_max_attempts(self, queue, store, executor, bus):
        executor.replies = [RuntimeError("boom")]
        await _task(store, maxAttempts=1)
        await queue.enqueue("t1")
        await queue.process_next()
        task = await store.get(TASKS, "t1")
        assert task["status"] == "failed"
        assert task["deadLetteredAt"] is not None
        assert "task_dead_lettered" in bus.types()

    async def test_orphaned_queued_task_recovered(self, queue, store):
        await _task(store, status="queued")
        assert await queue.process_next() == 1
        assert (await store.get(TASKS, "t1"))["status"] == "completed"

    async def test_reuses_schedule_session(self, queue, store):
        await store.upsert(SESSIONS, "sess-prev", {"id": "sess-prev", "name": "prev"})
        await store.upsert(SCHEDULES, "s1", {"id": "s1", "agentId": "agent-1", "lastSessionId": "sess-prev"})
        await _task(store, sourceType="schedule", sourceScheduleId="s1")
        await queue.enqueue("t1")
        await queue.process_next()
        assert (await store.get(TASKS, "t1"))["sessionId"] == "sess-prev"

    async def test_new_session_recorded_on_schedule(self, queue, store):
        await store.upsert(SCHEDULES, "s1", {"id": "s1", "agentId": "agent-1"})
        await _task(store, sourceType="schedule", sourceScheduleId="s1")
        await queue.enqueue("t1")
        await queue.process_next()
        task = await store.get(TASKS, "t1")
        assert (await store.get(SCHEDULES, "s1"))["lastSessionId"] == task["sessionId"]
        session = await store.get(SESSIONS, task["sessionId"])
        assert session["sessionType"] == "orchestrated"


class TestStallRecovery:

    async def test_stalled_task_requeued(self, queue, store, bus):
        old = now_ms() - 60 * 60_000
        await _task(store, status="running", startedAt=old, updatedAt=old)
        report = await queue.recover_stalled()
        assert report.recovered == 1
        task = await store.get(TASKS, "t1")
        assert task["status"] == "queued"
        assert task["attempts"] == 1
        assert "task_stall_recovered" in bus.types()

    async def test_stalled_task_dead_lettered_when_budget_spent(self, queue, store):
        old = now_ms() - 60 * 60_000
        await _task(store, status="running", startedAt=old, updatedAt=old, attempts=2, maxAttempts=3)
        report = await queue.recover_stalled()
        assert report.dead_lettered == 1
        assert (await store.get(TASKS, "t1"))["status"] == "failed"

    async def test_mission_tasks_exempt(self, queue, store):
        old = now_ms() - 60 * 60_000
        await _task(store, status="running", startedAt=old, updatedAt=old, sourceType="mission")
        report = await queue.recover_stalled()
        assert report.recovered == 0
        assert (await store.get(TASKS, "t1"))["status"] == "running"

    async def test_recent_running_task_left_alone(self, queue, store):
        await _task(store, status="running", startedAt=now_ms())
        assert (await queue.recover_stalled()).recovered == 0
