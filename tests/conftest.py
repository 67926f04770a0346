"""Shared fixtures: in-memory store, settings and a scripted session executor."""

from __future__ import annotations

import asyncio

import pytest

from steward.config import Settings
from steward.events import Event, EventBus
from steward.runs.executor import RunOutcome, SessionExecutor
from steward.runs.manager import RunRequest, SessionRunManager
from steward.storage import MemoryDocumentStore


class ScriptedExecutor(SessionExecutor):
    """Executor returning queued replies; an Exception in the script is raised.

    Once the script runs out, ``default`` is returned.
    """

    def __init__(self, *replies: str | Exception, default: str = "done", delay: float = 0.0) -> None:
        self.replies: list[str | Exception] = list(replies)
        self.default = default
        self.delay = delay
        self.requests: list[RunRequest] = []

    async def run(self, request: RunRequest) -> RunOutcome:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return RunOutcome(text=reply)


class RecordingBus(EventBus):
    """EventBus that records emitted events instead of dispatching them."""

    def __init__(self) -> None:
        super().__init__()
        self.events: list[Event] = []

    async def emit(self, event: Event) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.type for e in self.events]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        store_backend="memory",
        run_timeout=5,
        heartbeat_user_idle_sec=None,
        heartbeat_active_start=None,
        heartbeat_active_end=None,
        loop_mode="bounded",
    )


@pytest.fixture
def store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
async def runs(executor, settings):
    manager = SessionRunManager(executor, settings)
    yield manager
    await manager.shutdown()
