"""Tests for the mission loop state machine."""

from unittest.mock import patch

import pytest

from steward.events import Event
from steward.mission.contract import parse_contract
from steward.mission.gates import NoCompletionGate
from steward.mission.loop import MAX_FOLLOWUP_CHAIN, MissionLoop
from steward.runs.manager import RunRequest, RunResult
from steward.storage import AGENTS, MEMORIES, SESSIONS, TASKS

MAIN = "main-1"


async def _main_session(store, state=None, **overrides) -> None:
    doc = {
        "id": MAIN,
        "name": "__main__",
        "agentId": "agent-1",
        "user": "alice",
        "tools": ["memory", "shell"],
        "messages": [],
        "mainLoopState": state or {},
    }
    doc.update(overrides)
    await store.upsert(SESSIONS, MAIN, doc)


def _result(text="", *, internal=True, source="heartbeat", message="tick", error=None, tool_events=None):
    request = RunRequest(session_id=MAIN, message=message, source=source, internal=internal)
    return RunResult(run_id="run-1", request=request, text=text, error=error, tool_events=tool_events or [])


async def _state(store) -> dict:
    return (await store.get(SESSIONS, MAIN))["mainLoopState"]


@pytest.fixture
def mission(store, settings):
    return MissionLoop(store, settings)


class TestUserInput:

    async def test_goal_update_schedules_kickoff(self, mission, store):
        await _main_session(store, {"followupChainCount": 4})

        followup = await mission.handle_run_result(
            _result("On it.", internal=False, source="chat", message="Build the landing page")
        )

        state = await _state(store)
        assert state["goal"] == "Build the landing page"
        assert state["status"] == "progress"
        assert state["followupChainCount"] == 0
        assert followup is not None
        assert followup.delay_sec == 1.5
        assert followup.request.dedupe_key == f"main-loop-user-kickoff:{MAIN}"
        assert followup.request.internal is True

    async def test_mission_task_created(self, mission, store):
        await _main_session(store)
        await mission.handle_run_result(_result("ok", internal=False, source="chat", message="Build the landing page"))

        state = await _state(store)
        task = await store.get(TASKS, state["missionTaskId"])
        assert task["title"] == "Mission: Build the landing page"
        assert task["status"] == "running"
        assert task["sourceType"] == "mission"
        assert task["sessionId"] == MAIN

    async def test_goal_change_forces_memory_note(self, mission, store):
        await _main_session(store)
        await mission.handle_run_result(_result("ok", internal=False, source="chat", message="Build the landing page"))
        notes = list((await store.load_collection(MEMORIES)).values())
        assert len(notes) == 1
        assert notes[0]["category"] == "mission"
        assert notes[0]["sessionId"] == MAIN

    async def test_assist_mode_no_kickoff(self, mission, store):
        await _main_session(store, {"autonomyMode": "assist"})
        followup = await mission.handle_run_result(
            _result("ok", internal=False, source="chat", message="Build the landing page")
        )
        assert followup is None


class TestInternalReplies:

    async def test_ok_without_follow_up_settles(self, mission, store):
        await _main_session(store, {"goal": "Write docs", "status": "progress", "followupChainCount": 2})

        followup = await mission.handle_run_result(
            _result('Docs are written.\n[MAIN_LOOP_META] {"status":"ok","summary":"done","follow_up":false}')
        )

        state = await _state(store)
        assert followup is None
        assert state["status"] == "ok"
        assert state["summary"] == "done"
        assert state["followupChainCount"] == 0
        task = await store.get(TASKS, state["missionTaskId"])
        assert task["status"] == "completed"

    async def test_follow_up_requested(self, mission, store):
        await _main_session(store, {"goal": "Write docs", "status": "progress"})
        followup = await mission.handle_run_result(
            _result('[MAIN_LOOP_META] {"status":"progress","follow_up":true,"delay_sec":2}')
        )
        assert followup is not None
        assert followup.delay_sec == 5
        assert followup.request.dedupe_key == f"main-loop-followup:{MAIN}"
        assert (await _state(store))["followupChainCount"] == 1

    async def test_reply_contract_parsed_once(self, mission, store):
        await _main_session(store, {"goal": "Write docs", "status": "progress"})
        with patch("steward.mission.loop.parse_contract", wraps=parse_contract) as parser:
            followup = await mission.handle_run_result(
                _result('[MAIN_LOOP_META] {"status":"progress","follow_up":true}')
            )
        assert followup is not None
        assert parser.call_count == 1

    async def test_follow_up_chain_capped(self, mission, store):
        await _main_session(
            store, {"goal": "Write docs", "status": "progress", "followupChainCount": MAX_FOLLOWUP_CHAIN}
        )
        followup = await mission.handle_run_result(
            _result('[MAIN_LOOP_META] {"status":"progress","follow_up":true}')
        )
        assert followup is None
        assert (await _state(store))["followupChainCount"] == MAX_FOLLOWUP_CHAIN

    async def test_missing_meta_inferred(self, mission, store):
        await _main_session(store, {"goal": "Write docs"})
        await mission.handle_run_result(_result("I looked around and started the outline."))
        state = await _state(store)
        assert state["metaMissCount"] == 1
        assert state["status"] == "progress"
        assert state["summary"] == "I looked around and started the outline."
        assert any(e["type"] == "meta_missing" for e in state["pendingEvents"])

    async def test_consumes_events(self, mission, store):
        await _main_session(store, {"goal": "Write docs"})
        await mission.push_event("task_failed", "report failed", user="alice")
        event_id = (await _state(store))["pendingEvents"][-1]["id"]
        await mission.handle_run_result(
            _result(f'[MAIN_LOOP_META] {{"status":"progress","consume_event_ids":["{event_id}"]}}')
        )
        assert all(e["id"] != event_id for e in (await _state(store))["pendingEvents"])

    async def test_paused_internal_skipped(self, mission, store):
        await _main_session(store, {"goal": "Write docs", "status": "progress", "paused": True})
        followup = await mission.handle_run_result(
            _result('[MAIN_LOOP_META] {"status":"ok","follow_up":true}')
        )
        state = await _state(store)
        assert followup is None
        assert state["status"] == "progress"
        assert state["timeline"][-1]["source"] == "paused_skip"

    async def test_error_blocks(self, mission, store):
        await _main_session(store, {"goal": "Write docs", "status": "progress"})
        await mission.handle_run_result(_result(error="runtime exploded"))
        state = await _state(store)
        assert state["status"] == "blocked"
        task = await store.get(TASKS, state["missionTaskId"])
        assert task["status"] == "failed"

    async def test_tool_error_recorded(self, mission, store):
        await _main_session(store, {"goal": "Write docs", "status": "progress"})
        await mission.handle_run_result(
            _result(
                '[MAIN_LOOP_META] {"status":"progress"}',
                tool_events=[{"name": "shell", "error": True, "output": "permission denied"}],
            )
        )
        events = (await _state(store))["pendingEvents"]
        assert any(e["type"] == "tool_error" and "permission denied" in e["text"] for e in events)

    async def test_heartbeat_ok_resets_chain(self, mission, store):
        await _main_session(store, {"goal": "Write docs", "status": "progress", "followupChainCount": 3})
        followup = await mission.handle_run_result(_result("HEARTBEAT_OK"))
        assert followup is None
        state = await _state(store)
        assert state["followupChainCount"] == 0
        assert state["metaMissCount"] == 0


class TestCompletionGate:

    GOAL = "Take a screenshot of the dashboard and send it to me"

    async def test_holds_ok_without_artifact(self, mission, store):
        await _main_session(store, {"goal": self.GOAL, "status": "progress"})
        await mission.handle_run_result(_result('[MAIN_LOOP_META] {"status":"ok","summary":"done"}'))
        state = await _state(store)
        assert state["status"] == "progress"
        assert any(e["type"] == "completion_gate" for e in state["pendingEvents"])

    async def test_allows_ok_with_upload_link(self, mission, store):
        await _main_session(store, {"goal": self.GOAL, "status": "progress"})
        await mission.handle_run_result(
            _result('Here: /api/uploads/shot.png\n[MAIN_LOOP_META] {"status":"ok","summary":"sent"}')
        )
        assert (await _state(store))["status"] == "ok"

    async def test_gate_is_pluggable(self, store, settings):
        mission = MissionLoop(store, settings, gate=NoCompletionGate())
        await _main_session(store, {"goal": self.GOAL, "status": "progress"})
        await mission.handle_run_result(_result('[MAIN_LOOP_META] {"status":"ok","summary":"done"}'))
        assert (await _state(store))["status"] == "ok"


class TestMemoryNotes:

    async def test_throttled_without_force(self, mission, store):
        await _main_session(store, {"goal": "Write docs", "status": "progress"})
        await mission.handle_run_result(_result('[MAIN_LOOP_META] {"status":"progress","summary":"one"}'))
        await mission.handle_run_result(_result('[MAIN_LOOP_META] {"status":"progress","summary":"two"}'))
        assert len(await store.load_collection(MEMORIES)) == 1

    async def test_no_memory_tool_no_note(self, mission, store):
        await _main_session(store, {"goal": "Write docs"}, tools=["shell"])
        await mission.handle_run_result(_result('[MAIN_LOOP_META] {"status":"ok"}'))
        assert await store.load_collection(MEMORIES) == {}


class TestEventsAndOperator:

    async def test_push_event_scoped_to_user(self, mission, store):
        await _main_session(store)
        await store.upsert(SESSIONS, "other", {"id": "other", "name": "__main__", "user": "bob"})
        assert await mission.push_event("task_failed", "Task X failed", user="alice") == 1
        assert await mission.push_event("task_failed", "Task X failed", user="alice") == 0

    async def test_on_diagnostic(self, mission, store):
        await _main_session(store)
        await mission.on_diagnostic(Event(type="health_alert", text="session stale", user="alice"))
        events = (await _state(store))["pendingEvents"]
        assert events[-1]["type"] == "health_alert"

    async def test_set_state_and_get_state(self, mission, store):
        await _main_session(store, {"goal": "Write docs"})
        state = await mission.set_state(MAIN, {"paused": True, "autonomy_mode": "assist"})
        assert state.paused is True
        assert state.autonomy_mode == "assist"
        assert (await mission.get_state(MAIN)).paused is True

    async def test_set_state_accepts_camel_case_keys(self, mission, store):
        await _main_session(store, {"goal": "Write docs"})
        state = await mission.set_state(MAIN, {"autonomyMode": "assist", "nextAction": "Outline chapter 1"})
        assert state.autonomy_mode == "assist"
        assert state.next_action == "Outline chapter 1"

    async def test_non_main_session_rejected(self, mission, store):
        await store.upsert(SESSIONS, "plain", {"id": "plain", "name": "worker"})
        assert await mission.get_state("plain") is None
        assert await mission.set_state("plain", {"paused": True}) is None


class TestAgentHeartbeat:

    async def test_updates_agent(self, mission, store):
        await store.upsert(AGENTS, "agent-1", {"id": "agent-1", "name": "Ops"})
        await store.upsert(SESSIONS, "worker", {"id": "worker", "name": "worker", "agentId": "agent-1"})
        request = RunRequest(session_id="worker", message="check", source="heartbeat", internal=True)
        await mission.handle_run_result(
            RunResult(
                run_id="r",
                request=request,
                text='[AGENT_HEARTBEAT_META] {"goal":"triage inbox","status":"progress","next_action":"reply"}',
            )
        )
        agent = await store.get(AGENTS, "agent-1")
        assert agent["heartbeatGoal"] == "triage inbox"
        assert agent["heartbeatStatus"] == "progress"
        assert agent["heartbeatNextAction"] == "reply"

    async def test_ignores_non_heartbeat_sources(self, mission, store):
        await store.upsert(AGENTS, "agent-1", {"id": "agent-1", "name": "Ops"})
        await store.upsert(SESSIONS, "worker", {"id": "worker", "name": "worker", "agentId": "agent-1"})
        request = RunRequest(session_id="worker", message="hi", source="chat", internal=False)
        await mission.handle_run_result(
            RunResult(run_id="r", request=request, text='[AGENT_HEARTBEAT_META] {"goal":"x"}')
        )
        assert (await store.get(AGENTS, "agent-1")).get("heartbeatGoal") is None
