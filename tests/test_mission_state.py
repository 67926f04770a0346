"""Tests for mission state normalization and bookkeeping."""

from steward.mission.state import (
    EVENT_TTL_MS,
    MAX_PENDING_EVENTS,
    MainLoopState,
    append_event,
    append_timeline,
    append_working_memory_note,
    compute_momentum_score,
    consume_events,
    normalize_state,
)

NOW = 1_740_000_000_000


class TestNormalize:

    def test_empty_document(self):
        state = normalize_state(None, NOW)
        assert state.status == "idle"
        assert state.paused is False
        assert state.autonomy_mode == "autonomous"
        assert state.pending_events == []
        assert state.updated_at == NOW

    def test_bad_values_fall_back(self):
        state = normalize_state(
            {
                "status": "finished",
                "momentumScore": "lots",
                "paused": "yes",
                "followupChainCount": -4,
                "planSteps": ["a", "A", 3, "b"],
            },
            NOW,
        )
        assert state.status == "idle"
        assert state.paused is False
        assert state.followup_chain_count == 0
        assert state.plan_steps == ["a", "b"]
        assert 0 <= state.momentum_score <= 100

    def test_old_events_dropped(self):
        state = normalize_state(
            {
                "pendingEvents": [
                    {"id": "old", "type": "user", "text": "stale", "createdAt": NOW - EVENT_TTL_MS - 1},
                    {"id": "new", "type": "user", "text": "fresh", "createdAt": NOW - 1000},
                    {"id": "blank", "type": "user", "text": "   "},
                ]
            },
            NOW,
        )
        assert [e.id for e in state.pending_events] == ["new"]

    def test_goal_filled_from_contract(self):
        state = normalize_state({"goalContract": {"objective": "Ship docs"}}, NOW)
        assert state.goal == "Ship docs"
        assert state.goal_contract.objective == "Ship docs"

    def test_to_doc_uses_camel_case(self):
        doc = normalize_state({"status": "progress", "nextAction": "push"}, NOW).to_doc()
        assert doc["status"] == "progress"
        assert doc["nextAction"] == "push"
        assert "goalContract" in doc
        assert normalize_state(doc, NOW).next_action == "push"


class TestEvents:

    def test_dedupe_within_window(self):
        state = MainLoopState()
        assert append_event(state, "user", "hello  there", NOW) is True
        assert append_event(state, "user", "hello there", NOW + 30_000) is False
        assert append_event(state, "user", "hello there", NOW + 61_000) is True
        assert len(state.pending_events) == 2

    def test_empty_text_rejected(self):
        assert append_event(MainLoopState(), "user", "  ", NOW) is False

    def test_capped(self):
        state = MainLoopState()
        for i in range(MAX_PENDING_EVENTS + 5):
            append_event(state, "user", f"event {i}", NOW + i)
        assert len(state.pending_events) == MAX_PENDING_EVENTS
        assert state.pending_events[-1].text == f"event {MAX_PENDING_EVENTS + 4}"

    def test_consume(self):
        state = MainLoopState()
        append_event(state, "user", "one", NOW)
        append_event(state, "user", "two", NOW)
        consume_events(state, [state.pending_events[0].id])
        assert [e.text for e in state.pending_events] == ["two"]


class TestTimelineAndNotes:

    def test_timeline_dedupe(self):
        state = MainLoopState()
        append_timeline(state, "meta", "did a thing", NOW, "progress")
        append_timeline(state, "meta", "did a thing", NOW + 10_000)
        append_timeline(state, "user", "did a thing", NOW + 10_000)
        assert [e.source for e in state.timeline] == ["meta", "user"]

    def test_working_memory_skips_repeat(self):
        state = MainLoopState()
        append_working_memory_note(state, "note A")
        append_working_memory_note(state, "note A")
        append_working_memory_note(state, "note B")
        assert state.working_memory_notes == ["note A", "note B"]


class TestMomentum:

    def test_status_base(self):
        assert compute_momentum_score(MainLoopState(status="ok")) == 94
        assert compute_momentum_score(MainLoopState(status="blocked")) == 20

    def test_penalties_and_pause(self):
        state = MainLoopState(status="progress", meta_miss_count=50, paused=True)
        score = compute_momentum_score(state)
        assert score <= 35
        assert score >= 0
