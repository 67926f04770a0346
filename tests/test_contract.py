"""Tests for meta-contract parsing and goal-contract extraction."""

from datetime import UTC, datetime

from steward.mission.contract import (
    GoalContract,
    merge_goal_contracts,
    parse_agent_heartbeat_meta,
    parse_contract,
    parse_goal_contract_from_text,
    parse_main_loop_meta,
    parse_main_loop_plan,
    parse_main_loop_review,
    strip_meta_for_persistence,
)


class TestMetaParsing:

    def test_tagged_meta(self):
        meta = parse_main_loop_meta(
            'Done.\n[MAIN_LOOP_META] {"status":"ok","summary":"done","follow_up":false}'
        )
        assert meta is not None
        assert meta.status == "ok"
        assert meta.summary == "done"
        assert meta.follow_up is False
        assert meta.delay_sec == 45

    def test_delay_clamped(self):
        low = parse_main_loop_meta('[MAIN_LOOP_META] {"follow_up":true,"delay_sec":1}')
        high = parse_main_loop_meta('[MAIN_LOOP_META] {"follow_up":true,"delay_sec":99999}')
        assert low.delay_sec == 5
        assert high.delay_sec == 900

    def test_first_valid_match_wins(self):
        text = '[MAIN_LOOP_META] {broken\n[MAIN_LOOP_META] {"status":"blocked"}\n[MAIN_LOOP_META] {"status":"ok"}'
        assert parse_main_loop_meta(text).status == "blocked"

    def test_bare_json_with_hint_key(self):
        meta = parse_main_loop_meta('Working.\n{"next_action":"open PR","follow_up":"true"}')
        assert meta.next_action == "open PR"
        assert meta.follow_up is True

    def test_bare_json_without_hint_ignored(self):
        assert parse_main_loop_meta('{"foo": 1}') is None

    def test_unknown_status_dropped(self):
        assert parse_main_loop_meta('[MAIN_LOOP_META] {"status":"finished"}').status is None

    def test_no_meta(self):
        assert parse_main_loop_meta("just text") is None
        assert parse_main_loop_meta("") is None


class TestPlanAndReview:

    def test_plan_steps_capped(self):
        steps = [f"step {i}" for i in range(12)]
        plan = parse_main_loop_plan(f'[MAIN_LOOP_PLAN] {{"steps":{steps!r}}}'.replace("'", '"'))
        assert len(plan.steps) == 8

    def test_plan_dedupes_case_insensitively(self):
        plan = parse_main_loop_plan('[MAIN_LOOP_PLAN] {"steps":["Build","build"," Test "],"current_step":"Build"}')
        assert plan.steps == ["Build", "Test"]
        assert plan.current_step == "Build"

    def test_review_confidence_bounds(self):
        review = parse_main_loop_review('[MAIN_LOOP_REVIEW] {"note":"ok","confidence":7,"needs_replan":true}')
        assert review.confidence == 1.0
        assert review.needs_replan is True

    def test_empty_review_is_none(self):
        assert parse_main_loop_review('[MAIN_LOOP_REVIEW] {"confidence":"x"}') is None

    def test_parse_contract_heartbeat_ok(self):
        parsed = parse_contract("HEARTBEAT_OK")
        assert parsed.heartbeat_ok is True
        assert parsed.meta is None


class TestAgentHeartbeatMeta:

    def test_parses(self):
        meta = parse_agent_heartbeat_meta(
            'Checked.\n[AGENT_HEARTBEAT_META] {"goal":"triage","status":"progress","next_action":"reply"}'
        )
        assert meta.goal == "triage"
        assert meta.status == "progress"

    def test_invalid_status(self):
        assert parse_agent_heartbeat_meta('[AGENT_HEARTBEAT_META] {"status":"weird"}') is None


def test_strip_meta_for_persistence():
    text = (
        "Update for you.\n"
        '[MAIN_LOOP_PLAN] {"steps":["a"]}\n'
        '[MAIN_LOOP_META] {"status":"ok"}\n'
        '[MAIN_LOOP_REVIEW] {"note":"fine"}'
    )
    assert strip_meta_for_persistence(text) == "Update for you."


class TestGoalContract:

    def test_extracts_fields(self):
        contract = parse_goal_contract_from_text(
            "Launch the landing page. Budget $250.\n"
            "Must use the existing brand kit\n"
            "Deadline: 2025-06-01\n"
            "Success metric: 100 signups"
        )
        assert contract.objective == "Launch the landing page."
        assert contract.budget_usd == 250.0
        assert contract.deadline_at == int(datetime(2025, 6, 1, tzinfo=UTC).timestamp() * 1000)
        assert contract.success_metric == "100 signups"
        assert contract.constraints == ["Must use the existing brand kit"]

    def test_empty_text(self):
        assert parse_goal_contract_from_text("   ") is None

    def test_merge_inherits_missing_fields(self):
        current = GoalContract(objective="Old", budget_usd=50.0, success_metric="m")
        new = GoalContract(objective="New")
        merged = merge_goal_contracts(current, new)
        assert merged.objective == "New"
        assert merged.budget_usd == 50.0
        assert merged.success_metric == "m"

    def test_doc_round_trip_keys(self):
        doc = GoalContract(objective="Ship", budget_usd=10.0).to_doc()
        assert doc["budgetUsd"] == 10.0
        assert GoalContract.from_doc(doc).objective == "Ship"
        assert GoalContract.from_doc({"objective": " "}) is None
