"""Tests for src/orchestrator/state_machine.py."""

import pytest

from src.core.models import ReasonCode, RunState, StateEvent
from src.orchestrator.state_machine import (
    TRANSITIONS,
    IdempotencyCache,
    StateMachine,
    create_idempotency_key,
    get_error_reason_code,
    get_target_state,
    get_timeout_reason_code,
    get_valid_events_for_state,
    is_terminal_state,
    is_valid_transition,
)

INVALID_PAIRS = [
    (state, event)
    for state in RunState
    for event in StateEvent
    if event not in TRANSITIONS.get(state, {})
]


class TestTransitionTable:
    @pytest.mark.parametrize("state,event,target", [
        (RunState.CREATED, StateEvent.START_PARSING, RunState.PARSING),
        (RunState.PARSING, StateEvent.PARSING_COMPLETE, RunState.GENERATING),
        (RunState.GENERATING, StateEvent.GENERATION_COMPLETE, RunState.AWAITING_APPROVAL),
        (RunState.AWAITING_APPROVAL, StateEvent.APPROVED, RunState.EXECUTING),
        (RunState.AWAITING_APPROVAL, StateEvent.REJECTED, RunState.GENERATING),
        (RunState.EXECUTING, StateEvent.EXECUTION_COMPLETE, RunState.CODEX_REVIEWING),
        (RunState.CODEX_REVIEWING, StateEvent.REVIEW_COMPLETE, RunState.REPORT_READY),
        (RunState.REPORT_READY, StateEvent.CONFIRMED, RunState.COMPLETED),
        (RunState.REPORT_READY, StateEvent.RETEST, RunState.CREATED),
    ])
    def test_happy_path_edges(self, state, event, target):
        assert get_target_state(state, event) == target

    def test_error_allowed_from_every_non_terminal_state(self):
        for state in RunState:
            if is_terminal_state(state):
                assert get_valid_events_for_state(state) == []
            else:
                assert TRANSITIONS[state][StateEvent.ERROR] == RunState.FAILED

    def test_timeout_only_at_checkpoints(self):
        with_timeout = {s for s in RunState if is_valid_transition(s, StateEvent.TIMEOUT)}
        assert with_timeout == {RunState.AWAITING_APPROVAL, RunState.REPORT_READY}

    def test_invalid_pair(self):
        assert not is_valid_transition(RunState.CREATED, StateEvent.APPROVED)
        assert get_target_state(RunState.EXECUTING, StateEvent.CONFIRMED) is None


class TestReasonCodes:
    def test_timeout_codes(self):
        assert get_timeout_reason_code(RunState.AWAITING_APPROVAL) == ReasonCode.APPROVAL_TIMEOUT
        assert get_timeout_reason_code(RunState.REPORT_READY) == ReasonCode.CONFIRM_TIMEOUT
        assert get_timeout_reason_code(RunState.EXECUTING) == ReasonCode.AGENT_TIMEOUT

    def test_error_codes(self):
        assert get_error_reason_code("playwright") == ReasonCode.PLAYWRIGHT_ERROR
        assert get_error_reason_code(" Verdict_Conflict ") == ReasonCode.VERDICT_CONFLICT
        assert get_error_reason_code("retry_exhausted") == ReasonCode.RETRY_EXHAUSTED
        assert get_error_reason_code("something odd") == ReasonCode.INTERNAL_ERROR
        assert get_error_reason_code(None) == ReasonCode.INTERNAL_ERROR


class TestIdempotencyKey:
    def test_format(self):
        key = create_idempotency_key("r1", RunState.CREATED, RunState.PARSING, StateEvent.START_PARSING)
        assert key == "r1:created:parsing:START_PARSING"

    def test_shard_suffix(self):
        key = create_idempotency_key(
            "r1", RunState.AWAITING_APPROVAL, RunState.GENERATING, StateEvent.REJECTED, "regeneration-2",
        )
        assert key.endswith(":regeneration-2")


class TestIdempotencyCache:
    def test_add_contains(self):
        cache = IdempotencyCache()
        cache.add("r1", "k1")
        assert cache.contains("r1", "k1")
        assert not cache.contains("r2", "k1")
        assert len(cache) == 1

    def test_evicts_least_recent_run(self):
        cache = IdempotencyCache(max_runs=2)
        cache.add("r1", "a")
        cache.add("r2", "b")
        cache.add("r1", "c")  # r1 becomes most recent
        cache.add("r3", "d")
        assert cache.run_count == 2
        assert not cache.contains("r2", "b")
        assert cache.contains("r1", "a")
        assert cache.contains("r3", "d")

    def test_clear_run(self):
        cache = IdempotencyCache()
        cache.add("r1", "a")
        cache.add("r1", "b")
        assert cache.clear_run("r1") == 2
        assert cache.clear_run("r1") == 0

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            IdempotencyCache(max_runs=0)


class TestStateMachine:
    def test_valid_transition_builds_log_entry(self):
        sm = StateMachine()
        result = sm.transition(RunState.CREATED, StateEvent.START_PARSING, "r1", reason="go")
        assert result.success
        assert not result.is_no_op
        assert result.new_state == RunState.PARSING
        assert result.log_entry.from_state == RunState.CREATED
        assert result.log_entry.to_state == RunState.PARSING
        assert result.log_entry.event == StateEvent.START_PARSING
        assert result.log_entry.reason == "go"

    def test_duplicate_is_no_op(self):
        sm = StateMachine()
        sm.transition(RunState.CREATED, StateEvent.START_PARSING, "r1")
        assert sm.would_be_no_op(RunState.CREATED, StateEvent.START_PARSING, "r1")
        again = sm.transition(RunState.CREATED, StateEvent.START_PARSING, "r1")
        assert again.success
        assert again.is_no_op
        assert again.log_entry is None

    def test_distinct_shards_not_deduplicated(self):
        sm = StateMachine()
        first = sm.transition(RunState.AWAITING_APPROVAL, StateEvent.REJECTED, "r1", shard_id="regeneration-1")
        second = sm.transition(RunState.AWAITING_APPROVAL, StateEvent.REJECTED, "r1", shard_id="regeneration-2")
        assert not first.is_no_op
        assert not second.is_no_op

    def test_invalid_transition(self):
        result = StateMachine().transition(RunState.CREATED, StateEvent.CONFIRMED, "r1")
        assert not result.success
        assert result.new_state == RunState.CREATED
        assert "not allowed" in result.error

    @pytest.mark.parametrize("state,event", INVALID_PAIRS)
    def test_every_pair_outside_table_fails(self, state, event):
        sm = StateMachine()
        result = sm.transition(state, event, "r1")
        assert not result.success
        assert result.new_state == state
        assert result.log_entry is None
        assert result.error
        assert len(sm.cache) == 0

    def test_uses_supplied_cache(self):
        cache = IdempotencyCache(max_runs=5)
        first = StateMachine(cache)
        second = StateMachine(cache)
        assert first.cache is cache
        first.transition(RunState.CREATED, StateEvent.START_PARSING, "r1")
        assert second.transition(RunState.CREATED, StateEvent.START_PARSING, "r1").is_no_op

    def test_terminal_state_rejects_everything(self):
        sm = StateMachine()
        for event in StateEvent:
            result = sm.transition(RunState.COMPLETED, event, "r1")
            assert not result.success
            assert "terminal" in result.error

    def test_failed_transition_not_cached(self):
        sm = StateMachine()
        sm.transition(RunState.CREATED, StateEvent.CONFIRMED, "r1")
        assert sm.processed_key_count == 0

    def test_clear_keys_allows_replay(self):
        sm = StateMachine()
        sm.transition(RunState.CREATED, StateEvent.START_PARSING, "r1")
        sm.clear_keys_for_run("r1")
        assert not sm.transition(RunState.CREATED, StateEvent.START_PARSING, "r1").is_no_op

    def test_clear_all(self):
        sm = StateMachine()
        sm.transition(RunState.CREATED, StateEvent.START_PARSING, "r1")
        sm.transition(RunState.CREATED, StateEvent.START_PARSING, "r2")
        sm.clear_all_keys()
        assert sm.processed_key_count == 0
