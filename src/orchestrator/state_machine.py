"""Run state machine with idempotent transitions.

Validates transitions against a fixed table, builds decision log entries and
absorbs re-delivered events through a bounded idempotency cache keyed by
(run_id, from_state, to_state, event, shard_id).
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Optional

from src.core.models import (
    TERMINAL_STATES,
    DecisionLogEntry,
    ReasonCode,
    RunState,
    StateEvent,
)

logger = logging.getLogger("conductor.orchestrator.state_machine")


TRANSITIONS: dict[RunState, dict[StateEvent, RunState]] = {
    RunState.CREATED: {
        StateEvent.START_PARSING: RunState.PARSING,
        StateEvent.ERROR: RunState.FAILED,
    },
    RunState.PARSING: {
        StateEvent.PARSING_COMPLETE: RunState.GENERATING,
        StateEvent.ERROR: RunState.FAILED,
    },
    RunState.GENERATING: {
        StateEvent.GENERATION_COMPLETE: RunState.AWAITING_APPROVAL,
        StateEvent.ERROR: RunState.FAILED,
    },
    RunState.AWAITING_APPROVAL: {
        StateEvent.APPROVED: RunState.EXECUTING,
        StateEvent.REJECTED: RunState.GENERATING,
        StateEvent.TIMEOUT: RunState.FAILED,
        StateEvent.ERROR: RunState.FAILED,
    },
    RunState.EXECUTING: {
        StateEvent.EXECUTION_COMPLETE: RunState.CODEX_REVIEWING,
        StateEvent.ERROR: RunState.FAILED,
    },
    RunState.CODEX_REVIEWING: {
        StateEvent.REVIEW_COMPLETE: RunState.REPORT_READY,
        StateEvent.ERROR: RunState.FAILED,
    },
    RunState.REPORT_READY: {
        StateEvent.CONFIRMED: RunState.COMPLETED,
        StateEvent.RETEST: RunState.CREATED,
        StateEvent.TIMEOUT: RunState.FAILED,
        StateEvent.ERROR: RunState.FAILED,
    },
    RunState.COMPLETED: {},
    RunState.FAILED: {},
}

_ERROR_TYPE_REASONS: dict[str, ReasonCode] = {
    "playwright": ReasonCode.PLAYWRIGHT_ERROR,
    "playwright_error": ReasonCode.PLAYWRIGHT_ERROR,
    "verdict_conflict": ReasonCode.VERDICT_CONFLICT,
    "retry_exhausted": ReasonCode.RETRY_EXHAUSTED,
    "agent_timeout": ReasonCode.AGENT_TIMEOUT,
}


def is_terminal_state(state: RunState) -> bool:
    return state in TERMINAL_STATES


def get_target_state(from_state: RunState, event: StateEvent) -> Optional[RunState]:
    """Target state for (from_state, event), or None when not allowed."""
    return TRANSITIONS.get(from_state, {}).get(event)


def is_valid_transition(from_state: RunState, event: StateEvent) -> bool:
    return get_target_state(from_state, event) is not None


def get_valid_events_for_state(state: RunState) -> list[StateEvent]:
    return list(TRANSITIONS.get(state, {}).keys())


def create_idempotency_key(
    run_id: str,
    from_state: RunState,
    to_state: RunState,
    event: StateEvent,
    shard_id: Optional[str] = None,
) -> str:
    parts = [run_id, from_state.value, to_state.value, event.value]
    if shard_id:
        parts.append(shard_id)
    return ":".join(parts)


def get_timeout_reason_code(from_state: RunState) -> ReasonCode:
    if from_state == RunState.AWAITING_APPROVAL:
        return ReasonCode.APPROVAL_TIMEOUT
    if from_state == RunState.REPORT_READY:
        return ReasonCode.CONFIRM_TIMEOUT
    return ReasonCode.AGENT_TIMEOUT


def get_error_reason_code(error_type: Optional[str]) -> ReasonCode:
    """Classify a free-form error tag into a reason code."""
    if not error_type:
        return ReasonCode.INTERNAL_ERROR
    return _ERROR_TYPE_REASONS.get(error_type.strip().lower(), ReasonCode.INTERNAL_ERROR)


# ---------------------------------------------------------------------------
# Idempotency cache
# ---------------------------------------------------------------------------

class IdempotencyCache:
    """Processed transition keys grouped by run id.

    Runs are evicted whole, least recently touched first, once more than
    ``max_runs`` runs hold keys.
    """

    def __init__(self, max_runs: int = 1024):
        if max_runs < 1:
            raise ValueError("max_runs must be >= 1")
        self.max_runs = max_runs
        self._runs: OrderedDict[str, set[str]] = OrderedDict()
        self._lock = threading.Lock()

    def contains(self, run_id: str, key: str) -> bool:
        with self._lock:
            keys = self._runs.get(run_id)
            return keys is not None and key in keys

    def add(self, run_id: str, key: str) -> None:
        with self._lock:
            keys = self._runs.get(run_id)
            if keys is None:
                keys = set()
                self._runs[run_id] = keys
            else:
                self._runs.move_to_end(run_id)
            keys.add(key)
            while len(self._runs) > self.max_runs:
                evicted, _ = self._runs.popitem(last=False)
                logger.debug("Evicted idempotency keys for run %s", evicted)

    def clear_run(self, run_id: str) -> int:
        with self._lock:
            keys = self._runs.pop(run_id, None)
            return len(keys) if keys else 0

    def clear(self) -> None:
        with self._lock:
            self._runs.clear()

    def __len__(self) -> int:
        with self._lock:
            return sum(len(keys) for keys in self._runs.values())

    @property
    def run_count(self) -> int:
        with self._lock:
            return len(self._runs)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

@dataclass
class TransitionResult:
    success: bool
    new_state: RunState
    is_no_op: bool = False
    log_entry: Optional[DecisionLogEntry] = None
    error: Optional[str] = None


class StateMachine:
    """Applies events to run states. Holds no run data besides processed keys."""

    def __init__(self, cache: Optional[IdempotencyCache] = None):
        self.cache = cache if cache is not None else IdempotencyCache()

    def transition(
        self,
        current_state: RunState,
        event: StateEvent,
        run_id: str,
        shard_id: Optional[str] = None,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> TransitionResult:
        if is_terminal_state(current_state):
            return TransitionResult(
                success=False,
                new_state=current_state,
                error=f"Cannot transition from terminal state '{current_state.value}'",
            )

        target = get_target_state(current_state, event)
        if target is None:
            return TransitionResult(
                success=False,
                new_state=current_state,
                error=(
                    f"Invalid transition: event '{event.value}' is not allowed "
                    f"in state '{current_state.value}'"
                ),
            )

        key = create_idempotency_key(run_id, current_state, target, event, shard_id)
        if self.cache.contains(run_id, key):
            logger.debug("Duplicate transition ignored: %s", key)
            return TransitionResult(success=True, new_state=target, is_no_op=True)

        self.cache.add(run_id, key)
        entry = DecisionLogEntry(
            from_state=current_state,
            to_state=target,
            event=event,
            reason=reason,
            metadata=dict(metadata or {}),
        )
        logger.info(
            "Run %s: %s --%s--> %s", run_id, current_state.value, event.value, target.value,
        )
        return TransitionResult(success=True, new_state=target, log_entry=entry)

    def would_be_no_op(
        self,
        current_state: RunState,
        event: StateEvent,
        run_id: str,
        shard_id: Optional[str] = None,
    ) -> bool:
        target = get_target_state(current_state, event)
        if target is None:
            return False
        key = create_idempotency_key(run_id, current_state, target, event, shard_id)
        return self.cache.contains(run_id, key)

    def clear_keys_for_run(self, run_id: str) -> None:
        removed = self.cache.clear_run(run_id)
        if removed:
            logger.debug("Cleared %d idempotency keys for run %s", removed, run_id)

    def clear_all_keys(self) -> None:
        self.cache.clear()

    @property
    def processed_key_count(self) -> int:
        return len(self.cache)
