"""Run lifecycle: applies state machine results to stored runs.

Every state change goes through here so that the decision log, reason code
and completion timestamp stay consistent with the run's state.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime, timedelta
from typing import Any, Optional

from src.core.config import TimeoutConfig
from src.core.exceptions import InvalidTransitionError, RunNotFoundError
from src.core.models import (
    ApprovalDecision,
    ConfirmationDecision,
    DecisionLogEntry,
    ReasonCode,
    Run,
    RunState,
    StateEvent,
)
from src.db.repository import RunRepository
from src.orchestrator.state_machine import (
    StateMachine,
    get_error_reason_code,
    get_timeout_reason_code,
    is_terminal_state,
)

logger = logging.getLogger("conductor.orchestrator.lifecycle")


class RunLifecycle:
    """Owns run creation and every persisted state change."""

    def __init__(
        self,
        repository: RunRepository,
        state_machine: Optional[StateMachine] = None,
        timeouts: Optional[TimeoutConfig] = None,
    ):
        self.repository = repository
        self.state_machine = state_machine or StateMachine()
        self.timeouts = timeouts or TimeoutConfig()
        # Serializes read-modify-write of a run between the caller thread and
        # background pipeline threads.
        self._lock = threading.RLock()

    def create_run(
        self,
        project_id: str,
        prd_path: str,
        tested_routes: Optional[list[str]] = None,
        **fields: Any,
    ) -> Run:
        run = Run(
            project_id=project_id,
            prd_path=prd_path,
            tested_routes=list(tested_routes or []),
            **fields,
        )
        created = self.repository.create(run)
        logger.info("Created run %s for project %s", created.id, project_id)
        return created

    def get_run(self, run_id: str) -> Run:
        run = self.repository.find_by_id(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    # -------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------

    def transition(
        self,
        run_id: str,
        event: StateEvent,
        *,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        shard_id: Optional[str] = None,
        error_type: Optional[str] = None,
        reason_code: Optional[ReasonCode] = None,
        action: Optional[str] = None,
    ) -> Run:
        """Apply an event to a stored run.

        Returns the unchanged run when the transition was already processed.
        Raises InvalidTransitionError when the state machine refuses it.
        """
        with self._lock:
            run = self.get_run(run_id)
            result = self.state_machine.transition(
                run.state, event, run_id, shard_id=shard_id, reason=reason, metadata=metadata,
            )
            if not result.success:
                raise InvalidTransitionError(run.state.value, event.value, result.error)
            if result.is_no_op or result.log_entry is None:
                return run

            entry = result.log_entry
            if action:
                entry.action = action
            fields: dict[str, Any] = {
                "state": result.new_state,
                "decision_log": [*run.decision_log, entry],
            }
            if result.new_state == RunState.FAILED:
                if event == StateEvent.TIMEOUT:
                    fields["reason_code"] = get_timeout_reason_code(run.state)
                else:
                    fields["reason_code"] = reason_code or get_error_reason_code(error_type)
            if is_terminal_state(result.new_state):
                fields["completed_at"] = datetime.now(UTC)
            updated = self.repository.update(run_id, **fields)

        if is_terminal_state(result.new_state) or event == StateEvent.RETEST:
            self.state_machine.clear_keys_for_run(run_id)
        return updated

    def handle_approval(self, run_id: str, decision: ApprovalDecision) -> Run:
        event = StateEvent.APPROVED if decision.approved else StateEvent.REJECTED
        return self.transition(
            run_id,
            event,
            reason=decision.comments,
            metadata={"reviewer_id": decision.reviewer_id},
        )

    def handle_confirmation(self, run_id: str, decision: ConfirmationDecision) -> Run:
        if decision.confirmed:
            event = StateEvent.CONFIRMED
        elif decision.retest:
            event = StateEvent.RETEST
        else:
            raise ValueError("Confirmation decision must either confirm or request a retest")
        return self.transition(
            run_id,
            event,
            reason=decision.comments,
            metadata={"reviewer_id": decision.reviewer_id, "forced": decision.force},
        )

    # -------------------------------------------------------------------
    # Timeout watchdogs
    # -------------------------------------------------------------------

    def check_approval_timeout(self, run_id: str, now: Optional[datetime] = None) -> bool:
        return self._check_timeout(
            run_id, RunState.AWAITING_APPROVAL, self.timeouts.approval_hours, now,
        )

    def check_confirmation_timeout(self, run_id: str, now: Optional[datetime] = None) -> bool:
        return self._check_timeout(
            run_id, RunState.REPORT_READY, self.timeouts.confirmation_hours, now,
        )

    def _check_timeout(
        self,
        run_id: str,
        waiting_state: RunState,
        hours: float,
        now: Optional[datetime],
    ) -> bool:
        run = self.get_run(run_id)
        if run.state != waiting_state:
            return False
        now = now or datetime.now(UTC)
        entered_at = _entered_state_at(run, waiting_state)
        if now - entered_at < timedelta(hours=hours):
            return False
        logger.warning(
            "Run %s waited %.1fh in %s; timing out", run_id,
            (now - entered_at).total_seconds() / 3600, waiting_state.value,
        )
        self.transition(
            run_id,
            StateEvent.TIMEOUT,
            reason=f"No decision within {hours:g} hours",
        )
        return True

    # -------------------------------------------------------------------
    # Audit and administrative changes
    # -------------------------------------------------------------------

    def append_audit(
        self,
        run_id: str,
        action: str,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Run:
        """Record a pipeline action without changing state."""
        with self._lock:
            run = self.get_run(run_id)
            entry = DecisionLogEntry(
                from_state=run.state,
                to_state=run.state,
                action=action,
                reason=reason,
                metadata=dict(metadata or {}),
            )
            return self.repository.update(run_id, decision_log=[*run.decision_log, entry])

    def force_state(
        self,
        run_id: str,
        state: RunState,
        *,
        action: str,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Run:
        """Write a state directly, bypassing the transition table.

        Used when resuming; the write is still recorded in the decision log.
        """
        with self._lock:
            run = self.get_run(run_id)
            entry = DecisionLogEntry(
                from_state=run.state,
                to_state=state,
                action=action,
                reason=reason,
                metadata=dict(metadata or {}),
            )
            updated = self.repository.update(
                run_id,
                state=state,
                reason_code=None,
                completed_at=None,
                decision_log=[*run.decision_log, entry],
            )
        self.state_machine.clear_keys_for_run(run_id)
        logger.info("Run %s: state set %s -> %s (%s)", run_id, run.state.value, state.value, action)
        return updated

    def cancel(self, run_id: str, reason: Optional[str] = None) -> Run:
        """Mark a non-terminal run failed. Background work is not interrupted."""
        run = self.get_run(run_id)
        if run.is_terminal:
            raise InvalidTransitionError(
                run.state.value,
                StateEvent.ERROR.value,
                f"Cannot cancel run {run_id} in terminal state '{run.state.value}'",
            )
        return self.transition(
            run_id,
            StateEvent.ERROR,
            reason=reason or "Cancelled by user",
            shard_id="cancel",
            reason_code=ReasonCode.INTERNAL_ERROR,
            action="cancelled",
        )


def _entered_state_at(run: Run, state: RunState) -> datetime:
    for entry in reversed(run.decision_log):
        if entry.to_state == state and entry.from_state != state:
            return entry.timestamp
    return run.updated_at
