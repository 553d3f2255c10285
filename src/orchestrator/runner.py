"""Pipeline runner for the PRD Test Conductor.

Drives the ordered step sequence for a run on a background thread:

    initialize -> source_indexing -> prd_parsing -> [approval]
    -> test_execution -> codex_review -> cross_validation
    -> report_generation -> quality_gate -> [confirmation]

The thread exits at each human checkpoint; the matching API call
(continue_after_approval, regenerate_test_cases, confirm_run) picks the run
up again. Every state change goes through RunLifecycle, every step boundary
is published on the EventChannel.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from src.agents.base_agent import BaseAgent
from src.agents.collaborators import ExecutionRequest, ParseRequest, ReviewRequest
from src.core.config import AppConfig
from src.core.exceptions import (
    InvalidTransitionError,
    MissingPrerequisitesError,
    PipelineAlreadyRunningError,
    QualityGateBlockedError,
    RegenerationLimitError,
    ResumeNotAllowedError,
    StepFailedError,
    WorkspaceError,
)
from src.core.models import (
    ApprovalDecision,
    CaseExecution,
    ConfirmationDecision,
    FeedbackType,
    PipelineStep,
    ReasonCode,
    RegenerationFeedback,
    Requirement,
    Run,
    RunHistory,
    RunState,
    StateEvent,
    TargetProfile,
    TestCase,
)
from src.db.repository import RunRepository
from src.orchestrator.arbitration import CrossValidationArbiter
from src.orchestrator.events import EventChannel, PipelineEventType
from src.orchestrator.lifecycle import RunLifecycle
from src.orchestrator.prerequisites import (
    STEP_ORDER,
    PrerequisiteValidator,
    ResumableStepInfo,
    is_resumable_step,
    steps_before,
)
from src.orchestrator.registry import RunRegistry
from src.orchestrator.step_metrics import StepMetrics
from src.quality.gate import check_p0_coverage, evaluate_traced_gate, format_gate_result
from src.workspace import artifacts
from src.workspace.manager import (
    WorkspaceStructure,
    calculate_checksums,
    create_workspace,
    get_workspace_structure,
)
from src.workspace.manifest import (
    add_degradation_decision,
    create_manifest,
    load_manifest,
    save_manifest,
    update_artifact_checksums,
    update_manifest_status,
    update_quality_metrics,
)

logger = logging.getLogger("conductor.orchestrator.runner")

STEP_TO_STATE: dict[PipelineStep, RunState] = {
    PipelineStep.INITIALIZE: RunState.CREATED,
    PipelineStep.SOURCE_INDEXING: RunState.PARSING,
    PipelineStep.PRD_PARSING: RunState.PARSING,
    PipelineStep.TEST_EXECUTION: RunState.EXECUTING,
    PipelineStep.CODEX_REVIEW: RunState.CODEX_REVIEWING,
    PipelineStep.CROSS_VALIDATION: RunState.CODEX_REVIEWING,
    # REVIEW_COMPLETE after quality_gate moves the run to report_ready.
    PipelineStep.REPORT_GENERATION: RunState.CODEX_REVIEWING,
    PipelineStep.QUALITY_GATE: RunState.CODEX_REVIEWING,
}

STEP_FAILURE_REASONS: dict[PipelineStep, ReasonCode] = {
    PipelineStep.TEST_EXECUTION: ReasonCode.PLAYWRIGHT_ERROR,
    PipelineStep.CROSS_VALIDATION: ReasonCode.VERDICT_CONFLICT,
}

_PROMPT_FILES: dict[PipelineStep, str] = {
    PipelineStep.PRD_PARSING: "prd-parse.md",
    PipelineStep.TEST_EXECUTION: "ui-test-execute.md",
    PipelineStep.CODEX_REVIEW: "review-results.md",
}

# Runs that were crash-interrupted mid-step may be restarted without a
# tracked instance.
_ACTIVE_STATES = frozenset({RunState.EXECUTING, RunState.CODEX_REVIEWING})

REGENERATION_ACTION = "regeneration_requested"
RESUME_ACTION = "pipeline_resumed"


@dataclass
class _RunContext:
    run_id: str
    project_id: str
    prd_path: str
    tested_routes: list[str]
    target_profile: Optional[TargetProfile]
    workspace: WorkspaceStructure
    feedback: Optional[RegenerationFeedback] = None


class PipelineRunner:
    """Sequences pipeline steps per run on independent daemon threads."""

    def __init__(
        self,
        repository: RunRepository,
        lifecycle: RunLifecycle,
        parser: BaseAgent,
        executor: BaseAgent,
        reviewer: BaseAgent,
        config: Optional[AppConfig] = None,
        registry: Optional[RunRegistry] = None,
        events: Optional[EventChannel] = None,
        validator: Optional[PrerequisiteValidator] = None,
        arbiter: Optional[CrossValidationArbiter] = None,
        step_metrics: Optional[StepMetrics] = None,
        cwd: Optional[Path] = None,
    ):
        self.repository = repository
        self.lifecycle = lifecycle
        self.parser = parser
        self.executor = executor
        self.reviewer = reviewer
        self.config = config or AppConfig()
        self.registry = registry or RunRegistry()
        self.events = events or EventChannel(self.config.pipeline.event_queue_size)
        self.workspace_root = Path(self.config.workspace.root)
        self.prompts_dir = Path(self.config.workspace.prompts_dir)
        self.validator = validator or PrerequisiteValidator(self.workspace_root)
        self.arbiter = arbiter or CrossValidationArbiter()
        self.step_metrics = step_metrics or StepMetrics()
        self.cwd = Path(cwd) if cwd else Path(os.getcwd())
        self._threads: dict[str, threading.Thread] = {}
        self._threads_lock = threading.Lock()
        self._handlers: dict[PipelineStep, Callable[[_RunContext], dict[str, Any]]] = {
            PipelineStep.INITIALIZE: self._initialize,
            PipelineStep.SOURCE_INDEXING: self._source_indexing,
            PipelineStep.PRD_PARSING: self._prd_parsing,
            PipelineStep.TEST_EXECUTION: self._test_execution,
            PipelineStep.CODEX_REVIEW: self._codex_review,
            PipelineStep.CROSS_VALIDATION: self._cross_validation,
            PipelineStep.REPORT_GENERATION: self._report_generation,
            PipelineStep.QUALITY_GATE: self._quality_gate,
        }

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------

    def start_pipeline(self, run_id: str) -> threading.Thread:
        """Start a run from the first step. Returns once the thread is running."""
        run = self.lifecycle.get_run(run_id)
        if self.registry.is_running(run_id):
            raise PipelineAlreadyRunningError(run_id, run.state.value)
        if run.state != RunState.CREATED:
            raise InvalidTransitionError(
                run.state.value,
                StateEvent.START_PARSING.value,
                f"Run {run_id} cannot start from state '{run.state.value}'; use resume",
            )
        self.registry.start(run_id, run.state.value)
        return self._launch(run_id, list(STEP_ORDER))

    def resume_pipeline(self, run_id: str, from_step: PipelineStep) -> threading.Thread:
        """Re-enter a run at ``from_step`` using artifacts already in its workspace."""
        run = self.lifecycle.get_run(run_id)
        if self.registry.is_running(run_id):
            raise PipelineAlreadyRunningError(run_id, run.state.value)
        if not is_resumable_step(from_step):
            raise ResumeNotAllowedError(
                f"Step '{from_step.value}' is not resumable; start a new run instead"
            )

        valid, missing = self.validator.validate_step(run_id, from_step)
        if not valid:
            raise MissingPrerequisitesError(from_step.value, missing)

        if run.state in _ACTIVE_STATES:
            logger.warning(
                "Run %s is '%s' with no tracked pipeline; restarting from %s",
                run_id, run.state.value, from_step.value,
            )

        self.registry.start(run_id, run.state.value)
        try:
            skipped = steps_before(from_step)
            for step in skipped:
                self.events.publish(
                    PipelineEventType.STEP_SKIPPED, run_id,
                    {"step": step.value, "reason": "resumed"},
                )
            target = STEP_TO_STATE[from_step]
            self.lifecycle.force_state(
                run_id,
                target,
                action=RESUME_ACTION,
                reason=f"Resumed from step {from_step.value}",
                metadata={
                    "from_step": from_step.value,
                    "previous_state": run.state.value,
                    "skipped_steps": [s.value for s in skipped],
                },
            )
            self.events.publish(
                PipelineEventType.PIPELINE_RESUMED, run_id,
                {"from_step": from_step.value, "state": target.value},
            )
            self._sync_manifest(run_id)
            steps = STEP_ORDER[STEP_ORDER.index(from_step):]
            return self._launch(run_id, steps)
        except BaseException:
            self.registry.stop(run_id)
            raise

    def continue_after_approval(
        self,
        run_id: str,
        reviewer_id: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> threading.Thread:
        """Apply approval (if pending) and run from test_execution onwards."""
        run = self.lifecycle.get_run(run_id)
        if run.state not in (RunState.AWAITING_APPROVAL, RunState.EXECUTING):
            raise InvalidTransitionError(
                run.state.value,
                StateEvent.APPROVED.value,
                f"Run {run_id} is not awaiting approval (state: {run.state.value})",
            )

        valid, missing = self.validator.validate_step(run_id, PipelineStep.TEST_EXECUTION)
        if not valid:
            raise MissingPrerequisitesError(PipelineStep.TEST_EXECUTION.value, missing)

        self.registry.start(run_id, run.state.value)
        try:
            if run.state == RunState.AWAITING_APPROVAL:
                self._apply(
                    run_id,
                    StateEvent.APPROVED,
                    reason=comments,
                    metadata={"reviewer_id": reviewer_id} if reviewer_id else None,
                )
            steps = STEP_ORDER[STEP_ORDER.index(PipelineStep.TEST_EXECUTION):]
            return self._launch(run_id, steps)
        except BaseException:
            self.registry.stop(run_id)
            raise

    def submit_approval(
        self,
        run_id: str,
        decision: ApprovalDecision,
        feedback_type: FeedbackType = FeedbackType.OTHER,
    ) -> threading.Thread:
        """Route a reviewer decision: approve continues, reject regenerates."""
        if decision.approved:
            return self.continue_after_approval(run_id, decision.reviewer_id, decision.comments)
        return self.regenerate_test_cases(
            run_id,
            feedback_type,
            decision.comments or "Test cases rejected by reviewer",
            decision.reviewer_id,
        )

    def regenerate_test_cases(
        self,
        run_id: str,
        feedback_type: FeedbackType,
        feedback_detail: str,
        reviewer_id: str,
    ) -> threading.Thread:
        """Send the test cases back to the parser with reviewer feedback."""
        if not feedback_detail or not feedback_detail.strip():
            raise ValueError("Feedback detail is required for regeneration")

        run = self.lifecycle.get_run(run_id)
        if run.state != RunState.AWAITING_APPROVAL:
            raise InvalidTransitionError(
                run.state.value,
                StateEvent.REJECTED.value,
                f"Test cases can only be regenerated while awaiting approval (state: {run.state.value})",
            )

        max_attempts = self.config.pipeline.max_regeneration_attempts
        attempts = run.count_actions(REGENERATION_ACTION)
        if attempts >= max_attempts:
            raise RegenerationLimitError(run_id, attempts, max_attempts)

        self.registry.start(run_id, run.state.value)
        try:
            attempt = attempts + 1
            root = self._workspace(run_id).root
            feedback = RegenerationFeedback(
                feedback_type=feedback_type,
                feedback_detail=feedback_detail,
                reviewer_id=reviewer_id,
                prior_requirements=_load_or_empty(artifacts.load_requirements, root),
                prior_test_cases=_load_or_empty(artifacts.load_test_cases, root),
                attempt=attempt,
            )
            self.lifecycle.append_audit(
                run_id,
                REGENERATION_ACTION,
                reason=feedback_detail,
                metadata={
                    "feedback_type": feedback_type.value,
                    "reviewer_id": reviewer_id,
                    "attempt": attempt,
                },
            )
            self._apply(
                run_id,
                StateEvent.REJECTED,
                shard_id=_regeneration_shard(attempt),
                reason=feedback_detail,
                metadata={"reviewer_id": reviewer_id, "feedback_type": feedback_type.value},
            )
            return self._launch(run_id, [PipelineStep.PRD_PARSING], feedback=feedback)
        except BaseException:
            self.registry.stop(run_id)
            raise

    def confirm_run(self, run_id: str, decision: ConfirmationDecision) -> Run:
        """Confirm the report (completes the run) or request a retest."""
        run = self.lifecycle.get_run(run_id)
        if (
            decision.confirmed
            and not decision.force
            and self.config.quality_gate.require_gate_for_confirmation
        ):
            gate = run.quality_metrics or {}
            if gate.get("blocked"):
                raise QualityGateBlockedError(run_id, list(gate.get("warnings") or []))

        updated = self.lifecycle.handle_confirmation(run_id, decision)
        self.events.publish(
            PipelineEventType.STATE_CHANGED, run_id,
            {"from": run.state.value, "to": updated.state.value},
        )
        self._sync_manifest(run_id)
        return updated

    def cancel_run(self, run_id: str, reason: Optional[str] = None) -> Run:
        """Mark the run failed. A running thread finishes its step and discards it."""
        previous = self.lifecycle.get_run(run_id).state
        updated = self.lifecycle.cancel(run_id, reason)
        logger.info("Run %s cancelled (was %s)", run_id, previous.value)
        self.events.publish(
            PipelineEventType.STATE_CHANGED, run_id,
            {"from": previous.value, "to": updated.state.value, "reason": "cancelled"},
        )
        self._sync_manifest(run_id)
        return updated

    def get_resumable_steps(self, run_id: str) -> list[ResumableStepInfo]:
        self.lifecycle.get_run(run_id)
        return self.validator.get_resumable_steps(run_id)

    def is_running(self, run_id: str) -> bool:
        return self.registry.is_running(run_id)

    @property
    def running_count(self) -> int:
        return self.registry.running_count

    @property
    def tracked_thread_count(self) -> int:
        with self._threads_lock:
            return len(self._threads)

    def wait(self, run_id: str, timeout: Optional[float] = None) -> bool:
        """Join the run's current thread. True when no thread is left running."""
        with self._threads_lock:
            thread = self._threads.get(run_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def resolve_prd_path(self, prd_path: str, project_id: str) -> str:
        """Locate a PRD file; returns the input unchanged when nothing matches."""
        path = Path(prd_path)
        if path.is_absolute() or prd_path.startswith("docs/"):
            return prd_path

        roots = [Path(r) for r in self.config.pipeline.prd_search_roots] or [self.cwd]
        candidates = [self.cwd / path]
        for root in roots:
            candidates.append(root / "docs" / "prd" / path)
            candidates.append(root / "docs" / path)
        candidates.append(self.workspace_root / "uploads" / project_id / path)
        candidates.append(self.cwd / self.config.pipeline.upload_dir / project_id / path)

        for candidate in candidates:
            if candidate.is_file():
                logger.debug("Found PRD at %s", candidate)
                return str(candidate)

        logger.warning(
            "PRD file not found in any location: %s (searched %s)",
            prd_path, ", ".join(str(c) for c in candidates),
        )
        return prd_path

    # -------------------------------------------------------------------
    # Thread body
    # -------------------------------------------------------------------

    def _launch(
        self,
        run_id: str,
        steps: list[PipelineStep],
        feedback: Optional[RegenerationFeedback] = None,
    ) -> threading.Thread:
        """Start the worker thread. The caller must already hold the registry claim."""
        thread = threading.Thread(
            target=self._execute,
            args=(run_id, steps, feedback),
            name=f"pipeline-{run_id[:8]}",
            daemon=True,
        )
        with self._threads_lock:
            self._threads[run_id] = thread
        try:
            thread.start()
        except RuntimeError:
            self._forget_thread(run_id, thread)
            self.registry.stop(run_id)
            raise
        return thread

    def _forget_thread(self, run_id: str, thread: threading.Thread) -> None:
        with self._threads_lock:
            if self._threads.get(run_id) is thread:
                del self._threads[run_id]

    def _execute(
        self,
        run_id: str,
        steps: list[PipelineStep],
        feedback: Optional[RegenerationFeedback],
    ) -> None:
        outcome = "failed"
        current: Optional[PipelineStep] = None
        checkpoint: Optional[tuple[PipelineEventType, dict[str, Any]]] = None
        self.step_metrics.start_attempt(run_id, steps[0])
        try:
            ctx = self._build_context(run_id, feedback)
            for step in steps:
                current = step
                if self.lifecycle.get_run(run_id).is_terminal:
                    logger.info("Run %s is terminal; stopping before %s", run_id, step.value)
                    outcome = "discarded"
                    return
                status = self._run_step(ctx, step)
                if status != "success":
                    outcome = status
                    return
                checkpoint = self._after_step(ctx, step)
                if checkpoint is not None:
                    outcome = "suspended"
                    return
            outcome = "completed"
        except InvalidTransitionError as e:
            if self.lifecycle.get_run(run_id).is_terminal:
                logger.info("Run %s became terminal during %s; result discarded", run_id, current)
                outcome = "discarded"
            else:
                logger.exception("Run %s: transition refused", run_id)
                self._fail_run(run_id, current, str(e), ReasonCode.INTERNAL_ERROR)
        except Exception as e:
            logger.exception("Run %s: pipeline error", run_id)
            self._fail_run(run_id, current, str(e), ReasonCode.INTERNAL_ERROR)
        finally:
            self.step_metrics.complete_attempt(run_id, outcome)
            self.registry.stop(run_id)
            # Checkpoint subscribers may pick the run up again immediately.
            if checkpoint is not None:
                event_type, data = checkpoint
                self.events.publish(event_type, run_id, data)
            self._forget_thread(run_id, threading.current_thread())

    def _run_step(self, ctx: _RunContext, step: PipelineStep) -> str:
        run_id = ctx.run_id
        self.events.publish(PipelineEventType.STEP_STARTED, run_id, {"step": step.value})
        metric = self.step_metrics.start_step(run_id, step)
        default_reason = STEP_FAILURE_REASONS.get(step, ReasonCode.INTERNAL_ERROR)

        try:
            step_artifacts = self._handlers[step](ctx) or {}
        except StepFailedError as e:
            reason = ReasonCode(e.reason_code) if e.reason_code else default_reason
            return self._step_failed(ctx, step, metric, str(e), reason)
        except TimeoutError as e:
            logger.exception("Run %s: step %s timed out", run_id, step.value)
            return self._step_failed(ctx, step, metric, str(e) or "timed out", ReasonCode.AGENT_TIMEOUT)
        except Exception as e:
            logger.exception("Run %s: step %s failed", run_id, step.value)
            return self._step_failed(ctx, step, metric, str(e) or type(e).__name__, default_reason)

        self.step_metrics.complete_step(metric, "success")
        if self.lifecycle.get_run(run_id).is_terminal:
            logger.info("Run %s became terminal during %s; result discarded", run_id, step.value)
            return "discarded"
        self.events.publish(
            PipelineEventType.STEP_COMPLETED, run_id,
            {"step": step.value, "duration": metric.duration_seconds, "artifacts": step_artifacts},
        )
        return "success"

    def _step_failed(
        self,
        ctx: _RunContext,
        step: PipelineStep,
        metric: Any,
        error: str,
        reason: ReasonCode,
    ) -> str:
        self.step_metrics.complete_step(metric, "failure", error=error)
        self.events.publish(
            PipelineEventType.STEP_FAILED, ctx.run_id,
            {"step": step.value, "error": error, "reason_code": reason.value},
        )
        self._fail_run(ctx.run_id, step, error, reason)
        return "failed"

    def _after_step(
        self,
        ctx: _RunContext,
        step: PipelineStep,
    ) -> Optional[tuple[PipelineEventType, dict[str, Any]]]:
        """Apply the step's state events.

        Returns the checkpoint event to publish when the thread should suspend;
        it is published only after the run's registry claim is released.
        """
        run_id = ctx.run_id
        if step == PipelineStep.INITIALIZE:
            self._apply(run_id, StateEvent.START_PARSING)
        elif step == PipelineStep.PRD_PARSING:
            if ctx.feedback is not None:
                self._apply(
                    run_id,
                    StateEvent.GENERATION_COMPLETE,
                    shard_id=_regeneration_shard(ctx.feedback.attempt),
                )
            else:
                self._apply(run_id, StateEvent.PARSING_COMPLETE)
                self._apply(run_id, StateEvent.GENERATION_COMPLETE)
            return (
                PipelineEventType.APPROVAL_REQUIRED,
                {"test_cases_path": str(ctx.workspace.root / artifacts.TEST_CASES_FILE)},
            )
        elif step == PipelineStep.TEST_EXECUTION:
            self._apply(run_id, StateEvent.EXECUTION_COMPLETE)
        elif step == PipelineStep.QUALITY_GATE:
            self._apply(run_id, StateEvent.REVIEW_COMPLETE)
            run = self.lifecycle.get_run(run_id)
            return (
                PipelineEventType.CONFIRMATION_REQUIRED,
                {"report_path": run.report_path, "quality_metrics": run.quality_metrics},
            )
        return None

    def _apply(
        self,
        run_id: str,
        event: StateEvent,
        *,
        shard_id: Optional[str] = None,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Run:
        before = self.lifecycle.get_run(run_id).state
        run = self.lifecycle.transition(
            run_id, event, shard_id=shard_id, reason=reason, metadata=metadata,
        )
        if run.state != before:
            self.events.publish(
                PipelineEventType.STATE_CHANGED, run_id,
                {"from": before.value, "to": run.state.value, "event": event.value},
            )
            self._sync_manifest(run_id)
        return run

    def _fail_run(
        self,
        run_id: str,
        step: Optional[PipelineStep],
        error: str,
        reason_code: ReasonCode,
    ) -> None:
        label = step.value if step else "pipeline"
        try:
            before = self.lifecycle.get_run(run_id).state
            run = self.lifecycle.transition(
                run_id,
                StateEvent.ERROR,
                reason=f"{label}: {error}",
                metadata={"step": label},
                reason_code=reason_code,
            )
        except InvalidTransitionError as e:
            logger.warning("Run %s could not be marked failed: %s", run_id, e)
            return
        logger.error("Run %s failed at %s (%s): %s", run_id, label, reason_code.value, error)
        self.events.publish(
            PipelineEventType.STATE_CHANGED, run_id,
            {"from": before.value, "to": run.state.value, "event": StateEvent.ERROR.value},
        )
        self._sync_manifest(run_id)

    # -------------------------------------------------------------------
    # Context and helpers
    # -------------------------------------------------------------------

    def _workspace(self, run_id: str) -> WorkspaceStructure:
        return get_workspace_structure(self.workspace_root, run_id)

    def _build_context(
        self,
        run_id: str,
        feedback: Optional[RegenerationFeedback],
    ) -> _RunContext:
        run = self.lifecycle.get_run(run_id)
        return _RunContext(
            run_id=run_id,
            project_id=run.project_id,
            prd_path=self.resolve_prd_path(run.prd_path, run.project_id),
            tested_routes=list(run.tested_routes),
            target_profile=self.repository.find_target_profile(run.project_id),
            workspace=self._workspace(run_id),
            feedback=feedback,
        )

    def _load_prompt(self, step: PipelineStep) -> str:
        name = _PROMPT_FILES.get(step)
        if not name:
            return ""
        path = self.prompts_dir / name
        if path.is_file():
            return path.read_text(encoding="utf-8").strip()
        logger.debug("Prompt %s not found; collaborator uses its default", path)
        return ""

    def _invoke(self, agent: BaseAgent, request: Any, step: PipelineStep) -> dict[str, Any]:
        result = agent.run(request)
        if not result.succeeded:
            reason = result.reason_code or STEP_FAILURE_REASONS.get(step, ReasonCode.INTERNAL_ERROR)
            raise StepFailedError(
                step.value,
                f"{agent.name} failed: {result.error or 'unknown error'}",
                reason_code=reason.value,
            )
        return result.data

    def _sync_manifest(self, run_id: str) -> None:
        """Mirror run state and output checksums into the workspace manifest."""
        structure = self._workspace(run_id)
        if not structure.manifest.is_file():
            return
        try:
            run = self.lifecycle.get_run(run_id)
            manifest = load_manifest(structure.manifest)
            manifest = update_manifest_status(manifest, run.state, run.reason_code)
            manifest = manifest.model_copy(update={"decision_log": list(run.decision_log)})
            if run.quality_metrics:
                manifest = update_quality_metrics(manifest, run.quality_metrics)
            outputs = sorted(structure.outputs.glob("*.json")) if structure.outputs.is_dir() else []
            manifest = update_artifact_checksums(manifest, calculate_checksums(outputs))
            save_manifest(structure.manifest, manifest)
        except (WorkspaceError, OSError) as e:
            logger.warning("Manifest sync failed for run %s: %s", run_id, e)

    def _degrade(self, ctx: _RunContext, feature: str, original: str, fallback: str, reason: str) -> None:
        logger.warning("Run %s: %s degraded to %s: %s", ctx.run_id, feature, fallback, reason)
        path = ctx.workspace.manifest
        if not path.is_file():
            return
        manifest = add_degradation_decision(load_manifest(path), feature, original, fallback, reason)
        save_manifest(path, manifest)

    # -------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------

    def _initialize(self, ctx: _RunContext) -> dict[str, Any]:
        step = PipelineStep.INITIALIZE
        if ctx.target_profile is None:
            raise StepFailedError(step.value, f"Target profile not found for project {ctx.project_id}")
        prd = Path(ctx.prd_path)
        if not prd.is_file():
            raise StepFailedError(step.value, f"PRD file not found: {ctx.prd_path}")

        structure = create_workspace(self.workspace_root, ctx.run_id)
        ctx.workspace = structure
        shutil.copyfile(prd, structure.inputs / "prd.md")
        artifacts.write_json(structure.inputs / "target-profile.json", ctx.target_profile)

        run = self.lifecycle.get_run(ctx.run_id)
        manifest = create_manifest(
            ctx.run_id,
            ctx.project_id,
            agent_versions=run.agent_versions,
            prompt_versions=run.prompt_versions,
            env_fingerprint=run.env_fingerprint,
        )
        save_manifest(structure.manifest, manifest)
        (structure.root / "README.md").write_text(_workspace_readme(ctx), encoding="utf-8")
        self.repository.update(ctx.run_id, workspace_path=str(structure.root))
        return {"workspace_path": str(structure.root)}

    def _source_indexing(self, ctx: _RunContext) -> dict[str, Any]:
        source = ctx.target_profile.source_code if ctx.target_profile else None
        base = Path(source.frontend_root) if source and source.frontend_root else self.cwd
        indexed: dict[str, list[str]] = {"routes": [], "pages": []}
        missing: list[str] = []

        if source is not None:
            for kind, files in (("routes", source.route_files), ("pages", source.page_files)):
                target_dir = ctx.workspace.inputs / kind
                for name in files:
                    path = Path(name) if Path(name).is_absolute() else base / name
                    if not path.is_file():
                        missing.append(str(path))
                        continue
                    target_dir.mkdir(parents=True, exist_ok=True)
                    shutil.copyfile(path, target_dir / path.name)
                    indexed[kind].append(f"inputs/{kind}/{path.name}")

        artifacts.write_json(
            ctx.workspace.source_context / "index.json",
            {**indexed, "tested_routes": ctx.tested_routes, "missing": missing},
        )
        if missing:
            self._degrade(
                ctx, "source_indexing", "source_and_prd", "prd_only",
                f"Source files not found: {', '.join(missing)}",
            )
        return {"indexed_files": len(indexed["routes"]) + len(indexed["pages"])}

    def _prd_parsing(self, ctx: _RunContext) -> dict[str, Any]:
        step = PipelineStep.PRD_PARSING
        request = ParseRequest(
            run_id=ctx.run_id,
            workspace_path=str(ctx.workspace.root),
            prd_path=str(ctx.workspace.inputs / "prd.md"),
            target_profile=ctx.target_profile,
            prompt=self._load_prompt(step),
            feedback=ctx.feedback,
        )
        data = self._invoke(self.parser, request, step)
        try:
            requirements = [Requirement.model_validate(r) for r in data.get("requirements", [])]
            test_cases = [TestCase.model_validate(tc) for tc in data.get("test_cases", [])]
        except ValueError as e:
            raise StepFailedError(step.value, f"Invalid parser output: {e}") from e

        artifacts.write_json(ctx.workspace.root / artifacts.REQUIREMENTS_FILE, requirements)
        artifacts.write_json(ctx.workspace.root / artifacts.TEST_CASES_FILE, test_cases)
        return {"requirements": len(requirements), "test_cases": len(test_cases)}

    def _test_execution(self, ctx: _RunContext) -> dict[str, Any]:
        step = PipelineStep.TEST_EXECUTION
        root = ctx.workspace.root
        test_cases = artifacts.load_test_cases(root)
        request = ExecutionRequest(
            run_id=ctx.run_id,
            workspace_path=str(root),
            test_cases=test_cases,
            target_profile=ctx.target_profile,
            prompt=self._load_prompt(step),
        )
        data = self._invoke(self.executor, request, step)
        artifacts.write_json(root / artifacts.EXECUTION_RESULTS_FILE, data)

        executions = []
        for case in data.get("test_cases", []):
            if not isinstance(case, dict) or "status" not in case:
                continue
            try:
                executions.append(CaseExecution.model_validate(case))
            except ValueError:
                logger.warning("Run %s: unrecognised case outcome %r", ctx.run_id, case.get("status"))
        if executions:
            self.repository.record_run_history(
                ctx.project_id, RunHistory(run_id=ctx.run_id, case_executions=executions),
            )
        return {"executed_cases": len(data.get("test_cases", []))}

    def _codex_review(self, ctx: _RunContext) -> dict[str, Any]:
        step = PipelineStep.CODEX_REVIEW
        root = ctx.workspace.root
        execution_results = artifacts.read_json(root / artifacts.EXECUTION_RESULTS_FILE)
        if isinstance(execution_results, list):
            execution_results = {"test_cases": execution_results}
        request = ReviewRequest(
            run_id=ctx.run_id,
            workspace_path=str(root),
            execution_results=execution_results,
            prompt=self._load_prompt(step),
        )
        data = self._invoke(self.reviewer, request, step)
        artifacts.write_json(root / artifacts.REVIEW_RESULTS_FILE, data)
        return {"reviews": len(data.get("reviews", []))}

    def _cross_validation(self, ctx: _RunContext) -> dict[str, Any]:
        root = ctx.workspace.root
        requirements = artifacts.load_requirements(root)
        test_cases = artifacts.load_test_cases(root)
        execution_results = artifacts.read_json(root / artifacts.EXECUTION_RESULTS_FILE)
        if isinstance(execution_results, list):
            execution_results = {"test_cases": execution_results}
        reviews = artifacts.read_json(root / artifacts.REVIEW_RESULTS_FILE)
        if isinstance(reviews, list):
            reviews = {"reviews": reviews}

        assertions = artifacts.extract_executed_assertions(execution_results)
        report = self.arbiter.arbitrate_raw(assertions, reviews)
        p0 = check_p0_coverage(requirements, test_cases)
        artifacts.write_json(
            root / artifacts.CROSS_VALIDATION_FILE,
            {
                "summary": report.summary.to_dict(),
                "results": [
                    {
                        "assertion_id": r.assertion_id,
                        "original_verdict": r.original_verdict.value,
                        "review_verdict": r.review_verdict.value,
                        "final_verdict": r.final_verdict.value,
                        "reason": r.reason,
                        "conflict_detected": r.conflict_detected,
                    }
                    for r in report.results
                ],
                "updated_assertions": report.assertions,
                "p0_coverage": {"passed": p0.passed, "missing_p0_ids": p0.missing_p0_ids},
                "false_positives": report.false_positives,
                "false_negatives": report.false_negatives,
            },
        )
        if report.summary.conflicts:
            logger.info("Run %s: %d reviewer conflict(s)", ctx.run_id, report.summary.conflicts)
        return {"conflicts": report.summary.conflicts, "assertions": report.summary.total}

    def _load_gate_inputs(self, ctx: _RunContext) -> tuple[list, list, list, dict[str, Any]]:
        root = ctx.workspace.root
        requirements = artifacts.load_requirements(root)
        test_cases = artifacts.load_test_cases(root)
        cross = artifacts.read_json(root / artifacts.CROSS_VALIDATION_FILE)
        if not isinstance(cross, dict):
            raise WorkspaceError(f"{artifacts.CROSS_VALIDATION_FILE} must contain a JSON object")
        assertions = artifacts.load_assertions(cross.get("updated_assertions") or [])
        return requirements, test_cases, assertions, cross.get("summary") or {}

    def _report_generation(self, ctx: _RunContext) -> dict[str, Any]:
        requirements, test_cases, assertions, summary = self._load_gate_inputs(ctx)
        history = self.repository.find_run_history(ctx.project_id)
        gate = evaluate_traced_gate(
            requirements, test_cases, assertions, history, self.config.quality_gate,
        )
        content = artifacts.render_report(
            ctx.run_id, requirements, test_cases, assertions, summary, format_gate_result(gate),
        )
        path = ctx.workspace.root / artifacts.REPORT_FILE
        path.write_text(content, encoding="utf-8")
        self.repository.update(ctx.run_id, report_path=str(path))
        return {"report_path": str(path)}

    def _quality_gate(self, ctx: _RunContext) -> dict[str, Any]:
        requirements, test_cases, assertions, _ = self._load_gate_inputs(ctx)
        history = self.repository.find_run_history(ctx.project_id)
        gate = evaluate_traced_gate(
            requirements, test_cases, assertions, history, self.config.quality_gate,
        )
        snapshot = gate.to_dict()
        self.repository.update(ctx.run_id, quality_metrics=snapshot)
        if gate.blocked:
            logger.warning("Run %s: quality gate blocked: %s", ctx.run_id, "; ".join(gate.warnings))
        return {"passed": gate.passed, "blocked": gate.blocked}


def _regeneration_shard(attempt: int) -> str:
    return f"regeneration-{attempt}"


def _load_or_empty(loader: Callable[[Path], list], root: Path) -> list:
    try:
        return loader(root)
    except WorkspaceError:
        return []


def _workspace_readme(ctx: _RunContext) -> str:
    routes = "\n".join(f"- {r}" for r in ctx.tested_routes) or "- (none)"
    return (
        f"# Test run workspace\n\n"
        f"Run ID: {ctx.run_id}\n"
        f"Project ID: {ctx.project_id}\n\n"
        "## Layout\n\n"
        "- `inputs/` - PRD, target profile, route and page sources\n"
        "- `source-context/` - indexed source files\n"
        "- `outputs/` - requirements, test cases, execution and review results, report\n"
        "- `evidence/` - screenshots and traces\n"
        "- `logs/` - collaborator logs\n\n"
        "## Tested routes\n\n"
        f"{routes}\n"
    )
