"""Custom exception hierarchy for the PRD Test Conductor.

All exceptions inherit from ConductorError so callers can catch broadly
or narrowly as needed.
"""


class ConductorError(Exception):
    """Base exception for all Conductor errors."""


# ---------------------------------------------------------------------------
# Run store
# ---------------------------------------------------------------------------

class StoreError(ConductorError):
    """Failed run store operation."""


class RunNotFoundError(StoreError):
    """Requested run does not exist in the store."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Test run with id {run_id} not found")


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class StateTransitionError(ConductorError):
    """State machine refused a transition."""


class InvalidTransitionError(StateTransitionError):
    """Transition is not in the table, or starts from a terminal state."""

    def __init__(self, from_state: str, event: str, message: str | None = None):
        self.from_state = from_state
        self.event = event
        super().__init__(message or f"Invalid transition: {from_state} + {event}")


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class PipelineError(ConductorError):
    """Pipeline runner refused or failed an operation."""


class PipelineAlreadyRunningError(PipelineError):
    """A pipeline instance is already tracked for this run."""

    def __init__(self, run_id: str, state: str | None = None):
        self.run_id = run_id
        self.state = state
        detail = f" (state: {state})" if state else ""
        super().__init__(f"Pipeline for run {run_id} is already running{detail}")


class ResumeNotAllowedError(PipelineError):
    """Run cannot be resumed from the requested step or state."""


class MissingPrerequisitesError(PipelineError):
    """Artifacts required by a step are absent from the run workspace."""

    def __init__(self, step: str, missing_files: list[str]):
        self.step = step
        self.missing_files = list(missing_files)
        super().__init__(
            f"Missing prerequisite files for step '{step}': {', '.join(self.missing_files)}"
        )


class RegenerationLimitError(PipelineError):
    """Test case regeneration cap reached; manual intervention required."""

    def __init__(self, run_id: str, attempts: int, max_attempts: int):
        self.run_id = run_id
        self.attempts = attempts
        self.max_attempts = max_attempts
        super().__init__(
            f"Maximum regeneration attempts ({max_attempts}) reached for run {run_id}. "
            "Please manually edit test cases or force continue."
        )


class QualityGateBlockedError(PipelineError):
    """Confirmation refused because the stored quality gate is blocked."""

    def __init__(self, run_id: str, warnings: list[str]):
        self.run_id = run_id
        self.warnings = list(warnings)
        super().__init__(
            f"Quality gate blocked for run {run_id}: {'; '.join(self.warnings) or 'blocked'}"
        )


class StepFailedError(PipelineError):
    """A pipeline step failed; carries the reason code to record on the run."""

    def __init__(self, step: str, message: str, reason_code: str | None = None):
        self.step = step
        self.reason_code = reason_code
        super().__init__(message)


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

class AgentError(ConductorError):
    """Agent collaborator failure."""


class ResponseParseError(AgentError):
    """Failed to parse structured output from a collaborator."""


# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------

class WorkspaceError(ConductorError):
    """Invalid workspace layout or unreadable workspace artifact."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(ConductorError):
    """Invalid or missing configuration."""
