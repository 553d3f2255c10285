"""All Pydantic data models for the PRD Test Conductor.

Defines the closed vocabularies (states, events, reason codes, steps) and the
data contracts shared by the state machine, the pipeline runner, the quality
gate and the agent collaborators. Artifact models accept both snake_case and
the camelCase keys emitted by the agent collaborators.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

class RunState(str, enum.Enum):
    CREATED = "created"
    PARSING = "parsing"
    GENERATING = "generating"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    CODEX_REVIEWING = "codex_reviewing"
    REPORT_READY = "report_ready"
    COMPLETED = "completed"
    FAILED = "failed"


class StateEvent(str, enum.Enum):
    START_PARSING = "START_PARSING"
    PARSING_COMPLETE = "PARSING_COMPLETE"
    GENERATION_COMPLETE = "GENERATION_COMPLETE"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXECUTION_COMPLETE = "EXECUTION_COMPLETE"
    REVIEW_COMPLETE = "REVIEW_COMPLETE"
    CONFIRMED = "CONFIRMED"
    RETEST = "RETEST"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"


class ReasonCode(str, enum.Enum):
    RETRY_EXHAUSTED = "retry_exhausted"
    AGENT_TIMEOUT = "agent_timeout"
    APPROVAL_TIMEOUT = "approval_timeout"
    CONFIRM_TIMEOUT = "confirm_timeout"
    VERDICT_CONFLICT = "verdict_conflict"
    PLAYWRIGHT_ERROR = "playwright_error"
    INTERNAL_ERROR = "internal_error"


class PipelineStep(str, enum.Enum):
    INITIALIZE = "initialize"
    SOURCE_INDEXING = "source_indexing"
    PRD_PARSING = "prd_parsing"
    TEST_EXECUTION = "test_execution"
    CODEX_REVIEW = "codex_review"
    CROSS_VALIDATION = "cross_validation"
    REPORT_GENERATION = "report_generation"
    QUALITY_GATE = "quality_gate"


class RequirementPriority(str, enum.Enum):
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"


class AssertionType(str, enum.Enum):
    ELEMENT_VISIBLE = "element_visible"
    TEXT_CONTENT = "text_content"
    ELEMENT_COUNT = "element_count"
    NAVIGATION = "navigation"
    SOFT = "soft"


class Verdict(str, enum.Enum):
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"


class ReviewVerdict(str, enum.Enum):
    AGREE = "agree"
    DISAGREE = "disagree"
    UNCERTAIN = "uncertain"


class ConflictType(str, enum.Enum):
    FACT_CONFLICT = "fact_conflict"
    EVIDENCE_MISSING = "evidence_missing"
    THRESHOLD_CONFLICT = "threshold_conflict"


class TestCaseStatus(str, enum.Enum):
    __test__ = False

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"


class FeedbackType(str, enum.Enum):
    COVERAGE_INCOMPLETE = "coverage_incomplete"
    STEPS_INCORRECT = "steps_incorrect"
    ASSERTIONS_INACCURATE = "assertions_inaccurate"
    OTHER = "other"


TERMINAL_STATES: frozenset[RunState] = frozenset({RunState.COMPLETED, RunState.FAILED})


# ---------------------------------------------------------------------------
# Artifact models (requirements -> test cases -> assertions)
# ---------------------------------------------------------------------------

class ArtifactModel(BaseModel):
    """Base for agent-produced artifacts; accepts camelCase input keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        use_enum_values=False,
    )


class Requirement(ArtifactModel):
    requirement_id: str
    title: str = ""
    description: str = ""
    priority: RequirementPriority = RequirementPriority.P1
    testable: bool = True
    route: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    source_section: Optional[str] = None
    tags: list[str] = Field(default_factory=list)


class Assertion(ArtifactModel):
    assertion_id: str
    case_id: str
    type: AssertionType = AssertionType.ELEMENT_VISIBLE
    description: str = ""
    expected: str = ""
    actual: Optional[str] = None
    machine_verdict: Optional[Verdict] = None
    agent_verdict: Optional[Verdict] = None
    agent_reasoning: Optional[str] = None
    review_verdict: Optional[ReviewVerdict] = None
    conflict_type: Optional[ConflictType] = None
    final_verdict: Optional[Verdict] = None
    evidence_path: Optional[str] = None

    @property
    def is_soft(self) -> bool:
        return self.type == AssertionType.SOFT


class TestStep(ArtifactModel):
    __test__ = False

    step_number: int
    action: str
    description: str = ""
    target: Optional[str] = None
    value: Optional[str] = None


class TestCase(ArtifactModel):
    __test__ = False

    case_id: str
    requirement_id: str
    route: str = ""
    title: str = ""
    precondition: str = ""
    steps: list[TestStep] = Field(default_factory=list)
    assertions: list[Assertion] = Field(default_factory=list)
    status: Optional[TestCaseStatus] = None


class TraceabilityLink(BaseModel):
    """Derived requirement -> case -> assertion chain; never stored."""
    requirement_id: str
    case_id: str
    assertion_id: str
    evidence_path: Optional[str] = None


class QualityMetric(BaseModel):
    name: str  # "RC", "APR" or "FR"
    value: float
    threshold: float
    passed: bool


class CaseExecution(ArtifactModel):
    case_id: str
    status: TestCaseStatus


class RunHistory(ArtifactModel):
    """Case outcomes of one historical run, input to the flaky rate."""
    run_id: str
    executed_at: datetime = Field(default_factory=_now)
    case_executions: list[CaseExecution] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Run record
# ---------------------------------------------------------------------------

class DecisionLogEntry(BaseModel):
    """One audited transition (or pipeline action) on a run.

    State machine transitions carry ``event``; pipeline-level actions such as
    ``pipeline_resumed`` or ``regeneration_requested`` carry ``action``.
    """
    timestamp: datetime = Field(default_factory=_now)
    from_state: RunState
    to_state: RunState
    event: Optional[StateEvent] = None
    action: Optional[str] = None
    reason: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class EnvFingerprint(BaseModel):
    service_version: Optional[str] = None
    git_commit: Optional[str] = None
    config_hash: Optional[str] = None
    browser_version: Optional[str] = None


class AgentVersions(BaseModel):
    parser: str = "unknown"
    executor: str = "unknown"
    reviewer: str = "unknown"


class PromptVersions(BaseModel):
    prd_parse: str = "v1"
    ui_test_execute: str = "v1"
    review_results: str = "v1"


class Run(BaseModel):
    id: str = Field(default_factory=_new_id)
    project_id: str
    state: RunState = RunState.CREATED
    reason_code: Optional[ReasonCode] = None
    prd_path: str
    tested_routes: list[str] = Field(default_factory=list)
    workspace_path: Optional[str] = None
    env_fingerprint: EnvFingerprint = Field(default_factory=EnvFingerprint)
    agent_versions: AgentVersions = Field(default_factory=AgentVersions)
    prompt_versions: PromptVersions = Field(default_factory=PromptVersions)
    decision_log: list[DecisionLogEntry] = Field(default_factory=list)
    quality_metrics: Optional[dict[str, Any]] = None
    report_path: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def count_actions(self, action: str) -> int:
        return sum(1 for entry in self.decision_log if entry.action == action)


class SourceCodeConfig(ArtifactModel):
    frontend_root: Optional[str] = None
    router_file: Optional[str] = None
    page_dir: Optional[str] = None
    route_files: list[str] = Field(default_factory=list)
    page_files: list[str] = Field(default_factory=list)


class TargetProfile(ArtifactModel):
    """Test target configuration owned by the external store."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    id: str = Field(default_factory=_new_id)
    project_id: str
    base_url: str
    allowed_routes: list[str] = Field(default_factory=list)
    denied_routes: list[str] = Field(default_factory=list)
    source_code: SourceCodeConfig = Field(default_factory=SourceCodeConfig)
    ui_framework: str = "antd"


# ---------------------------------------------------------------------------
# Human decisions
# ---------------------------------------------------------------------------

class ApprovalDecision(BaseModel):
    approved: bool
    reviewer_id: str
    comments: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class ConfirmationDecision(BaseModel):
    confirmed: bool = False
    retest: bool = False
    reviewer_id: str
    comments: Optional[str] = None
    force: bool = False  # confirm even when the stored quality gate is blocked
    timestamp: datetime = Field(default_factory=_now)


class RegenerationFeedback(BaseModel):
    feedback_type: FeedbackType
    feedback_detail: str = Field(min_length=1)
    reviewer_id: str
    prior_requirements: list[Requirement] = Field(default_factory=list)
    prior_test_cases: list[TestCase] = Field(default_factory=list)
    attempt: int = 1


# ---------------------------------------------------------------------------
# Inter-agent message models
# ---------------------------------------------------------------------------

class AgentResult(BaseModel):
    """Standardized output from any agent collaborator."""
    agent_name: str
    status: str  # "success", "failure"
    data: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    reason_code: Optional[ReasonCode] = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == "success"
