"""Tests for src/core/models.py — vocabularies and data contracts."""

import pytest
from pydantic import ValidationError

from src.core.models import (
    TERMINAL_STATES,
    AgentResult,
    Assertion,
    AssertionType,
    DecisionLogEntry,
    FeedbackType,
    PipelineStep,
    ReasonCode,
    RegenerationFeedback,
    Requirement,
    RequirementPriority,
    Run,
    RunState,
    StateEvent,
    TargetProfile,
    TestCase,
)


class TestVocabulary:
    def test_run_states(self):
        assert [s.value for s in RunState] == [
            "created", "parsing", "generating", "awaiting_approval", "executing",
            "codex_reviewing", "report_ready", "completed", "failed",
        ]

    def test_terminal_states(self):
        assert TERMINAL_STATES == {RunState.COMPLETED, RunState.FAILED}

    def test_events_are_upper_case(self):
        assert StateEvent("START_PARSING") == StateEvent.START_PARSING
        assert len(StateEvent) == 11

    def test_reason_codes(self):
        assert {r.value for r in ReasonCode} == {
            "retry_exhausted", "agent_timeout", "approval_timeout", "confirm_timeout",
            "verdict_conflict", "playwright_error", "internal_error",
        }

    def test_pipeline_step_order(self):
        assert list(PipelineStep)[0] == PipelineStep.INITIALIZE
        assert list(PipelineStep)[-1] == PipelineStep.QUALITY_GATE


class TestArtifactModels:
    def test_requirement_accepts_camel_case(self):
        r = Requirement.model_validate({
            "requirementId": "REQ-1",
            "priority": "P0",
            "acceptanceCriteria": ["shows a form"],
        })
        assert r.requirement_id == "REQ-1"
        assert r.priority == RequirementPriority.P0
        assert r.acceptance_criteria == ["shows a form"]

    def test_requirement_accepts_snake_case(self):
        r = Requirement(requirement_id="REQ-2", testable=False)
        assert r.testable is False

    def test_test_case_with_nested_assertions(self):
        tc = TestCase.model_validate({
            "caseId": "TC-1",
            "requirementId": "REQ-1",
            "steps": [{"stepNumber": 1, "action": "navigate", "target": "/login"}],
            "assertions": [{"assertionId": "A-1", "caseId": "TC-1", "type": "navigation"}],
        })
        assert tc.steps[0].step_number == 1
        assert tc.assertions[0].type == AssertionType.NAVIGATION

    def test_unknown_keys_ignored(self):
        a = Assertion.model_validate({"assertionId": "A-1", "caseId": "TC-1", "screenshotUrl": "x"})
        assert a.assertion_id == "A-1"

    def test_soft_assertion(self):
        assert Assertion(assertion_id="A", case_id="C", type=AssertionType.SOFT).is_soft
        assert not Assertion(assertion_id="A", case_id="C").is_soft

    def test_target_profile_allows_extra(self):
        profile = TargetProfile.model_validate({
            "projectId": "p", "baseUrl": "http://x", "loginRoute": "/login",
        })
        assert profile.base_url == "http://x"
        assert profile.ui_framework == "antd"


class TestRun:
    def test_defaults(self):
        run = Run(project_id="p", prd_path="docs/prd.md")
        assert run.state == RunState.CREATED
        assert run.reason_code is None
        assert run.decision_log == []
        assert run.completed_at is None
        assert not run.is_terminal

    def test_unique_ids(self):
        assert Run(project_id="p", prd_path="a").id != Run(project_id="p", prd_path="a").id

    def test_count_actions(self):
        entries = [
            DecisionLogEntry(from_state=RunState.AWAITING_APPROVAL, to_state=RunState.AWAITING_APPROVAL,
                             action="regeneration_requested"),
            DecisionLogEntry(from_state=RunState.AWAITING_APPROVAL, to_state=RunState.GENERATING,
                             event=StateEvent.REJECTED),
            DecisionLogEntry(from_state=RunState.AWAITING_APPROVAL, to_state=RunState.AWAITING_APPROVAL,
                             action="regeneration_requested"),
        ]
        run = Run(project_id="p", prd_path="a", decision_log=entries)
        assert run.count_actions("regeneration_requested") == 2
        assert run.count_actions("cancelled") == 0

    def test_terminal(self):
        assert Run(project_id="p", prd_path="a", state=RunState.FAILED).is_terminal


class TestMessages:
    def test_feedback_requires_detail(self):
        with pytest.raises(ValidationError):
            RegenerationFeedback(feedback_type=FeedbackType.OTHER, feedback_detail="", reviewer_id="r")

    def test_agent_result_succeeded(self):
        assert AgentResult(agent_name="a", status="success").succeeded
        failed = AgentResult(agent_name="a", status="failure", reason_code=ReasonCode.AGENT_TIMEOUT)
        assert not failed.succeeded
        assert failed.reason_code == ReasonCode.AGENT_TIMEOUT
