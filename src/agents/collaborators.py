"""Agent collaborator interfaces used by the pipeline runner.

The runner only knows three roles: a document parser that turns a PRD into
requirements and test cases, a test executor that runs those cases, and a
result reviewer that second-guesses the executor's verdicts. Concrete
collaborators implement ``invoke()`` and may return either a parsed document
or raw text containing JSON.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Any, Callable, Optional, TypeVar

from pydantic import BaseModel, Field

from src.agents.base_agent import BaseAgent
from src.agents.response_parser import extract_json_payload
from src.core.exceptions import ResponseParseError
from src.core.models import (
    AgentResult,
    ReasonCode,
    RegenerationFeedback,
    TargetProfile,
    TestCase,
)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class ParseRequest(BaseModel):
    run_id: str
    workspace_path: str
    prd_path: str
    target_profile: Optional[TargetProfile] = None
    prompt: str = ""
    feedback: Optional[RegenerationFeedback] = None


class ExecutionRequest(BaseModel):
    run_id: str
    workspace_path: str
    test_cases: list[TestCase] = Field(default_factory=list)
    target_profile: Optional[TargetProfile] = None
    prompt: str = ""


class ReviewRequest(BaseModel):
    run_id: str
    workspace_path: str
    execution_results: dict[str, Any] = Field(default_factory=dict)
    prompt: str = ""


def _first_key(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return None


class CollaboratorAgent(BaseAgent):
    """BaseAgent whose work is delegated to ``invoke()``."""

    default_name = "Collaborator"
    default_role = "collaborator"

    def __init__(self, name: Optional[str] = None, version: str = "unknown"):
        super().__init__(name or self.default_name, self.default_role, version=version)

    @abstractmethod
    def invoke(self, request: Any) -> Any:
        """Call the external collaborator. Returns a document or raw text."""

    @abstractmethod
    def normalize(self, payload: Any) -> dict[str, Any]:
        """Shape the collaborator document into AgentResult.data."""

    def process(self, input_data: Any) -> AgentResult:
        output = self.invoke(input_data)
        if isinstance(output, AgentResult):
            return output
        if isinstance(output, (str, bytes)):
            text = output.decode("utf-8", errors="replace") if isinstance(output, bytes) else output
            output = extract_json_payload(text)
        return AgentResult(agent_name=self.name, status="success", data=self.normalize(output))


class DocumentParserAgent(CollaboratorAgent):
    """PRD -> requirements + test cases. Also regenerates with reviewer feedback."""

    default_name = "DocumentParser"
    default_role = "parser"
    failure_reason_code = ReasonCode.INTERNAL_ERROR

    def normalize(self, payload: Any) -> dict[str, Any]:
        if not isinstance(payload, dict):
            raise ResponseParseError("Parser output must be a JSON object")
        requirements = _first_key(payload, "requirements") or []
        test_cases = _first_key(payload, "test_cases", "testCases") or []
        if not isinstance(requirements, list) or not isinstance(test_cases, list):
            raise ResponseParseError("Parser output must contain requirement and test case lists")
        return {"requirements": requirements, "test_cases": test_cases}


class TestExecutorAgent(CollaboratorAgent):
    """Runs approved test cases against the target and reports per-assertion verdicts."""

    __test__ = False

    default_name = "TestExecutor"
    default_role = "executor"
    failure_reason_code = ReasonCode.PLAYWRIGHT_ERROR

    def normalize(self, payload: Any) -> dict[str, Any]:
        if isinstance(payload, list):
            return {"test_cases": payload}
        if not isinstance(payload, dict):
            raise ResponseParseError("Executor output must be a JSON object or list")
        data = dict(payload)
        cases = _first_key(payload, "test_cases", "testCases")
        data.pop("testCases", None)
        data["test_cases"] = cases or []
        return data


class ResultReviewerAgent(CollaboratorAgent):
    """Reviews execution evidence and agrees or disagrees with each assertion verdict."""

    default_name = "ResultReviewer"
    default_role = "reviewer"
    failure_reason_code = ReasonCode.INTERNAL_ERROR

    def normalize(self, payload: Any) -> dict[str, Any]:
        if isinstance(payload, list):
            return {"reviews": payload}
        if not isinstance(payload, dict) or not isinstance(payload.get("reviews"), list):
            raise ResponseParseError("Reviewer output must contain a 'reviews' list")
        return dict(payload)


AgentT = TypeVar("AgentT", bound=CollaboratorAgent)


def from_callable(
    agent_cls: type[AgentT],
    fn: Callable[[Any], Any],
    name: Optional[str] = None,
    version: str = "unknown",
) -> AgentT:
    """Wrap a plain function as a collaborator of the given role."""

    class _FunctionAgent(agent_cls):  # type: ignore[valid-type, misc]
        def invoke(self, request: Any) -> Any:
            return fn(request)

    _FunctionAgent.__name__ = f"Function{agent_cls.__name__}"
    return _FunctionAgent(name=name, version=version)
