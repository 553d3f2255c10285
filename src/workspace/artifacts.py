"""Reading and writing the JSON and markdown artifacts inside a run workspace."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ValidationError
from pydantic_core import to_jsonable_python

from src.core.exceptions import WorkspaceError
from src.core.models import Assertion, Requirement, TestCase

REQUIREMENTS_FILE = "outputs/requirements.json"
TEST_CASES_FILE = "outputs/test-cases.json"
TEST_CASES_DIR = "outputs/test-cases"
EXECUTION_RESULTS_FILE = "outputs/execution-results.json"
REVIEW_RESULTS_FILE = "outputs/codex-review-results.json"
CROSS_VALIDATION_FILE = "outputs/cross-validation-results.json"
REPORT_FILE = "outputs/report.md"


def read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise WorkspaceError(f"Missing artifact: {path}") from e
    except json.JSONDecodeError as e:
        raise WorkspaceError(f"Artifact is not valid JSON: {path} ({e})") from e


def write_json(path: Path, data: Any) -> Path:
    """Write ``data`` as indented JSON; pydantic models may appear at any depth."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = to_jsonable_python(data, fallback=str)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    return path


def _validate_list(model: type[BaseModel], items: Any, source: str) -> list:
    if not isinstance(items, list):
        raise WorkspaceError(f"{source} must contain a JSON list")
    try:
        return [model.model_validate(item) for item in items]
    except ValidationError as e:
        raise WorkspaceError(f"Invalid {model.__name__} in {source}: {e}") from e


def load_requirements(root: Path) -> list[Requirement]:
    return _validate_list(Requirement, read_json(root / REQUIREMENTS_FILE), REQUIREMENTS_FILE)


def load_test_cases(root: Path) -> list[TestCase]:
    """Test cases from test-cases.json, or from a test-cases/ directory of JSON files."""
    single = root / TEST_CASES_FILE
    if single.is_file():
        return _validate_list(TestCase, read_json(single), TEST_CASES_FILE)

    directory = root / TEST_CASES_DIR
    if not directory.is_dir():
        raise WorkspaceError(f"Missing artifact: {single}")
    items: list[Any] = []
    for path in sorted(directory.glob("*.json")):
        data = read_json(path)
        items.extend(data if isinstance(data, list) else [data])
    return _validate_list(TestCase, items, TEST_CASES_DIR)


def load_assertions(items: Any) -> list[Assertion]:
    return _validate_list(Assertion, items, CROSS_VALIDATION_FILE)


def extract_executed_assertions(execution_results: dict[str, Any]) -> list[Assertion]:
    """Flatten assertions out of the executor's per-case results."""
    assertions: list[Assertion] = []
    for case in execution_results.get("test_cases") or execution_results.get("testCases") or []:
        if not isinstance(case, dict):
            continue
        case_id = case.get("case_id") or case.get("caseId")
        for raw in case.get("assertions") or []:
            if not isinstance(raw, dict):
                continue
            data = dict(raw)
            if case_id and not (data.get("case_id") or data.get("caseId")):
                data["case_id"] = case_id
            try:
                assertions.append(Assertion.model_validate(data))
            except ValidationError as e:
                raise WorkspaceError(f"Invalid assertion in execution results: {e}") from e
    return assertions


def load_final_assertions(root: Path) -> list[Assertion]:
    """Arbitrated assertions when cross-validation ran, else the executor's."""
    cross = root / CROSS_VALIDATION_FILE
    if cross.is_file():
        data = read_json(cross)
        if not isinstance(data, dict):
            raise WorkspaceError(f"{CROSS_VALIDATION_FILE} must contain a JSON object")
        return load_assertions(data.get("updated_assertions") or [])
    results = read_json(root / EXECUTION_RESULTS_FILE)
    if isinstance(results, list):
        results = {"test_cases": results}
    return extract_executed_assertions(results)


def render_report(
    run_id: str,
    requirements: list[Requirement],
    test_cases: list[TestCase],
    assertions: list[Assertion],
    summary: Optional[dict[str, Any]] = None,
    gate_markdown: str = "",
) -> str:
    summary = summary or {}
    lines = [
        f"# Test Report: {run_id}",
        "",
        "## Summary",
        "",
        f"- Requirements: {len(requirements)}",
        f"- Test cases: {len(test_cases)}",
        f"- Assertions: {summary.get('total', len(assertions))}",
        f"- Passed: {summary.get('passed', 0)}",
        f"- Failed: {summary.get('failed', 0)}",
        f"- Errors: {summary.get('errors', 0)}",
        f"- Reviewer conflicts: {summary.get('conflicts', 0)}",
        "",
    ]

    failing = [a for a in assertions if a.final_verdict is not None and a.final_verdict.value != "pass"]
    if failing:
        lines.extend(["## Failed Assertions", "", "| Case | Assertion | Verdict | Evidence |", "|---|---|---|---|"])
        for a in failing:
            lines.append(
                f"| {a.case_id} | {a.assertion_id}: {a.description} | "
                f"{a.final_verdict.value} | {a.evidence_path or '-'} |"
            )
        lines.append("")

    if gate_markdown:
        lines.append(gate_markdown)
    return "\n".join(lines).rstrip() + "\n"
