"""Workspace prerequisite checks for resuming a pipeline mid-way.

Only presence is checked; artifact content is validated by the step itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from src.core.models import PipelineStep

STEP_ORDER: list[PipelineStep] = [
    PipelineStep.INITIALIZE,
    PipelineStep.SOURCE_INDEXING,
    PipelineStep.PRD_PARSING,
    PipelineStep.TEST_EXECUTION,
    PipelineStep.CODEX_REVIEW,
    PipelineStep.CROSS_VALIDATION,
    PipelineStep.REPORT_GENERATION,
    PipelineStep.QUALITY_GATE,
]

RESUMABLE_STEP_ORDER: list[PipelineStep] = [
    PipelineStep.PRD_PARSING,
    PipelineStep.TEST_EXECUTION,
    PipelineStep.CODEX_REVIEW,
    PipelineStep.CROSS_VALIDATION,
    PipelineStep.REPORT_GENERATION,
    PipelineStep.QUALITY_GATE,
]

_TEST_CASES_FILE = "outputs/test-cases.json"
_TEST_CASES_DIR = "outputs/test-cases"

STEP_PREREQUISITES: dict[PipelineStep, list[str]] = {
    PipelineStep.PRD_PARSING: ["inputs/prd.md", "inputs/target-profile.json"],
    PipelineStep.TEST_EXECUTION: [
        "outputs/requirements.json",
        _TEST_CASES_FILE,
        "inputs/target-profile.json",
    ],
    PipelineStep.CODEX_REVIEW: ["outputs/execution-results.json"],
    PipelineStep.CROSS_VALIDATION: [
        "outputs/codex-review-results.json",
        "outputs/requirements.json",
        _TEST_CASES_FILE,
    ],
    PipelineStep.REPORT_GENERATION: [
        "outputs/cross-validation-results.json",
        "outputs/requirements.json",
        _TEST_CASES_FILE,
    ],
    PipelineStep.QUALITY_GATE: [
        "outputs/cross-validation-results.json",
        "outputs/requirements.json",
        _TEST_CASES_FILE,
    ],
}

STEP_LABELS: dict[PipelineStep, str] = {
    PipelineStep.PRD_PARSING: "PRD parsing",
    PipelineStep.TEST_EXECUTION: "Test execution",
    PipelineStep.CODEX_REVIEW: "Result review",
    PipelineStep.CROSS_VALIDATION: "Cross validation",
    PipelineStep.REPORT_GENERATION: "Report generation",
    PipelineStep.QUALITY_GATE: "Quality gate",
}


def is_resumable_step(step: PipelineStep) -> bool:
    return step in STEP_PREREQUISITES


def steps_before(step: PipelineStep) -> list[PipelineStep]:
    return STEP_ORDER[: STEP_ORDER.index(step)]


@dataclass
class ResumableStepInfo:
    step: PipelineStep
    label: str
    available: bool
    missing_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "step": self.step.value,
            "label": self.label,
            "available": self.available,
            "missing_files": list(self.missing_files),
        }


class PrerequisiteValidator:
    """Checks that a run workspace holds the artifacts a step consumes."""

    def __init__(self, workspace_root: str | Path):
        self.workspace_root = Path(workspace_root)

    def validate_step(self, run_id: str, step: PipelineStep) -> tuple[bool, list[str]]:
        """Return (valid, missing_files) for resuming ``run_id`` at ``step``."""
        if not is_resumable_step(step):
            raise ValueError(f"Step '{step.value}' is not resumable")

        workspace = self.workspace_root / run_id
        missing: list[str] = []
        for relative in STEP_PREREQUISITES[step]:
            if (workspace / relative).is_file():
                continue
            if relative == _TEST_CASES_FILE and (workspace / _TEST_CASES_DIR).is_dir():
                continue
            missing.append(relative)
        return not missing, missing

    def get_resumable_steps(self, run_id: str) -> list[ResumableStepInfo]:
        results = []
        for step in RESUMABLE_STEP_ORDER:
            valid, missing = self.validate_step(run_id, step)
            results.append(
                ResumableStepInfo(
                    step=step,
                    label=STEP_LABELS[step],
                    available=valid,
                    missing_files=missing,
                )
            )
        return results
