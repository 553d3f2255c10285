"""Quality gate evaluation.

RC below threshold or an uncovered P0 requirement blocks the gate. APR and
FR misses are reported as warnings only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from src.core.config import QualityGateConfig
from src.core.models import (
    Assertion,
    QualityMetric,
    Requirement,
    RequirementPriority,
    RunHistory,
    TestCase,
)
from src.quality.metrics import (
    calculate_apr,
    calculate_fr,
    calculate_rc,
    get_rc_breakdown,
    meets_minimum,
    within_maximum,
)
from src.quality.traceability import (
    TraceabilitySummary,
    check_traceability,
    filter_traceable,
    get_traceability_summary,
)


@dataclass
class P0CoverageCheck:
    passed: bool
    missing_p0_ids: list[str] = field(default_factory=list)


@dataclass
class QualityMetrics:
    rc: QualityMetric
    apr: QualityMetric
    fr: Optional[QualityMetric] = None


@dataclass
class GateResult:
    passed: bool
    blocked: bool
    warnings: list[str] = field(default_factory=list)
    metrics: list[QualityMetric] = field(default_factory=list)
    traceability: Optional[TraceabilitySummary] = None

    def metric(self, name: str) -> Optional[QualityMetric]:
        for m in self.metrics:
            if m.name == name:
                return m
        return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "passed": self.passed,
            "blocked": self.blocked,
            "warnings": list(self.warnings),
            "metrics": [m.model_dump() for m in self.metrics],
        }
        if self.traceability is not None:
            data["traceability"] = self.traceability.to_dict()
        return data


def check_p0_coverage(requirements: list[Requirement], test_cases: list[TestCase]) -> P0CoverageCheck:
    covered_ids = {tc.requirement_id for tc in test_cases}
    missing = [
        r.requirement_id
        for r in requirements
        if r.priority == RequirementPriority.P0 and r.testable and r.requirement_id not in covered_ids
    ]
    return P0CoverageCheck(passed=not missing, missing_p0_ids=missing)


def calculate_all_metrics(
    requirements: list[Requirement],
    test_cases: list[TestCase],
    assertions: list[Assertion],
    run_history: Optional[list[RunHistory]] = None,
    config: Optional[QualityGateConfig] = None,
) -> QualityMetrics:
    config = config or QualityGateConfig()
    return QualityMetrics(
        rc=calculate_rc(requirements, test_cases, config.rc_threshold),
        apr=calculate_apr(assertions, config.apr_threshold),
        fr=calculate_fr(run_history or [], config.fr_threshold, config.min_history_runs),
    )


def _pct(value: float) -> str:
    return f"{value * 100:.1f}%"


def evaluate_gate(
    requirements: list[Requirement],
    test_cases: list[TestCase],
    assertions: list[Assertion],
    run_history: Optional[list[RunHistory]] = None,
    config: Optional[QualityGateConfig] = None,
) -> GateResult:
    config = config or QualityGateConfig()
    metrics = calculate_all_metrics(requirements, test_cases, assertions, run_history, config)
    warnings: list[str] = []
    blocked = False

    p0 = check_p0_coverage(requirements, test_cases)
    if not p0.passed and config.block_on_p0_failure:
        blocked = True
        warnings.append(f"P0 requirements not covered: {', '.join(p0.missing_p0_ids)}")

    if not meets_minimum(metrics.rc.value, config.rc_threshold):
        blocked = True
        uncovered = get_rc_breakdown(requirements, test_cases).uncovered
        warnings.append(
            f"RC ({_pct(metrics.rc.value)}) below threshold ({_pct(config.rc_threshold)}). "
            f"Uncovered: {', '.join(uncovered)}"
        )

    if not meets_minimum(metrics.apr.value, config.apr_threshold):
        warnings.append(
            f"APR ({_pct(metrics.apr.value)}) below threshold ({_pct(config.apr_threshold)})"
        )

    if metrics.fr is not None and not within_maximum(metrics.fr.value, config.fr_threshold):
        warnings.append(
            f"FR ({_pct(metrics.fr.value)}) above threshold ({_pct(config.fr_threshold)}). "
            "Tests marked as flaky."
        )

    result_metrics = [metrics.rc, metrics.apr]
    if metrics.fr is not None:
        result_metrics.append(metrics.fr)
    return GateResult(
        passed=not blocked and not warnings,
        blocked=blocked,
        warnings=warnings,
        metrics=result_metrics,
    )


def evaluate_traced_gate(
    requirements: list[Requirement],
    test_cases: list[TestCase],
    assertions: list[Assertion],
    run_history: Optional[list[RunHistory]] = None,
    config: Optional[QualityGateConfig] = None,
) -> GateResult:
    """Gate evaluation with untraceable assertions dropped before APR."""
    trace = check_traceability(requirements, test_cases, assertions)
    traceable = filter_traceable(assertions, trace)
    result = evaluate_gate(requirements, test_cases, traceable, run_history, config)
    result.traceability = get_traceability_summary(trace, len(assertions))
    excluded = len(assertions) - len(traceable)
    if excluded:
        result.warnings.append(
            f"{excluded} assertion(s) excluded from APR: missing evidence or unresolvable chain"
        )
        result.passed = False
    return result


def format_gate_result(result: GateResult) -> str:
    """Render a gate result as a markdown section."""
    lines = ["## Quality Gate Results", ""]
    if result.blocked:
        lines.append("**Status: BLOCKED**")
    elif result.warnings:
        lines.append("**Status: PASSED WITH WARNINGS**")
    else:
        lines.append("**Status: PASSED**")

    lines.extend(["", "### Metrics", ""])
    for metric in result.metrics:
        comparison = "<=" if metric.name == "FR" else ">="
        status = "ok" if metric.passed else "miss"
        lines.append(
            f"- {metric.name}: {_pct(metric.value)} [{status}] "
            f"(threshold: {comparison} {_pct(metric.threshold)})"
        )

    if result.traceability is not None:
        lines.append(
            f"- Traceability completeness: {_pct(result.traceability.completeness_rate)}"
        )

    if result.warnings:
        lines.extend(["", "### Warnings", ""])
        lines.extend(f"- {w}" for w in result.warnings)
    return "\n".join(lines)
