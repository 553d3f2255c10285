"""Quality metric calculations: requirements coverage, assertion pass rate,
flaky rate.

All functions are pure. Threshold comparisons allow a small epsilon so that
ratios such as 17/20 compare equal to a 0.85 threshold.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from src.core.models import (
    Assertion,
    QualityMetric,
    Requirement,
    RunHistory,
    TestCase,
    TestCaseStatus,
    Verdict,
)

RC_THRESHOLD = 0.85
APR_THRESHOLD = 0.95
FR_THRESHOLD = 0.05
MIN_HISTORY_RUNS = 3
MIN_CASE_EXECUTIONS = 3

_EPSILON = 1e-9


def meets_minimum(value: float, threshold: float) -> bool:
    return value + _EPSILON >= threshold


def within_maximum(value: float, threshold: float) -> bool:
    return value - _EPSILON <= threshold


@dataclass
class RCBreakdown:
    total_testable: int
    covered: int
    uncovered: list[str] = field(default_factory=list)
    rate: float = 1.0


@dataclass
class APRBreakdown:
    total_deterministic: int
    passed: int
    failed: int
    errors: int
    rate: float = 1.0


# ---------------------------------------------------------------------------
# Requirements coverage
# ---------------------------------------------------------------------------

def get_rc_breakdown(requirements: list[Requirement], test_cases: list[TestCase]) -> RCBreakdown:
    testable = [r for r in requirements if r.testable]
    covered_ids = {tc.requirement_id for tc in test_cases}
    uncovered = [r.requirement_id for r in testable if r.requirement_id not in covered_ids]
    covered = len(testable) - len(uncovered)
    return RCBreakdown(
        total_testable=len(testable),
        covered=covered,
        uncovered=uncovered,
        rate=covered / len(testable) if testable else 1.0,
    )


def calculate_rc(
    requirements: list[Requirement],
    test_cases: list[TestCase],
    threshold: float = RC_THRESHOLD,
) -> QualityMetric:
    rate = get_rc_breakdown(requirements, test_cases).rate
    return QualityMetric(name="RC", value=rate, threshold=threshold, passed=meets_minimum(rate, threshold))


# ---------------------------------------------------------------------------
# Assertion pass rate
# ---------------------------------------------------------------------------

def get_apr_breakdown(assertions: list[Assertion]) -> APRBreakdown:
    deterministic = [a for a in assertions if not a.is_soft]
    passed = sum(1 for a in deterministic if a.final_verdict == Verdict.PASS)
    return APRBreakdown(
        total_deterministic=len(deterministic),
        passed=passed,
        failed=sum(1 for a in deterministic if a.final_verdict == Verdict.FAIL),
        errors=sum(1 for a in deterministic if a.final_verdict == Verdict.ERROR),
        rate=passed / len(deterministic) if deterministic else 1.0,
    )


def calculate_apr(assertions: list[Assertion], threshold: float = APR_THRESHOLD) -> QualityMetric:
    rate = get_apr_breakdown(assertions).rate
    return QualityMetric(name="APR", value=rate, threshold=threshold, passed=meets_minimum(rate, threshold))


# ---------------------------------------------------------------------------
# Flaky rate
# ---------------------------------------------------------------------------

def _outcomes_by_case(run_history: list[RunHistory]) -> dict[str, list[bool]]:
    outcomes: dict[str, list[bool]] = {}
    for run in run_history:
        for execution in run.case_executions:
            outcomes.setdefault(execution.case_id, []).append(
                execution.status == TestCaseStatus.PASSED
            )
    return outcomes


def _is_flaky(results: list[bool]) -> bool:
    return any(results) and not all(results)


def get_flaky_test_cases(
    run_history: list[RunHistory],
    min_runs: int = MIN_HISTORY_RUNS,
) -> list[str]:
    if len(run_history) < min_runs:
        return []
    return [
        case_id
        for case_id, results in _outcomes_by_case(run_history).items()
        if len(results) >= MIN_CASE_EXECUTIONS and _is_flaky(results)
    ]


def calculate_fr(
    run_history: list[RunHistory],
    threshold: float = FR_THRESHOLD,
    min_runs: int = MIN_HISTORY_RUNS,
) -> Optional[QualityMetric]:
    """Flaky rate, or None when history is too thin to judge."""
    if len(run_history) < min_runs:
        return None

    tracked = [
        results
        for results in _outcomes_by_case(run_history).values()
        if len(results) >= MIN_CASE_EXECUTIONS
    ]
    if not tracked:
        return None

    rate = sum(1 for results in tracked if _is_flaky(results)) / len(tracked)
    return QualityMetric(name="FR", value=rate, threshold=threshold, passed=within_maximum(rate, threshold))
