"""Requirement -> test case -> assertion -> evidence chain checks.

Every assertion lands in exactly one bucket:

* complete:   case and requirement resolve, evidence path present
* incomplete: case and requirement resolve, no evidence path
* orphaned:   case or requirement does not resolve

Incomplete and orphaned assertions are excluded before the pass rate is
computed for gating, so traceability gaps never count as passes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from src.core.models import Assertion, Requirement, TestCase, TraceabilityLink


@dataclass
class TraceabilityResult:
    complete: bool
    complete_chains: list[TraceabilityLink] = field(default_factory=list)
    incomplete_chains: list[TraceabilityLink] = field(default_factory=list)
    orphaned_assertions: list[str] = field(default_factory=list)
    orphaned_keys: list[tuple[str, str]] = field(default_factory=list)
    orphaned_test_cases: list[str] = field(default_factory=list)


@dataclass
class TraceabilitySummary:
    total_assertions: int
    complete_chains: int
    incomplete_chains: int
    orphaned_assertions: int
    orphaned_test_cases: int
    completeness_rate: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_assertions": self.total_assertions,
            "complete_chains": self.complete_chains,
            "incomplete_chains": self.incomplete_chains,
            "orphaned_assertions": self.orphaned_assertions,
            "orphaned_test_cases": self.orphaned_test_cases,
            "completeness_rate": round(self.completeness_rate, 4),
        }


def _case_to_requirement(test_cases: list[TestCase]) -> dict[str, str]:
    return {tc.case_id: tc.requirement_id for tc in test_cases}


def build_traceability_chains(
    requirements: list[Requirement],
    test_cases: list[TestCase],
    assertions: list[Assertion],
) -> list[TraceabilityLink]:
    """Links for every assertion whose case and requirement both resolve."""
    requirement_ids = {r.requirement_id for r in requirements}
    case_map = _case_to_requirement(test_cases)
    chains = []
    for assertion in assertions:
        requirement_id = case_map.get(assertion.case_id)
        if requirement_id and requirement_id in requirement_ids:
            chains.append(
                TraceabilityLink(
                    requirement_id=requirement_id,
                    case_id=assertion.case_id,
                    assertion_id=assertion.assertion_id,
                    evidence_path=assertion.evidence_path,
                )
            )
    return chains


def check_traceability(
    requirements: list[Requirement],
    test_cases: list[TestCase],
    assertions: list[Assertion],
) -> TraceabilityResult:
    requirement_ids = {r.requirement_id for r in requirements}
    case_map = _case_to_requirement(test_cases)

    result = TraceabilityResult(complete=True)
    result.orphaned_test_cases = [
        tc.case_id for tc in test_cases if tc.requirement_id not in requirement_ids
    ]

    for assertion in assertions:
        requirement_id = case_map.get(assertion.case_id)
        if requirement_id is None or requirement_id not in requirement_ids:
            result.orphaned_assertions.append(assertion.assertion_id)
            result.orphaned_keys.append((assertion.case_id, assertion.assertion_id))
            continue

        link = TraceabilityLink(
            requirement_id=requirement_id,
            case_id=assertion.case_id,
            assertion_id=assertion.assertion_id,
            evidence_path=assertion.evidence_path,
        )
        if assertion.evidence_path:
            result.complete_chains.append(link)
        else:
            result.incomplete_chains.append(link)

    result.complete = not result.incomplete_chains and not result.orphaned_assertions
    return result


def get_excluded_assertions(result: TraceabilityResult) -> set[tuple[str, str]]:
    """(case_id, assertion_id) pairs that must not count towards the pass rate."""
    excluded = set(result.orphaned_keys)
    excluded.update((chain.case_id, chain.assertion_id) for chain in result.incomplete_chains)
    return excluded


def filter_traceable(assertions: list[Assertion], result: TraceabilityResult) -> list[Assertion]:
    excluded = get_excluded_assertions(result)
    return [a for a in assertions if (a.case_id, a.assertion_id) not in excluded]


def get_traceability_summary(result: TraceabilityResult, total_assertions: int) -> TraceabilitySummary:
    complete = len(result.complete_chains)
    traced = complete + len(result.incomplete_chains) + len(result.orphaned_assertions)
    return TraceabilitySummary(
        total_assertions=total_assertions,
        complete_chains=complete,
        incomplete_chains=len(result.incomplete_chains),
        orphaned_assertions=len(result.orphaned_assertions),
        orphaned_test_cases=len(result.orphaned_test_cases),
        completeness_rate=complete / traced if traced else 1.0,
    )
