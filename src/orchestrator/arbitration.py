"""Cross-validation arbitration between executor verdicts and reviewer opinions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from src.core.models import Assertion, ConflictType, ReviewVerdict, Verdict


@dataclass
class AssertionReview:
    """Reviewer opinion on one assertion."""

    assertion_id: str
    case_id: str
    review_verdict: ReviewVerdict
    reasoning: str = ""
    conflict_type: Optional[ConflictType] = None


@dataclass
class ArbitrationResult:
    assertion_id: str
    original_verdict: Verdict
    review_verdict: ReviewVerdict
    final_verdict: Verdict
    reason: str
    conflict_detected: bool


@dataclass
class ArbitrationSummary:
    total: int = 0
    passed: int = 0
    failed: int = 0
    errors: int = 0
    conflicts: int = 0
    agreement_rate: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "errors": self.errors,
            "conflicts": self.conflicts,
            "agreement_rate": round(self.agreement_rate, 4),
        }


@dataclass
class ArbitrationReport:
    results: list[ArbitrationResult] = field(default_factory=list)
    assertions: list[Assertion] = field(default_factory=list)
    summary: ArbitrationSummary = field(default_factory=ArbitrationSummary)
    false_positives: list[str] = field(default_factory=list)
    false_negatives: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Review parsing
# ---------------------------------------------------------------------------

def parse_review_verdict(value: Any) -> ReviewVerdict:
    """Normalise a reviewer verdict string; anything unknown is uncertain."""
    try:
        return ReviewVerdict(str(value or "").strip().lower())
    except ValueError:
        return ReviewVerdict.UNCERTAIN


def parse_conflict_type(value: Any) -> Optional[ConflictType]:
    if not value:
        return None
    try:
        return ConflictType(str(value).strip().lower().replace("-", "_"))
    except ValueError:
        return None


def _pick(raw: dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    if snake in raw:
        return raw[snake]
    return raw.get(camel, default)


def parse_review(raw: dict[str, Any]) -> AssertionReview:
    return AssertionReview(
        assertion_id=str(_pick(raw, "assertion_id", "assertionId", "")),
        case_id=str(_pick(raw, "case_id", "caseId", "")),
        review_verdict=parse_review_verdict(_pick(raw, "review_verdict", "reviewVerdict")),
        reasoning=str(raw.get("reasoning") or ""),
        conflict_type=parse_conflict_type(_pick(raw, "conflict_type", "conflictType")),
    )


def parse_review_file(raw: dict[str, Any]) -> tuple[list[AssertionReview], list[str], list[str]]:
    """Parse a reviewer output document into (reviews, false_positives, false_negatives)."""
    reviews_raw = raw.get("reviews")
    if not isinstance(reviews_raw, list):
        raise ValueError("reviews must be a list")
    reviews = [parse_review(r) for r in reviews_raw if isinstance(r, dict)]
    false_positives = list(_pick(raw, "false_positives", "falsePositives", []) or [])
    false_negatives = list(_pick(raw, "false_negatives", "falseNegatives", []) or [])
    return reviews, false_positives, false_negatives


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

def original_verdict(assertion: Assertion) -> Verdict:
    """Machine verdict for deterministic assertions, agent verdict for soft ones."""
    verdict = assertion.agent_verdict if assertion.is_soft else assertion.machine_verdict
    return verdict or Verdict.ERROR


def arbitrate_deterministic(
    machine_verdict: Verdict,
    review_verdict: ReviewVerdict,
) -> tuple[Verdict, str, bool]:
    if review_verdict == ReviewVerdict.DISAGREE:
        return Verdict.FAIL, "Reviewer disagrees with machine verdict; marked failed", True
    if review_verdict == ReviewVerdict.AGREE:
        return machine_verdict, "Reviewer agrees with machine verdict", False
    return machine_verdict, "Reviewer uncertain; machine verdict kept", False


def arbitrate_soft(
    agent_verdict: Verdict,
    review_verdict: ReviewVerdict,
) -> tuple[Verdict, str, bool]:
    if review_verdict == ReviewVerdict.AGREE:
        return agent_verdict, "Reviewer agrees with agent verdict", False
    if review_verdict == ReviewVerdict.DISAGREE:
        return Verdict.FAIL, "Reviewer disagrees with agent verdict; marked failed", True
    return Verdict.FAIL, "Reviewer uncertain on soft assertion; marked failed", True


def arbitrate_assertion(assertion: Assertion, review: Optional[AssertionReview]) -> ArbitrationResult:
    original = original_verdict(assertion)
    if review is None:
        return ArbitrationResult(
            assertion_id=assertion.assertion_id,
            original_verdict=original,
            review_verdict=ReviewVerdict.UNCERTAIN,
            final_verdict=original,
            reason="No review found; original verdict kept",
            conflict_detected=False,
        )

    rule = arbitrate_soft if assertion.is_soft else arbitrate_deterministic
    final, reason, conflict = rule(original, review.review_verdict)
    return ArbitrationResult(
        assertion_id=assertion.assertion_id,
        original_verdict=original,
        review_verdict=review.review_verdict,
        final_verdict=final,
        reason=reason,
        conflict_detected=conflict,
    )


def summarize(results: list[ArbitrationResult]) -> ArbitrationSummary:
    total = len(results)
    conflicts = sum(1 for r in results if r.conflict_detected)
    return ArbitrationSummary(
        total=total,
        passed=sum(1 for r in results if r.final_verdict == Verdict.PASS),
        failed=sum(1 for r in results if r.final_verdict == Verdict.FAIL),
        errors=sum(1 for r in results if r.final_verdict == Verdict.ERROR),
        conflicts=conflicts,
        agreement_rate=(total - conflicts) / total if total else 1.0,
    )


class CrossValidationArbiter:
    """Combines assertion verdicts with reviewer opinions into final verdicts."""

    def arbitrate(
        self,
        assertions: list[Assertion],
        reviews: list[AssertionReview],
    ) -> ArbitrationReport:
        by_id = {r.assertion_id: r for r in reviews}
        results: list[ArbitrationResult] = []
        updated: list[Assertion] = []
        for assertion in assertions:
            review = by_id.get(assertion.assertion_id)
            result = arbitrate_assertion(assertion, review)
            results.append(result)
            changes: dict[str, Any] = {"final_verdict": result.final_verdict}
            if review is not None:
                changes["review_verdict"] = review.review_verdict
                if result.conflict_detected:
                    changes["conflict_type"] = review.conflict_type or ConflictType.FACT_CONFLICT
            updated.append(assertion.model_copy(update=changes))
        return ArbitrationReport(results=results, assertions=updated, summary=summarize(results))

    def arbitrate_raw(self, assertions: list[Assertion], raw_reviews: dict[str, Any]) -> ArbitrationReport:
        reviews, false_positives, false_negatives = parse_review_file(raw_reviews)
        report = self.arbitrate(assertions, reviews)
        report.false_positives = false_positives
        report.false_negatives = false_negatives
        return report
