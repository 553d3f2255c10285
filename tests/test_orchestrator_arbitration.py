"""Tests for src/orchestrator/arbitration.py."""

from __future__ import annotations

import pytest

from src.core.models import ConflictType, ReviewVerdict, Verdict
from src.orchestrator.arbitration import (
    AssertionReview,
    CrossValidationArbiter,
    arbitrate_assertion,
    arbitrate_deterministic,
    arbitrate_soft,
    original_verdict,
    parse_review,
    parse_review_file,
    parse_review_verdict,
)
from tests.conftest import make_assertion


def _review(assertion_id: str, verdict: ReviewVerdict, conflict: ConflictType | None = None) -> AssertionReview:
    return AssertionReview(
        assertion_id=assertion_id, case_id="TC-1", review_verdict=verdict, conflict_type=conflict,
    )


class TestParsing:
    @pytest.mark.parametrize("raw,expected", [
        ("agree", ReviewVerdict.AGREE),
        (" DISAGREE ", ReviewVerdict.DISAGREE),
        ("maybe", ReviewVerdict.UNCERTAIN),
        (None, ReviewVerdict.UNCERTAIN),
    ])
    def test_review_verdict(self, raw, expected):
        assert parse_review_verdict(raw) == expected

    def test_parse_review_camel_case(self):
        review = parse_review({
            "assertionId": "A-1", "caseId": "TC-1", "reviewVerdict": "disagree",
            "conflictType": "evidence-missing", "reasoning": "no screenshot",
        })
        assert review.assertion_id == "A-1"
        assert review.review_verdict == ReviewVerdict.DISAGREE
        assert review.conflict_type == ConflictType.EVIDENCE_MISSING

    def test_parse_review_file(self):
        reviews, fps, fns = parse_review_file({
            "reviews": [{"assertion_id": "A-1", "review_verdict": "agree"}, "junk"],
            "falsePositives": ["A-2"],
        })
        assert len(reviews) == 1
        assert fps == ["A-2"]
        assert fns == []

    def test_parse_review_file_requires_list(self):
        with pytest.raises(ValueError):
            parse_review_file({"reviews": "none"})


class TestRules:
    def test_deterministic(self):
        assert arbitrate_deterministic(Verdict.PASS, ReviewVerdict.AGREE) == (
            Verdict.PASS, "Reviewer agrees with machine verdict", False,
        )
        final, _, conflict = arbitrate_deterministic(Verdict.PASS, ReviewVerdict.DISAGREE)
        assert (final, conflict) == (Verdict.FAIL, True)
        final, _, conflict = arbitrate_deterministic(Verdict.FAIL, ReviewVerdict.UNCERTAIN)
        assert (final, conflict) == (Verdict.FAIL, False)

    def test_soft(self):
        assert arbitrate_soft(Verdict.PASS, ReviewVerdict.AGREE)[0] == Verdict.PASS
        assert arbitrate_soft(Verdict.PASS, ReviewVerdict.DISAGREE)[2] is True
        final, _, conflict = arbitrate_soft(Verdict.PASS, ReviewVerdict.UNCERTAIN)
        assert (final, conflict) == (Verdict.FAIL, True)

    def test_original_verdict_source(self):
        hard = make_assertion("A-1", "TC-1", machine=Verdict.FAIL)
        soft = make_assertion("A-2", "TC-1", machine=Verdict.PASS, soft=True)
        missing = make_assertion("A-3", "TC-1", machine=None)
        assert original_verdict(hard) == Verdict.FAIL
        assert original_verdict(soft) == Verdict.PASS
        assert original_verdict(missing) == Verdict.ERROR

    def test_missing_review_keeps_verdict(self):
        result = arbitrate_assertion(make_assertion("A-1", "TC-1", machine=Verdict.PASS), None)
        assert result.final_verdict == Verdict.PASS
        assert not result.conflict_detected


class TestCrossValidationArbiter:
    def test_arbitrate_updates_assertions(self):
        assertions = [
            make_assertion("A-1", "TC-1", final=None, machine=Verdict.PASS),
            make_assertion("A-2", "TC-1", final=None, machine=Verdict.PASS),
            make_assertion("A-3", "TC-1", final=None, machine=Verdict.PASS, soft=True),
            make_assertion("A-4", "TC-1", final=None, machine=Verdict.FAIL),
        ]
        reviews = [
            _review("A-1", ReviewVerdict.AGREE),
            _review("A-2", ReviewVerdict.DISAGREE),
            _review("A-3", ReviewVerdict.UNCERTAIN, ConflictType.THRESHOLD_CONFLICT),
        ]
        report = CrossValidationArbiter().arbitrate(assertions, reviews)
        by_id = {a.assertion_id: a for a in report.assertions}

        assert by_id["A-1"].final_verdict == Verdict.PASS
        assert by_id["A-2"].final_verdict == Verdict.FAIL
        assert by_id["A-2"].conflict_type == ConflictType.FACT_CONFLICT
        assert by_id["A-3"].conflict_type == ConflictType.THRESHOLD_CONFLICT
        assert by_id["A-4"].final_verdict == Verdict.FAIL
        assert by_id["A-4"].review_verdict is None

        assert report.summary.total == 4
        assert report.summary.passed == 1
        assert report.summary.failed == 3
        assert report.summary.conflicts == 2
        assert report.summary.to_dict()["agreement_rate"] == 0.5

    def test_arbitrate_raw(self):
        report = CrossValidationArbiter().arbitrate_raw(
            [make_assertion("A-1", "TC-1", final=None)],
            {"reviews": [{"assertionId": "A-1", "reviewVerdict": "agree"}], "false_negatives": ["A-9"]},
        )
        assert report.assertions[0].final_verdict == Verdict.PASS
        assert report.false_negatives == ["A-9"]

    def test_empty(self):
        report = CrossValidationArbiter().arbitrate([], [])
        assert report.summary.total == 0
        assert report.summary.agreement_rate == 1.0
