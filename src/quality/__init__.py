"""Quality gate metrics and traceability checks.

Pure functions over requirements, test cases, assertions and run history
that decide whether a run's results meet the gate thresholds.
"""

from src.quality.gate import (
    GateResult,
    P0CoverageCheck,
    QualityMetrics,
    calculate_all_metrics,
    check_p0_coverage,
    evaluate_gate,
    evaluate_traced_gate,
    format_gate_result,
)
from src.quality.metrics import (
    APRBreakdown,
    RCBreakdown,
    calculate_apr,
    calculate_fr,
    calculate_rc,
    get_apr_breakdown,
    get_flaky_test_cases,
    get_rc_breakdown,
)
from src.quality.traceability import (
    TraceabilityResult,
    TraceabilitySummary,
    build_traceability_chains,
    check_traceability,
    filter_traceable,
    get_excluded_assertions,
    get_traceability_summary,
)

__all__ = [
    "APRBreakdown",
    "GateResult",
    "P0CoverageCheck",
    "QualityMetrics",
    "RCBreakdown",
    "TraceabilityResult",
    "TraceabilitySummary",
    "build_traceability_chains",
    "calculate_all_metrics",
    "calculate_apr",
    "calculate_fr",
    "calculate_rc",
    "check_p0_coverage",
    "check_traceability",
    "evaluate_gate",
    "evaluate_traced_gate",
    "filter_traceable",
    "format_gate_result",
    "get_apr_breakdown",
    "get_excluded_assertions",
    "get_flaky_test_cases",
    "get_rc_breakdown",
    "get_traceability_summary",
]
