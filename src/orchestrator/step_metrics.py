"""Pipeline step timing collector.

Records per-step execution data during pipeline attempts:
  {run_id, step, started_at, completed_at, duration_seconds, status, error}

Feeds the CLI and report with per-step timing and the slowest step.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Optional

from src.core.models import PipelineStep

logger = logging.getLogger("conductor.orchestrator.step_metrics")


@dataclass
class StepMetric:
    """Single step execution record within a pipeline attempt."""
    run_id: str
    step: PipelineStep
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    status: str = "running"
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


@dataclass
class PipelineAttempt:
    """One background thread's worth of steps for a run."""
    run_id: str
    attempt_number: int
    start_step: PipelineStep
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: Optional[datetime] = None
    step_metrics: list[StepMetric] = field(default_factory=list)
    outcome: str = "in_progress"  # "suspended", "failed", "discarded"

    @property
    def total_duration(self) -> float:
        return sum(m.duration_seconds for m in self.step_metrics)

    @property
    def bottleneck_step(self) -> Optional[PipelineStep]:
        if not self.step_metrics:
            return None
        return max(self.step_metrics, key=lambda m: m.duration_seconds).step


class StepMetrics:
    """Collects step timings across concurrent runs.

    Only the most recent ``max_attempts`` attempts are kept; older ones are
    dropped as new attempts start.
    """

    def __init__(self, max_attempts: int = 1000):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self._attempts: deque[PipelineAttempt] = deque(maxlen=max_attempts)
        self._current: dict[str, PipelineAttempt] = {}
        self._lock = threading.Lock()

    def start_attempt(self, run_id: str, start_step: PipelineStep) -> PipelineAttempt:
        with self._lock:
            previous = [a.attempt_number for a in self._attempts if a.run_id == run_id]
            number = max(previous, default=0) + 1
            attempt = PipelineAttempt(run_id=run_id, attempt_number=number, start_step=start_step)
            self._attempts.append(attempt)
            self._current[run_id] = attempt
        logger.info("Pipeline attempt #%d for run %s from %s", number, run_id, start_step.value)
        return attempt

    def start_step(self, run_id: str, step: PipelineStep) -> StepMetric:
        metric = StepMetric(run_id=run_id, step=step, started_at=datetime.now(UTC))
        with self._lock:
            attempt = self._current.get(run_id)
            if attempt:
                attempt.step_metrics.append(metric)
        return metric

    def complete_step(self, metric: StepMetric, status: str, error: Optional[str] = None) -> None:
        metric.completed_at = datetime.now(UTC)
        metric.status = status
        metric.error = error
        metric.duration_seconds = (metric.completed_at - metric.started_at).total_seconds()
        logger.info(
            "Run %s step '%s': status=%s, duration=%.2fs",
            metric.run_id, metric.step.value, status, metric.duration_seconds,
        )

    def complete_attempt(self, run_id: str, outcome: str) -> Optional[PipelineAttempt]:
        with self._lock:
            attempt = self._current.pop(run_id, None)
        if attempt is None:
            return None
        attempt.completed_at = datetime.now(UTC)
        attempt.outcome = outcome
        bottleneck = attempt.bottleneck_step
        logger.info(
            "Pipeline attempt #%d for run %s: outcome=%s, duration=%.2fs, bottleneck=%s",
            attempt.attempt_number,
            run_id,
            outcome,
            attempt.total_duration,
            bottleneck.value if bottleneck else "none",
        )
        return attempt

    def get_attempts(self, run_id: Optional[str] = None) -> list[PipelineAttempt]:
        with self._lock:
            if run_id:
                return [a for a in self._attempts if a.run_id == run_id]
            return list(self._attempts)

    def get_summary(self) -> dict:
        with self._lock:
            attempts = list(self._attempts)
        if not attempts:
            return {"total_attempts": 0}

        outcomes: dict[str, int] = {}
        for a in attempts:
            outcomes[a.outcome] = outcomes.get(a.outcome, 0) + 1
        return {
            "total_attempts": len(attempts),
            "total_duration_seconds": round(sum(a.total_duration for a in attempts), 2),
            "outcomes": outcomes,
        }
