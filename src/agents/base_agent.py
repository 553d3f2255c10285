"""Abstract base agent for the PRD Test Conductor.

Every external collaborator (document parser, test executor, result reviewer)
is wrapped in a BaseAgent so the runner gets the same AgentResult contract,
timing and failure classification regardless of what does the actual work.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

from src.core.exceptions import StepFailedError
from src.core.models import AgentResult, ReasonCode


class BaseAgent(ABC):
    """Base class for all conductor agents.

    Every agent follows the same lifecycle:
    1. Receive a request model
    2. Process (invoke the collaborator, parse its output)
    3. Return an AgentResult with structured data
    4. Log metrics and errors throughout

    Subclasses must implement `process()`. Dependencies are injected via
    __init__; there is no global state.
    """

    # Reason code recorded when process() raises anything but a timeout.
    failure_reason_code: Optional[ReasonCode] = None

    def __init__(self, name: str, role: str, version: str = "unknown"):
        """Initialize agent with name and role.

        Args:
            name: Human-readable agent name (e.g., "DocumentParser").
            role: Collaborator role key ("parser", "executor", "reviewer").
            version: Collaborator version recorded on the run.
        """
        self.name = name
        self.role = role
        self.version = version
        self.logger = logging.getLogger(f"conductor.agent.{name.lower()}")
        self._metrics: dict[str, Any] = {
            "total_processed": 0,
            "total_errors": 0,
            "last_duration_seconds": 0.0,
        }

    @abstractmethod
    def process(self, input_data: Any) -> AgentResult:
        """Process input and return a structured result.

        Args:
            input_data: Agent-specific request model.

        Returns:
            AgentResult with status, data, and optional error.
        """

    def run(self, input_data: Any) -> AgentResult:
        """Execute the agent with lifecycle logging and metrics.

        Wraps process() with start/complete/error tracking. Exceptions become
        a failure result carrying a reason code; they are never re-raised.
        """
        self._log_start(input_data)
        start = time.monotonic()

        try:
            result = self.process(input_data)
            duration = time.monotonic() - start
            result.duration_seconds = duration
            self._metrics["total_processed"] += 1
            self._metrics["last_duration_seconds"] = duration
            self._log_complete(duration, result)
            return result
        except Exception as e:
            duration = time.monotonic() - start
            self._metrics["total_errors"] += 1
            self._metrics["last_duration_seconds"] = duration
            self._log_error(e)
            return AgentResult(
                agent_name=self.name,
                status="failure",
                error=str(e) or type(e).__name__,
                reason_code=self._classify(e),
                duration_seconds=duration,
            )

    def _classify(self, error: Exception) -> Optional[ReasonCode]:
        if isinstance(error, TimeoutError):
            return ReasonCode.AGENT_TIMEOUT
        if isinstance(error, StepFailedError) and error.reason_code:
            return ReasonCode(error.reason_code)
        return self.failure_reason_code

    def _log_start(self, input_data: Any) -> None:
        context = _summarize_input(input_data)
        self.logger.info("[%s] Starting: %s", self.name, context)

    def _log_complete(self, duration: float, result: AgentResult) -> None:
        self.logger.info(
            "[%s] Complete: status=%s (%.2fs)",
            self.name, result.status, duration,
        )

    def _log_error(self, error: Exception) -> None:
        self.logger.error(
            "[%s] Error: %s", self.name, error, exc_info=True,
        )

    def get_metrics(self) -> dict[str, Any]:
        """Return a copy of the agent's runtime metrics."""
        return self._metrics.copy()


def _summarize_input(input_data: Any) -> str:
    """Create a short log-safe summary of agent input."""
    if hasattr(input_data, "run_id"):
        return f"run='{input_data.run_id}'"
    return type(input_data).__name__
