"""In-process registry of runs with an active pipeline thread."""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from typing import Optional

from src.core.exceptions import PipelineAlreadyRunningError

logger = logging.getLogger("conductor.orchestrator.registry")


class RunRegistry:
    """Lock-guarded map of run id -> start time.

    Only guards a single process; several conductor processes sharing one
    store need a distributed lock instead.
    """

    def __init__(self):
        self._running: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def start(self, run_id: str, state: Optional[str] = None) -> None:
        """Claim a run. Raises PipelineAlreadyRunningError if already claimed."""
        with self._lock:
            if run_id in self._running:
                raise PipelineAlreadyRunningError(run_id, state)
            self._running[run_id] = datetime.now(UTC)
        logger.debug("Registered pipeline for run %s", run_id)

    def stop(self, run_id: str) -> bool:
        with self._lock:
            removed = self._running.pop(run_id, None) is not None
        if removed:
            logger.debug("Released pipeline for run %s", run_id)
        return removed

    def is_running(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._running

    def started_at(self, run_id: str) -> Optional[datetime]:
        with self._lock:
            return self._running.get(run_id)

    @property
    def running_count(self) -> int:
        with self._lock:
            return len(self._running)

    def running_ids(self) -> list[str]:
        with self._lock:
            return list(self._running)
