"""Run store for the PRD Test Conductor.

The orchestrator never touches persistence directly; it calls RunRepository
methods that return Pydantic models. InMemoryRunRepository is the bundled
implementation used by the CLI and tests; a relational backend implements the
same interface.
"""

from __future__ import annotations

import abc
import threading
from datetime import UTC, datetime
from typing import Any, Optional

from src.core.exceptions import RunNotFoundError, StoreError
from src.core.models import Run, RunHistory, TargetProfile


class RunRepository(abc.ABC):
    """Narrow store interface consumed by the lifecycle and the runner."""

    @abc.abstractmethod
    def create(self, run: Run) -> Run:
        ...

    @abc.abstractmethod
    def find_by_id(self, run_id: str) -> Optional[Run]:
        ...

    @abc.abstractmethod
    def update(self, run_id: str, **fields: Any) -> Run:
        """Apply field changes to a run and return the stored result.

        Raises RunNotFoundError when the run does not exist.
        """

    @abc.abstractmethod
    def list_runs_for_project(self, project_id: str) -> list[Run]:
        ...

    @abc.abstractmethod
    def find_target_profile(self, project_id: str) -> Optional[TargetProfile]:
        ...

    @abc.abstractmethod
    def record_run_history(self, project_id: str, history: RunHistory) -> None:
        """Store a run's case outcomes, replacing any earlier entry for the same run."""

    @abc.abstractmethod
    def find_run_history(self, project_id: str, limit: int = 10) -> list[RunHistory]:
        """Most recent case outcomes for a project, newest first."""

    def get(self, run_id: str) -> Run:
        run = self.find_by_id(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run


class InMemoryRunRepository(RunRepository):
    """Thread-safe dict-backed store. Returned models are copies."""

    def __init__(self):
        self._runs: dict[str, Run] = {}
        self._profiles: dict[str, TargetProfile] = {}
        self._history: dict[str, list[RunHistory]] = {}
        self._lock = threading.Lock()

    # -------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------

    def create(self, run: Run) -> Run:
        with self._lock:
            if run.id in self._runs:
                raise StoreError(f"Test run with id {run.id} already exists")
            self._runs[run.id] = run.model_copy(deep=True)
        return run.model_copy(deep=True)

    def find_by_id(self, run_id: str) -> Optional[Run]:
        with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    def update(self, run_id: str, **fields: Any) -> Run:
        unknown = set(fields) - set(Run.model_fields)
        if unknown:
            raise StoreError(f"Unknown run fields: {', '.join(sorted(unknown))}")
        with self._lock:
            current = self._runs.get(run_id)
            if current is None:
                raise RunNotFoundError(run_id)
            data = current.model_dump()
            data.update(fields)
            data["updated_at"] = datetime.now(UTC)
            updated = Run.model_validate(data)
            self._runs[run_id] = updated
            return updated.model_copy(deep=True)

    def list_runs_for_project(self, project_id: str) -> list[Run]:
        with self._lock:
            runs = [r.model_copy(deep=True) for r in self._runs.values() if r.project_id == project_id]
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    # -------------------------------------------------------------------
    # Target profiles
    # -------------------------------------------------------------------

    def save_target_profile(self, profile: TargetProfile) -> TargetProfile:
        with self._lock:
            self._profiles[profile.project_id] = profile.model_copy(deep=True)
        return profile

    def find_target_profile(self, project_id: str) -> Optional[TargetProfile]:
        with self._lock:
            profile = self._profiles.get(project_id)
            return profile.model_copy(deep=True) if profile else None

    # -------------------------------------------------------------------
    # Case history (flaky rate input)
    # -------------------------------------------------------------------

    def record_run_history(self, project_id: str, history: RunHistory) -> None:
        with self._lock:
            entries = [
                h for h in self._history.get(project_id, []) if h.run_id != history.run_id
            ]
            entries.append(history.model_copy(deep=True))
            self._history[project_id] = entries

    def find_run_history(self, project_id: str, limit: int = 10) -> list[RunHistory]:
        with self._lock:
            entries = list(self._history.get(project_id, []))
        entries.sort(key=lambda h: h.executed_at, reverse=True)
        return [h.model_copy(deep=True) for h in entries[:limit]]
