"""Tests for src/db/repository.py — in-memory run store."""

import threading
from datetime import UTC, datetime, timedelta

import pytest

from src.core.exceptions import RunNotFoundError, StoreError
from src.core.models import CaseExecution, Run, RunHistory, RunState, TestCaseStatus
from src.db.repository import InMemoryRunRepository
from src.quality.metrics import calculate_fr


class TestRuns:
    def test_create_and_find(self, repository: InMemoryRunRepository):
        run = repository.create(Run(project_id="p", prd_path="docs/prd.md"))
        found = repository.find_by_id(run.id)
        assert found == run
        assert repository.find_by_id("missing") is None

    def test_duplicate_create(self, repository: InMemoryRunRepository):
        run = repository.create(Run(project_id="p", prd_path="a"))
        with pytest.raises(StoreError):
            repository.create(run)

    def test_get_raises_when_missing(self, repository: InMemoryRunRepository):
        with pytest.raises(RunNotFoundError):
            repository.get("nope")

    def test_update_fields(self, repository: InMemoryRunRepository):
        run = repository.create(Run(project_id="p", prd_path="a"))
        updated = repository.update(run.id, state=RunState.PARSING, report_path="r.md")
        assert updated.state == RunState.PARSING
        assert updated.report_path == "r.md"
        assert updated.updated_at >= run.updated_at
        assert repository.get(run.id).state == RunState.PARSING

    def test_update_unknown_field(self, repository: InMemoryRunRepository):
        run = repository.create(Run(project_id="p", prd_path="a"))
        with pytest.raises(StoreError, match="Unknown run fields"):
            repository.update(run.id, colour="blue")

    def test_update_missing_run(self, repository: InMemoryRunRepository):
        with pytest.raises(RunNotFoundError):
            repository.update("missing", state=RunState.FAILED)

    def test_returns_copies(self, repository: InMemoryRunRepository):
        run = repository.create(Run(project_id="p", prd_path="a"))
        fetched = repository.get(run.id)
        fetched.tested_routes.append("/mutated")
        assert repository.get(run.id).tested_routes == []

    def test_list_for_project(self, repository: InMemoryRunRepository):
        repository.create(Run(project_id="p", prd_path="a"))
        repository.create(Run(project_id="p", prd_path="b"))
        repository.create(Run(project_id="other", prd_path="c"))
        assert {r.prd_path for r in repository.list_runs_for_project("p")} == {"a", "b"}

    def test_concurrent_updates(self, repository: InMemoryRunRepository):
        run = repository.create(Run(project_id="p", prd_path="a"))

        def worker(i: int):
            repository.update(run.id, report_path=f"r{i}.md")

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert repository.get(run.id).report_path.startswith("r")


class TestProfilesAndHistory:
    def test_target_profile(self, repository: InMemoryRunRepository, sample_profile):
        repository.save_target_profile(sample_profile)
        assert repository.find_target_profile("proj-1").base_url == "http://localhost:3000"
        assert repository.find_target_profile("unknown") is None

    def test_history_newest_first_with_limit(self, repository: InMemoryRunRepository):
        base = datetime(2026, 1, 1, tzinfo=UTC)
        for i in range(5):
            repository.record_run_history("p", RunHistory(
                run_id=f"r{i}",
                executed_at=base + timedelta(days=i),
                case_executions=[CaseExecution(case_id="TC-1", status=TestCaseStatus.PASSED)],
            ))
        history = repository.find_run_history("p", limit=3)
        assert [h.run_id for h in history] == ["r4", "r3", "r2"]
        assert repository.find_run_history("other") == []

    def test_history_replaced_per_run(self, repository: InMemoryRunRepository):
        for status in (TestCaseStatus.FAILED, TestCaseStatus.PASSED, TestCaseStatus.PASSED):
            repository.record_run_history("p", RunHistory(
                run_id="r1",
                case_executions=[CaseExecution(case_id="TC-1", status=status)],
            ))
        history = repository.find_run_history("p")
        assert [h.run_id for h in history] == ["r1"]
        assert history[0].case_executions[0].status == TestCaseStatus.PASSED
        assert calculate_fr(history) is None
