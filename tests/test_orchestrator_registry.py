"""Tests for src/orchestrator/registry.py."""

import threading

import pytest

from src.core.exceptions import PipelineAlreadyRunningError
from src.orchestrator.registry import RunRegistry


class TestRunRegistry:
    def test_start_stop(self):
        registry = RunRegistry()
        registry.start("r1")
        assert registry.is_running("r1")
        assert registry.started_at("r1") is not None
        assert registry.running_count == 1
        assert registry.stop("r1") is True
        assert registry.stop("r1") is False
        assert not registry.is_running("r1")

    def test_double_start_rejected(self):
        registry = RunRegistry()
        registry.start("r1")
        with pytest.raises(PipelineAlreadyRunningError, match="already running"):
            registry.start("r1", "executing")

    def test_running_ids(self):
        registry = RunRegistry()
        registry.start("a")
        registry.start("b")
        assert sorted(registry.running_ids()) == ["a", "b"]

    def test_only_one_concurrent_claim_wins(self):
        registry = RunRegistry()
        wins: list[int] = []
        losses: list[int] = []
        barrier = threading.Barrier(10)

        def claim(i: int):
            barrier.wait()
            try:
                registry.start("shared")
                wins.append(i)
            except PipelineAlreadyRunningError:
                losses.append(i)

        threads = [threading.Thread(target=claim, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(wins) == 1
        assert len(losses) == 9
