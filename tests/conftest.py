"""Shared fixtures for PRD Test Conductor tests.

All tests use real components: the in-memory run store, real threads and a
tmp_path workspace. Collaborators are plain functions wrapped as agents.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from dotenv import load_dotenv

# Load .env from project root so WORKSPACE_DIR etc. behave like a local run
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

from src.core.config import AppConfig, load_config
from src.core.models import (
    Assertion,
    AssertionType,
    Requirement,
    RequirementPriority,
    TargetProfile,
    TestCase,
    Verdict,
)
from src.db.repository import InMemoryRunRepository
from src.orchestrator.lifecycle import RunLifecycle
from src.orchestrator.state_machine import StateMachine


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"


@pytest.fixture
def app_config(config_dir: Path) -> AppConfig:
    return load_config(config_dir=config_dir)


@pytest.fixture
def workspace_config(tmp_path: Path) -> AppConfig:
    """Default config with the workspace root inside tmp_path."""
    return AppConfig.model_validate({
        "workspace": {
            "root": str(tmp_path / "workspace"),
            "prompts_dir": str(tmp_path / "prompts"),
        },
    })


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def repository() -> InMemoryRunRepository:
    return InMemoryRunRepository()


@pytest.fixture
def lifecycle(repository: InMemoryRunRepository) -> RunLifecycle:
    return RunLifecycle(repository, StateMachine())


@pytest.fixture
def sample_profile() -> TargetProfile:
    return TargetProfile(
        project_id="proj-1",
        base_url="http://localhost:3000",
        allowed_routes=["/login", "/dashboard"],
    )


# ---------------------------------------------------------------------------
# Artifact builders
# ---------------------------------------------------------------------------

def make_requirement(
    requirement_id: str,
    priority: RequirementPriority = RequirementPriority.P1,
    testable: bool = True,
) -> Requirement:
    return Requirement(
        requirement_id=requirement_id,
        title=f"Requirement {requirement_id}",
        priority=priority,
        testable=testable,
    )


def make_case(case_id: str, requirement_id: str) -> TestCase:
    return TestCase(case_id=case_id, requirement_id=requirement_id, title=f"Case {case_id}")


def make_assertion(
    assertion_id: str,
    case_id: str,
    final: Verdict | None = Verdict.PASS,
    machine: Verdict | None = Verdict.PASS,
    soft: bool = False,
    evidence: str | None = "evidence/screenshots/shot.png",
) -> Assertion:
    return Assertion(
        assertion_id=assertion_id,
        case_id=case_id,
        type=AssertionType.SOFT if soft else AssertionType.ELEMENT_VISIBLE,
        machine_verdict=None if soft else machine,
        agent_verdict=machine if soft else None,
        final_verdict=final,
        evidence_path=evidence,
    )
