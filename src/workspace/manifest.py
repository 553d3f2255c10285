"""Run manifest: the on-disk audit record kept beside a run's artifacts.

Helpers return updated copies and never mutate their input.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from src.core.exceptions import WorkspaceError
from src.core.models import (
    AgentVersions,
    DecisionLogEntry,
    EnvFingerprint,
    PromptVersions,
    ReasonCode,
    RunState,
)

REQUIRED_MANIFEST_FIELDS: tuple[str, ...] = (
    "run_id",
    "project_id",
    "status",
    "agent_versions",
    "prompt_versions",
    "artifact_checksums",
    "decision_log",
    "env_fingerprint",
    "degradation_decisions",
    "created_at",
    "updated_at",
)


def _now() -> datetime:
    return datetime.now(UTC)


class DegradationDecision(BaseModel):
    feature: str
    original_mode: str
    fallback_mode: str
    reason: str
    timestamp: datetime = Field(default_factory=_now)


class Manifest(BaseModel):
    run_id: str
    project_id: str
    status: RunState = RunState.CREATED
    reason_code: Optional[ReasonCode] = None
    agent_versions: AgentVersions = Field(default_factory=AgentVersions)
    prompt_versions: PromptVersions = Field(default_factory=PromptVersions)
    artifact_checksums: dict[str, str] = Field(default_factory=dict)
    decision_log: list[DecisionLogEntry] = Field(default_factory=list)
    env_fingerprint: EnvFingerprint = Field(default_factory=EnvFingerprint)
    quality_metrics: Optional[dict[str, Any]] = None
    degradation_decisions: list[DegradationDecision] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


def create_manifest(
    run_id: str,
    project_id: str,
    agent_versions: Optional[AgentVersions] = None,
    prompt_versions: Optional[PromptVersions] = None,
    env_fingerprint: Optional[EnvFingerprint] = None,
) -> Manifest:
    return Manifest(
        run_id=run_id,
        project_id=project_id,
        agent_versions=agent_versions or AgentVersions(),
        prompt_versions=prompt_versions or PromptVersions(),
        env_fingerprint=env_fingerprint or EnvFingerprint(),
    )


def save_manifest(path: str | Path, manifest: Manifest) -> Manifest:
    saved = manifest.model_copy(update={"updated_at": _now()})
    Path(path).write_text(saved.model_dump_json(indent=2), encoding="utf-8")
    return saved


def load_manifest(path: str | Path) -> Manifest:
    path = Path(path)
    try:
        return Manifest.model_validate_json(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise WorkspaceError(f"Manifest not found: {path}") from e
    except ValidationError as e:
        raise WorkspaceError(f"Invalid manifest {path}: {e}") from e


def _touch(manifest: Manifest, **changes: Any) -> Manifest:
    changes["updated_at"] = _now()
    return manifest.model_copy(update=changes)


def update_manifest_status(
    manifest: Manifest,
    status: RunState,
    reason_code: Optional[ReasonCode] = None,
) -> Manifest:
    return _touch(manifest, status=status, reason_code=reason_code)


def add_decision_log_entry(manifest: Manifest, entry: DecisionLogEntry) -> Manifest:
    return _touch(manifest, decision_log=[*manifest.decision_log, entry])


def update_artifact_checksums(manifest: Manifest, checksums: dict[str, str]) -> Manifest:
    return _touch(manifest, artifact_checksums={**manifest.artifact_checksums, **checksums})


def add_degradation_decision(
    manifest: Manifest,
    feature: str,
    original_mode: str,
    fallback_mode: str,
    reason: str,
) -> Manifest:
    decision = DegradationDecision(
        feature=feature,
        original_mode=original_mode,
        fallback_mode=fallback_mode,
        reason=reason,
    )
    return _touch(manifest, degradation_decisions=[*manifest.degradation_decisions, decision])


def update_quality_metrics(manifest: Manifest, metrics: dict[str, Any]) -> Manifest:
    return _touch(manifest, quality_metrics=dict(metrics))


def update_env_fingerprint(manifest: Manifest, **fingerprint: Optional[str]) -> Manifest:
    merged = manifest.env_fingerprint.model_copy(update=fingerprint)
    return _touch(manifest, env_fingerprint=merged)


def get_missing_fields(data: Any) -> list[str]:
    """Required top-level fields absent from a raw manifest document."""
    if not isinstance(data, dict):
        return list(REQUIRED_MANIFEST_FIELDS)
    return [name for name in REQUIRED_MANIFEST_FIELDS if name not in data]


def validate_manifest(data: Any) -> tuple[bool, list[str]]:
    """Check a raw manifest document. Returns (valid, problems)."""
    missing = get_missing_fields(data)
    if missing:
        return False, [f"missing field: {name}" for name in missing]
    try:
        Manifest.model_validate(data)
    except ValidationError as e:
        return False, [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
    return True, []


def validate_manifest_file(path: str | Path) -> tuple[bool, list[str]]:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        return False, [f"manifest not found: {path}"]
    except json.JSONDecodeError as e:
        return False, [f"invalid JSON: {e}"]
    return validate_manifest(data)
