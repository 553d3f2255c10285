"""Tests for src/workspace/manifest.py."""

import json
from pathlib import Path

import pytest

from src.core.exceptions import WorkspaceError
from src.core.models import AgentVersions, DecisionLogEntry, ReasonCode, RunState, StateEvent
from src.workspace.manifest import (
    REQUIRED_MANIFEST_FIELDS,
    add_decision_log_entry,
    add_degradation_decision,
    create_manifest,
    get_missing_fields,
    load_manifest,
    save_manifest,
    update_artifact_checksums,
    update_env_fingerprint,
    update_manifest_status,
    update_quality_metrics,
    validate_manifest,
    validate_manifest_file,
)


class TestManifest:
    def test_create_defaults(self):
        manifest = create_manifest("run-1", "proj-1", agent_versions=AgentVersions(parser="2.1"))
        assert manifest.status == RunState.CREATED
        assert manifest.agent_versions.parser == "2.1"
        assert manifest.decision_log == []
        assert manifest.degradation_decisions == []

    def test_save_and_load(self, tmp_path: Path):
        path = tmp_path / "manifest.json"
        saved = save_manifest(path, create_manifest("run-1", "proj-1"))
        loaded = load_manifest(path)
        assert loaded == saved
        assert saved.updated_at >= saved.created_at

    def test_saved_document_has_required_fields(self, tmp_path: Path):
        path = tmp_path / "manifest.json"
        save_manifest(path, create_manifest("run-1", "proj-1"))
        data = json.loads(path.read_text())
        assert get_missing_fields(data) == []
        assert set(REQUIRED_MANIFEST_FIELDS) <= set(data)

    def test_load_missing(self, tmp_path: Path):
        with pytest.raises(WorkspaceError, match="not found"):
            load_manifest(tmp_path / "nope.json")

    def test_load_invalid(self, tmp_path: Path):
        path = tmp_path / "manifest.json"
        path.write_text(json.dumps({"run_id": "r"}))
        with pytest.raises(WorkspaceError, match="Invalid manifest"):
            load_manifest(path)


class TestUpdates:
    def test_status(self):
        manifest = update_manifest_status(
            create_manifest("r", "p"), RunState.FAILED, ReasonCode.PLAYWRIGHT_ERROR,
        )
        assert manifest.status == RunState.FAILED
        assert manifest.reason_code == ReasonCode.PLAYWRIGHT_ERROR

    def test_updates_return_new_objects(self):
        original = create_manifest("r", "p")
        entry = DecisionLogEntry(from_state=RunState.CREATED, to_state=RunState.PARSING,
                                 event=StateEvent.START_PARSING)
        updated = add_decision_log_entry(original, entry)
        assert original.decision_log == []
        assert updated.decision_log == [entry]

    def test_checksums_merge(self):
        manifest = update_artifact_checksums(create_manifest("r", "p"), {"a.json": "1"})
        manifest = update_artifact_checksums(manifest, {"b.json": "2", "a.json": "3"})
        assert manifest.artifact_checksums == {"a.json": "3", "b.json": "2"}

    def test_degradation(self):
        manifest = add_degradation_decision(
            create_manifest("r", "p"), "source_indexing", "source_and_prd", "prd_only", "no router file",
        )
        decision = manifest.degradation_decisions[0]
        assert decision.fallback_mode == "prd_only"
        assert decision.reason == "no router file"

    def test_metrics_and_fingerprint(self):
        manifest = update_quality_metrics(create_manifest("r", "p"), {"passed": True})
        manifest = update_env_fingerprint(manifest, git_commit="abc123")
        assert manifest.quality_metrics == {"passed": True}
        assert manifest.env_fingerprint.git_commit == "abc123"
        assert manifest.env_fingerprint.service_version is None


class TestValidation:
    def test_missing_fields(self):
        valid, problems = validate_manifest({"run_id": "r"})
        assert not valid
        assert "missing field: status" in problems

    def test_not_a_dict(self):
        valid, problems = validate_manifest([1, 2])
        assert not valid
        assert len(problems) == len(REQUIRED_MANIFEST_FIELDS)

    def test_bad_status_value(self):
        data = json.loads(create_manifest("r", "p").model_dump_json())
        data["status"] = "exploded"
        valid, problems = validate_manifest(data)
        assert not valid
        assert problems[0].startswith("status")

    def test_file(self, tmp_path: Path):
        path = tmp_path / "manifest.json"
        save_manifest(path, create_manifest("r", "p"))
        assert validate_manifest_file(path) == (True, [])
        (tmp_path / "broken.json").write_text("{")
        valid, problems = validate_manifest_file(tmp_path / "broken.json")
        assert not valid
        assert problems[0].startswith("invalid JSON")
        assert validate_manifest_file(tmp_path / "none.json")[0] is False
