"""Tests for src/workspace/manager.py."""

import hashlib
from pathlib import Path

import pytest

from src.core.exceptions import WorkspaceError
from src.workspace.manager import (
    WORKSPACE_SUBDIRS,
    calculate_checksum,
    calculate_checksums,
    create_workspace,
    delete_workspace,
    get_workspace_structure,
    list_workspaces,
    validate_run_id,
    workspace_exists,
)


class TestRunIdValidation:
    @pytest.mark.parametrize("run_id", ["abc", "run_1", "a-b-C-9"])
    def test_valid(self, run_id):
        assert validate_run_id(run_id) == run_id

    @pytest.mark.parametrize("run_id", ["", "../etc", "a/b", "run 1", "run.1"])
    def test_invalid(self, run_id):
        with pytest.raises(WorkspaceError):
            validate_run_id(run_id)


class TestWorkspace:
    def test_create_layout(self, tmp_path: Path):
        structure = create_workspace(tmp_path, "run-1")
        for subdir in WORKSPACE_SUBDIRS:
            assert (tmp_path / "run-1" / subdir).is_dir()
        assert structure.screenshots == tmp_path / "run-1" / "evidence" / "screenshots"
        assert structure.manifest == tmp_path / "run-1" / "manifest.json"
        assert workspace_exists(tmp_path, "run-1")

    def test_create_is_idempotent(self, tmp_path: Path):
        create_workspace(tmp_path, "run-1")
        (tmp_path / "run-1" / "outputs" / "keep.json").write_text("{}")
        create_workspace(tmp_path, "run-1")
        assert (tmp_path / "run-1" / "outputs" / "keep.json").exists()

    def test_create_rejects_bad_id(self, tmp_path: Path):
        with pytest.raises(WorkspaceError):
            create_workspace(tmp_path, "../escape")

    def test_structure_without_creating(self, tmp_path: Path):
        structure = get_workspace_structure(tmp_path, "run-2")
        assert structure.outputs == tmp_path / "run-2" / "outputs"
        assert not workspace_exists(tmp_path, "run-2")

    def test_partial_workspace_not_counted(self, tmp_path: Path):
        (tmp_path / "run-3" / "inputs").mkdir(parents=True)
        assert not workspace_exists(tmp_path, "run-3")

    def test_list_and_delete(self, tmp_path: Path):
        create_workspace(tmp_path, "b")
        create_workspace(tmp_path, "a")
        assert list_workspaces(tmp_path) == ["a", "b"]
        delete_workspace(tmp_path, "a")
        assert list_workspaces(tmp_path) == ["b"]
        assert list_workspaces(tmp_path / "none") == []


class TestChecksums:
    def test_sha256(self, tmp_path: Path):
        path = tmp_path / "data.json"
        path.write_bytes(b'{"a": 1}')
        assert calculate_checksum(path) == hashlib.sha256(b'{"a": 1}').hexdigest()

    def test_many_skips_missing(self, tmp_path: Path):
        (tmp_path / "a.json").write_text("a")
        checksums = calculate_checksums([tmp_path / "a.json", tmp_path / "missing.json"])
        assert list(checksums) == ["a.json"]
