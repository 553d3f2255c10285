"""Per-run workspace directories on disk."""

from __future__ import annotations

import hashlib
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from src.core.exceptions import WorkspaceError

logger = logging.getLogger("conductor.workspace.manager")

WORKSPACE_SUBDIRS: tuple[str, ...] = (
    "source-context",
    "evidence",
    "evidence/screenshots",
    "evidence/traces",
    "inputs",
    "outputs",
    "logs",
)

_RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass
class WorkspaceStructure:
    root: Path
    source_context: Path
    evidence: Path
    screenshots: Path
    traces: Path
    inputs: Path
    outputs: Path
    logs: Path
    manifest: Path


def validate_run_id(run_id: str) -> str:
    """Reject run ids that could escape the workspace base directory."""
    if not run_id or not isinstance(run_id, str):
        raise WorkspaceError("Invalid run id: must be a non-empty string")
    if not _RUN_ID_PATTERN.match(run_id):
        raise WorkspaceError(f"Invalid run id '{run_id}': contains invalid characters")
    return run_id


def get_workspace_structure(base_dir: str | Path, run_id: str) -> WorkspaceStructure:
    root = Path(base_dir) / run_id
    return WorkspaceStructure(
        root=root,
        source_context=root / "source-context",
        evidence=root / "evidence",
        screenshots=root / "evidence" / "screenshots",
        traces=root / "evidence" / "traces",
        inputs=root / "inputs",
        outputs=root / "outputs",
        logs=root / "logs",
        manifest=root / "manifest.json",
    )


def create_workspace(base_dir: str | Path, run_id: str) -> WorkspaceStructure:
    validate_run_id(run_id)
    structure = get_workspace_structure(base_dir, run_id)
    try:
        structure.root.mkdir(parents=True, exist_ok=True)
        for subdir in WORKSPACE_SUBDIRS:
            (structure.root / subdir).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise WorkspaceError(f"Cannot create workspace for run {run_id}: {e}") from e
    logger.info("Workspace ready at %s", structure.root)
    return structure


def workspace_exists(base_dir: str | Path, run_id: str) -> bool:
    root = Path(base_dir) / run_id
    if not root.is_dir():
        return False
    return all((root / subdir).is_dir() for subdir in WORKSPACE_SUBDIRS)


def delete_workspace(base_dir: str | Path, run_id: str) -> None:
    validate_run_id(run_id)
    shutil.rmtree(Path(base_dir) / run_id, ignore_errors=True)


def list_workspaces(base_dir: str | Path) -> list[str]:
    base = Path(base_dir)
    if not base.is_dir():
        return []
    return sorted(entry.name for entry in base.iterdir() if entry.is_dir())


def calculate_checksum(path: str | Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def calculate_checksums(paths: list[Path]) -> dict[str, str]:
    """sha256 per existing file, keyed by file name. Missing files are skipped."""
    checksums = {}
    for path in paths:
        if Path(path).is_file():
            checksums[Path(path).name] = calculate_checksum(path)
    return checksums
