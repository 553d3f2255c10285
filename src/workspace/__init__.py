"""Run workspace layout and manifest handling."""

from src.workspace.manager import (
    WORKSPACE_SUBDIRS,
    WorkspaceStructure,
    calculate_checksum,
    calculate_checksums,
    create_workspace,
    delete_workspace,
    get_workspace_structure,
    list_workspaces,
    validate_run_id,
    workspace_exists,
)
from src.workspace.manifest import (
    DegradationDecision,
    Manifest,
    add_decision_log_entry,
    add_degradation_decision,
    create_manifest,
    load_manifest,
    save_manifest,
    update_artifact_checksums,
    update_env_fingerprint,
    update_manifest_status,
    update_quality_metrics,
    validate_manifest,
    validate_manifest_file,
)

__all__ = [
    "WORKSPACE_SUBDIRS",
    "DegradationDecision",
    "Manifest",
    "WorkspaceStructure",
    "add_decision_log_entry",
    "add_degradation_decision",
    "calculate_checksum",
    "calculate_checksums",
    "create_manifest",
    "create_workspace",
    "delete_workspace",
    "get_workspace_structure",
    "list_workspaces",
    "load_manifest",
    "save_manifest",
    "update_artifact_checksums",
    "update_env_fingerprint",
    "update_manifest_status",
    "update_quality_metrics",
    "validate_manifest",
    "validate_manifest_file",
    "validate_run_id",
    "workspace_exists",
]
