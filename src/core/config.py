"""Configuration loader for the PRD Test Conductor.

Loads config from a YAML cascade: config/default.yaml is always loaded,
then environment-specific overrides, then environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from src.core.exceptions import ConfigError


# ---------------------------------------------------------------------------
# Config schema
# ---------------------------------------------------------------------------

class WorkspaceConfig(BaseModel):
    root: str = ".ai-test-workspace"
    prompts_dir: str = "prompts"


class PipelineConfig(BaseModel):
    max_regeneration_attempts: int = 3
    event_queue_size: int = 256
    idempotency_max_runs: int = 1024
    metrics_max_attempts: int = 1000
    # Extra roots searched for relative PRD paths (<root>/docs/prd, <root>/docs)
    prd_search_roots: list[str] = Field(default_factory=list)
    upload_dir: str = "data/uploads"


class QualityGateConfig(BaseModel):
    rc_threshold: float = 0.85
    apr_threshold: float = 0.95
    fr_threshold: float = 0.05
    block_on_p0_failure: bool = True
    min_history_runs: int = 3
    require_gate_for_confirmation: bool = True


class TimeoutConfig(BaseModel):
    approval_hours: float = 24.0
    confirmation_hours: float = 48.0


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class AppConfig(BaseModel):
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    quality_gate: QualityGateConfig = Field(default_factory=QualityGateConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def load_config(
    config_dir: Optional[Path] = None,
    env: Optional[str] = None,
) -> AppConfig:
    """Load application config from YAML cascade.

    Order: default.yaml -> {env}.yaml -> env vars (WORKSPACE_DIR, PROMPTS_DIR,
    CONDUCTOR_LOG_LEVEL)
    """
    if config_dir is None:
        config_dir = Path(__file__).parent.parent.parent / "config"

    # Base config
    merged = _load_yaml(config_dir / "default.yaml")

    # Environment overlay
    if env:
        overlay = _load_yaml(config_dir / f"{env}.yaml")
        merged = _deep_merge(merged, overlay)

    # Environment variable overrides
    workspace_dir = os.getenv("WORKSPACE_DIR")
    if workspace_dir:
        merged.setdefault("workspace", {})["root"] = workspace_dir
    prompts_dir = os.getenv("PROMPTS_DIR")
    if prompts_dir:
        merged.setdefault("workspace", {})["prompts_dir"] = prompts_dir
    log_level = os.getenv("CONDUCTOR_LOG_LEVEL")
    if log_level:
        merged.setdefault("logging", {})["level"] = log_level.upper()

    try:
        return AppConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
