"""CLI entrypoint for the PRD Test Conductor."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import click

from src.core.config import AppConfig, load_config
from src.core.exceptions import ConductorError
from src.orchestrator.prerequisites import PrerequisiteValidator
from src.quality.gate import evaluate_traced_gate, format_gate_result
from src.quality.traceability import check_traceability, get_traceability_summary
from src.workspace import artifacts
from src.workspace.manager import create_workspace
from src.workspace.manifest import create_manifest, save_manifest, validate_manifest_file


def _setup_logging(config: Optional[AppConfig], verbose: bool = False) -> None:
    """Apply logging configuration from config/default.yaml."""
    if config is not None:
        level_name = config.logging.level
        fmt = config.logging.format
    else:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def _config(ctx: click.Context) -> AppConfig:
    config = ctx.obj.get("config")
    if config is None:
        raise click.ClickException(ctx.obj.get("config_error") or "Configuration unavailable")
    return config


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.option(
    "--config-dir",
    required=False,
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Config directory containing default.yaml.",
)
@click.option("--env", required=False, default=None, help="Optional config overlay environment.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_dir: Optional[Path], env: Optional[str]) -> None:
    """PRD Test Conductor command line interface."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    try:
        ctx.obj["config"] = load_config(config_dir=config_dir, env=env)
    except ConductorError as exc:
        ctx.obj["config"] = None
        ctx.obj["config_error"] = str(exc)
    _setup_logging(ctx.obj["config"], verbose=verbose)


@cli.command("resumable-steps")
@click.argument("run_id")
@click.option("--json", "as_json", is_flag=True, default=False, help="Emit JSON.")
@click.pass_context
def resumable_steps(ctx: click.Context, run_id: str, as_json: bool) -> None:
    """Show which steps RUN_ID could be resumed from."""
    config = _config(ctx)
    validator = PrerequisiteValidator(config.workspace.root)
    steps = validator.get_resumable_steps(run_id)

    if as_json:
        _echo_json([s.to_dict() for s in steps])
        return

    click.echo(f"Run {run_id} ({Path(config.workspace.root) / run_id})")
    for info in steps:
        if info.available:
            click.echo(click.style(f"  [ok]   {info.step.value:<18} {info.label}", fg="green"))
        else:
            click.echo(f"  [--]   {info.step.value:<18} {info.label}")
            for missing in info.missing_files:
                click.echo(f"           missing: {missing}")


@cli.command("quality-gate")
@click.argument("workspace_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, default=False, help="Emit JSON.")
@click.pass_context
def quality_gate(ctx: click.Context, workspace_dir: Path, as_json: bool) -> None:
    """Evaluate the quality gate over a run workspace's artifacts.

    Exits with status 1 when the gate is blocked.
    """
    config = _config(ctx)
    try:
        requirements = artifacts.load_requirements(workspace_dir)
        test_cases = artifacts.load_test_cases(workspace_dir)
        assertions = artifacts.load_final_assertions(workspace_dir)
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc

    result = evaluate_traced_gate(
        requirements, test_cases, assertions, config=config.quality_gate,
    )
    if as_json:
        _echo_json(result.to_dict())
    else:
        click.echo(format_gate_result(result))
    if result.blocked:
        ctx.exit(1)


@cli.command("traceability")
@click.argument("workspace_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, default=False, help="Emit JSON.")
def traceability(workspace_dir: Path, as_json: bool) -> None:
    """Report requirement -> case -> assertion -> evidence chains."""
    try:
        requirements = artifacts.load_requirements(workspace_dir)
        test_cases = artifacts.load_test_cases(workspace_dir)
        assertions = artifacts.load_final_assertions(workspace_dir)
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc

    result = check_traceability(requirements, test_cases, assertions)
    summary = get_traceability_summary(result, len(assertions))
    if as_json:
        payload = summary.to_dict()
        payload["orphaned_assertion_ids"] = result.orphaned_assertions
        payload["orphaned_test_case_ids"] = result.orphaned_test_cases
        payload["incomplete_assertion_ids"] = [l.assertion_id for l in result.incomplete_chains]
        _echo_json(payload)
        return

    status = click.style("complete", fg="green") if result.complete else click.style("incomplete", fg="yellow")
    click.echo(f"Traceability: {status}")
    click.echo(f"  Assertions:        {summary.total_assertions}")
    click.echo(f"  Complete chains:   {summary.complete_chains}")
    click.echo(f"  Missing evidence:  {summary.incomplete_chains}")
    click.echo(f"  Orphaned:          {summary.orphaned_assertions}")
    click.echo(f"  Orphaned cases:    {summary.orphaned_test_cases}")
    click.echo(f"  Completeness:      {summary.completeness_rate:.1%}")
    for link in result.incomplete_chains:
        click.echo(f"    no evidence: {link.assertion_id} ({link.case_id} -> {link.requirement_id})")
    for assertion_id in result.orphaned_assertions:
        click.echo(f"    orphaned:    {assertion_id}")


@cli.command("init-workspace")
@click.argument("run_id")
@click.option("--project-id", required=True, help="Project the run belongs to.")
@click.pass_context
def init_workspace(ctx: click.Context, run_id: str, project_id: str) -> None:
    """Create the directory layout and manifest for RUN_ID."""
    config = _config(ctx)
    try:
        structure = create_workspace(config.workspace.root, run_id)
        if not structure.manifest.exists():
            save_manifest(structure.manifest, create_manifest(run_id, project_id))
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Workspace ready at {structure.root}")


@cli.command("validate-manifest")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def validate_manifest(ctx: click.Context, path: Path) -> None:
    """Check a manifest.json for required fields and a valid schema."""
    valid, problems = validate_manifest_file(path)
    if valid:
        click.echo(click.style(f"{path}: valid", fg="green"))
        return
    click.echo(click.style(f"{path}: invalid", fg="red"))
    for problem in problems:
        click.echo(f"  - {problem}")
    ctx.exit(1)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
