"""Component factory for the PRD Test Conductor.

Creates and wires the orchestration components (store, state machine,
lifecycle, registry, event channel, prerequisite validator, runner) so the
CLI and embedding services receive fully-initialized dependencies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from src.agents.base_agent import BaseAgent
from src.core.config import AppConfig, load_config
from src.db.repository import InMemoryRunRepository, RunRepository
from src.orchestrator.events import EventChannel
from src.orchestrator.lifecycle import RunLifecycle
from src.orchestrator.prerequisites import PrerequisiteValidator
from src.orchestrator.registry import RunRegistry
from src.orchestrator.runner import PipelineRunner
from src.orchestrator.state_machine import IdempotencyCache, StateMachine
from src.orchestrator.step_metrics import StepMetrics

logger = logging.getLogger("conductor.factory")


@dataclass
class ComponentBundle:
    """Container for all initialized components.

    ``runner`` is None when the bundle was built without collaborators; the
    lifecycle, validator and event channel are still usable on their own.
    """

    config: AppConfig
    repository: RunRepository
    state_machine: StateMachine
    lifecycle: RunLifecycle
    registry: RunRegistry
    events: EventChannel
    validator: PrerequisiteValidator
    step_metrics: StepMetrics
    runner: Optional[PipelineRunner] = None


class ComponentFactory:
    """Factory for creating and wiring conductor infrastructure.

    Usage:
        bundle = ComponentFactory.create(
            config_dir=Path("config"),
            parser=my_parser, executor=my_executor, reviewer=my_reviewer,
        )
        bundle.runner.start_pipeline(run.id)
    """

    @staticmethod
    def create(
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        config: Optional[AppConfig] = None,
        repository: Optional[RunRepository] = None,
        parser: Optional[BaseAgent] = None,
        executor: Optional[BaseAgent] = None,
        reviewer: Optional[BaseAgent] = None,
        cwd: Optional[Path] = None,
    ) -> ComponentBundle:
        """Create and wire all components.

        Args:
            config_dir: Path to config/ directory. Default: project root/config.
            env: Environment name for config overlay (e.g., "test").
            config: Pre-built config; skips loading from disk when given.
            repository: Run store. Default: a fresh InMemoryRunRepository.
            parser, executor, reviewer: Agent collaborators. The runner is
                only built when all three are supplied.
            cwd: Base directory for PRD path resolution. Default: os.getcwd().

        Returns:
            ComponentBundle with all components ready to use.
        """
        logger.info("Initializing components...")

        # --- Config ---
        if config is None:
            config = load_config(config_dir=config_dir, env=env)
        logger.info("Config loaded (workspace root=%s)", config.workspace.root)

        # --- Store ---
        repository = repository or InMemoryRunRepository()

        # --- State ---
        cache = IdempotencyCache(max_runs=config.pipeline.idempotency_max_runs)
        state_machine = StateMachine(cache)
        lifecycle = RunLifecycle(repository, state_machine, config.timeouts)

        # --- Pipeline infrastructure ---
        registry = RunRegistry()
        events = EventChannel(maxsize=config.pipeline.event_queue_size)
        validator = PrerequisiteValidator(config.workspace.root)
        step_metrics = StepMetrics(max_attempts=config.pipeline.metrics_max_attempts)

        runner = None
        if parser and executor and reviewer:
            runner = PipelineRunner(
                repository,
                lifecycle,
                parser=parser,
                executor=executor,
                reviewer=reviewer,
                config=config,
                registry=registry,
                events=events,
                validator=validator,
                step_metrics=step_metrics,
                cwd=cwd,
            )
            logger.info(
                "Runner configured (parser=%s, executor=%s, reviewer=%s)",
                parser.name, executor.name, reviewer.name,
            )
        else:
            logger.info("No collaborators supplied; runner not created")

        logger.info("All components initialized")

        return ComponentBundle(
            config=config,
            repository=repository,
            state_machine=state_machine,
            lifecycle=lifecycle,
            registry=registry,
            events=events,
            validator=validator,
            step_metrics=step_metrics,
            runner=runner,
        )
