"""Pipeline engine: turns events into pipeline runs.

Ties the pipeline core together: trigger matching, graph building, the
pipeline-level concurrency group, run scheduling, nested runs for reusable
pipelines, and persistence of runs, job runs and transitions.

Key exports:
    PipelineEngine: add_pipeline(), add_action(), validate_all_pipelines(),
        evaluate_event(), run_pipeline(), submit(), cancel_pipeline(), get_run()
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from gantry.config import GantryConfig
from gantry.errors import DefinitionError, ErrorKind, EvaluationError, TriggerError
from gantry.models import Event
from gantry.pipeline.concurrency import CancellationToken, ConcurrencyManager
from gantry.pipeline.context import ContextStore
from gantry.pipeline.credentials import CredentialProvider, EnvCredentialProvider
from gantry.pipeline.executor import ShellStepExecutor, StepExecutor
from gantry.pipeline.expressions import ExpressionEvaluator, to_string, truthy
from gantry.pipeline.graph import DependencyGraph, GraphBuilder
from gantry.pipeline.hashing import FileHasher, WorkspaceFileHasher
from gantry.pipeline.matrix import MatrixExpander
from gantry.pipeline.models import (
    CompositeAction,
    PipelineDefinition,
    PipelineRun,
    RunStatus,
    TransitionRecord,
)
from gantry.pipeline.registry import PipelineRegistry
from gantry.pipeline.scheduler import RunScheduler, SchedulerSettings
from gantry.pipeline.subpipeline import SubPipelineResolver
from gantry.pipeline.triggers import Activation, TriggerMatcher

logger = logging.getLogger("gantry.pipeline.engine")


class PipelineEngine:
    """Core pipeline execution engine.

    Responsibilities:
        - Match incoming events against registered pipeline triggers
        - Admit runs through their pipeline-level concurrency group
        - Schedule runs and nested reusable-pipeline runs
        - Persist run history through the PipelineRegistry

    Usage:
        engine = PipelineEngine(registry, config=config)
        engine.add_pipeline("ci", definition)
        engine.add_action("setup", action)
        runs = await engine.evaluate_event(event)
    """

    def __init__(
        self,
        registry: PipelineRegistry | None = None,
        *,
        config: GantryConfig | None = None,
        executor: StepExecutor | None = None,
        credentials: CredentialProvider | None = None,
        file_hasher: FileHasher | None = None,
    ):
        self._registry = registry
        self._config = config or GantryConfig()
        runtime = self._config.runtime
        workspace = Path(runtime.workspace)

        self._evaluator = ExpressionEvaluator(
            file_hasher=file_hasher or WorkspaceFileHasher(workspace)
        )
        self._expander = MatrixExpander(
            self._evaluator, max_instances=self._config.matrix.max_instances
        )
        self._builder = GraphBuilder(self._expander)
        self._concurrency = ConcurrencyManager(max_queued=self._config.concurrency.max_queued)
        self._executor = executor or ShellStepExecutor(workspace)
        self._credentials = credentials or EnvCredentialProvider(self._config.secrets.env_prefix)
        self._settings = SchedulerSettings(
            max_workers=runtime.max_workers,
            cancel_grace_seconds=runtime.cancel_grace_seconds,
            default_step_timeout_minutes=runtime.default_step_timeout_minutes,
            fail_on_empty=self._config.matrix.fail_on_empty,
        )

        self._resolver = SubPipelineResolver(
            self._evaluator, max_nesting_depth=runtime.max_nesting_depth
        )
        self._resolver.set_run_callback(self.run_nested)

        # Pipeline definitions (name → definition)
        self._pipelines: dict[str, PipelineDefinition] = {}

        # Active runs (run_id → run / token / background task)
        self._active: dict[str, PipelineRun] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    # ── Configuration ────────────────────────────────────────────────────────

    def add_pipeline(self, name: str, definition: PipelineDefinition) -> None:
        """Register a pipeline definition."""
        self._pipelines[name] = definition
        self._resolver.add_pipeline(name, definition)

    def get_pipeline(self, name: str) -> PipelineDefinition | None:
        """Look up a pipeline definition by name."""
        return self._pipelines.get(name)

    def add_action(self, name: str, action: CompositeAction) -> None:
        """Register a composite action."""
        self._resolver.add_action(name, action)

    @property
    def concurrency(self) -> ConcurrencyManager:
        return self._concurrency

    @property
    def evaluator(self) -> ExpressionEvaluator:
        return self._evaluator

    def validate_all_pipelines(self) -> dict[str, list[str]]:
        """Validate all registered pipelines.

        Returns error messages keyed by pipeline name; pipelines without
        errors are absent.
        """
        errors: dict[str, list[str]] = {}
        for name, definition in self._pipelines.items():
            try:
                self._builder.build(definition)
            except DefinitionError as e:
                errors.setdefault(name, []).append(f"Pipeline '{name}': {e}")
        for name, messages in self._resolver.validate().items():
            errors.setdefault(name, []).extend(messages)
        return errors

    def plan(self, definition: PipelineDefinition) -> DependencyGraph:
        """Build a definition's graph without running it.

        Raises:
            DefinitionError: unknown dependency, cycle or oversized matrix.
        """
        return self._builder.build(definition)

    # ── Event Evaluation (trigger matching) ──────────────────────────────────

    async def evaluate_event(self, event: Event) -> list[PipelineRun]:
        """Start a run for every pipeline the event activates.

        Runs execute in the background; the returned records are live and
        reach a terminal status once their tasks finish (see wait()).
        """
        started: list[PipelineRun] = []
        for name, definition in self._pipelines.items():
            activation = self._match(name, definition, event)
            if activation is None:
                continue
            run = await self.submit(name, event, activation=activation)
            if run is not None:
                started.append(run)
        return started

    def _match(self, name: str, definition: PipelineDefinition, event: Event) -> Activation | None:
        if event.name == "workflow_call":
            # Only reachable through a calling job
            return None
        try:
            activation = TriggerMatcher(definition).match(event)
        except TriggerError as e:
            logger.warning("Pipeline '%s' not activated by %s: %s", name, event.full_type, e)
            return None
        if not activation.activated:
            return None
        return activation

    # ── Pipeline Lifecycle ───────────────────────────────────────────────────

    async def submit(
        self, name: str, event: Event, *, activation: Activation | None = None
    ) -> PipelineRun | None:
        """Create a run and execute it as a background task.

        Returns None when the event does not activate the pipeline.
        """
        definition = self._require(name)
        if activation is None:
            activation = TriggerMatcher(definition).match(event)
        if not activation.activated:
            logger.info("Pipeline '%s' not activated: %s", name, activation.reason)
            return None
        run, store, token = await self._create_run(name, definition, event, activation)
        task = asyncio.create_task(
            self._execute(run, definition, store, token), name=f"run:{run.run_id}"
        )
        self._tasks[run.run_id] = task
        task.add_done_callback(lambda _t, run_id=run.run_id: self._tasks.pop(run_id, None))
        return run

    async def run_pipeline(self, name: str, event: Event) -> PipelineRun | None:
        """Execute a pipeline for an event and wait for it to finish.

        Returns None when the event does not activate the pipeline.

        Raises:
            TriggerError: the event activated the pipeline with invalid inputs.
        """
        definition = self._require(name)
        activation = TriggerMatcher(definition).match(event)
        if not activation.activated:
            logger.info("Pipeline '%s' not activated: %s", name, activation.reason)
            return None
        run, store, token = await self._create_run(name, definition, event, activation)
        return await self._execute(run, definition, store, token)

    async def wait(self, run_id: str) -> PipelineRun | None:
        """Wait for a submitted run to finish."""
        task = self._tasks.get(run_id)
        if task is not None:
            return await task
        return await self.get_run(run_id)

    async def run_nested(
        self,
        name: str,
        definition: PipelineDefinition,
        *,
        inputs: dict[str, Any],
        secrets: dict[str, Any],
        github: dict[str, Any],
        parent: PipelineRun,
        parent_job_id: str,
        token: CancellationToken,
        inherited_group: str | None = None,
    ) -> PipelineRun:
        """Execute a reusable pipeline as a nested run of ``parent``."""
        run = PipelineRun(
            run_id=_new_run_id(),
            pipeline_name=name,
            event_name="workflow_call",
            delivery_id=parent.delivery_id,
            parent_run_id=parent.run_id,
            parent_job_id=parent_job_id,
            nesting_depth=parent.nesting_depth + 1,
            inputs=inputs,
            created_at=datetime.now(timezone.utc),
        )
        store = ContextStore.seed(
            github={**github, "event_name": "workflow_call"},
            inputs=inputs,
            vars=self._config.vars,
            secrets=secrets,
        )
        await self._persist_new(run)
        return await self._execute(
            run, definition, store, token.child(), inherited_group=inherited_group
        )

    async def cancel_pipeline(self, run_id: str, reason: str = "cancelled by request") -> bool:
        """Cancel an active run. Returns True if a cancellation was signalled."""
        token = self._tokens.get(run_id)
        if token is None or token.cancelled:
            return False
        token.cancel(reason)
        logger.info("Run %s cancellation requested: %s", run_id, reason)
        return True

    async def get_run(self, run_id: str) -> PipelineRun | None:
        """Look up a run: active runs first, then history."""
        run = self._active.get(run_id)
        if run is not None:
            return run
        if self._registry is not None:
            return await self._registry.get_pipeline_run(run_id)
        return None

    @property
    def active_runs(self) -> list[PipelineRun]:
        return list(self._active.values())

    async def shutdown(self) -> None:
        """Cancel every active run and wait for them to finish."""
        for run_id in list(self._tokens):
            await self.cancel_pipeline(run_id, "engine shutting down")
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    # ── Run Execution ────────────────────────────────────────────────────────

    def _require(self, name: str) -> PipelineDefinition:
        definition = self._pipelines.get(name)
        if definition is None:
            raise DefinitionError(ErrorKind.UNKNOWN_PIPELINE, f"unknown pipeline '{name}'")
        return definition

    async def _create_run(
        self,
        name: str,
        definition: PipelineDefinition,
        event: Event,
        activation: Activation,
    ) -> tuple[PipelineRun, ContextStore, CancellationToken]:
        run = PipelineRun(
            run_id=_new_run_id(),
            pipeline_name=name,
            event_name=event.name,
            delivery_id=event.delivery_id,
            inputs=activation.inputs,
            created_at=datetime.now(timezone.utc),
        )
        store = ContextStore.seed(
            github=activation.github,
            inputs=activation.inputs,
            vars=self._config.vars,
            secrets=dict(self._credentials.get_secrets(name)),
        )
        token = CancellationToken()
        self._active[run.run_id] = run
        self._tokens[run.run_id] = token
        await self._persist_new(run)
        logger.info("Created run %s for pipeline '%s' (%s)", run.run_id, name, event.full_type)
        return run, store, token

    async def _execute(
        self,
        run: PipelineRun,
        definition: PipelineDefinition,
        store: ContextStore,
        token: CancellationToken,
        *,
        inherited_group: str | None = None,
    ) -> PipelineRun:
        """Build the graph, admit the run through its group, and schedule it."""
        self._active[run.run_id] = run
        self._tokens[run.run_id] = token
        group: str | None = None
        try:
            try:
                graph = self._builder.build(definition)
                env = self._evaluator.render(definition.env, store.snapshot)
                store.with_env({k: to_string(v) for k, v in env.items()})
                self._log_run_name(run, definition, store)
            except (DefinitionError, EvaluationError) as e:
                return await self._fail_run(run, str(e))

            if inherited_group is not None:
                run.concurrency_group = inherited_group
            elif definition.concurrency is not None and not definition.concurrency.inherits:
                try:
                    group = to_string(
                        self._evaluator.render(
                            definition.concurrency.group, store.snapshot, required=True
                        )
                    )
                    cancel_in_progress = self._flag(
                        definition.concurrency.cancel_in_progress, store
                    )
                except EvaluationError as e:
                    return await self._fail_run(run, f"concurrency group: {e}")
                run.concurrency_group = group
                if not await self._concurrency.acquire(
                    group, run.run_id, token, cancel_in_progress=cancel_in_progress
                ):
                    group = None
                    return await self._cancel_unadmitted(run, token)

            scheduler = RunScheduler(
                run,
                graph,
                store,
                evaluator=self._evaluator,
                expander=self._expander,
                executor=self._executor,
                concurrency=self._concurrency,
                token=token,
                resolver=self._resolver,
                settings=self._settings,
                on_transition=self._on_transition,
            )
            await scheduler.run()
            await self._persist_finished(run)
            return run
        finally:
            if group is not None:
                self._concurrency.release(group, run.run_id)
            self._active.pop(run.run_id, None)
            self._tokens.pop(run.run_id, None)

    def _log_run_name(
        self, run: PipelineRun, definition: PipelineDefinition, store: ContextStore
    ) -> None:
        if not definition.run_name:
            return
        title = to_string(self._evaluator.render(definition.run_name, store.snapshot))
        logger.info("Run %s: %s", run.run_id, store.redactor.redact(title))

    def _flag(self, value: bool | str | None, store: ContextStore) -> bool:
        if value is None or isinstance(value, bool):
            return bool(value)
        rendered = self._evaluator.render(value, store.snapshot)
        if isinstance(rendered, str) and rendered.strip().lower() in ("true", "false"):
            return rendered.strip().lower() == "true"
        return truthy(rendered)

    async def _fail_run(self, run: PipelineRun, error_message: str) -> PipelineRun:
        """Fail a run before any job started."""
        run.status = RunStatus.FAILED
        run.error_message = error_message
        run.completed_at = datetime.now(timezone.utc)
        await self._persist_finished(run)
        logger.error("Pipeline '%s' run %s failed: %s", run.pipeline_name, run.run_id, error_message)
        return run

    async def _cancel_unadmitted(self, run: PipelineRun, token: CancellationToken) -> PipelineRun:
        """A queued run was superseded or cancelled before admission."""
        run.status = RunStatus.CANCELLED
        run.error_message = token.reason or f"superseded in concurrency group '{run.concurrency_group}'"
        run.completed_at = datetime.now(timezone.utc)
        await self._persist_finished(run)
        logger.info("Pipeline '%s' run %s cancelled: %s", run.pipeline_name, run.run_id, run.error_message)
        return run

    # ── Persistence ──────────────────────────────────────────────────────────

    async def _persist_new(self, run: PipelineRun) -> None:
        if self._registry is not None:
            await self._registry.create_pipeline_run(run)

    async def _persist_finished(self, run: PipelineRun) -> None:
        if self._registry is None:
            return
        await self._registry.update_pipeline_run(run)
        for job_run in run.jobs:
            await self._registry.save_job_run(job_run)

    async def _on_transition(self, run: PipelineRun, record: TransitionRecord) -> None:
        if self._registry is None:
            return
        await self._registry.record_transition(run.run_id, record)
        job_run = run.get_job_run(record.instance_id)
        if job_run is not None:
            await self._registry.save_job_run(job_run)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _new_run_id() -> str:
    return f"pl-{uuid.uuid4().hex[:12]}"
