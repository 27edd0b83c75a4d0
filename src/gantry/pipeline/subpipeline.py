"""Sub-pipeline resolution: reusable pipelines and composite actions.

A job with ``uses:`` naming a registered pipeline runs it as a nested run:
``with``/``secrets`` are bound through the callee's ``workflow_call`` inputs,
the nested run inherits the caller's cancellation token, and the callee's
``workflow_call.outputs`` come back as the calling job's outputs.

A step with ``uses:`` naming a registered composite action is spliced into
the calling instance by the scheduler; this module binds the action's
``inputs`` and evaluates its ``outputs``.

References resolve by exact name first, then by path stem, so
``./.github/workflows/build.yml`` and ``build`` name the same pipeline.

Key exports:
    SubPipelineResolver: registries plus run_reusable()
    RunNestedCallback: Protocol the engine implements to start nested runs
"""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any, Protocol

from gantry.errors import DefinitionError, ErrorKind, TriggerError
from gantry.pipeline.concurrency import CancellationToken
from gantry.pipeline.context import ContextSnapshot, thaw
from gantry.pipeline.expressions import ExpressionEvaluator
from gantry.pipeline.graph import find_cycle
from gantry.pipeline.models import (
    CompositeAction,
    PipelineDefinition,
    PipelineRun,
    RunState,
    RunStatus,
)
from gantry.pipeline.scheduler import InstanceResult
from gantry.pipeline.triggers import bind_inputs

if TYPE_CHECKING:
    from gantry.pipeline.scheduler import InstanceScope

logger = logging.getLogger("gantry.pipeline.subpipeline")

# Maximum reusable-pipeline nesting depth
MAX_NESTING_DEPTH = 4


class RunNestedCallback(Protocol):
    """Called by the resolver to execute a nested pipeline run to completion."""

    async def __call__(
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
    ) -> PipelineRun: ...


def ref_candidates(ref: str) -> list[str]:
    """Names a ``uses`` reference may be registered under, most specific first."""
    candidates = [ref]
    bare = ref.split("@", 1)[0]
    if bare not in candidates:
        candidates.append(bare)
    path = PurePosixPath(bare)
    if path.name in ("action.yml", "action.yaml"):
        path = path.parent
    stem = path.stem if path.suffix in (".yml", ".yaml") else path.name
    if stem and stem not in candidates:
        candidates.append(stem)
    return candidates


class SubPipelineResolver:
    """Holds reusable pipelines and composite actions and runs them.

    Usage::

        resolver = SubPipelineResolver(evaluator)
        resolver.add_pipeline("build", build_definition)
        resolver.add_action("setup", setup_action)
        resolver.set_run_callback(engine.run_nested)
    """

    def __init__(
        self,
        evaluator: ExpressionEvaluator,
        *,
        max_nesting_depth: int = MAX_NESTING_DEPTH,
    ):
        self._evaluator = evaluator
        self._max_nesting_depth = max_nesting_depth
        self._pipelines: dict[str, PipelineDefinition] = {}
        self._actions: dict[str, CompositeAction] = {}
        self._run_nested: RunNestedCallback | None = None

    # ── Registries ───────────────────────────────────────────────────────────

    def add_pipeline(self, name: str, definition: PipelineDefinition) -> None:
        self._pipelines[name] = definition

    def add_action(self, name: str, action: CompositeAction) -> None:
        self._actions[name] = action

    def set_run_callback(self, callback: RunNestedCallback) -> None:
        """Set the callback that executes nested runs (normally the engine)."""
        self._run_nested = callback

    @property
    def pipelines(self) -> dict[str, PipelineDefinition]:
        return dict(self._pipelines)

    def resolve_pipeline_name(self, ref: str) -> str | None:
        for candidate in ref_candidates(ref):
            if candidate in self._pipelines:
                return candidate
        return None

    def get_pipeline(self, ref: str) -> PipelineDefinition | None:
        name = self.resolve_pipeline_name(ref)
        return self._pipelines[name] if name else None

    def get_action(self, ref: str) -> CompositeAction | None:
        for candidate in ref_candidates(ref):
            if candidate in self._actions:
                return self._actions[candidate]
        return None

    # ── Validation ───────────────────────────────────────────────────────────

    def validate(self) -> dict[str, list[str]]:
        """Check reusable-pipeline references. Returns error messages per pipeline."""
        errors: dict[str, list[str]] = {}
        edges: dict[str, list[str]] = {}
        for name, definition in self._pipelines.items():
            edges[name] = []
            for ref in sorted(definition.get_reusable_refs()):
                target = self.resolve_pipeline_name(ref)
                if target is None:
                    errors.setdefault(name, []).append(
                        f"Pipeline '{name}' references unknown pipeline '{ref}'"
                    )
                    continue
                if self._pipelines[target].call_trigger is None:
                    errors.setdefault(name, []).append(
                        f"Pipeline '{name}' calls '{ref}', which has no workflow_call trigger"
                    )
                edges[name].append(target)
        cycle = find_cycle(edges)
        if cycle:
            message = f"Cycle detected in reusable pipeline calls: {' -> '.join(cycle)}"
            for name in dict.fromkeys(cycle):
                errors.setdefault(name, []).append(message)
        return errors

    # ── Reusable pipelines ───────────────────────────────────────────────────

    async def run_reusable(self, scope: InstanceScope, snapshot: ContextSnapshot) -> InstanceResult:
        """Run the pipeline a ``uses`` job references as a nested run."""
        job = scope.job
        assert job.uses is not None
        name = self.resolve_pipeline_name(job.uses)
        if name is None:
            raise DefinitionError(
                ErrorKind.UNKNOWN_PIPELINE, f"job '{job.id}' uses unknown pipeline '{job.uses}'"
            )
        definition = self._pipelines[name]
        call = definition.call_trigger
        if call is None:
            raise DefinitionError(
                ErrorKind.SCHEMA_VIOLATION,
                f"pipeline '{name}' cannot be called: it has no workflow_call trigger",
            )

        depth = scope.run.nesting_depth + 1
        if depth > self._max_nesting_depth:
            return InstanceResult(
                RunState.FAILED,
                reason=f"reusable pipeline nesting depth exceeded (max {self._max_nesting_depth})",
            )
        if self._run_nested is None:
            return InstanceResult(RunState.FAILED, reason="no nested run executor configured")

        with_values = self._evaluator.render(job.with_, snapshot)
        inputs = bind_inputs(call.inputs, with_values, source=f"workflow_call '{name}'")
        secrets = self._bind_secrets(name, job.secrets, call.secrets, snapshot)

        inherited_group = None
        if job.concurrency is not None and job.concurrency.inherits:
            inherited_group = scope.run.concurrency_group

        logger.info(
            "Job '%s' calling pipeline '%s' (depth %d)", scope.instance.instance_id, name, depth
        )
        child = await self._run_nested(
            name,
            definition,
            inputs=inputs,
            secrets=secrets,
            github=thaw(snapshot.get("github") or {}),
            parent=scope.run,
            parent_job_id=scope.instance.instance_id,
            token=scope.token,
            inherited_group=inherited_group,
        )
        match child.status:
            case RunStatus.SUCCEEDED:
                outcome, reason = RunState.SUCCEEDED, ""
            case RunStatus.CANCELLED:
                outcome, reason = RunState.CANCELLED, f"nested run {child.run_id} cancelled"
            case _:
                outcome = RunState.FAILED
                reason = f"nested run {child.run_id} failed: {child.error_message or ''}".rstrip()
        return InstanceResult(outcome, dict(child.call_outputs), reason, child.run_id)

    def _bind_secrets(
        self,
        name: str,
        passed: dict[str, Any] | str | None,
        declared: dict[str, Any],
        snapshot: ContextSnapshot,
    ) -> dict[str, Any]:
        if passed == "inherit":
            secrets = thaw(snapshot.get("secrets") or {})
        elif isinstance(passed, dict):
            secrets = self._evaluator.render(passed, snapshot)
        else:
            secrets = {}
        for secret_name, spec in declared.items():
            if spec is not None and spec.required and secrets.get(secret_name) in (None, ""):
                raise TriggerError(
                    ErrorKind.MISSING_REQUIRED_INPUT,
                    f"workflow_call '{name}': required secret '{secret_name}' was not supplied",
                    input=secret_name,
                )
        return secrets

    # ── Composite actions ────────────────────────────────────────────────────

    def bind_action_inputs(
        self, action: CompositeAction, with_values: dict[str, Any], snapshot: ContextSnapshot
    ) -> dict[str, Any]:
        """Bind a composite step's ``with`` to the action's declared inputs."""
        inputs: dict[str, Any] = {}
        for name, spec in action.inputs.items():
            value = with_values.get(name)
            if value is None and spec.default is not None:
                value = self._evaluator.render(spec.default, snapshot)
            if value is None and spec.required:
                raise TriggerError(
                    ErrorKind.MISSING_REQUIRED_INPUT,
                    f"action '{action.name}': required input '{name}' was not supplied",
                    input=name,
                )
            inputs[name] = value
        for name in with_values:
            if name not in action.inputs:
                logger.warning("Action '%s': ignoring undeclared input '%s'", action.name, name)
        return inputs

    def action_outputs(self, action: CompositeAction, snapshot: ContextSnapshot) -> dict[str, Any]:
        """Evaluate an action's outputs in its local namespace."""
        return {
            name: self._evaluator.render(spec.value, snapshot)
            for name, spec in action.outputs.items()
        }
