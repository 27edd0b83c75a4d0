"""Run scheduler: drives one pipeline run's job instances to terminal states.

The scheduler coroutine is the single writer of run state. Job instances run
as asyncio tasks that report back through a completion queue; every state
change goes through :meth:`RunScheduler._transition`, which appends to the
run's transition log.

Instance state machine::

    pending → blocked → runnable → running → succeeded | failed | cancelled
                  └──────────────→ skipped (if false / needs not successful)

Key exports:
    RunScheduler: run() → PipelineRun
    SchedulerSettings: worker limits, grace period, step timeout default
    TransitionCallback: Protocol for observers of state transitions
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol

from gantry.errors import DefinitionError, ErrorKind, EvaluationError, GantryError
from gantry.pipeline.concurrency import CancellationToken, ConcurrencyManager
from gantry.pipeline.context import ContextSnapshot, ContextStore
from gantry.pipeline.executor import StepExecutor, StepRequest
from gantry.pipeline.expressions import ExpressionEvaluator, to_string, truthy
from gantry.pipeline.graph import DependencyGraph
from gantry.pipeline.matrix import MatrixExpander, strategy_context
from gantry.pipeline.models import (
    JobDefinition,
    JobInstance,
    JobRun,
    PipelineRun,
    RunState,
    RunStatus,
    StepDefinition,
    StrategySpec,
    TransitionRecord,
)

if TYPE_CHECKING:
    from gantry.pipeline.subpipeline import SubPipelineResolver

logger = logging.getLogger("gantry.pipeline.scheduler")
step_logger = logging.getLogger("gantry.pipeline.steps")


# ── Settings & Protocols ─────────────────────────────────────────────────────


@dataclass
class SchedulerSettings:
    max_workers: int | None = None
    cancel_grace_seconds: float = 10.0
    default_step_timeout_minutes: float | None = None
    fail_on_empty: bool = False
    max_composite_depth: int = 8


class TransitionCallback(Protocol):
    """Called for every instance state transition (after it is recorded)."""

    async def __call__(self, run: PipelineRun, record: TransitionRecord) -> None: ...


@dataclass
class InstanceResult:
    """What a finished job instance reports to the scheduler."""

    outcome: RunState
    outputs: dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    child_run_id: str | None = None


@dataclass
class _Completion:
    instance: JobInstance
    conclusion: RunState
    outcome: RunState
    outputs: dict[str, Any]
    reason: str = ""
    child_run_id: str | None = None


@dataclass
class InstanceScope:
    """Per-instance execution scope handed to step and sub-pipeline code."""

    run: PipelineRun
    job: JobDefinition
    instance: JobInstance
    token: CancellationToken


_RUN_CANCELLED = object()


# ── Run Scheduler ────────────────────────────────────────────────────────────


class RunScheduler:
    """Schedules and executes the job instances of one pipeline run.

    Usage::

        scheduler = RunScheduler(run, graph, store, evaluator=..., expander=...,
                                 executor=..., concurrency=..., token=token)
        run = await scheduler.run()
    """

    def __init__(
        self,
        run: PipelineRun,
        graph: DependencyGraph,
        store: ContextStore,
        *,
        evaluator: ExpressionEvaluator,
        expander: MatrixExpander,
        executor: StepExecutor,
        concurrency: ConcurrencyManager,
        token: CancellationToken,
        resolver: SubPipelineResolver | None = None,
        settings: SchedulerSettings | None = None,
        on_transition: TransitionCallback | None = None,
    ):
        self.run_record = run
        self._graph = graph
        self._store = store
        self._evaluator = evaluator
        self._expander = expander
        self._executor = executor
        self._concurrency = concurrency
        self._token = token
        self._resolver = resolver
        self._settings = settings or SchedulerSettings()
        self._on_transition = on_transition

        self._job_state: dict[str, RunState] = {}
        self._instances: dict[str, list[JobInstance]] = {}
        self._state: dict[str, RunState] = {}
        self._outcome: dict[str, RunState] = {}
        self._outputs: dict[str, dict[str, Any]] = {}
        self._job_runs: dict[str, JobRun] = {}
        self._job_snapshots: dict[str, ContextSnapshot] = {}
        self._fail_fast: dict[str, bool] = {}
        self._max_parallel: dict[str, int | None] = {}

        self._runnable: list[JobInstance] = []
        self._tasks: dict[str, asyncio.Task] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._force: dict[str, asyncio.TimerHandle] = {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._callbacks: set[asyncio.Task] = set()

    @property
    def store(self) -> ContextStore:
        return self._store

    # ── Main loop ────────────────────────────────────────────────────────────

    async def run(self) -> PipelineRun:
        """Run every job to a terminal state and return the finished run."""
        run = self.run_record
        run.status = RunStatus.RUNNING
        run.started_at = run.started_at or datetime.now(timezone.utc)
        logger.info("Run %s (%s) started", run.run_id, run.pipeline_name)

        self._initialize()
        watcher = asyncio.create_task(self._watch_cancel())
        try:
            while True:
                self._advance()
                self._dispatch()
                if all(state.is_terminal for state in self._job_state.values()):
                    break
                item = await self._queue.get()
                if item is _RUN_CANCELLED:
                    self._cancel_run(self._token.reason or "run cancelled")
                else:
                    self._complete(item)
        finally:
            watcher.cancel()
            for handle in self._force.values():
                handle.cancel()
            self._force.clear()
            for task in self._tasks.values():
                task.cancel()
        if self._callbacks:
            await asyncio.gather(*self._callbacks, return_exceptions=True)

        self._finalize()
        logger.info("Run %s finished: %s", run.run_id, run.status.value)
        return run

    async def _watch_cancel(self) -> None:
        await self._token.wait()
        self._queue.put_nowait(_RUN_CANCELLED)

    def _initialize(self) -> None:
        for job_id in self._graph.job_ids:
            self._job_state[job_id] = RunState.PENDING
            instances = self._graph.instances(job_id)
            if instances is not None:
                self._register(job_id, instances)
            needs = self._graph.dependencies(job_id)
            if needs:
                self._job_state[job_id] = RunState.BLOCKED
                for instance in self._instances.get(job_id, []):
                    self._transition(instance, RunState.BLOCKED, f"waiting on {', '.join(needs)}")

    def _register(self, job_id: str, instances: list[JobInstance]) -> None:
        self._instances[job_id] = list(instances)
        for instance in instances:
            iid = instance.instance_id
            self._state[iid] = RunState.PENDING
            job_run = JobRun(
                run_id=self.run_record.run_id,
                instance_id=iid,
                job_id=job_id,
                matrix=instance.matrix,
            )
            self._job_runs[iid] = job_run
            self.run_record.jobs.append(job_run)

    # ── Job decisions ────────────────────────────────────────────────────────

    def _advance(self) -> None:
        """Decide every undecided job whose needs are all terminal."""
        progressed = True
        while progressed:
            progressed = False
            for job_id in self._graph.topological_order():
                if self._job_state[job_id] not in (RunState.PENDING, RunState.BLOCKED):
                    continue
                needs = self._graph.dependencies(job_id)
                if all(self._job_state[n].is_terminal for n in needs):
                    self._decide(job_id)
                    progressed = True

    def _decide(self, job_id: str) -> None:
        job = self._graph.job(job_id)
        snapshot = self._store.for_job(
            job_id,
            needs=job.needs,
            ancestors=self._graph.ancestors(job_id),
            cancelled=self._token.cancelled,
        )
        try:
            should_run = self._evaluator.evaluate_condition(job.if_, snapshot)
        except EvaluationError as e:
            self._finish_job_early(job_id, RunState.FAILED, f"if condition failed: {e}")
            return
        if not should_run:
            if not snapshot.status.succeeded:
                unmet = [
                    n for n in job.needs if self._store.conclusion(n) != RunState.SUCCEEDED
                ]
                reason = f"needs not successful: {', '.join(unmet)}"
            else:
                reason = "if condition evaluated false"
            self._finish_job_early(job_id, RunState.SKIPPED, reason)
            return

        instances = self._instances.get(job_id)
        if instances is None:
            try:
                instances = self._expander.expand(job, snapshot)
            except GantryError as e:
                self._finish_job_early(job_id, RunState.FAILED, f"matrix expansion failed: {e}")
                return
            self._graph.set_instances(job_id, instances)
            self._register(job_id, instances)

        strategy = job.strategy or StrategySpec()
        try:
            fail_fast = self._flag(strategy.fail_fast, snapshot)
        except EvaluationError as e:
            self._finish_job_early(job_id, RunState.FAILED, f"fail-fast evaluation failed: {e}")
            return
        self._fail_fast[job_id] = fail_fast and job.matrix is not None
        self._max_parallel[job_id] = strategy.max_parallel

        if not instances:
            fail_on_empty = strategy.fail_on_empty
            if fail_on_empty is None:
                fail_on_empty = self._settings.fail_on_empty
            if fail_on_empty:
                self._finish_job_early(job_id, RunState.FAILED, "matrix expanded to no instances")
            else:
                logger.info("Job '%s' has no matrix instances; vacuous success", job_id)
                self._job_state[job_id] = RunState.SUCCEEDED
                self._store.with_job_result(job_id, RunState.SUCCEEDED, RunState.SUCCEEDED, {})
            return

        self._job_snapshots[job_id] = snapshot
        self._job_state[job_id] = RunState.RUNNABLE
        for instance in instances:
            self._transition(instance, RunState.RUNNABLE, "needs satisfied")
            self._runnable.append(instance)

    def _finish_job_early(self, job_id: str, state: RunState, reason: str) -> None:
        """Conclude a job without running it (skipped, failed decision, cancelled)."""
        if not self._instances.get(job_id):
            self._register(job_id, [JobInstance(job_id=job_id)])
        for instance in self._instances[job_id]:
            if not self._state[instance.instance_id].is_terminal:
                self._transition(instance, state, reason)
        self._job_state[job_id] = state
        self._store.with_job_result(job_id, state, state, {})
        logger.info("Job '%s' %s: %s", job_id, state.value, self._store.redactor.redact(reason))

    # ── Dispatch ─────────────────────────────────────────────────────────────

    def _dispatch(self) -> None:
        running = sum(1 for state in self._state.values() if state == RunState.RUNNING)
        waiting: list[JobInstance] = []
        for instance in self._runnable:
            if self._state[instance.instance_id] != RunState.RUNNABLE:
                continue
            max_workers = self._settings.max_workers
            if max_workers is not None and running >= max_workers:
                waiting.append(instance)
                continue
            max_parallel = self._max_parallel.get(instance.job_id)
            if max_parallel is not None and self._running_in_job(instance.job_id) >= max_parallel:
                waiting.append(instance)
                continue
            self._start(instance)
            running += 1
        self._runnable = waiting

    def _running_in_job(self, job_id: str) -> int:
        return sum(
            1 for i in self._instances.get(job_id, [])
            if self._state[i.instance_id] == RunState.RUNNING
        )

    def _start(self, instance: JobInstance) -> None:
        iid = instance.instance_id
        token = self._token.child()
        self._tokens[iid] = token
        self._transition(instance, RunState.RUNNING, "dispatched")
        self._job_runs[iid].started_at = datetime.now(timezone.utc)
        self._tasks[iid] = asyncio.create_task(
            self._instance_task(instance, token),
            name=f"{self.run_record.run_id}:{iid}",
        )

    # ── Completion ───────────────────────────────────────────────────────────

    def _complete(self, completion: _Completion) -> None:
        instance = completion.instance
        iid = instance.instance_id
        handle = self._force.pop(iid, None)
        if handle is not None:
            handle.cancel()
        self._tasks.pop(iid, None)

        job_run = self._job_runs[iid]
        job_run.outcome = completion.outcome
        job_run.outputs = self._store.redactor.redact_value(completion.outputs)
        job_run.child_run_id = completion.child_run_id
        job_run.completed_at = datetime.now(timezone.utc)
        self._outcome[iid] = completion.outcome
        self._outputs[iid] = completion.outputs
        self._transition(instance, completion.conclusion, completion.reason)

        if completion.conclusion == RunState.FAILED and self._fail_fast.get(instance.job_id):
            for sibling in self._instances[instance.job_id]:
                if sibling.instance_id != iid:
                    self._cancel_instance(sibling, f"fail-fast: {iid} failed")
        self._maybe_finish_job(instance.job_id)

    def _maybe_finish_job(self, job_id: str) -> None:
        if self._job_state[job_id].is_terminal:
            return
        instances = self._instances.get(job_id, [])
        states = [self._state[i.instance_id] for i in instances]
        if not all(state.is_terminal for state in states):
            return

        if RunState.FAILED in states:
            conclusion = RunState.FAILED
        elif RunState.CANCELLED in states:
            conclusion = RunState.CANCELLED
        elif states and all(state == RunState.SKIPPED for state in states):
            conclusion = RunState.SKIPPED
        else:
            conclusion = RunState.SUCCEEDED
        outcomes = [self._outcome.get(i.instance_id, s) for i, s in zip(instances, states)]
        outcome = RunState.FAILED if RunState.FAILED in outcomes else conclusion

        outputs: dict[str, Any] = {}
        for instance in instances:
            outputs.update(self._outputs.get(instance.instance_id, {}))
        self._job_state[job_id] = conclusion
        self._store.with_job_result(job_id, conclusion, outcome, outputs)
        logger.info("Job '%s' concluded %s (outcome %s)", job_id, conclusion.value, outcome.value)

    # ── Cancellation ─────────────────────────────────────────────────────────

    def _cancel_instance(self, instance: JobInstance, reason: str) -> None:
        iid = instance.instance_id
        state = self._state[iid]
        if state.is_terminal:
            return
        if state != RunState.RUNNING:
            # Not started: cancellation is immediate
            self._transition(instance, RunState.CANCELLED, reason)
            return
        self._tokens[iid].cancel(reason)
        if iid not in self._force:
            loop = asyncio.get_running_loop()
            self._force[iid] = loop.call_later(
                self._settings.cancel_grace_seconds, self._force_cancel, iid
            )

    def _force_cancel(self, iid: str) -> None:
        self._force.pop(iid, None)
        task = self._tasks.get(iid)
        if task is not None and not task.done():
            logger.warning("Instance '%s' did not stop within grace period; forcing", iid)
            task.cancel()

    def _cancel_run(self, reason: str) -> None:
        logger.info("Run %s cancelling: %s", self.run_record.run_id, reason)
        self._store.mark_cancelled()
        for job_id in self._graph.job_ids:
            if self._job_state[job_id].is_terminal:
                continue
            if job_id not in self._instances:
                self._finish_job_early(job_id, RunState.CANCELLED, reason)
                continue
            for instance in self._instances[job_id]:
                self._cancel_instance(instance, reason)
            if self._job_state[job_id] in (RunState.PENDING, RunState.BLOCKED):
                # Undecided: never reached runnable
                self._job_state[job_id] = RunState.CANCELLED
                self._store.with_job_result(job_id, RunState.CANCELLED, RunState.CANCELLED, {})
            else:
                self._maybe_finish_job(job_id)

    # ── Transitions ──────────────────────────────────────────────────────────

    def _transition(self, instance: JobInstance, to_state: RunState, reason: str = "") -> None:
        iid = instance.instance_id
        from_state = self._state[iid]
        reason = self._store.redactor.redact(reason)
        record = TransitionRecord(
            instance_id=iid,
            job_id=instance.job_id,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
        )
        self._state[iid] = to_state
        job_run = self._job_runs[iid]
        job_run.state = to_state
        if reason and to_state.is_terminal:
            job_run.reason = reason
        if to_state.is_terminal and job_run.completed_at is None:
            job_run.completed_at = record.at
        self.run_record.transitions.append(record)
        logger.debug("%s: %s → %s (%s)", iid, from_state.value, to_state.value, reason)
        if self._on_transition is not None:
            task = asyncio.create_task(self._on_transition(self.run_record, record))
            self._callbacks.add(task)
            task.add_done_callback(self._callbacks.discard)

    # ── Finalization ─────────────────────────────────────────────────────────

    def _finalize(self) -> None:
        run = self.run_record
        states = set(self._job_state.values())
        if self._token.cancelled:
            run.status = RunStatus.CANCELLED
            run.error_message = run.error_message or self._token.reason or None
        elif RunState.FAILED in states:
            run.status = RunStatus.FAILED
            failed = [j for j, s in self._job_state.items() if s == RunState.FAILED]
            run.error_message = f"failed jobs: {', '.join(failed)}"
        elif RunState.CANCELLED in states:
            run.status = RunStatus.CANCELLED
        else:
            run.status = RunStatus.SUCCEEDED
        outputs = self._call_outputs()
        run.set_outputs(outputs, redacted=self._store.redactor.redact_value(outputs))
        run.completed_at = datetime.now(timezone.utc)

    def _call_outputs(self) -> dict[str, Any]:
        """Evaluate ``workflow_call`` outputs against the final ``jobs`` context."""
        call = self._graph.definition.call_trigger
        if call is None or not call.outputs:
            return {}
        outputs: dict[str, Any] = {}
        snapshot = self._store.snapshot
        for name, spec in call.outputs.items():
            try:
                outputs[name] = self._evaluator.render(spec.value, snapshot)
            except EvaluationError as e:
                logger.warning("Run %s: output '%s' failed: %s", self.run_record.run_id, name, e)
                outputs[name] = None
        return outputs

    # ── Instance execution ───────────────────────────────────────────────────

    async def _instance_task(self, instance: JobInstance, token: CancellationToken) -> None:
        try:
            completion = await self._execute_instance(instance, token)
        except asyncio.CancelledError:
            completion = _Completion(
                instance,
                RunState.CANCELLED,
                RunState.CANCELLED,
                {},
                "force-cancelled after grace period",
            )
        except GantryError as e:
            completion = _Completion(instance, RunState.FAILED, RunState.FAILED, {}, str(e))
        except Exception as e:
            logger.exception("Instance '%s' crashed", instance.instance_id)
            completion = _Completion(
                instance, RunState.FAILED, RunState.FAILED, {}, f"internal error: {e}"
            )
        self._queue.put_nowait(completion)

    async def _execute_instance(
        self, instance: JobInstance, token: CancellationToken
    ) -> _Completion:
        job = self._graph.job(instance.job_id)
        strategy = job.strategy or StrategySpec()
        total = len(self._instances[job.id])
        # The needs-derived status only gates the job's own `if`; steps start clean
        snapshot = self._job_snapshots[job.id].with_contexts(
            matrix=instance.matrix or {},
            strategy=strategy_context(
                self._fail_fast.get(job.id, True), strategy.max_parallel, instance.index, total
            ),
            job={"status": "success", "id": job.id},
        ).with_status(succeeded=True, failed=False, cancelled=token.cancelled)
        scope = InstanceScope(self.run_record, job, instance, token)

        if job.concurrency is None or job.concurrency.inherits:
            result = await self._run_job_body(scope, snapshot)
        else:
            key = to_string(self._evaluator.render(job.concurrency.group, snapshot, required=True))
            cancel_in_progress = self._flag(job.concurrency.cancel_in_progress, snapshot)
            holder = f"{self.run_record.run_id}/{instance.instance_id}"
            admitted = await self._concurrency.acquire(
                key, holder, token, cancel_in_progress=cancel_in_progress
            )
            if not admitted:
                return _Completion(
                    instance,
                    RunState.CANCELLED,
                    RunState.CANCELLED,
                    {},
                    token.reason or f"superseded in concurrency group '{key}'",
                )
            try:
                result = await self._run_job_body(scope, snapshot)
            finally:
                self._concurrency.release(key, holder)

        conclusion = result.outcome
        reason = result.reason
        if result.outcome == RunState.FAILED and self._flag(job.continue_on_error, snapshot):
            conclusion = RunState.SUCCEEDED
            reason = f"{reason or 'failed'} (continue-on-error)"
        return _Completion(
            instance, conclusion, result.outcome, result.outputs, reason, result.child_run_id
        )

    async def _run_job_body(self, scope: InstanceScope, snapshot: ContextSnapshot) -> InstanceResult:
        job = scope.job
        if job.uses:
            if self._resolver is None:
                return InstanceResult(RunState.FAILED, reason="reusable pipelines unavailable")
            body = self._resolver.run_reusable(scope, snapshot)
        else:
            body = self._run_job_steps(scope, snapshot)
        timeout = job.timeout_minutes * 60 if job.timeout_minutes else None
        try:
            return await asyncio.wait_for(body, timeout)
        except asyncio.TimeoutError:
            return InstanceResult(
                RunState.FAILED, reason=f"timed out after {job.timeout_minutes:g} minute(s)"
            )

    async def _run_job_steps(self, scope: InstanceScope, snapshot: ContextSnapshot) -> InstanceResult:
        store = self._store.fork(snapshot)
        env = self._evaluator.render(scope.job.env, snapshot)
        store.with_env({k: to_string(v) for k, v in env.items()})

        await self.run_steps(scope.job.steps, store, scope)

        if scope.token.cancelled:
            return InstanceResult(RunState.CANCELLED, reason=scope.token.reason)
        final = store.snapshot
        outcome = RunState.SUCCEEDED if final.status.succeeded else RunState.FAILED
        reason = "" if outcome == RunState.SUCCEEDED else "a step failed"
        outputs: dict[str, Any] = {}
        for name, expression in scope.job.outputs.items():
            try:
                outputs[name] = self._evaluator.render(expression, final)
            except EvaluationError as e:
                return InstanceResult(RunState.FAILED, outputs, f"output '{name}': {e}")
        return InstanceResult(outcome, outputs, reason)

    # ── Steps ────────────────────────────────────────────────────────────────

    async def run_steps(
        self,
        steps: list[StepDefinition],
        store: ContextStore,
        scope: InstanceScope,
        *,
        depth: int = 0,
    ) -> None:
        """Run steps in order, recording each in ``store``.

        Composite actions are spliced in with their own ``inputs``/``steps``
        namespace. Failures are recorded, never raised.
        """
        for position, step in enumerate(steps):
            label = f"{scope.instance.instance_id} | {step.display_name}"
            if scope.token.cancelled and not store.snapshot.status.cancelled:
                store.mark_cancelled()
            snapshot = store.snapshot
            try:
                should_run = self._evaluator.evaluate_condition(step.if_, snapshot)
            except EvaluationError as e:
                step_logger.error("[%s] if condition failed: %s", label, e)
                store.with_step_result(step.id, RunState.FAILED, RunState.FAILED)
                continue
            if not should_run:
                step_logger.info("[%s] skipped", label)
                store.with_step_result(step.id, RunState.SKIPPED, RunState.SKIPPED)
                continue

            try:
                outcome, outputs = await self._run_step(step, store, scope, depth)
                continue_on_error = self._flag(step.continue_on_error, snapshot)
            except GantryError as e:
                step_logger.error("[%s] %s", label, store.redactor.redact(str(e)))
                outcome, outputs, continue_on_error = RunState.FAILED, {}, False
                try:
                    continue_on_error = self._flag(step.continue_on_error, snapshot)
                except EvaluationError:
                    pass
            conclusion = outcome
            if outcome == RunState.FAILED and continue_on_error:
                conclusion = RunState.SUCCEEDED
                step_logger.warning("[%s] failed (continue-on-error)", label)
            store.with_step_result(step.id or f"__step_{position}", conclusion, outcome, outputs)

    async def _run_step(
        self,
        step: StepDefinition,
        store: ContextStore,
        scope: InstanceScope,
        depth: int,
    ) -> tuple[RunState, dict[str, Any]]:
        snapshot = store.snapshot
        env = dict(snapshot.get("env") or {})
        env.update({k: to_string(v) for k, v in self._evaluator.render(step.env, snapshot).items()})

        action = None
        if step.uses and self._resolver is not None:
            action = self._resolver.get_action(step.uses)
        if action is not None:
            if depth >= self._settings.max_composite_depth:
                raise DefinitionError(
                    ErrorKind.SCHEMA_VIOLATION,
                    f"composite action '{step.uses}' nested deeper than {depth} levels",
                )
            return await self._run_composite(action, step, store, scope, env, depth)

        with_values = self._evaluator.render(step.with_, snapshot)
        run_script = self._evaluator.render(step.run, snapshot) if step.run else None
        timeout_minutes = step.timeout_minutes or self._settings.default_step_timeout_minutes
        request = StepRequest(
            run_id=scope.run.run_id,
            job_id=scope.job.id,
            instance_id=scope.instance.instance_id,
            name=step.display_name,
            step_id=step.id,
            run=to_string(run_script) if run_script is not None else None,
            uses=step.uses,
            with_=with_values,
            env=env,
            shell=step.shell,
            working_directory=step.working_directory or scope.job.working_directory
            or _default_working_directory(self._graph),
            timeout_seconds=timeout_minutes * 60 if timeout_minutes else None,
            runs_on=scope.job.runs_on,
        )
        result = await self._executor(request, scope.token)

        label = f"{scope.instance.instance_id} | {step.display_name}"
        for line in result.logs:
            step_logger.info("[%s] %s", label, store.redactor.redact(line))
        if result.cancelled:
            return RunState.CANCELLED, {}
        if result.timed_out:
            step_logger.error("[%s] timed out after %g minute(s)", label, timeout_minutes)
            return RunState.FAILED, result.outputs
        if result.exit_code != 0:
            step_logger.error("[%s] exited with code %d", label, result.exit_code)
            return RunState.FAILED, result.outputs
        return RunState.SUCCEEDED, result.outputs

    async def _run_composite(
        self,
        action: Any,
        step: StepDefinition,
        store: ContextStore,
        scope: InstanceScope,
        env: dict[str, str],
        depth: int,
    ) -> tuple[RunState, dict[str, Any]]:
        assert self._resolver is not None
        snapshot = store.snapshot
        with_values = self._evaluator.render(step.with_, snapshot)
        inputs = self._resolver.bind_action_inputs(action, with_values, snapshot)
        nested = store.fork(snapshot.with_contexts(inputs=inputs, steps={}, env=env))
        await self.run_steps(action.runs.steps, nested, scope, depth=depth + 1)

        final = nested.snapshot
        outputs = self._resolver.action_outputs(action, final)
        if scope.token.cancelled:
            return RunState.CANCELLED, outputs
        if not final.status.succeeded:
            return RunState.FAILED, outputs
        return RunState.SUCCEEDED, outputs

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _flag(self, value: bool | str | None, snapshot: ContextSnapshot) -> bool:
        """Resolve a boolean-or-expression flag (``fail-fast``, ``continue-on-error``)."""
        if value is None:
            return False
        if isinstance(value, bool):
            return value
        rendered = self._evaluator.render(value, snapshot)
        if isinstance(rendered, str) and rendered.strip().lower() in ("true", "false"):
            return rendered.strip().lower() == "true"
        return truthy(rendered)


def _default_working_directory(graph: DependencyGraph) -> str | None:
    run_defaults = graph.definition.defaults.get("run") or {}
    return run_defaults.get("working-directory")
