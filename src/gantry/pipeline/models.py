"""Pipeline Pydantic models: definitions and runtime state.

Definitions are validated from an already-parsed tree (mappings, sequences,
scalars); hyphenated keys (``runs-on``, ``continue-on-error``) are accepted via
aliases. Runtime models record one pipeline run and its job instances.

Key exports:
    Definition models: PipelineDefinition, JobDefinition, StepDefinition,
        StrategySpec, MatrixSpec, TriggerSpec, EventFilter, InputSpec,
        ConcurrencySpec, CompositeAction
    Runtime models: JobInstance, JobRun, PipelineRun, TransitionRecord
    Enums: RunState, RunStatus, InputType
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError, model_validator

from gantry.errors import DefinitionError, ErrorKind


# ── Enums ────────────────────────────────────────────────────────────────────


class RunState(str, Enum):
    """Job instance lifecycle states."""

    PENDING = "pending"
    BLOCKED = "blocked"
    RUNNABLE = "runnable"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def result(self) -> str:
        """The word exposed to expressions (``needs.<job>.result``)."""
        return _RESULT_WORDS.get(self, self.value)


TERMINAL_STATES = frozenset(
    {RunState.SUCCEEDED, RunState.FAILED, RunState.SKIPPED, RunState.CANCELLED}
)

_RESULT_WORDS = {
    RunState.SUCCEEDED: "success",
    RunState.FAILED: "failure",
    RunState.SKIPPED: "skipped",
    RunState.CANCELLED: "cancelled",
}


class RunStatus(str, Enum):
    """Pipeline run lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class InputType(str, Enum):
    """Declared type of a dispatch/call input."""

    STRING = "string"
    BOOLEAN = "boolean"
    CHOICE = "choice"
    NUMBER = "number"
    ENVIRONMENT = "environment"


# ── ID validation ────────────────────────────────────────────────────────────

JOB_ID_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")


class _Definition(BaseModel):
    """Base for definition models: accept field names and YAML aliases."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


# ── Trigger Models ───────────────────────────────────────────────────────────


class InputSpec(_Definition):
    """A declared ``workflow_dispatch`` / ``workflow_call`` input."""

    description: str = ""
    type: InputType = InputType.STRING
    required: bool = False
    default: Any = None
    options: list[str] = []

    @model_validator(mode="after")
    def validate_choice(self) -> InputSpec:
        if self.type == InputType.CHOICE and not self.options:
            msg = "choice inputs require 'options'"
            raise ValueError(msg)
        return self


class CallOutputSpec(_Definition):
    """An output a reusable pipeline exposes to its caller."""

    description: str = ""
    value: str


class CallSecretSpec(_Definition):
    description: str = ""
    required: bool = False


class EventFilter(_Definition):
    """Per-event activation filters."""

    branches: list[str] | None = None
    branches_ignore: list[str] | None = Field(None, alias="branches-ignore")
    tags: list[str] | None = None
    tags_ignore: list[str] | None = Field(None, alias="tags-ignore")
    paths: list[str] | None = None
    paths_ignore: list[str] | None = Field(None, alias="paths-ignore")
    types: list[str] | None = None

    inputs: dict[str, InputSpec] = {}
    outputs: dict[str, CallOutputSpec] = {}
    secrets: dict[str, CallSecretSpec | None] = {}

    @model_validator(mode="before")
    @classmethod
    def _coerce_scalars(cls, data: Any) -> Any:
        if data is None:
            return {}
        if isinstance(data, dict):
            data = dict(data)
            for key in ("branches", "branches-ignore", "tags", "tags-ignore", "paths",
                        "paths-ignore", "types"):
                if isinstance(data.get(key), str):
                    data[key] = [data[key]]
        return data

    @model_validator(mode="after")
    def validate_exclusive_filters(self) -> EventFilter:
        for positive, negative in (
            ("branches", "branches_ignore"),
            ("tags", "tags_ignore"),
            ("paths", "paths_ignore"),
        ):
            if getattr(self, positive) is not None and getattr(self, negative) is not None:
                alias = negative.replace("_", "-")
                msg = f"'{positive}' and '{alias}' cannot be used together for one event"
                raise ValueError(msg)
        return self


class TriggerSpec(_Definition):
    """The ``on:`` block, normalized to event name → filter."""

    events: dict[str, EventFilter] = {}
    schedules: list[str] = []

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, TriggerSpec):
            return data
        if isinstance(data, dict) and set(data) <= {"events", "schedules"}:
            return data
        if isinstance(data, str):
            return {"events": {data: {}}}
        if isinstance(data, list):
            return {"events": {str(name): {} for name in data}}
        if isinstance(data, dict):
            events: dict[str, Any] = {}
            schedules: list[str] = []
            for name, config in data.items():
                if name == "schedule":
                    for entry in config or []:
                        if not isinstance(entry, dict) or "cron" not in entry:
                            msg = "schedule entries must be mappings with a 'cron' key"
                            raise ValueError(msg)
                        schedules.append(str(entry["cron"]))
                    events["schedule"] = {}
                else:
                    events[str(name)] = config or {}
            return {"events": events, "schedules": schedules}
        msg = f"'on' must be a string, list or mapping, got {type(data).__name__}"
        raise ValueError(msg)

    @model_validator(mode="after")
    def validate_schedules(self) -> TriggerSpec:
        for expr in self.schedules:
            validate_cron(expr)
        return self


# ── Job Models ───────────────────────────────────────────────────────────────


class ConcurrencySpec(_Definition):
    """A concurrency group; ``group`` is a template resolved at admission."""

    group: str
    cancel_in_progress: bool | str = Field(False, alias="cancel-in-progress")

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"group": data}
        return data

    @property
    def inherits(self) -> bool:
        """``concurrency: inherit`` on a reusable-pipeline call."""
        return self.group == "inherit"


class MatrixSpec(_Definition):
    """Matrix dimensions plus include/exclude; any part may be an expression."""

    dimensions: dict[str, list[Any] | str] = {}
    include: list[dict[str, Any]] | str = []
    exclude: list[dict[str, Any]] | str = []
    expression: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _split(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"expression": data}
        if isinstance(data, dict) and "dimensions" not in data and "expression" not in data:
            data = dict(data)
            include = data.pop("include", [])
            exclude = data.pop("exclude", [])
            return {"dimensions": data, "include": include or [], "exclude": exclude or []}
        return data

    @property
    def is_dynamic(self) -> bool:
        if self.expression is not None:
            return True
        if isinstance(self.include, str) or isinstance(self.exclude, str):
            return True
        return any(isinstance(values, str) for values in self.dimensions.values())


class StrategySpec(_Definition):
    matrix: MatrixSpec | None = None
    fail_fast: bool | str = Field(True, alias="fail-fast")
    max_parallel: int | None = Field(None, alias="max-parallel", ge=1)
    fail_on_empty: bool | None = Field(None, alias="fail-on-empty")


class StepDefinition(_Definition):
    """A single step inside a job or composite action."""

    id: str | None = None
    name: str | None = None
    if_: str | bool | None = Field(None, alias="if")
    run: str | None = None
    uses: str | None = None
    with_: dict[str, Any] = Field({}, alias="with")
    env: dict[str, Any] = {}
    working_directory: str | None = Field(None, alias="working-directory")
    shell: str | None = None
    continue_on_error: bool | str = Field(False, alias="continue-on-error")
    timeout_minutes: float | None = Field(None, alias="timeout-minutes", gt=0)

    @model_validator(mode="after")
    def validate_step(self) -> StepDefinition:
        if bool(self.run) == bool(self.uses):
            msg = f"Step '{self.display_name}': exactly one of 'run' or 'uses' is required"
            raise ValueError(msg)
        if self.id is not None and not JOB_ID_PATTERN.match(self.id):
            msg = f"Step ID '{self.id}' must match pattern {JOB_ID_PATTERN.pattern}"
            raise ValueError(msg)
        return self

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.run:
            return f"Run {self.run.strip().splitlines()[0]}" if self.run.strip() else "Run"
        return f"Run {self.uses}"


class JobDefinition(_Definition):
    """A named unit of work with its own dependency edges."""

    id: str = ""
    name: str | None = None
    runs_on: Any = Field(None, alias="runs-on")
    needs: list[str] = []
    if_: str | bool | None = Field(None, alias="if")
    strategy: StrategySpec | None = None
    uses: str | None = None
    with_: dict[str, Any] = Field({}, alias="with")
    secrets: dict[str, Any] | str | None = None
    steps: list[StepDefinition] = []
    outputs: dict[str, str] = {}
    env: dict[str, Any] = {}
    concurrency: ConcurrencySpec | None = None
    continue_on_error: bool | str = Field(False, alias="continue-on-error")
    timeout_minutes: float | None = Field(None, alias="timeout-minutes", gt=0)
    permissions: dict[str, str] | str | None = None
    defaults: dict[str, Any] = {}
    environment: Any = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_needs(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("needs"), str):
            data = {**data, "needs": [data["needs"]]}
        return data

    @model_validator(mode="after")
    def validate_job(self) -> JobDefinition:
        if self.uses and self.steps:
            msg = f"Job '{self.id}': 'uses' jobs cannot declare 'steps'"
            raise ValueError(msg)
        if not self.uses and not self.steps:
            msg = f"Job '{self.id}': jobs require 'steps' or 'uses'"
            raise ValueError(msg)
        if isinstance(self.secrets, str) and self.secrets != "inherit":
            msg = f"Job '{self.id}': 'secrets' must be a mapping or 'inherit'"
            raise ValueError(msg)
        step_ids = [s.id for s in self.steps if s.id]
        dupes = sorted({sid for sid in step_ids if step_ids.count(sid) > 1})
        if dupes:
            msg = f"Job '{self.id}': duplicate step IDs {dupes}"
            raise ValueError(msg)
        return self

    @property
    def matrix(self) -> MatrixSpec | None:
        return self.strategy.matrix if self.strategy else None

    @property
    def working_directory(self) -> str | None:
        run_defaults = self.defaults.get("run") or {}
        return run_defaults.get("working-directory")


class PipelineDefinition(_Definition):
    """Complete pipeline definition validated from a parsed tree."""

    name: str = ""
    on: TriggerSpec = Field(default_factory=TriggerSpec)
    permissions: dict[str, str] | str | None = None
    env: dict[str, Any] = {}
    concurrency: ConcurrencySpec | None = None
    defaults: dict[str, Any] = {}
    run_name: str | None = Field(None, alias="run-name")
    jobs: dict[str, JobDefinition] = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _assign_job_ids(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("jobs"), dict):
            jobs = {}
            for job_id, job in data["jobs"].items():
                if isinstance(job, dict):
                    job = {**job, "id": job_id}
                jobs[job_id] = job
            data = {**data, "jobs": jobs}
        return data

    @model_validator(mode="after")
    def validate_job_ids(self) -> PipelineDefinition:
        for job_id, job in self.jobs.items():
            if not JOB_ID_PATTERN.match(job_id):
                msg = f"Job ID '{job_id}' must match pattern {JOB_ID_PATTERN.pattern}"
                raise ValueError(msg)
            job.id = job_id
        return self

    @classmethod
    def from_tree(cls, tree: Any, *, name: str | None = None) -> PipelineDefinition:
        """Validate a parsed definition tree.

        YAML 1.1 loaders read a bare ``on:`` key as boolean ``True``; that key
        is mapped back to ``on``.

        Raises:
            DefinitionError: SchemaViolation if keys are absent or mistyped.
        """
        if not isinstance(tree, dict):
            raise DefinitionError(
                ErrorKind.SCHEMA_VIOLATION,
                f"pipeline definition must be a mapping, got {type(tree).__name__}",
            )
        tree = dict(tree)
        if True in tree and "on" not in tree:
            tree["on"] = tree.pop(True)
        if name and not tree.get("name"):
            tree["name"] = name
        try:
            return cls.model_validate(tree)
        except ValidationError as e:
            raise DefinitionError(ErrorKind.SCHEMA_VIOLATION, _format_validation_error(e)) from e

    def get_job(self, job_id: str) -> JobDefinition | None:
        return self.jobs.get(job_id)

    @property
    def call_trigger(self) -> EventFilter | None:
        """The ``workflow_call`` filter when this pipeline is reusable."""
        return self.on.events.get("workflow_call")

    def get_reusable_refs(self) -> set[str]:
        """Return the set of pipeline references used by ``uses`` jobs."""
        return {job.uses for job in self.jobs.values() if job.uses}


class ActionInputSpec(_Definition):
    description: str = ""
    required: bool = False
    default: Any = None


class ActionOutputSpec(_Definition):
    description: str = ""
    value: str = ""


class CompositeRuns(_Definition):
    using: str
    steps: list[StepDefinition] = []

    @model_validator(mode="after")
    def validate_composite(self) -> CompositeRuns:
        if self.using != "composite":
            msg = f"only composite actions are supported, got using: '{self.using}'"
            raise ValueError(msg)
        if not self.steps:
            msg = "composite actions require 'steps'"
            raise ValueError(msg)
        return self


class CompositeAction(BaseModel):
    """An inlineable step sequence with its own input/output namespace."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = ""
    description: str = ""
    inputs: dict[str, ActionInputSpec] = {}
    outputs: dict[str, ActionOutputSpec] = {}
    runs: CompositeRuns

    @classmethod
    def from_tree(cls, tree: Any, *, name: str | None = None) -> CompositeAction:
        if not isinstance(tree, dict):
            raise DefinitionError(
                ErrorKind.SCHEMA_VIOLATION,
                f"action definition must be a mapping, got {type(tree).__name__}",
            )
        if name and not tree.get("name"):
            tree = {**tree, "name": name}
        try:
            return cls.model_validate(tree)
        except ValidationError as e:
            raise DefinitionError(ErrorKind.SCHEMA_VIOLATION, _format_validation_error(e)) from e


# ── Runtime State Models ─────────────────────────────────────────────────────


class JobInstance(BaseModel):
    """One concrete instance of a job (one matrix row, or the job itself)."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    index: int = 0
    matrix: dict[str, Any] | None = None

    @property
    def instance_id(self) -> str:
        if self.matrix is None:
            return self.job_id
        values = ", ".join(_display_value(v) for v in self.matrix.values())
        return f"{self.job_id} ({values})"

    @property
    def matrix_key(self) -> str | None:
        if self.matrix is None:
            return None
        return json.dumps(self.matrix, sort_keys=True, default=str)


class TransitionRecord(BaseModel):
    """One state transition of a job instance."""

    instance_id: str
    job_id: str
    from_state: RunState
    to_state: RunState
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: str = ""


class JobRun(BaseModel):
    """Runtime state of a single job instance."""

    run_id: str
    instance_id: str
    job_id: str
    matrix: dict[str, Any] | None = None

    state: RunState = RunState.PENDING
    outcome: RunState | None = None  # Pre-continue-on-error result
    outputs: dict[str, Any] = {}
    reason: str = ""
    child_run_id: str | None = None

    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class PipelineRun(BaseModel):
    """Runtime state of a pipeline execution."""

    run_id: str
    pipeline_name: str
    event_name: str | None = None
    delivery_id: str | None = None

    status: RunStatus = RunStatus.QUEUED
    concurrency_group: str | None = None

    # Nested run support
    parent_run_id: str | None = None
    parent_job_id: str | None = None
    nesting_depth: int = 0

    inputs: dict[str, Any] = {}
    outputs: dict[str, Any] = {}

    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    error_message: str | None = None

    jobs: list[JobRun] = []
    transitions: list[TransitionRecord] = []

    # Unredacted workflow_call outputs for the calling job; never serialized
    _call_outputs: dict[str, Any] = PrivateAttr(default_factory=dict)

    @property
    def is_finished(self) -> bool:
        return self.status in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)

    @property
    def exit_code(self) -> int:
        """CLI exit code mirroring the terminal state."""
        return {RunStatus.SUCCEEDED: 0, RunStatus.CANCELLED: 3}.get(self.status, 1)

    def get_job_run(self, instance_id: str) -> JobRun | None:
        for job_run in self.jobs:
            if job_run.instance_id == instance_id:
                return job_run
        return None

    @property
    def call_outputs(self) -> dict[str, Any]:
        return self._call_outputs

    def set_outputs(self, outputs: dict[str, Any], *, redacted: dict[str, Any]) -> None:
        """Record outputs: ``redacted`` is what gets stored and shown."""
        self._call_outputs = dict(outputs)
        self.outputs = redacted


# ── Helpers ──────────────────────────────────────────────────────────────────


_CRON_FIELDS = (
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day-of-month", 1, 31, {}),
    (
        "month",
        1,
        12,
        {m: i + 1 for i, m in enumerate(
            ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"]
        )},
    ),
    (
        "day-of-week",
        0,
        7,
        {d: i for i, d in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])},
    ),
)

_CRON_ITEM_RE = re.compile(r"^(\*|[0-9a-z]+(?:-[0-9a-z]+)?)(?:/(\d+))?$")


def validate_cron(expression: str) -> None:
    """Validate a five-field cron expression.

    Raises DefinitionError(InvalidSchedule) on invalid syntax. Time is never
    evaluated here; an external timer raises ``schedule`` events.
    """
    fields = expression.split()
    if len(fields) != 5:
        raise DefinitionError(
            ErrorKind.INVALID_SCHEDULE,
            f"cron '{expression}' must have 5 fields, got {len(fields)}",
        )
    for value, (field_name, low, high, names) in zip(fields, _CRON_FIELDS):
        for item in value.lower().split(","):
            match = _CRON_ITEM_RE.match(item)
            if not match:
                raise DefinitionError(
                    ErrorKind.INVALID_SCHEDULE,
                    f"cron '{expression}': invalid {field_name} item '{item}'",
                )
            base, step = match.group(1), match.group(2)
            if step is not None and int(step) == 0:
                raise DefinitionError(
                    ErrorKind.INVALID_SCHEDULE,
                    f"cron '{expression}': {field_name} step must be positive",
                )
            if base == "*":
                continue
            bounds = [_cron_value(part, names) for part in base.split("-")]
            for bound in bounds:
                if bound is None or not low <= bound <= high:
                    raise DefinitionError(
                        ErrorKind.INVALID_SCHEDULE,
                        f"cron '{expression}': {field_name} value '{base}' out of range "
                        f"{low}-{high}",
                    )
            if len(bounds) == 2 and bounds[0] > bounds[1]:
                raise DefinitionError(
                    ErrorKind.INVALID_SCHEDULE,
                    f"cron '{expression}': {field_name} range '{base}' is reversed",
                )


def _cron_value(token: str, names: dict[str, int]) -> int | None:
    if token.isdigit():
        return int(token)
    return names.get(token)


def _display_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict):
        return ", ".join(_display_value(v) for v in value.values())
    return str(value)


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item["loc"])
        parts.append(f"{loc}: {item['msg']}" if loc else item["msg"])
    return "; ".join(parts)
