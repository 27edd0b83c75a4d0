"""Pipeline graph execution engine.

Matches events against GitHub-Actions-style pipeline definitions, expands
job matrices, builds the job dependency graph, evaluates ``${{ }}``
expressions and schedules job instances under dependency and concurrency
constraints.

Key exports:
    PipelineEngine: event → runs, nested runs, cancellation
    PipelineRegistry: SQLite persistence
    PipelineDefinition, CompositeAction: definition models
    PipelineRun, JobRun, TransitionRecord: runtime state models
"""

from gantry.pipeline.concurrency import CancellationToken, ConcurrencyManager
from gantry.pipeline.context import ContextSnapshot, ContextStore, Redactor, StatusView
from gantry.pipeline.credentials import (
    CredentialProvider,
    EnvCredentialProvider,
    StaticCredentialProvider,
)
from gantry.pipeline.engine import PipelineEngine
from gantry.pipeline.executor import (
    ShellStepExecutor,
    StepExecutor,
    StepRequest,
    StepResult,
)
from gantry.pipeline.expressions import ExpressionEvaluator, ValueKind
from gantry.pipeline.graph import DependencyGraph, GraphBuilder
from gantry.pipeline.hashing import FileHasher, WorkspaceFileHasher
from gantry.pipeline.matrix import MatrixExpander
from gantry.pipeline.models import (
    CompositeAction,
    ConcurrencySpec,
    EventFilter,
    InputSpec,
    JobDefinition,
    JobInstance,
    JobRun,
    MatrixSpec,
    PipelineDefinition,
    PipelineRun,
    RunState,
    RunStatus,
    StepDefinition,
    StrategySpec,
    TransitionRecord,
    TriggerSpec,
)
from gantry.pipeline.registry import PipelineRegistry
from gantry.pipeline.scheduler import RunScheduler, SchedulerSettings
from gantry.pipeline.subpipeline import SubPipelineResolver
from gantry.pipeline.triggers import Activation, TriggerMatcher

__all__ = [
    # Engine
    "PipelineEngine",
    "RunScheduler",
    "SchedulerSettings",
    "SubPipelineResolver",
    # Registry
    "PipelineRegistry",
    # Core components
    "Activation",
    "CancellationToken",
    "ConcurrencyManager",
    "ContextSnapshot",
    "ContextStore",
    "DependencyGraph",
    "ExpressionEvaluator",
    "GraphBuilder",
    "MatrixExpander",
    "Redactor",
    "StatusView",
    "TriggerMatcher",
    "ValueKind",
    # Collaborators
    "CredentialProvider",
    "EnvCredentialProvider",
    "StaticCredentialProvider",
    "FileHasher",
    "WorkspaceFileHasher",
    "ShellStepExecutor",
    "StepExecutor",
    "StepRequest",
    "StepResult",
    # Definition models
    "CompositeAction",
    "ConcurrencySpec",
    "EventFilter",
    "InputSpec",
    "JobDefinition",
    "MatrixSpec",
    "PipelineDefinition",
    "StepDefinition",
    "StrategySpec",
    "TriggerSpec",
    # Runtime state models
    "JobInstance",
    "JobRun",
    "PipelineRun",
    "RunState",
    "RunStatus",
    "TransitionRecord",
]
