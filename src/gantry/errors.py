"""Error taxonomy for Gantry.

Every error carries a ``kind`` so callers can branch on the failure class
without parsing messages:

    DefinitionError: bad definition tree, detected at load/build time, fatal
        to the run, never retried.
    GraphError: dependency-graph subset of DefinitionError.
    TriggerError: invalid activation (inputs); the pipeline simply does not run.
    EvaluationError: a single expression failed; fatal only to its consumer.
    ExecutionError: the step execution collaborator failed.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Machine-readable failure classes."""

    # Definition
    SCHEMA_VIOLATION = "SchemaViolation"
    UNKNOWN_DEPENDENCY = "UnknownDependency"
    CYCLE_DETECTED = "CycleDetected"
    UNKNOWN_PIPELINE = "UnknownPipeline"
    INVALID_SCHEDULE = "InvalidSchedule"

    # Trigger
    MISSING_REQUIRED_INPUT = "MissingRequiredInput"
    INVALID_CHOICE = "InvalidChoice"
    INVALID_INPUT_TYPE = "InvalidInputType"

    # Evaluation
    UNDEFINED_REFERENCE = "UndefinedReference"
    MALFORMED_JSON = "MalformedJson"
    ARITY_MISMATCH = "ArityMismatch"
    UNKNOWN_FUNCTION = "UnknownFunction"
    INVALID_SYNTAX = "InvalidSyntax"

    # Execution
    STEP_FAILED = "StepFailed"
    TIMED_OUT = "TimedOut"


class GantryError(Exception):
    """Base class for all Gantry errors."""

    def __init__(self, kind: ErrorKind, message: str, **details: object):
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.message = message
        self.details = details


class DefinitionError(GantryError):
    """The pipeline definition is malformed."""


class GraphError(DefinitionError):
    """The job dependency graph is invalid (unknown need or cycle)."""


class TriggerError(GantryError):
    """An event could not activate a pipeline because of its inputs."""


class EvaluationError(GantryError):
    """An expression could not be evaluated."""


class ExecutionError(GantryError):
    """The step execution collaborator reported a failure."""
