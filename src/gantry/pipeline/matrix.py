"""Matrix expansion: one job definition → its concrete job instances.

Rows are the cross product of the dimensions, with the first declared
dimension varying fastest. ``include`` entries merge into every product row
whose original-dimension values they match, or are appended as extra rows;
``exclude`` entries then drop every row matching all of their fields. Exact
duplicate rows are collapsed, keeping the first.
"""

from __future__ import annotations

import itertools
import json
import logging
from collections.abc import Mapping
from typing import Any

from gantry.errors import DefinitionError, ErrorKind
from gantry.pipeline.context import ContextSnapshot, thaw
from gantry.pipeline.expressions import ExpressionEvaluator
from gantry.pipeline.models import JobDefinition, JobInstance, MatrixSpec

logger = logging.getLogger("gantry.pipeline.matrix")

DEFAULT_MAX_INSTANCES = 256


def expand_rows(
    dimensions: Mapping[str, list[Any]],
    include: list[Mapping[str, Any]] | None = None,
    exclude: list[Mapping[str, Any]] | None = None,
) -> list[dict[str, Any]]:
    """Expand concrete dimension lists into ordered matrix rows."""
    names = list(dimensions)
    rows: list[dict[str, Any]] = []
    if names and all(dimensions[n] for n in names):
        # product() varies its last argument fastest, so feed it reversed
        for combo in itertools.product(*(dimensions[n] for n in reversed(names))):
            rows.append(dict(zip(names, reversed(combo))))

    original = set(names)
    product_rows = list(rows)
    for entry in include or []:
        matched = False
        for row in product_rows:
            if all(row.get(k) == v for k, v in entry.items() if k in original):
                row.update({k: v for k, v in entry.items() if k not in original})
                matched = True
        if not matched:
            rows.append(dict(entry))

    for entry in exclude or []:
        rows = [row for row in rows if not _row_matches(row, entry)]

    unique: list[dict[str, Any]] = []
    seen: set[str] = set()
    for row in rows:
        key = json.dumps(row, sort_keys=True, default=str)
        if key not in seen:
            seen.add(key)
            unique.append(row)
    return unique


def _row_matches(row: Mapping[str, Any], entry: Mapping[str, Any]) -> bool:
    for key, value in entry.items():
        if key not in row:
            return False
        actual = row[key]
        if isinstance(value, Mapping) and isinstance(actual, Mapping):
            if not _row_matches(actual, value):
                return False
        elif actual != value:
            return False
    return True


class MatrixExpander:
    """Turns a job's strategy matrix into JobInstances.

    Static matrices expand without a snapshot; dynamic ones (any part a
    ``${{ }}`` expression) need the job's snapshot, so the scheduler expands
    them once the job's needs are terminal.
    """

    def __init__(
        self,
        evaluator: ExpressionEvaluator,
        *,
        max_instances: int = DEFAULT_MAX_INSTANCES,
    ):
        self._evaluator = evaluator
        self._max_instances = max_instances

    def expand(
        self, job: JobDefinition, snapshot: ContextSnapshot | None = None
    ) -> list[JobInstance]:
        matrix = job.matrix
        if matrix is None:
            return [JobInstance(job_id=job.id)]
        if matrix.is_dynamic:
            if snapshot is None:
                msg = f"job '{job.id}': dynamic matrix needs a context snapshot"
                raise ValueError(msg)
            matrix = self._resolve(job.id, matrix, snapshot)

        rows = expand_rows(
            matrix.dimensions,  # type: ignore[arg-type]
            matrix.include,  # type: ignore[arg-type]
            matrix.exclude,  # type: ignore[arg-type]
        )
        if len(rows) > self._max_instances:
            raise DefinitionError(
                ErrorKind.SCHEMA_VIOLATION,
                f"job '{job.id}': matrix expands to {len(rows)} instances "
                f"(limit {self._max_instances})",
                job=job.id,
            )
        logger.debug("Job '%s' matrix expanded to %d instance(s)", job.id, len(rows))
        return [JobInstance(job_id=job.id, index=i, matrix=row) for i, row in enumerate(rows)]

    def _resolve(self, job_id: str, matrix: MatrixSpec, snapshot: ContextSnapshot) -> MatrixSpec:
        """Evaluate the dynamic parts of a matrix into concrete lists."""
        render = self._evaluator.render
        if matrix.expression is not None:
            value = thaw(render(matrix.expression, snapshot, required=True))
            if not isinstance(value, dict):
                raise DefinitionError(
                    ErrorKind.SCHEMA_VIOLATION,
                    f"job '{job_id}': matrix expression must evaluate to an object",
                    job=job_id,
                )
            matrix = MatrixSpec.model_validate(value)
            if matrix.is_dynamic:
                return self._resolve(job_id, matrix, snapshot)
            return matrix

        dimensions: dict[str, list[Any]] = {}
        for name, values in matrix.dimensions.items():
            resolved = thaw(render(values, snapshot))
            if not isinstance(resolved, list):
                raise DefinitionError(
                    ErrorKind.SCHEMA_VIOLATION,
                    f"job '{job_id}': matrix dimension '{name}' must be a list",
                    job=job_id,
                )
            dimensions[name] = resolved
        include = thaw(render(matrix.include, snapshot)) or []
        exclude = thaw(render(matrix.exclude, snapshot)) or []
        for part, value in (("include", include), ("exclude", exclude)):
            if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
                raise DefinitionError(
                    ErrorKind.SCHEMA_VIOLATION,
                    f"job '{job_id}': matrix '{part}' must be a list of objects",
                    job=job_id,
                )
        return MatrixSpec(dimensions=dimensions, include=include, exclude=exclude)


def strategy_context(
    fail_fast: bool, max_parallel: int | None, index: int, total: int
) -> dict[str, Any]:
    """The ``strategy`` context for one instance."""
    return {
        "fail-fast": fail_fast,
        "job-index": index,
        "job-total": total,
        "max-parallel": max_parallel if max_parallel is not None else total,
    }
