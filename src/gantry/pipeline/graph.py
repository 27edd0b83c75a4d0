"""Dependency graph construction and queries.

Key exports:
    GraphBuilder: build() validates ``needs`` edges and expands static matrices
    DependencyGraph: topological order, levels, ancestors/descendants, instances
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from gantry.errors import ErrorKind, GraphError
from gantry.pipeline.matrix import MatrixExpander
from gantry.pipeline.models import JobDefinition, JobInstance, PipelineDefinition

logger = logging.getLogger("gantry.pipeline.graph")


class DependencyGraph:
    """Acyclic job graph for one pipeline definition.

    ``needs`` edges connect whole jobs: a job needing a matrix job waits for
    every instance of it. Instances of a job with a dynamic matrix are
    ``None`` until the scheduler expands them.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        instances: dict[str, list[JobInstance] | None],
    ):
        self.definition = definition
        self._order = list(definition.jobs)
        self._needs: dict[str, list[str]] = {j: list(job.needs) for j, job in definition.jobs.items()}
        self._dependents: dict[str, list[str]] = {j: [] for j in self._order}
        for job_id in self._order:
            for need in self._needs[job_id]:
                self._dependents[need].append(job_id)
        self._instances = instances

    # ── Structure ────────────────────────────────────────────────────────────

    @property
    def job_ids(self) -> list[str]:
        return list(self._order)

    def job(self, job_id: str) -> JobDefinition:
        return self.definition.jobs[job_id]

    def dependencies(self, job_id: str) -> list[str]:
        return list(self._needs[job_id])

    def dependents(self, job_id: str) -> list[str]:
        return list(self._dependents[job_id])

    def roots(self) -> list[str]:
        return [j for j in self._order if not self._needs[j]]

    def ancestors(self, job_id: str) -> list[str]:
        """Transitive ``needs`` of a job, in definition order."""
        return self._closure(job_id, self._needs)

    def descendants(self, job_id: str) -> list[str]:
        """Jobs that transitively need this job, in definition order."""
        return self._closure(job_id, self._dependents)

    def _closure(self, job_id: str, edges: dict[str, list[str]]) -> list[str]:
        seen: set[str] = set()
        stack = list(edges[job_id])
        while stack:
            current = stack.pop()
            if current not in seen:
                seen.add(current)
                stack.extend(edges[current])
        return [j for j in self._order if j in seen]

    def topological_order(self) -> list[str]:
        """Jobs ordered so every job follows its needs; ties keep definition order."""
        return [job_id for level in self.levels() for job_id in level]

    def levels(self) -> list[list[str]]:
        """Group jobs by dependency depth (level 0 has no needs)."""
        depth: dict[str, int] = {}
        remaining = list(self._order)
        while remaining:
            progressed = False
            for job_id in list(remaining):
                needs = self._needs[job_id]
                if all(n in depth for n in needs):
                    depth[job_id] = 1 + max((depth[n] for n in needs), default=-1)
                    remaining.remove(job_id)
                    progressed = True
            if not progressed:  # pragma: no cover - builder rejects cycles
                raise GraphError(ErrorKind.CYCLE_DETECTED, f"cycle among {remaining}")
        levels: list[list[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for job_id in self._order:
            levels[depth[job_id]].append(job_id)
        return levels

    # ── Instances ────────────────────────────────────────────────────────────

    def instances(self, job_id: str) -> list[JobInstance] | None:
        instances = self._instances.get(job_id)
        return list(instances) if instances is not None else None

    def is_deferred(self, job_id: str) -> bool:
        return self._instances.get(job_id) is None

    def set_instances(self, job_id: str, instances: Iterable[JobInstance]) -> None:
        """Record the expansion of a deferred (dynamic-matrix) job."""
        self._instances[job_id] = list(instances)


class GraphBuilder:
    """Validates a definition's ``needs`` edges and builds its graph."""

    def __init__(self, expander: MatrixExpander):
        self._expander = expander

    def build(self, definition: PipelineDefinition) -> DependencyGraph:
        """Build the dependency graph.

        Raises:
            GraphError: UnknownDependency or CycleDetected (naming one cycle).
            DefinitionError: a static matrix exceeds the instance limit.
        """
        for job_id, job in definition.jobs.items():
            for need in job.needs:
                if need not in definition.jobs:
                    raise GraphError(
                        ErrorKind.UNKNOWN_DEPENDENCY,
                        f"job '{job_id}' needs unknown job '{need}'",
                        job=job_id,
                        need=need,
                    )

        cycle = find_cycle({j: list(job.needs) for j, job in definition.jobs.items()})
        if cycle:
            raise GraphError(
                ErrorKind.CYCLE_DETECTED,
                f"dependency cycle: {' -> '.join(cycle)}",
                cycle=cycle,
            )

        instances: dict[str, list[JobInstance] | None] = {}
        for job_id, job in definition.jobs.items():
            if job.matrix is not None and job.matrix.is_dynamic:
                instances[job_id] = None
            else:
                instances[job_id] = self._expander.expand(job)
        logger.debug(
            "Built graph for '%s': %d job(s), %d deferred",
            definition.name,
            len(instances),
            sum(1 for v in instances.values() if v is None),
        )
        return DependencyGraph(definition, instances)


def find_cycle(edges: dict[str, list[str]]) -> list[str] | None:
    """Return one cycle as ``[a, b, ..., a]``, or None if the graph is acyclic."""
    visiting: list[str] = []
    done: set[str] = set()

    def visit(node: str) -> list[str] | None:
        if node in visiting:
            return visiting[visiting.index(node) :] + [node]
        if node in done:
            return None
        visiting.append(node)
        for nxt in edges.get(node, []):
            cycle = visit(nxt)
            if cycle:
                return cycle
        visiting.pop()
        done.add(node)
        return None

    for node in edges:
        cycle = visit(node)
        if cycle:
            return cycle
    return None
