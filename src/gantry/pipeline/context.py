"""Context snapshots: the namespaces expressions read from.

A run's contexts (``github``, ``env``, ``vars``, ``secrets``, ``needs``,
``matrix``, ``strategy``, ``steps``, ``inputs``, ``jobs``, ``job``) are held in
an immutable :class:`ContextSnapshot`. The :class:`ContextStore` is the only
writer: each job or step completion produces a fresh snapshot, so every
evaluation reads a consistent view.

Key exports:
    ContextSnapshot: frozen context mapping plus a StatusView
    StatusView: what the status functions (success/failure/cancelled) see
    ContextStore: builds successive snapshots for one run or one job instance
    Redactor: masks registered secret values in text
    freeze, thaw: convert between plain and frozen nested values
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Any

from gantry.pipeline.models import RunState

logger = logging.getLogger("gantry.pipeline.context")

CONTEXT_NAMES = (
    "github",
    "env",
    "vars",
    "secrets",
    "needs",
    "matrix",
    "strategy",
    "steps",
    "inputs",
    "jobs",
    "job",
)

REDACTED = "***"


def freeze(value: Any) -> Any:
    """Recursively convert mappings to read-only proxies and lists to tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({str(k): freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of :func:`freeze`: plain dicts and lists."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class StatusView:
    """Run/job status as seen from the point of evaluation.

    ``succeeded`` is false once a prior step or job concluded failure (or a
    needed job did not succeed). ``failed`` is true when any prior outcome
    failed, including failures masked by continue-on-error.
    """

    succeeded: bool = True
    failed: bool = False
    cancelled: bool = False


class ContextSnapshot:
    """Immutable mapping of context name to frozen nested value."""

    __slots__ = ("_contexts", "status")

    def __init__(
        self,
        contexts: Mapping[str, Any] | None = None,
        status: StatusView | None = None,
    ):
        self._contexts = freeze(contexts or {})
        self.status = status or StatusView()

    def __getitem__(self, name: str) -> Any:
        return self._contexts[name]

    def __contains__(self, name: object) -> bool:
        return name in self._contexts

    def get(self, name: str, default: Any = None) -> Any:
        return self._contexts.get(name, default)

    def keys(self) -> Iterable[str]:
        return self._contexts.keys()

    def as_dict(self) -> dict[str, Any]:
        return thaw(self._contexts)

    def with_contexts(self, **updates: Any) -> ContextSnapshot:
        """Return a new snapshot with the named contexts replaced."""
        merged = dict(self._contexts)
        merged.update(updates)
        return ContextSnapshot(merged, self.status)

    def with_status(self, **changes: bool) -> ContextSnapshot:
        return ContextSnapshot(self._contexts, replace(self.status, **changes))

    def __repr__(self) -> str:
        return f"ContextSnapshot(contexts={sorted(self._contexts)}, status={self.status})"


class Redactor:
    """Masks secret values in text before it is logged or recorded."""

    def __init__(self, secrets: Iterable[str] = ()):
        self._values: set[str] = set()
        for value in secrets:
            self.add(value)

    def add(self, value: Any) -> None:
        if value is None:
            return
        text = str(value)
        if not text.strip():
            return
        self._values.add(text)
        # Multi-line secrets are also masked line by line
        for line in text.splitlines():
            if line.strip():
                self._values.add(line)

    def redact(self, text: str) -> str:
        if not self._values or not text:
            return text
        for value in sorted(self._values, key=len, reverse=True):
            text = text.replace(value, REDACTED)
        return text

    def redact_value(self, value: Any) -> Any:
        """Redact every string inside an evaluated result (outputs, rendered values)."""
        if isinstance(value, str):
            return self.redact(value)
        if isinstance(value, Mapping):
            return {k: self.redact_value(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.redact_value(v) for v in value]
        return value

    def __len__(self) -> int:
        return len(self._values)


class ContextStore:
    """Sole writer of context snapshots for one run (or one job instance).

    Usage::

        store = ContextStore.seed(github=..., inputs=..., env=..., secrets=...)
        job_snapshot = store.for_job("build", needs=[], ancestors=[])
        store.with_job_result("build", RunState.SUCCEEDED, RunState.SUCCEEDED, {...})
    """

    def __init__(self, snapshot: ContextSnapshot, redactor: Redactor | None = None):
        self._snapshot = snapshot
        self.redactor = redactor or Redactor()
        self._outcomes: dict[str, RunState] = {}
        self._conclusions: dict[str, RunState] = {}

    @classmethod
    def seed(
        cls,
        *,
        github: Mapping[str, Any] | None = None,
        inputs: Mapping[str, Any] | None = None,
        env: Mapping[str, Any] | None = None,
        vars: Mapping[str, Any] | None = None,
        secrets: Mapping[str, Any] | None = None,
        redactor: Redactor | None = None,
    ) -> ContextStore:
        """Create a store holding the run-wide contexts."""
        redactor = redactor or Redactor()
        for value in (secrets or {}).values():
            redactor.add(value)
        snapshot = ContextSnapshot(
            {
                "github": github or {},
                "inputs": inputs or {},
                "env": env or {},
                "vars": vars or {},
                "secrets": secrets or {},
                "needs": {},
                "jobs": {},
                "steps": {},
                "matrix": {},
                "strategy": {},
                "job": {},
            }
        )
        return cls(snapshot, redactor)

    @property
    def snapshot(self) -> ContextSnapshot:
        return self._snapshot

    def fork(self, snapshot: ContextSnapshot | None = None) -> ContextStore:
        """Create an instance-local store sharing this store's redactor."""
        return ContextStore(snapshot or self._snapshot, self.redactor)

    # ── Writes ───────────────────────────────────────────────────────────────

    def with_env(self, env: Mapping[str, Any]) -> ContextSnapshot:
        """Layer ``env`` over the current env context."""
        merged = dict(self._snapshot.get("env") or {})
        merged.update(env)
        self._snapshot = self._snapshot.with_contexts(env=merged)
        return self._snapshot

    def with_job_result(
        self,
        job_id: str,
        conclusion: RunState,
        outcome: RunState,
        outputs: Mapping[str, Any] | None = None,
    ) -> ContextSnapshot:
        """Record a terminal job result under ``jobs.<job_id>``."""
        self._conclusions[job_id] = conclusion
        self._outcomes[job_id] = outcome
        jobs = dict(self._snapshot.get("jobs") or {})
        jobs[job_id] = {"result": conclusion.result, "outputs": dict(outputs or {})}
        self._snapshot = self._snapshot.with_contexts(jobs=jobs)
        return self._snapshot

    def with_step_result(
        self,
        step_id: str | None,
        conclusion: RunState,
        outcome: RunState,
        outputs: Mapping[str, Any] | None = None,
    ) -> ContextSnapshot:
        """Record a finished step and fold it into the status view."""
        snapshot = self._snapshot
        if step_id:
            steps = dict(snapshot.get("steps") or {})
            steps[step_id] = {
                "outputs": dict(outputs or {}),
                "outcome": outcome.result,
                "conclusion": conclusion.result,
            }
            snapshot = snapshot.with_contexts(steps=steps)
        status = snapshot.status
        if conclusion == RunState.FAILED:
            status = replace(status, succeeded=False)
        if outcome == RunState.FAILED:
            status = replace(status, failed=True)
        self._snapshot = ContextSnapshot(dict(snapshot._contexts), status)
        return self._snapshot

    def mark_cancelled(self) -> ContextSnapshot:
        self._snapshot = self._snapshot.with_status(cancelled=True)
        return self._snapshot

    # ── Derived reads ────────────────────────────────────────────────────────

    def conclusion(self, job_id: str) -> RunState | None:
        return self._conclusions.get(job_id)

    def outcome(self, job_id: str) -> RunState | None:
        return self._outcomes.get(job_id)

    def for_job(
        self,
        job_id: str,
        *,
        needs: Iterable[str],
        ancestors: Iterable[str],
        matrix: Mapping[str, Any] | None = None,
        strategy: Mapping[str, Any] | None = None,
        cancelled: bool = False,
    ) -> ContextSnapshot:
        """Build the snapshot a job's ``if``, matrix and steps are evaluated against.

        ``needs`` holds only the direct dependencies. The status view
        reflects the direct needs' conclusions and every ancestor's outcome.
        """
        jobs = self._snapshot.get("jobs") or {}
        needs = list(needs)
        needs_ctx = {name: jobs.get(name, {"result": None, "outputs": {}}) for name in needs}
        succeeded = all(self._conclusions.get(name) == RunState.SUCCEEDED for name in needs)
        failed = any(self._outcomes.get(name) == RunState.FAILED for name in ancestors)
        status = StatusView(succeeded=succeeded, failed=failed, cancelled=cancelled)
        contexts = dict(self._snapshot._contexts)
        contexts.update(
            needs=needs_ctx,
            matrix=dict(matrix or {}),
            strategy=dict(strategy or {}),
            steps={},
            job={"status": "success" if succeeded else "failure", "id": job_id},
        )
        return ContextSnapshot(contexts, status)
