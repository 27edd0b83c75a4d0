"""Trigger matching: does an event activate a pipeline?

Applies the ``on:`` block of a definition to an :class:`Event`: the event
name, activity ``types``, branch/tag filters (``pull_request`` filters apply
to the base branch), path filters, and declared inputs.

Glob syntax for filters: ``*`` matches within one path segment, ``**``
across segments, ``?`` one character, ``[...]`` a character class. Inside a
list, ``!pattern`` removes values matched by earlier patterns.

Key exports:
    TriggerMatcher: match() → Activation
    Activation: activated flag plus the github/inputs seed contexts
    bind_inputs: validate and coerce supplied inputs against declarations
    glob_match, filter_match: the filter primitives
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from gantry.errors import ErrorKind, TriggerError
from gantry.models import Event
from gantry.pipeline.models import EventFilter, InputSpec, InputType, PipelineDefinition

logger = logging.getLogger("gantry.pipeline.triggers")

# Activity types that run when ``types`` is not given
_DEFAULT_TYPES: dict[str, tuple[str, ...]] = {
    "pull_request": ("opened", "synchronize", "reopened"),
    "pull_request_target": ("opened", "synchronize", "reopened"),
}

_PR_EVENTS = frozenset(_DEFAULT_TYPES)


@dataclass(frozen=True)
class Activation:
    """Outcome of matching one event against one definition."""

    activated: bool
    seed: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    @property
    def inputs(self) -> dict[str, Any]:
        return self.seed.get("inputs", {})

    @property
    def github(self) -> dict[str, Any]:
        return self.seed.get("github", {})


# ── Glob matching ────────────────────────────────────────────────────────────


@lru_cache(maxsize=512)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    out: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        char = pattern[i]
        if char == "*":
            if pattern.startswith("**", i):
                i += 2
                if i < n and pattern[i] == "/":
                    out.append("(?:.*/)?")
                    i += 1
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif char == "?":
            out.append("[^/]")
        elif char == "[":
            end = pattern.find("]", i + 1)
            if end < 0:
                out.append(re.escape(char))
            else:
                body = pattern[i + 1 : end].replace("\\", "\\\\")
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = end + 1
                continue
        else:
            out.append(re.escape(char))
        i += 1
    return re.compile("^" + "".join(out) + "$")


def glob_match(pattern: str, value: str) -> bool:
    return glob_to_regex(pattern).match(value) is not None


def filter_match(patterns: list[str], value: str) -> bool:
    """Ordered match: later ``!pattern`` entries exclude earlier matches."""
    matched = False
    for pattern in patterns:
        if pattern.startswith("!"):
            if matched and glob_match(pattern[1:], value):
                matched = False
        elif not matched and glob_match(pattern, value):
            matched = True
    return matched


# ── Input binding ────────────────────────────────────────────────────────────


def bind_inputs(
    declared: Mapping[str, InputSpec],
    supplied: Mapping[str, Any] | None,
    *,
    source: str = "workflow_dispatch",
) -> dict[str, Any]:
    """Validate supplied inputs against declarations and apply defaults.

    Raises:
        TriggerError: MissingRequiredInput, InvalidChoice or InvalidInputType.
    """
    supplied = dict(supplied or {})
    bound: dict[str, Any] = {}
    for name, spec in declared.items():
        raw = supplied.get(name)
        if raw is not None:
            value = _coerce_input(name, spec, raw)
        elif spec.default is not None:
            value = _coerce_input(name, spec, spec.default)
        elif spec.required:
            raise TriggerError(
                ErrorKind.MISSING_REQUIRED_INPUT,
                f"{source}: required input '{name}' was not supplied",
                input=name,
            )
        else:
            value = False if spec.type == InputType.BOOLEAN else None
        if spec.type == InputType.CHOICE and value is not None and value not in spec.options:
            raise TriggerError(
                ErrorKind.INVALID_CHOICE,
                f"{source}: input '{name}' must be one of {spec.options}, got '{value}'",
                input=name,
            )
        bound[name] = value
    for name in supplied:
        if name not in declared:
            logger.warning("%s: ignoring undeclared input '%s'", source, name)
    return bound


def _coerce_input(name: str, spec: InputSpec, value: Any) -> Any:
    match spec.type:
        case InputType.BOOLEAN:
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.strip().lower() in ("true", "false"):
                return value.strip().lower() == "true"
        case InputType.NUMBER:
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return value
            if isinstance(value, str):
                try:
                    number = float(value)
                except ValueError:
                    pass
                else:
                    return int(number) if number.is_integer() else number
        case _:
            if isinstance(value, bool):
                return "true" if value else "false"
            if isinstance(value, (str, int, float)):
                return str(value)
    raise TriggerError(
        ErrorKind.INVALID_INPUT_TYPE,
        f"input '{name}' expects {spec.type.value}, got {value!r}",
        input=name,
    )


# ── Trigger Matcher ──────────────────────────────────────────────────────────


class TriggerMatcher:
    """Decides whether events activate one pipeline definition.

    Usage::

        activation = TriggerMatcher(definition).match(event)
        if activation.activated:
            ...  # seed contexts: activation.github, activation.inputs
    """

    def __init__(self, definition: PipelineDefinition):
        self._definition = definition

    @property
    def schedules(self) -> list[str]:
        """Cron expressions for an external timer to raise ``schedule`` events."""
        return list(self._definition.on.schedules)

    @property
    def event_names(self) -> list[str]:
        return list(self._definition.on.events)

    def match(self, event: Event) -> Activation:
        """Match an event.

        Raises:
            TriggerError: the event matched but its inputs are invalid.
        """
        event_filter = self._definition.on.events.get(event.name)
        if event_filter is None:
            return Activation(False, reason=f"event '{event.name}' not declared")

        reason = self._reject_reason(event, event_filter)
        if reason:
            logger.debug("Pipeline '%s' not activated: %s", self._definition.name, reason)
            return Activation(False, reason=reason)

        inputs: dict[str, Any] = {}
        if event.name in ("workflow_dispatch", "workflow_call"):
            inputs = bind_inputs(event_filter.inputs, event.inputs, source=event.name)
        return Activation(True, seed={"github": github_context(event), "inputs": inputs})

    def _reject_reason(self, event: Event, event_filter: EventFilter) -> str:
        types = event_filter.types
        if types is None:
            types = list(_DEFAULT_TYPES.get(event.name, ()))
        if types and event.action is not None and event.action not in types:
            return f"activity type '{event.action}' not in {types}"

        reason = self._ref_reason(event, event_filter)
        if reason:
            return reason
        return self._paths_reason(event, event_filter)

    @staticmethod
    def _ref_reason(event: Event, event_filter: EventFilter) -> str:
        has_branch_filter = (
            event_filter.branches is not None or event_filter.branches_ignore is not None
        )
        has_tag_filter = event_filter.tags is not None or event_filter.tags_ignore is not None
        if not has_branch_filter and not has_tag_filter:
            return ""

        if event.name in _PR_EVENTS:
            ref = event.base_ref
            kind = "branch"
        else:
            ref = event.ref
            kind = "tag" if ref and ref.startswith("refs/tags/") else "branch"
        if not ref:
            return "event carries no ref to match branch/tag filters against"
        name = _short_ref(ref)

        if kind == "tag":
            if not has_tag_filter:
                return f"tag '{name}' pushed but only branch filters are declared"
            positive, ignore = event_filter.tags, event_filter.tags_ignore
        else:
            if not has_branch_filter:
                return f"branch '{name}' but only tag filters are declared"
            positive, ignore = event_filter.branches, event_filter.branches_ignore

        if positive is not None and not filter_match(positive, name):
            return f"{kind} '{name}' does not match {positive}"
        if ignore is not None and filter_match(ignore, name):
            return f"{kind} '{name}' is ignored by {ignore}"
        return ""

    @staticmethod
    def _paths_reason(event: Event, event_filter: EventFilter) -> str:
        files = event.changed_files
        if files is None:
            return ""
        if event_filter.paths is not None:
            if not any(filter_match(event_filter.paths, f) for f in files):
                return f"no changed file matches {event_filter.paths}"
        if event_filter.paths_ignore is not None and files:
            if all(filter_match(event_filter.paths_ignore, f) for f in files):
                return f"every changed file is ignored by {event_filter.paths_ignore}"
        return ""


def github_context(event: Event) -> dict[str, Any]:
    """Build the ``github`` context from an event."""
    ref = event.ref
    payload = event.payload
    context: dict[str, Any] = {
        "event_name": event.name,
        "event": payload.get("event", payload),
        "ref": ref,
        "ref_name": _short_ref(ref) if ref else None,
        "ref_type": ("tag" if ref.startswith("refs/tags/") else "branch") if ref else None,
        "base_ref": payload.get("base_ref"),
        "head_ref": payload.get("head_ref"),
        "sha": payload.get("sha"),
        "actor": payload.get("actor"),
        "repository": payload.get("repository"),
    }
    if event.delivery_id:
        context["delivery_id"] = event.delivery_id
    return context


def _short_ref(ref: str) -> str:
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix) :]
    return ref
