"""Tests for trigger matching: event names, filters, globs and input binding."""

from __future__ import annotations

import pytest

from gantry.errors import ErrorKind, TriggerError
from gantry.models import Event
from gantry.pipeline.models import InputSpec, PipelineDefinition
from gantry.pipeline.triggers import TriggerMatcher, bind_inputs, filter_match, glob_match


def make_matcher(on) -> TriggerMatcher:
    definition = PipelineDefinition.from_tree(
        {"on": on, "jobs": {"build": {"steps": [{"run": "make"}]}}}, name="ci"
    )
    return TriggerMatcher(definition)


def push(ref: str, files: list[str] | None = None) -> Event:
    payload = {"ref": ref, "sha": "abc", "actor": "octo"}
    if files is not None:
        payload["changed_files"] = files
    return Event(name="push", payload=payload)


def pull_request(action: str, base: str = "main") -> Event:
    return Event(
        name="pull_request",
        payload={"action": action, "ref": "refs/pull/1/merge", "base_ref": base},
    )


# ── Globs ────────────────────────────────────────────────────────────────────


class TestGlobs:
    def test_single_star_stays_in_segment(self):
        assert glob_match("release/*", "release/1.0")
        assert not glob_match("release/*", "release/1.0/hotfix")

    def test_double_star_crosses_segments(self):
        assert glob_match("release/**", "release/1.0/hotfix")
        assert glob_match("**/*.py", "src/pkg/mod.py")
        assert glob_match("**/*.py", "mod.py")

    def test_question_and_class(self):
        assert glob_match("v?", "v1")
        assert glob_match("v[0-9]", "v7")
        assert not glob_match("v[!0-9]", "v7")

    def test_negation_order(self):
        patterns = ["release/**", "!release/**-alpha"]
        assert filter_match(patterns, "release/1.0")
        assert not filter_match(patterns, "release/1.0-alpha")


# ── Event matching ───────────────────────────────────────────────────────────


class TestTriggerMatcher:
    def test_undeclared_event(self):
        activation = make_matcher("push").match(Event(name="issues"))
        assert not activation.activated
        assert "not declared" in activation.reason

    def test_bare_event_matches(self):
        activation = make_matcher("push").match(push("refs/heads/anything"))
        assert activation.activated
        assert activation.github["ref_name"] == "anything"
        assert activation.github["ref_type"] == "branch"
        assert activation.github["event_name"] == "push"

    def test_branch_filter(self):
        matcher = make_matcher({"push": {"branches": ["main", "release/**"]}})
        assert matcher.match(push("refs/heads/main")).activated
        assert matcher.match(push("refs/heads/release/2.0")).activated
        assert not matcher.match(push("refs/heads/feature")).activated

    def test_branches_ignore(self):
        matcher = make_matcher({"push": {"branches-ignore": ["wip/*"]}})
        assert matcher.match(push("refs/heads/main")).activated
        assert not matcher.match(push("refs/heads/wip/x")).activated

    def test_tag_push_with_only_branch_filter(self):
        matcher = make_matcher({"push": {"branches": ["main"]}})
        assert not matcher.match(push("refs/tags/v1.0")).activated

    def test_tag_filter(self):
        matcher = make_matcher({"push": {"tags": ["v*"]}})
        activation = matcher.match(push("refs/tags/v1.0"))
        assert activation.activated
        assert activation.github["ref_type"] == "tag"
        assert not matcher.match(push("refs/heads/main")).activated

    def test_missing_ref_with_branch_filter(self):
        matcher = make_matcher({"push": {"branches": ["main"]}})
        assert not matcher.match(Event(name="push")).activated

    def test_paths_filter(self):
        matcher = make_matcher({"push": {"paths": ["src/**"]}})
        assert matcher.match(push("refs/heads/main", ["src/a.py", "README.md"])).activated
        assert not matcher.match(push("refs/heads/main", ["README.md"])).activated

    def test_paths_without_file_information(self):
        matcher = make_matcher({"push": {"paths": ["src/**"]}})
        assert matcher.match(push("refs/heads/main")).activated

    def test_paths_ignore_requires_every_file_ignored(self):
        matcher = make_matcher({"push": {"paths-ignore": ["docs/**"]}})
        assert not matcher.match(push("refs/heads/main", ["docs/a.md"])).activated
        assert matcher.match(push("refs/heads/main", ["docs/a.md", "src/a.py"])).activated

    def test_pull_request_default_types(self):
        matcher = make_matcher("pull_request")
        assert matcher.match(pull_request("opened")).activated
        assert matcher.match(pull_request("synchronize")).activated
        assert not matcher.match(pull_request("closed")).activated

    def test_pull_request_explicit_types(self):
        matcher = make_matcher({"pull_request": {"types": ["closed"]}})
        assert matcher.match(pull_request("closed")).activated
        assert not matcher.match(pull_request("opened")).activated

    def test_pull_request_branches_use_base(self):
        matcher = make_matcher({"pull_request": {"branches": ["main"]}})
        assert matcher.match(pull_request("opened", base="main")).activated
        assert not matcher.match(pull_request("opened", base="dev")).activated

    def test_schedules_exposed(self):
        matcher = make_matcher({"schedule": [{"cron": "0 0 * * *"}], "push": None})
        assert matcher.schedules == ["0 0 * * *"]
        assert set(matcher.event_names) == {"schedule", "push"}
        assert matcher.match(Event(name="schedule", payload={"schedule": "0 0 * * *"})).activated


# ── Inputs ───────────────────────────────────────────────────────────────────


class TestInputs:
    @pytest.fixture
    def matcher(self):
        return make_matcher(
            {
                "workflow_dispatch": {
                    "inputs": {
                        "environment": {
                            "type": "choice",
                            "options": ["staging", "prod"],
                            "required": True,
                        },
                        "dry_run": {"type": "boolean", "default": False},
                        "replicas": {"type": "number", "default": 2},
                        "note": {"type": "string"},
                    }
                }
            }
        )

    def dispatch(self, **inputs) -> Event:
        return Event(name="workflow_dispatch", payload={"ref": "refs/heads/main", "inputs": inputs})

    def test_defaults_applied(self, matcher):
        activation = matcher.match(self.dispatch(environment="prod"))
        assert activation.activated
        assert activation.inputs == {
            "environment": "prod",
            "dry_run": False,
            "replicas": 2,
            "note": None,
        }

    def test_string_values_coerced(self, matcher):
        activation = matcher.match(self.dispatch(environment="staging", dry_run="true", replicas="3"))
        assert activation.inputs["dry_run"] is True
        assert activation.inputs["replicas"] == 3

    def test_missing_required(self, matcher):
        with pytest.raises(TriggerError) as exc:
            matcher.match(self.dispatch())
        assert exc.value.kind == ErrorKind.MISSING_REQUIRED_INPUT

    def test_invalid_choice(self, matcher):
        with pytest.raises(TriggerError) as exc:
            matcher.match(self.dispatch(environment="qa"))
        assert exc.value.kind == ErrorKind.INVALID_CHOICE

    def test_invalid_type(self, matcher):
        with pytest.raises(TriggerError) as exc:
            matcher.match(self.dispatch(environment="prod", replicas="many"))
        assert exc.value.kind == ErrorKind.INVALID_INPUT_TYPE

    def test_undeclared_inputs_ignored(self):
        bound = bind_inputs({"a": InputSpec()}, {"a": "1", "b": "2"})
        assert bound == {"a": "1"}
