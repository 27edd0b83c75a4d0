"""Tests for definition, runtime-state and event models."""

from __future__ import annotations

import pytest

from gantry.errors import DefinitionError, ErrorKind
from gantry.models import Event
from gantry.pipeline.models import (
    CompositeAction,
    JobInstance,
    PipelineDefinition,
    PipelineRun,
    RunState,
    RunStatus,
)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _tree(**overrides) -> dict:
    tree = {
        "on": "push",
        "jobs": {"build": {"steps": [{"run": "make"}]}},
    }
    tree.update(overrides)
    return tree


# ── PipelineDefinition ───────────────────────────────────────────────────────


class TestPipelineDefinition:
    def test_minimal(self):
        defn = PipelineDefinition.from_tree(_tree(), name="ci")
        assert defn.name == "ci"
        assert list(defn.jobs) == ["build"]
        assert defn.jobs["build"].id == "build"
        assert "push" in defn.on.events

    def test_yaml_boolean_on_key(self):
        tree = _tree()
        tree[True] = tree.pop("on")
        defn = PipelineDefinition.from_tree(tree)
        assert "push" in defn.on.events

    def test_on_list_and_mapping(self):
        defn = PipelineDefinition.from_tree(_tree(on=["push", "pull_request"]))
        assert set(defn.on.events) == {"push", "pull_request"}

        defn = PipelineDefinition.from_tree(
            _tree(on={"push": {"branches": "main"}, "schedule": [{"cron": "0 3 * * 1-5"}]})
        )
        assert defn.on.events["push"].branches == ["main"]
        assert defn.on.schedules == ["0 3 * * 1-5"]

    def test_filter_aliases(self):
        defn = PipelineDefinition.from_tree(
            _tree(on={"push": {"branches-ignore": ["wip/**"], "paths-ignore": ["docs/**"]}})
        )
        push = defn.on.events["push"]
        assert push.branches_ignore == ["wip/**"]
        assert push.paths_ignore == ["docs/**"]

    def test_positive_and_negative_filters_conflict(self):
        with pytest.raises(DefinitionError) as exc:
            PipelineDefinition.from_tree(
                _tree(on={"push": {"branches": ["main"], "branches-ignore": ["dev"]}})
            )
        assert exc.value.kind == ErrorKind.SCHEMA_VIOLATION

    def test_invalid_cron(self):
        with pytest.raises(DefinitionError) as exc:
            PipelineDefinition.from_tree(_tree(on={"schedule": [{"cron": "61 * * * *"}]}))
        assert exc.value.kind == ErrorKind.INVALID_SCHEDULE

    def test_cron_needs_five_fields(self):
        with pytest.raises(DefinitionError) as exc:
            PipelineDefinition.from_tree(_tree(on={"schedule": [{"cron": "* * *"}]}))
        assert exc.value.kind == ErrorKind.INVALID_SCHEDULE

    def test_needs_string_coerced(self):
        defn = PipelineDefinition.from_tree(
            _tree(
                jobs={
                    "build": {"steps": [{"run": "make"}]},
                    "test": {"needs": "build", "steps": [{"run": "make test"}]},
                }
            )
        )
        assert defn.jobs["test"].needs == ["build"]

    def test_not_a_mapping(self):
        with pytest.raises(DefinitionError) as exc:
            PipelineDefinition.from_tree(["jobs"])
        assert exc.value.kind == ErrorKind.SCHEMA_VIOLATION

    def test_jobs_required(self):
        with pytest.raises(DefinitionError):
            PipelineDefinition.from_tree({"on": "push", "jobs": {}})

    def test_invalid_job_id(self):
        with pytest.raises(DefinitionError):
            PipelineDefinition.from_tree(_tree(jobs={"bad id": {"steps": [{"run": "x"}]}}))

    def test_unknown_key_rejected(self):
        with pytest.raises(DefinitionError):
            PipelineDefinition.from_tree(_tree(jobz={}))

    def test_step_requires_run_or_uses(self):
        with pytest.raises(DefinitionError):
            PipelineDefinition.from_tree(_tree(jobs={"build": {"steps": [{"name": "nothing"}]}}))
        with pytest.raises(DefinitionError):
            PipelineDefinition.from_tree(
                _tree(jobs={"build": {"steps": [{"run": "x", "uses": "./y"}]}})
            )

    def test_uses_job_cannot_have_steps(self):
        with pytest.raises(DefinitionError):
            PipelineDefinition.from_tree(
                _tree(jobs={"call": {"uses": "./deploy.yml", "steps": [{"run": "x"}]}})
            )

    def test_duplicate_step_ids(self):
        with pytest.raises(DefinitionError):
            PipelineDefinition.from_tree(
                _tree(jobs={"build": {"steps": [{"id": "a", "run": "x"}, {"id": "a", "run": "y"}]}})
            )

    def test_matrix_split(self):
        defn = PipelineDefinition.from_tree(
            _tree(
                jobs={
                    "build": {
                        "strategy": {
                            "matrix": {"os": ["a", "b"], "exclude": [{"os": "a"}]},
                            "fail-fast": False,
                        },
                        "steps": [{"run": "x"}],
                    }
                }
            )
        )
        job = defn.jobs["build"]
        assert job.matrix.dimensions == {"os": ["a", "b"]}
        assert job.matrix.exclude == [{"os": "a"}]
        assert job.matrix.is_dynamic is False
        assert job.strategy.fail_fast is False

    def test_dynamic_matrix(self):
        defn = PipelineDefinition.from_tree(
            _tree(
                jobs={
                    "build": {
                        "strategy": {"matrix": "${{ fromJSON(needs.plan.outputs.m) }}"},
                        "steps": [{"run": "x"}],
                    }
                }
            )
        )
        assert defn.jobs["build"].matrix.is_dynamic is True

    def test_concurrency_string(self):
        defn = PipelineDefinition.from_tree(_tree(concurrency="deploy-${{ github.ref }}"))
        assert defn.concurrency.group == "deploy-${{ github.ref }}"
        assert defn.concurrency.cancel_in_progress is False

    def test_reusable_refs(self):
        defn = PipelineDefinition.from_tree(
            _tree(
                jobs={
                    "build": {"steps": [{"run": "x"}]},
                    "deploy": {"uses": "./deploy.yml", "secrets": "inherit"},
                }
            )
        )
        assert defn.get_reusable_refs() == {"./deploy.yml"}


# ── CompositeAction ──────────────────────────────────────────────────────────


class TestCompositeAction:
    def test_valid(self):
        action = CompositeAction.from_tree(
            {
                "inputs": {"target": {"required": True}},
                "runs": {"using": "composite", "steps": [{"run": "echo hi"}]},
            },
            name="greet",
        )
        assert action.name == "greet"
        assert action.inputs["target"].required is True

    def test_non_composite_rejected(self):
        with pytest.raises(DefinitionError):
            CompositeAction.from_tree({"runs": {"using": "node20", "steps": [{"run": "x"}]}})


# ── Runtime state ────────────────────────────────────────────────────────────


class TestRuntimeState:
    def test_instance_ids(self):
        assert JobInstance(job_id="build").instance_id == "build"
        instance = JobInstance(job_id="test", index=1, matrix={"os": "linux", "py": 3})
        assert instance.instance_id == "test (linux, 3)"
        assert instance.matrix_key == '{"os": "linux", "py": 3}'

    def test_result_words(self):
        assert RunState.SUCCEEDED.result == "success"
        assert RunState.FAILED.result == "failure"
        assert RunState.SKIPPED.is_terminal
        assert not RunState.RUNNING.is_terminal

    def test_exit_codes(self):
        run = PipelineRun(run_id="r", pipeline_name="ci")
        assert run.exit_code == 1
        assert not run.is_finished
        run.status = RunStatus.SUCCEEDED
        assert run.exit_code == 0
        run.status = RunStatus.CANCELLED
        assert run.exit_code == 3
        run.status = RunStatus.FAILED
        assert run.exit_code == 1


# ── Events ───────────────────────────────────────────────────────────────────


class TestEvent:
    def test_push(self):
        event = Event.from_github(
            "push",
            {
                "ref": "refs/heads/main",
                "after": "abc",
                "sender": {"login": "octo"},
                "commits": [{"added": ["a.py"], "modified": ["b.py", "a.py"]}],
            },
            delivery_id="d-1",
        )
        assert event.ref == "refs/heads/main"
        assert event.payload["sha"] == "abc"
        assert event.payload["actor"] == "octo"
        assert event.changed_files == ["a.py", "b.py"]
        assert event.delivery_id == "d-1"

    def test_push_without_commits(self):
        event = Event.from_github("push", {"ref": "refs/heads/main"})
        assert event.changed_files is None

    def test_pull_request(self):
        event = Event.from_github(
            "pull_request",
            {
                "action": "opened",
                "number": 7,
                "changed_files": 3,
                "pull_request": {"base": {"ref": "main"}, "head": {"ref": "feat", "sha": "def"}},
            },
        )
        assert event.full_type == "pull_request.opened"
        assert event.ref == "refs/pull/7/merge"
        assert event.base_ref == "main"
        assert event.changed_files is None

    def test_dispatch_inputs(self):
        event = Event.from_github("workflow_dispatch", {"ref": "main", "inputs": {"env": "prod"}})
        assert event.inputs == {"env": "prod"}
