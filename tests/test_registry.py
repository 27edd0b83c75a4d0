"""Tests for PipelineRegistry: SQLite persistence of runs, job runs and transitions."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest_asyncio

import aiosqlite

from gantry.pipeline.models import JobRun, PipelineRun, RunState, RunStatus, TransitionRecord
from gantry.pipeline.registry import PipelineRegistry


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def db(tmp_path):
    async with aiosqlite.connect(str(tmp_path / "test.db")) as conn:
        conn.row_factory = aiosqlite.Row
        yield conn


@pytest_asyncio.fixture
async def registry(db):
    reg = PipelineRegistry(db)
    await reg.initialize()
    return reg


def make_run(run_id: str = "pl-1", **kwargs) -> PipelineRun:
    defaults = {
        "pipeline_name": "ci",
        "event_name": "push",
        "created_at": datetime.now(timezone.utc),
    }
    defaults.update(kwargs)
    return PipelineRun(run_id=run_id, **defaults)


# ── Pipeline runs ────────────────────────────────────────────────────────────


class TestPipelineRuns:
    async def test_create_and_get(self, registry):
        await registry.create_pipeline_run(make_run(inputs={"env": "prod"}, delivery_id="d-1"))
        run = await registry.get_pipeline_run("pl-1")
        assert run is not None
        assert run.pipeline_name == "ci"
        assert run.status == RunStatus.QUEUED
        assert run.inputs == {"env": "prod"}
        assert run.delivery_id == "d-1"
        assert run.jobs == []

    async def test_get_missing(self, registry):
        assert await registry.get_pipeline_run("nope") is None

    async def test_update(self, registry):
        run = make_run()
        await registry.create_pipeline_run(run)
        run.status = RunStatus.FAILED
        run.error_message = "failed jobs: build"
        run.outputs = {"url": "https://x"}
        run.concurrency_group = "deploy-main"
        run.completed_at = datetime.now(timezone.utc)
        await registry.update_pipeline_run(run)

        stored = await registry.get_pipeline_run("pl-1")
        assert stored.status == RunStatus.FAILED
        assert stored.error_message == "failed jobs: build"
        assert stored.outputs == {"url": "https://x"}
        assert stored.concurrency_group == "deploy-main"
        assert stored.completed_at is not None

    async def test_runs_for_pipeline_newest_first(self, registry):
        now = datetime.now(timezone.utc)
        await registry.create_pipeline_run(make_run("pl-old", created_at=now - timedelta(minutes=5)))
        await registry.create_pipeline_run(
            make_run("pl-new", created_at=now, status=RunStatus.SUCCEEDED)
        )
        await registry.create_pipeline_run(make_run("pl-other", pipeline_name="nightly"))

        runs = await registry.get_runs_for_pipeline("ci")
        assert [r.run_id for r in runs] == ["pl-new", "pl-old"]

        succeeded = await registry.get_runs_for_pipeline("ci", status=RunStatus.SUCCEEDED)
        assert [r.run_id for r in succeeded] == ["pl-new"]

    async def test_active_runs(self, registry):
        await registry.create_pipeline_run(make_run("pl-a", status=RunStatus.RUNNING))
        await registry.create_pipeline_run(make_run("pl-b", status=RunStatus.SUCCEEDED))
        await registry.create_pipeline_run(make_run("pl-c"))
        active = await registry.get_active_pipeline_runs()
        assert {r.run_id for r in active} == {"pl-a", "pl-c"}

    async def test_child_pipelines(self, registry):
        await registry.create_pipeline_run(make_run("pl-parent"))
        await registry.create_pipeline_run(
            make_run(
                "pl-child",
                pipeline_name="deploy",
                parent_run_id="pl-parent",
                parent_job_id="deploy",
                nesting_depth=1,
            )
        )
        children = await registry.get_child_pipelines("pl-parent")
        assert len(children) == 1
        assert children[0].parent_job_id == "deploy"
        assert children[0].nesting_depth == 1

    async def test_delete(self, registry):
        await registry.create_pipeline_run(make_run())
        await registry.save_job_run(JobRun(run_id="pl-1", instance_id="build", job_id="build"))
        await registry.delete_pipeline_run("pl-1")
        assert await registry.get_pipeline_run("pl-1") is None
        assert await registry.get_job_runs("pl-1") == []


# ── Job runs & transitions ───────────────────────────────────────────────────


class TestJobRuns:
    async def test_save_is_upsert(self, registry):
        await registry.create_pipeline_run(make_run())
        job_run = JobRun(
            run_id="pl-1", instance_id="test (linux)", job_id="test", matrix={"os": "linux"}
        )
        await registry.save_job_run(job_run)
        job_run.state = RunState.SUCCEEDED
        job_run.outcome = RunState.FAILED
        job_run.outputs = {"v": "1"}
        job_run.reason = "a step failed (continue-on-error)"
        await registry.save_job_run(job_run)

        stored = await registry.get_job_runs("pl-1")
        assert len(stored) == 1
        assert stored[0].state == RunState.SUCCEEDED
        assert stored[0].outcome == RunState.FAILED
        assert stored[0].matrix == {"os": "linux"}
        assert stored[0].outputs == {"v": "1"}
        assert stored[0].reason == "a step failed (continue-on-error)"

    async def test_transitions_in_order(self, registry):
        await registry.create_pipeline_run(make_run())
        for from_state, to_state in (
            (RunState.PENDING, RunState.RUNNABLE),
            (RunState.RUNNABLE, RunState.RUNNING),
            (RunState.RUNNING, RunState.SUCCEEDED),
        ):
            await registry.record_transition(
                "pl-1",
                TransitionRecord(
                    instance_id="build", job_id="build", from_state=from_state, to_state=to_state
                ),
            )
        transitions = await registry.get_transitions("pl-1")
        assert [t.to_state for t in transitions] == [
            RunState.RUNNABLE,
            RunState.RUNNING,
            RunState.SUCCEEDED,
        ]

    async def test_get_run_includes_jobs_and_transitions(self, registry):
        await registry.create_pipeline_run(make_run())
        await registry.save_job_run(JobRun(run_id="pl-1", instance_id="build", job_id="build"))
        await registry.record_transition(
            "pl-1",
            TransitionRecord(
                instance_id="build",
                job_id="build",
                from_state=RunState.PENDING,
                to_state=RunState.SKIPPED,
                reason="if condition evaluated false",
            ),
        )
        run = await registry.get_pipeline_run("pl-1")
        assert [j.instance_id for j in run.jobs] == ["build"]
        assert run.transitions[0].reason == "if condition evaluated false"

        bare = await registry.get_pipeline_run("pl-1", include_jobs=False)
        assert bare.jobs == []
