"""Gantry Server: FastAPI application that feeds webhook events to the engine.

Startup sequence:
1. Load .gantry/ config, pipeline definitions and composite actions
2. Initialize the SQLite run registry
3. Validate all pipelines (abort on errors)
4. Start the event consumer loop
5. Begin accepting webhooks

Shutdown:
1. Stop the consumer loop
2. Cancel active runs
3. Close database
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException

import aiosqlite

from gantry.config import GantryConfig, load_config
from gantry.models import Event
from gantry.pipeline import PipelineEngine, PipelineRegistry
from gantry.pipeline.loader import load_action_definitions, load_pipeline_definitions
from gantry.webhook import configure as configure_webhook
from gantry.webhook import router as webhook_router

logger = logging.getLogger(__name__)


class GantryServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, repo_root: Path | None = None, config_dir: Path | None = None):
        self.repo_root = repo_root or Path.cwd()
        self.gantry_dir = config_dir or self.repo_root / ".gantry"

        # Components (initialized in start())
        self.config: GantryConfig | None = None
        self.db: aiosqlite.Connection | None = None
        self.registry: PipelineRegistry | None = None
        self.engine: PipelineEngine | None = None
        self.event_queue: asyncio.Queue[Event] | None = None
        self._consumer: asyncio.Task | None = None

    async def start(self) -> None:
        """Initialize all components and start the consumer loop."""
        logger.info("Gantry server starting (repo=%s)", self.repo_root)

        # 1. Load config and definitions
        self.config = load_config(self.gantry_dir)
        pipelines = load_pipeline_definitions(self.repo_root / self.config.pipelines_dir)
        actions = load_action_definitions(self.repo_root / self.config.actions_dir)

        # 2. Initialize database
        self.db = await aiosqlite.connect(self.config.runtime.database_path)
        self.registry = PipelineRegistry(self.db)
        await self.registry.initialize()

        # 3. Engine + validation
        self.engine = PipelineEngine(self.registry, config=self.config)
        for name, definition in pipelines.items():
            self.engine.add_pipeline(name, definition)
        for name, action in actions.items():
            self.engine.add_action(name, action)

        errors = [
            err for messages in self.engine.validate_all_pipelines().values() for err in messages
        ]
        if errors:
            for err in errors:
                logger.error("Pipeline validation error: %s", err)
            await self.db.close()
            self.db = None
            raise RuntimeError(f"Pipeline validation failed with {len(errors)} error(s)")

        # 4. Webhook → queue → engine
        self.event_queue = asyncio.Queue()
        webhook = self.config.webhook
        configure_webhook(
            self.event_queue,
            webhook_secret=os.environ.get(webhook.secret_env) or None,
            rate_limit_max=webhook.rate_limit_max,
            rate_limit_window=webhook.rate_limit_window_seconds,
        )
        self._consumer = asyncio.create_task(self._consume(), name="gantry-events")

        logger.info("Gantry server started with %d pipeline(s)", len(pipelines))

    async def stop(self) -> None:
        """Graceful shutdown: stop all components."""
        logger.info("Gantry server shutting down")

        if self._consumer:
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer
        if self.engine:
            await self.engine.shutdown()
        if self.db:
            await self.db.close()

        logger.info("Gantry server stopped")

    async def _consume(self) -> None:
        assert self.event_queue is not None and self.engine is not None
        while True:
            event = await self.event_queue.get()
            try:
                runs = await self.engine.evaluate_event(event)
                if runs:
                    logger.info(
                        "Event %s started %d run(s): %s",
                        event.full_type,
                        len(runs),
                        ", ".join(r.run_id for r in runs),
                    )
            except Exception:
                logger.exception("Failed to process event %s", event.delivery_id)
            finally:
                self.event_queue.task_done()


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = GantryServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(repo_root: Path | None = None, config_dir: Path | None = None) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = GantryServer(repo_root, config_dir)

    app = FastAPI(
        title="Gantry",
        version="0.1.0",
        description="Pipeline graph execution engine for GitHub-Actions-style definitions",
        lifespan=lifespan,
    )

    app.include_router(webhook_router)

    @app.get("/health")
    async def health():
        """Health check endpoint with operational metrics."""
        engine = _server.engine
        return {
            "status": "ok",
            "active_runs": len(engine.active_runs) if engine else 0,
            "queue_depth": _server.event_queue.qsize() if _server.event_queue else 0,
        }

    @app.get("/runs")
    async def list_runs(pipeline: str | None = None):
        """List active runs, or the run history of one pipeline."""
        if pipeline is not None and _server.registry:
            runs = await _server.registry.get_runs_for_pipeline(pipeline)
        elif _server.engine:
            runs = _server.engine.active_runs
        else:
            runs = []
        return {"runs": [r.model_dump(mode="json", exclude={"jobs", "transitions"}) for r in runs]}

    @app.get("/runs/{run_id}")
    async def get_run(run_id: str):
        """A run with its job instances and transition log."""
        run = await _server.engine.get_run(run_id) if _server.engine else None
        if run is None:
            raise HTTPException(status_code=404, detail=f"unknown run '{run_id}'")
        return run.model_dump(mode="json")

    @app.post("/runs/{run_id}/cancel")
    async def cancel_run(run_id: str):
        """Request cancellation of an active run."""
        if not _server.engine or not await _server.engine.cancel_pipeline(run_id):
            raise HTTPException(status_code=409, detail=f"run '{run_id}' is not active")
        return {"status": "cancelling", "run_id": run_id}

    return app
