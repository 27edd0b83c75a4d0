"""Gantry CLI entry point.

Exit codes:
    0  success (``run``: the run succeeded)
    1  ``run``: the run failed
    2  definition or trigger input error
    3  ``run``: the run was cancelled
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import aiosqlite

from gantry.config import DEFAULT_CONFIG_DIR, GantryConfig, load_config
from gantry.errors import DefinitionError, ErrorKind, TriggerError
from gantry.models import Event
from gantry.pipeline import PipelineEngine, PipelineRegistry
from gantry.pipeline.graph import DependencyGraph
from gantry.pipeline.loader import load_action_definitions, load_definition, read_yaml
from gantry.pipeline.models import PipelineDefinition, PipelineRun
from gantry.pipeline.triggers import TriggerMatcher

logger = logging.getLogger("gantry.cli")

EXIT_DEFINITION_ERROR = 2


# ── Loading ──────────────────────────────────────────────────────────────────


def _load_event(spec: str, inputs: list[str]) -> Event:
    """Build an Event from a YAML/JSON file (``name`` + ``payload``) or a bare name."""
    path = Path(spec)
    if path.is_file():
        data = read_yaml(path) or {}
        if not isinstance(data, dict) or "name" not in data:
            raise DefinitionError(
                ErrorKind.SCHEMA_VIOLATION, f"event file {path} must be a mapping with a 'name' key"
            )
        payload = dict(data.get("payload") or {})
        name = str(data["name"])
        delivery_id = data.get("delivery_id")
    else:
        payload, name, delivery_id = {}, spec, None

    if inputs:
        supplied = dict(payload.get("inputs") or {})
        for item in inputs:
            key, sep, value = item.partition("=")
            if not sep:
                raise DefinitionError(
                    ErrorKind.SCHEMA_VIOLATION, f"--input expects key=value, got '{item}'"
                )
            supplied[key] = value
        payload["inputs"] = supplied
    return Event(name=name, payload=payload, delivery_id=delivery_id)


def _load_config(args: argparse.Namespace) -> GantryConfig:
    config = load_config(args.config)
    if getattr(args, "workspace", None):
        config.runtime.workspace = str(args.workspace)
    return config


def _build_engine(
    args: argparse.Namespace,
    config: GantryConfig,
    definition_path: Path,
    registry: PipelineRegistry | None = None,
) -> tuple[PipelineEngine, str, PipelineDefinition]:
    """Create an engine holding the definition, its sibling definitions and actions.

    Siblings make ``uses: ./other.yml`` references resolvable; a sibling that
    fails to load is skipped with a warning.
    """
    definition = load_definition(definition_path)
    name = definition_path.stem
    engine = PipelineEngine(registry, config=config)
    engine.add_pipeline(name, definition)

    for sibling in sorted(definition_path.parent.iterdir()):
        if sibling == definition_path or sibling.suffix not in (".yml", ".yaml"):
            continue
        try:
            engine.add_pipeline(sibling.stem, load_definition(sibling))
        except DefinitionError as e:
            logger.warning("Skipping %s: %s", sibling, e)

    actions_dir = args.actions_dir or Path(config.actions_dir)
    for action_name, action in load_action_definitions(actions_dir).items():
        engine.add_action(action_name, action)
    return engine, name, definition


# ── Commands ─────────────────────────────────────────────────────────────────


def _validate(args: argparse.Namespace) -> int:
    config = _load_config(args)
    try:
        engine, name, _ = _build_engine(args, config, args.definition)
    except DefinitionError as e:
        print(f"{args.definition}: {e}", file=sys.stderr)
        return EXIT_DEFINITION_ERROR

    errors = engine.validate_all_pipelines().get(name, [])
    if errors:
        for err in errors:
            print(err, file=sys.stderr)
        return EXIT_DEFINITION_ERROR
    print(f"{args.definition}: ok")
    return 0


def _plan(args: argparse.Namespace) -> int:
    config = _load_config(args)
    try:
        engine, name, definition = _build_engine(args, config, args.definition)
        graph = engine.plan(definition)
        event = _load_event(args.event, args.input)
    except DefinitionError as e:
        print(f"{args.definition}: {e}", file=sys.stderr)
        return EXIT_DEFINITION_ERROR

    print(_format_plan(name, graph, event))
    return 0


def _format_plan(name: str, graph: DependencyGraph, event: Event) -> str:
    lines = [f"Pipeline: {name}"]
    try:
        activation = TriggerMatcher(graph.definition).match(event)
        if activation.activated:
            lines.append(f"Event: {event.full_type} (activated)")
        else:
            lines.append(f"Event: {event.full_type} (not activated: {activation.reason})")
    except TriggerError as e:
        lines.append(f"Event: {event.full_type} (rejected: {e})")

    for depth, level in enumerate(graph.levels()):
        lines.append(f"Level {depth}:")
        for job_id in level:
            needs = graph.dependencies(job_id)
            suffix = f"  (needs: {', '.join(needs)})" if needs else ""
            job = graph.job(job_id)
            if job.uses:
                suffix += f"  (uses: {job.uses})"
            lines.append(f"  {job_id}{suffix}")
            instances = graph.instances(job_id)
            if instances is None:
                lines.append("    - matrix resolved at run time")
            elif job.matrix is not None:
                if not instances:
                    lines.append("    - (no instances)")
                for instance in instances:
                    lines.append(f"    - {instance.instance_id}")
    return "\n".join(lines)


def _run(args: argparse.Namespace) -> int:
    config = _load_config(args)
    return asyncio.run(_run_async(args, config))


async def _run_async(args: argparse.Namespace, config: GantryConfig) -> int:
    db = await aiosqlite.connect(config.runtime.database_path)
    try:
        registry = PipelineRegistry(db)
        await registry.initialize()
        try:
            engine, name, definition = _build_engine(args, config, args.definition, registry)
            engine.plan(definition)
            event = _load_event(args.event, args.input)
        except DefinitionError as e:
            print(f"{args.definition}: {e}", file=sys.stderr)
            return EXIT_DEFINITION_ERROR

        task = asyncio.create_task(engine.run_pipeline(name, event))
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, _interrupt, engine)
        except (NotImplementedError, RuntimeError):
            pass
        try:
            run = await task
        except TriggerError as e:
            print(f"{name}: {e}", file=sys.stderr)
            return EXIT_DEFINITION_ERROR
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass

        if run is None:
            print(f"{name}: not activated by event '{event.full_type}'")
            return 0
        _print_summary(run)
        return run.exit_code
    finally:
        await db.close()


def _interrupt(engine: PipelineEngine) -> None:
    for run in engine.active_runs:
        asyncio.ensure_future(engine.cancel_pipeline(run.run_id, "interrupted"))


def _print_summary(run: PipelineRun) -> None:
    print(f"Run {run.run_id} ({run.pipeline_name}): {run.status.value}")
    for job_run in run.jobs:
        reason = f"  [{job_run.reason}]" if job_run.reason else ""
        print(f"  {job_run.instance_id}: {job_run.state.value}{reason}")
    if run.outputs:
        print("Outputs:")
        for key, value in run.outputs.items():
            print(f"  {key}: {value}")
    if run.error_message:
        print(f"Error: {run.error_message}", file=sys.stderr)


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    from gantry.server import create_app

    app = create_app(repo_root=args.repo_root, config_dir=args.config)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


# ── Argument Parsing ─────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        type=Path,
        default=Path(DEFAULT_CONFIG_DIR),
        help="Directory holding config.yaml (default: .gantry)",
    )
    common.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )

    parser = argparse.ArgumentParser(
        prog="gantry",
        description="Gantry: pipeline graph execution engine",
    )
    subparsers = parser.add_subparsers(dest="command")

    def add_definition_command(command: str, help_text: str, *, with_event: bool) -> Any:
        sub = subparsers.add_parser(command, help=help_text, parents=[common])
        sub.add_argument("definition", type=Path, help="Pipeline definition file")
        if with_event:
            sub.add_argument("event", help="Event file (name + payload) or a bare event name")
            sub.add_argument(
                "--input",
                action="append",
                default=[],
                metavar="KEY=VALUE",
                help="Dispatch input (repeatable)",
            )
        sub.add_argument(
            "--actions-dir",
            type=Path,
            default=None,
            help="Directory of composite actions (default: from config)",
        )
        sub.add_argument(
            "--workspace",
            type=Path,
            default=None,
            help="Workspace directory steps run in (default: from config)",
        )
        return sub

    add_definition_command("validate", "Validate a pipeline definition", with_event=False)
    add_definition_command("plan", "Print the job graph and matrix expansion", with_event=True)
    add_definition_command("run", "Execute a pipeline for an event", with_event=True)

    serve_parser = subparsers.add_parser(
        "serve", help="Start the webhook server", parents=[common]
    )
    serve_parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )
    serve_parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    commands = {"validate": _validate, "plan": _plan, "run": _run, "serve": _serve}
    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
