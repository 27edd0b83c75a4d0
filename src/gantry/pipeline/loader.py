"""Definition loading: YAML files into PipelineDefinition and CompositeAction.

YAML parsing lives here, at the edge; the rest of the pipeline package only
ever sees parsed trees.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from gantry.errors import DefinitionError, ErrorKind
from gantry.pipeline.models import CompositeAction, PipelineDefinition

logger = logging.getLogger("gantry.pipeline.loader")


def read_yaml(path: Path) -> Any:
    """Parse a YAML (or JSON) file, wrapping parse errors as SchemaViolation."""
    try:
        with open(path) as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise DefinitionError(ErrorKind.SCHEMA_VIOLATION, f"{path}: {e}", path=str(path)) from e


def load_definition(path: Path) -> PipelineDefinition:
    """Load one pipeline definition file; the file stem is the default name."""
    return PipelineDefinition.from_tree(read_yaml(path), name=path.stem)


def load_action(path: Path) -> CompositeAction:
    """Load a composite action from ``action.yml`` or a directory holding one."""
    if path.is_dir():
        for candidate in ("action.yml", "action.yaml"):
            if (path / candidate).exists():
                return CompositeAction.from_tree(read_yaml(path / candidate), name=path.name)
        raise DefinitionError(
            ErrorKind.SCHEMA_VIOLATION, f"no action.yml in {path}", path=str(path)
        )
    name = path.parent.name if path.stem == "action" else path.stem
    return CompositeAction.from_tree(read_yaml(path), name=name)


def load_pipeline_definitions(pipelines_dir: Path) -> dict[str, PipelineDefinition]:
    """Load every ``*.yml``/``*.yaml`` in a directory, keyed by file stem."""
    definitions: dict[str, PipelineDefinition] = {}
    if not pipelines_dir.is_dir():
        logger.debug("No pipelines directory at %s", pipelines_dir)
        return definitions
    for path in sorted([*pipelines_dir.glob("*.yml"), *pipelines_dir.glob("*.yaml")]):
        definitions[path.stem] = load_definition(path)
    logger.info("Loaded %d pipeline definition(s) from %s", len(definitions), pipelines_dir)
    return definitions


def load_action_definitions(actions_dir: Path) -> dict[str, CompositeAction]:
    """Load composite actions from ``<actions_dir>/<name>/action.yml``."""
    actions: dict[str, CompositeAction] = {}
    if not actions_dir.is_dir():
        return actions
    for child in sorted(actions_dir.iterdir()):
        if child.is_dir() and any((child / n).exists() for n in ("action.yml", "action.yaml")):
            actions[child.name] = load_action(child)
    logger.info("Loaded %d composite action(s) from %s", len(actions), actions_dir)
    return actions
