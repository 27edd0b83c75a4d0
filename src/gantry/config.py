"""Configuration loading for Gantry.

Reads .gantry/config.yaml into a validated GantryConfig and applies
environment overrides.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = ".gantry"


# ── Config Models ────────────────────────────────────────────────────────────


class RuntimeConfig(BaseModel):
    max_workers: int | None = None  # max job instances running at once (None = unbounded)
    cancel_grace_seconds: float = 10.0  # signal → force-cancel delay
    max_nesting_depth: int = 4  # reusable pipeline call depth
    default_step_timeout_minutes: float | None = None
    database_path: str = ":memory:"
    workspace: str = "."


class MatrixConfig(BaseModel):
    max_instances: int = 256
    fail_on_empty: bool = False


class ConcurrencyConfig(BaseModel):
    max_queued: int = 1  # queued runs per group before the oldest is superseded


class SecretsConfig(BaseModel):
    env_prefix: str = "GANTRY_SECRET_"


class WebhookConfig(BaseModel):
    secret_env: str = "GANTRY_WEBHOOK_SECRET"
    rate_limit_max: int = 30  # deliveries per window (0 = unlimited)
    rate_limit_window_seconds: int = 60


class GantryConfig(BaseModel):
    """Top-level Gantry configuration (matches .gantry/config.yaml)."""

    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    matrix: MatrixConfig = Field(default_factory=MatrixConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)

    # Values exposed as the ``vars`` context
    vars: dict[str, Any] = Field(default_factory=dict)

    # Directories holding pipeline and composite action definitions
    pipelines_dir: str = ".gantry/pipelines"
    actions_dir: str = ".gantry/actions"


# ── Config Loader ────────────────────────────────────────────────────────────


def load_config(gantry_dir: Path | None = None) -> GantryConfig:
    """Load Gantry configuration from a .gantry/ directory.

    A missing directory or config.yaml yields the defaults.

    Raises:
        ValueError: If config validation fails.
    """
    gantry_dir = gantry_dir or Path(DEFAULT_CONFIG_DIR)
    config_path = gantry_dir / "config.yaml"
    raw: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    else:
        logger.debug("No config at %s; using defaults", config_path)

    config = GantryConfig(**raw)

    # Environment variable overrides for deployment
    database_path = os.environ.get("GANTRY_DATABASE_PATH")
    if database_path:
        config.runtime.database_path = database_path

    max_workers = os.environ.get("GANTRY_MAX_WORKERS")
    if max_workers:
        try:
            config.runtime.max_workers = int(max_workers) or None
        except ValueError:
            logger.warning("Ignoring invalid GANTRY_MAX_WORKERS=%r", max_workers)

    workspace = os.environ.get("GANTRY_WORKSPACE")
    if workspace:
        config.runtime.workspace = workspace

    logger.info(
        "Loaded Gantry config: max_workers=%s, database=%s",
        config.runtime.max_workers,
        config.runtime.database_path,
    )
    return config
