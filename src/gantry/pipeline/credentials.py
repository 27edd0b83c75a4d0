"""Credential collaborators: where ``secrets.*`` values come from.

Gantry never stores secrets. A :class:`CredentialProvider` resolves them per
run; every value handed out is registered with the run's redactor.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Protocol


class CredentialProvider(Protocol):
    """Returns the secrets visible to a pipeline."""

    def get_secrets(self, pipeline_name: str) -> Mapping[str, str]: ...


class EnvCredentialProvider:
    """Reads secrets from environment variables with a prefix.

    ``GANTRY_SECRET_DEPLOY_TOKEN`` becomes ``secrets.DEPLOY_TOKEN``.
    """

    def __init__(self, prefix: str = "GANTRY_SECRET_", environ: Mapping[str, str] | None = None):
        self._prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def get_secrets(self, pipeline_name: str) -> dict[str, str]:
        return {
            key[len(self._prefix) :]: value
            for key, value in self._environ.items()
            if key.startswith(self._prefix) and len(key) > len(self._prefix)
        }


class StaticCredentialProvider:
    """Fixed secrets, optionally scoped per pipeline name."""

    def __init__(
        self,
        secrets: Mapping[str, str] | None = None,
        *,
        per_pipeline: Mapping[str, Mapping[str, str]] | None = None,
    ):
        self._secrets = dict(secrets or {})
        self._per_pipeline = {k: dict(v) for k, v in (per_pipeline or {}).items()}

    def get_secrets(self, pipeline_name: str) -> dict[str, str]:
        merged = dict(self._secrets)
        merged.update(self._per_pipeline.get(pipeline_name, {}))
        return merged
