"""File hashing collaborator used by ``hashFiles()``."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Protocol

from gantry.pipeline.triggers import glob_match

logger = logging.getLogger("gantry.pipeline.hashing")

_CHUNK_SIZE = 64 * 1024


class FileHasher(Protocol):
    """Returns ``{relative_path: sha256_hex}`` for files matching the patterns."""

    def hash_files(self, patterns: Iterable[str]) -> Mapping[str, str]: ...


class WorkspaceFileHasher:
    """Hashes regular files under a workspace root.

    Patterns use the same glob syntax as path filters; ``!pattern`` removes
    previously matched files.
    """

    def __init__(self, root: str | Path):
        self._root = Path(root)

    def hash_files(self, patterns: Iterable[str]) -> dict[str, str]:
        patterns = [p for p in patterns if p]
        if not self._root.is_dir():
            logger.warning("hashFiles: workspace %s does not exist", self._root)
            return {}
        matched: dict[str, str] = {}
        for path in sorted(self._root.rglob("*")):
            if not path.is_file():
                continue
            relative = path.relative_to(self._root).as_posix()
            if _selected(relative, patterns):
                matched[relative] = _sha256(path)
        return matched


def _selected(path: str, patterns: list[str]) -> bool:
    selected = False
    for pattern in patterns:
        if pattern.startswith("!"):
            if selected and glob_match(pattern[1:], path):
                selected = False
        elif not selected and glob_match(pattern, path):
            selected = True
    return selected


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        while chunk := f.read(_CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()
