"""Core event models for Gantry."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ── Events ───────────────────────────────────────────────────────────────────


class Event(BaseModel):
    """An immutable trigger event: a name plus a normalized payload.

    Payload keys read by the trigger matcher: ``ref``, ``base_ref``,
    ``head_ref``, ``sha``, ``actor``, ``action``, ``changed_files``,
    ``inputs``, ``schedule``. The raw webhook body, when there is one, lives
    under ``event``.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Event name (push, pull_request, workflow_dispatch, ...)")
    payload: dict[str, Any] = Field(default_factory=dict)
    delivery_id: str | None = Field(default=None, description="X-GitHub-Delivery UUID")
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ref(self) -> str | None:
        return self.payload.get("ref")

    @property
    def base_ref(self) -> str | None:
        return self.payload.get("base_ref")

    @property
    def action(self) -> str | None:
        return self.payload.get("action")

    @property
    def changed_files(self) -> list[str] | None:
        """Changed paths, or None when the event carries no file information."""
        files = self.payload.get("changed_files")
        return list(files) if files is not None else None

    @property
    def inputs(self) -> dict[str, Any]:
        return dict(self.payload.get("inputs") or {})

    @property
    def full_type(self) -> str:
        """e.g. 'pull_request.opened'."""
        if self.action:
            return f"{self.name}.{self.action}"
        return self.name

    @classmethod
    def from_github(
        cls, event_type: str, payload: dict[str, Any], *, delivery_id: str | None = None
    ) -> Event:
        """Normalize a GitHub webhook body into an Event."""
        normalized: dict[str, Any] = {
            "action": payload.get("action"),
            "actor": (payload.get("sender") or {}).get("login"),
            "repository": (payload.get("repository") or {}).get("full_name"),
            "event": payload,
        }
        match event_type:
            case "push":
                normalized["ref"] = payload.get("ref")
                normalized["sha"] = payload.get("after")
                files = _push_changed_files(payload)
                if files is not None:
                    normalized["changed_files"] = files
            case "pull_request" | "pull_request_target":
                pr = payload.get("pull_request") or {}
                normalized["ref"] = f"refs/pull/{payload.get('number', pr.get('number'))}/merge"
                normalized["base_ref"] = (pr.get("base") or {}).get("ref")
                normalized["head_ref"] = (pr.get("head") or {}).get("ref")
                normalized["sha"] = (pr.get("head") or {}).get("sha")
                # GitHub sends a count here; only an explicit file list is usable
                if isinstance(payload.get("changed_files"), list):
                    normalized["changed_files"] = list(payload["changed_files"])
            case "workflow_dispatch":
                normalized["ref"] = payload.get("ref")
                normalized["inputs"] = dict(payload.get("inputs") or {})
            case "schedule":
                normalized["schedule"] = payload.get("schedule")
            case _:
                if "ref" in payload:
                    normalized["ref"] = payload.get("ref")
        return cls(name=event_type, payload=normalized, delivery_id=delivery_id)


def _push_changed_files(payload: dict[str, Any]) -> list[str] | None:
    commits = payload.get("commits")
    if commits is None:
        return None
    files: list[str] = []
    for commit in commits:
        for key in ("added", "modified", "removed"):
            for path in commit.get(key) or []:
                if path not in files:
                    files.append(path)
    return files
