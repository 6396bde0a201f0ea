"""Launcher profile models."""

from __future__ import annotations

from string import Formatter
from typing import Any

from pydantic import BaseModel, Field, field_validator

PLACEHOLDERS = frozenset({"workspace_path", "branch_name", "task_id", "task_title", "worker_id"})


class LauncherProfile(BaseModel):
    """How to start an agent process inside a freshly provisioned workspace."""

    id: str = Field(..., description="Unique identifier for the launcher.")
    title: str = Field(..., description="Display title for the launcher.")
    command: str = Field(
        ...,
        description=(
            "Shell command template. Supports {workspace_path}, {branch_name}, "
            "{task_id}, {task_title} and {worker_id} placeholders."
        ),
    )
    description: str | None = Field(default=None, description="Optional operator notes.")
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Environment variables the launcher should export before the command.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Launcher id must not be empty")
        return normalized

    @field_validator("command")
    @classmethod
    def _validate_placeholders(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Launcher command must not be empty")
        unknown = {
            name for _, name, _, _ in Formatter().parse(value) if name and name not in PLACEHOLDERS
        }
        if unknown:
            raise ValueError(f"Unknown placeholder(s) in command: {', '.join(sorted(unknown))}")
        return value

    def render(
        self,
        *,
        workspace_path: str,
        branch_name: str,
        task_id: str,
        task_title: str = "",
        worker_id: str = "",
    ) -> str:
        command = self.command.format(
            workspace_path=workspace_path,
            branch_name=branch_name,
            task_id=task_id,
            task_title=task_title,
            worker_id=worker_id,
        )
        if not self.env:
            return command
        exports = " ".join(f"{key}={_quote(value)}" for key, value in sorted(self.env.items()))
        return f"{exports} {command}"


def _quote(value: str) -> str:
    return "'" + value.replace("'", "'\"'\"'") + "'"


BUILTIN_LAUNCHERS: dict[str, LauncherProfile] = {
    "claude": LauncherProfile(
        id="claude",
        title="Claude Code",
        command='cd "{workspace_path}" && claude',
        description="Open an interactive agent session in the workspace.",
    ),
}


__all__ = ["BUILTIN_LAUNCHERS", "LauncherProfile", "PLACEHOLDERS"]
