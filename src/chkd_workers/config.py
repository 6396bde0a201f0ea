"""Configuration management for the worker coordinator."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

MERGE_STRATEGIES = ("squash", "merge", "rebase")


def _split_paths(value, *, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None or value == "":
        return default
    if isinstance(value, (list, tuple)):
        return tuple(str(item) for item in value)
    if isinstance(value, str):
        parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
        return tuple(parts) or default
    raise TypeError("Expected a list of paths or a path-separated string")


class WorkerSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    default_repo_path: Path | None = Field(default=None, validation_alias="CHKD_REPO_PATH")
    max_workers: int = Field(default=2, validation_alias="CHKD_MAX_WORKERS")
    target_branch: str | None = Field(default=None, validation_alias="CHKD_TARGET_BRANCH")
    merge_strategy: str = Field(default="merge", validation_alias="CHKD_MERGE_STRATEGY")
    require_merge_approval: bool = Field(
        default=False, validation_alias="CHKD_REQUIRE_MERGE_APPROVAL"
    )
    delete_branch_on_merge: bool = Field(
        default=True, validation_alias="CHKD_DELETE_BRANCH_ON_MERGE"
    )
    pending_timeout_seconds: float = Field(default=600.0, validation_alias="CHKD_PENDING_TIMEOUT")
    active_timeout_seconds: float = Field(default=120.0, validation_alias="CHKD_ACTIVE_TIMEOUT")
    heartbeat_interval_seconds: float = Field(
        default=30.0, validation_alias="CHKD_HEARTBEAT_INTERVAL"
    )
    git_timeout_seconds: float = Field(default=60.0, validation_alias="CHKD_GIT_TIMEOUT")
    worktree_root: Path | None = Field(default=None, validation_alias="CHKD_WORKTREE_ROOT")
    branch_prefix: str = Field(default="feature", validation_alias="CHKD_BRANCH_PREFIX")
    username: str | None = Field(default=None, validation_alias="CHKD_USERNAME")
    workspace_seed_paths: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("CLAUDE.md", ".claude", "docs"), validation_alias="CHKD_WORKSPACE_SEED_PATHS"
    )
    launcher_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("launchers"),), validation_alias="CHKD_LAUNCHER_PATHS"
    )
    default_launcher: str = Field(default="claude", validation_alias="CHKD_DEFAULT_LAUNCHER")
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="CHKD_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "CHKD_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("merge_strategy")
    @classmethod
    def _validate_strategy(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in MERGE_STRATEGIES:
            raise ValueError(f"CHKD_MERGE_STRATEGY must be one of {', '.join(MERGE_STRATEGIES)}")
        return normalized

    @field_validator("max_workers")
    @classmethod
    def _validate_max_workers(cls, value: int) -> int:
        if value < 1:
            raise ValueError("CHKD_MAX_WORKERS must be >= 1")
        return value

    @field_validator(
        "pending_timeout_seconds",
        "active_timeout_seconds",
        "heartbeat_interval_seconds",
        "git_timeout_seconds",
    )
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Timeouts and intervals must be positive")
        return value

    @field_validator("branch_prefix")
    @classmethod
    def _strip_prefix(cls, value: str) -> str:
        normalized = value.strip().strip("/")
        if not normalized:
            raise ValueError("CHKD_BRANCH_PREFIX must not be empty")
        return normalized

    @field_validator("workspace_seed_paths", mode="before")
    @classmethod
    def _parse_seed_paths(cls, value):
        return _split_paths(value, default=())

    @field_validator("launcher_paths", mode="before")
    @classmethod
    def _parse_launcher_paths(cls, value):
        return tuple(Path(item) for item in _split_paths(value, default=("launchers",)))


@lru_cache(maxsize=1)
def get_settings() -> WorkerSettings:
    """Return cached settings instance."""

    settings = WorkerSettings()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.launcher_paths = tuple(path.expanduser().resolve() for path in settings.launcher_paths)
    if settings.default_repo_path is not None:
        settings.default_repo_path = settings.default_repo_path.expanduser().resolve()
    if settings.worktree_root is not None:
        settings.worktree_root = settings.worktree_root.expanduser().resolve()
    return settings


__all__ = ["MERGE_STRATEGIES", "WorkerSettings", "get_settings"]
