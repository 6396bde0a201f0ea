"""Worker records and the value objects exchanged by the coordinator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..git import BranchStats, ConflictInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_iso(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value)
    return None


class WorkerStatus(str, Enum):
    PENDING = "pending"
    WORKING = "working"
    PAUSED = "paused"
    MERGING = "merging"
    MERGED = "merged"
    ERROR = "error"
    STOPPED = "stopped"

    @property
    def is_active(self) -> bool:
        """Whether the worker counts against the repository's capacity."""

        return self not in (WorkerStatus.MERGED, WorkerStatus.STOPPED)

    @property
    def is_terminal(self) -> bool:
        return self in (WorkerStatus.MERGED, WorkerStatus.ERROR, WorkerStatus.STOPPED)


class MergeStrategy(str, Enum):
    SQUASH = "squash"
    MERGE = "merge"
    REBASE = "rebase"


class MergeOutcome(str, Enum):
    CLEAN = "clean"
    CONFLICT = "conflict"
    PENDING_APPROVAL = "pending_approval"
    MERGED = "merged"


class ConflictResolution(str, Enum):
    OURS = "ours"
    THEIRS = "theirs"
    ABORT = "abort"


@dataclass(slots=True, frozen=True)
class NextTask:
    task_id: str
    task_title: str

    def to_dict(self) -> dict[str, str]:
        return {"task_id": self.task_id, "task_title": self.task_title}


@dataclass(slots=True, frozen=True)
class PendingMerge:
    """A clean merge held back until someone approves it."""

    target_branch: str
    strategy: MergeStrategy
    commit_message: str | None
    requested_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_branch": self.target_branch,
            "strategy": self.strategy.value,
            "commit_message": self.commit_message,
            "requested_at": self.requested_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PendingMerge":
        return cls(
            target_branch=payload["target_branch"],
            strategy=MergeStrategy(payload["strategy"]),
            commit_message=payload.get("commit_message"),
            requested_at=_parse_iso(payload.get("requested_at")) or utcnow(),
        )


@dataclass(slots=True)
class Worker:
    id: str
    repo_path: str
    task_id: str
    task_title: str
    branch_name: str
    workspace_path: str
    created_at: datetime
    status: WorkerStatus = WorkerStatus.PENDING
    progress: int = 0
    message: str | None = None
    heartbeat_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    next_task_id: str | None = None
    next_task_title: str | None = None
    launcher: str | None = None
    start_command: str | None = None
    pending_merge: PendingMerge | None = None

    @property
    def next_task(self) -> NextTask | None:
        if self.next_task_id is None:
            return None
        return NextTask(task_id=self.next_task_id, task_title=self.next_task_title or "")

    def to_dict(self, *, now: datetime | None = None) -> dict[str, Any]:
        reference = now or utcnow()
        heartbeat_ago_ms = (
            int((reference - self.heartbeat_at).total_seconds() * 1000)
            if self.heartbeat_at is not None
            else None
        )
        return {
            "id": self.id,
            "repo_path": self.repo_path,
            "task_id": self.task_id,
            "task_title": self.task_title,
            "branch_name": self.branch_name,
            "workspace_path": self.workspace_path,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
            "heartbeat_at": _iso(self.heartbeat_at),
            "heartbeat_ago_ms": heartbeat_ago_ms,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "next_task_id": self.next_task_id,
            "next_task_title": self.next_task_title,
            "launcher": self.launcher,
            "start_command": self.start_command,
            "pending_merge": self.pending_merge.to_dict() if self.pending_merge else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Worker":
        pending = payload.get("pending_merge")
        return cls(
            id=payload["id"],
            repo_path=payload["repo_path"],
            task_id=payload["task_id"],
            task_title=payload.get("task_title", ""),
            branch_name=payload["branch_name"],
            workspace_path=payload["workspace_path"],
            created_at=_parse_iso(payload.get("created_at")) or utcnow(),
            status=WorkerStatus(payload.get("status", WorkerStatus.PENDING.value)),
            progress=int(payload.get("progress") or 0),
            message=payload.get("message"),
            heartbeat_at=_parse_iso(payload.get("heartbeat_at")),
            started_at=_parse_iso(payload.get("started_at")),
            completed_at=_parse_iso(payload.get("completed_at")),
            next_task_id=payload.get("next_task_id"),
            next_task_title=payload.get("next_task_title"),
            launcher=payload.get("launcher"),
            start_command=payload.get("start_command"),
            pending_merge=PendingMerge.from_dict(pending) if isinstance(pending, dict) else None,
        )


@dataclass(slots=True)
class RepositoryContext:
    """Capacity snapshot for one repository."""

    repo_path: str
    max_workers: int
    active_workers: int
    target_branch: str

    @property
    def can_spawn(self) -> bool:
        return self.active_workers < self.max_workers

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo_path": self.repo_path,
            "max_workers": self.max_workers,
            "active_workers": self.active_workers,
            "target_branch": self.target_branch,
            "can_spawn": self.can_spawn,
        }


@dataclass(slots=True)
class WorkspaceHandle:
    branch_name: str
    workspace_path: str
    start_command: str
    launcher: str


@dataclass(slots=True)
class TeardownResult:
    workspace_removed: bool
    branch_deleted: bool
    workspace_path: str
    branch_name: str
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "workspace_removed": self.workspace_removed,
            "branch_deleted": self.branch_deleted,
            "workspace_path": self.workspace_path,
            "branch_name": self.branch_name,
        }
        if self.detail:
            payload["detail"] = self.detail
        return payload


@dataclass(slots=True)
class MergeAttempt:
    worker_id: str
    target_branch: str
    strategy: MergeStrategy
    outcome: MergeOutcome
    conflicts: list[ConflictInfo] = field(default_factory=list)
    stats: BranchStats | None = None
    next_task: NextTask | None = None
    cleanup: dict[str, Any] | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "target_branch": self.target_branch,
            "strategy": self.strategy.value,
            "outcome": self.outcome.value,
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "stats": self.stats.to_dict() if self.stats else None,
            "next_task": self.next_task.to_dict() if self.next_task else None,
            "cleanup": self.cleanup,
            "message": self.message,
        }


@dataclass(slots=True)
class ResolutionResult:
    """What a conflict resolution did; ``attempt`` is the merge retried afterwards."""

    worker_id: str
    resolution: ConflictResolution
    resolved_files: list[str] = field(default_factory=list)
    attempt: MergeAttempt | None = None

    @property
    def aborted(self) -> bool:
        return self.resolution is ConflictResolution.ABORT

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "resolution": self.resolution.value,
            "aborted": self.aborted,
            "resolved_files": list(self.resolved_files),
            "merged": self.attempt is not None and self.attempt.outcome is MergeOutcome.MERGED,
            "attempt": self.attempt.to_dict() if self.attempt else None,
        }


@dataclass(slots=True)
class SpawnResult:
    worker_id: str
    task_id: str
    branch_name: str
    workspace_path: str
    start_command: str
    launcher: str
    next_task: NextTask | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "task_id": self.task_id,
            "branch_name": self.branch_name,
            "workspace_path": self.workspace_path,
            "start_command": self.start_command,
            "launcher": self.launcher,
            "next_task": self.next_task.to_dict() if self.next_task else None,
        }


@dataclass(slots=True)
class HeartbeatReply:
    status: WorkerStatus
    should_pause: bool
    should_abort: bool
    next_task: NextTask | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "should_pause": self.should_pause,
            "should_abort": self.should_abort,
            "next_task": self.next_task.to_dict() if self.next_task else None,
        }


__all__ = [
    "ConflictResolution",
    "HeartbeatReply",
    "MergeAttempt",
    "MergeOutcome",
    "MergeStrategy",
    "NextTask",
    "PendingMerge",
    "RepositoryContext",
    "ResolutionResult",
    "SpawnResult",
    "TeardownResult",
    "Worker",
    "WorkerStatus",
    "WorkspaceHandle",
    "utcnow",
]
