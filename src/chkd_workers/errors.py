"""Error taxonomy shared by the coordinator components.

Every error carries the structured fields a caller needs to decide between
retrying and escalating; ``to_dict`` renders them for the MCP surface.
Merge conflicts are deliberately absent: they are returned as data.
"""

from __future__ import annotations

from typing import Any, Iterable


class WorkerCoordinationError(RuntimeError):
    """Base class for coordinator failures."""

    code = "coordination_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.details = {key: value for key, value in details.items() if value is not None}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": str(self), **self.details}


class ProvisionError(WorkerCoordinationError):
    """Raised when a workspace or branch cannot be created."""

    code = "provision_failed"

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None = None,
        branch_name: str | None = None,
        workspace_path: str | None = None,
    ) -> None:
        super().__init__(
            message, task_id=task_id, branch_name=branch_name, workspace_path=workspace_path
        )
        self.task_id = task_id
        self.branch_name = branch_name
        self.workspace_path = workspace_path


class CapacityExceededError(WorkerCoordinationError):
    """Raised when a spawn would exceed the repository's worker cap."""

    code = "capacity_exceeded"

    def __init__(self, *, active: int, max_workers: int, repo_path: str | None = None) -> None:
        super().__init__(
            f"Maximum workers reached ({max_workers}). Wait for one to complete.",
            active=active,
            max_workers=max_workers,
            repo_path=repo_path,
        )
        self.active = active
        self.max_workers = max_workers


class NotFoundError(WorkerCoordinationError):
    """Raised for an unknown worker id or workspace."""

    code = "not_found"

    def __init__(self, message: str, *, worker_id: str | None = None, **details: Any) -> None:
        super().__init__(message, worker_id=worker_id, **details)
        self.worker_id = worker_id


class TaskAlreadyAssignedError(WorkerCoordinationError):
    """Raised when a task already has an active worker."""

    code = "task_already_assigned"

    def __init__(self, *, task_id: str, worker_id: str) -> None:
        super().__init__(
            f"Task {task_id} is already being worked on by worker {worker_id}",
            task_id=task_id,
            worker_id=worker_id,
        )
        self.task_id = task_id
        self.worker_id = worker_id


class InvalidStateTransition(WorkerCoordinationError):
    """Raised when an operation is not legal from the worker's current status."""

    code = "invalid_state_transition"

    def __init__(
        self,
        *,
        worker_id: str,
        current: str,
        operation: str,
        target: str | None = None,
        hint: str | None = None,
    ) -> None:
        destination = f" to '{target}'" if target else ""
        super().__init__(
            f"Cannot {operation} worker {worker_id}{destination} while it is '{current}'",
            worker_id=worker_id,
            current=current,
            operation=operation,
            target=target,
            hint=hint,
        )
        self.worker_id = worker_id
        self.current = current
        self.operation = operation
        self.target = target


class UncommittedChangesError(WorkerCoordinationError):
    """Raised when a merge is attempted over a dirty checkout."""

    code = "uncommitted_changes"

    def __init__(self, *, worker_id: str, path: str, files: Iterable[str]) -> None:
        file_list = list(files)
        super().__init__(
            f"Uncommitted changes in {path} ({len(file_list)} file(s)); commit them before merging",
            worker_id=worker_id,
            path=path,
            files=file_list,
        )
        self.worker_id = worker_id
        self.path = path
        self.files = file_list


class MergeTimeoutError(WorkerCoordinationError):
    """Raised when a merge step exceeds its time bound. The target branch is left untouched."""

    code = "merge_timeout"

    def __init__(
        self, *, worker_id: str, target_branch: str, timeout: float, stage: str
    ) -> None:
        super().__init__(
            f"Merge of worker {worker_id} into {target_branch} timed out after {timeout:g}s ({stage})",
            worker_id=worker_id,
            target_branch=target_branch,
            timeout=timeout,
            stage=stage,
        )
        self.worker_id = worker_id
        self.target_branch = target_branch
        self.timeout = timeout
        self.stage = stage


class MergeError(WorkerCoordinationError):
    """Raised when git fails unexpectedly during a real integration."""

    code = "merge_failed"

    def __init__(
        self,
        message: str,
        *,
        worker_id: str,
        target_branch: str,
        stderr: str | None = None,
    ) -> None:
        super().__init__(
            message, worker_id=worker_id, target_branch=target_branch, stderr=stderr
        )
        self.worker_id = worker_id
        self.target_branch = target_branch
        self.stderr = stderr


class DestroyError(WorkerCoordinationError):
    """Raised when workspace teardown only partially succeeded."""

    code = "destroy_failed"

    def __init__(
        self,
        message: str,
        *,
        workspace_removed: bool,
        branch_deleted: bool,
        workspace_path: str | None = None,
        branch_name: str | None = None,
    ) -> None:
        super().__init__(
            message,
            workspace_removed=workspace_removed,
            branch_deleted=branch_deleted,
            workspace_path=workspace_path,
            branch_name=branch_name,
        )
        self.workspace_removed = workspace_removed
        self.branch_deleted = branch_deleted
        self.workspace_path = workspace_path
        self.branch_name = branch_name


__all__ = [
    "CapacityExceededError",
    "DestroyError",
    "InvalidStateTransition",
    "MergeError",
    "MergeTimeoutError",
    "NotFoundError",
    "ProvisionError",
    "TaskAlreadyAssignedError",
    "UncommittedChangesError",
    "WorkerCoordinationError",
]
