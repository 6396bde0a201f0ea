"""Create and tear down isolated worktree workspaces."""

from __future__ import annotations

import getpass
import logging
import secrets
import shutil
import threading
from pathlib import Path
from typing import Callable, Iterable

from ..errors import DestroyError, ProvisionError
from ..git import PROTECTED_BRANCHES, GitRepository, GitRunnerError, slugify
from ..launchers import LauncherLoadError, LauncherLoader
from .models import TeardownResult, WorkspaceHandle

logger = logging.getLogger(__name__)


def _random_suffix() -> str:
    return secrets.token_hex(2)


class WorkspaceProvisioner:
    """Provision one worktree and branch per task.

    Branch names and workspace paths handed out by this instance are remembered
    and never issued twice, even when the workspace is later destroyed.
    """

    def __init__(
        self,
        repository: GitRepository,
        *,
        launchers: LauncherLoader,
        default_launcher: str = "claude",
        worktree_root: Path | None = None,
        branch_prefix: str = "feature",
        username: str | None = None,
        seed_paths: Iterable[str] = (),
        suffix_factory: Callable[[], str] | None = None,
    ) -> None:
        self._repository = repository
        self._launchers = launchers
        self._default_launcher = default_launcher
        self._worktree_root = (
            Path(worktree_root).expanduser().resolve() if worktree_root else repository.path.parent
        )
        self._branch_prefix = branch_prefix.strip("/")
        self._username = slugify(username) if username else None
        self._seed_paths = tuple(seed_paths)
        self._suffix_factory = suffix_factory or _random_suffix
        self._issued_branches: set[str] = set()
        self._issued_paths: set[str] = set()
        self._lock = threading.Lock()

    @property
    def username(self) -> str:
        if self._username is None:
            configured = self._repository.user_name()
            candidate = slugify(configured) if configured else ""
            if not candidate:
                try:
                    candidate = slugify(getpass.getuser())
                except (KeyError, OSError):
                    candidate = ""
            self._username = candidate or "user"
        return self._username

    def is_seeded(self, relative: str) -> bool:
        """Whether a path reported by ``git status`` lies under a seeded path."""

        candidate = relative.rstrip("/")
        for seed in self._seed_paths:
            root = seed.strip("/")
            if candidate == root or candidate.startswith(f"{root}/"):
                return True
        return False

    def reserve(self, branch_name: str, workspace_path: str) -> None:
        """Mark names as used, e.g. for workers restored from persistence."""

        with self._lock:
            self._issued_branches.add(branch_name)
            self._issued_paths.add(str(Path(workspace_path)))

    def plan_names(self, task_id: str, task_title: str) -> tuple[str, Path]:
        suffix = self._suffix_factory()
        task_slug = slugify(task_id) or "task"
        title_slug = slugify(task_title)
        leaf = f"{task_slug}-{title_slug}" if title_slug else task_slug
        branch_name = f"{self._branch_prefix}/{self.username}/{leaf}-{suffix}"
        repo_name = slugify(self._repository.path.name) or "repo"
        workspace_path = self._worktree_root / f"{repo_name}-{self.username}-{task_slug}-{suffix}"
        return branch_name, workspace_path

    def create(
        self,
        task_id: str,
        task_title: str,
        *,
        base_ref: str,
        worker_id: str = "",
        launcher: str | None = None,
    ) -> WorkspaceHandle:
        """Create a worktree on a new branch from ``base_ref`` and render its start command."""

        try:
            profile = self._launchers.get(launcher or self._default_launcher)
        except LauncherLoadError as exc:
            raise ProvisionError(str(exc), task_id=task_id) from exc

        if not self._repository.is_repository():
            raise ProvisionError(f"Not a git repository: {self._repository.path}", task_id=task_id)

        branch_name, workspace_path = self.plan_names(task_id, task_title)
        path_key = str(workspace_path)
        with self._lock:
            if branch_name in self._issued_branches or path_key in self._issued_paths:
                raise ProvisionError(
                    "Workspace name was already issued in this repository",
                    task_id=task_id,
                    branch_name=branch_name,
                    workspace_path=path_key,
                )
            self._issued_branches.add(branch_name)
            self._issued_paths.add(path_key)

        if workspace_path.exists():
            raise ProvisionError(
                f"Workspace path already exists: {workspace_path}",
                task_id=task_id,
                workspace_path=path_key,
            )
        if self._repository.branch_exists(branch_name):
            raise ProvisionError(
                f"Branch already exists: {branch_name}", task_id=task_id, branch_name=branch_name
            )

        try:
            workspace_path.parent.mkdir(parents=True, exist_ok=True)
            self._repository.prune_worktrees()
            self._repository.add_worktree(workspace_path, branch_name, base_ref)
        except (GitRunnerError, OSError) as exc:
            self._rollback(workspace_path, branch_name)
            raise ProvisionError(
                f"Failed to create worktree: {exc}",
                task_id=task_id,
                branch_name=branch_name,
                workspace_path=path_key,
            ) from exc

        try:
            self._seed(workspace_path)
        except OSError as exc:
            self._rollback(workspace_path, branch_name)
            raise ProvisionError(
                f"Failed to seed workspace: {exc}",
                task_id=task_id,
                branch_name=branch_name,
                workspace_path=path_key,
            ) from exc

        start_command = profile.render(
            workspace_path=path_key,
            branch_name=branch_name,
            task_id=task_id,
            task_title=task_title,
            worker_id=worker_id,
        )
        logger.info(
            "Provisioned workspace",
            extra={"task_id": task_id, "branch": branch_name, "workspace_path": path_key},
        )
        return WorkspaceHandle(
            branch_name=branch_name,
            workspace_path=path_key,
            start_command=start_command,
            launcher=profile.id,
        )

    def destroy(
        self,
        workspace_path: str,
        branch_name: str,
        *,
        delete_branch: bool = False,
        force_branch: bool = False,
        target_branch: str | None = None,
    ) -> TeardownResult:
        """Remove a workspace and optionally its branch. Safe to call repeatedly.

        The branch is only deleted when it is fully merged into ``target_branch`` or
        ``force_branch`` is set, and never when it is the target or a main line.
        Raises ``DestroyError`` when git or the filesystem fails part way.
        """

        workspace = Path(workspace_path)
        failures: list[str] = []
        detail: str | None = None

        result = self._repository.remove_worktree(workspace)
        if not result.ok and workspace.exists():
            logger.warning(
                "git worktree remove failed, deleting directory",
                extra={"workspace_path": workspace_path, "stderr": result.stderr.strip()},
            )
        if workspace.exists():
            try:
                shutil.rmtree(workspace)
            except OSError as exc:
                failures.append(f"workspace: {exc}")
        workspace_removed = not workspace.exists()
        self._repository.prune_worktrees()

        branch_deleted = False
        if delete_branch:
            if branch_name in PROTECTED_BRANCHES or branch_name == target_branch:
                detail = f"refusing to delete protected branch {branch_name}"
            elif not self._repository.branch_exists(branch_name):
                branch_deleted = True
            elif force_branch or (
                target_branch is not None and self._repository.is_ancestor(branch_name, target_branch)
            ):
                deleted = self._repository.delete_branch(branch_name)
                branch_deleted = deleted.ok
                if not deleted.ok:
                    failures.append(f"branch: {deleted.stderr.strip()}")
            else:
                detail = f"branch {branch_name} has unmerged commits; force to delete"

        if failures:
            raise DestroyError(
                "Workspace teardown incomplete: " + "; ".join(failures),
                workspace_removed=workspace_removed,
                branch_deleted=branch_deleted,
                workspace_path=workspace_path,
                branch_name=branch_name,
            )

        logger.info(
            "Destroyed workspace",
            extra={
                "workspace_path": workspace_path,
                "branch": branch_name,
                "branch_deleted": branch_deleted,
            },
        )
        return TeardownResult(
            workspace_removed=workspace_removed,
            branch_deleted=branch_deleted,
            workspace_path=workspace_path,
            branch_name=branch_name,
            detail=detail,
        )

    def _seed(self, workspace_path: Path) -> None:
        source_root = self._repository.path
        for relative in self._seed_paths:
            source = source_root / relative
            target = workspace_path / relative
            if not source.exists() or target.exists():
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            if source.is_dir():
                shutil.copytree(source, target)
            else:
                shutil.copy2(source, target)

    def _rollback(self, workspace_path: Path, branch_name: str) -> None:
        self._repository.remove_worktree(workspace_path)
        if workspace_path.exists():
            shutil.rmtree(workspace_path, ignore_errors=True)
        self._repository.prune_worktrees()
        if self._repository.branch_exists(branch_name):
            self._repository.delete_branch(branch_name)


__all__ = ["WorkspaceProvisioner"]
