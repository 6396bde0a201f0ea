"""Gate worker branches back into the shared target branch."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator

from ..errors import (
    DestroyError,
    InvalidStateTransition,
    MergeError,
    MergeTimeoutError,
    UncommittedChangesError,
)
from ..git import BranchStats, ConflictInfo, GitCommandError, GitRepository, GitTimeoutError
from ..storage import ChromaStore
from .history import HistoryLog
from .models import (
    ConflictResolution,
    MergeAttempt,
    MergeOutcome,
    MergeStrategy,
    PendingMerge,
    ResolutionResult,
    Worker,
    WorkerStatus,
    utcnow,
)
from .provisioner import WorkspaceProvisioner
from .registry import WorkerRegistry

logger = logging.getLogger(__name__)

MERGEABLE = frozenset({WorkerStatus.WORKING, WorkerStatus.PAUSED})


class _RebaseConflict(Exception):
    def __init__(self, files: list[str]) -> None:
        super().__init__(", ".join(files))
        self.files = files


class MergeCoordinator:
    """Dry-run, then integrate, one merge at a time per repository.

    The dry run is a ``git merge-tree`` computation that never moves a ref or
    touches a checkout, so a conflicting branch leaves the target exactly as it
    was. Real integration happens in the main checkout under the repository's
    merge lock and is rolled back to the prior tip if git fails part way.
    """

    def __init__(
        self,
        repository: GitRepository,
        registry: WorkerRegistry,
        provisioner: WorkspaceProvisioner,
        history: HistoryLog,
        *,
        timeout: float = 60.0,
        lock_timeout: float | None = None,
        require_approval: bool = False,
        delete_branch_on_merge: bool = True,
        store: ChromaStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._provisioner = provisioner
        self._history = history
        self._timeout = timeout
        self._lock_timeout = lock_timeout if lock_timeout is not None else timeout
        self._require_approval = require_approval
        self._delete_branch_on_merge = delete_branch_on_merge
        self._store = store
        self._clock = clock or utcnow
        self._lock = threading.Lock()
        self._conflict_counts: dict[str, int] = {}

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def attempt_merge(
        self,
        worker_id: str,
        *,
        target_branch: str,
        strategy: MergeStrategy = MergeStrategy.MERGE,
        commit_message: str | None = None,
        auto_merge: bool = True,
        approved: bool = False,
    ) -> MergeAttempt:
        strategy = MergeStrategy(strategy)
        with self._holding_lock(worker_id, target_branch):
            return self._attempt_locked(
                worker_id,
                target_branch=target_branch,
                strategy=strategy,
                commit_message=commit_message,
                hold=not approved and (self._require_approval or not auto_merge),
            )

    def resolve_conflicts(
        self,
        worker_id: str,
        side: ConflictResolution | str,
        *,
        target_branch: str,
        files: list[str] | None = None,
        strategy: MergeStrategy = MergeStrategy.MERGE,
        commit_message: str | None = None,
    ) -> ResolutionResult:
        """Settle conflicts with ``target_branch`` inside the workspace, then retry the merge.

        The target is merged into the worker's branch in its workspace and every
        unmerged path (or only those in ``files``) is taken from ``ours``, the
        worker's version, or ``theirs``, the target's. The resolution is committed
        on the worker's branch and the merge is retried under the same lock hold,
        so the target cannot move in between. Paths left unmerged are reported as
        a conflict and the workspace is returned to its previous commit.
        """

        side = ConflictResolution(side)
        strategy = MergeStrategy(strategy)
        if side is ConflictResolution.ABORT:
            raise ValueError("Use abort_resolution to abandon a conflict")
        if strategy is MergeStrategy.REBASE:
            raise ValueError(
                "A resolved conflict is committed as a merge on the branch; retry with 'merge' or 'squash'"
            )
        with self._holding_lock(worker_id, target_branch):
            resolved, leftover = self._resolve_locked(worker_id, side, target_branch, files, strategy)
            if leftover is not None:
                return ResolutionResult(
                    worker_id=worker_id, resolution=side, resolved_files=resolved, attempt=leftover
                )
            attempt = self._attempt_locked(
                worker_id,
                target_branch=target_branch,
                strategy=strategy,
                commit_message=commit_message,
                hold=self._require_approval,
            )
        return ResolutionResult(
            worker_id=worker_id, resolution=side, resolved_files=resolved, attempt=attempt
        )

    def abort_resolution(self, worker_id: str) -> ResolutionResult:
        """Abandon a conflicted merge: clear any half-done merge and pause the worker."""

        worker = self._registry.get(worker_id)
        if worker.status not in MERGEABLE:
            raise InvalidStateTransition(
                worker_id=worker_id,
                current=worker.status.value,
                operation="resolve",
                hint="Only working or paused workers have conflicts to abandon.",
            )
        workspace = Path(worker.workspace_path)
        if workspace.is_dir() and self._repository.merge_in_progress(workspace):
            self._repository.abort_merge(cwd=workspace)
        message = "Merge aborted; awaiting instructions"
        if worker.status is WorkerStatus.WORKING:
            self._registry.transition(
                worker_id, WorkerStatus.PAUSED, operation="resolve", message=message
            )
        else:
            self._registry.annotate(worker_id, message=message)
        logger.info("Conflict resolution aborted", extra={"worker_id": worker_id})
        return ResolutionResult(worker_id=worker_id, resolution=ConflictResolution.ABORT)

    def forget(self, worker_id: str) -> int:
        """Drop the conflict count kept for a worker that is leaving and return it."""

        return self._conflict_counts.pop(worker_id, 0)

    def approve(self, worker_id: str) -> MergeAttempt:
        """Run a merge that was held for approval, re-checking against the current target."""

        worker = self._registry.get(worker_id)
        pending = worker.pending_merge
        if pending is None:
            raise InvalidStateTransition(
                worker_id=worker_id,
                current=worker.status.value,
                operation="approve_merge",
                hint="No merge is awaiting approval for this worker.",
            )
        return self.attempt_merge(
            worker_id,
            target_branch=pending.target_branch,
            strategy=pending.strategy,
            commit_message=pending.commit_message,
            approved=True,
        )

    def preview(
        self,
        worker_id: str,
        *,
        target_branch: str,
        strategy: MergeStrategy = MergeStrategy.MERGE,
    ) -> MergeAttempt:
        """Report whether a merge would be clean without changing anything."""

        worker = self._registry.get(worker_id)
        try:
            dry_run = self._repository.dry_run_merge(
                target_branch, worker.branch_name, timeout=self._timeout
            )
            stats = (
                self._repository.diff_stats(target_branch, worker.branch_name)
                if dry_run.clean
                else None
            )
        except GitTimeoutError as exc:
            raise MergeTimeoutError(
                worker_id=worker_id,
                target_branch=target_branch,
                timeout=exc.timeout,
                stage="dry run",
            ) from exc
        except GitCommandError as exc:
            raise MergeError(
                f"Dry run failed: {exc}",
                worker_id=worker_id,
                target_branch=target_branch,
                stderr=exc.stderr,
            ) from exc
        return MergeAttempt(
            worker_id=worker_id,
            target_branch=target_branch,
            strategy=MergeStrategy(strategy),
            outcome=MergeOutcome.CLEAN if dry_run.clean else MergeOutcome.CONFLICT,
            conflicts=dry_run.conflicts,
            stats=stats,
        )

    # -- internals ------------------------------------------------------------------

    @contextmanager
    def _holding_lock(self, worker_id: str, target_branch: str) -> Iterator[None]:
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise MergeTimeoutError(
                worker_id=worker_id,
                target_branch=target_branch,
                timeout=self._lock_timeout,
                stage="waiting for merge lock",
            )
        try:
            yield
        finally:
            self._lock.release()

    def _resolve_locked(
        self,
        worker_id: str,
        side: ConflictResolution,
        target_branch: str,
        files: list[str] | None,
        strategy: MergeStrategy,
    ) -> tuple[list[str], MergeAttempt | None]:
        worker, previous = self._registry.transition(
            worker_id,
            WorkerStatus.MERGING,
            operation="resolve",
            allowed_from=MERGEABLE,
            message=f"Resolving conflicts with {side.value} changes",
        )
        workspace = Path(worker.workspace_path)
        repository = self._repository
        stage = "checking workspace"
        merging = False
        try:
            if not workspace.is_dir():
                raise MergeError(
                    "Conflicts are resolved in the worker's workspace, which no longer exists",
                    worker_id=worker_id,
                    target_branch=target_branch,
                )
            dirty = [path for path in repository.dirty_files(workspace) if not self._provisioner.is_seeded(path)]
            if dirty:
                raise UncommittedChangesError(worker_id=worker_id, path=worker.workspace_path, files=dirty)

            stage = "merging target into workspace"
            started = repository.start_merge(target_branch, cwd=workspace, timeout=self._timeout)
            merging = True
            unmerged = repository.unmerged_files(workspace)
            if not started.ok and not unmerged:
                raise GitCommandError(started)

            stage = "resolving conflicts"
            chosen = [path for path in files if path in unmerged] if files else unmerged
            for path in chosen:
                repository.take_side(side.value, path, cwd=workspace)
            remaining = repository.unmerged_files(workspace)
            if remaining:
                repository.abort_merge(cwd=workspace)
                conflicts = [ConflictInfo(file=path, conflict_type="content") for path in remaining]
                return chosen, self._finish_conflict(worker, previous, target_branch, strategy, conflicts)

            stage = "committing resolution"
            if repository.merge_in_progress(workspace):
                kept = "worker" if side is ConflictResolution.OURS else target_branch
                repository.commit(
                    f"Resolve conflicts with {target_branch}: keep {kept} changes",
                    cwd=workspace,
                    timeout=self._timeout,
                )
        except (UncommittedChangesError, MergeError) as exc:
            self._restore_status(worker_id, previous, str(exc))
            raise
        except GitTimeoutError as exc:
            if merging:
                repository.abort_merge(cwd=workspace)
            self._restore_status(worker_id, previous, f"Resolution timed out during {stage}")
            raise MergeTimeoutError(
                worker_id=worker_id, target_branch=target_branch, timeout=exc.timeout, stage=stage
            ) from exc
        except GitCommandError as exc:
            if merging:
                repository.abort_merge(cwd=workspace)
            self._restore_status(worker_id, previous, f"Resolution failed during {stage}")
            raise MergeError(
                f"Conflict resolution failed during {stage}: {exc}",
                worker_id=worker_id,
                target_branch=target_branch,
                stderr=exc.stderr,
            ) from exc

        self._restore_status(worker_id, previous, f"Conflicts resolved with {side.value} changes")
        logger.info(
            "Resolved merge conflicts",
            extra={"worker_id": worker_id, "side": side.value, "files": chosen},
        )
        return chosen, None

    def _attempt_locked(
        self,
        worker_id: str,
        *,
        target_branch: str,
        strategy: MergeStrategy,
        commit_message: str | None,
        hold: bool,
    ) -> MergeAttempt:
        worker, previous = self._registry.transition(
            worker_id,
            WorkerStatus.MERGING,
            operation="merge",
            allowed_from=MERGEABLE,
            message="Checking for conflicts",
        )
        if worker.pending_merge is not None:
            self._registry.set_pending_merge(worker_id, None)

        stage = "checking workspace"
        try:
            workspace = Path(worker.workspace_path)
            if workspace.is_dir():
                dirty = [
                    path
                    for path in self._repository.dirty_files(workspace)
                    if not self._provisioner.is_seeded(path)
                ]
                if dirty:
                    raise UncommittedChangesError(
                        worker_id=worker_id, path=worker.workspace_path, files=dirty
                    )

            stage = "dry run"
            dry_run = self._repository.dry_run_merge(
                target_branch, worker.branch_name, timeout=self._timeout
            )
            if not dry_run.clean:
                return self._finish_conflict(
                    worker, previous, target_branch, strategy, dry_run.conflicts
                )

            if hold:
                return self._hold_for_approval(
                    worker, previous, target_branch, strategy, commit_message
                )

            stage = "checking main checkout"
            main_dirty = self._repository.dirty_files(include_untracked=False)
            if main_dirty:
                raise UncommittedChangesError(
                    worker_id=worker_id, path=str(self._repository.path), files=main_dirty
                )

            if strategy is MergeStrategy.REBASE and not workspace.is_dir():
                raise MergeError(
                    "Rebase needs the worker's workspace, which no longer exists",
                    worker_id=worker_id,
                    target_branch=target_branch,
                )

            stage = "branch statistics"
            stats = self._repository.diff_stats(target_branch, worker.branch_name)
        except UncommittedChangesError:
            self._restore_status(worker_id, previous, "Commit outstanding changes before merging")
            raise
        except MergeError as exc:
            self._restore_status(worker_id, previous, str(exc))
            raise
        except GitTimeoutError as exc:
            self._restore_status(worker_id, previous, f"Merge timed out during {stage}")
            raise MergeTimeoutError(
                worker_id=worker_id, target_branch=target_branch, timeout=exc.timeout, stage=stage
            ) from exc
        except GitCommandError as exc:
            self._restore_status(worker_id, previous, f"Merge failed during {stage}")
            raise MergeError(
                f"Merge failed during {stage}: {exc}",
                worker_id=worker_id,
                target_branch=target_branch,
                stderr=exc.stderr,
            ) from exc

        message = commit_message or f"Merge {worker.branch_name}: {worker.task_title or worker.task_id}"
        try:
            self._integrate(worker, target_branch, strategy, message)
        except _RebaseConflict as conflict:
            conflicts = [ConflictInfo(file=path, conflict_type="content") for path in conflict.files]
            return self._finish_conflict(worker, previous, target_branch, strategy, conflicts)
        except GitTimeoutError as exc:
            self._restore_status(worker_id, previous, "Merge timed out; target branch restored")
            raise MergeTimeoutError(
                worker_id=worker_id,
                target_branch=target_branch,
                timeout=exc.timeout,
                stage="integration",
            ) from exc
        except GitCommandError as exc:
            failed, _ = self._registry.transition(
                worker_id,
                WorkerStatus.ERROR,
                operation="merge",
                message="Merge failed unexpectedly",
            )
            self._history.record(
                failed,
                "error",
                stats=stats,
                merge_conflicts=self._conflict_counts.pop(worker_id, 0),
                message=str(exc),
            )
            raise MergeError(
                f"Merge failed unexpectedly: {exc}",
                worker_id=worker_id,
                target_branch=target_branch,
                stderr=exc.stderr,
            ) from exc

        return self._finish_merged(worker, target_branch, strategy, stats)

    def _integrate(
        self, worker: Worker, target_branch: str, strategy: MergeStrategy, message: str
    ) -> None:
        repository = self._repository
        original_branch = repository.current_branch()
        target_tip = repository.resolve_commit(target_branch)
        switched = False
        try:
            if strategy is MergeStrategy.REBASE:
                self._rebase_in_workspace(worker, target_branch)
            if original_branch != target_branch:
                repository.checkout(target_branch, timeout=self._timeout)
                switched = True
            if strategy is MergeStrategy.MERGE:
                repository.merge(worker.branch_name, message, timeout=self._timeout)
            elif strategy is MergeStrategy.SQUASH:
                repository.merge_squash(worker.branch_name, timeout=self._timeout)
                if repository.has_staged_changes():
                    repository.commit(message, timeout=self._timeout)
            else:
                repository.merge_fast_forward(worker.branch_name, timeout=self._timeout)
        except (GitCommandError, GitTimeoutError):
            if repository.current_branch() == target_branch:
                repository.reset_to(target_tip)
            raise
        finally:
            if switched:
                restored = repository.runner.run(
                    "checkout", original_branch, cwd=repository.path, check=False
                )
                if not restored.ok:
                    logger.warning(
                        "Could not restore original branch after merge",
                        extra={"branch": original_branch, "stderr": restored.stderr.strip()},
                    )

    def _rebase_in_workspace(self, worker: Worker, target_branch: str) -> None:
        workspace = Path(worker.workspace_path)
        try:
            self._repository.rebase(target_branch, cwd=workspace, timeout=self._timeout)
        except GitCommandError as exc:
            files = self._repository.unmerged_files(workspace)
            self._repository.abort_rebase(cwd=workspace)
            if not files:
                raise
            raise _RebaseConflict(files=files) from exc
        except GitTimeoutError:
            self._repository.abort_rebase(cwd=workspace)
            raise

    def _finish_conflict(
        self,
        worker: Worker,
        previous: WorkerStatus,
        target_branch: str,
        strategy: MergeStrategy,
        conflicts: list[ConflictInfo],
    ) -> MergeAttempt:
        self._conflict_counts[worker.id] = self._conflict_counts.get(worker.id, 0) + 1
        self._restore_status(
            worker.id, previous, f"Merge conflicts detected in {len(conflicts)} file(s)"
        )
        logger.info(
            "Merge conflicts detected",
            extra={
                "worker_id": worker.id,
                "target_branch": target_branch,
                "files": [conflict.file for conflict in conflicts],
            },
        )
        return self._record(
            MergeAttempt(
                worker_id=worker.id,
                target_branch=target_branch,
                strategy=strategy,
                outcome=MergeOutcome.CONFLICT,
                conflicts=conflicts,
                message=f"{len(conflicts)} conflicting file(s); resolve them on the branch and retry",
            )
        )

    def _hold_for_approval(
        self,
        worker: Worker,
        previous: WorkerStatus,
        target_branch: str,
        strategy: MergeStrategy,
        commit_message: str | None,
    ) -> MergeAttempt:
        self._registry.set_pending_merge(
            worker.id,
            PendingMerge(
                target_branch=target_branch,
                strategy=strategy,
                commit_message=commit_message,
                requested_at=self._clock(),
            ),
        )
        self._restore_status(worker.id, previous, "Ready to merge (awaiting approval)")
        return self._record(
            MergeAttempt(
                worker_id=worker.id,
                target_branch=target_branch,
                strategy=strategy,
                outcome=MergeOutcome.PENDING_APPROVAL,
                message="Merge is clean and awaiting approval",
            )
        )

    def _finish_merged(
        self,
        worker: Worker,
        target_branch: str,
        strategy: MergeStrategy,
        stats: BranchStats,
    ) -> MergeAttempt:
        merged, _ = self._registry.transition(
            worker.id,
            WorkerStatus.MERGED,
            operation="merge",
            message="Merged successfully",
            progress=100,
        )
        next_task = self._registry.take_next_task(worker.id)

        try:
            cleanup = self._provisioner.destroy(
                worker.workspace_path,
                worker.branch_name,
                delete_branch=self._delete_branch_on_merge,
                force_branch=True,
                target_branch=target_branch,
            ).to_dict()
        except DestroyError as exc:
            logger.warning(
                "Workspace cleanup after merge was incomplete",
                extra={"worker_id": worker.id, "error": str(exc)},
            )
            cleanup = exc.to_dict()

        self._history.record(
            merged,
            "merged",
            stats=stats,
            merge_conflicts=self._conflict_counts.pop(worker.id, 0),
        )
        logger.info(
            "Merged worker branch",
            extra={
                "worker_id": worker.id,
                "target_branch": target_branch,
                "strategy": strategy.value,
                "files_changed": stats.files_changed,
            },
        )
        return self._record(
            MergeAttempt(
                worker_id=worker.id,
                target_branch=target_branch,
                strategy=strategy,
                outcome=MergeOutcome.MERGED,
                stats=stats,
                next_task=next_task,
                cleanup=cleanup,
            )
        )

    def _restore_status(self, worker_id: str, previous: WorkerStatus, message: str) -> None:
        self._registry.transition(worker_id, previous, operation="merge", message=message)

    def _record(self, attempt: MergeAttempt) -> MergeAttempt:
        if self._store is not None:
            self._store.record_merge_attempt(attempt.to_dict(), repo_path=self._registry.repo_path)
        return attempt


__all__ = ["MERGEABLE", "MergeCoordinator"]
