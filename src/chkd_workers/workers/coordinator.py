"""Per-repository facade over the worker components."""

from __future__ import annotations

import logging
import secrets
import threading
from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterable

from ..config import WorkerSettings
from ..errors import (
    CapacityExceededError,
    InvalidStateTransition,
    NotFoundError,
    TaskAlreadyAssignedError,
)
from ..git import GitRepository, GitRunner
from ..launchers import LauncherLoader
from ..storage import ChromaStore, HistoryRecord
from .heartbeat import HeartbeatMonitor
from .history import HistoryLog
from .merge import MergeCoordinator
from .models import (
    ConflictResolution,
    HeartbeatReply,
    MergeAttempt,
    MergeStrategy,
    NextTask,
    RepositoryContext,
    ResolutionResult,
    SpawnResult,
    TeardownResult,
    Worker,
    WorkerStatus,
    utcnow,
)
from .provisioner import WorkspaceProvisioner
from .registry import FORCE_STOPPABLE, STOPPABLE, WorkerRegistry
from .signals import ControlSignalChannel, TaskHandoffQueue

logger = logging.getLogger(__name__)


class WorkerCoordinator:
    """Everything the tools need for one repository, behind plain method calls.

    Worker identity is always passed in explicitly. ``find_worker`` is the one
    lookup that maps a workspace path back to its worker.
    """

    def __init__(
        self,
        repo_path: Path,
        *,
        settings: WorkerSettings,
        launchers: LauncherLoader,
        runner: GitRunner | None = None,
        store: ChromaStore | None = None,
        clock: Callable[[], datetime] | None = None,
        suffix_factory: Callable[[], str] | None = None,
    ) -> None:
        self._settings = settings
        self._clock = clock or utcnow
        self._suffix_factory = suffix_factory or (lambda: secrets.token_hex(2))
        runner = runner or GitRunner(timeout=settings.git_timeout_seconds)
        self._repository = GitRepository(Path(repo_path).expanduser().resolve(), runner)
        if not self._repository.is_repository():
            raise NotFoundError(
                f"Not a git repository: {self._repository.path}",
                repo_path=str(self._repository.path),
            )
        self._repo_path = str(self._repository.path)
        self._target_branch = settings.target_branch
        self._store = store
        self._spawn_lock = threading.Lock()

        self.registry = WorkerRegistry(self._repo_path, store=store, clock=self._clock)
        self.history_log = HistoryLog(self._repo_path, store=store, clock=self._clock)
        self.signals = ControlSignalChannel(clock=self._clock)
        self.handoff = TaskHandoffQueue(self.registry)
        self.monitor = HeartbeatMonitor(
            pending_timeout=timedelta(seconds=settings.pending_timeout_seconds),
            active_timeout=timedelta(seconds=settings.active_timeout_seconds),
            clock=self._clock,
        )
        self.provisioner = WorkspaceProvisioner(
            self._repository,
            launchers=launchers,
            default_launcher=settings.default_launcher,
            worktree_root=settings.worktree_root,
            branch_prefix=settings.branch_prefix,
            username=settings.username,
            seed_paths=settings.workspace_seed_paths,
            suffix_factory=self._suffix_factory,
        )
        self.merger = MergeCoordinator(
            self._repository,
            self.registry,
            self.provisioner,
            self.history_log,
            timeout=settings.git_timeout_seconds,
            require_approval=settings.require_merge_approval,
            delete_branch_on_merge=settings.delete_branch_on_merge,
            store=store,
            clock=self._clock,
        )

        if store is not None:
            self._hydrate(store)

    def _hydrate(self, store: ChromaStore) -> None:
        workers = [Worker.from_dict(snapshot) for snapshot in store.replay_workers(self._repo_path)]
        loaded = self.registry.load(workers)
        for worker in workers:
            self.provisioner.reserve(worker.branch_name, worker.workspace_path)
        if loaded:
            logger.info(
                "Restored workers from event log",
                extra={"repo_path": self._repo_path, "count": loaded},
            )

    @property
    def repo_path(self) -> str:
        return self._repo_path

    @property
    def repository(self) -> GitRepository:
        return self._repository

    @property
    def max_workers(self) -> int:
        return self._settings.max_workers

    @property
    def target_branch(self) -> str:
        if self._target_branch is None:
            self._target_branch = self._repository.default_branch()
        return self._target_branch

    def context(self) -> RepositoryContext:
        return RepositoryContext(
            repo_path=self._repo_path,
            max_workers=self.max_workers,
            active_workers=self.registry.count_active(),
            target_branch=self.target_branch,
        )

    # -- lifecycle ------------------------------------------------------------------

    def spawn_worker(
        self,
        task_id: str,
        task_title: str,
        *,
        next_task_id: str | None = None,
        next_task_title: str | None = None,
        launcher: str | None = None,
    ) -> SpawnResult:
        """Provision a workspace and register a pending worker for ``task_id``.

        Capacity and duplicate-task checks run before anything touches git, so a
        rejected spawn leaves no trace.
        """

        if not task_id or not task_id.strip():
            raise ValueError("task_id must not be empty")
        task_title = task_title or task_id

        with self._spawn_lock:
            active = self.registry.count_active()
            if active >= self.max_workers:
                raise CapacityExceededError(
                    active=active, max_workers=self.max_workers, repo_path=self._repo_path
                )
            existing = self.registry.find_by_task(task_id)
            if existing is not None:
                raise TaskAlreadyAssignedError(task_id=task_id, worker_id=existing.id)

            worker_id = self._new_worker_id()
            handle = self.provisioner.create(
                task_id,
                task_title,
                base_ref=self.target_branch,
                worker_id=worker_id,
                launcher=launcher,
            )
            worker = Worker(
                id=worker_id,
                repo_path=self._repo_path,
                task_id=task_id,
                task_title=task_title,
                branch_name=handle.branch_name,
                workspace_path=handle.workspace_path,
                created_at=self._clock(),
                message="Waiting for the agent to start",
                next_task_id=next_task_id,
                next_task_title=next_task_title if next_task_id else None,
                launcher=handle.launcher,
                start_command=handle.start_command,
            )
            try:
                self.registry.register(worker, max_workers=self.max_workers)
            except CapacityExceededError:
                self.provisioner.destroy(
                    handle.workspace_path,
                    handle.branch_name,
                    delete_branch=True,
                    force_branch=True,
                    target_branch=self.target_branch,
                )
                raise

        return SpawnResult(
            worker_id=worker_id,
            task_id=task_id,
            branch_name=handle.branch_name,
            workspace_path=handle.workspace_path,
            start_command=handle.start_command,
            launcher=handle.launcher,
            next_task=worker.next_task,
        )

    def list_workers(self, statuses: Iterable[WorkerStatus | str] | None = None) -> list[Worker]:
        return self.registry.list(statuses)

    def get_worker(self, worker_id: str) -> Worker:
        return self.registry.get(worker_id)

    def find_worker(self, workspace_path: str | Path) -> Worker:
        resolved = str(Path(workspace_path).expanduser().resolve())
        worker = self.registry.find_by_workspace(resolved)
        if worker is None:
            raise NotFoundError(
                f"No worker owns workspace {resolved}", workspace_path=resolved
            )
        return worker

    def heartbeat(
        self,
        worker_id: str,
        *,
        message: str | None = None,
        progress: int | None = None,
        at: datetime | None = None,
    ) -> HeartbeatReply:
        worker = self.registry.update_heartbeat(
            worker_id, message=message, progress=progress, at=at
        )
        signals = self.signals.poll(worker_id)
        return HeartbeatReply(
            status=worker.status,
            should_pause=signals.should_pause or worker.status is WorkerStatus.PAUSED,
            should_abort=signals.should_abort or worker.status is WorkerStatus.ERROR,
            next_task=worker.next_task,
        )

    def pause_worker(self, worker_id: str) -> Worker:
        worker, _ = self.registry.transition(
            worker_id,
            WorkerStatus.PAUSED,
            operation="pause",
            allowed_from={WorkerStatus.WORKING},
            message="Paused by coordinator",
        )
        self.signals.request_pause(worker_id)
        return worker

    def resume_worker(self, worker_id: str) -> Worker:
        worker, _ = self.registry.transition(
            worker_id,
            WorkerStatus.WORKING,
            operation="resume",
            allowed_from={WorkerStatus.PAUSED},
            message="Resumed",
        )
        self.signals.withdraw_pause(worker_id)
        return worker

    def request_abort(self, worker_id: str, reason: str | None = None) -> Worker:
        worker = self.registry.get(worker_id)
        if worker.status.is_terminal:
            raise InvalidStateTransition(
                worker_id=worker_id,
                current=worker.status.value,
                operation="abort",
                hint="The worker has already finished.",
            )
        self.signals.request_abort(worker_id)
        return self.registry.annotate(worker_id, message=reason or "Abort requested")

    def assign_next_task(self, worker_id: str, task_id: str, task_title: str) -> NextTask:
        return self.handoff.assign_next(worker_id, task_id, task_title)

    def fail_worker(self, worker_id: str, reason: str) -> Worker:
        worker, _ = self.registry.transition(
            worker_id,
            WorkerStatus.ERROR,
            operation="fail",
            allowed_from={WorkerStatus.WORKING, WorkerStatus.PAUSED},
            message=reason,
        )
        self.history_log.record(
            worker, "error", merge_conflicts=self.merger.forget(worker_id), message=reason
        )
        return worker

    def stop_worker(
        self, worker_id: str, *, force: bool = False, delete_branch: bool = False
    ) -> TeardownResult:
        """Stop a worker and reclaim its workspace.

        Without ``force`` a working worker is refused. A forced stop also takes a
        worker out of ``merging`` when no merge is running. When teardown fails the
        worker stays registered as ``stopped`` so the call can be repeated.
        """

        allowed = FORCE_STOPPABLE if force else STOPPABLE
        merge_idle = force and self.merger.lock.acquire(blocking=False)
        try:
            worker, previous = self.registry.transition(
                worker_id,
                WorkerStatus.STOPPED,
                operation="stop",
                allowed_from=allowed | {WorkerStatus.MERGING} if merge_idle else allowed,
                message="Stopped",
            )
        finally:
            if merge_idle:
                self.merger.lock.release()
        merge_conflicts = self.merger.forget(worker_id)
        if not previous.is_terminal:
            self.history_log.record(
                worker, "aborted", merge_conflicts=merge_conflicts, message="Stopped before merge"
            )

        result = self.provisioner.destroy(
            worker.workspace_path,
            worker.branch_name,
            delete_branch=delete_branch,
            force_branch=force,
            target_branch=self.target_branch,
        )
        self.registry.remove(worker_id)
        self.signals.clear(worker_id)
        return result

    # -- merging --------------------------------------------------------------------

    def merge_worker(
        self,
        worker_id: str,
        *,
        auto_merge: bool = True,
        commit_message: str | None = None,
        strategy: MergeStrategy | str | None = None,
        target_branch: str | None = None,
    ) -> MergeAttempt:
        return self.merger.attempt_merge(
            worker_id,
            target_branch=target_branch or self.target_branch,
            strategy=MergeStrategy(strategy or self._settings.merge_strategy),
            commit_message=commit_message,
            auto_merge=auto_merge,
        )

    def worker_complete(
        self,
        worker_id: str,
        *,
        summary: str | None = None,
        auto_merge: bool = True,
        commit_message: str | None = None,
        strategy: MergeStrategy | str | None = None,
    ) -> MergeAttempt:
        if summary:
            self.registry.annotate(worker_id, message=summary)
        return self.merge_worker(
            worker_id, auto_merge=auto_merge, commit_message=commit_message, strategy=strategy
        )

    def approve_merge(self, worker_id: str) -> MergeAttempt:
        return self.merger.approve(worker_id)

    def preview_merge(self, worker_id: str, *, target_branch: str | None = None) -> MergeAttempt:
        return self.merger.preview(
            worker_id,
            target_branch=target_branch or self.target_branch,
            strategy=MergeStrategy(self._settings.merge_strategy),
        )

    def resolve_conflicts(
        self,
        worker_id: str,
        resolution: ConflictResolution | str,
        *,
        files: list[str] | None = None,
        commit_message: str | None = None,
        strategy: MergeStrategy | str | None = None,
    ) -> ResolutionResult:
        """Settle a conflicted merge with ``ours``/``theirs`` and retry it, or ``abort`` it.

        Aborting pauses the worker and sends it the pause signal. A retry uses the
        configured strategy unless that is ``rebase``, which falls back to ``merge``.
        """

        resolution = ConflictResolution(resolution)
        if resolution is ConflictResolution.ABORT:
            result = self.merger.abort_resolution(worker_id)
            self.signals.request_pause(worker_id)
            return result
        chosen = MergeStrategy(strategy or self._settings.merge_strategy)
        if strategy is None and chosen is MergeStrategy.REBASE:
            chosen = MergeStrategy.MERGE
        return self.merger.resolve_conflicts(
            worker_id,
            resolution,
            target_branch=self.target_branch,
            files=files,
            strategy=chosen,
            commit_message=commit_message,
        )

    # -- inspection -----------------------------------------------------------------

    def list_dead_workers(self, threshold_ms: int | None = None) -> dict[str, Any]:
        now = self._clock()
        active = self.registry.list(active_only=True)
        if threshold_ms is not None and threshold_ms < 0:
            raise ValueError("threshold_ms must not be negative")
        threshold = timedelta(milliseconds=threshold_ms) if threshold_ms is not None else None
        dead = self.monitor.list_dead(active, threshold=threshold, now=now)
        return {
            "dead_workers": [entry.to_dict(now=now) for entry in dead],
            "total_active": len(active),
            "dead_count": len(dead),
            "threshold_ms": int(
                (threshold if threshold is not None else self.monitor.active_timeout).total_seconds() * 1000
            ),
        }

    def history(self, *, limit: int = 50) -> list[HistoryRecord]:
        return self.history_log.list(limit=limit)

    def list_workspaces(self) -> list[dict[str, Any]]:
        owners = {worker.workspace_path: worker.id for worker in self.registry.list()}
        return [
            {
                "path": info.path,
                "branch": info.branch,
                "commit": info.commit,
                "is_main": info.is_main,
                "worker_id": owners.get(info.path),
            }
            for info in self._repository.list_worktrees()
        ]

    def status_summary(self) -> dict[str, Any]:
        workers = self.registry.list()
        counts = Counter(worker.status.value for worker in workers)
        dead = self.monitor.list_dead([worker for worker in workers if worker.status.is_active])
        return {
            **self.context().to_dict(),
            "status_counts": dict(counts),
            "dead_count": len(dead),
        }

    def _new_worker_id(self) -> str:
        epoch_ms = int(self._clock().timestamp() * 1000)
        return f"worker-{self.provisioner.username}-{epoch_ms}-{self._suffix_factory()}"


class WorkerService:
    """Lazily builds one ``WorkerCoordinator`` per repository path."""

    def __init__(
        self,
        settings: WorkerSettings,
        *,
        launchers: LauncherLoader,
        store: ChromaStore | None = None,
        runner_factory: Callable[[], GitRunner] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._launchers = launchers
        self._store = store
        self._runner_factory = runner_factory
        self._clock = clock
        self._coordinators: dict[str, WorkerCoordinator] = {}
        self._lock = threading.Lock()

    @property
    def settings(self) -> WorkerSettings:
        return self._settings

    @property
    def launchers(self) -> LauncherLoader:
        return self._launchers

    @property
    def store(self) -> ChromaStore | None:
        return self._store

    def coordinator(self, repo_path: str | Path | None = None) -> WorkerCoordinator:
        raw = repo_path or self._settings.default_repo_path
        if raw is None:
            raise ValueError("repo_path is required when CHKD_REPO_PATH is not configured")
        key = str(Path(raw).expanduser().resolve())
        with self._lock:
            coordinator = self._coordinators.get(key)
            if coordinator is None:
                coordinator = WorkerCoordinator(
                    Path(key),
                    settings=self._settings,
                    launchers=self._launchers,
                    runner=self._runner_factory() if self._runner_factory else None,
                    store=self._store,
                    clock=self._clock,
                )
                self._coordinators[key] = coordinator
            return coordinator

    def coordinators(self) -> list[WorkerCoordinator]:
        with self._lock:
            return list(self._coordinators.values())


__all__ = ["WorkerCoordinator", "WorkerService"]
