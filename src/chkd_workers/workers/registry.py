"""Worker table and lifecycle state machine."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, Iterator

from ..errors import CapacityExceededError, InvalidStateTransition, NotFoundError
from ..storage import ChromaStore
from .models import NextTask, PendingMerge, Worker, WorkerStatus, utcnow

logger = logging.getLogger(__name__)

_S = WorkerStatus

# merging -> working/paused restores the status held before a merge attempt that did not land.
TRANSITIONS: dict[WorkerStatus, frozenset[WorkerStatus]] = {
    _S.PENDING: frozenset({_S.WORKING, _S.STOPPED}),
    _S.WORKING: frozenset({_S.PAUSED, _S.MERGING, _S.ERROR, _S.STOPPED}),
    _S.PAUSED: frozenset({_S.WORKING, _S.MERGING, _S.ERROR, _S.STOPPED}),
    _S.MERGING: frozenset({_S.MERGED, _S.ERROR, _S.WORKING, _S.PAUSED, _S.STOPPED}),
    _S.MERGED: frozenset({_S.STOPPED}),
    _S.ERROR: frozenset({_S.STOPPED}),
    _S.STOPPED: frozenset({_S.STOPPED}),
}

# Statuses a stop may start from; a forced stop additionally accepts a working worker.
# A merging worker is only stoppable by force while no merge holds the repository lock.
STOPPABLE = frozenset({_S.PENDING, _S.PAUSED, _S.MERGED, _S.ERROR, _S.STOPPED})
FORCE_STOPPABLE = STOPPABLE | {_S.WORKING}

_OPERATION_HINTS = {
    "resume": "Only paused workers can be resumed.",
    "pause": "Only working workers can be paused.",
    "merge": "Merges start from working or paused.",
    "resolve": "Conflicts are resolved from working or paused.",
    "stop": "Pass force=True to stop a working worker; a merging worker can only be stopped once its merge finishes.",
}


class WorkerRegistry:
    """In-memory worker table for one repository.

    Mutations of a single worker are serialized by a per-worker lock; table-level
    changes (register, remove) take the table lock. Readers receive copies.
    """

    def __init__(
        self,
        repo_path: str,
        *,
        store: ChromaStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repo_path = repo_path
        self._store = store
        self._clock = clock or utcnow
        self._workers: dict[str, Worker] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._table_lock = threading.RLock()

    @property
    def repo_path(self) -> str:
        return self._repo_path

    def now(self) -> datetime:
        return self._clock()

    # -- table operations -----------------------------------------------------------

    def load(self, workers: Iterable[Worker]) -> int:
        """Hydrate the table from persisted snapshots; returns the number loaded.

        No merge survives a restart, so a worker snapshotted mid-merge comes back
        as ``working`` and can be merged, failed or stopped again.
        """

        count = 0
        with self._table_lock:
            for worker in workers:
                if worker.repo_path != self._repo_path or worker.status is WorkerStatus.STOPPED:
                    continue
                if worker.status is WorkerStatus.MERGING:
                    worker.status = WorkerStatus.WORKING
                    worker.message = "Merge interrupted by restart"
                    self._persist(worker)
                    logger.warning("Restored worker was mid-merge", extra={"worker_id": worker.id})
                self._workers[worker.id] = worker
                self._locks.setdefault(worker.id, threading.RLock())
                count += 1
        return count

    def register(self, worker: Worker, *, max_workers: int) -> Worker:
        with self._table_lock:
            if worker.id in self._workers:
                raise ValueError(f"Worker id {worker.id} is already registered")
            active = self._count_active_locked()
            if active >= max_workers:
                raise CapacityExceededError(
                    active=active, max_workers=max_workers, repo_path=self._repo_path
                )
            self._workers[worker.id] = worker
            self._locks[worker.id] = threading.RLock()
            self._persist(worker)
        logger.info(
            "Registered worker",
            extra={"worker_id": worker.id, "task_id": worker.task_id, "branch": worker.branch_name},
        )
        return replace(worker)

    def remove(self, worker_id: str) -> Worker:
        with self._table_lock:
            worker = self._workers.pop(worker_id, None)
            self._locks.pop(worker_id, None)
        if worker is None:
            raise NotFoundError(f"Worker {worker_id} not found", worker_id=worker_id)
        self._persist(worker, removed=True)
        return replace(worker)

    def get(self, worker_id: str) -> Worker:
        with self._worker_lock(worker_id):
            return replace(self._require(worker_id))

    def list(
        self,
        statuses: Iterable[WorkerStatus | str] | None = None,
        *,
        active_only: bool = False,
    ) -> list[Worker]:
        wanted = {WorkerStatus(status) for status in statuses} if statuses else None
        with self._table_lock:
            workers = [replace(worker) for worker in self._workers.values()]
        if wanted is not None:
            workers = [worker for worker in workers if worker.status in wanted]
        if active_only:
            workers = [worker for worker in workers if worker.status.is_active]
        workers.sort(key=lambda worker: worker.created_at, reverse=True)
        return workers

    def count_active(self) -> int:
        with self._table_lock:
            return self._count_active_locked()

    def find_by_task(self, task_id: str, *, active_only: bool = True) -> Worker | None:
        for worker in self.list(active_only=active_only):
            if worker.task_id == task_id:
                return worker
        return None

    def find_by_workspace(self, workspace_path: str) -> Worker | None:
        for worker in self.list():
            if worker.workspace_path == workspace_path:
                return worker
        return None

    # -- per-worker mutations -------------------------------------------------------

    def transition(
        self,
        worker_id: str,
        target: WorkerStatus,
        *,
        operation: str,
        allowed_from: Iterable[WorkerStatus] | None = None,
        message: str | None = None,
        progress: int | None = None,
    ) -> tuple[Worker, WorkerStatus]:
        """Move a worker to ``target`` and return the updated copy with its previous status."""

        with self._worker_lock(worker_id):
            worker = self._require(worker_id)
            previous = worker.status
            permitted = frozenset(allowed_from) if allowed_from is not None else None
            legal = target in TRANSITIONS[previous]
            if not legal or (permitted is not None and previous not in permitted):
                raise InvalidStateTransition(
                    worker_id=worker_id,
                    current=previous.value,
                    operation=operation,
                    target=target.value,
                    hint=_OPERATION_HINTS.get(operation),
                )
            now = self._clock()
            worker.status = target
            if target is WorkerStatus.WORKING and worker.started_at is None:
                worker.started_at = now
            if target.is_terminal and worker.completed_at is None:
                worker.completed_at = now
            if message is not None:
                worker.message = message
            if progress is not None:
                worker.progress = _clamp_progress(progress)
            if target.is_terminal:
                worker.pending_merge = None
            self._persist(worker)
        logger.info(
            "Worker status changed",
            extra={
                "worker_id": worker_id,
                "from_status": previous.value,
                "to_status": target.value,
                "operation": operation,
            },
        )
        return replace(worker), previous

    def set_status(
        self,
        worker_id: str,
        status: WorkerStatus | str,
        *,
        message: str | None = None,
        progress: int | None = None,
    ) -> Worker:
        worker, _ = self.transition(
            worker_id, WorkerStatus(status), operation="set_status", message=message, progress=progress
        )
        return worker

    def update_heartbeat(
        self,
        worker_id: str,
        *,
        message: str | None = None,
        progress: int | None = None,
        at: datetime | None = None,
    ) -> Worker:
        """Record a liveness signal.

        A heartbeat older than the stored one is ignored entirely. The first heartbeat
        of a pending worker moves it to working.
        """

        with self._worker_lock(worker_id):
            worker = self._require(worker_id)
            timestamp = at or self._clock()
            if worker.heartbeat_at is not None and timestamp < worker.heartbeat_at:
                logger.debug(
                    "Ignoring stale heartbeat",
                    extra={"worker_id": worker_id, "heartbeat_at": timestamp.isoformat()},
                )
                return replace(worker)
            worker.heartbeat_at = timestamp
            if message is not None:
                worker.message = message
            if progress is not None:
                worker.progress = _clamp_progress(progress)
            if worker.status is WorkerStatus.PENDING:
                worker.status = WorkerStatus.WORKING
                worker.started_at = worker.started_at or timestamp
                logger.info("Worker started", extra={"worker_id": worker_id})
            self._persist(worker)
            return replace(worker)

    def annotate(
        self, worker_id: str, *, message: str | None = None, progress: int | None = None
    ) -> Worker:
        with self._worker_lock(worker_id):
            worker = self._require(worker_id)
            if message is not None:
                worker.message = message
            if progress is not None:
                worker.progress = _clamp_progress(progress)
            self._persist(worker)
            return replace(worker)

    def assign_next_task(self, worker_id: str, task_id: str, task_title: str) -> Worker:
        with self._worker_lock(worker_id):
            worker = self._require(worker_id)
            if worker.status.is_terminal:
                raise InvalidStateTransition(
                    worker_id=worker_id,
                    current=worker.status.value,
                    operation="assign_next_task",
                    hint="Follow-up tasks can only be queued on live workers.",
                )
            worker.next_task_id = task_id
            worker.next_task_title = task_title
            self._persist(worker)
            return replace(worker)

    def peek_next_task(self, worker_id: str) -> NextTask | None:
        with self._worker_lock(worker_id):
            return self._require(worker_id).next_task

    def take_next_task(self, worker_id: str) -> NextTask | None:
        """Remove and return the queued follow-up task; later calls return ``None``."""

        with self._worker_lock(worker_id):
            worker = self._require(worker_id)
            next_task = worker.next_task
            if next_task is None:
                return None
            worker.next_task_id = None
            worker.next_task_title = None
            self._persist(worker)
            return next_task

    def set_pending_merge(self, worker_id: str, pending: PendingMerge | None) -> Worker:
        with self._worker_lock(worker_id):
            worker = self._require(worker_id)
            worker.pending_merge = pending
            self._persist(worker)
            return replace(worker)

    # -- internals ------------------------------------------------------------------

    @contextmanager
    def _worker_lock(self, worker_id: str) -> Iterator[None]:
        with self._table_lock:
            lock = self._locks.get(worker_id)
        if lock is None:
            raise NotFoundError(f"Worker {worker_id} not found", worker_id=worker_id)
        with lock:
            yield

    def _require(self, worker_id: str) -> Worker:
        worker = self._workers.get(worker_id)
        if worker is None:
            raise NotFoundError(f"Worker {worker_id} not found", worker_id=worker_id)
        return worker

    def _count_active_locked(self) -> int:
        return sum(1 for worker in self._workers.values() if worker.status.is_active)

    def _persist(self, worker: Worker, *, removed: bool = False) -> None:
        if self._store is None:
            return
        self._store.record_worker_snapshot(worker.to_dict(now=self._clock()), removed=removed)


def _clamp_progress(value: int) -> int:
    return max(0, min(100, int(value)))


__all__ = ["FORCE_STOPPABLE", "STOPPABLE", "TRANSITIONS", "WorkerRegistry"]
