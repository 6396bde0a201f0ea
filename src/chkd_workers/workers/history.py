"""Audit trail of finished workers."""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Callable

from ..git import BranchStats
from ..storage import ChromaStore, HistoryRecord
from .models import Worker, utcnow

logger = logging.getLogger(__name__)


class HistoryLog:
    """Keeps recent history in memory and mirrors it to the event store when present."""

    def __init__(
        self,
        repo_path: str,
        *,
        store: ChromaStore | None = None,
        clock: Callable[[], datetime] | None = None,
        capacity: int = 500,
    ) -> None:
        self._repo_path = repo_path
        self._store = store
        self._clock = clock or utcnow
        self._entries: deque[HistoryRecord] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def record(
        self,
        worker: Worker,
        outcome: str,
        *,
        stats: BranchStats | None = None,
        merge_conflicts: int = 0,
        message: str | None = None,
    ) -> HistoryRecord:
        completed_at = worker.completed_at or self._clock()
        duration_ms = (
            int((completed_at - worker.started_at).total_seconds() * 1000)
            if worker.started_at is not None
            else None
        )
        entry = HistoryRecord(
            worker_id=worker.id,
            repo_path=self._repo_path,
            task_id=worker.task_id,
            task_title=worker.task_title,
            branch_name=worker.branch_name,
            outcome=outcome,
            merge_conflicts=merge_conflicts,
            files_changed=stats.files_changed if stats else 0,
            insertions=stats.insertions if stats else 0,
            deletions=stats.deletions if stats else 0,
            started_at=worker.started_at,
            completed_at=completed_at,
            duration_ms=duration_ms,
            message=message,
        )
        with self._lock:
            self._entries.appendleft(entry)
        if self._store is not None:
            self._store.record_history(entry)
        logger.info(
            "Recorded worker history",
            extra={"worker_id": worker.id, "outcome": outcome, "duration_ms": duration_ms},
        )
        return entry

    def list(self, *, limit: int = 50) -> list[HistoryRecord]:
        """Most recent first; reads from the store when one is configured."""

        if self._store is not None:
            return self._store.list_history(self._repo_path, limit=limit)
        with self._lock:
            return list(self._entries)[:limit]


__all__ = ["HistoryLog"]
