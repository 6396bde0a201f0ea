"""Liveness classification from heartbeat age."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable

from .models import Worker, WorkerStatus, utcnow


class Liveness(str, Enum):
    ALIVE = "alive"
    DEAD = "dead"


@dataclass(slots=True)
class DeadWorker:
    worker: Worker
    silent_for: timedelta

    def to_dict(self, *, now: datetime | None = None) -> dict:
        payload = self.worker.to_dict(now=now)
        payload["silent_for_ms"] = int(self.silent_for.total_seconds() * 1000)
        return payload


class HeartbeatMonitor:
    """Classify workers as alive or dead.

    Pending workers are measured from ``created_at`` against the longer pending
    timeout; working, paused and merging workers are measured from their last
    heartbeat against the active timeout. Nothing is stored: a worker that
    heartbeats again is alive on the next read.
    """

    def __init__(
        self,
        *,
        pending_timeout: timedelta = timedelta(minutes=10),
        active_timeout: timedelta = timedelta(minutes=2),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._pending_timeout = pending_timeout
        self._active_timeout = active_timeout
        self._clock = clock or utcnow

    @property
    def pending_timeout(self) -> timedelta:
        return self._pending_timeout

    @property
    def active_timeout(self) -> timedelta:
        return self._active_timeout

    def silence(self, worker: Worker, now: datetime | None = None) -> timedelta:
        reference = now or self._clock()
        if worker.status is WorkerStatus.PENDING:
            anchor = worker.created_at
        else:
            anchor = worker.heartbeat_at or worker.started_at or worker.created_at
        return reference - anchor

    def classify(
        self,
        worker: Worker,
        now: datetime | None = None,
        *,
        active_timeout: timedelta | None = None,
    ) -> Liveness:
        if worker.status.is_terminal:
            return Liveness.ALIVE
        limit = (
            self._pending_timeout
            if worker.status is WorkerStatus.PENDING
            else active_timeout if active_timeout is not None else self._active_timeout
        )
        if self.silence(worker, now) > limit:
            return Liveness.DEAD
        return Liveness.ALIVE

    def list_dead(
        self,
        workers: Iterable[Worker],
        *,
        threshold: timedelta | None = None,
        now: datetime | None = None,
    ) -> list[DeadWorker]:
        """Return dead workers, longest silent first. ``threshold`` overrides the active timeout."""

        reference = now or self._clock()
        dead = [
            DeadWorker(worker=worker, silent_for=self.silence(worker, reference))
            for worker in workers
            if self.classify(worker, reference, active_timeout=threshold) is Liveness.DEAD
        ]
        dead.sort(key=lambda entry: entry.silent_for, reverse=True)
        return dead


__all__ = ["DeadWorker", "HeartbeatMonitor", "Liveness"]
