"""Pull-based control signals and the single-slot follow-up task queue."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .models import NextTask, utcnow
from .registry import WorkerRegistry

logger = logging.getLogger(__name__)

PAUSE = "pause"
ABORT = "abort"


@dataclass(slots=True)
class ControlSignal:
    worker_id: str
    kind: str
    requested_at: datetime
    delivered_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "worker_id": self.worker_id,
            "kind": self.kind,
            "requested_at": self.requested_at.isoformat(),
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
        }


@dataclass(slots=True, frozen=True)
class SignalState:
    should_pause: bool = False
    should_abort: bool = False


class ControlSignalChannel:
    """Flags a worker reads on its next heartbeat.

    Signals are level-triggered: a pause stays raised until it is withdrawn and an
    abort stays raised until the worker is cleared. Delivery latency is bounded by
    the worker's heartbeat interval; nothing is pushed.
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or utcnow
        self._signals: dict[str, dict[str, ControlSignal]] = {}
        self._lock = threading.Lock()

    def _raise(self, worker_id: str, kind: str) -> ControlSignal:
        with self._lock:
            slots = self._signals.setdefault(worker_id, {})
            signal = slots.get(kind)
            if signal is None:
                signal = ControlSignal(worker_id=worker_id, kind=kind, requested_at=self._clock())
                slots[kind] = signal
        logger.info("Control signal raised", extra={"worker_id": worker_id, "signal": kind})
        return signal

    def request_pause(self, worker_id: str) -> ControlSignal:
        return self._raise(worker_id, PAUSE)

    def request_abort(self, worker_id: str) -> ControlSignal:
        return self._raise(worker_id, ABORT)

    def withdraw_pause(self, worker_id: str) -> None:
        with self._lock:
            self._signals.get(worker_id, {}).pop(PAUSE, None)

    def poll(self, worker_id: str) -> SignalState:
        """Return the raised flags, stamping first delivery."""

        with self._lock:
            slots = self._signals.get(worker_id, {})
            now = self._clock()
            for signal in slots.values():
                if signal.delivered_at is None:
                    signal.delivered_at = now
            return SignalState(should_pause=PAUSE in slots, should_abort=ABORT in slots)

    def pending(self, worker_id: str) -> list[ControlSignal]:
        with self._lock:
            return list(self._signals.get(worker_id, {}).values())

    def clear(self, worker_id: str) -> None:
        with self._lock:
            self._signals.pop(worker_id, None)


class TaskHandoffQueue:
    """One follow-up task per worker, overwritten on reassignment and consumed once."""

    def __init__(self, registry: WorkerRegistry) -> None:
        self._registry = registry

    def assign_next(self, worker_id: str, task_id: str, task_title: str) -> NextTask:
        worker = self._registry.assign_next_task(worker_id, task_id, task_title)
        logger.info(
            "Queued follow-up task",
            extra={"worker_id": worker_id, "next_task_id": worker.next_task_id},
        )
        return NextTask(task_id=task_id, task_title=task_title)

    def peek(self, worker_id: str) -> NextTask | None:
        return self._registry.peek_next_task(worker_id)

    def consume(self, worker_id: str) -> NextTask | None:
        return self._registry.take_next_task(worker_id)


__all__ = ["ABORT", "ControlSignal", "ControlSignalChannel", "PAUSE", "SignalState", "TaskHandoffQueue"]
